from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from functools import partial
from typing import Any, Callable, Optional

from openai import OpenAIError

from ComplianceBackend.errors import UpstreamServiceError, ValidationError
from ComplianceBackend.services.openai_compatible_client import (
    default_model_for,
    get_async_openai_compatible_client,
    normalize_provider,
)
from ComplianceBackend.services.retrieval_service import DocumentContext, RetrievalService


logger = logging.getLogger(__name__)

MAX_HISTORY_MESSAGES = 10
MAX_SOURCES = 5

NO_CONTEXT_REPLY = (
    "I don't have access to any relevant documents to answer your question. "
    "Please upload some documents first or try a different question."
)
EMPTY_COMPLETION_REPLY = "I apologize, but I was unable to generate a response."

SYSTEM_PROMPT = """You are a compliance assistant for pharmaceutical quality, regulatory affairs and clinical trial integrity. You answer questions about the user's own documents (SOPs, regulations, guidance and policies) using the document excerpts and summaries supplied with each question.

Document context rules:
1. A manual summary written by the user always takes precedence over an AI-generated summary.
2. When a manual summary corrects or extends the AI summary, point out the difference.
3. Refer to documents by title and version.
4. If the supplied documents do not contain the answer, say so plainly.
5. Report what the documents say, not assumptions.

Be precise, cite the documents you rely on, and keep an inspection-ready, professional tone."""


# Renders search hits into the prompt; each hit is one "Document: ... Content: ..." block
def render_search_results(results: list[dict]) -> str:
    blocks = []
    for r in results:
        header = f"Document: {r.get('title') or r.get('filename')} (ID: {r.get('documentId')})"
        if r.get("version"):
            header += f" - Version: {r['version']}"
        blocks.append(f"{header}\nContent: {r.get('text') or ''}")
    return "\n\n".join(blocks)


# Manual summary first; the AI summary is kept "for reference" only when it differs
def render_summaries(summaries: list[dict]) -> str:
    blocks = []
    for s in summaries:
        text = f"Document: {s.get('title') or s.get('filename')} (ID: {s.get('documentId')})"
        if s.get("version"):
            text += f" - Version: {s['version']}"
        manual = s.get("manualSummary")
        ai = s.get("summary")
        if manual:
            text += f"\nManual Summary: {manual}"
            if ai and ai != manual:
                text += f"\nAI Summary (for reference): {ai}"
        elif ai:
            text += f"\nAI Summary: {ai}"
        else:
            text += "\nNo summary available"
        blocks.append(text)
    return "\n\n".join(blocks)


def render_context(context: DocumentContext) -> str:
    parts = [p for p in (render_search_results(context.results), render_summaries(context.summaries)) if p]
    return "\n\n".join(parts)


def _history_messages(history: Any) -> list[dict]:
    if not isinstance(history, list):
        return []
    out = []
    for m in history[-MAX_HISTORY_MESSAGES:]:
        if not isinstance(m, dict):
            continue
        content = m.get("content")
        if not isinstance(content, str) or not content.strip():
            continue
        role = "assistant" if m.get("role") == "assistant" or m.get("type") == "ai" else "user"
        out.append({"role": role, "content": content})
    return out


def build_prompt_messages(question: str, context_text: str, history: Any = None) -> list[dict]:
    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        *_history_messages(history),
        {"role": "user", "content": f"Context from documents:\n\n{context_text}\n\nUser question: {question}"},
    ]


def sources_from_results(results: list[dict]) -> list[dict]:
    return [
        {
            "documentId": r.get("documentId"),
            "filename": r.get("filename"),
            "title": r.get("title"),
            "text": r.get("text"),
            "chunkIndex": r.get("chunkIndex"),
            "rank": r.get("rank"),
        }
        for r in results[:MAX_SOURCES]
    ]


@dataclass
class ChatReply:
    response: str
    documents_used: list = field(default_factory=list)
    sources: list = field(default_factory=list)
    provider: Optional[str] = None
    model: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "response": self.response,
            "documentsUsed": self.documents_used,
            "sources": self.sources,
            "provider": self.provider,
            "model": self.model,
        }


# Runs retrieval for a question and asks the completion provider to answer from that context
class DocumentChatService:
    def __init__(
        self,
        retrieval: RetrievalService,
        *,
        client_factory: Callable[[Optional[str]], Any] = get_async_openai_compatible_client,
        max_tokens: int = 1000,
        temperature: float = 0.7,
    ):
        self.retrieval = retrieval
        self.client_factory = client_factory
        self.max_tokens = max_tokens
        self.temperature = temperature

    async def generate(
        self,
        *,
        question: str,
        context: DocumentContext,
        history: Any = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> ChatReply:
        context_text = render_context(context)
        if not context_text:
            return ChatReply(response=NO_CONTEXT_REPLY)

        provider_l = normalize_provider(provider)
        try:
            selected_model = model or default_model_for(provider_l)
            client = self.client_factory(provider_l)
        except ValueError as e:
            raise ValidationError(str(e)) from e

        messages = build_prompt_messages(question, context_text, history)
        logger.info("chat.generate: provider=%s model=%s hits=%d", provider_l, selected_model, len(context.results))
        try:
            completion = await client.chat.completions.create(
                model=selected_model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
            )
        except OpenAIError as e:
            logger.exception("chat.generate.failed: provider=%s model=%s", provider_l, selected_model)
            raise UpstreamServiceError(
                "Failed to generate AI response",
                details={"provider": provider_l, "model": selected_model, "message": str(e)},
            ) from e

        text = None
        if getattr(completion, "choices", None):
            text = getattr(completion.choices[0].message, "content", None)
        return ChatReply(
            response=text or EMPTY_COMPLETION_REPLY,
            documents_used=list(dict.fromkeys(r.get("documentId") for r in context.results)),
            sources=sources_from_results(context.results),
            provider=provider_l,
            model=selected_model,
        )

    async def chat(
        self,
        *,
        user_id: str,
        message: Any,
        document_ids: Any = None,
        history: Any = None,
        provider: Optional[str] = None,
        model: Optional[str] = None,
    ) -> ChatReply:
        question = message.strip() if isinstance(message, str) else ""
        if not question:
            raise ValidationError("Message is required")
        # Retrieval runs blocking SQL; keep it off the event loop
        loop = asyncio.get_running_loop()
        context = await loop.run_in_executor(
            None, partial(self.retrieval.build_context, user_id=user_id, query=question, document_ids=document_ids)
        )
        return await self.generate(question=question, context=context, history=history, provider=provider, model=model)
