"""
Tests for ComplianceBackend/services/chat_completion.py and openai_compatible_client.py
Prompt rendering, history trimming and provider error mapping. No network calls.
"""

import threading
from types import SimpleNamespace

import pytest
from openai import AsyncOpenAI, OpenAIError

from ComplianceBackend.errors import UpstreamServiceError, ValidationError
from ComplianceBackend.services.chat_completion import (
    EMPTY_COMPLETION_REPLY,
    MAX_SOURCES,
    NO_CONTEXT_REPLY,
    SYSTEM_PROMPT,
    DocumentChatService,
    build_prompt_messages,
    render_summaries,
    sources_from_results,
)
from ComplianceBackend.services.openai_compatible_client import (
    default_model_for,
    get_async_openai_compatible_client,
)
from ComplianceBackend.services.retrieval_service import DocumentContext


class FakeCompletions:
    def __init__(self, content="Answer", error=None):
        self.content = content
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def _factory(completions, seen=None):
    def factory(provider):
        if seen is not None:
            seen.append(provider)
        return SimpleNamespace(chat=SimpleNamespace(completions=completions))

    return factory


class FakeRetrieval:
    def __init__(self, context):
        self.context = context
        self.calls = []
        self.thread_id = None

    def build_context(self, *, user_id, query, document_ids=None, limit=None):
        self.calls.append((user_id, query, document_ids))
        self.thread_id = threading.get_ident()
        return self.context


def _hit(doc_id, **extra):
    return {"documentId": doc_id, "filename": f"d{doc_id}.txt", "title": f"Doc {doc_id}", "text": "excerpt", **extra}


class TestRendering:
    """Context text given to the model."""

    def test_manual_summary_first_with_ai_for_reference(self):
        text = render_summaries([{"documentId": 1, "title": "SOP", "version": "2", "manualSummary": "M", "summary": "A"}])
        assert "Document: SOP (ID: 1) - Version: 2" in text
        assert "Manual Summary: M" in text
        assert "AI Summary (for reference): A" in text

    def test_identical_ai_summary_is_not_repeated(self):
        text = render_summaries([{"documentId": 1, "title": "SOP", "manualSummary": "Same", "summary": "Same"}])
        assert "for reference" not in text

    def test_ai_only_and_missing(self):
        text = render_summaries(
            [{"documentId": 1, "title": "A", "summary": "ai"}, {"documentId": 2, "title": "B"}]
        )
        assert "AI Summary: ai" in text
        assert "No summary available" in text

    def test_history_is_trimmed_to_last_ten(self):
        history = [{"role": "user" if i % 2 else "assistant", "content": f"m{i}"} for i in range(15)]
        messages = build_prompt_messages("Q?", "ctx", history)
        assert messages[0] == {"role": "system", "content": SYSTEM_PROMPT}
        assert [m["content"] for m in messages[1:-1]] == [f"m{i}" for i in range(5, 15)]
        assert messages[-1]["content"].endswith("User question: Q?")

    def test_history_skips_empty_and_maps_roles(self):
        messages = build_prompt_messages("Q", "ctx", [{"type": "ai", "content": "x"}, {"content": ""}, "junk"])
        assert messages[1:-1] == [{"role": "assistant", "content": "x"}]

    def test_sources_capped(self):
        sources = sources_from_results([_hit(i) for i in range(8)])
        assert len(sources) == MAX_SOURCES
        assert sources[0]["documentId"] == 0


class TestGenerate:
    """Completion call and failure mapping."""

    async def test_no_context_skips_provider(self):
        seen = []
        service = DocumentChatService(FakeRetrieval(None), client_factory=_factory(FakeCompletions(), seen))
        reply = await service.generate(question="Q", context=DocumentContext())
        assert reply.response == NO_CONTEXT_REPLY
        assert reply.sources == []
        assert seen == []

    async def test_answer_with_sources(self):
        completions = FakeCompletions("Retain for five years.")
        seen = []
        service = DocumentChatService(FakeRetrieval(None), client_factory=_factory(completions, seen))
        context = DocumentContext(results=[_hit(1), _hit(1), _hit(2)])

        reply = await service.generate(question="How long?", context=context, provider="Groq")

        assert reply.response == "Retain for five years."
        assert reply.documents_used == [1, 2]
        assert reply.provider == "groq"
        assert reply.model == "llama-3.3-70b-versatile"
        assert seen == ["groq"]
        call = completions.calls[0]
        assert call["max_tokens"] == 1000
        assert call["temperature"] == 0.7
        assert "Document: Doc 1 (ID: 1)" in call["messages"][-1]["content"]

    async def test_empty_completion(self):
        service = DocumentChatService(FakeRetrieval(None), client_factory=_factory(FakeCompletions(content=None)))
        reply = await service.generate(question="Q", context=DocumentContext(results=[_hit(1)]))
        assert reply.response == EMPTY_COMPLETION_REPLY

    async def test_provider_error_is_upstream(self):
        completions = FakeCompletions(error=OpenAIError("rate limited"))
        service = DocumentChatService(FakeRetrieval(None), client_factory=_factory(completions))
        with pytest.raises(UpstreamServiceError) as exc:
            await service.generate(question="Q", context=DocumentContext(results=[_hit(1)]))
        assert exc.value.status_code == 502
        assert exc.value.details["model"] == "gpt-4"

    async def test_unknown_provider_is_validation_error(self):
        service = DocumentChatService(FakeRetrieval(None), client_factory=_factory(FakeCompletions()))
        with pytest.raises(ValidationError):
            await service.generate(question="Q", context=DocumentContext(results=[_hit(1)]), provider="acme")

    async def test_chat_runs_retrieval(self):
        retrieval = FakeRetrieval(DocumentContext(summaries=[{"documentId": 3, "title": "T", "summary": "S"}]))
        service = DocumentChatService(retrieval, client_factory=_factory(FakeCompletions("ok")))
        reply = await service.chat(user_id="u1", message="  audit trail?  ", document_ids=["k"])
        assert retrieval.calls == [("u1", "audit trail?", ["k"])]
        assert reply.response == "ok"
        assert reply.to_dict()["documentsUsed"] == []

    async def test_retrieval_runs_off_the_event_loop(self):
        retrieval = FakeRetrieval(DocumentContext())
        service = DocumentChatService(retrieval, client_factory=_factory(FakeCompletions("ok")))
        await service.chat(user_id="u1", message="deviation?")
        assert retrieval.thread_id is not None
        assert retrieval.thread_id != threading.get_ident()

    async def test_blank_message(self):
        service = DocumentChatService(FakeRetrieval(None), client_factory=_factory(FakeCompletions()))
        with pytest.raises(ValidationError):
            await service.chat(user_id="u1", message="   ")


class TestProviderClient:
    def test_defaults(self):
        assert default_model_for(None) == "gpt-4"
        assert default_model_for("GROQ") == "llama-3.3-70b-versatile"

    def test_missing_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        with pytest.raises(ValueError):
            get_async_openai_compatible_client("openai")

    def test_groq_base_url(self, monkeypatch):
        monkeypatch.setenv("GROQ_API_KEY", "test-key")
        client = get_async_openai_compatible_client("groq")
        assert isinstance(client, AsyncOpenAI)
        assert str(client.base_url).startswith("https://api.groq.com/openai/v1")
