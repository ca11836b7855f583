import os
from typing import Dict, Optional

from openai import AsyncOpenAI


_PROVIDER_CFG: Dict[str, Dict[str, Optional[str]]] = {
    "openai": {"env": "OPENAI_API_KEY", "base_url": None, "model": "gpt-4"},
    "groq": {"env": "GROQ_API_KEY", "base_url": "https://api.groq.com/openai/v1", "model": "llama-3.3-70b-versatile"},
}


def normalize_provider(provider: Optional[str]) -> str:
    return (provider or "openai").strip().lower()


def default_model_for(provider: Optional[str]) -> str:
    cfg = _PROVIDER_CFG.get(normalize_provider(provider))
    if cfg is None:
        raise ValueError(f"Unsupported provider: {provider}")
    return cfg["model"]


# Create an async OpenAI-compatible client for the supported completion providers
def get_async_openai_compatible_client(provider: Optional[str]) -> AsyncOpenAI:
    provider_l = normalize_provider(provider)
    cfg = _PROVIDER_CFG.get(provider_l)
    if cfg is None:
        raise ValueError(f"Unsupported provider: {provider_l}")

    env_var = cfg["env"]
    api_key = os.getenv(env_var)
    if not api_key:
        raise ValueError(f"Missing API key for provider '{provider_l}'. Set {env_var}.")

    kwargs = {"api_key": api_key}
    if cfg["base_url"]:
        kwargs["base_url"] = cfg["base_url"]
    return AsyncOpenAI(**kwargs)
