"""LLM client construction shared by the query generator and the result analyzer."""
import logging
import os
from dataclasses import dataclass
from typing import Optional

from langchain_openai import ChatOpenAI

logger = logging.getLogger("llm")

# OpenAI-compatible endpoints per provider.
PROVIDER_BASE_URLS = {
    "groq": "https://api.groq.com/openai/v1",
    "deepseek": "https://api.deepseek.com",
    "openai": None,
}
PROVIDER_DEFAULT_MODELS = {
    "groq": "llama-3.3-70b-versatile",
    "deepseek": "deepseek-chat",
    "openai": "gpt-4o-mini",
}


def _resolve_provider_api_key(provider: str, api_key: str) -> str:
    key = (api_key or "").strip()
    if key:
        return key
    groq_env = (os.getenv("GROQ_API_KEY") or "").strip()
    deepseek_env = (os.getenv("DEEPSEEK_API_KEY") or "").strip()
    openai_env = (os.getenv("OPENAI_API_KEY") or "").strip()
    if provider == "groq":
        return groq_env
    if provider == "deepseek":
        return deepseek_env
    if provider == "openai":
        return openai_env
    return groq_env or openai_env or deepseek_env


@dataclass
class LLMConfig:
    provider: str = "groq"
    model: str = PROVIDER_DEFAULT_MODELS["groq"]
    api_key: str = ""
    base_url: Optional[str] = PROVIDER_BASE_URLS["groq"]
    temperature: float = 0.1
    max_tokens: int = 1000
    top_p: float = 0.8
    timeout_s: float = 30.0

    @classmethod
    def from_env(cls) -> "LLMConfig":
        provider = (os.getenv("LLM_PROVIDER") or "groq").strip().lower()
        if provider not in PROVIDER_BASE_URLS:
            logger.warning("unknown LLM_PROVIDER %r; treating it as a custom OpenAI-compatible endpoint", provider)
        return cls(
            provider=provider,
            model=(os.getenv("LLM_MODEL") or PROVIDER_DEFAULT_MODELS.get(provider, "gpt-4o-mini")).strip(),
            api_key=_resolve_provider_api_key(provider, os.getenv("LLM_API_KEY", "")),
            base_url=(os.getenv("LLM_BASE_URL") or PROVIDER_BASE_URLS.get(provider) or None),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.1")),
            max_tokens=max(64, int(os.getenv("LLM_MAX_TOKENS", "1000"))),
            top_p=float(os.getenv("LLM_TOP_P", "0.8")),
            timeout_s=max(1.0, float(os.getenv("LLM_TIMEOUT_SECONDS", "30"))),
        )


def build_chat_llm(config: LLMConfig) -> ChatOpenAI:
    if not config.api_key:
        raise ValueError(
            "Missing LLM API key. Set LLM_API_KEY or the provider key "
            "(GROQ_API_KEY / OPENAI_API_KEY / DEEPSEEK_API_KEY) in the environment."
        )
    kwargs = {
        "model": config.model,
        "temperature": config.temperature,
        "max_tokens": config.max_tokens,
        "top_p": config.top_p,
        "timeout": config.timeout_s,
        "openai_api_key": config.api_key,
        # Reasoning-service failures are never retried by the pipeline.
        "max_retries": 0,
    }
    if config.base_url:
        kwargs["openai_api_base"] = config.base_url
    return ChatOpenAI(**kwargs)


def response_text(response) -> str:
    """Text of a chat model reply; tolerates plain strings from test doubles."""
    content = response.content if hasattr(response, "content") else response
    return str(content or "").strip()
