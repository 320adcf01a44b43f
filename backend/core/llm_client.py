import os
import time
import logging
import threading
from typing import List, Optional, Dict, Any, Tuple
from enum import Enum

from models import ConfigValidationError


class LLMProvider(str, Enum):
    OPENAI = "openai"
    MINIMAX = "minimax"
    DEEPSEEK = "deepseek"


class LLMCallError(RuntimeError):
    """Remote completion failed; raised by ``generate`` instead of falling back offline."""


class LLMConfig:
    def __init__(
        self,
        provider: LLMProvider = LLMProvider.OPENAI,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = "gpt-4-turbo-preview",
        chat_max_tokens: Optional[int] = None,
        chat_temperature: Optional[float] = None,
    ):
        self.provider = provider
        default_key = os.getenv("OPENAI_API_KEY")
        if provider == LLMProvider.MINIMAX:
            default_key = os.getenv("MINIMAX_API_KEY") or default_key
        elif provider == LLMProvider.DEEPSEEK:
            default_key = os.getenv("DEEPSEEK_API_KEY") or default_key
        self.api_key = default_key if api_key is None else api_key
        self.model = model
        default_chat_max_tokens = _safe_positive_int(os.getenv("LLM_MAX_TOKENS"), 4000)
        default_chat_temperature = _safe_temperature(os.getenv("LLM_TEMPERATURE"), 0.7)

        if provider == LLMProvider.MINIMAX:
            self.base_url = base_url or "https://api.minimaxi.com/v1"
            self.model = model or "MiniMax-M2.5"
        elif provider == LLMProvider.DEEPSEEK:
            self.base_url = base_url or os.getenv("DEEPSEEK_BASE_URL") or "https://api.deepseek.com"
            self.model = model or "deepseek-chat"
            default_chat_max_tokens = _safe_positive_int(os.getenv("DEEPSEEK_MAX_TOKENS"), 8192)
            default_chat_temperature = _safe_temperature(
                os.getenv("DEEPSEEK_TEMPERATURE"),
                default_chat_temperature,
            )
        else:
            self.base_url = base_url or "https://api.openai.com/v1"

        self.chat_max_tokens = _safe_positive_int(chat_max_tokens, default_chat_max_tokens)
        self.chat_temperature = _safe_temperature(chat_temperature, default_chat_temperature)

    def is_valid(self) -> bool:
        return bool(
            (self.api_key or "").strip()
            and (self.model or "").strip()
            and (self.base_url or "").strip()
        )

    def cache_key(self) -> Tuple[str, str, str]:
        return (self.provider.value, self.api_key or "", self.base_url or "")


def _safe_positive_int(value: Any, fallback: int) -> int:
    try:
        parsed = int(value)
        if parsed > 0:
            return parsed
    except (TypeError, ValueError):
        pass
    return fallback


def _safe_temperature(value: Any, fallback: float) -> float:
    try:
        parsed = float(value)
        if parsed < 0:
            return 0.0
        if parsed > 2:
            return 2.0
        return parsed
    except (TypeError, ValueError):
        return fallback


class LLMClient:
    """Opaque text-in/text-out model client.

    ``generate`` is what the narrative core calls; it raises on failure so the
    caller can record and retry.
    """

    def __init__(self, config: LLMConfig):
        self.config = config
        self._clients: Dict[Tuple[str, str, str], Any] = {}
        self._lock = threading.Lock()
        self._logger = logging.getLogger("novelist.llm")

    def _client_for(self, config: LLMConfig):
        key = config.cache_key()
        with self._lock:
            client = self._clients.get(key)
            if client is not None:
                return client

            from openai import OpenAI
            client = OpenAI(api_key=config.api_key, base_url=config.base_url)
            self._clients[key] = client
            return client

    def generate(
        self,
        messages: List[Dict[str, str]],
        task_tag: str = "",
        config: Optional[LLMConfig] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        stream: bool = False,
    ) -> str:
        active = config or self.config
        if not active.is_valid():
            raise ConfigValidationError(
                f"model config invalid provider={active.provider.value} model={active.model}"
            )

        started = time.perf_counter()
        try:
            response = self._client_for(active).chat.completions.create(
                model=active.model,
                messages=messages,
                temperature=_safe_temperature(temperature, active.chat_temperature),
                max_tokens=_safe_positive_int(max_tokens, active.chat_max_tokens),
                stream=stream,
            )
            if stream:
                content = "".join(self._extract_stream_delta_text(chunk) for chunk in response)
            else:
                content = response.choices[0].message.content or ""
        except Exception as exc:
            self._logger.warning(
                "llm generate failed task=%s provider=%s model=%s error=%s",
                task_tag,
                active.provider.value,
                active.model,
                exc,
            )
            raise LLMCallError(f"{task_tag or 'generate'} failed: {exc}") from exc

        self._logger.info(
            "llm generate success task=%s provider=%s model=%s latency_ms=%.2f chars=%d",
            task_tag,
            active.provider.value,
            active.model,
            (time.perf_counter() - started) * 1000,
            len(content),
        )
        return content

    def _extract_stream_delta_text(self, chunk: Any) -> str:
        choices = getattr(chunk, "choices", None)
        if not choices:
            return ""
        delta = getattr(choices[0], "delta", None)
        if delta is not None:
            content = getattr(delta, "content", None)
            if isinstance(content, str):
                return content
            if isinstance(content, list):
                parts: List[str] = []
                for item in content:
                    text = getattr(item, "text", None)
                    if isinstance(text, str):
                        parts.append(text)
                return "".join(parts)
        message = getattr(choices[0], "message", None)
        if message is not None:
            msg_content = getattr(message, "content", None)
            if isinstance(msg_content, str):
                return msg_content
        return ""


def create_llm_client(
    provider: str = "openai",
    **kwargs
) -> LLMClient:
    return LLMClient(create_llm_config(provider, **kwargs))


def create_llm_config(provider: str = "openai", **kwargs) -> LLMConfig:
    candidate = (provider or "openai").strip().lower()
    try:
        llm_provider = LLMProvider(candidate)
    except ValueError:
        logging.getLogger("novelist.llm").warning(
            "unknown llm provider=%s fallback=openai",
            provider,
        )
        llm_provider = LLMProvider.OPENAI
    return LLMConfig(provider=llm_provider, **kwargs)
