import logging
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

BACKEND_ROOT = Path(__file__).resolve().parents[1]
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


class Settings(BaseSettings):
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    enable_http_logging: bool = True
    data_dir: str = "../data"
    # novel material root for FileContentSource; defaults to <data_dir>/novels
    content_dir: Optional[str] = None

    # auto probes sqlite once at startup and falls back to memory
    graph_backend: str = "auto"
    graph_db_path: Optional[str] = None

    llm_provider: str = "deepseek"
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4-turbo-preview"
    minimax_api_key: Optional[str] = None
    minimax_model: str = "MiniMax-M2.5"
    deepseek_api_key: Optional[str] = None
    deepseek_base_url: str = "https://api.deepseek.com"
    deepseek_model: str = "deepseek-chat"
    llm_temperature: float = 0.7
    llm_max_tokens: int = 4000

    extraction_min_content_chars: int = 100
    extraction_max_prompt_chars: int = 3000
    extraction_batch_snippet_chars: int = 5000
    extraction_retry_delay_seconds: float = 30.0
    extraction_max_retries: int = 3

    planner_max_steps: int = 8
    planner_early_chapter_threshold: int = 3
    planner_reflection_timeout_seconds: float = 20.0
    tool_rules_path: Optional[str] = None

    log_level: str = "INFO"
    log_file: Optional[str] = None

    model_config = SettingsConfigDict(
        extra="ignore",
        env_file=str(BACKEND_ROOT / ".env"),
        env_file_encoding="utf-8",
    )

    def resolved_data_dir(self) -> Path:
        path = Path(self.data_dir)
        if not path.is_absolute():
            path = (BACKEND_ROOT / path).resolve()
        return path

    def resolved_graph_db_path(self) -> Path:
        if self.graph_db_path:
            return Path(self.graph_db_path).expanduser().resolve()
        return self.resolved_data_dir() / "graph" / "narrative_graph.db"

    def resolved_content_dir(self) -> Path:
        if self.content_dir:
            return Path(self.content_dir).expanduser().resolve()
        return self.resolved_data_dir() / "novels"

    def llm_kwargs(self) -> dict:
        provider = (self.llm_provider or "openai").strip().lower()
        kwargs = {
            "chat_temperature": self.llm_temperature,
            "chat_max_tokens": self.llm_max_tokens,
        }
        if provider == "minimax":
            kwargs.update(api_key=self.minimax_api_key, model=self.minimax_model)
        elif provider == "deepseek":
            kwargs.update(
                api_key=self.deepseek_api_key,
                model=self.deepseek_model,
                base_url=self.deepseek_base_url,
            )
        else:
            kwargs.update(api_key=self.openai_api_key, model=self.openai_model)
        return kwargs


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(settings: Settings) -> logging.Logger:
    level = getattr(logging, settings.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    root_logger = logging.getLogger("novelist")
    root_logger.setLevel(level)
    if settings.log_file:
        log_path = Path(settings.log_file).expanduser().resolve()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        if not any(
            isinstance(handler, logging.FileHandler) and getattr(handler, "baseFilename", None) == str(log_path)
            for handler in root_logger.handlers
        ):
            file_handler = logging.FileHandler(log_path, encoding="utf-8")
            file_handler.setLevel(level)
            file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
            root_logger.addHandler(file_handler)
            root_logger.info("file logging enabled path=%s", log_path)
    return root_logger
