import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from agents.orchestrator import ChapterPlanningOrchestrator
from agents.tools import ToolRegistry, build_tool_registry, to_jsonable
from core.llm_client import LLMClient, create_llm_client
from core.settings import Settings, configure_logging, get_settings
from memory import NarrativeGraphStore, create_graph_store
from models import ConfigValidationError, ExtractionNotFoundError, FailedExtraction, WritingContext
from services.content_source import ContentSource, FileContentSource
from services.diagnostics import DiagnosticsService
from services.entity_extraction import EntityExtractor
from services.extraction_retry import ExtractionRetryCoordinator

settings = get_settings()
configure_logging(settings)
logger = logging.getLogger("novelist.api")

app = FastAPI(title="Narrative Memory API", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def http_access_log_middleware(request: Request, call_next):
    if not settings.enable_http_logging:
        return await call_next(request)

    request_id = uuid4().hex[:8]
    started = time.perf_counter()
    logger.info(
        "REQ start id=%s method=%s path=%s query=%s",
        request_id,
        request.method,
        request.url.path,
        request.url.query or "-",
    )
    try:
        response = await call_next(request)
    except Exception:
        elapsed = (time.perf_counter() - started) * 1000
        logger.exception("REQ failed id=%s duration_ms=%.2f", request_id, elapsed)
        raise

    elapsed = (time.perf_counter() - started) * 1000
    response.headers["X-Request-ID"] = request_id
    logger.info(
        "REQ end id=%s status=%s duration_ms=%.2f",
        request_id,
        response.status_code,
        elapsed,
    )
    return response


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------


@dataclass
class NovelServices:
    store: NarrativeGraphStore
    llm_client: LLMClient
    content: ContentSource
    extractor: EntityExtractor
    retry: ExtractionRetryCoordinator
    registry: ToolRegistry
    orchestrator: ChapterPlanningOrchestrator
    diagnostics: DiagnosticsService


def build_services(
    config: Settings,
    store: Optional[NarrativeGraphStore] = None,
    llm_client: Optional[LLMClient] = None,
    content: Optional[ContentSource] = None,
) -> NovelServices:
    store = store or create_graph_store(config)
    llm_client = llm_client or create_llm_client(config.llm_provider, **config.llm_kwargs())
    content = content or FileContentSource(str(config.resolved_content_dir()))
    extractor = EntityExtractor(store, llm_client, config)
    retry = ExtractionRetryCoordinator(extractor, config)
    registry = build_tool_registry(store, content, llm_client)
    orchestrator = ChapterPlanningOrchestrator(registry, llm_client, config, content=content)
    diagnostics = DiagnosticsService(store, retry, content)
    return NovelServices(store, llm_client, content, extractor, retry, registry, orchestrator, diagnostics)


_services: Optional[NovelServices] = None
_services_lock = threading.Lock()


def get_services() -> NovelServices:
    global _services
    with _services_lock:
        if _services is None:
            _services = build_services(settings)
            logger.info("services ready backend=%s", _services.store.backend_name)
        return _services


def set_services(services: Optional[NovelServices]):
    global _services
    with _services_lock:
        if _services is not None and _services is not services:
            _services.retry.stop()
        _services = services


def writing_context_payload(context: WritingContext) -> Dict[str, Any]:
    return {name: to_jsonable(getattr(context, name)) for name in WritingContext.model_fields}


# ---------------------------------------------------------------------------
# Request bodies
# ---------------------------------------------------------------------------


class RetryExtractionRequest(BaseModel):
    novel_id: int
    chapter_number: int


class ExtractChapterRequest(BaseModel):
    title: Optional[str] = None
    content: str = ""


class PlanChapterRequest(BaseModel):
    user_adjustment: Optional[str] = Field(default=None, max_length=2000)


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------


@app.get("/api/health")
async def health_check():
    services = get_services()
    return {
        "status": "healthy",
        "graphBackend": services.store.backend_name,
        "graphAvailable": services.store.is_available(),
        "pendingRetries": services.retry.pending_count(),
        "timestamp": datetime.now().isoformat(),
    }


@app.get("/api/diagnostics/failed-extractions")
async def list_failed_extractions():
    return get_services().retry.get_failed_extractions()


@app.post("/api/diagnostics/retry-extraction")
async def retry_extraction(payload: RetryExtractionRequest):
    services = get_services()
    try:
        ok = await asyncio.to_thread(services.retry.manual_retry, payload.novel_id, payload.chapter_number)
    except ExtractionNotFoundError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {
        "success": ok,
        "message": "重试成功" if ok else "重试失败，已重新记录",
    }


@app.get("/api/diagnostics/health/{novel_id}")
async def diagnose_novel(novel_id: int):
    return await asyncio.to_thread(get_services().diagnostics.diagnose, novel_id)


@app.get("/api/diagnostics/best-practices")
async def best_practices():
    return DiagnosticsService.get_best_practices()


@app.get("/api/graph/{novel_id}/statistics")
async def graph_statistics(novel_id: int):
    return get_services().store.get_graph_statistics(novel_id)


@app.get("/api/graph/{novel_id}")
async def graph_data(novel_id: int):
    return get_services().store.get_all_graph_data(novel_id)


@app.delete("/api/graph/{novel_id}")
async def clear_graph(novel_id: int):
    result = get_services().store.clear_graph(novel_id)
    if not result.ok:
        raise HTTPException(status_code=500, detail=result.error)
    return result.model_dump(mode="json")


@app.delete("/api/graph/{novel_id}/chapters/{chapter_number}")
async def delete_chapter(novel_id: int, chapter_number: int):
    result = get_services().store.delete_chapter_entities(novel_id, chapter_number)
    if not result.ok:
        raise HTTPException(status_code=500, detail=result.error)
    return result.model_dump(mode="json")


@app.post("/api/graph/{novel_id}/chapters/{chapter_number}/extract")
async def extract_chapter(novel_id: int, chapter_number: int, payload: ExtractChapterRequest):
    services = get_services()
    try:
        outcome = await asyncio.to_thread(
            services.retry.extract_with_retry,
            novel_id,
            chapter_number,
            payload.title,
            payload.content,
        )
    except ConfigValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(outcome, FailedExtraction):
        return {"success": False, "scheduled": outcome.scheduled, "entityCount": 0}
    return {
        "success": True,
        "skipped": outcome.skipped,
        "entityCount": outcome.entity_count,
        "failedWrites": outcome.failed_writes,
    }


@app.post("/api/planning/{novel_id}/chapters/{chapter_number}")
async def plan_chapter(novel_id: int, chapter_number: int, payload: PlanChapterRequest):
    if chapter_number < 1:
        raise HTTPException(status_code=400, detail="chapter_number must be >= 1")
    context = await get_services().orchestrator.plan_chapter(
        novel_id,
        chapter_number,
        payload.user_adjustment,
    )
    return writing_context_payload(context)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
