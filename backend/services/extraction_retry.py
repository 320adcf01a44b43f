import heapq
import itertools
import logging
import threading
import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from core.llm_client import LLMConfig
from core.settings import Settings, get_settings
from models import ConfigValidationError, ExtractionNotFoundError, FailedExtraction
from services.entity_extraction import EntityExtractor, ExtractionOutcome

logger = logging.getLogger("novelist.retry")


def failure_key(novel_id: int, chapter_number: int) -> str:
    return f"{novel_id}_{chapter_number}"


class ExtractionRetryCoordinator:
    """
    Bounded automatic retries for failed chapter extractions.

    Failures are keyed by ``novelId_chapterNumber``. While a key has fewer
    than ``max_retries`` failures and a usable model config, one retry is
    queued ``retry_delay`` seconds out (flat, no backoff). Queued retries live
    on a heap drained by a single daemon worker, so a retry that fails only
    records the failure and queues the next attempt; it never retries on its
    own stack. Exhausted keys stay listed until ``manual_retry`` succeeds.
    """

    def __init__(
        self,
        extractor: EntityExtractor,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        autostart: bool = True,
    ):
        self.extractor = extractor
        self.settings = settings or get_settings()
        self.retry_delay = float(self.settings.extraction_retry_delay_seconds)
        self.max_retries = int(self.settings.extraction_max_retries)
        self._clock = clock
        self._autostart = autostart
        self._failures: Dict[str, FailedExtraction] = {}
        self._heap: List[Tuple[float, int, str]] = []
        self._pending: Dict[str, int] = {}
        self._sequence = itertools.count()
        self._lock = threading.Lock()
        self._wakeup = threading.Condition(self._lock)
        self._worker: Optional[threading.Thread] = None
        self._stopped = False

    # ------------------------------------------------------------------
    # worker lifecycle
    # ------------------------------------------------------------------

    def start(self):
        with self._lock:
            if self._worker is not None and self._worker.is_alive():
                return
            self._stopped = False
            self._worker = threading.Thread(
                target=self._worker_loop,
                name="extraction-retry",
                daemon=True,
            )
            self._worker.start()
        logger.info("retry worker started delay_seconds=%.1f max_retries=%d", self.retry_delay, self.max_retries)

    def stop(self, timeout: float = 5.0):
        with self._wakeup:
            self._stopped = True
            self._wakeup.notify_all()
            worker = self._worker
        if worker is not None:
            worker.join(timeout)
        logger.info("retry worker stopped pending=%d", len(self._pending))

    def _worker_loop(self):
        while True:
            with self._wakeup:
                while not self._stopped:
                    if not self._heap:
                        self._wakeup.wait()
                        continue
                    wait_for = self._heap[0][0] - self._clock()
                    if wait_for <= 0:
                        break
                    self._wakeup.wait(wait_for)
                if self._stopped:
                    return
                key = self._pop_due_locked()
            if key is not None:
                self._run_job(key)

    def _pop_due_locked(self) -> Optional[str]:
        _, sequence, key = heapq.heappop(self._heap)
        if self._pending.get(key) != sequence:
            return None
        del self._pending[key]
        return key

    # ------------------------------------------------------------------
    # failure bookkeeping
    # ------------------------------------------------------------------

    def _config_usable(self, config: Optional[LLMConfig]) -> bool:
        active = config or self.extractor.llm_client.config
        return active is not None and active.is_valid()

    def record_failure(
        self,
        novel_id: int,
        chapter_number: int,
        chapter_title: Optional[str],
        content: Optional[str],
        config: Optional[LLMConfig],
        error: BaseException,
    ) -> FailedExtraction:
        key = failure_key(novel_id, chapter_number)
        message = str(error) or type(error).__name__
        usable = self._config_usable(config)
        with self._wakeup:
            failed = self._failures.get(key)
            if failed is None:
                failed = FailedExtraction(
                    novel_id=novel_id,
                    chapter_number=chapter_number,
                    chapter_title=chapter_title,
                    content=content or "",
                    config=config,
                )
                self._failures[key] = failed
            failed.retry_count += 1
            failed.failures.append(message)
            failed.last_failure = datetime.now()

            eligible = failed.retry_count < self.max_retries and usable
            if eligible:
                sequence = next(self._sequence)
                self._pending[key] = sequence
                heapq.heappush(self._heap, (self._clock() + self.retry_delay, sequence, key))
                failed.scheduled = True
                self._wakeup.notify_all()
            else:
                self._pending.pop(key, None)
                failed.scheduled = False
            snapshot = failed.model_copy(deep=True)

        logger.warning(
            "extraction failure recorded novel_id=%s chapter=%s failures=%d error=%s",
            novel_id,
            chapter_number,
            snapshot.retry_count,
            message,
        )
        if eligible:
            logger.info(
                "extraction retry scheduled novel_id=%s chapter=%s delay_seconds=%.1f",
                novel_id,
                chapter_number,
                self.retry_delay,
            )
            if self._autostart:
                self.start()
        elif not usable:
            logger.error(
                "extraction retry abandoned novel_id=%s chapter=%s reason=invalid_config",
                novel_id,
                chapter_number,
            )
        else:
            logger.error(
                "extraction retry abandoned novel_id=%s chapter=%s reason=max_retries failures=%d",
                novel_id,
                chapter_number,
                snapshot.retry_count,
            )
        return snapshot

    def _run_job(self, key: str) -> bool:
        with self._lock:
            failed = self._failures.get(key)
            if failed is None:
                return False
            failed.scheduled = False
            job = failed.model_copy()

        if not self._config_usable(job.config):
            logger.error(
                "extraction retry skipped novel_id=%s chapter=%s reason=invalid_config",
                job.novel_id,
                job.chapter_number,
            )
            return False

        logger.info(
            "extraction retry running novel_id=%s chapter=%s attempt=%d",
            job.novel_id,
            job.chapter_number,
            job.retry_count,
        )
        try:
            self.extractor.extract_and_save(
                job.novel_id,
                job.chapter_number,
                job.chapter_title,
                job.content,
                job.config,
            )
        except Exception as exc:
            logger.warning(
                "extraction retry failed novel_id=%s chapter=%s error=%s",
                job.novel_id,
                job.chapter_number,
                exc,
            )
            self.record_failure(
                job.novel_id,
                job.chapter_number,
                job.chapter_title,
                job.content,
                job.config,
                exc,
            )
            return False

        with self._lock:
            self._failures.pop(key, None)
            self._pending.pop(key, None)
        logger.info("extraction retry succeeded novel_id=%s chapter=%s", job.novel_id, job.chapter_number)
        return True

    def run_pending(self, now: Optional[float] = None) -> int:
        """Run every queued retry due at ``now`` on the calling thread; returns how many ran."""
        current = self._clock() if now is None else now
        ran = 0
        while True:
            with self._lock:
                if not self._heap or self._heap[0][0] > current:
                    break
                key = self._pop_due_locked()
            if key is None:
                continue
            self._run_job(key)
            ran += 1
        return ran

    # ------------------------------------------------------------------
    # public entry points
    # ------------------------------------------------------------------

    def extract_with_retry(
        self,
        novel_id: int,
        chapter_number: int,
        chapter_title: Optional[str],
        content: Optional[str],
        config: Optional[LLMConfig] = None,
    ) -> Union[ExtractionOutcome, FailedExtraction]:
        """
        Run extraction; configuration errors propagate, anything else is recorded for retry.

        Returns the extraction outcome, or on failure a snapshot of this
        chapter's failure record (``scheduled`` tells whether a retry is queued).
        """
        try:
            outcome = self.extractor.extract_and_save(novel_id, chapter_number, chapter_title, content, config)
        except ConfigValidationError:
            raise
        except Exception as exc:
            return self.record_failure(novel_id, chapter_number, chapter_title, content, config, exc)
        with self._lock:
            key = failure_key(novel_id, chapter_number)
            self._failures.pop(key, None)
            self._pending.pop(key, None)
        return outcome

    def manual_retry(self, novel_id: int, chapter_number: int) -> bool:
        key = failure_key(novel_id, chapter_number)
        with self._lock:
            if key not in self._failures:
                raise ExtractionNotFoundError(f"no failed extraction recorded for {key}")
            self._pending.pop(key, None)
        logger.info("extraction manual retry novel_id=%s chapter=%s", novel_id, chapter_number)
        return self._run_job(key)

    def get_failed_extractions(self) -> List[Dict[str, Any]]:
        with self._lock:
            records = [failed.model_copy(deep=True) for failed in self._failures.values()]
        records.sort(key=lambda f: (f.novel_id, f.chapter_number))
        return [
            {
                "key": failed.key,
                "novelId": failed.novel_id,
                "chapterNumber": failed.chapter_number,
                "chapterTitle": failed.chapter_title,
                "retryCount": failed.retry_count,
                "lastFailure": failed.last_failure.isoformat() if failed.last_failure else None,
                "failures": list(failed.failures),
                "scheduled": failed.scheduled,
            }
            for failed in records
        ]

    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)
