"""Tests for bounded extraction retries driven by a manual clock."""

import threading
import unittest
from concurrent.futures import ThreadPoolExecutor

from core.llm_client import LLMConfig, LLMProvider
from core.settings import Settings
from memory import InMemoryGraphStore
from models import ConfigValidationError, ExtractionNotFoundError, FailedExtraction
from services.entity_extraction import EntityExtractor
from services.extraction_retry import ExtractionRetryCoordinator, failure_key

CONTENT = "暴雨夜，林辰独自守在山门前。" * 12


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class FlakyLLM:
    """Fails the first ``failures`` calls, then returns an empty extraction."""

    def __init__(self, failures, valid=True):
        self.config = LLMConfig(provider=LLMProvider.OPENAI, api_key="test-key" if valid else "", model="fake")
        self.failures = failures
        self.calls = 0

    def generate(self, messages, task_tag="", config=None, **kwargs):
        self.calls += 1
        if self.calls <= self.failures:
            raise RuntimeError(f"upstream timeout #{self.calls}")
        return '{"events": [{"id": "e_storm", "summary": "守山门", "importance": 0.9}]}'


class TestExtractionRetry(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.settings = Settings(extraction_retry_delay_seconds=30, extraction_max_retries=3)
        self.store = InMemoryGraphStore()

    def _coordinator(self, llm):
        extractor = EntityExtractor(self.store, llm, self.settings)
        return ExtractionRetryCoordinator(extractor, self.settings, clock=self.clock, autostart=False)

    def test_persistent_failure_gets_two_automatic_retries(self):
        llm = FlakyLLM(failures=100)
        retry = self._coordinator(llm)

        failed = retry.extract_with_retry(1, 4, "守夜", CONTENT)
        self.assertIsInstance(failed, FailedExtraction)
        self.assertTrue(failed.scheduled)
        self.assertEqual(failed.retry_count, 1)
        self.assertEqual(retry.pending_count(), 1)

        # nothing is due before the delay elapses
        self.assertEqual(retry.run_pending(), 0)
        self.clock.advance(30)
        self.assertEqual(retry.run_pending(), 1)
        self.clock.advance(30)
        self.assertEqual(retry.run_pending(), 1)
        self.clock.advance(30)
        self.assertEqual(retry.run_pending(), 0)

        self.assertEqual(llm.calls, 3)
        self.assertEqual(retry.pending_count(), 0)
        [record] = retry.get_failed_extractions()
        self.assertEqual(record["key"], failure_key(1, 4))
        self.assertEqual(record["retryCount"], 3)
        self.assertEqual(len(record["failures"]), 3)
        self.assertFalse(record["scheduled"])

    def test_manual_retry_clears_exhausted_record(self):
        llm = FlakyLLM(failures=3)
        retry = self._coordinator(llm)
        retry.extract_with_retry(1, 4, "守夜", CONTENT)
        for _ in range(3):
            self.clock.advance(30)
            retry.run_pending()
        self.assertEqual(len(retry.get_failed_extractions()), 1)

        self.assertTrue(retry.manual_retry(1, 4))
        self.assertEqual(retry.get_failed_extractions(), [])
        self.assertEqual(self.store.get_graph_statistics(1)["EventCount"], 1)

    def test_automatic_retry_success_removes_record(self):
        retry = self._coordinator(FlakyLLM(failures=1))
        retry.extract_with_retry(1, 2, None, CONTENT)
        self.clock.advance(30)
        self.assertEqual(retry.run_pending(), 1)
        self.assertEqual(retry.get_failed_extractions(), [])
        self.assertEqual(retry.pending_count(), 0)

    def test_manual_retry_unknown_key(self):
        retry = self._coordinator(FlakyLLM(failures=0))
        with self.assertRaises(ExtractionNotFoundError):
            retry.manual_retry(9, 9)

    def test_failed_manual_retry_is_recorded_again(self):
        llm = FlakyLLM(failures=100)
        retry = self._coordinator(llm)
        retry.extract_with_retry(1, 4, "守夜", CONTENT)
        self.assertFalse(retry.manual_retry(1, 4))
        [record] = retry.get_failed_extractions()
        self.assertEqual(record["retryCount"], 2)

    def test_invalid_config_is_not_scheduled(self):
        llm = FlakyLLM(failures=100)
        retry = self._coordinator(llm)
        record = retry.record_failure(1, 6, "t", CONTENT, None, RuntimeError("boom"))
        self.assertTrue(record.scheduled)

        bad = LLMConfig(provider=LLMProvider.OPENAI, api_key="", model="fake")
        record = retry.record_failure(1, 7, "t", CONTENT, bad, RuntimeError("boom"))
        self.assertFalse(record.scheduled)
        self.assertEqual(retry.pending_count(), 1)

    def test_config_error_propagates_without_record(self):
        retry = self._coordinator(FlakyLLM(failures=0, valid=False))
        with self.assertRaises(ConfigValidationError):
            retry.extract_with_retry(1, 3, "t", CONTENT)
        self.assertEqual(retry.get_failed_extractions(), [])

    def test_success_clears_previous_failure(self):
        llm = FlakyLLM(failures=1)
        retry = self._coordinator(llm)
        retry.extract_with_retry(1, 5, "t", CONTENT)
        outcome = retry.extract_with_retry(1, 5, "t", CONTENT)
        self.assertEqual(outcome.entity_count, 1)
        self.assertEqual(retry.get_failed_extractions(), [])
        self.clock.advance(30)
        # the stale queued job is discarded, not run
        self.assertEqual(retry.run_pending(), 0)
        self.assertEqual(llm.calls, 2)

    def test_failure_reports_its_own_schedule(self):
        llm = FlakyLLM(failures=100)
        retry = self._coordinator(llm)
        retry.extract_with_retry(1, 4, "守夜", CONTENT)
        retry.manual_retry(1, 4)
        retry.manual_retry(1, 4)
        self.assertTrue(retry.extract_with_retry(1, 5, "t", CONTENT).scheduled)
        self.assertEqual(retry.pending_count(), 1)

        # chapter 4 is exhausted even though chapter 5 still has a queued retry
        failed = retry.extract_with_retry(1, 4, "守夜", CONTENT)
        self.assertFalse(failed.scheduled)
        self.assertEqual(failed.retry_count, 4)


class TestConcurrentFailures(unittest.TestCase):
    def setUp(self):
        self.clock = FakeClock()
        self.llm = FlakyLLM(failures=0)
        extractor = EntityExtractor(InMemoryGraphStore(), self.llm, Settings())
        settings = Settings(extraction_retry_delay_seconds=30, extraction_max_retries=3)
        self.retry = ExtractionRetryCoordinator(extractor, settings, clock=self.clock, autostart=False)

    def _fail(self, chapter_number):
        return self.retry.record_failure(
            1, chapter_number, None, CONTENT, None, RuntimeError(f"timeout {threading.get_ident()}")
        )

    def test_distinct_keys_each_get_one_record(self):
        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(self._fail, range(1, 81)))

        self.assertTrue(all(r.scheduled and r.retry_count == 1 for r in results))
        records = self.retry.get_failed_extractions()
        self.assertEqual([r["chapterNumber"] for r in records], list(range(1, 81)))
        self.assertEqual(self.retry.pending_count(), 80)

    def test_shared_key_counts_every_failure(self):
        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(self._fail, [9] * 40))

        self.assertEqual(sorted(r.retry_count for r in results), list(range(1, 41)))
        self.assertEqual(sum(1 for r in results if r.scheduled), 2)
        [record] = self.retry.get_failed_extractions()
        self.assertEqual(record["retryCount"], 40)
        self.assertEqual(len(record["failures"]), 40)
        self.assertFalse(record["scheduled"])
        self.assertEqual(self.retry.pending_count(), 0)

        # queued entries from the early failures are stale and never run
        self.clock.advance(30)
        self.assertEqual(self.retry.run_pending(), 0)
        self.assertEqual(self.llm.calls, 0)


if __name__ == "__main__":
    unittest.main()
