import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import MagicMock

from memory import InMemoryGraphStore
from models import EventEntity
from services.content_source import FileContentSource
from services.diagnostics import DiagnosticsService


class DiagnosticsServiceTest(unittest.TestCase):
    def setUp(self):
        self.root = Path(tempfile.mkdtemp(prefix="novel-diag-"))
        self.addCleanup(shutil.rmtree, self.root, ignore_errors=True)
        self.store = InMemoryGraphStore()
        self.content = FileContentSource(str(self.root))

    def _write_outline(self, chars):
        (self.root / "core_settings.md").write_text("设" * chars, encoding="utf-8")

    def _write_volumes(self):
        (self.root / "volumes.yaml").write_text(
            "- {volumeNumber: 1, title: 起, startChapter: 1, endChapter: 50}\n", encoding="utf-8"
        )

    def test_healthy_with_good_material(self):
        self._write_outline(1200)
        self._write_volumes()
        self.store.add_entity(1, EventEntity.from_properties("e1", 1, {"summary": "开端"}))

        report = DiagnosticsService(self.store, content=self.content).diagnose(1)

        self.assertEqual(report["healthStatus"], "HEALTHY")
        self.assertEqual(report["warnings"], [])
        self.assertEqual(report["outlineLength"], 1200)
        self.assertEqual(report["volumeCount"], 1)
        self.assertEqual(report["graphStatistics"]["EventCount"], 1)

    def test_warnings_within_tolerance_stay_healthy(self):
        # missing outline and missing volumes: two warnings
        report = DiagnosticsService(self.store, content=self.content).diagnose(1)
        self.assertEqual(len(report["warnings"]), 2)
        self.assertEqual(report["healthStatus"], "HEALTHY")
        self.assertIn("建议先生成完整的小说大纲", report["suggestions"])

    def test_many_warnings_degrade_to_warning(self):
        self._write_outline(20)
        chapters = self.root / "chapters"
        chapters.mkdir()
        for number in range(1, 53):
            (chapters / f"{number:04d}.md").write_text("正文", encoding="utf-8")
        # short outline, no volumes, long novel and a 10% write failure rate
        for chapter in range(1, 10):
            self.store.upsert_character_state(1, "林辰", location="山门", chapter_number=chapter)
        self.store.upsert_relationship_state(1, "林辰", "林辰", chapter_number=9)

        report = DiagnosticsService(self.store, content=self.content).diagnose(1)

        self.assertEqual(len(report["warnings"]), 4)
        self.assertEqual(report["healthStatus"], "WARNING")
        self.assertEqual(report["chapterCount"], 52)
        self.assertEqual(report["estimatedTotalTokens"], 52 * 18000)

    def test_failed_extractions_are_errors(self):
        retry = MagicMock()
        retry.get_failed_extractions.return_value = [
            {"key": "1_4", "novelId": 1, "chapterNumber": 4, "retryCount": 3},
            {"key": "2_1", "novelId": 2, "chapterNumber": 1, "retryCount": 1},
        ]
        retry.pending_count.return_value = 1

        report = DiagnosticsService(self.store, retry=retry).diagnose(1)

        self.assertEqual(report["healthStatus"], "ERROR")
        self.assertEqual(report["failedExtractionCount"], 1)
        self.assertEqual(report["pendingRetries"], 1)
        self.assertEqual(report["errors"], ["有1个章节实体抽取失败"])

    def test_high_mutation_error_rate_is_error(self):
        for _ in range(3):
            self.store.upsert_relationship_state(1, "林辰", "林辰", chapter_number=1)
        report = DiagnosticsService(self.store).diagnose(1)
        self.assertEqual(report["healthStatus"], "ERROR")
        self.assertEqual(report["mutationStats"]["failed"], 3)

    def test_unavailable_store_is_error(self):
        store = MagicMock(wraps=self.store)
        store.is_available.return_value = False
        store.backend_name = "sqlite"
        store.stats = self.store.stats
        report = DiagnosticsService(store).diagnose(1)
        self.assertIn("图谱存储不可用（backend=sqlite）", report["errors"])

    def test_best_practices_copy(self):
        practices = DiagnosticsService.get_best_practices()
        self.assertEqual(set(practices), {"beforeWriting", "duringWriting", "troubleshooting"})
        practices["beforeWriting"].clear()
        self.assertEqual(len(DiagnosticsService.get_best_practices()["beforeWriting"]), 5)


if __name__ == "__main__":
    unittest.main()
