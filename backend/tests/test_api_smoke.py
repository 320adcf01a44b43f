import json
import os
import shutil
import tempfile
import unittest
from pathlib import Path

from fastapi.testclient import TestClient

os.environ["GRAPH_BACKEND"] = "memory"
os.environ["ENABLE_HTTP_LOGGING"] = "true"

from api.main import app, build_services, set_services, settings
from core.llm_client import LLMConfig, LLMProvider
from memory import InMemoryGraphStore
from services.content_source import FileContentSource

CHAPTER_TEXT = "林辰提剑下山，在京城遇见了苏瑶。" * 10

EXTRACTION_REPLY = json.dumps(
    {
        "events": [
            {
                "id": "event_3_1",
                "summary": "林辰下山入京",
                "location": "京城",
                "onSceneParticipants": ["林辰", "苏瑶"],
                "importance": 0.9,
            }
        ],
        "characters": ["林辰", "苏瑶"],
        "narrativeBeat": {"beatType": "PLOT"},
    },
    ensure_ascii=False,
)


class SwitchableLLM:
    def __init__(self):
        self.config = LLMConfig(provider=LLMProvider.OPENAI, api_key="test-key", model="fake")
        self.fail_extraction = False

    def generate(self, messages, task_tag="", config=None, **kwargs):
        if task_tag == "entity_extraction":
            if self.fail_extraction:
                raise RuntimeError("upstream 503")
            return EXTRACTION_REPLY
        if task_tag == "agent_decision":
            return json.dumps({"reasoning": "素材足够", "action": "WRITE", "args": None}, ensure_ascii=False)
        return "ok"


class NarrativeApiSmokeTest(unittest.TestCase):
    def setUp(self):
        self.root = Path(tempfile.mkdtemp(prefix="novel-api-"))
        self.addCleanup(shutil.rmtree, self.root, ignore_errors=True)
        (self.root / "core_settings.md").write_text("世界观：九州", encoding="utf-8")

        self.llm = SwitchableLLM()
        self.services = build_services(
            settings,
            store=InMemoryGraphStore(),
            llm_client=self.llm,
            content=FileContentSource(str(self.root)),
        )
        set_services(self.services)
        self.addCleanup(set_services, None)
        self.client = TestClient(app)

    def _extract(self, novel_id=1, chapter=3, content=CHAPTER_TEXT):
        return self.client.post(
            f"/api/graph/{novel_id}/chapters/{chapter}/extract",
            json={"title": "下山", "content": content},
        )

    def test_health(self):
        res = self.client.get("/api/health")
        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertEqual(body["status"], "healthy")
        self.assertEqual(body["graphBackend"], "memory")
        self.assertTrue(body["graphAvailable"])
        self.assertEqual(body["pendingRetries"], 0)
        self.assertIn("X-Request-ID", res.headers)

    def test_extract_then_query_graph(self):
        res = self._extract()
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json(), {"success": True, "skipped": False, "entityCount": 4, "failedWrites": 0})

        stats = self.client.get("/api/graph/1/statistics").json()
        self.assertEqual(stats["EventCount"], 1)
        self.assertEqual(stats["characterStateCount"], 2)

        data = self.client.get("/api/graph/1").json()
        self.assertEqual(data["backend"], "memory")
        self.assertEqual({n["id"] for n in data["nodes"]}, {"event_3_1", "林辰", "苏瑶", "beat_auto_3"})

    def test_short_content_skipped(self):
        res = self._extract(content="太短")
        self.assertEqual(res.json()["skipped"], True)
        self.assertEqual(res.json()["entityCount"], 0)

    def test_invalid_config_is_bad_request(self):
        self.llm.config = LLMConfig(provider=LLMProvider.OPENAI, api_key="", model="fake")
        res = self._extract()
        self.assertEqual(res.status_code, 400)
        self.assertEqual(self.client.get("/api/diagnostics/failed-extractions").json(), [])

    def test_failed_extraction_listed_and_manually_retried(self):
        self.llm.fail_extraction = True
        res = self._extract(chapter=5)
        self.assertEqual(res.json(), {"success": False, "scheduled": True, "entityCount": 0})

        failed = self.client.get("/api/diagnostics/failed-extractions").json()
        self.assertEqual(len(failed), 1)
        self.assertEqual(failed[0]["key"], "1_5")
        self.assertEqual(failed[0]["failures"], ["model call failed: upstream 503"])

        report = self.client.get("/api/diagnostics/health/1").json()
        self.assertEqual(report["healthStatus"], "ERROR")

        self.llm.fail_extraction = False
        res = self.client.post("/api/diagnostics/retry-extraction", json={"novel_id": 1, "chapter_number": 5})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json(), {"success": True, "message": "重试成功"})
        self.assertEqual(self.client.get("/api/diagnostics/failed-extractions").json(), [])

    def test_retry_unknown_extraction(self):
        res = self.client.post("/api/diagnostics/retry-extraction", json={"novel_id": 1, "chapter_number": 42})
        self.assertEqual(res.status_code, 404)

    def test_delete_chapter_and_clear(self):
        self._extract()
        res = self.client.delete("/api/graph/1/chapters/3")
        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertTrue(body["ok"])
        # event and beat are chapter scoped; character nodes stay
        self.assertEqual(body["details"]["entitiesDeleted"], 2)
        self.assertEqual(body["details"]["deleted"], 2)

        self._extract()
        res = self.client.delete("/api/graph/1")
        self.assertEqual(res.status_code, 200)
        self.assertEqual(self.client.get("/api/graph/1/statistics").json()["totalEntities"], 0)

    def test_plan_chapter(self):
        res = self.client.post("/api/planning/1/chapters/2", json={"user_adjustment": "日常过渡"})
        self.assertEqual(res.status_code, 200)
        body = res.json()
        self.assertEqual(body["outcome"], "WRITE_READY")
        self.assertEqual(body["core_settings"], "世界观：九州")
        self.assertIn("getOutline", body["executed_tools"])
        self.assertEqual(body["chapter_intent"]["primary_focus"], "PLOT_ADVANCEMENT")

    def test_plan_chapter_validation(self):
        self.assertEqual(self.client.post("/api/planning/1/chapters/0", json={}).status_code, 400)
        res = self.client.post("/api/planning/1/chapters/2", json={"user_adjustment": "长" * 2001})
        self.assertEqual(res.status_code, 422)

    def test_best_practices(self):
        res = self.client.get("/api/diagnostics/best-practices")
        self.assertEqual(res.status_code, 200)
        self.assertIn("troubleshooting", res.json())


if __name__ == "__main__":
    unittest.main()
