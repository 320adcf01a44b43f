import json
import shutil
import tempfile
import unittest
from pathlib import Path

from core.llm_client import LLMConfig, LLMProvider
from memory import InMemoryGraphStore
from models import EventEntity, ToolExecutionError, ToolNotFoundError, WorldRuleEntity
from services.content_source import FileContentSource
from agents.tools import (
    build_tool_registry,
    int_arg,
    profile_entity_id,
    tool_result_to_json,
)

EXPECTED_TOOLS = {
    "getOutline",
    "getVolumeBlueprint",
    "getRecentChapters",
    "getRelevantEvents",
    "getWorldRules",
    "getUnresolvedForeshadows",
    "getNarrativeRhythm",
    "getPlotlineStatus",
    "getConflictArcStatus",
    "getCharacterArcStatus",
    "getPerspectiveHistory",
    "getCharacterProfiles",
    "getCharacterRelationships",
    "getEventsByCharacter",
    "getEventsByCausality",
    "getConflictHistory",
    "generateCharacterProfile",
}


class ProfileLLM:
    def __init__(self, reply):
        self.config = LLMConfig(provider=LLMProvider.OPENAI, api_key="test-key", model="fake")
        self.reply = reply
        self.calls = []
        self.configs = []

    def generate(self, messages, task_tag="", config=None, **kwargs):
        self.calls.append(task_tag)
        self.configs.append(config)
        return self.reply


class ToolRegistryTest(unittest.TestCase):
    def setUp(self):
        self.root = Path(tempfile.mkdtemp(prefix="novel-tools-"))
        self.addCleanup(shutil.rmtree, self.root, ignore_errors=True)
        (self.root / "core_settings.md").write_text("世界观：九州\n力量体系：九重境", encoding="utf-8")
        chapters = self.root / "chapters"
        chapters.mkdir()
        for number in range(1, 6):
            (chapters / f"{number:04d}.md").write_text(f"# 第{number}回\n正文{number}", encoding="utf-8")
        (self.root / "volumes.yaml").write_text(
            "- volumeNumber: 1\n  title: 入门\n  startChapter: 1\n  endChapter: 20\n  blueprint: 拜师学艺\n",
            encoding="utf-8",
        )

        self.store = InMemoryGraphStore()
        self.llm = ProfileLLM(json.dumps({"name": "苏瑶", "role": "医者", "goal": "救人"}, ensure_ascii=False))
        self.registry = build_tool_registry(self.store, FileContentSource(str(self.root)), self.llm)

    def test_registry_exposes_all_tools(self):
        self.assertEqual(self.registry.get_all_tool_names(), EXPECTED_TOOLS)
        definitions = {d.name: d for d in self.registry.get_all_definitions()}
        self.assertTrue(definitions["getOutline"].required)
        self.assertEqual(definitions["getOutline"].parameters["required"], ["novelId"])
        self.assertEqual(
            definitions["getConflictHistory"].parameters["required"],
            ["novelId", "protagonistName", "antagonistName"],
        )
        self.assertFalse(definitions["getConflictHistory"].required)

    def test_unknown_tool(self):
        with self.assertRaises(ToolNotFoundError):
            self.registry.execute_tool("getWeather", {"novelId": 1})

    def test_missing_required_argument(self):
        with self.assertRaises(ToolExecutionError) as ctx:
            self.registry.execute_tool("getRelevantEvents", {"novelId": 1})
        self.assertIn("chapterNumber", str(ctx.exception))
        with self.assertRaises(ToolExecutionError):
            self.registry.execute_tool("getCharacterRelationships", {"novelId": 1, "characterName": "  "})

    def test_int_arg_coercion(self):
        self.assertEqual(int_arg({"n": "7"}, "n"), 7)
        self.assertEqual(int_arg({"n": 3.0}, "n"), 3)
        self.assertEqual(int_arg({}, "n", 5), 5)
        with self.assertRaises(ToolExecutionError):
            int_arg({"n": True}, "n")
        with self.assertRaises(ToolExecutionError):
            int_arg({"n": "abc"}, "n")

    def test_outline_and_blueprint(self):
        outline = self.registry.execute_tool("getOutline", {"novelId": 1})
        self.assertEqual(outline["type"], "core_settings")
        blueprint = self.registry.execute_tool("getVolumeBlueprint", {"novelId": 1, "chapterNumber": 6})
        self.assertEqual(blueprint["volumeTitle"], "入门")
        self.assertEqual(blueprint["progressDescription"], "本卷第6/20章")

    def test_recent_chapters_accepts_chapter_number(self):
        result = self.registry.execute_tool("getRecentChapters", {"novelId": 1, "chapterNumber": 6})
        numbers = [c["chapterNumber"] for c in result["recentFullChapters"]]
        self.assertEqual(numbers, [5, 4, 3])
        self.assertEqual([s["chapterNumber"] for s in result["recentSummaries"]], [1, 2])

    def test_world_rules_without_chapter(self):
        self.store.add_entity(
            1,
            WorldRuleEntity.from_properties("rule_g", 3, {"name": "境界", "content": "九重", "scope": "global"}),
        )
        rules = self.registry.execute_tool("getWorldRules", {"novelId": 1})
        self.assertEqual([r.id for r in rules], ["rule_g"])

    def test_graph_tool_result_renders_json(self):
        self.store.add_entity(
            1,
            EventEntity.from_properties(
                "e1", 2, {"summary": "入京", "participants": ["林辰"]}, importance_score=0.9
            ),
        )
        events = self.registry.execute_tool("getRelevantEvents", {"novelId": 1, "chapterNumber": 3, "limit": "4"})
        rendered = json.loads(tool_result_to_json(events))
        self.assertEqual(rendered[0]["id"], "e1")
        self.assertEqual(rendered[0]["type"], "Event")

    def test_generate_profile_persists_entity(self):
        profile = self.registry.execute_tool(
            "generateCharacterProfile",
            {"novelId": 1, "characterName": "苏瑶", "role": "主角伙伴", "chapterNumber": 4},
        )
        self.assertEqual(profile["goal"], "救人")
        self.assertEqual(profile["requestedRole"], "主角伙伴")
        self.assertEqual(self.llm.calls, ["character_profile"])

        listed = self.registry.execute_tool("getCharacterProfiles", {"novelId": 1})
        self.assertEqual(len(listed), 1)
        self.assertEqual(listed[0]["id"], profile_entity_id("苏瑶"))
        self.assertEqual(listed[0]["role"], "医者")

    def test_generate_profile_uses_run_model_config(self):
        run_config = LLMConfig(provider=LLMProvider.DEEPSEEK, api_key="run-key", model="deepseek-chat")
        self.registry.execute_tool("generateCharacterProfile", {"novelId": 1, "characterName": "苏瑶"}, run_config)
        self.assertIs(self.llm.configs[-1], run_config)

        # graph tools ignore the model config
        rules = self.registry.execute_tool("getWorldRules", {"novelId": 1}, run_config)
        self.assertEqual(rules, [])

    def test_generate_profile_unparseable_reply(self):
        self.llm.reply = "我拒绝"
        with self.assertRaises(ToolExecutionError):
            self.registry.execute_tool("generateCharacterProfile", {"novelId": 1, "characterName": "苏瑶"})

    def test_profile_entity_id(self):
        self.assertEqual(profile_entity_id("Lin  Chen"), "CharacterProfile:lin_chen")


if __name__ == "__main__":
    unittest.main()
