"""Graph store contract, exercised against both backends."""

import random
import shutil
import tempfile
import unittest
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path

from memory import InMemoryGraphStore, SQLiteGraphStore
from models import (
    CharacterArcEntity,
    CharacterProfileEntity,
    ConflictArcEntity,
    EventEntity,
    ForeshadowEntity,
    LedgerKind,
    NarrativeBeatEntity,
    PerspectiveUsageEntity,
    PlotlineEntity,
    WorldRuleEntity,
)

NOVEL = 1


def _event(event_id, chapter, **props):
    importance = props.pop("importance_score", None)
    return EventEntity.from_properties(event_id, chapter, props, importance_score=importance)


def _beat(chapter, beat_type):
    return NarrativeBeatEntity.from_properties(f"beat_auto_{chapter}", chapter, {"beatType": beat_type})


class GraphStoreContract:
    """Mixed into a TestCase that provides ``make_store``."""

    def make_store(self):
        raise NotImplementedError

    def setUp(self):
        self.store = self.make_store()

    # ------------------------------------------------------------------
    # ledger guard and rollback
    # ------------------------------------------------------------------

    def test_lin_chen_rollback_example(self):
        self.store.upsert_character_state(NOVEL, "Lin Chen", location="Sect Gate", chapter_number=5)
        self.store.upsert_character_state(NOVEL, "Lin Chen", location="Capital", chapter_number=9)
        self.assertEqual(self.store.get_character_state(NOVEL, "Lin Chen").location, "Capital")

        result = self.store.delete_chapter_entities(NOVEL, 9)
        self.assertTrue(result.ok)
        state = self.store.get_character_state(NOVEL, "Lin Chen")
        self.assertEqual(state.location, "Sect Gate")
        self.assertEqual(state.last_updated_chapter, 5)

        self.store.delete_chapter_entities(NOVEL, 5)
        self.assertIsNone(self.store.get_character_state(NOVEL, "Lin Chen"))

    def test_relationship_rollback_restores_snapshot(self):
        self.store.upsert_relationship_state(NOVEL, "林辰", "苏瑶", relation_type="ALLY", strength=0.3, chapter_number=2)
        self.store.upsert_relationship_state(NOVEL, "苏瑶", "林辰", relation_type="ENEMY", strength=0.9, chapter_number=6)

        result = self.store.delete_chapter_entities(NOVEL, 6)
        self.assertEqual(result.details["restored"], 1)
        state = self.store.get_relationship_state(NOVEL, "林辰", "苏瑶")
        self.assertEqual(state.type, "ALLY")
        self.assertAlmostEqual(state.strength, 0.3)
        self.assertEqual(state.last_updated_chapter, 2)

        self.store.delete_chapter_entities(NOVEL, 2)
        self.assertIsNone(self.store.get_relationship_state(NOVEL, "林辰", "苏瑶"))

    def test_quest_rollback_restores_snapshot(self):
        self.store.upsert_open_quest(NOVEL, "q1", description="d1", last_updated_chapter=2)
        self.store.upsert_open_quest(NOVEL, "q1", description="d2", last_updated_chapter=6)
        self.store.resolve_open_quest(NOVEL, "q1", 6)

        self.store.delete_chapter_entities(NOVEL, 6)
        quest = self.store.get_open_quest(NOVEL, "q1")
        self.assertEqual(quest.description, "d1")
        self.assertEqual(quest.status.value, "OPEN")
        self.assertIsNone(quest.resolved_chapter)
        self.assertEqual(quest.introduced_chapter, 2)
        self.assertEqual(quest.last_updated_chapter, 2)
        self.assertEqual([q.id for q in self.store.get_open_quests(NOVEL, current_chapter=3)], ["q1"])

    def test_stale_chapter_write_is_skipped(self):
        self.store.upsert_character_state(NOVEL, "林辰", location="京城", chapter_number=9)
        result = self.store.upsert_character_state(NOVEL, "林辰", location="山门", chapter_number=4)
        self.assertTrue(result.ok)
        self.assertFalse(result.applied)
        state = self.store.get_character_state(NOVEL, "林辰")
        self.assertEqual(state.location, "京城")
        self.assertEqual(state.last_updated_chapter, 9)
        self.assertEqual(self.store.get_history(NOVEL, LedgerKind.CHARACTER, "林辰"), [])

    def test_overwrite_pushes_history_snapshot(self):
        self.store.upsert_character_state(NOVEL, "林辰", location="山门", chapter_number=2)
        self.store.upsert_character_state(NOVEL, "林辰", realm="筑基", chapter_number=3)
        history = self.store.get_history(NOVEL, LedgerKind.CHARACTER, "林辰")
        self.assertEqual(len(history), 1)
        self.assertEqual(history[0].chapter_number, 2)
        self.assertEqual(history[0].snapshot["location"], "山门")
        state = self.store.get_character_state(NOVEL, "林辰")
        # absent fields keep their previous value
        self.assertEqual(state.location, "山门")
        self.assertEqual(state.realm, "筑基")

    def test_historical_chapter_delete_is_noop(self):
        self.store.upsert_character_state(NOVEL, "林辰", location="山门", chapter_number=5)
        self.store.upsert_character_state(NOVEL, "林辰", location="京城", chapter_number=9)
        result = self.store.delete_chapter_entities(NOVEL, 5)
        self.assertTrue(result.ok)
        self.assertFalse(result.applied)
        state = self.store.get_character_state(NOVEL, "林辰")
        self.assertEqual(state.location, "京城")
        self.assertEqual(state.last_updated_chapter, 9)

    def test_relationship_pair_is_canonical(self):
        self.store.upsert_relationship_state(NOVEL, "苏瑶", "林辰", relation_type="ALLY", strength=0.7, chapter_number=3)
        self.store.upsert_relationship_state(NOVEL, "林辰", "苏瑶", strength=0.9, chapter_number=4)
        forward = self.store.get_relationship_state(NOVEL, "林辰", "苏瑶")
        backward = self.store.get_relationship_state(NOVEL, "苏瑶", "林辰")
        self.assertEqual(forward, backward)
        self.assertEqual((forward.a, forward.b), ("林辰", "苏瑶") if "林辰" <= "苏瑶" else ("苏瑶", "林辰"))
        self.assertEqual(forward.type, "ALLY")
        self.assertAlmostEqual(forward.strength, 0.9)
        self.assertEqual(len(self.store.get_top_relationships(NOVEL)), 1)

    def test_self_relationship_is_a_failed_mutation(self):
        result = self.store.upsert_relationship_state(NOVEL, "林辰", "林辰", chapter_number=1)
        self.assertFalse(result.ok)
        self.assertIn("invalid relationship pair", result.error)
        self.assertEqual(self.store.stats.failed, 1)
        self.assertGreater(self.store.stats.error_rate, 0.0)

    def test_quest_lifecycle(self):
        self.store.upsert_open_quest(NOVEL, "q_token", description="找回令牌", due_by_chapter=12, last_updated_chapter=4)
        self.store.upsert_open_quest(NOVEL, "q_old", description="过期任务", due_by_chapter=2, last_updated_chapter=1)
        open_ids = [q.id for q in self.store.get_open_quests(NOVEL, current_chapter=5)]
        self.assertEqual(open_ids, ["q_token"])

        self.store.resolve_open_quest(NOVEL, "q_token", 7)
        quest = self.store.get_open_quest(NOVEL, "q_token")
        self.assertEqual(quest.status.value, "RESOLVED")
        self.assertEqual(quest.resolved_chapter, 7)
        self.assertEqual(self.store.get_open_quests(NOVEL, current_chapter=8), [])

    def test_resolve_missing_quest_is_not_applied(self):
        result = self.store.resolve_open_quest(NOVEL, "nope", 3)
        self.assertTrue(result.ok)
        self.assertFalse(result.applied)
        self.assertIsNone(self.store.get_open_quest(NOVEL, "nope"))

    def test_delete_chapter_drops_quests_introduced_there(self):
        self.store.upsert_open_quest(NOVEL, "q1", description="旧任务", last_updated_chapter=3)
        self.store.upsert_open_quest(NOVEL, "q2", description="新任务", last_updated_chapter=6)
        self.store.delete_chapter_entities(NOVEL, 6)
        self.assertIsNotNone(self.store.get_open_quest(NOVEL, "q1"))
        self.assertIsNone(self.store.get_open_quest(NOVEL, "q2"))

    def test_complete_state_and_inventory(self):
        self.store.upsert_character_state_complete(
            NOVEL,
            "林辰",
            {"location": "山门", "affiliation": "青云宗", "keyItems": "玉佩、残剑", "ignored": "x"},
            3,
        )
        state = self.store.get_character_state(NOVEL, "林辰")
        self.assertEqual(state.affiliation, "青云宗")
        self.assertEqual(state.key_items, ["玉佩", "残剑"])
        self.assertTrue(state.alive)

        self.store.update_character_inventory(NOVEL, "林辰", ["丹药"], 4)
        self.assertEqual(self.store.get_character_state(NOVEL, "林辰").inventory, ["丹药"])

    def test_delete_ledger_record_removes_history(self):
        self.store.upsert_character_state(NOVEL, "林辰", location="山门", chapter_number=1)
        self.store.upsert_character_state(NOVEL, "林辰", location="京城", chapter_number=2)
        result = self.store.delete_character_state(NOVEL, "林辰")
        self.assertTrue(result.applied)
        self.assertIsNone(self.store.get_character_state(NOVEL, "林辰"))
        self.assertEqual(self.store.get_history(NOVEL, LedgerKind.CHARACTER, "林辰"), [])

    # ------------------------------------------------------------------
    # entities and queries
    # ------------------------------------------------------------------

    def test_event_scene_presence_updates_character_state(self):
        self.store.add_entity(
            NOVEL,
            _event("e1", 3, summary="入城", location="京城", onSceneParticipants="林辰，苏瑶", mentionedOnlyParticipants=["老者"]),
        )
        self.assertEqual(self.store.get_character_state(NOVEL, "林辰").location, "京城")
        self.assertEqual(self.store.get_character_state(NOVEL, "苏瑶").location, "京城")
        self.assertIsNone(self.store.get_character_state(NOVEL, "老者"))

    def test_relevant_events_follow_causal_paths(self):
        self.store.add_entity(NOVEL, _event("e3", 3, summary="师父中毒", importance_score=0.6))
        self.store.add_entity(NOVEL, _event("e4", 4, summary="无关插曲", importance_score=0.9))
        self.store.add_entity(NOVEL, _event("e5", 5, summary="寻找解药"))
        self.assertTrue(self.store.add_relationship(NOVEL, "e3", "causes", "e5").applied)

        events = self.store.get_relevant_events(NOVEL, 5, 10)
        self.assertEqual([e.id for e in events], ["e3"])
        self.assertAlmostEqual(events[0].relevance_score, 1 / 3 + 10 + 0.6 * 20)
        self.assertEqual(events[0].causal_to, ["e5"])
        self.assertEqual(events[0].source, "第3章")

    def test_relevant_events_fallback_without_anchor(self):
        for chapter in (1, 2, 3):
            self.store.add_entity(NOVEL, _event(f"e{chapter}", chapter, summary=f"事件{chapter}"))
        events = self.store.get_relevant_events(NOVEL, 9, 2)
        self.assertEqual([e.id for e in events], ["e3", "e2"])

    def test_relationship_with_missing_endpoint_is_skipped(self):
        self.store.add_entity(NOVEL, _event("e1", 1))
        result = self.store.add_relationship(NOVEL, "e1", "CAUSES", "ghost")
        self.assertTrue(result.ok)
        self.assertFalse(result.applied)

    def test_relationship_type_is_sanitised(self):
        self.store.add_relationship(NOVEL, "林辰", "RELATIONSHIP", "苏瑶", {"type": "ALLY", "strength": 0.8})
        self.store.add_entity(NOVEL, _event("a", 1))
        self.store.add_entity(NOVEL, _event("b", 2))
        self.store.add_relationship(NOVEL, "a", "triggered-by!", "b")
        types = {edge["type"] for edge in self.store.get_all_graph_data(NOVEL)["edges"]}
        self.assertIn("TRIGGEREDBY", types)
        rels = self.store.get_character_relationships(NOVEL, "苏瑶")
        self.assertEqual(len(rels), 1)
        self.assertEqual(rels[0].properties()["to"], "林辰")

    def test_unresolved_foreshadows_filtering(self):
        entities = [
            ForeshadowEntity.from_properties("f_low", 1, {"content": "旧伤", "importance": "low"}),
            ForeshadowEntity.from_properties("f_high", 2, {"content": "玉佩", "importance": "high"}),
            ForeshadowEntity.from_properties("f_done", 2, {"content": "密信", "status": "revealed"}),
            ForeshadowEntity.from_properties("f_far", 2, {"content": "远期", "plannedRevealChapter": 40}),
            ForeshadowEntity.from_properties("f_new", 6, {"content": "本章"}),
        ]
        self.store.add_entities(NOVEL, entities)
        ids = [f.id for f in self.store.get_unresolved_foreshadows(NOVEL, 6, 10)]
        self.assertEqual(ids, ["f_high", "f_low"])

    def test_world_rules_ordering(self):
        self.store.add_entities(
            NOVEL,
            [
                WorldRuleEntity.from_properties("r_misc", 1, {"content": "杂项", "category": "misc"}),
                WorldRuleEntity.from_properties("r_power", 1, {"content": "境界", "category": "power_system"}),
                WorldRuleEntity.from_properties(
                    "r_later", 1, {"content": "后期", "scope": "local", "applicableChapter": 20}
                ),
            ],
        )
        ids = [r.id for r in self.store.get_world_rules(NOVEL, 5, 10)]
        self.assertEqual(ids, ["r_power", "r_misc"])

    def test_plotline_status(self):
        self.store.add_entity(NOVEL, PlotlineEntity.from_properties("pl_main", 1, {"name": "复仇", "priority": 0.9}))
        self.store.add_entity(NOVEL, _event("e2", 2, plotlineId="pl_main"))
        plotlines = self.store.get_plotline_status(NOVEL, 20, 5)
        self.assertEqual(len(plotlines), 1)
        self.assertEqual(plotlines[0].status, "久未推进")
        self.assertEqual(plotlines[0].idle_duration, 18)
        self.assertEqual(plotlines[0].event_count, 1)

    def test_narrative_rhythm_conflict_fatigue(self):
        for chapter, beat in enumerate(["主线推进", "CONFLICT", "冲突升级", "高潮爆发"], start=1):
            self.store.add_entity(NOVEL, _beat(chapter, beat))
        report = self.store.get_narrative_rhythm(NOVEL, 5, 6)
        self.assertEqual([b.chapter_number for b in report["recentBeats"]], [1, 2, 3, 4])
        self.assertTrue(report["metrics"]["conflictFatigue"])
        self.assertEqual(report["metrics"]["consecutiveConflict"], 3)

    def test_one_beat_per_chapter(self):
        self.store.add_entity(NOVEL, NarrativeBeatEntity.from_properties("beat_a", 2, {"beatType": "PLOT"}))
        self.store.add_entity(NOVEL, NarrativeBeatEntity.from_properties("beat_b", 2, {"beatType": "RELIEF"}))
        self.assertEqual(self.store.get_graph_statistics(NOVEL).get("NarrativeBeatCount"), 1)

    def test_arcs_ranked_and_terminal_dropped(self):
        self.store.add_entities(
            NOVEL,
            [
                ConflictArcEntity.from_properties("c1", 1, {"name": "宗门之争", "urgency": 0.4}),
                ConflictArcEntity.from_properties("c2", 2, {"name": "血仇", "urgency": 0.9}),
                ConflictArcEntity.from_properties("c3", 2, {"name": "旧怨", "stage": "解决"}),
                CharacterArcEntity.from_properties("a1", 1, {"characterName": "林辰", "progress": 3, "totalBeats": 3}),
                CharacterArcEntity.from_properties("a2", 2, {"characterName": "苏瑶", "priority": 0.7}),
            ],
        )
        self.assertEqual([a.id for a in self.store.get_active_conflict_arcs(NOVEL, 5)], ["c2", "c1"])
        self.assertEqual([a.id for a in self.store.get_character_arc_status(NOVEL, 5)], ["a2"])

    def test_perspective_history_adds_switch_hint(self):
        for chapter in (1, 2, 3):
            self.store.add_entity(
                NOVEL,
                PerspectiveUsageEntity.from_properties(f"perspective_{chapter}", chapter, {"characterName": "林辰"}),
            )
        history = self.store.get_perspective_history(NOVEL, 4, 5)
        self.assertEqual(history[0].type, "PerspectiveRecommendation")
        self.assertIn("林辰", history[0].properties()["recommendation"])
        self.assertEqual(len(history), 4)

    def test_events_by_causality_and_conflict_history(self):
        self.store.add_entities(
            NOVEL,
            [
                _event("e1", 1, participants=["林辰", "赵烈"], emotionalTone="conflict"),
                _event("e2", 2, participants=["林辰", "赵烈"], emotionalTone="calm"),
                _event("e3", 3, participants="林辰,赵烈", tags=["conflict"]),
            ],
        )
        self.store.add_relationship(NOVEL, "e1", "CAUSES", "e2")
        self.store.add_relationship(NOVEL, "e2", "CAUSES", "e3")
        chain = self.store.get_events_by_causality(NOVEL, "e1", 3)
        self.assertEqual([(e.id, e.extras["causalDistance"]) for e in chain], [("e2", 1), ("e3", 2)])

        history = self.store.get_conflict_history(NOVEL, "林辰", "赵烈")
        self.assertEqual([e.id for e in history], ["e1", "e3"])

        by_character = self.store.get_events_by_character(NOVEL, "赵烈", 3, 8)
        self.assertEqual({e.id for e in by_character}, {"e1", "e2"})

    def test_unknown_properties_survive_in_extras(self):
        self.store.add_entity(NOVEL, _event("e1", 1, summary="x", moodColor="crimson"))
        nodes = self.store.get_all_graph_data(NOVEL)["nodes"]
        event = next(node for node in nodes if node["id"] == "e1")
        self.assertEqual(event["properties"]["moodColor"], "crimson")

    def test_character_profiles_newest_first(self):
        self.store.add_entity(NOVEL, CharacterProfileEntity.from_properties("p1", 1, {"name": "林辰"}))
        self.store.add_entity(NOVEL, CharacterProfileEntity.from_properties("p2", 4, {"name": "苏瑶"}))
        self.assertEqual([p.id for p in self.store.get_character_profiles(NOVEL, 10)], ["p2", "p1"])

    # ------------------------------------------------------------------
    # chapter cleanup
    # ------------------------------------------------------------------

    def test_delete_chapter_removes_chapter_scoped_entities(self):
        self.store.add_entity(NOVEL, _event("e4", 4))
        self.store.add_entity(NOVEL, _beat(4, "PLOT"))
        self.store.add_entity(NOVEL, PerspectiveUsageEntity.from_properties("perspective_4", 4, {"characterName": "林辰"}))
        self.store.add_entity(NOVEL, ForeshadowEntity.from_properties("f4", 4, {"content": "伏笔"}))
        self.store.add_entity(NOVEL, WorldRuleEntity.from_properties("r4", 4, {"content": "规则"}))
        self.store.add_summary_signals(NOVEL, 4, {"faction:青云宗": "{}"})

        result = self.store.delete_chapter_entities(NOVEL, 4)
        self.assertEqual(result.details["entitiesDeleted"], 4)
        stats = self.store.get_graph_statistics(NOVEL)
        self.assertEqual(stats["totalEntities"], 1)
        self.assertEqual(stats.get("WorldRuleCount"), 1)
        self.assertEqual(self.store.get_summary_signals(NOVEL, 4), [])

    def test_force_delete_ignores_historical_guard(self):
        self.store.upsert_character_state(NOVEL, "林辰", location="山门", chapter_number=5)
        self.store.upsert_character_state(NOVEL, "苏瑶", location="京城", chapter_number=9)
        self.store.add_entity(NOVEL, ConflictArcEntity.from_properties("c5", 5, {"name": "争斗"}))
        result = self.store.force_delete_chapter_range(NOVEL, [5])
        self.assertTrue(result.ok)
        self.assertIsNone(self.store.get_character_state(NOVEL, "林辰"))
        self.assertIsNotNone(self.store.get_character_state(NOVEL, "苏瑶"))
        self.assertEqual(self.store.get_active_conflict_arcs(NOVEL, 6), [])

    def test_clear_graph_is_per_novel(self):
        self.store.add_entity(NOVEL, _event("e1", 1))
        self.store.add_entity(2, _event("e1", 1))
        self.store.clear_graph(NOVEL)
        self.assertEqual(self.store.get_graph_statistics(NOVEL)["totalEntities"], 0)
        self.assertEqual(self.store.get_graph_statistics(2)["totalEntities"], 1)

    def test_statistics_report_backend_and_error_rate(self):
        self.store.add_entity(NOVEL, _event("e1", 1))
        stats = self.store.get_graph_statistics(NOVEL)
        self.assertEqual(stats["backend"], self.store.backend_name)
        self.assertEqual(stats["EventCount"], 1)
        self.assertEqual(stats["mutationErrorRate"], 0.0)
        self.assertTrue(self.store.is_available())

    # ------------------------------------------------------------------
    # concurrent writers
    # ------------------------------------------------------------------

    def test_concurrent_upserts_keep_newest_chapter(self):
        names = [f"角色{i}" for i in range(10)]
        jobs = [(name, chapter) for name in names for chapter in range(1, 21)]
        random.Random(7).shuffle(jobs)

        def write(job):
            name, chapter = job
            return self.store.upsert_character_state(NOVEL, name, location=f"loc{chapter}", chapter_number=chapter)

        with ThreadPoolExecutor(max_workers=16) as pool:
            results = list(pool.map(write, jobs))

        self.assertEqual(len(results), 200)
        self.assertTrue(all(r.ok for r in results))
        self.assertEqual(self.store.stats.failed, 0)
        for name in names:
            state = self.store.get_character_state(NOVEL, name)
            self.assertEqual(state.last_updated_chapter, 20)
            self.assertEqual(state.location, "loc20")
            chapters = [s.chapter_number for s in self.store.get_history(NOVEL, LedgerKind.CHARACTER, name)]
            self.assertTrue(all(c < 20 for c in chapters))

    def test_concurrent_relationship_writes_on_one_pair(self):
        chapters = list(range(1, 31))
        random.Random(11).shuffle(chapters)

        def write(chapter):
            pair = ("林辰", "苏瑶") if chapter % 2 else ("苏瑶", "林辰")
            return self.store.upsert_relationship_state(
                NOVEL, *pair, strength=chapter / 100, chapter_number=chapter
            )

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(write, chapters))

        self.assertTrue(all(r.ok for r in results))
        state = self.store.get_relationship_state(NOVEL, "林辰", "苏瑶")
        self.assertEqual(state.last_updated_chapter, 30)
        self.assertAlmostEqual(state.strength, 0.3)


class InMemoryGraphStoreTest(GraphStoreContract, unittest.TestCase):
    def make_store(self):
        return InMemoryGraphStore()


class SQLiteGraphStoreTest(GraphStoreContract, unittest.TestCase):
    def make_store(self):
        self.tmp = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmp, True)
        return SQLiteGraphStore(str(Path(self.tmp) / "graph.db"))

    def test_data_survives_reopen(self):
        self.store.upsert_character_state(NOVEL, "林辰", location="山门", chapter_number=5)
        self.store.add_entity(NOVEL, _event("e5", 5, summary="入门"))
        reopened = SQLiteGraphStore(str(self.store.db_path))
        self.assertEqual(reopened.get_character_state(NOVEL, "林辰").location, "山门")
        self.assertEqual(reopened.get_graph_statistics(NOVEL)["EventCount"], 1)


if __name__ == "__main__":
    unittest.main()
