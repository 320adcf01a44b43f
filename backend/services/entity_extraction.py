"""Chapter entity extraction: prompt contract, parser and the single write path into the graph store."""

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from core.llm_client import LLMClient, LLMConfig
from core.settings import Settings, get_settings
from memory.base import NarrativeGraphStore
from models import (
    ChapterText,
    CharacterArcEntity,
    CharacterEntity,
    ConfigValidationError,
    ConflictArcEntity,
    EventEntity,
    ExtractionError,
    ForeshadowEntity,
    ForeshadowStatus,
    GraphEntity,
    LocationEntity,
    MutationResult,
    NarrativeBeatEntity,
    PerspectiveUsageEntity,
    PlotlineEntity,
    WorldRuleEntity,
    split_names,
)
from utils.text_cleaner import resolve_importance, sanitize_to_strict_json

logger = logging.getLogger("novelist.extraction")

EXTRACTION_TASK_TAG = "entity_extraction"

# ---------------------------------------------------------------------------
# Prompt contract
# ---------------------------------------------------------------------------

EXTRACTION_PROMPT_TEMPLATE = """\
你是一位专业的小说分析助手。请从以下章节中抽取关键实体和信息。

【章节信息】
章节号：第{chapter}章
章节标题：{title}

【章节内容】
{content}

【抽取要求】
请以JSON格式返回以下内容（某类不存在时返回空数组或空对象）：

{{
  "events": [
    {{
      "id": "event_{chapter}_1",
      "summary": "事件摘要（30字内）",
      "description": "事件详细描述",
      "location": "事件发生地点",
      "participants": ["角色A", "角色B"],
      "onSceneParticipants": ["真正出现在当前场景的角色"],
      "mentionedOnlyParticipants": ["只在对话/电话/回忆中被提到的角色"],
      "emotionalTone": "positive/negative/neutral/tense",
      "tags": ["战斗", "对话", "决策"],
      "importance": 0.8
    }}
  ],
  "foreshadows": [
    {{"id": "foreshadow_{chapter}_1", "content": "伏笔内容", "importance": "high/medium/low", "suggestedRevealChapter": {reveal}}}
  ],
  "plotlines": [{{"id": "plotline_主线", "name": "主线名称", "priority": 1.0}}],
  "worldRules": [
    {{
      "id": "rule_power_system",
      "name": "规则名称",
      "content": "规则内容",
      "constraint": "约束说明",
      "category": "power_system/world_setting/character_constraint",
      "importance": 0.9
    }}
  ],
  "characters": ["本章新出现且后续会再登场的具名角色"],
  "locations": ["本章新出现且对后续剧情有持续影响的地点"],
  "causalRelations": [
    {{"from": "event_{chapter}_1", "to": "event_{chapter}_2", "type": "CAUSES", "description": "事件1导致了事件2"}}
  ],
  "characterRelations": [
    {{"from": "角色A", "to": "角色B", "type": "CONFLICT/COOPERATION/ROMANCE/MENTORSHIP/RIVALRY", "strength": 0.8, "description": "关系描述"}}
  ],
  "stateChanges": {{
    "characters": [
      {{"name": "角色名", "alive": true, "location": "当前位置", "realm": "实力等级", "affiliation": "所属势力", "stateDesc": "状态变化简述"}}
    ],
    "factions": [
      {{"name": "势力名", "status": "active", "leaderAlive": true, "casualties": [{{"name": "死亡成员", "role": "角色"}}], "stateDesc": "状态变化简述"}}
    ],
    "locations": [
      {{"name": "地点名", "currentOccupants": ["当前在此的主要角色"], "controlledBy": "控制者", "stateDesc": "状态变化简述"}}
    ],
    "quests": [
      {{"id": "任务简称", "description": "任务内容", "status": "OPEN/RESOLVED", "dueByChapter": {reveal}}}
    ]
  }},
  "narrativeBeat": {{
    "id": "beat_{chapter}",
    "beatType": "CONFLICT/CLIMAX/PLOT/CHARACTER/RELIEF",
    "focus": "剧情/人物/世界观",
    "tension": 0.7,
    "sentiment": "tense/hopeful/tragic",
    "paceScore": 0.6,
    "viewpoint": "主角/配角/反派/旁观者"
  }},
  "conflictArcs": [
    {{"id": "conflict_arc_{chapter}", "name": "冲突线名称", "stage": "酝酿/爆发/僵持/解决", "urgency": 0.8, "nextAction": "下一步升级计划", "protagonist": "主角名", "antagonist": "对手名", "trend": "UP/FLAT/DOWN"}}
  ],
  "characterArcs": [
    {{"id": "character_arc_{chapter}", "characterName": "角色名", "arcName": "成长线名称", "pendingBeat": "待完成的成长节点", "nextGoal": "下一目标", "priority": 0.7, "progress": 2, "totalBeats": 5}}
  ],
  "perspectiveUsage": {{
    "id": "perspective_{chapter}",
    "characterName": "本章视角角色",
    "mode": "第一人称/第三人称/全知",
    "tone": "tense/hopeful/warm",
    "purpose": "切换视角的目的"
  }}
}}

注意：
1. events只抽取对后续剧情有长期影响的关键事件，每章最多2-3个，每个事件必须带location，importance低于0.7的不要记录。
2. location必须准确，用于跟踪角色位置和场景连贯性。
3. foreshadows宁缺毋滥，不确定是否为伏笔时不要输出。
4. worldRules只抽取新引入的设定规则。
5. importance范围0-1，越重要值越大。
6. causalRelations记录事件之间的因果关系。
7. characterRelations记录本章所有重要角色之间的关系（包括已有的稳定关系），strength范围0-1。
8. characters必须是有明确姓名、后续会再次登场的角色；同一角色的不同称呼统一为一个标准名称，别名可写入aliases。
9. stateChanges必须记录所有状态变更：角色生死/位置/实力/势力，势力状态与伤亡，地点占据者与控制者，任务的开启与完成。
10. narrativeBeat总结本章节奏意图；conflictArcs/characterArcs只列出本章推进的弧线。
11. 只返回JSON，不要有其他解释。
12. 电话那头、回忆中或只被提到的人物不要出现在onSceneParticipants和stateChanges.characters中。
"""

BATCH_MEMORY_HEADER = "【已有图谱记忆（用于对照和更新，避免重复创建）】"

BATCH_PROMPT_TEMPLATE = """\
你是一位专业的小说分析助手。下面会一次提供多章正文，请为每一章分别抽取关键实体。
请严格输出如下JSON结构：
{{
  "chapters": [
    {{
      "chapterNumber": 12,
      "title": "章节标题",
      "events": [],
      "foreshadows": [],
      "plotlines": [],
      "worldRules": [],
      "characters": [],
      "locations": [],
      "causalRelations": [],
      "characterRelations": [],
      "stateChanges": {{"characters": [], "factions": [], "locations": [], "quests": []}},
      "narrativeBeat": {{}},
      "conflictArcs": [],
      "characterArcs": [],
      "perspectiveUsage": {{}}
    }}
  ]
}}

要求：
1. chapters数组中每个元素对应一章，chapterNumber必须与输入一致。
2. 其余字段含义与单章抽取相同，缺失时返回空数组或空对象。
3. 禁止输出额外解释或markdown围栏。

{chapters}"""

EMPTY_EXTRACTION: Dict[str, Any] = {
    "events": [],
    "foreshadows": [],
    "plotlines": [],
    "worldRules": [],
}

_DIGITS = re.compile(r"[^0-9]")


# ---------------------------------------------------------------------------
# Result types
# ---------------------------------------------------------------------------


@dataclass
class ExtractionOutcome:
    novel_id: int
    chapter_number: int
    skipped: bool = False
    parsed: bool = False
    entities: List[GraphEntity] = field(default_factory=list)
    results: List[MutationResult] = field(default_factory=list)

    @property
    def entity_count(self) -> int:
        return len(self.entities)

    @property
    def failed_writes(self) -> int:
        return sum(1 for result in self.results if not result.ok)


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


def parse_extraction_payload(raw: Optional[str]) -> Dict[str, Any]:
    """Sanitise and parse the model reply; a reply that cannot be parsed yields an empty payload."""
    cleaned = sanitize_to_strict_json(raw)
    if cleaned:
        try:
            parsed = json.loads(cleaned)
            if isinstance(parsed, dict):
                return parsed
        except ValueError as exc:
            logger.warning("extraction parse failed error=%s raw_chars=%d", exc, len(raw or ""))
    else:
        logger.warning("extraction parse failed error=no_json_object raw_chars=%d", len(raw or ""))
    return {key: list(value) for key, value in EMPTY_EXTRACTION.items()}


def parse_chapter_number(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    digits = _DIGITS.sub("", str(value or ""))
    return int(digits) if digits else None


def truncate_content(content: Optional[str], max_chars: int) -> str:
    if not content:
        return ""
    if len(content) <= max_chars:
        return content
    return content[:max_chars] + "..."


def _short_uuid() -> str:
    return uuid.uuid4().hex[:8]


def _entity_id(raw: Dict[str, Any], fallback: str) -> str:
    # random fallbacks mean two passes over the same fact create two entities
    value = raw.get("id")
    if value is None or not str(value).strip():
        return fallback
    return str(value).strip()


def _dict_items(value: Any) -> List[Dict[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def convert_to_entities(payload: Dict[str, Any], chapter_number: int) -> List[GraphEntity]:
    """Map one chapter's parsed payload onto typed graph entities with their default scores."""
    entities: List[GraphEntity] = []
    chapter_source = f"第{chapter_number}章"

    for raw in _dict_items(payload.get("events")):
        entities.append(
            EventEntity.from_properties(
                _entity_id(raw, f"event_{chapter_number}_{_short_uuid()}"),
                chapter_number,
                {k: v for k, v in raw.items() if k != "id"},
                importance_score=resolve_importance(raw.get("importance"), 0.6),
                source=chapter_source,
            )
        )

    for raw in _dict_items(payload.get("foreshadows")):
        props = {k: v for k, v in raw.items() if k != "id"}
        props["status"] = ForeshadowStatus.PLANTED.value
        entities.append(
            ForeshadowEntity.from_properties(
                _entity_id(raw, f"foreshadow_{chapter_number}_{_short_uuid()}"),
                chapter_number,
                props,
                importance_score=resolve_importance(raw.get("importance"), 0.5),
                source=chapter_source,
            )
        )

    for raw in _dict_items(payload.get("plotlines")):
        entities.append(
            PlotlineEntity.from_properties(
                _entity_id(raw, f"plotline_{_short_uuid()}"),
                chapter_number,
                {k: v for k, v in raw.items() if k != "id"},
                importance_score=resolve_importance(raw.get("priority"), 0.5),
                source="系统",
            )
        )

    for raw in _dict_items(payload.get("worldRules")):
        props = {k: v for k, v in raw.items() if k != "id"}
        props["scope"] = "global"
        props["introducedAt"] = chapter_number
        entities.append(
            WorldRuleEntity.from_properties(
                _entity_id(raw, f"rule_{_short_uuid()}"),
                chapter_number,
                props,
                importance_score=resolve_importance(raw.get("importance"), 0.5),
                source="设定",
            )
        )

    beat = payload.get("narrativeBeat")
    if isinstance(beat, dict) and beat:
        entities.append(
            NarrativeBeatEntity.from_properties(
                _entity_id(beat, f"beat_auto_{chapter_number}"),
                chapter_number,
                {k: v for k, v in beat.items() if k != "id"},
                importance_score=resolve_importance(beat.get("paceScore"), 0.5),
                source=chapter_source,
            )
        )

    for raw in _dict_items(payload.get("conflictArcs")):
        entities.append(
            ConflictArcEntity.from_properties(
                _entity_id(raw, f"conflict_arc_{uuid.uuid4()}"),
                chapter_number,
                {k: v for k, v in raw.items() if k != "id"},
                importance_score=resolve_importance(raw.get("urgency"), 0.6),
                source=chapter_source,
            )
        )

    for raw in _dict_items(payload.get("characterArcs")):
        entities.append(
            CharacterArcEntity.from_properties(
                _entity_id(raw, f"character_arc_{uuid.uuid4()}"),
                chapter_number,
                {k: v for k, v in raw.items() if k != "id"},
                importance_score=resolve_importance(raw.get("priority"), 0.55),
                source=chapter_source,
            )
        )

    perspective = payload.get("perspectiveUsage")
    if isinstance(perspective, dict) and perspective:
        entities.append(
            PerspectiveUsageEntity.from_properties(
                _entity_id(perspective, f"perspective_{chapter_number}"),
                chapter_number,
                {k: v for k, v in perspective.items() if k != "id"},
                importance_score=resolve_importance(perspective.get("weight"), 0.4),
                source=chapter_source,
            )
        )

    for raw in payload.get("characters") or []:
        if isinstance(raw, dict):
            name = str(raw.get("name") or "").strip()
            props = {k: v for k, v in raw.items() if k not in ("id", "name")}
        else:
            name = str(raw or "").strip()
            props = {}
        if not name:
            continue
        props["name"] = name
        entities.append(CharacterEntity.from_properties(name, chapter_number, props, source=chapter_source))

    for raw in payload.get("locations") or []:
        value = raw.get("name") if isinstance(raw, dict) else raw
        name = str(value or "").strip()
        if not name:
            continue
        entities.append(LocationEntity.from_properties(name, chapter_number, {"name": name}, source=chapter_source))

    return entities


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------


class EntityExtractor:
    """
    Turns chapter text into graph facts with one model call per chapter.

    The model only proposes facts: every state change goes through the
    store's guarded ledger API, so a regenerated older chapter cannot
    overwrite newer state and every overwrite leaves a history snapshot.
    """

    def __init__(
        self,
        store: NarrativeGraphStore,
        llm_client: LLMClient,
        settings: Optional[Settings] = None,
    ):
        self.store = store
        self.llm_client = llm_client
        self.settings = settings or get_settings()

    def _resolve_config(self, config: Optional[LLMConfig]) -> LLMConfig:
        active = config or self.llm_client.config
        if active is None or not active.is_valid():
            raise ConfigValidationError("entity extraction model config is invalid, check provider settings")
        return active

    def build_prompt(self, chapter_number: int, chapter_title: Optional[str], content: str) -> str:
        return EXTRACTION_PROMPT_TEMPLATE.format(
            chapter=chapter_number,
            title=chapter_title or "",
            content=truncate_content(content, self.settings.extraction_max_prompt_chars),
            reveal=chapter_number + 5,
        )

    def _call_model(self, prompt: str, config: LLMConfig) -> str:
        try:
            return self.llm_client.generate(
                [{"role": "user", "content": prompt}],
                EXTRACTION_TASK_TAG,
                config=config,
            )
        except ConfigValidationError:
            raise
        except Exception as exc:
            raise ExtractionError(f"model call failed: {exc}") from exc

    def extract_and_save(
        self,
        novel_id: int,
        chapter_number: int,
        chapter_title: Optional[str],
        content: Optional[str],
        config: Optional[LLMConfig] = None,
    ) -> ExtractionOutcome:
        """
        Extract one chapter and write it through the store.

        Raises:
            ConfigValidationError: the model config is unusable; not retried.
            ExtractionError: the model call failed; safe to retry.
        """
        outcome = ExtractionOutcome(novel_id=novel_id, chapter_number=chapter_number)
        if content is None or len(content) < self.settings.extraction_min_content_chars:
            logger.info(
                "extraction skipped novel_id=%s chapter=%s reason=content_too_short chars=%d",
                novel_id,
                chapter_number,
                len(content or ""),
            )
            outcome.skipped = True
            return outcome

        active = self._resolve_config(config)
        logger.info("extraction started novel_id=%s chapter=%s", novel_id, chapter_number)
        raw = self._call_model(self.build_prompt(chapter_number, chapter_title, content), active)
        payload = parse_extraction_payload(raw)
        outcome.parsed = any(payload.get(key) for key in payload)
        self._apply_payload(novel_id, chapter_number, payload, outcome)
        logger.info(
            "extraction finished novel_id=%s chapter=%s entities=%d failed_writes=%d",
            novel_id,
            chapter_number,
            outcome.entity_count,
            outcome.failed_writes,
        )
        return outcome

    def build_batch_prompt(self, novel_id: int, chapters: List[ChapterText]) -> str:
        parts: List[str] = []
        memory = self._graph_memory_digest(novel_id, max(chapter.chapter_number for chapter in chapters))
        if memory:
            parts.append(memory)
        sections = []
        for chapter in chapters:
            sections.append(
                f"### 第{chapter.chapter_number}章\n"
                f"标题: {chapter.title or ''}\n"
                f"正文: \n{truncate_content(chapter.content, self.settings.extraction_batch_snippet_chars)}\n"
            )
        parts.append(BATCH_PROMPT_TEMPLATE.format(chapters="\n".join(sections)))
        return "\n".join(parts)

    def _graph_memory_digest(self, novel_id: int, current_chapter: int) -> str:
        states = self.store.get_character_states(novel_id, 200)
        relationships = self.store.get_top_relationships(novel_id, 200)
        quests = self.store.get_open_quests(novel_id, current_chapter)
        if not states and not relationships and not quests:
            return ""

        lines = [BATCH_MEMORY_HEADER]
        if states:
            lines.append("人物状态：")
            for state in states:
                line = f"- 角色：{state.character_name}"
                if state.location:
                    line += f" | 最近位置：{state.location}"
                if state.realm:
                    line += f" | 实力/境界：{state.realm}"
                if state.last_updated_chapter is not None:
                    line += f" | 最近出现章节：第{state.last_updated_chapter}章"
                lines.append(line)
            lines.append("")
        if relationships:
            lines.append("重要关系：")
            for rel in relationships:
                line = f"- {rel.a} ↔ {rel.b}"
                if rel.type:
                    line += f" | 关系类型：{rel.type}"
                line += f" | 强度：{rel.strength}"
                lines.append(line)
            lines.append("")
        if quests:
            lines.append("未决任务：")
            for quest in quests:
                line = f"- 任务ID：{quest.id}"
                if quest.description:
                    line += f" | 简述：{quest.description}"
                line += f" | 状态：{quest.status.value}"
                if quest.introduced_chapter is not None:
                    line += f" | 引入章节：第{quest.introduced_chapter}章"
                if quest.due_by_chapter is not None:
                    line += f" | 计划完成章节：第{quest.due_by_chapter}章"
                lines.append(line)
            lines.append("")
        lines.append("抽取下面这些章节时，同一人物在所有章节中统一使用一个标准名称，优先复用上面已有的名字；")
        lines.append("与上述未决任务含义相同的任务复用原任务ID并更新状态，不要新建。")
        lines.append("")
        return "\n".join(lines)

    def extract_and_save_batch(
        self,
        novel_id: int,
        chapters: Iterable[ChapterText],
        config: Optional[LLMConfig] = None,
    ) -> List[int]:
        """One model call over several chapters; returns the chapter numbers that were written."""
        ordered = sorted((c for c in chapters if c is not None), key=lambda c: c.chapter_number)
        if not ordered:
            return []
        active = self._resolve_config(config)

        raw = self._call_model(self.build_batch_prompt(novel_id, ordered), active)
        parsed = parse_extraction_payload(raw)
        by_chapter: Dict[int, Dict[str, Any]] = {}
        for payload in _dict_items(parsed.get("chapters")):
            number = parse_chapter_number(payload.get("chapterNumber"))
            if number is not None:
                by_chapter[number] = payload

        processed: List[int] = []
        for chapter in ordered:
            payload = by_chapter.get(chapter.chapter_number)
            if payload is None:
                logger.warning(
                    "batch extraction missing chapter novel_id=%s chapter=%s",
                    novel_id,
                    chapter.chapter_number,
                )
                continue
            outcome = ExtractionOutcome(novel_id=novel_id, chapter_number=chapter.chapter_number, parsed=True)
            self._apply_payload(novel_id, chapter.chapter_number, payload, outcome)
            logger.info(
                "batch extraction chapter written novel_id=%s chapter=%s entities=%d",
                novel_id,
                chapter.chapter_number,
                outcome.entity_count,
            )
            processed.append(chapter.chapter_number)
        return processed

    # ------------------------------------------------------------------
    # write path
    # ------------------------------------------------------------------

    def _apply_payload(
        self,
        novel_id: int,
        chapter_number: int,
        payload: Dict[str, Any],
        outcome: ExtractionOutcome,
    ):
        entities = convert_to_entities(payload, chapter_number)
        outcome.entities = entities
        outcome.results.extend(self.store.add_entities(novel_id, entities))
        outcome.results.extend(self._add_causal_relations(novel_id, payload.get("causalRelations")))
        outcome.results.extend(
            self._add_character_relations(novel_id, chapter_number, payload.get("characterRelations"))
        )
        state_changes = payload.get("stateChanges")
        if isinstance(state_changes, dict):
            outcome.results.extend(self._apply_state_changes(novel_id, chapter_number, state_changes))

    def _add_causal_relations(self, novel_id: int, relations: Any) -> List[MutationResult]:
        results = []
        for relation in _dict_items(relations):
            source, target = relation.get("from"), relation.get("to")
            if not source or not target:
                continue
            rel_type = relation.get("type") or "CAUSES"
            results.append(
                self.store.add_relationship(
                    novel_id,
                    str(source),
                    rel_type,
                    str(target),
                    {"type": rel_type, "description": relation.get("description") or ""},
                )
            )
        return results

    def _add_character_relations(self, novel_id: int, chapter_number: int, relations: Any) -> List[MutationResult]:
        results = []
        for relation in _dict_items(relations):
            source = str(relation.get("from") or "").strip()
            target = str(relation.get("to") or "").strip()
            if not source or not target or source == target:
                continue
            relation_type = str(relation.get("type") or "RELATIONSHIP").strip().upper()
            strength = relation.get("strength")
            strength = float(strength) if isinstance(strength, (int, float)) and not isinstance(strength, bool) else 0.5
            description = relation.get("description") or ""
            results.append(
                self.store.add_relationship(
                    novel_id,
                    source,
                    "RELATIONSHIP",
                    target,
                    {
                        "from": source,
                        "to": target,
                        "type": relation_type,
                        "strength": strength,
                        "description": description,
                    },
                )
            )
            results.append(
                self.store.upsert_relationship_state(
                    novel_id,
                    source,
                    target,
                    relation_type=relation_type,
                    strength=strength,
                    chapter_number=chapter_number,
                    description=description or None,
                )
            )
        return results

    def _apply_state_changes(
        self,
        novel_id: int,
        chapter_number: int,
        state_changes: Dict[str, Any],
    ) -> List[MutationResult]:
        results: List[MutationResult] = []
        signals: Dict[str, str] = {}

        for change in _dict_items(state_changes.get("characters")):
            name = str(change.get("name") or "").strip()
            if not name:
                continue
            state_data = {k: v for k, v in change.items() if k not in ("name", "stateDesc")}
            if change.get("stateDesc"):
                state_data["characterInfo"] = change["stateDesc"]
            results.append(
                self.store.upsert_character_state_complete(novel_id, name, state_data, chapter_number)
            )

        for faction in _dict_items(state_changes.get("factions")):
            name = str(faction.get("name") or "").strip()
            if not name:
                continue
            details = {k: v for k, v in faction.items() if k != "name" and v not in (None, "", [])}
            signals[f"faction:{name}"] = json.dumps(details, ensure_ascii=False)
            for casualty in faction.get("casualties") or []:
                casualty_name = casualty.get("name") if isinstance(casualty, dict) else casualty
                casualty_name = str(casualty_name or "").strip()
                if casualty_name:
                    results.append(
                        self.store.upsert_character_state(
                            novel_id,
                            casualty_name,
                            alive=False,
                            chapter_number=chapter_number,
                        )
                    )

        for location in _dict_items(state_changes.get("locations")):
            name = str(location.get("name") or "").strip()
            if not name:
                continue
            details = {k: v for k, v in location.items() if k != "name" and v not in (None, "", [])}
            signals[f"location:{name}"] = json.dumps(details, ensure_ascii=False)
            for occupant in split_names(location.get("currentOccupants")):
                results.append(
                    self.store.upsert_character_state(
                        novel_id,
                        occupant,
                        location=name,
                        chapter_number=chapter_number,
                    )
                )

        for quest in _dict_items(state_changes.get("quests")):
            quest_id = str(quest.get("id") or "").strip()
            if not quest_id:
                continue
            status = str(quest.get("status") or "OPEN").strip().upper()
            if status == "RESOLVED":
                results.append(self.store.resolve_open_quest(novel_id, quest_id, chapter_number))
                continue
            due = quest.get("dueByChapter")
            results.append(
                self.store.upsert_open_quest(
                    novel_id,
                    quest_id,
                    description=quest.get("description"),
                    status="OPEN",
                    introduced_chapter=chapter_number,
                    due_by_chapter=parse_chapter_number(due) if due is not None else None,
                    last_updated_chapter=chapter_number,
                )
            )

        if signals:
            results.append(self.store.add_summary_signals(novel_id, chapter_number, signals))
        return results
