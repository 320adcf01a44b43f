"""
Planner tools: named read (and one write) operations the planning loop can
invoke by name. Each tool takes a flat argument map and returns plain data or
graph entities; ``tool_result_to_json`` renders either for a prompt.
"""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Set

from pydantic import BaseModel

from core.llm_client import LLMClient, LLMConfig
from memory.base import NarrativeGraphStore
from models import (
    CharacterProfileEntity,
    GraphEntity,
    ToolDefinition,
    ToolExecutionError,
    ToolNotFoundError,
)
from services.content_source import ContentSource
from utils.text_cleaner import load_json_object, shorten

logger = logging.getLogger("novelist.tools")


# ---------------------------------------------------------------------------
# Argument helpers
# ---------------------------------------------------------------------------


def _param(kind: str, description: str, default: Any = None) -> Dict[str, Any]:
    prop: Dict[str, Any] = {"type": kind, "description": description}
    if default is not None:
        prop["default"] = default
    return prop


def _schema(properties: Dict[str, Dict[str, Any]], required: List[str]) -> Dict[str, Any]:
    return {"type": "object", "properties": properties, "required": list(required)}


NOVEL_ID_PARAM = _param("integer", "小说ID")
CHAPTER_PARAM = _param("integer", "当前章节号")


def int_arg(args: Dict[str, Any], key: str, default: Optional[int] = None) -> int:
    value = args.get(key)
    if value is None or (isinstance(value, str) and not value.strip()):
        if default is None:
            raise ToolExecutionError(f"缺少必需参数: {key}")
        return default
    if isinstance(value, bool):
        raise ToolExecutionError(f"参数类型错误: {key}={value!r}")
    try:
        return int(float(value)) if isinstance(value, str) else int(value)
    except (TypeError, ValueError) as exc:
        raise ToolExecutionError(f"参数类型错误: {key}={value!r}") from exc


def str_arg(args: Dict[str, Any], key: str, required: bool = False) -> Optional[str]:
    value = args.get(key)
    text = str(value).strip() if value is not None else ""
    if not text:
        if required:
            raise ToolExecutionError(f"缺少必需参数: {key}")
        return None
    return text


def to_jsonable(value: Any) -> Any:
    if isinstance(value, GraphEntity):
        return value.to_payload()
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json", by_alias=True)
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(item) for item in value]
    return value


def tool_result_to_json(result: Any) -> str:
    return json.dumps(to_jsonable(result), ensure_ascii=False, default=str)


# ---------------------------------------------------------------------------
# Tool base and registry
# ---------------------------------------------------------------------------


class Tool(ABC):
    name: str = ""
    description: str = ""
    cost_estimate: int = 0
    required: bool = False
    return_example: Optional[str] = None
    # model-backed tools receive the planning run's model config as ``config=``
    uses_model_config: bool = False

    def parameters(self) -> Dict[str, Any]:
        return _schema({"novelId": NOVEL_ID_PARAM, "chapterNumber": CHAPTER_PARAM}, ["novelId", "chapterNumber"])

    def definition(self) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters(),
            return_example=self.return_example,
            cost_estimate=self.cost_estimate,
            required=self.required,
        )

    @abstractmethod
    def execute(self, args: Dict[str, Any]) -> Any: ...


class ToolRegistry:
    def __init__(self):
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool):
        self._tools[tool.name] = tool
        logger.info("tool registered name=%s", tool.name)

    def get_tool(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def get_all_definitions(self) -> List[ToolDefinition]:
        return [tool.definition() for tool in self._tools.values()]

    def get_all_tool_names(self) -> Set[str]:
        return set(self._tools)

    def execute_tool(self, name: str, args: Dict[str, Any], config: Optional[LLMConfig] = None) -> Any:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFoundError(name)
        logger.info("tool execute name=%s args=%s", name, shorten(json.dumps(args, ensure_ascii=False, default=str), 200))
        if tool.uses_model_config:
            result = tool.execute(args, config=config)
        else:
            result = tool.execute(args)
        logger.info("tool done name=%s", name)
        return result


# ---------------------------------------------------------------------------
# Content tools
# ---------------------------------------------------------------------------


class GetOutlineTool(Tool):
    name = "getOutline"
    description = "获取小说的核心设定信息（世界观、力量体系、角色基本设定、写作风格等），不包含具体剧情发展，避免AI产生上帝视角。"
    cost_estimate = 500
    required = True
    return_example = '{"coreSettings": "世界观：...\\n力量体系：...", "wordCount": 3000}'

    def __init__(self, content: ContentSource):
        self.content = content

    def parameters(self) -> Dict[str, Any]:
        return _schema({"novelId": NOVEL_ID_PARAM}, ["novelId"])

    def execute(self, args: Dict[str, Any]) -> Any:
        return self.content.get_outline(int_arg(args, "novelId"))


class GetVolumeBlueprintTool(Tool):
    name = "getVolumeBlueprint"
    description = "获取当前章节所属卷的蓝图，包含本卷的阶段目标、核心冲突、预期结局等。卷蓝图指导当前阶段的写作方向。"
    cost_estimate = 300
    required = True

    def __init__(self, content: ContentSource):
        self.content = content

    def execute(self, args: Dict[str, Any]) -> Any:
        return self.content.get_volume_blueprint(int_arg(args, "novelId"), int_arg(args, "chapterNumber"))


class GetRecentChaptersTool(Tool):
    name = "getRecentChapters"
    description = "【固定上下文】获取最近3章完整内容 + 更早章节的概括（不重复）。完整内容用于保持写作连贯性，概括用于了解整体剧情发展。"
    cost_estimate = 2000
    required = True
    full_count = 3

    def __init__(self, content: ContentSource):
        self.content = content

    def parameters(self) -> Dict[str, Any]:
        return _schema(
            {
                "novelId": NOVEL_ID_PARAM,
                "currentChapter": _param("integer", "当前要生成的章节号"),
                "summaryLimit": _param("integer", "最多返回多少章概括（默认30）", 30),
            },
            ["novelId", "currentChapter"],
        )

    def execute(self, args: Dict[str, Any]) -> Any:
        novel_id = int_arg(args, "novelId")
        if args.get("currentChapter") is not None:
            current = int_arg(args, "currentChapter")
        else:
            current = int_arg(args, "chapterNumber")
        summary_limit = int_arg(args, "summaryLimit", 30)
        result = self.content.get_recent_chapters(novel_id, current, self.full_count, summary_limit)
        if not result.get("recentFullChapters") and not result.get("recentSummaries"):
            logger.warning("recent chapters empty novel_id=%s chapter=%s", novel_id, current)
        return result


# ---------------------------------------------------------------------------
# Graph tools
# ---------------------------------------------------------------------------


class GraphTool(Tool):
    def __init__(self, store: NarrativeGraphStore):
        self.store = store


class _LimitedChapterTool(GraphTool):
    """Graph query keyed by (novelId, chapterNumber) with one integer knob."""

    knob = "limit"
    knob_default = 5
    knob_description = ""

    def parameters(self) -> Dict[str, Any]:
        return _schema(
            {
                "novelId": NOVEL_ID_PARAM,
                "chapterNumber": CHAPTER_PARAM,
                self.knob: _param("integer", self.knob_description, self.knob_default),
            },
            ["novelId", "chapterNumber"],
        )

    def execute(self, args: Dict[str, Any]) -> Any:
        return self.query(
            int_arg(args, "novelId"),
            int_arg(args, "chapterNumber"),
            int_arg(args, self.knob, self.knob_default),
        )

    @abstractmethod
    def query(self, novel_id: int, chapter_number: int, knob: int) -> Any: ...


class GetRelevantEventsTool(_LimitedChapterTool):
    name = "getRelevantEvents"
    description = "从图谱中检索与当前章节强相关的历史事件。基于因果关系、参与者、情节线等维度智能筛选，而非简单的时间顺序。适用于需要回溯前因后果、角色动机等场景。"
    cost_estimate = 400
    knob_default = 8
    knob_description = "最多返回多少个事件（默认8）"
    return_example = '[{"type": "Event", "description": "...", "participants": [...], "chapterNumber": 5}]'

    def query(self, novel_id: int, chapter_number: int, knob: int) -> Any:
        return self.store.get_relevant_events(novel_id, chapter_number, knob)


class GetUnresolvedForeshadowsTool(_LimitedChapterTool):
    name = "getUnresolvedForeshadows"
    description = "查询前文埋下但尚未回收的伏笔。包含伏笔来源章节、建议回收窗口期、重要性等信息。适用于需要呼应前文、揭秘真相等场景。"
    cost_estimate = 300
    knob_default = 6
    knob_description = "最多返回多少条伏笔（默认6）"

    def query(self, novel_id: int, chapter_number: int, knob: int) -> Any:
        return self.store.get_unresolved_foreshadows(novel_id, chapter_number, knob)


class GetWorldRulesTool(_LimitedChapterTool):
    name = "getWorldRules"
    description = "获取世界观设定和规则约束。包括力量体系、时间线规则、场景设定、社会规则等。确保当前章节符合已建立的世界观设定，避免设定崩坏。"
    cost_estimate = 200
    knob_default = 5
    knob_description = "最多返回多少条规则（默认5）"

    def execute(self, args: Dict[str, Any]) -> Any:
        # without a chapter only global or unscoped rules qualify
        return self.query(
            int_arg(args, "novelId"),
            int_arg(args, "chapterNumber", 0),
            int_arg(args, "limit", self.knob_default),
        )

    def query(self, novel_id: int, chapter_number: int, knob: int) -> Any:
        return self.store.get_world_rules(novel_id, chapter_number, knob)


class GetNarrativeRhythmTool(_LimitedChapterTool):
    name = "getNarrativeRhythm"
    description = "分析最近章节的叙事节奏分布，评估冲突/主线/人物/缓冲的比例，并给出节奏调整建议。"
    cost_estimate = 250
    knob = "window"
    knob_default = 6
    knob_description = "回溯窗口，统计最近多少章（默认6）"

    def query(self, novel_id: int, chapter_number: int, knob: int) -> Any:
        return self.store.get_narrative_rhythm(novel_id, chapter_number, knob)


class GetPlotlineStatusTool(_LimitedChapterTool):
    name = "getPlotlineStatus"
    description = "查询情节线发展状态。检测久未推进的情节线、待发展的新情节线、优先级高的情节线。返回情节线名称、状态（进行中/久未推进/待发展）、上次更新章节、闲置时长等。适用于平衡多线叙事、防止遗忘支线、合理推进主线。"
    cost_estimate = 300
    knob_default = 5
    knob_description = "最多返回多少条情节线（默认5）"

    def query(self, novel_id: int, chapter_number: int, knob: int) -> Any:
        return self.store.get_plotline_status(novel_id, chapter_number, knob)


class GetConflictArcStatusTool(_LimitedChapterTool):
    name = "getConflictArcStatus"
    description = "获取仍在进行的冲突弧线，包含阶段、紧迫度、下一步升级建议，为章节冲突设计提供依据。"
    cost_estimate = 220
    knob_default = 5
    knob_description = "最多返回多少条冲突弧线（默认5）"

    def query(self, novel_id: int, chapter_number: int, knob: int) -> Any:
        return self.store.get_active_conflict_arcs(novel_id, chapter_number, knob)


class GetCharacterArcStatusTool(_LimitedChapterTool):
    name = "getCharacterArcStatus"
    description = "检查人物成长线的推进情况，输出待完成的成长节拍、下一目标，以及优先级。"
    cost_estimate = 200
    knob_default = 5
    knob_description = "最多返回多少条人物弧线（默认5）"

    def query(self, novel_id: int, chapter_number: int, knob: int) -> Any:
        return self.store.get_character_arc_status(novel_id, chapter_number, knob)


class GetPerspectiveHistoryTool(_LimitedChapterTool):
    name = "getPerspectiveHistory"
    description = "回顾最近章节的视角使用与语气，提示是否需要切换视角或调整叙述方式。"
    cost_estimate = 120
    knob = "window"
    knob_default = 5
    knob_description = "回溯窗口，查看最近多少章的视角使用（默认5）"

    def query(self, novel_id: int, chapter_number: int, knob: int) -> Any:
        return self.store.get_perspective_history(novel_id, chapter_number, knob)


class GetCharacterProfilesTool(GraphTool):
    name = "getCharacterProfiles"
    description = "获取已保存的角色档案列表（从图谱CharacterProfile节点查询）"
    cost_estimate = 50
    return_example = '[{"name":"林默","role":"主角"}]'

    def parameters(self) -> Dict[str, Any]:
        return _schema(
            {"novelId": NOVEL_ID_PARAM, "limit": _param("integer", "最多返回多少个角色档案（默认10）", 10)},
            ["novelId"],
        )

    def execute(self, args: Dict[str, Any]) -> Any:
        novel_id = int_arg(args, "novelId")
        profiles = self.store.get_character_profiles(novel_id, int_arg(args, "limit", 10))
        result = []
        for entity in profiles:
            profile = entity.properties()
            profile.setdefault("id", entity.id)
            profile.setdefault("type", entity.type)
            result.append(profile)
        logger.info("character profiles loaded novel_id=%s count=%d", novel_id, len(result))
        return result


class GetCharacterRelationshipsTool(GraphTool):
    name = "getCharacterRelationships"
    description = "查询指定角色的关系网络。返回该角色与其他角色的关系类型（对抗、合作、暧昧、师徒等）、关系强度、关系描述。适用于需要了解角色关系、安排角色互动、设计冲突场景等。"
    cost_estimate = 300

    def parameters(self) -> Dict[str, Any]:
        return _schema(
            {
                "novelId": NOVEL_ID_PARAM,
                "characterName": _param("string", "角色名称"),
                "limit": _param("integer", "最多返回多少条关系（默认10）", 10),
            },
            ["novelId", "characterName"],
        )

    def execute(self, args: Dict[str, Any]) -> Any:
        return self.store.get_character_relationships(
            int_arg(args, "novelId"),
            str_arg(args, "characterName", required=True),
            int_arg(args, "limit", 10),
        )


class GetEventsByCharacterTool(GraphTool):
    name = "getEventsByCharacter"
    description = "查询指定角色参与的所有重要事件。按时间和重要性排序，返回该角色的行动历史、决策记录、关键经历。适用于需要回顾角色成长轨迹、理解角色动机、设计角色回忆等场景。"
    cost_estimate = 400

    def parameters(self) -> Dict[str, Any]:
        return _schema(
            {
                "novelId": NOVEL_ID_PARAM,
                "characterName": _param("string", "角色名称"),
                "chapterNumber": CHAPTER_PARAM,
                "limit": _param("integer", "最多返回多少个事件（默认8）", 8),
            },
            ["novelId", "characterName", "chapterNumber"],
        )

    def execute(self, args: Dict[str, Any]) -> Any:
        return self.store.get_events_by_character(
            int_arg(args, "novelId"),
            str_arg(args, "characterName", required=True),
            int_arg(args, "chapterNumber"),
            int_arg(args, "limit", 8),
        )


class GetEventsByCausalityTool(GraphTool):
    name = "getEventsByCausality"
    description = "沿因果链追溯事件。从指定事件出发，查询其前因和后果，返回因果链上的相关事件及其因果距离。适用于理解事件来龙去脉、设计事件后续发展、制造戏剧性反转。"
    cost_estimate = 500
    return_example = '[{"type": "Event", "description": "师父被暗算", "chapterNumber": 5, "causalDistance": 1}]'

    def parameters(self) -> Dict[str, Any]:
        return _schema(
            {
                "novelId": NOVEL_ID_PARAM,
                "eventId": _param("string", "起始事件ID（可从其他工具的返回结果中获取）"),
                "depth": _param("integer", "查询深度（几度关系，默认3）", 3),
            },
            ["novelId", "eventId"],
        )

    def execute(self, args: Dict[str, Any]) -> Any:
        return self.store.get_events_by_causality(
            int_arg(args, "novelId"),
            str_arg(args, "eventId", required=True),
            int_arg(args, "depth", 3),
        )


class GetConflictHistoryTool(GraphTool):
    name = "getConflictHistory"
    description = "查询两个角色之间的冲突发展历史。返回主角与指定对手的所有对抗、冲突、交锋事件，按时间顺序排列。适用于设计高潮对决、回忆宿怨、设计复仇剧情、展现矛盾升级等场景。"
    cost_estimate = 400

    def parameters(self) -> Dict[str, Any]:
        return _schema(
            {
                "novelId": NOVEL_ID_PARAM,
                "protagonistName": _param("string", "主角名称"),
                "antagonistName": _param("string", "对手名称"),
                "limit": _param("integer", "最多返回多少个事件（默认10）", 10),
            },
            ["novelId", "protagonistName", "antagonistName"],
        )

    def execute(self, args: Dict[str, Any]) -> Any:
        return self.store.get_conflict_history(
            int_arg(args, "novelId"),
            str_arg(args, "protagonistName", required=True),
            str_arg(args, "antagonistName", required=True),
            int_arg(args, "limit", 10),
        )


# ---------------------------------------------------------------------------
# Model-backed tools
# ---------------------------------------------------------------------------

CHARACTER_PROFILE_TASK_TAG = "character_profile"

CHARACTER_PROFILE_PROMPT = """你是一名网文角色设计师。请为下列角色生成十维角色档案，要求具体、可在剧情中落地。

【输出要求】
只输出一个 JSON 对象，字段如下：
{{
  "name": "角色名称",
  "role": "角色定位/剧情作用",
  "coreTraits": "核心性格（2-3个关键词 + 一句行为表现）",
  "persona": "外在形象与说话方式",
  "background": "出身与关键经历",
  "goal": "当前目标",
  "fear": "最害怕失去的东西",
  "secret": "不为人知的秘密",
  "relationships": "与主要角色的关系态度",
  "memoryHook": "让读者记住的标志性细节",
  "summary": "一句话概括"
}}

【角色信息】
- 角色名称：{name}
{extra}
请严格按照上述要求输出 JSON："""

_WHITESPACE = re.compile(r"\s+")


def profile_entity_id(name: str) -> str:
    return "CharacterProfile:" + _WHITESPACE.sub("_", name).lower()


class GenerateCharacterProfileTool(GraphTool):
    name = "generateCharacterProfile"
    description = "生成或更新角色档案（十维档案），帮助AI掌握角色设定、目标、关系。返回JSON并自动写入图谱，供后续章节复用。"
    cost_estimate = 1200
    return_example = '{"name":"林默","role":"潜伏线核心"}'
    uses_model_config = True

    def __init__(self, store: NarrativeGraphStore, llm_client: LLMClient):
        super().__init__(store)
        self.llm_client = llm_client

    def parameters(self) -> Dict[str, Any]:
        return _schema(
            {
                "novelId": NOVEL_ID_PARAM,
                "chapterNumber": _param("integer", "当前章节号（可选）"),
                "characterName": _param("string", "角色名称"),
                "role": _param("string", "角色定位/剧情作用（可选）"),
                "context": _param("string", "最新剧情背景，帮助生成具体档案（可选）"),
            },
            ["novelId", "characterName"],
        )

    def build_prompt(self, name: str, role: Optional[str], context: Optional[str]) -> str:
        extra = []
        if role:
            extra.append(f"- 角色定位：{role}")
        if context:
            extra.append(f"- 剧情背景：{context}")
        return CHARACTER_PROFILE_PROMPT.format(name=name, extra="\n".join(extra) + ("\n" if extra else ""))

    def execute(self, args: Dict[str, Any], config: Optional[LLMConfig] = None) -> Any:
        novel_id = int_arg(args, "novelId")
        name = str_arg(args, "characterName", required=True)
        chapter_number = int_arg(args, "chapterNumber", -1)
        role = str_arg(args, "role")
        context = str_arg(args, "context")

        response = self.llm_client.generate(
            [{"role": "user", "content": self.build_prompt(name, role, context)}],
            CHARACTER_PROFILE_TASK_TAG,
            config=config,
        )
        profile = load_json_object(response)
        if profile is None:
            raise ToolExecutionError(f"角色档案解析失败: {shorten(response, 120)}")
        profile.setdefault("name", name)
        if role:
            profile["requestedRole"] = role

        entity = CharacterProfileEntity.from_properties(
            profile_entity_id(str(profile.get("name") or name)),
            chapter_number if chapter_number >= 0 else None,
            profile,
            source="agentic_profile",
        )
        result = self.store.add_entity(novel_id, entity)
        if not result.ok:
            logger.warning("character profile not persisted novel_id=%s name=%s error=%s", novel_id, name, result.error)
        return profile


def build_tool_registry(
    store: NarrativeGraphStore,
    content: ContentSource,
    llm_client: LLMClient,
) -> ToolRegistry:
    registry = ToolRegistry()
    for tool in (
        GetOutlineTool(content),
        GetVolumeBlueprintTool(content),
        GetRecentChaptersTool(content),
        GetRelevantEventsTool(store),
        GetWorldRulesTool(store),
        GetUnresolvedForeshadowsTool(store),
        GetNarrativeRhythmTool(store),
        GetPlotlineStatusTool(store),
        GetConflictArcStatusTool(store),
        GetCharacterArcStatusTool(store),
        GetPerspectiveHistoryTool(store),
        GetCharacterProfilesTool(store),
        GetCharacterRelationshipsTool(store),
        GetEventsByCharacterTool(store),
        GetEventsByCausalityTool(store),
        GetConflictHistoryTool(store),
        GenerateCharacterProfileTool(store, llm_client),
    ):
        registry.register(tool)
    return registry
