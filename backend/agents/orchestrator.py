"""
ReAct planning loop that gathers context for the next chapter.

A fixed prefetch runs first so every chapter starts from the outline, the
volume blueprint, recent chapters and the core graph queries regardless of
what the model later decides. The loop then alternates model decisions and
tool calls until the model answers WRITE, asks for something no tool
provides, or the step budget runs out; the last two end with a forced
fallback for the outline and volume blueprint. The result is a
``WritingContext`` carrying every collected slot plus a derived chapter intent.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Set, Tuple

from agents.decision import is_write, parse_decision, parse_tool_args
from agents.tool_rules import ToolRuleTable, load_tool_rules
from agents.tools import ToolRegistry, to_jsonable, tool_result_to_json
from core.llm_client import LLMClient, LLMConfig
from core.settings import Settings, get_settings
from core.token_budget import TokenBudget
from models import (
    AgentThought,
    BeatType,
    ChapterFocus,
    ChapterIntent,
    GraphEntity,
    PlanningOutcome,
    ToolDefinition,
    WritingContext,
)
from services.content_source import ContentSource
from utils.text_cleaner import shorten

logger = logging.getLogger("novelist.planner")

DECISION_TASK_TAG = "agent_decision"
REFLECTION_TASK_TAG = "agent_reflection"

OBSERVATION_PREVIEW_CHARS = 150
REFLECTION_INPUT_CHARS = 500
FORCED_TOOLS = ("getOutline", "getVolumeBlueprint")
REQUIRED_LATE_TOOLS = ("getWorldRules", "getNarrativeRhythm")

WRITE_OBSERVATION = "信息收集完成，准备写作"


class AgentState(str, Enum):
    THINKING = "thinking"
    ACTING = "acting"
    OBSERVING = "observing"
    WRITE_READY = "write_ready"
    MAX_STEPS_EXCEEDED = "max_steps_exceeded"


# ---------------------------------------------------------------------------
# Prompt sections
# ---------------------------------------------------------------------------

REVIEW_SECTION = """请先结合以上内容快速复盘：
1. 当前主线/支线是否具备充足上下文？
2. 章节节奏是否需要调整（参考 narrativeRhythm 指标）？
3. 是否存在必须回收的伏笔或待续情节点？

【剧情发展判断原则】
- 小说创作过程中，剧情会自然演化出新人物、新线索、新冲突，这是正常现象
- 只要新内容围绕主角展开，且能推进核心目标/生存/成长，就不算跑偏
- 蓝图是指导性框架，不是死板限制；可以根据前期内容自然延伸剧情
- 真正的跑偏是指：主角目标完全偏离、核心矛盾被遗忘、剧情重复冗余

若问题已解决，可直接选择 WRITE；只有当确实缺失关键信息时再调用额外工具。

【视角纪律】
- 主角只知道亲历与上一章显性信息，不得凭空掌握宏大设定
- 新世界观必须通过遭遇、对话或线索逐步揭示
- 凡属猜测请点明不确定性，后续用剧情验证

"""

EARLY_PHASE_SECTION = """【章节提示】
- 当前为前期章节，图谱数据有限；已有大纲/卷蓝图即可支撑写作
- 若核心素材充足，请直接WRITE开启创作，避免额外检索
- 仅当确实缺少设定或节奏信息时，再调用必要工具

"""

DECISION_FORMAT_SECTION = """【决策格式】
请按以下JSON格式回复：
{
  "reasoning": "你的思考过程（为什么需要这个信息/为什么现在可以写作）",
  "action": "工具名称或WRITE（表示开始写作）",
  "args": "工具参数（如果是WRITE则为空）"
}

【决策要求】
1. 先复盘已持有的核心素材，确认是否足够写作
2. 只有当节奏或剧情信息缺失时，才调用额外工具
3. 必须先调用标记为'必须调用'的工具
4. 避免重复调用已执行的工具
5. 优先级：节奏校准 > 主线冲突/人物工具 > 图谱补充工具

"""

REFLECTION_PROMPT = """你刚刚调用了工具【{tool}】，返回结果如下：

{result}

请简短评估（1-2句话）：
1. 这个结果是否有用？
2. 是否还需要更多信息来完成写作？
3. 如果结果为空或无用，下一步应该怎么办？

请用简短的文字回复（不超过100字）："""


def _stringify(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def _pretty_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(to_jsonable(value), ensure_ascii=False, indent=2, default=str)


def _ratio(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


@dataclass
class _PlanningRun:
    context: WritingContext
    early_phase: bool
    max_steps: int
    required_tools: Set[str]
    config: Optional[LLMConfig] = None
    executed: List[str] = field(default_factory=list)
    reflections: List[Tuple[AgentThought, "asyncio.Task[str]"]] = field(default_factory=list)
    state: AgentState = AgentState.THINKING

    def mark_executed(self, tool_name: str):
        if tool_name not in self.executed:
            self.executed.append(tool_name)

    def transition(self, state: AgentState):
        logger.debug(
            "planner state novel_id=%s chapter=%s from=%s to=%s",
            self.context.novel_id,
            self.context.chapter_number,
            self.state.value,
            state.value,
        )
        self.state = state


class ChapterPlanningOrchestrator:
    def __init__(
        self,
        registry: ToolRegistry,
        llm_client: LLMClient,
        settings: Optional[Settings] = None,
        content: Optional[ContentSource] = None,
        rules: Optional[ToolRuleTable] = None,
        budget: Optional[TokenBudget] = None,
    ):
        self.registry = registry
        self.llm_client = llm_client
        self.settings = settings or get_settings()
        self.content = content
        self.rules = rules if rules is not None else load_tool_rules(self.settings)
        self.budget = budget or TokenBudget()

    def is_early_chapter(self, chapter_number: Optional[int]) -> bool:
        return chapter_number is None or chapter_number <= self.settings.planner_early_chapter_threshold

    # ------------------------------------------------------------------
    # main loop
    # ------------------------------------------------------------------

    async def plan_chapter(
        self,
        novel_id: int,
        chapter_number: int,
        user_adjustment: Optional[str] = None,
        config: Optional[LLMConfig] = None,
    ) -> WritingContext:
        context = WritingContext(
            novel_id=novel_id,
            chapter_number=chapter_number,
            user_adjustment=user_adjustment,
            chapter_plan={
                "chapterNumber": chapter_number,
                "title": f"第{chapter_number}章",
                "userAdjustment": user_adjustment,
            },
        )
        early = self.is_early_chapter(chapter_number)
        max_steps = self.settings.planner_max_steps
        run = _PlanningRun(
            context=context,
            early_phase=early,
            max_steps=min(max_steps, 3) if early else max_steps,
            required_tools=set() if early else set(REQUIRED_LATE_TOOLS),
            config=config,
        )
        logger.info(
            "planning start novel_id=%s chapter=%s early=%s max_steps=%d",
            novel_id,
            chapter_number,
            early,
            run.max_steps,
        )

        await self._prefetch_core_context(run)
        await self._prefetch_graph_data(run)

        definitions = self.registry.get_all_definitions()
        for step in range(1, run.max_steps + 1):
            if await self._step(run, step, definitions):
                break
            if run.early_phase and step >= 2 and run.executed:
                logger.info("planning early stop novel_id=%s chapter=%s step=%d", novel_id, chapter_number, step)
                break

        if context.outcome is None:
            context.outcome = PlanningOutcome.MAX_STEPS_EXCEEDED
        if context.outcome != PlanningOutcome.WRITE_READY:
            run.transition(AgentState.MAX_STEPS_EXCEEDED)
            logger.warning(
                "planning forced fallback novel_id=%s chapter=%s outcome=%s",
                novel_id,
                chapter_number,
                context.outcome.value,
            )
            await self._forced_fallback(run)
        else:
            run.transition(AgentState.WRITE_READY)

        await self._collect_reflections(run)
        context.executed_tools = list(run.executed)
        context.chapter_intent = self.derive_chapter_intent(context)
        logger.info(
            "planning done novel_id=%s chapter=%s steps=%d outcome=%s tools=%s focus=%s",
            novel_id,
            chapter_number,
            len(context.thoughts),
            context.outcome.value,
            ",".join(run.executed),
            context.chapter_intent.primary_focus.value,
        )
        return context

    async def _step(self, run: _PlanningRun, step: int, definitions: List[ToolDefinition]) -> bool:
        """Run one think/act/observe round; True ends the loop."""
        context = run.context
        run.transition(AgentState.THINKING)
        thought = AgentThought(step_number=step)
        prompt = self.build_thinking_prompt(run, definitions)
        self._log_agenda(run, step)

        try:
            response = await asyncio.to_thread(
                self.llm_client.generate,
                [{"role": "user", "content": prompt}],
                DECISION_TASK_TAG,
                config=run.config,
            )
        except Exception as exc:
            logger.error("planning decision failed novel_id=%s step=%d error=%s", context.novel_id, step, exc)
            thought.observation = f"决策调用失败: {exc}"
            context.thoughts.append(thought)
            return True

        decision = parse_decision(response)
        thought.reasoning = decision.reasoning
        thought.action = decision.action
        thought.action_args = decision.action_args
        logger.info(
            "planning decision step=%d action=%s args=%s reasoning=%s",
            step,
            decision.action,
            shorten(decision.action_args, 120),
            shorten(decision.reasoning, 180),
        )

        if is_write(decision):
            thought.goal_achieved = True
            thought.observation = WRITE_OBSERVATION
            context.thoughts.append(thought)
            context.outcome = PlanningOutcome.WRITE_READY
            return True

        if self.registry.get_tool(decision.action) is None:
            logger.warning("planning unknown tool treated as directive action=%s", decision.action)
            thought.observation = f"AI请求用户指示: {decision.action}"
            thought.metadata["directive"] = decision.action
            context.thoughts.append(thought)
            context.outcome = PlanningOutcome.USER_DIRECTIVE
            return True

        run.transition(AgentState.ACTING)
        args = parse_tool_args(decision.action_args, context.novel_id, context.chapter_number)
        try:
            result = await asyncio.to_thread(self.registry.execute_tool, decision.action, args, run.config)
        except Exception as exc:
            logger.error("planning tool failed tool=%s error=%s", decision.action, exc)
            thought.observation = f"工具执行失败: {exc}"
            context.thoughts.append(thought)
            return False

        run.transition(AgentState.OBSERVING)
        observation = tool_result_to_json(result)
        thought.observation = observation
        run.mark_executed(decision.action)
        self.store_tool_result(context, decision.action, result)
        logger.info("planning tool ok tool=%s result=%s", decision.action, shorten(observation, 200))

        task = asyncio.create_task(self._reflect(decision.action, observation, run.config))
        run.reflections.append((thought, task))
        context.thoughts.append(thought)
        return False

    # ------------------------------------------------------------------
    # prefetch and fallback
    # ------------------------------------------------------------------

    async def _prefetch_core_context(self, run: _PlanningRun):
        context = run.context
        novel_id, chapter = context.novel_id, context.chapter_number
        await self._prefetch(run, "getOutline", {"novelId": novel_id})
        await self._prefetch(run, "getVolumeBlueprint", {"novelId": novel_id, "chapterNumber": chapter})
        await self._prefetch(
            run,
            "getRecentChapters",
            {"novelId": novel_id, "currentChapter": chapter, "summaryLimit": 30},
        )
        if self.content is not None:
            try:
                summary = await asyncio.to_thread(self.content.get_core_narrative_summary, novel_id)
            except Exception as exc:
                logger.error("prefetch core summary failed novel_id=%s error=%s", novel_id, exc)
            else:
                context.core_narrative_summary = summary or {}

    async def _prefetch_graph_data(self, run: _PlanningRun):
        novel_id, chapter = run.context.novel_id, run.context.chapter_number
        base = {"novelId": novel_id, "chapterNumber": chapter}
        await self._prefetch(run, "getRelevantEvents", {**base, "limit": 10})
        if not run.early_phase:
            await self._prefetch(run, "getUnresolvedForeshadows", dict(base))
        await self._prefetch(run, "getWorldRules", {"novelId": novel_id})
        if not run.early_phase:
            for tool_name in (
                "getNarrativeRhythm",
                "getPlotlineStatus",
                "getConflictArcStatus",
                "getCharacterArcStatus",
                "getPerspectiveHistory",
            ):
                await self._prefetch(run, tool_name, dict(base))

    async def _prefetch(self, run: _PlanningRun, tool_name: str, args: Dict[str, Any]) -> bool:
        if self.registry.get_tool(tool_name) is None:
            logger.warning("prefetch tool missing tool=%s", tool_name)
            return False
        try:
            result = await asyncio.to_thread(self.registry.execute_tool, tool_name, args, run.config)
        except Exception as exc:
            logger.error("prefetch failed tool=%s novel_id=%s error=%s", tool_name, run.context.novel_id, exc)
            return False
        self.store_tool_result(run.context, tool_name, result)
        run.mark_executed(tool_name)
        return True

    async def _forced_fallback(self, run: _PlanningRun):
        novel_id, chapter = run.context.novel_id, run.context.chapter_number
        for tool_name in FORCED_TOOLS:
            if tool_name in run.executed:
                continue
            args: Dict[str, Any] = {"novelId": novel_id}
            if tool_name == "getVolumeBlueprint":
                args["chapterNumber"] = chapter
            if await self._prefetch(run, tool_name, args):
                logger.info("planning fallback executed tool=%s", tool_name)

    # ------------------------------------------------------------------
    # reflection
    # ------------------------------------------------------------------

    async def _reflect(self, tool_name: str, observation: str, config: Optional[LLMConfig]) -> str:
        result = observation
        if len(result) > REFLECTION_INPUT_CHARS:
            result = result[:REFLECTION_INPUT_CHARS] + "...（结果已截断）"
        prompt = REFLECTION_PROMPT.format(tool=tool_name, result=result)
        try:
            reflection = await asyncio.to_thread(
                self.llm_client.generate,
                [{"role": "user", "content": prompt}],
                REFLECTION_TASK_TAG,
                config=config,
            )
        except Exception as exc:
            logger.error("planning reflection failed tool=%s error=%s", tool_name, exc)
            return f"反思失败：{exc}"
        logger.info("planning reflection tool=%s text=%s", tool_name, shorten(reflection, 160))
        return reflection

    async def _collect_reflections(self, run: _PlanningRun):
        if not run.reflections:
            return
        tasks = [task for _, task in run.reflections]
        timeout = max(float(self.settings.planner_reflection_timeout_seconds), 0.0)
        done, pending = await asyncio.wait(tasks, timeout=timeout)
        for thought, task in run.reflections:
            if task in done and not task.cancelled():
                thought.reflection = task.result()
        for task in pending:
            task.cancel()
        if pending:
            logger.warning("planning reflections dropped count=%d timeout_seconds=%.1f", len(pending), timeout)

    # ------------------------------------------------------------------
    # context slots
    # ------------------------------------------------------------------

    def store_tool_result(self, context: WritingContext, tool_name: str, result: Any):
        if tool_name == "getOutline" and isinstance(result, dict):
            context.core_settings = _stringify(result.get("coreSettings"))
        elif tool_name == "getVolumeBlueprint" and isinstance(result, dict):
            context.volume_blueprint = result
        elif tool_name == "getRecentChapters":
            if isinstance(result, dict):
                if isinstance(result.get("recentFullChapters"), list):
                    context.recent_full_chapters = result["recentFullChapters"]
                if isinstance(result.get("recentSummaries"), list):
                    context.recent_summaries = result["recentSummaries"]
            elif isinstance(result, list):
                context.recent_full_chapters = result
        elif tool_name == "getRelevantEvents" and isinstance(result, list):
            context.relevant_events = result
            context.prioritized_events = sorted(
                result,
                key=lambda e: (e.relevance_score or 0.0, e.importance_score or 0.0),
                reverse=True,
            )[:5]
        elif tool_name == "getUnresolvedForeshadows" and isinstance(result, list):
            context.unresolved_foreshadows = result
        elif tool_name == "getWorldRules" and isinstance(result, list):
            context.world_rules = result
        elif tool_name == "getPlotlineStatus" and isinstance(result, list):
            context.plotline_status = result
        elif tool_name == "getNarrativeRhythm" and isinstance(result, dict):
            context.narrative_rhythm = result
        elif tool_name == "getConflictArcStatus" and isinstance(result, list):
            context.conflict_arcs = result
        elif tool_name == "getCharacterArcStatus" and isinstance(result, list):
            context.character_arcs = result
        elif tool_name == "getPerspectiveHistory" and isinstance(result, list):
            context.perspective_history = result
        elif tool_name == "generateCharacterProfile" and isinstance(result, dict):
            context.character_profiles = [*context.character_profiles, result]
        elif tool_name == "getCharacterProfiles" and isinstance(result, list):
            known = {str(p.get("name")) for p in context.character_profiles}
            context.character_profiles = [
                *context.character_profiles,
                *[p for p in result if isinstance(p, dict) and str(p.get("name")) not in known],
            ]
        else:
            context.extra_observations[tool_name] = to_jsonable(result)

    # ------------------------------------------------------------------
    # prompt
    # ------------------------------------------------------------------

    def build_thinking_prompt(self, run: _PlanningRun, definitions: List[ToolDefinition]) -> str:
        context = run.context
        parts: List[str] = [
            f"你是一位专业的网文小说家AI助手。现在需要为小说的第{context.chapter_number}章进行写作准备。\n\n",
            "【核心素材（已预加载）】\n",
            self._core_focus(context),
            f"- 章节意图：{self.format_chapter_intent(context)}\n",
            f"- 节奏指标：{self.format_rhythm_summary(context)}\n\n",
            self.context_digest(context),
        ]
        if run.early_phase:
            parts.append(EARLY_PHASE_SECTION)
        parts.append(REVIEW_SECTION)
        parts.append(f"【用户要求】\n{context.user_adjustment or '正常推进剧情'}\n\n")

        parts.append("【可用工具】\n")
        for definition in definitions:
            if definition.name in run.executed:
                status = " ✓已调用"
            elif definition.name in run.required_tools:
                status = " ⚠️必须调用"
            else:
                status = ""
            parts.append(f"- {definition.name}{status}: {definition.description}\n")
        parts.append("\n")

        if context.thoughts:
            parts.append("【之前的思考和行动】\n")
            for thought in context.thoughts:
                observation = thought.observation or ""
                if len(observation) > OBSERVATION_PREVIEW_CHARS:
                    observation = observation[:OBSERVATION_PREVIEW_CHARS] + "..."
                parts.append(
                    f"Step {thought.step_number}:\n"
                    f"  思考: {thought.reasoning}\n"
                    f"  行动: {thought.action}\n"
                    f"  结果: {observation}\n"
                )
            parts.append("\n")

        parts.append(DECISION_FORMAT_SECTION)
        hint = self.rules.render_hint(context.user_adjustment)
        if hint:
            parts.append(f"【章节类型建议】\n{hint}\n\n")
        parts.append("现在，请给出你的决策：")
        return "".join(parts)

    def _core_focus(self, context: WritingContext) -> str:
        meta = context.core_narrative_summary.get("meta")
        meta = meta if isinstance(meta, dict) else {}

        def label(name_key: str, id_key: str) -> str:
            name = _stringify(meta.get(name_key))
            if name and name.strip():
                return name.strip()
            ident = _stringify(meta.get(id_key))
            return ident.strip() if ident and ident.strip() else "未标记"

        return (
            f"- 活跃冲突线: {label('activeConflictName', 'activeConflict')}\n"
            f"- 活跃情节线: {label('activePlotlineName', 'activePlotline')}\n"
            f"- 活跃人物弧: {label('activeCharacterArcName', 'activeCharacterArc')}\n"
            "- 整体大纲、卷蓝图、核心剧情纪要\n"
            "- 最近3章全文 + 近20-30章摘要\n"
        )

    def context_digest(self, context: WritingContext) -> str:
        budget = self.budget
        parts: List[str] = []

        core = budget.clip(context.core_settings, budget.max_outline)
        if core:
            parts.append(f"【核心设定提要】\n{core}\n\n")
        if context.volume_blueprint:
            blueprint = budget.clip(_pretty_json(context.volume_blueprint), budget.max_volume_blueprint)
            if blueprint:
                parts.append(f"【卷蓝图要点】\n{blueprint}\n\n")
        if context.core_narrative_summary:
            summary = budget.clip(_pretty_json(context.core_narrative_summary), budget.max_core_summary)
            if summary:
                parts.append(f"【核心剧情锚点】\n{summary}\n\n")
        if context.chapter_plan:
            plan = budget.clip(_pretty_json(context.chapter_plan), budget.max_chapter_plan)
            if plan:
                parts.append(f"【章节计划摘要】\n{plan}\n\n")

        if context.recent_summaries:
            lines = []
            for item in context.recent_summaries[-budget.max_recent_summaries :]:
                if not isinstance(item, dict):
                    continue
                raw = item.get("summary") if "summary" in item else item.get("content")
                clipped = budget.clip(_stringify(raw), budget.max_recent_summary)
                if clipped:
                    lines.append(f"- 第{item.get('chapterNumber', '?')}章：{clipped}\n")
            parts.append("【最近章节摘要】\n" + "".join(lines) + "\n")

        parts.append(self._graph_digest("高优先级事件", context.prioritized_events, budget.max_events))
        parts.append(self._graph_digest("待回收伏笔", context.unresolved_foreshadows, budget.max_foreshadows))

        if context.character_profiles:
            lines = []
            for profile in context.character_profiles[: budget.max_profiles]:
                name = _stringify(profile.get("name") or profile.get("characterName")) or "角色"
                traits = next(
                    (
                        _stringify(profile.get(key))
                        for key in ("coreTraits", "persona", "summary")
                        if _stringify(profile.get(key))
                    ),
                    None,
                )
                clipped = budget.clip(traits, budget.max_profile)
                lines.append(f"- {name}：{clipped}\n" if clipped else f"- {name}\n")
            parts.append("【角色档案要点】\n" + "".join(lines) + "\n")
        return "".join(parts)

    def _graph_digest(self, title: str, entities: List[GraphEntity], limit: int) -> str:
        if not entities:
            return ""
        lines = [f"【{title}】\n"]
        for entity in entities[:limit]:
            props = entity.properties()
            line = f"- {entity.type or '剧情点'}"
            if entity.chapter_number is not None:
                line += f"·第{entity.chapter_number}章"
            name = next(
                (_stringify(props.get(key)) for key in ("title", "name", "label") if _stringify(props.get(key))),
                entity.id,
            )
            if name:
                line += f"：{name}"
            desc = self.budget.clip(
                _stringify(props.get("description") or props.get("summary")), self.budget.max_event_description
            )
            if desc:
                line += f" —— {desc}"
            lines.append(line + "\n")
        lines.append("\n")
        return "".join(lines)

    @staticmethod
    def format_chapter_intent(context: WritingContext) -> str:
        intent = context.chapter_intent
        if intent is None:
            return "未设定"
        notes = "；".join(intent.focus_notes[:2])
        summary = f"焦点:{intent.primary_focus.value} / 节奏:{intent.target_beat_type.value}"
        return f"{summary} | 要点:{notes}" if notes else summary

    @staticmethod
    def format_rhythm_summary(context: WritingContext) -> str:
        rhythm = context.narrative_rhythm
        if not rhythm:
            return "暂无节奏分析"
        metrics = rhythm.get("metrics") if isinstance(rhythm.get("metrics"), dict) else {}
        text = "冲突{:.0f}% / 主线{:.0f}% / 人物{:.0f}%".format(
            _ratio(metrics.get("conflictRatio")) * 100,
            _ratio(metrics.get("plotRatio")) * 100,
            _ratio(metrics.get("characterRatio")) * 100,
        )
        if metrics.get("conflictFatigue") is True:
            text += "，提示：冲突密度偏高需缓冲"
        recommendations = rhythm.get("recommendations")
        if isinstance(recommendations, list) and recommendations:
            text += f"，建议：{recommendations[0]}"
        return text

    def _log_agenda(self, run: _PlanningRun, step: int):
        remaining = sorted(run.required_tools - set(run.executed))
        recent = [shorten(t.observation, 120) for t in run.context.thoughts[-2:][::-1] if t.observation]
        logger.info(
            "planning step=%d/%d chapter=%s early=%s remaining_required=%s executed=%s recent=%s",
            step,
            run.max_steps,
            run.context.chapter_number,
            run.early_phase,
            remaining,
            run.executed,
            recent,
        )

    # ------------------------------------------------------------------
    # chapter intent
    # ------------------------------------------------------------------

    @staticmethod
    def derive_chapter_intent(context: WritingContext) -> ChapterIntent:
        rhythm = context.narrative_rhythm or {}
        metrics = rhythm.get("metrics") if isinstance(rhythm.get("metrics"), dict) else {}
        recommendations = rhythm.get("recommendations")
        recommendations = [str(r) for r in recommendations] if isinstance(recommendations, list) else []
        fatigue = metrics.get("conflictFatigue") is True

        conflict_arc = context.conflict_arcs[0] if context.conflict_arcs else None
        character_arc = context.character_arcs[0] if context.character_arcs else None

        perspective = None
        if context.perspective_history and context.perspective_history[0].type == "PerspectiveRecommendation":
            perspective = _stringify(context.perspective_history[0].properties().get("recommendation"))

        if fatigue:
            focus, beat = ChapterFocus.CHARACTER_RELIEF, BeatType.RELIEF
        elif conflict_arc is not None:
            focus, beat = ChapterFocus.CONFLICT_ESCALATION, BeatType.CONFLICT
        elif character_arc is not None:
            focus, beat = ChapterFocus.CHARACTER_DEVELOPMENT, BeatType.CHARACTER
        else:
            focus, beat = ChapterFocus.PLOT_ADVANCEMENT, BeatType.PLOT

        notes: List[str] = []
        conflict_plan = None
        character_plan = None
        if fatigue:
            notes.append("连续冲突强度过高，本章优先安排人物内心或日常缓冲。")
        if conflict_arc is not None:
            props = conflict_arc.properties()
            notes.append(f"冲突线：{props.get('name')} → 下一步：{props.get('nextAction')}")
            conflict_plan = {
                key: props.get(key)
                for key in ("name", "stage", "nextAction", "protagonist", "antagonist", "urgency")
            }
        if character_arc is not None:
            props = character_arc.properties()
            notes.append(f"人物线：{props.get('characterName')} → 待完成：{props.get('pendingBeat')}")
            character_plan = {key: props.get(key) for key in ("characterName", "pendingBeat", "nextGoal", "priority")}
        if recommendations:
            notes.append(recommendations[0])
        if perspective:
            notes.append(f"视角提示：{perspective}")

        return ChapterIntent(
            primary_focus=focus,
            target_beat_type=beat,
            focus_notes=notes,
            narrative_recommendations=recommendations,
            perspective_suggestion=perspective,
            conflict_plan=conflict_plan,
            character_plan=character_plan,
        )
