"""
Pure ranking and classification helpers shared by every graph backend.

Backends only fetch candidate entities; ordering, filtering and the rhythm
report are computed here so both storage implementations rank identically.
"""

from typing import Any, Dict, Iterable, List, Optional

from models import (
    BeatType,
    CharacterArcEntity,
    ConflictArcEntity,
    ForeshadowEntity,
    ForeshadowStatus,
    GraphEntity,
    NarrativeBeatEntity,
    PerspectiveRecommendation,
    PerspectiveUsageEntity,
    WorldRuleEntity,
)

CONFLICT_BEATS = {BeatType.CONFLICT, BeatType.CLIMAX}
FATIGUE_RUN = 3
PLOTLINE_IDLE_LIMIT = 5
PLOTLINE_MIN_EVENTS = 3
FORESHADOW_REVEAL_HORIZON = 10
TERMINAL_ARC_STAGES = {"解决", "resolved", "RESOLVED"}

RECOMMEND_NO_BEATS = "尚无节奏记录，参考卷蓝图规划章节节奏。"
RECOMMEND_FATIGUE = "连续高强度冲突，建议本章转为人物刻画或日常缓冲，给读者呼吸空间。"
RECOMMEND_PLOT = "近期主线推进不足，结合卷蓝图推进关键事件。"
RECOMMEND_CHARACTER = "人物内心/关系描写偏少，考虑安排角色视角或情绪戏。"
RECOMMEND_RELIEF = "缺乏缓冲章节，可加入轻松段落或日常场景。"

_BEAT_KEYWORDS = (
    (BeatType.CONFLICT, ("CONFLICT", "冲突", "战")),
    (BeatType.CLIMAX, ("CLIMAX", "爆发", "高潮")),
    (BeatType.PLOT, ("PLOT", "ADV", "主线", "推进")),
    (BeatType.CHARACTER, ("CHAR", "EMOTION", "人物", "情")),
    (BeatType.RELIEF, ("RELIEF", "缓冲", "日常", "轻松")),
    (BeatType.SETUP, ("SETUP", "铺垫", "伏笔")),
)

_FORESHADOW_TIERS = {"high": 3.0, "medium": 2.0}

_WORLD_RULE_CATEGORY_WEIGHTS = {
    "power_system": 10.0,
    "world_setting": 8.0,
    "character_constraint": 6.0,
}

_RELATION_TYPE_WEIGHTS = {
    "CONFLICT": 3.0,
    "COOPERATION": 2.5,
    "ROMANCE": 2.0,
}


def normalize_beat_type(raw: Optional[str]) -> BeatType:
    """Map a free-form beat label onto a beat class by substring match, first hit wins."""
    if raw is None:
        return BeatType.UNKNOWN
    normalized = str(raw).strip().upper()
    if not normalized:
        return BeatType.UNKNOWN
    for beat_type, keywords in _BEAT_KEYWORDS:
        if any(keyword in normalized for keyword in keywords):
            return beat_type
    return BeatType.UNKNOWN


def build_rhythm_report(beats_newest_first: List[NarrativeBeatEntity]) -> Dict[str, Any]:
    """Compute ratios, the trailing conflict run and recommendations for a beat window."""
    beats = list(reversed(beats_newest_first))
    classes = [normalize_beat_type(beat.beat_type) for beat in beats]
    total = len(classes)

    def ratio(*wanted: BeatType) -> float:
        if total == 0:
            return 0.0
        return sum(1 for item in classes if item in wanted) / total

    counts: Dict[str, int] = {}
    for item in classes:
        counts[item.value] = counts.get(item.value, 0) + 1

    consecutive = 0
    for item in reversed(classes):
        if item not in CONFLICT_BEATS:
            break
        consecutive += 1

    conflict_ratio = ratio(BeatType.CONFLICT, BeatType.CLIMAX)
    plot_ratio = ratio(BeatType.PLOT)
    character_ratio = ratio(BeatType.CHARACTER)
    relief_ratio = ratio(BeatType.RELIEF)
    fatigue = consecutive >= FATIGUE_RUN

    recommendations: List[str] = []
    if not beats:
        recommendations.append(RECOMMEND_NO_BEATS)
    if fatigue:
        recommendations.append(RECOMMEND_FATIGUE)
    if plot_ratio < 0.3:
        recommendations.append(RECOMMEND_PLOT)
    if character_ratio < 0.2:
        recommendations.append(RECOMMEND_CHARACTER)
    if relief_ratio == 0 and conflict_ratio > 0.5:
        recommendations.append(RECOMMEND_RELIEF)

    return {
        "recentBeats": beats,
        "metrics": {
            "conflictRatio": conflict_ratio,
            "plotRatio": plot_ratio,
            "characterRatio": character_ratio,
            "reliefRatio": relief_ratio,
            "beatCounts": counts,
            "consecutiveConflict": consecutive,
            "conflictFatigue": fatigue,
        },
        "recommendations": recommendations,
    }


def empty_rhythm_report() -> Dict[str, Any]:
    return build_rhythm_report([])


def foreshadow_tier(entity: ForeshadowEntity) -> float:
    label = (entity.importance or "").strip().lower()
    return _FORESHADOW_TIERS.get(label, 1.0)


def rank_unresolved_foreshadows(
    foreshadows: Iterable[ForeshadowEntity],
    chapter_number: int,
    limit: int,
) -> List[ForeshadowEntity]:
    candidates: List[ForeshadowEntity] = []
    for item in foreshadows:
        planted = item.chapter_number
        if planted is None or planted >= chapter_number:
            continue
        if item.status == ForeshadowStatus.REVEALED:
            continue
        planned = item.planned_reveal_chapter
        if planned is not None and planned > chapter_number + FORESHADOW_REVEAL_HORIZON:
            continue
        candidates.append(item)

    candidates.sort(key=lambda f: (-foreshadow_tier(f), -(chapter_number - (f.chapter_number or 0))))
    ranked: List[ForeshadowEntity] = []
    for item in candidates[: max(limit, 0)]:
        ranked.append(
            item.model_copy(
                update={
                    "relevance_score": 0.9,
                    "source": f"第{item.chapter_number}章",
                    "planted_at": f"第{item.chapter_number}章",
                    "suggested_resolve_window": f"第{chapter_number}-{chapter_number + FORESHADOW_REVEAL_HORIZON}章",
                    "description": item.description or item.content,
                }
            )
        )
    return ranked


def plotline_status_label(idle_duration: int, event_count: int) -> str:
    if idle_duration > 10:
        return "久未推进"
    if event_count < PLOTLINE_MIN_EVENTS:
        return "待发展"
    return "进行中"


def is_stale_plotline(idle_duration: int, event_count: int) -> bool:
    return idle_duration > PLOTLINE_IDLE_LIMIT or event_count < PLOTLINE_MIN_EVENTS


def world_rule_category_weight(category: Optional[str]) -> float:
    return _WORLD_RULE_CATEGORY_WEIGHTS.get((category or "").strip(), 5.0)


def world_rule_applies(rule: WorldRuleEntity, chapter_number: int) -> bool:
    if rule.scope == "global":
        return True
    if rule.applicable_chapter is None:
        return True
    return rule.applicable_chapter <= chapter_number


def rank_world_rules(rules: Iterable[WorldRuleEntity], chapter_number: int, limit: int) -> List[WorldRuleEntity]:
    applicable = [rule for rule in rules if world_rule_applies(rule, chapter_number)]
    applicable.sort(
        key=lambda r: (
            -world_rule_category_weight(r.category),
            -(r.importance_score if r.importance_score is not None else 0.0),
        )
    )
    ranked: List[WorldRuleEntity] = []
    for rule in applicable[: max(limit, 0)]:
        ranked.append(
            rule.model_copy(
                update={
                    "relevance_score": 1.0,
                    "source": "设定",
                    "chapter_number": rule.introduced_at or rule.chapter_number or 1,
                }
            )
        )
    return ranked


def arc_is_active(arc: GraphEntity) -> bool:
    if isinstance(arc, ConflictArcEntity):
        return (arc.stage or "").strip() not in TERMINAL_ARC_STAGES
    if isinstance(arc, CharacterArcEntity):
        if arc.progress is None or arc.total_beats is None:
            return True
        return arc.progress < arc.total_beats
    return True


def rank_conflict_arcs(arcs: Iterable[ConflictArcEntity], limit: int) -> List[ConflictArcEntity]:
    active = [arc for arc in arcs if arc_is_active(arc)]
    active.sort(key=lambda a: (-(a.urgency if a.urgency is not None else 0.5), a.chapter_number or 0))
    return [
        arc.model_copy(update={"relevance_score": arc.urgency if arc.urgency is not None else 0.5})
        for arc in active[: max(limit, 0)]
    ]


def rank_character_arcs(arcs: Iterable[CharacterArcEntity], limit: int) -> List[CharacterArcEntity]:
    active = [arc for arc in arcs if arc_is_active(arc)]
    active.sort(key=lambda a: (-(a.priority if a.priority is not None else 0.5), a.chapter_number or 0))
    return [
        arc.model_copy(update={"relevance_score": arc.priority if arc.priority is not None else 0.5})
        for arc in active[: max(limit, 0)]
    ]


def perspective_window(usages_newest_first: List[PerspectiveUsageEntity]) -> List[GraphEntity]:
    """Oldest-first viewpoint records, prefixed with a switch hint when one character dominates."""
    results: List[GraphEntity] = list(reversed(usages_newest_first))
    if len(results) < FATIGUE_RUN:
        return results
    last_character = getattr(results[-1], "character_name", None)
    run = 0
    for item in reversed(results):
        if getattr(item, "character_name", None) != last_character:
            break
        run += 1
    if last_character and run >= FATIGUE_RUN:
        hint = PerspectiveRecommendation(
            id="perspective_summary",
            recommendation=f"连续多章使用{last_character}视角，考虑切换其他角色以带来新信息或情绪。",
            character_name=last_character,
        )
        results.insert(0, hint)
    return results


def relation_type_weight(relation_type: Optional[str]) -> float:
    return _RELATION_TYPE_WEIGHTS.get((relation_type or "").strip().upper(), 1.0)
