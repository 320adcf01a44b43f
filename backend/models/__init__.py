import re
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Type

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel


NAME_SPLIT_PATTERN = re.compile(r"[,，、]")


class NarrativeError(Exception):
    """Base class for errors raised by the narrative memory core."""


class ConfigValidationError(NarrativeError, ValueError):
    pass


class ExtractionError(NarrativeError):
    """Transient model/network failure while extracting a chapter."""


class ExtractionNotFoundError(NarrativeError, LookupError):
    pass


class ToolNotFoundError(NarrativeError, KeyError):
    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"unknown tool: {self.name}"


class ToolExecutionError(NarrativeError):
    pass


class EntityType(str, Enum):
    EVENT = "Event"
    FORESHADOW = "Foreshadow"
    PLOTLINE = "Plotline"
    WORLD_RULE = "WorldRule"
    NARRATIVE_BEAT = "NarrativeBeat"
    CONFLICT_ARC = "ConflictArc"
    CHARACTER_ARC = "CharacterArc"
    PERSPECTIVE_USAGE = "PerspectiveUsage"
    PERSPECTIVE_RECOMMENDATION = "PerspectiveRecommendation"
    CHARACTER = "Character"
    LOCATION = "Location"
    CHARACTER_PROFILE = "CharacterProfile"


class ForeshadowStatus(str, Enum):
    PLANTED = "PLANTED"
    DEVELOPING = "DEVELOPING"
    REVEALED = "REVEALED"


class QuestStatus(str, Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


class LedgerKind(str, Enum):
    CHARACTER = "character"
    RELATIONSHIP = "relationship"
    QUEST = "quest"


class BeatType(str, Enum):
    CONFLICT = "CONFLICT"
    CLIMAX = "CLIMAX"
    PLOT = "PLOT"
    CHARACTER = "CHARACTER"
    RELIEF = "RELIEF"
    SETUP = "SETUP"
    UNKNOWN = "UNKNOWN"


class ChapterFocus(str, Enum):
    CHARACTER_RELIEF = "CHARACTER_RELIEF"
    CONFLICT_ESCALATION = "CONFLICT_ESCALATION"
    CHARACTER_DEVELOPMENT = "CHARACTER_DEVELOPMENT"
    PLOT_ADVANCEMENT = "PLOT_ADVANCEMENT"


class PlanningOutcome(str, Enum):
    WRITE_READY = "WRITE_READY"
    MAX_STEPS_EXCEEDED = "MAX_STEPS_EXCEEDED"
    USER_DIRECTIVE = "USER_DIRECTIVE"


def split_names(value: Any) -> List[str]:
    """Normalise a participant field that may arrive as a list or a delimited string."""
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in NAME_SPLIT_PATTERN.split(value) if part.strip()]
    if isinstance(value, (list, tuple, set)):
        names: List[str] = []
        for item in value:
            if item is None:
                continue
            text = str(item).strip()
            if text:
                names.append(text)
        return names
    text = str(value).strip()
    return [text] if text else []


# ---------------------------------------------------------------------------
# Graph entities
# ---------------------------------------------------------------------------

_ENVELOPE_FIELDS = {"type", "id", "chapter_number", "relevance_score", "source", "importance_score", "extras"}


class GraphEntity(BaseModel):
    """A typed story fact.

    Each entity kind is a subclass with its own declared fields; anything the
    extraction source sends that no field claims lands in ``extras`` so newer
    prompt fields survive a round trip through the store.
    """

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: str
    id: str
    chapter_number: Optional[int] = None
    relevance_score: Optional[float] = None
    source: Optional[str] = None
    importance_score: Optional[float] = None
    extras: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_properties(
        cls,
        entity_id: str,
        chapter_number: Optional[int],
        properties: Optional[Dict[str, Any]] = None,
        **envelope: Any,
    ) -> "GraphEntity":
        """Build an entity from a loose property map.

        Keys that match a declared field (by snake_case name or camelCase alias)
        populate it; everything else, including values that fail validation for
        their field, is kept verbatim in ``extras``.
        """
        by_key: Dict[str, str] = {}
        for name, info in cls.model_fields.items():
            if name in _ENVELOPE_FIELDS:
                continue
            by_key[info.alias or name] = name
            by_key[name] = name

        known: Dict[str, Any] = {}
        raw_keys: Dict[str, str] = {}
        extras: Dict[str, Any] = {}
        for key, value in (properties or {}).items():
            name = by_key.get(key)
            if name is None:
                extras[key] = value
            elif value is not None:
                known[name] = value
                raw_keys[name] = key

        payload: Dict[str, Any] = {}
        payload.update(envelope)
        payload["id"] = entity_id
        payload["chapter_number"] = chapter_number
        default_type = cls.model_fields["type"].default
        if "type" not in payload and isinstance(default_type, str):
            payload["type"] = default_type

        while True:
            try:
                return cls.model_validate({**known, **payload, "extras": extras})
            except ValidationError as exc:
                rejected = set()
                for error in exc.errors():
                    loc = error.get("loc") or ()
                    if loc:
                        rejected.add(by_key.get(str(loc[0]), str(loc[0])))
                movable = rejected & set(known)
                if not movable or rejected - set(known):
                    raise
                for name in movable:
                    extras[raw_keys[name]] = known.pop(name)

    def properties(self) -> Dict[str, Any]:
        """Flat camelCase view of the kind-specific fields merged over extras."""
        data = dict(self.extras)
        dumped = self.model_dump(
            mode="json",
            by_alias=True,
            exclude=_ENVELOPE_FIELDS,
            exclude_none=True,
        )
        data.update(dumped)
        if self.importance_score is not None:
            data["importanceScore"] = self.importance_score
        return data

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "type": self.type,
            "id": self.id,
            "chapterNumber": self.chapter_number,
            "properties": self.properties(),
        }
        if self.relevance_score is not None:
            payload["relevanceScore"] = self.relevance_score
        if self.source:
            payload["source"] = self.source
        return payload


class EventEntity(GraphEntity):
    type: Literal["Event"] = "Event"
    summary: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    realm: Optional[str] = None
    participants: List[str] = Field(default_factory=list)
    on_scene_participants: List[str] = Field(default_factory=list)
    mentioned_only_participants: List[str] = Field(default_factory=list)
    emotional_tone: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    plotline_id: Optional[str] = None
    causal_from: List[str] = Field(default_factory=list)
    causal_to: List[str] = Field(default_factory=list)

    @field_validator(
        "participants",
        "on_scene_participants",
        "mentioned_only_participants",
        "tags",
        "causal_from",
        "causal_to",
        mode="before",
    )
    @classmethod
    def _name_list(cls, value: Any) -> List[str]:
        return split_names(value)

    def scene_characters(self) -> List[str]:
        return list(self.on_scene_participants or self.participants)


class ForeshadowEntity(GraphEntity):
    type: Literal["Foreshadow"] = "Foreshadow"
    description: Optional[str] = None
    content: Optional[str] = None
    status: ForeshadowStatus = ForeshadowStatus.PLANTED
    importance: Optional[str] = None
    planted_at: Optional[str] = None
    suggested_resolve_window: Optional[str] = None
    planned_reveal_chapter: Optional[int] = None
    suggested_reveal_chapter: Optional[int] = None
    resolved_chapter: Optional[int] = None

    @field_validator("importance", mode="before")
    @classmethod
    def _importance_as_text(cls, value: Any) -> Any:
        if value is None or isinstance(value, str):
            return value
        return str(value)

    @field_validator("status", mode="before")
    @classmethod
    def _status_upper(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().upper()
        return value

    def reveal_deadline(self) -> Optional[int]:
        if self.planned_reveal_chapter is not None:
            return self.planned_reveal_chapter
        return self.suggested_reveal_chapter


class PlotlineEntity(GraphEntity):
    type: Literal["Plotline"] = "Plotline"
    name: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[float] = None
    status: Optional[str] = None
    last_update: Optional[str] = None
    idle_duration: Optional[int] = None
    event_count: Optional[int] = None


class WorldRuleEntity(GraphEntity):
    type: Literal["WorldRule"] = "WorldRule"
    name: Optional[str] = None
    content: Optional[str] = None
    constraint: Optional[str] = None
    category: Optional[str] = None
    scope: str = "global"
    applicable_chapter: Optional[int] = None
    introduced_at: Optional[int] = None


class NarrativeBeatEntity(GraphEntity):
    type: Literal["NarrativeBeat"] = "NarrativeBeat"
    beat_type: Optional[str] = None
    focus: Optional[str] = None
    sentiment: Optional[str] = None
    tension: Optional[float] = None
    pace_score: Optional[float] = None
    viewpoint: Optional[str] = None
    tags: List[str] = Field(default_factory=list)

    @field_validator("tags", mode="before")
    @classmethod
    def _tag_list(cls, value: Any) -> List[str]:
        return split_names(value)


class ConflictArcEntity(GraphEntity):
    type: Literal["ConflictArc"] = "ConflictArc"
    name: Optional[str] = None
    stage: Optional[str] = None
    urgency: Optional[float] = None
    next_action: Optional[str] = None
    protagonist: Optional[str] = None
    antagonist: Optional[str] = None
    trend: Optional[str] = None


class CharacterArcEntity(GraphEntity):
    type: Literal["CharacterArc"] = "CharacterArc"
    character_name: Optional[str] = None
    arc_name: Optional[str] = None
    pending_beat: Optional[str] = None
    next_goal: Optional[str] = None
    priority: Optional[float] = None
    progress: Optional[int] = None
    total_beats: Optional[int] = None


class PerspectiveUsageEntity(GraphEntity):
    type: Literal["PerspectiveUsage"] = "PerspectiveUsage"
    character_name: Optional[str] = None
    mode: Optional[str] = None
    tone: Optional[str] = None
    purpose: Optional[str] = None
    weight: Optional[float] = None


class PerspectiveRecommendation(GraphEntity):
    type: Literal["PerspectiveRecommendation"] = "PerspectiveRecommendation"
    recommendation: str
    character_name: Optional[str] = None


class CharacterEntity(GraphEntity):
    type: Literal["Character"] = "Character"
    name: str
    aliases: List[str] = Field(default_factory=list)

    @field_validator("aliases", mode="before")
    @classmethod
    def _alias_list(cls, value: Any) -> List[str]:
        return split_names(value)


class LocationEntity(GraphEntity):
    type: Literal["Location"] = "Location"
    name: str


class CharacterProfileEntity(GraphEntity):
    type: Literal["CharacterProfile"] = "CharacterProfile"
    name: Optional[str] = None
    role: Optional[str] = None
    core_traits: Optional[str] = None
    persona: Optional[str] = None
    summary: Optional[str] = None


ENTITY_CLASSES: Dict[str, Type[GraphEntity]] = {
    EntityType.EVENT.value: EventEntity,
    EntityType.FORESHADOW.value: ForeshadowEntity,
    EntityType.PLOTLINE.value: PlotlineEntity,
    EntityType.WORLD_RULE.value: WorldRuleEntity,
    EntityType.NARRATIVE_BEAT.value: NarrativeBeatEntity,
    EntityType.CONFLICT_ARC.value: ConflictArcEntity,
    EntityType.CHARACTER_ARC.value: CharacterArcEntity,
    EntityType.PERSPECTIVE_USAGE.value: PerspectiveUsageEntity,
    EntityType.PERSPECTIVE_RECOMMENDATION.value: PerspectiveRecommendation,
    EntityType.CHARACTER.value: CharacterEntity,
    EntityType.LOCATION.value: LocationEntity,
    EntityType.CHARACTER_PROFILE.value: CharacterProfileEntity,
}


def entity_class_for(entity_type: str) -> Type[GraphEntity]:
    return ENTITY_CLASSES.get(entity_type, GraphEntity)


def entity_from_dict(data: Dict[str, Any]) -> GraphEntity:
    return entity_class_for(str(data.get("type", ""))).model_validate(data)


class GraphEdge(BaseModel):
    from_id: str
    type: str
    to_id: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)


# ---------------------------------------------------------------------------
# Versioned ledgers
# ---------------------------------------------------------------------------


class CharacterState(BaseModel):
    character_name: str
    location: Optional[str] = None
    realm: Optional[str] = None
    alive: Optional[bool] = None
    affiliation: Optional[str] = None
    social_status: Optional[str] = None
    backers: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    secrets: Optional[List[str]] = None
    key_items: Optional[List[str]] = None
    known_by: Optional[List[str]] = None
    inventory: Optional[List[str]] = None
    character_info: Optional[str] = None
    last_updated_chapter: Optional[int] = None


class RelationshipState(BaseModel):
    a: str
    b: str
    type: Optional[str] = None
    strength: float = 0.5
    description: Optional[str] = None
    public_status: Optional[str] = None
    last_updated_chapter: Optional[int] = None


class OpenQuest(BaseModel):
    id: str
    description: Optional[str] = None
    status: QuestStatus = QuestStatus.OPEN
    introduced_chapter: Optional[int] = None
    due_by_chapter: Optional[int] = None
    resolved_chapter: Optional[int] = None
    last_updated_chapter: Optional[int] = None


class HistorySnapshot(BaseModel):
    kind: LedgerKind
    key: str
    chapter_number: int
    snapshot: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=datetime.now)


class MutationResult(BaseModel):
    ok: bool
    operation: str
    target: str = ""
    applied: bool = True
    error: Optional[str] = None
    details: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def success(
        cls,
        operation: str,
        target: str = "",
        applied: bool = True,
        **details: Any,
    ) -> "MutationResult":
        return cls(ok=True, operation=operation, target=target, applied=applied, details=details)

    @classmethod
    def failure(cls, operation: str, target: str, error: BaseException) -> "MutationResult":
        return cls(ok=False, operation=operation, target=target, applied=False, error=str(error) or type(error).__name__)


# ---------------------------------------------------------------------------
# Extraction bookkeeping
# ---------------------------------------------------------------------------


class ChapterText(BaseModel):
    chapter_number: int
    title: Optional[str] = None
    content: str = ""
    summary: Optional[str] = None


class FailedExtraction(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    novel_id: int
    chapter_number: int
    chapter_title: Optional[str] = None
    content: str = ""
    config: Any = None
    retry_count: int = 0
    failures: List[str] = Field(default_factory=list)
    last_failure: Optional[datetime] = None
    scheduled: bool = False

    @property
    def key(self) -> str:
        return f"{self.novel_id}_{self.chapter_number}"


# ---------------------------------------------------------------------------
# Planning loop
# ---------------------------------------------------------------------------


class ToolDefinition(BaseModel):
    name: str
    description: str
    parameters: Dict[str, Any] = Field(default_factory=dict)
    return_example: Optional[str] = None
    cost_estimate: int = 0
    required: bool = False


class AgentDecision(BaseModel):
    reasoning: str = ""
    action: str = "WRITE"
    action_args: str = ""


class AgentThought(BaseModel):
    step_number: int
    reasoning: Optional[str] = None
    action: Optional[str] = None
    action_args: Optional[str] = None
    observation: Optional[str] = None
    reflection: Optional[str] = None
    goal_achieved: bool = False
    timestamp: datetime = Field(default_factory=datetime.now)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ChapterIntent(BaseModel):
    primary_focus: ChapterFocus = ChapterFocus.PLOT_ADVANCEMENT
    target_beat_type: BeatType = BeatType.PLOT
    focus_notes: List[str] = Field(default_factory=list)
    narrative_recommendations: List[str] = Field(default_factory=list)
    perspective_suggestion: Optional[str] = None
    conflict_plan: Optional[Dict[str, Any]] = None
    character_plan: Optional[Dict[str, Any]] = None


class WritingContext(BaseModel):
    novel_id: int
    chapter_number: int
    user_adjustment: Optional[str] = None
    chapter_plan: Dict[str, Any] = Field(default_factory=dict)
    core_settings: Optional[str] = None
    volume_blueprint: Dict[str, Any] = Field(default_factory=dict)
    core_narrative_summary: Dict[str, Any] = Field(default_factory=dict)
    recent_full_chapters: List[Dict[str, Any]] = Field(default_factory=list)
    recent_summaries: List[Dict[str, Any]] = Field(default_factory=list)
    relevant_events: List[GraphEntity] = Field(default_factory=list)
    prioritized_events: List[GraphEntity] = Field(default_factory=list)
    unresolved_foreshadows: List[GraphEntity] = Field(default_factory=list)
    plotline_status: List[GraphEntity] = Field(default_factory=list)
    world_rules: List[GraphEntity] = Field(default_factory=list)
    narrative_rhythm: Dict[str, Any] = Field(default_factory=dict)
    conflict_arcs: List[GraphEntity] = Field(default_factory=list)
    character_arcs: List[GraphEntity] = Field(default_factory=list)
    perspective_history: List[GraphEntity] = Field(default_factory=list)
    character_profiles: List[Dict[str, Any]] = Field(default_factory=list)
    extra_observations: Dict[str, Any] = Field(default_factory=dict)
    thoughts: List[AgentThought] = Field(default_factory=list)
    executed_tools: List[str] = Field(default_factory=list)
    outcome: Optional[PlanningOutcome] = None
    chapter_intent: Optional[ChapterIntent] = None
