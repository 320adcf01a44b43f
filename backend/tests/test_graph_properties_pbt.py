"""
Property-based tests for importance normalisation, ledger rollback and the rhythm report.

Uses hypothesis to verify invariants across randomized inputs.
"""

from hypothesis import given, settings, strategies as st

from memory import InMemoryGraphStore
from memory.ranking import FATIGUE_RUN, build_rhythm_report
from models import NarrativeBeatEntity
from utils.text_cleaner import resolve_importance

# ---------------------------------------------------------------------------
# Hypothesis profiles
# ---------------------------------------------------------------------------
settings.register_profile("ci", max_examples=200)
settings.register_profile("dev", max_examples=100)

# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

_unit = st.floats(min_value=0.0, max_value=1.0, allow_nan=False)
_above_one = st.floats(min_value=1.0, max_value=1e6, allow_nan=False, exclude_min=True)
_beat_label = st.sampled_from(["PLOT", "CONFLICT", "CLIMAX", "CHARACTER", "RELIEF", "SETUP", "misc"])
_locations = st.sampled_from(["山门", "京城", "北境", "药谷", "海岛"])
_chapter_writes = st.lists(st.tuples(st.integers(min_value=1, max_value=30), _locations), min_size=1, max_size=12)


# ---------------------------------------------------------------------------
# Importance
# ---------------------------------------------------------------------------


@given(value=_unit)
def test_importance_identity_on_unit_interval(value):
    assert resolve_importance(value, 0.5) == value


@given(value=_above_one)
def test_importance_ten_point_scale(value):
    assert resolve_importance(value, 0.5) == min(1.0, value / 10.0)


@given(value=st.floats(max_value=0.0, allow_nan=False, allow_infinity=False, exclude_max=True))
def test_importance_negative_clamped(value):
    assert resolve_importance(value, 0.5) == 0.0


@given(label=st.text(min_size=1, max_size=8), default=_unit)
def test_importance_unknown_label_uses_default(label, default):
    known = {"high", "critical", "urgent", "核心", "medium", "mid", "中", "low", "minor", "次要"}
    if label.strip().lower() in known:
        return
    assert resolve_importance(label, default) == default


def test_importance_labels():
    assert resolve_importance("high", 0.5) == 0.85
    assert resolve_importance("medium", 0.5) == 0.6
    assert resolve_importance("low", 0.5) == 0.35
    assert resolve_importance(True, 0.4) == 0.4


# ---------------------------------------------------------------------------
# Ledger guard and rollback
# ---------------------------------------------------------------------------


@given(writes=_chapter_writes)
def test_ledger_never_moves_backwards(writes):
    store = InMemoryGraphStore()
    newest = None
    for chapter, location in writes:
        store.upsert_character_state(1, "林辰", location=location, chapter_number=chapter)
        if newest is None or chapter >= newest[0]:
            newest = (chapter, location)
    state = store.get_character_state(1, "林辰")
    assert state.last_updated_chapter == newest[0]
    assert state.location == newest[1]


@given(writes=_chapter_writes)
def test_deleting_latest_chapter_restores_previous_state(writes):
    store = InMemoryGraphStore()
    applied = []
    for chapter, location in writes:
        result = store.upsert_character_state(1, "林辰", location=location, chapter_number=chapter)
        if result.applied:
            applied.append((chapter, location))
    latest = applied[-1][0]
    earlier = [item for item in applied if item[0] < latest]

    store.delete_chapter_entities(1, latest)
    state = store.get_character_state(1, "林辰")
    if earlier:
        assert state.last_updated_chapter == earlier[-1][0]
        assert state.location == earlier[-1][1]
    else:
        assert state is None


@given(writes=_chapter_writes)
def test_deleting_historical_chapter_changes_nothing(writes):
    store = InMemoryGraphStore()
    for chapter, location in writes:
        store.upsert_character_state(1, "林辰", location=location, chapter_number=chapter)
    before = store.get_character_state(1, "林辰")
    if before.last_updated_chapter <= 1:
        return
    store.delete_chapter_entities(1, before.last_updated_chapter - 1)
    assert store.get_character_state(1, "林辰") == before


# ---------------------------------------------------------------------------
# Rhythm
# ---------------------------------------------------------------------------


def _beats_newest_first(labels):
    beats = [
        NarrativeBeatEntity.from_properties(f"beat_{i}", i, {"beatType": label})
        for i, label in enumerate(labels, start=1)
    ]
    return list(reversed(beats))


@given(labels=st.lists(_beat_label, max_size=10))
def test_rhythm_ratios_and_fatigue(labels):
    report = build_rhythm_report(_beats_newest_first(labels))
    metrics = report["metrics"]
    assert sum(metrics["beatCounts"].values()) == len(labels)
    for key in ("conflictRatio", "plotRatio", "characterRatio", "reliefRatio"):
        assert 0.0 <= metrics[key] <= 1.0

    run = 0
    for label in reversed(labels):
        if label not in ("CONFLICT", "CLIMAX"):
            break
        run += 1
    assert metrics["consecutiveConflict"] == run
    assert metrics["conflictFatigue"] == (run >= FATIGUE_RUN)
    assert [b.chapter_number for b in report["recentBeats"]] == list(range(1, len(labels) + 1))


def test_rhythm_example_sequence():
    report = build_rhythm_report(_beats_newest_first(["PLOT", "CONFLICT", "CONFLICT", "CONFLICT"]))
    assert report["metrics"]["conflictFatigue"] is True
    assert report["metrics"]["consecutiveConflict"] == 3


def test_rhythm_empty_window_recommends_blueprint():
    report = build_rhythm_report([])
    assert report["recentBeats"] == []
    assert report["metrics"]["conflictRatio"] == 0.0
    assert report["recommendations"][0].startswith("尚无节奏记录")
