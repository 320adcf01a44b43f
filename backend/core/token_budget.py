import re
from dataclasses import dataclass
from typing import Optional

_CJK_RE = re.compile(r"[一-龥]")
TRUNCATION_MARKER = "\n...(内容过长已截断)"


def estimate_tokens(text: Optional[str]) -> int:
    """Rough token estimate: a CJK char ~1.5 tokens, any other word ~1.3."""
    if not text:
        return 0
    cjk_chars = len(_CJK_RE.findall(text))
    other_words = len([part for part in _CJK_RE.sub(" ", text).split() if part])
    return int(cjk_chars * 1.5 + other_words * 1.3)


@dataclass
class TokenBudget:
    """Per-section allowances for the planning context digest."""

    max_outline: int = 2200
    max_volume_blueprint: int = 1600
    max_core_summary: int = 1200
    max_chapter_plan: int = 600
    max_recent_summary: int = 420
    max_event_description: int = 260
    max_profile: int = 220
    max_recent_summaries: int = 3
    max_events: int = 5
    max_foreshadows: int = 5
    max_profiles: int = 3
    enable_smart_truncation: bool = True

    def truncate(self, text: Optional[str], max_tokens: int) -> Optional[str]:
        if not self.enable_smart_truncation or text is None:
            return text
        estimated = estimate_tokens(text)
        if estimated <= max_tokens:
            return text
        # keep the head, 10% headroom under the proportional cut
        target_length = int(len(text) * (max_tokens / estimated) * 0.9)
        if target_length < len(text):
            return text[:target_length] + TRUNCATION_MARKER
        return text

    def clip(self, text: Optional[str], max_tokens: int) -> Optional[str]:
        if text is None or not str(text).strip():
            return None
        clipped = self.truncate(str(text), max_tokens)
        if clipped is None or not clipped.strip():
            return None
        return clipped
