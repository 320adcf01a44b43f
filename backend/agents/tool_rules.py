import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from core.settings import Settings, get_settings
from models import ConfigValidationError

logger = logging.getLogger("novelist.planner")

DEFAULT_RULES_PATH = Path(__file__).with_name("tool_rules.yaml")


@dataclass
class ToolHint:
    tool: str
    reason: str = ""


@dataclass
class ToolRule:
    name: str
    label: str
    keywords: List[str] = field(default_factory=list)
    tools: List[ToolHint] = field(default_factory=list)

    def matches(self, text: str) -> bool:
        return any(keyword and keyword.lower() in text for keyword in self.keywords)

    def render(self) -> str:
        lines = [f"【{self.label}】推荐工具："]
        for hint in self.tools:
            lines.append(f"- {hint.tool}: {hint.reason}" if hint.reason else f"- {hint.tool}")
        return "\n".join(lines)


class ToolRuleTable:
    """Ordered keyword rules; the first rule whose keyword occurs in the instruction wins."""

    def __init__(self, rules: Optional[List[ToolRule]] = None):
        self.rules = list(rules or [])

    @classmethod
    def from_mapping(cls, data: Any) -> "ToolRuleTable":
        if isinstance(data, dict):
            data = data.get("rules")
        if data is None:
            return cls([])
        if not isinstance(data, list):
            raise ConfigValidationError("tool rules must be a list")
        rules: List[ToolRule] = []
        for index, item in enumerate(data):
            if not isinstance(item, dict):
                raise ConfigValidationError(f"tool rule #{index} is not a mapping")
            name = str(item.get("name") or f"rule_{index}")
            hints: List[ToolHint] = []
            for entry in item.get("tools") or []:
                if isinstance(entry, str):
                    hints.append(ToolHint(tool=entry))
                elif isinstance(entry, dict) and entry.get("tool"):
                    hints.append(ToolHint(tool=str(entry["tool"]), reason=str(entry.get("reason") or "")))
                else:
                    raise ConfigValidationError(f"tool rule {name} has an invalid tool entry: {entry!r}")
            rules.append(
                ToolRule(
                    name=name,
                    label=str(item.get("label") or name),
                    keywords=[str(k) for k in item.get("keywords") or [] if str(k).strip()],
                    tools=hints,
                )
            )
        return cls(rules)

    @classmethod
    def from_yaml(cls, path: Path) -> "ToolRuleTable":
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigValidationError(f"tool rules unreadable path={path}: {exc}") from exc
        table = cls.from_mapping(data)
        logger.info("tool rules loaded path=%s rules=%d", path, len(table.rules))
        return table

    def match(self, instruction: Optional[str]) -> Optional[ToolRule]:
        if not instruction:
            return None
        text = instruction.lower()
        for rule in self.rules:
            if rule.matches(text):
                return rule
        return None

    def recommend(self, instruction: Optional[str]) -> List[str]:
        rule = self.match(instruction)
        return [hint.tool for hint in rule.tools] if rule else []

    def render_hint(self, instruction: Optional[str]) -> str:
        rule = self.match(instruction)
        return rule.render() if rule else ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rules": [
                {
                    "name": rule.name,
                    "label": rule.label,
                    "keywords": list(rule.keywords),
                    "tools": [{"tool": h.tool, "reason": h.reason} for h in rule.tools],
                }
                for rule in self.rules
            ]
        }


def load_tool_rules(settings: Optional[Settings] = None) -> ToolRuleTable:
    settings = settings or get_settings()
    path = Path(settings.tool_rules_path) if settings.tool_rules_path else DEFAULT_RULES_PATH
    return ToolRuleTable.from_yaml(path)
