import json
import logging
from typing import Any, Dict, Optional

from models import AgentDecision
from utils.text_cleaner import load_json_object, parse_lenient_args, shorten

logger = logging.getLogger("novelist.planner")

WRITE_ACTION = "WRITE"
PARSE_FAILURE_REASONING = "解析失败，使用默认策略"


def _args_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, ensure_ascii=False)
    return str(value)


def parse_decision(text: Optional[str]) -> AgentDecision:
    """
    Read a ``{reasoning, action, args}`` decision from model output.

    Strict JSON first, then ``key=value`` pairs; anything without an
    ``action`` becomes the WRITE decision so the loop can always finish.
    """
    raw = text or ""
    payload: Optional[Dict[str, Any]] = load_json_object(raw)
    if payload is None:
        lenient = parse_lenient_args(raw)
        if lenient.get("action"):
            logger.info("decision parsed leniently text=%s", shorten(raw, 160))
            payload = lenient

    action = str(payload.get("action") or "").strip() if payload else ""
    if not action:
        logger.warning("decision parse failed fallback=WRITE text=%s", shorten(raw, 160))
        return AgentDecision(reasoning=PARSE_FAILURE_REASONING, action=WRITE_ACTION, action_args="")

    return AgentDecision(
        reasoning=str(payload.get("reasoning") or ""),
        action=action,
        action_args=_args_text(payload.get("args")),
    )


def is_write(decision: AgentDecision) -> bool:
    return decision.action.strip().upper() == WRITE_ACTION


def parse_tool_args(args_text: Optional[str], novel_id: int, chapter_number: int) -> Dict[str, Any]:
    """Merge parsed extras over the ``novelId``/``chapterNumber`` every tool receives."""
    args: Dict[str, Any] = {"novelId": novel_id, "chapterNumber": chapter_number}
    text = (args_text or "").strip()
    if not text or text.lower() == "null":
        return args

    extras: Optional[Dict[str, Any]] = None
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            extras = parsed
    except ValueError:
        extras = None
    if extras is None:
        extras = parse_lenient_args(text)
        if extras:
            logger.info("tool args parsed leniently args=%s", shorten(text, 160))
        else:
            logger.warning("tool args unparseable args=%s", shorten(text, 160))
    args.update(extras)
    return args
