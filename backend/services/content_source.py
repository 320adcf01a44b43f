"""
Read access to the novel material the planner needs but does not own:
outline, volume blueprints, chapter text and chapter summaries.
"""

import logging
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from models import ChapterText

logger = logging.getLogger("novelist.content")

DEFAULT_VOLUME_SIZE = 100
SIMPLE_SUMMARY_CHARS = 200
_CHAPTER_FILE = re.compile(r"^(\d+)\.(md|txt)$")


class ContentSource(ABC):
    @abstractmethod
    def get_outline(self, novel_id: int) -> Dict[str, Any]:
        """``{title, coreSettings, wordCount, type}``; ``type`` says which text was used."""

    @abstractmethod
    def get_volumes(self, novel_id: int) -> List[Dict[str, Any]]: ...

    @abstractmethod
    def get_chapters(
        self,
        novel_id: int,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> List[ChapterText]: ...

    def get_core_narrative_summary(self, novel_id: int) -> Dict[str, Any]:
        return {}

    def get_volume_blueprint(self, novel_id: int, chapter_number: int) -> Dict[str, Any]:
        volumes = sorted(self.get_volumes(novel_id), key=lambda v: int(v.get("startChapter") or 0))
        matched = None
        overrun = False
        for volume in volumes:
            start = int(volume.get("startChapter") or 1)
            end = volume.get("endChapter")
            end = int(end) if end is not None else start + DEFAULT_VOLUME_SIZE - 1
            if start <= chapter_number <= end:
                matched = (volume, start, end)
                break
        if matched is None and volumes:
            last = volumes[-1]
            start = int(last.get("startChapter") or 1)
            end = last.get("endChapter")
            end = int(end) if end is not None else start + DEFAULT_VOLUME_SIZE - 1
            if chapter_number > end:
                matched = (last, start, end)
                overrun = True

        if matched is None:
            number = (max(chapter_number, 1) - 1) // DEFAULT_VOLUME_SIZE + 1
            start = (number - 1) * DEFAULT_VOLUME_SIZE + 1
            end = number * DEFAULT_VOLUME_SIZE
            result = self._blueprint_frame(chapter_number, number, start, end, overrun=False)
            result.update(
                volumeTitle=f"第{number}卷",
                blueprint="暂无蓝图",
                fallback=True,
                warning="未找到对应的卷，采用默认卷长估算范围",
            )
            return result

        volume, start, end = matched
        number = int(volume.get("volumeNumber") or (volumes.index(volume) + 1))
        result = self._blueprint_frame(chapter_number, number, start, end, overrun=overrun)
        result.update(
            volumeTitle=volume.get("title") or f"第{number}卷",
            blueprint=volume.get("blueprint") or "暂无蓝图",
            theme=volume.get("theme") or "",
            description=volume.get("description") or "",
            keyEvents=volume.get("keyEvents") or "",
        )
        return result

    @staticmethod
    def _blueprint_frame(chapter_number: int, number: int, start: int, end: int, overrun: bool) -> Dict[str, Any]:
        span = max(end - start + 1, 1)
        index = chapter_number - start + 1
        progress = min(1.0, max(0.0, index / span))
        return {
            "volumeNumber": number,
            "chapterRange": f"{start}-{end}",
            "startChapter": start,
            "endChapter": end,
            "currentChapter": chapter_number,
            "chapterIndexInVolume": index,
            "volumeChapterSpan": span,
            "volumeProgress": round(progress, 3),
            "progressDescription": f"本卷第{index}/{span}章",
            "remainingChapters": max(end - chapter_number, 0),
            "overrun": overrun,
            "overrunChapters": max(chapter_number - end, 0),
        }

    def get_chapter_summaries(self, novel_id: int, start: int, end: int) -> List[Dict[str, Any]]:
        summaries = []
        for chapter in self.get_chapters(novel_id, start, end):
            summary = chapter.summary
            if not summary:
                content = chapter.content or ""
                summary = content[:SIMPLE_SUMMARY_CHARS] + ("..." if len(content) > SIMPLE_SUMMARY_CHARS else "")
            summaries.append({"chapterNumber": chapter.chapter_number, "summary": summary})
        return summaries

    def get_recent_chapters(
        self,
        novel_id: int,
        current_chapter: int,
        full_count: int = 3,
        summary_limit: int = 30,
    ) -> Dict[str, Any]:
        """Full text of the nearest chapters plus summaries of the ones before them, without overlap."""
        earlier = [c for c in self.get_chapters(novel_id, None, current_chapter - 1)]
        earlier.sort(key=lambda c: c.chapter_number, reverse=True)
        full = earlier[: max(full_count, 0)]
        result: Dict[str, Any] = {
            "recentFullChapters": [
                {
                    "chapterNumber": chapter.chapter_number,
                    "title": chapter.title or f"第{chapter.chapter_number}章",
                    "content": chapter.content or "",
                    "wordCount": len(chapter.content or ""),
                }
                for chapter in full
            ],
            "recentSummaries": [],
        }
        if full:
            full_start = full[-1].chapter_number
            result["fullChapterRange"] = f"第{full_start}章-第{full[0].chapter_number}章"
            summary_end = full_start - 1
        else:
            summary_end = current_chapter - full_count - 1
        summary_start = max(1, summary_end - (summary_limit - 1))
        if summary_end >= summary_start:
            summaries = self.get_chapter_summaries(novel_id, summary_start, summary_end)
            result["recentSummaries"] = summaries
            if summaries:
                result["summaryRange"] = f"第{summary_start}章-第{summary_end}章"
        return result


class FileContentSource(ContentSource):
    """
    Novel material laid out on disk.

    ``root/<novel_id>/`` is used when it exists, otherwise ``root`` itself::

        novel.yaml          title, optional coreSettings
        outline.md          full outline
        core_settings.md    distilled settings, preferred over the outline
        volumes.yaml        list of {volumeNumber, title, startChapter, endChapter, blueprint, ...}
        chapters/0001.md    chapter text, optional "# title" first line
        summaries.yaml      {chapterNumber: summary}
        core_summary.yaml   free-form core narrative summary
    """

    def __init__(self, root: str):
        self.root = Path(root)

    def _novel_dir(self, novel_id: int) -> Path:
        candidate = self.root / str(novel_id)
        return candidate if candidate.is_dir() else self.root

    def _read_text(self, path: Path) -> Optional[str]:
        if not path.exists():
            return None
        return path.read_text(encoding="utf-8")

    def _read_yaml(self, path: Path) -> Any:
        text = self._read_text(path)
        if text is None:
            return None
        try:
            return yaml.safe_load(text)
        except yaml.YAMLError as exc:
            logger.warning("content yaml unreadable path=%s error=%s", path, exc)
            return None

    def get_outline(self, novel_id: int) -> Dict[str, Any]:
        base = self._novel_dir(novel_id)
        meta = self._read_yaml(base / "novel.yaml") or {}
        title = meta.get("title") if isinstance(meta, dict) else None
        core = self._read_text(base / "core_settings.md")
        if not core and isinstance(meta, dict):
            core = meta.get("coreSettings")
        if core and core.strip():
            kind = "core_settings"
        else:
            core = self._read_text(base / "outline.md") or "暂无大纲"
            kind = "full_outline_fallback"
            logger.info("content core settings missing novel_id=%s fallback=outline", novel_id)
        return {"title": title, "coreSettings": core, "wordCount": len(core), "type": kind}

    def get_volumes(self, novel_id: int) -> List[Dict[str, Any]]:
        data = self._read_yaml(self._novel_dir(novel_id) / "volumes.yaml")
        if isinstance(data, dict):
            data = data.get("volumes")
        return [item for item in (data or []) if isinstance(item, dict)]

    def _summaries(self, novel_id: int) -> Dict[int, str]:
        data = self._read_yaml(self._novel_dir(novel_id) / "summaries.yaml")
        if not isinstance(data, dict):
            return {}
        summaries: Dict[int, str] = {}
        for key, value in data.items():
            try:
                summaries[int(key)] = str(value)
            except (TypeError, ValueError):
                continue
        return summaries

    def get_chapters(
        self,
        novel_id: int,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> List[ChapterText]:
        chapter_dir = self._novel_dir(novel_id) / "chapters"
        if not chapter_dir.is_dir():
            return []
        summaries = self._summaries(novel_id)
        chapters: List[ChapterText] = []
        for path in chapter_dir.iterdir():
            match = _CHAPTER_FILE.match(path.name)
            if not match:
                continue
            number = int(match.group(1))
            if start is not None and number < start:
                continue
            if end is not None and number > end:
                continue
            text = path.read_text(encoding="utf-8")
            title = None
            first, _, rest = text.partition("\n")
            if first.startswith("# "):
                title = first[2:].strip()
                text = rest.lstrip("\n")
            chapters.append(
                ChapterText(chapter_number=number, title=title, content=text, summary=summaries.get(number))
            )
        chapters.sort(key=lambda c: c.chapter_number)
        return chapters

    def get_core_narrative_summary(self, novel_id: int) -> Dict[str, Any]:
        data = self._read_yaml(self._novel_dir(novel_id) / "core_summary.yaml")
        return data if isinstance(data, dict) else {}
