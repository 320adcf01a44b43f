#!/usr/bin/env python3
"""
Replay entity extraction over a novel directory into the configured graph store.

Run from backend/:
    python3 scripts/rebuild_graph.py --novel-id 1 --content-dir ../data/novels
    python3 scripts/rebuild_graph.py --novel-id 1 --start 10 --end 20 --batch-size 5
    python3 scripts/rebuild_graph.py --novel-id 1 --dry-run
"""

import argparse
import logging
import sys
from pathlib import Path
from typing import List, Optional

# ── ensure backend root is on sys.path so bare imports work ──
BACKEND_ROOT = Path(__file__).resolve().parent.parent
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from core.llm_client import LLMClient, create_llm_client  # noqa: E402
from core.settings import Settings, configure_logging, get_settings  # noqa: E402
from memory import NarrativeGraphStore, create_graph_store  # noqa: E402
from models import ChapterText, ConfigValidationError, ExtractionError  # noqa: E402
from services.content_source import ContentSource, FileContentSource  # noqa: E402
from services.entity_extraction import EntityExtractor  # noqa: E402

logger = logging.getLogger("novelist.extraction")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Rebuild the narrative graph from chapter files.")
    parser.add_argument("--novel-id", type=int, required=True)
    parser.add_argument("--content-dir", default=None, help="novel material root (default: settings)")
    parser.add_argument("--start", type=int, default=None, help="first chapter to replay")
    parser.add_argument("--end", type=int, default=None, help="last chapter to replay")
    parser.add_argument(
        "--batch-size",
        type=int,
        default=1,
        help="chapters per model call; 1 extracts chapter by chapter",
    )
    parser.add_argument(
        "--keep-existing",
        action="store_true",
        help="do not wipe chapter-scoped data before replaying",
    )
    parser.add_argument("--dry-run", action="store_true", help="list the chapters without writing")
    return parser


def chunked(chapters: List[ChapterText], size: int) -> List[List[ChapterText]]:
    size = max(1, size)
    return [chapters[i:i + size] for i in range(0, len(chapters), size)]


def rebuild(
    novel_id: int,
    store: NarrativeGraphStore,
    content: ContentSource,
    llm_client: LLMClient,
    settings: Settings,
    start: Optional[int] = None,
    end: Optional[int] = None,
    batch_size: int = 1,
    keep_existing: bool = False,
    dry_run: bool = False,
) -> List[int]:
    """Returns the chapter numbers that were written back into the store."""
    chapters = content.get_chapters(novel_id, start, end)
    numbers = [chapter.chapter_number for chapter in chapters]
    print(f"novel {novel_id}: {len(chapters)} chapters found {numbers[:10]}{' ...' if len(numbers) > 10 else ''}")
    if not chapters or dry_run:
        return []

    if not keep_existing:
        result = store.force_delete_chapter_range(novel_id, numbers)
        if not result.ok:
            print(f"  ⚠ wipe failed: {result.error}")
            return []
        print(f"  wiped chapter-scoped data for {len(numbers)} chapters")

    extractor = EntityExtractor(store, llm_client, settings)
    written: List[int] = []
    for group in chunked(chapters, batch_size):
        label = f"{group[0].chapter_number}-{group[-1].chapter_number}"
        try:
            if len(group) == 1:
                chapter = group[0]
                outcome = extractor.extract_and_save(
                    novel_id,
                    chapter.chapter_number,
                    chapter.title,
                    chapter.content,
                )
                if not outcome.skipped:
                    written.append(chapter.chapter_number)
                print(f"  ✓ chapter {label}: entities={outcome.entity_count} failed_writes={outcome.failed_writes}")
            else:
                done = extractor.extract_and_save_batch(novel_id, group)
                written.extend(done)
                print(f"  ✓ chapters {label}: written={done}")
        except ExtractionError as exc:
            logger.warning("rebuild chapter failed novel_id=%s chapters=%s error=%s", novel_id, label, exc)
            print(f"  ✗ chapters {label}: {exc}")
    return written


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)

    root = Path(args.content_dir).expanduser().resolve() if args.content_dir else settings.resolved_content_dir()
    if not root.is_dir():
        print(f"content directory not found: {root}")
        return 2

    store = create_graph_store(settings)
    print(f"graph backend: {store.backend_name}")
    try:
        written = rebuild(
            args.novel_id,
            store,
            FileContentSource(str(root)),
            create_llm_client(settings.llm_provider, **settings.llm_kwargs()),
            settings,
            start=args.start,
            end=args.end,
            batch_size=args.batch_size,
            keep_existing=args.keep_existing,
            dry_run=args.dry_run,
        )
    except ConfigValidationError as exc:
        print(f"model config invalid: {exc}")
        return 2

    stats = store.get_graph_statistics(args.novel_id)
    print(f"done: {len(written)} chapters written, graph={stats}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
