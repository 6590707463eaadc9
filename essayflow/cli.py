"""
Command-line entry point.

Usage:
    essayflow add scans/*.jpg notes/*.md
    essayflow add --text "My Favourite Season ..." --name "Li Hua" --topic "Seasons"
    essayflow run --mode auto --provider gemini
    essayflow grade --all
    essayflow retry k3f9x0q2m
    essayflow list
    essayflow export --format csv results.csv
    essayflow clear

Essays persist in ESSAYFLOW_DATA_DIR between invocations. Ctrl-C stops the
run; in-flight essays are recorded as cancelled and can be retried.
"""

import argparse
import asyncio
import dataclasses
import logging
import sys
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from essayflow.collection import EssayCollection
from essayflow.config import Settings
from essayflow.export import DEFAULT_JSON_FILENAME, export_csv, export_json
from essayflow.ingest import ingest_image, ingest_text, is_image_file, load_source_image
from essayflow.llm import DEFAULT_MODEL, ModelRouter, default_model_for
from essayflow.markdown_import import parse_markdown_files
from essayflow.ocr import get_ocr_provider
from essayflow.persistence import DebouncedSaver, EssayStore
from essayflow.runner import EssayProcessor
from essayflow.schema import (
    AIProvider,
    GradingConfig,
    GradingCriteria,
    ModelSettings,
    StudentLevel,
    WorkflowMode,
)

logger = logging.getLogger(__name__)

LEVELS = {
    "elementary": StudentLevel.ELEMENTARY,
    "middle": StudentLevel.MIDDLE,
    "high": StudentLevel.HIGH,
    "college": StudentLevel.COLLEGE,
}


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--provider", default=AIProvider(DEFAULT_MODEL.provider).value,
                        choices=[p.value for p in AIProvider], help="LLM provider for grading.")
    common.add_argument("--model", default=None, help="Model id (defaults to the provider's default).")
    common.add_argument("--level", default="middle", choices=sorted(LEVELS), help="Student level.")
    common.add_argument("--max-score", type=float, default=20, help="Scoring ceiling.")
    common.add_argument("--focus", action="append", default=None,
                        help="Focus area (repeatable). Defaults to Grammar and Vocabulary.")
    common.add_argument("--ocr-provider", default="handwriting", choices=["handwriting", "stub"],
                        help="OCR backend.")
    common.add_argument("--data-dir", default=None, help="Where the essay store lives.")
    common.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")

    parser = argparse.ArgumentParser(prog="essayflow", description="OCR and AI grading for handwritten essays.")
    sub = parser.add_subparsers(dest="command", required=True)

    add = sub.add_parser("add", parents=[common], help="Queue images, markdown files or typed text.")
    add.add_argument("paths", nargs="*", help="Image or .md files.")
    add.add_argument("--text", default=None, help="Typed essay text.")
    add.add_argument("--name", default="", help="Student name for --text.")
    add.add_argument("--topic", default="", help="Topic for --text.")
    add.set_defaults(handler=cmd_add)

    run = sub.add_parser("run", parents=[common], help="Process the queue one essay at a time.")
    run.add_argument("--mode", default=WorkflowMode.AUTO.value, choices=[m.value for m in WorkflowMode])
    run.set_defaults(handler=cmd_run)

    grade = sub.add_parser("grade", parents=[common], help="Grade one essay, or all with text concurrently.")
    grade.add_argument("--all", action="store_true", help="Grade every essay that has text, concurrently.")
    grade.add_argument("essay_id", nargs="?", help="Essay id.")
    grade.set_defaults(handler=cmd_grade)

    retry = sub.add_parser("retry", parents=[common], help="Retry a failed or cancelled essay.")
    retry.add_argument("essay_id")
    retry.set_defaults(handler=cmd_retry)

    list_cmd = sub.add_parser("list", parents=[common], help="Show queued and graded essays.")
    list_cmd.set_defaults(handler=cmd_list)

    remove = sub.add_parser("remove", parents=[common], help="Delete one essay.")
    remove.add_argument("essay_id")
    remove.set_defaults(handler=cmd_remove)

    export = sub.add_parser("export", parents=[common], help="Export essays as JSON or CSV.")
    export.add_argument("--format", dest="export_format", default="json", choices=["json", "csv"])
    export.add_argument("path", nargs="?", default=DEFAULT_JSON_FILENAME)
    export.set_defaults(handler=cmd_export)

    clear = sub.add_parser("clear", parents=[common], help="Delete every stored essay.")
    clear.set_defaults(handler=cmd_clear)

    return parser


def build_config(args: argparse.Namespace) -> GradingConfig:
    provider = AIProvider(args.provider)
    focus_areas = args.focus or ["Grammar", "Vocabulary"]
    return GradingConfig(
        level=LEVELS[args.level],
        criteria=GradingCriteria(max_score=args.max_score, focus_areas=focus_areas),
        model=ModelSettings(provider=provider, model=args.model or default_model_for(provider)),
    )


def build_processor(args: argparse.Namespace, settings: Settings, collection: EssayCollection) -> EssayProcessor:
    ocr = get_ocr_provider(args.ocr_provider, settings)
    return EssayProcessor(collection, ocr, ModelRouter(settings), build_config(args))


async def _drive(processor: EssayProcessor, coro):
    try:
        return await coro
    finally:
        transcripts = getattr(processor.ocr, "transcripts", None)
        if transcripts is not None:
            await transcripts.drain()


def run_async(processor: EssayProcessor, coro) -> int:
    try:
        asyncio.run(_drive(processor, coro))
    except KeyboardInterrupt:
        logger.warning("Interrupted; in-flight essays were marked cancelled")
        return 130
    return 0


# --- Commands --------------------------------------------------------------

def cmd_add(args, settings: Settings, collection: EssayCollection) -> int:
    added = []
    if args.text:
        added.append(ingest_text(args.name, args.topic, args.text))

    markdown_paths: List[Path] = []
    for raw in args.paths:
        path = Path(raw)
        if not path.is_file():
            logger.error(f"❌ Not a file: {path}")
            continue
        if path.suffix.lower() == ".md":
            markdown_paths.append(path)
        elif is_image_file(path):
            added.append(ingest_image(path))
        else:
            logger.warning(f"Skipping unsupported file type: {path.name}")

    if markdown_paths:
        essays, errors = parse_markdown_files(markdown_paths)
        for error in errors:
            logger.error(f"❌ {error}")
        added.extend(essays)

    if not added:
        logger.error("Nothing to add")
        return 1
    collection.extend(added)
    for essay in added:
        print(f"{essay.id}\t{essay.submission_type.value}\t{essay.source_filename or essay.student_name or ''}")
    logger.info(f"✅ Queued {len(added)} essay(s)")
    return 0


def cmd_run(args, settings: Settings, collection: EssayCollection) -> int:
    processor = build_processor(args, settings, collection)
    return run_async(processor, processor.start(args.mode))


def cmd_grade(args, settings: Settings, collection: EssayCollection) -> int:
    if args.all == bool(args.essay_id):
        logger.error("Pass either an essay id or --all")
        return 2
    processor = build_processor(args, settings, collection)
    if args.all:
        return run_async(processor, processor.batch_grade())
    if args.essay_id not in collection:
        logger.error(f"Unknown essay id: {args.essay_id}")
        return 1
    return run_async(processor, processor.grade(args.essay_id))


def cmd_retry(args, settings: Settings, collection: EssayCollection) -> int:
    if args.essay_id not in collection:
        logger.error(f"Unknown essay id: {args.essay_id}")
        return 1
    processor = build_processor(args, settings, collection)
    return run_async(processor, processor.retry(args.essay_id))


def cmd_list(args, settings: Settings, collection: EssayCollection) -> int:
    if not len(collection):
        print("No essays.")
        return 0
    for essay in collection:
        result = essay.grading_result
        score = f"{result.score:g}" if result is not None else "-"
        name = essay.student_name or essay.source_filename or "-"
        print(
            f"{essay.id}\t{essay.status.value:<10}\t{essay.progress_step.value:<12}\t"
            f"{score:>5}\t{name}\t{essay.error_message or essay.progress_message}"
        )
    return 0


def cmd_remove(args, settings: Settings, collection: EssayCollection) -> int:
    if not collection.remove(args.essay_id):
        logger.error(f"Unknown essay id: {args.essay_id}")
        return 1
    return 0


def cmd_export(args, settings: Settings, collection: EssayCollection) -> int:
    if args.export_format == "csv":
        path = export_csv(collection, args.path)
    else:
        path = export_json(collection, args.path)
    logger.info(f"📄 Exported {len(collection)} essay(s) → {path}")
    return 0


def cmd_clear(args, settings: Settings, collection: EssayCollection) -> int:
    count = len(collection)
    collection.clear()
    logger.info(f"🗑️ Cleared {count} essay(s)")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    load_dotenv(Path.cwd() / ".env")
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    # httpx logs every request URL at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)

    settings = Settings.from_env()
    if args.data_dir:
        settings = dataclasses.replace(settings, data_dir=Path(args.data_dir))

    store = EssayStore(settings.storage_path, image_loader=load_source_image)
    collection = EssayCollection(store.load())
    saver = DebouncedSaver(store)
    collection.subscribe(saver.schedule)
    try:
        return args.handler(args, settings, collection)
    finally:
        saver.flush()


if __name__ == "__main__":
    sys.exit(main())
