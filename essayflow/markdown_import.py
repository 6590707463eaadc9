"""
Import already-transcribed essays from markdown files.

Metadata comes from "Name:" / "Date:" header lines, falling back to a
`<name>_Date_<yyyymmdd>.md` filename. The topic is the first numbered
question line, else the first meaningful line of the file.
"""

import logging
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, List, Optional, Tuple, Union

from essayflow.ingest import new_essay_id
from essayflow.schema import Essay, StepStatus, SubmissionType

logger = logging.getLogger(__name__)

# Worksheet boilerplate that is never the topic.
_SKIP_LINE_PATTERNS = [
    re.compile(r"^name:", re.IGNORECASE),
    re.compile(r"^date:", re.IGNORECASE),
    re.compile(r"^skill:", re.IGNORECASE),
    re.compile(r"^students? wanted", re.IGNORECASE),
    re.compile(r"^Happy Kids"),
]


def parse_metadata_from_filename(filename: str) -> Tuple[Optional[str], Optional[str]]:
    """'LiHua_Date_20240318.md' -> ('LiHua', '20240318')"""
    base = re.sub(r"\.md$", "", filename, flags=re.IGNORECASE)
    match = re.match(r"^(?P<name>[^_]+)_Date_(?P<date>\d{8})", base, re.IGNORECASE)
    if not match:
        return None, None
    return match.group("name"), match.group("date")


def parse_metadata_from_content(content: str) -> dict:
    name_match = re.search(r"Name:\s*([^\n]+)", content, re.IGNORECASE)
    date_match = re.search(r"Date:\s*([0-9]{8}|[0-9]{4}-[0-9]{2}-[0-9]{2})", content, re.IGNORECASE)
    lines = [line.strip() for line in content.splitlines() if line.strip()]

    topic = None
    question_line = next((line for line in lines if re.match(r"^\d+\.", line)), None)
    if question_line:
        topic = re.sub(r"^\d+\.\s*", "", question_line).strip() or None
    if not topic:
        topic = next(
            (
                line for line in lines
                if not line.startswith("#")
                and not any(p.search(line) for p in _SKIP_LINE_PATTERNS)
                and len(line) > 3
            ),
            None,
        )

    return {
        "student_name": name_match.group(1).strip() if name_match else None,
        "date": date_match.group(1).strip() if date_match else None,
        "topic": topic,
    }


def build_essay_from_markdown(filename: str, content: str, source_path: Optional[str] = None) -> Essay:
    file_name, file_date = parse_metadata_from_filename(filename)
    meta = parse_metadata_from_content(content)
    raw_text = content.strip()

    return Essay(
        id="md-" + new_essay_id(7),
        submission_type=SubmissionType.MARKDOWN,
        raw_text=raw_text,
        ocr_text=raw_text,
        student_name=meta["student_name"] or file_name or re.sub(r"\.md$", "", filename, flags=re.IGNORECASE),
        date=meta["date"] or file_date,
        topic=meta["topic"],
        added_at=datetime.now(timezone.utc).isoformat(),
        source_filename=filename,
        source_path=source_path or filename,
        ocr_status=StepStatus.DONE,
    )


def parse_markdown_files(paths: Iterable[Union[str, Path]]) -> Tuple[List[Essay], List[str]]:
    """
    Parse markdown files into essays.

    Returns:
        (essays, errors) where each error is "<filename>: <reason>"
    """
    essays: List[Essay] = []
    errors: List[str] = []

    for path in paths:
        path = Path(path)
        try:
            content = path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            errors.append(f"{path.name}: {e}")
            continue

        if not content.strip():
            errors.append(f"{path.name}: 文件内容为空")
            continue

        essays.append(build_essay_from_markdown(path.name, content, str(path)))

    if errors:
        logger.warning(f"Markdown import finished with {len(errors)} error(s)")
    return essays, errors
