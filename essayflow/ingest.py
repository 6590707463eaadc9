"""
Ingestion module: turns uploaded images and typed text into queued essays.
"""

import mimetypes
import random
import string
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional, Union

from essayflow.schema import Essay, EssayImage, StepStatus, SubmissionType

_BASE36 = string.digits + string.ascii_lowercase

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".bmp", ".heic", ".tif", ".tiff"}


def new_essay_id(length: int = 9) -> str:
    """Random base36 id, e.g. 'k3f9x0q2m'."""
    return "".join(random.choice(_BASE36) for _ in range(length))


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def guess_mime_type(filename: str) -> str:
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type or "image/jpeg"


def is_image_file(path: Union[str, Path]) -> bool:
    return Path(path).suffix.lower() in IMAGE_EXTENSIONS


def ingest_image_bytes(
    content: bytes,
    filename: str,
    source_path: Optional[str] = None,
) -> Essay:
    """
    Create an image essay from uploaded bytes.

    Raises:
        ValueError: empty upload
    """
    if not content:
        raise ValueError(f"{filename}: image is empty")
    return Essay(
        id=new_essay_id(),
        submission_type=SubmissionType.IMAGE,
        image=EssayImage(
            filename=filename,
            content=content,
            mime_type=guess_mime_type(filename),
            source_path=source_path,
        ),
        added_at=_now_iso(),
        source_filename=filename,
        source_path=source_path,
    )


def ingest_image(path: Union[str, Path]) -> Essay:
    """Read an image file from disk into a new essay."""
    path = Path(path)
    return ingest_image_bytes(path.read_bytes(), path.name, source_path=str(path.resolve()))


def ingest_text(name: str, topic: str, text: str) -> Essay:
    """
    Create a typed-text essay. OCR is marked skipped since there is nothing to transcribe.

    Raises:
        ValueError: text is blank
    """
    if not text or not text.strip():
        raise ValueError("Essay text is empty")
    return Essay(
        id=new_essay_id(),
        submission_type=SubmissionType.TEXT,
        raw_text=text,
        student_name=(name or "").strip() or None,
        topic=(topic or "").strip() or None,
        added_at=_now_iso(),
        ocr_status=StepStatus.SKIPPED,
    )


def load_source_image(essay: Essay) -> Optional[EssayImage]:
    """
    Re-read an image essay's original file from `source_path`.

    Image bytes are never persisted; this lets a later session pick the
    file back up if it is still on disk. Returns None when it is not.
    """
    if essay.submission_type != SubmissionType.IMAGE or not essay.source_path:
        return None
    path = Path(essay.source_path)
    if not path.is_file():
        return None
    try:
        content = path.read_bytes()
    except OSError:
        return None
    if not content:
        return None
    filename = essay.source_filename or path.name
    return EssayImage(
        filename=filename,
        content=content,
        mime_type=guess_mime_type(filename),
        source_path=essay.source_path,
    )
