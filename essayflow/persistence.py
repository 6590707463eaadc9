"""
Local JSON persistence for the essay collection.

The whole collection is stored as one versioned blob:
    {"version": 1, "savedAt": "...", "essays": [...]}
Image bytes are never written. On load, essays interrupted mid-processing
are reset to queued, and image essays that lost their source without any
captured text are flagged for re-upload.
"""

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Optional

from pydantic import ValidationError

from essayflow.config import DEBOUNCE_SECONDS
from essayflow.schema import Essay, EssayImage, ProcessingStatus, ProgressStep, StepStatus, SubmissionType
from essayflow.state import can_transition, transition

logger = logging.getLogger(__name__)

STORAGE_VERSION = 1
INTERRUPTED_MESSAGE = "刷新后可重新开始批改"
MISSING_SOURCE_MESSAGE = "源图片不可用，请重新上传后再试"

ImageLoader = Callable[[Essay], Optional[EssayImage]]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _reset_if_interrupted(essay: Essay) -> Essay:
    if essay.status != ProcessingStatus.PROCESSING:
        return essay
    if can_transition(essay, ProgressStep.QUEUED):
        return transition(essay, ProgressStep.QUEUED, INTERRUPTED_MESSAGE)
    # Inconsistent record (e.g. written by an older version); force it back to the queue.
    return essay.model_copy(
        update={
            "status": ProcessingStatus.PENDING,
            "ocr_status": StepStatus.IDLE if essay.ocr_status == StepStatus.PROCESSING else essay.ocr_status,
            "grading_status": StepStatus.IDLE if essay.grading_status == StepStatus.PROCESSING else essay.grading_status,
            "progress_step": ProgressStep.QUEUED,
            "progress_message": INTERRUPTED_MESSAGE,
        }
    )


def _mark_missing_source(essay: Essay) -> Essay:
    lacks_text = not essay.ocr_text and not essay.raw_text
    if essay.submission_type != SubmissionType.IMAGE or not lacks_text:
        return essay
    changes = {
        "ocr_status": StepStatus.ERROR,
        "grading_status": StepStatus.SKIPPED,
        "error_message": essay.error_message or MISSING_SOURCE_MESSAGE,
    }
    if can_transition(essay, ProgressStep.ERROR):
        return transition(essay, ProgressStep.ERROR, MISSING_SOURCE_MESSAGE, failed_step="ocr", **changes)
    return essay.model_copy(
        update={
            **changes,
            "status": ProcessingStatus.ERROR,
            "progress_step": ProgressStep.ERROR,
            "progress_message": MISSING_SOURCE_MESSAGE,
        }
    )


def revive_essay(
    data: dict,
    fallback_added_at: Optional[str] = None,
    image_loader: Optional[ImageLoader] = None,
) -> Essay:
    """
    Rebuild an Essay from its stored dict.

    `image_loader` may reattach the source image (e.g. from `source_path`);
    an image essay that gets its image back is not flagged for re-upload.

    Raises:
        ValidationError: the stored record is not a valid essay
    """
    essay = Essay.model_validate(data)
    if not essay.added_at and fallback_added_at:
        essay = essay.model_copy(update={"added_at": fallback_added_at})
    essay = _reset_if_interrupted(essay)
    if image_loader is not None and essay.submission_type == SubmissionType.IMAGE:
        image = image_loader(essay)
        if image is not None:
            return essay.model_copy(update={"image": image})
    return _mark_missing_source(essay)


class EssayStore:
    """Reads and writes the collection blob at `path`."""

    def __init__(self, path: Path, image_loader: Optional[ImageLoader] = None):
        self.path = Path(path)
        self.image_loader = image_loader

    def load(self) -> List[Essay]:
        if not self.path.exists():
            return []
        try:
            payload: Any = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            logger.warning(f"Failed to load essays from {self.path}: {e}")
            return []

        if not isinstance(payload, dict) or not isinstance(payload.get("essays"), list):
            logger.warning(f"Ignoring unrecognised essay store at {self.path}")
            return []

        fallback_added_at = payload.get("savedAt") or _now_iso()
        essays = []
        for index, item in enumerate(payload["essays"]):
            try:
                essays.append(revive_essay(item, fallback_added_at, self.image_loader))
            except ValidationError as e:
                logger.warning(f"Skipping unreadable essay #{index} in {self.path}: {e.errors()[0]['msg']}")
        logger.info(f"📂 Loaded {len(essays)} essay(s) from {self.path}")
        return essays

    def save(self, essays: List[Essay]) -> None:
        """Write the collection; an empty collection removes the stored file."""
        try:
            if not essays:
                self.path.unlink(missing_ok=True)
                return
            payload = {
                "version": STORAGE_VERSION,
                "savedAt": _now_iso(),
                "essays": [essay.model_dump(mode="json") for essay in essays],
            }
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as e:
            logger.warning(f"Failed to persist essays to {self.path}: {e}")

    def clear(self) -> None:
        self.save([])


class DebouncedSaver:
    """
    Coalesces rapid collection changes into one write `delay` seconds after the last one.

    Usage:
        saver = DebouncedSaver(store)
        collection.subscribe(saver.schedule)
        ...
        saver.flush()
    """

    def __init__(self, store: EssayStore, delay: float = DEBOUNCE_SECONDS):
        self.store = store
        self.delay = delay
        self._pending: Optional[List[Essay]] = None
        self._handle: Optional[asyncio.TimerHandle] = None

    @property
    def has_pending(self) -> bool:
        return self._pending is not None

    def schedule(self, essays: List[Essay]) -> None:
        self._pending = list(essays)
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Outside the event loop (e.g. CLI bookkeeping): write straight away.
            self.flush()
            return
        self._handle = loop.call_later(self.delay, self.flush)

    def flush(self) -> None:
        """Write any pending snapshot now."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        if self._pending is None:
            return
        essays, self._pending = self._pending, None
        self.store.save(essays)
