"""
In-memory essay collection.

All mutations go through this class so subscribers (the debounced saver,
the CLI progress printer) see every change. Records are replaced whole by
id; nothing mutates an Essay in place.
"""

import logging
from typing import Callable, Iterable, Iterator, List, Optional

from essayflow.schema import Essay, StepStatus, SubmissionType

logger = logging.getLogger(__name__)

Listener = Callable[[List[Essay]], None]


def has_text(essay: Essay) -> bool:
    return bool(essay.text_for_grading())


def needs_ocr(essay: Essay) -> bool:
    """Image essays need OCR until a transcript exists or the image has been graded directly."""
    return (
        essay.submission_type == SubmissionType.IMAGE
        and essay.ocr_status != StepStatus.DONE
        and essay.grading_status != StepStatus.DONE
        and not has_text(essay)
    )


def needs_grading(essay: Essay) -> bool:
    return essay.grading_status != StepStatus.DONE


class EssayCollection:
    """Ordered essays keyed by id."""

    def __init__(self, essays: Optional[Iterable[Essay]] = None):
        self._essays: List[Essay] = list(essays or [])
        self._listeners: List[Listener] = []

    def __iter__(self) -> Iterator[Essay]:
        return iter(list(self._essays))

    def __len__(self) -> int:
        return len(self._essays)

    def __contains__(self, essay_id: str) -> bool:
        return self.get(essay_id) is not None

    @property
    def essays(self) -> List[Essay]:
        return list(self._essays)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a change listener; returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        snapshot = self.essays
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.warning(f"Essay listener failed: {e}")

    def get(self, essay_id: str) -> Optional[Essay]:
        for essay in self._essays:
            if essay.id == essay_id:
                return essay
        return None

    def add(self, essay: Essay) -> Essay:
        if self.get(essay.id) is not None:
            raise ValueError(f"Duplicate essay id: {essay.id}")
        self._essays.append(essay)
        self._notify()
        return essay

    def extend(self, essays: Iterable[Essay]) -> None:
        added = 0
        for essay in essays:
            if self.get(essay.id) is not None:
                logger.warning(f"Skipping duplicate essay id {essay.id}")
                continue
            self._essays.append(essay)
            added += 1
        if added:
            self._notify()

    def replace(self, essay: Essay) -> Essay:
        """Swap in a new version of an existing record (matched by id)."""
        for index, current in enumerate(self._essays):
            if current.id == essay.id:
                self._essays[index] = essay
                self._notify()
                return essay
        raise KeyError(essay.id)

    def update(self, essay_id: str, **changes) -> Essay:
        """Apply plain field updates to one record."""
        current = self.get(essay_id)
        if current is None:
            raise KeyError(essay_id)
        return self.replace(current.model_copy(update=changes))

    def remove(self, essay_id: str) -> bool:
        for index, essay in enumerate(self._essays):
            if essay.id == essay_id:
                del self._essays[index]
                self._notify()
                return True
        return False

    def clear(self) -> None:
        self._essays = []
        self._notify()
