"""
Explicit state machine for one essay.

`progress_step` is the machine state. `status`, `ocr_status` and
`grading_status` are derived here on every move so they cannot drift apart:

    queued -> ocr -> ocr_complete -> grading -> done
                \\-> error / cancelled <-/

Resuming from error or cancelled re-enters at grading when text exists;
OCR is refused once it has produced a transcript.
"""

from typing import Dict, FrozenSet, Optional

from essayflow.errors import IllegalTransition
from essayflow.schema import Essay, ProcessingStatus, ProgressStep, StepStatus


_ANY = frozenset(ProgressStep)

LEGAL_TRANSITIONS: Dict[ProgressStep, FrozenSet[ProgressStep]] = {
    ProgressStep.QUEUED: frozenset({
        ProgressStep.QUEUED, ProgressStep.OCR, ProgressStep.GRADING,
        ProgressStep.ERROR, ProgressStep.CANCELLED,
    }),
    ProgressStep.OCR: frozenset({
        ProgressStep.OCR_COMPLETE, ProgressStep.ERROR, ProgressStep.CANCELLED,
        ProgressStep.QUEUED,
    }),
    ProgressStep.OCR_COMPLETE: frozenset({
        ProgressStep.GRADING, ProgressStep.ERROR, ProgressStep.CANCELLED,
        ProgressStep.QUEUED,
    }),
    ProgressStep.GRADING: frozenset({
        ProgressStep.DONE, ProgressStep.ERROR, ProgressStep.CANCELLED,
        ProgressStep.QUEUED,
    }),
    # Regrading a finished essay is allowed; so is flagging a lost source on reload.
    ProgressStep.DONE: frozenset({ProgressStep.GRADING, ProgressStep.ERROR}),
    ProgressStep.ERROR: _ANY - {ProgressStep.OCR_COMPLETE, ProgressStep.DONE, ProgressStep.CANCELLED},
    ProgressStep.CANCELLED: _ANY - {ProgressStep.OCR_COMPLETE, ProgressStep.DONE, ProgressStep.CANCELLED},
}


def _idle_if_processing(status: StepStatus) -> StepStatus:
    return StepStatus.IDLE if status == StepStatus.PROCESSING else status


def _check_invariants(essay: Essay) -> None:
    if essay.grading_status == StepStatus.DONE:
        if essay.grading_result is None:
            raise IllegalTransition(f"{essay.id}: grading marked done without a result")
        if essay.status != ProcessingStatus.COMPLETED:
            raise IllegalTransition(
                f"{essay.id}: grading done but status is {essay.status.value}"
            )


def can_transition(essay: Essay, step: ProgressStep) -> bool:
    return step in LEGAL_TRANSITIONS[essay.progress_step]


def transition(
    essay: Essay,
    step: ProgressStep,
    message: Optional[str] = None,
    *,
    continuing: bool = False,
    failed_step: Optional[str] = None,
    **changes,
) -> Essay:
    """
    Return a copy of `essay` moved to `step`.

    Args:
        essay: Current record (not mutated)
        step: Target progress step
        message: New progress message (kept unchanged when None)
        continuing: For OCR_COMPLETE, whether grading follows immediately
        failed_step: For ERROR, "ocr" or "grading"; inferred from the current step if omitted
        **changes: Extra field updates applied after derivation (e.g. ocr_text, grading_result)

    Raises:
        IllegalTransition: the move is not allowed or leaves the record inconsistent
    """
    current = essay.progress_step
    if step not in LEGAL_TRANSITIONS[current]:
        raise IllegalTransition(f"{essay.id}: cannot move from {current.value} to {step.value}")

    update = {"progress_step": step}
    if message is not None:
        update["progress_message"] = message

    if step == ProgressStep.QUEUED:
        update["status"] = ProcessingStatus.PENDING
        update["ocr_status"] = _idle_if_processing(essay.ocr_status)
        update["grading_status"] = _idle_if_processing(essay.grading_status)

    elif step == ProgressStep.OCR:
        if essay.ocr_status == StepStatus.DONE:
            raise IllegalTransition(f"{essay.id}: OCR already produced a transcript")
        update["status"] = ProcessingStatus.PROCESSING
        update["ocr_status"] = StepStatus.PROCESSING
        update["error_message"] = None

    elif step == ProgressStep.OCR_COMPLETE:
        update["ocr_status"] = StepStatus.DONE
        update["status"] = ProcessingStatus.PROCESSING if continuing else ProcessingStatus.PENDING

    elif step == ProgressStep.GRADING:
        update["status"] = ProcessingStatus.PROCESSING
        update["grading_status"] = StepStatus.PROCESSING
        update["error_message"] = None

    elif step == ProgressStep.DONE:
        update["status"] = ProcessingStatus.COMPLETED
        update["grading_status"] = StepStatus.DONE
        update["error_message"] = None

    elif step == ProgressStep.ERROR:
        update["status"] = ProcessingStatus.ERROR
        failed = failed_step or ("ocr" if current == ProgressStep.OCR else "grading")
        if failed == "ocr":
            update["ocr_status"] = StepStatus.ERROR
            update["grading_status"] = _idle_if_processing(essay.grading_status)
        else:
            update["grading_status"] = StepStatus.ERROR
            update["ocr_status"] = _idle_if_processing(essay.ocr_status)

    elif step == ProgressStep.CANCELLED:
        update["status"] = ProcessingStatus.CANCELLED
        if essay.ocr_status == StepStatus.PROCESSING:
            update["ocr_status"] = StepStatus.SKIPPED
        if essay.grading_status != StepStatus.DONE:
            update["grading_status"] = StepStatus.SKIPPED

    update.update(changes)
    moved = essay.model_copy(update=update)
    _check_invariants(moved)
    return moved
