"""
Essay processing orchestrator.

Drives each essay through OCR and grading, keeping the collection in sync
via the state machine in essayflow.state. Every failure is caught at the
per-essay boundary and recorded on that essay; a batch never stops because
one essay failed.
"""

import asyncio
import logging
import time
from datetime import date
from typing import List, Optional, Union

from essayflow.cancellation import CancellationRegistry, CancellationToken
from essayflow.collection import EssayCollection, has_text, needs_grading, needs_ocr
from essayflow.errors import is_cancellation
from essayflow.ingest import new_essay_id
from essayflow.llm import ModelRouter, parse_model_reply
from essayflow.ocr import OcrProvider
from essayflow.prompts import build_prompt_bundle
from essayflow.schema import (
    Essay,
    GradingConfig,
    ProcessingStatus,
    ProgressStep,
    StepStatus,
    SubmissionType,
    WorkflowMode,
)
from essayflow.state import can_transition, transition

logger = logging.getLogger(__name__)

MISSING_TEXT_MESSAGE = "缺少可批改的文本，请先完成OCR"
CANCELLED_BY_USER = "用户已取消批改"
UNKNOWN_STUDENT = "Unknown Student"


def new_batch_id() -> str:
    """e.g. batch-1718000000000-k3f9"""
    return f"batch-{int(time.time() * 1000)}-{new_essay_id(4)}"


def _label(essay: Essay) -> str:
    return essay.source_filename or essay.student_name or essay.id


def _provider_name(config: GradingConfig) -> str:
    provider = config.model.provider
    return getattr(provider, "value", provider)


class EssayProcessor:
    """
    Runs OCR and grading for essays held in an EssayCollection.

    One cancellation token is held per essay for the whole pipeline, so
    cancelling during OCR also prevents the grading call for that essay.
    """

    def __init__(
        self,
        collection: EssayCollection,
        ocr: OcrProvider,
        router: ModelRouter,
        config: GradingConfig,
        registry: Optional[CancellationRegistry] = None,
    ):
        self.collection = collection
        self.ocr = ocr
        self.router = router
        self.config = config
        self.registry = registry or CancellationRegistry()

    # --- Target selection --------------------------------------------------

    def pick_targets(self, mode: Union[WorkflowMode, str] = WorkflowMode.AUTO) -> List[Essay]:
        """Essays the given workflow mode would process, in collection order."""
        mode = WorkflowMode(mode)
        targets = []
        for essay in self.collection:
            if essay.status == ProcessingStatus.PROCESSING:
                continue
            if mode == WorkflowMode.OCR_ONLY:
                eligible = needs_ocr(essay)
            elif mode == WorkflowMode.AI_ONLY:
                eligible = needs_grading(essay) and has_text(essay)
            else:
                eligible = needs_ocr(essay) or needs_grading(essay)
            if eligible:
                targets.append(essay)
        return targets

    def _tag_batch(self, essays: List[Essay]) -> str:
        batch_id = new_batch_id()
        for essay in essays:
            self.collection.update(essay.id, batch_id=batch_id)
        return batch_id

    # --- Public operations -------------------------------------------------

    async def start(self, mode: Union[WorkflowMode, str] = WorkflowMode.AUTO) -> List[Essay]:
        """
        Process the queue one essay at a time, in collection order.

        In auto mode each essay's grading starts right after its own OCR.

        Returns:
            Final state of every targeted essay still in the collection
        """
        mode = WorkflowMode(mode)
        targets = self.pick_targets(mode)
        if not targets:
            logger.info(f"No essays to process in {mode.value} mode")
            return []

        batch_id = self._tag_batch(targets)
        logger.info(f"🚀 Starting {batch_id}: {len(targets)} essay(s), mode={mode.value}")

        for target in targets:
            essay = self.collection.get(target.id)
            if essay is None:
                continue
            run_ocr = mode != WorkflowMode.AI_ONLY and needs_ocr(essay)
            run_grading = mode != WorkflowMode.OCR_ONLY and needs_grading(essay)
            await self._run_pipeline(essay.id, run_ocr=run_ocr, run_grading=run_grading)

        results = [self.collection.get(t.id) for t in targets]
        results = [e for e in results if e is not None]
        completed = sum(1 for e in results if e.status == ProcessingStatus.COMPLETED)
        logger.info(f"✅ Finished {batch_id}: {completed}/{len(results)} graded")
        return results

    async def batch_grade(self) -> List[Essay]:
        """Grade every essay that has text and is not yet graded, concurrently."""
        targets = [
            e for e in self.collection
            if needs_grading(e) and e.status != ProcessingStatus.PROCESSING and has_text(e)
        ]
        if not targets:
            logger.info("No essays ready for grading")
            return []

        batch_id = self._tag_batch(targets)
        logger.info(f"🚀 Grading {len(targets)} essay(s) concurrently ({batch_id})")
        await asyncio.gather(
            *(self._run_pipeline(e.id, run_ocr=False, run_grading=True) for e in targets)
        )
        return [e for e in (self.collection.get(t.id) for t in targets) if e is not None]

    async def retry(self, essay_id: str) -> Essay:
        """Grade again, reusing captured text; OCR runs only when no text exists yet."""
        essay = self._current(essay_id)
        if self.registry.is_active(essay_id):
            logger.warning(f"Essay {essay_id} is already being processed")
            return essay
        run_ocr = not has_text(essay) and needs_ocr(essay) and essay.image is not None
        return await self._run_pipeline(essay_id, run_ocr=run_ocr, run_grading=True)

    async def grade(self, essay_id: str) -> Essay:
        """Grade one essay now (text if present, else the attached image)."""
        essay = self._current(essay_id)
        if self.registry.is_active(essay_id):
            logger.warning(f"Essay {essay_id} is already being processed")
            return essay
        return await self._run_pipeline(essay_id, run_ocr=False, run_grading=True)

    def cancel(self, essay_id: str) -> bool:
        """Signal the essay's in-flight work to stop. False if nothing is running for it."""
        cancelled = self.registry.cancel(essay_id)
        if cancelled:
            logger.info(f"🛑 Cancellation requested for essay {essay_id}")
        return cancelled

    def cancel_all(self) -> int:
        return self.registry.cancel_all()

    # --- Pipeline ----------------------------------------------------------

    def _current(self, essay_id: str) -> Essay:
        essay = self.collection.get(essay_id)
        if essay is None:
            raise KeyError(essay_id)
        return essay

    def _move(self, essay_id: str, step: ProgressStep, message: Optional[str] = None, **kwargs) -> Essay:
        return self.collection.replace(transition(self._current(essay_id), step, message, **kwargs))

    async def _run_pipeline(self, essay_id: str, run_ocr: bool, run_grading: bool) -> Optional[Essay]:
        if not run_ocr and not run_grading:
            return self.collection.get(essay_id)

        with self.registry.acquire(essay_id) as token:
            try:
                if run_ocr:
                    await self._ocr_step(essay_id, token, continuing=run_grading)
                if run_grading:
                    await self._grading_step(essay_id, token)
            except asyncio.CancelledError:
                self._record_cancelled(essay_id)
                raise
            except Exception as e:
                if is_cancellation(e):
                    self._record_cancelled(essay_id)
                else:
                    self._record_failure(essay_id, e)
        return self.collection.get(essay_id)

    async def _ocr_step(self, essay_id: str, token: CancellationToken, continuing: bool) -> None:
        essay = self._current(essay_id)
        if essay.submission_type != SubmissionType.IMAGE or essay.image is None:
            logger.warning(f"Skipping OCR for {_label(essay)}: no image attached")
            return

        self._move(essay_id, ProgressStep.OCR, "正在执行手写OCR...")
        logger.info(f"🔍 OCR started for {_label(essay)}")
        text = await self.ocr.transcribe(essay.image, token)
        self._move(
            essay_id,
            ProgressStep.OCR_COMPLETE,
            "OCR完成，准备AI批改" if continuing else "OCR完成，等待AI",
            continuing=continuing,
            ocr_text=text,
        )
        logger.info(f"✅ OCR complete for {_label(essay)} ({len(text)} chars)")

    async def _grading_step(self, essay_id: str, token: CancellationToken) -> None:
        essay = self._current(essay_id)
        text = essay.text_for_grading()
        if not text and essay.image is None:
            logger.warning(f"Cannot grade {_label(essay)}: no text and no image")
            self._move(
                essay_id,
                ProgressStep.ERROR,
                MISSING_TEXT_MESSAGE,
                failed_step="grading",
                error_message=MISSING_TEXT_MESSAGE,
            )
            return

        model = self.config.model
        essay = self._move(
            essay_id,
            ProgressStep.GRADING,
            f"AI批改中（{_provider_name(self.config)}:{model.model}）",
        )
        bundle = build_prompt_bundle(essay, self.config, text or None)
        raw = await self.router.grade(bundle, model, token)
        reply = parse_model_reply(raw)

        changes = {
            "grading_result": reply.gradingResult,
            "student_name": reply.studentName or essay.student_name or UNKNOWN_STUDENT,
            "date": reply.date or essay.date or date.today().isoformat(),
            "ocr_text": reply.ocrText or text or essay.raw_text or "",
        }
        # Text captured by image grading counts as OCR so it is never repeated.
        if essay.submission_type == SubmissionType.IMAGE and changes["ocr_text"]:
            changes["ocr_status"] = StepStatus.DONE
        self._move(essay_id, ProgressStep.DONE, "批改完成", **changes)
        logger.info(f"✅ Graded {_label(essay)}: score={reply.gradingResult.score}")

    def _record_failure(self, essay_id: str, error: Exception) -> None:
        essay = self.collection.get(essay_id)
        if essay is None:
            logger.error(f"❌ Essay {essay_id} failed after removal: {error}")
            return
        message = str(error) or error.__class__.__name__
        logger.error(f"❌ Processing failed for {_label(essay)}: {message}")
        if not can_transition(essay, ProgressStep.ERROR):
            return
        self._move(essay_id, ProgressStep.ERROR, message, error_message=message)

    def _record_cancelled(self, essay_id: str) -> None:
        essay = self.collection.get(essay_id)
        if essay is None:
            return
        logger.info(f"🛑 Cancelled {_label(essay)}")
        if not can_transition(essay, ProgressStep.CANCELLED):
            return
        self._move(essay_id, ProgressStep.CANCELLED, CANCELLED_BY_USER, error_message=CANCELLED_BY_USER)
