"""
Tests for the local essay store and the debounced saver.
"""

import asyncio
import json

import pytest

from essayflow.collection import EssayCollection
from essayflow.persistence import (
    INTERRUPTED_MESSAGE,
    MISSING_SOURCE_MESSAGE,
    DebouncedSaver,
    EssayStore,
    revive_essay,
)
from essayflow.schema import (
    EssayImage,
    GradingResult,
    ProcessingStatus,
    ProgressStep,
    StepStatus,
)


@pytest.fixture
def store(tmp_path):
    return EssayStore(tmp_path / "essayflow_ai_records_v1.json")


def stored_essay(**fields):
    base = {
        "id": "abc123xyz",
        "submission_type": "image",
        "ocr_text": "",
        "status": "PENDING",
        "ocr_status": "idle",
        "grading_status": "idle",
        "progress_step": "queued",
    }
    base.update(fields)
    return base


class TestSave:
    """Tests for EssayStore.save."""

    def test_blob_shape_and_no_image_bytes(self, store, image_essay):
        store.save([image_essay])

        payload = json.loads(store.path.read_text(encoding="utf-8"))
        assert payload["version"] == 1
        assert "savedAt" in payload
        assert payload["essays"][0]["id"] == image_essay.id
        assert "image" not in payload["essays"][0]

    def test_empty_collection_removes_file(self, store, text_essay):
        store.save([text_essay])
        assert store.path.exists()

        store.save([])
        assert not store.path.exists()

    def test_round_trip_keeps_grading_result(self, store, text_essay):
        graded = text_essay.model_copy(
            update={
                "status": ProcessingStatus.COMPLETED,
                "grading_status": StepStatus.DONE,
                "progress_step": ProgressStep.DONE,
                "grading_result": GradingResult(score=17.5, strengths=["clear"]),
            }
        )
        store.save([graded])

        loaded = store.load()
        assert loaded[0].grading_result.score == 17.5
        assert loaded[0].grading_result.strengths == ["clear"]
        assert loaded[0].status == ProcessingStatus.COMPLETED


class TestLoad:
    """Tests for EssayStore.load and revive_essay."""

    def test_missing_file_loads_empty(self, store):
        assert store.load() == []

    def test_corrupt_file_loads_empty(self, store):
        store.path.write_text("{not json", encoding="utf-8")
        assert store.load() == []

    def test_interrupted_essay_reset_to_pending(self):
        """An essay saved mid-grading comes back queued with no step still processing."""
        essay = revive_essay(
            stored_essay(
                submission_type="text",
                raw_text="Essay body",
                status="PROCESSING",
                ocr_status="skipped",
                grading_status="processing",
                progress_step="grading",
            )
        )
        assert essay.status == ProcessingStatus.PENDING
        assert essay.grading_status == StepStatus.IDLE
        assert essay.ocr_status == StepStatus.SKIPPED
        assert essay.progress_step == ProgressStep.QUEUED
        assert essay.progress_message == INTERRUPTED_MESSAGE

    def test_interrupted_ocr_with_transcript_is_only_reset(self):
        essay = revive_essay(
            stored_essay(
                ocr_text="captured",
                status="PROCESSING",
                ocr_status="done",
                grading_status="processing",
                progress_step="grading",
            )
        )
        assert essay.status == ProcessingStatus.PENDING
        assert essay.ocr_status == StepStatus.DONE
        assert essay.ocr_text == "captured"

    def test_image_without_text_flagged_for_reupload(self):
        essay = revive_essay(stored_essay())
        assert essay.status == ProcessingStatus.ERROR
        assert essay.ocr_status == StepStatus.ERROR
        assert essay.grading_status == StepStatus.SKIPPED
        assert essay.progress_step == ProgressStep.ERROR
        assert essay.error_message == MISSING_SOURCE_MESSAGE

    def test_interrupted_ocr_without_text_flagged_for_reupload(self):
        essay = revive_essay(stored_essay(status="PROCESSING", ocr_status="processing", progress_step="ocr"))
        assert essay.status == ProcessingStatus.ERROR
        assert essay.progress_message == MISSING_SOURCE_MESSAGE

    def test_image_loader_restores_source(self):
        image = EssayImage(filename="scan01.jpg", content=b"jpeg")
        essay = revive_essay(stored_essay(), image_loader=lambda e: image)
        assert essay.status == ProcessingStatus.PENDING
        assert essay.image == image

    def test_added_at_falls_back_to_saved_at(self, store):
        store.path.write_text(
            json.dumps({
                "version": 1,
                "savedAt": "2024-03-18T08:00:00+00:00",
                "essays": [stored_essay(submission_type="text", raw_text="Body")],
            }),
            encoding="utf-8",
        )
        assert store.load()[0].added_at == "2024-03-18T08:00:00+00:00"

    def test_invalid_records_skipped(self, store):
        store.path.write_text(
            json.dumps({
                "version": 1,
                "savedAt": "2024-03-18T08:00:00+00:00",
                "essays": [{"id": "broken"}, stored_essay(submission_type="text", raw_text="Body")],
            }),
            encoding="utf-8",
        )
        loaded = store.load()
        assert [e.id for e in loaded] == ["abc123xyz"]


class TestDebouncedSaver:
    """Rapid changes are coalesced into one write."""

    @pytest.mark.asyncio
    async def test_only_last_snapshot_written(self, store, text_essay):
        calls = []
        store.save = lambda essays: calls.append([e.id for e in essays])
        saver = DebouncedSaver(store, delay=0.05)

        saver.schedule([text_essay])
        saver.schedule([text_essay, text_essay.model_copy(update={"id": "second"})])
        assert calls == []

        await asyncio.sleep(0.1)
        assert calls == [[text_essay.id, "second"]]

    @pytest.mark.asyncio
    async def test_flush_writes_immediately(self, store, text_essay):
        saver = DebouncedSaver(store, delay=60)
        saver.schedule([text_essay])
        assert saver.has_pending

        saver.flush()

        assert not saver.has_pending
        assert store.path.exists()

    def test_schedule_outside_event_loop_writes_now(self, store, text_essay):
        DebouncedSaver(store).schedule([text_essay])
        assert store.path.exists()

    def test_collection_changes_are_persisted(self, store, text_essay):
        collection = EssayCollection()
        saver = DebouncedSaver(store)
        collection.subscribe(saver.schedule)

        collection.add(text_essay)
        assert [e.id for e in store.load()] == [text_essay.id]

        collection.clear()
        assert not store.path.exists()
