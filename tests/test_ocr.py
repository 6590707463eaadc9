"""
Tests for the HandwritingOCR client: upload, adaptive polling, timeouts and
transcript assembly. The vendor is faked with httpx.MockTransport and sleeps
are recorded instead of awaited.
"""

import itertools
from datetime import datetime, timezone

import httpx
import pytest

from essayflow.config import PollingConfig
from essayflow.errors import MissingApiKeyError, OcrError, OcrTimeoutError, ProviderError
from essayflow.ocr import (
    HandwritingOcrProvider,
    StubOcrProvider,
    _parse_retry_after,
    collect_transcript,
    get_ocr_provider,
)
from essayflow.transcripts import TranscriptStore

BASE_URL = "https://ocr.test/api/v3"

PROCESSED = {
    "status": "processed",
    "results": [
        {"page_number": 2, "transcript": "World"},
        {"page_number": 1, "transcript": "Hello"},
    ],
}


class FakeVendor:
    """Serves an upload response, then the given poll responses in order (last one repeats)."""

    def __init__(self, polls, upload=None):
        self.polls = list(polls)
        self.upload = upload or httpx.Response(200, json={"id": "doc-1"})
        self.requests = []

    @property
    def status_polls(self):
        return [r for r in self.requests if r.method == "GET"]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "POST":
            template = self.upload
        else:
            template = self.polls[min(len(self.status_polls) - 1, len(self.polls) - 1)]
        # fresh response per call; httpx binds a response to one request
        return httpx.Response(template.status_code, headers=template.headers, content=template.content)


def make_provider(client, sleeps, api_key="hw-test", polling=None, clock=None, transcripts=None):
    async def record_sleep(seconds, token=None):
        sleeps.append(seconds)

    return HandwritingOcrProvider(
        api_key,
        BASE_URL,
        polling=polling,
        transcripts=transcripts,
        client=client,
        sleep=record_sleep,
        clock=clock or (lambda: 0.0),
    )


class TestCollectTranscript:
    """Tests for page assembly."""

    def test_pages_joined_in_page_order(self):
        assert collect_transcript(PROCESSED["results"]) == "Hello\n\nWorld"

    def test_empty_pages_dropped(self):
        results = [{"page_number": 1, "transcript": "Only"}, {"page_number": 2, "transcript": ""}]
        assert collect_transcript(results) == "Only"

    def test_missing_results(self):
        assert collect_transcript(None) == ""
        assert collect_transcript([]) == ""


class TestPolling:
    """Tests for the adaptive polling loop."""

    @pytest.mark.asyncio
    async def test_returns_transcript_after_three_polls(self, image):
        """[processing, processing, processed] yields the joined text after exactly 3 polls."""
        vendor = FakeVendor([
            httpx.Response(200, json={"status": "processing"}),
            httpx.Response(200, json={"status": "processing"}),
            httpx.Response(200, json=PROCESSED),
        ])
        sleeps = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            text = await make_provider(client, sleeps).transcribe(image)

        assert text == "Hello\n\nWorld"
        assert len(vendor.status_polls) == 3
        assert sleeps == [2.0, 4.0]

    @pytest.mark.asyncio
    async def test_retry_after_header_sets_next_delay(self, image):
        """A 429 with Retry-After: 5 delays the next poll by at least 5 seconds."""
        vendor = FakeVendor([
            httpx.Response(429, headers={"Retry-After": "5"}, json={"message": "slow down"}),
            httpx.Response(200, json=PROCESSED),
        ])
        sleeps = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            await make_provider(client, sleeps).transcribe(image)

        assert sleeps[0] >= 5

    @pytest.mark.asyncio
    async def test_retry_after_date_in_the_past_polls_again_immediately(self, image):
        vendor = FakeVendor([
            httpx.Response(429, headers={"Retry-After": "Wed, 21 Oct 2015 07:28:00 GMT"}, json={}),
            httpx.Response(200, json=PROCESSED),
        ])
        sleeps = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            await make_provider(client, sleeps).transcribe(image)

        assert sleeps == [0.0]

    @pytest.mark.asyncio
    async def test_rate_limit_without_header_doubles_delay(self, image):
        vendor = FakeVendor([
            httpx.Response(429, json={}),
            httpx.Response(429, json={}),
            httpx.Response(200, json=PROCESSED),
        ])
        sleeps = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            await make_provider(client, sleeps).transcribe(image)

        # 2 * 2 = 4, carried delay 4 + 2 = 6, then 6 * 2 = 12
        assert sleeps == [4.0, 12.0]

    @pytest.mark.asyncio
    async def test_rate_limit_backoff_capped(self, image):
        vendor = FakeVendor([httpx.Response(429, json={}), httpx.Response(200, json=PROCESSED)])
        sleeps = []
        polling = PollingConfig(base_delay=25.0)
        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            await make_provider(client, sleeps, polling=polling).transcribe(image)

        assert sleeps == [30.0]

    @pytest.mark.asyncio
    async def test_not_found_waits_at_least_double_base(self, image):
        vendor = FakeVendor([httpx.Response(404, json={}), httpx.Response(200, json=PROCESSED)])
        sleeps = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            await make_provider(client, sleeps).transcribe(image)

        assert sleeps == [4.0]

    @pytest.mark.asyncio
    async def test_delay_ceiling_without_rate_limit(self, image):
        vendor = FakeVendor([httpx.Response(200, json={"status": "processing"})] * 12
                            + [httpx.Response(200, json=PROCESSED)])
        sleeps = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            await make_provider(client, sleeps).transcribe(image)

        assert max(sleeps) == 20.0
        assert sleeps == sorted(sleeps)

    @pytest.mark.asyncio
    async def test_accepted_without_body_counts_as_processing(self, image):
        vendor = FakeVendor([httpx.Response(202), httpx.Response(200, json=PROCESSED)])
        sleeps = []
        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            text = await make_provider(client, sleeps).transcribe(image)

        assert text == "Hello\n\nWorld"


class TestFailures:
    """Tests for vendor failures, timeouts and configuration errors."""

    @pytest.mark.asyncio
    async def test_attempt_cap_raises_timeout_naming_document(self, image):
        vendor = FakeVendor([httpx.Response(200, json={"status": "processing"})])
        sleeps = []
        polling = PollingConfig(max_attempts=3)
        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            with pytest.raises(OcrTimeoutError) as exc_info:
                await make_provider(client, sleeps, polling=polling).transcribe(image)

        assert "doc-1" in str(exc_info.value)
        assert exc_info.value.document_id == "doc-1"
        # three budgeted polls plus one final check
        assert len(vendor.status_polls) == 4

    @pytest.mark.asyncio
    async def test_wall_clock_cap_raises_timeout(self, image):
        vendor = FakeVendor([httpx.Response(200, json={"status": "processing"})])
        ticks = itertools.count(0, 100)
        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            provider = make_provider(client, [], clock=lambda: float(next(ticks)))
            with pytest.raises(OcrTimeoutError):
                await provider.transcribe(image)

        assert len(vendor.status_polls) < 120

    @pytest.mark.asyncio
    async def test_final_poll_can_still_succeed(self, image):
        vendor = FakeVendor([
            httpx.Response(200, json={"status": "processing"}),
            httpx.Response(200, json=PROCESSED),
        ])
        polling = PollingConfig(max_attempts=1)
        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            text = await make_provider(client, [], polling=polling).transcribe(image)

        assert text == "Hello\n\nWorld"

    @pytest.mark.asyncio
    async def test_failed_status_uses_vendor_message(self, image):
        vendor = FakeVendor([httpx.Response(200, json={"status": "failed", "message": "Illegible scan"})])
        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            with pytest.raises(OcrError, match="Illegible scan"):
                await make_provider(client, []).transcribe(image)

    @pytest.mark.asyncio
    async def test_processed_but_empty_is_an_error(self, image):
        vendor = FakeVendor([httpx.Response(200, json={"status": "processed", "results": []})])
        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            with pytest.raises(OcrError, match="empty transcript"):
                await make_provider(client, []).transcribe(image)

    @pytest.mark.asyncio
    async def test_missing_key_fails_before_upload(self, image):
        vendor = FakeVendor([httpx.Response(200, json=PROCESSED)])
        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            with pytest.raises(MissingApiKeyError):
                await make_provider(client, [], api_key=None).transcribe(image)

        assert vendor.requests == []

    @pytest.mark.asyncio
    async def test_upload_rejected(self, image):
        vendor = FakeVendor([], upload=httpx.Response(401, json={"message": "Invalid token"}))
        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            with pytest.raises(ProviderError) as exc_info:
                await make_provider(client, []).transcribe(image)

        assert exc_info.value.status_code == 401
        assert "Invalid token" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_upload_without_id(self, image):
        vendor = FakeVendor([], upload=httpx.Response(200, json={}))
        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            with pytest.raises(OcrError, match="did not return an id"):
                await make_provider(client, []).transcribe(image)

    @pytest.mark.asyncio
    async def test_network_failure_wrapped(self, image):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            with pytest.raises(ProviderError, match="connection refused"):
                await make_provider(client, []).transcribe(image)


class TestUploadRequest:
    """Tests for the upload wire format."""

    @pytest.mark.asyncio
    async def test_multipart_fields_and_auth(self, image):
        vendor = FakeVendor([httpx.Response(200, json=PROCESSED)])
        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            await make_provider(client, []).transcribe(image)

        upload = vendor.requests[0]
        body = upload.read()
        assert upload.url == f"{BASE_URL}/documents"
        assert upload.headers["Authorization"] == "Bearer hw-test"
        assert b'name="action"' in body and b"transcribe" in body
        assert b'name="delete_after"' in body and b"604800" in body
        assert b'filename="scan01.jpg"' in body
        assert str(vendor.status_polls[0].url) == f"{BASE_URL}/documents/doc-1"


class TestTranscriptSideEffect:
    """A successful OCR saves a markdown copy of the transcript."""

    @pytest.mark.asyncio
    async def test_transcript_written_to_output_dir(self, image, tmp_path):
        processed = {
            "status": "processed",
            "results": [{"page_number": 1, "transcript": "Name: Li Hua\nDate: 2024-03-18\n\nAutumn"}],
        }
        vendor = FakeVendor([httpx.Response(200, json=processed)])
        store = TranscriptStore(tmp_path)
        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            await make_provider(client, [], transcripts=store).transcribe(image)

        saved = tmp_path / "Li_Hua_unknownclass_scan01_20240318.md"
        assert saved.exists()
        assert saved.read_text(encoding="utf-8").startswith("# OCR Transcript")

    @pytest.mark.asyncio
    async def test_transcript_failure_does_not_fail_ocr(self, image):
        vendor = FakeVendor([httpx.Response(200, json=PROCESSED)])

        class BrokenStore:
            def persist(self, *args, **kwargs):
                raise RuntimeError("disk full")

        async with httpx.AsyncClient(transport=httpx.MockTransport(vendor)) as client:
            text = await make_provider(client, [], transcripts=BrokenStore()).transcribe(image)

        assert text == "Hello\n\nWorld"


class TestProviderFactory:
    """Tests for get_ocr_provider."""

    @pytest.mark.asyncio
    async def test_stub_provider(self, image):
        provider = get_ocr_provider("stub")
        assert isinstance(provider, StubOcrProvider)
        assert "Name: Li Hua" in await provider.transcribe(image)

    def test_handwriting_provider_from_settings(self, settings):
        provider = get_ocr_provider("handwriting", settings)
        assert isinstance(provider, HandwritingOcrProvider)
        assert provider.api_key == "hw-test"
        assert provider.base_url == BASE_URL
        assert provider.transcripts.output_dir == settings.transcripts_dir
        assert provider.transcripts.fallback_dir == settings.data_dir / "transcripts_fallback"

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown OCR provider"):
            get_ocr_provider("tesseract")


class TestRetryAfter:
    """Retry-After comes as delay-seconds or as an HTTP-date."""

    NOW = datetime(2015, 10, 21, 7, 28, 0, tzinfo=timezone.utc)

    def test_delay_seconds(self):
        assert _parse_retry_after("5") == 5.0
        assert _parse_retry_after("-3") == 0.0

    def test_http_date(self):
        assert _parse_retry_after("Wed, 21 Oct 2015 07:28:10 GMT", now=self.NOW) == 10.0

    def test_http_date_already_passed(self):
        assert _parse_retry_after("Wed, 21 Oct 2015 07:27:00 GMT", now=self.NOW) == 0.0

    def test_unparseable(self):
        assert _parse_retry_after(None) is None
        assert _parse_retry_after("soon") is None
