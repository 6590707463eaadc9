"""
OCR provider abstraction with stub and HandwritingOCR implementations.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, List, Optional, Protocol

import httpx

from essayflow.cancellation import CancellationToken, cancellable_sleep, run_cancellable
from essayflow.config import PollingConfig, Settings
from essayflow.errors import (
    MissingApiKeyError,
    OcrError,
    OcrTimeoutError,
    ProviderError,
)
from essayflow.schema import EssayImage
from essayflow.transcripts import TranscriptStore

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float, Optional[CancellationToken]], Awaitable[None]]

# Vendor deletes uploaded documents after 7 days.
DELETE_AFTER_SECONDS = 604800


class OcrProvider(Protocol):
    """Protocol for OCR providers."""

    async def transcribe(self, image: EssayImage, token: Optional[CancellationToken] = None) -> str:
        """Transcribe an essay image and return plain text."""
        ...


class StubOcrProvider:
    """
    Stub OCR provider that returns a canned handwritten essay transcript.
    Useful offline and in tests; never touches the network.
    """

    TRANSCRIPT = """Name: Li Hua
Date: 2024-03-18

My Favourite Season

I like autumn best. The weather is cool and the sky is very blue. Every
weekend my father and me go to the park near our home. The leaves turns
yellow and red, and they look like a beautiful painting.

In autumn we also have the Mid-Autumn Festival. My family eat mooncakes
together and look at the moon. It is the most happy time of the year."""

    async def transcribe(self, image: EssayImage, token: Optional[CancellationToken] = None) -> str:
        if token is not None:
            token.raise_if_cancelled()
        return self.TRANSCRIPT


@dataclass
class DocumentStatus:
    """One poll of the vendor's document endpoint."""
    status: Optional[str]
    results: Optional[List[dict]]
    message: Optional[str]
    http_status: int
    retry_after: Optional[float] = None


def collect_transcript(results: Optional[List[dict]]) -> str:
    """Join page transcripts in page order, one blank line apart."""
    if not results or not isinstance(results, list):
        return ""
    pages = [page for page in results if isinstance(page, dict)]
    pages.sort(key=lambda page: page.get("page_number") or 0)
    texts = [page.get("transcript") or "" for page in pages]
    return "\n\n".join(text for text in texts if text).strip()


def _parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
    """Seconds to wait from a Retry-After header, given as delay-seconds or an HTTP-date."""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max(0.0, (when - now).total_seconds())


def _safe_json(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {}


def _first_error(data: Any) -> Optional[str]:
    if not isinstance(data, dict):
        return None
    if data.get("message"):
        return data["message"]
    errors = data.get("errors")
    if isinstance(errors, list) and errors:
        return str(errors[0])
    return None


class HandwritingOcrProvider:
    """
    HandwritingOCR (handwritingocr.com) document transcription.

    Flow: upload the image to POST /documents, then poll GET /documents/{id}
    with an adaptive delay until the document is processed, failed, or the
    attempt / wall-clock budget in PollingConfig runs out.

    Requires HANDWRITING_OCR_API_KEY.
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        polling: Optional[PollingConfig] = None,
        transcripts: Optional[TranscriptStore] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: SleepFunc = cancellable_sleep,
        clock: Callable[[], float] = time.monotonic,
        timeout: float = 60.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.polling = polling or PollingConfig()
        self.transcripts = transcripts
        self._client = client
        self._sleep = sleep
        self._clock = clock
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "HandwritingOcrProvider":
        kwargs.setdefault(
            "transcripts",
            TranscriptStore(
                settings.transcripts_dir,
                settings.ocr_save_endpoint,
                fallback_dir=settings.data_dir / "transcripts_fallback",
            ),
        )
        return cls(settings.handwriting_ocr.api_key, settings.handwriting_ocr.base_url, **kwargs)

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}

    def _require_key(self) -> None:
        if not self.api_key:
            raise MissingApiKeyError("Handwriting OCR")

    async def _send(self, request: Awaitable[httpx.Response],
                    token: Optional[CancellationToken]) -> httpx.Response:
        try:
            return await run_cancellable(request, token)
        except httpx.HTTPError as e:
            raise ProviderError("Handwriting OCR", f"Handwriting OCR request failed: {e}") from e

    async def upload_document(
        self,
        client: httpx.AsyncClient,
        image: EssayImage,
        token: Optional[CancellationToken] = None,
    ) -> str:
        self._require_key()
        if token is not None:
            token.raise_if_cancelled()

        response = await self._send(
            client.post(
                f"{self.base_url}/documents",
                headers=self._headers(),
                files={"file": (image.filename, image.content, image.mime_type)},
                data={"action": "transcribe", "delete_after": str(DELETE_AFTER_SECONDS)},
            ),
            token,
        )
        data = _safe_json(response)
        if not response.is_success:
            raise ProviderError(
                "Handwriting OCR",
                _first_error(data) or "OCR upload failed",
                status_code=response.status_code,
            )
        document_id = data.get("id") if isinstance(data, dict) else None
        if not document_id:
            raise OcrError("OCR upload did not return an id")
        return str(document_id)

    async def fetch_status(
        self,
        client: httpx.AsyncClient,
        document_id: str,
        token: Optional[CancellationToken] = None,
    ) -> DocumentStatus:
        self._require_key()
        if token is not None:
            token.raise_if_cancelled()

        response = await self._send(
            client.get(f"{self.base_url}/documents/{document_id}", headers=self._headers()),
            token,
        )
        data = _safe_json(response)
        if not isinstance(data, dict):
            data = {}
        status = data.get("status") or ("processing" if response.status_code == 202 else None)
        return DocumentStatus(
            status=status,
            results=data.get("results"),
            message=_first_error(data),
            http_status=response.status_code,
            retry_after=_parse_retry_after(response.headers.get("retry-after")),
        )

    def _next_wait(self, result: DocumentStatus, dynamic_delay: float) -> tuple:
        """Return (wait_seconds, next_dynamic_delay) for a poll that was not final."""
        cfg = self.polling
        rate_limited = result.http_status == 429
        if rate_limited:
            if result.retry_after is not None:
                wait = result.retry_after
            else:
                wait = min(dynamic_delay * 2, cfg.rate_limit_backoff_ceiling)
        elif result.http_status == 404:
            # Document not visible yet right after upload.
            wait = max(dynamic_delay, cfg.base_delay * 2)
        else:
            wait = dynamic_delay
        ceiling = cfg.rate_limited_delay_ceiling if rate_limited else cfg.delay_ceiling
        return wait, min(wait + cfg.base_delay, ceiling)

    def _finish(self, transcript: str, image: EssayImage) -> str:
        if self.transcripts is not None:
            try:
                self.transcripts.persist(transcript, image.filename, image.source_path)
            except Exception as e:
                logger.warning(f"Could not persist OCR transcript for {image.filename}: {e}")
        return transcript

    async def transcribe(self, image: EssayImage, token: Optional[CancellationToken] = None) -> str:
        """
        Upload and poll until the transcript is ready.

        Raises:
            MissingApiKeyError: no API key configured
            ProcessingCancelled: the token was cancelled
            OcrError: vendor reported failure or an empty transcript
            OcrTimeoutError: polling budget exhausted (message carries the document id)
            ProviderError: upload failed or the network failed
        """
        self._require_key()
        if token is not None:
            token.raise_if_cancelled()

        if self._client is not None:
            return await self._transcribe(self._client, image, token)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await self._transcribe(client, image, token)

    async def _transcribe(
        self,
        client: httpx.AsyncClient,
        image: EssayImage,
        token: Optional[CancellationToken],
    ) -> str:
        cfg = self.polling
        started_at = self._clock()
        document_id = await self.upload_document(client, image, token)
        logger.info(f"⬆️ Uploaded {image.filename} to OCR → document {document_id}")

        attempt = 0
        dynamic_delay = cfg.base_delay
        while attempt < cfg.max_attempts and self._clock() - started_at < cfg.max_wait:
            result = await self.fetch_status(client, document_id, token)
            if result.status == "processed":
                transcript = collect_transcript(result.results)
                if transcript:
                    logger.info(f"✅ OCR finished for document {document_id} after {attempt + 1} polls")
                    return self._finish(transcript, image)
                raise OcrError("OCR finished but returned empty transcript")

            if result.status == "failed":
                raise OcrError(result.message or "Handwriting OCR processing failed")

            wait, dynamic_delay = self._next_wait(result, dynamic_delay)
            if result.http_status == 429:
                logger.warning(f"OCR rate limited for document {document_id}; waiting {wait:.1f}s")
            attempt += 1
            await self._sleep(wait, token)

        final = await self.fetch_status(client, document_id, token)
        if final.status == "processed":
            transcript = collect_transcript(final.results)
            if transcript:
                return self._finish(transcript, image)

        logger.error(f"OCR polling budget exhausted for document {document_id}")
        raise OcrTimeoutError(document_id)


def get_ocr_provider(name: str = "handwriting", settings: Optional[Settings] = None, **kwargs) -> OcrProvider:
    """
    Factory function to get OCR provider by name.

    Args:
        name: Provider name ("stub" or "handwriting")
        settings: Settings used by the real provider (read from env when omitted)

    Returns:
        OcrProvider instance
    """
    if name == "stub":
        return StubOcrProvider()
    elif name == "handwriting":
        return HandwritingOcrProvider.from_settings(settings or Settings.from_env(), **kwargs)
    else:
        raise ValueError(f"Unknown OCR provider: {name}")
