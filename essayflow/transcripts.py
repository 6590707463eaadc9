"""
Best-effort persistence of OCR transcripts as markdown files.

After a successful OCR the transcript is written to the local transcripts
directory and, when a save endpoint is configured, posted to it in the
background. Nothing here raises to the OCR caller: failures are logged.
"""

import asyncio
import logging
import re
from pathlib import Path
from typing import Dict, Optional, Set, Tuple

import httpx

logger = logging.getLogger(__name__)


def _normalize_slashes(value: str) -> str:
    return value.replace("\\", "/")


def sanitize_segment(value: str) -> Optional[str]:
    """
    Make a filesystem-safe filename segment.

    Examples:
        "Li Hua" -> "Li_Hua"
        "photo.final.jpg" -> "photo_final"
    """
    cleaned = re.sub(r"\.[^/.]+$", "", value.strip())
    cleaned = re.sub(r"[^a-zA-Z0-9\-_]+", "_", cleaned)[:50]
    cleaned = cleaned.strip("_")
    return cleaned or None


def extract_name_and_date(content: str) -> Tuple[Optional[str], Optional[str]]:
    """Pull "Name:" / "Date:" header values (English or Chinese labels) from a transcript."""
    name_match = re.search(r"(?:Name|姓名)\s*[:：]\s*([^\n\r]+)", content, re.IGNORECASE)
    date_match = re.search(
        r"(?:Date|日期)\s*[:：]\s*([0-9]{4}[./-]?[0-9]{2}[./-]?[0-9]{2}|[0-9]{8})",
        content,
        re.IGNORECASE,
    )
    student_name = name_match.group(1).strip() if name_match else None
    writing_date = date_match.group(1).strip() if date_match else None

    if writing_date:
        digits = re.sub(r"[^0-9]", "", writing_date)
        if len(digits) == 8:
            writing_date = digits

    return student_name or None, writing_date or None


def derive_image_relative_path(source_path: Optional[str]) -> Optional[str]:
    """
    Relative link from the transcripts folder to the source image.

    Only images stored under a `tasks/` folder get a link:
        "/home/t/tasks/class3/img01.jpg" -> "../tasks/class3/img01.jpg"
    """
    if not source_path or not source_path.strip():
        return None
    normalized = _normalize_slashes(source_path.strip())
    marker = "/tasks/"
    marker_index = normalized.lower().rfind(marker)
    if marker_index >= 0:
        return f"../{normalized[marker_index + 1:]}"
    if normalized.lower().startswith("tasks/"):
        return f"../{normalized}"
    return None


def extract_class_slug(image_relative_path: Optional[str]) -> Optional[str]:
    """Parent folder of the image, alphanumerics only (folders are usually named after the class)."""
    if not image_relative_path:
        return None
    normalized = re.sub(r"^(\.\./)+", "", _normalize_slashes(image_relative_path))
    normalized = re.sub(r"^\.?/", "", normalized)
    segments = [s for s in normalized.split("/") if s]
    if len(segments) < 2:
        return None
    cleaned = re.sub(r"[^a-zA-Z0-9]+", "", segments[-2])
    return cleaned or None


def extract_image_slug(filename: Optional[str]) -> Optional[str]:
    if not filename:
        return None
    base = re.sub(r"\.[^/.]+$", "", filename)
    cleaned = re.sub(r"[^a-zA-Z0-9]+", "", base)
    return cleaned or None


def append_image_link(payload: str, image_relative_path: Optional[str]) -> str:
    if not image_relative_path:
        return payload
    link_line = f"![500]({_normalize_slashes(image_relative_path)})"
    if link_line in payload:
        return payload
    return f"{payload.rstrip()}\n{link_line}\n"


def build_markdown_payload(
    content: str,
    image_filename: Optional[str] = None,
    image_relative_path: Optional[str] = None,
) -> Tuple[str, str]:
    """
    Build a deterministic filename and markdown body for a transcript.

    Filename shape: <student>_<class>_<image>_<date>.md, with
    unknown_student / unknownclass / image / unknown_date placeholders.

    Returns:
        (filename, payload)
    """
    student_name, writing_date = extract_name_and_date(content)
    student_slug = (sanitize_segment(student_name) if student_name else None) or "unknown_student"
    class_slug = extract_class_slug(image_relative_path) or "unknownclass"
    image_slug = extract_image_slug(image_filename) or "image"
    if writing_date:
        date_slug = re.sub(r"[^0-9]", "", writing_date) or sanitize_segment(writing_date) or "unknown_date"
    else:
        date_slug = "unknown_date"

    filename = f"{student_slug}_{class_slug}_{image_slug}_{date_slug}.md"
    payload = append_image_link(f"# OCR Transcript\n\n{content}\n", image_relative_path)
    return filename, payload


class TranscriptStore:
    """
    Writes transcripts locally and mirrors them to an optional save server.

    If the transcripts directory cannot be written, the payload goes to
    `<fallback_dir>/ocr_md_<filename>` instead (`from_settings` on the OCR
    provider puts it under the data directory). Only when that fails too, or
    no fallback directory is set, is it held in `fallback_cache`, which lives
    for the current process.
    `cached_transcript` reads back from either place.
    """

    def __init__(
        self,
        output_dir: Optional[Path] = None,
        save_endpoint: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: float = 10.0,
        fallback_dir: Optional[Path] = None,
    ):
        self.output_dir = Path(output_dir) if output_dir else None
        self.save_endpoint = save_endpoint
        self.fallback_dir = Path(fallback_dir) if fallback_dir else None
        self.fallback_cache: Dict[str, str] = {}
        self._client = client
        self._timeout = timeout
        self._pending: Set[asyncio.Task] = set()

    def persist(
        self,
        transcript: str,
        image_filename: Optional[str] = None,
        source_path: Optional[str] = None,
    ) -> str:
        """Save a transcript; returns the markdown filename used."""
        image_relative_path = derive_image_relative_path(source_path)
        filename, payload = build_markdown_payload(transcript, image_filename, image_relative_path)
        self._write_local(filename, payload)
        if self.save_endpoint:
            self._schedule_remote(
                {
                    "filename": filename,
                    "content": payload,
                    "imageFilename": image_filename,
                    "imageRelativePath": image_relative_path,
                }
            )
        return filename

    def _write_local(self, filename: str, payload: str) -> None:
        if self.output_dir is not None:
            try:
                self.output_dir.mkdir(parents=True, exist_ok=True)
                (self.output_dir / filename).write_text(payload, encoding="utf-8")
                logger.info(f"📝 Saved OCR transcript → {self.output_dir / filename}")
                return
            except OSError as e:
                logger.warning(f"Could not write OCR markdown {filename}: {e}")
        self._write_fallback(filename, payload)

    def _write_fallback(self, filename: str, payload: str) -> None:
        key = f"ocr_md_{filename}"
        if self.fallback_dir is not None:
            try:
                self.fallback_dir.mkdir(parents=True, exist_ok=True)
                (self.fallback_dir / key).write_text(payload, encoding="utf-8")
                logger.info(f"📝 Saved OCR transcript to fallback → {self.fallback_dir / key}")
                return
            except OSError as e:
                logger.warning(f"Could not write OCR markdown fallback {key}: {e}")
        self.fallback_cache[key] = payload

    def cached_transcript(self, filename: str) -> Optional[str]:
        """Markdown saved through the fallback path for `filename`, if any."""
        key = f"ocr_md_{filename}"
        if key in self.fallback_cache:
            return self.fallback_cache[key]
        if self.fallback_dir is not None:
            path = self.fallback_dir / key
            if path.is_file():
                return path.read_text(encoding="utf-8")
        return None

    def _schedule_remote(self, body: dict) -> None:
        try:
            task = asyncio.get_running_loop().create_task(self._post_remote(body))
        except RuntimeError:
            logger.warning("No running event loop; skipping OCR markdown upload")
            return
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _post_remote(self, body: dict) -> None:
        try:
            if self._client is not None:
                response = await self._client.post(self.save_endpoint, json=body)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.post(self.save_endpoint, json=body)
            if response.status_code >= 400:
                logger.warning(
                    f"Save server rejected OCR markdown {body['filename']}: HTTP {response.status_code}"
                )
        except httpx.HTTPError as e:
            logger.warning(f"Could not persist OCR markdown to save server: {e}")

    async def drain(self) -> None:
        """Wait for background uploads to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
