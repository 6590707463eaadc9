"""
Error taxonomy for the essay pipeline.

Everything raised by the OCR client, the model router and the state machine
derives from EssayFlowError so the orchestrator can catch it at the per-essay
boundary and turn it into essay state.
"""

import asyncio
from typing import Optional


CANCELLED_MESSAGE = "Processing cancelled"


class EssayFlowError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(EssayFlowError):
    """A required setting (usually an API key) is not configured."""


class MissingApiKeyError(ConfigurationError):
    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"{provider} API key is missing")


class ProviderError(EssayFlowError):
    """Non-2xx response or transport failure from an external vendor."""

    def __init__(self, provider: str, message: str, status_code: Optional[int] = None):
        self.provider = provider
        self.status_code = status_code
        super().__init__(message)


class OcrError(EssayFlowError):
    """The OCR vendor reported a failure or produced no transcript."""


class OcrTimeoutError(OcrError):
    def __init__(self, document_id: str):
        self.document_id = document_id
        super().__init__(
            f"OCR request timed out before completion (document id: {document_id}). 请稍后重试。"
        )


class ProcessingCancelled(EssayFlowError):
    def __init__(self, message: str = CANCELLED_MESSAGE):
        super().__init__(message)


class MalformedModelOutput(EssayFlowError):
    """The model reply was not JSON or lacked the grading result."""


class IllegalTransition(EssayFlowError):
    """The essay state machine rejected a move."""


def is_cancellation(exc: BaseException) -> bool:
    """True for cancellation errors, including foreign ones that only say so in their message."""
    if isinstance(exc, (ProcessingCancelled, asyncio.CancelledError)):
        return True
    return "cancelled" in str(exc).lower()
