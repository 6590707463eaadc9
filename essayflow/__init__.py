"""
EssayFlow: handwritten essay OCR and AI grading.

The processor, its collaborators and the essay model are re-exported here
so scripts can `from essayflow import EssayProcessor, ...`.
"""

from essayflow.collection import EssayCollection
from essayflow.config import Settings
from essayflow.llm import ModelRouter
from essayflow.ocr import get_ocr_provider
from essayflow.runner import EssayProcessor
from essayflow.schema import Essay, GradingConfig, WorkflowMode

__version__ = "0.3.0"

__all__ = [
    "Essay",
    "EssayCollection",
    "EssayProcessor",
    "GradingConfig",
    "ModelRouter",
    "Settings",
    "WorkflowMode",
    "get_ocr_provider",
]
