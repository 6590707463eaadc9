"""
Data models for essay submissions, grading configuration and grading results.
Uses Pydantic for validation and serialization.
"""

from enum import Enum
from typing import List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class SubmissionType(str, Enum):
    IMAGE = "image"
    TEXT = "text"
    MARKDOWN = "markdown"


class ProcessingStatus(str, Enum):
    """Overall essay status shown to the user."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"
    CANCELLED = "CANCELLED"


class StepStatus(str, Enum):
    """Sub-status tracked separately for the OCR phase and the grading phase."""
    IDLE = "idle"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"
    SKIPPED = "skipped"


class ProgressStep(str, Enum):
    QUEUED = "queued"
    OCR = "ocr"
    OCR_COMPLETE = "ocr_complete"
    GRADING = "grading"
    DONE = "done"
    ERROR = "error"
    CANCELLED = "cancelled"


class WorkflowMode(str, Enum):
    """Batch policy: which steps run when the queue is started."""
    AUTO = "auto"
    OCR_ONLY = "ocr_only"
    AI_ONLY = "ai_only"


class StudentLevel(str, Enum):
    ELEMENTARY = "小学 (Elementary)"
    MIDDLE = "初中 (Middle School)"
    HIGH = "高中 (High School)"
    COLLEGE = "大学/雅思 (College/IELTS)"


class AIProvider(str, Enum):
    OPENAI = "openai"
    OPENROUTER = "openrouter"
    GEMINI = "gemini"
    DEEPSEEK = "deepseek"


# Known correction tags. The model may return others; they are kept as-is.
CORRECTION_CATEGORIES = ("Grammar", "Vocabulary", "Spelling", "Structure", "Punctuation")


class CorrectionItem(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: Optional[str] = None
    original: str = ""
    correction: str = ""
    explanation: str = ""


class GradingResult(BaseModel):
    """
    Structured feedback for one essay, exactly as returned by the model.
    Scores are trusted: no clamping against the configured maximum.
    """
    model_config = ConfigDict(extra="allow")

    score: float
    grade: Optional[str] = None  # letter grade override, e.g. "B+"
    summary_cn: str = ""
    grammar_issues: List[CorrectionItem] = Field(default_factory=list)
    strengths: List[str] = Field(default_factory=list)
    improvements: List[str] = Field(default_factory=list)


class ModelReply(BaseModel):
    """Top-level JSON object the grading prompt asks the model for."""
    model_config = ConfigDict(extra="ignore")

    studentName: Optional[str] = None
    date: Optional[str] = None
    ocrText: Optional[str] = None
    gradingResult: GradingResult


class EssayImage(BaseModel):
    """In-memory image handle. Never persisted."""
    filename: str
    content: bytes = Field(repr=False)
    mime_type: str = "image/jpeg"
    source_path: Optional[str] = None


class Essay(BaseModel):
    """One submission and its processing state."""
    model_config = ConfigDict(validate_assignment=False)

    id: str
    submission_type: SubmissionType

    # Content
    raw_text: Optional[str] = None
    ocr_text: str = ""
    image: Optional[EssayImage] = Field(default=None, exclude=True)

    # Metadata
    student_name: Optional[str] = None
    topic: Optional[str] = None
    date: Optional[str] = None
    added_at: Optional[str] = None
    batch_id: Optional[str] = None
    source_filename: Optional[str] = None
    source_path: Optional[str] = None

    # Processing state
    status: ProcessingStatus = ProcessingStatus.PENDING
    ocr_status: StepStatus = StepStatus.IDLE
    grading_status: StepStatus = StepStatus.IDLE
    progress_step: ProgressStep = ProgressStep.QUEUED
    progress_message: str = "Waiting in queue"

    # Result
    grading_result: Optional[GradingResult] = None
    error_message: Optional[str] = None

    def text_for_grading(self) -> str:
        """Best available text: captured transcript first, then typed/imported input."""
        return (self.ocr_text or "").strip() or (self.raw_text or "").strip()


class GradingCriteria(BaseModel):
    max_score: float = 20
    focus_areas: List[str] = Field(default_factory=lambda: ["Grammar", "Vocabulary"])


class ModelSettings(BaseModel):
    provider: Union[AIProvider, str] = AIProvider.OPENAI
    model: str = "gpt-4o-mini"


class GradingPrompts(BaseModel):
    summary_prompt: str
    strengths_prompt: str
    improvements_prompt: str


class GradingConfig(BaseModel):
    level: StudentLevel = StudentLevel.MIDDLE
    criteria: GradingCriteria = Field(default_factory=GradingCriteria)
    model: ModelSettings = Field(default_factory=ModelSettings)
    prompts: Optional[GradingPrompts] = None


class ImagePayload(BaseModel):
    base64: str = Field(repr=False)
    mime_type: str


class PromptBundle(BaseModel):
    """Provider-agnostic prompt handed to the model router."""
    system_prompt: str
    user_prompt: str
    image: Optional[ImagePayload] = None
