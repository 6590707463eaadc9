"""
Prompt construction for essay grading.

The system prompt carries level guidance, the rubric, the teacher's focus
areas and the three report-section instructions. The user prompt carries the
essay: resolved text when available, otherwise an attached image.
"""

import base64
from typing import Optional

from essayflow.errors import EssayFlowError
from essayflow.schema import (
    CORRECTION_CATEGORIES,
    Essay,
    GradingConfig,
    GradingPrompts,
    ImagePayload,
    PromptBundle,
    StudentLevel,
)


LEVEL_GUIDANCE = {
    StudentLevel.ELEMENTARY: (
        "Use simple present/past; short sentences; avoid idioms; target CEFR A1-A2 vocabulary; "
        "give 1-2 sentence Chinese explanations."
    ),
    StudentLevel.MIDDLE: (
        "Use clear simple/compound sentences; encourage basic connectors (because, however); "
        "target CEFR A2-B1 vocabulary; highlight tense/article errors."
    ),
    StudentLevel.HIGH: (
        "Expect varied clauses and cohesive devices; target CEFR B1-B2 vocabulary; "
        "encourage precise verbs/adjectives; point out logical gaps."
    ),
    StudentLevel.COLLEGE: (
        "Expect complex sentences and academic connectors; target CEFR B2-C1 vocabulary; "
        "encourage concision and lexical variety; flag argumentation and register issues."
    ),
}

DEFAULT_FOCUS_AREAS = "Grammar, Vocabulary"

DEFAULT_GRADING_PROMPTS = GradingPrompts(
    summary_prompt=(
        "用中文撰写教师总评（summary_cn），要求：\n"
        "1. 基于学生的整体写作水平给出评价\n"
        "2. 涵盖写作能力、表达清晰度和内容完整性\n"
        "3. 控制在2-3句话内\n"
        "4. 语气专业且鼓励"
    ),
    strengths_prompt=(
        "在 strengths 数组中列出学生写作的2-3个亮点，要求：\n"
        "1. 每个亮点用一句中文描述\n"
        "2. 关注具体的优秀表现，如词汇运用得当、句式多样、逻辑清晰、内容丰富等\n"
        "3. 给出具体例子或证据"
    ),
    improvements_prompt=(
        "在 improvements 数组中列出2-3个需要改进的方面，要求：\n"
        "1. 每个建议用一句中文描述\n"
        "2. 明确指出问题类型，如语法错误、拼写问题、句式单一、逻辑不清等\n"
        "3. 给出具体的改进建议"
    ),
)

_CORRECTION_ITEM = (
    '{"type": "' + "|".join(CORRECTION_CATEGORIES) + '", '
    '"original": string, "correction": string, "explanation": "Chinese explanation"}'
)

RESPONSE_SHAPE = """{
  "studentName": string,
  "date": string,
  "ocrText": string,
  "gradingResult": {
    "score": number,
    "summary_cn": string,
    "strengths": string[],
    "improvements": string[],
    "grammar_issues": [
      %s
    ]
  }
}""" % _CORRECTION_ITEM


class PromptError(EssayFlowError, ValueError):
    """Neither essay text nor an image is available."""


def format_focus_areas(config: GradingConfig) -> str:
    areas = [a.strip() for a in config.criteria.focus_areas if a and a.strip()]
    return ", ".join(areas) if areas else DEFAULT_FOCUS_AREAS


def build_system_prompt(config: GradingConfig) -> str:
    focus_areas = format_focus_areas(config)
    level_guidance = LEVEL_GUIDANCE.get(config.level, LEVEL_GUIDANCE[StudentLevel.MIDDLE])
    prompts = config.prompts or DEFAULT_GRADING_PROMPTS

    return f"""
You are an expert English Teacher and AI Assistant. If OCR text is provided, use it directly and do not redo OCR. If only an image is provided, perform OCR first, then grade the essay.
Adapt grading strictness, vocabulary expectations, and suggestions to the student's level: {level_guidance}
Use the rubric below; keep feedback concise and actionable.

评分维度-具体描述+示例:
- Grammar: 正确时态/主谓一致/冠词，指出错误并给出替换。例如 "She go to school" -> "She goes to school." 解释用中文。
- Vocabulary: 词汇多样性与准确性，给出同义词或短语替换。例如 "good" -> "remarkable / impressive"。
- Structure/Coherence: 段落与衔接词使用，指出缺少过渡句并提供示例句。
- Spelling/Punctuation: 标注错误词并给出正确拼写或标点用法。
- Focus Areas (教师自定义): 优先覆盖 {focus_areas}，若无匹配则按以上通用维度评价。

自定义评价要求（Custom Grading Requirements）:
- Teacher's Summary (summary_cn): {prompts.summary_prompt}
- Strengths: {prompts.strengths_prompt}
- Areas for Improvement (improvements): {prompts.improvements_prompt}

Return a single JSON object with the following keys:
{RESPONSE_SHAPE}
All feedback in "summary_cn" and each "explanation" must be in Chinese. Do not include any text outside of the JSON.
""".strip()


def _shared_context(essay: Essay, config: GradingConfig) -> str:
    level = config.level.value if isinstance(config.level, StudentLevel) else str(config.level)
    max_score = config.criteria.max_score
    if float(max_score).is_integer():
        max_score = int(max_score)
    return (
        f"Student Level: {level}\n"
        f"Focus Areas: {format_focus_areas(config)}\n"
        f"Max Score: {max_score}\n"
        f"Student Name (provided): {essay.student_name or 'Unknown'}\n"
        f"Topic (provided): {essay.topic or 'General'}"
    )


def encode_image(content: bytes, mime_type: str) -> ImagePayload:
    return ImagePayload(base64=base64.b64encode(content).decode("ascii"), mime_type=mime_type or "image/jpeg")


def build_prompt_bundle(
    essay: Essay,
    config: GradingConfig,
    resolved_text: Optional[str] = None,
) -> PromptBundle:
    """
    Assemble the grading prompt for one essay.

    Args:
        essay: The essay being graded
        config: Level, rubric focus, model and custom section prompts
        resolved_text: Text already captured (typed, OCR or imported); falls back to essay.raw_text

    Returns:
        PromptBundle (image attached only when no text is available)

    Raises:
        PromptError: no text and no image
    """
    system_prompt = build_system_prompt(config)
    context = _shared_context(essay, config)
    base_text = (resolved_text or essay.raw_text or "").strip()

    if base_text:
        user_prompt = (
            f"{context}\n\n"
            "Essay Text (already transcribed or typed):\n"
            f'"""\n{base_text}\n"""\n\n'
            'Use the provided essay text directly as "ocrText" (no OCR needed), infer student name '
            "and date from the header when possible, then grade it and return the JSON described "
            "in the system prompt."
        )
        return PromptBundle(system_prompt=system_prompt, user_prompt=user_prompt)

    if essay.image is None:
        raise PromptError("No file provided for image submission")

    user_prompt = (
        f"{context}\n\n"
        "An image of the handwritten essay is attached. Perform OCR to transcribe the essay "
        "(preserve natural line breaks) and capture the student's name and date from the header "
        "when available. Then grade it and return the JSON described in the system prompt."
    )
    return PromptBundle(
        system_prompt=system_prompt,
        user_prompt=user_prompt,
        image=encode_image(essay.image.content, essay.image.mime_type),
    )
