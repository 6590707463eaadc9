"""Pytest hooks and shared fixtures for essayflow. No test talks to a real vendor."""

import json
import os

import pytest

from essayflow.config import Settings
from essayflow.schema import Essay, EssayImage, SubmissionType

TEST_ENV = {
    "OPENAI_API_KEY": "sk-test",
    "GEMINI_API_KEY": "gemini-test",
    "DEEPSEEK_API_KEY": "deepseek-test",
    "OPENROUTER_API_KEY": "openrouter-test",
    "HANDWRITING_OCR_API_KEY": "hw-test",
    "OPENAI_BASE_URL": "https://openai.test/v1",
    "GEMINI_BASE_URL": "https://gemini.test/v1beta",
    "DEEPSEEK_BASE_URL": "https://deepseek.test/v1",
    "OPENROUTER_BASE_URL": "https://openrouter.test/api/v1",
    "HANDWRITING_OCR_BASE_URL": "https://ocr.test/api/v3",
    "APP_URL": "http://localhost:5173",
    "APP_NAME": "EssayFlow AI",
}


def pytest_configure(config):
    """Remind that tests run against mocked vendors; real keys in .env are never used."""
    if os.environ.get("OPENAI_API_KEY") or os.environ.get("HANDWRITING_OCR_API_KEY"):
        print(
            "\nNote: vendor API keys found in the environment are ignored by the test suite; "
            "all HTTP calls go through httpx.MockTransport.\n",
            end="",
        )


@pytest.fixture
def settings(tmp_path):
    env = dict(TEST_ENV)
    env["ESSAYFLOW_DATA_DIR"] = str(tmp_path / "data")
    env["ESSAYFLOW_TRANSCRIPTS_DIR"] = str(tmp_path / "transcripts")
    return Settings.from_env(env)


@pytest.fixture
def image():
    return EssayImage(filename="scan01.jpg", content=b"\xff\xd8fake-jpeg", mime_type="image/jpeg")


@pytest.fixture
def image_essay(image):
    return Essay(id="img0000001", submission_type=SubmissionType.IMAGE, image=image, source_filename="scan01.jpg")


@pytest.fixture
def text_essay():
    return Essay(
        id="txt0000001",
        submission_type=SubmissionType.TEXT,
        raw_text="I like autumn best. The leaves turns yellow.",
        student_name="Li Hua",
        topic="Seasons",
    )


def make_reply(score=15, **overrides) -> str:
    """JSON text shaped like the model's grading reply."""
    reply = {
        "studentName": "Li Hua",
        "date": "2024-03-18",
        "ocrText": "I like autumn best.",
        "gradingResult": {
            "score": score,
            "summary_cn": "整体表达清楚，语法需加强。",
            "strengths": ["用词准确"],
            "improvements": ["注意主谓一致"],
            "grammar_issues": [
                {
                    "type": "Grammar",
                    "original": "The leaves turns",
                    "correction": "The leaves turn",
                    "explanation": "主语为复数，动词用原形。",
                }
            ],
        },
    }
    reply.update(overrides)
    return json.dumps(reply, ensure_ascii=False)


@pytest.fixture
def grading_reply():
    return make_reply
