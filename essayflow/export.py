"""
Export graded essays as JSON or CSV with frozen headers.
"""

import csv
import json
from pathlib import Path
from typing import Iterable, Union

from essayflow.schema import Essay

DEFAULT_JSON_FILENAME = "essay_grading_results.json"

# Frozen CSV headers
CSV_HEADERS = [
    "id",
    "student_name",
    "topic",
    "date",
    "submission_type",
    "status",
    "score",
    "grade",
    "summary_cn",
    "strengths",
    "improvements",
    "correction_count",
    "error_message",
    "batch_id",
    "source_filename",
]


def essay_to_row(essay: Essay) -> dict:
    """Flatten one essay into a CSV row keyed by CSV_HEADERS."""
    result = essay.grading_result
    return {
        "id": essay.id,
        "student_name": essay.student_name or "",
        "topic": essay.topic or "",
        "date": essay.date or "",
        "submission_type": essay.submission_type.value,
        "status": essay.status.value,
        "score": result.score if result is not None else "",
        "grade": (result.grade or "") if result is not None else "",
        "summary_cn": result.summary_cn if result is not None else "",
        # Multi-value fields are joined with " | " to keep one row per essay
        "strengths": " | ".join(result.strengths) if result is not None else "",
        "improvements": " | ".join(result.improvements) if result is not None else "",
        "correction_count": len(result.grammar_issues) if result is not None else 0,
        "error_message": essay.error_message or "",
        "batch_id": essay.batch_id or "",
        "source_filename": essay.source_filename or "",
    }


def export_json(essays: Iterable[Essay], path: Union[str, Path]) -> Path:
    """Write essays (without image bytes) as a pretty-printed JSON array."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    data = [essay.model_dump(mode="json") for essay in essays]
    path.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
    return path


def export_csv(essays: Iterable[Essay], path: Union[str, Path]) -> Path:
    """
    Write one row per essay.

    Args:
        essays: Essays to export, in order
        path: Target CSV file (overwritten)

    Returns:
        Path to the CSV file written
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", newline="", encoding="utf-8") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_HEADERS)
        writer.writeheader()
        for essay in essays:
            writer.writerow(essay_to_row(essay))
    return path
