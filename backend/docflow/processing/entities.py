"""
Regex entity extraction over OCR text.

Patterns are applied in order and their matches concatenated, so a string
matched by two patterns of the same group appears twice. Callers that need
unique values dedupe themselves; the raw list keeps match counts intact.
"""

from __future__ import annotations

import re

from docflow.schemas.documents import ExtractedEntities

DATE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\d{1,2}/\d{1,2}/\d{4}"),
    re.compile(r"\d{4}-\d{1,2}-\d{1,2}"),
    re.compile(r"\d{1,2}-\d{1,2}-\d{4}"),
)

AMOUNT_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"\$[\d,]+\.?\d*"),
    re.compile(r"USD\s*[\d,]+\.?\d*"),
    re.compile(r"₹[\d,]+\.?\d*"),
    re.compile(r"INR\s*[\d,]+\.?\d*"),
)

# PROJ-0042 is covered by the generic prefix pattern; the PROJ/KM forms
# catch the long multi-segment codes (PROJ-2024-17, KM-2024-001).
PROJECT_CODE_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"[A-Z]{2,4}-\d{3,4}"),
    re.compile(r"PROJ-\d+-\d+"),
    re.compile(r"KM-\d+-\d+"),
)


def _scan(patterns: tuple[re.Pattern[str], ...], text: str) -> list[str]:
    found: list[str] = []
    for pattern in patterns:
        found.extend(pattern.findall(text))
    return found


def extract_entities(text: str | None) -> ExtractedEntities:
    """Pure function of `text`; None and "" give three empty lists."""
    if not text:
        return ExtractedEntities()
    return ExtractedEntities(
        dates=_scan(DATE_PATTERNS, text),
        amounts=_scan(AMOUNT_PATTERNS, text),
        project_codes=_scan(PROJECT_CODE_PATTERNS, text),
    )
