"""Composite score computation for consolidated exam results."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, Mapping, Optional

from grade_config import SUBJECTS, GradeConfiguration

SCORE_TOLERANCE = 0.02


def _usable(value: Any) -> Optional[float]:
    """A score counts only when present and strictly positive."""
    if value is None or isinstance(value, bool):
        return None
    try:
        score = float(value)
    except (TypeError, ValueError):
        return None
    if score != score or score <= 0:
        return None
    return score


def compute_composite(
    scores: Mapping[str, Any],
    config: GradeConfiguration,
    essay_score: Any = None,
) -> Optional[float]:
    """Weighted mean of the usable scores of the evaluated subjects.

    A zero or missing score means the subject was not administered to the
    student, so it is left out of both the sum and the weight total. The
    essay takes part the same way when the grade has one. Returns ``None``
    when nothing usable remains. No rounding is applied here.
    """

    total = 0.0
    weight_total = 0.0
    for rule in config.subjects:
        if not rule.evaluated:
            continue
        score = _usable(scores.get(rule.code))
        if score is None:
            continue
        total += score * rule.weight
        weight_total += rule.weight

    if config.has_essay:
        essay = _usable(essay_score)
        if essay is not None:
            total += essay * config.essay_weight
            weight_total += config.essay_weight

    if weight_total <= 0:
        return None
    return total / weight_total


def round_score(value: Optional[float]) -> Optional[float]:
    """Round half-up to two decimals (storage and comparison precision)."""
    if value is None:
        return None
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def scores_from_row(row: Mapping[str, Any]) -> Dict[str, Any]:
    return {code: row[f"score_{code}"] for code in SUBJECTS}


def composite_for_result(row: Mapping[str, Any], config: GradeConfiguration) -> Optional[float]:
    """Expected stored average of a consolidated-result row."""
    return round_score(compute_composite(scores_from_row(row), config, row["essay_score"]))


def stored_score(value: Any) -> Optional[float]:
    """Numeric value of a score column.

    SQLite keeps text it cannot convert (``"8,5"``) as text even in a REAL
    column; such values raise ``ValueError``.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"{value!r} is not a score")
    try:
        score = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{value!r} is not a number") from None
    if score != score:
        raise ValueError("NaN is not a score")
    return score


def score_in_range(value: Any) -> bool:
    """Missing scores are in range; non-numeric ones are not."""
    try:
        score = stored_score(value)
    except ValueError:
        return False
    return score is None or 0 <= score <= 10


def averages_match(stored: Any, expected: Optional[float], tolerance: float = SCORE_TOLERANCE) -> bool:
    try:
        value = stored_score(stored)
    except ValueError:
        return False
    if expected is None:
        return value is None or value == 0
    if value is None:
        return False
    return abs(value - expected) <= tolerance + 1e-9


def recount_correct_answers(rows: Iterable[Mapping[str, Any]]) -> Dict[str, int]:
    """Number of correct raw responses per subject code.

    ``rows`` carry ``subject`` and either ``correct_count`` (pre-aggregated)
    or ``correct`` (one row per response). Unknown subjects are ignored.
    """

    totals: Dict[str, int] = {}
    for row in rows:
        subject = str(row["subject"] or "").strip().lower()
        if subject not in SUBJECTS:
            continue
        keys = row.keys()
        if "correct_count" in keys:
            count = int(row["correct_count"] or 0)
        else:
            count = 1 if row["correct"] else 0
        totals[subject] = totals.get(subject, 0) + count
    return totals


def totals_from_row(row: Mapping[str, Any]) -> Dict[str, Optional[int]]:
    return {code: row[f"total_correct_{code}"] for code in SUBJECTS}
