"""Learning-level bands and the score classifier."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Sequence, Tuple

from engines.validation import BandConfigError, SCORE_MAX, SCORE_MIN, extract_grade_number

logger = logging.getLogger(__name__)

BandMap = Mapping[Optional[str], Tuple["LearningLevelBand", ...]]

_EPSILON = 1e-9


@dataclass(frozen=True)
class LearningLevelBand:
    """Score interval ``[lower, upper)`` mapped to a named level.

    The highest band of a scope is closed at ``SCORE_MAX``.
    """

    lower: float
    upper: float
    code: str
    name: str
    color: Optional[str] = None
    grade: Optional[str] = None
    sort_order: int = 0

    def contains(self, score: float, *, closed_top: bool = False) -> bool:
        if score < self.lower:
            return False
        if closed_top:
            return score <= self.upper
        return score < self.upper


@dataclass(frozen=True)
class LevelResult:
    code: str
    name: str
    color: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DEFAULT_BANDS: Tuple[LearningLevelBand, ...] = (
    LearningLevelBand(0.0, 3.0, "insuficiente", "Insufficient", "#ef4444", sort_order=1),
    LearningLevelBand(3.0, 5.0, "basico", "Basic", "#f59e0b", sort_order=2),
    LearningLevelBand(5.0, 7.5, "adequado", "Adequate", "#3b82f6", sort_order=3),
    LearningLevelBand(7.5, 10.0, "avancado", "Advanced", "#22c55e", sort_order=4),
)


def validate_bands(bands: Iterable[LearningLevelBand]) -> Tuple[LearningLevelBand, ...]:
    """Return ``bands`` sorted by lower bound, or raise ``BandConfigError``.

    A valid set is non-empty, has no overlaps or gaps and spans
    ``[SCORE_MIN, SCORE_MAX]`` exactly.
    """

    ordered = tuple(sorted(bands, key=lambda band: (band.lower, band.upper)))
    if not ordered:
        raise BandConfigError("At least one learning-level band is required")

    for band in ordered:
        if band.upper <= band.lower:
            raise BandConfigError(
                f"Band {band.code} has an empty interval [{band.lower}, {band.upper})"
            )

    if abs(ordered[0].lower - SCORE_MIN) > _EPSILON:
        raise BandConfigError(f"Bands must start at {SCORE_MIN:g}, first starts at {ordered[0].lower:g}")
    if abs(ordered[-1].upper - SCORE_MAX) > _EPSILON:
        raise BandConfigError(f"Bands must end at {SCORE_MAX:g}, last ends at {ordered[-1].upper:g}")

    for previous, current in zip(ordered, ordered[1:]):
        if current.lower < previous.upper - _EPSILON:
            raise BandConfigError(f"Bands {previous.code} and {current.code} overlap")
        if current.lower > previous.upper + _EPSILON:
            raise BandConfigError(f"Gap between bands {previous.code} and {current.code}")

    return ordered


def band_from_row(row: Mapping[str, Any]) -> LearningLevelBand:
    scope = row["grade"] if "grade" in row.keys() else None
    return LearningLevelBand(
        lower=float(row["min_score"]),
        upper=float(row["max_score"]),
        code=str(row["code"]),
        name=str(row["name"]),
        color=row["color"],
        grade=extract_grade_number(scope) if scope not in (None, "") else None,
        sort_order=int(row["sort_order"] or 0),
    )


def group_bands(rows: Iterable[Mapping[str, Any]]) -> Dict[Optional[str], Tuple[LearningLevelBand, ...]]:
    """Group stored band rows by grade scope, dropping scopes that fail validation."""

    scopes: Dict[Optional[str], list[LearningLevelBand]] = {}
    for row in rows:
        try:
            band = band_from_row(row)
        except (KeyError, TypeError, ValueError) as exc:
            logger.warning("Skipping malformed learning level row: %s", exc)
            continue
        scopes.setdefault(band.grade, []).append(band)

    grouped: Dict[Optional[str], Tuple[LearningLevelBand, ...]] = {}
    for scope, bands in scopes.items():
        try:
            grouped[scope] = validate_bands(bands)
        except BandConfigError as exc:
            logger.warning(
                "Ignoring learning levels for scope %s: %s",
                scope if scope is not None else "global",
                exc,
            )
    return grouped


def select_bands(band_map: BandMap, grade_label: Any = None) -> Tuple[LearningLevelBand, ...]:
    """Grade-specific bands, then global bands, then the built-in defaults."""

    grade = extract_grade_number(grade_label)
    if grade is not None and band_map.get(grade):
        return band_map[grade]
    if band_map.get(None):
        return band_map[None]
    return DEFAULT_BANDS


class LearningLevelClassifier:
    """Map composite scores to learning-level bands."""

    def __init__(self, bands_provider: Optional[Callable[[], BandMap]] = None) -> None:
        self._bands_provider = bands_provider or (lambda: {})

    def bands_for(self, grade_label: Any = None) -> Tuple[LearningLevelBand, ...]:
        return select_bands(self._bands_provider(), grade_label)

    def pinned(self) -> "LearningLevelClassifier":
        """A classifier fixed to the bands the provider returns right now."""
        band_map = self._bands_provider()
        return LearningLevelClassifier(lambda: band_map)

    def classify(self, score: Optional[float], grade_label: Any = None) -> Optional[LevelResult]:
        if score is None:
            return None
        try:
            value = float(score)
        except (TypeError, ValueError):
            return None
        if value <= 0:
            return None

        bands = self.bands_for(grade_label)
        ordered = sorted(bands, key=lambda band: band.lower)
        last = len(ordered) - 1
        for idx, band in enumerate(ordered):
            if band.contains(value, closed_top=idx == last):
                return LevelResult(band.code, band.name, band.color)
        return None

    def classify_code(self, score: Optional[float], grade_label: Any = None) -> Optional[str]:
        result = self.classify(score, grade_label)
        return result.code if result else None


def normalize_label(value: Any) -> str:
    return " ".join(str(value or "").split()).casefold()


def level_matches(stored: Any, expected: Optional[LevelResult]) -> bool:
    """Compare a stored level label with the expected band by code or name."""
    stored_text = normalize_label(stored)
    if expected is None:
        return stored_text == ""
    return stored_text in (normalize_label(expected.code), normalize_label(expected.name))


def grades_match(left: Any, right: Any) -> bool:
    """Compare grade labels on their grade number, falling back to the label text."""
    left_number, right_number = extract_grade_number(left), extract_grade_number(right)
    if left_number is not None and right_number is not None:
        return left_number == right_number
    return normalize_label(left) == normalize_label(right)
