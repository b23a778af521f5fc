"""Grade-level assessment structure resolver with a TTL snapshot cache."""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple

import db
from engines.validation import ConfigurationUnavailable, GradeConfigError, extract_grade_number
from env_validation import get_env_float
from learning_levels import BandMap, LearningLevelBand, group_bands, select_bands

logger = logging.getLogger(__name__)

SUBJECTS: Tuple[str, ...] = ("lp", "mat", "ch", "cn")
SUBJECT_NAMES = {
    "lp": "Portuguese Language",
    "mat": "Mathematics",
    "ch": "Human Sciences",
    "cn": "Natural Sciences",
}

DEFAULT_TTL_SECONDS = 300.0
_GRADE_NAMES = {"1": "1st grade", "2": "2nd grade", "3": "3rd grade"}

__all__ = [
    "GradeConfigResolver",
    "GradeConfiguration",
    "SubjectRule",
    "SUBJECTS",
    "default_configuration",
    "extract_grade_number",
    "generic_configuration",
]


@dataclass(frozen=True)
class SubjectRule:
    code: str
    evaluated: bool
    items: int
    weight: float = 1.0


@dataclass(frozen=True)
class GradeConfiguration:
    """Immutable assessment structure for one grade level."""

    grade: str
    name: str
    subjects: Tuple[SubjectRule, ...]
    has_essay: bool = False
    essay_items: int = 0
    essay_weight: float = 1.0
    uses_learning_level: bool = False
    source: str = "database"

    @property
    def total_objective_items(self) -> int:
        return sum(rule.items for rule in self.subjects if rule.evaluated)

    @property
    def evaluated_subjects(self) -> Tuple[SubjectRule, ...]:
        return tuple(rule for rule in self.subjects if rule.evaluated)

    def subject(self, code: str) -> Optional[SubjectRule]:
        for rule in self.subjects:
            if rule.code == code:
                return rule
        return None

    def validate(self) -> "GradeConfiguration":
        if not self.evaluated_subjects:
            raise GradeConfigError(f"Grade {self.grade} evaluates no subject")
        for rule in self.subjects:
            if rule.weight < 0:
                raise GradeConfigError(f"Grade {self.grade} has a negative weight for {rule.code}")
            if rule.items < 0:
                raise GradeConfigError(f"Grade {self.grade} has a negative item count for {rule.code}")
        if self.essay_weight < 0:
            raise GradeConfigError(f"Grade {self.grade} has a negative essay weight")
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "grade": self.grade,
            "name": self.name,
            "subjects": [
                {"code": r.code, "evaluated": r.evaluated, "items": r.items, "weight": r.weight}
                for r in self.subjects
            ],
            "has_essay": self.has_essay,
            "essay_items": self.essay_items,
            "essay_weight": self.essay_weight,
            "uses_learning_level": self.uses_learning_level,
            "total_objective_items": self.total_objective_items,
            "source": self.source,
        }

    def to_row(self) -> Dict[str, Any]:
        """Column values for ``db.upsert_grade_configuration``."""
        row: Dict[str, Any] = {"grade": self.grade, "grade_name": self.name}
        for rule in self.subjects:
            row[f"items_{rule.code}"] = rule.items
            row[f"evaluates_{rule.code}"] = int(rule.evaluated)
            row[f"weight_{rule.code}"] = rule.weight
        row.update(
            has_essay=int(self.has_essay),
            essay_items=self.essay_items,
            essay_weight=self.essay_weight,
            uses_learning_level=int(self.uses_learning_level),
            active=1,
        )
        return row


def _build(grade: str, items: Mapping[str, int], *, essay_items: int = 0, uses_level: bool = False) -> GradeConfiguration:
    subjects = tuple(
        SubjectRule(code, items.get(code, 0) > 0, items.get(code, 0), 1.0) for code in SUBJECTS
    )
    return GradeConfiguration(
        grade=grade,
        name=_GRADE_NAMES.get(grade, f"{grade}th grade"),
        subjects=subjects,
        has_essay=essay_items > 0,
        essay_items=essay_items,
        uses_learning_level=uses_level,
        source="default",
    )


# Early grades are scored on language and maths plus an essay; the final years
# of primary school add human and natural sciences.
_BUILTIN_DEFAULTS: Dict[str, GradeConfiguration] = {
    "2": _build("2", {"lp": 14, "mat": 14}, essay_items=8, uses_level=True),
    "3": _build("3", {"lp": 14, "mat": 14}, essay_items=8, uses_level=True),
    "5": _build("5", {"lp": 14, "mat": 20}, essay_items=8, uses_level=True),
    "8": _build("8", {"lp": 20, "ch": 10, "mat": 20, "cn": 10}),
    "9": _build("9", {"lp": 20, "ch": 10, "mat": 20, "cn": 10}),
}


def default_configuration(grade_label: Any) -> Optional[GradeConfiguration]:
    """Built-in structure for a grade, when one exists."""
    grade = extract_grade_number(grade_label)
    if grade is None:
        return None
    return _BUILTIN_DEFAULTS.get(grade)


def generic_configuration(grade_label: Any) -> GradeConfiguration:
    """Four subjects, equal weights, no essay."""
    grade = extract_grade_number(grade_label) or str(grade_label or "")
    return GradeConfiguration(
        grade=grade,
        name=f"Grade {grade}".strip(),
        subjects=tuple(SubjectRule(code, True, 0, 1.0) for code in SUBJECTS),
        source="generic",
    )


def configuration_from_row(row: Mapping[str, Any]) -> GradeConfiguration:
    grade = extract_grade_number(row["grade"])
    if grade is None:
        raise GradeConfigError(f"Configuration row has no grade number: {row['grade']!r}")
    subjects = tuple(
        SubjectRule(
            code=code,
            evaluated=bool(row[f"evaluates_{code}"]),
            items=int(row[f"items_{code}"] or 0),
            weight=float(row[f"weight_{code}"] if row[f"weight_{code}"] is not None else 1.0),
        )
        for code in SUBJECTS
    )
    return GradeConfiguration(
        grade=grade,
        name=row["grade_name"] or f"Grade {grade}",
        subjects=subjects,
        has_essay=bool(row["has_essay"]),
        essay_items=int(row["essay_items"] or 0),
        essay_weight=float(row["essay_weight"] if row["essay_weight"] is not None else 1.0),
        uses_learning_level=bool(row["uses_learning_level"]),
    ).validate()


@dataclass(frozen=True)
class _Snapshot:
    configurations: Dict[str, GradeConfiguration]
    bands: Dict[Optional[str], Tuple[LearningLevelBand, ...]]
    loaded_at: float
    degraded: bool = False


Loader = Callable[[], Tuple[Iterable[Mapping[str, Any]], Iterable[Mapping[str, Any]]]]


def _lookup(snapshot: _Snapshot, grade_label: Any) -> Optional[GradeConfiguration]:
    grade = extract_grade_number(grade_label)
    if grade is None:
        return None
    config = snapshot.configurations.get(grade)
    if config is not None:
        return config
    fallback = _BUILTIN_DEFAULTS.get(grade)
    if fallback is not None:
        return fallback
    if snapshot.degraded:
        return generic_configuration(grade)
    return None


class PinnedConfigurations:
    """Configurations and bands of a single snapshot; never reloads."""

    def __init__(self, snapshot: _Snapshot) -> None:
        self._snapshot = snapshot

    def resolve(self, grade_label: Any) -> Optional[GradeConfiguration]:
        return _lookup(self._snapshot, grade_label)

    def bands(self) -> BandMap:
        return self._snapshot.bands

    @property
    def degraded(self) -> bool:
        return self._snapshot.degraded


def _load_from_db() -> Tuple[List[sqlite3.Row], List[sqlite3.Row]]:
    try:
        return db.load_grade_configurations(), db.load_learning_levels()
    except sqlite3.Error as exc:
        raise ConfigurationUnavailable(str(exc)) from exc


class GradeConfigResolver:
    """Resolve grade labels to assessment structures.

    Configurations and learning-level bands are read together and kept in an
    immutable snapshot for ``ttl_seconds``. A failed read serves the built-in
    defaults for the same period.
    """

    def __init__(
        self,
        loader: Optional[Loader] = None,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._loader = loader or _load_from_db
        self._ttl = ttl_seconds if ttl_seconds is not None else get_env_float("CONFIG_CACHE_TTL", DEFAULT_TTL_SECONDS)
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshot: Optional[_Snapshot] = None

    # ------------------------------------------------------------------
    def _build_snapshot(self) -> _Snapshot:
        try:
            config_rows, band_rows = self._loader()
        except ConfigurationUnavailable as exc:
            logger.warning("Grade configurations unavailable, serving built-in defaults: %s", exc)
            return _Snapshot(dict(_BUILTIN_DEFAULTS), {}, self._clock(), degraded=True)

        configurations: Dict[str, GradeConfiguration] = {}
        for row in config_rows:
            try:
                config = configuration_from_row(row)
            except (GradeConfigError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Skipping invalid grade configuration %r: %s", dict(row).get("grade"), exc)
                continue
            configurations[config.grade] = config
        return _Snapshot(configurations, group_bands(band_rows), self._clock())

    def _current(self) -> _Snapshot:
        snapshot = self._snapshot
        if snapshot is not None and self._clock() - snapshot.loaded_at < self._ttl:
            return snapshot
        fresh = self._build_snapshot()
        with self._lock:
            self._snapshot = fresh
        logger.debug(
            "Loaded %d grade configurations (degraded=%s)", len(fresh.configurations), fresh.degraded
        )
        return fresh

    # ------------------------------------------------------------------
    @staticmethod
    def extract_grade_number(label: Any) -> Optional[str]:
        return extract_grade_number(label)

    def resolve(self, grade_label: Any) -> Optional[GradeConfiguration]:
        if extract_grade_number(grade_label) is None:
            return None
        return _lookup(self._current(), grade_label)

    def pinned(self) -> PinnedConfigurations:
        """Load now if needed and return a view that will not touch the store again.

        Callers holding a pooled connection resolve through this view so a
        cache refresh never waits on a second connection.
        """
        return PinnedConfigurations(self._current())

    def configurations(self) -> List[GradeConfiguration]:
        snapshot = self._current()
        return sorted(snapshot.configurations.values(), key=lambda cfg: int(cfg.grade))

    def bands(self) -> BandMap:
        return self._current().bands

    def bands_for(self, grade_label: Any) -> Tuple[LearningLevelBand, ...]:
        return select_bands(self.bands(), grade_label)

    @property
    def degraded(self) -> bool:
        return self._current().degraded

    def invalidate(self) -> None:
        with self._lock:
            self._snapshot = None
        logger.info("Grade configuration cache invalidated")
