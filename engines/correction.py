"""Apply remediations for detected divergences, one target at a time."""

from __future__ import annotations

import logging
import sqlite3
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import db
from engines import divergence_catalog as catalog
from engines.detection import DivergenceDetector
from engines.divergence_catalog import CatalogEntry, DivergenceType
from engines.history import HistoryEntry, HistoryStore
from engines.scoring import averages_match, composite_for_result, recount_correct_answers, score_in_range
from engines.validation import (
    InvalidFixRequest,
    TargetNotFound,
    UnauthorizedFix,
    extract_grade_number,
    is_valid_school_year,
    normalize_school_year,
    require_choice,
    require_int,
    require_text,
    validate_answer_key,
    validate_score_value,
)
from env_validation import current_school_year, get_env_int
from grade_config import (
    SUBJECTS,
    GradeConfigResolver,
    default_configuration,
    generic_configuration,
)
from learning_levels import LearningLevelClassifier, grades_match, level_matches, normalize_label

logger = logging.getLogger(__name__)

DEFAULT_MAX_MESSAGES = 20

OK = "ok"
NOOP = "noop"
ERROR = "error"

# Fixes that recompute values from grade configurations and level bands.
_NEEDS_CONFIGURATION = frozenset(
    {DivergenceType.INCONSISTENT_AVERAGES, DivergenceType.WRONG_LEARNING_LEVEL}
)


@dataclass(frozen=True)
class Actor:
    user_id: Optional[str] = None
    user_name: Optional[str] = None


@dataclass(frozen=True)
class TargetOutcome:
    status: str
    target_id: str
    message: str


@dataclass
class CorrectionResult:
    type: str
    outcomes: List[TargetOutcome] = field(default_factory=list)
    cancelled: int = 0
    max_messages: int = DEFAULT_MAX_MESSAGES

    def _count(self, status: str) -> int:
        return sum(1 for outcome in self.outcomes if outcome.status == status)

    @property
    def corrected(self) -> int:
        return self._count(OK)

    @property
    def noops(self) -> int:
        return self._count(NOOP)

    @property
    def errors(self) -> int:
        return self._count(ERROR)

    @property
    def success(self) -> bool:
        return not self.outcomes or self.errors < len(self.outcomes)

    @property
    def messages(self) -> List[str]:
        lines = [f"{outcome.target_id}: {outcome.message}" for outcome in self.outcomes]
        if self.cancelled:
            lines.append(f"Cancelled before {self.cancelled} remaining targets")
        return lines[: self.max_messages]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "success": self.success,
            "corrected": self.corrected,
            "noops": self.noops,
            "errors": self.errors,
            "cancelled": self.cancelled,
            "messages": self.messages,
        }


@dataclass(frozen=True)
class _Change:
    entity: str
    entity_id: Any
    action: str
    before: Any
    after: Any
    entity_name: Optional[str] = None
    message: str = "corrected"


Fixer = Callable[[sqlite3.Connection, str, Dict[str, Any]], Optional[_Change]]
Preparer = Callable[[Mapping[str, Any]], Dict[str, Any]]


def _int_id(target: str) -> int:
    try:
        return int(str(target).strip())
    except ValueError:
        raise InvalidFixRequest(f"Target id {target!r} is not numeric") from None


def _split_target(target: str, allowed: Iterable[str]) -> Tuple[str, int]:
    """Split ``"<prefix>:<id>"`` targets."""
    prefix, sep, raw = str(target).partition(":")
    if not sep or prefix not in allowed:
        raise InvalidFixRequest(f"Target id {target!r} must look like <{'|'.join(allowed)}>:<id>")
    return prefix, _int_id(raw)


def _row_or_missing(con: sqlite3.Connection, table: str, row_id: int) -> sqlite3.Row:
    row = db.get_row(con, table, row_id)
    if row is None:
        raise TargetNotFound(f"{table} {row_id} does not exist")
    return row


def _snapshot(row: Optional[sqlite3.Row], *fields: str) -> Dict[str, Any]:
    if row is None:
        return {}
    if not fields:
        return dict(row)
    return {name: row[name] for name in fields}


class CorrectionEngine:
    """Validate a correction request and apply it target by target.

    Each target runs in its own transaction together with its history entry,
    so a failure never undoes targets already corrected.
    """

    def __init__(
        self,
        detector: DivergenceDetector,
        resolver: GradeConfigResolver,
        classifier: LearningLevelClassifier,
        history: HistoryStore,
        on_batch_complete: Optional[Callable[[], None]] = None,
        *,
        max_messages: Optional[int] = None,
    ) -> None:
        self.detector = detector
        self.resolver = resolver
        self.classifier = classifier
        self.history = history
        self.on_batch_complete = on_batch_complete
        self.max_messages = max_messages or get_env_int("MAX_FIX_MESSAGES", DEFAULT_MAX_MESSAGES)

        T = DivergenceType
        self._handlers: Dict[DivergenceType, Tuple[Preparer, Fixer]] = {
            T.DUPLICATE_STUDENTS: (self._prepare_duplicates, self._fix_duplicate),
            T.ORPHAN_STUDENTS: (self._prepare_orphan_student, self._fix_orphan_student),
            T.ORPHAN_RESULTS: (self._no_params, self._fix_orphan_result),
            T.SCHOOLS_WITHOUT_REGION: (self._prepare_region_link, self._fix_school_region),
            T.CLASSES_WITHOUT_SCHOOL: (self._prepare_class_school, self._fix_class_school),
            T.INCONSISTENT_AVERAGES: (self._no_params, self._fix_average),
            T.WRONG_CORRECT_TOTALS: (self._no_params, self._fix_totals),
            T.SCORES_OUT_OF_RANGE: (self._prepare_score, self._fix_score),
            T.WRONG_LEARNING_LEVEL: (self._no_params, self._fix_level),
            T.QUESTIONS_WITHOUT_KEY: (self._prepare_answer_key, self._fix_answer_key),
            T.GRADE_NOT_CONFIGURED: (self._no_params, self._fix_grade_configuration),
            T.INVALID_SCHOOL_YEAR: (self._prepare_school_year, self._fix_school_year),
            T.INCONSISTENT_ATTENDANCE: (self._no_params, self._fix_attendance),
            T.NAME_CODE_MISMATCH: (self._prepare_name, self._fix_name),
            T.INACTIVE_SCHOOLS_WITH_DATA: (self._no_params, self._fix_reactivate_school),
            T.STUDENT_CLASS_GRADE_MISMATCH: (self._no_params, self._fix_student_grade),
            T.FAILED_IMPORTS: (self._no_params, self._fix_import),
            T.EMPTY_CLASSES: (self._no_params, self._fix_empty_class),
        }

    # ------------------------------------------------------------------
    def apply(
        self,
        type_: Union[str, DivergenceType],
        *,
        ids: Optional[Iterable[Any]] = None,
        fix_all: bool = False,
        params: Optional[Mapping[str, Any]] = None,
        actor: Optional[Actor] = None,
        confirmation_token: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> CorrectionResult:
        try:
            entry = catalog.get(type_)
        except KeyError as exc:
            raise InvalidFixRequest(str(exc.args[0])) from None

        if not entry.fixable or entry.type not in self._handlers:
            raise UnauthorizedFix(f"Divergence type {entry.type.value} has no correction")
        confirmed = bool(confirmation_token and str(confirmation_token).strip())
        if not confirmed and not entry.auto_fixable:
            raise UnauthorizedFix(
                f"Divergence type {entry.type.value} requires operator confirmation"
            )

        explicit = [str(target).strip() for target in (ids or []) if str(target).strip()]
        if not explicit and not fix_all:
            raise InvalidFixRequest("Provide target ids or set fix_all")

        prepare, fixer = self._handlers[entry.type]
        options = prepare(dict(params or {}))
        actor = actor or Actor()

        targets = explicit if explicit else self.detector.collect_targets(entry.type)
        targets = list(dict.fromkeys(targets))

        result = CorrectionResult(entry.type.value, max_messages=self.max_messages)
        for index, target in enumerate(targets):
            if cancel_event is not None and cancel_event.is_set():
                result.cancelled = len(targets) - index
                logger.info(
                    "Correction of %s cancelled with %d targets left", entry.type.value, result.cancelled
                )
                break
            result.outcomes.append(
                self._apply_one(entry, fixer, target, options, actor, automatic=not confirmed)
            )

        if result.corrected:
            if entry.type is DivergenceType.GRADE_NOT_CONFIGURED:
                self.resolver.invalidate()
            self._notify_batch_complete()

        logger.info(
            "Correction %s: %d corrected, %d no-op, %d errors, %d cancelled",
            entry.type.value,
            result.corrected,
            result.noops,
            result.errors,
            result.cancelled,
        )
        return result

    def _apply_one(
        self,
        entry: CatalogEntry,
        fixer: Fixer,
        target: str,
        options: Dict[str, Any],
        actor: Actor,
        *,
        automatic: bool,
    ) -> TargetOutcome:
        try:
            # Pinned before borrowing a connection: a refresh inside the
            # transaction would wait on a second one from the pool.
            options = self._with_configurations(entry, options)
            with db.transaction() as con:
                change = fixer(con, target, options)
                if change is None:
                    con.rollback()
                    return TargetOutcome(NOOP, target, "already resolved")
                record = HistoryEntry(
                    type=entry.type.value,
                    severity=entry.severity.value,
                    title=entry.title,
                    action=change.action,
                    automatic=automatic,
                    entity=change.entity,
                    entity_id=str(change.entity_id),
                    entity_name=change.entity_name,
                    before=change.before,
                    after=change.after,
                    user_id=actor.user_id,
                    user_name=actor.user_name,
                )
                self.history.append(record, con=con)
        except TargetNotFound as exc:
            return TargetOutcome(NOOP, target, str(exc))
        except (InvalidFixRequest, sqlite3.Error) as exc:
            logger.warning("Correction of %s target %s failed: %s", entry.type.value, target, exc)
            return TargetOutcome(ERROR, target, str(exc))
        except Exception as exc:
            logger.exception("Unexpected failure correcting %s target %s", entry.type.value, target)
            return TargetOutcome(ERROR, target, str(exc))
        self.history.audit(record)
        return TargetOutcome(OK, target, change.message)

    def _with_configurations(self, entry: CatalogEntry, options: Dict[str, Any]) -> Dict[str, Any]:
        if entry.type not in _NEEDS_CONFIGURATION:
            return options
        return {
            **options,
            "configs": self.resolver.pinned(),
            "classifier": self.classifier.pinned(),
        }

    def _notify_batch_complete(self) -> None:
        if self.on_batch_complete is None:
            return
        try:
            self.on_batch_complete()
        except Exception:
            logger.exception("Batch-complete callback failed")

    # -------------- parameter validation --------------
    @staticmethod
    def _no_params(params: Mapping[str, Any]) -> Dict[str, Any]:
        return {}

    @staticmethod
    def _prepare_duplicates(params: Mapping[str, Any]) -> Dict[str, Any]:
        return {
            "action": require_choice(params, "action", ("merge", "deactivate"), default="merge"),
            "winner_id": require_int(params, "winner_id", optional=True),
        }

    @staticmethod
    def _prepare_orphan_student(params: Mapping[str, Any]) -> Dict[str, Any]:
        action = require_choice(params, "action", ("relink", "deactivate"), default="relink")
        if action == "deactivate":
            return {"action": action}
        return {
            "action": action,
            "school_id": require_int(params, "school_id"),
            "class_id": require_int(params, "class_id", optional=True),
        }

    @staticmethod
    def _prepare_region_link(params: Mapping[str, Any]) -> Dict[str, Any]:
        return {"region_id": require_int(params, "region_id")}

    @staticmethod
    def _prepare_class_school(params: Mapping[str, Any]) -> Dict[str, Any]:
        action = require_choice(params, "action", ("relink", "deactivate"), default="relink")
        if action == "deactivate":
            return {"action": action}
        return {"action": action, "school_id": require_int(params, "school_id")}

    @staticmethod
    def _prepare_score(params: Mapping[str, Any]) -> Dict[str, Any]:
        if "value" not in params:
            raise InvalidFixRequest("Missing required parameter: value")
        return {"value": validate_score_value(params["value"])}

    @staticmethod
    def _prepare_answer_key(params: Mapping[str, Any]) -> Dict[str, Any]:
        return {"answer_key": validate_answer_key(params.get("answer_key"))}

    @staticmethod
    def _prepare_school_year(params: Mapping[str, Any]) -> Dict[str, Any]:
        value = params.get("value")
        if value in (None, ""):
            return {"value": None}
        year = str(value).strip()
        if not is_valid_school_year(year, current_school_year() + 1):
            raise InvalidFixRequest(f"value {value!r} is not a valid school year")
        return {"value": year}

    @staticmethod
    def _prepare_name(params: Mapping[str, Any]) -> Dict[str, Any]:
        return {"name": require_text(params, "name")}

    # -------------- structural fixes --------------
    def _fix_duplicate(self, con, target, options) -> Optional[_Change]:
        student = _row_or_missing(con, "students", _int_id(target))
        if not student["active"]:
            return None
        group = [row for row in db.list_students_by_code(con, student["code"]) if row["active"]]
        if len(group) < 2:
            return None

        if options["action"] == "deactivate":
            if not db.set_active(con, "students", student["id"], False):
                return None
            return _Change("student", student["id"], "deactivate", _snapshot(student), {"active": 0},
                           entity_name=student["name"], message="duplicate deactivated")

        member_ids = [row["id"] for row in group]
        winner_id = options["winner_id"] if options["winner_id"] is not None else min(member_ids)
        if winner_id not in member_ids:
            raise InvalidFixRequest(f"winner {winner_id} is not an active student with code {student['code']}")
        if student["id"] == winner_id:
            return None
        stats = db.merge_student(con, student["id"], winner_id)
        if not stats["retired"]:
            return None
        return _Change(
            "student",
            student["id"],
            "merge",
            _snapshot(student),
            {"merged_into": winner_id, "active": 0, **stats},
            entity_name=student["name"],
            message=f"merged into {winner_id}",
        )

    def _fix_orphan_student(self, con, target, options) -> Optional[_Change]:
        student = _row_or_missing(con, "students", _int_id(target))
        school_ok = student["school_id"] is not None and db.get_row(con, "schools", student["school_id"])
        class_ok = student["class_id"] is None or db.get_row(con, "classes", student["class_id"])
        if not student["active"] or (school_ok and class_ok):
            return None

        before = _snapshot(student, "school_id", "class_id", "active")
        if options["action"] == "deactivate":
            if not db.set_active(con, "students", student["id"], False):
                return None
            return _Change("student", student["id"], "deactivate", before, {"active": 0},
                           entity_name=student["name"], message="student deactivated")

        school_id, class_id = options["school_id"], options["class_id"]
        if db.get_row(con, "schools", school_id) is None:
            raise InvalidFixRequest(f"school {school_id} does not exist")
        if class_id is not None and db.get_row(con, "classes", class_id) is None:
            raise InvalidFixRequest(f"class {class_id} does not exist")
        updated = db.relink_student(
            con, student["id"], school_id, class_id, student["school_id"], student["class_id"]
        )
        if not updated:
            return None
        return _Change("student", student["id"], "relink", before,
                       {"school_id": school_id, "class_id": class_id},
                       entity_name=student["name"], message=f"linked to school {school_id}")

    def _fix_orphan_result(self, con, target, options) -> Optional[_Change]:
        entity, row_id = _split_target(target, ("exam_result", "consolidated_result"))
        table = "exam_results" if entity == "exam_result" else "consolidated_results"
        row = db.get_row(con, table, row_id)
        if row is None:
            return None
        if entity == "exam_result":
            deleted = db.delete_orphan_exam_result(con, row_id)
        else:
            deleted = db.delete_orphan_consolidated_result(con, row_id)
        if not deleted:
            return None
        return _Change(entity, row_id, "delete", _snapshot(row), None, message="orphan result deleted")

    def _fix_school_region(self, con, target, options) -> Optional[_Change]:
        school = _row_or_missing(con, "schools", _int_id(target))
        if school["region_id"] is not None and db.get_row(con, "regions", school["region_id"]):
            return None
        region_id = options["region_id"]
        if db.get_row(con, "regions", region_id) is None:
            raise InvalidFixRequest(f"region {region_id} does not exist")
        if not db.relink_school_region(con, school["id"], region_id, school["region_id"]):
            return None
        return _Change("school", school["id"], "relink", {"region_id": school["region_id"]},
                       {"region_id": region_id}, entity_name=school["name"],
                       message=f"linked to region {region_id}")

    def _fix_class_school(self, con, target, options) -> Optional[_Change]:
        klass = _row_or_missing(con, "classes", _int_id(target))
        if not klass["active"]:
            return None
        if klass["school_id"] is not None and db.get_row(con, "schools", klass["school_id"]):
            return None
        if options["action"] == "deactivate":
            if not db.set_active(con, "classes", klass["id"], False):
                return None
            return _Change("class", klass["id"], "deactivate", {"active": 1}, {"active": 0},
                           entity_name=klass["name"], message="class deactivated")
        school_id = options["school_id"]
        if db.get_row(con, "schools", school_id) is None:
            raise InvalidFixRequest(f"school {school_id} does not exist")
        if not db.relink_class_school(con, klass["id"], school_id, klass["school_id"]):
            return None
        return _Change("class", klass["id"], "relink", {"school_id": klass["school_id"]},
                       {"school_id": school_id}, entity_name=klass["name"],
                       message=f"linked to school {school_id}")

    # -------------- recompute fixes --------------
    @staticmethod
    def _result_and_config(con, target, options):
        row = db.get_consolidated_result(con, _int_id(target))
        if row is None:
            raise TargetNotFound(f"consolidated result {target} does not exist")
        config = options["configs"].resolve(row["grade"])
        if config is None:
            raise InvalidFixRequest(f"grade {row['grade']!r} has no configuration")
        return row, config

    def _fix_average(self, con, target, options) -> Optional[_Change]:
        row, config = self._result_and_config(con, target, options)
        expected = composite_for_result(row, config)
        stored = row["average"]
        if averages_match(stored, expected):
            return None
        if not db.update_result_field(con, row["id"], "average", expected, stored):
            return None
        return _Change("consolidated_result", row["id"], "recompute", {"average": stored},
                       {"average": expected}, entity_name=row["student_name"],
                       message=f"average {stored} -> {expected}")

    def _fix_level(self, con, target, options) -> Optional[_Change]:
        row, config = self._result_and_config(con, target, options)
        if not config.uses_learning_level:
            return None
        average = composite_for_result(row, config)
        expected = options["classifier"].classify(average, row["grade"])
        stored = row["learning_level"]
        if level_matches(stored, expected):
            return None
        new_level = expected.name if expected else None
        if not db.update_result_field(con, row["id"], "learning_level", new_level, stored):
            return None
        return _Change("consolidated_result", row["id"], "recompute", {"learning_level": stored},
                       {"learning_level": new_level, "average": average},
                       entity_name=row["student_name"], message=f"level {stored} -> {new_level}")

    def _fix_totals(self, con, target, options) -> Optional[_Change]:
        row = db.get_consolidated_result(con, _int_id(target))
        if row is None:
            raise TargetNotFound(f"consolidated result {target} does not exist")
        responses = db.count_correct_answers_for(con, row["student_id"], row["school_year"])
        if not responses:
            return None
        recount = recount_correct_answers(responses)
        current = {f"total_correct_{code}": row[f"total_correct_{code}"] for code in SUBJECTS}
        wanted = {f"total_correct_{code}": recount.get(code, 0) for code in SUBJECTS}
        if all((current[key] or 0) == wanted[key] for key in wanted):
            return None
        if not db.update_result_totals(con, row["id"], wanted, current):
            return None
        return _Change("consolidated_result", row["id"], "recompute", current, wanted,
                       entity_name=row["student_name"], message="correct-answer totals recounted")

    # -------------- value fixes --------------
    def _fix_score(self, con, target, options) -> Optional[_Change]:
        raw_id, sep, column = str(target).partition(":")
        if not sep or column not in db.SCORE_FIELDS:
            raise InvalidFixRequest(f"Target id {target!r} must look like <result id>:<score field>")
        row = db.get_consolidated_result(con, _int_id(raw_id))
        if row is None:
            raise TargetNotFound(f"consolidated result {raw_id} does not exist")
        current = row[column]
        if score_in_range(current):
            return None
        if not db.update_result_field(con, row["id"], column, options["value"], current):
            return None
        return _Change("consolidated_result", row["id"], "set_value", {column: current},
                       {column: options["value"]}, entity_name=row["student_name"],
                       message=f"{column} {current} -> {options['value']}")

    def _fix_answer_key(self, con, target, options) -> Optional[_Change]:
        question = _row_or_missing(con, "questions", _int_id(target))
        if not db.set_answer_key(con, question["id"], options["answer_key"]):
            return None
        return _Change("question", question["id"], "set_value", {"answer_key": question["answer_key"]},
                       {"answer_key": options["answer_key"]}, entity_name=question["code"],
                       message=f"answer key set to {options['answer_key']}")

    def _fix_grade_configuration(self, con, target, options) -> Optional[_Change]:
        grade = extract_grade_number(target)
        if grade is None:
            raise InvalidFixRequest(f"Grade {target!r} has no grade number")
        existing = db.get_grade_configuration(con, grade)
        if existing is not None and existing["active"]:
            return None
        config = default_configuration(grade) or generic_configuration(grade)
        db.upsert_grade_configuration(config.to_row(), con=con)
        return _Change("grade_configuration", grade, "configure",
                       _snapshot(existing) or None, config.to_dict(), entity_name=config.name,
                       message=f"configured from {config.source} structure")

    def _fix_school_year(self, con, target, options) -> Optional[_Change]:
        entity, row_id = _split_target(target, ("student", "consolidated_result"))
        table = "students" if entity == "student" else "consolidated_results"
        row = _row_or_missing(con, table, row_id)
        current = row["school_year"]
        max_year = current_school_year() + 1
        if is_valid_school_year(current, max_year):
            return None
        new_year = options["value"] or normalize_school_year(current)
        if new_year is None or not is_valid_school_year(new_year, max_year):
            raise InvalidFixRequest(f"Cannot derive a school year from {current!r}; pass a value")
        if not db.set_school_year(con, table, row_id, new_year, current):
            return None
        return _Change(entity, row_id, "normalize", {"school_year": current},
                       {"school_year": new_year}, message=f"school year {current} -> {new_year}")

    def _fix_name(self, con, target, options) -> Optional[_Change]:
        rows = db.list_students_by_code(con, target)
        if not rows:
            raise TargetNotFound(f"No student with code {target}")
        if len({normalize_label(row["name"]) for row in rows}) < 2:
            return None
        names = sorted({row["name"] for row in rows})
        renamed = db.rename_students_with_code(con, target, options["name"])
        if not renamed:
            return None
        return _Change("student_code", target, "set_value", {"names": names},
                       {"name": options["name"], "updated": renamed}, entity_name=options["name"],
                       message=f"{renamed} records renamed")

    def _fix_student_grade(self, con, target, options) -> Optional[_Change]:
        student = _row_or_missing(con, "students", _int_id(target))
        if student["class_id"] is None:
            return None
        klass = db.get_row(con, "classes", student["class_id"])
        if klass is None or klass["grade"] is None:
            return None
        if grades_match(student["grade"], klass["grade"]):
            return None
        if not db.set_student_grade(con, student["id"], klass["grade"], student["grade"]):
            return None
        return _Change("student", student["id"], "set_value", {"grade": student["grade"]},
                       {"grade": klass["grade"]}, entity_name=student["name"],
                       message=f"grade {student['grade']} -> {klass['grade']}")

    # -------------- status fixes --------------
    def _fix_attendance(self, con, target, options) -> Optional[_Change]:
        row = db.get_consolidated_result(con, _int_id(target))
        if row is None:
            raise TargetNotFound(f"consolidated result {target} does not exist")
        if not db.mark_present(con, row["id"]):
            return None
        return _Change("consolidated_result", row["id"], "set_status", {"attendance": row["attendance"]},
                       {"attendance": "P"}, entity_name=row["student_name"], message="marked present")

    def _fix_reactivate_school(self, con, target, options) -> Optional[_Change]:
        school = _row_or_missing(con, "schools", _int_id(target))
        if not db.reactivate_school_with_data(con, school["id"], str(self.detector.current_year)):
            return None
        return _Change("school", school["id"], "reactivate", {"active": 0}, {"active": 1},
                       entity_name=school["name"], message="school reactivated")

    def _fix_import(self, con, target, options) -> Optional[_Change]:
        record = _row_or_missing(con, "imports", _int_id(target))
        stale_before = (
            datetime.now(timezone.utc) - timedelta(hours=self.detector.import_stale_hours)
        ).isoformat()
        note = "Cancelled by divergence correction"
        if not db.cancel_import(con, record["id"], stale_before, note):
            return None
        return _Change("import", record["id"], "set_status", {"status": record["status"]},
                       {"status": "cancelled"}, entity_name=record["file_name"], message="import cancelled")

    def _fix_empty_class(self, con, target, options) -> Optional[_Change]:
        klass = _row_or_missing(con, "classes", _int_id(target))
        if not db.deactivate_empty_class(con, klass["id"]):
            return None
        return _Change("class", klass["id"], "deactivate", {"active": 1}, {"active": 0},
                       entity_name=klass["name"], message="empty class deactivated")
