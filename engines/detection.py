"""Divergence detection: independent read-only integrity checks over the datastore."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

import db
from engines import divergence_catalog as catalog
from engines.divergence_catalog import CatalogEntry, DivergenceType, Severity
from engines.scoring import (
    averages_match,
    composite_for_result,
    recount_correct_answers,
    round_score,
    score_in_range,
    stored_score,
    totals_from_row,
)
from engines.validation import CheckExecutionFailed, extract_grade_number
from env_validation import current_school_year, get_env_int
from grade_config import SUBJECTS, GradeConfigResolver
from learning_levels import LearningLevelClassifier, grades_match, level_matches, normalize_label

logger = logging.getLogger(__name__)

DEFAULT_DETAIL_LIMIT = 100
DEFAULT_IMPORT_STALE_HOURS = 24
MIN_SCHOOL_YEAR = 2000

STATUS_OK = "ok"
STATUS_FAILED = "failed"


@dataclass
class DivergenceDetail:
    """One offending record. ``id`` is the correction target key."""

    id: str
    entity: str
    entity_id: Any
    problem: str
    name: Optional[str] = None
    code: Optional[str] = None
    school: Optional[str] = None
    school_id: Any = None
    region: Optional[str] = None
    region_id: Any = None
    class_name: Optional[str] = None
    class_id: Any = None
    grade: Optional[str] = None
    school_year: Optional[str] = None
    current_value: Any = None
    expected_value: Any = None
    suggested_fix: Optional[str] = None
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Divergence:
    entry: CatalogEntry
    count: int = 0
    details: List[DivergenceDetail] = field(default_factory=list)
    status: str = STATUS_OK
    error: Optional[str] = None
    offset: int = 0

    @property
    def type(self) -> DivergenceType:
        return self.entry.type

    @property
    def severity(self) -> Severity:
        return self.entry.severity

    @property
    def failed(self) -> bool:
        return self.status == STATUS_FAILED

    def to_dict(self) -> Dict[str, Any]:
        data = self.entry.to_dict()
        data.update(
            count=self.count,
            status=self.status,
            error=self.error,
            offset=self.offset,
            truncated=self.offset + len(self.details) < self.count,
            details=[detail.to_dict() for detail in self.details],
        )
        return data


@dataclass
class DetectionReport:
    summary: Dict[str, int]
    divergences: List[Divergence]
    ran_at: str

    def filtered(
        self,
        severity: Optional[Union[str, Severity]] = None,
        type_: Optional[Union[str, DivergenceType]] = None,
    ) -> List[Divergence]:
        items = self.divergences
        if severity is not None:
            level = catalog.parse_severity(severity)
            items = [item for item in items if item.severity is level]
        if type_ is not None:
            wanted = catalog.parse_type(type_)
            items = [item for item in items if item.type is wanted]
        return items

    def to_dict(
        self,
        severity: Optional[Union[str, Severity]] = None,
        type_: Optional[Union[str, DivergenceType]] = None,
    ) -> Dict[str, Any]:
        return {
            "summary": dict(self.summary),
            "divergences": [item.to_dict() for item in self.filtered(severity, type_)],
            "ran_at": self.ran_at,
        }


def _text(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _rounded_or_raw(value: Any) -> Any:
    try:
        return round_score(stored_score(value))
    except ValueError:
        return value


class DivergenceDetector:
    """Run the integrity checks listed in the divergence catalog."""

    def __init__(
        self,
        resolver: GradeConfigResolver,
        classifier: LearningLevelClassifier,
        detail_limit: Optional[int] = None,
        *,
        import_stale_hours: Optional[int] = None,
        current_year: Optional[int] = None,
    ) -> None:
        self.resolver = resolver
        self.classifier = classifier
        self.detail_limit = detail_limit or get_env_int("DETAIL_LIMIT", DEFAULT_DETAIL_LIMIT)
        self.import_stale_hours = import_stale_hours or get_env_int(
            "IMPORT_STALE_HOURS", DEFAULT_IMPORT_STALE_HOURS
        )
        self._current_year = current_year
        self._checks: Dict[DivergenceType, Callable[[], List[DivergenceDetail]]] = {
            DivergenceType.DUPLICATE_STUDENTS: self._duplicate_students,
            DivergenceType.ORPHAN_STUDENTS: self._orphan_students,
            DivergenceType.ORPHAN_RESULTS: self._orphan_results,
            DivergenceType.SCHOOLS_WITHOUT_REGION: self._schools_without_region,
            DivergenceType.CLASSES_WITHOUT_SCHOOL: self._classes_without_school,
            DivergenceType.INCONSISTENT_AVERAGES: self._inconsistent_averages,
            DivergenceType.WRONG_CORRECT_TOTALS: self._wrong_correct_totals,
            DivergenceType.SCORES_OUT_OF_RANGE: self._scores_out_of_range,
            DivergenceType.WRONG_LEARNING_LEVEL: self._wrong_learning_level,
            DivergenceType.QUESTIONS_WITHOUT_KEY: self._questions_without_key,
            DivergenceType.GRADE_NOT_CONFIGURED: self._grade_not_configured,
            DivergenceType.INVALID_SCHOOL_YEAR: self._invalid_school_year,
            DivergenceType.INCONSISTENT_ATTENDANCE: self._inconsistent_attendance,
            DivergenceType.NAME_CODE_MISMATCH: self._name_code_mismatch,
            DivergenceType.INACTIVE_SCHOOLS_WITH_DATA: self._inactive_schools_with_data,
            DivergenceType.STUDENT_CLASS_GRADE_MISMATCH: self._student_class_grade_mismatch,
            DivergenceType.FAILED_IMPORTS: self._failed_imports,
            DivergenceType.STUDENTS_WITHOUT_RESULTS: self._students_without_results,
            DivergenceType.SCHOOLS_WITHOUT_STUDENTS: self._schools_without_students,
            DivergenceType.REGIONS_WITHOUT_SCHOOLS: self._regions_without_schools,
            DivergenceType.UNUSED_QUESTIONS: self._unused_questions,
            DivergenceType.EMPTY_CLASSES: self._empty_classes,
        }

    # ------------------------------------------------------------------
    @property
    def current_year(self) -> int:
        if self._current_year is not None:
            return self._current_year
        return current_school_year()

    def stale_import_cutoff(self) -> str:
        cutoff = datetime.now(timezone.utc) - timedelta(hours=self.import_stale_hours)
        return cutoff.isoformat()

    def details(self, type_: Union[str, DivergenceType]) -> List[DivergenceDetail]:
        """Every offending record for one check, uncapped."""
        return self._checks[catalog.parse_type(type_)]()

    def run_check(
        self,
        type_: Union[str, DivergenceType],
        offset: int = 0,
        limit: Optional[int] = None,
    ) -> Divergence:
        entry = catalog.get(type_)
        page_size = min(limit or self.detail_limit, self.detail_limit)
        offset = max(int(offset or 0), 0)
        try:
            details = self._checks[entry.type]()
        except Exception as exc:
            failure = CheckExecutionFailed(entry.type.value, exc)
            logger.exception("Divergence check %s failed", entry.type.value)
            return Divergence(entry, status=STATUS_FAILED, error=str(failure), offset=offset)
        return Divergence(
            entry,
            count=len(details),
            details=details[offset:offset + page_size],
            offset=offset,
        )

    async def run_all(
        self, types: Optional[Iterable[Union[str, DivergenceType]]] = None
    ) -> DetectionReport:
        selected = [catalog.parse_type(t) for t in types] if types else list(catalog.CATALOG)
        outcomes = await asyncio.gather(
            *(asyncio.to_thread(self.run_check, type_) for type_ in selected),
            return_exceptions=True,
        )

        results: List[Divergence] = []
        for type_, outcome in zip(selected, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("Divergence check %s crashed: %s", type_.value, outcome)
                outcome = Divergence(catalog.CATALOG[type_], status=STATUS_FAILED, error=str(outcome))
            results.append(outcome)

        summary = {severity.value: 0 for severity in Severity}
        failed = 0
        for result in results:
            summary[result.severity.value] += result.count
            if result.failed:
                failed += 1
        summary["total"] = sum(summary[severity.value] for severity in Severity)
        summary["failed_checks"] = failed

        reported = [result for result in results if result.count > 0 or result.failed]
        reported.sort(key=lambda result: result.severity.rank)
        logger.info(
            "Detection finished: %d divergences across %d checks (%d failed)",
            summary["total"],
            len(results),
            failed,
        )
        return DetectionReport(
            summary=summary,
            divergences=reported,
            ran_at=datetime.now(timezone.utc).isoformat(),
        )

    async def count_critical(self) -> int:
        critical = [entry.type for entry in catalog.by_severity(Severity.CRITICAL)]
        report = await self.run_all(critical)
        return report.summary[Severity.CRITICAL.value]

    def collect_targets(self, type_: Union[str, DivergenceType]) -> List[str]:
        return [detail.id for detail in self.details(type_)]

    # -------------- critical --------------
    def _duplicate_students(self) -> List[DivergenceDetail]:
        return [
            DivergenceDetail(
                id=str(row["id"]),
                entity="student",
                entity_id=row["id"],
                name=row["name"],
                code=row["code"],
                school=row["school_name"],
                school_id=row["school_id"],
                grade=row["grade"],
                school_year=_text(row["school_year"]),
                problem=f'Code "{row["code"]}" is used by {row["members"]} active students',
                suggested_fix="Merge the records or deactivate the duplicate",
                extra={"members": row["members"]},
            )
            for row in db.list_duplicate_students()
            if row["members"] > 1
        ]

    def _orphan_students(self) -> List[DivergenceDetail]:
        details = []
        for row in db.list_orphan_students():
            if row["school_id"] is None or row["resolved_school_id"] is None:
                problem = "Student without a valid school"
            else:
                problem = "Student linked to a class that does not exist"
            details.append(
                DivergenceDetail(
                    id=str(row["id"]),
                    entity="student",
                    entity_id=row["id"],
                    name=row["name"],
                    code=row["code"],
                    school_id=row["school_id"],
                    class_id=row["class_id"],
                    grade=row["grade"],
                    school_year=_text(row["school_year"]),
                    problem=problem,
                    suggested_fix="Link a school (and class) or deactivate the student",
                )
            )
        return details

    def _orphan_results(self) -> List[DivergenceDetail]:
        details = []
        for entity, rows in (
            ("exam_result", db.list_orphan_exam_results()),
            ("consolidated_result", db.list_orphan_consolidated_results()),
        ):
            for row in rows:
                if row["student_id"] is None:
                    problem = "Result without a student"
                else:
                    problem = "Result pointing at a missing student or school"
                details.append(
                    DivergenceDetail(
                        id=f"{entity}:{row['id']}",
                        entity=entity,
                        entity_id=row["id"],
                        school_id=row["school_id"],
                        grade=row["grade"],
                        school_year=_text(row["school_year"]),
                        problem=problem,
                        suggested_fix="Remove the result",
                        extra={"student_id": row["student_id"]},
                    )
                )
        return details

    def _schools_without_region(self) -> List[DivergenceDetail]:
        return [
            DivergenceDetail(
                id=str(row["id"]),
                entity="school",
                entity_id=row["id"],
                name=row["name"],
                code=row["code"],
                region_id=row["region_id"],
                problem="School without a region" if row["region_id"] is None
                else "School linked to a region that does not exist",
                suggested_fix="Link the school to a region",
            )
            for row in db.list_schools_without_region()
        ]

    def _classes_without_school(self) -> List[DivergenceDetail]:
        return [
            DivergenceDetail(
                id=str(row["id"]),
                entity="class",
                entity_id=row["id"],
                name=row["name"],
                code=row["code"],
                school_id=row["school_id"],
                grade=row["grade"],
                school_year=_text(row["school_year"]),
                problem="Class without a school" if row["school_id"] is None
                else "Class linked to a school that does not exist",
                suggested_fix="Link a school or deactivate the class",
            )
            for row in db.list_classes_without_school()
        ]

    # -------------- important --------------
    def _result_detail(self, row, problem: str, **kwargs: Any) -> DivergenceDetail:
        detail_id = kwargs.pop("id", str(row["id"]))
        return DivergenceDetail(
            id=detail_id,
            entity="consolidated_result",
            entity_id=row["id"],
            name=row["student_name"],
            code=row["student_code"],
            school=row["school_name"],
            school_id=row["school_id"],
            class_id=row["class_id"],
            grade=row["grade"],
            school_year=_text(row["school_year"]),
            problem=problem,
            **kwargs,
        )

    def _inconsistent_averages(self) -> List[DivergenceDetail]:
        details = []
        for row in db.list_results_with_average():
            config = self.resolver.resolve(row["grade"])
            if config is None:
                continue
            expected = composite_for_result(row, config)
            stored = row["average"]
            if averages_match(stored, expected):
                continue
            details.append(
                self._result_detail(
                    row,
                    f"Stored average {stored} differs from computed {expected}",
                    current_value=_rounded_or_raw(stored),
                    expected_value=expected,
                    suggested_fix="Recompute the average",
                )
            )
        return details

    def _wrong_learning_level(self) -> List[DivergenceDetail]:
        details = []
        for row in db.list_consolidated_results():
            config = self.resolver.resolve(row["grade"])
            if config is None or not config.uses_learning_level:
                continue
            average = composite_for_result(row, config)
            expected = self.classifier.classify(average, row["grade"])
            if level_matches(row["learning_level"], expected):
                continue
            details.append(
                self._result_detail(
                    row,
                    "Learning level does not match the average",
                    current_value=row["learning_level"],
                    expected_value=expected.name if expected else None,
                    suggested_fix="Reclassify the learning level",
                    extra={"average": average, "expected_code": expected.code if expected else None},
                )
            )
        return details

    def _wrong_correct_totals(self) -> List[DivergenceDetail]:
        grouped: Dict[tuple, List[Any]] = {}
        for row in db.count_correct_answers():
            grouped.setdefault((row["student_id"], row["school_year"]), []).append(row)

        details = []
        for row in db.list_consolidated_results():
            responses = grouped.get((row["student_id"], row["school_year"]))
            if not responses:
                continue
            recount = recount_correct_answers(responses)
            stored = totals_from_row(row)
            wrong = [code for code in SUBJECTS if (stored[code] or 0) != recount.get(code, 0)]
            if not wrong:
                continue
            details.append(
                self._result_detail(
                    row,
                    f"Correct-answer totals differ from responses ({', '.join(wrong)})",
                    current_value={code: stored[code] for code in wrong},
                    expected_value={code: recount.get(code, 0) for code in wrong},
                    suggested_fix="Recount correct answers",
                    extra={"subjects": wrong},
                )
            )
        return details

    def _scores_out_of_range(self) -> List[DivergenceDetail]:
        details = []
        for row in db.list_out_of_range_results():
            for column in db.SCORE_FIELDS:
                value = row[column]
                if score_in_range(value):
                    continue
                if isinstance(value, str):
                    problem = f"{column} = {value!r} is not a number"
                else:
                    problem = f"{column} = {value} is outside [0, 10]"
                details.append(
                    self._result_detail(
                        row,
                        problem,
                        id=f"{row['id']}:{column}",
                        current_value=value,
                        suggested_fix="Set a value between 0 and 10",
                        extra={"field": column},
                    )
                )
        return details

    def _questions_without_key(self) -> List[DivergenceDetail]:
        return [
            DivergenceDetail(
                id=str(row["id"]),
                entity="question",
                entity_id=row["id"],
                code=row["code"],
                name=row["description"],
                grade=row["grade"],
                problem="Question without an answer key",
                suggested_fix="Set the answer key (A-E)",
                extra={"subject": row["subject"]},
            )
            for row in db.list_questions_without_key()
        ]

    def _grade_not_configured(self) -> List[DivergenceDetail]:
        configured = {extract_grade_number(grade) for grade in db.list_configured_grades()}
        pending: Dict[str, Dict[str, Any]] = {}
        for row in db.list_grades_in_use():
            number = extract_grade_number(row["grade"])
            if number is not None and number in configured:
                continue
            key = number if number is not None else str(row["grade"])
            bucket = pending.setdefault(key, {"labels": [], "students": 0, "results": 0})
            bucket["labels"].append(row["grade"])
            bucket["students"] += row["students"] or 0
            bucket["results"] += row["results"] or 0

        return [
            DivergenceDetail(
                id=key,
                entity="grade",
                entity_id=key,
                grade=key,
                problem=f"Grade {key} has {info['students']} students and "
                f"{info['results']} results but no configuration",
                suggested_fix="Create the grade configuration",
                extra=info,
            )
            for key, info in sorted(pending.items())
        ]

    # -------------- warning --------------
    def _invalid_school_year(self) -> List[DivergenceDetail]:
        max_year = self.current_year + 1
        return [
            DivergenceDetail(
                id=f"{row['entity']}:{row['id']}",
                entity=row["entity"],
                entity_id=row["id"],
                name=row["name"],
                code=row["code"],
                school=row["school_name"],
                grade=row["grade"],
                school_year=_text(row["school_year"]),
                problem=f'School year "{row["school_year"]}" is invalid',
                current_value=row["school_year"],
                expected_value=f"YYYY between {MIN_SCHOOL_YEAR} and {max_year}",
                suggested_fix="Fix the school year",
            )
            for row in db.list_invalid_school_years(MIN_SCHOOL_YEAR, max_year)
        ]

    def _inconsistent_attendance(self) -> List[DivergenceDetail]:
        details = []
        for row in db.list_absent_with_answers():
            totals = {code: row[f"total_correct_{code}"] or 0 for code in SUBJECTS}
            details.append(
                self._result_detail(
                    row,
                    "Student marked absent but holding correct answers",
                    current_value="F",
                    expected_value="P",
                    suggested_fix="Mark the student present",
                    extra={"correct_answers": sum(totals.values())},
                )
            )
        return details

    def _name_code_mismatch(self) -> List[DivergenceDetail]:
        groups: Dict[str, List[Any]] = {}
        for row in db.list_coded_students():
            groups.setdefault(row["code"], []).append(row)

        details = []
        for code, rows in groups.items():
            names = {}
            for row in rows:
                names.setdefault(normalize_label(row["name"]), row["name"])
            if len(names) < 2:
                continue
            details.append(
                DivergenceDetail(
                    id=code,
                    entity="student_code",
                    entity_id=code,
                    code=code,
                    name=rows[0]["name"],
                    problem=f'Code "{code}" carries {len(names)} different names',
                    current_value=" / ".join(names.values()),
                    suggested_fix="Choose the correct name",
                    extra={
                        "records": [
                            {"id": row["id"], "name": row["name"], "school_year": row["school_year"]}
                            for row in rows
                        ]
                    },
                )
            )
        return details

    def _inactive_schools_with_data(self) -> List[DivergenceDetail]:
        year = str(self.current_year)
        return [
            DivergenceDetail(
                id=str(row["id"]),
                entity="school",
                entity_id=row["id"],
                name=row["name"],
                code=row["code"],
                region_id=row["region_id"],
                school_year=year,
                problem=f"Inactive school with {row['students']} students and "
                f"{row['results']} results in {year}",
                suggested_fix="Reactivate the school or move its data",
                extra={"students": row["students"], "results": row["results"]},
            )
            for row in db.list_inactive_schools_with_current_data(year)
        ]

    def _student_class_grade_mismatch(self) -> List[DivergenceDetail]:
        details = []
        for row in db.list_student_class_grades():
            if grades_match(row["student_grade"], row["class_grade"]):
                continue
            details.append(
                DivergenceDetail(
                    id=str(row["id"]),
                    entity="student",
                    entity_id=row["id"],
                    name=row["name"],
                    code=row["code"],
                    school=row["school_name"],
                    school_id=row["school_id"],
                    class_name=row["class_name"],
                    class_id=row["class_id"],
                    grade=row["student_grade"],
                    problem="Student grade differs from the class grade",
                    current_value=row["student_grade"],
                    expected_value=row["class_grade"],
                    suggested_fix="Use the class grade",
                )
            )
        return details

    def _failed_imports(self) -> List[DivergenceDetail]:
        return [
            DivergenceDetail(
                id=str(row["id"]),
                entity="import",
                entity_id=row["id"],
                name=row["file_name"],
                problem="Import failed" if row["status"] == "error"
                else f"Import processing for more than {self.import_stale_hours}h",
                current_value=row["status"],
                expected_value="cancelled",
                suggested_fix="Cancel the import",
                extra={
                    "created_at": row["created_at"],
                    "user_name": row["user_name"],
                    "error_rows": row["error_rows"],
                },
            )
            for row in db.list_problem_imports(self.stale_import_cutoff())
        ]

    # -------------- informational --------------
    def _students_without_results(self) -> List[DivergenceDetail]:
        return [
            DivergenceDetail(
                id=str(row["id"]),
                entity="student",
                entity_id=row["id"],
                name=row["name"],
                code=row["code"],
                school=row["school_name"],
                school_id=row["school_id"],
                grade=row["grade"],
                problem="Student without exam results",
            )
            for row in db.list_students_without_results()
        ]

    def _schools_without_students(self) -> List[DivergenceDetail]:
        return [
            DivergenceDetail(
                id=str(row["id"]),
                entity="school",
                entity_id=row["id"],
                name=row["name"],
                code=row["code"],
                region=row["region_name"],
                region_id=row["region_id"],
                problem="Active school without students",
            )
            for row in db.list_schools_without_students()
        ]

    def _regions_without_schools(self) -> List[DivergenceDetail]:
        return [
            DivergenceDetail(
                id=str(row["id"]),
                entity="region",
                entity_id=row["id"],
                name=row["name"],
                code=row["code"],
                problem="Active region without schools",
            )
            for row in db.list_regions_without_schools()
        ]

    def _unused_questions(self) -> List[DivergenceDetail]:
        return [
            DivergenceDetail(
                id=str(row["id"]),
                entity="question",
                entity_id=row["id"],
                code=row["code"],
                name=row["description"],
                grade=row["grade"],
                problem="Question never answered in an exam",
                extra={"subject": row["subject"]},
            )
            for row in db.list_unused_questions()
        ]

    def _empty_classes(self) -> List[DivergenceDetail]:
        return [
            DivergenceDetail(
                id=str(row["id"]),
                entity="class",
                entity_id=row["id"],
                name=row["name"],
                code=row["code"],
                school=row["school_name"],
                school_id=row["school_id"],
                grade=row["grade"],
                school_year=_text(row["school_year"]),
                problem="Active class without students",
                suggested_fix="Deactivate the class",
            )
            for row in db.list_empty_classes()
        ]
