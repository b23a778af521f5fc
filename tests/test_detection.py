import asyncio
from datetime import datetime, timedelta, timezone

import db
from engines.detection import STATUS_FAILED
from engines.divergence_catalog import DivergenceType, Severity


def _student_with_result(school, code="A1", name="Ana Souza", grade="5th grade", **result):
    student_id = db.insert_student(
        name, code, school["school_id"], school["class_id"], grade=grade, school_year="2024"
    )
    fields = {
        "student_id": student_id,
        "school_id": school["school_id"],
        "class_id": school["class_id"],
        "school_year": "2024",
        "grade": grade,
        "attendance": "P",
    }
    fields.update(result)
    result_id = db.insert_consolidated_result(**fields)
    return student_id, result_id


def _ids(divergence):
    return [detail.id for detail in divergence.details]


def test_empty_database_reports_nothing(detector):
    report = asyncio.run(detector.run_all())
    assert report.summary == {
        "critical": 0,
        "important": 0,
        "warning": 0,
        "informational": 0,
        "total": 0,
        "failed_checks": 0,
    }
    assert report.divergences == []


def test_detection_does_not_write(detector, school):
    _student_with_result(school, score_lp=12, average=1.0, learning_level="Basic")
    db.insert_exam_result(student_id=999, subject="lp", school_year="2024", correct=1)
    before = db.table_counts()
    asyncio.run(detector.run_all())
    assert db.table_counts() == before


def test_duplicate_codes_flag_every_active_member(detector, school):
    first = db.insert_student("Ana Souza", "A1", school["school_id"])
    second = db.insert_student("Ana Souza", "A1", school["school_id"])
    db.insert_student("Ana Souza", "A1", school["school_id"], active=False)
    db.insert_student("Bruno Lima", "B2", school["school_id"])

    divergence = detector.run_check(DivergenceType.DUPLICATE_STUDENTS)
    assert divergence.count == 2
    assert _ids(divergence) == [str(first), str(second)]
    assert all(detail.extra["members"] == 2 for detail in divergence.details)


def test_orphan_students_and_results(detector, school):
    lost = db.insert_student("Lost", "L1", 999)
    bad_class = db.insert_student("Wrong class", "L2", school["school_id"], class_id=555)
    db.insert_student("Fine", "F1", school["school_id"], school["class_id"])
    exam_id = db.insert_exam_result(student_id=888, subject="lp", school_year="2024", correct=1)
    result_id = db.insert_consolidated_result(student_id=lost, school_id=None, school_year="2024")

    students = detector.run_check(DivergenceType.ORPHAN_STUDENTS)
    assert _ids(students) == [str(lost), str(bad_class)]
    assert students.details[1].problem == "Student linked to a class that does not exist"

    results = detector.run_check(DivergenceType.ORPHAN_RESULTS)
    assert _ids(results) == [f"exam_result:{exam_id}", f"consolidated_result:{result_id}"]


def test_schools_without_region_and_classes_without_school(detector, school):
    no_region = db.insert_school("Lonely", None)
    bad_region = db.insert_school("Misplaced", 404)
    no_school = db.insert_class("9Z", 777, grade="9")

    assert _ids(detector.run_check(DivergenceType.SCHOOLS_WITHOUT_REGION)) == [
        str(no_region),
        str(bad_region),
    ]
    assert _ids(detector.run_check(DivergenceType.CLASSES_WITHOUT_SCHOOL)) == [str(no_school)]


def test_inconsistent_average_reports_expected_value(detector, school):
    _, result_id = _student_with_result(
        school, score_lp=6, score_mat=8, essay_score=8, average=5.0, learning_level="Adequate"
    )
    _student_with_result(
        school, code="B2", name="Bruno", score_lp=6, score_mat=8, essay_score=8, average=7.34,
        learning_level="adequado",
    )

    divergence = detector.run_check(DivergenceType.INCONSISTENT_AVERAGES)
    assert divergence.count == 1
    detail = divergence.details[0]
    assert detail.id == str(result_id)
    assert detail.current_value == 5.0
    assert detail.expected_value == 7.33
    assert detail.name == "Ana Souza"

    # the stored level already matches the recomputed average
    assert detector.run_check(DivergenceType.WRONG_LEARNING_LEVEL).count == 0


def test_wrong_learning_level(detector, school):
    _, result_id = _student_with_result(
        school, score_lp=6, score_mat=8, essay_score=8, average=7.33, learning_level="Basic"
    )
    # grades without learning levels are never flagged
    _student_with_result(
        school, code="N9", name="Nina", grade="9th grade", score_lp=6, score_mat=6, learning_level="x"
    )

    divergence = detector.run_check(DivergenceType.WRONG_LEARNING_LEVEL)
    assert _ids(divergence) == [str(result_id)]
    assert divergence.details[0].current_value == "Basic"
    assert divergence.details[0].expected_value == "Adequate"


def test_scores_out_of_range_one_detail_per_field(detector, school):
    _, result_id = _student_with_result(school, score_lp=10, score_mat=12.5, essay_score=-1)
    divergence = detector.run_check(DivergenceType.SCORES_OUT_OF_RANGE)
    assert _ids(divergence) == [f"{result_id}:score_mat", f"{result_id}:essay_score"]
    assert divergence.details[0].current_value == 12.5


def test_wrong_correct_totals_compare_raw_responses(detector, school):
    student_id, result_id = _student_with_result(school, total_correct_lp=1, total_correct_mat=2)
    for correct in (1, 1, 1, 0):
        db.insert_exam_result(student_id=student_id, school_id=school["school_id"], subject="lp",
                              school_year="2024", correct=correct)
    for correct in (1, 1):
        db.insert_exam_result(student_id=student_id, school_id=school["school_id"], subject="mat",
                              school_year="2024", correct=correct)

    divergence = detector.run_check(DivergenceType.WRONG_CORRECT_TOTALS)
    assert _ids(divergence) == [str(result_id)]
    assert divergence.details[0].current_value == {"lp": 1}
    assert divergence.details[0].expected_value == {"lp": 3}


def test_questions_without_key(detector, temp_db):
    missing = db.insert_question(code="Q1", subject="lp", grade="5", answer_key=None)
    blank = db.insert_question(code="Q2", subject="lp", grade="5", answer_key="  ")
    db.insert_question(code="Q3", subject="lp", grade="5", answer_key="B")
    assert _ids(detector.run_check(DivergenceType.QUESTIONS_WITHOUT_KEY)) == [str(missing), str(blank)]


def test_grade_not_configured_groups_by_grade_number(detector, school):
    db.insert_student("Ana", "A1", school["school_id"], grade="7th grade")
    db.insert_student("Bia", "B1", school["school_id"], grade="7º ano")
    db.insert_student("Caio", "C1", school["school_id"], grade="5th grade")
    db.upsert_grade_configuration({"grade": "5", "grade_name": "5th grade", "items_lp": 14})

    divergence = detector.run_check(DivergenceType.GRADE_NOT_CONFIGURED)
    assert _ids(divergence) == ["7"]
    assert divergence.details[0].extra["students"] == 2


def test_invalid_school_years(detector, school):
    bad_student = db.insert_student("Ana", "A1", school["school_id"], school_year="24")
    db.insert_student("Bia", "B1", school["school_id"], school_year="2025")
    db.insert_student("Caio", "C1", school["school_id"], school_year=None)
    future = db.insert_student("Dani", "D1", school["school_id"], school_year="2031")
    result_id = db.insert_consolidated_result(student_id=bad_student, school_id=school["school_id"],
                                              school_year="2024/2025")

    divergence = detector.run_check(DivergenceType.INVALID_SCHOOL_YEAR)
    assert sorted(_ids(divergence)) == sorted(
        [f"student:{bad_student}", f"student:{future}", f"consolidated_result:{result_id}"]
    )


def test_absent_student_with_answers(detector, school):
    _, absent = _student_with_result(school, attendance="F", total_correct_lp=3)
    _student_with_result(school, code="B2", attendance="F", total_correct_lp=0)
    divergence = detector.run_check(DivergenceType.INCONSISTENT_ATTENDANCE)
    assert _ids(divergence) == [str(absent)]


def test_name_code_mismatch_ignores_case_and_spacing(detector, school):
    db.insert_student("Ana Souza", "A1", school["school_id"], school_year="2023")
    db.insert_student("ana  souza", "A1", school["school_id"], school_year="2024", active=False)
    db.insert_student("Bruno Lima", "B2", school["school_id"], school_year="2023")
    db.insert_student("Bruno Costa", "B2", school["school_id"], school_year="2024", active=False)

    divergence = detector.run_check(DivergenceType.NAME_CODE_MISMATCH)
    assert _ids(divergence) == ["B2"]
    assert len(divergence.details[0].extra["records"]) == 2


def test_inactive_school_with_current_year_data(detector, school):
    closed = db.insert_school("Closed", school["region_id"], active=False)
    db.insert_student("Ana", "A1", closed, school_year="2024")
    old = db.insert_school("Old", school["region_id"], active=False)
    db.insert_student("Bia", "B1", old, school_year="2019")

    assert _ids(detector.run_check(DivergenceType.INACTIVE_SCHOOLS_WITH_DATA)) == [str(closed)]


def test_student_grade_differs_from_class(detector, school):
    wrong = db.insert_student("Ana", "A1", school["school_id"], school["class_id"], grade="4th grade")
    db.insert_student("Bia", "B1", school["school_id"], school["class_id"], grade="5º ano")
    divergence = detector.run_check(DivergenceType.STUDENT_CLASS_GRADE_MISMATCH)
    assert _ids(divergence) == [str(wrong)]
    assert divergence.details[0].expected_value == "5th grade"


def test_failed_and_stale_imports(detector, temp_db):
    stale = (datetime.now(timezone.utc) - timedelta(hours=48)).isoformat()
    failed = db.insert_import("a.csv", "error")
    stuck = db.insert_import("b.csv", "processing", created_at=stale)
    db.insert_import("c.csv", "processing")
    db.insert_import("d.csv", "done", created_at=stale)

    assert sorted(_ids(detector.run_check(DivergenceType.FAILED_IMPORTS))) == sorted(
        [str(failed), str(stuck)]
    )


def test_informational_checks(detector, school):
    lonely_region = db.insert_region("South")
    question = db.insert_question(code="Q1", subject="mat", answer_key="A")
    used = db.insert_question(code="Q2", subject="mat", answer_key="B")
    student = db.insert_student("Ana", "A1", school["school_id"])
    db.insert_exam_result(student_id=student, question_id=used, subject="mat", correct=1)

    assert _ids(detector.run_check(DivergenceType.REGIONS_WITHOUT_SCHOOLS)) == [str(lonely_region)]
    assert _ids(detector.run_check(DivergenceType.UNUSED_QUESTIONS)) == [str(question)]
    assert _ids(detector.run_check(DivergenceType.EMPTY_CLASSES)) == [str(school["class_id"])]
    assert _ids(detector.run_check(DivergenceType.STUDENTS_WITHOUT_RESULTS)) == [str(student)]
    assert detector.run_check(DivergenceType.SCHOOLS_WITHOUT_STUDENTS).count == 0


def test_failed_check_is_distinguished_from_zero(detector, school):
    def broken():
        raise RuntimeError("no such column: foo")

    detector._checks[DivergenceType.UNUSED_QUESTIONS] = broken
    db.insert_student("Ana", "A1", school["school_id"])
    db.insert_student("Ana", "A1", school["school_id"])

    report = asyncio.run(detector.run_all())
    assert report.summary["failed_checks"] == 1
    failed = [item for item in report.divergences if item.failed]
    assert len(failed) == 1
    assert failed[0].status == STATUS_FAILED
    assert failed[0].count == 0
    assert "no such column" in failed[0].error
    assert report.summary["critical"] == 2


def test_report_is_ordered_by_severity(detector, school):
    db.insert_region("South")
    db.insert_student("Ana", "A1", school["school_id"])
    db.insert_student("Ana", "A1", school["school_id"])

    report = asyncio.run(detector.run_all())
    severities = [item.severity for item in report.divergences]
    assert severities[0] is Severity.CRITICAL
    assert [s.rank for s in severities] == sorted(s.rank for s in severities)
    assert report.summary["total"] == sum(item.count for item in report.divergences)

    informational = report.filtered(severity="informational")
    assert informational and all(item.severity is Severity.INFORMATIONAL for item in informational)
    assert asyncio.run(detector.count_critical()) == 2


def test_run_check_pages_details(detector, school):
    for index in range(5):
        db.insert_region(f"Empty {index}")
    page = detector.run_check(DivergenceType.REGIONS_WITHOUT_SCHOOLS, offset=1, limit=2)
    assert page.count == 5
    assert len(page.details) == 2
    assert page.to_dict()["truncated"] is True
    assert len(detector.collect_targets(DivergenceType.REGIONS_WITHOUT_SCHOOLS)) == 5


def test_text_scores_are_flagged_per_row(detector, school):
    _, text_score = _student_with_result(school, score_lp=6, score_mat="8,5")
    _, text_average = _student_with_result(
        school, code="B2", name="Bruno", score_lp=6, score_mat=8, essay_score=8, average="7,33"
    )
    _, in_range = _student_with_result(school, code="C3", name="Carla", score_lp=12)

    out_of_range = detector.run_check(DivergenceType.SCORES_OUT_OF_RANGE)
    assert out_of_range.status != STATUS_FAILED
    assert _ids(out_of_range) == [
        f"{text_score}:score_mat",
        f"{text_average}:average",
        f"{in_range}:score_lp",
    ]
    assert "not a number" in out_of_range.details[0].problem

    averages = detector.run_check(DivergenceType.INCONSISTENT_AVERAGES)
    assert averages.status != STATUS_FAILED
    assert str(text_average) in _ids(averages)
    detail = next(d for d in averages.details if d.id == str(text_average))
    assert detail.current_value == "7,33"
    assert detail.expected_value == 7.33
