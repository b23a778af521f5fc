import itertools
import threading

import pytest

import db
from engines.validation import ConfigurationUnavailable, GradeConfigError
from grade_config import (
    GradeConfigResolver,
    GradeConfiguration,
    SubjectRule,
    default_configuration,
    generic_configuration,
)


def _config_row(grade, **overrides):
    row = {
        "grade": grade,
        "grade_name": f"Grade {grade}",
        "items_lp": 10,
        "items_mat": 10,
        "items_ch": 0,
        "items_cn": 0,
        "evaluates_lp": 1,
        "evaluates_mat": 1,
        "evaluates_ch": 0,
        "evaluates_cn": 0,
        "weight_lp": 1.0,
        "weight_mat": 1.0,
        "weight_ch": 1.0,
        "weight_cn": 1.0,
        "has_essay": 0,
        "essay_items": 0,
        "essay_weight": 1.0,
        "uses_learning_level": 1,
        "active": 1,
    }
    row.update(overrides)
    return row


class _FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


@pytest.mark.parametrize(
    "label, expected",
    [
        ("8th Grade", "8"),
        ("5º ano", "5"),
        ("08", "8"),
        ("Year 2 (morning)", "2"),
        ("kindergarten", None),
        ("", None),
        (None, None),
    ],
)
def test_extract_grade_number(label, expected):
    assert GradeConfigResolver.extract_grade_number(label) == expected


def test_builtin_defaults_cover_expected_grades():
    fifth = default_configuration("5º ano")
    assert fifth is not None
    assert fifth.source == "default"
    assert fifth.has_essay and fifth.essay_items == 8
    assert fifth.uses_learning_level
    assert [rule.code for rule in fifth.evaluated_subjects] == ["lp", "mat"]
    assert fifth.total_objective_items == 34

    ninth = default_configuration("9")
    assert not ninth.has_essay
    assert not ninth.uses_learning_level
    assert ninth.total_objective_items == 60

    assert default_configuration("7") is None
    assert default_configuration(None) is None


def test_generic_configuration_evaluates_four_subjects():
    config = generic_configuration("7th grade")
    assert config.grade == "7"
    assert config.source == "generic"
    assert len(config.evaluated_subjects) == 4
    assert not config.has_essay


def test_configuration_without_evaluated_subject_is_invalid():
    config = GradeConfiguration(
        grade="4",
        name="Grade 4",
        subjects=tuple(SubjectRule(code, False, 0) for code in ("lp", "mat", "ch", "cn")),
    )
    with pytest.raises(GradeConfigError):
        config.validate()


def test_resolve_prefers_stored_configuration_over_default():
    resolver = GradeConfigResolver(loader=lambda: ([_config_row("5", has_essay=1, essay_items=4)], []))
    config = resolver.resolve("5th grade")
    assert config.source == "database"
    assert config.essay_items == 4
    assert config.subject("lp").items == 10


def test_resolve_falls_back_to_default_then_none():
    resolver = GradeConfigResolver(loader=lambda: ([], []))
    assert resolver.resolve("9th grade").source == "default"
    assert resolver.resolve("7th grade") is None
    assert resolver.resolve("no digits") is None
    assert not resolver.degraded


def test_unavailable_store_serves_defaults_and_generic():
    def failing_loader():
        raise ConfigurationUnavailable("database is locked")

    resolver = GradeConfigResolver(loader=failing_loader)
    assert resolver.degraded
    assert resolver.resolve("5").source == "default"
    assert resolver.resolve("7").source == "generic"


def test_invalid_rows_are_skipped():
    rows = [
        _config_row("4", evaluates_lp=0, evaluates_mat=0),
        _config_row("6"),
    ]
    resolver = GradeConfigResolver(loader=lambda: (rows, []))
    assert resolver.resolve("4") is None
    assert resolver.resolve("6") is not None
    assert [config.grade for config in resolver.configurations()] == ["6"]


def test_snapshot_is_reused_until_ttl_or_invalidate():
    calls = []
    clock = _FakeClock()

    def loader():
        calls.append(clock.now)
        return [_config_row("6")], []

    resolver = GradeConfigResolver(loader=loader, ttl_seconds=10, clock=clock)
    resolver.resolve("6")
    resolver.resolve("6")
    assert len(calls) == 1

    clock.now = 11
    resolver.resolve("6")
    assert len(calls) == 2

    resolver.invalidate()
    resolver.resolve("6")
    assert len(calls) == 3


def test_resolver_reads_database(temp_db):
    db.upsert_grade_configuration(_config_row("7", grade_name="7th grade", uses_learning_level=0))
    db.insert_learning_level(code="low", name="Low", min_score=0, max_score=5, sort_order=1, grade="7")
    db.insert_learning_level(code="high", name="High", min_score=5, max_score=10, sort_order=2, grade="7")

    resolver = GradeConfigResolver(ttl_seconds=300)
    config = resolver.resolve("7th grade")
    assert config.name == "7th grade"
    assert not config.uses_learning_level
    assert [band.code for band in resolver.bands_for("7")] == ["low", "high"]
    # other grades keep the built-in bands
    assert resolver.bands_for("5")[0].code == "insuficiente"


def test_upsert_replaces_existing_configuration(temp_db):
    db.upsert_grade_configuration(_config_row("7", items_lp=5))
    db.upsert_grade_configuration(_config_row("7", items_lp=12))
    rows = db.load_grade_configurations()
    assert len(rows) == 1
    assert rows[0]["items_lp"] == 12


def test_refresh_and_invalidate_race_readers_without_partial_snapshots():
    generations = itertools.count(1)

    def loader():
        generation = next(generations)
        return [_config_row("6", items_lp=generation), _config_row("7", items_lp=generation)], []

    resolver = GradeConfigResolver(loader=loader, ttl_seconds=300)
    stop = threading.Event()
    errors = []

    def read():
        try:
            while not stop.is_set():
                view = resolver.pinned()
                sixth, seventh = view.resolve("6"), view.resolve("7")
                assert sixth.subject("lp").items == seventh.subject("lp").items
                assert resolver.resolve("6th grade") is not None
        except Exception as exc:  # collected for the main thread
            errors.append(exc)

    readers = [threading.Thread(target=read) for _ in range(4)]
    for reader in readers:
        reader.start()
    for _ in range(200):
        resolver.invalidate()
    stop.set()
    for reader in readers:
        reader.join(timeout=10)

    assert errors == []
    assert not any(reader.is_alive() for reader in readers)
    assert resolver.resolve("6").source == "database"
