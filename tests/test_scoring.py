import pytest

from engines.scoring import (
    averages_match,
    composite_for_result,
    compute_composite,
    recount_correct_answers,
    round_score,
    score_in_range,
    stored_score,
)
from grade_config import GradeConfiguration, SubjectRule, default_configuration, generic_configuration


def test_zero_score_is_excluded_from_composite():
    config = default_configuration("9")
    scores = {"lp": 8, "mat": 0, "ch": 7, "cn": 9}
    assert compute_composite(scores, config) == pytest.approx(8.0)


def test_essay_takes_part_when_grade_has_one():
    config = default_configuration("5")
    composite = compute_composite({"lp": 6, "mat": 8}, config, essay_score=8)
    assert round_score(composite) == 7.33


def test_essay_ignored_when_grade_has_none():
    config = default_configuration("9")
    assert compute_composite({"lp": 6, "mat": 8, "ch": 6, "cn": 8}, config, essay_score=1) == 7.0


def test_non_evaluated_subjects_are_ignored():
    config = default_configuration("2")
    assert compute_composite({"lp": 4, "mat": 6, "ch": 10, "cn": 10}, config) == 5.0


def test_weights_are_applied():
    config = GradeConfiguration(
        grade="6",
        name="Grade 6",
        subjects=(
            SubjectRule("lp", True, 10, 2.0),
            SubjectRule("mat", True, 10, 1.0),
            SubjectRule("ch", False, 0),
            SubjectRule("cn", False, 0),
        ),
    )
    assert compute_composite({"lp": 9, "mat": 6}, config) == pytest.approx(8.0)


@pytest.mark.parametrize(
    "scores",
    [
        {},
        {"lp": 0, "mat": 0, "ch": 0, "cn": 0},
        {"lp": None, "mat": -2, "ch": float("nan"), "cn": True},
    ],
)
def test_nothing_usable_returns_none(scores):
    assert compute_composite(scores, generic_configuration("7")) is None


def test_round_score_is_half_up():
    assert round_score(7.335) == 7.34
    assert round_score(7.3349) == 7.33
    assert round_score(None) is None


def test_composite_for_result_reads_score_columns():
    row = {
        "score_lp": 6,
        "score_mat": 8,
        "score_ch": None,
        "score_cn": None,
        "essay_score": 8,
    }
    assert composite_for_result(row, default_configuration("5")) == 7.33


@pytest.mark.parametrize(
    "stored, expected, match",
    [
        (7.33, 7.33, True),
        (7.35, 7.33, True),
        (7.36, 7.33, False),
        (5.0, 7.33, False),
        (None, 7.33, False),
        (None, None, True),
        (0, None, True),
        (3.0, None, False),
    ],
)
def test_averages_match_tolerance(stored, expected, match):
    assert averages_match(stored, expected) is match


def test_recount_correct_answers_accepts_raw_and_aggregated_rows():
    raw = [
        {"subject": "LP", "correct": 1},
        {"subject": "lp", "correct": 0},
        {"subject": "mat", "correct": 1},
        {"subject": "art", "correct": 1},
    ]
    assert recount_correct_answers(raw) == {"lp": 1, "mat": 1}

    aggregated = [{"subject": "cn", "correct_count": 4, "answered": 10}]
    assert recount_correct_answers(aggregated) == {"cn": 4}


def test_text_scores_are_rejected_per_value():
    assert stored_score(" 7.5 ") == 7.5
    assert stored_score(None) is None
    with pytest.raises(ValueError):
        stored_score("8,5")
    assert score_in_range(None)
    assert not score_in_range("8,5")
    assert not score_in_range(10.5)
    assert not averages_match("7,33", 7.33)
