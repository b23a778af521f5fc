"""Error types and request validators for the scoring and integrity engines."""

import re
from typing import Any, Dict, Mapping, Optional

ANSWER_KEYS = ("A", "B", "C", "D", "E")
SCORE_MIN = 0.0
SCORE_MAX = 10.0

_YEAR_RE = re.compile(r"^\d{4}$")
_YEAR_SEARCH_RE = re.compile(r"(\d{4})")
_GRADE_NUMBER_RE = re.compile(r"(\d+)")


class IntegrityError(Exception):
    """Base class for scoring and integrity errors."""
    pass

class ConfigurationUnavailable(IntegrityError):
    """Raised when grade configurations cannot be read from the datastore."""
    pass

class GradeConfigError(IntegrityError, ValueError):
    """Raised when a grade configuration violates its invariants."""
    pass

class BandConfigError(IntegrityError, ValueError):
    """Raised when a learning-level band set overlaps or leaves gaps."""
    pass

class CheckExecutionFailed(IntegrityError):
    """Raised when a single divergence check cannot run."""

    def __init__(self, divergence_type: str, cause: BaseException):
        super().__init__(f"Check {divergence_type} failed: {cause}")
        self.divergence_type = divergence_type
        self.cause = cause

class UnauthorizedFix(IntegrityError):
    """Raised when a correction is requested without the required authorization."""
    pass

class InvalidFixRequest(IntegrityError, ValueError):
    """Raised when a correction request is malformed."""
    pass

class TargetNotFound(IntegrityError):
    """Raised when a correction target no longer exists."""
    pass


def extract_grade_number(label: Any) -> Optional[str]:
    """Return the first run of digits in a grade label ("8th Grade" -> "8")."""
    if label is None:
        return None
    match = _GRADE_NUMBER_RE.search(str(label))
    if not match:
        return None
    return str(int(match.group(1)))


def is_valid_school_year(value: Any, max_year: int, min_year: int = 2000) -> bool:
    if value is None:
        return True
    text = str(value).strip()
    if not _YEAR_RE.match(text):
        return False
    return min_year <= int(text) <= max_year


def normalize_school_year(value: Any) -> Optional[str]:
    """Pull the first four-digit year out of a malformed year string."""
    if value is None:
        return None
    match = _YEAR_SEARCH_RE.search(str(value))
    return match.group(1) if match else None


def validate_score_value(value: Any) -> float:
    try:
        score = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidFixRequest(f"value must be numeric, got {value!r}") from exc
    if not SCORE_MIN <= score <= SCORE_MAX:
        raise InvalidFixRequest(f"value must be within [{SCORE_MIN:g}, {SCORE_MAX:g}]")
    return score


def validate_answer_key(value: Any) -> str:
    key = str(value or "").strip().upper()
    if key not in ANSWER_KEYS:
        raise InvalidFixRequest(f"answer_key must be one of: {', '.join(ANSWER_KEYS)}")
    return key


def require_int(params: Mapping[str, Any], name: str, *, optional: bool = False) -> Optional[int]:
    value = params.get(name)
    if value is None or value == "":
        if optional:
            return None
        raise InvalidFixRequest(f"Missing required parameter: {name}")
    if isinstance(value, bool):
        raise InvalidFixRequest(f"Parameter {name} must be an integer id")
    try:
        return int(value)
    except (TypeError, ValueError) as exc:
        raise InvalidFixRequest(f"Parameter {name} must be an integer id") from exc


def require_text(params: Mapping[str, Any], name: str) -> str:
    value = params.get(name)
    if not isinstance(value, str) or not value.strip():
        raise InvalidFixRequest(f"Missing required parameter: {name}")
    return value.strip()


def require_choice(
    params: Mapping[str, Any],
    name: str,
    choices: tuple,
    default: Optional[str] = None,
) -> str:
    value = params.get(name, default)
    if value not in choices:
        raise InvalidFixRequest(
            f"Parameter {name} must be one of: {', '.join(choices)}"
        )
    return value


def validate_history_filters(filters: Dict[str, Any], max_limit: int = 100) -> Dict[str, Any]:
    """Clamp paging values of a history query."""
    page = filters.get("page") or 1
    limit = filters.get("limit") or 50
    try:
        page = int(page)
        limit = int(limit)
    except (TypeError, ValueError) as exc:
        raise InvalidFixRequest("page and limit must be integers") from exc
    if page < 1:
        raise InvalidFixRequest("page must be >= 1")
    if limit < 1:
        raise InvalidFixRequest("limit must be >= 1")
    cleaned = dict(filters)
    cleaned["page"] = page
    cleaned["limit"] = min(limit, max_limit)
    return cleaned
