import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture
def temp_db(monkeypatch, tmp_path):
    import db

    db_path = tmp_path / "test.db"
    monkeypatch.setattr(db, "DB_PATH", str(db_path))
    monkeypatch.setenv("CURRENT_SCHOOL_YEAR", "2024")

    # Reset the connection pool for each test
    db._pool = db.SQLiteConnectionPool(str(db_path), max_connections=10)
    db.init()
    return str(db_path)


@pytest.fixture
def resolver(temp_db):
    from grade_config import GradeConfigResolver

    return GradeConfigResolver(ttl_seconds=300)


@pytest.fixture
def classifier(resolver):
    from learning_levels import LearningLevelClassifier

    return LearningLevelClassifier(resolver.bands)


@pytest.fixture
def detector(resolver, classifier):
    from engines.detection import DivergenceDetector

    return DivergenceDetector(resolver, classifier, detail_limit=100, current_year=2024)


@pytest.fixture
def history(temp_db):
    from engines.history import HistoryStore

    return HistoryStore()


@pytest.fixture
def corrector(detector, resolver, classifier, history):
    from engines.correction import CorrectionEngine

    return CorrectionEngine(detector, resolver, classifier, history)


@pytest.fixture
def school(temp_db):
    """A region with one school and one 5th-grade class."""
    import db

    region_id = db.insert_region("North", code="N")
    school_id = db.insert_school("Central School", region_id, code="S1")
    class_id = db.insert_class("5A", school_id, grade="5th grade", school_year="2024", code="C5A")
    return {"region_id": region_id, "school_id": school_id, "class_id": class_id}
