import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, Mapping, Optional, Sequence

from db_pool import SQLiteConnectionPool

DB_PATH = os.getenv("DB_PATH", "data.db")

# Initialize connection pool
_pool = SQLiteConnectionPool(DB_PATH, max_connections=10)

SUBJECT_CODES = ("lp", "mat", "ch", "cn")
SCORE_FIELDS = tuple(f"score_{code}" for code in SUBJECT_CODES) + ("essay_score", "average")
TOTAL_FIELDS = tuple(f"total_correct_{code}" for code in SUBJECT_CODES)

_INSERTABLE = {
    "regions": ("id", "code", "name", "active"),
    "schools": ("id", "code", "name", "region_id", "active"),
    "classes": ("id", "code", "name", "school_id", "grade", "school_year", "active"),
    "students": ("id", "code", "name", "school_id", "class_id", "grade", "school_year", "active"),
    "consolidated_results": (
        "id", "student_id", "school_id", "class_id", "school_year", "grade", "attendance",
        *SCORE_FIELDS[:-2], "essay_score", *TOTAL_FIELDS, "average", "learning_level",
    ),
    "exam_results": (
        "id", "student_id", "school_id", "question_id", "subject", "school_year", "grade",
        "answer", "correct",
    ),
    "questions": ("id", "code", "description", "subject", "grade", "answer_key"),
    "learning_levels": (
        "id", "code", "name", "color", "min_score", "max_score", "sort_order", "grade", "active",
    ),
    "imports": (
        "id", "file_name", "status", "total_rows", "processed_rows", "error_rows", "errors",
        "user_name", "created_at",
    ),
}

_GRADE_CONFIG_COLUMNS = (
    "grade", "grade_name",
    "items_lp", "items_mat", "items_ch", "items_cn",
    "evaluates_lp", "evaluates_mat", "evaluates_ch", "evaluates_cn",
    "weight_lp", "weight_mat", "weight_ch", "weight_cn",
    "has_essay", "essay_items", "essay_weight", "uses_learning_level", "active",
)


def _conn():
    """Return a context manager for acquiring a pooled SQLite connection."""
    return _pool.get_connection()


def _exec(sql: str, params: Iterable = ()):
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        con.commit()
        return cur

def _query(sql: str, params: Iterable = ()) -> list[sqlite3.Row]:
    with _pool.get_connection() as con:
        cur = con.execute(sql, params)
        return cur.fetchall()


@contextmanager
def transaction() -> Iterator[sqlite3.Connection]:
    """Yield a pooled connection and commit when the block exits cleanly."""
    with _pool.get_connection() as con:
        yield con
        con.commit()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def json_dumps(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, sort_keys=True, default=str)


def _decode_json_field(value: Optional[str]) -> Any:
    if value is None:
        return None
    if isinstance(value, (bytes, bytearray)):
        value = value.decode("utf-8")
    value = value.strip()
    if not value:
        return None
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def init():
    Path(DB_PATH).parent.mkdir(parents=True, exist_ok=True)
    with _conn() as con:
        con.executescript(
            """
            PRAGMA journal_mode=WAL;

            CREATE TABLE IF NOT EXISTS regions (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              code        TEXT,
              name        TEXT NOT NULL,
              active      INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS schools (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              code        TEXT,
              name        TEXT NOT NULL,
              region_id   INTEGER,
              active      INTEGER NOT NULL DEFAULT 1
            );

            CREATE INDEX IF NOT EXISTS idx_schools_region ON schools(region_id);

            CREATE TABLE IF NOT EXISTS classes (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              code        TEXT,
              name        TEXT NOT NULL,
              school_id   INTEGER,
              grade       TEXT,
              school_year TEXT,
              active      INTEGER NOT NULL DEFAULT 1
            );

            CREATE INDEX IF NOT EXISTS idx_classes_school ON classes(school_id);

            CREATE TABLE IF NOT EXISTS students (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              code        TEXT,
              name        TEXT NOT NULL,
              school_id   INTEGER,
              class_id    INTEGER,
              grade       TEXT,
              school_year TEXT,
              active      INTEGER NOT NULL DEFAULT 1
            );

            CREATE INDEX IF NOT EXISTS idx_students_code ON students(code);
            CREATE INDEX IF NOT EXISTS idx_students_school ON students(school_id);
            CREATE INDEX IF NOT EXISTS idx_students_class ON students(class_id);

            CREATE TABLE IF NOT EXISTS consolidated_results (
              id                INTEGER PRIMARY KEY AUTOINCREMENT,
              student_id        INTEGER,
              school_id         INTEGER,
              class_id          INTEGER,
              school_year       TEXT,
              grade             TEXT,
              attendance        TEXT CHECK (attendance IS NULL OR attendance IN ('P', 'F')),
              score_lp          REAL,
              score_mat         REAL,
              score_ch          REAL,
              score_cn          REAL,
              essay_score       REAL,
              total_correct_lp  INTEGER,
              total_correct_mat INTEGER,
              total_correct_ch  INTEGER,
              total_correct_cn  INTEGER,
              average           REAL,
              learning_level    TEXT,
              updated_at        TEXT
            );

            CREATE INDEX IF NOT EXISTS idx_consolidated_student ON consolidated_results(student_id, school_year);

            CREATE TABLE IF NOT EXISTS questions (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              code        TEXT,
              description TEXT,
              subject     TEXT,
              grade       TEXT,
              answer_key  TEXT
            );

            CREATE TABLE IF NOT EXISTS exam_results (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              student_id  INTEGER,
              school_id   INTEGER,
              question_id INTEGER,
              subject     TEXT,
              school_year TEXT,
              grade       TEXT,
              answer      TEXT,
              correct     INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_exam_results_student ON exam_results(student_id, school_year);
            CREATE INDEX IF NOT EXISTS idx_exam_results_question ON exam_results(question_id);

            CREATE TABLE IF NOT EXISTS grade_configurations (
              id                  INTEGER PRIMARY KEY AUTOINCREMENT,
              grade               TEXT NOT NULL UNIQUE,
              grade_name          TEXT,
              items_lp            INTEGER NOT NULL DEFAULT 0,
              items_mat           INTEGER NOT NULL DEFAULT 0,
              items_ch            INTEGER NOT NULL DEFAULT 0,
              items_cn            INTEGER NOT NULL DEFAULT 0,
              evaluates_lp        INTEGER NOT NULL DEFAULT 1,
              evaluates_mat       INTEGER NOT NULL DEFAULT 1,
              evaluates_ch        INTEGER NOT NULL DEFAULT 1,
              evaluates_cn        INTEGER NOT NULL DEFAULT 1,
              weight_lp           REAL NOT NULL DEFAULT 1,
              weight_mat          REAL NOT NULL DEFAULT 1,
              weight_ch           REAL NOT NULL DEFAULT 1,
              weight_cn           REAL NOT NULL DEFAULT 1,
              has_essay           INTEGER NOT NULL DEFAULT 0,
              essay_items         INTEGER NOT NULL DEFAULT 0,
              essay_weight        REAL NOT NULL DEFAULT 1,
              uses_learning_level INTEGER NOT NULL DEFAULT 0,
              active              INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS learning_levels (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              code        TEXT NOT NULL,
              name        TEXT NOT NULL,
              color       TEXT,
              min_score   REAL NOT NULL,
              max_score   REAL NOT NULL,
              sort_order  INTEGER NOT NULL DEFAULT 0,
              grade       TEXT,
              active      INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS imports (
              id             INTEGER PRIMARY KEY AUTOINCREMENT,
              file_name      TEXT,
              status         TEXT NOT NULL,
              total_rows     INTEGER,
              processed_rows INTEGER,
              error_rows     INTEGER,
              errors         TEXT,
              user_name      TEXT,
              created_at     TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS divergence_history (
              id          INTEGER PRIMARY KEY AUTOINCREMENT,
              type        TEXT NOT NULL,
              severity    TEXT NOT NULL,
              title       TEXT NOT NULL,
              entity      TEXT,
              entity_id   TEXT,
              entity_name TEXT,
              before_data TEXT,
              after_data  TEXT,
              action      TEXT NOT NULL,
              automatic   INTEGER NOT NULL,
              user_id     TEXT,
              user_name   TEXT,
              created_at  TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_history_type ON divergence_history(type, created_at DESC);
            CREATE INDEX IF NOT EXISTS idx_history_entity ON divergence_history(entity, entity_id);
            """
        )
        con.commit()


# -------------- seeding helpers --------------
def _insert(table: str, fields: Mapping[str, Any], con: Optional[sqlite3.Connection] = None) -> int:
    allowed = _INSERTABLE[table]
    unknown = set(fields) - set(allowed)
    if unknown:
        raise ValueError(f"Unknown columns for {table}: {', '.join(sorted(unknown))}")
    columns = [column for column in allowed if column in fields]
    placeholders = ", ".join("?" for _ in columns)
    sql = f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})"
    params = [fields[column] for column in columns]
    if con is not None:
        return int(con.execute(sql, params).lastrowid)
    return int(_exec(sql, params).lastrowid)


def insert_region(name: str, code: Optional[str] = None, active: bool = True, **extra: Any) -> int:
    return _insert("regions", {"name": name, "code": code, "active": int(active), **extra})


def insert_school(
    name: str,
    region_id: Optional[int],
    code: Optional[str] = None,
    active: bool = True,
    **extra: Any,
) -> int:
    return _insert(
        "schools",
        {"name": name, "code": code, "region_id": region_id, "active": int(active), **extra},
    )


def insert_class(
    name: str,
    school_id: Optional[int],
    grade: Optional[str] = None,
    school_year: Optional[str] = None,
    code: Optional[str] = None,
    active: bool = True,
    **extra: Any,
) -> int:
    return _insert(
        "classes",
        {
            "name": name,
            "code": code,
            "school_id": school_id,
            "grade": grade,
            "school_year": school_year,
            "active": int(active),
            **extra,
        },
    )


def insert_student(
    name: str,
    code: Optional[str],
    school_id: Optional[int],
    class_id: Optional[int] = None,
    grade: Optional[str] = None,
    school_year: Optional[str] = None,
    active: bool = True,
    **extra: Any,
) -> int:
    return _insert(
        "students",
        {
            "name": name,
            "code": code,
            "school_id": school_id,
            "class_id": class_id,
            "grade": grade,
            "school_year": school_year,
            "active": int(active),
            **extra,
        },
    )


def insert_consolidated_result(**fields: Any) -> int:
    return _insert("consolidated_results", fields)


def insert_exam_result(**fields: Any) -> int:
    if "correct" in fields:
        fields["correct"] = int(bool(fields["correct"]))
    return _insert("exam_results", fields)


def insert_question(**fields: Any) -> int:
    return _insert("questions", fields)


def insert_learning_level(**fields: Any) -> int:
    fields.setdefault("active", 1)
    return _insert("learning_levels", fields)


def insert_import(
    file_name: str,
    status: str,
    created_at: Optional[str] = None,
    **extra: Any,
) -> int:
    return _insert(
        "imports",
        {"file_name": file_name, "status": status, "created_at": created_at or _now_iso(), **extra},
    )


def upsert_grade_configuration(
    values: Mapping[str, Any],
    con: Optional[sqlite3.Connection] = None,
) -> int:
    """Insert or replace the configuration row for ``values['grade']``."""
    unknown = set(values) - set(_GRADE_CONFIG_COLUMNS)
    if unknown:
        raise ValueError(f"Unknown grade configuration columns: {', '.join(sorted(unknown))}")
    if not values.get("grade"):
        raise ValueError("grade is required")
    columns = [column for column in _GRADE_CONFIG_COLUMNS if column in values]
    updates = ", ".join(f"{column} = excluded.{column}" for column in columns if column != "grade")
    sql = (
        f"INSERT INTO grade_configurations ({', '.join(columns)}) "
        f"VALUES ({', '.join('?' for _ in columns)}) "
        f"ON CONFLICT(grade) DO UPDATE SET {updates}"
    )
    params = [values[column] for column in columns]
    if con is not None:
        return int(con.execute(sql, params).lastrowid)
    return int(_exec(sql, params).lastrowid)


# -------------- configuration reads --------------
def load_grade_configurations() -> list[sqlite3.Row]:
    return _query(
        f"SELECT id, {', '.join(_GRADE_CONFIG_COLUMNS)} FROM grade_configurations WHERE active = 1"
    )


def load_learning_levels() -> list[sqlite3.Row]:
    return _query(
        """
        SELECT id, code, name, color, min_score, max_score, sort_order, grade
        FROM learning_levels
        WHERE active = 1
        ORDER BY sort_order, min_score
        """
    )


def get_grade_configuration(con: sqlite3.Connection, grade: str) -> Optional[sqlite3.Row]:
    return con.execute(
        "SELECT * FROM grade_configurations WHERE grade = ?",
        (grade,),
    ).fetchone()


def list_configured_grades() -> list[str]:
    rows = _query("SELECT grade FROM grade_configurations WHERE active = 1 AND grade IS NOT NULL")
    return [str(row["grade"]) for row in rows]


# -------------- structural checks --------------
def list_duplicate_students() -> list[sqlite3.Row]:
    return _query(
        """
        SELECT s.id, s.code, s.name, s.grade, s.school_year, s.school_id, sc.name AS school_name,
               COUNT(*) OVER (PARTITION BY s.code) AS members
        FROM students s
        LEFT JOIN schools sc ON s.school_id = sc.id
        WHERE s.active = 1 AND s.code IS NOT NULL AND TRIM(s.code) != ''
        ORDER BY s.code, s.id
        """
    )


def list_orphan_students() -> list[sqlite3.Row]:
    return _query(
        """
        SELECT s.id, s.code, s.name, s.grade, s.school_year, s.school_id, s.class_id,
               sc.id AS resolved_school_id, c.id AS resolved_class_id
        FROM students s
        LEFT JOIN schools sc ON s.school_id = sc.id
        LEFT JOIN classes c ON s.class_id = c.id
        WHERE s.active = 1
          AND (s.school_id IS NULL OR sc.id IS NULL OR (s.class_id IS NOT NULL AND c.id IS NULL))
        ORDER BY s.id
        """
    )


_ORPHAN_EXAM_RESULT_PREDICATE = """
    (er.student_id IS NULL
     OR NOT EXISTS (SELECT 1 FROM students s WHERE s.id = er.student_id)
     OR (er.school_id IS NOT NULL AND NOT EXISTS (SELECT 1 FROM schools sc WHERE sc.id = er.school_id)))
"""

_ORPHAN_CONSOLIDATED_PREDICATE = """
    (rc.student_id IS NULL
     OR NOT EXISTS (SELECT 1 FROM students s WHERE s.id = rc.student_id)
     OR rc.school_id IS NULL
     OR NOT EXISTS (SELECT 1 FROM schools sc WHERE sc.id = rc.school_id))
"""


def list_orphan_exam_results() -> list[sqlite3.Row]:
    return _query(
        f"""
        SELECT er.id, er.student_id, er.school_id, er.school_year, er.grade, er.subject
        FROM exam_results er
        WHERE {_ORPHAN_EXAM_RESULT_PREDICATE}
        ORDER BY er.id
        """
    )


def list_orphan_consolidated_results() -> list[sqlite3.Row]:
    return _query(
        f"""
        SELECT rc.id, rc.student_id, rc.school_id, rc.school_year, rc.grade
        FROM consolidated_results rc
        WHERE {_ORPHAN_CONSOLIDATED_PREDICATE}
        ORDER BY rc.id
        """
    )


def list_schools_without_region() -> list[sqlite3.Row]:
    return _query(
        """
        SELECT sc.id, sc.code, sc.name, sc.region_id
        FROM schools sc
        LEFT JOIN regions r ON sc.region_id = r.id
        WHERE sc.active = 1 AND (sc.region_id IS NULL OR r.id IS NULL)
        ORDER BY sc.id
        """
    )


def list_classes_without_school() -> list[sqlite3.Row]:
    return _query(
        """
        SELECT c.id, c.code, c.name, c.school_id, c.grade, c.school_year
        FROM classes c
        LEFT JOIN schools sc ON c.school_id = sc.id
        WHERE c.active = 1 AND (c.school_id IS NULL OR sc.id IS NULL)
        ORDER BY c.id
        """
    )


# -------------- computed-value checks --------------
_CONSOLIDATED_SELECT = """
    SELECT rc.*, s.name AS student_name, s.code AS student_code, sc.name AS school_name
    FROM consolidated_results rc
    LEFT JOIN students s ON rc.student_id = s.id
    LEFT JOIN schools sc ON rc.school_id = sc.id
"""


def list_results_with_average() -> list[sqlite3.Row]:
    return _query(_CONSOLIDATED_SELECT + " WHERE rc.average IS NOT NULL ORDER BY rc.id")


def list_consolidated_results() -> list[sqlite3.Row]:
    return _query(_CONSOLIDATED_SELECT + " ORDER BY rc.id")


def get_consolidated_result(con: sqlite3.Connection, result_id: int) -> Optional[sqlite3.Row]:
    return con.execute(
        _CONSOLIDATED_SELECT + " WHERE rc.id = ?",
        (result_id,),
    ).fetchone()


def list_out_of_range_results() -> list[sqlite3.Row]:
    clauses = " OR ".join(f"(rc.{field} IS NOT NULL AND (rc.{field} < 0 OR rc.{field} > 10))" for field in SCORE_FIELDS)
    return _query(_CONSOLIDATED_SELECT + f" WHERE {clauses} ORDER BY rc.id")


def count_correct_answers() -> list[sqlite3.Row]:
    """Per (student, year, subject) count of correct raw responses."""
    return _query(
        """
        SELECT student_id, school_year, LOWER(subject) AS subject,
               SUM(CASE WHEN correct = 1 THEN 1 ELSE 0 END) AS correct_count,
               COUNT(*) AS answered
        FROM exam_results
        WHERE student_id IS NOT NULL
        GROUP BY student_id, school_year, LOWER(subject)
        """
    )


def count_correct_answers_for(
    con: sqlite3.Connection, student_id: int, school_year: Optional[str]
) -> list[sqlite3.Row]:
    return con.execute(
        """
        SELECT LOWER(subject) AS subject,
               SUM(CASE WHEN correct = 1 THEN 1 ELSE 0 END) AS correct_count,
               COUNT(*) AS answered
        FROM exam_results
        WHERE student_id = ? AND school_year IS ?
        GROUP BY LOWER(subject)
        """,
        (student_id, school_year),
    ).fetchall()


def list_questions_without_key() -> list[sqlite3.Row]:
    return _query(
        """
        SELECT id, code, description, subject, grade
        FROM questions
        WHERE answer_key IS NULL OR TRIM(answer_key) = ''
        ORDER BY id
        """
    )


def list_grades_in_use() -> list[sqlite3.Row]:
    return _query(
        """
        SELECT grade, SUM(students) AS students, SUM(results) AS results FROM (
            SELECT grade, COUNT(*) AS students, 0 AS results
            FROM students WHERE grade IS NOT NULL AND TRIM(grade) != '' GROUP BY grade
            UNION ALL
            SELECT grade, 0 AS students, COUNT(*) AS results
            FROM consolidated_results WHERE grade IS NOT NULL AND TRIM(grade) != '' GROUP BY grade
        )
        GROUP BY grade
        ORDER BY grade
        """
    )


# -------------- plausibility checks --------------
_YEAR_GLOB = "[0-9][0-9][0-9][0-9]"


def list_invalid_school_years(min_year: int, max_year: int) -> list[sqlite3.Row]:
    return _query(
        f"""
        SELECT 'student' AS entity, s.id AS id, s.code, s.name, s.school_year, sc.name AS school_name,
               s.grade AS grade
        FROM students s
        LEFT JOIN schools sc ON s.school_id = sc.id
        WHERE s.school_year IS NOT NULL
          AND (s.school_year NOT GLOB '{_YEAR_GLOB}'
               OR CAST(s.school_year AS INTEGER) NOT BETWEEN ? AND ?)
        UNION ALL
        SELECT 'consolidated_result' AS entity, rc.id AS id, s.code, s.name, rc.school_year,
               sc.name AS school_name, rc.grade AS grade
        FROM consolidated_results rc
        LEFT JOIN students s ON rc.student_id = s.id
        LEFT JOIN schools sc ON rc.school_id = sc.id
        WHERE rc.school_year IS NOT NULL
          AND (rc.school_year NOT GLOB '{_YEAR_GLOB}'
               OR CAST(rc.school_year AS INTEGER) NOT BETWEEN ? AND ?)
        ORDER BY entity, id
        """,
        (min_year, max_year, min_year, max_year),
    )


_ABSENT_WITH_ANSWERS_PREDICATE = """
    rc.attendance = 'F' AND (
        COALESCE(rc.total_correct_lp, 0) + COALESCE(rc.total_correct_mat, 0) +
        COALESCE(rc.total_correct_ch, 0) + COALESCE(rc.total_correct_cn, 0)
    ) > 0
"""


def list_absent_with_answers() -> list[sqlite3.Row]:
    return _query(_CONSOLIDATED_SELECT + f" WHERE {_ABSENT_WITH_ANSWERS_PREDICATE} ORDER BY rc.id")


def list_coded_students() -> list[sqlite3.Row]:
    return _query(
        """
        SELECT s.id, s.code, s.name, s.school_year, sc.name AS school_name
        FROM students s
        LEFT JOIN schools sc ON s.school_id = sc.id
        WHERE s.code IS NOT NULL AND TRIM(s.code) != ''
        ORDER BY s.code, s.school_year, s.id
        """
    )


def list_inactive_schools_with_current_data(school_year: str) -> list[sqlite3.Row]:
    return _query(
        """
        SELECT sc.id, sc.code, sc.name, sc.region_id,
               (SELECT COUNT(*) FROM students s
                 WHERE s.school_id = sc.id AND s.active = 1 AND s.school_year = ?) AS students,
               (SELECT COUNT(*) FROM consolidated_results rc
                 WHERE rc.school_id = sc.id AND rc.school_year = ?) AS results
        FROM schools sc
        WHERE sc.active = 0
          AND (EXISTS (SELECT 1 FROM students s
                        WHERE s.school_id = sc.id AND s.active = 1 AND s.school_year = ?)
               OR EXISTS (SELECT 1 FROM consolidated_results rc
                           WHERE rc.school_id = sc.id AND rc.school_year = ?))
        ORDER BY sc.id
        """,
        (school_year, school_year, school_year, school_year),
    )


def list_student_class_grades() -> list[sqlite3.Row]:
    return _query(
        """
        SELECT s.id, s.code, s.name, s.grade AS student_grade, s.school_id, s.class_id,
               sc.name AS school_name, c.name AS class_name, c.grade AS class_grade
        FROM students s
        INNER JOIN classes c ON s.class_id = c.id
        LEFT JOIN schools sc ON s.school_id = sc.id
        WHERE s.active = 1 AND s.grade IS NOT NULL AND c.grade IS NOT NULL
        ORDER BY s.id
        """
    )


def list_problem_imports(stale_before: str) -> list[sqlite3.Row]:
    return _query(
        """
        SELECT id, file_name, status, total_rows, processed_rows, error_rows, user_name, created_at
        FROM imports
        WHERE status = 'error' OR (status = 'processing' AND created_at < ?)
        ORDER BY created_at DESC, id DESC
        """,
        (stale_before,),
    )


# -------------- emptiness checks --------------
def list_students_without_results() -> list[sqlite3.Row]:
    return _query(
        """
        SELECT s.id, s.code, s.name, s.grade, s.school_id, sc.name AS school_name
        FROM students s
        LEFT JOIN schools sc ON s.school_id = sc.id
        WHERE s.active = 1
          AND NOT EXISTS (SELECT 1 FROM consolidated_results rc WHERE rc.student_id = s.id)
        ORDER BY s.id
        """
    )


def list_schools_without_students() -> list[sqlite3.Row]:
    return _query(
        """
        SELECT sc.id, sc.code, sc.name, sc.region_id, r.name AS region_name
        FROM schools sc
        LEFT JOIN regions r ON sc.region_id = r.id
        WHERE sc.active = 1
          AND NOT EXISTS (SELECT 1 FROM students s WHERE s.school_id = sc.id)
        ORDER BY sc.id
        """
    )


def list_regions_without_schools() -> list[sqlite3.Row]:
    return _query(
        """
        SELECT r.id, r.code, r.name
        FROM regions r
        WHERE r.active = 1
          AND NOT EXISTS (SELECT 1 FROM schools sc WHERE sc.region_id = r.id)
        ORDER BY r.id
        """
    )


def list_unused_questions() -> list[sqlite3.Row]:
    return _query(
        """
        SELECT q.id, q.code, q.description, q.subject, q.grade
        FROM questions q
        WHERE NOT EXISTS (SELECT 1 FROM exam_results er WHERE er.question_id = q.id)
        ORDER BY q.id
        """
    )


_EMPTY_CLASS_PREDICATE = "NOT EXISTS (SELECT 1 FROM students s WHERE s.class_id = c.id AND s.active = 1)"


def list_empty_classes() -> list[sqlite3.Row]:
    return _query(
        f"""
        SELECT c.id, c.code, c.name, c.grade, c.school_year, c.school_id, sc.name AS school_name
        FROM classes c
        LEFT JOIN schools sc ON c.school_id = sc.id
        WHERE c.active = 1 AND {_EMPTY_CLASS_PREDICATE}
        ORDER BY c.id
        """
    )


# -------------- single-row reads (inside a correction transaction) --------------
def get_row(con: sqlite3.Connection, table: str, row_id: Any) -> Optional[sqlite3.Row]:
    if table not in _INSERTABLE:
        raise ValueError(f"Unknown table: {table}")
    return con.execute(f"SELECT * FROM {table} WHERE id = ?", (row_id,)).fetchone()


def list_students_by_code(con: sqlite3.Connection, code: str) -> list[sqlite3.Row]:
    return con.execute(
        "SELECT * FROM students WHERE code = ? ORDER BY id",
        (code,),
    ).fetchall()


# -------------- scoped writes (compare-and-set, return affected rows) --------------
def delete_orphan_exam_result(con: sqlite3.Connection, result_id: int) -> int:
    cur = con.execute(
        f"DELETE FROM exam_results WHERE id = ? AND id IN (SELECT er.id FROM exam_results er WHERE {_ORPHAN_EXAM_RESULT_PREDICATE})",
        (result_id,),
    )
    return cur.rowcount


def delete_orphan_consolidated_result(con: sqlite3.Connection, result_id: int) -> int:
    cur = con.execute(
        f"DELETE FROM consolidated_results WHERE id = ? AND id IN (SELECT rc.id FROM consolidated_results rc WHERE {_ORPHAN_CONSOLIDATED_PREDICATE})",
        (result_id,),
    )
    return cur.rowcount


def update_result_field(
    con: sqlite3.Connection,
    result_id: int,
    field: str,
    value: Any,
    expected: Any,
) -> int:
    """Set ``field`` only while it still holds ``expected``."""
    if field not in SCORE_FIELDS + TOTAL_FIELDS + ("learning_level", "school_year", "attendance"):
        raise ValueError(f"Field {field!r} is not writable")
    cur = con.execute(
        f"UPDATE consolidated_results SET {field} = ?, updated_at = ? WHERE id = ? AND {field} IS ?",
        (value, _now_iso(), result_id, expected),
    )
    return cur.rowcount


def update_result_totals(
    con: sqlite3.Connection,
    result_id: int,
    totals: Mapping[str, Optional[int]],
    expected: Mapping[str, Optional[int]],
) -> int:
    fields = [field for field in TOTAL_FIELDS if field in totals]
    if not fields:
        return 0
    assignments = ", ".join(f"{field} = ?" for field in fields)
    guards = " AND ".join(f"{field} IS ?" for field in fields)
    params: list[Any] = [totals[field] for field in fields]
    params.append(_now_iso())
    params.append(result_id)
    params.extend(expected.get(field) for field in fields)
    cur = con.execute(
        f"UPDATE consolidated_results SET {assignments}, updated_at = ? WHERE id = ? AND {guards}",
        params,
    )
    return cur.rowcount


def mark_present(con: sqlite3.Connection, result_id: int) -> int:
    cur = con.execute(
        f"UPDATE consolidated_results SET attendance = 'P', updated_at = ? WHERE id = ? AND id IN (SELECT rc.id FROM consolidated_results rc WHERE {_ABSENT_WITH_ANSWERS_PREDICATE})",
        (_now_iso(), result_id),
    )
    return cur.rowcount


def cancel_import(con: sqlite3.Connection, import_id: int, stale_before: str, note: str) -> int:
    cur = con.execute(
        """
        UPDATE imports
        SET status = 'cancelled',
            errors = CASE WHEN errors IS NULL OR errors = '' THEN ? ELSE errors || ' | ' || ? END
        WHERE id = ? AND (status = 'error' OR (status = 'processing' AND created_at < ?))
        """,
        (note, note, import_id, stale_before),
    )
    return cur.rowcount


def deactivate_empty_class(con: sqlite3.Connection, class_id: int) -> int:
    cur = con.execute(
        f"UPDATE classes SET active = 0 WHERE id = ? AND active = 1 AND {_EMPTY_CLASS_PREDICATE.replace('c.id', 'classes.id')}",
        (class_id,),
    )
    return cur.rowcount


def set_active(con: sqlite3.Connection, table: str, row_id: int, active: bool) -> int:
    if table not in ("regions", "schools", "classes", "students"):
        raise ValueError(f"Table {table!r} has no active flag")
    cur = con.execute(
        f"UPDATE {table} SET active = ? WHERE id = ? AND active = ?",
        (int(active), row_id, int(not active)),
    )
    return cur.rowcount


def reactivate_school_with_data(con: sqlite3.Connection, school_id: int, school_year: str) -> int:
    cur = con.execute(
        """
        UPDATE schools SET active = 1
        WHERE id = ? AND active = 0
          AND (EXISTS (SELECT 1 FROM students s
                        WHERE s.school_id = schools.id AND s.active = 1 AND s.school_year = ?)
               OR EXISTS (SELECT 1 FROM consolidated_results rc
                           WHERE rc.school_id = schools.id AND rc.school_year = ?))
        """,
        (school_id, school_year, school_year),
    )
    return cur.rowcount


def relink_student(
    con: sqlite3.Connection,
    student_id: int,
    school_id: int,
    class_id: Optional[int],
    expected_school_id: Optional[int],
    expected_class_id: Optional[int],
) -> int:
    cur = con.execute(
        """
        UPDATE students SET school_id = ?, class_id = ?
        WHERE id = ? AND school_id IS ? AND class_id IS ?
        """,
        (school_id, class_id, student_id, expected_school_id, expected_class_id),
    )
    return cur.rowcount


def relink_school_region(con: sqlite3.Connection, school_id: int, region_id: int, expected: Optional[int]) -> int:
    cur = con.execute(
        "UPDATE schools SET region_id = ? WHERE id = ? AND region_id IS ?",
        (region_id, school_id, expected),
    )
    return cur.rowcount


def relink_class_school(con: sqlite3.Connection, class_id: int, school_id: int, expected: Optional[int]) -> int:
    cur = con.execute(
        "UPDATE classes SET school_id = ? WHERE id = ? AND school_id IS ?",
        (school_id, class_id, expected),
    )
    return cur.rowcount


def set_answer_key(con: sqlite3.Connection, question_id: int, answer_key: str) -> int:
    cur = con.execute(
        "UPDATE questions SET answer_key = ? WHERE id = ? AND (answer_key IS NULL OR TRIM(answer_key) = '')",
        (answer_key, question_id),
    )
    return cur.rowcount


def rename_students_with_code(con: sqlite3.Connection, code: str, name: str) -> int:
    """Unify the name of every record with ``code`` while the names still diverge."""
    cur = con.execute(
        """
        UPDATE students SET name = ?
        WHERE code = ? AND name IS NOT ?
          AND (SELECT COUNT(DISTINCT LOWER(TRIM(name))) FROM students WHERE code = ?) > 1
        """,
        (name, code, name, code),
    )
    return cur.rowcount


def set_student_grade(con: sqlite3.Connection, student_id: int, grade: str, expected: Optional[str]) -> int:
    cur = con.execute(
        "UPDATE students SET grade = ? WHERE id = ? AND grade IS ?",
        (grade, student_id, expected),
    )
    return cur.rowcount


def set_school_year(
    con: sqlite3.Connection,
    table: str,
    row_id: int,
    school_year: str,
    expected: Optional[str],
) -> int:
    if table not in ("students", "consolidated_results"):
        raise ValueError(f"Table {table!r} has no school year to normalize")
    cur = con.execute(
        f"UPDATE {table} SET school_year = ? WHERE id = ? AND school_year IS ?",
        (school_year, row_id, expected),
    )
    return cur.rowcount


def merge_student(con: sqlite3.Connection, loser_id: int, winner_id: int) -> Dict[str, int]:
    """Re-point every reference from ``loser_id`` to ``winner_id`` and retire the loser.

    Consolidated rows of the loser for a school year the winner already has
    are dropped; the winner's row is canonical.
    """
    dropped = con.execute(
        """
        DELETE FROM consolidated_results
        WHERE student_id = ?
          AND EXISTS (SELECT 1 FROM consolidated_results w
                      WHERE w.student_id = ? AND w.school_year IS consolidated_results.school_year)
        """,
        (loser_id, winner_id),
    ).rowcount
    moved_results = con.execute(
        "UPDATE consolidated_results SET student_id = ? WHERE student_id = ?",
        (winner_id, loser_id),
    ).rowcount
    moved_answers = con.execute(
        "UPDATE exam_results SET student_id = ? WHERE student_id = ?",
        (winner_id, loser_id),
    ).rowcount
    retired = con.execute(
        "UPDATE students SET active = 0 WHERE id = ? AND active = 1",
        (loser_id,),
    ).rowcount
    return {
        "dropped_results": dropped,
        "moved_results": moved_results,
        "moved_answers": moved_answers,
        "retired": retired,
    }


# -------------- divergence history --------------
def insert_history(con: sqlite3.Connection, entry: Mapping[str, Any]) -> int:
    cur = con.execute(
        """
        INSERT INTO divergence_history (
          type, severity, title, entity, entity_id, entity_name,
          before_data, after_data, action, automatic, user_id, user_name, created_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            entry["type"],
            entry["severity"],
            entry["title"],
            entry.get("entity"),
            None if entry.get("entity_id") is None else str(entry["entity_id"]),
            entry.get("entity_name"),
            json_dumps(entry.get("before")),
            json_dumps(entry.get("after")),
            entry["action"],
            int(bool(entry.get("automatic"))),
            entry.get("user_id"),
            entry.get("user_name"),
            entry.get("created_at") or _now_iso(),
        ),
    )
    return int(cur.lastrowid)


def query_history(
    *,
    type: Optional[str] = None,
    severity: Optional[str] = None,
    entity: Optional[str] = None,
    entity_id: Optional[str] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> tuple[int, list[Dict[str, Any]]]:
    conditions: list[str] = []
    params: list[Any] = []
    for column, value in (
        ("type", type),
        ("severity", severity),
        ("entity", entity),
        ("entity_id", entity_id),
    ):
        if value is not None:
            conditions.append(f"{column} = ?")
            params.append(value)
    if date_from:
        conditions.append("created_at >= ?")
        params.append(date_from)
    if date_to:
        # A bare date covers the whole day.
        if len(date_to) == 10:
            conditions.append("created_at < date(?, '+1 day')")
        else:
            conditions.append("created_at <= ?")
        params.append(date_to)

    where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
    total_row = _query(f"SELECT COUNT(*) AS total FROM divergence_history {where}", params)
    total = int(total_row[0]["total"]) if total_row else 0
    rows = _query(
        f"SELECT * FROM divergence_history {where} ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?",
        [*params, int(limit), int(offset)],
    )

    data: list[Dict[str, Any]] = []
    for row in rows:
        item = dict(row)
        item["before"] = _decode_json_field(item.pop("before_data"))
        item["after"] = _decode_json_field(item.pop("after_data"))
        item["automatic"] = bool(item["automatic"])
        data.append(item)
    return total, data


def table_counts(tables: Sequence[str] = tuple(_INSERTABLE) + ("divergence_history",)) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for table in tables:
        if table not in _INSERTABLE and table != "divergence_history":
            raise ValueError(f"Unknown table: {table}")
        counts[table] = int(_query(f"SELECT COUNT(*) AS n FROM {table}")[0]["n"])
    return counts
