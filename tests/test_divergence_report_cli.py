import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import db
from scripts import divergence_report


def test_clean_database_exits_zero(temp_db, capsys):
    exit_code = divergence_report.main([])
    captured = capsys.readouterr()
    assert exit_code == 0
    assert captured.out.startswith("Divergences: 0 (critical 0")


def test_critical_divergence_exits_one_and_writes_report(temp_db, tmp_path, capsys):
    db.insert_exam_result(student_id=77, subject="lp", school_year="2024", correct=1)
    output = tmp_path / "report.json"

    exit_code = divergence_report.main(["--json", "--output", str(output)])
    captured = capsys.readouterr()
    assert exit_code == 1
    written = json.loads(output.read_text(encoding="utf-8"))
    assert written["summary"]["critical"] == 1
    assert json.loads(captured.out)["divergences"][0]["type"] == "resultados_orfaos"


def test_fix_all_applies_correction(temp_db, capsys):
    orphan = db.insert_exam_result(student_id=77, subject="lp", school_year="2024", correct=1)

    exit_code = divergence_report.main(["--fix", "resultados_orfaos", "--all", "--user", "ops"])
    captured = capsys.readouterr()
    assert exit_code == 0
    assert "1 corrected" in captured.out
    with db._conn() as con:
        assert db.get_row(con, "exam_results", orphan) is None
    _, entries = db.query_history()
    assert entries[0]["user_name"] == "ops"


def test_unconfirmed_fix_is_rejected(temp_db, capsys):
    exit_code = divergence_report.main(["--fix", "alunos_duplicados", "--all"])
    captured = capsys.readouterr()
    assert exit_code == 2
    assert "requires operator confirmation" in captured.err
