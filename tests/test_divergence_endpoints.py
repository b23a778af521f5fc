import asyncio
import csv
import io
import json
from typing import Optional
from urllib.parse import urlencode

import pytest

import app
import db


async def _call_app(
    method: str,
    path: str,
    *,
    payload: Optional[dict] = None,
    query: Optional[dict] = None,
    extra_headers: Optional[dict] = None,
):
    body = b""
    headers = [(b"host", b"testserver")]
    for name, value in (extra_headers or {}).items():
        headers.append((name.lower().encode(), value.encode()))
    if payload is not None:
        body = json.dumps(payload).encode("utf-8")
        headers.extend(
            [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
            ]
        )
    query_string = urlencode(query or {}, doseq=True).encode()
    scope = {
        "type": "http",
        "http_version": "1.1",
        "method": method.upper(),
        "path": path,
        "raw_path": path.encode(),
        "root_path": "",
        "scheme": "http",
        "query_string": query_string,
        "headers": headers,
        "client": ("testclient", 12345),
        "server": ("testserver", 80),
        "state": {},
    }

    messages = []

    async def receive():
        nonlocal body
        if body:
            chunk, body = body, b""
            return {"type": "http.request", "body": chunk, "more_body": False}
        return {"type": "http.disconnect"}

    async def send(message):
        messages.append(message)

    await app.app(scope, receive, send)
    status = 500
    response_headers = {}
    body_bytes = b""
    for message in messages:
        if message["type"] == "http.response.start":
            status = message["status"]
            response_headers = {k.decode(): v.decode() for k, v in message.get("headers", [])}
        elif message["type"] == "http.response.body":
            body_bytes += message.get("body", b"")
    return status, response_headers, body_bytes


def _json(result) -> tuple[int, dict]:
    status, _, body = result
    return status, json.loads(body.decode("utf-8") or "{}")


def _post(path: str, payload: Optional[dict] = None, headers: Optional[dict] = None) -> tuple[int, dict]:
    return _json(asyncio.run(_call_app("POST", path, payload=payload or {}, extra_headers=headers)))


def _get(path: str, query: Optional[dict] = None) -> tuple[int, dict]:
    return _json(asyncio.run(_call_app("GET", path, query=query)))


@pytest.fixture
def service(school):
    app.resolver.invalidate()
    app.response_cache.invalidate()
    yield school
    app.resolver.invalidate()
    app.response_cache.invalidate()


def _seed_average_mismatch(school):
    student_id = db.insert_student("Ana Souza", "A1", school["school_id"], school["class_id"],
                                   grade="5th grade", school_year="2024")
    db.upsert_grade_configuration({"grade": "5", "grade_name": "5th grade", "items_lp": 14, "items_mat": 20,
                                   "evaluates_ch": 0, "evaluates_cn": 0, "has_essay": 1, "essay_items": 8,
                                   "uses_learning_level": 1})
    return db.insert_consolidated_result(
        student_id=student_id,
        school_id=school["school_id"],
        class_id=school["class_id"],
        school_year="2024",
        grade="5th grade",
        attendance="P",
        score_lp=6,
        score_mat=8,
        essay_score=8,
        average=5.0,
        learning_level="Adequate",
    )


def test_list_divergences_returns_summary(service):
    result_id = _seed_average_mismatch(service)

    status, payload = _get("/divergences")
    assert status == 200
    assert payload["summary"]["important"] == 1
    assert payload["summary"]["failed_checks"] == 0
    types = [item["type"] for item in payload["divergences"]]
    assert "medias_inconsistentes" in types

    status, payload = _get("/divergences", {"severity": "important"})
    assert [item["type"] for item in payload["divergences"]] == ["medias_inconsistentes"]
    detail = payload["divergences"][0]["details"][0]
    assert detail["id"] == str(result_id)
    assert detail["expected_value"] == 7.33


def test_unknown_filters_are_bad_requests(service):
    status, _ = _get("/divergences", {"severity": "urgent"})
    assert status == 400
    status, _ = _get("/divergences", {"type": "nope"})
    assert status == 400
    status, _ = _get("/divergences/export", {"format": "xml"})
    assert status == 400


def test_single_check_and_unknown_type(service):
    _seed_average_mismatch(service)
    status, payload = _get("/divergences/medias_inconsistentes")
    assert status == 200
    assert payload["count"] == 1
    assert payload["status"] == "ok"
    assert payload["auto_fixable"] is True

    status, _ = _get("/divergences/not_a_check")
    assert status == 404


def test_run_returns_message(service):
    status, payload = _post("/divergences/run")
    assert status == 200
    assert payload["message"].startswith("Detection finished")


def test_critical_count_is_cached_until_a_fix(service):
    db.insert_exam_result(student_id=404, subject="lp", school_year="2024", correct=1)

    status, payload = _get("/divergences/critical-count")
    assert status == 200
    assert payload == {"critical": 1, "cached": False}
    _, payload = _get("/divergences/critical-count")
    assert payload == {"critical": 1, "cached": True}

    status, payload = _post("/divergences/fix", {"type": "resultados_orfaos", "fix_all": True})
    assert status == 200
    assert payload["corrected"] == 1

    _, payload = _get("/divergences/critical-count")
    assert payload == {"critical": 0, "cached": False}


def test_fix_requires_confirmation_for_attended_types(service):
    db.insert_student("Ana", "A1", service["school_id"])
    db.insert_student("Ana", "A1", service["school_id"])

    status, payload = _post("/divergences/fix", {"type": "alunos_duplicados", "fix_all": True})
    assert status == 403
    assert "confirmation" in payload["detail"]

    status, _ = _post("/divergences/fix", {"type": "alunos_duplicados"}, {})
    assert status == 403

    status, payload = _post(
        "/divergences/fix",
        {"type": "alunos_duplicados", "fix_all": True, "confirmation_token": "ok"},
    )
    assert status == 200
    assert payload["corrected"] == 1


def test_fix_validation_errors(service):
    status, _ = _post("/divergences/fix", {"type": "nope", "fix_all": True})
    assert status == 400
    status, _ = _post("/divergences/fix", {"type": "medias_inconsistentes"})
    assert status == 400
    status, _ = _post("/divergences/fix", {"type": "polos_sem_escolas", "fix_all": True, "confirmation_token": "x"})
    assert status == 403


def test_fix_records_actor_in_history(service):
    result_id = _seed_average_mismatch(service)

    status, payload = _post(
        "/divergences/fix",
        {"type": "medias_inconsistentes", "ids": [result_id]},
        {"X-User-Id": "u-7", "X-User-Name": "Maria"},
    )
    assert status == 200
    assert payload["success"] is True
    assert payload["corrected"] == 1

    status, history = _get("/divergences/history", {"type": "medias_inconsistentes"})
    assert status == 200
    assert history["total"] == 1
    item = history["items"][0]
    assert item["user_id"] == "u-7"
    assert item["user_name"] == "Maria"
    assert item["before"] == {"average": 5.0}
    assert item["automatic"] is True

    status, _ = _get("/divergences/history", {"page": -1})
    assert status == 400


def test_export_csv_and_json(service):
    _seed_average_mismatch(service)

    status, headers, body = asyncio.run(_call_app("GET", "/divergences/export", query={"format": "csv"}))
    assert status == 200
    assert headers["content-type"].startswith("text/csv")
    assert "attachment" in headers["content-disposition"]
    rows = list(csv.reader(io.StringIO(body.decode("utf-8"))))
    assert rows[0][:3] == ["severity", "type", "title"]
    assert any(row[1] == "medias_inconsistentes" for row in rows[1:])

    status, payload = _json(
        asyncio.run(_call_app("GET", "/divergences/export", query={"format": "json", "severity": "important"}))
    )
    assert status == 200
    assert {item["severity"] for item in payload["divergences"]} == {"important"}


def test_grade_config_endpoints(service):
    status, payload = _get("/grade-configs/5")
    assert status == 200
    assert payload["source"] == "default"
    assert payload["total_objective_items"] == 34

    status, _ = _get("/grade-configs/7")
    assert status == 404

    db.upsert_grade_configuration({"grade": "7", "grade_name": "7th grade", "items_lp": 10})
    status, _ = _post("/grade-configs/invalidate")
    assert status == 200
    status, payload = _get("/grade-configs")
    assert [config["grade"] for config in payload["configurations"]] == ["7"]
    assert payload["degraded"] is False


def test_composite_endpoint(service):
    status, payload = _post(
        "/scores/composite",
        {"grade": "9th grade", "scores": {"LP": 8, "MAT": 0, "CH": 7, "CN": 9}},
    )
    assert status == 200
    assert payload["composite"] == 8.0
    assert payload["level"] is None

    status, payload = _post(
        "/scores/composite",
        {"grade": "5th grade", "scores": {"lp": 6, "mat": 8}, "essay_score": 8},
    )
    assert payload["composite"] == 7.33
    assert payload["level"]["code"] == "adequado"

    status, _ = _post("/scores/composite", {"grade": "7th grade", "scores": {"lp": 5}})
    assert status == 404
