import pytest

import db
from engines.history import HistoryEntry
from engines.validation import InvalidFixRequest


def _entry(type_="medias_inconsistentes", severity="important", entity_id="1", **kwargs):
    return HistoryEntry(
        type=type_,
        severity=severity,
        title="Inconsistent Averages",
        action=kwargs.pop("action", "recompute"),
        automatic=kwargs.pop("automatic", True),
        entity=kwargs.pop("entity", "consolidated_result"),
        entity_id=entity_id,
        **kwargs,
    )


def _backdate(entry_id, created_at):
    with db.transaction() as con:
        con.execute("UPDATE divergence_history SET created_at = ? WHERE id = ?", (created_at, entry_id))


def test_append_round_trips_snapshots(history):
    entry_id = history.append(
        _entry(before={"average": 5.0}, after={"average": 7.33}, user_id="u1", user_name="Maria")
    )
    page = history.query({})
    assert page.total == 1
    item = page.items[0]
    assert item["id"] == entry_id
    assert item["before"] == {"average": 5.0}
    assert item["after"] == {"average": 7.33}
    assert item["automatic"] is True
    assert item["user_name"] == "Maria"


def test_newest_first_and_paging(history):
    ids = [history.append(_entry(entity_id=str(n))) for n in range(5)]
    for offset, entry_id in enumerate(ids):
        _backdate(entry_id, f"2024-03-0{offset + 1}T10:00:00+00:00")

    first = history.query({"page": 1, "limit": 2})
    assert [item["entity_id"] for item in first.items] == ["4", "3"]
    assert first.total == 5
    assert first.pages == 3

    last = history.query({"page": 3, "limit": 2})
    assert [item["entity_id"] for item in last.items] == ["0"]


def test_filters_combine(history):
    history.append(_entry(entity_id="1"))
    history.append(_entry(type_="resultados_orfaos", severity="critical", entity="exam_result", entity_id="9"))
    history.append(_entry(entity_id="2"))

    assert history.query({"type": "resultados_orfaos"}).total == 1
    assert history.query({"severity": "important"}).total == 2
    assert history.query({"entity": "consolidated_result", "entity_id": "2"}).total == 1
    assert history.query({"type": "medias_inconsistentes", "entity_id": "9"}).total == 0


def test_date_range_includes_whole_end_day(history):
    early = history.append(_entry(entity_id="1"))
    late = history.append(_entry(entity_id="2"))
    after = history.append(_entry(entity_id="3"))
    _backdate(early, "2024-03-01T08:00:00+00:00")
    _backdate(late, "2024-03-02T23:30:00+00:00")
    _backdate(after, "2024-03-03T00:10:00+00:00")

    page = history.query({"date_from": "2024-03-01", "date_to": "2024-03-02"})
    assert sorted(item["entity_id"] for item in page.items) == ["1", "2"]


def test_limit_is_clamped(history):
    page = history.query({"limit": 1000})
    assert page.limit == 100


@pytest.mark.parametrize("filters", [{"page": -1}, {"limit": -1}, {"page": "x"}])
def test_invalid_paging_is_rejected(history, filters):
    with pytest.raises(InvalidFixRequest):
        history.query(filters)


def test_append_joins_caller_transaction(history):
    with db.transaction() as con:
        history.append(_entry(), con=con)
        con.rollback()
    assert history.query({}).total == 0
