"""Append-only audit trail of applied divergence corrections."""

from __future__ import annotations

import logging
import math
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import db
from engines.validation import validate_history_filters

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("integrity.audit")

MAX_PAGE_SIZE = 100


@dataclass(frozen=True)
class HistoryEntry:
    type: str
    severity: str
    title: str
    action: str
    automatic: bool
    entity: Optional[str] = None
    entity_id: Optional[str] = None
    entity_name: Optional[str] = None
    before: Any = None
    after: Any = None
    user_id: Optional[str] = None
    user_name: Optional[str] = None

    def as_record(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "severity": self.severity,
            "title": self.title,
            "action": self.action,
            "automatic": self.automatic,
            "entity": self.entity,
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "before": self.before,
            "after": self.after,
            "user_id": self.user_id,
            "user_name": self.user_name,
        }


@dataclass
class HistoryPage:
    items: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 50

    @property
    def pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": self.items,
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
            "pages": self.pages,
        }


class HistoryStore:
    """Write and page through correction history.

    Entries are never updated or deleted.
    """

    def append(self, entry: HistoryEntry, con: Optional[sqlite3.Connection] = None) -> int:
        """Persist ``entry``; with ``con`` the insert joins the caller's transaction.

        The audit line is written here only for entries committed by this
        call. Callers passing ``con`` call :meth:`audit` once they commit.
        """
        record = entry.as_record()
        if con is not None:
            return db.insert_history(con, record)
        with db.transaction() as own:
            entry_id = db.insert_history(own, record)
        self.audit(entry)
        return entry_id

    def audit(self, entry: HistoryEntry) -> None:
        audit_logger.info(
            "%s %s on %s:%s by %s (%s)",
            entry.action,
            entry.type,
            entry.entity,
            entry.entity_id,
            entry.user_name or entry.user_id or "system",
            "automatic" if entry.automatic else "confirmed",
        )

    def query(self, filters: Optional[Dict[str, Any]] = None) -> HistoryPage:
        cleaned = validate_history_filters(dict(filters or {}), max_limit=MAX_PAGE_SIZE)
        page = cleaned.pop("page")
        limit = cleaned.pop("limit")
        criteria = {
            key: cleaned.get(key)
            for key in ("type", "severity", "entity", "entity_id", "date_from", "date_to")
            if cleaned.get(key) not in (None, "")
        }
        total, rows = db.query_history(limit=limit, offset=(page - 1) * limit, **criteria)
        logger.debug("History query %s returned %d of %d", criteria, len(rows), total)
        return HistoryPage(items=rows, total=total, page=page, limit=limit)
