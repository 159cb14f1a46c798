"""
Deal Stores

Keyed map of deal id -> Deal with whole-record read/write. There are no
partial-field updates: callers read a deal, mutate it, and put it back.

Single-writer model: nothing here arbitrates between two processes writing
the same deal.
"""

import copy
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from threading import Lock
from typing import Dict, List, Optional
import structlog

from ..core.deal import Deal
from ..core.errors import NotFoundError
from .database import Database, get_database

logger = structlog.get_logger()


class DealStore(ABC):
    """Whole-record deal persistence."""

    @abstractmethod
    def find(self, deal_id: str) -> Optional[Deal]:
        ...

    @abstractmethod
    def put(self, deal: Deal) -> None:
        ...

    @abstractmethod
    def list(self) -> List[Deal]:
        ...

    def get(self, deal_id: str) -> Deal:
        """Return the deal or raise NotFoundError."""
        deal = self.find(deal_id)
        if deal is None:
            raise NotFoundError(f"Unknown deal: {deal_id}")
        return deal


class InMemoryDealStore(DealStore):
    """Dict-backed store. Records are copied on the way in and out."""

    def __init__(self):
        self._deals: Dict[str, dict] = {}
        self._lock = Lock()

    def find(self, deal_id: str) -> Optional[Deal]:
        with self._lock:
            record = self._deals.get(deal_id)
        return Deal.from_dict(copy.deepcopy(record)) if record else None

    def put(self, deal: Deal) -> None:
        with self._lock:
            self._deals[deal.deal_id] = deal.to_dict()

    def list(self) -> List[Deal]:
        with self._lock:
            records = list(self._deals.values())
        return [Deal.from_dict(copy.deepcopy(r)) for r in records]


class SqlDealStore(DealStore):
    """Store deals as JSON records in SQLite or PostgreSQL."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()
        self.db.initialize()

    def _decode(self, row: Dict) -> Deal:
        record = row["record"]
        if isinstance(record, str):
            record = json.loads(record)
        return Deal.from_dict(record)

    def find(self, deal_id: str) -> Optional[Deal]:
        p = self.db.placeholder
        rows = self.db.execute(f"SELECT record FROM deals WHERE deal_id = {p}", (deal_id,))
        return self._decode(rows[0]) if rows else None

    def put(self, deal: Deal) -> None:
        p = self.db.placeholder
        self.db.execute(
            f"""INSERT INTO deals (deal_id, status, record, created_at, updated_at)
               VALUES ({p}, {p}, {p}, {p}, {p})
               ON CONFLICT (deal_id) DO UPDATE SET
                   status = excluded.status,
                   record = excluded.record,
                   updated_at = excluded.updated_at""",
            (
                deal.deal_id,
                deal.status.value,
                json.dumps(deal.to_dict()),
                deal.created_at.isoformat(),
                deal.updated_at.isoformat(),
            )
        )
        logger.debug("deal_persisted", deal_id=deal.deal_id, status=deal.status.value)

    def list(self) -> List[Deal]:
        rows = self.db.execute("SELECT record FROM deals ORDER BY created_at ASC")
        return [self._decode(r) for r in rows]


class JsonFileDealStore(DealStore):
    """
    Keyed JSON map on disk ({deal_id: record}).

    Reads tolerate the legacy record layouts; writes always use the canonical
    schema. Each put rewrites the file through a temp file and os.replace.
    """

    def __init__(self, path: str):
        self.path = Path(path)
        self._lock = Lock()

    def _read_all(self) -> Dict[str, dict]:
        if not self.path.exists():
            return {}
        raw = self.path.read_text(encoding="utf-8").strip()
        if not raw:
            return {}
        try:
            return json.loads(raw)
        except json.JSONDecodeError as e:
            raise ValueError(f"Failed to read deals file {self.path}: {e}")

    def _write_all(self, records: Dict[str, dict]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp.write_text(json.dumps(records, indent=2), encoding="utf-8")
        os.replace(tmp, self.path)

    def find(self, deal_id: str) -> Optional[Deal]:
        with self._lock:
            record = self._read_all().get(deal_id)
        return Deal.from_dict(record) if record else None

    def put(self, deal: Deal) -> None:
        with self._lock:
            records = self._read_all()
            records[deal.deal_id] = deal.to_dict()
            self._write_all(records)

    def list(self) -> List[Deal]:
        with self._lock:
            records = self._read_all()
        return [Deal.from_dict(r) for r in records.values()]


def build_store(database_url: str) -> DealStore:
    """Pick a store from a URL: memory://, json:///path, sqlite:///path or postgres://..."""
    if database_url.startswith("memory://"):
        return InMemoryDealStore()
    if database_url.startswith("json:///"):
        return JsonFileDealStore(database_url[len("json:///"):])
    return SqlDealStore(Database(database_url))
