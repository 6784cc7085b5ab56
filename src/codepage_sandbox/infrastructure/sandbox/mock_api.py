"""Stand-in for the platform's external data API.

Runs inside the sandbox child. Every executed call is timed and reported
through ``emit``; calls past the monitor's ceiling raise ApiCallLimitExceeded
without being executed.
"""

import copy
import random
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from codepage_sandbox.infrastructure.enforcement.limits import ApiCallLimitExceeded
from codepage_sandbox.infrastructure.enforcement.monitor import ResourceMonitor


DEFAULT_FIXTURES: Dict[str, List[Dict[str, Any]]] = {
    "vehicles": [
        {"id": 1, "make": "Toyota", "model": "Camry", "price": 28000, "status": "Available"},
        {"id": 2, "make": "Honda", "model": "Accord", "price": 32000, "status": "Available"},
        {"id": 3, "make": "Ford", "model": "F-150", "price": 45000, "status": "Available"},
        {"id": 4, "make": "BMW", "model": "X5", "price": 65000, "status": "Sold"},
    ],
    "options": [
        {"id": "premium", "name": "Premium Package", "price": 2500},
        {"id": "navigation", "name": "Navigation System", "price": 1200},
        {"id": "sunroof", "name": "Sunroof", "price": 800},
        {"id": "leather", "name": "Leather Seats", "price": 1500},
    ],
    "discounts": [
        {"id": "loyalty", "name": "Loyalty Discount", "amount": 1000},
        {"id": "trade", "name": "Trade-in Credit", "amount": 3000},
        {"id": "military", "name": "Military Discount", "amount": 500},
    ],
}

# (base_ms, jitter_ms) per operation
LATENCY_MS = {
    "query": (50, 100),
    "create": (100, 200),
    "update": (80, 150),
    "delete": (60, 100),
    "get": (40, 80),
    "bulk_create": (0, 200),
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class MockExternalApi:
    """In-memory data API bound to one run's monitor."""

    def __init__(
        self,
        monitor: ResourceMonitor,
        emit: Callable[[str, Any], None],
        fixtures: Optional[Dict[str, List[Dict[str, Any]]]] = None,
        latency_scale: float = 1.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._monitor = monitor
        self._emit = emit
        self._tables = copy.deepcopy(fixtures if fixtures is not None else DEFAULT_FIXTURES)
        self._latency_scale = latency_scale
        self._sleep = sleep
        self._rng = random.Random()

    # -- plumbing -------------------------------------------------------

    def _call(self, method: str, params: Dict[str, Any], handler: Callable[[], Any], extra_ms: float = 0.0) -> Any:
        if not self._monitor.record_api_call():
            self._emit("log", f"[{_now_iso()}] ERROR: API call limit exceeded "
                              f"({self._monitor.api_call_limit}) on {method}")
            self._emit("limit", ApiCallLimitExceeded.kind)
            raise ApiCallLimitExceeded(self._monitor.api_call_limit, method)

        started = time.monotonic()
        timestamp = _now_iso()
        base, jitter = LATENCY_MS[method]
        delay_ms = (base + extra_ms + self._rng.random() * jitter) * self._latency_scale
        if delay_ms > 0:
            self._sleep(delay_ms / 1000.0)

        response = handler()
        duration_ms = (time.monotonic() - started) * 1000.0
        self._emit("api_call", {
            "method": method,
            "params": copy.deepcopy(params),
            "response": copy.deepcopy(response),
            "timestamp": timestamp,
            "duration_ms": duration_ms,
        })
        return response

    def _rows(self, table: str) -> List[Dict[str, Any]]:
        return self._tables.get(table, [])

    def _find(self, table: str, record_id: Any) -> Optional[Dict[str, Any]]:
        for row in self._rows(table):
            if row.get("id") == record_id:
                return row
        return None

    def _new_id(self) -> int:
        return self._rng.randint(1000, 10999)

    # -- operations -----------------------------------------------------

    def query(
        self,
        table: str,
        where: Optional[Dict[str, Any]] = None,
        select: Optional[List[str]] = None,
    ) -> Dict[str, Any]:
        def handler():
            rows = self._rows(table)
            matched = [
                r for r in rows
                if not where or all(r.get(k) == v for k, v in where.items())
            ]
            if select:
                matched = [{k: r.get(k) for k in select} for r in matched]
            return {
                "data": copy.deepcopy(matched),
                "metadata": {"total_records": len(rows), "skip": 0, "top": len(matched)},
            }
        return self._call("query", {"table": table, "where": where, "select": select}, handler)

    def create(self, table: str, fields: Dict[str, Any]) -> Dict[str, Any]:
        def handler():
            record_id = self._new_id()
            self._tables.setdefault(table, []).append({"id": record_id, **fields})
            return {"id": record_id, "created_date": _now_iso()}
        return self._call("create", {"table": table, "fields": fields}, handler)

    def update(self, table: str, record_id: Any, fields: Dict[str, Any]) -> Dict[str, Any]:
        def handler():
            row = self._find(table, record_id)
            if row is not None:
                row.update(fields)
            return {"id": record_id, "updated": row is not None, "updated_date": _now_iso()}
        return self._call("update", {"table": table, "record_id": record_id, "fields": fields}, handler)

    def delete(self, table: str, record_id: Any) -> Dict[str, Any]:
        def handler():
            rows = self._rows(table)
            before = len(rows)
            rows[:] = [r for r in rows if r.get("id") != record_id]
            return {"id": record_id, "deleted": len(rows) < before, "deleted_date": _now_iso()}
        return self._call("delete", {"table": table, "record_id": record_id}, handler)

    def get(self, table: str, record_id: Any) -> Dict[str, Any]:
        def handler():
            row = self._find(table, record_id)
            return {"id": record_id, "fields": copy.deepcopy(row)}
        return self._call("get", {"table": table, "record_id": record_id}, handler)

    def bulk_create(self, table: str, records: List[Dict[str, Any]]) -> Dict[str, Any]:
        count = len(records) or 1

        def handler():
            ids = []
            for fields in records:
                record_id = self._new_id()
                self._tables.setdefault(table, []).append({"id": record_id, **fields})
                ids.append(record_id)
            return {"metadata": {"created_record_ids": ids, "total_processed": len(records)}}
        return self._call("bulk_create", {"table": table, "records": records}, handler, extra_ms=50.0 * count)


class MockDataStore:
    """Engine-side holder of the fixture tables copied into every run."""

    def __init__(self, fixtures: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self._tables = copy.deepcopy(fixtures if fixtures is not None else DEFAULT_FIXTURES)
        self._lock = threading.Lock()

    def get(self, key: Optional[str] = None) -> Any:
        with self._lock:
            if key is None:
                return copy.deepcopy(self._tables)
            return copy.deepcopy(self._tables.get(key))

    def update(self, key: str, rows: List[Dict[str, Any]]) -> None:
        with self._lock:
            self._tables[key] = copy.deepcopy(rows)

    def snapshot(self) -> Dict[str, List[Dict[str, Any]]]:
        return self.get()

    def __len__(self) -> int:
        with self._lock:
            return len(self._tables)
