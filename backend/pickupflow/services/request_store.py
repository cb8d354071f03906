"""SQLite-backed store for requests, assignments, processed records and the activity log."""
from __future__ import annotations

import json
import math
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Dict, Iterator, List, Optional

from pickupflow.core.config import get_settings
from pickupflow.core.errors import ConflictError
from pickupflow.core.logging import logger
from pickupflow.models.lifecycle import (
    ActivityEvent,
    Assignment,
    AssignmentStatus,
    Outcome,
    Page,
    PickupRequest,
    ProcessedRecord,
    RequestStatus,
)


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _iso(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


class RequestStore:
    """Durable state for the pickup lifecycle.

    Every mutation runs inside :meth:`transaction`, which holds the per-database
    lock for in-process writers and a ``BEGIN IMMEDIATE`` write lock for other
    processes sharing the file. Rows carry a ``version`` column; ``save_*``
    methods are compare-and-swap writes that raise :class:`ConflictError` when
    the stored version moved underneath the caller.
    """

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: str | None = None) -> None:
        settings = get_settings()
        path = (db_path or settings.db_path or "").strip() or "./data/pickupflow.db"

        self._db_path = Path(path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._idempotency_retention = settings.idempotency_retention
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._tx_depth = 0
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
            isolation_level=None,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._initialize_schema()

    @classmethod
    def _get_shared_lock(cls, key: str) -> RLock:
        with cls._lock_registry_guard:
            lock = cls._lock_registry.get(key)
            if lock is None:
                lock = RLock()
                cls._lock_registry[key] = lock
            return lock

    @property
    def db_path(self) -> Path:
        return self._db_path

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sequences (
                    tenant_id TEXT NOT NULL,
                    key_name TEXT NOT NULL,
                    next_value INTEGER NOT NULL,
                    PRIMARY KEY (tenant_id, key_name)
                );

                CREATE TABLE IF NOT EXISTS requests (
                    tenant_id TEXT NOT NULL,
                    request_id TEXT NOT NULL,
                    request_code TEXT NOT NULL,
                    requester_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    deleted_at TEXT,
                    version INTEGER NOT NULL,
                    data_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, request_id)
                );

                CREATE INDEX IF NOT EXISTS idx_requests_tenant_status ON requests (tenant_id, status);
                CREATE INDEX IF NOT EXISTS idx_requests_tenant_requester ON requests (tenant_id, requester_id);

                CREATE TABLE IF NOT EXISTS assignments (
                    tenant_id TEXT NOT NULL,
                    assignment_id TEXT NOT NULL,
                    request_id TEXT NOT NULL,
                    courier_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    assigned_at TEXT NOT NULL,
                    superseded_at TEXT,
                    version INTEGER NOT NULL,
                    data_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, assignment_id)
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_assignments_one_active
                    ON assignments (tenant_id, request_id)
                    WHERE superseded_at IS NULL AND status != 'completed';
                CREATE INDEX IF NOT EXISTS idx_assignments_tenant_request ON assignments (tenant_id, request_id);
                CREATE INDEX IF NOT EXISTS idx_assignments_tenant_courier ON assignments (tenant_id, courier_id);

                CREATE TABLE IF NOT EXISTS processed_records (
                    tenant_id TEXT NOT NULL,
                    processed_id TEXT NOT NULL,
                    request_id TEXT NOT NULL,
                    outcome TEXT NOT NULL,
                    finalized_by TEXT NOT NULL,
                    courier_id TEXT,
                    finalized_at TEXT NOT NULL,
                    deleted_at TEXT,
                    version INTEGER NOT NULL,
                    data_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, processed_id),
                    UNIQUE (tenant_id, request_id)
                );

                CREATE INDEX IF NOT EXISTS idx_processed_tenant_outcome ON processed_records (tenant_id, outcome);
                CREATE INDEX IF NOT EXISTS idx_processed_tenant_courier ON processed_records (tenant_id, courier_id);

                CREATE TABLE IF NOT EXISTS activity_events (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    tenant_id TEXT NOT NULL,
                    event_id TEXT NOT NULL,
                    request_id TEXT,
                    entity_type TEXT NOT NULL,
                    entity_id TEXT NOT NULL,
                    action TEXT NOT NULL,
                    actor_id TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    metadata_json TEXT NOT NULL,
                    UNIQUE (tenant_id, event_id)
                );

                CREATE INDEX IF NOT EXISTS idx_events_tenant_request ON activity_events (tenant_id, request_id);
                CREATE INDEX IF NOT EXISTS idx_events_tenant_entity ON activity_events (tenant_id, entity_id);

                CREATE TABLE IF NOT EXISTS idempotency (
                    tenant_id TEXT NOT NULL,
                    key_name TEXT NOT NULL,
                    stored_at TEXT NOT NULL,
                    response_json TEXT NOT NULL,
                    PRIMARY KEY (tenant_id, key_name)
                );

                CREATE INDEX IF NOT EXISTS idx_idempotency_tenant_time ON idempotency (tenant_id, stored_at);
                """
            )

    @contextmanager
    def transaction(self) -> Iterator["RequestStore"]:
        """Apply every write in the block atomically, or none of them.

        Nested calls join the outermost transaction.
        """
        with self._lock:
            if self._tx_depth:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return

            self._conn.execute("BEGIN IMMEDIATE")
            self._tx_depth = 1
            try:
                yield self
            except BaseException as exc:
                self._conn.execute("ROLLBACK")
                logger.debug("Store transaction rolled back", db_path=str(self._db_path), error=str(exc))
                raise
            else:
                self._conn.execute("COMMIT")
            finally:
                self._tx_depth = 0

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # ------------------------------------------------------------------
    # Sequences and idempotency

    def next_sequence(self, tenant_id: str, key: str) -> int:
        with self.transaction():
            row = self._conn.execute(
                "SELECT next_value FROM sequences WHERE tenant_id = ? AND key_name = ?",
                (tenant_id, key),
            ).fetchone()
            if row is None:
                current = 1
                self._conn.execute(
                    "INSERT INTO sequences (tenant_id, key_name, next_value) VALUES (?, ?, ?)",
                    (tenant_id, key, current + 1),
                )
            else:
                current = int(row["next_value"])
                self._conn.execute(
                    "UPDATE sequences SET next_value = ? WHERE tenant_id = ? AND key_name = ?",
                    (current + 1, tenant_id, key),
                )
            return current

    def generate_request_code(self, tenant_id: str) -> str:
        return f"REQ-{self.next_sequence(tenant_id, 'request'):05d}"

    def get_idempotent(self, tenant_id: str, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT response_json FROM idempotency WHERE tenant_id = ? AND key_name = ?",
                (tenant_id, key),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["response_json"])

    def set_idempotent(self, tenant_id: str, key: str, response: Dict[str, Any]) -> None:
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO idempotency (tenant_id, key_name, stored_at, response_json)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(tenant_id, key_name)
                DO UPDATE SET stored_at = excluded.stored_at, response_json = excluded.response_json
                """,
                (tenant_id, key, _utc_now_iso(), _json_dumps(response)),
            )
            self._conn.execute(
                """
                DELETE FROM idempotency
                WHERE tenant_id = ?
                  AND key_name NOT IN (
                    SELECT key_name FROM idempotency
                    WHERE tenant_id = ?
                    ORDER BY stored_at DESC
                    LIMIT ?
                  )
                """,
                (tenant_id, tenant_id, self._idempotency_retention),
            )

    # ------------------------------------------------------------------
    # Requests

    def insert_request(self, request: PickupRequest) -> PickupRequest:
        with self.transaction():
            try:
                self._conn.execute(
                    """
                    INSERT INTO requests (
                        tenant_id, request_id, request_code, requester_id, status,
                        created_at, deleted_at, version, data_json
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        request.tenant_id,
                        request.request_id,
                        request.request_code,
                        request.requester_id,
                        request.status.value,
                        _iso(request.created_at),
                        _iso(request.deleted_at),
                        request.version,
                        request.model_dump_json(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError(f"Request {request.request_id} already exists") from exc
        return request

    def save_request(self, request: PickupRequest, expected_version: int) -> PickupRequest:
        updated = request.model_copy(
            update={"version": expected_version + 1, "updated_at": datetime.now(timezone.utc)}
        )
        with self.transaction():
            cursor = self._conn.execute(
                """
                UPDATE requests
                SET status = ?, deleted_at = ?, version = ?, data_json = ?
                WHERE tenant_id = ? AND request_id = ? AND version = ?
                """,
                (
                    updated.status.value,
                    _iso(updated.deleted_at),
                    updated.version,
                    updated.model_dump_json(),
                    updated.tenant_id,
                    updated.request_id,
                    expected_version,
                ),
            )
            if cursor.rowcount == 0:
                raise ConflictError(
                    f"Request {request.request_id} was modified concurrently",
                    request_id=request.request_id,
                    expected_version=expected_version,
                )
        return updated

    def get_request(self, tenant_id: str, request_id: str) -> Optional[PickupRequest]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM requests WHERE tenant_id = ? AND request_id = ?",
                (tenant_id, request_id),
            ).fetchone()
        if not row:
            return None
        return PickupRequest.model_validate_json(row["data_json"])

    def list_requests(
        self,
        tenant_id: str,
        *,
        status: Optional[RequestStatus] = None,
        requester_id: Optional[str] = None,
        include_deleted: bool = False,
        page: int = 1,
        page_size: int = 25,
    ) -> Page:
        clauses = ["tenant_id = ?"]
        params: List[Any] = [tenant_id]
        if not include_deleted:
            clauses.append("deleted_at IS NULL")
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        if requester_id:
            clauses.append("requester_id = ?")
            params.append(requester_id)
        rows, total = self._paged(
            "requests", clauses, params, order_by="created_at DESC", page=page, page_size=page_size
        )
        items = [PickupRequest.model_validate_json(row["data_json"]) for row in rows]
        return self._page(items, total, page, page_size)

    # ------------------------------------------------------------------
    # Assignments

    def insert_assignment(self, assignment: Assignment) -> Assignment:
        with self.transaction():
            try:
                self._conn.execute(
                    """
                    INSERT INTO assignments (
                        tenant_id, assignment_id, request_id, courier_id, status,
                        assigned_at, superseded_at, version, data_json
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        assignment.tenant_id,
                        assignment.assignment_id,
                        assignment.request_id,
                        assignment.courier_id,
                        assignment.status.value,
                        _iso(assignment.assigned_at),
                        _iso(assignment.superseded_at),
                        assignment.version,
                        assignment.model_dump_json(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError(
                    f"Request {assignment.request_id} already has an active assignment",
                    request_id=assignment.request_id,
                ) from exc
        return assignment

    def save_assignment(self, assignment: Assignment, expected_version: int) -> Assignment:
        updated = assignment.model_copy(update={"version": expected_version + 1})
        with self.transaction():
            try:
                cursor = self._conn.execute(
                    """
                    UPDATE assignments
                    SET courier_id = ?, status = ?, superseded_at = ?, version = ?, data_json = ?
                    WHERE tenant_id = ? AND assignment_id = ? AND version = ?
                    """,
                    (
                        updated.courier_id,
                        updated.status.value,
                        _iso(updated.superseded_at),
                        updated.version,
                        updated.model_dump_json(),
                        updated.tenant_id,
                        updated.assignment_id,
                        expected_version,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError(
                    f"Request {assignment.request_id} already has an active assignment",
                    request_id=assignment.request_id,
                ) from exc
            if cursor.rowcount == 0:
                raise ConflictError(
                    f"Assignment {assignment.assignment_id} was modified concurrently",
                    assignment_id=assignment.assignment_id,
                    expected_version=expected_version,
                )
        return updated

    def get_assignment(self, tenant_id: str, assignment_id: str) -> Optional[Assignment]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM assignments WHERE tenant_id = ? AND assignment_id = ?",
                (tenant_id, assignment_id),
            ).fetchone()
        if not row:
            return None
        return Assignment.model_validate_json(row["data_json"])

    def active_assignment(self, tenant_id: str, request_id: str) -> Optional[Assignment]:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT data_json FROM assignments
                WHERE tenant_id = ? AND request_id = ?
                  AND superseded_at IS NULL AND status != ?
                """,
                (tenant_id, request_id, AssignmentStatus.COMPLETED.value),
            ).fetchone()
        if not row:
            return None
        return Assignment.model_validate_json(row["data_json"])

    def assignments_for_request(self, tenant_id: str, request_id: str) -> List[Assignment]:
        """Every assignment ever made for a request, superseded ones included."""
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT data_json FROM assignments
                WHERE tenant_id = ? AND request_id = ?
                ORDER BY assigned_at ASC
                """,
                (tenant_id, request_id),
            ).fetchall()
        return [Assignment.model_validate_json(row["data_json"]) for row in rows]

    def list_assignments(
        self,
        tenant_id: str,
        *,
        status: Optional[AssignmentStatus] = None,
        courier_id: Optional[str] = None,
        request_id: Optional[str] = None,
        include_superseded: bool = False,
        page: int = 1,
        page_size: int = 25,
    ) -> Page:
        clauses = ["tenant_id = ?"]
        params: List[Any] = [tenant_id]
        if not include_superseded:
            clauses.append("superseded_at IS NULL")
        if status:
            clauses.append("status = ?")
            params.append(status.value)
        if courier_id:
            clauses.append("courier_id = ?")
            params.append(courier_id)
        if request_id:
            clauses.append("request_id = ?")
            params.append(request_id)
        rows, total = self._paged(
            "assignments", clauses, params, order_by="assigned_at DESC", page=page, page_size=page_size
        )
        items = [Assignment.model_validate_json(row["data_json"]) for row in rows]
        return self._page(items, total, page, page_size)

    # ------------------------------------------------------------------
    # Processed records

    def insert_processed(self, record: ProcessedRecord) -> ProcessedRecord:
        with self.transaction():
            try:
                self._conn.execute(
                    """
                    INSERT INTO processed_records (
                        tenant_id, processed_id, request_id, outcome, finalized_by,
                        courier_id, finalized_at, deleted_at, version, data_json
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.tenant_id,
                        record.processed_id,
                        record.request_id,
                        record.outcome.value,
                        record.finalized_by,
                        record.courier_id,
                        _iso(record.finalized_at),
                        _iso(record.deleted_at),
                        record.version,
                        record.model_dump_json(),
                    ),
                )
            except sqlite3.IntegrityError as exc:
                raise ConflictError(
                    f"Request {record.request_id} is already finalized",
                    request_id=record.request_id,
                ) from exc
        return record

    def save_processed(self, record: ProcessedRecord, expected_version: int) -> ProcessedRecord:
        updated = record.model_copy(update={"version": expected_version + 1})
        with self.transaction():
            cursor = self._conn.execute(
                """
                UPDATE processed_records
                SET courier_id = ?, deleted_at = ?, version = ?, data_json = ?
                WHERE tenant_id = ? AND processed_id = ? AND version = ?
                """,
                (
                    updated.courier_id,
                    _iso(updated.deleted_at),
                    updated.version,
                    updated.model_dump_json(),
                    updated.tenant_id,
                    updated.processed_id,
                    expected_version,
                ),
            )
            if cursor.rowcount == 0:
                raise ConflictError(
                    f"Processed record {record.processed_id} was modified concurrently",
                    processed_id=record.processed_id,
                    expected_version=expected_version,
                )
        return updated

    def get_processed(self, tenant_id: str, processed_id: str) -> Optional[ProcessedRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM processed_records WHERE tenant_id = ? AND processed_id = ?",
                (tenant_id, processed_id),
            ).fetchone()
        if not row:
            return None
        return ProcessedRecord.model_validate_json(row["data_json"])

    def processed_for_request(self, tenant_id: str, request_id: str) -> Optional[ProcessedRecord]:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM processed_records WHERE tenant_id = ? AND request_id = ?",
                (tenant_id, request_id),
            ).fetchone()
        if not row:
            return None
        return ProcessedRecord.model_validate_json(row["data_json"])

    def list_processed(
        self,
        tenant_id: str,
        *,
        outcome: Optional[Outcome] = None,
        courier_id: Optional[str] = None,
        finalized_by: Optional[str] = None,
        include_deleted: bool = False,
        page: int = 1,
        page_size: int = 25,
    ) -> Page:
        clauses = ["tenant_id = ?"]
        params: List[Any] = [tenant_id]
        if not include_deleted:
            clauses.append("deleted_at IS NULL")
        if outcome:
            clauses.append("outcome = ?")
            params.append(outcome.value)
        if courier_id:
            clauses.append("courier_id = ?")
            params.append(courier_id)
        if finalized_by:
            clauses.append("finalized_by = ?")
            params.append(finalized_by)
        rows, total = self._paged(
            "processed_records", clauses, params, order_by="finalized_at DESC", page=page, page_size=page_size
        )
        items = [ProcessedRecord.model_validate_json(row["data_json"]) for row in rows]
        return self._page(items, total, page, page_size)

    def all_processed(self, tenant_id: str) -> List[ProcessedRecord]:
        with self._lock:
            rows = self._conn.execute(
                """
                SELECT data_json FROM processed_records
                WHERE tenant_id = ? AND deleted_at IS NULL
                ORDER BY finalized_at DESC
                """,
                (tenant_id,),
            ).fetchall()
        return [ProcessedRecord.model_validate_json(row["data_json"]) for row in rows]

    def evidence_in_use(self, reference: str) -> bool:
        """Whether any request, assignment or processed record in any tenant holds ``reference``.

        Blob references are content addressed, so one blob can back several slots.
        """
        needle = json.dumps(reference)
        with self._lock:
            row = self._conn.execute(
                """
                SELECT 1 FROM requests WHERE instr(data_json, ?) > 0
                UNION ALL
                SELECT 1 FROM assignments WHERE instr(data_json, ?) > 0
                UNION ALL
                SELECT 1 FROM processed_records WHERE instr(data_json, ?) > 0
                LIMIT 1
                """,
                (needle, needle, needle),
            ).fetchone()
        return row is not None

    # ------------------------------------------------------------------
    # Activity log (append only)

    def append_event(self, event: ActivityEvent) -> ActivityEvent:
        request_id = event.metadata.get("request_id")
        with self.transaction():
            self._conn.execute(
                """
                INSERT INTO activity_events (
                    tenant_id, event_id, request_id, entity_type, entity_id,
                    action, actor_id, timestamp, metadata_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    event.tenant_id,
                    event.event_id,
                    request_id,
                    event.entity_type.value,
                    event.entity_id,
                    event.action.value,
                    event.actor_id,
                    _iso(event.timestamp),
                    _json_dumps(event.metadata),
                ),
            )
        return event

    def events_for_request(self, tenant_id: str, request_id: str, entity_ids: Optional[List[str]] = None) -> List[ActivityEvent]:
        """Events linked to a request by column, or addressed to one of its entities."""
        ids = [request_id, *(entity_ids or [])]
        placeholders = ", ".join("?" for _ in ids)
        with self._lock:
            rows = self._conn.execute(
                f"""
                SELECT * FROM activity_events
                WHERE tenant_id = ?
                  AND (request_id = ? OR entity_id IN ({placeholders}))
                ORDER BY seq ASC
                """,
                (tenant_id, request_id, *ids),
            ).fetchall()
        return [self._event_from_row(row) for row in rows]

    def list_events(
        self,
        tenant_id: str,
        *,
        action: Optional[str] = None,
        actor_id: Optional[str] = None,
        page: int = 1,
        page_size: int = 25,
    ) -> Page:
        clauses = ["tenant_id = ?"]
        params: List[Any] = [tenant_id]
        if action:
            clauses.append("action = ?")
            params.append(action)
        if actor_id:
            clauses.append("actor_id = ?")
            params.append(actor_id)
        rows, total = self._paged(
            "activity_events", clauses, params, order_by="timestamp DESC, seq DESC", page=page, page_size=page_size, columns="*"
        )
        items = [self._event_from_row(row) for row in rows]
        return self._page(items, total, page, page_size)

    @staticmethod
    def _event_from_row(row: sqlite3.Row) -> ActivityEvent:
        return ActivityEvent(
            event_id=row["event_id"],
            tenant_id=row["tenant_id"],
            entity_type=row["entity_type"],
            entity_id=row["entity_id"],
            action=row["action"],
            actor_id=row["actor_id"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            metadata=json.loads(row["metadata_json"]),
        )

    # ------------------------------------------------------------------
    # Paging helpers

    def _paged(
        self,
        table: str,
        clauses: List[str],
        params: List[Any],
        *,
        order_by: str,
        page: int,
        page_size: int,
        columns: str = "data_json",
    ) -> tuple[List[sqlite3.Row], int]:
        where = " AND ".join(clauses)
        page = max(1, int(page or 1))
        page_size = max(1, int(page_size or 1))
        offset = (page - 1) * page_size
        with self._lock:
            total_row = self._conn.execute(
                f"SELECT COUNT(*) AS c FROM {table} WHERE {where}",
                params,
            ).fetchone()
            rows = self._conn.execute(
                f"SELECT {columns} FROM {table} WHERE {where} ORDER BY {order_by} LIMIT ? OFFSET ?",
                (*params, page_size, offset),
            ).fetchall()
        return rows, int(total_row["c"]) if total_row else 0

    @staticmethod
    def _page(items: List[Any], total: int, page: int, page_size: int) -> Page:
        page = max(1, int(page or 1))
        page_size = max(1, int(page_size or 1))
        return Page(
            items=items,
            total=total,
            page=page,
            page_size=page_size,
            total_pages=math.ceil(total / page_size) if total else 0,
        )

