"""SQLite implementation of the enrollment repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from ..contracts import Enrollment, EnrollmentStatus, TriggerType, Workflow, WorkflowStatus
from ..utils.clock import ensure_utc
from .repository import EnrollmentRepository, check_changes

_ENROLLMENT_COLUMNS = (
    "id, workflow_id, contact_id, organization_id, status, current_step_id, context, "
    "steps, enrolled_at, next_action_at, finished_at, failure_reason, lease_token, "
    "lease_expires_at"
)
_WORKFLOW_COLUMNS = (
    "id, organization_id, name, description, trigger_type, status, steps, "
    "allow_reentry, created_at, updated_at"
)


def _ts(value: datetime | None) -> str | None:
    if value is None:
        return None
    return ensure_utc(value).isoformat(timespec="microseconds")


def _parse_ts(value: str | None) -> datetime | None:
    return ensure_utc(datetime.fromisoformat(value)) if value else None


class SQLiteEnrollmentRepository(EnrollmentRepository):
    """Persist workflows and enrollments using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                organization_id TEXT,
                name TEXT NOT NULL,
                description TEXT,
                trigger_type TEXT NOT NULL,
                status TEXT NOT NULL,
                steps TEXT NOT NULL,
                allow_reentry INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS enrollments (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                contact_id TEXT NOT NULL,
                organization_id TEXT,
                status TEXT NOT NULL,
                current_step_id TEXT,
                context TEXT,
                steps TEXT NOT NULL,
                enrolled_at TEXT NOT NULL,
                next_action_at TEXT,
                finished_at TEXT,
                failure_reason TEXT,
                lease_token TEXT,
                lease_expires_at TEXT
            )
            """
        )
        cur.execute(
            "CREATE INDEX IF NOT EXISTS idx_enrollments_workflow_contact "
            "ON enrollments (workflow_id, contact_id, status)"
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    @staticmethod
    def _row_to_workflow(row: sqlite3.Row) -> Workflow:
        return Workflow(
            id=row["id"],
            organization_id=row["organization_id"],
            name=row["name"],
            description=row["description"],
            trigger_type=row["trigger_type"],
            status=row["status"],
            steps=json.loads(row["steps"]),
            allow_reentry=bool(row["allow_reentry"]),
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
        )

    @staticmethod
    def _row_to_enrollment(row: sqlite3.Row) -> Enrollment:
        return Enrollment(
            id=row["id"],
            workflow_id=row["workflow_id"],
            contact_id=row["contact_id"],
            organization_id=row["organization_id"],
            status=row["status"],
            current_step_id=row["current_step_id"],
            context=json.loads(row["context"]) if row["context"] else {},
            steps=json.loads(row["steps"]),
            enrolled_at=_parse_ts(row["enrolled_at"]),
            next_action_at=_parse_ts(row["next_action_at"]),
            finished_at=_parse_ts(row["finished_at"]),
            failure_reason=row["failure_reason"],
            lease_token=row["lease_token"],
            lease_expires_at=_parse_ts(row["lease_expires_at"]),
        )

    def _insert_enrollment(self, enrollment: Enrollment, exclusive: bool) -> Tuple[Optional[sqlite3.Row], bool]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            try:
                if exclusive:
                    cur.execute(
                        f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments "
                        "WHERE workflow_id = ? AND contact_id = ? AND status = ? "
                        "ORDER BY enrolled_at DESC LIMIT 1",
                        (enrollment.workflow_id, enrollment.contact_id, EnrollmentStatus.ACTIVE.value),
                    )
                    existing = cur.fetchone()
                    if existing is not None:
                        self._conn.commit()
                        return existing, False
                cur.execute(
                    f"INSERT INTO enrollments ({_ENROLLMENT_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        enrollment.id,
                        enrollment.workflow_id,
                        enrollment.contact_id,
                        enrollment.organization_id,
                        enrollment.status.value,
                        enrollment.current_step_id,
                        json.dumps(enrollment.context),
                        json.dumps([s.to_record() for s in enrollment.steps]),
                        _ts(enrollment.enrolled_at),
                        _ts(enrollment.next_action_at),
                        _ts(enrollment.finished_at),
                        enrollment.failure_reason,
                        enrollment.lease_token,
                        _ts(enrollment.lease_expires_at),
                    ),
                )
                self._conn.commit()
                return None, True
            except sqlite3.Error:
                self._conn.rollback()
                raise

    # ------------------------------------------------------------------
    # Repository API
    async def save_workflow(self, workflow: Workflow) -> Workflow:
        await asyncio.to_thread(
            self._execute,
            f"INSERT OR REPLACE INTO workflows ({_WORKFLOW_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
            workflow.id,
            workflow.organization_id,
            workflow.name,
            workflow.description,
            workflow.trigger_type.value,
            workflow.status.value,
            json.dumps([s.to_record() for s in workflow.steps]),
            int(workflow.allow_reentry),
            _ts(workflow.created_at),
            _ts(workflow.updated_at),
        )
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE id = ?",
            workflow_id,
        )
        return self._row_to_workflow(row) if row else None

    async def list_workflows(
        self,
        trigger_type: TriggerType | None = None,
        status: WorkflowStatus | None = None,
        organization_id: str | None = None,
    ) -> list[Workflow]:
        clauses, params = [], []
        if trigger_type is not None:
            clauses.append("trigger_type = ?")
            params.append(TriggerType(trigger_type).value)
        if status is not None:
            clauses.append("status = ?")
            params.append(WorkflowStatus(status).value)
        if organization_id is not None:
            clauses.append("organization_id = ?")
            params.append(organization_id)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_WORKFLOW_COLUMNS} FROM workflows{where} ORDER BY created_at",
            *params,
        )
        return [self._row_to_workflow(r) for r in rows]

    async def create_enrollment(
        self, enrollment: Enrollment, exclusive: bool = True
    ) -> Tuple[Enrollment, bool]:
        existing, created = await asyncio.to_thread(self._insert_enrollment, enrollment, exclusive)
        if existing is not None:
            return self._row_to_enrollment(existing), False
        return enrollment, created

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments WHERE id = ?",
            enrollment_id,
        )
        return self._row_to_enrollment(row) if row else None

    async def list_enrollments(
        self,
        workflow_id: str | None = None,
        status: EnrollmentStatus | None = None,
    ) -> list[Enrollment]:
        clauses, params = [], []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(EnrollmentStatus(status).value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments{where} ORDER BY enrolled_at DESC",
            *params,
        )
        return [self._row_to_enrollment(r) for r in rows]

    async def acquire_step(
        self,
        enrollment_id: str,
        step_id: str,
        token: str,
        lease_expires_at: datetime,
        now: datetime,
    ) -> Enrollment | None:
        updated = await asyncio.to_thread(
            self._execute,
            """
            UPDATE enrollments SET lease_token = ?, lease_expires_at = ?
            WHERE id = ? AND status = ? AND current_step_id = ?
              AND (lease_token IS NULL OR lease_token = ?
                   OR lease_expires_at IS NULL OR lease_expires_at <= ?)
            """,
            token,
            _ts(lease_expires_at),
            enrollment_id,
            EnrollmentStatus.ACTIVE.value,
            step_id,
            token,
            _ts(now),
        )
        if not updated:
            return None
        return await self.get_enrollment(enrollment_id)

    async def transition(
        self,
        enrollment_id: str,
        changes: Dict[str, Any],
        expected_step_id: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Enrollment | None:
        merged = check_changes(changes)
        assignments = ", ".join(f"{column} = ?" for column in merged)
        values = [_ts(v) if isinstance(v, datetime) else v for v in merged.values()]
        query = f"UPDATE enrollments SET {assignments} WHERE id = ? AND status = ?"
        values.extend([enrollment_id, EnrollmentStatus.ACTIVE.value])
        if expected_step_id is not None:
            query += " AND current_step_id = ?"
            values.append(expected_step_id)
        if token is not None:
            query += " AND lease_token = ?"
            values.append(token)
        updated = await asyncio.to_thread(self._execute, query, *values)
        if not updated:
            return None
        return await self.get_enrollment(enrollment_id)

    async def close(self) -> None:
        with self._lock:
            self._conn.close()
