"""PostgreSQL implementation of the enrollment repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import asyncpg

from ..contracts import Enrollment, EnrollmentStatus, TriggerType, Workflow, WorkflowStatus
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


def _json(value: Any) -> Any:
    return json.loads(value) if isinstance(value, str) else value


class PostgresEnrollmentRepository(EnrollmentRepository):
    """Persist workflows and enrollments using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                organization_id TEXT,
                name TEXT NOT NULL,
                description TEXT,
                trigger_type TEXT NOT NULL,
                status TEXT NOT NULL,
                steps JSONB NOT NULL,
                allow_reentry BOOLEAN NOT NULL DEFAULT FALSE,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS enrollments (
                id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                contact_id TEXT NOT NULL,
                organization_id TEXT,
                status TEXT NOT NULL,
                current_step_id TEXT,
                context JSONB,
                steps JSONB NOT NULL,
                enrolled_at TIMESTAMPTZ NOT NULL,
                next_action_at TIMESTAMPTZ,
                finished_at TIMESTAMPTZ,
                failure_reason TEXT,
                lease_token TEXT,
                lease_expires_at TIMESTAMPTZ
            )
            """
        )
        await conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_enrollments_workflow_contact "
            "ON enrollments (workflow_id, contact_id, status)"
        )

    @staticmethod
    def _row_to_workflow(row: asyncpg.Record) -> Workflow:
        return Workflow(
            id=row["id"],
            organization_id=row["organization_id"],
            name=row["name"],
            description=row["description"],
            trigger_type=row["trigger_type"],
            status=row["status"],
            steps=_json(row["steps"]),
            allow_reentry=row["allow_reentry"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_enrollment(row: asyncpg.Record) -> Enrollment:
        return Enrollment(
            id=row["id"],
            workflow_id=row["workflow_id"],
            contact_id=row["contact_id"],
            organization_id=row["organization_id"],
            status=row["status"],
            current_step_id=row["current_step_id"],
            context=_json(row["context"]) or {},
            steps=_json(row["steps"]),
            enrolled_at=row["enrolled_at"],
            next_action_at=row["next_action_at"],
            finished_at=row["finished_at"],
            failure_reason=row["failure_reason"],
            lease_token=row["lease_token"],
            lease_expires_at=row["lease_expires_at"],
        )

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> Workflow:
        conn = await self._connect()
        try:
            await conn.execute(
                f"""
                INSERT INTO workflows ({_WORKFLOW_COLUMNS})
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
                ON CONFLICT (id) DO UPDATE SET
                    organization_id = EXCLUDED.organization_id,
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    trigger_type = EXCLUDED.trigger_type,
                    status = EXCLUDED.status,
                    steps = EXCLUDED.steps,
                    allow_reentry = EXCLUDED.allow_reentry,
                    updated_at = EXCLUDED.updated_at
                """,
                workflow.id,
                workflow.organization_id,
                workflow.name,
                workflow.description,
                workflow.trigger_type.value,
                workflow.status.value,
                json.dumps([s.to_record() for s in workflow.steps]),
                workflow.allow_reentry,
                workflow.created_at,
                workflow.updated_at,
            )
        finally:
            await conn.close()
        return workflow

    async def get_workflow(self, workflow_id: str) -> Workflow | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE id = $1", workflow_id
            )
        finally:
            await conn.close()
        return self._row_to_workflow(row) if row else None

    async def list_workflows(
        self,
        trigger_type: TriggerType | None = None,
        status: WorkflowStatus | None = None,
        organization_id: str | None = None,
    ) -> list[Workflow]:
        clauses, params = [], []
        if trigger_type is not None:
            params.append(TriggerType(trigger_type).value)
            clauses.append(f"trigger_type = ${len(params)}")
        if status is not None:
            params.append(WorkflowStatus(status).value)
            clauses.append(f"status = ${len(params)}")
        if organization_id is not None:
            params.append(organization_id)
            clauses.append(f"organization_id = ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_WORKFLOW_COLUMNS} FROM workflows{where} ORDER BY created_at", *params
            )
        finally:
            await conn.close()
        return [self._row_to_workflow(r) for r in rows]

    async def create_enrollment(
        self, enrollment: Enrollment, exclusive: bool = True
    ) -> Tuple[Enrollment, bool]:
        conn = await self._connect()
        try:
            async with conn.transaction():
                if exclusive:
                    await conn.execute(
                        "SELECT pg_advisory_xact_lock(hashtext($1))",
                        f"{enrollment.workflow_id}:{enrollment.contact_id}",
                    )
                    existing = await conn.fetchrow(
                        f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments "
                        "WHERE workflow_id = $1 AND contact_id = $2 AND status = $3 "
                        "ORDER BY enrolled_at DESC LIMIT 1",
                        enrollment.workflow_id,
                        enrollment.contact_id,
                        EnrollmentStatus.ACTIVE.value,
                    )
                    if existing is not None:
                        return self._row_to_enrollment(existing), False
                await conn.execute(
                    f"INSERT INTO enrollments ({_ENROLLMENT_COLUMNS}) "
                    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)",
                    enrollment.id,
                    enrollment.workflow_id,
                    enrollment.contact_id,
                    enrollment.organization_id,
                    enrollment.status.value,
                    enrollment.current_step_id,
                    json.dumps(enrollment.context),
                    json.dumps([s.to_record() for s in enrollment.steps]),
                    enrollment.enrolled_at,
                    enrollment.next_action_at,
                    enrollment.finished_at,
                    enrollment.failure_reason,
                    enrollment.lease_token,
                    enrollment.lease_expires_at,
                )
        finally:
            await conn.close()
        return enrollment, True

    async def get_enrollment(self, enrollment_id: str) -> Enrollment | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments WHERE id = $1", enrollment_id
            )
        finally:
            await conn.close()
        return self._row_to_enrollment(row) if row else None

    async def list_enrollments(
        self,
        workflow_id: str | None = None,
        status: EnrollmentStatus | None = None,
    ) -> list[Enrollment]:
        clauses, params = [], []
        if workflow_id is not None:
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if status is not None:
            params.append(EnrollmentStatus(status).value)
            clauses.append(f"status = ${len(params)}")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                f"SELECT {_ENROLLMENT_COLUMNS} FROM enrollments{where} ORDER BY enrolled_at DESC",
                *params,
            )
        finally:
            await conn.close()
        return [self._row_to_enrollment(r) for r in rows]

    async def acquire_step(
        self,
        enrollment_id: str,
        step_id: str,
        token: str,
        lease_expires_at: datetime,
        now: datetime,
    ) -> Enrollment | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                f"""
                UPDATE enrollments SET lease_token = $1, lease_expires_at = $2
                WHERE id = $3 AND status = $4 AND current_step_id = $5
                  AND (lease_token IS NULL OR lease_token = $1
                       OR lease_expires_at IS NULL OR lease_expires_at <= $6)
                RETURNING {_ENROLLMENT_COLUMNS}
                """,
                token,
                lease_expires_at,
                enrollment_id,
                EnrollmentStatus.ACTIVE.value,
                step_id,
                now,
            )
        finally:
            await conn.close()
        return self._row_to_enrollment(row) if row else None

    async def transition(
        self,
        enrollment_id: str,
        changes: Dict[str, Any],
        expected_step_id: Optional[str] = None,
        token: Optional[str] = None,
    ) -> Enrollment | None:
        merged = check_changes(changes)
        params: list[Any] = list(merged.values())
        assignments = ", ".join(f"{column} = ${i}" for i, column in enumerate(merged, start=1))
        params.extend([enrollment_id, EnrollmentStatus.ACTIVE.value])
        query = (
            f"UPDATE enrollments SET {assignments} "
            f"WHERE id = ${len(params) - 1} AND status = ${len(params)}"
        )
        if expected_step_id is not None:
            params.append(expected_step_id)
            query += f" AND current_step_id = ${len(params)}"
        if token is not None:
            params.append(token)
            query += f" AND lease_token = ${len(params)}"
        query += f" RETURNING {_ENROLLMENT_COLUMNS}"
        conn = await self._connect()
        try:
            row = await conn.fetchrow(query, *params)
        finally:
            await conn.close()
        return self._row_to_enrollment(row) if row else None
