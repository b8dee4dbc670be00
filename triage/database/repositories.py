from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any
from uuid import uuid4

from database.base import Database, Session
from database.models import QueueCounts, TicketRecord, TriageJob, TriagePayload
from services.lifecycle import check_triage_fields
from utils.constants import (
    DEFAULT_PAGE_SIZE,
    JOB_STATUS_ACTIVE,
    JOB_STATUS_COMPLETED,
    JOB_STATUS_FAILED,
    JOB_STATUS_PENDING,
    MAX_PAGE_SIZE,
    TICKET_GROUP_FIELDS,
    TICKET_SORT_FIELDS,
)
from utils.time import now_iso

# Columns a caller may change through ``TicketRepository.update``.
_UPDATABLE_COLUMNS = frozenset(
    {
        "status",
        "category",
        "urgency",
        "sentiment_score",
        "ai_draft",
        "resolved_reply",
        "error_message",
        "retry_count",
        "resolved_at",
    }
)
_FILTER_COLUMNS = ("status", "urgency", "category")


def _placeholders(count: int) -> str:
    return ", ".join("?" for _ in range(count))


class TicketRepository:
    def __init__(self, db: Database) -> None:
        self.db = db

    async def create(
        self,
        customer_name: str,
        customer_email: str,
        subject: str,
        complaint: str,
    ) -> TicketRecord:
        now = now_iso()
        ticket = TicketRecord(
            id=str(uuid4()),
            customer_name=customer_name,
            customer_email=customer_email,
            subject=subject,
            complaint=complaint,
            created_at=now,
            updated_at=now,
        )
        await self.db.execute(
            """
            INSERT INTO tickets(
                id, customer_name, customer_email, subject, complaint, status, category,
                retry_count, created_at, updated_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            [
                ticket.id,
                ticket.customer_name,
                ticket.customer_email,
                ticket.subject,
                ticket.complaint,
                ticket.status,
                ticket.category,
                ticket.retry_count,
                ticket.created_at,
                ticket.updated_at,
            ],
        )
        return ticket

    async def get_by_id(self, ticket_id: str) -> TicketRecord | None:
        row = await self.db.fetchone("SELECT * FROM tickets WHERE id = ?;", [ticket_id])
        if not row:
            return None
        return self._row_to_ticket(row)

    async def update(
        self,
        ticket_id: str,
        fields: dict[str, Any],
        expected_statuses: Sequence[str] | None = None,
    ) -> TicketRecord | None:
        """Apply ``fields`` and bump ``updated_at``.

        When ``expected_statuses`` is given the write only happens if the row is
        currently in one of them; ``None`` is returned when nothing matched
        (missing ticket or status moved on), otherwise the fresh record.
        """
        unknown = set(fields) - _UPDATABLE_COLUMNS
        if unknown:
            raise ValueError(f"Unsupported ticket fields: {sorted(unknown)}")
        check_triage_fields(fields)

        assignments = [f"{column} = ?" for column in fields]
        assignments.append("updated_at = ?")
        params: list[Any] = [*fields.values(), now_iso(), ticket_id]
        query = f"UPDATE tickets SET {', '.join(assignments)} WHERE id = ?"
        if expected_statuses:
            query += f" AND status IN ({_placeholders(len(expected_statuses))})"
            params.extend(expected_statuses)

        changed = await self.db.execute(query + ";", params)
        if changed == 0:
            return None
        return await self.get_by_id(ticket_id)

    async def list(
        self,
        filters: dict[str, str | None] | None = None,
        sort: str = "created_at",
        order: str = "desc",
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> tuple[list[TicketRecord], int]:
        clauses: list[str] = []
        params: list[Any] = []
        for column in _FILTER_COLUMNS:
            value = (filters or {}).get(column)
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        sort_column = sort if sort in TICKET_SORT_FIELDS else "created_at"
        if sort_column == "urgency":
            sort_column = "CASE urgency WHEN 'HIGH' THEN 3 WHEN 'MEDIUM' THEN 2 WHEN 'LOW' THEN 1 ELSE 0 END"
        direction = "ASC" if str(order).lower() == "asc" else "DESC"
        page = max(1, page)
        limit = min(MAX_PAGE_SIZE, max(1, limit))

        rows = await self.db.fetchall(
            f"""
            SELECT * FROM tickets
            {where}
            ORDER BY {sort_column} {direction}, id {direction}
            LIMIT ? OFFSET ?;
            """,
            [*params, limit, (page - 1) * limit],
        )
        total_row = await self.db.fetchone(f"SELECT COUNT(*) AS total FROM tickets {where};", params)
        total = int(total_row["total"]) if total_row else 0
        return [self._row_to_ticket(row) for row in rows], total

    async def list_by_status(self, status: str, limit: int = 500) -> list[TicketRecord]:
        rows = await self.db.fetchall(
            """
            SELECT * FROM tickets
            WHERE status = ?
            ORDER BY updated_at ASC
            LIMIT ?;
            """,
            [status, limit],
        )
        return [self._row_to_ticket(row) for row in rows]

    async def count_grouped_by(self, field: str) -> dict[str, int]:
        if field not in TICKET_GROUP_FIELDS:
            raise ValueError(f"Cannot group tickets by {field!r}")
        rows = await self.db.fetchall(
            f"""
            SELECT {field} AS bucket, COUNT(*) AS count
            FROM tickets
            GROUP BY {field};
            """
        )
        return {str(row["bucket"] or "UNSET"): int(row["count"]) for row in rows}

    @staticmethod
    def _row_to_ticket(row: dict[str, Any]) -> TicketRecord:
        return TicketRecord(
            id=row["id"],
            customer_name=row["customer_name"],
            customer_email=row["customer_email"],
            subject=row["subject"],
            complaint=row["complaint"],
            status=row["status"],
            category=row["category"],
            urgency=row["urgency"],
            sentiment_score=int(row["sentiment_score"]) if row["sentiment_score"] is not None else None,
            ai_draft=row["ai_draft"],
            resolved_reply=row["resolved_reply"],
            error_message=row["error_message"],
            retry_count=int(row["retry_count"] or 0),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            resolved_at=row["resolved_at"],
        )


class JobRepository:
    """Durable storage for triage jobs.

    Each method that reads a job and then changes it runs inside one
    transaction, so concurrent workers never both claim the same key and a
    failure is never counted twice.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    def _lock_clause(self, skip_locked: bool = False) -> str:
        if self.db.driver == "sqlite":
            # BEGIN IMMEDIATE already serializes writers on SQLite.
            return ""
        return " FOR UPDATE SKIP LOCKED" if skip_locked else " FOR UPDATE"

    async def _get(self, session: Session, key: str, lock: bool = False) -> dict[str, Any] | None:
        lock_clause = self._lock_clause() if lock else ""
        return await session.fetchone(f"SELECT * FROM triage_jobs WHERE job_key = ?{lock_clause};", [key])

    async def get(self, key: str) -> TriageJob | None:
        row = await self.db.fetchone("SELECT * FROM triage_jobs WHERE job_key = ?;", [key])
        return self._row_to_job(row) if row else None

    async def insert_or_rearm(
        self, key: str, payload: TriagePayload, max_attempts: int, now_ms: int
    ) -> bool:
        """Insert a pending job unless one with ``key`` is pending or active."""
        async with self.db.transaction() as session:
            existing = await self._get(session, key, lock=True)
            if existing is None:
                await session.execute(
                    """
                    INSERT INTO triage_jobs(
                        job_key, ticket_id, kind, status, attempt, max_attempts, run_at_ms,
                        created_at_ms, updated_at_ms
                    )
                    VALUES (?, ?, ?, ?, 1, ?, ?, ?, ?);
                    """,
                    [key, payload.ticket_id, payload.kind, JOB_STATUS_PENDING, max_attempts, now_ms, now_ms, now_ms],
                )
                return True
            if existing["status"] in (JOB_STATUS_PENDING, JOB_STATUS_ACTIVE):
                return False
            # A retained completed/failed record with the same key starts over.
            await session.execute(
                """
                UPDATE triage_jobs
                SET status = ?, attempt = 1, max_attempts = ?, run_at_ms = ?, locked_until_ms = NULL,
                    last_error = NULL, finished_at_ms = NULL, stalled_count = 0, updated_at_ms = ?
                WHERE job_key = ?;
                """,
                [JOB_STATUS_PENDING, max_attempts, now_ms, now_ms, key],
            )
            return True

    async def claim_next(self, now_ms: int, lock_ms: int) -> TriageJob | None:
        async with self.db.transaction() as session:
            row = await session.fetchone(
                f"""
                SELECT * FROM triage_jobs
                WHERE status = ? AND run_at_ms <= ?
                ORDER BY run_at_ms ASC, created_at_ms ASC
                LIMIT 1{self._lock_clause(skip_locked=True)};
                """,
                [JOB_STATUS_PENDING, now_ms],
            )
            if row is None:
                return None
            changed = await session.execute(
                """
                UPDATE triage_jobs
                SET status = ?, locked_until_ms = ?, updated_at_ms = ?
                WHERE job_key = ? AND status = ?;
                """,
                [JOB_STATUS_ACTIVE, now_ms + lock_ms, now_ms, row["job_key"], JOB_STATUS_PENDING],
            )
            if changed == 0:
                return None
            row.update(status=JOB_STATUS_ACTIVE, locked_until_ms=now_ms + lock_ms)
            return self._row_to_job(row)

    async def next_run_at(self) -> int | None:
        row = await self.db.fetchone(
            "SELECT MIN(run_at_ms) AS next_run FROM triage_jobs WHERE status = ?;",
            [JOB_STATUS_PENDING],
        )
        if not row or row["next_run"] is None:
            return None
        return int(row["next_run"])

    async def mark_completed(self, key: str, now_ms: int) -> bool:
        changed = await self.db.execute(
            """
            UPDATE triage_jobs
            SET status = ?, locked_until_ms = NULL, finished_at_ms = ?, updated_at_ms = ?
            WHERE job_key = ? AND status = ?;
            """,
            [JOB_STATUS_COMPLETED, now_ms, now_ms, key, JOB_STATUS_ACTIVE],
        )
        return changed > 0

    async def record_failure(
        self, key: str, error: str, now_ms: int, delay_for: Callable[[int], int]
    ) -> tuple[str, int] | None:
        """Reschedule or permanently fail an active job.

        ``delay_for(attempt)`` gives the backoff in ms after ``attempt`` failed.
        Returns ``(new_status, attempt)`` or ``None`` when the job was not active.
        """
        async with self.db.transaction() as session:
            row = await self._get(session, key, lock=True)
            if row is None or row["status"] != JOB_STATUS_ACTIVE:
                return None
            attempt = int(row["attempt"])
            if attempt < int(row["max_attempts"]):
                await session.execute(
                    """
                    UPDATE triage_jobs
                    SET status = ?, attempt = ?, run_at_ms = ?, locked_until_ms = NULL,
                        last_error = ?, updated_at_ms = ?
                    WHERE job_key = ?;
                    """,
                    [JOB_STATUS_PENDING, attempt + 1, now_ms + delay_for(attempt), error, now_ms, key],
                )
                return JOB_STATUS_PENDING, attempt
            await session.execute(
                """
                UPDATE triage_jobs
                SET status = ?, locked_until_ms = NULL, last_error = ?, finished_at_ms = ?, updated_at_ms = ?
                WHERE job_key = ?;
                """,
                [JOB_STATUS_FAILED, error, now_ms, now_ms, key],
            )
            return JOB_STATUS_FAILED, attempt

    async def extend_lock(self, key: str, held_until_ms: int, locked_until_ms: int, now_ms: int) -> bool:
        """Push out the lock of an active job, only while ``held_until_ms`` still identifies the claim."""
        changed = await self.db.execute(
            """
            UPDATE triage_jobs
            SET locked_until_ms = ?, updated_at_ms = ?
            WHERE job_key = ? AND status = ? AND locked_until_ms = ?;
            """,
            [locked_until_ms, now_ms, key, JOB_STATUS_ACTIVE, held_until_ms],
        )
        return changed > 0

    async def release(self, key: str, held_until_ms: int, now_ms: int) -> bool:
        """Return a claimed job to pending without charging an attempt."""
        changed = await self.db.execute(
            """
            UPDATE triage_jobs
            SET status = ?, locked_until_ms = NULL, run_at_ms = ?, updated_at_ms = ?
            WHERE job_key = ? AND status = ? AND locked_until_ms = ?;
            """,
            [JOB_STATUS_PENDING, now_ms, now_ms, key, JOB_STATUS_ACTIVE, held_until_ms],
        )
        return changed > 0

    async def recover_stalled(self, now_ms: int, max_stalled_count: int) -> tuple[int, list[TriageJob]]:
        """Requeue active jobs whose lock expired, failing those that stalled too often.

        Returns the number requeued and the jobs that were failed.
        """
        requeued = 0
        failed: list[TriageJob] = []
        async with self.db.transaction() as session:
            rows = await session.fetchall(
                f"""
                SELECT * FROM triage_jobs
                WHERE status = ? AND locked_until_ms IS NOT NULL AND locked_until_ms < ?
                ORDER BY locked_until_ms ASC{self._lock_clause(skip_locked=True)};
                """,
                [JOB_STATUS_ACTIVE, now_ms],
            )
            for row in rows:
                stalled_count = int(row.get("stalled_count") or 0) + 1
                if stalled_count > max_stalled_count:
                    error = (
                        f"Job stalled more than {max_stalled_count} time(s); "
                        "the worker running it stopped responding."
                    )
                    await session.execute(
                        """
                        UPDATE triage_jobs
                        SET status = ?, stalled_count = ?, locked_until_ms = NULL, last_error = ?,
                            finished_at_ms = ?, updated_at_ms = ?
                        WHERE job_key = ?;
                        """,
                        [JOB_STATUS_FAILED, stalled_count, error, now_ms, now_ms, row["job_key"]],
                    )
                    row.update(
                        status=JOB_STATUS_FAILED,
                        stalled_count=stalled_count,
                        locked_until_ms=None,
                        last_error=error,
                        finished_at_ms=now_ms,
                    )
                    failed.append(self._row_to_job(row))
                    continue
                await session.execute(
                    """
                    UPDATE triage_jobs
                    SET status = ?, stalled_count = ?, locked_until_ms = NULL, run_at_ms = ?, updated_at_ms = ?
                    WHERE job_key = ?;
                    """,
                    [JOB_STATUS_PENDING, stalled_count, now_ms, now_ms, row["job_key"]],
                )
                requeued += 1
        return requeued, failed

    async def prune_finished(self, completed_before_ms: int, failed_before_ms: int) -> int:
        removed = await self.db.execute(
            "DELETE FROM triage_jobs WHERE status = ? AND finished_at_ms < ?;",
            [JOB_STATUS_COMPLETED, completed_before_ms],
        )
        removed += await self.db.execute(
            "DELETE FROM triage_jobs WHERE status = ? AND finished_at_ms < ?;",
            [JOB_STATUS_FAILED, failed_before_ms],
        )
        return removed

    async def latest_for_ticket(self, ticket_id: str) -> TriageJob | None:
        row = await self.db.fetchone(
            """
            SELECT * FROM triage_jobs
            WHERE ticket_id = ?
            ORDER BY updated_at_ms DESC
            LIMIT 1;
            """,
            [ticket_id],
        )
        return self._row_to_job(row) if row else None

    async def live_for_ticket(self, ticket_id: str) -> TriageJob | None:
        """The pending or active job for ``ticket_id``, if there is one."""
        row = await self.db.fetchone(
            """
            SELECT * FROM triage_jobs
            WHERE ticket_id = ? AND status IN (?, ?)
            ORDER BY created_at_ms ASC
            LIMIT 1;
            """,
            [ticket_id, JOB_STATUS_PENDING, JOB_STATUS_ACTIVE],
        )
        return self._row_to_job(row) if row else None

    async def counts(self, now_ms: int) -> QueueCounts:
        rows = await self.db.fetchall(
            """
            SELECT
                CASE WHEN status = ? AND run_at_ms > ? THEN 'delayed' ELSE status END AS bucket,
                COUNT(*) AS count
            FROM triage_jobs
            GROUP BY bucket;
            """,
            [JOB_STATUS_PENDING, now_ms],
        )
        by_bucket = {row["bucket"]: int(row["count"]) for row in rows}
        return QueueCounts(
            waiting=by_bucket.get(JOB_STATUS_PENDING, 0),
            delayed=by_bucket.get("delayed", 0),
            active=by_bucket.get(JOB_STATUS_ACTIVE, 0),
            completed=by_bucket.get(JOB_STATUS_COMPLETED, 0),
            failed=by_bucket.get(JOB_STATUS_FAILED, 0),
        )

    @staticmethod
    def _row_to_job(row: dict[str, Any]) -> TriageJob:
        return TriageJob(
            key=row["job_key"],
            payload=TriagePayload(ticket_id=row["ticket_id"]),
            status=row["status"],
            attempt=int(row["attempt"]),
            max_attempts=int(row["max_attempts"]),
            run_at_ms=int(row["run_at_ms"]),
            locked_until_ms=int(row["locked_until_ms"]) if row["locked_until_ms"] is not None else None,
            last_error=row["last_error"],
            created_at_ms=int(row["created_at_ms"]) if row.get("created_at_ms") is not None else None,
            finished_at_ms=int(row["finished_at_ms"]) if row.get("finished_at_ms") is not None else None,
            stalled_count=int(row.get("stalled_count") or 0),
        )
