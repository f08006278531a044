"""Persistent job store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
from collections.abc import Sequence
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from sqlalchemy import func
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from photo_jobs.jobs.models import (
    JobCreate,
    JobItemCreate,
    JobItemStatus,
    JobItemView,
    JobStatus,
    JobView,
)
from photo_jobs.storage.alembic_runner import upgrade_head
from photo_jobs.storage.common import (
    build_sqlite_engine,
    db_now,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from photo_jobs.storage.sqlmodel_models import Job, JobItem

ERROR_MESSAGE_MAX_CHARS = 1000

_ACTIVE_STATUSES = (JobStatus.QUEUED.value, JobStatus.RUNNING.value)


class JobRepository:
    """Queue persistence facade.

    Every state transition is one conditional ``UPDATE`` guarded by the
    statuses it may leave, so concurrent pollers (threads or processes sharing
    the database file) are serialized by the SQLite write lock and a
    transition attempted from a terminal state is a no-op returning ``False``.
    """

    def __init__(self, db_path: Path, *, sqlite_busy_timeout_ms: int = 5_000) -> None:
        self.db_path = Path(db_path)
        self.engine = build_sqlite_engine(db_path=self.db_path, busy_timeout_ms=sqlite_busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    # -- enqueue ---------------------------------------------------------------

    def enqueue(self, payload: JobCreate) -> JobView:
        """Create a queued job."""

        with Session(self.engine) as session:
            row = self._new_job_row(payload)
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def enqueue_with_items(
        self,
        payload: JobCreate,
        items: Sequence[JobItemCreate],
    ) -> JobView:
        """Create a queued job plus one item per entry in a single transaction."""

        with Session(self.engine) as session:
            row = self._new_job_row(payload, progress_total=len(items))
            session.add(row)
            session.flush()
            if row.id is None:
                raise RuntimeError("Job id was not assigned on flush.")
            now = db_now()
            for item in items:
                session.add(self._new_item_row(row.id, payload.tenant_id, item, now))
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def _new_job_row(self, payload: JobCreate, *, progress_total: int | None = None) -> Job:
        now = db_now()
        return Job(
            tenant_id=payload.tenant_id,
            project_id=payload.project_id,
            type=payload.type,
            status=JobStatus.QUEUED.value,
            priority=payload.priority,
            payload_json=_dump_payload(payload.payload),
            attempts=0,
            progress_done=0,
            progress_total=progress_total if progress_total is not None else payload.progress_total,
            created_at=now,
            updated_at=now,
        )

    def _new_item_row(
        self,
        job_id: int,
        tenant_id: str,
        item: JobItemCreate,
        now: datetime,
    ) -> JobItem:
        return JobItem(
            job_id=job_id,
            tenant_id=tenant_id,
            photo_id=item.photo_id,
            filename=item.filename,
            status=item.status.value,
            created_at=now,
            updated_at=now,
        )

    # -- claim / lease -----------------------------------------------------------

    def claim_next(
        self,
        *,
        worker_id: str,
        min_priority: int | None = None,
        max_priority: int | None = None,
    ) -> JobView | None:
        """Atomically claim the most urgent queued job within a priority range.

        Candidate selection and the ``queued -> running`` transition happen in
        one ``UPDATE ... WHERE id = (SELECT ... LIMIT 1) AND status = 'queued'``
        statement, so two callers can never both receive the same job.
        """

        conditions = [col(Job.status) == JobStatus.QUEUED.value]
        if min_priority is not None:
            conditions.append(col(Job.priority) >= min_priority)
        if max_priority is not None:
            conditions.append(col(Job.priority) <= max_priority)
        candidate = (
            sa_select(col(Job.id))
            .where(*conditions)
            .order_by(
                col(Job.priority).desc(),
                col(Job.created_at).asc(),
                col(Job.id).asc(),
            )
            .limit(1)
            .scalar_subquery()
        )

        now = db_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.id) == candidate,
                    col(Job.status) == JobStatus.QUEUED.value,
                )
                .values(
                    status=JobStatus.RUNNING.value,
                    claimed_by=worker_id,
                    heartbeat_at=now,
                    started_at=now,
                    finished_at=None,
                    updated_at=now,
                )
                .returning(col(Job.id))
                .execution_options(synchronize_session=False),
            )
            claimed_id = result.scalar_one_or_none()
            session.commit()
        if claimed_id is None:
            return None
        return self.get(job_id=claimed_id)

    def heartbeat(self, *, job_id: int, worker_id: str | None = None) -> bool:
        """Refresh the lease of a running job."""

        now = db_now()
        return self._transition(
            job_id=job_id,
            worker_id=worker_id,
            from_statuses=(JobStatus.RUNNING.value,),
            values={"heartbeat_at": now, "updated_at": now},
        )

    def requeue_stale_running(
        self,
        *,
        stale_seconds: float,
        now: datetime | None = None,
    ) -> list[int]:
        """Return running jobs with an expired lease to the queue.

        Attempts are left unchanged. Safe to call repeatedly and from several
        pollers at once: the whole sweep is a single UPDATE.
        """

        reference = to_db_datetime(now or utc_now())
        cutoff = reference - timedelta(seconds=stale_seconds)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(
                    col(Job.status) == JobStatus.RUNNING.value,
                    col(Job.heartbeat_at).is_not(None),
                    col(Job.heartbeat_at) < cutoff,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    claimed_by=None,
                    heartbeat_at=None,
                    started_at=None,
                    finished_at=None,
                    updated_at=reference,
                )
                .returning(col(Job.id))
                .execution_options(synchronize_session=False),
            )
            requeued = sorted(result.scalars().all())
            session.commit()
        return requeued

    # -- transitions -------------------------------------------------------------

    def set_default_max_attempts(self, *, job_id: int, max_attempts: int) -> None:
        """Apply the attempt budget once, only while it is unset."""

        with Session(self.engine) as session:
            session.exec(
                sa_update(Job)
                .where(col(Job.id) == job_id)
                .values(max_attempts=func.coalesce(col(Job.max_attempts), max_attempts)),
            )
            session.commit()

    def increment_attempts(self, *, job_id: int, worker_id: str | None = None) -> bool:
        return self._transition(
            job_id=job_id,
            worker_id=worker_id,
            from_statuses=(JobStatus.RUNNING.value,),
            values={
                "attempts": col(Job.attempts) + 1,
                "last_error_at": db_now(),
            },
        )

    def requeue(self, *, job_id: int, worker_id: str | None = None) -> bool:
        """Put a running job back in the queue for another attempt."""

        return self._transition(
            job_id=job_id,
            worker_id=worker_id,
            from_statuses=(JobStatus.RUNNING.value,),
            values={
                "status": JobStatus.QUEUED.value,
                "claimed_by": None,
                "heartbeat_at": None,
                "started_at": None,
                "finished_at": None,
            },
        )

    def complete(self, *, job_id: int, worker_id: str | None = None) -> bool:
        """Mark a running job as completed."""

        return self._transition(
            job_id=job_id,
            worker_id=worker_id,
            from_statuses=(JobStatus.RUNNING.value,),
            values={
                "status": JobStatus.COMPLETED.value,
                "finished_at": db_now(),
            },
        )

    def fail(self, *, job_id: int, message: str, worker_id: str | None = None) -> bool:
        """Mark a job as permanently failed, keeping the last error."""

        now = db_now()
        return self._transition(
            job_id=job_id,
            worker_id=worker_id,
            from_statuses=_ACTIVE_STATUSES,
            values={
                "status": JobStatus.FAILED.value,
                "error_message": str(message)[:ERROR_MESSAGE_MAX_CHARS],
                "finished_at": now,
                "last_error_at": now,
            },
        )

    def cancel(self, *, job_id: int) -> bool:
        """Cancel a queued/running job; a running handler is not interrupted."""

        return self._transition(
            job_id=job_id,
            from_statuses=_ACTIVE_STATUSES,
            values={
                "status": JobStatus.CANCELED.value,
                "finished_at": db_now(),
            },
        )

    def cancel_by_project(self, *, project_id: int, exclude_job_id: int | None = None) -> int:
        """Cancel every non-terminal job of a project, returning how many changed."""

        conditions = [
            col(Job.project_id) == project_id,
            col(Job.status).in_(_ACTIVE_STATUSES),
        ]
        if exclude_job_id is not None:
            conditions.append(col(Job.id) != exclude_job_id)
        now = db_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(*conditions)
                .values(
                    status=JobStatus.CANCELED.value,
                    finished_at=now,
                    updated_at=now,
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def update_progress(
        self,
        *,
        job_id: int,
        done: int | None = None,
        total: int | None = None,
    ) -> None:
        """Best-effort progress counters; never affects scheduling."""

        values: dict[str, Any] = {}
        if done is not None:
            values["progress_done"] = done
        if total is not None:
            values["progress_total"] = total
        if not values:
            return
        with Session(self.engine) as session:
            session.exec(sa_update(Job).where(col(Job.id) == job_id).values(**values))
            session.commit()

    def update_payload(self, *, job_id: int, payload: dict[str, Any] | None) -> JobView | None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(Job)
                .where(col(Job.id) == job_id)
                .values(
                    payload_json=_dump_payload(payload),
                    updated_at=db_now(),
                ),
            )
            session.commit()
        return self.get(job_id=job_id)

    def _transition(
        self,
        *,
        job_id: int,
        from_statuses: tuple[str, ...],
        values: dict[str, Any],
        worker_id: str | None = None,
    ) -> bool:
        conditions = [col(Job.id) == job_id, col(Job.status).in_(from_statuses)]
        if worker_id is not None:
            # Only the current lease holder may write.
            conditions.append(col(Job.claimed_by) == worker_id)
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(Job)
                .where(*conditions)
                .values({"updated_at": db_now(), **values})
                .execution_options(synchronize_session=False),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    # -- queries -----------------------------------------------------------------

    def get(self, *, job_id: int) -> JobView | None:
        with Session(self.engine) as session:
            row = session.exec(select(Job).where(Job.id == job_id)).one_or_none()
            if row is None:
                return None
            return _to_job_view(row)

    def list_jobs(
        self,
        *,
        project_id: int | None = None,
        status: JobStatus | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[JobView]:
        """List recent jobs, newest first, with optional filters."""

        with Session(self.engine) as session:
            statement = select(Job)
            if project_id is not None:
                statement = statement.where(Job.project_id == project_id)
            if status is not None:
                statement = statement.where(Job.status == status.value)
            if job_type is not None:
                statement = statement.where(Job.type == job_type)
            statement = (
                statement.order_by(col(Job.created_at).desc(), col(Job.id).desc())
                .limit(limit)
                .offset(offset)
            )
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def list_jobs_by_task_id(self, *, task_id: str) -> list[JobView]:
        """All jobs of one task chain in creation order.

        A task has no row of its own; its state is whatever the jobs carrying
        its ``task_id`` say.
        """

        with Session(self.engine) as session:
            rows = session.exec(
                select(Job)
                .where(func.json_extract(col(Job.payload_json), "$.task_id") == task_id)
                .order_by(col(Job.id).asc()),
            ).all()
        return [_to_job_view(row) for row in rows]

    def count_by_status(self) -> dict[JobStatus, int]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(Job.status, func.count()).group_by(Job.status),
            ).all()
        counts = dict.fromkeys(JobStatus, 0)
        for status, count in rows:
            counts[JobStatus(status)] = int(count)
        return counts

    # -- items -------------------------------------------------------------------

    def list_items(self, *, job_id: int) -> list[JobItemView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(JobItem).where(JobItem.job_id == job_id).order_by(col(JobItem.id).asc()),
            ).all()
        return [_to_item_view(row) for row in rows]

    def add_items(self, *, job_id: int, items: Sequence[JobItemCreate]) -> list[JobItemView]:
        """Attach items to an existing job, for handlers that discover their batch."""

        job = self.get(job_id=job_id)
        if job is None:
            raise RuntimeError(f"Job not found: {job_id}")
        now = db_now()
        with Session(self.engine) as session:
            for item in items:
                session.add(self._new_item_row(job_id, job.tenant_id, item, now))
            session.commit()
        self.update_progress(job_id=job_id, total=len(self.list_items(job_id=job_id)))
        return self.list_items(job_id=job_id)

    def update_item_status(
        self,
        *,
        item_id: int,
        status: JobItemStatus,
        message: str | None = None,
    ) -> None:
        with Session(self.engine) as session:
            session.exec(
                sa_update(JobItem)
                .where(col(JobItem.id) == item_id)
                .values(
                    status=status.value,
                    message=message,
                    updated_at=db_now(),
                ),
            )
            session.commit()

    def next_pending_item(self, *, job_id: int) -> JobItemView | None:
        with Session(self.engine) as session:
            row = session.exec(
                select(JobItem)
                .where(
                    JobItem.job_id == job_id,
                    JobItem.status == JobItemStatus.PENDING.value,
                )
                .order_by(col(JobItem.id).asc())
                .limit(1),
            ).one_or_none()
        return _to_item_view(row) if row is not None else None


def _dump_payload(payload: dict[str, Any] | None) -> str | None:
    if payload is None:
        return None
    return json.dumps(payload, ensure_ascii=False, sort_keys=True)


def _load_payload(raw: str | None) -> dict[str, Any]:
    if not raw:
        return {}
    parsed = json.loads(raw)
    return parsed if isinstance(parsed, dict) else {}


def _optional_aware(value: datetime | None) -> datetime | None:
    return to_utc_aware_datetime(value) if value is not None else None


def _to_job_view(row: Job) -> JobView:
    if row.id is None:
        raise RuntimeError("Job row has no id.")
    return JobView(
        id=row.id,
        tenant_id=row.tenant_id,
        project_id=row.project_id,
        type=row.type,
        status=JobStatus(row.status),
        priority=row.priority,
        payload=_load_payload(row.payload_json),
        attempts=row.attempts,
        max_attempts=row.max_attempts,
        claimed_by=row.claimed_by,
        heartbeat_at=_optional_aware(row.heartbeat_at),
        progress_done=row.progress_done,
        progress_total=row.progress_total,
        error_message=row.error_message,
        started_at=_optional_aware(row.started_at),
        finished_at=_optional_aware(row.finished_at),
        last_error_at=_optional_aware(row.last_error_at),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_item_view(row: JobItem) -> JobItemView:
    if row.id is None:
        raise RuntimeError("Job item row has no id.")
    return JobItemView(
        id=row.id,
        job_id=row.job_id,
        tenant_id=row.tenant_id,
        photo_id=row.photo_id,
        filename=row.filename,
        status=JobItemStatus(row.status),
        message=row.message,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
