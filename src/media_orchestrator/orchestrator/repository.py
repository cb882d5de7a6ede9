"""Persistent task store backed by SQLModel + SQLite.

Every state transition is a compare-and-set ``UPDATE ... WHERE status = ...``
that writes one audit event in the same transaction. Mutations that read before
they write (dependency insertion, generator completion, schedule firing) open
the write transaction with a guarding ``UPDATE`` so the read-check-insert
sequence runs under SQLite's writer lock.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any
from uuid import uuid4

from sqlalchemy import delete as sa_delete
from sqlalchemy import func
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, col, select

from media_orchestrator.config import Settings
from media_orchestrator.errors import CycleError, NotFoundError, PersistenceError, TaskStateError
from media_orchestrator.orchestrator.graph import find_cycle_path
from media_orchestrator.orchestrator.models import (
    LIVE_STATUSES,
    TERMINAL_STATUSES,
    BackoffStrategy,
    ChildSummary,
    ChildTaskSpec,
    OverlapPolicy,
    RetryAttemptView,
    RetryPolicy,
    ScheduleFire,
    ScheduleView,
    TaskCreate,
    TaskDetails,
    TaskEventView,
    TaskStatus,
    TaskView,
)
from media_orchestrator.storage.alembic_runner import upgrade_head
from media_orchestrator.storage.common import (
    build_sqlite_engine,
    dump_json,
    load_json,
    optional_utc,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from media_orchestrator.storage.sqlmodel_models import (
    RetryHistory,
    RetryPolicyRecord,
    Task,
    TaskDependency,
    TaskEvent,
    TaskSchedule,
)

_LIVE_VALUES = tuple(status.value for status in LIVE_STATUSES)
_TERMINAL_VALUES = tuple(status.value for status in TERMINAL_STATUSES)


class TaskStore:
    """Task graph persistence facade backed by SQLModel + SQLite."""

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self.now_fn = now_fn
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        now_fn: Callable[[], datetime] = utc_now,
    ) -> TaskStore:
        return cls(
            settings.db_path,
            busy_timeout_ms=settings.storage.busy_timeout_ms,
            now_fn=now_fn,
        )

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        try:
            upgrade_head(self.db_path)
        except SQLAlchemyError as error:
            raise PersistenceError(f"Schema migration failed: {error}") from error

    @contextmanager
    def _session(self) -> Iterator[Session]:
        try:
            with Session(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            raise PersistenceError(f"Task store operation failed: {error}") from error

    # Tasks

    def create_task(self, payload: TaskCreate) -> TaskView:
        """Insert a pending task together with its dependency edges."""

        now = self.now_fn()
        task_id = payload.task_id or str(uuid4())
        depends_on = list(dict.fromkeys(payload.depends_on))
        with self._session() as session:
            if payload.parent_id is not None:
                self._require_task_row(session, payload.parent_id)
            row = Task(
                task_id=task_id,
                task_type=payload.task_type,
                status=TaskStatus.PENDING.value,
                description=payload.description,
                args_json=dump_json(payload.args or {}),
                parent_id=payload.parent_id,
                is_template=payload.is_template,
                attempt=0,
                retry_delay_ms=0,
                created_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()

            if depends_on:
                adjacency = self._load_adjacency(session)
                for depends_on_id in depends_on:
                    if self._find_task_row(session, depends_on_id) is None:
                        session.rollback()
                        raise NotFoundError("Task", depends_on_id)
                    path = find_cycle_path(adjacency, task_id, depends_on_id)
                    if path is not None:
                        session.rollback()
                        raise CycleError(_cycle_message(task_id, depends_on_id, path), path=path)
                    adjacency.setdefault(task_id, set()).add(depends_on_id)
                    session.add(
                        TaskDependency(
                            task_id=task_id,
                            depends_on_id=depends_on_id,
                            created_at=to_db_datetime(now),
                        ),
                    )

            self._add_event(
                session=session,
                task_id=task_id,
                event_type="template_created" if payload.is_template else "created",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={
                    "task_type": payload.task_type,
                    "parent_id": payload.parent_id,
                    "depends_on": depends_on,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_task_view(row)

    def get_task(self, task_id: str) -> TaskView:
        with self._session() as session:
            return _to_task_view(self._require_task_row(session, task_id))

    def list_tasks(
        self,
        *,
        status: TaskStatus | None = None,
        task_type: str | None = None,
        parent_id: str | None = None,
        include_templates: bool = False,
        limit: int = 50,
    ) -> list[TaskView]:
        """List recent tasks, newest first."""

        with self._session() as session:
            statement = select(Task).order_by(col(Task.created_at).desc()).limit(limit)
            if status is not None:
                statement = statement.where(Task.status == status.value)
            if task_type is not None:
                statement = statement.where(Task.task_type == task_type)
            if parent_id is not None:
                statement = statement.where(Task.parent_id == parent_id)
            if not include_templates:
                statement = statement.where(col(Task.is_template).is_(False))
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def get_task_details(self, *, task_id: str) -> TaskDetails | None:
        """Return task details with graph neighbourhood and event stream."""

        with self._session() as session:
            task = self._find_task_row(session, task_id)
            if task is None:
                return None
            event_rows = session.exec(
                select(TaskEvent)
                .where(TaskEvent.task_id == task_id)
                .order_by(col(TaskEvent.created_at).asc(), col(TaskEvent.id).asc()),
            ).all()
            dependencies = session.exec(
                select(TaskDependency.depends_on_id)
                .where(TaskDependency.task_id == task_id)
                .order_by(col(TaskDependency.created_at).asc()),
            ).all()
            dependents = session.exec(
                select(TaskDependency.task_id)
                .where(TaskDependency.depends_on_id == task_id)
                .order_by(col(TaskDependency.created_at).asc()),
            ).all()
            children = session.exec(
                select(Task.task_id)
                .where(Task.parent_id == task_id)
                .order_by(col(Task.created_at).asc()),
            ).all()
            view = _to_task_view(task)

        return TaskDetails(
            task=view,
            events=[_to_event_view(row) for row in event_rows],
            dependencies=list(dependencies),
            dependents=list(dependents),
            children=list(children),
        )

    def claim_task(
        self,
        *,
        task_id: str,
        worker_id: str,
        satisfied: Iterable[TaskStatus] = (TaskStatus.COMPLETED,),
    ) -> TaskView | None:
        """Move one ready task ``pending -> running``; ``None`` if another claimer won."""

        now = self.now_fn()
        satisfied_values = [status.value for status in satisfied]
        with self._session() as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.PENDING.value,
                    col(Task.is_template).is_(False),
                )
                .values(
                    status=TaskStatus.RUNNING.value,
                    attempt=col(Task.attempt) + 1,
                    started_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    next_retry_at=None,
                    worker_id=worker_id,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return None

            blockers = session.exec(
                select(Task.task_id)
                .join(TaskDependency, col(TaskDependency.depends_on_id) == col(Task.task_id))
                .where(
                    TaskDependency.task_id == task_id,
                    col(Task.status).not_in(satisfied_values),
                ),
            ).all()
            if blockers:
                session.rollback()
                return None

            claimed = self._require_task_row(session, task_id)
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="claimed",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.RUNNING,
                details={"worker_id": worker_id, "attempt": claimed.attempt},
            )
            session.commit()
            session.refresh(claimed)
            return _to_task_view(claimed)

    def touch_task(self, *, task_id: str) -> None:
        """Update heartbeat for a running task."""

        now = self.now_fn()
        with self._session() as session:
            session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.RUNNING.value,
                )
                .values(heartbeat_at=to_db_datetime(now), updated_at=to_db_datetime(now)),
            )
            session.commit()

    def complete_task(self, *, task_id: str, result: Any = None) -> bool:
        """Mark a running task as completed."""

        now = self.now_fn()
        with self._session() as session:
            if not self._complete_running(session, task_id=task_id, result=result, now=now):
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="completed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.COMPLETED,
                details={},
            )
            session.commit()
            return True

    def complete_generator_task(
        self,
        *,
        task_id: str,
        children: list[ChildTaskSpec],
        chain: bool = False,
        result: Any = None,
    ) -> list[str] | None:
        """Complete a generator and insert its children in the same transaction.

        Children already present under this parent are returned instead of
        inserting duplicates. ``None`` means the running claim was lost.
        """

        now = self.now_fn()
        with self._session() as session:
            if not self._complete_running(session, task_id=task_id, result=result, now=now):
                session.rollback()
                return None

            existing = session.exec(
                select(Task.task_id)
                .where(Task.parent_id == task_id)
                .order_by(col(Task.created_at).asc(), col(Task.task_id).asc()),
            ).all()
            child_ids = list(existing)
            reused = bool(child_ids)
            if not reused:
                previous_id: str | None = None
                for index, spec in enumerate(children):
                    child_id = str(uuid4())
                    created_at = to_db_datetime(now + timedelta(microseconds=index))
                    session.add(
                        Task(
                            task_id=child_id,
                            task_type=spec.task_type,
                            status=TaskStatus.PENDING.value,
                            description=spec.description,
                            args_json=dump_json(spec.args or {}),
                            parent_id=task_id,
                            attempt=0,
                            retry_delay_ms=0,
                            created_at=created_at,
                            updated_at=created_at,
                        ),
                    )
                    session.flush()
                    if chain and previous_id is not None:
                        session.add(
                            TaskDependency(
                                task_id=child_id,
                                depends_on_id=previous_id,
                                created_at=created_at,
                            ),
                        )
                    self._add_event(
                        session=session,
                        task_id=child_id,
                        event_type="created",
                        status_from=None,
                        status_to=TaskStatus.PENDING,
                        details={
                            "task_type": spec.task_type,
                            "parent_id": task_id,
                            "depends_on": [previous_id] if chain and previous_id else [],
                        },
                    )
                    child_ids.append(child_id)
                    previous_id = child_id

            self._add_event(
                session=session,
                task_id=task_id,
                event_type="completed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.COMPLETED,
                details={"children": len(child_ids), "reused_children": reused, "chain": chain},
            )
            session.commit()
            return child_ids

    def fail_task(
        self,
        *,
        task_id: str,
        error_type: str | None,
        error_message: str,
    ) -> bool:
        """Mark a running task as permanently failed."""

        now = self.now_fn()
        with self._session() as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=TaskStatus.FAILED.value,
                    error_type=error_type,
                    error_message=error_message,
                    next_retry_at=None,
                    finished_at=to_db_datetime(now),
                    heartbeat_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="failed",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.FAILED,
                details={"error_type": error_type, "error_message": error_message},
            )
            session.commit()
            return True

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        error_type: str | None,
        error_message: str,
        delay_ms: int,
        next_retry_at: datetime,
    ) -> bool:
        """Park a running task in ``retrying`` until its backoff elapses."""

        now = self.now_fn()
        with self._session() as session:
            result = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.RUNNING.value,
                )
                .values(
                    status=TaskStatus.RETRYING.value,
                    error_type=error_type,
                    error_message=error_message,
                    retry_delay_ms=delay_ms,
                    next_retry_at=to_db_datetime(next_retry_at),
                    heartbeat_at=None,
                    worker_id=None,
                    updated_at=to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="retry_scheduled",
                status_from=TaskStatus.RUNNING,
                status_to=TaskStatus.RETRYING,
                details={
                    "delay_ms": delay_ms,
                    "next_retry_at": to_utc_aware_datetime(next_retry_at).isoformat(),
                    "error_type": error_type,
                },
            )
            session.commit()
            return True

    def release_due_retries(self, *, now: datetime | None = None) -> list[str]:
        """Move ``retrying`` tasks whose backoff elapsed back to ``pending``."""

        now = now or self.now_fn()
        released: list[str] = []
        with self._session() as session:
            due = session.exec(
                select(Task.task_id)
                .where(
                    Task.status == TaskStatus.RETRYING.value,
                    col(Task.next_retry_at) <= to_db_datetime(now),
                )
                .order_by(col(Task.next_retry_at).asc()),
            ).all()
            for task_id in due:
                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.task_id) == task_id,
                        col(Task.status) == TaskStatus.RETRYING.value,
                    )
                    .values(
                        status=TaskStatus.PENDING.value,
                        next_retry_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="retry_released",
                    status_from=TaskStatus.RETRYING,
                    status_to=TaskStatus.PENDING,
                    details={},
                )
                released.append(task_id)
            session.commit()
        return released

    def skip_task(
        self,
        *,
        task_id: str,
        reason: str,
        details: dict[str, object] | None = None,
        from_status: TaskStatus = TaskStatus.PENDING,
    ) -> bool:
        """Move a task to ``skipped``; ``False`` if it is no longer in ``from_status``."""

        now = self.now_fn()
        with self._session() as session:
            if not self._skip_row(session, task_id=task_id, reason=reason, now=now, from_status=from_status):
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="skipped",
                status_from=from_status,
                status_to=TaskStatus.SKIPPED,
                details={"reason": reason, **(details or {})},
            )
            session.commit()
            return True

    def skip_dependents(self, *, task_id: str, transitive: bool = True) -> list[str]:
        """Skip pending dependents of ``task_id``, breadth first."""

        now = self.now_fn()
        skipped: list[str] = []
        with self._session() as session:
            seen = {task_id}
            frontier = [task_id]
            while frontier:
                current = frontier.pop(0)
                dependents = session.exec(
                    select(TaskDependency.task_id)
                    .where(TaskDependency.depends_on_id == current)
                    .order_by(col(TaskDependency.created_at).asc()),
                ).all()
                for dependent_id in dependents:
                    if dependent_id in seen:
                        continue
                    seen.add(dependent_id)
                    reason = f"Dependency {current} did not complete"
                    if not self._skip_row(session, task_id=dependent_id, reason=reason, now=now):
                        continue
                    self._add_event(
                        session=session,
                        task_id=dependent_id,
                        event_type="skipped",
                        status_from=TaskStatus.PENDING,
                        status_to=TaskStatus.SKIPPED,
                        details={"reason": "dependency_failed", "blocked_by": current, "root": task_id},
                    )
                    skipped.append(dependent_id)
                    if transitive:
                        frontier.append(dependent_id)
            session.commit()
        return skipped

    def list_blocked_pending(self, *, blocking: Iterable[TaskStatus]) -> list[tuple[str, str]]:
        """Pending tasks paired with one dependency that can no longer satisfy them."""

        blocking_values = [status.value for status in blocking]
        with self._session() as session:
            edges = session.exec(
                select(TaskDependency.task_id, TaskDependency.depends_on_id)
                .join(Task, col(Task.task_id) == col(TaskDependency.depends_on_id))
                .where(col(Task.status).in_(blocking_values))
                .order_by(col(TaskDependency.created_at).asc()),
            ).all()
            if not edges:
                return []
            pending = set(
                session.exec(
                    select(Task.task_id).where(
                        col(Task.task_id).in_({task_id for task_id, _ in edges}),
                        Task.status == TaskStatus.PENDING.value,
                    ),
                ).all(),
            )
        blocked: dict[str, str] = {}
        for task_id, depends_on_id in edges:
            if task_id in pending and task_id not in blocked:
                blocked[task_id] = depends_on_id
        return list(blocked.items())

    def request_cancel(self, *, task_id: str, force_skip: bool = False) -> TaskStatus:
        """Cancel a task; returns the status it was in when the request landed.

        Pending and retrying tasks are skipped immediately. Running tasks get
        ``cancel_requested`` so the worker discards their outcome, or are
        skipped at once when ``force_skip`` is set.
        """

        now = self.now_fn()
        with self._session() as session:
            row = self._require_task_row(session, task_id)
            if row.is_template:
                raise TaskStateError(
                    f"Task {task_id} is a schedule template; disable or delete its schedule instead.",
                )
            previous = TaskStatus(row.status)
            if previous.is_terminal:
                raise TaskStateError(f"Task cannot be canceled from status={row.status}")

            if previous == TaskStatus.RETRYING:
                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.task_id) == task_id,
                        col(Task.status) == TaskStatus.RETRYING.value,
                    )
                    .values(
                        status=TaskStatus.PENDING.value,
                        next_retry_at=None,
                        updated_at=to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise _concurrent_change(task_id, "canceling")
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="retry_released",
                    status_from=TaskStatus.RETRYING,
                    status_to=TaskStatus.PENDING,
                    details={"reason": "cancel"},
                )

            if previous == TaskStatus.RUNNING and not force_skip:
                result = session.exec(
                    sa_update(Task)
                    .where(
                        col(Task.task_id) == task_id,
                        col(Task.status) == TaskStatus.RUNNING.value,
                    )
                    .values(cancel_requested=True, updated_at=to_db_datetime(now)),
                )
                if result.rowcount != 1:
                    session.rollback()
                    raise _concurrent_change(task_id, "canceling")
                self._add_event(
                    session=session,
                    task_id=task_id,
                    event_type="cancel_requested",
                    status_from=TaskStatus.RUNNING,
                    status_to=TaskStatus.RUNNING,
                    details={},
                )
                session.commit()
                return previous

            skip_from = TaskStatus.RUNNING if previous == TaskStatus.RUNNING else TaskStatus.PENDING
            if not self._skip_row(
                session,
                task_id=task_id,
                reason="Canceled",
                now=now,
                from_status=skip_from,
                cancel_requested=True,
            ):
                session.rollback()
                raise _concurrent_change(task_id, "canceling")
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="canceled",
                status_from=skip_from,
                status_to=TaskStatus.SKIPPED,
                details={"forced": force_skip and previous == TaskStatus.RUNNING},
            )
            session.commit()
            return previous

    def resubmit_task(self, *, task_id: str) -> TaskView:
        """Create a fresh pending copy of a terminal task with the same dependencies."""

        with self._session() as session:
            row = self._require_task_row(session, task_id)
            if TaskStatus(row.status) not in TERMINAL_STATUSES or row.is_template:
                raise TaskStateError(
                    f"Only finished tasks can be resubmitted, got status={row.status}",
                )
            depends_on = list(
                session.exec(
                    select(TaskDependency.depends_on_id).where(TaskDependency.task_id == task_id),
                ).all(),
            )
            payload = TaskCreate(
                task_type=row.task_type,
                args=load_json(row.args_json) or {},
                description=row.description,
                depends_on=depends_on,
            )
        created = self.create_task(payload)
        with self._session() as session:
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="resubmitted",
                status_from=None,
                status_to=None,
                details={"new_task_id": created.task_id},
            )
            session.commit()
        return created

    def list_running_tasks(self, *, stale_before: datetime | None = None) -> list[TaskView]:
        """Running tasks, optionally only those whose heartbeat is older than ``stale_before``."""

        with self._session() as session:
            statement = (
                select(Task)
                .where(Task.status == TaskStatus.RUNNING.value)
                .order_by(col(Task.started_at).asc())
            )
            if stale_before is not None:
                statement = statement.where(
                    col(Task.heartbeat_at).is_(None)
                    | (col(Task.heartbeat_at) < to_db_datetime(stale_before)),
                )
            rows = session.exec(statement).all()
        return [_to_task_view(row) for row in rows]

    def count_tasks_by_status(self) -> dict[str, int]:
        with self._session() as session:
            rows = session.exec(
                select(Task.status, func.count(col(Task.task_id)))
                .where(col(Task.is_template).is_(False))
                .group_by(col(Task.status)),
            ).all()
        counts = {status.value: 0 for status in TaskStatus}
        for status, count in rows:
            counts[status] = int(count)
        return counts

    def child_summary(self, *, parent_id: str) -> ChildSummary:
        with self._session() as session:
            self._require_task_row(session, parent_id)
            rows = session.exec(
                select(Task.status, func.count(col(Task.task_id)))
                .where(Task.parent_id == parent_id)
                .group_by(col(Task.status)),
            ).all()
        by_status = {status: int(count) for status, count in rows}
        return ChildSummary(parent_id=parent_id, total=sum(by_status.values()), by_status=by_status)

    def prune_finished_tasks(self, *, older_than: datetime) -> int:
        """Delete terminal tasks finished before ``older_than``.

        A task is kept while any child or dependent of it would survive the prune.
        """

        with self._session() as session:
            candidates = set(
                session.exec(
                    select(Task.task_id).where(
                        col(Task.status).in_(_TERMINAL_VALUES),
                        col(Task.is_template).is_(False),
                        col(Task.finished_at) < to_db_datetime(older_than),
                    ),
                ).all(),
            )
            if not candidates:
                return 0
            edges = session.exec(select(TaskDependency.task_id, TaskDependency.depends_on_id)).all()
            tree = session.exec(
                select(Task.task_id, Task.parent_id).where(col(Task.parent_id).is_not(None)),
            ).all()
            changed = True
            while changed:
                changed = False
                for dependent_id, depends_on_id in edges:
                    if depends_on_id in candidates and dependent_id not in candidates:
                        candidates.discard(depends_on_id)
                        changed = True
                for child_id, parent_id in tree:
                    if parent_id in candidates and child_id not in candidates:
                        candidates.discard(parent_id)
                        changed = True
            if not candidates:
                return 0
            result = session.exec(sa_delete(Task).where(col(Task.task_id).in_(candidates)))
            session.commit()
            return int(result.rowcount or 0)

    # Dependencies

    def add_dependency(self, *, task_id: str, depends_on_id: str) -> bool:
        """Insert one edge after a cycle check, atomically.

        Returns ``False`` when the edge already exists.
        """

        now = self.now_fn()
        with self._session() as session:
            guarded = session.exec(
                sa_update(Task)
                .where(
                    col(Task.task_id) == task_id,
                    col(Task.status) == TaskStatus.PENDING.value,
                )
                .values(updated_at=to_db_datetime(now)),
            )
            if guarded.rowcount != 1:
                session.rollback()
                row = self._require_task_row(session, task_id)
                raise TaskStateError(
                    f"Dependencies can only be added to pending tasks; {task_id} is {row.status}.",
                )
            if self._find_task_row(session, depends_on_id) is None:
                session.rollback()
                raise NotFoundError("Task", depends_on_id)

            existing = session.exec(
                select(TaskDependency).where(
                    TaskDependency.task_id == task_id,
                    TaskDependency.depends_on_id == depends_on_id,
                ),
            ).one_or_none()
            if existing is not None:
                session.rollback()
                return False

            path = find_cycle_path(self._load_adjacency(session), task_id, depends_on_id)
            if path is not None:
                session.rollback()
                raise CycleError(_cycle_message(task_id, depends_on_id, path), path=path)

            session.add(
                TaskDependency(
                    task_id=task_id,
                    depends_on_id=depends_on_id,
                    created_at=to_db_datetime(now),
                ),
            )
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="dependency_added",
                status_from=TaskStatus.PENDING,
                status_to=TaskStatus.PENDING,
                details={"depends_on_id": depends_on_id},
            )
            session.commit()
            return True

    def remove_dependency(self, *, task_id: str, depends_on_id: str) -> bool:
        with self._session() as session:
            self._require_task_row(session, task_id)
            result = session.exec(
                sa_delete(TaskDependency).where(
                    col(TaskDependency.task_id) == task_id,
                    col(TaskDependency.depends_on_id) == depends_on_id,
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                task_id=task_id,
                event_type="dependency_removed",
                status_from=None,
                status_to=None,
                details={"depends_on_id": depends_on_id},
            )
            session.commit()
            return True

    def dependency_statuses(self, task_id: str) -> dict[str, TaskStatus]:
        """Status of every direct dependency of ``task_id``."""

        with self._session() as session:
            self._require_task_row(session, task_id)
            rows = session.exec(
                select(Task.task_id, Task.status)
                .join(TaskDependency, col(TaskDependency.depends_on_id) == col(Task.task_id))
                .where(TaskDependency.task_id == task_id),
            ).all()
        return {dependency_id: TaskStatus(status) for dependency_id, status in rows}

    def list_ready_tasks(
        self,
        *,
        satisfied: Iterable[TaskStatus] = (TaskStatus.COMPLETED,),
        limit: int | None = None,
    ) -> list[TaskView]:
        """Pending non-template tasks with every dependency satisfied, oldest first.

        Instances of ``queue`` schedules are admitted only while fewer than
        ``max_instances`` of them are running.
        """

        satisfied_values = {status.value for status in satisfied}
        with self._session() as session:
            rows = session.exec(
                select(Task)
                .where(
                    Task.status == TaskStatus.PENDING.value,
                    col(Task.is_template).is_(False),
                )
                .order_by(col(Task.created_at).asc(), col(Task.task_id).asc()),
            ).all()
            if not rows:
                return []

            pending_ids = [row.task_id for row in rows]
            edges = session.exec(
                select(TaskDependency.task_id, Task.status)
                .join(Task, col(Task.task_id) == col(TaskDependency.depends_on_id))
                .where(col(TaskDependency.task_id).in_(pending_ids)),
            ).all()
            blocked = {task_id for task_id, status in edges if status not in satisfied_values}
            candidates = [row for row in rows if row.task_id not in blocked]

            schedule_ids = {row.schedule_id for row in candidates if row.schedule_id is not None}
            slots: dict[int, int] = {}
            if schedule_ids:
                queued = session.exec(
                    select(TaskSchedule.schedule_id, TaskSchedule.max_instances).where(
                        col(TaskSchedule.schedule_id).in_(schedule_ids),
                        TaskSchedule.overlap_policy == OverlapPolicy.QUEUE.value,
                    ),
                ).all()
                running = dict(
                    session.exec(
                        select(Task.schedule_id, func.count(col(Task.task_id)))
                        .where(
                            col(Task.schedule_id).in_(schedule_ids),
                            Task.status == TaskStatus.RUNNING.value,
                        )
                        .group_by(col(Task.schedule_id)),
                    ).all(),
                )
                for schedule_id, max_instances in queued:
                    if schedule_id is None:
                        continue
                    slots[schedule_id] = max_instances - int(running.get(schedule_id, 0))

            ready: list[TaskView] = []
            for row in candidates:
                if row.schedule_id in slots:
                    if slots[row.schedule_id] <= 0:
                        continue
                    slots[row.schedule_id] -= 1
                ready.append(_to_task_view(row))
                if limit is not None and len(ready) >= limit:
                    break
        return ready

    def dependency_snapshot(self) -> tuple[list[str], dict[str, set[str]]]:
        """Non-template task ids by creation time and their explicit dependency edges."""

        with self._session() as session:
            nodes = session.exec(
                select(Task.task_id)
                .where(col(Task.is_template).is_(False))
                .order_by(col(Task.created_at).asc(), col(Task.task_id).asc()),
            ).all()
            edges = session.exec(select(TaskDependency.task_id, TaskDependency.depends_on_id)).all()
        adjacency: dict[str, set[str]] = {}
        for task_id, depends_on_id in edges:
            adjacency.setdefault(task_id, set()).add(depends_on_id)
        return list(nodes), adjacency

    # Retry history and policies

    def record_attempt(  # noqa: PLR0913
        self,
        *,
        task_id: str,
        attempt_number: int,
        error_type: str | None,
        error_message: str | None,
        delay_ms: int,
        success: bool,
        execution_time_ms: int | None,
    ) -> RetryAttemptView:
        """Append one attempt row; an existing row for the same attempt is returned as is."""

        with self._session() as session:
            existing = session.exec(
                select(RetryHistory).where(
                    RetryHistory.task_id == task_id,
                    RetryHistory.attempt_number == attempt_number,
                ),
            ).one_or_none()
            if existing is not None:
                return _to_attempt_view(existing)
            row = RetryHistory(
                task_id=task_id,
                attempt_number=attempt_number,
                attempted_at=to_db_datetime(self.now_fn()),
                error_type=error_type,
                error_message=error_message,
                delay_ms=delay_ms,
                success=success,
                execution_time_ms=execution_time_ms,
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_attempt_view(row)

    def list_attempts(self, *, task_id: str) -> list[RetryAttemptView]:
        with self._session() as session:
            rows = session.exec(
                select(RetryHistory)
                .where(RetryHistory.task_id == task_id)
                .order_by(col(RetryHistory.attempt_number).asc()),
            ).all()
        return [_to_attempt_view(row) for row in rows]

    def prune_retry_history(self, *, older_than: datetime) -> int:
        with self._session() as session:
            result = session.exec(
                sa_delete(RetryHistory).where(
                    col(RetryHistory.attempted_at) < to_db_datetime(older_than),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def get_retry_policy(self, task_type: str) -> RetryPolicy | None:
        with self._session() as session:
            row = session.exec(
                select(RetryPolicyRecord).where(RetryPolicyRecord.task_type == task_type),
            ).one_or_none()
            return _to_retry_policy(row) if row is not None else None

    def list_retry_policies(self) -> list[RetryPolicy]:
        with self._session() as session:
            rows = session.exec(
                select(RetryPolicyRecord).order_by(col(RetryPolicyRecord.task_type).asc()),
            ).all()
        return [_to_retry_policy(row) for row in rows]

    def upsert_retry_policy(self, policy: RetryPolicy) -> RetryPolicy:
        now = to_db_datetime(self.now_fn())
        with self._session() as session:
            row = session.exec(
                select(RetryPolicyRecord).where(RetryPolicyRecord.task_type == policy.task_type),
            ).one_or_none()
            if row is None:
                row = RetryPolicyRecord(task_type=policy.task_type, created_at=now, updated_at=now)
            row.max_retries = policy.max_retries
            row.backoff_strategy = policy.backoff_strategy.value
            row.base_delay_ms = policy.base_delay_ms
            row.max_delay_ms = policy.max_delay_ms
            row.multiplier = policy.multiplier
            row.retryable_errors_json = dump_json(list(policy.retryable_errors))
            row.non_retryable_errors_json = dump_json(list(policy.non_retryable_errors))
            row.default_retryable = policy.default_retryable
            row.jitter = policy.jitter
            row.enabled = policy.enabled
            row.updated_at = now
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_retry_policy(row)

    def delete_retry_policy(self, task_type: str) -> bool:
        with self._session() as session:
            result = session.exec(
                sa_delete(RetryPolicyRecord).where(col(RetryPolicyRecord.task_type) == task_type),
            )
            session.commit()
            return result.rowcount == 1

    # Schedules

    def create_schedule(  # noqa: PLR0913
        self,
        *,
        task_type: str,
        args: dict[str, Any],
        description: str,
        cron_expression: str,
        timezone: str,
        enabled: bool,
        max_instances: int,
        overlap_policy: OverlapPolicy,
        next_run_at: datetime,
    ) -> ScheduleView:
        """Insert a template task and its schedule in one transaction."""

        now = to_db_datetime(self.now_fn())
        template_id = str(uuid4())
        with self._session() as session:
            session.add(
                Task(
                    task_id=template_id,
                    task_type=task_type,
                    status=TaskStatus.PENDING.value,
                    description=description,
                    args_json=dump_json(args or {}),
                    is_template=True,
                    attempt=0,
                    retry_delay_ms=0,
                    created_at=now,
                    updated_at=now,
                ),
            )
            session.flush()
            schedule = TaskSchedule(
                template_task_id=template_id,
                cron_expression=cron_expression,
                timezone=timezone,
                enabled=enabled,
                next_run_at=to_db_datetime(next_run_at),
                run_count=0,
                skipped_count=0,
                max_instances=max_instances,
                overlap_policy=overlap_policy.value,
                created_at=now,
                updated_at=now,
            )
            session.add(schedule)
            session.flush()
            self._add_event(
                session=session,
                task_id=template_id,
                event_type="template_created",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={"schedule_id": schedule.schedule_id, "cron_expression": cron_expression},
            )
            session.commit()
            session.refresh(schedule)
            return _to_schedule_view(schedule, task_type=task_type)

    def get_schedule(self, schedule_id: int) -> ScheduleView:
        with self._session() as session:
            row = session.exec(
                select(TaskSchedule, Task.task_type)
                .join(Task, col(Task.task_id) == col(TaskSchedule.template_task_id))
                .where(TaskSchedule.schedule_id == schedule_id),
            ).one_or_none()
            if row is None:
                raise NotFoundError("Schedule", schedule_id)
            schedule, task_type = row
            return _to_schedule_view(schedule, task_type=task_type)

    def list_schedules(
        self,
        *,
        enabled_only: bool = False,
        due_before: datetime | None = None,
    ) -> list[ScheduleView]:
        """Schedules by id, or by ``next_run_at`` when only due ones are requested."""

        with self._session() as session:
            statement = select(TaskSchedule, Task.task_type).join(
                Task,
                col(Task.task_id) == col(TaskSchedule.template_task_id),
            )
            if enabled_only or due_before is not None:
                statement = statement.where(col(TaskSchedule.enabled).is_(True))
            if due_before is not None:
                statement = statement.where(
                    col(TaskSchedule.next_run_at) <= to_db_datetime(due_before),
                ).order_by(col(TaskSchedule.next_run_at).asc(), col(TaskSchedule.schedule_id).asc())
            else:
                statement = statement.order_by(col(TaskSchedule.schedule_id).asc())
            rows = session.exec(statement).all()
        return [_to_schedule_view(schedule, task_type=task_type) for schedule, task_type in rows]

    def update_schedule(self, schedule_id: int, **values: Any) -> ScheduleView:
        """Overwrite schedule columns; enum and datetime values are normalized."""

        normalized: dict[str, Any] = {"updated_at": to_db_datetime(self.now_fn())}
        for key, value in values.items():
            if isinstance(value, OverlapPolicy):
                value = value.value
            elif isinstance(value, datetime):
                value = to_db_datetime(value)
            normalized[key] = value
        with self._session() as session:
            result = session.exec(
                sa_update(TaskSchedule)
                .where(col(TaskSchedule.schedule_id) == schedule_id)
                .values(**normalized),
            )
            if result.rowcount != 1:
                session.rollback()
                raise NotFoundError("Schedule", schedule_id)
            session.commit()
        return self.get_schedule(schedule_id)

    def delete_schedule(self, schedule_id: int) -> bool:
        """Delete a schedule and its template; materialized instances are kept."""

        with self._session() as session:
            schedule = session.exec(
                select(TaskSchedule).where(TaskSchedule.schedule_id == schedule_id),
            ).one_or_none()
            if schedule is None:
                return False
            template_id = schedule.template_task_id
            session.exec(sa_delete(TaskSchedule).where(col(TaskSchedule.schedule_id) == schedule_id))
            session.exec(sa_delete(Task).where(col(Task.task_id) == template_id))
            session.commit()
            return True

    def count_live_instances(self, *, template_task_id: str) -> int:
        with self._session() as session:
            return self._count_live_instances(session, template_task_id)

    def fire_schedule(
        self,
        *,
        schedule_id: int,
        expected_next_run_at: datetime,
        next_run_at: datetime,
        admit: Callable[[int], bool],
    ) -> ScheduleFire | None:
        """Advance one due schedule and materialize an instance if ``admit`` allows.

        ``admit`` receives the number of live instances. ``None`` means another
        tick advanced the schedule first.
        """

        now = self.now_fn()
        with self._session() as session:
            guarded = session.exec(
                sa_update(TaskSchedule)
                .where(
                    col(TaskSchedule.schedule_id) == schedule_id,
                    col(TaskSchedule.enabled).is_(True),
                    col(TaskSchedule.next_run_at) == to_db_datetime(expected_next_run_at),
                )
                .values(
                    next_run_at=to_db_datetime(next_run_at),
                    updated_at=to_db_datetime(now),
                ),
            )
            if guarded.rowcount != 1:
                session.rollback()
                return None

            schedule = session.exec(
                select(TaskSchedule).where(TaskSchedule.schedule_id == schedule_id),
            ).one()
            template = self._require_task_row(session, schedule.template_task_id)
            live = self._count_live_instances(session, template.task_id)
            scheduled_for = to_utc_aware_datetime(expected_next_run_at).isoformat()

            if not admit(live):
                session.exec(
                    sa_update(TaskSchedule)
                    .where(col(TaskSchedule.schedule_id) == schedule_id)
                    .values(skipped_count=col(TaskSchedule.skipped_count) + 1),
                )
                self._add_event(
                    session=session,
                    task_id=template.task_id,
                    event_type="schedule_skipped",
                    status_from=None,
                    status_to=None,
                    details={"schedule_id": schedule_id, "live": live, "scheduled_for": scheduled_for},
                )
                session.commit()
                return ScheduleFire(
                    schedule_id=schedule_id,
                    materialized_task_id=None,
                    skipped=True,
                    live_instances=live,
                    next_run_at=to_utc_aware_datetime(next_run_at),
                )

            instance_id = str(uuid4())
            session.add(
                Task(
                    task_id=instance_id,
                    task_type=template.task_type,
                    status=TaskStatus.PENDING.value,
                    description=template.description,
                    args_json=template.args_json,
                    template_task_id=template.task_id,
                    schedule_id=schedule_id,
                    attempt=0,
                    retry_delay_ms=0,
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.exec(
                sa_update(TaskSchedule)
                .where(col(TaskSchedule.schedule_id) == schedule_id)
                .values(
                    last_run_at=to_db_datetime(now),
                    run_count=col(TaskSchedule.run_count) + 1,
                ),
            )
            session.flush()
            self._add_event(
                session=session,
                task_id=instance_id,
                event_type="materialized",
                status_from=None,
                status_to=TaskStatus.PENDING,
                details={"schedule_id": schedule_id, "scheduled_for": scheduled_for},
            )
            session.commit()
            return ScheduleFire(
                schedule_id=schedule_id,
                materialized_task_id=instance_id,
                skipped=False,
                live_instances=live,
                next_run_at=to_utc_aware_datetime(next_run_at),
            )

    # Internals

    def _find_task_row(self, session: Session, task_id: str) -> Task | None:
        return session.exec(select(Task).where(Task.task_id == task_id)).one_or_none()

    def _require_task_row(self, session: Session, task_id: str) -> Task:
        row = self._find_task_row(session, task_id)
        if row is None:
            raise NotFoundError("Task", task_id)
        return row

    def _load_adjacency(self, session: Session) -> dict[str, set[str]]:
        adjacency: dict[str, set[str]] = {}
        for task_id, depends_on_id in session.exec(
            select(TaskDependency.task_id, TaskDependency.depends_on_id),
        ).all():
            adjacency.setdefault(task_id, set()).add(depends_on_id)
        for child_id, parent_id in session.exec(
            select(Task.task_id, Task.parent_id).where(col(Task.parent_id).is_not(None)),
        ).all():
            if parent_id is not None:
                adjacency.setdefault(parent_id, set()).add(child_id)
        return adjacency

    def _count_live_instances(self, session: Session, template_task_id: str) -> int:
        count = session.exec(
            select(func.count(col(Task.task_id))).where(
                Task.template_task_id == template_task_id,
                col(Task.status).in_(_LIVE_VALUES),
            ),
        ).one()
        return int(count)

    def _complete_running(self, session: Session, *, task_id: str, result: Any, now: datetime) -> bool:
        updated = session.exec(
            sa_update(Task)
            .where(
                col(Task.task_id) == task_id,
                col(Task.status) == TaskStatus.RUNNING.value,
            )
            .values(
                status=TaskStatus.COMPLETED.value,
                result_json=dump_json(result),
                error_type=None,
                error_message=None,
                next_retry_at=None,
                finished_at=to_db_datetime(now),
                heartbeat_at=to_db_datetime(now),
                updated_at=to_db_datetime(now),
            ),
        )
        return updated.rowcount == 1

    def _skip_row(  # noqa: PLR0913
        self,
        session: Session,
        *,
        task_id: str,
        reason: str,
        now: datetime,
        from_status: TaskStatus = TaskStatus.PENDING,
        cancel_requested: bool | None = None,
    ) -> bool:
        values: dict[str, Any] = {
            "status": TaskStatus.SKIPPED.value,
            "error_type": "skipped",
            "error_message": reason,
            "next_retry_at": None,
            "finished_at": to_db_datetime(now),
            "updated_at": to_db_datetime(now),
        }
        if cancel_requested is not None:
            values["cancel_requested"] = cancel_requested
        updated = session.exec(
            sa_update(Task)
            .where(
                col(Task.task_id) == task_id,
                col(Task.status) == from_status.value,
                col(Task.is_template).is_(False),
            )
            .values(**values),
        )
        return updated.rowcount == 1

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        task_id: str,
        event_type: str,
        status_from: TaskStatus | None,
        status_to: TaskStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TaskEvent(
                task_id=task_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=dump_json(details) if details else None,
                created_at=to_db_datetime(self.now_fn()),
            ),
        )


def _cycle_message(task_id: str, depends_on_id: str, path: tuple[str, ...]) -> str:
    return (
        f"Adding dependency {task_id} -> {depends_on_id} would create a cycle: "
        f"{' -> '.join(path)}"
    )


def _concurrent_change(task_id: str, action: str) -> TaskStateError:
    return TaskStateError(
        f"Task state changed concurrently while {action}; please retry command (task_id={task_id}).",
    )


def _to_task_view(row: Task) -> TaskView:
    args = load_json(row.args_json)
    return TaskView(
        task_id=row.task_id,
        task_type=row.task_type,
        status=TaskStatus(row.status),
        args=args if isinstance(args, dict) else {},
        description=row.description,
        parent_id=row.parent_id,
        template_task_id=row.template_task_id,
        schedule_id=row.schedule_id,
        is_template=bool(row.is_template),
        result=load_json(row.result_json),
        error_message=row.error_message,
        error_type=row.error_type,
        attempt=row.attempt,
        retry_delay_ms=row.retry_delay_ms,
        next_retry_at=optional_utc(row.next_retry_at),
        cancel_requested=bool(row.cancel_requested),
        worker_id=row.worker_id,
        heartbeat_at=optional_utc(row.heartbeat_at),
        created_at=to_utc_aware_datetime(row.created_at),
        started_at=optional_utc(row.started_at),
        finished_at=optional_utc(row.finished_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )


def _to_event_view(row: TaskEvent) -> TaskEventView:
    parsed = load_json(row.details_json)
    return TaskEventView(
        event_id=row.id or 0,
        task_id=row.task_id,
        event_type=row.event_type,
        status_from=TaskStatus(row.status_from) if row.status_from is not None else None,
        status_to=TaskStatus(row.status_to) if row.status_to is not None else None,
        created_at=to_utc_aware_datetime(row.created_at),
        details=parsed if isinstance(parsed, dict) else {},
    )


def _to_attempt_view(row: RetryHistory) -> RetryAttemptView:
    return RetryAttemptView(
        attempt_id=row.id or 0,
        task_id=row.task_id,
        attempt_number=row.attempt_number,
        attempted_at=to_utc_aware_datetime(row.attempted_at),
        error_type=row.error_type,
        error_message=row.error_message,
        delay_ms=row.delay_ms,
        success=bool(row.success),
        execution_time_ms=row.execution_time_ms,
    )


def _to_retry_policy(row: RetryPolicyRecord) -> RetryPolicy:
    return RetryPolicy(
        task_type=row.task_type,
        max_retries=row.max_retries,
        backoff_strategy=BackoffStrategy(row.backoff_strategy),
        base_delay_ms=row.base_delay_ms,
        max_delay_ms=row.max_delay_ms,
        multiplier=row.multiplier,
        retryable_errors=tuple(load_json(row.retryable_errors_json) or ()),
        non_retryable_errors=tuple(load_json(row.non_retryable_errors_json) or ()),
        default_retryable=bool(row.default_retryable),
        jitter=bool(row.jitter),
        enabled=bool(row.enabled),
    )


def _to_schedule_view(row: TaskSchedule, *, task_type: str) -> ScheduleView:
    return ScheduleView(
        schedule_id=row.schedule_id or 0,
        template_task_id=row.template_task_id,
        task_type=task_type,
        cron_expression=row.cron_expression,
        timezone=row.timezone,
        enabled=bool(row.enabled),
        next_run_at=to_utc_aware_datetime(row.next_run_at),
        last_run_at=optional_utc(row.last_run_at),
        run_count=row.run_count,
        skipped_count=row.skipped_count,
        max_instances=row.max_instances,
        overlap_policy=OverlapPolicy(row.overlap_policy),
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
