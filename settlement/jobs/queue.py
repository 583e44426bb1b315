import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from settlement.models import Job, JobState

logger = logging.getLogger(__name__)

WAITING = JobState.WAITING.value
ACTIVE = JobState.ACTIVE.value
COMPLETED = JobState.COMPLETED.value
FAILED = JobState.FAILED.value


@dataclass
class TaskOptions:
    name: str
    max_attempts: int = 3
    backoff_base_sec: float = 2.0
    concurrency: int = 1
    repeat_every_sec: int | None = None
    repeat_limit: int | None = None

    def job_key(self, entity_id: str) -> str:
        return f"{self.name}:{entity_id}"


@dataclass
class ClaimedJob:
    id: int
    job_key: str
    task: str
    payload: dict
    attempts: int
    max_attempts: int
    backoff_base_sec: float
    polls: int
    lease_token: str
    repeat_every_sec: int | None
    repeat_limit: int | None
    deadline: datetime | None


@dataclass
class StalledJob:
    job_key: str
    task: str
    stalled_count: int
    failed: bool


class JobQueue:
    """Durable job table in the application database.

    Each job has a deterministic key per entity, so submitting the same work
    twice yields one row. Workers lease jobs; a lease that runs out means the
    worker died and the job is handed to someone else.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        lease_sec: int = 120,
        max_stalled: int = 3,
        clock: Callable[[], datetime] = datetime.utcnow,
        skip_locked: bool = False,
    ) -> None:
        self.session_factory = session_factory
        self.lease_sec = lease_sec
        self.max_stalled = max_stalled
        self.clock = clock
        self.skip_locked = skip_locked
        self.accepting = True

    def enqueue(
        self,
        task: TaskOptions,
        entity_id: str,
        payload: dict,
        delay_sec: float = 0,
        deadline: datetime | None = None,
        db: Session | None = None,
    ) -> Job:
        """Add work for one entity. Pass `db` to enqueue inside the caller's transaction."""
        if db is None:
            with self.session_factory() as own:
                job = self._enqueue(own, task, entity_id, payload, delay_sec, deadline)
                own.commit()
                return job
        return self._enqueue(db, task, entity_id, payload, delay_sec, deadline)

    def _enqueue(
        self, db: Session, task: TaskOptions, entity_id: str, payload: dict, delay_sec: float, deadline: datetime | None
    ) -> Job:
        key = task.job_key(entity_id)
        now = self.clock()
        run_at = now + timedelta(seconds=delay_sec)
        existing = db.execute(select(Job).where(Job.job_key == key)).scalar_one_or_none()
        if existing is not None:
            if existing.state != COMPLETED:
                logger.debug("Job %s already %s", key, existing.state)
                return existing
            self._arm(existing, task, payload, run_at, deadline, now)
            db.flush()
            logger.info("Job %s re-armed", key)
            return existing
        job = Job(job_key=key, task=task.name)
        self._arm(job, task, payload, run_at, deadline, now)
        job.created_at = now
        try:
            with db.begin_nested():
                db.add(job)
        except IntegrityError:
            # a concurrent producer inserted the same key
            return db.execute(select(Job).where(Job.job_key == key)).scalar_one()
        logger.info("Job %s enqueued (run_at=%s)", key, run_at.isoformat())
        return job

    def _arm(self, job: Job, task: TaskOptions, payload: dict, run_at: datetime, deadline: datetime | None, now: datetime) -> None:
        job.payload = payload
        job.state = WAITING
        job.attempts = 0
        job.polls = 0
        job.stalled_count = 0
        job.max_attempts = task.max_attempts
        job.backoff_base_sec = task.backoff_base_sec
        job.repeat_every_sec = task.repeat_every_sec
        job.repeat_limit = task.repeat_limit
        job.deadline = deadline
        job.run_at = run_at
        job.lease_token = None
        job.locked_until = None
        job.last_error = None
        job.finished_at = None
        job.updated_at = now

    def get(self, job_key: str) -> Job | None:
        with self.session_factory() as db:
            return db.execute(select(Job).where(Job.job_key == job_key)).scalar_one_or_none()

    def claim(self, task_name: str, limit: int = 1) -> list[ClaimedJob]:
        if not self.accepting or limit <= 0:
            return []
        now = self.clock()
        claimed: list[ClaimedJob] = []
        with self.session_factory() as db:
            query = (
                select(Job.id)
                .where(Job.task == task_name, Job.state == WAITING, Job.run_at <= now)
                .order_by(Job.run_at, Job.id)
                .limit(limit)
            )
            if self.skip_locked:
                query = query.with_for_update(skip_locked=True)
            for job_id in db.execute(query).scalars().all():
                token = str(uuid.uuid4())
                result = db.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.state == WAITING)
                    .values(
                        state=ACTIVE,
                        lease_token=token,
                        locked_until=now + timedelta(seconds=self.lease_sec),
                        attempts=Job.attempts + 1,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    continue
                job = db.get(Job, job_id, populate_existing=True)
                claimed.append(
                    ClaimedJob(
                        id=job.id,
                        job_key=job.job_key,
                        task=job.task,
                        payload=dict(job.payload or {}),
                        attempts=job.attempts,
                        max_attempts=job.max_attempts,
                        backoff_base_sec=job.backoff_base_sec,
                        polls=job.polls,
                        lease_token=token,
                        repeat_every_sec=job.repeat_every_sec,
                        repeat_limit=job.repeat_limit,
                        deadline=job.deadline,
                    )
                )
            db.commit()
        return claimed

    def _finish(self, job: ClaimedJob, **values) -> bool:
        values.setdefault("updated_at", self.clock())
        values.setdefault("lease_token", None)
        values.setdefault("locked_until", None)
        with self.session_factory() as db:
            result = db.execute(
                update(Job)
                .where(Job.id == job.id, Job.state == ACTIVE, Job.lease_token == job.lease_token)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        if result.rowcount != 1:
            logger.warning("Job %s lease lost before it finished", job.job_key)
            return False
        return True

    def complete(self, job: ClaimedJob) -> bool:
        now = self.clock()
        return self._finish(job, state=COMPLETED, finished_at=now, updated_at=now)

    def can_poll_again(self, job: ClaimedJob) -> bool:
        if job.repeat_limit is not None and job.polls + 1 >= job.repeat_limit:
            return False
        if job.deadline is not None:
            next_run = self.clock() + timedelta(seconds=job.repeat_every_sec or 0)
            if next_run > job.deadline:
                return False
        return True

    def poll_again(self, job: ClaimedJob, reason: str) -> bool:
        """Schedule the next poll of a repeating job. Attempts restart for each poll."""
        now = self.clock()
        return self._finish(
            job,
            state=WAITING,
            polls=job.polls + 1,
            attempts=0,
            run_at=now + timedelta(seconds=job.repeat_every_sec or 0),
            last_error=reason,
            updated_at=now,
        )

    def retry_delay(self, job: ClaimedJob) -> float:
        return job.backoff_base_sec * (2 ** max(0, job.attempts - 1))

    def fail(self, job: ClaimedJob, error: str, retry: bool = True) -> str:
        """Record a failed run. Returns "retry", "failed" or "lost"."""
        now = self.clock()
        if retry and job.attempts < job.max_attempts:
            delay = self.retry_delay(job)
            moved = self._finish(
                job, state=WAITING, run_at=now + timedelta(seconds=delay), last_error=error[:2000], updated_at=now
            )
            if moved:
                logger.info("Job %s retry %s/%s in %.1fs: %s", job.job_key, job.attempts, job.max_attempts, delay, error)
            return "retry" if moved else "lost"
        moved = self._finish(job, state=FAILED, finished_at=now, last_error=error[:2000], updated_at=now)
        if moved:
            logger.error("Job %s failed after %s attempts: %s", job.job_key, job.attempts, error)
        return "failed" if moved else "lost"

    def recover_stalled(self) -> list[StalledJob]:
        now = self.clock()
        recovered: list[StalledJob] = []
        with self.session_factory() as db:
            rows = db.execute(
                select(Job).where(Job.state == ACTIVE, Job.locked_until < now)
            ).scalars().all()
            for job in rows:
                stalled_count = job.stalled_count + 1
                give_up = stalled_count > self.max_stalled
                values = {
                    "stalled_count": stalled_count,
                    "lease_token": None,
                    "locked_until": None,
                    "updated_at": now,
                }
                if give_up:
                    values.update(state=FAILED, finished_at=now, last_error="job stalled too many times")
                else:
                    values.update(state=WAITING, run_at=now)
                result = db.execute(
                    update(Job)
                    .where(Job.id == job.id, Job.state == ACTIVE, Job.lease_token == job.lease_token)
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 1:
                    logger.warning("Job %s stalled (%s times)%s", job.job_key, stalled_count, "; failed" if give_up else "")
                    recovered.append(StalledJob(job.job_key, job.task, stalled_count, give_up))
            db.commit()
        return recovered

    def retry_failed(self, job_key: str) -> bool:
        now = self.clock()
        with self.session_factory() as db:
            result = db.execute(
                update(Job)
                .where(Job.job_key == job_key, Job.state == FAILED)
                .values(state=WAITING, attempts=0, stalled_count=0, run_at=now, finished_at=None, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            db.commit()
        if result.rowcount == 1:
            logger.info("Job %s re-queued by operator", job_key)
            return True
        return False

    def list_failed(self, task_name: str | None = None, limit: int = 50) -> list[Job]:
        with self.session_factory() as db:
            query = select(Job).where(Job.state == FAILED)
            if task_name:
                query = query.where(Job.task == task_name)
            return list(db.execute(query.order_by(Job.finished_at.desc()).limit(limit)).scalars())

    def counts(self) -> dict[str, dict[str, int]]:
        with self.session_factory() as db:
            rows = db.execute(select(Job.task, Job.state, func.count(Job.id)).group_by(Job.task, Job.state)).all()
        summary: dict[str, dict[str, int]] = {}
        for task_name, state, count in rows:
            summary.setdefault(task_name, {WAITING: 0, ACTIVE: 0, COMPLETED: 0, FAILED: 0})[state] = count
        return summary

    def prune_completed(self, keep: int = 100) -> int:
        """Drop old completed rows per task. Failed rows are kept for inspection."""
        removed = 0
        with self.session_factory() as db:
            for task_name in db.execute(select(Job.task).distinct()).scalars().all():
                stale = db.execute(
                    select(Job.id)
                    .where(Job.task == task_name, Job.state == COMPLETED)
                    .order_by(Job.finished_at.desc())
                    .offset(keep)
                ).scalars().all()
                if stale:
                    db.execute(delete(Job).where(Job.id.in_(stale)))
                    removed += len(stale)
            db.commit()
        return removed

    def stop_accepting(self) -> None:
        self.accepting = False
