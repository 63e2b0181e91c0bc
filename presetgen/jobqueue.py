"""Durable at-least-once job queue.

Job rows live in the database, ids travel through Redis:

- ``job_queue`` (list): waiting ids, LPUSH in, BRPOPLPUSH out
- ``job_processing`` (list): ids a worker has popped but not acked yet,
  so a crashed worker never loses a job
- ``job_delayed`` (zset, score = unix ts): retries waiting out their backoff
- ``job_dlq`` (list): terminally failed ids, trimmed to the failed retention

State writes made on behalf of a worker are fenced on the attempt number. A
worker whose attempt was reaped as stalled can still finish late, but its
writes no longer match any row.
"""

import json
import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic import ValidationError
from sqlalchemy import case, delete, select, update
from sqlalchemy.orm import sessionmaker

from .errors import InvalidJobPayload
from .models import Job, JobState, TERMINAL_STATES
from .schemas import JobOut, JobPayload
from .settings import Settings, settings as default_settings

log = logging.getLogger("jobqueue")


@dataclass(frozen=True)
class ClaimedJob:
    id: str
    payload: JobPayload
    attempt: int
    max_attempts: int


class JobQueue:
    def __init__(self, r, session_factory: sessionmaker, cfg: Settings | None = None,
                 clock: Callable[[], float] = time.time):
        self._r = r
        self._session_factory = session_factory
        self._cfg = cfg or default_settings
        self._clock = clock

    def _now(self) -> datetime:
        return datetime.fromtimestamp(self._clock(), timezone.utc)

    # -- producer side -----------------------------------------------------

    def enqueue(self, payload: JobPayload | dict, max_attempts: int | None = None) -> str:
        if not isinstance(payload, JobPayload):
            try:
                payload = JobPayload.model_validate(payload)
            except ValidationError as e:
                raise InvalidJobPayload(str(e)) from e

        job_id = str(uuid.uuid4())
        now = self._now()
        with self._session_factory() as db:
            db.add(Job(
                id=job_id,
                state=JobState.waiting,
                payload=payload.model_dump_json(),
                preset_id=payload.preset_id,
                model_id=payload.model_id,
                progress=0,
                attempts=0,
                max_attempts=max_attempts or self._cfg.max_attempts,
                created_at=now,
                updated_at=now,
            ))
            db.commit()

        self._r.lpush(self._cfg.job_queue, job_id)
        log.info(
            "job queued",
            extra={"job_id": job_id, "preset_id": payload.preset_id,
                   "model_id": payload.model_id, "event": "job_queued"},
        )
        return job_id

    def get(self, job_id: str) -> JobOut | None:
        """None means unknown or already pruned: nothing to show."""
        with self._session_factory() as db:
            job = db.get(Job, job_id)
            if job is None:
                return None
            return JobOut(
                id=job.id,
                state=job.state.value,
                progress=job.progress,
                payload=JobPayload.model_validate_json(job.payload),
                result=json.loads(job.result) if job.result else None,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                started_at=job.started_at,
                finished_at=job.finished_at,
                failure_reason=job.failure_reason,
            )

    def state_of(self, job_id: str) -> JobState | None:
        with self._session_factory() as db:
            return db.execute(select(Job.state).where(Job.id == job_id)).scalar_one_or_none()

    def live_model_ids(self, preset_id: str) -> set[str]:
        """Models of this preset with a job that can still run."""
        with self._session_factory() as db:
            return set(db.execute(
                select(Job.model_id)
                .where(Job.preset_id == preset_id, Job.state.not_in(TERMINAL_STATES))
            ).scalars())

    # -- consumer side -----------------------------------------------------

    def reliable_pop(self, timeout: int = 5) -> str | None:
        """
        BRPOPLPUSH:
        takes from the tail of the queue and parks the id in processing
        until ack, so a crashed worker does not lose it.
        """
        return self._r.brpoplpush(self._cfg.job_queue, self._cfg.job_processing, timeout=timeout)

    def ack(self, job_id: str) -> None:
        # remove ONE occurrence from processing
        self._r.lrem(self._cfg.job_processing, 1, job_id)

    def claim(self, job_id: str) -> ClaimedJob | None:
        """waiting -> active for a new attempt. None if the job is gone or not waiting."""
        now = self._now()
        with self._session_factory() as db:
            res = db.execute(
                update(Job)
                .where(Job.id == job_id, Job.state == JobState.waiting)
                .values(state=JobState.active, attempts=Job.attempts + 1,
                        started_at=now, heartbeat_at=now, updated_at=now)
            )
            db.commit()
            if res.rowcount != 1:
                return None
            job = db.get(Job, job_id)
            attempt, max_attempts, raw = job.attempts, job.max_attempts, job.payload

        try:
            payload = JobPayload.model_validate_json(raw)
        except ValidationError as e:
            # retrying cannot fix a payload
            self.fail(job_id, attempt, f"InvalidJobPayload: {e}", retryable=False)
            return None
        claimed = ClaimedJob(id=job_id, payload=payload, attempt=attempt, max_attempts=max_attempts)
        log.info(
            f"job claimed (attempt {claimed.attempt}/{claimed.max_attempts})",
            extra={"job_id": job_id, "attempt": claimed.attempt, "event": "job_claimed"},
        )
        return claimed

    def set_progress(self, job_id: str, attempt: int, value: int) -> bool:
        """Progress never goes down; also serves as the heartbeat."""
        value = max(0, min(100, int(value)))
        now = self._now()
        with self._session_factory() as db:
            res = db.execute(
                update(Job)
                .where(Job.id == job_id, Job.state == JobState.active, Job.attempts == attempt)
                .values(progress=case((Job.progress < value, value), else_=Job.progress),
                        heartbeat_at=now, updated_at=now)
            )
            db.commit()
            return res.rowcount == 1

    def complete(self, job_id: str, attempt: int, result: dict[str, Any]) -> bool:
        now = self._now()
        with self._session_factory() as db:
            res = db.execute(
                update(Job)
                .where(Job.id == job_id, Job.state == JobState.active, Job.attempts == attempt)
                .values(state=JobState.completed, progress=100, result=json.dumps(result),
                        last_error=None, finished_at=now, heartbeat_at=now, updated_at=now)
            )
            db.commit()
        if res.rowcount != 1:
            log.warning("stale completion ignored", extra={"job_id": job_id, "attempt": attempt, "event": "job_stale_write"})
            return False
        log.info("job completed", extra={"job_id": job_id, "attempt": attempt, "event": "job_completed"})
        self.prune()
        return True

    def backoff(self, attempt: int) -> float:
        # 2s after the 1st failure, 4s after the 2nd, ...
        return min(self._cfg.backoff_cap_seconds, self._cfg.backoff_base_seconds * 2 ** (attempt - 1))

    def fail(self, job_id: str, attempt: int, error: str, retryable: bool) -> JobState | None:
        """
        Record a failed attempt. Retryable failures with attempts left go to
        the delayed set; everything else is terminal. Returns the new state,
        or None if this attempt no longer owns the job.
        """
        now = self._now()
        with self._session_factory() as db:
            job = db.get(Job, job_id)
            if job is None or job.state != JobState.active or job.attempts != attempt:
                log.warning("stale failure ignored", extra={"job_id": job_id, "attempt": attempt, "event": "job_stale_write"})
                return None

            retry = retryable and job.attempts < job.max_attempts
            values: dict[str, Any] = {"last_error": error, "updated_at": now}
            if retry:
                values["state"] = JobState.delayed
            else:
                values.update(state=JobState.failed, failure_reason=error, finished_at=now)
            res = db.execute(
                update(Job)
                .where(Job.id == job_id, Job.state == JobState.active, Job.attempts == attempt)
                .values(**values)
            )
            db.commit()
            if res.rowcount != 1:
                return None

        if retry:
            delay = self.backoff(attempt)
            self._r.zadd(self._cfg.job_delayed, {job_id: self._clock() + delay})
            log.warning(
                f"job failed, retry scheduled in {delay}s",
                extra={"job_id": job_id, "attempt": attempt, "event": "job_retry_scheduled"},
            )
            return JobState.delayed

        pipe = self._r.pipeline()
        pipe.lpush(self._cfg.job_dlq, job_id)
        pipe.ltrim(self._cfg.job_dlq, 0, self._cfg.retention_failed - 1)
        pipe.execute()
        log.error(
            f"job failed permanently: {error}",
            extra={"job_id": job_id, "attempt": attempt, "event": "job_dlq"},
        )
        self.prune()
        return JobState.failed

    # -- housekeeping ------------------------------------------------------

    def move_due_delayed(self, batch: int = 50) -> int:
        """
        delayed jobs: ZSET (score=unix ts)
        moves every job whose backoff has elapsed back onto the queue.
        """
        due = self._r.zrangebyscore(self._cfg.job_delayed, 0, self._clock(), start=0, num=batch)
        moved = 0
        for job_id in due:
            # whoever wins the ZREM owns the move, so ids are never pushed twice
            if not self._r.zrem(self._cfg.job_delayed, job_id):
                continue
            with self._session_factory() as db:
                db.execute(
                    update(Job)
                    .where(Job.id == job_id, Job.state == JobState.delayed)
                    .values(state=JobState.waiting, updated_at=self._now())
                )
                db.commit()
            self._r.lpush(self._cfg.job_queue, job_id)
            moved += 1
        return moved

    def prune(self) -> int:
        """Keep only the newest finished jobs of each terminal state."""
        removed = 0
        keep = {JobState.completed: self._cfg.retention_completed, JobState.failed: self._cfg.retention_failed}
        with self._session_factory() as db:
            for state, n in keep.items():
                old_ids = db.execute(
                    select(Job.id)
                    .where(Job.state == state)
                    .order_by(Job.finished_at.desc(), Job.id.desc())
                    .offset(n)
                ).scalars().all()
                if old_ids:
                    db.execute(delete(Job).where(Job.id.in_(old_ids)))
                    removed += len(old_ids)
            db.commit()
        if removed:
            log.info(f"pruned {removed} finished jobs", extra={"event": "jobs_pruned"})
        return removed

    def _in_list(self, key: str, job_id: str) -> bool:
        return self._r.lpos(key, job_id) is not None

    def reap_stalled(self) -> int:
        """
        The queue cannot see a worker die, so this is run periodically:

        - active jobs without a heartbeat for stall_timeout count as a failed
          transient attempt (retried or failed like any other); terminal ones
          are queued again for the post-finish steps
        - finished jobs still parked in processing are put back on the queue,
          the worker that picks them up redoes the post-completion steps
        - waiting / delayed jobs that fell out of Redis between the db commit
          and the push are pushed again
        """
        stall = self._cfg.stall_timeout_seconds
        cutoff = datetime.fromtimestamp(self._clock() - stall, timezone.utc)
        reaped = 0

        with self._session_factory() as db:
            stalled = db.execute(
                select(Job.id, Job.attempts)
                .where(Job.state == JobState.active, Job.heartbeat_at < cutoff)
            ).all()
            orphans = db.execute(
                select(Job.id, Job.state)
                .where(Job.state.in_([JobState.waiting, JobState.delayed]), Job.updated_at < cutoff)
            ).all()

        for job_id, attempt in stalled:
            state = self.fail(job_id, attempt, f"stalled: no progress for {stall:g}s", retryable=True)
            if state is None:
                continue
            self.ack(job_id)
            if state == JobState.failed:
                # a worker redoes the post-finish steps and frees the reservation
                self._r.lpush(self._cfg.job_queue, job_id)
            reaped += 1
            log.warning("stalled job reaped", extra={"job_id": job_id, "attempt": attempt, "event": "job_reaped"})

        for job_id in self._r.lrange(self._cfg.job_processing, 0, -1):
            state = self.state_of(job_id)
            if state is None:
                self.ack(job_id)
            elif state in TERMINAL_STATES:
                self.ack(job_id)
                self._r.lpush(self._cfg.job_queue, job_id)
                reaped += 1

        for job_id, state in orphans:
            if state == JobState.delayed:
                if self._r.zscore(self._cfg.job_delayed, job_id) is None:
                    self._r.zadd(self._cfg.job_delayed, {job_id: self._clock()})
                    reaped += 1
            elif not (self._in_list(self._cfg.job_queue, job_id) or self._in_list(self._cfg.job_processing, job_id)):
                self._r.lpush(self._cfg.job_queue, job_id)
                reaped += 1

        if reaped:
            log.info(f"reaper recovered {reaped} jobs", extra={"event": "reaper_run"})
        return reaped
