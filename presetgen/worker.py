import logging
import signal
import threading
import time
from typing import Callable, Mapping

from .errors import PreconditionError, ProtocolError
from .jobqueue import ClaimedJob, JobQueue
from .ledger import UsageLedger
from .models import JobState, TERMINAL_STATES
from .provider import GenerationProvider, resolve_image_url
from .reservations import ReservationBook
from .schemas import JobPayload
from .sink import LocalSink, example_key

log = logging.getLogger("worker")

class Worker:
    """Drives one job at a time: provider -> sink -> ledger."""

    def __init__(self, queue: JobQueue, providers: Mapping[str, GenerationProvider], sink: LocalSink,
                 ledger: UsageLedger, reservations: ReservationBook | None = None):
        self.queue = queue
        self._providers = providers
        self._sink = sink
        self._ledger = ledger
        self._reservations = reservations

    def process(self, job_id: str) -> JobState | None:
        state = self.queue.state_of(job_id)
        if state is None:
            log.warning("job not found in db", extra={"job_id": job_id, "event": "job_missing_db"})
            return None

        # redelivered after a crash: only the idempotent tail is left to do
        if state in TERMINAL_STATES:
            log.info("job already finished, redoing post steps", extra={"job_id": job_id, "event": "job_already_done"})
            self._after_finish(job_id, state)
            return state

        job = self.queue.claim(job_id)
        if job is None:
            log.info("job not claimable, skipping", extra={"job_id": job_id, "event": "job_not_claimable"})
            return self.queue.state_of(job_id)
        return self._run(job)

    def _run(self, job: ClaimedJob) -> JobState | None:
        p = job.payload
        q = self.queue
        q.set_progress(job.id, job.attempt, 10)

        try:
            provider = self._providers.get(p.provider)
            if provider is None:
                raise ProtocolError(f"no client configured for provider {p.provider!r}")

            q.set_progress(job.id, job.attempt, 30)
            output = provider.generate(p.prompt, p.model_image_url)
            image_url = resolve_image_url(output)

            q.set_progress(job.id, job.attempt, 70)
            stored = self._sink.store(image_url, example_key(p.preset_id, p.model_id, image_url))
            q.set_progress(job.id, job.attempt, 100)

        except (ProtocolError, PreconditionError) as e:
            log.error(
                "job failed with non-retryable error",
                extra={"job_id": job.id, "attempt": job.attempt, "event": "job_non_retryable"},
                exc_info=True,
            )
            state = q.fail(job.id, job.attempt, f"{type(e).__name__}: {e}", retryable=False)
            if state == JobState.failed:
                self._after_finish(job.id, state, p)
            return state

        except Exception as e:
            # transient errors and anything we did not anticipate get the retry policy
            log.warning(
                "job attempt failed",
                extra={"job_id": job.id, "attempt": job.attempt, "event": "job_attempt_failed"},
                exc_info=True,
            )
            state = q.fail(job.id, job.attempt, f"{type(e).__name__}: {e}", retryable=True)
            if state == JobState.failed:
                self._after_finish(job.id, state, p)
            return state

        result = {
            "success": True,
            "preset_id": p.preset_id,
            "model_id": p.model_id,
            "model_name": p.model_name,
            "gender": p.model_gender.value,
            "path": stored.path,
            "url": stored.url,
            "source_url": image_url,
        }
        if not q.complete(job.id, job.attempt, result):
            return None

        self._after_finish(job.id, JobState.completed, p)
        return JobState.completed

    def _after_finish(self, job_id: str, state: JobState, payload: JobPayload | None = None) -> None:
        if payload is None:
            view = self.queue.get(job_id)
            if view is None:
                return
            payload = view.payload

        if state == JobState.completed:
            self._ledger.record_usage(payload.preset_id, payload.model_id)
        # a failed model goes back to the pool, a used one is now in the ledger
        if self._reservations is not None:
            self._reservations.release(payload.preset_id, [payload.model_id])

    def poll_once(self, timeout: int = 5) -> str | None:
        moved = self.queue.move_due_delayed()
        if moved:
            log.info(f"moved {moved} delayed jobs", extra={"event": "delayed_moved"})

        job_id = self.queue.reliable_pop(timeout=timeout)
        if not job_id:
            return None
        self.process(job_id)
        self.queue.ack(job_id)
        return job_id

class WorkerPool:
    """Fixed number of worker threads sharing one queue, plus a reaper thread."""

    def __init__(self, worker_factory: Callable[[], Worker], concurrency: int = 2,
                 poll_seconds: float = 1.0, reaper_interval: float = 30.0, pop_timeout: int = 5):
        self._worker_factory = worker_factory
        self._concurrency = concurrency
        self._poll_seconds = poll_seconds
        self._reaper_interval = reaper_interval
        self._pop_timeout = pop_timeout
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    def _loop(self, worker: Worker) -> None:
        while not self._stop.is_set():
            try:
                if worker.poll_once(timeout=self._pop_timeout) is None:
                    self._stop.wait(self._poll_seconds)
            except Exception:
                log.error("worker loop error", extra={"event": "worker_loop_error"}, exc_info=True)
                self._stop.wait(2)

    def _reaper(self, queue: JobQueue) -> None:
        while not self._stop.wait(self._reaper_interval):
            try:
                queue.reap_stalled()
                queue.prune()
            except Exception:
                log.error("reaper error", extra={"event": "reaper_error"}, exc_info=True)

    def start(self) -> None:
        self._stop.clear()
        workers = [self._worker_factory() for _ in range(self._concurrency)]
        for i, w in enumerate(workers):
            t = threading.Thread(target=self._loop, args=(w,), name=f"worker-{i}", daemon=True)
            t.start()
            self._threads.append(t)
        t = threading.Thread(target=self._reaper, args=(workers[0].queue,), name="reaper", daemon=True)
        t.start()
        self._threads.append(t)
        log.info(f"worker pool started with {self._concurrency} workers", extra={"event": "worker_start"})

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
        self._threads.clear()
        log.info("worker pool stopped", extra={"event": "worker_stop"})

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

def main() -> None:
    from .logging_utils import setup_logging
    from .service import build_services
    from .settings import settings

    setup_logging(settings.log_level)
    services = build_services(settings)
    pool = WorkerPool(
        services.make_worker,
        concurrency=settings.worker_concurrency,
        poll_seconds=settings.worker_poll_seconds,
        reaper_interval=settings.reaper_interval_seconds,
    )

    stopping = threading.Event()

    def _shutdown(signum, frame):
        log.info(f"received signal {signum}, shutting down", extra={"event": "worker_signal"})
        stopping.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    pool.start()
    try:
        while not stopping.is_set():
            time.sleep(0.5)
    finally:
        pool.stop(timeout=30)
        services.close()

if __name__ == "__main__":
    main()
