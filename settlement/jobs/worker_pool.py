import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait

from settlement.errors import InvalidTransition, NotFoundError, PollAgain, TerminalError, ValidationError
from settlement.jobs.queue import ClaimedJob
from settlement.jobs.tasks import Task
from settlement.services.deposits import DepositService

logger = logging.getLogger(__name__)

# rejected input or state never heals by itself
NEVER_RETRY = (TerminalError, ValidationError, NotFoundError, InvalidTransition)


def run_job(ctx, task: Task, job: ClaimedJob) -> str:
    """Run one claimed job and record its outcome on the queue.

    Returns one of "completed", "polling", "retry", "failed" or "lost".
    """
    queue, monitor = ctx.queue, ctx.monitor
    try:
        task.handler(ctx, job)
    except PollAgain as exc:
        if queue.can_poll_again(job):
            return "polling" if queue.poll_again(job, exc.reason) else "lost"
        logger.warning("Job %s out of polls: %s", job.job_key, exc.reason)
        if task.on_exhausted is not None:
            try:
                task.on_exhausted(ctx, job)
            except Exception as hook_exc:
                logger.exception("Exhaustion handler for %s failed", job.job_key)
                outcome = queue.fail(job, f"exhaustion handler failed: {hook_exc}", retry=False)
                if outcome == "failed":
                    monitor.record_failed(job.task, job.job_key, str(hook_exc))
                return outcome
        if not queue.complete(job):
            return "lost"
        monitor.record_completed(job.task, job.job_key)
        return "completed"
    except NEVER_RETRY as exc:
        logger.warning("Job %s stopped by %s: %s", job.job_key, type(exc).__name__, exc)
        outcome = queue.fail(job, f"{type(exc).__name__}: {exc}", retry=False)
        if outcome == "failed":
            monitor.record_failed(job.task, job.job_key, str(exc))
        return outcome
    except Exception as exc:
        logger.warning("Job %s raised %s: %s", job.job_key, type(exc).__name__, exc)
        error = f"{type(exc).__name__}: {exc}"
        outcome = queue.fail(job, error, retry=True)
        if outcome == "retry":
            monitor.record_retry(job.task, job.job_key, error)
        elif outcome == "failed":
            monitor.record_failed(job.task, job.job_key, error)
        return outcome
    if not queue.complete(job):
        return "lost"
    monitor.record_completed(job.task, job.job_key)
    return "completed"


class WorkerPool:
    """One claiming loop per task type, each feeding a bounded thread pool.

    A sweeper thread recovers stalled leases, expires stale deposit sessions
    and prunes completed job rows.
    """

    def __init__(self, ctx, poll_interval_sec: float | None = None, sweep_interval_sec: float | None = None) -> None:
        self.ctx = ctx
        self.poll_interval_sec = poll_interval_sec or ctx.settings.job_poll_interval_sec
        self.sweep_interval_sec = sweep_interval_sec or ctx.settings.sweep_interval_sec
        self._stop_event = threading.Event()
        self._threads: list[threading.Thread] = []
        self._executors: dict[str, ThreadPoolExecutor] = {}
        self._inflight: dict[str, set[Future]] = {}
        self._lock = threading.Lock()

    def start(self) -> None:
        if self._threads:
            return
        for name, task in self.ctx.handlers.items():
            concurrency = max(1, task.options.concurrency)
            self._executors[name] = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix=name)
            self._inflight[name] = set()
            thread = threading.Thread(target=self._run, args=(name,), name=f"claim-{name}", daemon=True)
            thread.start()
            self._threads.append(thread)
        sweeper = threading.Thread(target=self._sweep_loop, name="sweeper", daemon=True)
        sweeper.start()
        self._threads.append(sweeper)
        logger.info("Worker pool started for %s", ", ".join(self.ctx.handlers))

    def stop(self, grace_sec: float | None = None) -> None:
        """Stop claiming and give in-flight jobs one shared grace period to finish."""
        grace = self.ctx.settings.shutdown_grace_sec if grace_sec is None else grace_sec
        deadline = time.monotonic() + grace
        self.ctx.queue.stop_accepting()
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=max(0.0, deadline - time.monotonic()))
        with self._lock:
            pending = {future for inflight in self._inflight.values() for future in inflight}
        done, not_done = wait(pending, timeout=max(0.0, deadline - time.monotonic()))
        for future in done:
            if not future.cancelled() and future.exception() is not None:
                logger.error("Job crashed during shutdown: %s", future.exception())
        if not_done:
            # leases run out and the sweeper of the next process picks them up
            logger.warning("%s jobs still running after %ss; leaving them to lease recovery", len(not_done), grace)
        for executor in self._executors.values():
            executor.shutdown(wait=False, cancel_futures=True)
        self._threads.clear()
        logger.info("Worker pool stopped")

    def _free_slots(self, name: str) -> int:
        with self._lock:
            inflight = self._inflight[name]
            inflight.difference_update({future for future in inflight if future.done()})
            return max(1, self.ctx.handlers[name].options.concurrency) - len(inflight)

    def _run(self, name: str) -> None:
        while not self._stop_event.is_set():
            try:
                self._tick(name)
            except Exception as exc:
                logger.warning("Claim loop for %s error: %s", name, exc)
            self._stop_event.wait(self.poll_interval_sec)

    def _tick(self, name: str) -> None:
        slots = self._free_slots(name)
        if slots <= 0:
            return
        task = self.ctx.handlers[name]
        for job in self.ctx.queue.claim(name, slots):
            future = self._executors[name].submit(run_job, self.ctx, task, job)
            with self._lock:
                self._inflight[name].add(future)

    def run_once(self, name: str, limit: int = 10) -> list[str]:
        """Claim and run due jobs for one task in the calling thread."""
        task = self.ctx.handlers[name]
        return [run_job(self.ctx, task, job) for job in self.ctx.queue.claim(name, limit)]

    def _sweep_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.sweep()
            except Exception as exc:
                logger.warning("Sweeper error: %s", exc)
            self._stop_event.wait(self.sweep_interval_sec)

    def sweep(self) -> dict:
        stalled = self.ctx.queue.recover_stalled()
        for job in stalled:
            self.ctx.monitor.record_stalled(job.task, job.job_key, job.stalled_count)
            if job.failed:
                self.ctx.monitor.record_failed(job.task, job.job_key, "job stalled too many times")
        with self.ctx.session_factory() as db:
            expired = DepositService(db, self.ctx).expire_stale_sessions()
        pruned = self.ctx.queue.prune_completed()
        if stalled or expired or pruned:
            logger.info("Sweep: %s stalled, %s sessions expired, %s jobs pruned", len(stalled), len(expired), pruned)
        return {"stalled": len(stalled), "expired": len(expired), "pruned": pruned}
