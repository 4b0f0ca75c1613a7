import fcntl
import logging
import os
import threading
import time
from datetime import datetime, timedelta

from fetcher.broadcaster import EventType, ProgressEvent
from fetcher.errors import JobCancelledError, NonRetryableError
from fetcher.job_queue import JobStatus, _job_log

_DEFAULT_RETRY_BASE_SECONDS = 1.0
_DEFAULT_POLL_INTERVAL_SECONDS = 1.0
_DEFAULT_CANCEL_POLL_SECONDS = 1.0


class JobReporter:
    """Publishes events for one job and keeps its progress monotonic."""

    def __init__(self, job, store, broadcaster, *, cancel_poll_seconds=_DEFAULT_CANCEL_POLL_SECONDS, clock=time.monotonic):
        self.job = job
        self.store = store
        self.broadcaster = broadcaster
        self.cancel_poll_seconds = cancel_poll_seconds
        self.clock = clock
        self.label = job.label or job.id
        self._progress = max(0, int(job.progress or 0))
        self._started = False
        self._cancel_checked_at = None
        self._cancelled = False

    @property
    def current_progress(self):
        return self._progress

    def publish(self, event_type, **fields):
        fields.setdefault("label", self.label)
        event = ProgressEvent(type=event_type, job_id=self.job.id, is_bulk=self.job.is_bulk, **fields)
        self.broadcaster.publish(self.job.user_id, event)
        return event

    def progress(self, value, label=None):
        value = max(0, min(100, int(value)))
        if self._started and value <= self._progress:
            return
        self._started = True
        self._progress = max(self._progress, value)
        try:
            self.store.update_progress(self.job.id, self._progress)
        except Exception as exc:
            logging.warning("Failed to persist progress for job %s: %s", self.job.id, exc)
        self.publish(EventType.PROGRESS, progress=self._progress, label=label or self.label)

    def info(self, message, label=None):
        self.publish(EventType.INFO, message=message, progress=self._progress, label=label or self.label)

    def item_error(self, label, error):
        self.publish(EventType.ERROR, label=label, error=error)

    def cancelled(self, *, force=False):
        if self._cancelled:
            return True
        now = self.clock()
        if not force and self._cancel_checked_at is not None:
            if now - self._cancel_checked_at < self.cancel_poll_seconds:
                return False
        self._cancel_checked_at = now
        self._cancelled = self.store.is_cancelled(self.job.id)
        return self._cancelled

    def raise_if_cancelled(self, *, force=True):
        if self.cancelled(force=force):
            raise JobCancelledError(f"Job {self.job.id} was cancelled")


class WorkerLock:
    """Exclusive lock file held by the one worker allowed to consume the queue."""

    def __init__(self, path):
        self.path = path
        self._handle = None

    def acquire(self):
        if self._handle is not None:
            return True
        lock_dir = os.path.dirname(self.path)
        if lock_dir:
            os.makedirs(lock_dir, exist_ok=True)
        handle = open(self.path, "a+")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError:
            handle.close()
            return False
        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        self._handle = handle
        return True

    def release(self):
        if self._handle is None:
            return
        try:
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None


class DownloadWorker:
    """Single consumer: claims one job at a time and runs it to an outcome."""

    def __init__(
        self,
        store,
        handlers,
        broadcaster,
        *,
        retry_base_seconds=None,
        poll_interval_seconds=None,
        cancel_poll_seconds=_DEFAULT_CANCEL_POLL_SECONDS,
        stop_event=None,
        lock_path=None,
    ):
        self.store = store
        self.handlers = dict(handlers)
        self.broadcaster = broadcaster
        self.retry_base_seconds = (
            _DEFAULT_RETRY_BASE_SECONDS if retry_base_seconds is None else float(retry_base_seconds)
        )
        self.poll_interval_seconds = poll_interval_seconds or _DEFAULT_POLL_INTERVAL_SECONDS
        self.cancel_poll_seconds = cancel_poll_seconds
        self.stop_event = stop_event or threading.Event()
        self.lock = WorkerLock(lock_path) if lock_path else None
        self._thread = None

    def claim_queue(self):
        """Take the worker lock, then requeue jobs a dead worker left active.

        Returns False without touching the queue when another worker holds
        the lock.
        """
        if self.lock and not self.lock.acquire():
            logging.error("Another download worker holds %s; not consuming the queue", self.lock.path)
            return False
        recovered = self.store.recover_stale_active()
        if recovered:
            logging.warning("Requeued %s job(s) left active by a previous worker", len(recovered))
        return True

    def release_queue(self):
        if self.lock:
            self.lock.release()

    def start(self):
        if self._thread and self._thread.is_alive():
            return self._thread
        if not self.claim_queue():
            return None
        self._thread = threading.Thread(target=self.run_forever, name="download-worker", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout=None):
        self.stop_event.set()
        if self._thread:
            self._thread.join(timeout)
            if self._thread.is_alive():
                return
        self.release_queue()

    def run_forever(self):
        while not self.stop_event.is_set():
            try:
                processed = self.process_next()
            except Exception:
                logging.exception("Download worker loop error")
                processed = False
            if not processed:
                self.stop_event.wait(self.poll_interval_seconds)

    def run_until_idle(self):
        while not self.stop_event.is_set():
            if self.process_next():
                continue
            next_ready = self.store.next_ready_time()
            if not next_ready:
                break
            self._sleep_until(next_ready)

    def _sleep_until(self, next_ready):
        try:
            ready_dt = datetime.fromisoformat(next_ready)
        except ValueError:
            time.sleep(self.poll_interval_seconds)
            return
        delay = max(0.0, (ready_dt - datetime.utcnow()).total_seconds())
        if delay:
            self.stop_event.wait(min(self.poll_interval_seconds, delay))

    def process_next(self):
        job = self.store.claim_next()
        if not job:
            return False
        self._execute_job(job)
        return True

    def retry_delay(self, attempts):
        return self.retry_base_seconds * (2 ** max(0, attempts - 1))

    def _execute_job(self, job):
        if job.status != JobStatus.ACTIVE:
            _job_log(
                "warning",
                job_id=job.id,
                kind=job.kind,
                user_id=job.user_id,
                event="job_skipped",
                status=job.status.value,
            )
            return
        reporter = JobReporter(job, self.store, self.broadcaster, cancel_poll_seconds=self.cancel_poll_seconds)
        handler = self.handlers.get(job.kind)
        if handler is None:
            self._handle_job_error(job, NonRetryableError(f"no handler registered for kind={job.kind.value}"), reporter)
            return
        if job.attempts:
            reporter.info(f"Retrying (attempt {job.attempts + 1}/{job.max_attempts})")
        try:
            result = handler.execute(job, reporter)
        except JobCancelledError:
            _job_log(
                "warning",
                job_id=job.id,
                kind=job.kind,
                user_id=job.user_id,
                event="job_cancel_observed",
            )
            return
        except Exception as exc:
            self._handle_job_error(job, exc, reporter)
            return

        result = result or {}
        if not self.store.mark_completed(job, result):
            _job_log(
                "warning",
                job_id=job.id,
                kind=job.kind,
                user_id=job.user_id,
                event="job_cancel_observed",
                reason="completed_after_cancel",
            )
            return
        reporter.publish(
            EventType.COMPLETE,
            progress=100,
            file=result.get("archive") or result.get("file"),
        )

    def _handle_job_error(self, job, exc, reporter):
        error_message = str(exc) or exc.__class__.__name__
        attempts = job.attempts + 1
        retryable = not isinstance(exc, NonRetryableError)
        if retryable and attempts < job.max_attempts:
            retry_at = datetime.utcnow() + timedelta(seconds=self.retry_delay(attempts))
            if self.store.mark_failed(job, error_message=error_message, retry_at=retry_at.isoformat()):
                reporter.info(f"Attempt {attempts}/{job.max_attempts} failed: {error_message}")
            return
        if self.store.mark_failed(job, error_message=error_message):
            reporter.publish(EventType.ERROR, error=error_message)
