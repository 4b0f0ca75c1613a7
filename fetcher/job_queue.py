import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from uuid import uuid4

from fetcher.errors import InvalidTransitionError, JobNotFoundError, JobOwnershipError
from fetcher.retry import is_sqlite_busy, retry_on

_DEFAULT_MAX_ATTEMPTS = 3


class JobKind(str, Enum):
    SINGLE = "single"
    BULK = "bulk"


class JobStatus(str, Enum):
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


_TRANSITIONS = {
    JobStatus.WAITING: frozenset({JobStatus.ACTIVE, JobStatus.CANCELLED}),
    JobStatus.ACTIVE: frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.WAITING, JobStatus.CANCELLED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset({JobStatus.WAITING}),
    JobStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


def check_transition(old, new):
    old = JobStatus(old)
    new = JobStatus(new)
    if new not in _TRANSITIONS[old]:
        raise InvalidTransitionError(f"Illegal job transition {old.value} -> {new.value}")
    return new


def _utc_now():
    return datetime.utcnow().isoformat()


def _parse_json(raw):
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}


def _serialize_json(data):
    if not data:
        return None
    return json.dumps(data, sort_keys=True, default=str)


def _job_log(level, *, job_id, kind, user_id, event, **fields):
    payload = {
        "event": event,
        "job_id": job_id,
        "kind": kind.value if isinstance(kind, Enum) else kind,
        "user_id": user_id,
        **fields,
    }
    message = json.dumps(payload, sort_keys=True, default=str)
    getattr(logging, level)(message)


def ensure_download_jobs_table(conn):
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS download_jobs (
            id TEXT PRIMARY KEY,
            kind TEXT NOT NULL,
            user_id TEXT NOT NULL,
            label TEXT,
            payload_json TEXT,
            status TEXT NOT NULL,
            progress INTEGER NOT NULL DEFAULT 0,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            run_at TIMESTAMP,
            created_at TIMESTAMP NOT NULL,
            updated_at TIMESTAMP NOT NULL,
            started_at TIMESTAMP,
            finished_at TIMESTAMP,
            cancelled_at TIMESTAMP,
            last_error TEXT,
            result_json TEXT
        )
        """
    )
    existing = {row[1] for row in cur.execute("PRAGMA table_info(download_jobs)").fetchall()}
    columns = {
        "label": "label TEXT",
        "payload_json": "payload_json TEXT",
        "progress": "progress INTEGER DEFAULT 0",
        "attempts": "attempts INTEGER DEFAULT 0",
        "max_attempts": "max_attempts INTEGER DEFAULT 3",
        "run_at": "run_at TIMESTAMP",
        "started_at": "started_at TIMESTAMP",
        "finished_at": "finished_at TIMESTAMP",
        "cancelled_at": "cancelled_at TIMESTAMP",
        "last_error": "last_error TEXT",
        "result_json": "result_json TEXT",
    }
    for name, ddl in columns.items():
        if name not in existing:
            cur.execute(f"ALTER TABLE download_jobs ADD COLUMN {ddl}")
            logging.warning("Migrated download_jobs: added column %s", name)

    cur.execute("CREATE INDEX IF NOT EXISTS idx_download_jobs_status_run_at ON download_jobs (status, run_at)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_download_jobs_user ON download_jobs (user_id, status)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_download_jobs_created_at ON download_jobs (created_at)")
    conn.commit()


@dataclass(frozen=True)
class DownloadJob:
    id: str
    kind: JobKind
    user_id: str
    label: str | None
    payload: dict
    status: JobStatus
    progress: int
    attempts: int
    max_attempts: int
    run_at: str | None
    created_at: str
    updated_at: str
    started_at: str | None
    finished_at: str | None
    cancelled_at: str | None
    last_error: str | None
    result: dict

    @classmethod
    def from_row(cls, row):
        return cls(
            id=row["id"],
            kind=JobKind(row["kind"]),
            user_id=row["user_id"],
            label=row["label"],
            payload=_parse_json(row["payload_json"]),
            status=JobStatus(row["status"]),
            progress=int(row["progress"] or 0),
            attempts=int(row["attempts"] or 0),
            max_attempts=int(row["max_attempts"] or _DEFAULT_MAX_ATTEMPTS),
            run_at=row["run_at"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            started_at=row["started_at"],
            finished_at=row["finished_at"],
            cancelled_at=row["cancelled_at"],
            last_error=row["last_error"],
            result=_parse_json(row["result_json"]),
        )

    @property
    def is_bulk(self):
        return self.kind == JobKind.BULK

    def to_dict(self):
        return {
            "id": self.id,
            "kind": self.kind.value,
            "user_id": self.user_id,
            "label": self.label,
            "payload": self.payload,
            "status": self.status.value,
            "progress": self.progress,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "run_at": self.run_at,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "cancelled_at": self.cancelled_at,
            "last_error": self.last_error,
            "result": self.result,
        }


class DownloadJobStore:
    def __init__(self, db_path, *, default_max_attempts=_DEFAULT_MAX_ATTEMPTS):
        self.db_path = db_path
        self.default_max_attempts = default_max_attempts

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            ensure_download_jobs_table(conn)
            yield conn
            conn.commit()
        except BaseException:
            conn.rollback()
            raise
        finally:
            conn.close()

    def enqueue(self, kind, user_id, payload, *, label=None, job_id=None, max_attempts=None):
        """Insert a waiting job. Returns ``(job_id, created)``.

        A caller-supplied ``job_id`` that already exists is left untouched and
        reported with ``created=False``.
        """
        kind = JobKind(kind)
        if not user_id:
            raise ValueError("user_id is required")
        if not isinstance(payload, dict):
            raise ValueError("payload must be a dict")
        now = _utc_now()
        job_id = job_id or uuid4().hex
        max_attempts = int(max_attempts or self.default_max_attempts)
        with self._connect() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO download_jobs (
                    id, kind, user_id, label, payload_json, status, progress, attempts,
                    max_attempts, run_at, created_at, updated_at
                ) VALUES (?, ?, ?, ?, ?, ?, 0, 0, ?, ?, ?, ?)
                """,
                (
                    job_id,
                    kind.value,
                    user_id,
                    label,
                    _serialize_json(payload),
                    JobStatus.WAITING.value,
                    max_attempts,
                    now,
                    now,
                    now,
                ),
            )
            created = cur.rowcount == 1
        _job_log(
            "info" if created else "warning",
            job_id=job_id,
            kind=kind,
            user_id=user_id,
            event="job_enqueued" if created else "job_duplicate_ignored",
            status=JobStatus.WAITING.value,
        )
        return job_id, created

    def get_job(self, job_id):
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM download_jobs WHERE id=?", (job_id,)).fetchone()
            if not row:
                return None
            return DownloadJob.from_row(row)

    def claim_next(self, *, now=None):
        now = now or _utc_now()
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            cur.execute(
                """
                SELECT * FROM download_jobs
                WHERE status=? AND (run_at IS NULL OR run_at <= ?)
                ORDER BY run_at ASC, created_at ASC
                LIMIT 1
                """,
                (JobStatus.WAITING.value, now),
            )
            row = cur.fetchone()
            if not row:
                return None
            check_transition(row["status"], JobStatus.ACTIVE)
            cur.execute(
                """
                UPDATE download_jobs
                SET status=?, started_at=?, updated_at=?
                WHERE id=? AND status=?
                """,
                (JobStatus.ACTIVE.value, now, now, row["id"], JobStatus.WAITING.value),
            )
            if cur.rowcount != 1:
                return None
            data = dict(row)
            data["status"] = JobStatus.ACTIVE.value
            data["started_at"] = now
            data["updated_at"] = now
        job = DownloadJob.from_row(data)
        _job_log(
            "info",
            job_id=job.id,
            kind=job.kind,
            user_id=job.user_id,
            event="job_running",
            status=job.status.value,
            attempt=job.attempts + 1,
        )
        return job

    def next_ready_time(self, *, now=None):
        now = now or _utc_now()
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT run_at FROM download_jobs
                WHERE status=? AND run_at IS NOT NULL AND run_at > ?
                ORDER BY run_at ASC
                LIMIT 1
                """,
                (JobStatus.WAITING.value, now),
            ).fetchone()
            return row["run_at"] if row else None

    def has_waiting(self):
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM download_jobs WHERE status=? LIMIT 1",
                (JobStatus.WAITING.value,),
            ).fetchone()
            return row is not None

    @retry_on(is_sqlite_busy)
    def update_progress(self, job_id, progress):
        """Raise stored progress; never lowers it. Returns the stored value."""
        progress = max(0, min(100, int(progress)))
        with self._connect() as conn:
            conn.execute(
                """
                UPDATE download_jobs
                SET progress=MAX(progress, ?), updated_at=?
                WHERE id=? AND status=?
                """,
                (progress, _utc_now(), job_id, JobStatus.ACTIVE.value),
            )
            row = conn.execute("SELECT progress FROM download_jobs WHERE id=?", (job_id,)).fetchone()
            return int(row["progress"]) if row else None

    def is_cancelled(self, job_id):
        with self._connect() as conn:
            row = conn.execute("SELECT status FROM download_jobs WHERE id=?", (job_id,)).fetchone()
        return row is None or row["status"] == JobStatus.CANCELLED.value

    def _transition(self, job, new_status, assignments, params):
        check_transition(JobStatus.ACTIVE, new_status)
        now = _utc_now()
        with self._connect() as conn:
            cur = conn.execute(
                f"""
                UPDATE download_jobs
                SET status=?, updated_at=?, {assignments}
                WHERE id=? AND status=?
                """,
                (new_status.value, now, *params, job.id, JobStatus.ACTIVE.value),
            )
            return cur.rowcount == 1

    def mark_completed(self, job, result=None):
        now = _utc_now()
        updated = self._transition(
            job,
            JobStatus.COMPLETED,
            "progress=100, finished_at=?, result_json=?, last_error=NULL",
            (now, _serialize_json(result)),
        )
        if updated:
            _job_log(
                "info",
                job_id=job.id,
                kind=job.kind,
                user_id=job.user_id,
                event="job_completed",
                status=JobStatus.COMPLETED.value,
            )
        return updated

    def mark_failed(self, job, *, error_message, retry_at=None):
        attempts = job.attempts + 1
        if retry_at:
            updated = self._transition(
                job,
                JobStatus.WAITING,
                "attempts=?, run_at=?, last_error=?",
                (attempts, retry_at, error_message),
            )
            status = JobStatus.WAITING
        else:
            updated = self._transition(
                job,
                JobStatus.FAILED,
                "attempts=?, finished_at=?, last_error=?",
                (attempts, _utc_now(), error_message),
            )
            status = JobStatus.FAILED
        if updated:
            _job_log(
                "warning" if retry_at else "error",
                job_id=job.id,
                kind=job.kind,
                user_id=job.user_id,
                event="job_requeued" if retry_at else "job_failed",
                status=status.value,
                attempts=attempts,
                error=error_message,
                retry_at=retry_at,
            )
        return updated

    def cancel(self, job_id, user_id):
        """Cancel on behalf of ``user_id``.

        Waiting jobs are deleted outright; active jobs are flagged
        ``cancelled`` for the worker to observe. Returns the status the job
        had before cancelling, or None if it was already terminal.
        """
        now = _utc_now()
        with self._connect() as conn:
            cur = conn.cursor()
            cur.execute("BEGIN IMMEDIATE")
            row = cur.execute("SELECT * FROM download_jobs WHERE id=?", (job_id,)).fetchone()
            if not row:
                raise JobNotFoundError(job_id)
            if row["user_id"] != user_id:
                raise JobOwnershipError(job_id)
            status = JobStatus(row["status"])
            if status in TERMINAL_STATUSES:
                return None
            check_transition(status, JobStatus.CANCELLED)
            if status == JobStatus.WAITING:
                cur.execute("DELETE FROM download_jobs WHERE id=? AND status=?", (job_id, status.value))
                event = "job_removed"
            else:
                cur.execute(
                    """
                    UPDATE download_jobs
                    SET status=?, cancelled_at=?, finished_at=?, updated_at=?, last_error=?
                    WHERE id=? AND status=?
                    """,
                    (
                        JobStatus.CANCELLED.value,
                        now,
                        now,
                        now,
                        "Job cancelled by user",
                        job_id,
                        status.value,
                    ),
                )
                event = "job_cancel_requested"
            if cur.rowcount != 1:
                return None
        _job_log(
            "warning",
            job_id=job_id,
            kind=row["kind"],
            user_id=user_id,
            event=event,
            previous_status=status.value,
        )
        return status

    def retry_failed(self, job_id):
        now = _utc_now()
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM download_jobs WHERE id=?", (job_id,)).fetchone()
            if not row:
                raise JobNotFoundError(job_id)
            if row["status"] != JobStatus.FAILED.value:
                return False
            check_transition(row["status"], JobStatus.WAITING)
            cur = conn.execute(
                """
                UPDATE download_jobs
                SET status=?, attempts=0, progress=0, run_at=?, finished_at=NULL, last_error=NULL,
                    result_json=NULL, updated_at=?
                WHERE id=? AND status=?
                """,
                (JobStatus.WAITING.value, now, now, job_id, JobStatus.FAILED.value),
            )
            updated = cur.rowcount == 1
        if updated:
            _job_log(
                "info",
                job_id=job_id,
                kind=row["kind"],
                user_id=row["user_id"],
                event="job_requeued",
                status=JobStatus.WAITING.value,
                reason="manual_retry",
            )
        return updated

    def recover_stale_active(self):
        """Requeue jobs left active by a worker that died mid-run."""
        now = _utc_now()
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT id, kind, user_id FROM download_jobs WHERE status=?",
                (JobStatus.ACTIVE.value,),
            ).fetchall()
            conn.execute(
                "UPDATE download_jobs SET status=?, run_at=?, updated_at=? WHERE status=?",
                (JobStatus.WAITING.value, now, now, JobStatus.ACTIVE.value),
            )
        for row in rows:
            _job_log(
                "warning",
                job_id=row["id"],
                kind=row["kind"],
                user_id=row["user_id"],
                event="job_recovered",
                status=JobStatus.WAITING.value,
            )
        return [row["id"] for row in rows]

    def list_user_jobs(self, user_id, statuses):
        values = [JobStatus(status).value for status in statuses]
        if not values:
            return []
        placeholders = ",".join("?" for _ in values)
        with self._connect() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM download_jobs
                WHERE user_id=? AND status IN ({placeholders})
                ORDER BY created_at ASC
                """,
                (user_id, *values),
            ).fetchall()
        return [DownloadJob.from_row(row) for row in rows]

    def recent_completed_bulk(self, user_id, limit=10):
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM download_jobs
                WHERE user_id=? AND kind=? AND status=?
                ORDER BY finished_at DESC
                LIMIT ?
                """,
                (user_id, JobKind.BULK.value, JobStatus.COMPLETED.value, int(limit)),
            ).fetchall()
        return [DownloadJob.from_row(row) for row in rows]

    def counts_by_status(self):
        counts = {status.value: 0 for status in JobStatus}
        with self._connect() as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS total FROM download_jobs GROUP BY status").fetchall()
        for row in rows:
            counts[row["status"]] = row["total"]
        return counts

    def list_jobs(self, *, status=None, limit=50):
        query = "SELECT * FROM download_jobs"
        params = []
        if status:
            query += " WHERE status=?"
            params.append(JobStatus(status).value)
        query += " ORDER BY updated_at DESC LIMIT ?"
        params.append(int(limit))
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [DownloadJob.from_row(row) for row in rows]
