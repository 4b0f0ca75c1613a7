import logging
import os
import time

from fetcher.archive import read_sidecar
from fetcher.broadcaster import EventType, ProgressEvent
from fetcher.errors import JobNotFoundError, SongNotFoundError
from fetcher.job_queue import JobKind, JobStatus
from fetcher.matcher import find_match
from fetcher.naming import artist_text, display_filename, target_folder_name
from fetcher.sync import locate_song_file

CANCEL_MESSAGE = "Job cancelled by user"


def bulk_job_id(now=None):
    now = time.time() if now is None else now
    return f"bulk-{int(now * 1000)}"


class DownloadService:
    """Entry points shared by the HTTP layer and the CLI."""

    def __init__(self, *, store, catalog, sync, broadcaster, paths, recent_bulk_limit=10):
        self.store = store
        self.catalog = catalog
        self.sync = sync
        self.broadcaster = broadcaster
        self.paths = paths
        self.recent_bulk_limit = recent_bulk_limit

    def _publish(self, user_id, event_type, job_id, **fields):
        self.broadcaster.publish(user_id, ProgressEvent(type=event_type, job_id=job_id, **fields))

    def submit_single(self, user_id, song_id, folder=None):
        song = self.catalog.get_song_by_id(song_id)
        if song is None:
            raise SongNotFoundError(song_id)
        folder = target_folder_name(song, folder)
        os.makedirs(os.path.join(self.paths.user_dir(user_id), folder), exist_ok=True)
        label = f"{artist_text(song.artists)} - {song.title}" if song.artists else song.title
        job_id, _created = self.store.enqueue(
            JobKind.SINGLE,
            user_id,
            {"song_id": song.id, "folder": folder},
            label=label,
        )
        self._publish(user_id, EventType.QUEUED, job_id, label=label, progress=0)
        return job_id

    def submit_bulk(self, user_id, song_ids, job_id=None):
        song_ids = list(dict.fromkeys(str(song_id) for song_id in song_ids or [] if str(song_id).strip()))
        if not song_ids:
            raise ValueError("song_ids must be a non-empty list")
        job_id = job_id or bulk_job_id()
        label = f"Bulk download ({len(song_ids)} songs)"
        job_id, created = self.store.enqueue(
            JobKind.BULK,
            user_id,
            {"song_ids": song_ids},
            label=label,
            job_id=job_id,
        )
        if created:
            self._publish(user_id, EventType.QUEUED, job_id, label=label, progress=0, is_bulk=True)
        return job_id, created

    def get_job(self, job_id, user_id):
        """The caller's own job; anyone else's reads as missing."""
        return self._owned_job(job_id, user_id)

    def cancel(self, job_id, user_id):
        job = self.store.get_job(job_id)
        previous = self.store.cancel(job_id, user_id)
        if previous is None:
            return False
        self._publish(
            user_id,
            EventType.USER_CANCELLED,
            job_id,
            label=job.label if job else None,
            error=CANCEL_MESSAGE,
            is_bulk=bool(job and job.is_bulk),
        )
        return True

    def active_jobs(self, user_id):
        jobs = self.store.list_user_jobs(user_id, (JobStatus.WAITING, JobStatus.ACTIVE))
        snapshot = [job.to_dict() for job in jobs]
        bulk_dir = self.paths.bulk_dir(user_id)
        for job in self.store.recent_completed_bulk(user_id, self.recent_bulk_limit):
            archive = job.result.get("archive")
            if archive and os.path.isfile(os.path.join(bulk_dir, archive)):
                snapshot.append(job.to_dict())
        return snapshot

    def _owned_job(self, job_id, user_id):
        job = self.store.get_job(job_id)
        if job is None or job.user_id != user_id:
            raise JobNotFoundError(job_id)
        return job

    def locate_job_file(self, job_id, user_id):
        """Path and download name for a single job's file, or None."""
        job = self._owned_job(job_id, user_id)
        song = self.catalog.get_song_by_id(job.payload.get("song_id"))
        if song is None:
            return None
        folder = job.payload.get("folder") or target_folder_name(song)
        directory = os.path.join(self.paths.user_dir(user_id), folder)
        name = job.result.get("file")
        if not name or not os.path.isfile(os.path.join(directory, name)):
            name = find_match(directory, song.title, artist_text(song.artists))
        if not name:
            return None
        return os.path.join(directory, name), display_filename(song, os.path.splitext(name)[1]), song

    def locate_archive(self, job_id, user_id):
        job = self._owned_job(job_id, user_id)
        if job.kind != JobKind.BULK:
            return None
        archive = job.result.get("archive") or f"{job.id}.zip"
        path = os.path.join(self.paths.bulk_dir(user_id), os.path.basename(archive))
        if not os.path.isfile(path):
            return None
        return path, os.path.basename(path), read_sidecar(path)

    def direct_file(self, user_id, song_id):
        """Locate a song's file on disk, keeping the local flag honest."""
        song = self.catalog.get_song_by_id(song_id)
        if song is None:
            raise SongNotFoundError(song_id)
        path = locate_song_file(self.paths.user_dir(user_id), song)
        if not path:
            if song.local:
                logging.info("Song %s flagged local but no file found; clearing flag", song_id)
            self.sync.set_local(song_id, False)
            return None
        if not song.local:
            self.sync.set_local(song_id, True)
        return path, display_filename(song, os.path.splitext(path)[1]), song

    def record_delivery(self, song_id):
        self.sync.set_downloaded(song_id, True)

    def record_archive_delivery(self, meta):
        for song_id in (meta or {}).get("included_song_ids") or []:
            self.sync.set_downloaded(song_id, True)

    def check_local(self, song_id):
        song = self.catalog.get_song_by_id(song_id)
        if song is None:
            raise SongNotFoundError(song_id)
        return song.local

    def queue_overview(self, limit=50):
        return {
            "counts": self.store.counts_by_status(),
            "jobs": [job.to_dict() for job in self.store.list_jobs(limit=limit)],
        }

    def retry_job(self, job_id):
        job = self.store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if not self.store.retry_failed(job_id):
            return False
        self._publish(job.user_id, EventType.QUEUED, job_id, label=job.label, progress=0, is_bulk=job.is_bulk)
        return True
