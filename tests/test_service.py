import os
import tempfile
import unittest
import zipfile

from fetcher.archive import write_sidecar
from fetcher.broadcaster import EventType, ProgressBroadcaster
from fetcher.catalog import CatalogStore
from fetcher.errors import JobNotFoundError, JobOwnershipError, SongNotFoundError
from fetcher.job_queue import DownloadJobStore, JobStatus
from fetcher.paths import FetcherPaths
from fetcher.service import CANCEL_MESSAGE, DownloadService, bulk_job_id
from fetcher.sync import CatalogSync


class DownloadServiceTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        root = self.tmpdir.name
        self.paths = FetcherPaths(
            log_dir=os.path.join(root, "logs"),
            jobs_db_path=os.path.join(root, "jobs.sqlite"),
            catalog_db_path=os.path.join(root, "catalog.sqlite"),
            downloads_dir=os.path.join(root, "downloads"),
        )
        self.store = DownloadJobStore(self.paths.jobs_db_path)
        self.catalog = CatalogStore(self.paths.catalog_db_path)
        self.sync = CatalogSync(self.catalog, sleep=lambda _delay: None)
        self.broadcaster = ProgressBroadcaster()
        self.events = []
        self.broadcaster.subscribe("u1", self.events.append)
        self.service = DownloadService(
            store=self.store,
            catalog=self.catalog,
            sync=self.sync,
            broadcaster=self.broadcaster,
            paths=self.paths,
        )
        self.catalog.add_song(
            "s1",
            title="Blue Monday",
            artists=["New Order"],
            platform="youtube",
            url="https://www.youtube.com/watch?v=abcdefghijk",
            user_id="u1",
            playlist="Classics",
        )

    def tearDown(self):
        self.tmpdir.cleanup()

    def _write_song_file(self, folder="Classics", name="New Order - Blue Monday.flac"):
        directory = os.path.join(self.paths.user_dir("u1"), folder)
        os.makedirs(directory, exist_ok=True)
        path = os.path.join(directory, name)
        with open(path, "wb") as handle:
            handle.write(b"audio")
        return path

    def test_submit_single_queues_and_announces(self):
        job_id = self.service.submit_single("u1", "s1")

        job = self.store.get_job(job_id)
        self.assertEqual(job.status, JobStatus.WAITING)
        self.assertEqual(job.payload, {"song_id": "s1", "folder": "Classics"})
        self.assertEqual(job.label, "New Order - Blue Monday")
        self.assertTrue(os.path.isdir(os.path.join(self.paths.user_dir("u1"), "Classics")))
        self.assertEqual([event.type for event in self.events], [EventType.QUEUED])
        self.assertEqual(self.events[0].progress, 0)

    def test_submit_single_unknown_song(self):
        with self.assertRaises(SongNotFoundError):
            self.service.submit_single("u1", "missing")
        self.assertEqual(self.events, [])

    def test_bulk_queued_event_fires_once(self):
        job_id, created = self.service.submit_bulk("u1", ["s1", "s2"], job_id="bulk-7")
        again_id, created_again = self.service.submit_bulk("u1", ["s1", "s2"], job_id="bulk-7")

        self.assertEqual((job_id, created), ("bulk-7", True))
        self.assertEqual((again_id, created_again), ("bulk-7", False))
        self.assertEqual(len(self.events), 1)
        self.assertTrue(self.events[0].is_bulk)

    def test_submit_bulk_requires_songs(self):
        with self.assertRaises(ValueError):
            self.service.submit_bulk("u1", [])

    def test_submit_bulk_drops_duplicate_ids(self):
        job_id, _created = self.service.submit_bulk("u1", ["s1", "s1", "s2", "s1"])
        job = self.store.get_job(job_id)
        self.assertEqual(job.payload["song_ids"], ["s1", "s2"])
        self.assertEqual(job.label, "Bulk download (2 songs)")

    def test_get_job_is_scoped_to_owner(self):
        job_id = self.service.submit_single("u1", "s1")
        self.assertEqual(self.service.get_job(job_id, "u1").id, job_id)
        with self.assertRaises(JobNotFoundError):
            self.service.get_job(job_id, "u2")
        with self.assertRaises(JobNotFoundError):
            self.service.get_job("missing", "u1")

    def test_bulk_job_id(self):
        self.assertEqual(bulk_job_id(1700000000.123), "bulk-1700000000123")

    def test_cancel_emits_user_cancelled(self):
        job_id = self.service.submit_single("u1", "s1")
        self.events.clear()

        self.assertTrue(self.service.cancel(job_id, "u1"))
        self.assertIsNone(self.store.get_job(job_id))
        self.assertEqual(len(self.events), 1)
        self.assertEqual(self.events[0].type, EventType.USER_CANCELLED)
        self.assertEqual(self.events[0].error, CANCEL_MESSAGE)

    def test_cancel_terminal_job_is_refused(self):
        job_id = self.service.submit_single("u1", "s1")
        job = self.store.claim_next()
        self.store.mark_completed(job, {"file": "x.flac"})
        self.events.clear()

        self.assertFalse(self.service.cancel(job_id, "u1"))
        self.assertEqual(self.events, [])
        self.assertEqual(self.store.get_job(job_id).status, JobStatus.COMPLETED)

    def test_cancel_other_users_job(self):
        job_id = self.service.submit_single("u1", "s1")
        with self.assertRaises(JobOwnershipError):
            self.service.cancel(job_id, "u2")
        with self.assertRaises(JobNotFoundError):
            self.service.locate_job_file(job_id, "u2")

    def test_active_jobs_include_recent_bulk_archives(self):
        single_id = self.service.submit_single("u1", "s1")
        bulk_id, _created = self.service.submit_bulk("u1", ["s1"], job_id="bulk-1")
        claimed = self.store.claim_next()
        self.assertEqual(claimed.id, single_id)
        bulk = self.store.claim_next()
        self.store.mark_completed(bulk, {"archive": "bulk-1.zip", "success_count": 1, "fail_count": 0})

        ids = [job["id"] for job in self.service.active_jobs("u1")]
        self.assertEqual(ids, [single_id])

        os.makedirs(self.paths.bulk_dir("u1"), exist_ok=True)
        archive = os.path.join(self.paths.bulk_dir("u1"), "bulk-1.zip")
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("New Order - Blue Monday.flac", b"audio")
        snapshot = self.service.active_jobs("u1")
        self.assertEqual([job["id"] for job in snapshot], [single_id, bulk_id])
        self.assertEqual(snapshot[0]["status"], "active")
        self.assertEqual(self.service.active_jobs("u2"), [])

    def test_locate_job_file(self):
        job_id = self.service.submit_single("u1", "s1")
        job = self.store.claim_next()
        self.store.mark_completed(job, {"file": "New Order - Blue Monday.flac", "folder": "Classics"})
        path = self._write_song_file()

        located, name, song = self.service.locate_job_file(job_id, "u1")
        self.assertEqual(located, path)
        self.assertEqual(name, "New Order - Blue Monday.flac")
        self.assertEqual(song.id, "s1")

    def test_locate_archive_and_delivery_marks_songs(self):
        job_id, _created = self.service.submit_bulk("u1", ["s1"], job_id="bulk-9")
        job = self.store.claim_next()
        self.store.mark_completed(job, {"archive": "bulk-9.zip"})
        os.makedirs(self.paths.bulk_dir("u1"), exist_ok=True)
        archive = os.path.join(self.paths.bulk_dir("u1"), "bulk-9.zip")
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("New Order - Blue Monday.flac", b"audio")
        write_sidecar(archive, included_song_ids=["s1"], added_files=["New Order - Blue Monday.flac"], failed_files=[])

        path, name, meta = self.service.locate_archive(job_id, "u1")
        self.assertEqual((path, name), (archive, "bulk-9.zip"))
        self.service.record_archive_delivery(meta)
        self.assertTrue(self.catalog.get_song_by_id("s1").downloaded)

    def test_direct_file_keeps_local_flag_honest(self):
        self.sync.set_local("s1", True)
        self.assertIsNone(self.service.direct_file("u1", "s1"))
        self.assertFalse(self.service.check_local("s1"))

        path = self._write_song_file()
        located, name, _song = self.service.direct_file("u1", "s1")
        self.assertEqual(located, path)
        self.assertEqual(name, "New Order - Blue Monday.flac")
        self.assertTrue(self.service.check_local("s1"))

    def test_check_local_unknown_song(self):
        with self.assertRaises(SongNotFoundError):
            self.service.check_local("missing")

    def test_retry_job_requeues_failed(self):
        job_id = self.service.submit_single("u1", "s1")
        job = self.store.claim_next()
        self.store.mark_failed(job, error_message="boom")
        self.events.clear()

        self.assertTrue(self.service.retry_job(job_id))
        self.assertEqual(self.store.get_job(job_id).status, JobStatus.WAITING)
        self.assertEqual([event.type for event in self.events], [EventType.QUEUED])
        self.assertFalse(self.service.retry_job(job_id))
        overview = self.service.queue_overview()
        self.assertEqual(overview["counts"]["waiting"], 1)


if __name__ == "__main__":
    unittest.main()
