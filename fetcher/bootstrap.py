import os
import threading
from dataclasses import dataclass

from fetcher.broadcaster import ProgressBroadcaster
from fetcher.catalog import CatalogStore
from fetcher.handlers import BulkDownloadHandler, SingleDownloadHandler
from fetcher.job_queue import DownloadJobStore, JobKind
from fetcher.paths import ensure_dir
from fetcher.resolver import SourceResolver
from fetcher.service import DownloadService
from fetcher.sync import CatalogSync
from fetcher.worker import DownloadWorker
from fetcher.ytdlp import YtDlpDownloader


@dataclass
class FetcherServices:
    store: DownloadJobStore
    catalog: CatalogStore
    sync: CatalogSync
    broadcaster: ProgressBroadcaster
    service: DownloadService
    worker: DownloadWorker


def build_services(config, paths, *, broadcaster=None, resolver=None, downloader=None, stop_event=None):
    ensure_dir(os.path.dirname(paths.jobs_db_path))
    ensure_dir(os.path.dirname(paths.catalog_db_path))
    ensure_dir(paths.downloads_dir)

    broadcaster = broadcaster or ProgressBroadcaster()
    store = DownloadJobStore(paths.jobs_db_path, default_max_attempts=config["job_max_attempts"])
    catalog = CatalogStore(paths.catalog_db_path, default_format=config["default_format"])
    sync = CatalogSync(
        catalog,
        attempts=config["sync_retry_attempts"],
        base_delay=config["sync_retry_base_seconds"],
    )
    resolver = resolver or SourceResolver()
    downloader = downloader or YtDlpDownloader(command=config.get("ytdlp_command"))
    handler_args = {
        "catalog": catalog,
        "sync": sync,
        "resolver": resolver,
        "downloader": downloader,
        "paths": paths,
        "ffmpeg_path": config["ffmpeg_path"],
    }
    worker = DownloadWorker(
        store,
        {
            JobKind.SINGLE: SingleDownloadHandler(**handler_args),
            JobKind.BULK: BulkDownloadHandler(**handler_args),
        },
        broadcaster,
        retry_base_seconds=config["job_retry_base_seconds"],
        poll_interval_seconds=config["poll_interval_seconds"],
        stop_event=stop_event or threading.Event(),
        lock_path=paths.lock_file,
    )
    service = DownloadService(
        store=store,
        catalog=catalog,
        sync=sync,
        broadcaster=broadcaster,
        paths=paths,
        recent_bulk_limit=config["recent_bulk_limit"],
    )
    return FetcherServices(
        store=store,
        catalog=catalog,
        sync=sync,
        broadcaster=broadcaster,
        service=service,
        worker=worker,
    )
