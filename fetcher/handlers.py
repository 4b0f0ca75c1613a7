import logging
import os

from fetcher.archive import ArchiveBuilder, build_song_archive
from fetcher.errors import DownloadError, JobCancelledError, SongNotFoundError
from fetcher.matcher import find_match, list_candidate_files
from fetcher.naming import artist_text, target_folder_name
from fetcher.progress import ITEM_COMPLETED, ITEM_FAILED, ITEM_STARTED, PERCENT, YtDlpOutputParser
from fetcher.transcode import convert_all, convert_to_aiff, download_format_for, needs_conversion

_AUDIO_EXTS = (".flac", ".mp3", ".wav", ".aiff", ".aif", ".m4a", ".opus", ".ogg", ".webm", ".aac")


def _scaled(fraction, start, end):
    fraction = max(0.0, min(1.0, fraction))
    return int(start + (end - start) * fraction)


class SingleDownloadHandler:
    """Downloads one song into the user's playlist folder."""

    def __init__(self, *, catalog, sync, resolver, downloader, paths, ffmpeg_path="ffmpeg"):
        self.catalog = catalog
        self.sync = sync
        self.resolver = resolver
        self.downloader = downloader
        self.paths = paths
        self.ffmpeg_path = ffmpeg_path

    def execute(self, job, reporter):
        song_id = job.payload.get("song_id")
        song = self.catalog.get_song_by_id(song_id)
        if song is None:
            raise SongNotFoundError(song_id)
        try:
            return self._download(job, reporter, song)
        except JobCancelledError:
            raise
        except Exception:
            self.sync.mark_unavailable(song.id)
            raise

    def _download(self, job, reporter, song):
        artists = artist_text(song.artists)
        folder = job.payload.get("folder") or target_folder_name(song)
        output_dir = os.path.join(self.paths.user_dir(job.user_id), folder)
        os.makedirs(output_dir, exist_ok=True)
        reporter.progress(0)

        source = self.resolver.resolve(song)
        reporter.raise_if_cancelled()
        reporter.progress(10)

        preferred = self.catalog.get_preferred_format(job.user_id)
        audio_format = download_format_for(preferred)

        def progress_hook(data):
            if reporter.cancelled():
                raise JobCancelledError(f"Job {job.id} was cancelled")
            state = data.get("status")
            if state == "downloading":
                total = data.get("total_bytes") or data.get("total_bytes_estimate")
                downloaded = data.get("downloaded_bytes")
                if total and downloaded is not None:
                    reporter.progress(_scaled(downloaded / total, 10, 90))
            elif state == "finished":
                reporter.progress(90)

        self.downloader.download(source.url, output_dir, audio_format=audio_format, progress_hook=progress_hook)
        reporter.progress(90)

        name = find_match(output_dir, song.title, artists)
        if not name:
            raise DownloadError(f"No output file matched '{song.title}' in {folder}")
        path = os.path.join(output_dir, name)
        if needs_conversion(preferred) and not name.lower().endswith(f".{preferred}"):
            path = convert_to_aiff(path, self.ffmpeg_path)
            name = os.path.basename(path)
        reporter.progress(95)

        reporter.raise_if_cancelled()
        self.sync.mark_available(song.id)
        reporter.progress(100)
        logging.info("Single download finished: %s -> %s", song.id, path)
        return {"file": name, "folder": folder, "song_id": song.id}


class BulkDownloadHandler:
    """Downloads many songs in one yt-dlp batch and zips the results."""

    def __init__(self, *, catalog, sync, resolver, downloader, paths, ffmpeg_path="ffmpeg", archive_builder=None):
        self.catalog = catalog
        self.sync = sync
        self.resolver = resolver
        self.downloader = downloader
        self.paths = paths
        self.ffmpeg_path = ffmpeg_path
        self.archive_builder = archive_builder or ArchiveBuilder()

    def execute(self, job, reporter):
        song_ids = list(dict.fromkeys(str(song_id) for song_id in job.payload.get("song_ids") or []))
        songs = self.catalog.get_songs_by_ids(song_ids)
        if not songs:
            raise SongNotFoundError(", ".join(song_ids) or "<none>")
        requested = len(song_ids)

        bulk_dir = self.paths.bulk_dir(job.user_id)
        work_dir = os.path.join(bulk_dir, job.id)
        os.makedirs(work_dir, exist_ok=True)
        reporter.progress(0)

        urls, failed_songs = self._resolve_all(songs, reporter)
        found_ids = {song.id for song in songs}
        missing = [song_id for song_id in song_ids if song_id not in found_ids]
        for song_id in missing:
            failed_songs.append(song_id)
            reporter.item_error(song_id, "Song not found")
        if not urls:
            raise DownloadError("No playable sources resolved for bulk download")
        reporter.raise_if_cancelled()

        preferred = self.catalog.get_preferred_format(job.user_id)
        batch_file = os.path.join(work_dir, "urls.txt")
        with open(batch_file, "w") as handle:
            handle.write("\n".join(urls.values()) + "\n")

        self._run_batch(job, reporter, batch_file, work_dir, preferred, urls)

        files = [name for name in list_candidate_files(work_dir) if name.lower().endswith(_AUDIO_EXTS)]
        if needs_conversion(preferred):
            paths = convert_all(
                [os.path.join(work_dir, name) for name in files if not name.lower().endswith(f".{preferred}")],
                self.ffmpeg_path,
            )
            files = sorted(
                {name for name in files if name.lower().endswith(f".{preferred}")}
                | {os.path.basename(path) for path in paths}
            )
        if not files:
            raise DownloadError("Failed to download any files")
        reporter.progress(85)

        archive_path = os.path.join(bulk_dir, f"{job.id}.zip")
        outcome = build_song_archive(
            songs,
            work_dir,
            archive_path,
            builder=self.archive_builder,
            names=files,
            progress=lambda done, total: reporter.progress(_scaled(done / total, 85, 99)),
        )
        if not outcome.archive.added:
            raise DownloadError("Archive contains no files")

        reporter.raise_if_cancelled()
        for song_id in outcome.matches:
            self.sync.mark_available(song_id)

        success_count = len(outcome.archive.added)
        fail_count = max(0, requested - success_count)
        reporter.progress(100)
        logging.info(
            "Bulk download finished: job=%s archive=%s success=%s failed=%s",
            job.id,
            archive_path,
            success_count,
            fail_count,
        )
        return {
            "archive": os.path.basename(archive_path),
            "success_count": success_count,
            "fail_count": fail_count,
            "files": list(outcome.archive.added),
            "failed_songs": failed_songs + [
                song_id for song_id in outcome.unmatched_song_ids if song_id not in failed_songs
            ],
        }

    def _resolve_all(self, songs, reporter):
        urls = {}
        failed = []
        total = len(songs)
        for index, song in enumerate(songs, start=1):
            label = f"{artist_text(song.artists)} - {song.title}" if song.artists else song.title
            try:
                urls[song.id] = self.resolver.resolve(song).url
            except Exception as exc:
                logging.warning("Bulk resolve failed for song %s: %s", song.id, exc)
                failed.append(song.id)
                reporter.item_error(label, f"Failed to resolve source: {exc}")
            reporter.progress(_scaled(index / total, 0, 20), label=f"Resolved {index}/{total}")
            if reporter.cancelled():
                raise JobCancelledError(f"Job {reporter.job.id} was cancelled")
        return urls, failed

    def _run_batch(self, job, reporter, batch_file, work_dir, preferred, urls):
        parser = YtDlpOutputParser()
        total = len(urls)

        def on_line(line):
            for update in parser.feed(line):
                if update.kind == ITEM_STARTED and update.url:
                    reporter.info(f"Downloading {min(update.index, total)} of {total}")
                elif update.kind == PERCENT and update.percent is not None:
                    partial = update.percent / 100.0 if update.percent < 100 else 0.0
                    done = parser.completed_count + partial
                    reporter.progress(_scaled(done / total, 20, 85))
                elif update.kind == ITEM_COMPLETED:
                    reporter.progress(_scaled(parser.completed_count / total, 20, 85))
                elif update.kind == ITEM_FAILED:
                    reporter.item_error(update.video_id or f"item {update.index or '?'}", update.message)

        code = self.downloader.download_batch(
            batch_file,
            work_dir,
            audio_format=download_format_for(preferred),
            on_line=on_line,
            should_cancel=reporter.cancelled,
        )
        if code:
            logging.warning("yt-dlp batch for job %s exited with code %s", job.id, code)
        return code
