import logging
import os
import signal
import subprocess
import sys

from yt_dlp import YoutubeDL

from fetcher.errors import DownloadError, JobCancelledError

SINGLE_OUTPUT_TEMPLATE = "%(artist,uploader)s - %(title)s.%(ext)s"
BATCH_OUTPUT_TEMPLATE = "%(title)s.%(ext)s"


def _build_audio_postprocessors(audio_format):
    return [
        {
            "key": "FFmpegExtractAudio",
            "preferredcodec": audio_format,
            "preferredquality": "0",
        },
        {"key": "FFmpegMetadata"},
        {"key": "EmbedThumbnail"},
    ]


def search_first_video_id(query, *, ydl_factory=YoutubeDL):
    """First YouTube search hit for ``query``, without downloading."""
    opts = {
        "quiet": True,
        "no_warnings": True,
        "skip_download": True,
        "extract_flat": "in_playlist",
        "noplaylist": True,
        "logger": logging.getLogger("yt_dlp"),
    }
    with ydl_factory(opts) as ydl:
        info = ydl.extract_info(f"ytsearch1:{query}", download=False)
    entries = (info or {}).get("entries") or []
    for entry in entries:
        if entry and entry.get("id"):
            return entry["id"]
    return None


class YtDlpDownloader:
    def __init__(self, *, command=None, ffmpeg_location=None, ydl_factory=YoutubeDL, popen=subprocess.Popen):
        self.command = list(command) if command else [sys.executable, "-m", "yt_dlp"]
        self.ffmpeg_location = ffmpeg_location
        self.ydl_factory = ydl_factory
        self.popen = popen

    def download(self, url, output_dir, *, audio_format, progress_hook=None):
        os.makedirs(output_dir, exist_ok=True)
        opts = {
            "outtmpl": os.path.join(output_dir, SINGLE_OUTPUT_TEMPLATE),
            "format": "ba/b",
            "noplaylist": True,
            "writethumbnail": True,
            "quiet": True,
            "no_warnings": True,
            "continuedl": True,
            "postprocessors": _build_audio_postprocessors(audio_format),
            "logger": logging.getLogger("yt_dlp"),
        }
        if self.ffmpeg_location:
            opts["ffmpeg_location"] = self.ffmpeg_location
        if progress_hook:
            opts["progress_hooks"] = [progress_hook]
        try:
            with self.ydl_factory(opts) as ydl:
                result = ydl.download([url])
        except JobCancelledError:
            raise
        except Exception as exc:
            raise DownloadError(f"yt-dlp download failed for {url}: {exc}") from exc
        if result:
            raise DownloadError(f"yt-dlp reported failures for {url} (code={result})")

    def batch_command(self, batch_file, audio_format):
        cmd = list(self.command)
        cmd.extend([
            "--batch-file",
            batch_file,
            "-x",
            "--audio-format",
            audio_format,
            "--audio-quality",
            "0",
            "--embed-metadata",
            "--embed-thumbnail",
            "--convert-thumbnails",
            "jpg",
            "--output",
            BATCH_OUTPUT_TEMPLATE,
            "--ignore-errors",
            "--no-abort-on-error",
            "--format",
            "ba/b",
            "--no-playlist",
            "--newline",
        ])
        if self.ffmpeg_location:
            cmd.extend(["--ffmpeg-location", self.ffmpeg_location])
        return cmd

    def download_batch(self, batch_file, output_dir, *, audio_format, on_line=None, should_cancel=None):
        """Run yt-dlp over a batch file; returns the process exit code.

        Per-item failures do not stop the batch. When ``should_cancel``
        returns true the whole process group is terminated.
        """
        cmd = self.batch_command(batch_file, audio_format)
        logging.info("Starting yt-dlp batch in %s", output_dir)
        try:
            proc = self.popen(
                cmd,
                cwd=output_dir,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                bufsize=1,
                start_new_session=True,
            )
        except OSError as exc:
            raise DownloadError(f"yt-dlp failed to start: {exc}") from exc

        try:
            for line in proc.stdout:
                if on_line:
                    on_line(line.rstrip("\n"))
                if should_cancel and should_cancel():
                    _terminate(proc)
                    raise JobCancelledError("batch cancelled")
            return proc.wait()
        finally:
            if proc.poll() is None:
                _terminate(proc)
            if proc.stdout:
                proc.stdout.close()


def _terminate(proc, timeout=10):
    try:
        os.killpg(proc.pid, signal.SIGTERM)
    except (ProcessLookupError, PermissionError, OSError):
        try:
            proc.terminate()
        except OSError:
            pass
    try:
        proc.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logging.warning("yt-dlp did not exit after SIGTERM; killing pid %s", proc.pid)
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            proc.kill()
        proc.wait()
