import logging
import os
import subprocess

from fetcher.errors import DownloadError

# Formats yt-dlp cannot produce directly; downloaded as the mapped format first.
_INTERMEDIATE_FORMATS = {"aiff": "flac"}


def download_format_for(preferred):
    return _INTERMEDIATE_FORMATS.get(preferred, preferred)


def needs_conversion(preferred):
    return preferred in _INTERMEDIATE_FORMATS


def convert_to_aiff(path, ffmpeg_path="ffmpeg", *, runner=subprocess.run):
    """Convert a lossless file to AIFF next to it, keeping tags and cover art."""
    stem, ext = os.path.splitext(path)
    if ext.lower() == ".aiff":
        return path
    target = f"{stem}.aiff"
    cmd = [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel",
        "error",
        "-i",
        path,
        "-c:a",
        "pcm_s16be",
        "-write_id3v2",
        "1",
        "-map_metadata",
        "0",
        "-map",
        "0:a",
        "-map",
        "0:v?",
        "-y",
        target,
    ]
    try:
        result = runner(cmd, capture_output=True, text=True, check=False)
    except OSError as exc:
        raise DownloadError(f"ffmpeg failed to start: {exc}") from exc
    if result.returncode != 0:
        detail = (result.stderr or "").strip().splitlines()
        raise DownloadError(f"ffmpeg conversion failed for {os.path.basename(path)}: {detail[-1] if detail else result.returncode}")
    try:
        os.remove(path)
    except OSError as exc:
        logging.warning("Unable to remove intermediate file %s: %s", path, exc)
    return target


def convert_all(paths, ffmpeg_path="ffmpeg", *, runner=subprocess.run):
    """Convert every non-aiff file; failures are logged and the source is kept."""
    converted = []
    for path in paths:
        try:
            converted.append(convert_to_aiff(path, ffmpeg_path, runner=runner))
        except DownloadError as exc:
            logging.warning("AIFF conversion skipped: %s", exc)
            converted.append(path)
    return converted
