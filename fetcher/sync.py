import logging
import os
import time

from fetcher.matcher import find_match
from fetcher.naming import artist_text, target_folder_name
from fetcher.retry import call_with_retry, is_sqlite_busy


class CatalogSync:
    """Keeps the catalog's downloaded/local flags in line with job outcomes."""

    def __init__(self, catalog, *, attempts=5, base_delay=0.1, sleep=time.sleep, is_retryable=is_sqlite_busy):
        self.catalog = catalog
        self.attempts = attempts
        self.base_delay = base_delay
        self.sleep = sleep
        self.is_retryable = is_retryable

    def _update(self, song_id, flag, value):
        return call_with_retry(
            self.catalog.update_flag,
            song_id,
            flag,
            bool(value),
            is_retryable=self.is_retryable,
            attempts=self.attempts,
            base_delay=self.base_delay,
            sleep=self.sleep,
        )

    def set_downloaded(self, song_id, value):
        return self._update(song_id, "downloaded", value)

    def set_local(self, song_id, value):
        return self._update(song_id, "local", value)

    def mark_available(self, song_id):
        self.set_downloaded(song_id, True)
        self.set_local(song_id, True)

    def mark_unavailable(self, song_id):
        """Reset both flags after a failed job; errors are logged, not raised."""
        for flag in ("downloaded", "local"):
            try:
                self._update(song_id, flag, False)
            except Exception as exc:
                logging.error("Failed to reset %s flag for song %s: %s", flag, song_id, exc)

    def reconcile_local_flags(self, user_dir_for):
        """Clear ``local`` for songs whose file is no longer on disk.

        ``user_dir_for`` maps a user id to that user's download root.
        Returns the ids that were cleared.
        """
        cleared = []
        for song in self.catalog.list_local_songs():
            if not song.user_id:
                continue
            try:
                root = user_dir_for(song.user_id)
            except ValueError:
                continue
            if locate_song_file(root, song):
                continue
            self.set_local(song.id, False)
            cleared.append(song.id)
        if cleared:
            logging.info("Reconciled local flags: cleared %s song(s)", len(cleared))
        return cleared


def candidate_dirs(user_root, song):
    """Folders a song's file may live in: its playlist folder, then bulk job folders."""
    dirs = [os.path.join(user_root, target_folder_name(song))]
    bulk_root = os.path.join(user_root, "bulk")
    try:
        entries = sorted(os.listdir(bulk_root))
    except OSError:
        entries = []
    for name in entries:
        path = os.path.join(bulk_root, name)
        if os.path.isdir(path):
            dirs.append(path)
    return dirs


def locate_song_file(user_root, song):
    artist = artist_text(song.artists)
    for directory in candidate_dirs(user_root, song):
        name = find_match(directory, song.title, artist)
        if name:
            return os.path.join(directory, name)
    return None
