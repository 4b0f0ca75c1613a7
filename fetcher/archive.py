import json
import logging
import os
import shutil
import stat
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone

from fetcher.matcher import associate_files, list_candidate_files, read_tag_title
from fetcher.naming import display_filename

_DEFAULT_CHUNK_SIZE = 1024 * 1024
_DEFAULT_COMPRESSLEVEL = 5


@dataclass
class ArchiveResult:
    path: str
    added: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def added_count(self):
        return len(self.added)

    @property
    def failed_count(self):
        return len(self.failed)


@dataclass
class SongArchiveResult:
    archive: ArchiveResult
    matches: dict
    unmatched_song_ids: list[str]
    unmatched_files: list[str]
    meta_path: str


def _unique_arcname(name, used):
    if name not in used:
        used.add(name)
        return name
    stem, ext = os.path.splitext(name)
    counter = 2
    while True:
        candidate = f"{stem} ({counter}){ext}"
        if candidate not in used:
            used.add(candidate)
            return candidate
        counter += 1


class _TruncatedEntry(Exception):
    def __init__(self, source, cause):
        super().__init__(f"{source}: {cause}")
        self.source = source
        self.cause = cause


class ArchiveBuilder:
    def __init__(self, *, chunk_size=_DEFAULT_CHUNK_SIZE, compresslevel=_DEFAULT_COMPRESSLEVEL):
        self.chunk_size = chunk_size
        self.compresslevel = compresslevel

    def build(self, sources, destination, *, progress=None, arcnames=None):
        """Stream ``sources`` into a zip at ``destination``.

        Unreadable sources are recorded in ``failed`` and skipped; directories
        are skipped silently. A source that fails partway through its copy
        cannot be taken back out of the zip, so the archive is rewritten
        without it. Creating the destination directory and closing the
        archive are not guarded.
        """
        sources = list(sources)
        arcnames = arcnames or {}
        dest_dir = os.path.dirname(os.path.abspath(destination))
        os.makedirs(dest_dir, exist_ok=True)
        partial = f"{destination}.part"
        truncated = []
        while True:
            result = ArchiveResult(path=destination, failed=list(truncated))
            remaining = [source for source in sources if source not in truncated]
            try:
                self._write(partial, remaining, arcnames, result, progress)
            except _TruncatedEntry as exc:
                logging.warning("Archive entry failed mid-copy for %s: %s; rewriting without it", exc.source, exc.cause)
                truncated.append(exc.source)
                _remove_quietly(partial)
                continue
            except BaseException:
                _remove_quietly(partial)
                raise
            break
        os.replace(partial, destination)
        logging.info(
            "Archive written: %s (added=%s failed=%s skipped=%s)",
            destination,
            len(result.added),
            len(result.failed),
            len(result.skipped),
        )
        return result

    def _write(self, partial, sources, arcnames, result, progress):
        used = set()
        total = len(sources)
        with zipfile.ZipFile(
            partial,
            "w",
            compression=zipfile.ZIP_DEFLATED,
            compresslevel=self.compresslevel,
        ) as zf:
            for processed, source in enumerate(sources, start=1):
                self._add_entry(zf, source, arcnames.get(source), used, result)
                if progress:
                    progress(processed, total)

    def _copy(self, handle, target):
        shutil.copyfileobj(handle, target, self.chunk_size)

    def _add_entry(self, zf, source, arcname, used, result):
        try:
            info = os.stat(source)
        except OSError as exc:
            logging.warning("Archive entry failed for %s: %s", source, exc)
            result.failed.append(source)
            return
        if stat.S_ISDIR(info.st_mode):
            result.skipped.append(source)
            return
        if not stat.S_ISREG(info.st_mode):
            result.skipped.append(source)
            return
        try:
            handle = open(source, "rb")
        except OSError as exc:
            logging.warning("Archive entry failed for %s: %s", source, exc)
            result.failed.append(source)
            return
        name = _unique_arcname(arcname or os.path.basename(source), used)
        with handle:
            with zf.open(name, "w", force_zip64=True) as target:
                try:
                    self._copy(handle, target)
                except OSError as exc:
                    raise _TruncatedEntry(source, exc) from exc
        result.added.append(name)


def _remove_quietly(path):
    try:
        os.remove(path)
    except OSError:
        pass


def write_sidecar(archive_path, *, included_song_ids, added_files, failed_files, now=None):
    meta_path = f"{archive_path}.meta.json"
    payload = {
        "included_song_ids": list(included_song_ids),
        "added_files": list(added_files),
        "failed_files": list(failed_files),
        "timestamp": (now or datetime.now(timezone.utc)).isoformat(),
    }
    tmp_path = f"{meta_path}.tmp"
    with open(tmp_path, "w") as handle:
        json.dump(payload, handle, indent=2, sort_keys=True)
    os.replace(tmp_path, meta_path)
    return meta_path


def read_sidecar(archive_path):
    meta_path = f"{archive_path}.meta.json"
    try:
        with open(meta_path, "r") as handle:
            return json.load(handle)
    except (OSError, json.JSONDecodeError):
        return None


def build_song_archive(songs, directory, destination, *, builder=None, progress=None, names=None, read_tags=True):
    """Archive every produced file in ``directory`` and work out which song each one is.

    Matched files are named after their song; unmatched files keep their
    original name but are still included.
    """
    builder = builder or ArchiveBuilder()
    names = list(names) if names is not None else list_candidate_files(directory)
    tag_reader = None
    if read_tags:
        def tag_reader(name):
            return read_tag_title(os.path.join(directory, name))

    matches, unmatched_songs, unmatched_files = associate_files(songs, names, tag_reader=tag_reader)
    songs_by_id = {song.id: song for song in songs}
    sources = []
    arcnames = {}
    for name in names:
        path = os.path.join(directory, name)
        sources.append(path)
    for song_id, name in matches.items():
        ext = os.path.splitext(name)[1]
        arcnames[os.path.join(directory, name)] = display_filename(songs_by_id[song_id], ext)

    archive = builder.build(sources, destination, progress=progress, arcnames=arcnames)
    failed_paths = set(archive.failed)
    included = [
        song_id
        for song_id, name in matches.items()
        if os.path.join(directory, name) not in failed_paths
    ]
    meta_path = write_sidecar(
        destination,
        included_song_ids=included,
        added_files=archive.added,
        failed_files=[os.path.basename(path) for path in archive.failed],
    )
    return SongArchiveResult(
        archive=archive,
        matches={song_id: matches[song_id] for song_id in included},
        unmatched_song_ids=[song.id for song in unmatched_songs],
        unmatched_files=list(unmatched_files),
        meta_path=meta_path,
    )
