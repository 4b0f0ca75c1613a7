import json
import logging
import sqlite3
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime

from fetcher.config import VALID_FORMATS
from fetcher.naming import normalize_artists

_FLAG_COLUMNS = {"downloaded", "local"}
DEFAULT_FORMAT = "flac"


def _utc_now():
    return datetime.utcnow().isoformat()


def ensure_catalog_tables(conn):
    cur = conn.cursor()
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS song (
            id TEXT PRIMARY KEY,
            user_id TEXT,
            title TEXT NOT NULL,
            artist_name TEXT,
            album TEXT,
            album_image TEXT,
            platform TEXT,
            url TEXT,
            playlist TEXT,
            downloaded INTEGER NOT NULL DEFAULT 0,
            local INTEGER NOT NULL DEFAULT 0,
            platform_added_at TIMESTAMP
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS playlist (
            id TEXT PRIMARY KEY,
            user_id TEXT,
            name TEXT NOT NULL,
            platform TEXT,
            platform_playlist_id TEXT
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS song_playlist (
            song_id TEXT NOT NULL,
            playlist_id TEXT NOT NULL,
            added_at TIMESTAMP,
            PRIMARY KEY (song_id, playlist_id)
        )
        """
    )
    cur.execute(
        """
        CREATE TABLE IF NOT EXISTS user_preferences (
            user_id TEXT PRIMARY KEY,
            file_format TEXT NOT NULL DEFAULT 'flac'
        )
        """
    )
    existing = {row[1] for row in cur.execute("PRAGMA table_info(song)").fetchall()}
    for name, ddl in (
        ("playlist", "playlist TEXT"),
        ("downloaded", "downloaded INTEGER NOT NULL DEFAULT 0"),
        ("local", "local INTEGER NOT NULL DEFAULT 0"),
    ):
        if name not in existing:
            cur.execute(f"ALTER TABLE song ADD COLUMN {ddl}")
            logging.warning("Migrated song: added column %s", name)
    cur.execute("CREATE INDEX IF NOT EXISTS idx_song_user ON song (user_id)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_song_local ON song (local)")
    cur.execute("CREATE INDEX IF NOT EXISTS idx_song_playlist_song ON song_playlist (song_id)")
    conn.commit()


@dataclass(frozen=True)
class Song:
    id: str
    title: str
    artists: list[str] = field(default_factory=list)
    platform: str | None = None
    url: str | None = None
    album: str | None = None
    user_id: str | None = None
    downloaded: bool = False
    local: bool = False
    playlists: list[str] = field(default_factory=list)
    legacy_playlist: str | None = None

    @classmethod
    def from_row(cls, row, playlists=None):
        return cls(
            id=row["id"],
            title=row["title"] or "",
            artists=normalize_artists(row["artist_name"]),
            platform=row["platform"],
            url=row["url"],
            album=row["album"],
            user_id=row["user_id"],
            downloaded=bool(row["downloaded"]),
            local=bool(row["local"]),
            playlists=list(playlists or []),
            legacy_playlist=_legacy_playlist_name(row["playlist"]),
        )


def _legacy_playlist_name(raw):
    if not raw:
        return None
    text = str(raw).strip()
    if text.startswith("["):
        try:
            parsed = json.loads(text)
        except json.JSONDecodeError:
            return text
        if isinstance(parsed, list) and parsed:
            first = parsed[0]
            if isinstance(first, dict):
                return first.get("name")
            return str(first)
        return None
    return text


class CatalogStore:
    def __init__(self, db_path, *, default_format=DEFAULT_FORMAT):
        self.db_path = db_path
        self.default_format = default_format if default_format in VALID_FORMATS else DEFAULT_FORMAT

    @contextmanager
    def _connect(self):
        conn = sqlite3.connect(self.db_path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            ensure_catalog_tables(conn)
            yield conn
            conn.commit()
        finally:
            conn.close()

    def _playlist_names(self, conn, song_ids):
        names = {song_id: [] for song_id in song_ids}
        if not song_ids:
            return names
        placeholders = ",".join("?" for _ in song_ids)
        rows = conn.execute(
            f"""
            SELECT sp.song_id, p.name
            FROM song_playlist sp
            JOIN playlist p ON p.id = sp.playlist_id
            WHERE sp.song_id IN ({placeholders})
            ORDER BY sp.added_at ASC, p.name ASC
            """,
            tuple(song_ids),
        ).fetchall()
        for row in rows:
            names[row["song_id"]].append(row["name"])
        return names

    def get_song_by_id(self, song_id):
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM song WHERE id=?", (song_id,)).fetchone()
            if not row:
                return None
            playlists = self._playlist_names(conn, [song_id]).get(song_id)
            return Song.from_row(row, playlists)

    def get_songs_by_ids(self, song_ids):
        """Songs in request order; unknown ids are omitted."""
        ordered = list(dict.fromkeys(str(song_id) for song_id in song_ids or []))
        if not ordered:
            return []
        placeholders = ",".join("?" for _ in ordered)
        with self._connect() as conn:
            rows = conn.execute(f"SELECT * FROM song WHERE id IN ({placeholders})", tuple(ordered)).fetchall()
            by_id = {row["id"]: row for row in rows}
            playlists = self._playlist_names(conn, list(by_id))
        return [Song.from_row(by_id[song_id], playlists.get(song_id)) for song_id in ordered if song_id in by_id]

    def update_flag(self, song_id, flag, value):
        if flag not in _FLAG_COLUMNS:
            raise ValueError(f"Unknown song flag: {flag}")
        with self._connect() as conn:
            cur = conn.execute(f"UPDATE song SET {flag}=? WHERE id=?", (1 if value else 0, song_id))
            return cur.rowcount == 1

    def list_local_songs(self, user_id=None):
        query = "SELECT * FROM song WHERE local=1"
        params = ()
        if user_id is not None:
            query += " AND user_id=?"
            params = (user_id,)
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
            playlists = self._playlist_names(conn, [row["id"] for row in rows])
        return [Song.from_row(row, playlists.get(row["id"])) for row in rows]

    def get_preferred_format(self, user_id):
        with self._connect() as conn:
            row = conn.execute(
                "SELECT file_format FROM user_preferences WHERE user_id=?",
                (user_id,),
            ).fetchone()
        fmt = (row["file_format"] if row else None) or self.default_format
        if fmt not in VALID_FORMATS:
            logging.warning("Unknown preferred format %s for user %s; using %s", fmt, user_id, self.default_format)
            return self.default_format
        return fmt

    def set_preferred_format(self, user_id, file_format):
        if file_format not in VALID_FORMATS:
            raise ValueError(f"Invalid file format: {file_format}")
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO user_preferences (user_id, file_format) VALUES (?, ?)
                ON CONFLICT(user_id) DO UPDATE SET file_format=excluded.file_format
                """,
                (user_id, file_format),
            )

    def add_song(self, song_id, *, title, artists=None, platform=None, url=None, album=None, user_id=None, playlist=None):
        if isinstance(artists, str):
            artist_value = artists
        else:
            artist_value = json.dumps(list(artists or []))
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO song (
                    id, user_id, title, artist_name, album, platform, url, playlist, platform_added_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (song_id, user_id, title, artist_value, album, platform, url, playlist, _utc_now()),
            )
        return song_id

    def add_playlist(self, playlist_id, *, name, user_id=None, platform=None, platform_playlist_id=None):
        with self._connect() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO playlist (id, user_id, name, platform, platform_playlist_id)
                VALUES (?, ?, ?, ?, ?)
                """,
                (playlist_id, user_id, name, platform, platform_playlist_id),
            )
        return playlist_id

    def link_song(self, song_id, playlist_id, added_at=None):
        with self._connect() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO song_playlist (song_id, playlist_id, added_at) VALUES (?, ?, ?)",
                (song_id, playlist_id, added_at or _utc_now()),
            )
