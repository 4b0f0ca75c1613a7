import json
import re
import unicodedata
from urllib.parse import quote

_NON_ASCII_RE = re.compile(r"[^\x20-\x7e]")
_RESERVED_RE = re.compile(r'[<>:"/\\|?*]')
_SEPARATOR_RE = re.compile(r"[\s_]+")
_DISPOSITION_UNSAFE_RE = re.compile(r'["\\\r\n]')


def sanitize_file_name(name, maxlen=180):
    """ASCII-only, filesystem-safe name; never empty."""
    if not name:
        return "unnamed"
    text = unicodedata.normalize("NFKD", str(name))
    text = _NON_ASCII_RE.sub("", text)
    text = _RESERVED_RE.sub("_", text)
    text = _SEPARATOR_RE.sub(" ", text).strip(" .")
    if len(text) > maxlen:
        text = text[:maxlen].rstrip(" .")
    return text or "unnamed"


def sanitize_directory_name(name):
    cleaned = sanitize_file_name(name)
    if cleaned == "unnamed":
        return "default_playlist"
    return cleaned


def normalize_artists(value):
    """Accept a list, a JSON list string, or a legacy comma-separated string."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        items = value
    else:
        text = str(value).strip()
        if not text:
            return []
        items = None
        if text.startswith("["):
            try:
                parsed = json.loads(text)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, list):
                items = parsed
        if items is None:
            items = text.split(",")
    artists = []
    for item in items:
        if item is None:
            continue
        if isinstance(item, dict):
            item = item.get("name")
            if not item:
                continue
        cleaned = str(item).strip()
        if cleaned:
            artists.append(cleaned)
    return artists


def artist_text(artists):
    return ", ".join(normalize_artists(artists))


def target_folder_name(song, explicit=None):
    if explicit and str(explicit).strip():
        return sanitize_directory_name(explicit)
    playlists = getattr(song, "playlists", None) or []
    for name in playlists:
        if name and str(name).strip():
            return sanitize_directory_name(name)
    legacy = getattr(song, "legacy_playlist", None)
    if legacy and str(legacy).strip():
        return sanitize_directory_name(legacy)
    return "default"


def display_filename(song, ext):
    ext = (ext or "").lstrip(".")
    artists = artist_text(song.artists)
    base = f"{artists} - {song.title}" if artists else (song.title or "")
    name = sanitize_file_name(base)
    return f"{name}.{ext}" if ext else name


def content_disposition(filename, disposition="attachment"):
    fallback = _DISPOSITION_UNSAFE_RE.sub("_", sanitize_file_name(filename)) or "download"
    encoded = quote(filename or fallback, safe="")
    return f"{disposition}; filename=\"{fallback}\"; filename*=UTF-8''{encoded}"
