import logging
from dataclasses import dataclass
from urllib.parse import urlparse

from fetcher.errors import ResolutionError
from fetcher.naming import artist_text
from fetcher.ytdlp import search_first_video_id

YOUTUBE_MUSIC_WATCH_URL = "https://music.youtube.com/watch?v={video_id}"


@dataclass(frozen=True)
class ResolvedSource:
    url: str
    title: str
    artists: list[str]
    platform: str


def _platform_key(platform):
    return (platform or "").strip().lower()


def _is_http_url(value):
    if not value:
        return False
    parsed = urlparse(value)
    return parsed.scheme in {"http", "https"} and bool(parsed.netloc)


class SourceResolver:
    def __init__(self, search=None):
        self.search = search or search_first_video_id

    def resolve(self, song):
        platform = _platform_key(song.platform)
        if platform == "spotify":
            url = self._search_youtube_music(song)
        elif _is_http_url(song.url):
            url = song.url
        else:
            raise ResolutionError(f"No playable source for song {song.id} ({song.platform or 'unknown platform'})")
        return ResolvedSource(url=url, title=song.title, artists=list(song.artists), platform=platform or "custom")

    def _search_youtube_music(self, song):
        query = " ".join(part for part in (song.title, artist_text(song.artists)) if part).strip()
        if not query:
            raise ResolutionError(f"Song {song.id} has no title to search for")
        try:
            video_id = self.search(query)
        except Exception as exc:
            logging.warning("YouTube Music search failed for %r: %s", query, exc)
            raise
        if not video_id:
            raise ResolutionError(f"No YouTube Music match for {query!r}")
        return YOUTUBE_MUSIC_WATCH_URL.format(video_id=video_id)
