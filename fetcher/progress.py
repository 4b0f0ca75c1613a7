import re
from dataclasses import dataclass

ITEM_STARTED = "item_started"
PERCENT = "percent"
ITEM_COMPLETED = "item_completed"
ITEM_FAILED = "item_failed"

EXTRACTING_RE = re.compile(r"^\[(?P<extractor>[\w:]+)\] Extracting URL: (?P<url>\S+)")
ITEM_INDEX_RE = re.compile(r"\[download\] Downloading (?:item|video) (?P<index>\d+) of (?P<total>\d+)")
PERCENT_RE = re.compile(r"\[download\]\s+(?P<pct>\d+(?:\.\d+)?)%")
ALREADY_DOWNLOADED_RE = re.compile(r"\[download\] (?P<name>.+) has already been downloaded")
ERROR_RE = re.compile(r"^ERROR: (?P<message>.*)$")
ERROR_VIDEO_ID_RE = re.compile(r"\[[\w:]+\] (?P<video_id>[A-Za-z0-9_-]{6,}):")


@dataclass(frozen=True)
class OutputUpdate:
    kind: str
    index: int | None = None
    total: int | None = None
    percent: float | None = None
    url: str | None = None
    video_id: str | None = None
    message: str | None = None


class YtDlpOutputParser:
    """Turns yt-dlp console lines into typed updates.

    Completion is reported once per item even when yt-dlp prints several
    100% lines for it.
    """

    def __init__(self):
        self.started = 0
        self.total = None
        self._current = None
        self._completed = set()
        self.completed_count = 0
        self.failed_count = 0

    def feed(self, line):
        if isinstance(line, bytes):
            line = line.decode("utf-8", errors="replace")
        line = (line or "").strip()
        if not line:
            return []

        match = ERROR_RE.match(line)
        if match:
            message = match.group("message").strip()
            id_match = ERROR_VIDEO_ID_RE.search(message)
            self.failed_count += 1
            return [
                OutputUpdate(
                    ITEM_FAILED,
                    index=self._current_index(),
                    video_id=id_match.group("video_id") if id_match else None,
                    message=message,
                )
            ]

        match = EXTRACTING_RE.match(line)
        if match:
            self.started += 1
            self._current = ("url", self.started)
            return [OutputUpdate(ITEM_STARTED, index=self.started, total=self.total, url=match.group("url"))]

        match = ITEM_INDEX_RE.search(line)
        if match:
            index = int(match.group("index"))
            self.total = int(match.group("total"))
            self._current = ("item", index)
            return [OutputUpdate(ITEM_STARTED, index=index, total=self.total)]

        if ALREADY_DOWNLOADED_RE.search(line):
            return self._complete()

        match = PERCENT_RE.search(line)
        if match:
            percent = min(100.0, float(match.group("pct")))
            updates = [OutputUpdate(PERCENT, index=self._current_index(), total=self.total, percent=percent)]
            if percent >= 100.0:
                updates.extend(self._complete())
            return updates
        return []

    def _current_index(self):
        return self._current[1] if self._current else None

    def _complete(self):
        if self._current is None:
            self.started += 1
            self._current = ("url", self.started)
        if self._current in self._completed:
            return []
        self._completed.add(self._current)
        self.completed_count += 1
        return [OutputUpdate(ITEM_COMPLETED, index=self._current_index(), total=self.total)]
