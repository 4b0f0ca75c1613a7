"""Fuzzy file-to-song matching for downloaded audio.

Single lookups run the ordered ``MATCH_STRATEGIES`` cascade against a
directory. Bulk folders additionally go through ``associate_files`` which
adds a majority-keyword pass, an embedded-tag pass and a final
last-file-standing pairing.
"""

import logging
import os
import re
import unicodedata

from mutagen import File as MutagenFile
from rapidfuzz import fuzz

from fetcher.naming import artist_text

_PUNCT_RE = re.compile(r"[^\w\s]+")
_WHITESPACE_RE = re.compile(r"\s+")

_IGNORED_SUFFIXES = (".part", ".ytdl", ".txt", ".json", ".zip", ".bat", ".tmp")
_COVERAGE_NUMERATOR = 7
_COVERAGE_DENOMINATOR = 10
_MAJORITY_MIN_RATIO = 0.3


def normalize_string(value):
    if not value:
        return ""
    text = unicodedata.normalize("NFKD", str(value)).lower()
    text = text.replace("_", " ")
    text = _PUNCT_RE.sub("", text)
    return _WHITESPACE_RE.sub(" ", text).strip()


def keywords(value, min_length=3):
    return [word for word in normalize_string(value).split() if len(word) >= min_length]


def _stem(name):
    return os.path.splitext(name)[0]


def match_exact_substring(names, title, artist=None):
    if not title:
        return None
    for name in names:
        if title in _stem(name):
            return name
    return None


def match_normalized_substring(names, title, artist=None):
    target = normalize_string(title)
    if not target:
        return None
    for name in names:
        if target in normalize_string(_stem(name)):
            return name
    return None


def match_keyword_coverage(names, title, artist=None):
    words = keywords(title)
    if not words:
        return None
    for name in names:
        normalized = normalize_string(_stem(name))
        matched = sum(1 for word in words if word in normalized)
        if matched * _COVERAGE_DENOMINATOR >= len(words) * _COVERAGE_NUMERATOR:
            return name
    return None


def match_artist_assisted(names, title, artist=None):
    normalized_artist = normalize_string(artist)
    words = keywords(title)
    if not normalized_artist or not words:
        return None
    for name in names:
        normalized = normalize_string(_stem(name))
        if normalized_artist in normalized and any(word in normalized for word in words):
            return name
    return None


MATCH_STRATEGIES = (
    match_exact_substring,
    match_normalized_substring,
    match_keyword_coverage,
    match_artist_assisted,
)


def match_name(names, title, artist=None):
    for strategy in MATCH_STRATEGIES:
        found = strategy(names, title, artist)
        if found:
            return found
    return None


def list_candidate_files(directory):
    try:
        entries = sorted(os.listdir(directory))
    except OSError as exc:
        logging.warning("Unable to list %s: %s", directory, exc)
        return []
    names = []
    for name in entries:
        if name.startswith(".") or name.lower().endswith(_IGNORED_SUFFIXES):
            continue
        if os.path.isfile(os.path.join(directory, name)):
            names.append(name)
    return names


def find_match(directory, expected_title, expected_artist=None):
    if not normalize_string(expected_title):
        return None
    names = list_candidate_files(directory)
    if not names:
        return None
    if expected_artist is not None and not isinstance(expected_artist, str):
        expected_artist = artist_text(expected_artist)
    return match_name(names, expected_title, expected_artist)


def _majority_keyword_match(names, title):
    words = keywords(title, min_length=4)
    if not words:
        return None
    best = None
    for name in names:
        normalized = normalize_string(_stem(name))
        ratio = sum(1 for word in words if word in normalized) / len(words)
        if ratio <= _MAJORITY_MIN_RATIO:
            continue
        similarity = fuzz.token_set_ratio(normalize_string(title), normalized)
        key = (ratio, similarity)
        if best is None or key > best[0]:
            best = (key, name)
    return best[1] if best else None


def read_tag_title(path):
    try:
        audio = MutagenFile(path, easy=True)
    except Exception as exc:
        logging.warning("Unable to read tags from %s: %s", path, exc)
        return None
    if audio is None or not audio.tags:
        return None
    values = audio.tags.get("title")
    if not values:
        return None
    return values[0] if isinstance(values, list) else str(values)


def _tag_title_match(names, title, tag_titles):
    target = normalize_string(title)
    if not target:
        return None
    for name in names:
        tag_title = tag_titles.get(name)
        if tag_title and normalize_string(tag_title) == target:
            return name
    return None


def associate_files(songs, names, *, tag_reader=None):
    """Pair songs with produced file names.

    Returns ``(matches, unmatched_songs, unmatched_names)`` where ``matches``
    maps song id to file name. Each file is claimed at most once.
    """
    remaining = list(names)
    matches = {}
    unmatched = []
    tag_titles = None
    for song in songs:
        artist = artist_text(song.artists)
        found = match_name(remaining, song.title, artist) if normalize_string(song.title) else None
        if not found:
            found = _majority_keyword_match(remaining, song.title)
        if not found and tag_reader is not None:
            if tag_titles is None:
                tag_titles = {name: tag_reader(name) for name in names}
            found = _tag_title_match(remaining, song.title, tag_titles)
        if found:
            matches[song.id] = found
            remaining.remove(found)
        else:
            unmatched.append(song)

    if len(unmatched) == 1 and len(remaining) == 1:
        matches[unmatched[0].id] = remaining.pop()
        unmatched = []
    return matches, unmatched, remaining
