import os
import tempfile
import unittest

from fetcher.catalog import Song
from fetcher.matcher import (
    associate_files,
    find_match,
    match_artist_assisted,
    match_keyword_coverage,
    normalize_string,
)


def _touch(directory, name):
    path = os.path.join(directory, name)
    with open(path, "wb") as handle:
        handle.write(b"audio")
    return path


class FindMatchTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.dir = self.tmpdir.name

    def tearDown(self):
        self.tmpdir.cleanup()

    def test_exact_title_file_is_returned(self):
        _touch(self.dir, "Another Song.flac")
        _touch(self.dir, "Blue Monday.flac")
        self.assertEqual(find_match(self.dir, "Blue Monday"), "Blue Monday.flac")

    def test_empty_and_missing_directories(self):
        self.assertIsNone(find_match(self.dir, "Anything"))
        self.assertIsNone(find_match(os.path.join(self.dir, "nope"), "Anything"))

    def test_blank_title_is_no_match(self):
        _touch(self.dir, "Song.flac")
        self.assertIsNone(find_match(self.dir, "   "))
        self.assertIsNone(find_match(self.dir, "!!!"))

    def test_normalized_substring(self):
        _touch(self.dir, "Daft Punk - HARDER, better faster stronger.mp3")
        self.assertEqual(
            find_match(self.dir, "Harder Better Faster Stronger"),
            "Daft Punk - HARDER, better faster stronger.mp3",
        )

    def test_keyword_coverage_boundary(self):
        _touch(self.dir, "some_midnight_lights_remix.flac")
        self.assertIsNone(find_match(self.dir, "Midnight City Lights"))

        _touch(self.dir, "some_midnight_city_lights_remix.flac")
        self.assertEqual(find_match(self.dir, "Midnight City Lights"), "some_midnight_city_lights_remix.flac")

    def test_keyword_coverage_strategy_threshold(self):
        names = ["midnight lights remix.flac"]
        self.assertIsNone(match_keyword_coverage(names, "Midnight City Lights"))
        names = ["lights in the city at midnight.flac"]
        self.assertEqual(match_keyword_coverage(names, "Midnight City Lights"), names[0])

    def test_artist_assisted(self):
        _touch(self.dir, "Phoenix - 1901 (Live).flac")
        _touch(self.dir, "Other - Lisztomania.flac")
        self.assertIsNone(find_match(self.dir, "Lisztomania Radio Edit Extended", "Phoenix"))
        self.assertEqual(find_match(self.dir, "1901 Acoustic Version", "Phoenix"), "Phoenix - 1901 (Live).flac")
        self.assertEqual(find_match(self.dir, "1901 Acoustic Version", ["Phoenix"]), "Phoenix - 1901 (Live).flac")
        self.assertIsNone(match_artist_assisted(["Phoenix - 1901 (Live).flac"], "1901 Acoustic Version", None))

    def test_ignores_partials_and_hidden_files(self):
        _touch(self.dir, "Blue Monday.flac.part")
        _touch(self.dir, ".Blue Monday.flac")
        os.mkdir(os.path.join(self.dir, "Blue Monday"))
        self.assertIsNone(find_match(self.dir, "Blue Monday"))

    def test_punctuation_is_dropped_not_split(self):
        _touch(self.dir, "Im Ok.mp3")
        self.assertEqual(find_match(self.dir, "I'm Ok"), "Im Ok.mp3")

    def test_normalize_string(self):
        self.assertEqual(normalize_string("  Hello,   World_Again! "), "hello world again")
        self.assertEqual(normalize_string("I'm Ok"), "im ok")
        self.assertEqual(normalize_string("Beyoncé - Halo"), "beyonce halo")


class AssociateFilesTests(unittest.TestCase):
    def test_strategies_then_majority_then_last_file(self):
        songs = [
            Song(id="1", title="Alpha Song", artists=["Band"]),
            Song(id="2", title="Wonderful Morning Glory", artists=["Band"]),
            Song(id="3", title="Something Else Entirely", artists=["Band"]),
        ]
        names = ["Alpha Song.flac", "Morning Glory (Live).flac", "track03.flac"]

        matches, unmatched, remaining = associate_files(songs, names)

        self.assertEqual(matches["1"], "Alpha Song.flac")
        self.assertEqual(matches["2"], "Morning Glory (Live).flac")
        self.assertEqual(matches["3"], "track03.flac")
        self.assertEqual(unmatched, [])
        self.assertEqual(remaining, [])

    def test_files_are_claimed_once(self):
        songs = [
            Song(id="1", title="Intro", artists=[]),
            Song(id="2", title="Intro", artists=[]),
        ]
        matches, unmatched, remaining = associate_files(songs, ["Intro.mp3"])
        self.assertEqual(matches, {"1": "Intro.mp3"})
        self.assertEqual([song.id for song in unmatched], ["2"])
        self.assertEqual(remaining, [])

    def test_tag_reader_fallback(self):
        songs = [
            Song(id="1", title="Yellow", artists=[]),
            Song(id="2", title="Clocks", artists=[]),
        ]
        tags = {"a.flac": "Yellow", "b.flac": "Clocks"}
        matches, unmatched, _remaining = associate_files(songs, ["a.flac", "b.flac"], tag_reader=tags.get)
        self.assertEqual(matches, {"1": "a.flac", "2": "b.flac"})
        self.assertEqual(unmatched, [])


if __name__ == "__main__":
    unittest.main()
