import unittest

from fetcher.progress import (
    ITEM_COMPLETED,
    ITEM_FAILED,
    ITEM_STARTED,
    PERCENT,
    PERCENT_RE,
    YtDlpOutputParser,
)


class YtDlpOutputParserTests(unittest.TestCase):
    def test_percent_regex(self):
        match = PERCENT_RE.search("[download]  42.7% of ~  3.51MiB at  1.20MiB/s ETA 00:02")
        self.assertEqual(match.group("pct"), "42.7")
        self.assertIsNone(PERCENT_RE.search("[ExtractAudio] Destination: song.flac"))

    def test_batch_sequence(self):
        parser = YtDlpOutputParser()
        lines = [
            "[youtube] Extracting URL: https://music.youtube.com/watch?v=aaaaaaaaaaa",
            "[youtube] aaaaaaaaaaa: Downloading webpage",
            "[download] Destination: First.webm",
            "[download]  50.0% of    3.00MiB at  1.00MiB/s ETA 00:01",
            "[download] 100% of    3.00MiB in 00:00:02 at 1.50MiB/s",
            "[download] 100.0% of    3.00MiB in 00:00:02 at 1.50MiB/s",
            "[ExtractAudio] Destination: First.flac",
            "[youtube] Extracting URL: https://music.youtube.com/watch?v=bbbbbbbbbbb",
            "ERROR: [youtube] bbbbbbbbbbb: Video unavailable",
            "[youtube] Extracting URL: https://music.youtube.com/watch?v=ccccccccccc",
            "[download] Third.flac has already been downloaded",
        ]
        updates = []
        for line in lines:
            updates.extend(parser.feed(line))

        kinds = [update.kind for update in updates]
        self.assertEqual(
            kinds,
            [
                ITEM_STARTED,
                PERCENT,
                PERCENT,
                ITEM_COMPLETED,
                PERCENT,
                ITEM_STARTED,
                ITEM_FAILED,
                ITEM_STARTED,
                ITEM_COMPLETED,
            ],
        )
        self.assertEqual(updates[0].url, "https://music.youtube.com/watch?v=aaaaaaaaaaa")
        failed = updates[6]
        self.assertEqual(failed.video_id, "bbbbbbbbbbb")
        self.assertEqual(failed.index, 2)
        self.assertIn("Video unavailable", failed.message)
        self.assertEqual(parser.completed_count, 2)
        self.assertEqual(parser.failed_count, 1)

    def test_playlist_item_markers(self):
        parser = YtDlpOutputParser()
        updates = parser.feed("[download] Downloading item 2 of 5")
        self.assertEqual(len(updates), 1)
        self.assertEqual((updates[0].kind, updates[0].index, updates[0].total), (ITEM_STARTED, 2, 5))

    def test_noise_and_bytes(self):
        parser = YtDlpOutputParser()
        self.assertEqual(parser.feed(""), [])
        self.assertEqual(parser.feed("[info] Writing video thumbnail to: x.jpg"), [])
        updates = parser.feed(b"[download] 100% of 1.00MiB\n")
        self.assertEqual([update.kind for update in updates], [PERCENT, ITEM_COMPLETED])


if __name__ == "__main__":
    unittest.main()
