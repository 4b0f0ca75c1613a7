import json
import os
import tempfile
import unittest

from fetcher.config import DEFAULT_CONFIG, load_effective_config, normalize_config, validate_config


class ConfigTests(unittest.TestCase):
    def test_normalize_merges_defaults_and_ignores_nulls(self):
        merged = normalize_config({"job_max_attempts": 5, "ffmpeg_path": None})
        self.assertEqual(merged["job_max_attempts"], 5)
        self.assertEqual(merged["ffmpeg_path"], "ffmpeg")
        self.assertEqual(merged["default_format"], "flac")

    def test_validate_reports_each_problem(self):
        self.assertEqual(validate_config(dict(DEFAULT_CONFIG)), [])
        errors = validate_config(
            {
                "default_format": "ogg",
                "job_max_attempts": 0,
                "poll_interval_seconds": -1,
                "ytdlp_command": "yt-dlp",
                "sse_retry_ms": True,
            }
        )
        self.assertEqual(len(errors), 5)
        self.assertEqual(validate_config([]), ["config must be a JSON object"])

    def test_load_effective_config_falls_back_to_defaults(self):
        with tempfile.TemporaryDirectory() as tmp:
            missing = os.path.join(tmp, "config.json")
            self.assertEqual(load_effective_config(missing), DEFAULT_CONFIG)

            with open(missing, "w") as handle:
                handle.write("{not json")
            with self.assertLogs(level="ERROR"):
                self.assertEqual(load_effective_config(missing), DEFAULT_CONFIG)

            with open(missing, "w") as handle:
                json.dump({"recent_bulk_limit": 3, "ytdlp_command": ["yt-dlp"]}, handle)
            loaded = load_effective_config(missing)
            self.assertEqual(loaded["recent_bulk_limit"], 3)
            self.assertEqual(loaded["ytdlp_command"], ["yt-dlp"])


if __name__ == "__main__":
    unittest.main()
