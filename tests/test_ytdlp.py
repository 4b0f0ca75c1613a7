import os
import signal
import subprocess
import sys
import tempfile
import unittest

from fetcher.errors import DownloadError, JobCancelledError
from fetcher.ytdlp import BATCH_OUTPUT_TEMPLATE, YtDlpDownloader

# Stands in for yt-dlp: prints a progress line every 50ms for ~10s.
_CHATTY_SCRIPT = (
    "import time\n"
    "for i in range(200):\n"
    "    print(f'[download] {i / 2:.1f}% of 1.00MiB', flush=True)\n"
    "    time.sleep(0.05)\n"
)

_SHORT_SCRIPT = (
    "import sys\n"
    "print('[youtube] Extracting URL: https://www.youtube.com/watch?v=aaaaaaaaaaa')\n"
    "print('ERROR: [youtube] aaaaaaaaaaa: Video unavailable')\n"
    "sys.exit(1)\n"
)


class RecordingPopen:
    def __init__(self):
        self.calls = []
        self.procs = []

    def __call__(self, cmd, **kwargs):
        self.calls.append((cmd, kwargs))
        proc = subprocess.Popen(cmd, **kwargs)
        self.procs.append(proc)
        return proc


class BatchDownloadTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        self.batch_file = os.path.join(self.tmpdir.name, "urls.txt")
        with open(self.batch_file, "w") as handle:
            handle.write("https://www.youtube.com/watch?v=aaaaaaaaaaa\n")
        self.popen = RecordingPopen()

    def tearDown(self):
        for proc in self.popen.procs:
            if proc.poll() is None:
                proc.kill()
                proc.wait()
        self.tmpdir.cleanup()

    def _downloader(self, script, **kwargs):
        return YtDlpDownloader(command=[sys.executable, "-c", script], popen=self.popen, **kwargs)

    def test_batch_command(self):
        downloader = YtDlpDownloader(command=["yt-dlp"], ffmpeg_location="/opt/ffmpeg")
        cmd = downloader.batch_command("urls.txt", "mp3")

        self.assertEqual(cmd[0], "yt-dlp")
        self.assertEqual(cmd[cmd.index("--batch-file") + 1], "urls.txt")
        self.assertEqual(cmd[cmd.index("--audio-format") + 1], "mp3")
        self.assertEqual(cmd[cmd.index("--output") + 1], BATCH_OUTPUT_TEMPLATE)
        self.assertEqual(cmd[cmd.index("--ffmpeg-location") + 1], "/opt/ffmpeg")
        self.assertIn("--ignore-errors", cmd)
        self.assertIn("--newline", cmd)
        self.assertNotIn("--ffmpeg-location", YtDlpDownloader(command=["yt-dlp"]).batch_command("u", "flac"))

    def test_lines_are_streamed_and_exit_code_returned(self):
        lines = []
        code = self._downloader(_SHORT_SCRIPT).download_batch(
            self.batch_file,
            self.tmpdir.name,
            audio_format="flac",
            on_line=lines.append,
        )

        self.assertEqual(code, 1)
        self.assertEqual(len(lines), 2)
        self.assertTrue(lines[1].startswith("ERROR:"))
        cmd, kwargs = self.popen.calls[0]
        self.assertIn(self.batch_file, cmd)
        self.assertEqual(kwargs["cwd"], self.tmpdir.name)
        self.assertTrue(kwargs["start_new_session"])

    def test_cancel_terminates_process_group(self):
        lines = []

        with self.assertRaises(JobCancelledError):
            self._downloader(_CHATTY_SCRIPT).download_batch(
                self.batch_file,
                self.tmpdir.name,
                audio_format="flac",
                on_line=lines.append,
                should_cancel=lambda: len(lines) >= 3,
            )

        self.assertEqual(len(lines), 3)
        proc = self.popen.procs[0]
        self.assertEqual(proc.returncode, -signal.SIGTERM)
        self.assertTrue(proc.stdout.closed)

    def test_missing_binary_is_download_error(self):
        downloader = YtDlpDownloader(command=[os.path.join(self.tmpdir.name, "no-such-yt-dlp")], popen=self.popen)
        with self.assertRaises(DownloadError):
            downloader.download_batch(self.batch_file, self.tmpdir.name, audio_format="flac")


if __name__ == "__main__":
    unittest.main()
