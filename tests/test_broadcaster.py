import asyncio
import json
import threading
import unittest

from fetcher.broadcaster import EventType, ProgressBroadcaster, ProgressEvent, QueueStream, format_sse


class _ListStream:
    def __init__(self):
        self.events = []

    def send(self, event):
        self.events.append(event)


class _BrokenStream:
    def send(self, event):
        raise RuntimeError("socket closed")


class ProgressBroadcasterTests(unittest.TestCase):
    def setUp(self):
        self.broadcaster = ProgressBroadcaster()
        self.event = ProgressEvent(type=EventType.PROGRESS, job_id="job-1", label="Song", progress=40)

    def test_publish_reaches_only_that_user(self):
        mine, theirs = [], []
        self.broadcaster.subscribe("u1", mine.append)
        self.broadcaster.subscribe("u2", theirs.append)

        delivered = self.broadcaster.publish("u1", self.event)

        self.assertEqual(delivered, 1)
        self.assertEqual(mine, [self.event])
        self.assertEqual(theirs, [])

    def test_publish_without_subscribers_is_dropped(self):
        self.assertEqual(self.broadcaster.publish("nobody", self.event), 0)

    def test_unsubscribe_prunes_empty_sets(self):
        received = []
        self.broadcaster.subscribe("u1", received.append)
        self.broadcaster.subscribe("u1", received.append)
        self.assertEqual(self.broadcaster.subscriber_count("u1"), 1)

        self.broadcaster.unsubscribe("u1", received.append)
        self.broadcaster.unsubscribe("u1", received.append)
        self.assertEqual(self.broadcaster.subscriber_count("u1"), 0)
        self.assertNotIn("u1", self.broadcaster._handlers)

    def test_failing_handler_does_not_block_others(self):
        received = []

        def broken(_event):
            raise ValueError("boom")

        self.broadcaster.subscribe("u1", broken)
        self.broadcaster.subscribe("u1", received.append)
        self.assertEqual(self.broadcaster.publish("u1", self.event), 1)
        self.assertEqual(received, [self.event])

    def test_single_stream_per_user(self):
        first, second = _ListStream(), _ListStream()
        self.broadcaster.register_stream("u1", first)
        self.assertIs(self.broadcaster.register_stream("u1", second), first)

        self.broadcaster.publish("u1", self.event)
        self.assertEqual(first.events, [])
        self.assertEqual(second.events, [self.event])

        self.assertFalse(self.broadcaster.unregister_stream("u1", first))
        self.assertTrue(self.broadcaster.unregister_stream("u1", second))
        self.assertEqual(self.broadcaster.subscriber_count("u1"), 0)

    def test_broken_stream_is_dropped(self):
        self.broadcaster.register_stream("u1", _BrokenStream())
        self.assertEqual(self.broadcaster.publish("u1", self.event), 0)
        self.assertEqual(self.broadcaster.subscriber_count("u1"), 0)

    def test_concurrent_subscribe_and_unsubscribe(self):
        handlers = [lambda event, i=i: None for i in range(200)]

        def churn(chunk):
            for handler in chunk:
                self.broadcaster.subscribe("u1", handler)
                self.broadcaster.publish("u1", self.event)
                self.broadcaster.unsubscribe("u1", handler)

        threads = [threading.Thread(target=churn, args=(handlers[i::4],)) for i in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        self.assertEqual(self.broadcaster.subscriber_count("u1"), 0)

    def test_format_sse(self):
        frame = format_sse(ProgressEvent(type=EventType.COMPLETE, job_id="j", label="L", file="a.flac"))
        self.assertTrue(frame.startswith("event: message\ndata: "))
        self.assertTrue(frame.endswith("\n\n"))
        payload = json.loads(frame.split("data: ", 1)[1])
        self.assertEqual(payload["type"], "complete")
        self.assertEqual(payload["file"], "a.flac")
        self.assertNotIn("error", payload)


class QueueStreamTests(unittest.TestCase):
    def test_events_cross_threads(self):
        event = ProgressEvent(type=EventType.INFO, job_id="job-1", message="hello")

        async def scenario():
            stream = QueueStream(asyncio.get_running_loop())
            thread = threading.Thread(target=stream.send, args=(event,))
            thread.start()
            thread.join()
            received = await stream.next_event(timeout=1)
            idle = await stream.next_event(timeout=0.01)
            return received, idle

        received, idle = asyncio.run(scenario())
        self.assertEqual(received, event)
        self.assertIsNone(idle)


if __name__ == "__main__":
    unittest.main()
