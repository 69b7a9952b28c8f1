from __future__ import annotations

import threading
import time
import unittest

from tds.pipeline.channel import Channel, ChannelClosed, ChannelTimeout, StageGroup


class ChannelTests(unittest.TestCase):
    def test_fifo_order(self) -> None:
        channel: Channel[int] = Channel(maxsize=3)
        for value in (1, 2, 3):
            channel.put(value)

        self.assertEqual([channel.get(), channel.get(), channel.get()], [1, 2, 3])

    def test_full_channel_blocks_producer(self) -> None:
        channel: Channel[int] = Channel(maxsize=1)
        channel.put(1)

        with self.assertRaises(ChannelTimeout):
            channel.put(2, timeout=0.02)

        released = threading.Event()

        def producer() -> None:
            channel.put(2)
            released.set()

        thread = threading.Thread(target=producer)
        thread.start()
        self.assertFalse(released.wait(0.05))
        self.assertEqual(channel.get(), 1)
        self.assertTrue(released.wait(5))
        thread.join(timeout=5)
        self.assertEqual(channel.get(), 2)

    def test_close_drains_then_stops_iteration(self) -> None:
        channel: Channel[int] = Channel()
        channel.put(1)
        channel.put(2)
        channel.close()

        with self.assertRaises(ChannelClosed):
            channel.put(3)
        self.assertEqual(list(channel), [1, 2])
        with self.assertRaises(ChannelClosed):
            channel.get(timeout=0.01)

    def test_close_wakes_blocked_consumer(self) -> None:
        channel: Channel[int] = Channel()
        outcome: list[str] = []

        def consumer() -> None:
            try:
                channel.get()
            except ChannelClosed:
                outcome.append("closed")

        thread = threading.Thread(target=consumer)
        thread.start()
        time.sleep(0.02)
        channel.close()
        thread.join(timeout=5)

        self.assertEqual(outcome, ["closed"])


class StageGroupTests(unittest.TestCase):
    def test_outputs_close_after_last_thread(self) -> None:
        source: Channel[int] = Channel()
        sink: Channel[int] = Channel()
        for value in range(20):
            source.put(value)
        source.close()

        def double() -> None:
            for value in source:
                sink.put(value * 2)

        group = StageGroup.replicate("double", double, 4, outputs=[sink]).start()

        results = sorted(sink)
        self.assertTrue(group.join(timeout=5))
        self.assertEqual(results, [value * 2 for value in range(20)])
        self.assertEqual(group.errors, [])

    def test_crashing_thread_is_recorded_and_still_closes_outputs(self) -> None:
        sink: Channel[int] = Channel()

        def explode() -> None:
            raise ValueError("boom")

        with self.assertLogs("tds.pipeline", level="ERROR"):
            group = StageGroup("explode", [explode], outputs=[sink]).start()
            group.join(timeout=5)

        self.assertTrue(sink.closed)
        self.assertEqual(len(group.errors), 1)

    def test_on_error_hears_about_crashes_only(self) -> None:
        heard: list[tuple[str, str]] = []

        def explode() -> None:
            raise RuntimeError("model table missing")

        def stop_on_closed() -> None:
            raise ChannelClosed("frames")

        with self.assertLogs("tds.pipeline", level="ERROR"):
            group = StageGroup(
                "postprocess",
                [explode, stop_on_closed],
                on_error=lambda stage, exc: heard.append((stage, str(exc))),
            ).start()
            group.join(timeout=5)

        self.assertEqual(heard, [("postprocess", "model table missing")])

    def test_closed_channel_is_a_normal_exit(self) -> None:
        closed: Channel[int] = Channel()
        closed.close()
        sink: Channel[int] = Channel()

        group = StageGroup("writer", [lambda: closed.put(1)], outputs=[sink]).start()

        self.assertTrue(group.join(timeout=5))
        self.assertEqual(group.errors, [])
        self.assertTrue(sink.closed)


if __name__ == "__main__":
    unittest.main()
