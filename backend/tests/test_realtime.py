import unittest

from realtime import ChangeFeed


class ChangeFeedTests(unittest.TestCase):
    def setUp(self) -> None:
        self.feed = ChangeFeed()

    def test_version_starts_at_zero(self) -> None:
        self.assertEqual(self.feed.version("nope"), 0)

    def test_publish_bumps_version_per_session(self) -> None:
        self.feed.publish("s1", "selections_saved")
        event = self.feed.publish("s1", "participant_joined")
        self.feed.publish("s2", "selections_saved")
        self.assertEqual(event.version, 2)
        self.assertEqual(event.kind, "participant_joined")
        self.assertEqual(self.feed.version("s1"), 2)
        self.assertEqual(self.feed.version("s2"), 1)

    def test_subscribers_only_see_their_session(self) -> None:
        seen = []
        self.feed.subscribe("s1", seen.append)
        self.feed.publish("s2", "selections_saved")
        self.feed.publish("s1", "selections_saved")
        self.assertEqual([(e.session_id, e.version) for e in seen], [("s1", 1)])

    def test_cancel_stops_delivery(self) -> None:
        seen = []
        sub = self.feed.subscribe("s1", seen.append)
        self.feed.publish("s1", "a")
        sub.cancel()
        sub.cancel()
        self.feed.publish("s1", "b")
        self.assertEqual([e.kind for e in seen], ["a"])
        self.assertFalse(sub.active)
        self.assertEqual(self.feed.subscriber_count("s1"), 0)

    def test_failing_callback_does_not_block_others(self) -> None:
        seen = []

        def broken(_event):
            raise RuntimeError("boom")

        self.feed.subscribe("s1", broken)
        self.feed.subscribe("s1", seen.append)
        with self.assertLogs("realtime", level="ERROR"):
            self.feed.publish("s1", "selections_saved")
        self.assertEqual(len(seen), 1)


if __name__ == "__main__":
    unittest.main()
