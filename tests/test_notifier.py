from __future__ import annotations

import json
import unittest
import urllib.error
from unittest.mock import MagicMock, patch

from lifetracker.notifier import DiscordNotifier, NoopNotifier, NtfyNotifier, build_notifier

REMINDER = {"id": "r1", "title": "Vitamins", "time_of_day": "08:00"}


class BuildNotifierTests(unittest.TestCase):
    def test_prefers_discord_then_ntfy(self) -> None:
        self.assertIsInstance(build_notifier({"discord_webhook_url": "https://d", "ntfy_topic_url": "https://n"}), DiscordNotifier)
        self.assertIsInstance(build_notifier({"discord_webhook_url": "", "ntfy_topic_url": "https://n"}), NtfyNotifier)
        self.assertIsInstance(build_notifier({}), NoopNotifier)


class DeliveryTests(unittest.TestCase):
    @patch("lifetracker.notifier.urllib.request.urlopen")
    def test_discord_payload(self, urlopen) -> None:
        self.assertTrue(DiscordNotifier("https://discord.example/hook").deliver(REMINDER))
        request = urlopen.call_args.args[0]
        self.assertEqual(request.full_url, "https://discord.example/hook")
        self.assertIn("Vitamins", json.loads(request.data)["content"])

    @patch("lifetracker.notifier.time.sleep")
    @patch("lifetracker.notifier.urllib.request.urlopen")
    def test_failure_retries_then_reports(self, urlopen, sleep) -> None:
        urlopen.side_effect = urllib.error.URLError("offline")
        with self.assertLogs("lifetracker.notifier", level="WARNING"):
            self.assertFalse(NtfyNotifier("https://ntfy.example/topic").deliver(REMINDER))
        self.assertEqual(urlopen.call_count, 3)
        self.assertEqual(sleep.call_count, 2)

    @patch("lifetracker.notifier.urllib.request.urlopen")
    def test_ntfy_headers(self, urlopen) -> None:
        urlopen.return_value = MagicMock()
        NtfyNotifier("https://ntfy.example/topic").deliver({**REMINDER, "title": "Café ☕"})
        request = urlopen.call_args.args[0]
        self.assertEqual(request.get_header("Title"), "Café ?")
        self.assertEqual(request.data, "08:00 - Time for: Café ☕".encode("utf-8"))


if __name__ == "__main__":
    unittest.main()
