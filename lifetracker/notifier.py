from __future__ import annotations

import json
import logging
import time
import urllib.error
import urllib.request

logger = logging.getLogger(__name__)


def reminder_message(reminder: dict) -> tuple[str, str]:
    return reminder["title"], f"{reminder['time_of_day']} - Time for: {reminder['title']}"


class Notifier:
    """Delivers fired reminders. Returns False on failure; a fired reminder stays fired."""

    def deliver(self, reminder: dict) -> bool:
        raise NotImplementedError


class NoopNotifier(Notifier):
    def deliver(self, reminder: dict) -> bool:
        return True


class _HttpNotifier(Notifier):
    max_attempts = 3
    timeout_s = 5

    def _post(self, url: str, data: bytes, headers: dict[str, str]) -> bool:
        req = urllib.request.Request(url, data=data, headers=headers, method="POST")
        for attempt in range(1, self.max_attempts + 1):
            try:
                urllib.request.urlopen(req, timeout=self.timeout_s).read()
                return True
            except (urllib.error.URLError, TimeoutError, OSError) as exc:
                if attempt >= self.max_attempts:
                    logger.warning("Reminder delivery to %s failed after %d attempts: %s", url, attempt, exc)
                    return False
                time.sleep(0.25 * attempt)
        return False


class DiscordNotifier(_HttpNotifier):
    def __init__(self, webhook_url: str) -> None:
        self.webhook_url = webhook_url

    def deliver(self, reminder: dict) -> bool:
        title, body = reminder_message(reminder)
        payload = json.dumps({"content": f"**{title}**\n{body}"}).encode("utf-8")
        return self._post(self.webhook_url, payload, {"Content-Type": "application/json"})


class NtfyNotifier(_HttpNotifier):
    def __init__(self, topic_url: str) -> None:
        self.topic_url = topic_url

    def deliver(self, reminder: dict) -> bool:
        title, body = reminder_message(reminder)
        # ntfy wants latin-1 safe headers.
        safe_title = title.encode("latin-1", "replace").decode("latin-1")
        return self._post(self.topic_url, body.encode("utf-8"), {"Title": safe_title, "Priority": "3", "Tags": "bell"})


def build_notifier(preferences: dict) -> Notifier:
    if preferences.get("discord_webhook_url"):
        return DiscordNotifier(preferences["discord_webhook_url"])
    if preferences.get("ntfy_topic_url"):
        return NtfyNotifier(preferences["ntfy_topic_url"])
    return NoopNotifier()
