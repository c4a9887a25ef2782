import asyncio

import pytest

from fanslyrecorder.config import NotificationsConfig
from fanslyrecorder.notifications import (
    LIVE_END_COLOR,
    NotificationService,
    _read_image,
    build_discord_payload,
    format_mention,
    live_end_message,
    telegram_text,
)


def test_format_mention():
    assert format_mention("42") == "<@42>"
    assert format_mention("role:7") == "<@&7>"
    assert format_mention("  ") == ""


def test_live_end_message_mentions_saved_recording():
    assert live_end_message("alice") == "alice's stream has ended."
    assert live_end_message("alice", "alice.mp4").endswith("Recording saved.")


def test_discord_payload_with_attachment():
    config = NotificationsConfig(discord_mention_id="role:9")
    payload = build_discord_payload(
        config, "Ended", "bye", LIVE_END_COLOR, "alice", "123",
        attachment_name="sheet.jpg"
    )
    embed = payload['embeds'][0]
    assert payload['content'] == "<@&9>"
    assert embed['url'] == "https://fansly.com/live/alice"
    assert embed['footer']['text'] == "Model ID: 123"
    assert embed['image']['url'] == "attachment://sheet.jpg"


def test_discord_payload_without_mention():
    payload = build_discord_payload(NotificationsConfig(), "Live", "hi", 1, "alice", "123")
    assert 'content' not in payload
    assert 'image' not in payload['embeds'][0]


@pytest.mark.asyncio
async def test_disabled_service_schedules_nothing():
    service = NotificationService(NotificationsConfig(enabled=False))
    service.notify_live_start("alice", "123")
    service.notify_live_end("alice", "123", "alice.mp4")
    assert service.pending == 0
    await service.close()


@pytest.mark.asyncio
async def test_enabled_service_without_channels_completes():
    service = NotificationService(NotificationsConfig(enabled=True, system_notify=False))
    service.notify_live_start("alice", "123")
    assert service.pending == 1
    await service.close()
    assert service.pending == 0


def test_telegram_text_escapes_html():
    text = telegram_text("Live <now>", "a&b <i>", "<b&>")
    assert text.startswith("<b>Live &lt;now&gt;</b>\n")
    assert "a&amp;b &lt;i&gt;" in text
    assert text.endswith("https://fansly.com/live/&lt;b&amp;&gt;")


@pytest.mark.asyncio
async def test_read_image_returns_file_bytes(tmp_path):
    sheet = tmp_path / "sheet.jpg"
    sheet.write_bytes(b"\xff\xd8jpeg")
    assert await _read_image(sheet) == b"\xff\xd8jpeg"


class SlowNotificationService(NotificationService):
    async def _send_system(self, title: str, message: str) -> None:
        await asyncio.sleep(10)


@pytest.mark.asyncio
async def test_close_cancels_and_awaits_stuck_notifications():
    service = SlowNotificationService(NotificationsConfig(enabled=True, system_notify=True))
    service.notify_live_start("alice", "123")
    task = next(iter(service._tasks))

    await service.close(timeout=0.05)

    assert task.cancelled()
    assert service.pending == 0
