"""
Live start/end notifications.
Desktop toasts via plyer, Discord webhooks and the Telegram bot API via aiohttp.
"""

import asyncio
import html
import json
from pathlib import Path
from typing import Optional, Set

import aiofiles
import aiohttp
from plyer import notification as plyer_notification

from .config import NotificationsConfig
from .logger import get_logger


APP_NAME = "Fansly Live Recorder"

LIVE_START_TITLE = "Fansly Live Alert"
LIVE_END_TITLE = "Fansly Stream Ended"
LIVE_START_COLOR = 3447003
LIVE_END_COLOR = 15158332


def live_url(creator_name: str) -> str:
    return f"https://fansly.com/live/{creator_name}"


def live_start_message(creator_name: str) -> str:
    return f"{creator_name} is now live!"


def live_end_message(creator_name: str, final_filename: Optional[str] = None) -> str:
    if final_filename:
        return f"{creator_name}'s stream has ended. Recording saved."
    return f"{creator_name}'s stream has ended."


def telegram_text(title: str, message: str, creator_name: str) -> str:
    """HTML body for the Telegram bot API; names are escaped."""
    return f"<b>{html.escape(title)}</b>\n{html.escape(message)}\n{html.escape(live_url(creator_name))}"


async def _read_image(path: Path) -> bytes:
    async with aiofiles.open(path, 'rb') as f:
        return await f.read()


def format_mention(mention_id: str) -> str:
    """Discord mention markup; "role:<id>" mentions a role."""
    mention_id = mention_id.strip()
    if not mention_id:
        return ""
    if mention_id.startswith("role:"):
        return f"<@&{mention_id[len('role:'):]}>"
    return f"<@{mention_id}>"


def build_discord_payload(
    config: NotificationsConfig,
    title: str,
    message: str,
    color: int,
    creator_name: str,
    creator_id: str,
    attachment_name: Optional[str] = None
) -> dict:
    embed = {
        'title': title,
        'description': message,
        'color': color,
        'url': live_url(creator_name),
        'footer': {'text': f"Model ID: {creator_id}"},
    }
    if attachment_name:
        embed['image'] = {'url': f"attachment://{attachment_name}"}

    payload = {'embeds': [embed]}
    mention = format_mention(config.discord_mention_id)
    if mention:
        payload['content'] = mention
    return payload


class NotificationService:
    """
    Fire-and-forget notification sink.

    notify_* schedule a task and return at once. Failures are logged and
    never reach the caller.
    """

    def __init__(self, config: NotificationsConfig):
        self.config = config
        self._session: Optional[aiohttp.ClientSession] = None
        self._tasks: Set[asyncio.Task] = set()
        self._logger = get_logger('notifications')

    def notify_live_start(self, creator_name: str, creator_id: str) -> None:
        if not (self.config.enabled and self.config.notify_on_live_start):
            return
        self._schedule(self._send_all(
            LIVE_START_TITLE,
            live_start_message(creator_name),
            LIVE_START_COLOR,
            creator_name,
            creator_id
        ))

    def notify_live_end(
        self,
        creator_name: str,
        creator_id: str,
        final_filename: Optional[str] = None,
        contact_sheet_path: Optional[str] = None
    ) -> None:
        if not (self.config.enabled and self.config.notify_on_live_end):
            return
        image = None
        if contact_sheet_path and self.config.send_contact_sheet_on_live_end:
            image = Path(contact_sheet_path)
        self._schedule(self._send_all(
            LIVE_END_TITLE,
            live_end_message(creator_name, final_filename),
            LIVE_END_COLOR,
            creator_name,
            creator_id,
            image
        ))

    @property
    def pending(self) -> int:
        return len(self._tasks)

    def _schedule(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=30))
        return self._session

    async def _send_all(
        self,
        title: str,
        message: str,
        color: int,
        creator_name: str,
        creator_id: str,
        image: Optional[Path] = None
    ) -> None:
        if image is not None and not image.exists():
            image = None

        senders = []
        if self.config.system_notify:
            senders.append(self._send_system(title, message))
        if self.config.discord_webhook:
            senders.append(self._send_discord(title, message, color, creator_name, creator_id, image))
        if self.config.telegram_bot_token and self.config.telegram_chat_id:
            senders.append(self._send_telegram(title, message, creator_name, image))

        results = await asyncio.gather(*senders, return_exceptions=True)
        for result in results:
            if isinstance(result, Exception):
                self._logger.warning(f"Notification failed: {result}")

    async def _send_system(self, title: str, message: str) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(
            None,
            lambda: plyer_notification.notify(
                title=title,
                message=message,
                app_name=APP_NAME,
                timeout=10
            )
        )

    async def _send_discord(
        self,
        title: str,
        message: str,
        color: int,
        creator_name: str,
        creator_id: str,
        image: Optional[Path]
    ) -> None:
        session = await self._get_session()
        payload = build_discord_payload(
            self.config, title, message, color, creator_name, creator_id,
            attachment_name=image.name if image else None
        )

        if image:
            form = aiohttp.FormData()
            form.add_field('payload_json', json.dumps(payload), content_type='application/json')
            form.add_field('file', await _read_image(image), filename=image.name, content_type='image/jpeg')
            request = session.post(self.config.discord_webhook, data=form)
        else:
            request = session.post(self.config.discord_webhook, json=payload)

        async with request as resp:
            if resp.status >= 300:
                text = await resp.text()
                raise RuntimeError(f"Discord webhook returned {resp.status}: {text[:200]}")

    async def _send_telegram(
        self,
        title: str,
        message: str,
        creator_name: str,
        image: Optional[Path]
    ) -> None:
        session = await self._get_session()
        base = f"https://api.telegram.org/bot{self.config.telegram_bot_token}"
        text = telegram_text(title, message, creator_name)

        if image:
            form = aiohttp.FormData()
            form.add_field('chat_id', self.config.telegram_chat_id)
            form.add_field('caption', text)
            form.add_field('parse_mode', 'HTML')
            form.add_field('photo', await _read_image(image), filename=image.name, content_type='image/jpeg')
            request = session.post(f"{base}/sendPhoto", data=form)
        else:
            request = session.post(f"{base}/sendMessage", json={
                'chat_id': self.config.telegram_chat_id,
                'text': text,
                'parse_mode': 'HTML',
            })

        async with request as resp:
            if resp.status != 200:
                body = await resp.text()
                raise RuntimeError(f"Telegram API returned {resp.status}: {body[:200]}")

    async def close(self, timeout: float = 10.0) -> None:
        """Wait for in-flight notifications, then close the HTTP session."""
        if self._tasks:
            done, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                self._logger.warning(f"Cancelled {len(pending)} notification(s) still in flight")
                await asyncio.wait(pending)
        if self._session:
            await self._session.close()
            self._session = None
