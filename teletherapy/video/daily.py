"""Daily.co video room client."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import httpx

from teletherapy.core import config

logger = logging.getLogger(__name__)


class VideoRoomError(Exception):
    """Raised when the video provider rejects or fails a request."""


@dataclass(frozen=True)
class VideoRoom:
    name: str
    url: str


class DailyClient:
    def __init__(
        self,
        api_key: str,
        base_url: str = 'https://api.daily.co/v1',
        timeout: float = 10.0,
        transport: httpx.BaseTransport | None = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip('/')
        self.timeout = timeout
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url,
            headers={'Authorization': f'Bearer {self.api_key}'},
            timeout=self.timeout,
            transport=self._transport,
        )

    def create_room(self, name: str, expires_at: datetime) -> VideoRoom:
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        payload = {
            'name': name,
            'privacy': 'private',
            'properties': {
                'exp': int(expires_at.timestamp()),
                'enable_chat': True,
                'enable_screenshare': True,
            },
        }
        try:
            with self._client() as client:
                response = client.post('/rooms', json=payload)
                response.raise_for_status()
                data = response.json()
                room = VideoRoom(name=data.get('name', name), url=data['url'])
        except httpx.HTTPError as exc:
            raise VideoRoomError(f'Failed to create video room {name}: {exc}') from exc
        except (KeyError, ValueError) as exc:
            raise VideoRoomError(f'Unexpected response creating video room {name}') from exc

        logger.info('Created video room %s', room.name)
        return room

    def delete_room(self, name: str) -> None:
        try:
            with self._client() as client:
                response = client.delete(f'/rooms/{name}')
                if response.status_code == 404:
                    logger.warning('Video room %s already gone', name)
                    return
                response.raise_for_status()
        except httpx.HTTPError as exc:
            raise VideoRoomError(f'Failed to delete video room {name}: {exc}') from exc

        logger.info('Deleted video room %s', name)


def get_video_client() -> DailyClient:
    return DailyClient(
        api_key=config.DAILY_API_KEY,
        base_url=config.DAILY_API_URL,
        timeout=config.DAILY_TIMEOUT_SECONDS,
    )
