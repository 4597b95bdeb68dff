"""
Zoho Meeting client used to attach a join link to confirmed bookings.

Access tokens come from Zoho's refresh-token grant and are cached until
shortly before they expire.
"""
import datetime
import logging
import time
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger("meeting_consumer")

ZOHO_TOKEN_URL = "https://accounts.zoho.com/oauth/v2/token"
ZOHO_MEETING_BASE_URL = "https://meeting.zoho.com/api/v2"

# Refresh this many seconds before Zoho says the token expires
TOKEN_EXPIRY_MARGIN_SECONDS = 300


class MeetingProviderError(Exception):
    pass


@dataclass(frozen=True)
class Meeting:
    meeting_id: str
    join_url: str
    start_url: Optional[str] = None


class ZohoMeetings:

    def __init__(
            self,
            client_id: str,
            client_secret: str,
            refresh_token: str,
            timezone: str = "Asia/Kolkata",
            http_client: Optional[httpx.AsyncClient] = None,
            clock=time.monotonic,
    ):
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._timezone = timezone
        self._client = http_client or httpx.AsyncClient(timeout=10.0)
        self._clock = clock
        self._access_token: Optional[str] = None
        self._token_expiry: float = 0.0

    @classmethod
    def from_settings(cls, settings) -> "ZohoMeetings":
        return cls(
            client_id=settings.ZOHO_CLIENT_ID,
            client_secret=settings.ZOHO_CLIENT_SECRET,
            refresh_token=settings.ZOHO_REFRESH_TOKEN,
            timezone=settings.MEETING_TIMEZONE,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _get_access_token(self) -> str:
        if self._access_token and self._clock() < self._token_expiry:
            return self._access_token

        try:
            response = await self._client.post(ZOHO_TOKEN_URL, data={
                "grant_type": "refresh_token",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": self._refresh_token,
            })
        except httpx.HTTPError as e:
            raise MeetingProviderError(f"Failed to authenticate with Zoho: {e}") from e
        if response.status_code != 200:
            raise MeetingProviderError(f"Failed to get Zoho access token ({response.status_code})")

        data = response.json()
        self._access_token = data["access_token"]
        self._token_expiry = self._clock() + int(data.get("expires_in", 3600)) - TOKEN_EXPIRY_MARGIN_SECONDS
        return self._access_token

    async def create_meeting(self, topic: str, start_time: datetime.datetime, duration_minutes: int) -> Meeting:
        token = await self._get_access_token()
        try:
            response = await self._client.post(
                f"{ZOHO_MEETING_BASE_URL}/meetings",
                headers={"Authorization": f"Bearer {token}"},
                json={
                    "topic": topic,
                    "start_time": start_time.isoformat(),
                    "duration": duration_minutes,
                    "timezone": self._timezone,
                    "is_recurring": False,
                },
            )
        except httpx.HTTPError as e:
            raise MeetingProviderError(f"Zoho meeting request failed: {e}") from e
        if response.status_code >= 400:
            raise MeetingProviderError(f"Failed to create meeting: {response.text}")

        data = response.json()
        return Meeting(
            meeting_id=str(data["meeting_id"]),
            join_url=data["join_url"],
            start_url=data.get("start_url"),
        )
