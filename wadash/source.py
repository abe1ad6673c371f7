"""
Message source backed by the Twilio Messages REST API.

Pages are requested with ``PageSize`` and optional ``DateSent>`` /
``DateSent<`` filters and followed through ``next_page_uri``. When no
credentials are configured the source serves a small fixed set of demo
messages instead.
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, NamedTuple, Optional

import httpx
from pydantic import ValidationError

from wadash.errors import UpstreamError
from wadash.metrics import record_messages_fetched
from wadash.schemas import Message

logger = logging.getLogger(__name__)

API_VERSION = "2010-04-01"
DEMO_SERVICE_NUMBER = "whatsapp:+14155238886"


class MessageFilter(NamedTuple):
    sent_after: Optional[datetime] = None
    sent_before: Optional[datetime] = None

    def matches(self, message: Message) -> bool:
        ts = message.date_sent or message.date_created
        if ts is None:
            return True
        if self.sent_after is not None and ts < self.sent_after:
            return False
        if self.sent_before is not None and ts >= self.sent_before:
            return False
        return True


def format_api_datetime(value: datetime) -> str:
    """Format a datetime the way the API's date filters expect (UTC, Z suffix)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def demo_messages(now: Optional[datetime] = None) -> list[Message]:
    """Fixture messages served in demo mode."""
    now = now or datetime.now(timezone.utc)
    return [
        Message(
            sid="demo1",
            from_="whatsapp:+5511999887766",
            to=DEMO_SERVICE_NUMBER,
            body="Hello! This is a demo message.",
            status="delivered",
            direction="inbound",
            date_sent=now,
            date_created=now,
        ),
        Message(
            sid="demo2",
            from_=DEMO_SERVICE_NUMBER,
            to="whatsapp:+5511999887766",
            body="Welcome to the dashboard! Running in demo mode.",
            status="sent",
            direction="outbound-api",
            date_sent=now - timedelta(minutes=1),
            date_created=now - timedelta(minutes=1),
        ),
        Message(
            sid="demo3",
            from_="whatsapp:+5521987654321",
            to=DEMO_SERVICE_NUMBER,
            body="Set TWILIO_ACCOUNT_SID and TWILIO_AUTH_TOKEN to connect to WhatsApp.",
            status="delivered",
            direction="inbound",
            date_sent=now - timedelta(minutes=2),
            date_created=now - timedelta(minutes=2),
        ),
    ]


class TwilioMessageSource:
    """
    Paginated reader over the account's message log.

    Args:
        account_sid: Twilio account SID (None for demo mode)
        auth_token: Twilio auth token (None for demo mode)
        base_url: API root, e.g. https://api.twilio.com
        page_size: Messages requested per page
        max_messages: Hard cap on messages yielded by one iteration
        page_delay: Pause between page requests in seconds
        transport: Optional httpx transport (tests use httpx.MockTransport)
    """

    def __init__(
        self,
        account_sid: Optional[str],
        auth_token: Optional[str],
        base_url: str = "https://api.twilio.com",
        page_size: int = 1000,
        max_messages: Optional[int] = None,
        page_delay: float = 0.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.base_url = base_url
        self.page_size = page_size
        self.max_messages = max_messages
        self.page_delay = page_delay
        self._transport = transport
        self._demo = demo_messages() if self.demo_mode else []

    @classmethod
    def from_settings(cls, settings) -> "TwilioMessageSource":
        return cls(
            account_sid=settings.TWILIO_ACCOUNT_SID,
            auth_token=settings.TWILIO_AUTH_TOKEN,
            base_url=settings.TWILIO_API_BASE_URL,
            page_size=settings.PAGE_SIZE,
            max_messages=settings.MAX_MESSAGES,
            page_delay=settings.PAGE_DELAY_SECONDS,
        )

    @property
    def demo_mode(self) -> bool:
        return not (self.account_sid and self.auth_token)

    @property
    def _messages_path(self) -> str:
        return f"/{API_VERSION}/Accounts/{self.account_sid}/Messages"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            auth=(self.account_sid, self.auth_token),
            transport=self._transport,
            timeout=30.0,
        )

    async def _get_json(self, client: httpx.AsyncClient, url: str, params: Optional[dict] = None) -> dict:
        try:
            response = await client.get(url, params=params)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPStatusError as e:
            raise UpstreamError(
                f"Messaging API returned {e.response.status_code} for {e.request.url.path}",
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            raise UpstreamError(f"Messaging API request failed: {e}") from e
        except ValueError as e:
            raise UpstreamError(f"Messaging API returned invalid JSON: {e}") from e

    async def iter_pages(
        self,
        message_filter: Optional[MessageFilter] = None,
        page_size: Optional[int] = None,
        max_messages: Optional[int] = None,
    ) -> AsyncIterator[list[Message]]:
        """
        Yield pages of messages until the log is exhausted.

        Stops when a page comes back shorter than the page size, there is no
        next page, or ``max_messages`` have been yielded. Callers may stop
        earlier by leaving the loop. A failing page raises UpstreamError;
        pages yielded before it remain valid.
        """
        message_filter = message_filter or MessageFilter()
        page_size = page_size or self.page_size
        max_messages = max_messages or self.max_messages

        if self.demo_mode:
            logger.info("Demo mode - serving fixture messages")
            page = [m for m in self._demo if message_filter.matches(m)]
            record_messages_fetched(len(page))
            yield page
            return

        params = {"PageSize": page_size}
        if message_filter.sent_after is not None:
            params["DateSent>"] = format_api_datetime(message_filter.sent_after)
        if message_filter.sent_before is not None:
            params["DateSent<"] = format_api_datetime(message_filter.sent_before)
        logger.debug(f"Listing messages with params: {params}")

        url = f"{self._messages_path}.json"
        total = 0
        page_number = 0
        async with self._client() as client:
            while url:
                page_number += 1
                payload = await self._get_json(client, url, params)
                raw = payload.get("messages") or []
                try:
                    page = [Message.model_validate(item) for item in raw]
                except ValidationError as e:
                    raise UpstreamError(f"Malformed message on page {page_number}: {e}") from e

                if max_messages is not None and total + len(page) > max_messages:
                    page = page[: max_messages - total]
                total += len(page)
                record_messages_fetched(len(page))
                logger.debug(f"Page {page_number}: {len(page)} messages (total {total})")
                yield page

                if len(raw) < page_size or (max_messages is not None and total >= max_messages):
                    break
                # next_page_uri already carries the query string
                url = payload.get("next_page_uri")
                params = None
                if url and self.page_delay:
                    await asyncio.sleep(self.page_delay)

    async def fetch_messages(self, message_filter: Optional[MessageFilter] = None) -> list[Message]:
        """
        Collect every page into one list.

        A failing page ends the listing; whatever was fetched before it is
        returned instead of raising.
        """
        messages: list[Message] = []
        try:
            async for page in self.iter_pages(message_filter):
                messages.extend(page)
        except UpstreamError as e:
            logger.warning(f"Listing stopped after {len(messages)} messages: {e}")
        return messages

    async def fetch_message(self, sid: str) -> Optional[Message]:
        """Fetch a single message by sid. Returns None if it does not exist."""
        if self.demo_mode:
            return next((m for m in self._demo if m.sid == sid), None)

        async with self._client() as client:
            try:
                payload = await self._get_json(client, f"{self._messages_path}/{sid}.json")
            except UpstreamError as e:
                if e.status_code == 404:
                    return None
                raise
        try:
            return Message.model_validate(payload)
        except ValidationError as e:
            raise UpstreamError(f"Malformed message {sid}: {e}") from e
