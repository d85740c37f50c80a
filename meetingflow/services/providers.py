"""
External collaborators used by the scheduling engine.

Calendar, email, SMS and contact-directory capabilities are described as
Protocols so services can be handed in-memory fakes in tests. The HTTP
adapters below are the production implementations.
"""
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

import httpx

from meetingflow.config import settings
from meetingflow.logging_config import get_logger

log = get_logger(component="providers")


# Visibility markers that do not block time
NON_BLOCKING_SHOW_AS = frozenset({"free", "workingElsewhere"})


@dataclass(frozen=True)
class BusyInterval:
    """A calendar entry for one attendee."""
    start: datetime
    end: datetime
    show_as: str = "busy"
    is_cancelled: bool = False

    @property
    def blocks_time(self) -> bool:
        return not self.is_cancelled and self.show_as not in NON_BLOCKING_SHOW_AS


@dataclass(frozen=True)
class MessageContent:
    """Rendered outbound message. SMS senders only use the body."""
    body: str
    subject: str | None = None
    thread_key: str | None = None


@dataclass(frozen=True)
class SendResult:
    """Provider answer to a send call."""
    id: str | None = None
    error: str | None = None
    conversation_id: str | None = None
    # Retrying the same message on this channel cannot succeed
    permanent: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and self.id is not None


class CalendarProvider(Protocol):
    async def get_busy(self, identity: str, start: datetime, end: datetime) -> list[BusyInterval]:
        ...


class EmailSender(Protocol):
    async def send(self, to: str, content: MessageContent) -> SendResult:
        ...


class SmsSender(Protocol):
    async def send(self, to: str, content: MessageContent) -> SendResult:
        ...


class ContactDirectory(Protocol):
    async def resolve_calendar_identity(self, attendee) -> str | None:
        ...


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp, accepting a trailing Z."""
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    return datetime.fromisoformat(value)


def is_permanent_status(status_code: int) -> bool:
    """4xx rejections other than timeouts and throttling will fail again."""
    return 400 <= status_code < 500 and status_code not in (408, 429)


class HttpCalendarProvider:
    """Free/busy lookup against a calendar gateway."""

    def __init__(self, base_url: str | None = None, token: str | None = None, client: httpx.AsyncClient | None = None):
        self.base_url = (base_url or settings.CALENDAR_API_URL or "").rstrip("/")
        self.token = token or settings.CALENDAR_API_TOKEN
        self.client = client

    async def get_busy(self, identity: str, start: datetime, end: datetime) -> list[BusyInterval]:
        if not self.base_url:
            raise RuntimeError("CALENDAR_API_URL is not configured")

        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        params = {"identity": identity, "start": start.isoformat(), "end": end.isoformat()}

        if self.client is not None:
            response = await self.client.get(f"{self.base_url}/free-busy", params=params, headers=headers)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.get(f"{self.base_url}/free-busy", params=params, headers=headers)
        response.raise_for_status()

        events = response.json().get("events", [])
        return [
            BusyInterval(
                start=parse_timestamp(event["start"]),
                end=parse_timestamp(event["end"]),
                show_as=event.get("show_as", "busy"),
                is_cancelled=bool(event.get("is_cancelled", False)),
            )
            for event in events
        ]


class HttpEmailSender:
    """Sends mail through a JSON email relay."""

    def __init__(
        self,
        api_url: str | None = None,
        token: str | None = None,
        from_address: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.api_url = api_url or settings.EMAIL_API_URL
        self.token = token or settings.EMAIL_API_TOKEN
        self.from_address = from_address or settings.EMAIL_FROM
        self.client = client

    async def send(self, to: str, content: MessageContent) -> SendResult:
        if not self.api_url:
            return SendResult(error="EMAIL_API_URL is not configured", permanent=True)

        payload = {
            "from": self.from_address,
            "to": to,
            "subject": content.subject or "",
            "text": content.body,
        }
        if content.thread_key:
            payload["headers"] = {"X-Thread-Key": content.thread_key}
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}

        try:
            if self.client is not None:
                response = await self.client.post(self.api_url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    response = await client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            log.warning("email_send_error", to=to, error=str(e))
            return SendResult(error=str(e))

        if response.status_code >= 300:
            log.warning("email_send_rejected", to=to, status_code=response.status_code)
            return SendResult(error=f"HTTP {response.status_code}", permanent=is_permanent_status(response.status_code))

        data = response.json()
        return SendResult(
            id=data.get("id") or data.get("message_id"),
            conversation_id=data.get("conversation_id") or data.get("thread_id"),
        )


class TwilioSmsSender:
    """Sends SMS through the Twilio Messages REST API."""

    def __init__(
        self,
        account_sid: str | None = None,
        auth_token: str | None = None,
        from_number: str | None = None,
        status_callback_url: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.account_sid = account_sid or settings.TWILIO_ACCOUNT_SID
        self.auth_token = auth_token or settings.TWILIO_AUTH_TOKEN
        self.from_number = from_number or settings.TWILIO_FROM_NUMBER
        self.status_callback_url = status_callback_url or settings.TWILIO_STATUS_CALLBACK_URL
        self.client = client

    async def send(self, to: str, content: MessageContent) -> SendResult:
        if not (self.account_sid and self.auth_token and self.from_number):
            return SendResult(error="Twilio is not configured", permanent=True)

        # Twilio requires E.164 numbers
        if not to.startswith("+"):
            return SendResult(error="Phone number must be in E.164 format", permanent=True)

        url = f"https://api.twilio.com/2010-04-01/Accounts/{self.account_sid}/Messages.json"
        data = {"To": to, "From": self.from_number, "Body": content.body}
        if self.status_callback_url:
            data["StatusCallback"] = self.status_callback_url

        try:
            if self.client is not None:
                response = await self.client.post(url, data=data, auth=(self.account_sid, self.auth_token))
            else:
                async with httpx.AsyncClient(timeout=10.0) as client:
                    response = await client.post(url, data=data, auth=(self.account_sid, self.auth_token))
        except httpx.HTTPError as e:
            log.warning("sms_send_error", to=to, error=str(e))
            return SendResult(error=str(e))

        result = response.json()
        if response.status_code not in (200, 201):
            error_code = result.get("code")
            error_message = result.get("message", "Unknown error")
            log.warning("sms_send_rejected", to=to, error_code=error_code, error=error_message)
            return SendResult(
                error=f"[{error_code}] {error_message}" if error_code else error_message,
                permanent=is_permanent_status(response.status_code),
            )

        # The recipient number is the conversation for SMS replies
        return SendResult(id=result.get("sid"), conversation_id=to)


class StaticContactDirectory:
    """
    Resolves internal attendees to calendar identities from a fixed mapping.

    Lookup order: user_id, then email. Attendees that already carry a
    calendar_identity keep it.
    """

    def __init__(self, identities: dict[str, str] | None = None):
        self.identities = identities or {}

    async def resolve_calendar_identity(self, attendee) -> str | None:
        if attendee.calendar_identity:
            return attendee.calendar_identity
        for key in (attendee.user_id, attendee.email):
            if key and key in self.identities:
                return self.identities[key]
        return attendee.email
