"""
Self-Healing Engine - Collaborator Adapters
===========================================

Interfaces to the systems the engine talks to but does not own:

- PatternStoreAdapter: read-only activity signals for a time window
- DirectoryAdapter: resolves people, roles and teams to recipients
- DeliveryAdapter: one per channel (email, chat, in_app, webhook)
- WorkItemAdapter: assignments that redistribute moves around
- OperationAdapter: failed jobs/integrations/steps that retry re-invokes

In-memory implementations back development mode and the test suite; the
HTTP pattern store and webhook delivery talk to real endpoints.
"""

import asyncio
import ipaddress
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Protocol
from urllib.parse import urlparse

import httpx

from healing_shared.constants import Channel
from healing_shared.schemas.events import ActivitySignal
from healing_shared.utils.clock import ensure_aware
from healing_shared.utils.http_client import ServiceClient
from healing_shared.utils.logging import get_logger
from healing_shared.utils.retry import CircuitBreaker, CircuitOpenError

from healing_engine.core.errors import DeliveryFailure

logger = get_logger(__name__)


# =============================================================================
# VALUE TYPES
# =============================================================================

@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval [start, end)."""
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= ensure_aware(moment) < self.end


@dataclass
class Recipient:
    """A resolved person with their channel addresses."""
    id: str
    name: str = ""
    channel_addresses: dict[str, str] = field(default_factory=dict)
    available: bool = True
    skills: list[str] = field(default_factory=list)


@dataclass
class DeliveryMessage:
    """Rendered message handed to a delivery adapter."""
    subject: str
    body: str
    severity: str = "info"
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class WorkItem:
    """Unit of assigned work (task, ticket, approval)."""
    id: str
    assignee: str
    title: str = ""
    required_skill: Optional[str] = None


@dataclass
class OperationOutcome:
    """Result of re-invoking a failed operation."""
    success: bool
    previous_status: str
    new_status: str
    error: Optional[str] = None


# =============================================================================
# OUTBOUND URL CHECKS
# =============================================================================

BLOCKED_HOSTNAMES = {"localhost", "localhost.localdomain", "ip6-localhost", "metadata.google.internal"}


def webhook_url_problem(url: str, require_https: bool = False) -> Optional[str]:
    """
    Check a webhook URL for unsafe destinations.

    Args:
        url: URL to check
        require_https: Reject plain http (production)

    Returns:
        A description of the problem, or None if the URL is acceptable
    """
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https"):
        return f"webhook_url must use http or https, got '{parsed.scheme or 'none'}'"
    if require_https and parsed.scheme != "https":
        return "webhook_url must use https in production"

    host = (parsed.hostname or "").lower()
    if not host:
        return "webhook_url has no host"
    if host in BLOCKED_HOSTNAMES or host.endswith(".localhost") or host.endswith(".internal"):
        return f"webhook_url host '{host}' is internal"

    try:
        address = ipaddress.ip_address(host)
    except ValueError:
        return None

    if (address.is_loopback or address.is_private or address.is_link_local
            or address.is_unspecified or address.is_reserved or address.is_multicast):
        return f"webhook_url address {address} is loopback or internal"
    return None


# =============================================================================
# INTERFACES
# =============================================================================

class PatternStoreAdapter(Protocol):
    async def query_activity_signals(
        self, organization_id: str, window: TimeWindow
    ) -> list[ActivitySignal]: ...


class DirectoryAdapter(Protocol):
    async def resolve(
        self, organization_id: str, target_type: str, target_id: str
    ) -> list[Recipient]: ...

    async def manager_of(self, organization_id: str, person_id: str) -> Optional[Recipient]: ...


class DeliveryAdapter(Protocol):
    channel: Channel

    async def deliver(self, recipient: Recipient, message: DeliveryMessage) -> bool: ...


class WorkItemAdapter(Protocol):
    async def list_items(self, organization_id: str, assignee: str) -> list[WorkItem]: ...

    async def load(self, organization_id: str, assignee: str) -> int: ...

    async def reassign(self, organization_id: str, item_id: str, to_assignee: str) -> None: ...


class OperationAdapter(Protocol):
    async def get_status(self, organization_id: str, target_type: str, target_id: str) -> str: ...

    async def retry(
        self, organization_id: str, target_type: str, target_id: str
    ) -> OperationOutcome: ...

    async def set_status(
        self, organization_id: str, target_type: str, target_id: str, status: str
    ) -> None: ...


# =============================================================================
# PATTERN STORE
# =============================================================================

class InMemoryPatternStore:
    """Signal store held in memory, keyed by organization."""

    def __init__(self):
        self._signals: dict[str, list[ActivitySignal]] = {}
        self.fail_with: Optional[Exception] = None

    def add(self, organization_id: str, *signals: ActivitySignal) -> None:
        self._signals.setdefault(organization_id, []).extend(signals)

    async def query_activity_signals(
        self, organization_id: str, window: TimeWindow
    ) -> list[ActivitySignal]:
        if self.fail_with is not None:
            raise self.fail_with
        return [
            signal for signal in self._signals.get(organization_id, [])
            if window.contains(signal.occurred_at)
        ]


class HttpPatternStore:
    """Pattern store backed by the activity service's signal endpoint."""

    def __init__(self, base_url: str, client: Optional[ServiceClient] = None):
        self._client = client or ServiceClient(base_url)

    async def query_activity_signals(
        self, organization_id: str, window: TimeWindow
    ) -> list[ActivitySignal]:
        payload = await self._client.get_json(
            "/api/v1/signals",
            params={
                "organization_id": organization_id,
                "start": window.start.isoformat(),
                "end": window.end.isoformat(),
            },
        )
        items = payload.get("signals", []) if isinstance(payload, dict) else payload
        return [ActivitySignal.model_validate(item) for item in items]

    async def close(self) -> None:
        await self._client.close()


# =============================================================================
# DIRECTORY
# =============================================================================

@dataclass
class _Person:
    recipient: Recipient
    roles: set[str] = field(default_factory=set)
    teams: set[str] = field(default_factory=set)
    manager_id: Optional[str] = None


class InMemoryDirectory:
    """People, roles and teams held in memory."""

    def __init__(self):
        self._people: dict[str, dict[str, _Person]] = {}

    def add_person(
        self,
        organization_id: str,
        person_id: str,
        name: str = "",
        roles: Optional[list[str]] = None,
        teams: Optional[list[str]] = None,
        manager_id: Optional[str] = None,
        available: bool = True,
        channel_addresses: Optional[dict[str, str]] = None,
        skills: Optional[list[str]] = None,
    ) -> Recipient:
        recipient = Recipient(
            id=person_id,
            name=name or person_id,
            channel_addresses=channel_addresses or {
                Channel.EMAIL.value: f"{person_id}@example.com",
                Channel.CHAT.value: f"@{person_id}",
                Channel.IN_APP.value: person_id,
            },
            available=available,
            skills=list(skills or []),
        )
        self._people.setdefault(organization_id, {})[person_id] = _Person(
            recipient=recipient,
            roles=set(roles or []),
            teams=set(teams or []),
            manager_id=manager_id,
        )
        return recipient

    def set_available(self, organization_id: str, person_id: str, available: bool) -> None:
        self._people[organization_id][person_id].recipient.available = available

    async def resolve(
        self, organization_id: str, target_type: str, target_id: str
    ) -> list[Recipient]:
        people = self._people.get(organization_id, {})
        if target_type in ("person", "assigned_person"):
            person = people.get(target_id)
            return [person.recipient] if person else []
        if target_type == "role":
            return [p.recipient for _, p in sorted(people.items()) if target_id in p.roles]
        if target_type == "team":
            return [p.recipient for _, p in sorted(people.items()) if target_id in p.teams]
        if target_type == "manager":
            manager = await self.manager_of(organization_id, target_id)
            return [manager] if manager else []
        return []

    async def manager_of(self, organization_id: str, person_id: str) -> Optional[Recipient]:
        people = self._people.get(organization_id, {})
        person = people.get(person_id)
        if person is None or person.manager_id is None:
            return None
        manager = people.get(person.manager_id)
        return manager.recipient if manager else None


# =============================================================================
# DELIVERY
# =============================================================================

@dataclass
class DeliveredMessage:
    recipient_id: str
    address: str
    message: DeliveryMessage


class InMemoryDelivery:
    """Outbox for a single channel; records every accepted message."""

    def __init__(self, channel: Channel):
        self.channel = channel
        self.outbox: list[DeliveredMessage] = []
        self.fail_with: Optional[Exception] = None
        self.reject: set[str] = set()

    async def deliver(self, recipient: Recipient, message: DeliveryMessage) -> bool:
        if self.fail_with is not None:
            raise self.fail_with
        address = recipient.channel_addresses.get(self.channel.value)
        if not address or recipient.id in self.reject:
            return False
        self.outbox.append(DeliveredMessage(recipient.id, address, message))
        return True


class WebhookDelivery:
    """Delivers messages by POSTing JSON to the recipient's webhook address."""

    channel = Channel.WEBHOOK

    def __init__(
        self,
        timeout_seconds: float = 10.0,
        breaker: Optional[CircuitBreaker] = None,
        require_https: bool = False,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.timeout_seconds = timeout_seconds
        self.require_https = require_https
        self._breaker = breaker or CircuitBreaker(failure_threshold=5, reset_timeout=60.0)
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds))
        return self._client

    async def deliver(self, recipient: Recipient, message: DeliveryMessage) -> bool:
        url = recipient.channel_addresses.get(self.channel.value)
        if not url:
            return False
        problem = webhook_url_problem(url, require_https=self.require_https)
        if problem:
            raise DeliveryFailure(f"Webhook delivery to {recipient.id} refused: {problem}")

        client = await self._get_client()
        try:
            response = await self._breaker.call(
                client.post,
                url,
                json={
                    "recipient_id": recipient.id,
                    "subject": message.subject,
                    "body": message.body,
                    "severity": message.severity,
                    "metadata": message.metadata,
                },
            )
        except (httpx.HTTPError, CircuitOpenError) as e:
            raise DeliveryFailure(f"Webhook delivery to {recipient.id} failed: {e}") from e

        return 200 <= response.status_code < 300

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


class DeliveryRouter:
    """Channel -> adapter lookup."""

    def __init__(self, adapters: list[DeliveryAdapter]):
        self._adapters = {adapter.channel: adapter for adapter in adapters}

    def get(self, channel: Channel) -> Optional[DeliveryAdapter]:
        return self._adapters.get(Channel(channel))

    @property
    def channels(self) -> list[Channel]:
        return list(self._adapters)


# =============================================================================
# WORK ITEMS AND OPERATIONS
# =============================================================================

class InMemoryWorkItems:
    """Assignments held in memory."""

    def __init__(self):
        self._items: dict[str, dict[str, WorkItem]] = {}
        self._lock = asyncio.Lock()

    def add(self, organization_id: str, item: WorkItem) -> None:
        self._items.setdefault(organization_id, {})[item.id] = item

    def assignee_of(self, organization_id: str, item_id: str) -> str:
        return self._items[organization_id][item_id].assignee

    async def list_items(self, organization_id: str, assignee: str) -> list[WorkItem]:
        items = self._items.get(organization_id, {}).values()
        return sorted((i for i in items if i.assignee == assignee), key=lambda i: i.id)

    async def load(self, organization_id: str, assignee: str) -> int:
        return len(await self.list_items(organization_id, assignee))

    async def reassign(self, organization_id: str, item_id: str, to_assignee: str) -> None:
        async with self._lock:
            self._items[organization_id][item_id].assignee = to_assignee


class InMemoryOperations:
    """Failed operations and scripted retry outcomes."""

    def __init__(self):
        self._statuses: dict[tuple[str, str, str], str] = {}
        self._outcomes: dict[tuple[str, str, str], list[bool]] = {}

    def add(
        self,
        organization_id: str,
        target_type: str,
        target_id: str,
        status: str = "failed",
        outcomes: Optional[list[bool]] = None,
    ) -> None:
        key = (organization_id, target_type, target_id)
        self._statuses[key] = status
        self._outcomes[key] = list(outcomes or [True])

    async def get_status(self, organization_id: str, target_type: str, target_id: str) -> str:
        return self._statuses.get((organization_id, target_type, target_id), "unknown")

    async def retry(
        self, organization_id: str, target_type: str, target_id: str
    ) -> OperationOutcome:
        key = (organization_id, target_type, target_id)
        previous = self._statuses.get(key, "unknown")
        outcomes = self._outcomes.get(key) or [True]
        success = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        new_status = "completed" if success else "failed"
        self._statuses[key] = new_status
        return OperationOutcome(
            success=success,
            previous_status=previous,
            new_status=new_status,
            error=None if success else f"{target_type} {target_id} failed again",
        )

    async def set_status(
        self, organization_id: str, target_type: str, target_id: str, status: str
    ) -> None:
        self._statuses[(organization_id, target_type, target_id)] = status
