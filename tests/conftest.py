"""
Shared test fixtures.

Every test gets its own file-backed SQLite database, so the conditional
UPDATE paths run against a real engine, plus in-memory fakes for the
telephony provider and the notification channel.
"""
import uuid
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest

from ivr_bridge.api.v1.dependencies import build_container
from ivr_bridge.core.config import ConfigManager, Settings, TransferMode
from ivr_bridge.domain.interfaces.notification_channel import NotificationChannel
from ivr_bridge.domain.interfaces.owner_resolver import OwnerResolver
from ivr_bridge.domain.interfaces.telephony_provider import ProviderCallError, TelephonyProvider
from ivr_bridge.domain.models import Agent, CallRecord, CallStatus
from ivr_bridge.infrastructure.ai.vapi_provider import VapiProvider
from ivr_bridge.infrastructure.storage.database import Database


class FakeTelephony(TelephonyProvider):
    """Records redirects; NCCO builders mirror the real provider's shape."""

    def __init__(self):
        self.redirects: List[Tuple[str, List[Dict[str, Any]]]] = []
        self.fail_redirect = False

    @property
    def name(self) -> str:
        return "fake"

    async def place_call(self, to_number, instructions):
        return f"leg-{uuid.uuid4().hex[:8]}"

    async def redirect_call(self, telephony_call_id, instructions):
        if self.fail_redirect:
            raise ProviderCallError(self.name, "leg not found")
        self.redirects.append((telephony_call_id, instructions))

    def issue_browser_token(self, identity):
        return f"token-for-{identity}"

    def hold_in_room(self, room_id, message=None):
        ncco = [{"action": "talk", "text": message}] if message else []
        return ncco + [{"action": "conversation", "name": room_id, "startOnEnter": False}]

    def join_room(self, room_id):
        return [{"action": "conversation", "name": room_id, "startOnEnter": True, "endOnExit": True}]

    def say(self, message):
        return [{"action": "talk", "text": message}]

    def collect_digit(self, message):
        return [{"action": "talk", "text": message}, {"action": "input", "type": ["dtmf"]}]

    def connect_to_number(self, number, message=None):
        ncco = [{"action": "talk", "text": message}] if message else []
        return ncco + [{"action": "connect", "endpoint": [{"type": "phone", "number": number}]}]


class RecordingChannel(NotificationChannel):
    """Keeps every pushed event for assertions."""

    def __init__(self):
        self.events: List[Tuple[Optional[str], str, Dict[str, Any]]] = []

    async def broadcast(self, event, payload):
        self.events.append((None, event, payload))

    async def broadcast_to_owner(self, owner_id, event, payload):
        self.events.append((owner_id, event, payload))

    def named(self, event: str) -> List[Dict[str, Any]]:
        return [payload for _, name, payload in self.events if name == event]


class StaticOwnerResolver(OwnerResolver):

    def __init__(self, owners: Optional[Dict[str, str]] = None):
        self.owners = owners or {}

    async def resolve_owner_for_inbound_number(self, to_number):
        return self.owners.get(to_number)


class FakeVapiApi:
    """
    Stands in for the Vapi API: every call is created, and GET /call/{id}
    answers with whatever the test stored in `calls`.
    """

    def __init__(self):
        self.calls: Dict[str, Dict[str, Any]] = {}

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.method == "POST":
            return httpx.Response(201, json={"id": f"vapi-{uuid.uuid4().hex[:8]}", "status": "queued"})
        call_id = request.url.path.rsplit("/", 1)[-1]
        if call_id not in self.calls:
            return httpx.Response(404, json={"message": "Call not found"})
        return httpx.Response(200, json={"id": call_id, **self.calls[call_id]})


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        environment="test",
        database_url=f"sqlite:///{tmp_path / 'ivr_bridge_test.db'}",
        transfer_mode=TransferMode.QUEUE,
        queue_number=None,
        provider_timeout_seconds=2.0,
    )


@pytest.fixture
def config() -> ConfigManager:
    return ConfigManager("test")


@pytest.fixture
def database(settings):
    db = Database(settings.database_url)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def telephony() -> FakeTelephony:
    return FakeTelephony()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()


@pytest.fixture
def owner_resolver() -> StaticOwnerResolver:
    return StaticOwnerResolver()


@pytest.fixture
def vapi_api() -> FakeVapiApi:
    return FakeVapiApi()


@pytest.fixture
def ai_provider(vapi_api) -> VapiProvider:
    return VapiProvider(
        api_key="test-key",
        phone_number_id="phone-1",
        webhook_url="http://testserver/api/v1/webhooks/ai",
        transport=httpx.MockTransport(vapi_api),
    )


@pytest.fixture
def container(settings, config, database, telephony, ai_provider, channel, owner_resolver):
    return build_container(
        settings,
        config=config,
        database=database,
        telephony=telephony,
        ai_provider=ai_provider,
        channel=channel,
        owner_resolver=owner_resolver,
    )


@pytest.fixture
def second_worker(settings, config, database, telephony, ai_provider, channel, owner_resolver):
    """Another API worker: its own engine and services on the same database file."""
    db = Database(settings.database_url)
    yield build_container(
        settings,
        config=config,
        database=db,
        telephony=telephony,
        ai_provider=ai_provider,
        channel=channel,
        owner_resolver=owner_resolver,
    )
    db.dispose()


@pytest.fixture
def make_call(container):
    """Factory for a stored CallRecord linked to an AI call id."""
    async def _make(
        customer_phone: str = "+15550001111",
        ai_call_id: Optional[str] = None,
        telephony_call_id: Optional[str] = None,
        status: CallStatus = CallStatus.IN_PROGRESS,
        owner_id: Optional[str] = None,
    ) -> CallRecord:
        call = CallRecord(
            id=str(uuid.uuid4()),
            ai_call_id=ai_call_id or f"vapi-{uuid.uuid4().hex[:8]}",
            telephony_call_id=telephony_call_id,
            customer_phone=customer_phone,
            customer_name="Test Caller",
            status=status,
            owner_id=owner_id,
        )
        return await container.calls_repo.add(call)
    return _make


@pytest.fixture
def make_agent(container):
    """Factory for a stored Agent."""
    async def _make(
        key_press: str = "1",
        name: str = "Alice",
        phone_number: str = "+15557770001",
        owner_id: Optional[str] = None,
        is_available: bool = True,
        department: Optional[str] = "Sales",
    ) -> Agent:
        agent = Agent(
            id=str(uuid.uuid4()),
            owner_id=owner_id,
            name=name,
            phone_number=phone_number,
            key_press=key_press,
            department=department,
            is_available=is_available,
        )
        return await container.agents_repo.add(agent)
    return _make
