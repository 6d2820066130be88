"""
API Dependencies
Builds the service graph once per app and hands it to endpoints
"""
import logging
from typing import Optional

from dotenv import load_dotenv
from fastapi import Request

from ivr_bridge.core.config import ConfigManager, Settings
from ivr_bridge.domain.interfaces.ai_call_provider import AICallProvider
from ivr_bridge.domain.interfaces.notification_channel import NotificationChannel
from ivr_bridge.domain.interfaces.owner_resolver import OwnerResolver
from ivr_bridge.domain.interfaces.telephony_provider import TelephonyProvider
from ivr_bridge.domain.services.bridge_coordinator import BridgeCoordinator
from ivr_bridge.domain.services.call_service import CallService
from ivr_bridge.domain.services.notification_service import NotificationService
from ivr_bridge.domain.services.queue_service import AgentQueueService
from ivr_bridge.domain.services.transfer_engine import TransferEngine
from ivr_bridge.domain.services.webhook_ingress import WebhookIngress
from ivr_bridge.infrastructure.ai.vapi_provider import VapiProvider
from ivr_bridge.infrastructure.notifications.redis_channel import RedisNotificationChannel
from ivr_bridge.infrastructure.notifications.websocket_channel import WebSocketNotificationChannel
from ivr_bridge.infrastructure.owner_resolver import ConfiguredOwnerResolver
from ivr_bridge.infrastructure.storage.database import Database
from ivr_bridge.infrastructure.storage.repositories import (
    AgentRepository,
    CallRepository,
    QueueRepository,
)
from ivr_bridge.infrastructure.telephony.vonage_provider import VonageTelephonyProvider

load_dotenv()

logger = logging.getLogger(__name__)


class ServiceContainer:
    """Everything the endpoints need, wired for one settings object."""

    def __init__(
        self,
        settings: Settings,
        config: ConfigManager,
        database: Database,
        telephony: TelephonyProvider,
        ai_provider: AICallProvider,
        websockets: WebSocketNotificationChannel,
        channel: NotificationChannel,
        owner_resolver: OwnerResolver,
    ):
        self.settings = settings
        self.config = config
        self.database = database
        self.telephony = telephony
        self.ai_provider = ai_provider
        self.websockets = websockets
        self.channel = channel

        self.calls_repo = CallRepository(database)
        self.queue_repo = QueueRepository(database)
        self.agents_repo = AgentRepository(database)

        self.notifications = NotificationService(channel)
        self.bridge = BridgeCoordinator(telephony, room_prefix=settings.room_prefix)
        self.queue = AgentQueueService(
            self.queue_repo,
            self.calls_repo,
            self.agents_repo,
            self.notifications,
            self.bridge,
            wait_ceiling_seconds=settings.queue_wait_ceiling_seconds,
        )
        self.calls = CallService(self.calls_repo, ai_provider, self.agents_repo)
        self.transfer_engine = TransferEngine(
            self.calls_repo,
            self.agents_repo,
            self.queue,
            self.bridge,
            telephony,
            settings,
            config,
        )
        self.ingress = WebhookIngress(
            self.calls,
            self.transfer_engine,
            self.queue,
            self.bridge,
            self.agents_repo,
            ai_provider,
            telephony,
            owner_resolver,
            settings,
            config,
        )

    @property
    def relay(self) -> Optional[RedisNotificationChannel]:
        """Redis relay to run in the background, when Redis fan-out is enabled."""
        return self.channel if isinstance(self.channel, RedisNotificationChannel) else None


def build_container(
    settings: Settings,
    config: Optional[ConfigManager] = None,
    database: Optional[Database] = None,
    telephony: Optional[TelephonyProvider] = None,
    ai_provider: Optional[AICallProvider] = None,
    channel: Optional[NotificationChannel] = None,
    owner_resolver: Optional[OwnerResolver] = None,
) -> ServiceContainer:
    """
    Wire the service graph. Any collaborator can be passed in (tests do);
    the rest are built from settings.
    """
    config = config or ConfigManager(settings.environment)
    database = database or Database(settings.database_url)

    telephony = telephony or VonageTelephonyProvider(
        api_key=settings.vonage_api_key,
        api_secret=settings.vonage_api_secret,
        application_id=settings.vonage_app_id,
        private_key_path=settings.vonage_private_key_path,
        from_number=settings.vonage_from_number,
        api_base_url=settings.api_base_url,
        hold_music_url=config.get("hold_music_url"),
        timeout=settings.provider_timeout_seconds,
        token_ttl_seconds=settings.vonage_token_ttl_seconds,
    )
    ai_provider = ai_provider or VapiProvider(
        api_key=settings.vapi_api_key,
        phone_number_id=settings.vapi_phone_number_id,
        webhook_url=settings.vapi_webhook_url or f"{settings.api_base_url}{settings.api_prefix}/webhooks/ai",
        base_url=settings.vapi_base_url,
        timeout=settings.provider_timeout_seconds,
    )

    websockets = WebSocketNotificationChannel()
    if channel is None:
        if settings.notifications_backend == "redis" and settings.redis_url:
            channel = RedisNotificationChannel(
                websockets,
                redis_url=settings.redis_url,
                channel=settings.notifications_channel,
            )
            logger.info("Agent notifications fan out through Redis")
        else:
            channel = websockets

    return ServiceContainer(
        settings=settings,
        config=config,
        database=database,
        telephony=telephony,
        ai_provider=ai_provider,
        websockets=websockets,
        channel=channel,
        owner_resolver=owner_resolver or ConfiguredOwnerResolver(config),
    )


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container
