"""Wiring of the long-lived components for one worker."""

import logging
from datetime import timedelta

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from notification_service.channels import EmailAdapter, InAppAdapter, PushAdapter, SocketAdapter
from notification_service.channels.base import ChannelAdapter
from notification_service.config import Settings
from notification_service.database import create_engine, create_session_factory
from notification_service.delivery.engine import DeliveryEngine
from notification_service.delivery.metrics import DeliveryMetrics
from notification_service.delivery.state import BackoffPolicy
from notification_service.models.enums import Channel
from notification_service.realtime.registry import SessionRegistry
from notification_service.services.admin import AdminService
from notification_service.services.cache import NotificationCache, build_cache
from notification_service.services.notifications import NotificationService
from notification_service.services.store import NotificationStore

logger = logging.getLogger(__name__)


def build_adapters(config: Settings, registry: SessionRegistry) -> dict[Channel, ChannelAdapter]:
    concurrency = config.adapter_concurrency
    return {
        Channel.PUSH: PushAdapter(
            config.push_gateway_url,
            api_key=config.push_api_key,
            deadline=config.push_timeout_seconds,
            concurrency=concurrency,
        ),
        Channel.EMAIL: EmailAdapter(
            config.sendgrid_api_key,
            config.email_from_address,
            deadline=config.email_timeout_seconds,
            concurrency=concurrency,
        ),
        Channel.INAPP: InAppAdapter(concurrency=concurrency),
        Channel.SOCKET: SocketAdapter(
            registry,
            deadline=config.socket_timeout_seconds,
            concurrency=concurrency,
        ),
    }


class Runtime:
    """
    Everything a worker shares across requests.

    Stored on ``app.state.runtime``; routes reach it through the request.
    """

    def __init__(
        self,
        config: Settings,
        *,
        db_engine: AsyncEngine | None = None,
        cache: NotificationCache | None = None,
        adapters: dict[Channel, ChannelAdapter] | None = None,
    ):
        self.settings = config
        self.db_engine = db_engine or create_engine(config.database_url)
        self.sessions = create_session_factory(self.db_engine)
        self.cache = cache or build_cache(config)
        self.store = NotificationStore(
            self.sessions,
            timeout=config.store_timeout_seconds,
            on_change=self.cache.invalidate_recipient,
            idempotency_ttl=timedelta(hours=config.idempotency_ttl_hours),
        )
        self.registry = SessionRegistry(
            shards=config.session_shards,
            send_timeout=config.socket_timeout_seconds,
        )
        self.metrics = DeliveryMetrics()
        self.engine = DeliveryEngine(
            self.store,
            adapters if adapters is not None else build_adapters(config, self.registry),
            backoff=BackoffPolicy(
                initial=config.retry_initial_seconds,
                base=config.retry_backoff_base,
                cap=config.retry_cap_seconds,
                jitter=config.retry_jitter,
            ),
            max_attempts=config.max_attempts_for,
            metrics=self.metrics,
            retention_grace=timedelta(days=config.retention_grace_days),
            retention_interval=config.retention_sweep_interval_seconds,
            recovery_batch=config.recovery_batch_size,
        )
        self.notifications = NotificationService(self.store, self.cache, self.engine, config)
        self.admin = AdminService(
            self.store, self.cache, self.engine, self.registry, self.notifications
        )

    async def start(self, *, recover: bool = True, sweep: bool = True) -> None:
        await self.engine.start(recover=recover, sweep=sweep)

    async def stop(self) -> None:
        await self.engine.stop(grace=self.settings.shutdown_grace_seconds)
        await self.cache.close()
        await self.db_engine.dispose()
        logger.info("Runtime stopped")


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def get_notification_service(request: Request) -> NotificationService:
    return request.app.state.runtime.notifications


def get_admin_service(request: Request) -> AdminService:
    return request.app.state.runtime.admin
