from __future__ import annotations

import logging
from dataclasses import dataclass

from aiogram import Bot, Dispatcher
from aiogram.client.default import DefaultBotProperties
from aiohttp import web

from .config import AppConfig
from .web import create_web_app
from ..modules.adaptive.handlers.admin_commands import create_adaptive_admin_router
from ..modules.adaptive.infrastructure.storage import SQLiteAdaptiveRepository, SQLiteVisitorTracker
from ..modules.adaptive.services.adaptive_service import AdaptiveLinkService
from ..modules.adaptive.services.analytics_service import AnalyticsService
from ..modules.adaptive.services.resolver import AdaptiveResolver

logger = logging.getLogger(__name__)


@dataclass
class AppContainer:
    config: AppConfig
    repository: SQLiteAdaptiveRepository
    tracker: SQLiteVisitorTracker
    resolver: AdaptiveResolver
    adaptive_service: AdaptiveLinkService
    analytics_service: AnalyticsService

    @classmethod
    async def build(cls, config: AppConfig) -> "AppContainer":
        repository = SQLiteAdaptiveRepository(config.storage_path)
        await repository.initialize()
        tracker = SQLiteVisitorTracker(config.storage_path)
        await tracker.initialize()

        resolver = AdaptiveResolver(
            tracker,
            failure_policy=config.storage_failure_policy,
            default_timezone=config.default_timezone,
            storage_timeout=config.visitor_store_timeout,
        )
        adaptive_service = AdaptiveLinkService(
            repository=repository,
            tracker=tracker,
            resolver=resolver,
            default_timezone=config.default_timezone,
            default_scan_limit=config.adaptive_scan_limit,
        )
        analytics_service = AnalyticsService(repository=repository)

        logger.info(
            f"Adaptive storage ready at {config.storage_path} "
            f"(failure policy: {config.storage_failure_policy.value})"
        )

        return cls(
            config=config,
            repository=repository,
            tracker=tracker,
            resolver=resolver,
            adaptive_service=adaptive_service,
            analytics_service=analytics_service,
        )

    def create_web_app(self) -> web.Application:
        return create_web_app(
            self.adaptive_service,
            fingerprint_salt=self.config.fingerprint_salt,
            default_timezone=self.config.default_timezone,
        )

    def create_bot(self) -> Bot:
        if not self.config.telegram_bot_token:
            raise ValueError("TELEGRAM_BOT_TOKEN is not configured")
        return Bot(
            token=self.config.telegram_bot_token,
            default=DefaultBotProperties(parse_mode="HTML"),
        )

    def create_dispatcher(self) -> Dispatcher:
        dispatcher = Dispatcher()
        dispatcher.include_router(
            create_adaptive_admin_router(
                service=self.adaptive_service,
                analytics_service=self.analytics_service,
                admin_user_ids=frozenset(self.config.admin_user_ids),
                public_base_url=self.config.public_base_url,
            )
        )
        return dispatcher
