"""Application root: builds every gateway component once and wires them together."""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from genai_gateway.core.config import Settings
from genai_gateway.core.config import settings as default_settings
from genai_gateway.core.encryption import CredentialVault
from genai_gateway.core.logging import setup_logging
from genai_gateway.core.sentry import init_sentry
from genai_gateway.db.session import create_engine, create_schema, create_session_factory
from genai_gateway.gateway.cache import CacheRegistry
from genai_gateway.gateway.call_log_stats import CallLogStatistics
from genai_gateway.gateway.call_log_store import CallLogStore
from genai_gateway.gateway.client_manager import ClientManager
from genai_gateway.gateway.interceptor import CallInterceptor, InstrumentedService
from genai_gateway.gateway.key_pool import KeyRotationPool
from genai_gateway.gateway.metrics_logger import MetricsLogger
from genai_gateway.services.text_service import TextService

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    settings: Settings
    engine: AsyncEngine
    session_factory: async_sessionmaker[AsyncSession]
    vault: CredentialVault
    key_pool: KeyRotationPool
    caches: CacheRegistry
    client_manager: ClientManager
    metrics_logger: MetricsLogger
    call_log_store: CallLogStore
    call_log_stats: CallLogStatistics
    interceptor: CallInterceptor
    text_service: InstrumentedService

    async def startup(self, create_tables: bool | None = None, start_sweeps: bool = True) -> None:
        """Configure logging and Sentry, create tables, start cache sweeps.

        Tables are created by default only for embedded SQLite stores; server
        databases are expected to be provisioned separately.
        """
        setup_logging(self.settings)
        init_sentry(self.settings)
        if create_tables is None:
            create_tables = self.settings.database_url.startswith("sqlite")
        if create_tables:
            await create_schema(self.engine)
        if start_sweeps and self.settings.cache_enabled:
            self.caches.start_all()
        logger.info("GenAI gateway started (env=%s, mock=%s)", self.settings.app_env, self.settings.mock_mode)

    async def purge_old_logs(self, now: datetime | None = None) -> int:
        """Apply the call-log retention period. Returns the number of records deleted."""
        days = self.settings.call_log_retention_days
        if not days:
            return 0
        cutoff = (now or datetime.now(timezone.utc)) - timedelta(days=days)
        return await self.call_log_store.delete_old_logs(cutoff)

    async def shutdown(self) -> None:
        await self.caches.stop_all()
        self.client_manager.reset()
        await self.engine.dispose()
        logger.info("GenAI gateway stopped")


def build_container(settings: Settings | None = None, on_alert=None) -> ServiceContainer:
    settings = settings or default_settings

    engine = create_engine(settings.database_url, echo=settings.database_echo)
    session_factory = create_session_factory(engine)
    vault = CredentialVault.from_settings(settings)
    key_pool = KeyRotationPool(session_factory, vault)
    caches = CacheRegistry.from_settings(settings)
    client_manager = ClientManager(settings)
    metrics_logger = MetricsLogger.from_settings(settings, on_alert=on_alert)
    call_log_store = CallLogStore(session_factory)
    interceptor = CallInterceptor(call_log_store, metrics_logger, settings)

    text_service = TextService(client_manager, caches.text, settings, key_pool=key_pool, token_cache=caches.tokens)

    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        vault=vault,
        key_pool=key_pool,
        caches=caches,
        client_manager=client_manager,
        metrics_logger=metrics_logger,
        call_log_store=call_log_store,
        call_log_stats=CallLogStatistics(session_factory),
        interceptor=interceptor,
        text_service=interceptor.wrap_service(text_service, TextService.service_name),
    )
