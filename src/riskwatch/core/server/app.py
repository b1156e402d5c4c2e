"""RiskWatch MCP Server — application factory.

This module provides:
- create_app() for testability (integration tests create fresh server instances)
- Module-level `mcp` variable for FastMCP discovery
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from contextlib import asynccontextmanager
from datetime import datetime, timedelta

from fastmcp import FastMCP

from riskwatch.core.audit.logger import AuditLogger
from riskwatch.core.config.settings import Settings, get_settings
from riskwatch.core.storage.database import RecoveryDatabase
from riskwatch.core.storage.encryption import EncryptionError, FieldEncryptor
from riskwatch.core.storage.repository import RecoveryRepository
from riskwatch.domains.recovery.connectors import Notifier
from riskwatch.domains.recovery.connectors.providers import (
    LoggingNotifier,
    RepositoryPreferencesProvider,
)
from riskwatch.domains.recovery.domain_logic.catalog import (
    InterventionCatalog,
    load_catalog_file,
)
from riskwatch.domains.recovery.domain_logic.engine import Engine, SchedulingTicker, utc_now
from riskwatch.domains.recovery.resources.catalog import register_catalog_resources
from riskwatch.domains.recovery.tools.audit_tools import register_audit_tools
from riskwatch.domains.recovery.tools.notification_tools import register_notification_tools
from riskwatch.domains.recovery.tools.recommendation_tools import register_recommendation_tools
from riskwatch.domains.recovery.tools.signal_tools import register_signal_tools

logger = logging.getLogger(__name__)

SERVER_NAME = "RiskWatch Recovery"
SERVER_VERSION = "0.1.0"


def _init_repository(settings: Settings) -> tuple[RecoveryRepository, bool]:
    """Open the encrypted store. Returns (repository, persistent)."""
    if settings.encryption_key:
        try:
            encryptor = FieldEncryptor(settings.encryption_key)
            database = RecoveryDatabase(settings.db_path)
            database.initialize()
            logger.info(
                "Recovery store initialized: %s (schema v%d)",
                settings.db_path,
                database.get_schema_version(),
            )
            return RecoveryRepository(database, encryptor), True
        except EncryptionError as exc:
            logger.error("Failed to initialize storage: %s", exc)
            logger.warning("Continuing with an in-memory store — nothing will persist")
    else:
        logger.warning(
            "No ENCRYPTION_KEY configured — using an in-memory store with an ephemeral key. "
            "Nothing will persist across restarts."
        )

    database = RecoveryDatabase(":memory:")
    database.initialize()
    return RecoveryRepository(database, FieldEncryptor(FieldEncryptor.generate_key())), False


def create_app(
    *,
    repository_override: RecoveryRepository | None = None,
    notifier_override: Notifier | None = None,
    catalog_override: InterventionCatalog | None = None,
    clock_override: Callable[[], datetime] | None = None,
    start_ticker: bool | None = None,
) -> FastMCP:
    """Create and configure the RiskWatch MCP server.

    This is the main application factory. It:
    1. Opens the encrypted recovery store (or an in-memory one)
    2. Loads the intervention catalog
    3. Builds the Engine and restores the notification ledger
    4. Registers all tools and resources
    5. Optionally starts the scheduling ticker with the server
    """
    settings = get_settings()

    # --- Storage ---
    if repository_override is not None:
        repository = repository_override
        persistent = True
    else:
        repository, persistent = _init_repository(settings)
    audit_logger = AuditLogger(repository.database)

    # --- Catalog ---
    catalog = catalog_override or load_catalog_file(settings.catalog_path or None)

    # --- Engine ---
    preferences = RepositoryPreferencesProvider(repository, settings)
    notifier = notifier_override or LoggingNotifier()
    engine = Engine(
        repository,
        catalog,
        notifier,
        preferences,
        settings,
        audit_logger,
        clock=clock_override or utc_now,
    )
    restored = engine.restore()

    # --- Scheduling ticker ---
    if start_ticker is None:
        start_ticker = settings.scheduler_enabled
    lifespan = None
    if start_ticker:
        ticker = SchedulingTicker(
            engine,
            dispatch_interval=settings.dispatch_interval_seconds,
            scheduling_interval=timedelta(minutes=settings.scheduling_interval_minutes),
        )

        @asynccontextmanager
        async def lifespan(server: FastMCP):
            ticker.start()
            try:
                yield
            finally:
                await ticker.stop()

    # --- Server instance ---
    server = FastMCP(
        SERVER_NAME,
        instructions=(
            "RiskWatch — recovery support server. Records behavioral check-ins, "
            "assesses relapse risk, ranks coping interventions and schedules "
            "notifications that respect quiet hours and frequency preferences."
        ),
        lifespan=lifespan,
    )

    @server.tool
    def health_check() -> dict:
        """Check server health and return basic status information."""
        summary = repository.count_by_status()
        return {
            "status": "ok",
            "server": SERVER_NAME,
            "version": SERVER_VERSION,
            "persistent_storage": persistent,
            "interventions_loaded": len(catalog),
            "signals_stored": repository.count_signals(),
            "active_notifications": summary.active,
            "restored_overdue": restored["overdue"],
            "scheduler_running": bool(start_ticker),
            "timezone": settings.timezone,
        }

    # --- Register tools ---
    register_signal_tools(server, engine, audit_logger)
    register_recommendation_tools(server, engine, audit_logger)
    register_notification_tools(server, engine, preferences, audit_logger)
    register_audit_tools(server, audit_logger)
    logger.info("Recovery tools registered")

    # --- Register resources ---
    register_catalog_resources(server, catalog)

    return server


# Module-level instance for FastMCP discovery.
# Lazy: only created when this module is loaded directly (not when tests import create_app).
def __getattr__(name: str):
    if name == "mcp":
        global mcp  # noqa: PLW0603
        mcp = create_app()
        return mcp
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
