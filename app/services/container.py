from __future__ import annotations

import logging
from dataclasses import dataclass

from app.config import AppConfig
from app.hardware.adapters.registry import AdapterRegistry
from app.security.credentials import CredentialProvider
from app.services.access_service import AccessService
from app.services.audit_log import AuditLog
from app.services.authorization.engine import AuthorizationEngine
from app.services.container_builder import ContainerBuilder
from app.services.dispatch.dispatcher import CommandDispatcher
from app.services.state_cache import DeviceStateCache
from app.workers.state_refresher import StateRefresher
from infrastructure.database.repositories.access_records import AccessRecordRepository
from infrastructure.database.repositories.entities import EntityRepository
from infrastructure.database.repositories.roles import CachedRoleAssociationStore, RoleAssociationRepository
from infrastructure.database.sqlite_handler import SQLiteDatabaseHandler
from infrastructure.logging.audit import AuditLogger

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Aggregate and manage core backend services."""

    config: AppConfig
    database: SQLiteDatabaseHandler
    entity_repo: EntityRepository
    role_repo: RoleAssociationRepository
    role_store: CachedRoleAssociationStore
    access_record_repo: AccessRecordRepository
    audit_logger: AuditLogger
    credentials: CredentialProvider
    adapters: AdapterRegistry
    engine: AuthorizationEngine
    state_cache: DeviceStateCache
    audit_log: AuditLog
    dispatcher: CommandDispatcher
    state_refresher: StateRefresher
    access_service: AccessService
    _shutdown_complete: bool = False

    @classmethod
    def build(
        cls,
        config: AppConfig,
        *,
        start_background: bool = False,
        adapters: AdapterRegistry | None = None,
    ) -> "ServiceContainer":
        """Construct the service container with all dependencies.

        Args:
            config: Application configuration
            start_background: Initialize adapters and start the state refresher
            adapters: Pre-built adapter registry (tests, embedding)
        """
        logger.info("Building ServiceContainer using ContainerBuilder...")
        container = cls(**ContainerBuilder(config).build(adapters=adapters))

        # Dispatches interrupted by a previous crash must be closed before new ones start.
        recovered = container.dispatcher.recover()
        if recovered:
            logger.warning("Closed %d interrupted dispatch(es) from a previous run", len(recovered))

        if start_background:
            container.start()

        logger.info("ServiceContainer built successfully.")
        return container

    def start(self) -> None:
        failures = self.adapters.initialize_all()
        for vendor, error in failures.items():
            logger.warning("⚠️  Adapter %s failed to initialize: %s", vendor, error)
        self.state_refresher.start()

    def shutdown(self) -> None:
        """Release external resources before process exit."""
        if self._shutdown_complete:
            return
        try:
            self.state_refresher.stop()
            logger.info("✓ StateRefresher stopped")
        except Exception as e:
            logger.warning("Failed to stop StateRefresher: %s", e)

        self.dispatcher.shutdown(wait=True)
        self.adapters.close_all()

        # Then close connections
        self.database.close()
        self.audit_logger.close()
        self._shutdown_complete = True
        logger.info("ServiceContainer shutdown complete.")
