"""
Container Builder
=================

Extracts service container construction logic from ServiceContainer.build().

Each build_*() method constructs one subsystem, so tests can build a
subsystem on its own or swap one out (for example an in-memory adapter
registry) before the rest is wired.

Architecture:
- ContainerBuilder: Orchestrates the construction of all services
- Each build_*() method: Constructs a specific subsystem
- ServiceContainer.build(): Delegates to ContainerBuilder.build()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from app.config import AppConfig
from app.hardware.adapters.registry import AdapterFactory, AdapterRegistry, build_registry, load_adapter_settings
from app.security.credentials import CachingCredentialProvider, CredentialProvider, StaticCredentialProvider
from app.services.access_service import AccessService
from app.services.audit_log import AuditLog
from app.services.authorization.engine import AuthorizationEngine
from app.services.dispatch.device_locks import DeviceLockRegistry
from app.services.dispatch.dispatcher import CommandDispatcher, DispatchSettings
from app.services.dispatch.retry import RetryPolicy
from app.services.state_cache import DeviceStateCache
from app.workers.state_refresher import StateRefresher
from infrastructure.database.repositories.access_records import AccessRecordRepository
from infrastructure.database.repositories.entities import EntityRepository
from infrastructure.database.repositories.roles import CachedRoleAssociationStore, RoleAssociationRepository
from infrastructure.database.sqlite_handler import SQLiteDatabaseHandler
from infrastructure.logging.audit import AuditLogger

logger = logging.getLogger(__name__)


@dataclass
class InfrastructureComponents:
    """Storage and logging (database, repositories, audit file)."""

    database: SQLiteDatabaseHandler
    entity_repo: EntityRepository
    role_repo: RoleAssociationRepository
    role_store: CachedRoleAssociationStore
    access_record_repo: AccessRecordRepository
    audit_logger: AuditLogger


@dataclass
class AdapterComponents:
    """Vendor adapters and the credentials they use."""

    credentials: CredentialProvider
    adapters: AdapterRegistry


@dataclass
class AccessComponents:
    """Authorization, dispatch and the caller-facing facade."""

    engine: AuthorizationEngine
    state_cache: DeviceStateCache
    audit_log: AuditLog
    dispatcher: CommandDispatcher
    state_refresher: StateRefresher
    access_service: AccessService


class ContainerBuilder:
    """Builder for constructing the service container."""

    def __init__(self, config: AppConfig):
        """Initialize builder with configuration."""
        self.config = config

    def build_infrastructure(self) -> InfrastructureComponents:
        """
        Build infrastructure layer (database, repositories, logging).

        Returns:
            InfrastructureComponents with all infrastructure services
        """
        logger.info("Building infrastructure components...")

        audit_logger = AuditLogger(self.config.audit_log_path, self.config.log_level)
        database = SQLiteDatabaseHandler(self.config.database_path)
        database.init_app(None)

        entity_repo = EntityRepository(database)
        role_repo = RoleAssociationRepository(database)
        role_store = CachedRoleAssociationStore(
            role_repo,
            ttl_seconds=self.config.role_cache_ttl_seconds,
            maxsize=self.config.role_cache_maxsize,
        )
        access_record_repo = AccessRecordRepository(database)

        logger.info("✓ Infrastructure components initialized")
        return InfrastructureComponents(
            database=database,
            entity_repo=entity_repo,
            role_repo=role_repo,
            role_store=role_store,
            access_record_repo=access_record_repo,
            audit_logger=audit_logger,
        )

    def build_adapter_components(self) -> AdapterComponents:
        """
        Build the credential provider and the adapter registry.

        A missing adapter file leaves the registry empty; every dispatch then
        fails with ``adapter_not_configured`` until one is provided.
        """
        logger.info("Building adapter components...")

        credentials = CachingCredentialProvider(
            StaticCredentialProvider.from_env(),
            ttl_seconds=self.config.credential_cache_ttl_seconds,
        )
        factory = AdapterFactory(
            credentials,
            default_timeout=self.config.adapter_timeout_seconds,
            mqtt_host=self.config.mqtt_broker_host if self.config.enable_mqtt else None,
            mqtt_port=self.config.mqtt_broker_port,
        )

        path = Path(self.config.adapters_config_path) if self.config.adapters_config_path else None
        if path is not None and path.exists():
            adapters = build_registry(load_adapter_settings(path), factory)
        else:
            logger.warning("⚠️  No adapter configuration at %s; registry is empty", path)
            adapters = AdapterRegistry()

        logger.info("✓ %d adapter(s) registered", len(adapters))
        return AdapterComponents(credentials=credentials, adapters=adapters)

    def build_access_components(
        self,
        infra: InfrastructureComponents,
        adapters: AdapterRegistry,
    ) -> AccessComponents:
        logger.info("Building access components...")
        config = self.config

        engine = AuthorizationEngine(infra.entity_repo, infra.role_store)
        state_cache = DeviceStateCache(history_per_device=config.state_history_per_device)
        audit_log = AuditLog(infra.access_record_repo, mirror=infra.audit_logger)
        dispatcher = CommandDispatcher(
            infra.entity_repo,
            engine,
            adapters,
            state_cache,
            audit_log,
            locks=DeviceLockRegistry(queue_depth=config.device_queue_depth, policy=config.busy_policy_enum),
            retry_policy=RetryPolicy(
                max_attempts=config.dispatch_max_attempts,
                backoff_base_seconds=config.dispatch_backoff_base_seconds,
                backoff_max_seconds=config.dispatch_backoff_max_seconds,
            ),
            settings=DispatchSettings(
                adapter_timeout_seconds=config.adapter_timeout_seconds,
                idempotency_short_circuit=config.idempotency_short_circuit,
                idempotency_ttl_seconds=config.idempotency_ttl_seconds,
                worker_count=config.dispatch_worker_count,
            ),
        )
        state_refresher = StateRefresher(
            adapters,
            infra.entity_repo,
            state_cache,
            interval_seconds=config.state_refresh_interval_seconds,
            adapter_timeout_seconds=config.adapter_timeout_seconds,
        )
        access_service = AccessService(engine, dispatcher, audit_log, infra.role_store)

        logger.info("✓ Access components initialized")
        return AccessComponents(
            engine=engine,
            state_cache=state_cache,
            audit_log=audit_log,
            dispatcher=dispatcher,
            state_refresher=state_refresher,
            access_service=access_service,
        )

    def build(self, *, adapters: AdapterRegistry | None = None) -> dict[str, Any]:
        """
        Build every subsystem.

        Args:
            adapters: Pre-built registry to use instead of the configured one

        Returns:
            Keyword arguments for ``ServiceContainer``
        """
        infra = self.build_infrastructure()
        if adapters is None:
            adapter_components = self.build_adapter_components()
        else:
            adapter_components = AdapterComponents(credentials=StaticCredentialProvider({}), adapters=adapters)
        access = self.build_access_components(infra, adapter_components.adapters)

        return {
            "config": self.config,
            **vars(infra),
            **vars(adapter_components),
            **vars(access),
        }
