"""
Base Connector Module.

Provides abstract base classes for source and target adapters, their
pydantic configurations and the factory that builds them from request
configuration.
"""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from dirsync.sync.entities import ChangeSet, EntitySet, EntityType, OperationType, Snapshot, utcnow
from dirsync.sync.errors import ConfigurationError
from dirsync.sync.transformer.mapper import EntityMapper, EntityMapping

logger = logging.getLogger(__name__)


class ConnectionStatus(str, Enum):
    """Connection status enumeration."""
    DISCONNECTED = "disconnected"
    CONNECTED = "connected"
    ERROR = "error"


class ConnectorConfig(BaseModel):
    """Base configuration for connectors."""
    type: str
    name: Optional[str] = None

    # Connection settings
    connection_timeout: float = Field(default=10.0, gt=0)
    read_timeout: float = Field(default=30.0, gt=0)

    # Per entity type field mappings, keyed by entity type value
    mappings: Dict[str, EntityMapping] = Field(default_factory=dict)

    # Extra configuration
    extra: Dict[str, Any] = Field(default_factory=dict)


class SourceConfig(ConnectorConfig):
    """Base configuration for source adapters."""
    page_size: int = Field(default=500, ge=1)


class TargetConfig(ConnectorConfig):
    """Base configuration for target adapters."""
    pass


class _ConnectorBase:
    """Connection bookkeeping shared by sources and targets."""

    config_class = ConnectorConfig

    def __init__(self, config: ConnectorConfig):
        self.config = config
        self.mapper = EntityMapper(config.mappings)
        self._status = ConnectionStatus.DISCONNECTED
        self._connected_at: Optional[datetime] = None
        self._last_error: Optional[Exception] = None

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def is_connected(self) -> bool:
        return self._status == ConnectionStatus.CONNECTED

    @property
    def last_error(self) -> Optional[Exception]:
        return self._last_error

    async def connect(self) -> bool:
        """
        Establish connection.

        Returns:
            True if connection successful
        """
        self._set_status(ConnectionStatus.CONNECTED)
        return True

    async def disconnect(self) -> None:
        """Release connection resources."""
        self._set_status(ConnectionStatus.DISCONNECTED)

    def _set_status(self, status: ConnectionStatus) -> None:
        self._status = status
        if status == ConnectionStatus.CONNECTED:
            self._connected_at = utcnow()
        logger.debug(f"{type(self).__name__} status changed to: {status.value}")

    def _record_error(self, error: Exception) -> None:
        self._last_error = error
        logger.error(f"{type(self).__name__} error: {error}")

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.disconnect()


class BaseSourceConnector(_ConnectorBase, ABC):
    """
    Abstract base class for source adapters.

    Sources hold no cursor state: the task manager always passes the
    watermark in, so any read can be repeated after a crash.
    """

    config_class = SourceConfig

    @abstractmethod
    async def fetch_full(
        self,
        entity_types: List[EntityType],
        filter: Optional[Dict[str, Any]] = None
    ) -> Snapshot:
        """
        Read a complete snapshot.

        Args:
            entity_types: Entity types to read
            filter: Optional source-specific filter

        Returns:
            Snapshot with the watermark taken after the read

        Raises:
            SourceUnavailable: On connectivity or authentication failure
            SourceSchemaError: When records cannot be mapped
        """
        pass

    @abstractmethod
    async def fetch_changes(
        self,
        entity_types: List[EntityType],
        since: Optional[datetime] = None,
        cursor: Optional[str] = None
    ) -> ChangeSet:
        """
        Read changes after a watermark.

        Args:
            entity_types: Entity types to read
            since: Lower time bound when no cursor is known
            cursor: Cursor returned by the previous read

        Returns:
            ChangeSet with the next cursor
        """
        pass


class BaseTargetConnector(_ConnectorBase, ABC):
    """
    Abstract base class for target adapters.

    Every mutating call must be idempotent.
    """

    config_class = TargetConfig

    @abstractmethod
    async def fetch_current(self, entity_types: List[EntityType]) -> EntitySet:
        """Read the target's current directory; source_updated_at holds its last-modified time."""
        pass

    @abstractmethod
    async def create(
        self,
        entity_type: EntityType,
        payload: Dict[str, Any],
        operation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def update(
        self,
        entity_type: EntityType,
        entity_id: str,
        payload: Dict[str, Any],
        operation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def delete(
        self,
        entity_type: EntityType,
        entity_id: str,
        operation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        pass

    async def apply(
        self,
        entity_type: EntityType,
        operation_type: OperationType,
        entity_id: str,
        payload: Dict[str, Any],
        operation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        """
        Dispatch one operation.

        Moves and renames are sent as updates carrying the full entity.
        """
        operation_type = OperationType(operation_type)
        if operation_type == OperationType.CREATE:
            return await self.create(entity_type, payload, operation_id=operation_id)
        if operation_type == OperationType.DELETE:
            return await self.delete(entity_type, entity_id, operation_id=operation_id)
        return await self.update(entity_type, entity_id, payload, operation_id=operation_id)

    def collected_result(self) -> Optional[Dict[str, Any]]:
        """Structured result for targets that collect instead of calling out."""
        return None

    def restore_operations(self, operations: List[Dict[str, Any]]) -> None:
        """Re-apply state of operations completed by an earlier run of the same task."""
        return None

    def seed_known_state(self, entities: EntitySet) -> None:
        """Accept the directory as last pushed by earlier tasks; live targets ignore it."""
        return None


class ConnectorFactory:
    """Factory for creating source and target adapters."""

    _sources: Dict[str, type] = {}
    _targets: Dict[str, type] = {}

    @classmethod
    def register_source(cls, connector_type: str, connector_class: type) -> None:
        cls._sources[connector_type] = connector_class
        logger.debug(f"Registered source type: {connector_type}")

    @classmethod
    def register_target(cls, connector_type: str, connector_class: type) -> None:
        cls._targets[connector_type] = connector_class
        logger.debug(f"Registered target type: {connector_type}")

    @staticmethod
    def _build(registry: Dict[str, type], kind: str, config: Union[ConnectorConfig, Dict[str, Any]], **kwargs):
        if isinstance(config, BaseModel):
            config = config.model_dump()
        connector_type = (config or {}).get("type")
        if connector_type not in registry:
            raise ConfigurationError(
                f"Unknown {kind} type: {connector_type}",
                context={"available": sorted(registry.keys())}
            )
        connector_class = registry[connector_type]
        try:
            typed_config = connector_class.config_class(**config)
        except ValueError as e:
            raise ConfigurationError(f"Invalid {kind} configuration: {e}")
        return connector_class(typed_config, **kwargs)

    @classmethod
    def create_source(cls, config: Union[SourceConfig, Dict[str, Any]], **kwargs) -> BaseSourceConnector:
        """
        Create a source adapter.

        Args:
            config: Source configuration with a registered ``type``
            **kwargs: Extra constructor arguments (e.g. an httpx transport)

        Raises:
            ConfigurationError: If the type is unknown or the config invalid
        """
        return cls._build(cls._sources, "source", config, **kwargs)

    @classmethod
    def create_target(cls, config: Union[TargetConfig, Dict[str, Any]], **kwargs) -> BaseTargetConnector:
        """Create a target adapter; see create_source."""
        return cls._build(cls._targets, "target", config, **kwargs)

    @classmethod
    def source_types(cls) -> List[str]:
        return list(cls._sources.keys())

    @classmethod
    def target_types(cls) -> List[str]:
        return list(cls._targets.keys())
