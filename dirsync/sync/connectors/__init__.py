"""
Source and Target Connectors Module.

Provides source adapters (database, api, custom) and target adapters
(api, collecting), registered with the ConnectorFactory by type name.
"""

from dirsync.sync.connectors.base import (
    BaseSourceConnector,
    BaseTargetConnector,
    ConnectorConfig,
    ConnectorFactory,
    ConnectionStatus,
    SourceConfig,
    TargetConfig,
)
from dirsync.sync.connectors.api import (
    ApiSourceConfig,
    ApiSourceConnector,
    ApiTargetConfig,
    ApiTargetConnector,
)
from dirsync.sync.connectors.collecting import CollectingTargetConfig, CollectingTargetConnector
from dirsync.sync.connectors.custom import CustomSourceConfig, CustomSourceConnector, CustomSourceRegistry
from dirsync.sync.connectors.database import DatabaseSourceConfig, DatabaseSourceConnector

ConnectorFactory.register_source("database", DatabaseSourceConnector)
ConnectorFactory.register_source("api", ApiSourceConnector)
ConnectorFactory.register_source("custom", CustomSourceConnector)
ConnectorFactory.register_target("api", ApiTargetConnector)
ConnectorFactory.register_target("collecting", CollectingTargetConnector)

__all__ = [
    "BaseSourceConnector",
    "BaseTargetConnector",
    "ConnectorConfig",
    "ConnectorFactory",
    "ConnectionStatus",
    "SourceConfig",
    "TargetConfig",
    "ApiSourceConfig",
    "ApiSourceConnector",
    "ApiTargetConfig",
    "ApiTargetConnector",
    "CollectingTargetConfig",
    "CollectingTargetConnector",
    "CustomSourceConfig",
    "CustomSourceConnector",
    "CustomSourceRegistry",
    "DatabaseSourceConfig",
    "DatabaseSourceConnector",
]
