"""
Database Connectors Module.
"""

from .source import DatabaseSourceConfig, DatabaseSourceConnector

__all__ = ["DatabaseSourceConfig", "DatabaseSourceConnector"]
