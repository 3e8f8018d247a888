"""
Database Source Connector.

Reads organizations, users and memberships from relational tables through
SQLAlchemy, with per entity type table and field mapping. Change detection
relies on the mapped ``updated_at`` column and an optional soft-delete flag.
"""

import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import Field
from sqlalchemy import MetaData, Table, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import NoSuchTableError, OperationalError, ProgrammingError

from dirsync.sync.connectors.base import BaseSourceConnector, ConnectionStatus, SourceConfig
from dirsync.sync.entities import ChangeSet, EntityType, Snapshot, format_datetime, parse_datetime
from dirsync.sync.errors import SourceSchemaError, SourceUnavailable

logger = logging.getLogger(__name__)


DEFAULT_TABLES = {
    EntityType.ORGANIZATION.value: "organizations",
    EntityType.USER.value: "users",
    EntityType.MEMBERSHIP.value: "memberships",
}


class DatabaseSourceConfig(SourceConfig):
    """Database source configuration."""
    url: str
    tables: Dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_TABLES))
    # Optional schema qualifier for every table
    schema_name: Optional[str] = None
    echo: bool = False


class DatabaseSourceConnector(BaseSourceConnector):
    """
    Database source adapter.

    Blocking SQLAlchemy calls run in a worker thread so the event loop is
    never held by a slow source.
    """

    config_class = DatabaseSourceConfig

    def __init__(self, config: DatabaseSourceConfig, engine: Optional[Engine] = None):
        super().__init__(config)
        self.db_config = config
        self._engine = engine
        self._owns_engine = engine is None
        self._tables: Dict[str, Table] = {}

    async def connect(self) -> bool:
        """Create the engine if none was injected."""
        if self._engine is None:
            try:
                kwargs: Dict[str, Any] = {"echo": self.db_config.echo}
                if self.db_config.url.startswith("sqlite"):
                    kwargs["connect_args"] = {"check_same_thread": False}
                else:
                    kwargs["pool_pre_ping"] = True
                self._engine = create_engine(self.db_config.url, **kwargs)
            except Exception as e:
                self._record_error(e)
                self._set_status(ConnectionStatus.ERROR)
                raise SourceUnavailable(f"Cannot create source engine: {e}")
        self._set_status(ConnectionStatus.CONNECTED)
        logger.info(f"Connected to database source: {self._engine.url.render_as_string(hide_password=True)}")
        return True

    async def disconnect(self) -> None:
        if self._engine is not None and self._owns_engine:
            self._engine.dispose()
            self._engine = None
        self._tables.clear()
        self._set_status(ConnectionStatus.DISCONNECTED)

    def _table(self, entity_type: EntityType) -> Table:
        table_name = self.db_config.tables.get(entity_type.value)
        if not table_name:
            raise SourceSchemaError(
                f"No table configured for {entity_type.value}",
                context={"entity_type": entity_type.value}
            )
        if table_name not in self._tables:
            try:
                self._tables[table_name] = Table(
                    table_name,
                    MetaData(),
                    autoload_with=self._engine,
                    schema=self.db_config.schema_name,
                )
            except NoSuchTableError:
                raise SourceSchemaError(
                    f"Source table {table_name!r} does not exist",
                    context={"entity_type": entity_type.value, "table": table_name}
                )
        return self._tables[table_name]

    def _column(self, table: Table, name: Optional[str], entity_type: EntityType, required: bool = True):
        if not name:
            return None
        if name not in table.c:
            if not required:
                return None
            raise SourceSchemaError(
                f"Column {name!r} missing from table {table.name!r}",
                context={"entity_type": entity_type.value, "table": table.name, "column": name}
            )
        return table.c[name]

    def _read_rows(
        self,
        entity_type: EntityType,
        filter: Optional[Dict[str, Any]] = None,
        after: Optional[datetime] = None
    ) -> List[Dict[str, Any]]:
        """Read raw rows of one entity type (runs in a worker thread)."""
        table = self._table(entity_type)
        mapping = self.mapper.mapping_for(entity_type)
        stmt = select(table)

        for column_name, value in (filter or {}).items():
            column = self._column(table, column_name, entity_type, required=False)
            if column is not None:
                stmt = stmt.where(column == value)

        if after is not None:
            updated_col = self._column(table, mapping.updated_at_field, entity_type)
            if updated_col is None:
                raise SourceSchemaError(
                    f"Incremental read of {entity_type.value} needs an updated_at column",
                    context={"entity_type": entity_type.value}
                )
            stmt = stmt.where(updated_col > after)

        id_col = self._column(table, mapping.id_field, entity_type)
        stmt = stmt.order_by(id_col)

        with self._engine.connect() as conn:
            return [dict(row) for row in conn.execute(stmt).mappings()]

    async def _read(self, entity_type: EntityType, **kwargs) -> List[Dict[str, Any]]:
        if self._engine is None:
            await self.connect()
        try:
            return await asyncio.to_thread(self._read_rows, entity_type, **kwargs)
        except OperationalError as e:
            self._record_error(e)
            raise SourceUnavailable(
                f"Source database unavailable: {e.orig if e.orig else e}",
                context={"entity_type": entity_type.value}
            )
        except ProgrammingError as e:
            self._record_error(e)
            raise SourceSchemaError(
                f"Source query failed: {e.orig if e.orig else e}",
                context={"entity_type": entity_type.value}
            )

    async def fetch_full(
        self,
        entity_types: List[EntityType],
        filter: Optional[Dict[str, Any]] = None
    ) -> Snapshot:
        snapshot = Snapshot()
        watermark: Optional[datetime] = None

        for entity_type in entity_types:
            entity_type = EntityType(entity_type)
            rows = await self._read(entity_type, filter=filter)
            for row in rows:
                entity = self.mapper.to_entity(entity_type, row)
                snapshot.add(entity)
                if entity.source_updated_at and (watermark is None or entity.source_updated_at > watermark):
                    watermark = entity.source_updated_at
            logger.info(f"Read {len(rows)} {entity_type.value} rows from source")

        snapshot.cursor = format_datetime(watermark)
        return snapshot

    async def fetch_changes(
        self,
        entity_types: List[EntityType],
        since: Optional[datetime] = None,
        cursor: Optional[str] = None
    ) -> ChangeSet:
        watermark = parse_datetime(cursor) if cursor else since
        if watermark is None:
            raise SourceSchemaError("Incremental read needs a cursor or a since timestamp")

        changes = ChangeSet()
        next_watermark = watermark

        for entity_type in entity_types:
            entity_type = EntityType(entity_type)
            mapping = self.mapper.mapping_for(entity_type)
            rows = await self._read(entity_type, after=watermark)
            for row in rows:
                entity = self.mapper.to_entity(entity_type, row)
                if entity.source_updated_at and entity.source_updated_at > next_watermark:
                    next_watermark = entity.source_updated_at
                if entity.deleted:
                    changes.add_deleted(entity_type, entity.id)
                    continue
                created_at = parse_datetime(row.get(mapping.created_at_field)) if mapping.created_at_field else None
                if created_at is not None and created_at > watermark:
                    changes.add_created(entity)
                else:
                    changes.add_updated(entity)

        changes.cursor = format_datetime(next_watermark)
        logger.info(f"Read {changes.count()} source changes since {format_datetime(watermark)}")
        return changes
