"""
Relational join diff strategy.

Loads both sides into temporary tables and classifies entities with
outer and inner joins, which keeps memory flat for very large directories.
The classification feeds the same operation builder as the in-memory
strategy.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, MetaData, String, Table, Text, create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool

from dirsync.sync.diff.engine import Classification, EntityClassification, organization_update_digest
from dirsync.sync.entities import EntitySet, EntityType

logger = logging.getLogger(__name__)

_INSERT_CHUNK = 1000


class SqlJoinDiffStrategy:
    """Classification by SQL joins over temporary tables."""

    name = "sql_join"

    def __init__(self, database_url: str = "sqlite://", engine: Optional[Engine] = None):
        """
        Initialize join strategy.

        Args:
            database_url: Scratch database for the temporary tables
            engine: Pre-built engine, overrides database_url
        """
        self.database_url = database_url
        self._engine = engine

    def _get_engine(self) -> Engine:
        if self._engine is None:
            if self.database_url.startswith("sqlite"):
                self._engine = create_engine(
                    self.database_url,
                    connect_args={"check_same_thread": False},
                    poolclass=StaticPool,
                )
            else:
                self._engine = create_engine(self.database_url)
        return self._engine

    @staticmethod
    def _table(metadata: MetaData, name: str) -> Table:
        return Table(
            name,
            metadata,
            Column("id", String(200), primary_key=True),
            Column("parent_id", String(200), nullable=True),
            Column("name", Text, nullable=True),
            Column("detail_hash", String(64), nullable=True),
            Column("content_hash", String(64), nullable=False),
            prefixes=["TEMPORARY"],
        )

    @staticmethod
    def _rows(entity_set: EntitySet, entity_type: EntityType) -> List[Dict[str, Any]]:
        rows = []
        for entity_id, entity in entity_set.active(entity_type).items():
            is_org = entity_type == EntityType.ORGANIZATION
            rows.append({
                "id": entity_id,
                "parent_id": entity.parent_id if is_org else None,
                "name": entity.name if is_org else None,
                "detail_hash": organization_update_digest(entity) if is_org else None,
                "content_hash": entity.content_hash(),
            })
        return rows

    def classify(self, local: EntitySet, remote: EntitySet, entity_types: List[EntityType]) -> Classification:
        result: Classification = {}
        engine = self._get_engine()

        with engine.connect() as conn:
            for entity_type in entity_types:
                metadata = MetaData()
                local_table = self._table(metadata, f"diff_local_{entity_type.value}")
                remote_table = self._table(metadata, f"diff_remote_{entity_type.value}")
                metadata.create_all(conn)
                try:
                    for table, entity_set in ((local_table, local), (remote_table, remote)):
                        rows = self._rows(entity_set, entity_type)
                        for start in range(0, len(rows), _INSERT_CHUNK):
                            conn.execute(table.insert(), rows[start:start + _INSERT_CHUNK])

                    result[entity_type] = self._classify_tables(conn, entity_type, local_table, remote_table)
                finally:
                    metadata.drop_all(conn)
            conn.rollback()

        return result

    @staticmethod
    def _classify_tables(conn, entity_type: EntityType, local_table: Table, remote_table: Table) -> EntityClassification:
        lt, rt = local_table.c, remote_table.c
        classification = EntityClassification()

        classification.create = set(conn.scalars(
            select(lt.id)
            .select_from(local_table.outerjoin(remote_table, lt.id == rt.id))
            .where(rt.id.is_(None))
        ))
        classification.delete = set(conn.scalars(
            select(rt.id)
            .select_from(remote_table.outerjoin(local_table, rt.id == lt.id))
            .where(lt.id.is_(None))
        ))

        pairs = conn.execute(
            select(
                lt.id,
                lt.parent_id.is_distinct_from(rt.parent_id).label("moved"),
                lt.name.is_distinct_from(rt.name).label("renamed"),
                lt.detail_hash.is_distinct_from(rt.detail_hash).label("detail_changed"),
                (lt.content_hash != rt.content_hash).label("changed"),
            ).select_from(local_table.join(remote_table, lt.id == rt.id))
        )
        for row in pairs:
            if entity_type == EntityType.ORGANIZATION:
                if row.moved:
                    classification.move.add(row.id)
                if row.renamed:
                    classification.rename.add(row.id)
                if row.detail_changed:
                    classification.update.add(row.id)
            elif row.changed:
                classification.update.add(row.id)

        logger.debug(
            f"Join classification of {entity_type.value}: "
            f"{len(classification.create)} create, {len(classification.delete)} delete, "
            f"{classification.total()} total"
        )
        return classification
