"""
API Source Connector.

Reads directory entities from HTTP list endpoints with page-token
pagination. Incremental reads pass the watermark as a query parameter.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from pydantic import Field

from dirsync.sync.connectors.api.client import ApiClient, ApiClientConfig, AuthenticationError
from dirsync.sync.connectors.base import BaseSourceConnector, ConnectionStatus, SourceConfig
from dirsync.sync.entities import ChangeSet, EntityType, Snapshot, format_datetime, parse_datetime
from dirsync.sync.errors import SourceSchemaError, SourceUnavailable
from dirsync.sync.transformer.mapper import get_path

logger = logging.getLogger(__name__)


class ApiSourceConfig(SourceConfig):
    """API source configuration."""
    api: ApiClientConfig
    # Query parameter carrying the incremental watermark
    since_param: str = "updated_since"
    # Field of a change item that flags a deletion
    deleted_flag_field: str = "deleted"
    change_type_field: Optional[str] = "change_type"
    filter_params: Dict[str, Any] = Field(default_factory=dict)


class ApiSourceConnector(BaseSourceConnector):
    """API source adapter."""

    config_class = ApiSourceConfig

    def __init__(self, config: ApiSourceConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(config)
        self.api_config = config
        self._client = ApiClient(config.api, transport=transport)

    async def connect(self) -> bool:
        try:
            await self._client.ensure_access_token()
        except AuthenticationError as e:
            self._record_error(e)
            self._set_status(ConnectionStatus.ERROR)
            raise SourceUnavailable(str(e), context={"base_url": self.api_config.api.base_url})
        except httpx.HTTPError as e:
            self._record_error(e)
            self._set_status(ConnectionStatus.ERROR)
            raise SourceUnavailable(f"Source API unreachable: {e}")
        self._set_status(ConnectionStatus.CONNECTED)
        return True

    async def disconnect(self) -> None:
        await self._client.close()
        self._set_status(ConnectionStatus.DISCONNECTED)

    async def _list(self, entity_type: EntityType, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        path = self._client.endpoint(entity_type.value)
        try:
            return [item async for item in self._client.paginate(path, params=params)]
        except AuthenticationError as e:
            raise SourceUnavailable(str(e), context={"entity_type": entity_type.value})
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status in (401, 403, 408, 429) or status >= 500:
                raise SourceUnavailable(
                    f"Source API returned {status} for {path}",
                    context={"entity_type": entity_type.value, "status_code": status}
                )
            raise SourceSchemaError(
                f"Source API rejected list request {path} with {status}",
                context={"entity_type": entity_type.value, "status_code": status}
            )
        except httpx.HTTPError as e:
            raise SourceUnavailable(
                f"Source API request failed: {e}",
                context={"entity_type": entity_type.value}
            )
        except ValueError as e:
            raise SourceSchemaError(
                f"Source API returned malformed JSON for {path}: {e}",
                context={"entity_type": entity_type.value}
            )

    async def fetch_full(
        self,
        entity_types: List[EntityType],
        filter: Optional[Dict[str, Any]] = None
    ) -> Snapshot:
        snapshot = Snapshot()
        watermark: Optional[datetime] = None
        params = {**self.api_config.filter_params, **(filter or {})}

        for entity_type in entity_types:
            entity_type = EntityType(entity_type)
            items = await self._list(entity_type, params)
            for item in items:
                entity = self.mapper.to_entity(entity_type, item)
                snapshot.add(entity)
                if entity.source_updated_at and (watermark is None or entity.source_updated_at > watermark):
                    watermark = entity.source_updated_at
            logger.info(f"Fetched {len(items)} {entity_type.value} records from source API")

        snapshot.cursor = format_datetime(watermark)
        return snapshot

    async def fetch_changes(
        self,
        entity_types: List[EntityType],
        since: Optional[datetime] = None,
        cursor: Optional[str] = None
    ) -> ChangeSet:
        watermark = cursor or format_datetime(since)
        changes = ChangeSet()
        next_watermark = parse_datetime(watermark) if watermark else None

        for entity_type in entity_types:
            entity_type = EntityType(entity_type)
            params = dict(self.api_config.filter_params)
            if watermark:
                params[self.api_config.since_param] = watermark
            for item in await self._list(entity_type, params):
                change_type = get_path(item, self.api_config.change_type_field) \
                    if self.api_config.change_type_field else None
                deleted_flag = get_path(item, self.api_config.deleted_flag_field)
                if change_type == "deleted" or deleted_flag is True:
                    entity_id = get_path(item, self.mapper.mapping_for(entity_type).id_field)
                    if entity_id is None:
                        raise SourceSchemaError(
                            f"Deleted {entity_type.value} change has no id",
                            context={"entity_type": entity_type.value}
                        )
                    changes.add_deleted(entity_type, str(entity_id))
                    continue

                entity = self.mapper.to_entity(entity_type, item)
                if entity.source_updated_at and (next_watermark is None or entity.source_updated_at > next_watermark):
                    next_watermark = entity.source_updated_at
                if change_type == "created":
                    changes.add_created(entity)
                else:
                    changes.add_updated(entity)

        changes.cursor = format_datetime(next_watermark)
        return changes
