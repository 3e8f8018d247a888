"""
API Target Connector.

Pushes operations to a directory HTTP API: POST to create, PUT to update
(moves and renames included) and DELETE to remove. Response statuses are
classified into success, permanent rejection and retryable failure.
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from dirsync.sync.connectors.api.client import ApiClient, ApiClientConfig, AuthenticationError
from dirsync.sync.connectors.base import BaseTargetConnector, ConnectionStatus, TargetConfig
from dirsync.sync.entities import EntitySet, EntityType
from dirsync.sync.errors import TargetRejected

logger = logging.getLogger(__name__)

PERMANENT_STATUSES = (400, 403, 422)
RETRYABLE_STATUSES = (401, 408, 425, 429)


class ApiTargetConfig(TargetConfig):
    """API target configuration."""
    api: ApiClientConfig
    update_method: str = "PUT"


class ApiTargetConnector(BaseTargetConnector):
    """API target adapter."""

    config_class = ApiTargetConfig

    def __init__(self, config: ApiTargetConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        super().__init__(config)
        self.api_config = config
        self._client = ApiClient(config.api, transport=transport)

    async def connect(self) -> bool:
        try:
            await self._client.ensure_access_token()
        except (AuthenticationError, httpx.HTTPError) as e:
            self._record_error(e)
            self._set_status(ConnectionStatus.ERROR)
            raise TargetRejected(f"Cannot authenticate against target: {e}")
        self._set_status(ConnectionStatus.CONNECTED)
        return True

    async def disconnect(self) -> None:
        await self._client.close()
        self._set_status(ConnectionStatus.DISCONNECTED)

    def _item_path(self, entity_type: EntityType, entity_id: str) -> str:
        return f"{self._client.endpoint(EntityType(entity_type).value).rstrip('/')}/{entity_id}"

    async def _send(
        self,
        method: str,
        path: str,
        context: Dict[str, Any],
        payload: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        try:
            return await self._client.request(method, path, json=payload)
        except AuthenticationError as e:
            raise TargetRejected(str(e), context=context)
        except httpx.TimeoutException as e:
            raise TargetRejected(f"{method} {path} timed out: {e}", context=context)
        except httpx.HTTPError as e:
            raise TargetRejected(f"{method} {path} failed: {e}", context=context)

    @staticmethod
    def _body(response: httpx.Response) -> Dict[str, Any]:
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"data": body}

    def _reject(self, response: httpx.Response, context: Dict[str, Any], permanent: bool) -> TargetRejected:
        status = response.status_code
        return TargetRejected(
            f"Target returned {status} for {response.request.method} {response.request.url.path}",
            context={**context, "status_code": status, "response": response.text[:500]},
            permanent=permanent,
            status_code=status,
        )

    def _classify(self, response: httpx.Response, context: Dict[str, Any]) -> None:
        status = response.status_code
        if status < 400:
            return
        if status in PERMANENT_STATUSES:
            raise self._reject(response, context, permanent=True)
        if status in RETRYABLE_STATUSES or status >= 500:
            raise self._reject(response, context, permanent=False)
        raise self._reject(response, context, permanent=True)

    async def create(
        self,
        entity_type: EntityType,
        payload: Dict[str, Any],
        operation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        entity_type = EntityType(entity_type)
        context = {"entity_type": entity_type.value, "entity_id": payload.get("id"), "operation": "create"}
        body = self.mapper.to_raw(entity_type, payload)
        response = await self._send("POST", self._client.endpoint(entity_type.value), context, body)
        if response.status_code == 409:
            logger.info(f"{entity_type.value} {payload.get('id')} already exists on target")
            return {"status": "exists", "status_code": 409}
        self._classify(response, context)
        return {"status": "created", "status_code": response.status_code, "body": self._body(response)}

    async def update(
        self,
        entity_type: EntityType,
        entity_id: str,
        payload: Dict[str, Any],
        operation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        entity_type = EntityType(entity_type)
        context = {"entity_type": entity_type.value, "entity_id": entity_id, "operation": "update"}
        body = self.mapper.to_raw(entity_type, payload)
        response = await self._send(
            self.api_config.update_method, self._item_path(entity_type, entity_id), context, body
        )
        if response.status_code == 404:
            raise self._reject(response, context, permanent=True)
        self._classify(response, context)
        return {"status": "updated", "status_code": response.status_code, "body": self._body(response)}

    async def delete(
        self,
        entity_type: EntityType,
        entity_id: str,
        operation_id: Optional[str] = None
    ) -> Dict[str, Any]:
        entity_type = EntityType(entity_type)
        context = {"entity_type": entity_type.value, "entity_id": entity_id, "operation": "delete"}
        response = await self._send("DELETE", self._item_path(entity_type, entity_id), context)
        if response.status_code == 404:
            return {"status": "absent", "status_code": 404}
        self._classify(response, context)
        return {"status": "deleted", "status_code": response.status_code}

    async def fetch_current(self, entity_types: List[EntityType]) -> EntitySet:
        current = EntitySet()
        for entity_type in entity_types:
            entity_type = EntityType(entity_type)
            path = self._client.endpoint(entity_type.value)
            context = {"entity_type": entity_type.value, "operation": "list"}
            try:
                async for item in self._client.paginate(path):
                    current.add(self.mapper.to_entity(entity_type, item))
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                raise self._reject(e.response, context, permanent=status in PERMANENT_STATUSES)
            except AuthenticationError as e:
                raise TargetRejected(str(e), context=context)
            except httpx.HTTPError as e:
                raise TargetRejected(f"Listing {path} failed: {e}", context=context)
            logger.info(f"Fetched {len(current.of_type(entity_type))} {entity_type.value} records from target")
        return current
