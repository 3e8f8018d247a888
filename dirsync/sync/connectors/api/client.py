"""
HTTP API Client.

httpx-based client shared by the API source and target adapters:
client-credentials or static bearer authentication with token refresh,
and page-token pagination of list endpoints.
"""

import asyncio
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from dirsync.sync.transformer.mapper import get_path
from dirsync.utils.retry import retry

logger = logging.getLogger(__name__)


class AuthConfig(BaseModel):
    """Authentication configuration."""
    # Static bearer token; skips the token endpoint when set
    bearer_token: Optional[str] = None

    # Client credentials
    token_url: Optional[str] = None
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    scope: Optional[str] = None
    token_field: str = "access_token"
    expires_field: str = "expires_in"
    # Refresh this many seconds before the advertised expiry
    expiry_margin_seconds: int = Field(default=60, ge=0)


class PaginationConfig(BaseModel):
    """Page-token pagination configuration."""
    items_path: str = "data"
    next_token_path: str = "next_page_token"
    page_token_param: str = "page_token"
    page_size_param: str = "page_size"
    page_size: int = Field(default=100, ge=1)
    max_pages: int = Field(default=10000, ge=1)


class ApiClientConfig(BaseModel):
    """HTTP endpoint configuration."""
    base_url: str
    # entity type value -> collection path, e.g. {"user": "/users"}
    endpoints: Dict[str, str] = Field(default_factory=dict)
    headers: Dict[str, str] = Field(default_factory=dict)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    pagination: PaginationConfig = Field(default_factory=PaginationConfig)
    timeout: float = Field(default=30.0, gt=0)
    verify_ssl: bool = True


class AuthenticationError(Exception):
    """Token endpoint refused the credentials."""


class ApiClient:
    """
    Async HTTP client with token management.

    Requests carry a bearer token obtained before the call; a 401 response
    refreshes the token and retries the call once. Token requests that
    fail to connect are retried with backoff.
    """

    def __init__(self, config: ApiClientConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._access_token: Optional[str] = config.auth.bearer_token
        self._token_expires_at: Optional[float] = None
        self._token_lock = asyncio.Lock()

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            kwargs: Dict[str, Any] = {
                "base_url": self.config.base_url,
                "timeout": self.config.timeout,
                "headers": {"Accept": "application/json", **self.config.headers},
                "verify": self.config.verify_ssl,
            }
            if self._transport is not None:
                kwargs["transport"] = self._transport
            self._client = httpx.AsyncClient(**kwargs)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def endpoint(self, entity_type: str) -> str:
        path = self.config.endpoints.get(entity_type)
        if path is None:
            path = f"/{entity_type}s"
        return path

    def _token_valid(self) -> bool:
        if not self._access_token:
            return False
        if self._token_expires_at is None:
            return True
        return time.monotonic() < self._token_expires_at

    async def ensure_access_token(self, force: bool = False) -> Optional[str]:
        """
        Return a usable access token, fetching a new one when needed.

        Raises:
            AuthenticationError: If the token endpoint rejects the credentials
        """
        auth = self.config.auth
        if not auth.token_url:
            return self._access_token

        async with self._token_lock:
            if not force and self._token_valid():
                return self._access_token

            data = {"grant_type": "client_credentials"}
            if auth.client_id:
                data["client_id"] = auth.client_id
            if auth.client_secret:
                data["client_secret"] = auth.client_secret
            if auth.scope:
                data["scope"] = auth.scope

            response = await self._post_token_request(auth.token_url, data)
            if response.status_code >= 400:
                raise AuthenticationError(
                    f"Token request failed with status {response.status_code}"
                )

            body = response.json()
            token = get_path(body, auth.token_field)
            if not token:
                raise AuthenticationError(f"Token response has no {auth.token_field!r}")

            self._access_token = token
            expires_in = get_path(body, auth.expires_field)
            if expires_in:
                ttl = max(float(expires_in) - auth.expiry_margin_seconds, 0.0)
                self._token_expires_at = time.monotonic() + ttl
            else:
                self._token_expires_at = None
            logger.debug("Access token refreshed")
            return self._access_token

    @retry(max_attempts=3, base_delay=0.2, max_delay=2.0, retryable_exceptions=[httpx.TransportError])
    async def _post_token_request(self, url: str, data: Dict[str, str]) -> httpx.Response:
        # Only connection failures are retried; any HTTP response is returned
        return await self.client.post(url, data=data)

    async def request(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None
    ) -> httpx.Response:
        """
        Send an authenticated request.

        Returns the response whatever its status; transport errors and
        timeouts propagate as httpx exceptions.
        """
        for attempt in range(2):
            token = await self.ensure_access_token(force=attempt > 0)
            headers = {"Authorization": f"Bearer {token}"} if token else {}
            response = await self.client.request(method, path, json=json, params=params, headers=headers)
            if response.status_code == 401 and attempt == 0 and self.config.auth.token_url:
                logger.info(f"{method} {path} returned 401, refreshing token")
                continue
            return response
        return response

    async def paginate(self, path: str, params: Optional[Dict[str, Any]] = None) -> AsyncIterator[Dict[str, Any]]:
        """
        Iterate over every item of a paginated list endpoint.

        Raises:
            httpx.HTTPStatusError: On an error response
        """
        pagination = self.config.pagination
        page_token: Optional[str] = None

        for _ in range(pagination.max_pages):
            query = dict(params or {})
            query[pagination.page_size_param] = pagination.page_size
            if page_token:
                query[pagination.page_token_param] = page_token

            response = await self.request("GET", path, params=query)
            response.raise_for_status()
            body = response.json()

            items: List[Dict[str, Any]] = body if isinstance(body, list) else (
                get_path(body, pagination.items_path) or []
            )
            for item in items:
                yield item

            page_token = None if isinstance(body, list) else get_path(body, pagination.next_token_path)
            if not page_token:
                return

        logger.warning(f"Stopped paging {path} after {pagination.max_pages} pages")
