"""
Webhook endpoint and delivery log storage.

Provides storage for registered endpoints and the append-only delivery log
with:
- An in-memory store for local development and testing
- A Redis store for durable, multi-process deployments
- Newest-first pagination with totals independent of the page window

Both stores are safe to call concurrently from many tasks and threads.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence, Tuple, TypeVar

import redis.asyncio as redis
from redis.exceptions import RedisError

from ehr_webhooks.config import get_settings
from ehr_webhooks.exceptions import (
    StorageError,
    delivery_not_found,
    endpoint_not_found,
)
from ehr_webhooks.types.webhooks import (
    DeliveryRecord,
    EndpointStatus,
    WebhookEndpoint,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def paginate(items: Sequence[T], limit: int, offset: int) -> List[T]:
    """
    Slice a newest-first sequence into a page.

    A non-positive limit or an offset past the end yields an empty page.
    """
    if limit <= 0 or offset < 0 or offset >= len(items):
        return []
    return list(items[offset:offset + limit])


class WebhookStore(ABC):
    """Abstract base class for webhook storage implementations."""

    @abstractmethod
    async def create_endpoint(self, endpoint: WebhookEndpoint) -> None:
        """Persist a newly registered endpoint."""
        pass

    @abstractmethod
    async def get_endpoint(self, endpoint_id: str) -> WebhookEndpoint:
        """Get an endpoint by ID. Raises NotFoundError if unknown."""
        pass

    @abstractmethod
    async def list_endpoints(
        self,
        tenant_id: str,
        limit: int,
        offset: int,
    ) -> Tuple[List[WebhookEndpoint], int]:
        """List a tenant's endpoints newest first (all tenants when tenant_id is empty)."""
        pass

    @abstractmethod
    async def snapshot_endpoints(self, tenant_id: str, batch_size: int) -> List[WebhookEndpoint]:
        """Read every endpoint of a tenant from one fixed view of the index, newest first."""
        pass

    @abstractmethod
    async def update_status(
        self,
        endpoint_id: str,
        status: EndpointStatus,
    ) -> WebhookEndpoint:
        """Set an endpoint's status. Raises NotFoundError if unknown."""
        pass

    @abstractmethod
    async def delete_endpoint(self, endpoint_id: str) -> None:
        """Remove an endpoint, keeping its delivery history. Raises NotFoundError if unknown."""
        pass

    @abstractmethod
    async def append_delivery(self, record: DeliveryRecord) -> None:
        """Append a delivery record to the log."""
        pass

    @abstractmethod
    async def list_deliveries(
        self,
        endpoint_id: str,
        limit: int,
        offset: int,
    ) -> Tuple[List[DeliveryRecord], int]:
        """List an endpoint's delivery records newest first."""
        pass

    @abstractmethod
    async def get_delivery(self, delivery_id: str) -> DeliveryRecord:
        """Get a delivery record by ID. Raises NotFoundError if unknown."""
        pass

    async def close(self) -> None:
        """Release backend resources."""
        return None

    async def health_check(self) -> Dict[str, object]:
        """Report backend connectivity."""
        return {"backend": self.backend_name, "connected": True}

    @property
    def backend_name(self) -> str:
        return self.__class__.__name__


# =============================================================================
# In-memory store
# =============================================================================


class InMemoryWebhookStore(WebhookStore):
    """In-memory storage for local development and testing."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._endpoints: Dict[str, WebhookEndpoint] = {}
        self._endpoint_order: List[str] = []
        self._deliveries: Dict[str, DeliveryRecord] = {}
        self._endpoint_deliveries: Dict[str, List[str]] = {}  # endpoint_id -> [delivery_ids]
        logger.info("Initialized in-memory webhook store")

    @property
    def backend_name(self) -> str:
        return "memory"

    async def create_endpoint(self, endpoint: WebhookEndpoint) -> None:
        with self._lock:
            self._endpoints[endpoint.id] = endpoint.model_copy(deep=True)
            self._endpoint_order.append(endpoint.id)

    async def get_endpoint(self, endpoint_id: str) -> WebhookEndpoint:
        with self._lock:
            endpoint = self._endpoints.get(endpoint_id)
            if endpoint is None:
                raise endpoint_not_found(endpoint_id)
            return endpoint.model_copy(deep=True)

    async def list_endpoints(
        self,
        tenant_id: str,
        limit: int,
        offset: int,
    ) -> Tuple[List[WebhookEndpoint], int]:
        with self._lock:
            matching = [
                self._endpoints[endpoint_id]
                for endpoint_id in reversed(self._endpoint_order)
                if not tenant_id or self._endpoints[endpoint_id].tenant_id == tenant_id
            ]
            page = paginate(matching, limit, offset)
            return [endpoint.model_copy(deep=True) for endpoint in page], len(matching)

    async def snapshot_endpoints(self, tenant_id: str, batch_size: int) -> List[WebhookEndpoint]:
        with self._lock:
            return [
                self._endpoints[endpoint_id].model_copy(deep=True)
                for endpoint_id in reversed(self._endpoint_order)
                if not tenant_id or self._endpoints[endpoint_id].tenant_id == tenant_id
            ]

    async def update_status(
        self,
        endpoint_id: str,
        status: EndpointStatus,
    ) -> WebhookEndpoint:
        with self._lock:
            endpoint = self._endpoints.get(endpoint_id)
            if endpoint is None:
                raise endpoint_not_found(endpoint_id)
            updated = endpoint.model_copy(update={"status": status}, deep=True)
            self._endpoints[endpoint_id] = updated
            return updated.model_copy(deep=True)

    async def delete_endpoint(self, endpoint_id: str) -> None:
        with self._lock:
            if endpoint_id not in self._endpoints:
                raise endpoint_not_found(endpoint_id)
            del self._endpoints[endpoint_id]
            self._endpoint_order.remove(endpoint_id)

    async def append_delivery(self, record: DeliveryRecord) -> None:
        with self._lock:
            self._deliveries[record.id] = record.model_copy()
            self._endpoint_deliveries.setdefault(record.endpoint_id, []).append(record.id)

    async def list_deliveries(
        self,
        endpoint_id: str,
        limit: int,
        offset: int,
    ) -> Tuple[List[DeliveryRecord], int]:
        with self._lock:
            delivery_ids = self._endpoint_deliveries.get(endpoint_id, [])
            newest_first = list(reversed(delivery_ids))
            page = paginate(newest_first, limit, offset)
            return (
                [self._deliveries[delivery_id].model_copy() for delivery_id in page],
                len(newest_first),
            )

    async def get_delivery(self, delivery_id: str) -> DeliveryRecord:
        with self._lock:
            record = self._deliveries.get(delivery_id)
            if record is None:
                raise delivery_not_found(delivery_id)
            return record.model_copy()


# =============================================================================
# Redis store
# =============================================================================


class RedisWebhookStore(WebhookStore):
    """
    Redis-backed webhook storage.

    Endpoints and delivery records are stored as JSON documents. Ordering
    indexes are sorted sets scored by a global INCR sequence, so pages come
    back newest first even when several processes write at once. Multi-key
    writes go through MULTI/EXEC pipelines.
    """

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        redis_url: Optional[str] = None,
        key_prefix: str = "webhook",
    ) -> None:
        """
        Initialize the store.

        Args:
            client: Existing redis.asyncio client (takes precedence over redis_url)
            redis_url: Connection URL used to create a client
            key_prefix: Prefix for every key written by the store
        """
        if client is None:
            if not redis_url:
                raise ValueError("RedisWebhookStore requires a client or redis_url")
            client = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_connect_timeout=5.0,
                socket_timeout=5.0,
                retry_on_timeout=True,
            )
            self._owns_client = True
        else:
            self._owns_client = False
        self._redis = client
        self._prefix = key_prefix
        logger.info(f"Initialized Redis webhook store (prefix={key_prefix})")

    @property
    def backend_name(self) -> str:
        return "redis"

    # Key helpers

    def _seq_key(self) -> str:
        return f"{self._prefix}:seq"

    def _endpoint_key(self, endpoint_id: str) -> str:
        return f"{self._prefix}:endpoint:{endpoint_id}"

    def _all_endpoints_key(self) -> str:
        return f"{self._prefix}:endpoints"

    def _tenant_endpoints_key(self, tenant_id: str) -> str:
        return f"{self._prefix}:tenant:{tenant_id}:endpoints"

    def _delivery_key(self, delivery_id: str) -> str:
        return f"{self._prefix}:delivery:{delivery_id}"

    def _endpoint_deliveries_key(self, endpoint_id: str) -> str:
        return f"{self._prefix}:endpoint:{endpoint_id}:deliveries"

    async def _next_seq(self) -> int:
        return int(await self._redis.incr(self._seq_key()))

    async def _page_ids(self, index_key: str, limit: int, offset: int) -> Tuple[List[str], int]:
        total = int(await self._redis.zcard(index_key))
        if limit <= 0 or offset < 0 or offset >= total:
            return [], total
        ids = await self._redis.zrevrange(index_key, offset, offset + limit - 1)
        return list(ids), total

    # Endpoint operations

    async def create_endpoint(self, endpoint: WebhookEndpoint) -> None:
        try:
            seq = await self._next_seq()
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(self._endpoint_key(endpoint.id), endpoint.model_dump_json())
                pipe.zadd(self._all_endpoints_key(), {endpoint.id: seq})
                pipe.zadd(self._tenant_endpoints_key(endpoint.tenant_id), {endpoint.id: seq})
                await pipe.execute()
        except RedisError as e:
            raise StorageError(operation="create_endpoint", original_error=e) from e

    async def get_endpoint(self, endpoint_id: str) -> WebhookEndpoint:
        try:
            raw = await self._redis.get(self._endpoint_key(endpoint_id))
        except RedisError as e:
            raise StorageError(operation="get_endpoint", original_error=e) from e
        if raw is None:
            raise endpoint_not_found(endpoint_id)
        return WebhookEndpoint.model_validate_json(raw)

    async def list_endpoints(
        self,
        tenant_id: str,
        limit: int,
        offset: int,
    ) -> Tuple[List[WebhookEndpoint], int]:
        index_key = (
            self._tenant_endpoints_key(tenant_id) if tenant_id else self._all_endpoints_key()
        )
        try:
            ids, total = await self._page_ids(index_key, limit, offset)
            if not ids:
                return [], total
            values = await self._redis.mget([self._endpoint_key(i) for i in ids])
        except RedisError as e:
            raise StorageError(operation="list_endpoints", original_error=e) from e
        # Skip documents deleted between the index read and the fetch
        endpoints = [WebhookEndpoint.model_validate_json(v) for v in values if v is not None]
        return endpoints, total

    async def snapshot_endpoints(self, tenant_id: str, batch_size: int) -> List[WebhookEndpoint]:
        index_key = (
            self._tenant_endpoints_key(tenant_id) if tenant_id else self._all_endpoints_key()
        )
        batch_size = max(batch_size, 1)
        endpoints: List[WebhookEndpoint] = []
        try:
            ids = await self._redis.zrevrange(index_key, 0, -1)
            for start in range(0, len(ids), batch_size):
                batch = ids[start:start + batch_size]
                values = await self._redis.mget([self._endpoint_key(i) for i in batch])
                endpoints.extend(
                    WebhookEndpoint.model_validate_json(v) for v in values if v is not None
                )
        except RedisError as e:
            raise StorageError(operation="snapshot_endpoints", original_error=e) from e
        return endpoints

    async def update_status(
        self,
        endpoint_id: str,
        status: EndpointStatus,
    ) -> WebhookEndpoint:
        endpoint = await self.get_endpoint(endpoint_id)
        updated = endpoint.model_copy(update={"status": status})
        try:
            written = await self._redis.set(
                self._endpoint_key(endpoint_id),
                updated.model_dump_json(),
                xx=True,
            )
        except RedisError as e:
            raise StorageError(operation="update_status", original_error=e) from e
        if not written:
            raise endpoint_not_found(endpoint_id)
        return updated

    async def delete_endpoint(self, endpoint_id: str) -> None:
        endpoint = await self.get_endpoint(endpoint_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.delete(self._endpoint_key(endpoint_id))
                pipe.zrem(self._all_endpoints_key(), endpoint_id)
                pipe.zrem(self._tenant_endpoints_key(endpoint.tenant_id), endpoint_id)
                deleted, _, _ = await pipe.execute()
        except RedisError as e:
            raise StorageError(operation="delete_endpoint", original_error=e) from e
        if not deleted:
            raise endpoint_not_found(endpoint_id)

    # Delivery log operations

    async def append_delivery(self, record: DeliveryRecord) -> None:
        try:
            seq = await self._next_seq()
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(self._delivery_key(record.id), record.model_dump_json())
                pipe.zadd(self._endpoint_deliveries_key(record.endpoint_id), {record.id: seq})
                await pipe.execute()
        except RedisError as e:
            raise StorageError(operation="append_delivery", original_error=e) from e

    async def list_deliveries(
        self,
        endpoint_id: str,
        limit: int,
        offset: int,
    ) -> Tuple[List[DeliveryRecord], int]:
        try:
            ids, total = await self._page_ids(
                self._endpoint_deliveries_key(endpoint_id), limit, offset
            )
            if not ids:
                return [], total
            values = await self._redis.mget([self._delivery_key(i) for i in ids])
        except RedisError as e:
            raise StorageError(operation="list_deliveries", original_error=e) from e
        records = [DeliveryRecord.model_validate_json(v) for v in values if v is not None]
        return records, total

    async def get_delivery(self, delivery_id: str) -> DeliveryRecord:
        try:
            raw = await self._redis.get(self._delivery_key(delivery_id))
        except RedisError as e:
            raise StorageError(operation="get_delivery", original_error=e) from e
        if raw is None:
            raise delivery_not_found(delivery_id)
        return DeliveryRecord.model_validate_json(raw)

    async def health_check(self) -> Dict[str, object]:
        try:
            await self._redis.ping()
        except RedisError as e:
            logger.warning(f"Redis health check failed: {e}")
            return {"backend": self.backend_name, "connected": False, "error": str(e)[:100]}
        return {"backend": self.backend_name, "connected": True}

    async def close(self) -> None:
        if not self._owns_client:
            return
        try:
            await self._redis.aclose()
            logger.info("Redis connection closed")
        except RedisError as e:
            logger.warning(f"Error closing Redis connection: {str(e)}")


# =============================================================================
# Store selection
# =============================================================================


class WebhookStorage:
    """
    Factory class for webhook storage.

    Selects the Redis store when REDIS_URL is configured, otherwise the
    in-memory store.
    """

    _instance: Optional[WebhookStore] = None

    @classmethod
    def get_store(cls) -> WebhookStore:
        """Get or create the store instance."""
        if cls._instance is not None:
            return cls._instance

        settings = get_settings()
        if settings.is_redis_configured:
            cls._instance = RedisWebhookStore(
                redis_url=settings.redis.redis_url,
                key_prefix=settings.redis.redis_key_prefix,
            )
            logger.info("Using Redis storage for webhooks")
        else:
            logger.info("Redis not configured (REDIS_URL not set). Using in-memory webhook storage.")
            cls._instance = InMemoryWebhookStore()

        return cls._instance

    @classmethod
    def reset(cls) -> None:
        """Reset the store instance. Useful for testing."""
        cls._instance = None


def get_webhook_store() -> WebhookStore:
    """Get the webhook store instance."""
    return WebhookStorage.get_store()
