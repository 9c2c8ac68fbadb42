"""
Tests for the in-memory webhook store.

Tests endpoint CRUD, tenant scoping, newest-first pagination, delivery
logs and concurrent appends.
"""

import asyncio
import os
import sys
import threading

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from ehr_webhooks.exceptions import ErrorCode, NotFoundError
from ehr_webhooks.types.webhooks import (
    DeliveryRecord,
    DeliveryStatus,
    EndpointStatus,
    WebhookEndpoint,
)
from ehr_webhooks.webhooks.storage import InMemoryWebhookStore, paginate


def make_endpoint(tenant_id: str = "tenant-a", **overrides) -> WebhookEndpoint:
    data = {
        "url": "https://hooks.example.com/ehr",
        "secret": "secret",
        "tenant_id": tenant_id,
        "events": ["Patient.*"],
    }
    data.update(overrides)
    return WebhookEndpoint(**data)


def make_record(endpoint_id: str, **overrides) -> DeliveryRecord:
    data = {
        "endpoint_id": endpoint_id,
        "event_id": "evt-1",
        "event_type": "Patient.create",
        "status": DeliveryStatus.SUCCESS,
        "status_code": 200,
        "payload": b'{"id":"evt-1"}',
    }
    data.update(overrides)
    return DeliveryRecord(**data)


class TestPaginate:
    """Tests for the paginate helper."""

    def test_first_page(self):
        assert paginate([1, 2, 3, 4, 5], 2, 0) == [1, 2]

    def test_last_partial_page(self):
        assert paginate([1, 2, 3, 4, 5], 2, 4) == [5]

    def test_offset_past_end(self):
        assert paginate([1, 2, 3], 2, 3) == []

    def test_non_positive_limit(self):
        assert paginate([1, 2, 3], 0, 0) == []


class TestEndpoints:
    """Tests for endpoint storage."""

    @pytest.mark.asyncio
    async def test_create_and_get(self):
        store = InMemoryWebhookStore()
        endpoint = make_endpoint()
        await store.create_endpoint(endpoint)

        loaded = await store.get_endpoint(endpoint.id)
        assert loaded == endpoint

    @pytest.mark.asyncio
    async def test_get_unknown_raises_not_found(self):
        store = InMemoryWebhookStore()
        with pytest.raises(NotFoundError) as exc_info:
            await store.get_endpoint("missing")
        assert exc_info.value.error_code == ErrorCode.ENDPOINT_NOT_FOUND
        assert exc_info.value.status_code == 404

    @pytest.mark.asyncio
    async def test_returned_endpoint_is_a_copy(self):
        """Mutating a returned endpoint should not change the stored one."""
        store = InMemoryWebhookStore()
        endpoint = make_endpoint()
        await store.create_endpoint(endpoint)

        loaded = await store.get_endpoint(endpoint.id)
        loaded.events.append("Encounter.*")

        assert (await store.get_endpoint(endpoint.id)).events == ["Patient.*"]

    @pytest.mark.asyncio
    async def test_list_is_newest_first(self):
        store = InMemoryWebhookStore()
        created = [make_endpoint() for _ in range(3)]
        for endpoint in created:
            await store.create_endpoint(endpoint)

        endpoints, total = await store.list_endpoints("tenant-a", 10, 0)
        assert total == 3
        assert [e.id for e in endpoints] == [e.id for e in reversed(created)]

    @pytest.mark.asyncio
    async def test_list_is_scoped_to_tenant(self):
        store = InMemoryWebhookStore()
        await store.create_endpoint(make_endpoint("tenant-a"))
        await store.create_endpoint(make_endpoint("tenant-b"))
        await store.create_endpoint(make_endpoint("tenant-a"))

        endpoints, total = await store.list_endpoints("tenant-a", 10, 0)
        assert total == 2
        assert all(e.tenant_id == "tenant-a" for e in endpoints)

        _, everything = await store.list_endpoints("", 10, 0)
        assert everything == 3

    @pytest.mark.asyncio
    async def test_list_pagination(self):
        store = InMemoryWebhookStore()
        for _ in range(5):
            await store.create_endpoint(make_endpoint())

        first, total = await store.list_endpoints("tenant-a", 2, 0)
        second, _ = await store.list_endpoints("tenant-a", 2, 2)
        third, _ = await store.list_endpoints("tenant-a", 2, 4)
        beyond, beyond_total = await store.list_endpoints("tenant-a", 2, 10)

        assert total == 5
        assert len(first) == 2 and len(second) == 2 and len(third) == 1
        assert len({e.id for e in first + second + third}) == 5
        assert beyond == [] and beyond_total == 5

    @pytest.mark.asyncio
    async def test_snapshot_returns_every_endpoint_of_tenant(self):
        store = InMemoryWebhookStore()
        created = [make_endpoint() for _ in range(5)]
        for endpoint in created:
            await store.create_endpoint(endpoint)
        await store.create_endpoint(make_endpoint("tenant-b"))

        snapshot = await store.snapshot_endpoints("tenant-a", 2)
        assert [e.id for e in snapshot] == [e.id for e in reversed(created)]
        assert len(await store.snapshot_endpoints("", 2)) == 6

        # Later deletes do not change a snapshot already taken
        await store.delete_endpoint(created[0].id)
        assert len(snapshot) == 5

    @pytest.mark.asyncio
    async def test_update_status(self):
        store = InMemoryWebhookStore()
        endpoint = make_endpoint()
        await store.create_endpoint(endpoint)

        paused = await store.update_status(endpoint.id, EndpointStatus.PAUSED)
        assert paused.status == EndpointStatus.PAUSED
        assert (await store.get_endpoint(endpoint.id)).status == EndpointStatus.PAUSED

        resumed = await store.update_status(endpoint.id, EndpointStatus.ACTIVE)
        assert resumed.is_active

    @pytest.mark.asyncio
    async def test_update_status_unknown(self):
        store = InMemoryWebhookStore()
        with pytest.raises(NotFoundError):
            await store.update_status("missing", EndpointStatus.PAUSED)

    @pytest.mark.asyncio
    async def test_delete_endpoint(self):
        store = InMemoryWebhookStore()
        endpoint = make_endpoint()
        await store.create_endpoint(endpoint)

        await store.delete_endpoint(endpoint.id)

        with pytest.raises(NotFoundError):
            await store.get_endpoint(endpoint.id)
        _, total = await store.list_endpoints("tenant-a", 10, 0)
        assert total == 0

    @pytest.mark.asyncio
    async def test_delete_unknown(self):
        store = InMemoryWebhookStore()
        with pytest.raises(NotFoundError):
            await store.delete_endpoint("missing")


class TestDeliveries:
    """Tests for delivery record storage."""

    @pytest.mark.asyncio
    async def test_append_and_get(self):
        store = InMemoryWebhookStore()
        record = make_record("ep-1")
        await store.append_delivery(record)

        loaded = await store.get_delivery(record.id)
        assert loaded == record
        assert loaded.payload == b'{"id":"evt-1"}'

    @pytest.mark.asyncio
    async def test_get_unknown_delivery(self):
        store = InMemoryWebhookStore()
        with pytest.raises(NotFoundError) as exc_info:
            await store.get_delivery("missing")
        assert exc_info.value.error_code == ErrorCode.DELIVERY_NOT_FOUND

    @pytest.mark.asyncio
    async def test_list_deliveries_newest_first(self):
        store = InMemoryWebhookStore()
        records = [make_record("ep-1", attempt=n) for n in range(1, 4)]
        for record in records:
            await store.append_delivery(record)
        await store.append_delivery(make_record("ep-2"))

        page, total = await store.list_deliveries("ep-1", 10, 0)
        assert total == 3
        assert [r.attempt for r in page] == [3, 2, 1]

    @pytest.mark.asyncio
    async def test_list_deliveries_unknown_endpoint_is_empty(self):
        store = InMemoryWebhookStore()
        page, total = await store.list_deliveries("missing", 10, 0)
        assert page == [] and total == 0

    @pytest.mark.asyncio
    async def test_history_survives_endpoint_deletion(self):
        store = InMemoryWebhookStore()
        endpoint = make_endpoint()
        await store.create_endpoint(endpoint)
        record = make_record(endpoint.id)
        await store.append_delivery(record)

        await store.delete_endpoint(endpoint.id)

        page, total = await store.list_deliveries(endpoint.id, 10, 0)
        assert total == 1 and page[0].id == record.id
        assert (await store.get_delivery(record.id)).id == record.id

    @pytest.mark.asyncio
    async def test_concurrent_appends_from_tasks(self):
        store = InMemoryWebhookStore()
        records = [make_record("ep-1") for _ in range(50)]

        await asyncio.gather(*(store.append_delivery(r) for r in records))

        page, total = await store.list_deliveries("ep-1", 100, 0)
        assert total == 50
        assert {r.id for r in page} == {r.id for r in records}

    def test_concurrent_appends_from_threads(self):
        """Appends from many threads should never lose records."""
        store = InMemoryWebhookStore()
        records = [make_record("ep-1") for _ in range(40)]
        barrier = threading.Barrier(len(records))

        def append(record):
            barrier.wait()
            asyncio.run(store.append_delivery(record))

        threads = [threading.Thread(target=append, args=(r,)) for r in records]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        page, total = asyncio.run(store.list_deliveries("ep-1", 100, 0))
        assert total == 40
        assert {r.id for r in page} == {r.id for r in records}


class TestHealth:
    """Tests for store health reporting."""

    @pytest.mark.asyncio
    async def test_health_check(self):
        store = InMemoryWebhookStore()
        status = await store.health_check()
        assert status == {"backend": "memory", "connected": True}
