import json

import httpx
import pytest

from nolto_federation.services.delivery_worker import DeliveryWorker

INBOX = "https://example.social/users/alice/inbox"
ACTIVITY = {
    "@context": "https://www.w3.org/ns/activitystreams",
    "type": "Follow",
    "actor": "https://nolto.social/users/bob",
    "object": "https://example.social/users/alice",
}


@pytest.fixture
def worker(settings, service, http_client) -> DeliveryWorker:
    return DeliveryWorker(settings, service.queue, service.health, http_client)


@pytest.mark.asyncio
async def test_successful_delivery_removes_item(worker, service, remote, repository) -> None:
    remote.route("POST", INBOX, status_code=202, text="")
    item_id = service.queue.enqueue(INBOX, ACTIVITY)

    assert await worker.run_once() == 1
    assert repository.get_queue_item(item_id) is None

    (request,) = remote.requests
    assert request.method == "POST"
    assert request.headers["content-type"] == "application/activity+json"
    assert json.loads(request.content) == ACTIVITY
    assert repository.get_instance("example.social").request_count_24h == 1


@pytest.mark.asyncio
async def test_server_error_schedules_retry(worker, service, remote, repository, clock, settings) -> None:
    remote.route("POST", INBOX, status_code=503, text="busy")
    item_id = service.queue.enqueue(INBOX, ACTIVITY)

    await worker.run_once()
    item = repository.get_queue_item(item_id)
    assert item.state == "pending"
    assert item.attempts == 1
    assert item.last_error == "HTTP 503"
    assert item.retry_at == int(clock.now) + settings.queue_retry_delay_seconds

    # Not due yet, so nothing is attempted.
    assert await worker.run_once() == 0


@pytest.mark.asyncio
async def test_transport_failure_counts_against_instance(worker, service, remote, repository) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    remote.route("POST", INBOX, handler=refuse)
    item_id = service.queue.enqueue(INBOX, ACTIVITY)

    await worker.run_once()
    assert repository.get_queue_item(item_id).attempts == 1
    instance = repository.get_instance("example.social")
    assert instance.error_count_24h == 1
    assert instance.status == "degraded"


@pytest.mark.asyncio
async def test_blocked_instance_is_not_contacted(worker, service, remote, repository) -> None:
    remote.route("POST", INBOX, status_code=202, text="")
    item_id = service.queue.enqueue(INBOX, ACTIVITY)
    service.block_instance("example.social", "spam")

    await worker.run_once()
    item = repository.get_queue_item(item_id)
    assert item.attempts == 1
    assert "blocked" in item.last_error
    assert remote.requests == []


@pytest.mark.asyncio
async def test_open_circuit_defers_without_charging_attempt(
    worker, service, remote, repository, clock, settings
) -> None:
    remote.route("POST", INBOX, status_code=202, text="")
    for _ in range(settings.circuit_breaker_threshold):
        service.health.record_attempt("example.social", False)
    item_id = service.queue.enqueue(INBOX, ACTIVITY)

    await worker.run_once()
    item = repository.get_queue_item(item_id)
    assert item.state == "pending"
    assert item.attempts == 0
    assert item.retry_at == int(clock.now) + int(settings.circuit_breaker_timeout)
    assert remote.requests == []

    clock.advance(settings.circuit_breaker_timeout + 1)
    assert await worker.run_once() == 1
    assert repository.get_queue_item(item_id) is None


@pytest.mark.asyncio
async def test_stop_ends_the_loop(worker) -> None:
    await worker.stop()
    assert worker.running is False
