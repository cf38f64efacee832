import json

import pytest
from prometheus_client import CollectorRegistry

from conftest import add_remote_actor
from nolto_federation.core.metrics import FederationMetrics
from nolto_federation.services.federation import FederationService, NoInboxError
from nolto_federation.services.webfinger import UserNotFoundError

ACTOR_URL = "https://example.social/users/alice"
INBOX = "https://example.social/users/alice/inbox"


@pytest.mark.asyncio
async def test_send_activity_queues_for_resolved_inbox(service, remote, repository) -> None:
    add_remote_actor(remote)
    activity = {"type": "Follow", "object": ACTOR_URL}

    item_id = await service.send_activity("alice@example.social", activity)
    item = repository.get_queue_item(item_id)
    assert item.inbox_url == INBOX
    assert item.target_host == "example.social"
    assert json.loads(item.payload) == activity


@pytest.mark.asyncio
async def test_send_activity_retries_a_cached_entry_without_inbox(service, remote) -> None:
    add_remote_actor(remote)
    remote.route("GET", ACTOR_URL, status_code=503, text="later")
    assert (await service.resolve("alice@example.social")).inbox_url is None

    add_remote_actor(remote)
    item_id = await service.send_activity("alice@example.social", {"type": "Follow"})
    assert item_id
    assert remote.count("https://example.social/.well-known/webfinger") == 2


@pytest.mark.asyncio
async def test_send_activity_without_inbox_raises(service, remote, repository) -> None:
    add_remote_actor(remote, with_inbox=False)
    with pytest.raises(NoInboxError) as excinfo:
        await service.send_activity("alice@example.social", {"type": "Follow"})
    assert excinfo.value.reason == "no_inbox"
    assert service.queue_health().total_pending == 0


@pytest.mark.asyncio
async def test_send_activity_propagates_resolution_errors(service, remote) -> None:
    with pytest.raises(UserNotFoundError):
        await service.send_activity("nobody@example.social", {"type": "Follow"})


@pytest.mark.asyncio
async def test_invalidate_actor_forces_refetch(service, remote, clock, settings) -> None:
    add_remote_actor(remote)
    await service.resolve("alice@example.social")
    assert await service.invalidate_actor(ACTOR_URL) is True

    clock.advance(settings.webfinger_cache_ttl_seconds + 1)
    await service.resolve("alice@example.social")
    assert remote.count(ACTOR_URL) == 2


@pytest.mark.asyncio
async def test_metrics_are_recorded(settings, repository, http_client, remote, clock) -> None:
    registry = CollectorRegistry()
    service = FederationService.build(
        settings,
        repository,
        http_client,
        metrics=FederationMetrics(registry),
        clock=clock,
    )
    add_remote_actor(remote)
    await service.resolve("alice@example.social")
    await service.resolve("alice@example.social")
    with pytest.raises(UserNotFoundError):
        await service.resolve("nobody@example.social")
    service.queue_health()

    def sample(name, **labels):
        return registry.get_sample_value(name, labels)

    assert sample("nolto_federation_resolutions_total", outcome="resolved") == 1.0
    assert sample("nolto_federation_resolutions_total", outcome="cache_hit") == 1.0
    assert sample("nolto_federation_resolutions_total", outcome="user_not_found") == 1.0
    assert sample("nolto_federation_cache_hits_total", cache="webfinger", tier="memory") == 1.0
    assert (
        sample("nolto_federation_outbound_requests_total", endpoint="webfinger", outcome="success")
        == 1.0
    )
    assert (
        sample("nolto_federation_outbound_requests_total", endpoint="webfinger", outcome="error")
        == 1.0
    )
    assert sample("nolto_federation_queue_items", state="pending") == 0.0
