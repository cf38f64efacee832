import pytest

from conftest import add_remote_actor
from nolto_federation.services.maintenance import DAY_SECONDS, build_cleanup_rules
from nolto_federation.services.queue import partition_for_host

CATEGORIES = [
    "failed_queue_items",
    "stalled_processing",
    "expired_webfinger_cache",
    "expired_actor_cache",
    "federation_request_logs",
    "acknowledged_alerts",
]


def _seed_one_of_everything(service, repository) -> str:
    """Writes one row per cleanup category and returns the stalled item id."""
    repository.upsert_webfinger_entry(
        "old@example.social", "https://example.social/users/old", None, ttl_seconds=10
    )
    repository.upsert_actor_document(
        "https://example.social/users/old", {"id": "old"}, ttl_seconds=10
    )

    partition = partition_for_host("example.social", service.queue.partitions)
    failed_id = service.queue.enqueue("https://example.social/inbox", {"n": 1})
    service.queue.claim(partition, limit=1)
    repository.fail_item(failed_id, "gone", max_attempts=1, retry_delay_seconds=60)
    stalled_id = service.queue.enqueue("https://example.social/inbox", {"n": 2})
    service.queue.claim(partition, limit=1)

    repository.record_request_log(
        remote_host="example.social",
        endpoint="webfinger",
        direction="outbound",
        success=True,
        response_time_ms=12,
    )
    alert = repository.insert_alert_if_absent(
        alert_type="queue_backlog", severity="warning", message="old"
    )
    repository.acknowledge_alert(alert.id)
    return stalled_id


def test_rules_cover_every_category(settings) -> None:
    assert [rule.category for rule in build_cleanup_rules(settings)] == CATEGORIES


def test_nothing_to_clean_on_a_fresh_database(service) -> None:
    report = service.cleanup(dry_run=True)
    assert report.dry_run is True
    assert report.total_cleaned == 0
    assert report.by_category == {category: 0 for category in CATEGORIES}


def test_dry_run_predicts_the_real_run(service, repository, clock) -> None:
    _seed_one_of_everything(service, repository)
    clock.advance(31 * DAY_SECONDS)

    dry = service.cleanup(dry_run=True)
    assert dry.by_category == {category: 1 for category in CATEGORIES}
    # A dry run changes nothing.
    assert service.cleanup(dry_run=True).by_category == dry.by_category

    real = service.cleanup(dry_run=False)
    assert real.dry_run is False
    assert real.by_category == dry.by_category
    assert real.total_cleaned == 6

    assert service.cleanup(dry_run=True).total_cleaned == 0


def test_recent_rows_are_kept(service, repository, clock) -> None:
    _seed_one_of_everything(service, repository)
    clock.advance(60)

    report = service.cleanup(dry_run=False)
    assert report.by_category["expired_webfinger_cache"] == 1
    assert report.by_category["expired_actor_cache"] == 1
    assert report.by_category["failed_queue_items"] == 0
    assert report.by_category["stalled_processing"] == 0
    assert report.by_category["federation_request_logs"] == 0
    assert report.by_category["acknowledged_alerts"] == 0


def test_stalled_items_return_to_pending(service, repository, clock, settings) -> None:
    stalled_id = _seed_one_of_everything(service, repository)
    clock.advance(settings.queue_stall_threshold_minutes * 60 + 1)

    service.cleanup(dry_run=False)
    item = repository.get_queue_item(stalled_id)
    assert item.state == "pending"
    assert item.started_at is None
    assert item.attempts == 0

    partition = partition_for_host("example.social", service.queue.partitions)
    assert [claimed.id for claimed in service.queue.claim(partition)] == [stalled_id]


def test_open_alerts_are_never_cleaned(service, repository, clock) -> None:
    repository.insert_alert_if_absent(
        alert_type="queue_failures", severity="warning", message="still open"
    )
    clock.advance(365 * DAY_SECONDS)
    assert service.cleanup(dry_run=False).by_category["acknowledged_alerts"] == 0
    assert len(service.list_alerts()) == 1


@pytest.mark.asyncio
async def test_prewarm_refreshes_top_entries_and_keeps_hit_counts(
    service, remote, repository
) -> None:
    add_remote_actor(remote)
    for _ in range(3):
        await service.resolve("alice@example.social")

    report = await service.prewarm()
    assert report.refreshed == 1
    assert report.total == 1
    assert report.failures == {}
    assert remote.count("https://example.social/.well-known/webfinger") == 2
    assert repository.get_webfinger_entry("alice@example.social").hit_count == 2


@pytest.mark.asyncio
async def test_prewarm_reports_failures_and_continues(service, remote, repository) -> None:
    add_remote_actor(remote)
    add_remote_actor(remote, username="carol", domain="gone.example")
    await service.resolve("alice@example.social")
    await service.resolve("carol@gone.example")
    remote.route(
        "GET", "https://gone.example/.well-known/webfinger", status_code=404, json={}
    )

    report = await service.prewarm()
    assert report.total == 2
    assert report.refreshed == 1
    assert report.failures == {"carol@gone.example": "user_not_found"}
    # The stale entry is left for expiry rather than removed.
    assert repository.get_webfinger_entry("carol@gone.example") is not None


@pytest.mark.asyncio
async def test_prewarm_honours_limit(service, remote, repository) -> None:
    for name in ("alice", "bob", "carol"):
        add_remote_actor(remote, username=name)
        await service.resolve(f"{name}@example.social")
    for _ in range(2):
        await service.resolve("carol@example.social")

    report = await service.prewarmer.prewarm(limit=1)
    assert report.total == 1
    assert report.refreshed == 1
    assert remote.count("https://example.social/.well-known/webfinger") == 4
