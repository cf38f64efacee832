import pytest

from nolto_federation.services.alerting import (
    ALERT_INSTANCE_UNHEALTHY,
    ALERT_QUEUE_BACKLOG,
    ALERT_QUEUE_FAILURES,
    AlertNotFoundError,
    AlertService,
)
from nolto_federation.services.queue import FederationQueue, partition_for_host

INBOX = "https://example.social/users/alice/inbox"


@pytest.fixture
def queue(settings, repository) -> FederationQueue:
    return FederationQueue(settings, repository)


@pytest.fixture
def alerts(settings, repository, queue) -> AlertService:
    return AlertService(settings, repository, queue)


def test_quiet_system_raises_nothing(alerts) -> None:
    assert alerts.check() == []
    assert alerts.list_alerts() == []


def test_backlog_alert_is_raised_once(alerts, queue, clock, settings) -> None:
    queue.enqueue(INBOX, {"type": "Create"})
    clock.advance((settings.alert_backlog_minutes + 1) * 60)

    created = alerts.check()
    assert [alert.alert_type for alert in created] == [ALERT_QUEUE_BACKLOG]
    assert created[0].severity == "warning"
    assert created[0].metadata["total_pending"] == 1
    assert created[0].acknowledged_at is None

    clock.advance(60)
    assert alerts.check() == []
    assert len(alerts.list_alerts()) == 1


def test_very_old_backlog_is_critical(alerts, queue, clock, settings) -> None:
    queue.enqueue(INBOX, {"type": "Create"})
    clock.advance((settings.alert_backlog_minutes * 4 + 1) * 60)
    (alert,) = alerts.check()
    assert alert.severity == "critical"


def test_acknowledged_alert_can_be_raised_again(alerts, queue, clock, settings) -> None:
    queue.enqueue(INBOX, {"type": "Create"})
    clock.advance((settings.alert_backlog_minutes + 1) * 60)
    (first,) = alerts.check()

    acknowledged = alerts.acknowledge(first.id)
    assert acknowledged.acknowledged_at == int(clock.now)
    assert alerts.list_alerts() == []
    assert [alert.id for alert in alerts.list_alerts(unacknowledged_only=False)] == [first.id]

    (second,) = alerts.check()
    assert second.id != first.id
    assert second.alert_type == ALERT_QUEUE_BACKLOG


def test_acknowledge_is_idempotent(alerts, queue, clock, settings) -> None:
    queue.enqueue(INBOX, {"type": "Create"})
    clock.advance((settings.alert_backlog_minutes + 1) * 60)
    (alert,) = alerts.check()
    first = alerts.acknowledge(alert.id)
    clock.advance(60)
    again = alerts.acknowledge(alert.id)
    assert again.acknowledged_at == first.acknowledged_at


def test_acknowledging_unknown_alert_raises(alerts) -> None:
    with pytest.raises(AlertNotFoundError):
        alerts.acknowledge("does-not-exist")


def test_failed_items_alert(settings, repository, queue) -> None:
    strict = AlertService(
        settings.model_copy(update={"alert_failed_items": 0}), repository, queue
    )
    item_id = queue.enqueue(INBOX, {"type": "Create"})
    queue.claim(partition_for_host("example.social", queue.partitions))
    repository.fail_item(item_id, "gone", max_attempts=1, retry_delay_seconds=60)

    (alert,) = strict.check()
    assert alert.alert_type == ALERT_QUEUE_FAILURES
    assert alert.metadata == {"total_failed": 1, "threshold": 0}


def test_unhealthy_instance_alert_ignores_blocked_hosts(
    alerts, service, repository
) -> None:
    for _ in range(5):
        service.health.record_attempt("down.example", False)
        service.health.record_attempt("spam.example", False)
    service.block_instance("spam.example", "spam")

    (alert,) = alerts.check()
    assert alert.alert_type == ALERT_INSTANCE_UNHEALTHY
    assert alert.severity == "critical"
    assert alert.metadata["hosts"] == ["down.example"]
    assert alert.metadata["scores"] == {"down.example": 0.0}


def test_alert_types_are_deduplicated_independently(alerts, queue, clock, service, settings) -> None:
    queue.enqueue(INBOX, {"type": "Create"})
    clock.advance((settings.alert_backlog_minutes + 1) * 60)
    alerts.check()

    service.health.record_attempt("down.example", False)
    created = alerts.check()
    assert [alert.alert_type for alert in created] == [ALERT_INSTANCE_UNHEALTHY]
    assert {alert.alert_type for alert in alerts.list_alerts()} == {
        ALERT_QUEUE_BACKLOG,
        ALERT_INSTANCE_UNHEALTHY,
    }
