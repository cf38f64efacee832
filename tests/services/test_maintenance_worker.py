from unittest.mock import MagicMock

from conftest import FakeClock
from nolto_federation.services.maintenance_worker import MaintenanceWorker


def _worker(settings, clock):
    cleanup = MagicMock()
    alerts = MagicMock()
    settings = settings.model_copy(
        update={"cleanup_interval_seconds": 3600, "alert_check_interval_seconds": 300}
    )
    return MaintenanceWorker(settings, cleanup, alerts, clock=clock), cleanup, alerts


def test_jobs_run_immediately_then_on_their_own_intervals(settings) -> None:
    clock = FakeClock(start=0.0)
    worker, cleanup, alerts = _worker(settings, clock)

    worker.run_due()
    assert cleanup.cleanup.call_count == 1
    cleanup.cleanup.assert_called_with(dry_run=False)
    assert alerts.check.call_count == 1

    clock.advance(300)
    worker.run_due()
    assert cleanup.cleanup.call_count == 1
    assert alerts.check.call_count == 2

    clock.advance(3300)
    worker.run_due()
    assert cleanup.cleanup.call_count == 2
    assert alerts.check.call_count == 3


def test_failing_cleanup_does_not_skip_alert_check(settings) -> None:
    worker, cleanup, alerts = _worker(settings, FakeClock(start=0.0))
    cleanup.cleanup.side_effect = RuntimeError("database is locked")

    worker.run_due()
    alerts.check.assert_called_once()
