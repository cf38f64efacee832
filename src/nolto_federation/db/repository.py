from __future__ import annotations

import json
import time
import uuid
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import and_, case, delete, func, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from .base import DatabaseSessionManager
from .models import (
    INSTANCE_STATUS_ACTIVE,
    INSTANCE_STATUS_BLOCKED,
    INSTANCE_STATUS_DEGRADED,
    QUEUE_STATE_FAILED,
    QUEUE_STATE_PENDING,
    QUEUE_STATE_PROCESSING,
    FederationAlert,
    FederationQueueItem,
    FederationRequestLog,
    RemoteActorCacheEntry,
    RemoteInstance,
    WebFingerCacheEntry,
)


class FederationRepository:
    """Persistence primitives backed by SQLAlchemy for federation data.

    Every write that can race with another worker is an upsert keyed on the
    natural key of the row, so concurrent writers never fail on duplicates.
    """

    def __init__(
        self,
        db: DatabaseSessionManager,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initializes the FederationRepository.

        Args:
            db: The DatabaseSessionManager instance.
            clock: Source of the current Unix time.
        """
        self._db = db
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    def _insert(self, model):
        dialect = self._db.dialect_name
        if dialect == "postgresql":
            return pg_insert(model)
        if dialect == "sqlite":
            return sqlite_insert(model)
        raise RuntimeError(f"Unsupported database dialect for upserts: {dialect}")

    def ping(self) -> None:
        """Runs a trivial query; raises if the database is unreachable."""
        with self._db.session() as session:
            session.execute(text("SELECT 1"))

    # WebFinger cache --------------------------------------------------------

    def get_webfinger_entry(self, acct: str) -> Optional[WebFingerCacheEntry]:
        """Returns the unexpired cache entry for ``acct``, if any.

        Expired rows are left in place; the cleanup scheduler reaps them.
        """
        now = self.now()
        with self._db.session() as session:
            return session.execute(
                select(WebFingerCacheEntry).where(
                    WebFingerCacheEntry.acct == acct,
                    WebFingerCacheEntry.expires_at > now,
                )
            ).scalar_one_or_none()

    def upsert_webfinger_entry(
        self,
        acct: str,
        actor_url: str,
        inbox_url: Optional[str],
        ttl_seconds: int,
    ) -> None:
        """Inserts or refreshes a WebFinger cache entry.

        The hit count and creation time of an existing row are preserved.
        """
        now = self.now()
        stmt = self._insert(WebFingerCacheEntry).values(
            acct=acct,
            actor_url=actor_url,
            inbox_url=inbox_url,
            expires_at=now + ttl_seconds,
            hit_count=0,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[WebFingerCacheEntry.acct],
            set_={
                "actor_url": stmt.excluded.actor_url,
                "inbox_url": stmt.excluded.inbox_url,
                "expires_at": stmt.excluded.expires_at,
                "updated_at": stmt.excluded.updated_at,
            },
        )
        with self._db.session() as session:
            session.execute(stmt)

    def increment_webfinger_hits(self, acct: str) -> None:
        with self._db.session() as session:
            session.execute(
                update(WebFingerCacheEntry)
                .where(WebFingerCacheEntry.acct == acct)
                .values(hit_count=WebFingerCacheEntry.hit_count + 1)
            )

    def top_webfinger_entries(self, limit: int) -> List[WebFingerCacheEntry]:
        """Returns the most frequently hit entries, expired or not."""
        with self._db.session() as session:
            return list(
                session.execute(
                    select(WebFingerCacheEntry)
                    .order_by(
                        WebFingerCacheEntry.hit_count.desc(),
                        WebFingerCacheEntry.acct,
                    )
                    .limit(limit)
                ).scalars()
            )

    def webfinger_cache_stats(self) -> Dict[str, Any]:
        now = self.now()
        with self._db.session() as session:
            total, expired, hits = session.execute(
                select(
                    func.count(WebFingerCacheEntry.acct),
                    func.coalesce(
                        func.sum(case((WebFingerCacheEntry.expires_at <= now, 1), else_=0)),
                        0,
                    ),
                    func.coalesce(func.sum(WebFingerCacheEntry.hit_count), 0),
                )
            ).one()
        return {
            "total_entries": int(total),
            "expired_entries": int(expired),
            "active_entries": int(total) - int(expired),
            "total_hits": int(hits),
            "average_hits_per_entry": round(int(hits) / total, 2) if total else 0.0,
        }

    # Actor document cache ---------------------------------------------------

    def get_actor_document(self, actor_url: str) -> Optional[RemoteActorCacheEntry]:
        now = self.now()
        with self._db.session() as session:
            return session.execute(
                select(RemoteActorCacheEntry).where(
                    RemoteActorCacheEntry.actor_url == actor_url,
                    RemoteActorCacheEntry.expires_at > now,
                )
            ).scalar_one_or_none()

    def upsert_actor_document(
        self, actor_url: str, document: Dict[str, Any], ttl_seconds: int
    ) -> None:
        now = self.now()
        stmt = self._insert(RemoteActorCacheEntry).values(
            actor_url=actor_url,
            actor_document=json.dumps(document),
            fetched_at=now,
            expires_at=now + ttl_seconds,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[RemoteActorCacheEntry.actor_url],
            set_={
                "actor_document": stmt.excluded.actor_document,
                "fetched_at": stmt.excluded.fetched_at,
                "expires_at": stmt.excluded.expires_at,
            },
        )
        with self._db.session() as session:
            session.execute(stmt)

    def delete_actor_document(self, actor_url: str) -> bool:
        with self._db.session() as session:
            result = session.execute(
                delete(RemoteActorCacheEntry).where(
                    RemoteActorCacheEntry.actor_url == actor_url
                )
            )
            return result.rowcount > 0

    def actor_cache_stats(self) -> Dict[str, int]:
        now = self.now()
        with self._db.session() as session:
            total, expired = session.execute(
                select(
                    func.count(RemoteActorCacheEntry.actor_url),
                    func.coalesce(
                        func.sum(case((RemoteActorCacheEntry.expires_at <= now, 1), else_=0)),
                        0,
                    ),
                )
            ).one()
        return {
            "total_entries": int(total),
            "expired_entries": int(expired),
            "active_entries": int(total) - int(expired),
        }

    # Remote instances -------------------------------------------------------

    def record_instance_attempt(
        self,
        host: str,
        success: bool,
        window_seconds: int,
        degraded_below: float,
    ) -> RemoteInstance:
        """Atomically counts one request (and possibly one error) for ``host``.

        The health score and status are computed from the new counters inside
        the same upsert, so concurrent writers never store a stale score. A
        ``blocked`` status is left alone. When the stored window started
        ``window_seconds`` or more ago the counters restart at this attempt.

        Returns:
            The row as it stands after the update.
        """
        now = self.now()
        error = 0 if success else 1
        window_expired = RemoteInstance.window_started_at <= now - window_seconds
        requests = case(
            (window_expired, 1), else_=RemoteInstance.request_count_24h + 1
        )
        errors = case(
            (window_expired, error), else_=RemoteInstance.error_count_24h + error
        )
        score = 100.0 - (100.0 * errors) / requests
        first_score = 100.0 - 100.0 * error
        stmt = self._insert(RemoteInstance).values(
            host=host,
            status=(
                INSTANCE_STATUS_ACTIVE
                if first_score >= degraded_below
                else INSTANCE_STATUS_DEGRADED
            ),
            health_score=first_score,
            request_count_24h=1,
            error_count_24h=error,
            window_started_at=now,
            first_seen_at=now,
            last_seen_at=now,
            last_error_at=None if success else now,
        )
        set_: Dict[str, Any] = {
            "request_count_24h": requests,
            "error_count_24h": errors,
            "health_score": score,
            "status": case(
                (RemoteInstance.status == INSTANCE_STATUS_BLOCKED, INSTANCE_STATUS_BLOCKED),
                (score >= degraded_below, INSTANCE_STATUS_ACTIVE),
                else_=INSTANCE_STATUS_DEGRADED,
            ),
            "window_started_at": case(
                (window_expired, now), else_=RemoteInstance.window_started_at
            ),
            "last_seen_at": now,
        }
        if not success:
            set_["last_error_at"] = now
        stmt = stmt.on_conflict_do_update(
            index_elements=[RemoteInstance.host], set_=set_
        )
        with self._db.session() as session:
            session.execute(stmt)
            return session.get(RemoteInstance, host, populate_existing=True)

    def get_instance(self, host: str) -> Optional[RemoteInstance]:
        with self._db.session() as session:
            return session.get(RemoteInstance, host)

    def list_instances(self, limit: int) -> List[RemoteInstance]:
        with self._db.session() as session:
            return list(
                session.execute(
                    select(RemoteInstance)
                    .order_by(
                        RemoteInstance.request_count_24h.desc(), RemoteInstance.host
                    )
                    .limit(limit)
                ).scalars()
            )

    def unhealthy_instances(self, threshold: float) -> List[RemoteInstance]:
        with self._db.session() as session:
            return list(
                session.execute(
                    select(RemoteInstance)
                    .where(
                        RemoteInstance.health_score < threshold,
                        RemoteInstance.status != INSTANCE_STATUS_BLOCKED,
                    )
                    .order_by(RemoteInstance.health_score, RemoteInstance.host)
                ).scalars()
            )

    def block_instance(self, host: str, reason: Optional[str]) -> RemoteInstance:
        """Marks ``host`` as blocked, creating the row if it was never seen."""
        now = self.now()
        stmt = self._insert(RemoteInstance).values(
            host=host,
            status=INSTANCE_STATUS_BLOCKED,
            health_score=100.0,
            request_count_24h=0,
            error_count_24h=0,
            window_started_at=now,
            first_seen_at=now,
            last_seen_at=now,
            reason=reason,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[RemoteInstance.host],
            set_={"status": INSTANCE_STATUS_BLOCKED, "reason": reason},
        )
        with self._db.session() as session:
            session.execute(stmt)
            return session.get(RemoteInstance, host, populate_existing=True)

    def unblock_instance(self, host: str, status: str) -> Optional[RemoteInstance]:
        with self._db.session() as session:
            record = session.get(RemoteInstance, host)
            if record is None:
                return None
            record.status = status
            record.reason = None
            return record

    # Federation queue -------------------------------------------------------

    def enqueue_item(
        self,
        *,
        partition_key: int,
        target_host: str,
        inbox_url: str,
        payload: Dict[str, Any],
    ) -> str:
        item_id = str(uuid.uuid4())
        now = self.now()
        with self._db.session() as session:
            session.add(
                FederationQueueItem(
                    id=item_id,
                    partition_key=partition_key,
                    target_host=target_host,
                    inbox_url=inbox_url,
                    payload=json.dumps(payload),
                    state=QUEUE_STATE_PENDING,
                    attempts=0,
                    retry_at=now,
                    updated_at=now,
                    created_at=now,
                )
            )
        return item_id

    def get_queue_item(self, item_id: str) -> Optional[FederationQueueItem]:
        with self._db.session() as session:
            return session.get(FederationQueueItem, item_id)

    def claim_items(self, partition_key: int, limit: int) -> List[FederationQueueItem]:
        """Moves due pending items of one partition to processing.

        Each candidate is claimed with an update guarded on its pending state,
        so an item another worker got to first is skipped rather than shared.
        """
        now = self.now()
        claimed: List[FederationQueueItem] = []
        with self._db.session() as session:
            candidate_ids = list(
                session.execute(
                    select(FederationQueueItem.id)
                    .where(
                        FederationQueueItem.partition_key == partition_key,
                        FederationQueueItem.state == QUEUE_STATE_PENDING,
                        FederationQueueItem.retry_at <= now,
                    )
                    .order_by(FederationQueueItem.created_at)
                    .limit(limit)
                ).scalars()
            )
            for item_id in candidate_ids:
                result = session.execute(
                    update(FederationQueueItem)
                    .where(
                        FederationQueueItem.id == item_id,
                        FederationQueueItem.state == QUEUE_STATE_PENDING,
                    )
                    .values(
                        state=QUEUE_STATE_PROCESSING,
                        started_at=now,
                        updated_at=now,
                    )
                )
                if result.rowcount == 1:
                    claimed.append(
                        session.get(FederationQueueItem, item_id, populate_existing=True)
                    )
        return claimed

    def complete_item(self, item_id: str) -> bool:
        with self._db.session() as session:
            result = session.execute(
                delete(FederationQueueItem).where(
                    FederationQueueItem.id == item_id,
                    FederationQueueItem.state == QUEUE_STATE_PROCESSING,
                )
            )
            return result.rowcount > 0

    def fail_item(
        self,
        item_id: str,
        error: str,
        *,
        max_attempts: int,
        retry_delay_seconds: int,
    ) -> Optional[FederationQueueItem]:
        """Records a failed attempt and either schedules a retry or gives up."""
        now = self.now()
        with self._db.session() as session:
            item = session.get(FederationQueueItem, item_id)
            if item is None or item.state != QUEUE_STATE_PROCESSING:
                return None
            delay = retry_delay_seconds * (2**item.attempts)
            item.attempts += 1
            item.last_error = error
            item.started_at = None
            item.updated_at = now
            if item.attempts >= max_attempts:
                item.state = QUEUE_STATE_FAILED
            else:
                item.state = QUEUE_STATE_PENDING
                item.retry_at = now + delay
            return item

    def reschedule_item(self, item_id: str, retry_at: int, reason: str) -> bool:
        """Returns a claimed item to pending without counting an attempt."""
        with self._db.session() as session:
            result = session.execute(
                update(FederationQueueItem)
                .where(
                    FederationQueueItem.id == item_id,
                    FederationQueueItem.state == QUEUE_STATE_PROCESSING,
                )
                .values(
                    state=QUEUE_STATE_PENDING,
                    retry_at=retry_at,
                    started_at=None,
                    last_error=reason,
                    updated_at=self.now(),
                )
            )
            return result.rowcount > 0

    def queue_state_counts(self) -> Dict[str, int]:
        with self._db.session() as session:
            rows = session.execute(
                select(FederationQueueItem.state, func.count(FederationQueueItem.id))
                .group_by(FederationQueueItem.state)
            ).all()
        counts = {
            QUEUE_STATE_PENDING: 0,
            QUEUE_STATE_PROCESSING: 0,
            QUEUE_STATE_FAILED: 0,
        }
        for state, count in rows:
            counts[state] = int(count)
        return counts

    def oldest_pending_created_at(self) -> Optional[int]:
        with self._db.session() as session:
            return session.execute(
                select(func.min(FederationQueueItem.created_at)).where(
                    FederationQueueItem.state == QUEUE_STATE_PENDING
                )
            ).scalar()

    # Request logs -----------------------------------------------------------

    def record_request_log(
        self,
        *,
        remote_host: str,
        endpoint: str,
        direction: str,
        success: bool,
        response_time_ms: int,
        status_code: Optional[int] = None,
        error_message: Optional[str] = None,
    ) -> None:
        with self._db.session() as session:
            session.add(
                FederationRequestLog(
                    id=str(uuid.uuid4()),
                    remote_host=remote_host,
                    endpoint=endpoint,
                    direction=direction,
                    success=success,
                    response_time_ms=response_time_ms,
                    status_code=status_code,
                    error_message=error_message,
                    created_at=self.now(),
                )
            )

    def average_response_time_ms(
        self, *, endpoint: str, direction: str, since: int
    ) -> Optional[float]:
        with self._db.session() as session:
            value = session.execute(
                select(func.avg(FederationRequestLog.response_time_ms)).where(
                    FederationRequestLog.endpoint == endpoint,
                    FederationRequestLog.direction == direction,
                    FederationRequestLog.created_at >= since,
                )
            ).scalar()
        return float(value) if value is not None else None

    # Alerts -----------------------------------------------------------------

    def insert_alert_if_absent(
        self,
        *,
        alert_type: str,
        severity: str,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[FederationAlert]:
        """Creates an alert unless an unacknowledged one of the same type exists.

        Returns:
            The new alert, or None when an open alert already covered the type.
        """
        alert_id = str(uuid.uuid4())
        stmt = (
            self._insert(FederationAlert)
            .values(
                id=alert_id,
                alert_type=alert_type,
                severity=severity,
                message=message,
                alert_metadata=json.dumps(metadata) if metadata is not None else None,
                created_at=self.now(),
                acknowledged_at=None,
                open_key=alert_type,
            )
            .on_conflict_do_nothing(index_elements=[FederationAlert.open_key])
        )
        with self._db.session() as session:
            session.execute(stmt)
            # A conflicting open alert means our id was never written.
            return session.get(FederationAlert, alert_id)

    def list_alerts(
        self, *, unacknowledged_only: bool, limit: int = 100
    ) -> List[FederationAlert]:
        query = select(FederationAlert)
        if unacknowledged_only:
            query = query.where(FederationAlert.acknowledged_at.is_(None))
        query = query.order_by(FederationAlert.created_at.desc()).limit(limit)
        with self._db.session() as session:
            return list(session.execute(query).scalars())

    def acknowledge_alert(self, alert_id: str) -> Optional[FederationAlert]:
        with self._db.session() as session:
            alert = session.get(FederationAlert, alert_id)
            if alert is None:
                return None
            if alert.acknowledged_at is None:
                alert.acknowledged_at = self.now()
                alert.open_key = None
            return alert

    # Cleanup ----------------------------------------------------------------

    def apply_cleanup(
        self,
        model,
        criteria,
        *,
        values: Optional[Dict[str, Any]] = None,
        dry_run: bool,
    ) -> int:
        """Counts, deletes or updates the rows of ``model`` matching ``criteria``.

        Args:
            model: The mapped class the rule targets.
            criteria: A list of SQL expressions combined with AND.
            values: Column updates to apply; None deletes the rows instead.
            dry_run: Only count the matching rows.

        Returns:
            The number of rows matched (dry run) or affected.
        """
        clause = and_(*criteria)
        with self._db.session() as session:
            if dry_run:
                return int(
                    session.execute(
                        select(func.count()).select_from(model).where(clause)
                    ).scalar_one()
                )
            if values is None:
                result = session.execute(delete(model).where(clause))
            else:
                result = session.execute(update(model).where(clause).values(**values))
            return int(result.rowcount)
