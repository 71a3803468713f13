"""PostgreSQL alert store.

One row per alert. The response log lives in its own JSONB column and is
only ever extended with ``response_log || new_entry`` under a row lock, so
concurrent appends from different writers can never overwrite each other.
A trigger publishes every write on a NOTIFY channel; a listener thread
turns those notifications into change-feed events.
"""
import asyncio
import json
import logging
import select
import threading
from dataclasses import replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import psycopg2

from haven.shared.database import (
    BaseRepository,
    ConflictError,
    ConnectionManager,
    NotFoundError,
)
from haven.shared.errors import PersistenceUnavailable, ValidationFailed
from haven.shared.models import CrisisAlert, DeliveryChannel, ResponseLogEntry
from haven.shared.utils import utc_now
from haven.services.triage_engine.state_machine import Transition, apply_transition
from .base import (
    AlertStore,
    ChangeEvent,
    ChangeFeed,
    ChangeKind,
    SubscriptionScope,
)

logger = logging.getLogger(__name__)

NOTIFY_CHANNEL = "crisis_alert_changes"

SCHEMA = f"""
CREATE TABLE IF NOT EXISTS crisis_alerts (
    id                      TEXT PRIMARY KEY,
    tenant_id               TEXT NOT NULL,
    assigned_responder_id   TEXT,
    status                  TEXT NOT NULL,
    created_at              TIMESTAMPTZ NOT NULL,
    document                JSONB NOT NULL,
    response_log            JSONB NOT NULL DEFAULT '[]'::jsonb
);

CREATE INDEX IF NOT EXISTS crisis_alerts_tenant_created
    ON crisis_alerts (tenant_id, created_at DESC, id DESC);

CREATE OR REPLACE FUNCTION notify_crisis_alert_change() RETURNS trigger AS $$
BEGIN
    IF TG_OP = 'DELETE' THEN
        PERFORM pg_notify('{NOTIFY_CHANNEL}',
            json_build_object('op', TG_OP, 'id', OLD.id)::text);
        RETURN OLD;
    END IF;
    PERFORM pg_notify('{NOTIFY_CHANNEL}',
        json_build_object('op', TG_OP, 'id', NEW.id)::text);
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS crisis_alerts_notify ON crisis_alerts;
CREATE TRIGGER crisis_alerts_notify
    AFTER INSERT OR UPDATE OR DELETE ON crisis_alerts
    FOR EACH ROW EXECUTE FUNCTION notify_crisis_alert_change();
"""


class PostgresAlertStore(BaseRepository[CrisisAlert], AlertStore):
    """Alert store backed by PostgreSQL with a LISTEN/NOTIFY change feed.

    Blocking psycopg2 calls run in worker threads; every driver error is
    surfaced as ``PersistenceUnavailable``.
    """

    columns = [
        "id",
        "tenant_id",
        "assigned_responder_id",
        "status",
        "created_at",
        "document",
        "response_log",
    ]

    def __init__(
        self,
        connection_manager: ConnectionManager,
        clock: Optional[Callable[[], datetime]] = None,
        poll_interval: float = 1.0,
        reconnect_delay: float = 5.0,
    ):
        super().__init__(connection_manager, "crisis_alerts")
        self._clock = clock or utc_now
        self.poll_interval = poll_interval
        self.reconnect_delay = reconnect_delay

        self._lock = threading.Lock()
        self._feeds: List[ChangeFeed] = []
        # Events that arrive while a new feed's initial population loads
        self._pending: Dict[int, List[Tuple[str, Any]]] = {}
        self._listener: Optional[threading.Thread] = None
        self._stop = threading.Event()

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def _row_to_entity(self, row: tuple) -> CrisisAlert:
        return CrisisAlert.from_document(self._row_to_document(row))

    def _row_to_document(self, row: tuple) -> Dict[str, Any]:
        document = row[5]
        if isinstance(document, str):
            document = json.loads(document)
        response_log = row[6]
        if isinstance(response_log, str):
            response_log = json.loads(response_log)
        document = dict(document)
        document["response_log"] = response_log or []
        return document

    def _entity_to_params(self, entity: CrisisAlert) -> Dict[str, Any]:
        document = entity.to_document()
        response_log = document.pop("response_log")
        return {
            "id": entity.id,
            "tenant_id": entity.tenant_id,
            "assigned_responder_id": entity.assigned_responder_id,
            "status": entity.status.value,
            "created_at": entity.created_at,
            "document": json.dumps(document),
            "response_log": json.dumps(response_log),
        }

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def ensure_schema(self) -> None:
        """Create the table, index and notify trigger if missing."""
        with self.transaction() as cur:
            cur.execute(SCHEMA)
        logger.info("ALERT_STORE_SCHEMA_READY", extra={"table_name": self.table_name})

    # ------------------------------------------------------------------
    # AlertStore
    # ------------------------------------------------------------------

    async def create(self, alert: CrisisAlert) -> CrisisAlert:
        now = self._clock()
        stored = replace(alert, created_at=now, updated_at=now)
        await self._run(self.insert, stored)
        logger.debug("ALERT_STORED_POSTGRES", extra={"alert_id": alert.id})
        return stored

    async def get(self, alert_id: str) -> CrisisAlert:
        alert = await self._run(self.find_by_id, alert_id)
        if alert is None:
            raise NotFoundError(f"alert {alert_id} not found")
        return alert

    async def list_alerts(
        self,
        tenant_id: str,
        scope: Optional[SubscriptionScope] = None,
    ) -> List[CrisisAlert]:
        scope = scope or SubscriptionScope()
        documents = await self._run(self._query_scope, tenant_id, scope)
        alerts = []
        for document in documents:
            try:
                alerts.append(CrisisAlert.from_document(document))
            except ValidationFailed as e:
                logger.warning(
                    "ALERT_DOCUMENT_MALFORMED",
                    extra={"alert_id": document.get("id"), "error": str(e)}
                )
        return alerts

    async def apply_transition(self, transition: Transition) -> Tuple[CrisisAlert, ResponseLogEntry]:
        return await self._run(self._apply_transition_sync, transition)

    async def record_delivery(
        self,
        alert_id: str,
        channel: DeliveryChannel,
        sent_at: Optional[datetime] = None,
    ) -> Tuple[CrisisAlert, bool]:
        return await self._run(self._record_delivery_sync, alert_id, channel, sent_at)

    async def purge(self, alert_id: str) -> bool:
        deleted = await self._run(self.delete, alert_id)
        if deleted:
            logger.info("ALERT_PURGED", extra={"alert_id": alert_id})
        return deleted

    async def subscribe(
        self,
        tenant_id: str,
        scope: Optional[SubscriptionScope] = None,
    ) -> ChangeFeed:
        scope = scope or SubscriptionScope()
        feed = ChangeFeed(tenant_id, scope, on_close=self._unsubscribe)
        with self._lock:
            self._feeds.append(feed)
            self._pending[id(feed)] = []
        self._ensure_listener()

        try:
            documents = await self._run(self._query_scope, tenant_id, scope)
        except PersistenceUnavailable as e:
            feed.mark_stale(str(e))
            documents = ()

        with self._lock:
            feed.push(ChangeEvent(kind=ChangeKind.RESYNC, documents=tuple(documents)))
            for op, value in self._pending.pop(id(feed), []):
                self._deliver(feed, op, value)

        logger.info(
            "CHANGE_FEED_OPENED",
            extra={
                "tenant_id": tenant_id,
                "responder_scoped": scope.responder_id is not None,
                "initial_count": len(documents),
            }
        )
        return feed

    async def close(self) -> None:
        with self._lock:
            feeds = list(self._feeds)
        for feed in feeds:
            feed.close()
        self._stop.set()
        if self._listener is not None:
            await asyncio.to_thread(self._listener.join, self.poll_interval * 2)
            self._listener = None

    # ------------------------------------------------------------------
    # Blocking implementations (worker threads)
    # ------------------------------------------------------------------

    async def _run(self, func, *args):
        try:
            return await asyncio.to_thread(func, *args)
        except psycopg2.Error as e:
            logger.error(
                "ALERT_STORE_UNAVAILABLE",
                extra={"operation": func.__name__, "error": str(e)}
            )
            raise PersistenceUnavailable(f"{func.__name__} failed: {e}") from e

    def _query_scope(self, tenant_id: str, scope: SubscriptionScope) -> List[Dict[str, Any]]:
        query = f"{self._select_sql()} WHERE tenant_id = %s"
        params: List[Any] = [tenant_id]
        if scope.responder_id is not None:
            query += " AND assigned_responder_id = %s"
            params.append(scope.responder_id)
        query += " ORDER BY created_at DESC, id DESC LIMIT %s"
        params.append(scope.limit)

        with self.transaction() as cur:
            cur.execute(query, params)
            return [self._row_to_document(row) for row in cur.fetchall()]

    def _apply_transition_sync(self, transition: Transition) -> Tuple[CrisisAlert, ResponseLogEntry]:
        with self.transaction() as cur:
            current = self.fetch_by_id(cur, transition.alert_id, for_update=True)
            if current is None:
                raise NotFoundError(f"alert {transition.alert_id} not found")
            if current.status is not transition.expected_status:
                raise ConflictError(
                    f"alert {current.id} is {current.status.value}, "
                    f"expected {transition.expected_status.value}",
                    current=current,
                )

            updated, entry = apply_transition(current, transition, self._clock())
            params = self._entity_to_params(updated)
            cur.execute(
                f"""
                UPDATE {self.table_name}
                   SET status = %s,
                       document = %s::jsonb,
                       response_log = response_log || %s::jsonb
                 WHERE id = %s AND status = %s
                """,
                (
                    params["status"],
                    params["document"],
                    json.dumps([entry.to_dict()]),
                    updated.id,
                    transition.expected_status.value,
                ),
            )
            if cur.rowcount != 1:
                raise ConflictError(f"alert {updated.id} changed concurrently", current=current)

        logger.debug(
            "ALERT_TRANSITION_WRITTEN",
            extra={"alert_id": updated.id, "sequence": entry.sequence}
        )
        return updated, entry

    def _record_delivery_sync(
        self,
        alert_id: str,
        channel: DeliveryChannel,
        sent_at: Optional[datetime],
    ) -> Tuple[CrisisAlert, bool]:
        with self.transaction() as cur:
            current = self.fetch_by_id(cur, alert_id, for_update=True)
            if current is None:
                raise NotFoundError(f"alert {alert_id} not found")
            if current.deliveries.channel(channel).sent:
                return current, False

            now = self._clock()
            updated = replace(
                current,
                deliveries=current.deliveries.with_sent(channel, sent_at or now),
                updated_at=now,
            )
            cur.execute(
                f"UPDATE {self.table_name} SET document = %s::jsonb WHERE id = %s",
                (self._entity_to_params(updated)["document"], alert_id),
            )
        return updated, True

    # ------------------------------------------------------------------
    # Change feed
    # ------------------------------------------------------------------

    def _unsubscribe(self, feed: ChangeFeed) -> None:
        with self._lock:
            if feed in self._feeds:
                self._feeds.remove(feed)
            self._pending.pop(id(feed), None)
        logger.info("CHANGE_FEED_CLOSED", extra={"tenant_id": feed.tenant_id})

    def _ensure_listener(self) -> None:
        with self._lock:
            if self._listener is not None and self._listener.is_alive():
                return
            self._stop.clear()
            self._listener = threading.Thread(
                target=self._listen_forever,
                name="crisis-alert-listener",
                daemon=True,
            )
            self._listener.start()

    def _listen_forever(self) -> None:
        failed = False
        while not self._stop.is_set():
            conn = None
            try:
                conn = self.connection_manager.listen_connection(NOTIFY_CHANNEL)

                if failed:
                    self._resync_all()
                    failed = False
                    logger.info("CHANGE_FEED_RECOVERED")

                while not self._stop.is_set():
                    if select.select([conn], [], [], self.poll_interval) == ([], [], []):
                        continue
                    conn.poll()
                    self._drain(conn)
            except psycopg2.Error as e:
                failed = True
                logger.warning(
                    "CHANGE_FEED_TRANSPORT_FAILED",
                    extra={"error": str(e), "retry_in": self.reconnect_delay}
                )
                self._mark_all_stale(str(e))
                self._stop.wait(self.reconnect_delay)
            finally:
                if conn is not None:
                    conn.close()

    def _drain(self, conn) -> None:
        """Dispatch queued notifications; a malformed one is logged and dropped."""
        while conn.notifies:
            notify = conn.notifies.pop(0)
            try:
                self._dispatch(notify.payload)
            except psycopg2.Error:
                raise
            except Exception as e:
                logger.error(
                    "CHANGE_FEED_NOTIFICATION_MALFORMED",
                    extra={"error": repr(e), "payload": str(notify.payload)[:200]}
                )

    def _dispatch(self, payload: str) -> None:
        message = json.loads(payload)
        alert_id = message["id"]
        if message["op"] == "DELETE":
            self._broadcast("removed", alert_id)
            return

        with self.transaction() as cur:
            cur.execute(f"{self._select_sql()} WHERE id = %s", (alert_id,))
            row = cur.fetchone()
        if row is None:
            self._broadcast("removed", alert_id)
        else:
            self._broadcast("document", self._row_to_document(row))

    def _broadcast(self, op: str, value: Any) -> None:
        with self._lock:
            for feed in self._feeds:
                pending = self._pending.get(id(feed))
                if pending is not None:
                    pending.append((op, value))
                else:
                    self._deliver(feed, op, value)

    @staticmethod
    def _deliver(feed: ChangeFeed, op: str, value: Any) -> None:
        if op == "removed":
            feed.offer_removal(value)
        else:
            feed.offer(value)

    def _mark_all_stale(self, reason: str) -> None:
        with self._lock:
            feeds = list(self._feeds)
        for feed in feeds:
            feed.mark_stale(reason)

    def _resync_all(self) -> None:
        with self._lock:
            feeds = list(self._feeds)
        for feed in feeds:
            documents = self._query_scope(feed.tenant_id, feed.scope)
            feed.push(ChangeEvent(kind=ChangeKind.RESYNC, documents=tuple(documents)))
