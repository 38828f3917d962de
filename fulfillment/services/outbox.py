"""Outbox: every local mutation queues a remote mutation; a periodic drain pushes them."""

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Any

from beanie import PydanticObjectId
from bson import ObjectId

from fulfillment.core.audit import log_event
from fulfillment.core.config import Settings, get_settings
from fulfillment.core.exceptions import NotFoundError, ValidationError
from fulfillment.core.logging import get_logger
from fulfillment.models.archived_transaction import ArchivedTransaction
from fulfillment.models.credit_account import CreditAccount
from fulfillment.models.dead_letter import DeadLetter
from fulfillment.models.outbox_item import OutboxItem, OutboxOperation
from fulfillment.models.transaction import Transaction
from fulfillment.remote.base import RemoteStore
from fulfillment.worker.loops import PeriodicTask

log = get_logger(__name__)


async def enqueue(
    collection: str,
    doc_id: str,
    operation: OutboxOperation,
    payload: dict[str, Any] | None = None,
) -> OutboxItem:
    """Append a remote mutation to the local queue."""
    item = OutboxItem(collection=collection, doc_id=doc_id, operation=operation, payload=payload or {})
    await item.insert()
    return item


@dataclass
class DrainResult:
    pushed: int = 0
    retried: int = 0
    dead_lettered: int = 0
    skipped: int = 0

    @property
    def processed(self) -> int:
        return self.pushed + self.retried + self.dead_lettered


class OutboxSyncEngine:
    """
    Drains the outbox to the remote store and hydrates an empty local store from it.

    Failed pushes are retried with exponential backoff; after max_attempts the item
    moves to the dead-letter collection. Once a document has a deferred item, later
    items for the same document wait behind it.
    """

    def __init__(
        self,
        remote: RemoteStore | None,
        batch_size: int = 20,
        max_attempts: int = 5,
        backoff_base_seconds: float = 5.0,
        backoff_max_seconds: float = 600.0,
    ):
        self.remote = remote
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_max_seconds = backoff_max_seconds
        self._loop: PeriodicTask | None = None

    @classmethod
    def from_settings(cls, remote: RemoteStore | None, settings: Settings | None = None) -> "OutboxSyncEngine":
        s = settings or get_settings()
        return cls(
            remote,
            batch_size=s.sync_batch_size,
            max_attempts=s.sync_max_attempts,
            backoff_base_seconds=s.sync_backoff_base_seconds,
            backoff_max_seconds=s.sync_backoff_max_seconds,
        )

    def backoff_for(self, attempts: int) -> timedelta:
        seconds = self.backoff_base_seconds * (2 ** max(attempts - 1, 0))
        return timedelta(seconds=min(seconds, self.backoff_max_seconds))

    async def drain_once(self, batch_size: int | None = None, now: datetime | None = None) -> DrainResult:
        """
        Push up to batch_size due items, oldest first. Documents blocked by a deferred
        item are excluded from later pages, so one failing document cannot stall the rest.
        """
        result = DrainResult()
        if self.remote is None:
            return result
        now = now or datetime.utcnow()
        limit = batch_size or self.batch_size
        blocked: set[tuple[str, str]] = set()
        last_id = None
        while result.processed < limit:
            query: dict[str, Any] = {"next_attempt_at": {"$lte": now}}
            if last_id is not None:
                query["_id"] = {"$gt": last_id}
            if blocked:
                query["$nor"] = [{"collection": c, "doc_id": d} for c, d in blocked]
            page = await OutboxItem.find(query).sort("+_id").limit(limit - result.processed).to_list()
            if not page:
                break
            for item in page:
                last_id = item.id
                key = (item.collection, item.doc_id)
                if key in blocked or await self._has_earlier_item(item):
                    blocked.add(key)
                    result.skipped += 1
                    continue
                try:
                    await self._push(item)
                except Exception as e:
                    blocked.add(key)
                    if await self._record_failure(item, e, now):
                        result.dead_lettered += 1
                    else:
                        result.retried += 1
                    continue
                await item.delete()
                result.pushed += 1
        if result.processed:
            log.info("outbox_drained", **asdict(result))
        return result

    async def _has_earlier_item(self, item: OutboxItem) -> bool:
        earlier = await OutboxItem.find_one(
            {"collection": item.collection, "doc_id": item.doc_id, "_id": {"$lt": item.id}}
        )
        return earlier is not None

    async def _push(self, item: OutboxItem) -> None:
        if item.operation == "delete":
            await self.remote.delete(item.collection, item.doc_id)
        else:
            await self.remote.set_merge(item.collection, item.doc_id, item.payload)

    async def _record_failure(self, item: OutboxItem, exc: Exception, now: datetime) -> bool:
        """Reschedule or dead-letter a failed item. Returns True if dead-lettered."""
        attempts = item.attempts + 1
        reason = str(exc)[:500]
        if attempts >= self.max_attempts:
            await DeadLetter(
                collection=item.collection,
                doc_id=item.doc_id,
                operation=item.operation,
                payload=item.payload,
                enqueued_at=item.enqueued_at,
                attempts=attempts,
                reason=reason,
            ).insert()
            await item.delete()
            log.error(
                "outbox_dead_lettered",
                collection=item.collection,
                doc_id=item.doc_id,
                operation=item.operation,
                attempts=attempts,
                reason=reason,
            )
            return True
        item.attempts = attempts
        item.last_error = reason
        item.next_attempt_at = now + self.backoff_for(attempts)
        await item.save()
        log.warning(
            "outbox_push_failed",
            collection=item.collection,
            doc_id=item.doc_id,
            attempts=attempts,
            retry_at=item.next_attempt_at.isoformat(),
            reason=reason,
        )
        return False

    def loop(self, interval: float) -> PeriodicTask:
        """Periodic drain. Cycle errors are logged, never raised."""
        if self._loop is None or not self._loop.running:
            self._loop = PeriodicTask("outbox_sync", self.drain_once, interval)
        return self._loop

    async def run_loop(self, interval: float) -> None:
        await self.loop(interval).run()

    def start(self, interval: float) -> PeriodicTask:
        task = self.loop(interval)
        task.start()
        return task

    async def stop(self) -> None:
        if self._loop is not None:
            await self._loop.stop()

    async def hydrate(self) -> dict[str, int]:
        """One-way pull from the remote store, only into an empty local store. Bypasses the outbox."""
        counts = {"users": 0, "transactions": 0}
        if self.remote is None:
            return counts
        if await CreditAccount.find_all().count() or await Transaction.find_all().count():
            log.info("hydrate_skipped", reason="local store not empty")
            return counts
        settings = get_settings()
        for doc_id, data in await self.remote.list_documents(settings.remote_users_collection):
            try:
                account = CreditAccount.from_remote(doc_id, data)
            except ValueError as e:
                log.warning("hydrate_skip_user", uid=doc_id, error=str(e))
                continue
            await account.insert()
            counts["users"] += 1
        for doc_id, data in await self.remote.list_documents(settings.remote_transactions_collection):
            try:
                txn = Transaction.from_remote(doc_id, data)
            except ValueError as e:
                log.warning("hydrate_skip_transaction", transaction_id=doc_id, error=str(e))
                continue
            await txn.insert()
            counts["transactions"] += 1
        log.info("hydrate_done", **counts)
        return counts

    async def enqueue_snapshot(self, actor: str | None = None) -> dict[str, int]:
        """Queue a full re-push of local accounts and transactions (merge-writes)."""
        settings = get_settings()
        counts = {"users": 0, "transactions": 0}
        async for account in CreditAccount.find_all():
            await enqueue(settings.remote_users_collection, account.uid, "update", account.to_remote())
            counts["users"] += 1
        async for txn in Transaction.find_all():
            await enqueue(settings.remote_transactions_collection, txn.id, "update", txn.to_remote())
            counts["transactions"] += 1
        await log_event(actor, "sync_snapshot_queued", "outbox", None, counts)
        log.info("sync_snapshot_queued", **counts)
        return counts

    async def find_orphans(self, collection: str) -> list[str]:
        """Remote document ids in `collection` with no local counterpart. Archived transactions count as local."""
        settings = get_settings()
        if collection not in (settings.remote_users_collection, settings.remote_transactions_collection):
            raise ValidationError("Unknown collection", details={"collection": collection})
        if self.remote is None:
            return []
        remote_ids = [doc_id for doc_id, _ in await self.remote.list_documents(collection)]
        if collection == settings.remote_users_collection:
            local = {a.uid for a in await CreditAccount.find({"uid": {"$in": remote_ids}}).to_list()}
        else:
            local = {t.id for t in await Transaction.find({"_id": {"$in": remote_ids}}).to_list()}
            local |= {a.id for a in await ArchivedTransaction.find({"_id": {"$in": remote_ids}}).to_list()}
        return [doc_id for doc_id in remote_ids if doc_id not in local]

    async def cleanup_orphans(self, collection: str, dry_run: bool = True, actor: str | None = None) -> dict[str, Any]:
        """Queue remote deletes for orphaned documents. Dry run only reports them."""
        orphans = await self.find_orphans(collection)
        queued = 0
        if not dry_run:
            for doc_id in orphans:
                await enqueue(collection, doc_id, "delete")
                queued += 1
            await log_event(actor, "orphans_cleaned", collection, None, {"queued": queued})
        log.info("orphan_scan", collection=collection, orphans=len(orphans), dry_run=dry_run)
        return {"collection": collection, "dry_run": dry_run, "orphans": orphans, "queued": queued}

    async def status(self) -> dict[str, Any]:
        by_collection: dict[str, dict[str, int]] = {}
        rows = await OutboxItem.aggregate(
            [{"$group": {"_id": {"collection": "$collection", "operation": "$operation"}, "count": {"$sum": 1}}}]
        ).to_list()
        for row in rows:
            key = row["_id"]
            ops = by_collection.setdefault(key["collection"], {"create": 0, "update": 0, "delete": 0})
            ops[key["operation"]] = row["count"]
        return {
            "remote_configured": self.remote is not None,
            "pending": await OutboxItem.find_all().count(),
            "by_collection": by_collection,
            "dead_letters": await DeadLetter.find_all().count(),
        }


async def list_dead_letters(limit: int = 50, offset: int = 0) -> list[DeadLetter]:
    return await DeadLetter.find_all().sort("-failed_at").skip(offset).limit(limit).to_list()


async def replay_dead_letter(dead_letter_id: str, actor: str | None = None) -> OutboxItem:
    """Move a dead letter back onto the outbox with a fresh retry budget."""
    if not ObjectId.is_valid(dead_letter_id):
        raise NotFoundError("Dead letter not found")
    dead = await DeadLetter.get(PydanticObjectId(dead_letter_id))
    if not dead:
        raise NotFoundError("Dead letter not found")
    item = await enqueue(dead.collection, dead.doc_id, dead.operation, dead.payload)
    await dead.delete()
    await log_event(actor, "dead_letter_replayed", dead.collection, dead.doc_id, {"attempts": dead.attempts})
    log.info("dead_letter_replayed", collection=dead.collection, doc_id=dead.doc_id)
    return item


async def list_queue(limit: int = 100, offset: int = 0) -> list[OutboxItem]:
    return await OutboxItem.find_all().sort("+_id").skip(offset).limit(limit).to_list()
