"""
Outbound mutation queue.

Writes that fail for lack of connectivity are persisted through SQLAlchemy and
replayed later, oldest first. An item leaves the queue only after its replay
reached the backend.
"""
import threading
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import sessionmaker

from app import crud
from app.cache.core import FetchRequest, NetworkError
from app.cache.network import Network
from app.models import QueuedMutation
from .coalescer import SingleFlight

logger = logging.getLogger("sync.queue")


SYNC_QUEUE_TAG = "sync-mutations"
SYNC_ITEM_TAG_PREFIX = "sync-workout-"


@dataclass
class DrainResult:
    """Outcome of one pass over the queue."""
    succeeded: List[int] = field(default_factory=list)
    failed: List[int] = field(default_factory=list)

    def to_dict(self) -> Dict[str, List[int]]:
        return {"succeeded": list(self.succeeded), "failed": list(self.failed)}


class MutationQueue:
    """
    Durable FIFO of mutations awaiting replay.

    Only one drain runs at a time. A drain works on the entries present when it
    starts; entries enqueued meanwhile wait for the next drain.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        network: Network,
        notify: Optional[Callable[[Dict[str, Any]], None]] = None,
    ):
        """
        Args:
            session_factory: SQLAlchemy session factory for the queue database
            network: Network used for replays
            notify: Called with a message for the foreground pages after each
                successful replay
        """
        self._session_factory = session_factory
        self._network = network
        self._notify = notify
        self._flight = SingleFlight()
        self._replaying: set = set()
        self._replaying_lock = threading.Lock()

    def enqueue(self, request: FetchRequest) -> int:
        """Persist a mutation; returns its id."""
        with self._session_factory() as db:
            mutation = crud.add_mutation(
                db,
                method=request.method,
                url=request.url,
                headers=dict(request.headers),
                body=request.body,
            )
            logger.info(f"Queued {mutation.method} {mutation.url} as #{mutation.id}")
            return mutation.id

    def pending(self) -> List[QueuedMutation]:
        with self._session_factory() as db:
            return crud.get_mutations(db)

    def get(self, mutation_id: int) -> Optional[QueuedMutation]:
        with self._session_factory() as db:
            return crud.get_mutation(db, mutation_id)

    def count(self) -> int:
        with self._session_factory() as db:
            return crud.count_mutations(db)

    def clear(self) -> int:
        with self._session_factory() as db:
            deleted = crud.delete_all_mutations(db)
        logger.info(f"Cleared {deleted} queued mutations")
        return deleted

    def drain(self) -> DrainResult:
        """
        Replay every queued mutation, oldest first.

        A failure leaves that item queued and moves on to the next one. A call
        made while a drain is running returns that drain's result.
        """
        result, joined = self._flight.run("drain", self._drain)
        if joined:
            logger.debug("Drain already in progress, joined it")
        return result

    def _drain(self) -> DrainResult:
        snapshot = self.pending()
        result = DrainResult()
        if not snapshot:
            return result

        logger.info(f"Draining {len(snapshot)} queued mutations")
        for mutation in snapshot:
            outcome = self._replay_item(mutation)
            if outcome is True:
                result.succeeded.append(mutation.id)
            elif outcome is False:
                result.failed.append(mutation.id)

        logger.info(
            f"Drain complete: {len(result.succeeded)} succeeded, {len(result.failed)} failed"
        )
        return result

    def replay(self, mutation_id: int) -> bool:
        """
        Replay a single queued mutation (targeted sync).

        Returns:
            True if the item was replayed and removed
        """
        mutation = self.get(mutation_id)
        if mutation is None:
            logger.debug(f"Nothing queued as #{mutation_id}")
            return False
        return self._replay_item(mutation) is True

    def _replay_item(self, mutation: QueuedMutation) -> Optional[bool]:
        """
        Returns:
            True on success, False on failure, None if another replay owns the item
        """
        with self._replaying_lock:
            if mutation.id in self._replaying:
                return None
            self._replaying.add(mutation.id)

        try:
            # Removed by a targeted replay since the drain took its snapshot
            if self.get(mutation.id) is None:
                return None

            request = FetchRequest(
                url=mutation.url,
                method=mutation.method,
                headers=mutation.header_dict,
                body=mutation.body,
            )
            try:
                response = self._network.fetch(request)
            except NetworkError as e:
                logger.info(f"Replay of #{mutation.id} failed, keeping it queued: {e}")
                return False

            # A server error may succeed later; anything else was processed
            if response.status >= 500:
                logger.info(f"Replay of #{mutation.id} got {response.status}, keeping it queued")
                return False

            with self._session_factory() as db:
                crud.delete_mutation(db, mutation.id)
            logger.info(f"Replayed #{mutation.id} {mutation.method} {mutation.url} ({response.status})")
            self._announce(mutation, response.status)
            return True
        finally:
            with self._replaying_lock:
                self._replaying.discard(mutation.id)

    def _announce(self, mutation: QueuedMutation, status: int) -> None:
        if self._notify is None:
            return
        try:
            self._notify({
                "type": "sync-success",
                "data": {
                    "id": mutation.id,
                    "method": mutation.method,
                    "url": mutation.url,
                    "status": status,
                },
            })
        except Exception as e:
            logger.warning(f"Sync notification for #{mutation.id} failed: {e}")


def item_id_from_tag(tag: str) -> Optional[int]:
    """Mutation id named by a per-item sync tag, e.g. "sync-workout-12" -> 12."""
    if not tag.startswith(SYNC_ITEM_TAG_PREFIX):
        return None
    suffix = tag[len(SYNC_ITEM_TAG_PREFIX):]
    return int(suffix) if suffix.isdigit() else None
