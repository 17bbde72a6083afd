import itertools
import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor

from pymongo import errors
from pymongo.collection import Collection

logger = logging.getLogger(__name__)

EVENT_NUMBER_WIDTH = int(os.environ.get("EVENT_NUMBER_WIDTH", "3"))

HIDDEN_PREFIX = "HIDDEN_"
STAGING_PREFIX = "TEMP_"
PENDING_PREFIX = "PENDING_"

_pass_counter = itertools.count(1)


class RenumberError(Exception):
    pass


class PersistenceFailure(RenumberError):
    def __init__(self, phase: str, cause: Exception):
        super().__init__(f"Renumbering failed during {phase}: {cause}")
        self.phase = phase
        self.cause = cause


class InvalidPermutation(RenumberError, ValueError):
    def __init__(self, missing: list[str], unexpected: list[str], duplicates: list[str]):
        parts = []
        if missing:
            parts.append(f"missing {', '.join(missing)}")
        if unexpected:
            parts.append(f"not visible {', '.join(unexpected)}")
        if duplicates:
            parts.append(f"duplicated {', '.join(duplicates)}")
        super().__init__("orderedIds must list every visible event exactly once (" + "; ".join(parts) + ")")
        self.missing = missing
        self.unexpected = unexpected
        self.duplicates = duplicates


# --- Mutual exclusion ---
class FifoLock:
    """Ticket lock: waiters acquire strictly in the order they asked."""

    def __init__(self):
        self._cond = threading.Condition()
        self._next_ticket = 0
        self._serving = 0

    def take_ticket(self) -> int:
        with self._cond:
            ticket = self._next_ticket
            self._next_ticket += 1
            return ticket

    def wait_for(self, ticket: int) -> None:
        with self._cond:
            while self._serving != ticket:
                self._cond.wait()

    def acquire(self) -> None:
        self.wait_for(self.take_ticket())

    def release(self) -> None:
        with self._cond:
            self._serving += 1
            self._cond.notify_all()

    @property
    def pending(self) -> int:
        """Tickets handed out and not yet released, the running holder included."""
        with self._cond:
            return self._next_ticket - self._serving

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.release()
        return False


class RenumberGate:
    """Runs renumbering work one operation at a time, first come first served.

    ``run_exclusively`` blocks the calling thread until its turn, runs the
    operation and returns its result. ``submit`` reserves the turn right away
    and hands back a ``Future`` resolved by a background worker.
    There is no timeout: an operation that never returns blocks every later one.
    """

    def __init__(self):
        self._lock = FifoLock()
        self._executor = None
        self._executor_guard = threading.Lock()

    @property
    def pending(self) -> int:
        return self._lock.pending

    def run_exclusively(self, operation, *args, **kwargs):
        return self._run_ticket(self._lock.take_ticket(), operation, args, kwargs)

    def submit(self, operation, *args, **kwargs) -> Future:
        # tickets must reach the worker queue in the order they were issued
        with self._executor_guard:
            ticket = self._lock.take_ticket()
            return self._get_executor().submit(self._run_ticket, ticket, operation, args, kwargs)

    def shutdown(self, wait: bool = True) -> None:
        with self._executor_guard:
            if self._executor is not None:
                self._executor.shutdown(wait=wait)
                self._executor = None

    def _get_executor(self) -> ThreadPoolExecutor:
        # caller holds _executor_guard; one worker runs queued submissions in ticket order
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="renumber")
        return self._executor

    def _run_ticket(self, ticket: int, operation, args, kwargs):
        self._lock.wait_for(ticket)
        try:
            return operation(*args, **kwargs)
        finally:
            self._lock.release()


# --- Sequence renumbering ---
def format_event_number(rank: int, width: int = EVENT_NUMBER_WIDTH) -> str:
    return str(rank).zfill(width)


def hidden_event_number(doc_id) -> str:
    return f"{HIDDEN_PREFIX}{doc_id}"


def pending_event_number(doc_id) -> str:
    """Placeholder for a freshly inserted record until the next pass numbers it."""
    return f"{PENDING_PREFIX}{doc_id}"


class EventSequence:
    """Keeps ``eventNumber`` dense (``001``..``N``) over the visible events.

    The engine only depends on five fields of a record, named by the
    constructor arguments: the id, the ordinal, the visibility flag (stored
    inverted, as ``isHidden``), the sort key and the creation time. Every
    public operation goes through the gate so passes never interleave.
    """

    def __init__(
        self,
        collection: Collection,
        gate: RenumberGate,
        number_field: str = "eventNumber",
        hidden_field: str = "isHidden",
        order_field: str = "order",
        created_field: str = "createdAt",
        width: int = EVENT_NUMBER_WIDTH,
    ):
        self.collection = collection
        self.gate = gate
        self.number_field = number_field
        self.hidden_field = hidden_field
        self.order_field = order_field
        self.created_field = created_field
        self.width = width

    def renumber_visible(self) -> int:
        """Run a full pass under the gate; returns the number of visible records."""
        return self.gate.run_exclusively(self._renumber_pass)

    def update_order(self, ordered_ids: list, strict: bool = True) -> int:
        """Apply an explicit display order; the first id gets the highest number."""
        return self.gate.run_exclusively(self._reorder_pass, list(ordered_ids), strict)

    def submit_renumber(self) -> Future:
        return self.gate.submit(self._renumber_pass)

    def apply(self, mutation, *args, **kwargs):
        """Run ``mutation`` and, if it reports a change, a full pass, both under one turn of the gate.

        Writes that create, delete, hide or unhide records go through here so
        no pass can commit numbers from a visible set that changed under it.
        The mutation's own result is returned; a falsy result skips the pass.
        """
        return self.gate.run_exclusively(self._mutate_and_renumber, mutation, args, kwargs)

    def _mutate_and_renumber(self, mutation, args, kwargs):
        changed = mutation(*args, **kwargs)
        if changed:
            self._renumber_pass()
        return changed

    # the passes below assume the caller holds the gate
    def _visible_filter(self) -> dict:
        return {self.hidden_field: {"$ne": True}}

    def _visible_docs(self) -> list[dict]:
        cursor = self.collection.find(self._visible_filter(), {"_id": 1})
        return list(cursor.sort([(self.order_field, 1), (self.created_field, -1)]))

    def _set_number(self, doc_id, value: str, extra: dict | None = None) -> None:
        update = {self.number_field: value}
        if extra:
            update.update(extra)
        self.collection.update_one({"_id": doc_id}, {"$set": update})

    def _quarantine_hidden(self) -> int:
        hidden = list(self.collection.find({self.hidden_field: True}, {"_id": 1}))
        for doc in hidden:
            self._set_number(doc["_id"], hidden_event_number(doc["_id"]))
        return len(hidden)

    def _stage(self, pass_no: int, doc_ids: list, extra_for_index=None) -> None:
        for index, doc_id in enumerate(doc_ids):
            extra = extra_for_index(index) if extra_for_index else None
            self._set_number(doc_id, f"{STAGING_PREFIX}{pass_no}_{index}_{doc_id}", extra)

    def _renumber_pass(self) -> int:
        pass_no = next(_pass_counter)
        logger.info("Renumber pass %s: starting", pass_no)
        phase = "hidden quarantine"
        try:
            hidden_count = self._quarantine_hidden()
            logger.info("Renumber pass %s: %s hidden event(s) quarantined", pass_no, hidden_count)

            phase = "visible fetch"
            doc_ids = [doc["_id"] for doc in self._visible_docs()]
            logger.info("Renumber pass %s: %s visible event(s) to number", pass_no, len(doc_ids))

            phase = "staging"
            self._stage(pass_no, doc_ids)

            phase = "commit"
            for index, doc_id in enumerate(doc_ids):
                self._set_number(doc_id, format_event_number(index + 1, self.width))
        except errors.PyMongoError as exc:
            logger.error("Renumber pass %s failed during %s: %s", pass_no, phase, exc)
            raise PersistenceFailure(phase, exc) from exc
        logger.info("Renumber pass %s: done, %s visible event(s)", pass_no, len(doc_ids))
        return len(doc_ids)

    def _check_permutation(self, ordered_ids: list) -> None:
        visible = {str(doc["_id"]) for doc in self.collection.find(self._visible_filter(), {"_id": 1})}
        seen = set()
        duplicates = []
        for doc_id in ordered_ids:
            key = str(doc_id)
            if key in seen and key not in duplicates:
                duplicates.append(key)
            seen.add(key)
        missing = sorted(visible - seen)
        unexpected = sorted(seen - visible)
        if missing or unexpected or duplicates:
            raise InvalidPermutation(missing, unexpected, duplicates)

    def _reorder_pass(self, ordered_ids: list, strict: bool) -> int:
        pass_no = next(_pass_counter)
        phase = "permutation check"
        try:
            if strict:
                self._check_permutation(ordered_ids)
            logger.info("Reorder pass %s: %s event(s)", pass_no, len(ordered_ids))

            phase = "staging"
            self._stage(pass_no, ordered_ids, lambda index: {self.order_field: index})

            phase = "commit"
            total = len(ordered_ids)
            for index, doc_id in enumerate(ordered_ids):
                self._set_number(doc_id, format_event_number(total - index, self.width))
        except errors.PyMongoError as exc:
            logger.error("Reorder pass %s failed during %s: %s", pass_no, phase, exc)
            raise PersistenceFailure(phase, exc) from exc
        logger.info("Reorder pass %s: done", pass_no)
        return total


