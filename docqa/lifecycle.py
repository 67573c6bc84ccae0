"""Corpus registry and per-corpus state machine.

Every corpus moves ``pending -> indexing -> ready``; any failure moves it to the
terminal ``failed`` state, and eviction moves any state to ``evicted`` and drops
the handle. Transitions on one corpus hold only that corpus's lock. The registry
lock guards nothing but the handle map and LRU order, and is never held while a
pipeline stage runs.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timezone

from docqa.cancellation import CancellationToken
from docqa.config import MAX_CORPORA
from docqa.errors import CapacityExceeded, CorpusBusy, CorpusFailed, CorpusNotFound, CorpusNotReady
from docqa.index import VectorIndex
from docqa.models import CorpusState, CorpusStatus, Passage

log = logging.getLogger(__name__)

_EVICTABLE = {CorpusState.READY, CorpusState.FAILED}


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SourceInfo:
    filename: str
    media_type: str
    size_bytes: int
    sha256: str


@dataclass(frozen=True)
class CorpusSnapshot:
    """A consistent view of a ready corpus; stays valid after eviction."""

    handle: str
    passages: tuple[Passage, ...]
    index: VectorIndex


@dataclass
class CorpusRecord:
    handle: str
    source: SourceInfo
    token: CancellationToken
    state: CorpusState = CorpusState.PENDING
    reason: str | None = None
    error_code: str | None = None
    page_count: int = 0
    passages: tuple[Passage, ...] = ()
    index: VectorIndex | None = None
    generation: int = 1
    created_at: datetime = field(default_factory=_now)
    updated_at: datetime = field(default_factory=_now)
    settled: threading.Event = field(default_factory=threading.Event, repr=False)
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def _set_state(self, state: CorpusState) -> None:
        log.info("Corpus %s: %s -> %s", self.handle, self.state.value, state.value)
        self.state = state
        self.updated_at = _now()
        if state in {CorpusState.READY, CorpusState.FAILED, CorpusState.EVICTED}:
            self.settled.set()

    def to_status(self) -> CorpusStatus:
        return CorpusStatus(
            corpus_handle=self.handle,
            status=self.state,
            reason=self.reason,
            error_code=self.error_code,
            filename=self.source.filename,
            media_type=self.source.media_type,
            size_bytes=self.source.size_bytes,
            page_count=self.page_count,
            passage_count=len(self.passages),
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class CorpusManager:
    def __init__(self, max_corpora: int = MAX_CORPORA) -> None:
        self._max_corpora = max(1, max_corpora)
        self._registry: OrderedDict[str, CorpusRecord] = OrderedDict()
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._registry)

    def _lookup(self, handle: str, touch: bool = False) -> CorpusRecord | None:
        with self._registry_lock:
            record = self._registry.get(handle)
            if record is not None and touch:
                self._registry.move_to_end(handle)
            return record

    def _require(self, handle: str) -> CorpusRecord:
        record = self._lookup(handle, touch=True)
        if record is None:
            raise CorpusNotFound(handle)
        return record

    @staticmethod
    def _release(record: CorpusRecord) -> None:
        record.token.cancel("evicted")
        with record.lock:
            record._set_state(CorpusState.EVICTED)
            record.passages = ()
            record.index = None

    def create(self, source: SourceInfo, token: CancellationToken) -> CorpusRecord:
        record = CorpusRecord(handle=uuid.uuid4().hex, source=source, token=token)
        victim: CorpusRecord | None = None
        with self._registry_lock:
            if len(self._registry) >= self._max_corpora:
                victim = next(
                    (r for r in self._registry.values() if r.state in _EVICTABLE),
                    None,
                )
                if victim is None:
                    raise CapacityExceeded(
                        f"All {self._max_corpora} corpus slots are busy ingesting."
                    )
                del self._registry[victim.handle]
            self._registry[record.handle] = record
        if victim is not None:
            log.info("Evicting least recently used corpus %s", victim.handle)
            self._release(victim)
        log.info("Registered corpus %s for %s", record.handle, source.filename)
        return record

    def reset_for_retry(
        self, handle: str, source: SourceInfo, token: CancellationToken
    ) -> CorpusRecord:
        """Reuse a failed handle for a fresh ingestion attempt."""
        record = self._require(handle)
        with record.lock:
            if record.state is CorpusState.EVICTED:
                raise CorpusNotFound(handle)
            if record.state is not CorpusState.FAILED:
                raise CorpusBusy(
                    f"Corpus {handle!r} is {record.state.value}; only failed corpora can be re-ingested."
                )
            record.generation += 1
            record.source = source
            record.token = token
            record.reason = None
            record.error_code = None
            record.page_count = 0
            record.passages = ()
            record.index = None
            record.settled = threading.Event()
            record._set_state(CorpusState.PENDING)
            return record

    def begin_indexing(
        self, handle: str, generation: int, page_count: int, passages: list[Passage]
    ) -> bool:
        record = self._lookup(handle)
        if record is None:
            return False
        with record.lock:
            if record.generation != generation or record.state is not CorpusState.PENDING:
                return False
            record.page_count = page_count
            record.passages = tuple(passages)
            record._set_state(CorpusState.INDEXING)
            return True

    def publish(self, handle: str, generation: int, index: VectorIndex) -> bool:
        """Swap a fully built index in and mark the corpus ready."""
        record = self._lookup(handle)
        if record is None:
            return False
        with record.lock:
            if (
                record.generation != generation
                or record.state is not CorpusState.INDEXING
                or record.token.cancelled
            ):
                log.info("Discarding stale index for corpus %s", handle)
                return False
            record.passages = index.passages
            record.index = index
            record._set_state(CorpusState.READY)
            return True

    def fail(self, handle: str, generation: int, reason: str, error_code: str) -> bool:
        record = self._lookup(handle)
        if record is None:
            return False
        with record.lock:
            if record.generation != generation or record.state not in {
                CorpusState.PENDING,
                CorpusState.INDEXING,
            }:
                return False
            record.reason = reason
            record.error_code = error_code
            record.passages = ()
            record.index = None
            record._set_state(CorpusState.FAILED)
            return True

    def status(self, handle: str) -> CorpusStatus:
        record = self._require(handle)
        with record.lock:
            return record.to_status()

    def wait_settled(self, handle: str, timeout: float | None = None) -> CorpusStatus:
        """Block until the corpus is ready, failed or evicted, or the timeout passes."""
        record = self._require(handle)
        with record.lock:
            settled = record.settled
        settled.wait(timeout)
        with record.lock:
            return record.to_status()

    def snapshot(self, handle: str) -> CorpusSnapshot:
        record = self._require(handle)
        with record.lock:
            if record.state is CorpusState.READY and record.index is not None:
                return CorpusSnapshot(handle=handle, passages=record.passages, index=record.index)
            if record.state is CorpusState.FAILED:
                raise CorpusFailed(handle, record.reason)
            if record.state is CorpusState.EVICTED:
                raise CorpusNotFound(handle)
            raise CorpusNotReady(handle, record.state.value)

    def cancel(self, handle: str, reason: str = "cancelled") -> None:
        self._require(handle).token.cancel(reason)

    def evict(self, handle: str) -> bool:
        """Drop a corpus. Returns False when the handle was already gone."""
        with self._registry_lock:
            record = self._registry.pop(handle, None)
        if record is None:
            return False
        self._release(record)
        log.info("Evicted corpus %s", handle)
        return True

    def evict_all(self) -> None:
        with self._registry_lock:
            records = list(self._registry.values())
            self._registry.clear()
        for record in records:
            self._release(record)
