"""Polls the lending pool for events and feeds them to the processors."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Iterable, List, Optional, Tuple

from loanledger.chain import ChainClient, ChainEvent
from loanledger.errors import TransientChainError
from loanledger.processors import EventProcessor, ProcessOutcome
from loanledger.store import LedgerStore

LOGGER = logging.getLogger("loanledger.reconciler")


@dataclass
class StreamReport:
    event_name: str
    from_block: Optional[int] = None
    to_block: Optional[int] = None
    applied: int = 0
    duplicates: int = 0
    skipped: int = 0
    failed: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.failed == 0


@dataclass
class TickReport:
    head: Optional[int] = None
    streams: List[StreamReport] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None and all(stream.ok for stream in self.streams)


class ChainPoller:
    """Works out block windows per event stream and fetches their logs.

    Each tick re-reads the last ``lookback`` blocks so late or re-delivered
    logs are seen again. When the durable cursor lags behind that window the
    query starts right after the cursor instead, split into
    ``max_block_range`` chunks.
    """

    def __init__(
        self,
        chain: ChainClient,
        store: LedgerStore,
        *,
        lookback: int = 100,
        max_block_range: int = 1000,
        confirmations: int = 0,
        start_block: Optional[int] = None,
    ) -> None:
        self.chain = chain
        self.store = store
        self.lookback = max(int(lookback), 0)
        self.max_block_range = max(int(max_block_range), 1)
        self.confirmations = max(int(confirmations), 0)
        self.start_block = start_block

    @staticmethod
    def cursor_name(event_name: str) -> str:
        return f"events:{event_name}"

    def window(self, event_name: str, head: int) -> Optional[Tuple[int, int]]:
        to_block = head - self.confirmations
        if to_block < 0:
            return None
        from_block = max(0, to_block - self.lookback)
        cursor = self.store.get_cursor(self.cursor_name(event_name))
        if cursor is not None:
            if cursor + 1 < from_block:
                from_block = cursor + 1
        elif self.start_block is not None:
            from_block = min(from_block, max(int(self.start_block), 0))
        if from_block > to_block:
            return None
        return from_block, to_block

    def fetch(self, event_name: str, from_block: int, to_block: int) -> List[ChainEvent]:
        events: List[ChainEvent] = []
        start = from_block
        while start <= to_block:
            end = min(start + self.max_block_range - 1, to_block)
            events.extend(self.chain.get_events(event_name, start, end))
            start = end + 1
        events.sort(key=lambda event: (event.block_number, event.log_index))
        return events

    def commit(self, event_name: str, block_number: int) -> None:
        self.store.set_cursor(self.cursor_name(event_name), block_number)


class Reconciler:
    """Runs every processor once per tick, in order, isolating failures.

    Assumes a single running instance per datastore. Duplicate effects from
    overlapping ticks are still suppressed by the idempotency keys the
    processors claim.
    """

    def __init__(self, poller: ChainPoller, processors: Iterable[EventProcessor]) -> None:
        self.poller = poller
        self.processors = list(processors)

    def run_tick(self) -> TickReport:
        report = TickReport()
        try:
            report.head = self.poller.chain.block_number()
        except Exception as exc:
            LOGGER.error("Unable to read block height: %s", exc)
            report.error = str(exc)
            return report
        for processor in self.processors:
            stream = StreamReport(event_name=processor.event_name)
            report.streams.append(stream)
            try:
                self._run_processor(processor, report.head, stream)
            except TransientChainError as exc:
                LOGGER.warning("%s polling failed, retrying next tick: %s", processor.event_name, exc)
                stream.error = str(exc)
            except Exception as exc:
                LOGGER.exception("%s processor failed: %s", processor.event_name, exc)
                stream.error = str(exc)
        return report

    def _run_processor(self, processor: EventProcessor, head: int, stream: StreamReport) -> None:
        window = self.poller.window(processor.event_name, head)
        if window is None:
            return
        stream.from_block, stream.to_block = window
        events = self.poller.fetch(processor.event_name, *window)
        if events:
            LOGGER.info("Found %s %s events in blocks %s-%s", len(events), processor.event_name, *window)
        for event in events:
            try:
                outcome = processor.process(event)
            except TransientChainError as exc:
                LOGGER.warning("%s event %s deferred: %s", processor.event_name, event.transaction_hash, exc)
                stream.failed += 1
                continue
            except Exception as exc:
                LOGGER.exception("%s event %s failed: %s", processor.event_name, event.transaction_hash, exc)
                stream.failed += 1
                continue
            if outcome is ProcessOutcome.APPLIED:
                stream.applied += 1
            elif outcome is ProcessOutcome.DUPLICATE:
                stream.duplicates += 1
            else:
                stream.skipped += 1
        if stream.failed == 0:
            self.poller.commit(processor.event_name, window[1])


class ReconciliationWorker(threading.Thread):
    """Background loop calling :meth:`Reconciler.run_tick` on a fixed interval."""

    def __init__(self, reconciler: Reconciler, *, interval: float = 5.0) -> None:
        super().__init__(daemon=True, name="reconciliation-worker")
        self.reconciler = reconciler
        self.interval = interval
        self._stop_event = threading.Event()

    def stop(self) -> None:
        self._stop_event.set()

    def run(self) -> None:  # pragma: no cover - background loop
        LOGGER.info("Reconciliation worker started")
        while not self._stop_event.is_set():
            try:
                self.reconciler.run_tick()
            except Exception as exc:
                LOGGER.exception("Unexpected reconciliation failure: %s", exc)
            self._stop_event.wait(self.interval)
        LOGGER.info("Reconciliation worker stopped")


__all__ = ["ChainPoller", "ReconciliationWorker", "Reconciler", "StreamReport", "TickReport"]
