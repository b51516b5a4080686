"""
Realtime change feed and the insight notifier.
Tier stores publish insert/update events to the feed; the notifier reacts to
global-tier events by re-running the pattern analyzer for the affected category
and pushing the resulting insights to that category's listeners.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from util.logging import logger as structured_logger
from .analyzer import IInsightAnalyzer
from .config import INSIGHT_SAMPLE_LIMIT, NOTIFIER_MAX_WORKERS
from .errors import AnalyzerUnavailable
from .schema import MemoryCategory

logger = logging.getLogger(__name__)

GLOBAL_TABLE = "global_memories"


@dataclass
class ChangeEvent:
    table: str
    event: str  # insert|update|delete
    row: Dict[str, Any] = field(default_factory=dict)


class Subscription:
    """Handle returned by subscribe(); unsubscribe() releases it."""

    def __init__(self, release: Callable[["Subscription"], None]):
        self._release = release
        self._active = True
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._active

    def unsubscribe(self):
        with self._lock:
            if not self._active:
                return
            self._active = False
        self._release(self)


class ChangeFeed:
    """In-process change channel: subscribe by table plus filter, receive events."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[str, List[tuple]] = {}

    def subscribe(self, table: str, callback: Callable[[ChangeEvent], None],
                  filter_fn: Callable[[ChangeEvent], bool] = None) -> Subscription:
        subscription = Subscription(lambda sub: self._remove(table, sub))
        with self._lock:
            self._subscribers.setdefault(table, []).append((subscription, callback, filter_fn))
        return subscription

    def _remove(self, table: str, subscription: Subscription):
        with self._lock:
            entries = self._subscribers.get(table, [])
            self._subscribers[table] = [entry for entry in entries if entry[0] is not subscription]

    def publish(self, table: str, event: str, row: Dict[str, Any]):
        """Deliver an event to matching subscribers on the caller's thread."""
        change = ChangeEvent(table=table, event=event, row=row)
        with self._lock:
            entries = list(self._subscribers.get(table, []))

        for subscription, callback, filter_fn in entries:
            if not subscription.active:
                continue
            try:
                if filter_fn is None or filter_fn(change):
                    callback(change)
            except Exception as e:
                # Error isolation - one subscriber never breaks the writer or its peers
                logger.error(f"Change feed subscriber for '{table}' failed: {e}")

    def subscriber_count(self, table: str) -> int:
        with self._lock:
            return len(self._subscribers.get(table, []))


class NotifierState(str, Enum):
    IDLE = "Idle"
    ANALYZING = "Analyzing"


class _CategoryState:
    def __init__(self):
        self.lock = threading.Lock()
        self.state = NotifierState.IDLE
        self.pending = False
        self.runs = 0
        self.last_insights: Optional[List[str]] = None
        self.listeners: List[tuple] = []


InsightListener = Callable[[MemoryCategory, List[str]], None]


class InsightNotifier:
    """Re-analyzes a category whenever its global records change.

    Each category is an Idle/Analyzing state machine guarded by its own lock:
    at most one analysis per category is in flight, events arriving during a
    run are coalesced into exactly one follow-up run, and different categories
    analyze concurrently on the worker pool.
    """

    def __init__(self, global_store, analyzer: IInsightAnalyzer, change_feed: ChangeFeed,
                 sample_limit: int = INSIGHT_SAMPLE_LIMIT, max_workers: int = NOTIFIER_MAX_WORKERS,
                 force_refresh: bool = True):
        self.global_store = global_store
        self.analyzer = analyzer
        self.change_feed = change_feed
        self.sample_limit = sample_limit
        self.force_refresh = force_refresh
        self._states: Dict[MemoryCategory, _CategoryState] = {c: _CategoryState() for c in MemoryCategory}
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="insights")
        self._subscription: Optional[Subscription] = None
        self._closed = False
        self._inflight = 0
        self._idle = threading.Condition()

    def subscribe(self, category: MemoryCategory, callback: InsightListener) -> Subscription:
        """Register a listener for insights of one category."""
        if not callable(callback):
            raise ValueError(f"Insight listener must be callable: {callback}")
        state = self._states[MemoryCategory(category)]
        token = object()

        def release(_sub):
            with state.lock:
                state.listeners = [entry for entry in state.listeners if entry[0] is not token]

        with state.lock:
            state.listeners.append((token, callback))
        return Subscription(release)

    def start(self):
        """Attach to the global-tier change feed."""
        if self._subscription is not None:
            raise RuntimeError("Insight notifier already running")
        self._subscription = self.change_feed.subscribe(
            GLOBAL_TABLE, self._on_change,
            filter_fn=lambda change: change.event in ("insert", "update")
        )
        structured_logger.log_operation("notifier.start", "success", {"table": GLOBAL_TABLE})

    def _on_change(self, change: ChangeEvent):
        category = change.row.get("category")
        if category is None:
            return
        self.trigger(MemoryCategory(category))

    def trigger(self, category: MemoryCategory) -> bool:
        """Schedule an analysis run; False when coalesced or nobody listens."""
        category = MemoryCategory(category)
        state = self._states[category]
        with state.lock:
            if self._closed or not state.listeners:
                return False
            if state.state == NotifierState.ANALYZING:
                state.pending = True
                structured_logger.log_operation("notifier.coalesce", "success",
                                                {"category": category.value})
                return False
            state.state = NotifierState.ANALYZING
            self._begin()

        structured_logger.log_notifier_transition(category.value, NotifierState.IDLE.value,
                                                  NotifierState.ANALYZING.value)
        try:
            self._executor.submit(self._run, category)
        except RuntimeError:
            # executor already shut down
            with state.lock:
                state.state = NotifierState.IDLE
                state.pending = False
            self._end()
            return False
        return True

    def _run(self, category: MemoryCategory):
        state = self._states[category]
        finished = False
        try:
            while True:
                insights = self._analyze(category)

                with state.lock:
                    state.runs += 1
                    rerun = state.pending
                    state.pending = False
                    if not rerun:
                        state.state = NotifierState.IDLE
                    if insights is not None:
                        state.last_insights = list(insights)
                    listeners = [callback for _, callback in state.listeners]

                if not rerun:
                    structured_logger.log_notifier_transition(category.value, NotifierState.ANALYZING.value,
                                                              NotifierState.IDLE.value)
                if insights is not None:
                    self._publish(category, insights, listeners)
                if not rerun:
                    finished = True
                    return
        finally:
            if not finished:
                with state.lock:
                    state.state = NotifierState.IDLE
                    state.pending = False
            self._end()

    def _analyze(self, category: MemoryCategory) -> Optional[List[str]]:
        try:
            records = self.global_store.top_for_category(category, self.sample_limit)
            return self.analyzer.analyze(category, records, self.sample_limit,
                                         force_refresh=self.force_refresh)
        except AnalyzerUnavailable as e:
            structured_logger.log_operation("notifier.analyze", "failed",
                                            {"category": category.value, "error": str(e)})
        except Exception as e:
            logger.exception(f"Insight analysis for {category.value} failed: {e}")
        return None

    def _publish(self, category: MemoryCategory, insights: List[str], listeners: List[InsightListener]):
        for callback in listeners:
            try:
                callback(category, list(insights))
            except Exception as e:
                logger.error(f"Insight listener for {category.value} failed: {e}")

    def state(self, category: MemoryCategory) -> NotifierState:
        state = self._states[MemoryCategory(category)]
        with state.lock:
            return state.state

    def run_count(self, category: MemoryCategory) -> int:
        state = self._states[MemoryCategory(category)]
        with state.lock:
            return state.runs

    def last_insights(self, category: MemoryCategory) -> Optional[List[str]]:
        state = self._states[MemoryCategory(category)]
        with state.lock:
            return list(state.last_insights) if state.last_insights is not None else None

    def _begin(self):
        with self._idle:
            self._inflight += 1

    def _end(self):
        with self._idle:
            self._inflight -= 1
            self._idle.notify_all()

    def wait_idle(self, timeout: float = None) -> bool:
        """Block until no analysis is in flight; False on timeout."""
        with self._idle:
            return self._idle.wait_for(lambda: self._inflight == 0, timeout)

    def shutdown(self, wait: bool = True):
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        self._closed = True
        self._executor.shutdown(wait=wait)
        structured_logger.log_operation("notifier.shutdown", "success")
