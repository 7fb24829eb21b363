# events.py
from __future__ import annotations

import enum
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Deque, Iterator, List, Optional, Union

from .state import StepState


class EventKind(str, enum.Enum):
    STATE = "state"
    LOG = "log"
    RUN_FINISHED = "run_finished"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class EngineEvent:
    """Immutable lifecycle record. `step_id` is None for run-level events."""
    step_id: Optional[str]
    kind: EventKind
    old_state: Optional[StepState] = None
    new_state: Optional[StepState] = None
    line: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow)

    @classmethod
    def transition(cls, step_id: str, old: StepState, new: StepState) -> "EngineEvent":
        return cls(step_id=step_id, kind=EventKind.STATE, old_state=old, new_state=new)

    @classmethod
    def log(cls, step_id: str, line: str) -> "EngineEvent":
        return cls(step_id=step_id, kind=EventKind.LOG, line=line)

    @classmethod
    def run_finished(cls, status: str) -> "EngineEvent":
        return cls(step_id=None, kind=EventKind.RUN_FINISHED, line=status)


Consumer = Union[Callable[[EngineEvent], Any], Any]  # callable or object with on_event()


class Subscription:
    """
    Bounded per-consumer buffer. When full, the oldest unconsumed event is
    dropped so producers never wait.
    """

    def __init__(self, maxsize: int):
        if maxsize < 1:
            raise ValueError("event queue size must be >= 1")
        self._queue: Deque[EngineEvent] = deque(maxlen=maxsize)
        self._cond = threading.Condition()
        self._closed = False
        self.dropped = 0

    def offer(self, event: EngineEvent) -> None:
        with self._cond:
            if self._closed:
                return
            if len(self._queue) == self._queue.maxlen:
                self.dropped += 1
            self._queue.append(event)
            self._cond.notify()

    def get(self, timeout: Optional[float] = None) -> Optional[EngineEvent]:
        """Next event, or None once closed and empty (or on timeout)."""
        with self._cond:
            if not self._queue and not self._closed:
                self._cond.wait(timeout)
            if self._queue:
                return self._queue.popleft()
            return None

    def drain(self) -> List[EngineEvent]:
        with self._cond:
            items = list(self._queue)
            self._queue.clear()
            return items

    def close(self) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def closed(self) -> bool:
        return self._closed

    def __iter__(self) -> Iterator[EngineEvent]:
        while True:
            with self._cond:
                while not self._queue and not self._closed:
                    self._cond.wait()
                if not self._queue:
                    return
                event = self._queue.popleft()
            yield event


class EventStream:
    """
    Append-only, best-effort event channel.

    emit() never blocks: with no subscribers the event is dropped, otherwise
    it is offered to every subscription's bounded buffer.
    """

    def __init__(self, maxsize: int = 1000):
        self.maxsize = maxsize
        self._subs: List[Subscription] = []
        self._dispatchers: List[threading.Thread] = []
        self._lock = threading.Lock()

    def subscribe(self, maxsize: Optional[int] = None) -> Subscription:
        """Pull-style subscription; the caller drains it."""
        sub = Subscription(maxsize or self.maxsize)
        with self._lock:
            self._subs.append(sub)
        return sub

    def attach(self, consumer: Consumer, maxsize: Optional[int] = None) -> Subscription:
        """Push-style: a daemon thread feeds `consumer` from its own subscription."""
        handler = getattr(consumer, "on_event", consumer)
        if not callable(handler):
            raise TypeError("consumer must be callable or define on_event(event)")

        sub = self.subscribe(maxsize)
        t = threading.Thread(
            target=_dispatch,
            args=(sub, handler),
            name=f"batchflow-events-{len(self._dispatchers)}",
            daemon=True,
        )
        with self._lock:
            self._dispatchers.append(t)
        t.start()
        return sub

    def detach(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)
        sub.close()

    def emit(self, event: EngineEvent) -> None:
        with self._lock:
            subs = list(self._subs)
        for sub in subs:
            sub.offer(event)

    def close(self, timeout: Optional[float] = 5.0) -> None:
        """Close all subscriptions and let dispatchers flush what they hold."""
        with self._lock:
            subs, self._subs = self._subs, []
            dispatchers, self._dispatchers = self._dispatchers, []
        for sub in subs:
            sub.close()
        for t in dispatchers:
            if t is not threading.current_thread():
                t.join(timeout)


def _dispatch(sub: Subscription, handler: Callable[[EngineEvent], Any]) -> None:
    for event in sub:
        try:
            handler(event)
        except Exception as e:
            # Import here to avoid circular import
            from .ui.console import get_console

            get_console().print_debug(f"event consumer raised {type(e).__name__}: {e}")
