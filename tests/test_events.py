# tests/test_events.py
from __future__ import annotations

import threading

from batchflow.events import EngineEvent, EventKind, EventStream, Subscription
from batchflow.state import StepState


def test_subscription_drops_oldest_when_full():
    sub = Subscription(maxsize=3)
    for i in range(5):
        sub.offer(EngineEvent.log("a", f"line {i}"))

    assert sub.dropped == 2
    assert [e.line for e in sub.drain()] == ["line 2", "line 3", "line 4"]


def test_emit_without_subscribers_is_a_no_op():
    EventStream().emit(EngineEvent.log("a", "x"))


def test_get_times_out_and_close_ends_iteration():
    sub = Subscription(maxsize=10)
    assert sub.get(timeout=0.01) is None

    sub.offer(EngineEvent.log("a", "one"))
    sub.close()
    sub.offer(EngineEvent.log("a", "after close"))
    assert [e.line for e in sub] == ["one"]
    assert sub.closed


def test_fan_out_to_every_subscription():
    stream = EventStream(maxsize=10)
    first, second = stream.subscribe(), stream.subscribe()
    stream.emit(EngineEvent.transition("a", StepState.PENDING, StepState.RUNNING))

    for sub in (first, second):
        (event,) = sub.drain()
        assert event.kind is EventKind.STATE
        assert (event.old_state, event.new_state) == (StepState.PENDING, StepState.RUNNING)


def test_attached_consumers_receive_everything_before_close():
    stream = EventStream(maxsize=100)
    seen = []

    class Observer:
        def on_event(self, event):
            seen.append(event.line)

    stream.attach(Observer())
    for i in range(20):
        stream.emit(EngineEvent.log("a", str(i)))
    stream.close()

    assert seen == [str(i) for i in range(20)]


def test_failing_consumer_does_not_affect_others():
    stream = EventStream(maxsize=100)
    good = []

    def bad(event):
        raise RuntimeError("observer bug")

    stream.attach(bad)
    stream.attach(good.append)
    stream.emit(EngineEvent.log("a", "x"))
    stream.emit(EngineEvent.run_finished("succeeded"))
    stream.close()

    assert [e.kind for e in good] == [EventKind.LOG, EventKind.RUN_FINISHED]


def test_slow_consumer_never_blocks_the_producer():
    stream = EventStream(maxsize=2)
    release = threading.Event()
    seen = []

    def slow(event):
        release.wait(5)
        seen.append(event)

    sub = stream.attach(slow)
    for i in range(50):
        stream.emit(EngineEvent.log("a", str(i)))
    release.set()
    stream.close()

    assert sub.dropped > 0
    assert len(seen) < 50
    assert seen[-1].line == "49"


def test_detach_stops_delivery():
    stream = EventStream()
    sub = stream.subscribe()
    stream.detach(sub)
    stream.emit(EngineEvent.log("a", "x"))
    assert sub.drain() == []
