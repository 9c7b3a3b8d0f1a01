from __future__ import annotations

from amm_bot.framework.broadcast import (
    BroadcastEvent,
    BufferedBroadcastSink,
    BufferedSinkConfig,
    DropPolicy,
    NullBroadcastSink,
)


def test_emit_buffers_and_drain_clears() -> None:
    sink = BufferedBroadcastSink()
    sink.emit("arbitrage", {"profit": 1.0})
    sink.emit("ammBotStatus", {"isRunning": True})

    assert len(sink) == 2
    events = sink.drain()
    assert [e.event for e in events] == ["arbitrage", "ammBotStatus"]
    assert len(sink) == 0
    assert sink.stats.emitted == 2


def test_payload_is_copied() -> None:
    sink = BufferedBroadcastSink()
    payload = {"n": 1}
    sink.emit("x", payload)
    payload["n"] = 2
    assert sink.drain()[0].payload == {"n": 1}


def test_drop_oldest_keeps_newest() -> None:
    sink = BufferedBroadcastSink(BufferedSinkConfig(max_size=2))
    for i in range(4):
        sink.emit("tick", {"i": i})
    assert [e.payload["i"] for e in sink.drain()] == [2, 3]
    assert sink.stats.dropped == 2


def test_drop_newest_keeps_oldest() -> None:
    sink = BufferedBroadcastSink(BufferedSinkConfig(max_size=2, drop_policy=DropPolicy.DROP_NEWEST))
    for i in range(4):
        sink.emit("tick", {"i": i})
    assert [e.payload["i"] for e in sink.drain()] == [0, 1]
    assert sink.stats.dropped == 2
    assert sink.stats.emitted == 2


def test_failing_subscriber_does_not_reach_producer() -> None:
    sink = BufferedBroadcastSink()
    received: list[BroadcastEvent] = []

    def broken(event: BroadcastEvent) -> None:
        raise RuntimeError("socket closed")

    sink.subscribe(broken)
    sink.subscribe(received.append)
    sink.emit("lpPosition", {"action": "enter"})

    assert sink.stats.subscriber_errors == 1
    assert [e.event for e in received] == ["lpPosition"]


def test_latest_returns_most_recent_of_kind() -> None:
    sink = BufferedBroadcastSink()
    sink.emit("ammBotStatus", {"n": 1})
    sink.emit("arbitrage", {})
    sink.emit("ammBotStatus", {"n": 2})
    latest = sink.latest("ammBotStatus")
    assert latest is not None
    assert latest.payload == {"n": 2}
    assert sink.latest("missing") is None


def test_null_sink_accepts_anything() -> None:
    assert NullBroadcastSink().emit("anything", {"a": 1}) is None
