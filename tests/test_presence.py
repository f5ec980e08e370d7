from strangerd.constants import B_STATS_ACTIVE, B_STATS_ONLINE, B_STATS_WAITING, K_BODY, K_SRC
from strangerd.pairing import PairingTable
from strangerd.pool import WaitingPool
from strangerd.presence import AggregateStats, PresenceBroadcaster
from strangerd.registry import ConnectionRegistry


def _broadcaster(**kwargs):
    registry = ConnectionRegistry()
    pool = WaitingPool()
    pairings = PairingTable()
    return registry, pool, pairings, PresenceBroadcaster(registry, pool, pairings, **kwargs)


def test_snapshot_reflects_collections() -> None:
    registry, pool, pairings, presence = _broadcaster()
    for uid in ("a", "b", "c"):
        registry.register(uid, object())
    pairings.create("a", "b")
    pool.enqueue("c")

    assert presence.snapshot() == AggregateStats(3, 1, 1)


def test_queue_if_changed_only_on_change() -> None:
    registry, pool, pairings, presence = _broadcaster(src=b"\x01\x02")
    h = object()
    registry.register("a", h)

    outgoing: list = []
    assert presence.queue_if_changed(outgoing)
    assert len(outgoing) == 1
    handle, env = outgoing[0]
    assert handle is h
    assert env[K_SRC] == b"\x01\x02"
    assert env[K_BODY] == {B_STATS_ONLINE: 1, B_STATS_WAITING: 0, B_STATS_ACTIVE: 0}

    assert not presence.queue_if_changed(outgoing)
    assert len(outgoing) == 1


def test_disabled_broadcaster_queues_nothing() -> None:
    registry, pool, pairings, presence = _broadcaster(enabled=False)
    registry.register("a", object())

    outgoing: list = []
    assert not presence.queue_if_changed(outgoing)
    assert outgoing == []


def test_queue_broadcast_is_unconditional() -> None:
    registry, pool, pairings, presence = _broadcaster()
    registry.register("a", object())
    registry.register("b", object())

    outgoing: list = []
    presence.queue_if_changed(outgoing)
    outgoing.clear()

    stats = presence.queue_broadcast(outgoing)
    assert stats.online_count == 2
    assert len(outgoing) == 2


def test_to_dict_uses_wire_names() -> None:
    assert AggregateStats(4, 2, 1).to_dict() == {
        "onlineUsers": 4,
        "waitingUsers": 2,
        "activeChats": 1,
    }
