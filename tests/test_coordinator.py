import pytest

from strangerd.config import PairingRuntimeConfig
from strangerd.constants import (
    B_MSG_FROM,
    B_MSG_TEXT,
    B_PAIRED_PARTNER,
    B_PAIRED_SHARED,
    B_STATS_ACTIVE,
    B_STATS_ONLINE,
    B_STATS_WAITING,
    K_BODY,
    K_T,
    T_MSG,
    T_ONLINE_STATS,
    T_PAIRED,
    T_STRANGER_LEFT,
    T_STRANGER_STOPPED_TYPING,
    T_STRANGER_TYPING,
    T_WAITING,
)
from strangerd.coordinator import InvalidTransition, SessionCoordinator, UserState


class Conn:
    def __init__(self, name: str) -> None:
        self.name = name

    def __repr__(self) -> str:
        return f"Conn({self.name})"


def _coordinator(**overrides) -> SessionCoordinator:
    return SessionCoordinator(PairingRuntimeConfig(**overrides))


def _of_type(outgoing, msg_type):
    return [(h, env) for h, env in outgoing if env[K_T] == msg_type]


def _without_presence(outgoing):
    return [(h, env) for h, env in outgoing if env[K_T] != T_ONLINE_STATS]


def _assert_consistent(coord: SessionCoordinator) -> None:
    waiting = set(coord.pool.user_ids())
    for uid, state in coord._states.items():
        assert uid in coord.registry
        assert (state is UserState.WAITING) == (uid in waiting)
        assert (state is UserState.PAIRED) == (uid in coord.pairings)
    for uid in coord.registry.user_ids():
        assert coord.state_of(uid) is not UserState.DISCONNECTED
    for uid in waiting:
        assert uid not in coord.pairings
    for pairing in coord.pairings.pairs():
        assert coord.partner_of(pairing.a) == pairing.b
        assert coord.partner_of(pairing.b) == pairing.a
    snap = coord.snapshot()
    assert snap.active_pair_count * 2 + snap.waiting_count <= snap.online_count


def _pair(coord, a="a", b="b"):
    ha, hb = Conn(a), Conn(b)
    coord.join(a, ha)
    coord.join(b, hb)
    assert coord.partner_of(a) == b
    return ha, hb


def test_first_join_waits() -> None:
    coord = _coordinator()
    h = Conn("a")

    out = coord.join("a", h)

    assert [(x, env[K_T]) for x, env in _without_presence(out)] == [(h, T_WAITING)]
    assert coord.state_of("a") is UserState.WAITING
    assert coord.pool.user_ids() == ["a"]
    _assert_consistent(coord)


def test_second_join_pairs_both_users() -> None:
    coord = _coordinator()
    ha, hb = Conn("a"), Conn("b")
    coord.join("a", ha)

    out = coord.join("b", hb)

    paired = _of_type(out, T_PAIRED)
    assert {h for h, _ in paired} == {ha, hb}
    for h, env in paired:
        expected = "b" if h is ha else "a"
        assert env[K_BODY] == {B_PAIRED_PARTNER: expected}
    assert coord.state_of("a") is UserState.PAIRED
    assert coord.state_of("b") is UserState.PAIRED
    assert len(coord.pool) == 0
    assert len(coord.pairings) == 1
    _assert_consistent(coord)


def test_fifo_pairs_with_longest_waiting() -> None:
    coord = _coordinator(match_policy="fifo")
    _pair(coord, "a", "b")
    coord.join("c", Conn("c"))
    coord.join("d", Conn("d"))
    coord.join("e", Conn("e"))

    assert coord.partner_of("d") == "c"
    assert coord.state_of("e") is UserState.WAITING


def test_interest_match_skips_older_unrelated_users() -> None:
    coord = _coordinator(interest_fallback=False)
    coord.join("a", Conn("a"), ["x"])
    coord.join("b", Conn("b"), ["y"])
    coord.join("c", Conn("c"))
    assert coord.pool.user_ids() == ["a", "b", "c"]

    coord.join("d", Conn("d"), ["y", "z"])
    assert coord.partner_of("d") == "b"
    assert coord.shared_interests_of("d") == frozenset({"y"})

    coord.join("e", Conn("e"))
    assert coord.partner_of("e") == "c"
    assert coord.pool.user_ids() == ["a"]
    _assert_consistent(coord)


def test_interest_fallback_pairs_without_overlap() -> None:
    coord = _coordinator()
    ha, hb = Conn("a"), Conn("b")
    coord.join("a", ha, ["x"])

    out = coord.join("b", hb, ["y"])

    assert coord.partner_of("b") == "a"
    for _, env in _of_type(out, T_PAIRED):
        assert B_PAIRED_SHARED not in env[K_BODY]


def test_shared_interests_are_case_insensitive() -> None:
    coord = _coordinator()
    ha, hb = Conn("a"), Conn("b")
    coord.join("a", ha, ["Music", "Chess"])

    out = coord.join("b", hb, ["MUSIC", "go"])

    for _, env in _of_type(out, T_PAIRED):
        assert env[K_BODY][B_PAIRED_SHARED] == ["music"]


def test_message_reaches_only_the_partner() -> None:
    coord = _coordinator()
    ha, hb = _pair(coord)
    coord.join("c", Conn("c"))

    out = coord.message("a", "hello")

    assert len(out) == 1
    handle, env = out[0]
    assert handle is hb
    assert env[K_T] == T_MSG
    assert env[K_BODY] == {B_MSG_TEXT: "hello", B_MSG_FROM: "a"}
    assert coord.stats_manager.get("msgs_forwarded") == 1


def test_message_without_partner_is_dropped() -> None:
    coord = _coordinator()
    coord.join("a", Conn("a"))

    assert coord.message("a", "hello") == []
    assert coord.message("nobody", "hello") == []
    assert coord.stats_manager.get("ignored") == 2


def test_message_text_is_validated() -> None:
    coord = _coordinator(max_msg_chars=5)
    _pair(coord)

    assert coord.message("a", "") == []
    assert coord.message("a", "   ") == []
    assert coord.message("a", "toolong") == []
    assert coord.message("a", 42) == []
    assert len(coord.message("a", "ok")) == 1


def test_message_to_unreachable_partner_is_dropped() -> None:
    coord = _coordinator()
    _pair(coord)
    coord.registry.unregister("b")

    assert coord.message("a", "hello") == []
    assert coord.stats_manager.get("msgs_dropped") == 1


def test_typing_indicators_are_forwarded() -> None:
    coord = _coordinator()
    ha, hb = _pair(coord)

    out = coord.typing("b")
    assert [(h, env[K_T]) for h, env in out] == [(ha, T_STRANGER_TYPING)]

    out = coord.stopped_typing("b")
    assert [(h, env[K_T]) for h, env in out] == [(ha, T_STRANGER_STOPPED_TYPING)]

    coord.join("c", Conn("c"))
    assert coord.typing("c") == []


def test_disconnect_notifies_partner_and_leaves_it_idle() -> None:
    coord = _coordinator()
    ha, hb = _pair(coord)

    out = coord.disconnect("a")

    assert [(h, env[K_T]) for h, env in _without_presence(out)] == [
        (hb, T_STRANGER_LEFT)
    ]
    assert coord.state_of("a") is UserState.DISCONNECTED
    assert coord.state_of("b") is UserState.IDLE
    assert "a" not in coord.registry
    assert coord.partner_of("b") is None
    assert len(coord.pool) == 0
    _assert_consistent(coord)


def test_disconnect_removes_waiting_user() -> None:
    coord = _coordinator()
    coord.join("a", Conn("a"))

    coord.disconnect("a")

    assert len(coord.pool) == 0
    assert coord.state_of("a") is UserState.DISCONNECTED


def test_disconnect_is_idempotent() -> None:
    coord = _coordinator()
    _pair(coord)
    coord.disconnect("a")

    assert coord.disconnect("a") == []
    assert coord.stats_manager.get("disconnects") == 1


def test_handle_closed_resolves_user() -> None:
    coord = _coordinator()
    ha, hb = _pair(coord)

    coord.handle_closed(ha)

    assert coord.state_of("a") is UserState.DISCONNECTED
    assert coord.handle_closed(ha) == []


def test_requeue_on_partner_left() -> None:
    coord = _coordinator(requeue_on_partner_left=True)
    ha, hb = _pair(coord)

    out = coord.disconnect("a")

    assert [env[K_T] for h, env in _without_presence(out) if h is hb] == [
        T_STRANGER_LEFT,
        T_WAITING,
    ]
    assert coord.state_of("b") is UserState.WAITING
    _assert_consistent(coord)


def test_leave_unwinds_but_keeps_connection_usable() -> None:
    coord = _coordinator()
    ha, hb = _pair(coord)

    out = coord.leave("a")

    assert _of_type(out, T_STRANGER_LEFT)[0][0] is hb
    assert coord.state_of("a") is UserState.DISCONNECTED
    assert coord.leave("a") == []

    coord.join("a", ha)
    assert coord.partner_of("a") is None
    assert coord.state_of("a") is UserState.WAITING
    _assert_consistent(coord)


def test_next_excludes_previous_partner() -> None:
    coord = _coordinator(match_policy="fifo")
    ha, hb = _pair(coord)

    out = coord.next_chat("a")

    assert _of_type(out, T_STRANGER_LEFT)[0][0] is hb
    assert _of_type(out, T_WAITING)[0][0] is ha
    assert coord.state_of("a") is UserState.WAITING
    assert coord.state_of("b") is UserState.IDLE

    coord.join("c", Conn("c"))
    assert coord.partner_of("c") == "a"
    _assert_consistent(coord)


def test_next_from_idle_rejoins_matching() -> None:
    coord = _coordinator()
    _pair(coord)
    coord.disconnect("a")
    coord.join("c", Conn("c"))

    coord.next_chat("b")

    assert coord.partner_of("b") == "c"


def test_next_while_waiting_is_ignored() -> None:
    coord = _coordinator()
    coord.join("a", Conn("a"))

    assert coord.next_chat("a") == []
    assert coord.next_chat("nobody") == []


def test_duplicate_join_while_active_is_ignored() -> None:
    coord = _coordinator()
    h1, h2 = Conn("1"), Conn("2")
    coord.join("a", h1)

    assert coord.join("a", h2) == []
    assert coord.registry.lookup("a") is h1
    assert coord.pool.user_ids() == ["a"]


def test_rejoin_from_idle_replaces_connection() -> None:
    coord = _coordinator()
    ha, hb = _pair(coord)
    coord.disconnect("b")
    h2 = Conn("a2")

    coord.join("a", h2)

    assert coord.registry.lookup("a") is h2
    assert coord.user_for(ha) is None
    assert coord.state_of("a") is UserState.WAITING


def test_stale_handle_does_not_disconnect_rejoined_user() -> None:
    coord = _coordinator()
    ha, hb = _pair(coord)
    coord.disconnect("b")
    h2 = Conn("a2")
    coord.join("a", h2)

    assert coord.disconnect("a", ha) == []
    assert coord.handle_closed(ha) == []
    assert coord.state_of("a") is UserState.WAITING


def test_join_over_connection_of_idle_user_replaces_it() -> None:
    coord = _coordinator()
    ha, hb = _pair(coord)
    coord.disconnect("b")

    coord.join("c", ha)

    assert coord.state_of("a") is UserState.DISCONNECTED
    assert coord.user_for(ha) == "c"
    assert coord.state_of("c") is UserState.WAITING
    _assert_consistent(coord)


def test_join_over_connection_of_active_user_is_ignored() -> None:
    coord = _coordinator()
    ha = Conn("a")
    coord.join("a", ha)

    assert coord.join("c", ha) == []
    assert coord.user_for(ha) == "a"
    assert "c" not in coord.registry


@pytest.mark.parametrize("user_id", ["", "   ", None, 42, "x" * 65, "a\nb"])
def test_join_rejects_bad_user_ids(user_id) -> None:
    coord = _coordinator()

    assert coord.join(user_id, Conn("x")) == []
    assert len(coord.registry) == 0


def test_presence_broadcast_on_membership_change() -> None:
    coord = _coordinator()
    ha, hb = Conn("a"), Conn("b")

    out = coord.join("a", ha)
    stats = _of_type(out, T_ONLINE_STATS)
    assert [h for h, _ in stats] == [ha]
    assert stats[0][1][K_BODY] == {B_STATS_ONLINE: 1, B_STATS_WAITING: 1, B_STATS_ACTIVE: 0}

    out = coord.join("b", hb)
    stats = _of_type(out, T_ONLINE_STATS)
    assert {h for h, _ in stats} == {ha, hb}
    for _, env in stats:
        assert env[K_BODY] == {B_STATS_ONLINE: 2, B_STATS_WAITING: 0, B_STATS_ACTIVE: 1}


def test_presence_not_sent_for_chat_traffic() -> None:
    coord = _coordinator()
    _pair(coord)

    assert _of_type(coord.message("a", "hi"), T_ONLINE_STATS) == []
    assert _of_type(coord.typing("a"), T_ONLINE_STATS) == []


def test_presence_disabled() -> None:
    coord = _coordinator(presence_broadcast=False)
    ha, hb = _pair(coord)

    assert _of_type(coord.disconnect("a"), T_ONLINE_STATS) == []
    assert coord.snapshot().online_count == 1


def test_snapshot_counts() -> None:
    coord = _coordinator(match_policy="fifo")
    _pair(coord, "a", "b")
    _pair(coord, "c", "d")
    coord.join("e", Conn("e"))

    snap = coord.snapshot()
    assert (snap.online_count, snap.waiting_count, snap.active_pair_count) == (5, 1, 2)
    assert snap.to_dict() == {"onlineUsers": 5, "waitingUsers": 1, "activeChats": 2}


def test_illegal_transition_raises() -> None:
    coord = _coordinator()
    with pytest.raises(InvalidTransition):
        coord._transition("a", UserState.IDLE)

    coord.join("a", Conn("a"))
    with pytest.raises(InvalidTransition):
        coord._transition("a", UserState.IDLE)


def test_clear_all_returns_handles() -> None:
    coord = _coordinator()
    ha, hb = _pair(coord)

    handles = coord.clear_all()

    assert set(handles) == {ha, hb}
    assert len(coord.registry) == 0
    assert len(coord.pairings) == 0
    assert coord.state_of("a") is UserState.DISCONNECTED


def test_interest_match_prefers_overlap_over_plain_waiter() -> None:
    coord = _coordinator(interest_fallback=False)
    coord.join("a", Conn("a"), ["x"])
    coord.join("b", Conn("b"), [])
    assert coord.pool.user_ids() == ["a", "b"]

    coord.join("c", Conn("c"), ["x"])

    assert coord.partner_of("c") == "a"
    assert coord.shared_interests_of("c") == frozenset({"x"})
    assert coord.pool.user_ids() == ["b"]
    _assert_consistent(coord)


def test_departed_waiter_is_never_matched() -> None:
    coord = _coordinator()
    coord.join("a", Conn("a"))
    coord.disconnect("a")

    out = coord.join("b", Conn("b"))

    assert _of_type(out, T_PAIRED) == []
    assert coord.state_of("b") is UserState.WAITING
    assert coord.pool.user_ids() == ["b"]


def test_double_disconnect_sends_one_stranger_left() -> None:
    coord = _coordinator()
    ha, hb = _pair(coord)

    first = coord.disconnect("a")
    second = coord.disconnect("a")

    assert len(_of_type(first + second, T_STRANGER_LEFT)) == 1
    assert "b" not in coord.pairings


def test_remaining_waiters_keep_their_order() -> None:
    coord = _coordinator(interest_fallback=False)
    for uid, tag in (("a", "x"), ("b", "y"), ("c", "z")):
        coord.join(uid, Conn(uid), [tag])
    assert coord.pool.user_ids() == ["a", "b", "c"]

    coord.join("d", Conn("d"), ["x", "y", "z"])

    assert coord.partner_of("d") == "a"
    assert coord.pool.user_ids() == ["b", "c"]

    coord.join("e", Conn("e"), ["y", "z"])

    assert coord.partner_of("e") == "b"
    assert coord.pool.user_ids() == ["c"]
    _assert_consistent(coord)


def test_rejoin_reports_replaced_handle_once() -> None:
    coord = _coordinator()
    ha, hb = _pair(coord)
    coord.disconnect("b")
    assert coord.take_stale_handles() == []

    coord.join("a", Conn("a2"))

    assert coord.take_stale_handles() == [ha]
    assert coord.take_stale_handles() == []
