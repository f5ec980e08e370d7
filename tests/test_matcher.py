import pytest

from strangerd.constants import MATCH_POLICY_FIFO, MATCH_POLICY_INTEREST
from strangerd.matcher import Matcher, shared_interests
from strangerd.pool import WaitingEntry


def _entries(*rows):
    return [WaitingEntry(uid, frozenset(tags)) for uid, tags in rows]


def test_shared_interests_is_case_insensitive() -> None:
    assert shared_interests({"Music", "chess"}, {"MUSIC", "go"}) == {"music"}


def test_shared_interests_empty_when_either_side_has_none() -> None:
    assert shared_interests(set(), {"music"}) == frozenset()
    assert shared_interests({"music"}, set()) == frozenset()


def test_fifo_ignores_interests() -> None:
    matcher = Matcher(MATCH_POLICY_FIFO)
    candidates = _entries(("a", ["x"]), ("b", ["y"]))
    assert matcher.pick(candidates, frozenset({"y"})).user_id == "a"


def test_fifo_with_no_candidates() -> None:
    assert Matcher(MATCH_POLICY_FIFO).pick([], frozenset()) is None


def test_interest_prefers_earliest_overlap() -> None:
    matcher = Matcher(MATCH_POLICY_INTEREST)
    candidates = _entries(("a", []), ("b", ["y"]), ("c", ["x"]), ("d", ["x"]))
    assert matcher.pick(candidates, frozenset({"x"})).user_id == "c"


def test_interest_falls_back_to_oldest() -> None:
    matcher = Matcher(MATCH_POLICY_INTEREST, fallback=True)
    candidates = _entries(("a", ["y"]), ("b", []))
    assert matcher.pick(candidates, frozenset({"x"})).user_id == "a"


def test_interest_without_fallback_waits() -> None:
    matcher = Matcher(MATCH_POLICY_INTEREST, fallback=False)
    candidates = _entries(("a", ["y"]), ("b", []))
    assert matcher.pick(candidates, frozenset({"x"})) is None


def test_interest_without_fallback_pairs_users_without_interests() -> None:
    matcher = Matcher(MATCH_POLICY_INTEREST, fallback=False)
    candidates = _entries(("a", ["y"]), ("b", []))
    assert matcher.pick(candidates, frozenset()).user_id == "b"


def test_unknown_policy_is_rejected() -> None:
    with pytest.raises(ValueError):
        Matcher("random")
