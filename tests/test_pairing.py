import pytest

from strangerd.pairing import AlreadyPaired, PairingTable


def test_create_is_symmetric() -> None:
    table = PairingTable()
    table.create("a", "b", frozenset({"x"}))

    assert table.get_partner("a") == "b"
    assert table.get_partner("b") == "a"
    assert table.get_partner(table.get_partner("a")) == "a"
    assert table.get_pairing("b").shared_interests == {"x"}
    assert len(table) == 1


def test_create_refuses_second_partner() -> None:
    table = PairingTable()
    table.create("a", "b")

    with pytest.raises(AlreadyPaired):
        table.create("a", "c")
    with pytest.raises(AlreadyPaired):
        table.create("c", "b")

    assert table.get_partner("a") == "b"
    assert "c" not in table
    assert len(table) == 1


def test_create_refuses_self_pairing() -> None:
    with pytest.raises(ValueError):
        PairingTable().create("a", "a")


def test_destroy_removes_both_sides() -> None:
    table = PairingTable()
    table.create("a", "b")

    assert table.destroy("b") == "a"
    assert table.get_partner("a") is None
    assert table.get_partner("b") is None
    assert len(table) == 0
    assert table.destroy("a") is None


def test_pairs_lists_each_pairing_once() -> None:
    table = PairingTable()
    table.create("a", "b")
    table.create("c", "d")

    pairs = table.pairs()
    assert len(pairs) == 2
    assert {frozenset((p.a, p.b)) for p in pairs} == {
        frozenset(("a", "b")),
        frozenset(("c", "d")),
    }
