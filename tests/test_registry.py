from fanslyrecorder.registry import Registry


def test_add_if_absent_keeps_first_value():
    registry = Registry()
    assert registry.add_if_absent("123", "alice")
    assert not registry.add_if_absent("123", "bob")
    assert registry.get("123") == "alice"


def test_snapshot_is_a_copy():
    registry = Registry({"1": "a"})
    snap = registry.snapshot()
    snap["2"] = "b"
    assert not registry.contains("2")
    assert len(registry) == 1


def test_discard_only_matching_value():
    first, second = object(), object()
    registry = Registry()
    registry.add("k", first)
    assert not registry.discard("k", second)
    assert registry.contains("k")
    assert registry.discard("k", first)
    assert not registry.contains("k")


def test_clear_returns_previous_items():
    registry = Registry({"1": "a", "2": "b"})
    assert registry.clear() == {"1": "a", "2": "b"}
    assert len(registry) == 0
    assert registry.remove("1") is None
