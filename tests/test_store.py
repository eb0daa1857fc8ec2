import pytest

from odml.store import ReferenceStore

from oracles import SaturationOracle, conditions, make_record


def records(n: int):
    oracle = SaturationOracle()
    return [make_record(oracle, conditions(b=1.0 + 0.1 * i), label=i) for i in range(n)]


def test_insert_evicts_least_recently_used_first():
    store = ReferenceStore(capacity=3)
    r0, r1, r2, r3 = records(4)
    for r in (r0, r1, r2):
        assert store.insert(r) == []
    store.touch(0)
    evicted = store.insert(r3)
    assert evicted == [r1]
    assert len(store) == 3
    assert 1 not in store
    assert [r.label for r in store] == [2, 0, 3]
    assert store.least_recently_used() is r2
    assert store.usage(0) == 1
    assert store.usage(3) == 0


def test_duplicate_label_rejected():
    store = ReferenceStore(capacity=2)
    (r0,) = records(1)
    store.insert(r0)
    with pytest.raises(KeyError):
        store.insert(r0)


def test_set_capacity_evicts_down():
    store = ReferenceStore(capacity=5)
    rs = records(5)
    for r in rs:
        store.insert(r)
    store.touch(0)
    evicted = store.set_capacity(2)
    assert [r.label for r in evicted] == [1, 2, 3]
    assert [r.label for r in store] == [4, 0]
    assert store.capacity == 2
    with pytest.raises(ValueError):
        store.set_capacity(0)
    with pytest.raises(ValueError):
        ReferenceStore(capacity=0)


def test_remove_get_clear_and_labels():
    store = ReferenceStore(capacity=4)
    rs = records(2)
    for r in rs:
        store.insert(r)
    assert store.get(1) is rs[1]
    assert store.remove(0) is rs[0]
    assert len(store) == 1
    store.clear()
    assert len(store) == 0
    assert store.least_recently_used() is None
    assert [store.next_label() for _ in range(3)] == [0, 1, 2]
