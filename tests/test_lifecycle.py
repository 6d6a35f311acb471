import pytest

from shiki.core.errors import (
    AmbiguousId,
    CycleDetected,
    HasChildren,
    InvalidInput,
    NotFound,
    TaskDeleted,
)
from shiki.core.graph.graph import add_edge, blocking_predecessors
from shiki.core.lifecycle import (
    create_fuda,
    delete_fuda,
    purge_fuda,
    resolve_fuda,
    restore_fuda,
    update_fuda,
)
from shiki.core.model import AuditOperation, DependencyKind, FudaStatus
from shiki.core.status.state_machine import transition


def _assert_ready_means_unblocked(store):
    for fuda in store.list_fuda(statuses=[FudaStatus.READY]):
        assert blocking_predecessors(store, fuda.id) == set(), fuda.id


def test_create_rejects_bad_input(store):
    with pytest.raises(InvalidInput) as exc:
        create_fuda(store, title="   ")
    assert exc.value.code == "E_INVALID_TITLE"
    with pytest.raises(InvalidInput) as exc:
        create_fuda(store, title="a", priority="high")
    assert exc.value.code == "E_INVALID_PRIORITY"
    with pytest.raises(InvalidInput):
        create_fuda(store, title="a", priority=True)
    assert store.list_fuda() == []


def test_update_audits_each_changed_field(store):
    f = create_fuda(store, title="old", priority=1)
    updated = update_fuda(store, f.id, title="new", priority=1, prd_id="p1", actor="carol")
    assert (updated.title, updated.priority, updated.prd_id) == ("new", 1, "p1")

    changes = {e.field: (e.old_value, e.new_value) for e in store.audit_entries(f.id) if e.field}
    assert changes == {"title": ("old", "new"), "prd_id": (None, "p1")}


def test_update_rejects_unknown_field_and_deleted(store):
    f = create_fuda(store, title="a")
    with pytest.raises(InvalidInput) as exc:
        update_fuda(store, f.id, status="done")
    assert exc.value.code == "E_INVALID_FIELD"
    delete_fuda(store, f.id)
    with pytest.raises(TaskDeleted):
        update_fuda(store, f.id, title="b")


def test_resolve_by_prefix(store):
    f = create_fuda(store, title="a")
    assert resolve_fuda(store, f.id).id == f.id
    assert resolve_fuda(store, f.id[3:]).id == f.id
    with pytest.raises(NotFound):
        resolve_fuda(store, "sk-none")


def test_resolve_ambiguous_prefix(store, monkeypatch):
    from shiki.core import ids

    picks = iter(["sk-ab12", "sk-ab34"])
    monkeypatch.setattr(ids, "generate_id", lambda length=4: next(picks))
    create_fuda(store, title="a")
    create_fuda(store, title="b")
    with pytest.raises(AmbiguousId) as exc:
        resolve_fuda(store, "ab")
    assert set(exc.value.ids) == {"sk-ab12", "sk-ab34"}


def test_soft_delete_keeps_history_and_edges(store):
    a = create_fuda(store, title="A").id
    b = create_fuda(store, title="B").id
    add_edge(store, a, b, DependencyKind.BLOCKS)

    deleted = delete_fuda(store, a, reason="dup", actor="dave")
    assert deleted.is_deleted
    assert (deleted.deleted_by, deleted.delete_reason) == ("dave", "dup")
    assert store.edges() != []
    assert resolve_fuda(store, a, include_deleted=True).id == a
    with pytest.raises(NotFound):
        resolve_fuda(store, a)
    assert store.audit_entries(a, limit=1)[0].operation is AuditOperation.DELETE

    with pytest.raises(TaskDeleted):
        delete_fuda(store, a)


def test_restore(store):
    f = create_fuda(store, title="a").id
    with pytest.raises(InvalidInput) as exc:
        restore_fuda(store, f)
    assert exc.value.code == "E_NOT_DELETED"

    delete_fuda(store, f)
    result = restore_fuda(store, f)
    assert not result.fuda.is_deleted
    assert result.fuda.delete_reason is None
    assert result.demoted == []


def test_restore_refuses_to_close_a_cycle(store):
    a = create_fuda(store, title="A").id
    b = create_fuda(store, title="B").id
    c = create_fuda(store, title="C").id
    add_edge(store, a, b, DependencyKind.BLOCKS)
    add_edge(store, b, c, DependencyKind.BLOCKS)

    delete_fuda(store, b)
    # legal while b is deleted: its retained edges do not count
    add_edge(store, c, a, DependencyKind.BLOCKS)

    with pytest.raises(CycleDetected):
        restore_fuda(store, b)
    assert store.require_fuda(b, allow_deleted=True).is_deleted


def test_purge_refuses_live_children(store):
    parent = create_fuda(store, title="epic").id
    child = create_fuda(store, title="piece").id
    add_edge(store, parent, child, DependencyKind.PARENT_CHILD)

    with pytest.raises(HasChildren) as exc:
        purge_fuda(store, parent)
    assert exc.value.ids == (parent, child)

    delete_fuda(store, child)
    purge_fuda(store, parent)
    assert store.get_fuda(parent, include_deleted=True) is None
    assert store.edges() == []
    # audit history outlives the row
    assert store.audit_entries(parent)[0].field == "hard_delete"


def test_restoring_unfinished_blocker_sends_successor_back_to_blocked(store):
    a = create_fuda(store, title="A").id
    b = create_fuda(store, title="B").id
    add_edge(store, a, b, DependencyKind.BLOCKS)

    delete_fuda(store, a)
    transition(store, b, "ready")

    result = restore_fuda(store, a, actor="erin")
    assert result.demoted == [b]
    assert store.require_fuda(b).status is FudaStatus.BLOCKED
    assert store.audit_entries(b, limit=1)[0].actor == "erin"
    _assert_ready_means_unblocked(store)


def test_restoring_done_blocker_leaves_successor_ready(store):
    a = create_fuda(store, title="A").id
    b = create_fuda(store, title="B").id
    add_edge(store, a, b, DependencyKind.BLOCKS)
    transition(store, a, "done")
    transition(store, b, "ready")

    delete_fuda(store, a)
    assert restore_fuda(store, a).demoted == []
    assert store.require_fuda(b).status is FudaStatus.READY
