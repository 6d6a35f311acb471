import pytest

from shiki.core.errors import (
    CycleDetected,
    DuplicateEdge,
    EdgeNotFound,
    InvalidKind,
    NotFound,
    SelfReference,
    TaskDeleted,
)
from shiki.core.graph.graph import (
    BlockingGraph,
    add_edge,
    blocking_predecessors,
    check_acyclic,
    dependency_tree,
    parse_kind,
    predecessors,
    remove_edge,
    successors,
)
from shiki.core.lifecycle import create_fuda
from shiki.core.model import DependencyKind, Edge, FudaStatus
from shiki.core.status.state_machine import transition


def _make(store, *titles):
    return [create_fuda(store, title=t).id for t in titles]


def test_parse_kind_accepts_value_and_name():
    assert parse_kind("blocks") is DependencyKind.BLOCKS
    assert parse_kind("PARENT_CHILD") is DependencyKind.PARENT_CHILD
    assert parse_kind("discovered-from") is DependencyKind.DISCOVERED_FROM
    with pytest.raises(InvalidKind) as exc:
        parse_kind("depends")
    assert exc.value.code == "E_INVALID_KIND"


def test_blocking_graph_path_and_cycle():
    g = BlockingGraph([("a", "b"), ("b", "c")])
    assert len(g) == 3
    assert g.path("a", "c") == ["a", "b", "c"]
    assert g.path("c", "a") is None
    assert g.path("a", "zz") is None
    assert g.find_cycle() is None

    g.add("c", "a")
    cycle = g.find_cycle()
    assert cycle is not None
    assert cycle[0] == cycle[-1]
    assert set(cycle) == {"a", "b", "c"}


def test_cycle_rejected_and_edges_unchanged(store):
    a, b = _make(store, "A", "B")
    add_edge(store, a, b, DependencyKind.BLOCKS)
    before = store.edges()

    with pytest.raises(CycleDetected) as exc:
        add_edge(store, b, a, DependencyKind.BLOCKS)
    assert exc.value.code == "E_CYCLE_DETECTED"
    assert exc.value.ids == (b, a, b)
    assert store.edges() == before == [Edge(a, b, DependencyKind.BLOCKS)]


def test_long_cycle_reports_full_path(store):
    a, b, c, d = _make(store, "A", "B", "C", "D")
    add_edge(store, a, b, "blocks")
    add_edge(store, b, c, "blocks")
    add_edge(store, c, d, "blocks")
    with pytest.raises(CycleDetected) as exc:
        add_edge(store, d, a, "blocks")
    assert exc.value.ids == (d, a, b, c, d)
    assert f"{d} -> {a} -> {b} -> {c} -> {d}" in exc.value.message


def test_non_blocking_kinds_may_form_cycles(store):
    a, b = _make(store, "A", "B")
    add_edge(store, a, b, DependencyKind.RELATED)
    add_edge(store, b, a, DependencyKind.RELATED)
    add_edge(store, a, b, DependencyKind.BLOCKS)
    assert len(store.edges()) == 3


def test_self_reference_rejected(store):
    (a,) = _make(store, "A")
    with pytest.raises(SelfReference):
        add_edge(store, a, a, DependencyKind.RELATED)


def test_duplicate_edge_rejected(store):
    a, b = _make(store, "A", "B")
    add_edge(store, a, b, DependencyKind.BLOCKS)
    with pytest.raises(DuplicateEdge):
        add_edge(store, a, b, DependencyKind.BLOCKS)
    # same pair, different kind is a different edge
    add_edge(store, a, b, DependencyKind.PARENT_CHILD)


def test_blocking_edge_sends_ready_target_back_to_blocked(store):
    a, b, c = _make(store, "A", "B", "C")
    transition(store, b, "ready")
    transition(store, c, "ready")

    add_edge(store, a, b, DependencyKind.RELATED)
    assert store.require_fuda(b).status is FudaStatus.READY

    add_edge(store, a, b, DependencyKind.BLOCKS, actor="gina")
    assert store.require_fuda(b).status is FudaStatus.BLOCKED
    entry = store.audit_entries(b, limit=1)[0]
    assert (entry.field, entry.new_value, entry.actor) == ("status", "blocked", "gina")

    # a finished blocker does not hold anything back
    transition(store, a, "done")
    add_edge(store, a, c, DependencyKind.BLOCKS)
    assert store.require_fuda(c).status is FudaStatus.READY

    for fuda in store.list_fuda(statuses=[FudaStatus.READY]):
        assert blocking_predecessors(store, fuda.id) == set(), fuda.id


def test_blocking_edge_leaves_started_target_alone(store):
    a, b = _make(store, "A", "B")
    transition(store, b, "ready")
    transition(store, b, "in_progress")
    add_edge(store, a, b, DependencyKind.BLOCKS)
    assert store.require_fuda(b).status is FudaStatus.IN_PROGRESS


def test_missing_or_deleted_endpoint_rejected(store):
    a, b = _make(store, "A", "B")
    with pytest.raises(NotFound):
        add_edge(store, a, "sk-none", DependencyKind.BLOCKS)
    store.mark_deleted(b)
    with pytest.raises(TaskDeleted):
        add_edge(store, a, b, DependencyKind.BLOCKS)


def test_remove_edge(store):
    a, b = _make(store, "A", "B")
    add_edge(store, a, b, DependencyKind.BLOCKS)
    removed = remove_edge(store, a, b, "blocks")
    assert removed == Edge(a, b, DependencyKind.BLOCKS)
    assert store.edges() == []
    with pytest.raises(EdgeNotFound) as exc:
        remove_edge(store, a, b, "blocks")
    assert exc.value.code == "E_EDGE_NOT_FOUND"


def test_predecessors_and_successors_ignore_deleted(store):
    a, b, c = _make(store, "A", "B", "C")
    add_edge(store, a, c, DependencyKind.BLOCKS)
    add_edge(store, b, c, DependencyKind.BLOCKS)
    add_edge(store, c, a, DependencyKind.RELATED)

    assert predecessors(store, c, DependencyKind.BLOCKS) == {a, b}
    assert successors(store, a, DependencyKind.BLOCKS) == {c}
    assert predecessors(store, a, DependencyKind.RELATED) == {c}

    store.mark_deleted(b)
    assert predecessors(store, c, DependencyKind.BLOCKS) == {a}


def test_blocking_predecessors_exclude_done(store):
    a, b, c = _make(store, "A", "B", "C")
    add_edge(store, a, c, DependencyKind.BLOCKS)
    add_edge(store, b, c, DependencyKind.BLOCKS)
    store.set_status(a, FudaStatus.DONE)
    assert blocking_predecessors(store, c) == {b}


def test_deleted_tasks_do_not_participate_in_cycle_checks(store):
    a, b = _make(store, "A", "B")
    add_edge(store, a, b, DependencyKind.BLOCKS)
    store.mark_deleted(a)
    c = create_fuda(store, title="C").id
    # the retained a -> b edge is invisible while a is deleted
    add_edge(store, b, c, DependencyKind.BLOCKS)
    check_acyclic(store)


def test_dependency_tree_walks_incoming_edges(store):
    a, b, c = _make(store, "A", "B", "C")
    add_edge(store, a, b, DependencyKind.BLOCKS)
    add_edge(store, b, c, DependencyKind.BLOCKS)

    tree = dependency_tree(store, c)
    assert set(tree) == {a, b, c}
    assert tree[c] == [Edge(b, c, DependencyKind.BLOCKS)]
    assert tree[a] == []

    shallow = dependency_tree(store, c, max_depth=0)
    assert set(shallow) == {c}


def test_edge_changes_are_audited(store):
    a, b = _make(store, "A", "B")
    add_edge(store, a, b, DependencyKind.BLOCKS, actor="alice")
    entry = store.audit_entries(b, limit=1)[0]
    assert entry.field == "dependency"
    assert entry.new_value == f"blocks:{a}"
    assert entry.actor == "alice"
