from __future__ import annotations

import logging
from collections import deque
from typing import Iterable, Optional

from shiki.core.errors import (
    CycleDetected,
    DuplicateEdge,
    EdgeNotFound,
    SelfReference,
)
from shiki.core.graph.neighbours import (
    KindLike,
    blocking_predecessors,
    parse_kind,
    predecessors,
    successors,
)
from shiki.core.model import AuditOperation, DependencyKind, Edge
from shiki.core.status.state_machine import demote_blocked
from shiki.core.store.db import Store

logger = logging.getLogger(__name__)

__all__ = [
    "BlockingGraph",
    "KindLike",
    "add_edge",
    "blocking_predecessors",
    "check_acyclic",
    "dependency_tree",
    "edges_for",
    "parse_kind",
    "predecessors",
    "remove_edge",
    "successors",
]


class BlockingGraph:
    """BLOCKS edges as an arena: dense integer slots with adjacency lists.

    Built fresh from the store for every check; nothing is cached across
    operations.
    """

    def __init__(self, edges: Iterable[tuple[str, str]] = ()) -> None:
        self.index: dict[str, int] = {}
        self.ids: list[str] = []
        self.succ: list[list[int]] = []
        for from_id, to_id in edges:
            self.add(from_id, to_id)

    @classmethod
    def from_store(cls, store: Store) -> "BlockingGraph":
        edges = store.edges(kind=DependencyKind.BLOCKS, live_only=True)
        return cls((e.from_id, e.to_id) for e in edges)

    def __len__(self) -> int:
        return len(self.ids)

    def _slot(self, node_id: str) -> int:
        slot = self.index.get(node_id)
        if slot is None:
            slot = len(self.ids)
            self.index[node_id] = slot
            self.ids.append(node_id)
            self.succ.append([])
        return slot

    def add(self, from_id: str, to_id: str) -> None:
        self.succ[self._slot(from_id)].append(self._slot(to_id))

    def path(self, src: str, dst: str) -> Optional[list[str]]:
        """Shortest src -> ... -> dst path following edge direction, or None."""
        if src not in self.index or dst not in self.index:
            return None
        start, goal = self.index[src], self.index[dst]
        parent: list[int] = [-1] * len(self.ids)
        seen: list[bool] = [False] * len(self.ids)
        seen[start] = True
        q: deque[int] = deque([start])
        # each slot is enqueued at most once, so the walk is bounded by node count
        while q:
            cur = q.popleft()
            if cur == goal:
                out = [cur]
                while out[-1] != start:
                    out.append(parent[out[-1]])
                return [self.ids[i] for i in reversed(out)]
            for nxt in self.succ[cur]:
                if not seen[nxt]:
                    seen[nxt] = True
                    parent[nxt] = cur
                    q.append(nxt)
        return None

    def find_cycle(self) -> Optional[list[str]]:
        """Any cycle as [a, b, ..., a], or None when the graph is acyclic."""
        WHITE, GRAY, BLACK = 0, 1, 2
        state = [WHITE] * len(self.ids)

        for root in range(len(self.ids)):
            if state[root] != WHITE:
                continue
            stack: list[tuple[int, int]] = [(root, 0)]
            path: list[int] = [root]
            state[root] = GRAY
            while stack:
                u, i = stack[-1]
                if i < len(self.succ[u]):
                    stack[-1] = (u, i + 1)
                    v = self.succ[u][i]
                    if state[v] == GRAY:
                        cycle = path[path.index(v):] + [v]
                        return [self.ids[n] for n in cycle]
                    if state[v] == WHITE:
                        state[v] = GRAY
                        stack.append((v, 0))
                        path.append(v)
                else:
                    state[u] = BLACK
                    stack.pop()
                    path.pop()
        return None


def _cycle_error(cycle: list[str]) -> CycleDetected:
    return CycleDetected(
        code="E_CYCLE_DETECTED",
        message="dependency cycle detected: " + " -> ".join(cycle),
        ids=tuple(cycle),
    )


def check_acyclic(store: Store) -> None:
    cycle = BlockingGraph.from_store(store).find_cycle()
    if cycle is not None:
        raise _cycle_error(cycle)


def add_edge(
    store: Store, from_id: str, to_id: str, kind: KindLike, *, actor: str = "engine"
) -> Edge:
    """Insert an edge after validating endpoints, duplicates and BLOCKS acyclicity.

    All checks and the insert share one transaction; a rejected edge leaves
    the store untouched. A READY target of a new BLOCKS edge from unfinished
    work goes back to BLOCKED.
    """
    k = parse_kind(kind)
    if from_id == to_id:
        raise SelfReference(
            code="E_SELF_REFERENCE",
            message=f"edge cannot connect a fuda to itself: {from_id}",
            ids=(from_id,),
        )

    edge = Edge(from_id=from_id, to_id=to_id, kind=k)
    with store.transaction():
        store.require_fuda(from_id)
        store.require_fuda(to_id)

        if store.edge_exists(edge):
            raise DuplicateEdge(
                code="E_DUPLICATE_EDGE",
                message=f"edge already exists: {from_id} -[{k.value}]-> {to_id}",
                ids=(from_id, to_id),
            )

        if k is DependencyKind.BLOCKS:
            back = BlockingGraph.from_store(store).path(to_id, from_id)
            if back is not None:
                logger.warning("rejected blocks edge %s -> %s: closes a cycle", from_id, to_id)
                raise _cycle_error([from_id] + back)

        store.insert_edge(edge)
        store.append_audit(
            fuda_id=to_id,
            operation=AuditOperation.UPDATE,
            field="dependency",
            new_value=f"{k.value}:{from_id}",
            actor=actor,
        )
        if k is DependencyKind.BLOCKS:
            # a READY target now waits on unfinished work again
            demote_blocked(store, [to_id], actor=actor)

    logger.info("added edge %s -[%s]-> %s", from_id, k.value, to_id)
    return edge


def remove_edge(
    store: Store, from_id: str, to_id: str, kind: KindLike, *, actor: str = "engine"
) -> Edge:
    k = parse_kind(kind)
    edge = Edge(from_id=from_id, to_id=to_id, kind=k)
    with store.transaction():
        if not store.delete_edge(edge):
            raise EdgeNotFound(
                code="E_EDGE_NOT_FOUND",
                message=f"edge not found: {from_id} -[{k.value}]-> {to_id}",
                ids=(from_id, to_id),
            )
        store.append_audit(
            fuda_id=to_id,
            operation=AuditOperation.UPDATE,
            field="dependency",
            old_value=f"{k.value}:{from_id}",
            actor=actor,
        )
    logger.info("removed edge %s -[%s]-> %s", from_id, k.value, to_id)
    return edge


def edges_for(store: Store, fuda_id: str) -> list[Edge]:
    return store.edges_touching(fuda_id)


def dependency_tree(store: Store, fuda_id: str, max_depth: int = 10) -> dict[str, list[Edge]]:
    """What a fuda depends on, transitively: id -> edges pointing into it."""
    tree: dict[str, list[Edge]] = {}
    q: deque[tuple[str, int]] = deque([(fuda_id, 0)])
    while q:
        cur, depth = q.popleft()
        if cur in tree or depth > max_depth:
            continue
        incoming = store.edges(to_id=cur)
        tree[cur] = incoming
        for e in incoming:
            if e.from_id not in tree:
                q.append((e.from_id, depth + 1))
    return tree
