# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, Iterable, List, Sequence, Set, Tuple

from .errors import CycleDetected, DuplicateStepId, UnknownDependency
from .model import Step


def build_dag(steps: Sequence[Step]) -> Tuple[Dict[str, List[str]], Dict[str, int]]:
    """
    Build a DAG from Step objects.

    Returns:
      adj:   dependency id -> dependent ids, in declaration order
      indeg: step id -> number of declared dependencies

    Raises DuplicateStepId / UnknownDependency. Cycles are detected by topo_levels().
    """
    ids = [s.id for s in steps]
    if len(set(ids)) != len(ids):
        dupes = sorted({i for i in ids if ids.count(i) > 1})
        raise DuplicateStepId(f"duplicate step ids: {dupes}", step=dupes[0])

    id_set = set(ids)
    adj: Dict[str, List[str]] = {i: [] for i in ids}
    indeg: Dict[str, int] = {i: 0 for i in ids}

    for step in steps:
        for dep in step.depends_on:
            if dep not in id_set:
                raise UnknownDependency(
                    f"step '{step.id}' depends on missing step '{dep}'",
                    step=step.id,
                    details={"known": sorted(id_set)},
                )
            # Edge dep -> step.id (dep must finish before step)
            if step.id not in adj[dep]:
                adj[dep].append(step.id)
                indeg[step.id] += 1

    return adj, indeg


def topo_levels(adj: Dict[str, List[str]], indeg: Dict[str, int]) -> List[List[str]]:
    """
    Convert the DAG into topological "levels". Steps inside a level have no
    edges between them. Level order follows the key order of `indeg`.

    Raises CycleDetected naming one member of a cycle.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(n for n, d in indeg.items() if d == 0)

    levels: List[List[str]] = []
    processed = 0

    while q:
        level_size = len(q)
        level: List[str] = []

        for _ in range(level_size):
            node = q.popleft()
            level.append(node)
            processed += 1

            for child in adj.get(node, ()):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)

        levels.append(level)

    if processed != len(indeg):
        stuck = [n for n, d in indeg.items() if d > 0]
        member = _cycle_member(adj, set(stuck))
        raise CycleDetected(
            f"dependency cycle through step '{member}'",
            step=member,
            details={"unresolved": stuck},
        )

    return levels


def _cycle_member(adj: Dict[str, List[str]], stuck: Set[str]) -> str:
    # Every stuck node either sits on a cycle or downstream of one. Walking
    # backwards along edges inside the stuck set must revisit a node, and that
    # node is on a cycle.
    preds: Dict[str, List[str]] = {n: [] for n in stuck}
    for src, targets in adj.items():
        if src not in stuck:
            continue
        for t in targets:
            if t in stuck:
                preds[t].append(src)

    node = next(iter(sorted(stuck)))
    seen: Set[str] = set()
    while node not in seen:
        seen.add(node)
        node = preds[node][0]
    return node


def topo_order(steps: Sequence[Step]) -> List[Step]:
    """Validate `steps` as a DAG and return them flattened level by level."""
    by_id = {s.id: s for s in steps}
    adj, indeg = build_dag(steps)
    return [by_id[i] for level in topo_levels(adj, indeg) for i in level]


def descendants(adj: Dict[str, List[str]], roots: Iterable[str]) -> List[str]:
    """All steps transitively depending on `roots` (roots excluded), breadth first."""
    out: List[str] = []
    seen: Set[str] = set(roots)
    q = deque(seen)
    while q:
        node = q.popleft()
        for child in adj.get(node, ()):
            if child not in seen:
                seen.add(child)
                out.append(child)
                q.append(child)
    return out
