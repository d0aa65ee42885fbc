# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Mapping, Sequence, Set, Tuple

from .errors import DefinitionError


def build_dag(needs: Mapping[str, Sequence[str]]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build the job dependency graph.

    Args:
        needs: job id -> ids of jobs that must pass BEFORE it (declared order)

    Returns:
        (adjacency: need -> dependants, in-degree per job)
    """
    name_set = set(needs)
    adj: Dict[str, Set[str]] = {n: set() for n in needs}
    indeg: Dict[str, int] = {n: 0 for n in needs}

    for job, deps in needs.items():
        for dep in deps:
            if dep not in name_set:
                raise DefinitionError(
                    f"Job needs missing job '{dep}'",
                    job=job,
                    details={"known": ", ".join(sorted(name_set))},
                )
            if dep == job:
                raise DefinitionError("Job needs itself", job=job)
            # edge dep -> job (dep must run before job)
            if job not in adj[dep]:
                adj[dep].add(job)
                indeg[job] += 1

    return adj, indeg


def topo_levels(adj: Mapping[str, Set[str]], indeg: Mapping[str, int]) -> List[List[str]]:
    """
    Convert the DAG into topological levels. Jobs in one level can run
    in parallel. Raises DefinitionError on a cycle.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level: List[str] = []
        for _ in range(len(q)):
            node = q.popleft()
            level.append(node)
            processed += 1
            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)
        levels.append(level)

    if processed != len(indeg):
        stuck = sorted(n for n, d in indeg.items() if d > 0)
        raise DefinitionError(
            "Job dependencies form a cycle",
            details={"stuck": ", ".join(stuck)},
        )
    return levels


def validate_needs(needs: Mapping[str, Sequence[str]]) -> List[List[str]]:
    adj, indeg = build_dag(needs)
    return topo_levels(adj, indeg)
