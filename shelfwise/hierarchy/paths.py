"""
Materialized-path arithmetic and tree auditing.

A folder's path is the ordered list of its ancestor ids, root first. It is
stored as a delimited string so that "every folder below X" is a single
LIKE query:

    []          → ""
    ["a"]       → "/a/"
    ["a", "b"]  → "/a/b/"

Descendants of X are exactly the rows whose stored path contains "/X/".

audit_tree() and expected_positions() rebuild the tree from parent links with
networkx and compare it against the stored path/level, which is what
`shelfwise check-tree` and FolderService.repair_tree() run on.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import networkx as nx

SEPARATOR = "/"
ROOT_LEVEL = 1


def encode_path(path: Sequence[str]) -> str:
    if not path:
        return ""
    return SEPARATOR + SEPARATOR.join(path) + SEPARATOR


def decode_path(stored: Optional[str]) -> List[str]:
    if not stored:
        return []
    return [part for part in stored.split(SEPARATOR) if part]


def descendant_pattern(folder_id: str) -> str:
    """LIKE pattern matching every stored path that runs through folder_id."""
    return f"%{SEPARATOR}{folder_id}{SEPARATOR}%"


def child_position(parent_id: Optional[str], parent_path: Sequence[str], parent_level: int) -> Tuple[List[str], int]:
    """(path, level) for a direct child of the given parent; root when parent_id is None."""
    if parent_id is None:
        return [], ROOT_LEVEL
    return list(parent_path) + [parent_id], parent_level + 1


def rebase_path(
    descendant_path: Sequence[str],
    folder_id: str,
    new_folder_path: Sequence[str],
) -> List[str]:
    """
    Swap the ancestor chain above folder_id in a descendant's path.

    The descendant keeps everything from folder_id downward; whatever sat
    above folder_id is replaced by folder_id's new path.
    """
    idx = list(descendant_path).index(folder_id)
    return list(new_folder_path) + list(descendant_path[idx:])


def rebase_level(descendant_level: int, old_folder_level: int, new_folder_level: int) -> int:
    return new_folder_level + (descendant_level - old_folder_level)


def would_create_cycle(folder_id: str, new_parent_id: Optional[str], new_parent_path: Sequence[str]) -> bool:
    """True when new_parent is folder_id itself or sits somewhere beneath it."""
    if new_parent_id is None:
        return False
    return new_parent_id == folder_id or folder_id in new_parent_path


# ---------------------------------------------------------------------------
# Tree audit
# ---------------------------------------------------------------------------

@dataclass
class TreeProblem:
    folder_id: str
    problem: str  # "cycle" | "dangling_parent" | "cross_tenant_parent" | "path_mismatch" | "level_mismatch"
    expected: Any = None
    actual: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "folder_id": self.folder_id,
            "problem": self.problem,
            "expected": self.expected,
            "actual": self.actual,
        }


@dataclass
class TreeAudit:
    problems: List[TreeProblem] = field(default_factory=list)
    cycles: List[List[str]] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.problems

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "cycles": self.cycles,
            "problems": [p.to_dict() for p in self.problems],
        }


def build_parent_graph(folders: Iterable[Any]) -> nx.DiGraph:
    """
    DiGraph with an edge parent → child for every folder.

    Folders are duck-typed: anything with id, parent_id, owner_id.
    """
    graph = nx.DiGraph()
    for folder in folders:
        graph.add_node(folder.id, owner_id=folder.owner_id)
    for folder in folders:
        if folder.parent_id is not None and folder.parent_id in graph:
            graph.add_edge(folder.parent_id, folder.id)
    return graph


def expected_positions(folders: Sequence[Any]) -> Dict[str, Tuple[List[str], int]]:
    """
    Recompute (path, level) for every folder reachable from a root by
    walking parent links breadth-first. Folders on a cycle, or hanging off a
    missing parent, are not reachable and are left out.
    """
    graph = build_parent_graph(folders)
    roots = [f.id for f in folders if f.parent_id is None]

    positions: Dict[str, Tuple[List[str], int]] = {}
    for root in roots:
        positions[root] = ([], ROOT_LEVEL)
        for parent, child in nx.bfs_edges(graph, root):
            parent_path, parent_level = positions[parent]
            positions[child] = child_position(parent, parent_path, parent_level)
    return positions


def audit_tree(folders: Sequence[Any]) -> TreeAudit:
    """
    Compare stored path/level with what the parent links imply.

    Reports parent-link cycles, parents that do not exist in the set,
    parents owned by another tenant, and drifted path/level values.
    """
    audit = TreeAudit()
    by_id = {f.id: f for f in folders}
    graph = build_parent_graph(folders)

    for cycle in nx.simple_cycles(graph):
        audit.cycles.append(list(cycle))
        for fid in cycle:
            audit.problems.append(TreeProblem(fid, "cycle", actual=list(cycle)))

    for folder in folders:
        if folder.parent_id is None:
            continue
        parent = by_id.get(folder.parent_id)
        if parent is None:
            audit.problems.append(TreeProblem(folder.id, "dangling_parent", actual=folder.parent_id))
        elif parent.owner_id != folder.owner_id:
            audit.problems.append(
                TreeProblem(folder.id, "cross_tenant_parent", expected=folder.owner_id, actual=parent.owner_id)
            )

    for fid, (path, level) in expected_positions(folders).items():
        folder = by_id[fid]
        if list(folder.path) != path:
            audit.problems.append(TreeProblem(fid, "path_mismatch", expected=path, actual=list(folder.path)))
        if folder.level != level:
            audit.problems.append(TreeProblem(fid, "level_mismatch", expected=level, actual=folder.level))

    return audit
