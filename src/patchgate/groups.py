"""
Computer group hierarchy for export/import between update servers.

Groups are exchanged as flat records ({"id", "name", "parent_id"}) and held
here as an explicit tree. Planning an import compares two trees by name path,
so ids may differ between the connected and disconnected servers.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from .errors import ConfigError

logger = logging.getLogger(__name__)

PATH_SEPARATOR = "/"


@dataclass
class GroupNode:
    """One computer group."""
    id: str
    name: str
    parent_id: Optional[str] = None
    children: List["GroupNode"] = field(default_factory=list, repr=False)

    def to_record(self) -> Dict[str, Any]:
        return {"id": self.id, "name": self.name, "parent_id": self.parent_id}


class GroupTree:
    """
    A forest of computer groups keyed by id.

    Usage:
        tree = GroupTree.from_records(json.loads(path.read_text()))
        for depth, node in tree.walk():
            print("  " * depth + node.name)
    """

    def __init__(self, roots: List[GroupNode], nodes: Dict[str, GroupNode]):
        self.roots = sorted(roots, key=lambda n: n.name)
        self.nodes = nodes

    @classmethod
    def from_records(cls, records: Sequence[Mapping[str, Any]]) -> "GroupTree":
        """
        Build a tree from flat records.

        Raises:
            ConfigError: On malformed records, duplicate ids, unknown parents or cycles
        """
        nodes: Dict[str, GroupNode] = {}
        for record in records:
            try:
                node_id = str(record["id"])
                name = str(record["name"])
            except (KeyError, TypeError) as e:
                raise ConfigError(f"Malformed group record {record!r}: {e}") from e
            if node_id in nodes:
                raise ConfigError(f"Duplicate group id {node_id}")
            parent = record.get("parent_id")
            nodes[node_id] = GroupNode(
                id=node_id,
                name=name,
                parent_id=None if parent in (None, "") else str(parent),
            )

        roots = []
        for node in nodes.values():
            if node.parent_id is None:
                roots.append(node)
                continue
            parent = nodes.get(node.parent_id)
            if parent is None:
                raise ConfigError(f"Group {node.name} ({node.id}) has unknown parent {node.parent_id}")
            parent.children.append(node)

        for node in nodes.values():
            node.children.sort(key=lambda n: n.name)

        tree = cls(roots, nodes)
        reachable = sum(1 for _ in tree.walk())
        if reachable != len(nodes):
            # Whatever the walk cannot reach from a root sits on a parent cycle
            seen = {node.id for _, node in tree.walk()}
            stuck = sorted(node_id for node_id in nodes if node_id not in seen)
            raise ConfigError(f"Group hierarchy contains a cycle: {', '.join(stuck)}")
        return tree

    def walk(self) -> Iterator[Tuple[int, GroupNode]]:
        """Pre-order traversal: parents before children, siblings by name."""
        stack = [(0, root) for root in reversed(self.roots)]
        while stack:
            depth, node = stack.pop()
            yield depth, node
            for child in reversed(node.children):
                stack.append((depth + 1, child))

    def to_records(self) -> List[Dict[str, Any]]:
        return [node.to_record() for _, node in self.walk()]

    def path(self, node_id: str) -> Tuple[str, ...]:
        """Group names from the root down to node_id."""
        names = []
        node = self.nodes.get(node_id)
        if node is None:
            raise KeyError(node_id)
        while node is not None:
            names.append(node.name)
            node = self.nodes.get(node.parent_id) if node.parent_id else None
        return tuple(reversed(names))

    def paths(self) -> Dict[Tuple[str, ...], GroupNode]:
        return {self.path(node.id): node for _, node in self.walk()}

    def __len__(self) -> int:
        return len(self.nodes)


def plan_import(source: GroupTree, target: GroupTree) -> List[GroupNode]:
    """
    Groups present in source but missing from target, matched by name path.

    Returned parents first, so they can be created in order.
    """
    existing = set(target.paths())
    missing = []
    for _, node in source.walk():
        path = source.path(node.id)
        if path not in existing:
            missing.append(node)
    logger.info(f"{len(missing)} of {len(source)} groups missing from target")
    return missing


def load_tree(path: Path) -> GroupTree:
    """
    Read a JSON file of group records.

    Raises:
        ConfigError: If the file cannot be read or is not a list of records
    """
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigError(f"Cannot read group file {path}: {e}") from e
    if not isinstance(data, list):
        raise ConfigError(f"Group file {path} must contain a list of records")
    return GroupTree.from_records(data)


def format_path(path: Sequence[str]) -> str:
    return PATH_SEPARATOR.join(path)
