"""Rebuilds the hierarchy implied by a flat list of structured items."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional

from .models import ItemKind, StructuredItem


@dataclass
class TreeNode:
    name: str
    path: str
    kind: ItemKind = ItemKind.DIRECTORY
    item: Optional[StructuredItem] = None
    children: Dict[str, "TreeNode"] = field(default_factory=dict)

    @property
    def is_directory(self) -> bool:
        return self.kind is ItemKind.DIRECTORY or bool(self.children)

    def walk(self) -> Iterator["TreeNode"]:
        """Yield every descendant depth-first, directories before their children."""
        for child in self.children.values():
            yield child
            yield from child.walk()

    def find(self, path: str) -> Optional["TreeNode"]:
        node: Optional[TreeNode] = self
        for part in _split(path):
            if node is None:
                return None
            node = node.children.get(part)
        return node


def _split(path: str) -> List[str]:
    return [part for part in path.replace("\\", "/").split("/") if part]


def build_tree(items: Iterable[StructuredItem]) -> TreeNode:
    """Return a root node whose descendants mirror the items' paths.

    Missing intermediate directories are created. A node ends up a directory
    when its item says so or when another item lives beneath it.
    """
    root = TreeNode(name="", path="")
    for item in items:
        parts = _split(item.path)
        node = root
        for depth, part in enumerate(parts):
            child = node.children.get(part)
            if child is None:
                child = TreeNode(name=part, path="/".join(parts[: depth + 1]))
                node.children[part] = child
            node = child
        if not parts:
            continue
        node.item = item
        if item.kind is ItemKind.FILE and not node.children:
            node.kind = ItemKind.FILE
    for node in root.walk():
        if node.children:
            node.kind = ItemKind.DIRECTORY
    return root


def render_tree(root: TreeNode, indent: str = "  ") -> List[str]:
    """Plain-text outline of ``root`` for terminal output."""
    lines: List[str] = []

    def _render(node: TreeNode, level: int) -> None:
        for child in node.children.values():
            if child.is_directory:
                lines.append(f"{indent * level}{child.name}/")
                _render(child, level + 1)
                continue
            suffix = f" ({child.item.size} bytes)" if child.item is not None else ""
            if child.item is not None and child.item.encrypted:
                suffix += " [encrypted]"
            lines.append(f"{indent * level}{child.name}{suffix}")

    _render(root, 0)
    return lines


__all__ = ["TreeNode", "build_tree", "render_tree"]
