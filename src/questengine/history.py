"""
Navigation History

A tree of question ids with a cursor. Children of a node are the ids queued
while that node was active (skip targets, then the sequential successor).
Walking the tree in preorder gives the respondent's path:

    next()      -> preorder successor
    previous()  -> preorder predecessor
    pop()       -> drop the current node, cursor moves to its predecessor

Queued ids are never skipped by next(): siblings queued together are
visited in the order they were added.

The whole tree, including the cursor position, serializes to a plain
dict/JSON structure so a respondent can resume in a later session.
"""

import json
import logging
from typing import Any, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class HistoryNode:
    """One visited or queued question id."""

    def __init__(self, value: Optional[str], parent: Optional["HistoryNode"] = None):
        self.value = value
        self.parent = parent
        self.children: List["HistoryNode"] = []

    def __repr__(self) -> str:
        return f"HistoryNode({self.value!r}, children={len(self.children)})"


class NavigationHistory:
    """Preorder-traversed tree of question ids."""

    def __init__(self):
        self.root = HistoryNode(None)
        self._current = self.root

    @property
    def current(self) -> Optional[str]:
        """Id at the cursor, or None before the first question."""
        return self._current.value

    def is_empty(self) -> bool:
        return not self.root.children

    def clear(self) -> None:
        self.root = HistoryNode(None)
        self._current = self.root

    def add(self, ids: Union[str, List[str]]) -> None:
        """Queue one id, or several in order, beneath the cursor."""
        if isinstance(ids, str):
            ids = [ids]
        for value in ids:
            self._current.children.append(HistoryNode(value, self._current))

    def reset_upcoming(self) -> None:
        """Forget ids queued beneath the cursor (the answer is being re-decided)."""
        self._current.children = []

    def next(self) -> Optional[str]:
        """
        Move to the preorder successor.

        Returns:
            The new current id, or None (cursor unchanged) at the end.
        """
        successor = _successor(self._current)
        if successor is None:
            return None
        self._current = successor
        return successor.value

    def previous(self) -> Optional[str]:
        """Move to the preorder predecessor; None (cursor unchanged) at the start."""
        predecessor = _predecessor(self._current)
        if predecessor is None or predecessor is self.root:
            return None
        self._current = predecessor
        return predecessor.value

    def pop(self) -> Optional[str]:
        """
        Remove the current node, keeping anything queued beneath it.

        Returns:
            The removed id (None if the cursor is at the root).
        """
        node = self._current
        if node is self.root:
            return None
        predecessor = _predecessor(node) or self.root
        siblings = node.parent.children
        index = siblings.index(node)
        for child in node.children:
            child.parent = node.parent
        siblings[index:index + 1] = node.children
        self._current = predecessor
        return node.value

    def replace(self, value: str) -> None:
        """Swap the id at the cursor; its place and queued children stay."""
        if self._current is self.root:
            raise ValueError("No current id to replace")
        self._current.value = value

    def to_list(self) -> List[str]:
        """All ids in preorder."""
        values: List[str] = []
        stack = list(reversed(self.root.children))
        while stack:
            node = stack.pop()
            values.append(node.value)
            stack.extend(reversed(node.children))
        return values

    # =========================================================================
    # Serialization
    # =========================================================================

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tree": [_node_to_dict(child) for child in self.root.children],
            "cursor": _path_to(self._current),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    def load_from_json(self, data: Union[str, Dict[str, Any]]) -> None:
        """
        Replace the tree with a serialized one.

        Raises:
            ValueError: If the data is not a serialized history
        """
        if isinstance(data, str):
            try:
                data = json.loads(data)
            except json.JSONDecodeError as exc:
                raise ValueError(f"History is not valid JSON: {exc}") from exc
        if not isinstance(data, dict) or not isinstance(data.get("tree"), list):
            raise ValueError("History must be a mapping with a 'tree' list")

        root = HistoryNode(None)
        for item in data["tree"]:
            root.children.append(_node_from_dict(item, root))

        current = root
        for index in data.get("cursor", []):
            if not isinstance(index, int) or not 0 <= index < len(current.children):
                raise ValueError(f"History cursor path is out of range: {data.get('cursor')}")
            current = current.children[index]

        self.root = root
        self._current = current
        logger.debug("Loaded history at %s (%d ids)", self.current, len(self.to_list()))


def _successor(node: HistoryNode) -> Optional[HistoryNode]:
    if node.children:
        return node.children[0]
    while node.parent is not None:
        siblings = node.parent.children
        index = siblings.index(node)
        if index + 1 < len(siblings):
            return siblings[index + 1]
        node = node.parent
    return None


def _predecessor(node: HistoryNode) -> Optional[HistoryNode]:
    if node.parent is None:
        return None
    siblings = node.parent.children
    index = siblings.index(node)
    if index == 0:
        return node.parent
    last = siblings[index - 1]
    while last.children:
        last = last.children[-1]
    return last


def _path_to(node: HistoryNode) -> List[int]:
    path = []
    while node.parent is not None:
        path.append(node.parent.children.index(node))
        node = node.parent
    return list(reversed(path))


def _node_to_dict(node: HistoryNode) -> Dict[str, Any]:
    return {"value": node.value, "children": [_node_to_dict(c) for c in node.children]}


def _node_from_dict(data: Dict[str, Any], parent: HistoryNode) -> HistoryNode:
    if not isinstance(data, dict) or not isinstance(data.get("value"), str):
        raise ValueError(f"Invalid history node: {data!r}")
    node = HistoryNode(data["value"], parent)
    for child in data.get("children", []):
        node.children.append(_node_from_dict(child, node))
    return node


__all__ = [
    "HistoryNode",
    "NavigationHistory",
]
