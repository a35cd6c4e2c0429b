"""In-memory family forest: node store, mutation rules, orphan sweep and JSON export."""

import json
import logging
from typing import Any

from pydantic import BaseModel, Field

logger = logging.getLogger("familytree.engine")

DEFAULT_ME_NAME = "ME"


class EmptyForestError(RuntimeError):
    """Raised when a tree is requested from a forest that holds no nodes."""


# ============================================================================
# Node Store
# ============================================================================

class FamilyNode(BaseModel):
    """A person in the forest. Relations are node ids, never object references."""
    id: int
    name: str
    parent_id: int | None = None
    children: list[int] = Field(default_factory=list)


class FamilyForest:
    """
    Flat store of every node plus the id generator.

    `nodes` keeps insertion order, which is the store order used to break
    ties when picking the largest tree. A new forest is seeded with the
    protected root node (id 1).
    """

    def __init__(self, me_name: str = DEFAULT_ME_NAME):
        self.me_name = me_name
        self.nodes: dict[int, FamilyNode] = {}
        self.last_node_id = 0
        self.exported_tree_json = ""
        self.exported_root_id: int | None = None
        create_node(self, me_name)

    def __len__(self) -> int:
        return len(self.nodes)

    def __contains__(self, node_id: int) -> bool:
        return node_id in self.nodes


def create_node(forest: FamilyForest, name: str, parent_id: int | None = None) -> FamilyNode:
    """
    Allocate the next id, insert a node and link it under `parent_id` if given.
    The add operations check their rules first; the only check here is that
    the parent exists, and it runs before the store is touched.

    Raises:
        KeyError: if `parent_id` is not in the store
    """
    parent = None
    if parent_id is not None:
        parent = forest.nodes.get(parent_id)
        if parent is None:
            raise KeyError(f"Unknown parent node: {parent_id}")

    forest.last_node_id += 1
    node = FamilyNode(id=forest.last_node_id, name=name, parent_id=parent_id)
    forest.nodes[node.id] = node
    if parent is not None:
        parent.children.append(node.id)
    logger.debug(f"Created node {node.id} ({name!r}), parent={parent_id}")
    return node


def get_node(forest: FamilyForest, node_id: int) -> FamilyNode | None:
    return forest.nodes.get(node_id)


def get_node_data(node: FamilyNode) -> dict[str, Any]:
    """Extract a JSON-friendly dict from a node."""
    return {
        "id": node.id,
        "name": node.name,
        "parentId": node.parent_id,
        "children": list(node.children),
    }


def get_all_nodes(forest: FamilyForest) -> list[dict[str, Any]]:
    """Get every node in store order."""
    return [get_node_data(node) for node in forest.nodes.values()]


def find_root_nodes(forest: FamilyForest) -> list[dict[str, Any]]:
    """Find nodes that have no parent."""
    return [get_node_data(node) for node in forest.nodes.values() if node.parent_id is None]


def find_me_node(forest: FamilyForest) -> FamilyNode | None:
    for node in forest.nodes.values():
        if node.name == forest.me_name:
            return node
    return None


def find_nodes_by_name(forest: FamilyForest, name: str) -> list[FamilyNode]:
    """Find nodes by name (case-insensitive, surrounding whitespace ignored)."""
    name_lower = name.strip().lower()
    return [node for node in forest.nodes.values() if node.name.lower() == name_lower]


def check_forest_consistency(forest: FamilyForest) -> list[str]:
    """
    Check that every parent/child link points both ways at a live node.
    Returns a list of problems, empty when the forest is consistent.
    """
    problems = []

    for node in forest.nodes.values():
        for child_id in node.children:
            child = forest.nodes.get(child_id)
            if child is None:
                problems.append(f"Node {node.id} lists missing child {child_id}")
            elif child.parent_id != node.id:
                problems.append(f"Child {child_id} of node {node.id} points at parent {child.parent_id}")

        if node.parent_id is not None:
            parent = forest.nodes.get(node.parent_id)
            if parent is None:
                problems.append(f"Node {node.id} points at missing parent {node.parent_id}")
            elif node.id not in parent.children:
                problems.append(f"Node {node.id} is not listed among the children of {node.parent_id}")

    if find_me_node(forest) is None:
        problems.append(f"Node {forest.me_name!r} is missing")

    return problems


# ============================================================================
# Operation Results
# ============================================================================

# Error codes carried by failed operations
ERROR_VALIDATION = "validation"
ERROR_CONFLICT = "conflict"
ERROR_PROTECTED = "protected"
ERROR_NO_PARENT = "no_parent"
ERROR_NOT_FOUND = "not_found"


def _success(message: str, node: FamilyNode | None = None, removed: list[int] | None = None) -> dict[str, Any]:
    return {
        "success": True,
        "message": message,
        "error": None,
        "node": get_node_data(node) if node is not None else None,
        "removed": removed or [],
    }


def _failure(message: str, error: str) -> dict[str, Any]:
    logger.warning(f"Operation rejected ({error}): {message}")
    return {
        "success": False,
        "message": message,
        "error": error,
        "node": None,
        "removed": [],
    }


def _is_blank(name: str | None) -> bool:
    return not name or not name.strip()


def _not_found(node_id: int) -> dict[str, Any]:
    return _failure(f"Node not found: {node_id}", ERROR_NOT_FOUND)


# ============================================================================
# Mutation Engine
# ============================================================================

def add_parent(forest: FamilyForest, node_id: int, name: str) -> dict[str, Any]:
    """
    Give a parentless node a new parent whose only child is that node.

    Returns:
        dict with 'success', 'message', 'error', 'node' (the new parent) and 'removed'
    """
    node = forest.nodes.get(node_id)
    if node is None:
        return _not_found(node_id)
    if _is_blank(name):
        return _failure("Please insert the parent name", ERROR_VALIDATION)
    if node.parent_id is not None:
        return _failure("Node already has a parent", ERROR_CONFLICT)

    parent = create_node(forest, name.strip())
    parent.children = [node.id]
    node.parent_id = parent.id

    logger.info(f"Added parent {parent.id} ({parent.name!r}) to node {node.id}")
    return _success("Parent added successfully", node=parent)


def add_sibling(forest: FamilyForest, node_id: int, name: str) -> dict[str, Any]:
    """Add a node under the target's parent. Nodes without a parent cannot get siblings."""
    node = forest.nodes.get(node_id)
    if node is None:
        return _not_found(node_id)
    if _is_blank(name):
        return _failure("Please insert the sibling name", ERROR_VALIDATION)
    if node.parent_id is None:
        return _failure("Node has no parent, cannot add sibling", ERROR_NO_PARENT)

    sibling = create_node(forest, name.strip(), parent_id=node.parent_id)

    logger.info(f"Added sibling {sibling.id} ({sibling.name!r}) to node {node.id}")
    return _success("Sibling added successfully", node=sibling)


def add_child(forest: FamilyForest, node_id: int, name: str) -> dict[str, Any]:
    """Append a new child to the target node."""
    node = forest.nodes.get(node_id)
    if node is None:
        return _not_found(node_id)
    if _is_blank(name):
        return _failure("Please insert the child name", ERROR_VALIDATION)

    child = create_node(forest, name.strip(), parent_id=node.id)

    logger.info(f"Added child {child.id} ({child.name!r}) to node {node.id}")
    return _success("Child added successfully", node=child)


def is_protected(forest: FamilyForest, node_id: int) -> bool:
    """
    A node is protected when it is the ME node or when ME sits anywhere in its
    subtree, i.e. it is one of ME's ancestors. Every branch is searched.
    """
    stack = [node_id]
    while stack:
        node = forest.nodes.get(stack.pop())
        if node is None:
            continue
        if node.name == forest.me_name:
            return True
        stack.extend(node.children)
    return False


def _remove_subtree(forest: FamilyForest, node_id: int) -> list[int]:
    """Remove a node and all its descendants from the store, children first."""
    visited = []
    stack = [node_id]
    while stack:
        node = forest.nodes.get(stack.pop())
        if node is None:
            continue
        visited.append(node.id)
        stack.extend(node.children)

    # Reversed pre-order puts every child before its parent
    removed = list(reversed(visited))
    for removed_id in removed:
        del forest.nodes[removed_id]
    return removed


def delete_node(forest: FamilyForest, node_id: int) -> dict[str, Any]:
    """
    Delete a node with its whole subtree, then sweep orphans.

    Returns:
        dict with 'success', 'message', 'error', 'node' and 'removed' (every id
        taken out of the store, subtree first, then swept orphans)
    """
    node = forest.nodes.get(node_id)
    if node is None:
        return _not_found(node_id)
    if is_protected(forest, node_id):
        return _failure("Cannot delete ME or his parent", ERROR_PROTECTED)

    if node.parent_id is not None:
        parent = forest.nodes.get(node.parent_id)
        if parent:
            parent.children = [child_id for child_id in parent.children if child_id != node_id]

    removed = _remove_subtree(forest, node_id)
    removed.extend(remove_orphan_nodes(forest))

    logger.info(f"Deleted node {node_id} ({node.name!r}), {len(removed)} node(s) removed")
    return _success("Node deleted successfully", removed=removed)


# ============================================================================
# Garbage Collector
# ============================================================================

def remove_orphan_nodes(forest: FamilyForest) -> list[int]:
    """
    Remove every node that has neither a parent nor children, except ME.

    One pass is enough: an orphan references nothing, so removing it cannot
    orphan anything else.
    """
    orphan_ids = [
        node.id
        for node in forest.nodes.values()
        if node.parent_id is None and not node.children and node.name != forest.me_name
    ]
    for orphan_id in orphan_ids:
        del forest.nodes[orphan_id]

    if orphan_ids:
        logger.debug(f"Swept {len(orphan_ids)} orphan node(s): {orphan_ids}")
    return orphan_ids


# ============================================================================
# Export Engine
# ============================================================================

def get_node_size(forest: FamilyForest, node_id: int, sizes: dict[int, int] | None = None) -> int:
    """Count a node plus all its descendants. `sizes` caches results across calls."""
    if sizes is None:
        sizes = {}
    if node_id in sizes:
        return sizes[node_id]
    if node_id not in forest.nodes:
        return 0

    # Post-order: a node is sized once all of its children are
    stack = [(node_id, False)]
    while stack:
        current_id, children_done = stack.pop()
        node = forest.nodes.get(current_id)
        if node is None or current_id in sizes:
            continue
        if children_done:
            sizes[current_id] = 1 + sum(sizes.get(child_id, 0) for child_id in node.children)
        else:
            stack.append((current_id, True))
            stack.extend((child_id, False) for child_id in node.children if child_id not in sizes)

    return sizes[node_id]


def find_largest_tree(forest: FamilyForest, roots_only: bool = False) -> FamilyNode:
    """
    Pick the node with the biggest subtree; the first one in store order wins ties.

    Every node is a candidate by default, not just roots. A root always
    outweighs its own descendants, so the winner is in practice the root of
    the biggest tree. With `roots_only` only parentless nodes are weighed.
    """
    if not forest.nodes:
        raise EmptyForestError("Cannot export an empty forest")

    sizes: dict[int, int] = {}
    largest = None
    largest_size = 0

    for node in forest.nodes.values():
        if roots_only and node.parent_id is not None:
            continue
        size = get_node_size(forest, node.id, sizes)
        if size > largest_size:
            largest = node
            largest_size = size

    if largest is None:
        raise EmptyForestError("Forest has no root node to export")

    logger.debug(f"Largest tree starts at node {largest.id} with {largest_size} node(s)")
    return largest


def build_export_tree(forest: FamilyForest, node_id: int) -> dict[str, Any]:
    """
    Build a plain nested dict from a node downward.
    Parent links are dropped and 'children' is left out on leaves.
    """
    root = forest.nodes[node_id]
    tree: dict[str, Any] = {"id": root.id, "name": root.name}

    stack = [(root, tree)]
    while stack:
        node, plain = stack.pop()
        if not node.children:
            continue
        plain["children"] = []
        for child_id in node.children:
            child = forest.nodes[child_id]
            plain_child = {"id": child.id, "name": child.name}
            plain["children"].append(plain_child)
            stack.append((child, plain_child))

    return tree


def dump_export_tree(tree: dict[str, Any], indent: int = 2) -> str:
    """
    Write an export tree as indented JSON, laid out exactly like
    `json.dumps(tree, indent=indent, ensure_ascii=False)`.

    The nesting is walked with a stack, so arbitrarily deep family lines do
    not hit the recursion limit that the json encoder runs into.
    """
    parts = []
    stack: list[tuple[dict[str, Any] | str, int]] = [(tree, 0)]

    while stack:
        item, depth = stack.pop()
        if isinstance(item, str):
            parts.append(item)
            continue

        outer = " " * (indent * depth)
        pad = " " * (indent * (depth + 1))
        parts.append(
            "{\n"
            f'{pad}"id": {json.dumps(item["id"])},\n'
            f'{pad}"name": {json.dumps(item["name"], ensure_ascii=False)}'
        )

        children = item.get("children")
        if not children:
            parts.append(f"\n{outer}}}")
            continue

        inner = " " * (indent * (depth + 2))
        parts.append(f',\n{pad}"children": [')
        stack.append((f"\n{pad}]\n{outer}}}", depth))
        for index in reversed(range(len(children))):
            stack.append((children[index], depth + 2))
            stack.append(((",\n" if index else "\n") + inner, depth))

    return "".join(parts)


def export_tree(forest: FamilyForest, indent: int = 2, roots_only: bool = False) -> str:
    """Serialize the largest tree as indented JSON and keep it on the forest."""
    largest = find_largest_tree(forest, roots_only=roots_only)
    tree = build_export_tree(forest, largest.id)
    forest.exported_tree_json = dump_export_tree(tree, indent=indent)
    forest.exported_root_id = largest.id

    logger.info(f"Exported tree rooted at node {largest.id} ({largest.name!r})")
    return forest.exported_tree_json
