from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple
from uuid import UUID

import structlog

from decision_explorer.core.config import get_settings
from decision_explorer.core.exceptions import TreeIntegrityError
from decision_explorer.models.pathway import NodeType, PathwayNode
from decision_explorer.schemas.decision import (
    DecisionTreeNode,
    NodeScore,
    RecommendationProjection
)
from decision_explorer.schemas.pathway import PathwayNodeTree

logger = structlog.get_logger(__name__)

ChildrenIndex = Dict[Optional[UUID], List[PathwayNode]]


def group_children(nodes: Iterable[PathwayNode]) -> ChildrenIndex:
    """Index nodes by parent id (None for roots), siblings ordered by sort_order then id"""
    index: ChildrenIndex = defaultdict(list)
    for node in nodes:
        index[node.parent_node_id].append(node)
    for siblings in index.values():
        siblings.sort(key=lambda n: (n.sort_order, str(n.id)))
    return index


def order_parent_first(nodes: Sequence[PathwayNode]) -> List[PathwayNode]:
    """
    Order nodes so every parent precedes its children.

    Nodes whose ancestry never reaches a root (dangling parent ids or
    cycles) are left out and reported in the log.
    """
    index = group_children(nodes)
    ordered: List[PathwayNode] = []
    stack = list(reversed(index.get(None, [])))
    seen: Set[UUID] = set()

    while stack:
        node = stack.pop()
        if node.id in seen:
            continue
        seen.add(node.id)
        ordered.append(node)
        stack.extend(reversed(index.get(node.id, [])))

    if len(ordered) != len(nodes):
        logger.warning(
            "Unreachable nodes skipped",
            skipped=[str(n.id) for n in nodes if n.id not in seen]
        )
    return ordered


class TreeAssembler:
    """Rebuilds node trees from the flat parent-pointer node list"""

    def __init__(self, max_depth: Optional[int] = None):
        self.max_depth = max_depth or get_settings().pathways.PATHWAY_MAX_TREE_DEPTH

    def build_decision_tree(
        self,
        nodes: Sequence[PathwayNode],
        scores: Optional[Dict[str, NodeScore]] = None,
        root: Optional[PathwayNode] = None
    ) -> DecisionTreeNode:
        """
        Assemble the scored decision tree below ``root``.

        Confidence comes from the score map when the scorer returned an entry
        for the node and falls back to the node's base confidence otherwise.
        """
        scores = scores or {}
        index = group_children(nodes)
        if root is None:
            roots = index.get(None, [])
            if not roots:
                raise TreeIntegrityError("Pathway has no root node")
            root = roots[0]

        tree = self._decorate(root, scores)
        visited: Set[UUID] = {root.id}
        # (stored node, output node, depth)
        stack: List[Tuple[PathwayNode, DecisionTreeNode, int]] = [(root, tree, 0)]

        while stack:
            node, output, depth = stack.pop()
            children = index.get(node.id, [])
            if children and depth + 1 > self.max_depth:
                raise TreeIntegrityError(
                    f"Pathway tree exceeds maximum depth of {self.max_depth}",
                    {"node_id": str(node.id)}
                )

            for child in children:
                if child.id in visited:
                    raise TreeIntegrityError(
                        "Pathway tree contains a cycle", {"node_id": str(child.id)}
                    )
                visited.add(child.id)
                child_output = self._decorate(child, scores)
                output.children.append(child_output)
                stack.append((child, child_output, depth + 1))

            output.alternative_count = len(children) - 1 if len(children) > 1 else 0

        return tree

    def _decorate(self, node: PathwayNode, scores: Dict[str, NodeScore]) -> DecisionTreeNode:
        score = scores.get(str(node.id))
        confidence = score.confidence if score is not None else node.base_confidence

        recommendation = None
        if node.node_type == NodeType.RECOMMENDATION:
            recommendation = RecommendationProjection(
                template_id=node.suggested_template_id,
                title=node.title,
                description=node.description or "",
                action_type=node.action_type,
                confidence=confidence,
            )

        return DecisionTreeNode(
            id=node.id,
            type=node.node_type,
            title=node.title,
            description=node.description or "",
            confidence=confidence,
            factors=node.decision_factors or [],
            is_recommended_path=score.is_recommended if score is not None else False,
            recommendation=recommendation,
        )

    def build_node_tree(self, nodes: Sequence[PathwayNode]) -> Optional[PathwayNodeTree]:
        """Editor view of the pathway; None when no node has a null parent"""
        index = group_children(nodes)
        roots = index.get(None, [])
        if not roots:
            if nodes:
                logger.warning("Pathway nodes have no root", node_count=len(nodes))
            return None

        root = roots[0]
        tree = PathwayNodeTree.model_validate(root)
        visited: Set[UUID] = {root.id}
        stack: List[Tuple[PathwayNode, PathwayNodeTree, int]] = [(root, tree, 0)]

        while stack:
            node, output, depth = stack.pop()
            children = index.get(node.id, [])
            if children and depth + 1 > self.max_depth:
                raise TreeIntegrityError(
                    f"Pathway tree exceeds maximum depth of {self.max_depth}",
                    {"node_id": str(node.id)}
                )
            for child in children:
                if child.id in visited:
                    raise TreeIntegrityError("Pathway tree contains a cycle", {"node_id": str(child.id)})
                visited.add(child.id)
                child_output = PathwayNodeTree.model_validate(child)
                output.children.append(child_output)
                stack.append((child, child_output, depth + 1))

        return tree


def flatten_tree(tree: PathwayNodeTree) -> List[Tuple[UUID, Optional[UUID], int]]:
    """Pre-order (id, parent_id, sort_order) triples of an editor tree"""
    flat: List[Tuple[UUID, Optional[UUID], int]] = []
    stack: List[Tuple[PathwayNodeTree, Optional[UUID]]] = [(tree, None)]
    while stack:
        node, parent_id = stack.pop()
        flat.append((node.id, parent_id, node.sort_order))
        stack.extend((child, node.id) for child in reversed(node.children))
    return flat


__all__ = [
    "ChildrenIndex",
    "group_children",
    "order_parent_first",
    "TreeAssembler",
    "flatten_tree",
]
