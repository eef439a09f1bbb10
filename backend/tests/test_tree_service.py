import pytest

from decision_explorer.core.exceptions import TreeIntegrityError
from decision_explorer.models import ActionType, NodeType
from decision_explorer.schemas.decision import NodeScore
from decision_explorer.services.tree_service import (
    TreeAssembler,
    flatten_tree,
    group_children,
    order_parent_first
)

from factories import make_node


class TestGroupChildren:
    """Parent index used by every tree builder."""

    def test_roots_are_keyed_by_none(self):
        root = make_node("Root", NodeType.ROOT)
        child = make_node("Child", parent=root)

        index = group_children([child, root])

        assert index[None] == [root]
        assert index[root.id] == [child]

    def test_siblings_sorted_by_sort_order(self):
        root = make_node("Root", NodeType.ROOT)
        second = make_node("Second", parent=root, sort_order=2)
        first = make_node("First", parent=root, sort_order=1)

        index = group_children([root, second, first])

        assert [n.title for n in index[root.id]] == ["First", "Second"]

    def test_order_parent_first_skips_unreachable_nodes(self):
        root = make_node("Root", NodeType.ROOT)
        child = make_node("Child", parent=root)
        grandchild = make_node("Grandchild", parent=child)
        orphan = make_node("Orphan", parent_node_id=make_node("Missing").id)

        ordered = order_parent_first([grandchild, orphan, child, root])

        assert [n.title for n in ordered] == ["Root", "Child", "Grandchild"]


class TestDecisionTree:
    """Assembly and decoration of the scored decision tree."""

    def setup_method(self):
        self.assembler = TreeAssembler(max_depth=10)
        self.root = make_node("Confirm diagnosis", NodeType.ROOT, base_confidence=0.9)
        self.branch = make_node("Stage 1", NodeType.BRANCH, parent=self.root, base_confidence=0.7)
        self.leaf = make_node(
            "Start ACE inhibitor",
            NodeType.RECOMMENDATION,
            parent=self.branch,
            base_confidence=0.6,
            action_type=ActionType.MEDICATION,
        )
        self.nodes = [self.leaf, self.branch, self.root]

    def test_single_chain_without_scores(self):
        tree = self.assembler.build_decision_tree(self.nodes)

        assert tree.confidence == 0.9
        assert tree.children[0].confidence == 0.7
        leaf = tree.children[0].children[0]
        assert leaf.confidence == 0.6
        assert leaf.recommendation is not None
        assert leaf.recommendation.title == "Start ACE inhibitor"
        assert leaf.recommendation.action_type == ActionType.MEDICATION
        assert tree.alternative_count == 0
        assert tree.children[0].alternative_count == 0
        assert leaf.alternative_count == 0

    def test_only_non_recommendation_nodes_lack_projection(self):
        tree = self.assembler.build_decision_tree(self.nodes)

        assert tree.recommendation is None
        assert tree.children[0].recommendation is None

    def test_partial_scores_override_only_scored_nodes(self):
        scores = {str(self.branch.id): NodeScore(confidence=0.95, is_recommended=True)}

        tree = self.assembler.build_decision_tree(self.nodes, scores)

        assert tree.confidence == 0.9
        assert tree.is_recommended_path is False
        assert tree.children[0].confidence == 0.95
        assert tree.children[0].is_recommended_path is True
        assert tree.children[0].children[0].confidence == 0.6

    def test_recommendation_confidence_follows_score(self):
        scores = {str(self.leaf.id): NodeScore(confidence=0.42, is_recommended=False)}

        tree = self.assembler.build_decision_tree(self.nodes, scores)

        assert tree.children[0].children[0].recommendation.confidence == 0.42

    def test_alternative_count_reflects_siblings(self):
        other = make_node("Stage 2", NodeType.BRANCH, parent=self.root, sort_order=1)
        third = make_node("Stage 3", NodeType.BRANCH, parent=self.root, sort_order=2)

        tree = self.assembler.build_decision_tree(self.nodes + [other, third])

        assert tree.alternative_count == 2
        assert [child.title for child in tree.children] == ["Stage 1", "Stage 2", "Stage 3"]

    def test_missing_root_fails_closed(self):
        with pytest.raises(TreeIntegrityError):
            self.assembler.build_decision_tree([self.branch, self.leaf])

    def test_depth_guard(self):
        assembler = TreeAssembler(max_depth=1)

        with pytest.raises(TreeIntegrityError, match="maximum depth"):
            assembler.build_decision_tree(self.nodes)

    def test_cycle_is_rejected(self):
        first = make_node("First", NodeType.DECISION)
        second = make_node("Second", NodeType.DECISION, parent=first)
        first.parent_node_id = second.id

        with pytest.raises(TreeIntegrityError, match="cycle"):
            self.assembler.build_decision_tree([first, second], root=first)


class TestNodeTree:
    """Editor view of a pathway."""

    def setup_method(self):
        self.assembler = TreeAssembler(max_depth=10)

    def test_round_trip_preserves_structure(self):
        root = make_node("Root", NodeType.ROOT)
        a = make_node("A", NodeType.BRANCH, parent=root, sort_order=0)
        b = make_node("B", NodeType.BRANCH, parent=root, sort_order=1)
        a1 = make_node("A1", NodeType.RECOMMENDATION, parent=a, sort_order=0)
        a2 = make_node("A2", NodeType.RECOMMENDATION, parent=a, sort_order=1)
        b1 = make_node("B1", NodeType.DECISION, parent=b, sort_order=0)
        nodes = [b1, a2, root, a1, b, a]

        tree = self.assembler.build_node_tree(nodes)
        triples = flatten_tree(tree)

        assert set(triples) == {(n.id, n.parent_node_id, n.sort_order) for n in nodes}
        assert [t[0] for t in triples] == [root.id, a.id, a1.id, a2.id, b.id, b1.id]

    def test_pathway_without_root(self):
        assert self.assembler.build_node_tree([]) is None
