"""Tests for the relationship graph engine."""

import pytest

from conftest import git


@pytest.fixture
def abc(make_feature):
    """Three features on main."""
    return make_feature("A"), make_feature("B"), make_feature("C")


class TestLink:
    """Test relationship creation."""

    def test_link_creates_inverse(self, store, graph, abc):
        """Test depends-on writes required-by onto the target."""
        a, b, _ = abc
        result = graph.link("A", "B", "depends-on", description="login needs sessions")

        assert result.relationship.type == "depends-on"
        assert result.inverse.type == "required-by"
        store.invalidate()
        assert store.get(a.id).has_relationship("depends-on", b.id)
        assert store.get(b.id).has_relationship("required-by", a.id)
        assert store.repo.is_clean(include_untracked=True)

    def test_link_by_alias(self, store, graph, abc):
        """Test aliases are stored under the canonical type name."""
        result = graph.link("A", "B", "requires")
        assert result.relationship.type == "depends-on"

    def test_bidirectional_mirror(self, store, graph, abc):
        """Test a bidirectional type is mirrored with the same type."""
        from featgraph.exceptions import DuplicateRelationshipError

        a, b, _ = abc
        result = graph.link("A", "B", "related-to")
        assert result.inverse.type == "related-to"
        with pytest.raises(DuplicateRelationshipError):
            graph.link("B", "A", "related-to")

    def test_no_inverse_without_auto_create(self, repo):
        """Test auto_create_inverse=false writes only the primary edge."""
        import yaml

        from featgraph.config import load_config
        from featgraph.graph import RelationshipGraph
        from featgraph.models import Feature
        from featgraph.storage import FeatureStore

        path = repo.root / ".featgraph" / "config.yml"
        data = yaml.safe_load(path.read_text())
        data["relationships"]["system"]["auto_create_inverse"] = False
        path.write_text(yaml.safe_dump(data))
        store = FeatureStore(repo, load_config(repo.root))
        store.save(Feature.create("A"))
        store.save(Feature.create("B"))

        result = RelationshipGraph(store).link("A", "B", "depends-on")
        assert result.inverse is None
        assert store.find_by_name_or_id("B").relationships == []

    def test_self_reference(self, graph, abc):
        """Test a feature cannot point at itself."""
        from featgraph.exceptions import SelfReferenceError

        with pytest.raises(SelfReferenceError):
            graph.link("A", "A", "references")

    def test_duplicate(self, graph, abc):
        """Test the same (type, target) twice is refused."""
        from featgraph.exceptions import DuplicateRelationshipError

        graph.link("A", "B", "depends-on")
        with pytest.raises(DuplicateRelationshipError):
            graph.link("A", "B", "depends-on")

    def test_unknown_type(self, graph, abc):
        """Test an undefined relationship type is refused."""
        from featgraph.exceptions import UnknownRelationshipTypeError

        with pytest.raises(UnknownRelationshipTypeError):
            graph.link("A", "B", "owns")

    def test_missing_endpoint(self, graph, abc):
        """Test an unknown endpoint raises FeatureNotFoundError."""
        from featgraph.exceptions import FeatureNotFoundError

        with pytest.raises(FeatureNotFoundError):
            graph.link("A", "Zed", "depends-on")

    def test_link_across_branches(self, store, graph, make_feature):
        """Test the inverse lands on the target's own branch."""
        from featgraph.models import Feature

        a = make_feature("A")
        git(store.repo.root, "checkout", "-q", "-b", "feature/b")
        b = Feature.create("B", branch="feature/b")
        store.save(b)
        git(store.repo.root, "checkout", "-q", "main")
        store.invalidate()

        graph.link("A", "B", "depends-on")
        assert store.repo.current_branch() == "main"
        assert "depends-on" in (store.features_dir / "a.yml").read_text()
        on_b = git(store.repo.root, "show", "feature/b:.featgraph/features/b.yml")
        assert "required-by" in on_b and a.id in on_b


class TestCycles:
    """Test cycle detection on link."""

    def test_strict_cycle_rejected_with_path(self, store, graph, abc):
        """Test closing A -> B -> C -> A raises with the full path."""
        from featgraph.exceptions import CycleError

        a, _, c = abc
        graph.link("A", "B", "depends-on")
        graph.link("B", "C", "depends-on")
        with pytest.raises(CycleError) as exc_info:
            graph.link("C", "A", "depends-on")

        assert exc_info.value.path == ["A", "B", "C", "A"]
        assert "A -> B -> C -> A" in str(exc_info.value)
        store.invalidate()
        assert not store.get(c.id).has_relationship("depends-on", a.id)

    def test_cycle_through_inverse_records(self, graph, abc):
        """Test a cycle is found whichever side of a pair was written."""
        from featgraph.exceptions import CycleError

        graph.link("A", "B", "depends-on")
        graph.link("C", "B", "required-by")
        with pytest.raises(CycleError):
            graph.link("C", "A", "depends-on")

    def test_forward_and_inverse_are_not_a_cycle(self, graph, abc):
        """Test A depends-on B plus B required-by A is one edge."""
        from featgraph.validator import CYCLE_DETECTED, Validator

        a, b, _ = abc
        graph.link("A", "B", "depends-on")
        graph.link("B", "C", "required-by")
        assert graph.find_cycle_path(a.id, b.id, "depends-on") is None
        assert Validator(graph.store).validate().by_code(CYCLE_DETECTED) == []

    def test_warn_category_links_with_warning(self, graph, abc):
        """Test workflow cycles are created but reported."""
        graph.link("A", "B", "blocks")
        graph.link("B", "C", "blocks")
        result = graph.link("C", "A", "blocks")
        assert result.warnings
        assert "cycle" in result.warnings[0]

    def test_cycles_allowed_in_informational(self, graph, abc):
        """Test informational types never warn about cycles."""
        graph.link("A", "B", "references")
        graph.link("B", "C", "references")
        assert graph.link("C", "A", "references").warnings == []


class TestUnlink:
    """Test relationship removal."""

    def test_unlink_removes_both_sides(self, store, graph, abc):
        """Test the primary and its inverse go together."""
        a, b, _ = abc
        graph.link("A", "B", "depends-on")
        removed = graph.unlink("A", "B", "depends-on")
        assert sorted(r.type for r in removed) == ["depends-on", "required-by"]
        store.invalidate()
        assert store.get(a.id).relationships == []
        assert store.get(b.id).relationships == []

    def test_unlink_is_idempotent(self, store, graph, abc):
        """Test removing a missing relationship succeeds without a commit."""
        graph.link("A", "B", "depends-on")
        graph.unlink("A", "B")
        head = git(store.repo.root, "rev-parse", "HEAD")
        assert graph.unlink("A", "B") == []
        assert graph.unlink("A", "B", "depends-on") == []
        assert git(store.repo.root, "rev-parse", "HEAD") == head


class TestTraversal:
    """Test descendants, ancestors, tree and impact."""

    @pytest.fixture
    def chain(self, graph, abc):
        graph.link("A", "B", "depends-on")
        graph.link("B", "C", "depends-on")
        return abc

    def test_descendants(self, graph, chain):
        """Test BFS order and depth along outgoing edges."""
        walked = [(f.name, d) for f, d in graph.traverse_descendants("A", ["depends-on"])]
        assert walked == [("B", 1), ("C", 2)]

    def test_descendants_max_depth(self, graph, chain):
        """Test max_depth limits the walk."""
        assert [f.name for f, _ in graph.traverse_descendants("A", ["depends-on"], max_depth=1)] == ["B"]

    def test_ancestors(self, graph, chain):
        """Test walking incoming edges."""
        assert [f.name for f, _ in graph.traverse_ancestors("C", ["depends-on"])] == ["B", "A"]

    def test_traversal_is_lazy(self, graph, chain):
        """Test the walk is a generator."""
        walk = graph.traverse_descendants("A")
        assert next(walk)[1] == 1

    def test_tree(self, graph, abc):
        """Test the nested tree of one relationship type."""
        graph.link("A", "B", "contains")
        graph.link("A", "C", "contains")
        root = graph.tree("A", "contains")
        assert root.feature.name == "A"
        assert sorted(child.feature.name for child in root.children) == ["B", "C"]

    def test_impacted(self, graph, chain):
        """Test impact follows incoming edges in impact categories."""
        impacted = graph.impacted("C")
        assert [(i.feature.name, i.depth) for i in impacted] == [("B", 1), ("A", 2)]
        assert impacted[1].path == ["C", "B", "A"]

    def test_impacted_skips_informational(self, graph, abc):
        """Test references do not count towards impact."""
        graph.link("A", "B", "references")
        assert graph.impacted("B") == []


class TestVersionConstraints:
    """Test constraint evaluation against closed versions."""

    def test_constraint_states(self, store, graph, abc):
        """Test indeterminate, violated and satisfied outcomes."""
        from featgraph.models import ConstraintStatus

        _, b, _ = abc
        result = graph.link("A", "B", "depends-on", version_constraint=">=2")
        rel = result.relationship
        assert graph.check_version_constraint(rel) is ConstraintStatus.INDETERMINATE

        b = store.get(b.id)
        b.close()
        store.save(b)
        store.invalidate()
        assert graph.check_version_constraint(rel) is ConstraintStatus.VIOLATED

        b = store.get(b.id)
        b.reopen()
        b.close()
        store.save(b)
        store.invalidate()
        assert graph.check_version_constraint(rel) is ConstraintStatus.SATISFIED

    def test_impact_carries_constraint_warning(self, store, graph, abc):
        """Test a violated constraint is annotated on the impacted feature."""
        _, b, _ = abc
        graph.link("A", "B", "depends-on", version_constraint=">=2")
        b = store.get(b.id)
        b.close()
        store.save(b)
        store.invalidate()

        impacted = graph.impacted("B")
        assert impacted[0].feature.name == "A"
        assert ">=2" in impacted[0].warning
