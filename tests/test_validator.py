"""Tests for the feature graph validator."""

import pytest

from conftest import git


@pytest.fixture
def validator(store):
    from featgraph.validator import Validator

    return Validator(store)


def relate(source, rel_type, target, constraint=None):
    """Attach a relationship without going through the graph engine."""
    from featgraph.models import Relationship, VersionConstraint

    source.add_relationship(Relationship(
        rel_type, target.id, target.name,
        version_constraint=VersionConstraint.parse(constraint) if constraint else None,
    ))


class TestValidate:
    """Test each issue code."""

    def test_healthy_graph(self, graph, validator, make_feature):
        """Test links made through the engine validate cleanly."""
        make_feature("A")
        make_feature("B")
        graph.link("A", "B", "depends-on")
        graph.link("A", "B", "related-to")

        report = validator.validate()
        assert report.is_healthy
        assert report.issues == []
        assert report.features_count == 2
        assert report.relationships_count == 4

    def test_orphaned_relationship(self, store, validator, make_feature):
        """Test E001 for a target that exists nowhere."""
        from featgraph.models import Feature
        from featgraph.validator import ORPHANED_RELATIONSHIP, Severity

        ghost = Feature.create("Ghost")
        a = make_feature("A")
        relate(a, "depends-on", ghost)
        store.save(a)

        issues = validator.validate().by_code(ORPHANED_RELATIONSHIP)
        assert len(issues) == 1
        assert issues[0].severity is Severity.ERROR
        assert issues[0].fixable

    def test_missing_inverse(self, store, validator, make_feature):
        """Test E002 when the target lacks the inverse."""
        from featgraph.validator import MISSING_INVERSE, Severity

        a, b = make_feature("A"), make_feature("B")
        relate(a, "depends-on", b)
        store.save(a)

        issues = validator.validate().by_code(MISSING_INVERSE)
        assert [i.expected_type for i in issues] == ["required-by"]
        assert issues[0].severity is Severity.WARNING

    def test_missing_bidirectional_mirror(self, store, validator, make_feature):
        """Test E002 for a one-sided bidirectional relationship."""
        from featgraph.validator import MISSING_INVERSE

        a, b = make_feature("A"), make_feature("B")
        relate(a, "related-to", b)
        store.save(a)

        assert [i.expected_type for i in validator.validate().by_code(MISSING_INVERSE)] == ["related-to"]

    def test_no_missing_inverse_without_auto_create(self, repo):
        """Test one-sided inverse types are accepted when auto_create_inverse is off."""
        import yaml

        from featgraph.config import load_config
        from featgraph.graph import RelationshipGraph
        from featgraph.models import Feature
        from featgraph.storage import FeatureStore
        from featgraph.validator import MISSING_INVERSE, Validator

        path = repo.root / ".featgraph" / "config.yml"
        data = yaml.safe_load(path.read_text())
        data["relationships"]["system"]["auto_create_inverse"] = False
        path.write_text(yaml.safe_dump(data))
        store = FeatureStore(repo, load_config(repo.root))
        for name in ("A", "B", "C"):
            store.save(Feature.create(name))

        graph = RelationshipGraph(store)
        graph.link("A", "B", "depends-on")
        a = store.find_by_name_or_id("A")
        relate(a, "related-to", store.find_by_name_or_id("C"))
        store.save(a)

        issues = Validator(store).validate().by_code(MISSING_INVERSE)
        assert [i.expected_type for i in issues] == ["related-to"]

    def test_malformed_and_unknown_type(self, store, validator, make_feature):
        """Test E003 for unparseable files and unknown relationship types."""
        from featgraph.validator import MALFORMED_RECORD

        a, b = make_feature("A"), make_feature("B")
        relate(a, "owns", b)
        store.save(a)
        (store.features_dir / "broken.yml").write_text("versions: [\n")
        store.invalidate()

        issues = validator.validate().by_code(MALFORMED_RECORD)
        assert len(issues) == 2
        assert not any(issue.fixable for issue in issues)

    def test_divergent_copies(self, store, validator, make_feature):
        """Test E004 for the same id with conflicting content."""
        from featgraph.validator import DIVERGENT_DUPLICATE

        a = make_feature("A")
        git(store.repo.root, "branch", "feature/copy")
        a.description = "changed in place"
        store.save(a)
        store.invalidate()

        issues = validator.validate().by_code(DIVERGENT_DUPLICATE)
        assert [i.feature_id for i in issues] == [a.id]

    def test_strict_cycle(self, store, validator, make_feature):
        """Test E005 is an error in a strict category."""
        from featgraph.validator import CYCLE_DETECTED, Severity

        a, b, c = make_feature("A"), make_feature("B"), make_feature("C")
        relate(a, "depends-on", b)
        relate(b, "depends-on", c)
        relate(c, "depends-on", a)
        store.save_all([a, b, c])

        issues = validator.validate().by_code(CYCLE_DETECTED)
        assert len(issues) == 1
        assert issues[0].severity is Severity.ERROR
        assert issues[0].path[0] == issues[0].path[-1]
        assert len(issues[0].path) == 4

    def test_warn_cycle(self, graph, validator, make_feature):
        """Test E005 is a warning in a warn category."""
        from featgraph.validator import CYCLE_DETECTED, Severity

        for name in "ABC":
            make_feature(name)
        graph.link("A", "B", "blocks")
        graph.link("B", "C", "blocks")
        graph.link("C", "A", "blocks")

        report = validator.validate()
        issues = report.by_code(CYCLE_DETECTED)
        assert [i.severity for i in issues] == [Severity.WARNING]
        assert report.is_healthy

    def test_bidirectional_pair_is_not_a_cycle(self, validator):
        """Test a mirrored undirected edge does not count as a cycle."""
        from featgraph.graph import Edge
        from featgraph.validator import CYCLE_DETECTED, find_cycles

        assert find_cycles([Edge("a", "b", "related-to", "informational", directed=False)]) == []
        assert find_cycles([Edge("a", "b", "depends-on", "structural")]) == []
        assert validator.validate().by_code(CYCLE_DETECTED) == []

    def test_constraint_violation(self, store, graph, validator, make_feature):
        """Test E006 when the target's closed version is too low."""
        from featgraph.validator import CONSTRAINT_VIOLATED

        make_feature("A")
        b = make_feature("B")
        graph.link("A", "B", "depends-on", version_constraint=">=2")
        b = store.get(b.id)
        b.close()
        store.save(b)
        store.invalidate()

        issues = validator.validate().by_code(CONSTRAINT_VIOLATED)
        assert len(issues) == 1
        assert "latest closed version is 1" in issues[0].message


class TestFix:
    """Test automatic repair."""

    def test_fix_orphans_and_inverses(self, store, validator, make_feature):
        """Test E001 and E002 are repaired and the graph becomes healthy."""
        from featgraph.models import Feature

        ghost = Feature.create("Ghost")
        a, b = make_feature("A"), make_feature("B")
        relate(a, "depends-on", ghost)
        relate(a, "depends-on", b)
        store.save(a)

        result = validator.fix()
        assert len(result.fixed) == 2
        assert result.failed == []

        store.invalidate()
        assert validator.validate().issues == []
        assert store.get(b.id).has_relationship("required-by", a.id)
        assert not store.get(a.id).has_relationship("depends-on", ghost.id)

    def test_fix_writes_other_branch(self, store, validator, make_feature):
        """Test a missing inverse on another branch is written there."""
        from featgraph.models import Feature

        a = make_feature("A")
        git(store.repo.root, "checkout", "-q", "-b", "feature/b")
        b = Feature.create("B", branch="feature/b")
        store.save(b)
        git(store.repo.root, "checkout", "-q", "main")
        store.invalidate()

        a = store.get(a.id)
        relate(a, "depends-on", b)
        store.save(a)
        store.invalidate()

        result = validator.fix()
        assert len(result.fixed) == 1
        on_b = git(store.repo.root, "show", "feature/b:.featgraph/features/b.yml")
        assert "required-by" in on_b
        assert store.repo.current_branch() == "main"

    def test_unfixable_issues_are_skipped(self, store, validator, make_feature):
        """Test cycles and constraints are left for a human."""
        from featgraph.validator import CYCLE_DETECTED

        a, b = make_feature("A"), make_feature("B")
        relate(a, "depends-on", b)
        relate(b, "depends-on", a)
        store.save_all([a, b])

        result = validator.fix()
        assert CYCLE_DETECTED in {issue.code for issue in result.skipped}
