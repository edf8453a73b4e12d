"""
Feature Graph Validator

Sweeps the cross-branch feature graph and reports issues with stable codes:

    E001  orphaned relationship (target not found on any branch)
    E002  missing inverse (or bidirectional mirror) relationship
    E003  malformed record or unknown relationship type
    E004  same feature id on several branches with diverging content
    E005  cycle in a category with strict or warn cycle detection
    E006  version constraint violated

``fix`` repairs E001 and E002 only; everything else needs a human decision.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from featgraph.config import Config
from featgraph.exceptions import FeatgraphError, UnknownRelationshipTypeError
from featgraph.graph import Edge, RelationshipGraph, adjacency, normalized_edges
from featgraph.logging_config import get_logger
from featgraph.models import ConstraintStatus, Feature, Relationship
from featgraph.storage import FeatureStore

logger = get_logger(__name__)

ORPHANED_RELATIONSHIP = "E001"
MISSING_INVERSE = "E002"
MALFORMED_RECORD = "E003"
DIVERGENT_DUPLICATE = "E004"
CYCLE_DETECTED = "E005"
CONSTRAINT_VIOLATED = "E006"

FIXABLE_CODES = {ORPHANED_RELATIONSHIP, MISSING_INVERSE}


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass
class Issue:
    """One validation finding."""

    code: str
    severity: Severity
    message: str
    feature_id: str = ""
    feature_name: str = ""
    relationship: Optional[Relationship] = None
    location: str = ""
    path: List[str] = field(default_factory=list)
    expected_type: str = ""

    @property
    def fixable(self) -> bool:
        return self.code in FIXABLE_CODES


@dataclass
class ValidationReport:
    features_count: int = 0
    relationships_count: int = 0
    issues: List[Issue] = field(default_factory=list)

    @property
    def errors(self) -> List[Issue]:
        return [i for i in self.issues if i.severity is Severity.ERROR]

    @property
    def warnings(self) -> List[Issue]:
        return [i for i in self.issues if i.severity is Severity.WARNING]

    @property
    def is_healthy(self) -> bool:
        return not self.errors

    def by_code(self, code: str) -> List[Issue]:
        return [i for i in self.issues if i.code == code]


@dataclass
class FixResult:
    fixed: List[Issue] = field(default_factory=list)
    failed: List[Tuple[Issue, str]] = field(default_factory=list)
    skipped: List[Issue] = field(default_factory=list)


class Validator:
    """Consistency checks over every discoverable feature."""

    def __init__(self, store: FeatureStore, config: Optional[Config] = None, graph: Optional[RelationshipGraph] = None):
        self.store = store
        self.config = config or store.config
        self.graph = graph or RelationshipGraph(store, self.config)

    def validate(self) -> ValidationReport:
        discovery = self.store.discover()
        features = discovery.features
        report = ValidationReport(
            features_count=len(features),
            relationships_count=sum(len(f.relationships) for f in features.values()),
        )

        for bad in discovery.malformed:
            report.issues.append(Issue(
                code=MALFORMED_RECORD,
                severity=Severity.ERROR,
                message=bad.error.message,
                location=f"{bad.ref}:{bad.path}",
            ))

        for divergence in discovery.divergences:
            report.issues.append(Issue(
                code=DIVERGENT_DUPLICATE,
                severity=Severity.WARNING,
                message=(
                    f"Feature '{divergence.name}' has diverging copies on "
                    + ", ".join(loc.describe() for loc in divergence.locations)
                ),
                feature_id=divergence.feature_id,
                feature_name=divergence.name,
                location=divergence.locations[0].describe(),
            ))

        for feature in sorted(features.values(), key=lambda f: (f.name.lower(), f.id)):
            for rel in feature.relationships:
                report.issues.extend(self._check_relationship(feature, rel, features))

        report.issues.extend(self._find_cycles(features))
        logger.debug("Validation found %d issue(s)", len(report.issues))
        return report

    def _check_relationship(self, feature: Feature, rel: Relationship, features: Dict[str, Feature]) -> List[Issue]:
        issues = []
        try:
            type_def = self.config.resolve_type(rel.type)
        except UnknownRelationshipTypeError:
            return [Issue(
                code=MALFORMED_RECORD,
                severity=Severity.ERROR,
                message=f"'{feature.name}' uses unknown relationship type '{rel.type}'",
                feature_id=feature.id,
                feature_name=feature.name,
                relationship=rel,
            )]

        target = features.get(rel.target_id)
        if target is None:
            return [Issue(
                code=ORPHANED_RELATIONSHIP,
                severity=Severity.ERROR,
                message=(
                    f"'{feature.name}' {rel.type} '{rel.target_name or rel.target_id}', "
                    "which does not exist on any branch"
                ),
                feature_id=feature.id,
                feature_name=feature.name,
                relationship=rel,
            )]

        expected = self.graph.counterpart_type(type_def.name)
        if expected and not target.has_relationship(expected, feature.id):
            issues.append(Issue(
                code=MISSING_INVERSE,
                severity=Severity.WARNING,
                message=(
                    f"'{target.name}' is missing '{expected}' back to '{feature.name}'"
                ),
                feature_id=feature.id,
                feature_name=feature.name,
                relationship=rel,
                expected_type=expected,
            ))

        if self.graph.check_version_constraint(rel, features) is ConstraintStatus.VIOLATED:
            issues.append(Issue(
                code=CONSTRAINT_VIOLATED,
                severity=Severity.ERROR,
                message=(
                    f"'{feature.name}' needs '{target.name}' {rel.version_constraint}, "
                    f"latest closed version is {target.highest_closed_version()}"
                ),
                feature_id=feature.id,
                feature_name=feature.name,
                relationship=rel,
            ))
        return issues

    def _find_cycles(self, features: Dict[str, Feature]) -> List[Issue]:
        issues = []
        for name, category in sorted(self.config.relationships.categories.items()):
            if not category.checks_cycles:
                continue
            edges = normalized_edges(features.values(), self.config, [name])
            severity = Severity.ERROR if category.cycle_detection == "strict" else Severity.WARNING
            for cycle in find_cycles(edges):
                names = [features[node].name if node in features else node for node in cycle]
                issues.append(Issue(
                    code=CYCLE_DETECTED,
                    severity=severity,
                    message=f"Cycle in category '{name}': " + " -> ".join(names),
                    feature_id=cycle[0],
                    feature_name=names[0],
                    path=names,
                ))
        return issues

    def fix(self, report: Optional[ValidationReport] = None) -> FixResult:
        """Remove orphaned relationships and recreate missing inverses.

        Fixes are applied feature by feature; a failure on one feature is
        recorded and the rest continue.
        """
        report = report or self.validate()
        result = FixResult()
        features = self.store.discover().features
        pending: Dict[str, List[Issue]] = {}

        for issue in report.issues:
            if not issue.fixable:
                result.skipped.append(issue)
                continue
            rel = issue.relationship
            if issue.code == ORPHANED_RELATIONSHIP:
                owner = features.get(issue.feature_id)
                if owner is None:
                    result.failed.append((issue, "feature no longer exists"))
                    continue
                owner.remove_relationships(rel.type, rel.target_id)
                pending.setdefault(owner.id, []).append(issue)
            else:
                source = features.get(issue.feature_id)
                target = features.get(rel.target_id)
                if source is None or target is None:
                    result.failed.append((issue, "feature no longer exists"))
                    continue
                if not target.has_relationship(issue.expected_type, source.id):
                    target.add_relationship(Relationship(
                        type=issue.expected_type,
                        target_id=source.id,
                        target_name=source.name,
                        description=rel.description,
                    ))
                pending.setdefault(target.id, []).append(issue)

        for feature_id, issues in pending.items():
            feature = features[feature_id]
            try:
                self.store.save(feature, message=f"featgraph: repair relationships of {feature.name}")
            except FeatgraphError as e:
                logger.warning("Could not repair %s: %s", feature.name, e.message)
                result.failed.extend((issue, e.message) for issue in issues)
                continue
            result.fixed.extend(issues)
        return result


def find_cycles(edges: List[Edge]) -> List[List[str]]:
    """Distinct elementary cycles reachable by depth-first search.

    Each cycle is returned closed (first node repeated at the end). An
    undirected edge is never walked straight back along itself.
    """
    adj = adjacency(edges)
    state: Dict[str, int] = {}
    stack: List[str] = []
    seen: Set[Tuple[str, ...]] = set()
    cycles: List[List[str]] = []

    def canonical(cycle: List[str]) -> Tuple[str, ...]:
        body = cycle[:-1]
        pivot = body.index(min(body))
        return tuple(body[pivot:] + body[:pivot])

    def visit(node: str, via: Optional[Edge]) -> None:
        state[node] = 1
        stack.append(node)
        for neighbour, edge in adj.get(node, []):
            if via is not None and edge is via and not edge.directed:
                continue
            if state.get(neighbour) == 1:
                cycle = stack[stack.index(neighbour):] + [neighbour]
                key = canonical(cycle)
                if key not in seen:
                    seen.add(key)
                    cycles.append(cycle)
            elif neighbour not in state:
                visit(neighbour, edge)
        stack.pop()
        state[node] = 2

    for node in sorted(adj):
        if node not in state:
            visit(node, None)
    return cycles
