"""
Relationship Graph

Creates and removes typed relationships between features (on whichever
branches they live), enforces the per-category cycle policy, and answers
traversal queries over the cross-branch graph.

A relationship and the inverse generated for it are one semantic edge. For
cycle checks every stored relationship is normalized: the lexicographically
smaller name of an inverse pair is canonical and edges of the other type are
flipped, so ``A depends-on B`` and ``B required-by A`` collapse into the same
``A -> B`` edge.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Union

from featgraph.config import Config
from featgraph.exceptions import (
    CycleError,
    DuplicateRelationshipError,
    FeatgraphError,
    SelfReferenceError,
    UnknownRelationshipTypeError,
)
from featgraph.logging_config import get_logger
from featgraph.models import ConstraintStatus, Feature, Relationship, VersionConstraint
from featgraph.storage import FeatureStore, Scope

logger = get_logger(__name__)


@dataclass(frozen=True)
class Edge:
    """A normalized relationship edge."""

    source: str
    target: str
    type: str
    category: str
    directed: bool = True


@dataclass
class LinkResult:
    relationship: Relationship
    source: Feature
    target: Feature
    inverse: Optional[Relationship] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class ImpactedFeature:
    feature: Feature
    relationship: str
    depth: int
    path: List[str]
    warning: str = ""


@dataclass
class TreeNode:
    feature: Feature
    depth: int = 0
    relationship: str = ""
    children: List["TreeNode"] = field(default_factory=list)
    repeated: bool = False


def normalized_edges(
    features: Iterable[Feature],
    config: Config,
    categories: Optional[Iterable[str]] = None,
) -> List[Edge]:
    """Collapse stored relationships into canonical edges, without duplicates.

    Relationships whose type is unknown are left out.
    """
    wanted = set(categories) if categories is not None else None
    edges: Dict[Tuple[str, str, str], Edge] = {}
    for feature in features:
        for rel in feature.relationships:
            try:
                type_def = config.resolve_type(rel.type)
            except UnknownRelationshipTypeError:
                continue
            if wanted is not None and type_def.category not in wanted:
                continue
            canonical, flipped = config.canonical_type(type_def.name)
            source, target = (rel.target_id, feature.id) if flipped else (feature.id, rel.target_id)
            if type_def.bidirectional:
                source, target = sorted((source, target))
            key = (source, target, canonical)
            edges.setdefault(
                key,
                Edge(source, target, canonical, type_def.category, directed=not type_def.bidirectional),
            )
    return list(edges.values())


def adjacency(edges: Iterable[Edge]) -> Dict[str, List[Tuple[str, Edge]]]:
    """Outgoing neighbours per node; undirected edges are walkable both ways."""
    adj: Dict[str, List[Tuple[str, Edge]]] = {}
    for edge in edges:
        adj.setdefault(edge.source, []).append((edge.target, edge))
        if not edge.directed:
            adj.setdefault(edge.target, []).append((edge.source, edge))
    return adj


def bfs_path(adj: Dict[str, List[Tuple[str, Edge]]], start: str, goal: str) -> Optional[List[str]]:
    """Shortest node path from ``start`` to ``goal``, or None."""
    if start == goal:
        return [start]
    parents: Dict[str, str] = {start: start}
    queue = deque([start])
    while queue:
        node = queue.popleft()
        for neighbour, _ in adj.get(node, []):
            if neighbour in parents:
                continue
            parents[neighbour] = node
            if neighbour == goal:
                path = [goal]
                while path[-1] != start:
                    path.append(parents[path[-1]])
                return list(reversed(path))
            queue.append(neighbour)
    return None


class RelationshipGraph:
    """Relationship operations over the cross-branch feature set."""

    def __init__(self, store: FeatureStore, config: Optional[Config] = None):
        self.store = store
        self.config = config or store.config

    # --- helpers --------------------------------------------------------

    def _feature(self, ref: Union[str, Feature]) -> Feature:
        if isinstance(ref, Feature):
            return ref
        return self.store.find_by_name_or_id(ref, Scope.CROSS_BRANCH)

    def _features(self) -> Dict[str, Feature]:
        return dict(self.store.discover().features)

    def _name(self, feature_id: str, features: Dict[str, Feature]) -> str:
        feature = features.get(feature_id)
        return feature.name if feature else feature_id

    # --- cycles ---------------------------------------------------------

    def find_cycle_path(self, source_id: str, target_id: str, type_name: str) -> Optional[List[str]]:
        """Feature ids of the cycle that ``source -type-> target`` would close.

        Only edges of the type's category are considered. Returns the closed
        path (first and last element equal) or None.
        """
        type_def = self.config.resolve_type(type_name)
        canonical, flipped = self.config.canonical_type(type_def.name)
        source, target = (target_id, source_id) if flipped else (source_id, target_id)

        features = self._features().values()
        edges = [
            edge for edge in normalized_edges(features, self.config, [type_def.category])
            if not (edge.type == canonical and {edge.source, edge.target} == {source, target}
                    and not edge.directed)
        ]
        path = bfs_path(adjacency(edges), target, source)
        if path is None:
            return None
        return path + [target]

    # --- link / unlink --------------------------------------------------

    def link(
        self,
        source: Union[str, Feature],
        target: Union[str, Feature],
        type_name: str,
        description: str = "",
        version_constraint: Union[None, str, VersionConstraint] = None,
        save: bool = True,
    ) -> LinkResult:
        """Create ``source -type-> target`` plus its inverse or mirror.

        Both records are written to their owning branches in one call; if
        either write fails neither is kept. With ``save=False`` only the
        in-memory features change and the caller writes them.

        Raises:
            FeatureNotFoundError: An endpoint is not discoverable.
            UnknownRelationshipTypeError: The type is not configured.
            SelfReferenceError, DuplicateRelationshipError, CycleError
        """
        src = self._feature(source)
        tgt = self._feature(target)
        type_def = self.config.resolve_type(type_name)
        category = self.config.category_of(type_def)

        if src.id == tgt.id:
            raise SelfReferenceError(src.name)
        if src.has_relationship(type_def.name, tgt.id):
            raise DuplicateRelationshipError(src.name, type_def.name, tgt.name)

        warnings: List[str] = []
        if category.checks_cycles:
            cycle = self.find_cycle_path(src.id, tgt.id, type_def.name)
            if cycle:
                features = self._features()
                names = [self._name(node, features) for node in cycle]
                if category.cycle_detection == "strict":
                    raise CycleError(names, type_def.name, category.name)
                message = (
                    f"Relationship creates a cycle in category '{category.name}': "
                    + " -> ".join(names)
                )
                logger.warning(message)
                warnings.append(message)

        if isinstance(version_constraint, str):
            version_constraint = VersionConstraint.parse(version_constraint)

        snapshot = self.store.snapshot([src, tgt])
        relationship = Relationship(
            type=type_def.name,
            target_id=tgt.id,
            target_name=tgt.name,
            description=description,
            version_constraint=version_constraint,
        )
        src.add_relationship(relationship)

        inverse = None
        counter_type = self.counterpart_type(type_def.name)
        if counter_type and not tgt.has_relationship(counter_type, src.id):
            inverse = Relationship(
                type=counter_type,
                target_id=src.id,
                target_name=src.name,
                description=description,
            )
            tgt.add_relationship(inverse)

        changed = [src, tgt] if inverse else [src]
        if not save:
            return LinkResult(relationship, src, tgt, inverse, warnings)
        message = f"featgraph: link {src.name} {type_def.name} {tgt.name}"
        try:
            self.store.save_all(changed, message=message)
        except FeatgraphError:
            self._restore(changed, snapshot)
            raise
        logger.info("Linked %s -[%s]-> %s", src.name, type_def.name, tgt.name)
        return LinkResult(relationship, src, tgt, inverse, warnings)

    def counterpart_type(self, type_name: str) -> Optional[str]:
        """Type of the record mirrored onto the target, if any."""
        type_def = self.config.resolve_type(type_name)
        if type_def.bidirectional:
            return type_def.name
        if type_def.inverse and self.config.relationships.system.auto_create_inverse:
            return type_def.inverse
        return None

    @staticmethod
    def _restore(features: Sequence[Feature], snapshot: Dict[str, Feature]) -> None:
        for feature in features:
            saved = snapshot.get(feature.id)
            if saved is not None:
                feature.__dict__.update(saved.__dict__)

    def unlink(
        self,
        source: Union[str, Feature],
        target: Union[str, Feature],
        type_name: Optional[str] = None,
    ) -> List[Relationship]:
        """Remove ``source -type-> target`` and its generated counterpart.

        Removing a relationship that does not exist is not an error. Without
        ``type_name`` every relationship from source to target is removed.
        """
        src = self._feature(source)
        tgt = self._feature(target)
        stored_type = None
        if type_name is not None:
            stored_type = (
                self.config.resolve_type(type_name).name
                if self.config.has_type(type_name) else type_name
            )

        snapshot = self.store.snapshot([src, tgt])
        removed = src.remove_relationships(stored_type, tgt.id)
        counterparts: List[Relationship] = []
        for rel in removed:
            if not self.config.has_type(rel.type):
                continue
            counter_type = self.config.resolve_type(rel.type)
            mirror = counter_type.name if counter_type.bidirectional else counter_type.inverse
            if mirror:
                counterparts += tgt.remove_relationships(mirror, src.id)

        if not removed and not counterparts:
            logger.debug("Nothing to unlink between %s and %s", src.name, tgt.name)
            return []

        changed = [src, tgt] if counterparts else [src]
        message = f"featgraph: unlink {src.name} {tgt.name}"
        try:
            self.store.save_all(changed, message=message)
        except FeatgraphError:
            self._restore(changed, snapshot)
            raise
        return removed + counterparts

    # --- traversal ------------------------------------------------------

    def _type_filter(self, relation_types: Optional[Iterable[str]]) -> Optional[Set[str]]:
        if not relation_types:
            return None
        return {self.config.resolve_type(name).name for name in relation_types}

    def traverse_descendants(
        self,
        start: Union[str, Feature],
        relation_types: Optional[Iterable[str]] = None,
        max_depth: int = 0,
    ) -> Iterator[Tuple[Feature, int]]:
        """Breadth-first walk along outgoing relationships.

        Yields ``(feature, depth)`` lazily; ``max_depth=0`` means unlimited.
        Each call starts from a fresh read of the graph.
        """
        return self._traverse(start, relation_types, max_depth, incoming=False)

    def traverse_ancestors(
        self,
        start: Union[str, Feature],
        relation_types: Optional[Iterable[str]] = None,
        max_depth: int = 0,
    ) -> Iterator[Tuple[Feature, int]]:
        """Breadth-first walk along incoming relationships."""
        return self._traverse(start, relation_types, max_depth, incoming=True)

    def _traverse(self, start, relation_types, max_depth, incoming):
        origin = self._feature(start)
        types = self._type_filter(relation_types)

        def walk() -> Iterator[Tuple[Feature, int]]:
            features = self._features()
            neighbours: Dict[str, List[str]] = {}
            for feature in features.values():
                for rel in feature.relationships:
                    if types is not None and rel.type not in types:
                        continue
                    if incoming:
                        neighbours.setdefault(rel.target_id, []).append(feature.id)
                    else:
                        neighbours.setdefault(feature.id, []).append(rel.target_id)

            visited = {origin.id}
            queue = deque([(origin.id, 0)])
            while queue:
                node, depth = queue.popleft()
                if max_depth and depth >= max_depth:
                    continue
                for nxt in neighbours.get(node, []):
                    if nxt in visited or nxt not in features:
                        continue
                    visited.add(nxt)
                    yield features[nxt], depth + 1
                    queue.append((nxt, depth + 1))

        return walk()

    def tree(
        self,
        start: Union[str, Feature],
        relation_type: Optional[str] = None,
        max_depth: int = 0,
    ) -> TreeNode:
        """Nested view of outgoing relationships of one type (default from config)."""
        origin = self._feature(start)
        type_name = self.config.resolve_type(
            relation_type or self.config.relationships.defaults.tree_relationship_type
        ).name
        features = self._features()

        def build(feature: Feature, depth: int, relationship: str, on_path: Set[str]) -> TreeNode:
            node = TreeNode(feature, depth, relationship)
            if feature.id in on_path:
                node.repeated = True
                return node
            if max_depth and depth >= max_depth:
                return node
            for rel in feature.relationships:
                if rel.type != type_name or rel.target_id not in features:
                    continue
                node.children.append(
                    build(features[rel.target_id], depth + 1, rel.type, on_path | {feature.id})
                )
            return node

        return build(origin, 0, "", set())

    def impacted(
        self,
        start: Union[str, Feature],
        categories: Optional[Iterable[str]] = None,
        max_depth: int = 0,
    ) -> List[ImpactedFeature]:
        """Features affected by a change to ``start``.

        Follows incoming relationships in the given categories (default:
        those with ``include_in_impact``) breadth-first.
        """
        origin = self._feature(start)
        included = set(categories) if categories is not None else set(self.config.impact_categories())
        features = self._features()

        reverse: Dict[str, List[Tuple[Feature, Relationship]]] = {}
        for feature in features.values():
            for rel in feature.relationships:
                if self.config.category_name_of(rel.type) in included:
                    reverse.setdefault(rel.target_id, []).append((feature, rel))

        result: List[ImpactedFeature] = []
        visited = {origin.id}
        queue = deque([(origin, 0, [origin.name])])
        while queue:
            current, depth, path = queue.popleft()
            if max_depth and depth >= max_depth:
                continue
            for dependent, rel in reverse.get(current.id, []):
                if dependent.id in visited:
                    continue
                visited.add(dependent.id)
                new_path = path + [dependent.name]
                warning = ""
                if self.check_version_constraint(rel, features) is ConstraintStatus.VIOLATED:
                    warning = (
                        f"version constraint {rel.version_constraint} not satisfied "
                        f"(latest closed: {current.highest_closed_version()})"
                    )
                result.append(ImpactedFeature(dependent, rel.type, depth + 1, new_path, warning))
                queue.append((dependent, depth + 1, new_path))
        return result

    # --- constraints ----------------------------------------------------

    def check_version_constraint(
        self,
        relationship: Relationship,
        features: Optional[Dict[str, Feature]] = None,
    ) -> ConstraintStatus:
        """Compare the target's highest closed version with the constraint."""
        if relationship.version_constraint is None:
            return ConstraintStatus.SATISFIED
        features = features if features is not None else self._features()
        target = features.get(relationship.target_id)
        if target is None:
            return ConstraintStatus.INDETERMINATE
        closed = target.highest_closed_version()
        if closed is None:
            return ConstraintStatus.INDETERMINATE
        if relationship.version_constraint.satisfied_by(closed):
            return ConstraintStatus.SATISFIED
        return ConstraintStatus.VIOLATED
