"""
Feature Store

Reads feature records from the working tree and from every branch, and
writes each record back to the branch that owns it.

Layout inside the repository:
    .featgraph/
        config.yml
        .gitignore              # ignores metadata/
        features/<slug>.yml     # one record per feature
        metadata/id_index.json  # id -> filename, working tree only

The ID index is a lookup hint for the checked-out branch. Cross-branch
state is always rebuilt from the refs themselves.
"""

import copy
import json
import os
import re
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

import yaml

from featgraph.config import CONFIG_FILE, METADATA_DIR, Config, write_default_config
from featgraph.exceptions import (
    AmbiguousNameError,
    FeatgraphError,
    FeatureNotFoundError,
    GitError,
    MalformedRecordError,
    RemoteRefError,
)
from featgraph.gitrepo import GitRepo
from featgraph.logging_config import get_logger
from featgraph.models import Feature
from featgraph.scanner import FEATURES_DIR, RECORD_SUFFIXES, RefBlob, RefScanner
from featgraph.search import find_similar

logger = get_logger(__name__)

INDEX_PATH = f"{METADATA_DIR}/metadata/id_index.json"
MAX_SLUG_LENGTH = 100

_SEPARATORS = re.compile(r"[\s._]+")
_NON_SLUG = re.compile(r"[^a-z0-9-]+")
_HYPHENS = re.compile(r"-+")


class Scope(str, Enum):
    """Where a lookup is allowed to look."""

    CURRENT_BRANCH = "current-branch"
    CROSS_BRANCH = "cross-branch"


def slugify(text: str, max_length: int = MAX_SLUG_LENGTH) -> str:
    slug = _SEPARATORS.sub("-", text.lower())
    slug = _NON_SLUG.sub("", slug)
    slug = _HYPHENS.sub("-", slug).strip("-")
    if len(slug) > max_length:
        slug = slug[:max_length].rstrip("-")
    return slug


def feature_filename(name: str, feature_id: str, existing: Iterable[str] = ()) -> str:
    """Filename for a record, suffixed with the id when the slug is taken."""
    taken = set(existing)
    slug = slugify(name) or f"feature-{feature_id[:8]}"
    for candidate in (f"{slug}.yml", f"{slug}-{feature_id[:8]}.yml"):
        if candidate not in taken:
            return candidate
    return f"{slug}-{feature_id}.yml"


def _filename_matches(filename: str, name: str, feature_id: str) -> bool:
    slug = slugify(name) or f"feature-{feature_id[:8]}"
    stem = filename.rsplit(".", 1)[0]
    return stem in (slug, f"{slug}-{feature_id[:8]}", f"{slug}-{feature_id}")


def dump_feature(feature: Feature) -> bytes:
    return yaml.safe_dump(feature.to_dict(), sort_keys=False, allow_unicode=True).encode("utf-8")


def parse_feature(data: bytes, path: Optional[str] = None, ref: Optional[str] = None) -> Feature:
    """Decode one record.

    Raises:
        MalformedRecordError: The bytes are not a valid feature record.
    """
    try:
        raw = yaml.safe_load(data.decode("utf-8"))
        return Feature.from_dict(raw)
    except (yaml.YAMLError, UnicodeDecodeError) as e:
        raise MalformedRecordError("Unparseable feature record", path=path, ref=ref, details=str(e))
    except (ValueError, KeyError, TypeError) as e:
        raise MalformedRecordError("Invalid feature record", path=path, ref=ref, details=str(e))


class IDIndex:
    """``id -> filename`` map for the working tree's features directory."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self.entries: Dict[str, str] = {}

    def load(self) -> "IDIndex":
        try:
            self.entries = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            self.entries = {}
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable id index %s: %s", self.path, e)
            self.entries = {}
        if not isinstance(self.entries, dict):
            self.entries = {}
        return self

    def save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        _atomic_write(self.path, json.dumps(self.entries, indent=2, sort_keys=True).encode("utf-8"))

    def get(self, feature_id: str) -> Optional[str]:
        return self.entries.get(feature_id)

    def set(self, feature_id: str, filename: str) -> None:
        self.entries[feature_id] = filename

    def delete(self, feature_id: str) -> None:
        self.entries.pop(feature_id, None)


def _atomic_write(path: Path, data: bytes) -> None:
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}-", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp, path)
    except OSError:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise


@dataclass
class FeatureLocation:
    """Where one copy of a feature record was found."""

    ref: str
    path: str
    tip: Optional[str] = None
    is_remote: bool = False
    in_worktree: bool = False

    def describe(self) -> str:
        where = "working tree" if self.in_worktree else self.ref
        return f"{where}:{self.path}"


@dataclass
class MalformedRecord:
    ref: str
    path: str
    error: MalformedRecordError


@dataclass
class Divergence:
    """Copies of one feature id whose content cannot be reconciled."""

    feature_id: str
    name: str
    locations: List[FeatureLocation]


@dataclass
class Discovery:
    """The unified cross-branch view built for one command."""

    features: Dict[str, Feature] = field(default_factory=dict)
    locations: Dict[str, List[FeatureLocation]] = field(default_factory=dict)
    malformed: List[MalformedRecord] = field(default_factory=list)
    divergences: List[Divergence] = field(default_factory=list)
    current_branch: Optional[str] = None

    def location_of(self, feature_id: str) -> Optional[FeatureLocation]:
        """The location the winning copy came from."""
        found = self.locations.get(feature_id)
        return found[0] if found else None

    def location_on(self, feature_id: str, ref: str) -> Optional[FeatureLocation]:
        for location in self.locations.get(feature_id, []):
            if location.ref == ref and not location.is_remote:
                return location
        return None


def _covers(a: Feature, b: Feature) -> bool:
    """True when ``a`` already holds every relationship and version of ``b``."""
    a_rels = {rel.id for rel in a.relationships}
    b_rels = {rel.id for rel in b.relationships}
    a_versions = {v.number for v in a.versions}
    b_versions = {v.number for v in b.versions}
    return a_rels >= b_rels and a_versions >= b_versions


def _diverges(winner: Feature, other: Feature) -> bool:
    if winner.to_dict() == other.to_dict():
        return False
    if winner.modified_at == other.modified_at:
        return True
    return not (_covers(winner, other) or _covers(other, winner))


@dataclass
class _Write:
    branch: str
    old_tip: Optional[str]
    new_tip: Optional[str]


class FeatureStore:
    """Read and write feature records across branches."""

    def __init__(self, repo: GitRepo, config: Optional[Config] = None, scanner: Optional[RefScanner] = None):
        self.repo = repo
        self.config = config or Config.default()
        self.scanner = scanner or RefScanner(repo, FEATURES_DIR)
        self.index = IDIndex(repo.root / INDEX_PATH).load()
        self._discovery: Optional[Discovery] = None
        self._tips: Dict[str, Optional[str]] = {}

    @property
    def features_dir(self) -> Path:
        return self.repo.root / FEATURES_DIR

    @property
    def is_initialized(self) -> bool:
        return (self.repo.root / METADATA_DIR).is_dir()

    # --- setup ----------------------------------------------------------

    def initialize(self, overrides: Optional[dict] = None) -> List[str]:
        """Create the metadata directory; returns the repo paths written."""
        root = self.repo.root
        written = []
        self.features_dir.mkdir(parents=True, exist_ok=True)
        keep = self.features_dir / ".gitkeep"
        if not keep.exists():
            keep.touch()
        written.append(f"{FEATURES_DIR}/.gitkeep")

        config_file = root / METADATA_DIR / CONFIG_FILE
        if not config_file.exists():
            write_default_config(root, overrides)
        written.append(f"{METADATA_DIR}/{CONFIG_FILE}")

        gitignore = root / METADATA_DIR / ".gitignore"
        if not gitignore.exists():
            gitignore.write_text("# generated lookup data\nmetadata/\n", encoding="utf-8")
        written.append(f"{METADATA_DIR}/.gitignore")
        return written

    # --- reads ----------------------------------------------------------

    def _worktree_records(self) -> List[Tuple[str, bytes]]:
        if not self.features_dir.is_dir():
            return []
        records = []
        for path in sorted(self.features_dir.iterdir()):
            if path.is_file() and path.name.endswith(RECORD_SUFFIXES):
                records.append((f"{FEATURES_DIR}/{path.name}", path.read_bytes()))
        return records

    def load_current_branch(self) -> List[Feature]:
        """Features in the checked-out working tree; malformed files are skipped."""
        features = []
        changed = False
        for path, data in self._worktree_records():
            try:
                feature = parse_feature(data, path=path)
            except MalformedRecordError as e:
                logger.warning("Skipping %s", e.message)
                continue
            features.append(feature)
            filename = path.rsplit("/", 1)[-1]
            if self.index.get(feature.id) != filename:
                self.index.set(feature.id, filename)
                changed = True
        if changed:
            self._save_index()
        return features

    def discover(self, refresh: bool = False) -> Discovery:
        """Build (or reuse) the cross-branch view.

        The checked-out branch is read from the working tree so uncommitted
        records are visible; every other branch and remote-tracking branch is
        read from its committed tip.
        """
        if self._discovery is not None and not refresh:
            return self._discovery

        current = self.repo.current_branch()
        refs = self.scanner.list_refs()
        self._tips = {ref.name: ref.tip for ref in refs if not ref.is_remote}
        if current:
            self._tips[current] = self.repo.branch_tip(current)

        copies: Dict[str, List[Tuple[Feature, FeatureLocation]]] = {}
        discovery = Discovery(current_branch=current)

        def accept(data: bytes, location: FeatureLocation) -> None:
            try:
                feature = parse_feature(data, path=location.path, ref=location.ref)
            except MalformedRecordError as e:
                discovery.malformed.append(MalformedRecord(location.ref, location.path, e))
                return
            copies.setdefault(feature.id, []).append((feature, location))

        for path, data in self._worktree_records():
            accept(data, FeatureLocation(current or "HEAD", path, self._tips.get(current or ""), in_worktree=True))

        scanned = [ref for ref in refs if ref.is_remote or ref.name != current]
        for blob in self.scanner.scan(scanned):
            accept(blob.data, self._location_for(blob))

        for feature_id, found in copies.items():
            ranked = sorted(found, key=lambda item: self._rank(item[0], item[1]), reverse=True)
            winner, _ = ranked[0]
            discovery.features[feature_id] = winner
            discovery.locations[feature_id] = [location for _, location in ranked]
            diverging = [loc for other, loc in ranked[1:] if _diverges(winner, other)]
            if diverging:
                discovery.divergences.append(
                    Divergence(feature_id, winner.name, [ranked[0][1]] + diverging)
                )

        logger.debug(
            "Discovered %d feature(s) on %d ref(s)", len(discovery.features), len(refs)
        )
        self._discovery = discovery
        return discovery

    @staticmethod
    def _location_for(blob: RefBlob) -> FeatureLocation:
        return FeatureLocation(blob.ref, blob.path, blob.tip, is_remote=blob.is_remote)

    @staticmethod
    def _rank(feature: Feature, location: FeatureLocation):
        # Latest modification wins; ties prefer the working tree, then local refs.
        return (feature.modified_at, location.in_worktree, not location.is_remote)

    def invalidate(self) -> None:
        self._discovery = None

    def load_all_branches(self) -> List[Feature]:
        """Every feature discoverable on any branch, one copy per id."""
        discovery = self.discover()
        return sorted(discovery.features.values(), key=lambda f: (f.name.lower(), f.id))

    def list_features(self, scope: Scope = Scope.CROSS_BRANCH) -> List[Feature]:
        if scope is Scope.CURRENT_BRANCH:
            return sorted(self.load_current_branch(), key=lambda f: (f.name.lower(), f.id))
        return self.load_all_branches()

    def get(self, feature_id: str, scope: Scope = Scope.CROSS_BRANCH) -> Feature:
        for feature in self._candidates(scope):
            if feature.id == feature_id:
                return feature
        raise FeatureNotFoundError(feature_id)

    def _candidates(self, scope: Scope) -> List[Feature]:
        if scope is Scope.CURRENT_BRANCH:
            return self.load_current_branch()
        return list(self.discover().features.values())

    def find_by_name(self, name: str, scope: Scope = Scope.CROSS_BRANCH) -> List[Feature]:
        wanted = name.strip().lower()
        return [f for f in self._candidates(scope) if f.name.lower() == wanted]

    def find_by_name_or_id(self, query: str, scope: Scope = Scope.CROSS_BRANCH) -> Feature:
        """Resolve ``query`` as an id, a unique id prefix, or a name.

        Raises:
            FeatureNotFoundError: Nothing matches (suggestions attached).
            AmbiguousNameError: Several features share the name.
        """
        candidates = self._candidates(scope)
        query = query.strip()
        for feature in candidates:
            if feature.id == query:
                return feature

        named = [f for f in candidates if f.name.lower() == query.lower()]
        if len(named) == 1:
            return named[0]
        if len(named) > 1:
            raise AmbiguousNameError(query, [f"{f.name} ({f.id[:8]})" for f in named])

        if len(query) >= 4:
            prefixed = [f for f in candidates if f.id.startswith(query)]
            if len(prefixed) == 1:
                return prefixed[0]

        suggestions = [
            match.feature.name
            for match in find_similar(query, candidates, self.config.feature_search)
        ]
        raise FeatureNotFoundError(query, suggestions=suggestions)

    def owning_branch(self, feature: Feature) -> str:
        """Branch a feature's record is written to.

        The current version's branch if it still exists locally, otherwise
        the local branch the record was discovered on, otherwise the base
        branch.

        Raises:
            RemoteRefError: The record only exists on a remote-tracking branch.
        """
        branch = feature.current_version.branch
        if branch and self.repo.branch_exists(branch):
            return branch

        discovery = self.discover()
        locations = discovery.locations.get(feature.id, [])
        if not locations:
            return discovery.current_branch or self.config.workflow.base_branch
        winner = locations[0]
        if not winner.is_remote:
            return winner.ref
        for location in locations[1:]:
            if not location.is_remote:
                return location.ref
        raise RemoteRefError(winner.ref, feature.name)

    # --- writes ---------------------------------------------------------

    def save(
        self,
        feature: Feature,
        target_branch: Optional[str] = None,
        message: Optional[str] = None,
        commit: Optional[bool] = None,
    ) -> str:
        """Write one feature to its owning branch (or ``target_branch``)."""
        branch = target_branch or self.owning_branch(feature)
        self._write_groups({branch: [feature]}, message, commit)
        return branch

    def save_all(
        self,
        features: Iterable[Feature],
        message: Optional[str] = None,
        commit: Optional[bool] = None,
        branches: Optional[Dict[str, str]] = None,
    ) -> List[str]:
        """Write several features, one commit per owning branch.

        Other branches are written first; if any write fails, refs already
        moved by this call are put back before the error propagates.
        ``branches`` maps feature ids to a target branch for records that
        have no owning branch yet.
        """
        groups: Dict[str, List[Feature]] = {}
        seen = set()
        for feature in features:
            if feature.id in seen:
                continue
            seen.add(feature.id)
            branch = (branches or {}).get(feature.id) or self.owning_branch(feature)
            groups.setdefault(branch, []).append(feature)
        self._write_groups(groups, message, commit)
        return list(groups)

    def _write_groups(self, groups: Dict[str, List[Feature]], message: Optional[str], commit: Optional[bool]) -> None:
        current = self.repo.current_branch()
        message = message or self._default_message(groups)
        done: List[_Write] = []
        ordered = sorted(groups, key=lambda branch: branch == current)
        try:
            for branch in ordered:
                if branch == current:
                    self._write_worktree(groups[branch], message, commit)
                else:
                    done.append(self._write_branch(branch, groups[branch], message))
        except FeatgraphError:
            self._roll_back(done)
            self.invalidate()
            raise

    def _default_message(self, groups: Dict[str, List[Feature]]) -> str:
        features = [f for group in groups.values() for f in group]
        if len(features) == 1:
            return f"featgraph: update {features[0].name}"
        return "featgraph: update " + ", ".join(sorted(f.name for f in features))

    def _roll_back(self, writes: List[_Write]) -> None:
        for write in reversed(writes):
            ref = f"refs/heads/{write.branch}"
            result = self.repo.run("update-ref", ref, write.old_tip, write.new_tip, check=False)
            if result.returncode != 0:
                logger.error("Could not restore %s to %s", write.branch, write.old_tip[:8])
            else:
                self._tips[write.branch] = write.old_tip

    def _write_branch(self, branch: str, features: List[Feature], message: str) -> _Write:
        """Plumbing write onto a branch that is not checked out."""
        discovery = self.discover()
        if branch not in self._tips:
            self._tips[branch] = self.repo.branch_tip(branch)
        expected = self._tips[branch]
        if expected is None:
            raise GitError(f"Branch '{branch}' does not exist")

        existing = {
            entry.path.rsplit("/", 1)[-1]: entry.path
            for entry in self.repo.ls_tree(expected, FEATURES_DIR)
            if entry.type == "blob"
        }
        files: Dict[str, bytes] = {}
        deletions: List[str] = []
        for feature in features:
            location = discovery.location_on(feature.id, branch)
            current_path = location.path if location and not location.in_worktree else None
            if current_path is None:
                current_path = self._find_on_branch(expected, feature.id, existing)
            path = self._target_path(feature, current_path, existing)
            if current_path and current_path != path:
                deletions.append(current_path)
            files[path] = dump_feature(feature)
            existing[path.rsplit("/", 1)[-1]] = path

        new_tip = self.repo.commit_files_to_branch(branch, files, message, expected, deletions)
        self._tips[branch] = new_tip
        self._remember(branch, features, files, new_tip)
        return _Write(branch, expected, new_tip)

    def _find_on_branch(self, tip: str, feature_id: str, existing: Dict[str, str]) -> Optional[str]:
        for path in existing.values():
            if not path.endswith(RECORD_SUFFIXES):
                continue
            data = self.repo.show_file(tip, path)
            if data is None:
                continue
            try:
                if parse_feature(data).id == feature_id:
                    return path
            except MalformedRecordError:
                continue
        return None

    @staticmethod
    def _target_path(feature: Feature, current_path: Optional[str], existing: Dict[str, str]) -> str:
        if current_path:
            filename = current_path.rsplit("/", 1)[-1]
            if _filename_matches(filename, feature.name, feature.id):
                return current_path
        taken = [name for name in existing if f"{FEATURES_DIR}/{name}" != current_path]
        return f"{FEATURES_DIR}/{feature_filename(feature.name, feature.id, taken)}"

    def _remember(self, branch: str, features: List[Feature], files: Dict[str, bytes], tip: Optional[str]) -> None:
        """Keep the cached view in step with what was just written."""
        if self._discovery is None:
            return
        by_id = {}
        for path, data in files.items():
            by_id[parse_feature(data).id] = path
        for feature in features:
            self._discovery.features[feature.id] = feature
            locations = self._discovery.locations.setdefault(feature.id, [])
            fresh = FeatureLocation(
                branch, by_id[feature.id], tip,
                in_worktree=branch == self._discovery.current_branch,
            )
            locations[:] = [fresh] + [
                loc for loc in locations
                if loc.is_remote or loc.ref != branch
            ]

    def _write_worktree(self, features: List[Feature], message: str, commit: Optional[bool]) -> None:
        """Write records into the checked-out tree, committing them if asked."""
        if commit is None:
            commit = self.config.auto_commit
        self.features_dir.mkdir(parents=True, exist_ok=True)
        existing = {
            path.name: f"{FEATURES_DIR}/{path.name}"
            for path in self.features_dir.iterdir() if path.is_file()
        }

        backups: Dict[Path, Optional[bytes]] = {}
        touched: List[str] = []
        files: Dict[str, bytes] = {}
        try:
            for feature in features:
                current_path = self._worktree_path(feature.id)
                path = self._target_path(feature, current_path, existing)
                data = dump_feature(feature)
                target = self.repo.root / path
                backups.setdefault(target, target.read_bytes() if target.exists() else None)
                _atomic_write(target, data)
                touched.append(path)
                files[path] = data
                existing[target.name] = path
                if current_path and current_path != path:
                    old = self.repo.root / current_path
                    backups.setdefault(old, old.read_bytes() if old.exists() else None)
                    if old.exists():
                        old.unlink()
                    touched.append(current_path)
                self.index.set(feature.id, target.name)

            self._save_index()
            if commit:
                self._commit_paths(touched, message)
        except (OSError, FeatgraphError):
            for target, previous in backups.items():
                if previous is None:
                    if target.exists():
                        target.unlink()
                else:
                    _atomic_write(target, previous)
            self.index.load()
            raise

        current = self.repo.current_branch() or "HEAD"
        tip = self.repo.branch_tip(current) if commit else self._tips.get(current)
        self._tips[current] = tip
        self._remember(current, features, files, tip)

    def _commit_paths(self, paths: List[str], message: str) -> None:
        """Commit exactly ``paths``, leaving anything else staged untouched."""
        present = [path for path in paths if (self.repo.root / path).exists()]
        self.repo.add(present)
        paths = [path for path in paths if path in present or self._is_tracked(path)]
        if not paths:
            return
        if not self.repo.run("status", "--porcelain", "--", *paths).stdout.strip():
            return
        self.repo.commit(message, paths=paths)

    def _is_tracked(self, path: str) -> bool:
        return self.repo.run("ls-files", "--error-unmatch", "--", path, check=False).returncode == 0

    def _worktree_path(self, feature_id: str) -> Optional[str]:
        """Path of the working-tree record for ``feature_id``, via the index when it is right."""
        filename = self.index.get(feature_id)
        if filename:
            candidate = self.features_dir / filename
            if candidate.exists():
                try:
                    if parse_feature(candidate.read_bytes()).id == feature_id:
                        return f"{FEATURES_DIR}/{filename}"
                except MalformedRecordError:
                    pass
            logger.debug("Stale index entry for %s", feature_id)
        for path, data in self._worktree_records():
            try:
                if parse_feature(data).id == feature_id:
                    self.index.set(feature_id, path.rsplit("/", 1)[-1])
                    return path
            except MalformedRecordError:
                continue
        return None

    def _save_index(self) -> None:
        try:
            self.index.save()
        except OSError as e:
            logger.warning("Could not update id index: %s", e)

    def delete(self, feature: Feature, message: Optional[str] = None, commit: Optional[bool] = None) -> str:
        """Remove a feature record from its owning branch."""
        branch = self.owning_branch(feature)
        message = message or f"featgraph: delete {feature.name}"
        if commit is None:
            commit = self.config.auto_commit
        if branch == self.repo.current_branch():
            path = self._worktree_path(feature.id)
            if path is None:
                raise FeatureNotFoundError(feature.id)
            (self.repo.root / path).unlink()
            self.index.delete(feature.id)
            self._save_index()
            if commit:
                self._commit_paths([path], message)
        else:
            self.discover()
            expected = self._tips.get(branch) or self.repo.branch_tip(branch)
            existing = {
                entry.path.rsplit("/", 1)[-1]: entry.path
                for entry in self.repo.ls_tree(expected, FEATURES_DIR)
            }
            path = self._find_on_branch(expected, feature.id, existing)
            if path is None:
                raise FeatureNotFoundError(feature.id)
            self._tips[branch] = self.repo.commit_files_to_branch(branch, {}, message, expected, [path])
        self.invalidate()
        return branch

    def snapshot(self, features: Iterable[Feature]) -> Dict[str, Feature]:
        """Deep copies keyed by id, for restoring in-memory state after a failed write."""
        return {feature.id: copy.deepcopy(feature) for feature in features}
