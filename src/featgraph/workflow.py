"""
Feature Workflow

Ties feature lifecycle transitions to branch operations:

    create   open version, new branch (branch-per-feature) or current branch
    update   edit fields on the owning branch (a rename moves the record)
    delete   drop the record and every relationship pointing at it
    commit   open -> in-progress for the features of the current branch
    merge    in-progress -> closed, merging the feature branch into the base
    continue / abort   finish or undo a merge that stopped on conflicts
    switch   check out the branch of a feature's active version
    reopen   closed -> new open version (and branch)

Closing is written into the merge commit on the base branch, never onto
the feature branch beforehand, so an aborted merge leaves the feature branch
and its records exactly as they were.
"""

import unicodedata
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional

import yaml

from featgraph.config import Config
from featgraph.exceptions import (
    ConflictsRemainingError,
    FeatgraphError,
    GitError,
    InvalidTransitionError,
    MergeInProgressError,
    NoMergeInProgressError,
    RemoteRefError,
    UncommittedChangesError,
    WorkflowError,
)
from featgraph.gitrepo import GitRepo
from featgraph.graph import RelationshipGraph
from featgraph.logging_config import get_logger
from featgraph.models import PRIORITIES, Feature, FeatureState
from featgraph.prompts import Prompter
from featgraph.scanner import FEATURES_DIR
from featgraph.search import SimilarFeature, find_similar
from featgraph.storage import FeatureStore, Scope, slugify

logger = get_logger(__name__)

MERGE_STATE_FILE = "MERGE_STATE.yml"
CREATE_NEW = "Create a new feature"
BRANCH_SLUG_LENGTH = 240


def branch_name_for(name: str, prefix: str = "feature/", suffix: str = "") -> str:
    """``feature/<slug>`` for a feature name, accents stripped."""
    ascii_name = (
        unicodedata.normalize("NFKD", name).encode("ascii", "ignore").decode("ascii")
    )
    slug = slugify(ascii_name, max_length=BRANCH_SLUG_LENGTH) or "unnamed"
    return f"{prefix}{slug}{suffix}"


# --- merge state -----------------------------------------------------------


@dataclass
class MergeState:
    """A featgraph merge waiting for --continue or --abort."""

    feature_branch: str
    base_branch: str
    feature_ids: List[str] = field(default_factory=list)
    keep_branch: bool = False
    squash: bool = False
    conflict_files: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "feature_branch": self.feature_branch,
            "base_branch": self.base_branch,
            "feature_ids": list(self.feature_ids),
            "keep_branch": self.keep_branch,
            "squash": self.squash,
            "conflict_files": list(self.conflict_files),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MergeState":
        return cls(
            feature_branch=data["feature_branch"],
            base_branch=data["base_branch"],
            feature_ids=list(data.get("feature_ids") or []),
            keep_branch=bool(data.get("keep_branch", False)),
            squash=bool(data.get("squash", False)),
            conflict_files=list(data.get("conflict_files") or []),
        )


def merge_state_path(repo: GitRepo) -> Path:
    return repo.git_dir / "featgraph" / MERGE_STATE_FILE


def load_merge_state(repo: GitRepo) -> Optional[MergeState]:
    path = merge_state_path(repo)
    if not path.exists():
        return None
    try:
        return MergeState.from_dict(yaml.safe_load(path.read_text(encoding="utf-8")) or {})
    except (yaml.YAMLError, KeyError, TypeError) as e:
        raise WorkflowError(
            f"Merge state at {path} is unreadable",
            remediation="Finish the merge with git, then delete the file",
            details=str(e),
        )


def save_merge_state(repo: GitRepo, state: MergeState) -> None:
    path = merge_state_path(repo)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(state.to_dict(), sort_keys=False), encoding="utf-8")


def clear_merge_state(repo: GitRepo) -> None:
    path = merge_state_path(repo)
    if path.exists():
        path.unlink()


# --- results ---------------------------------------------------------------


@dataclass
class CreateResult:
    feature: Feature
    branch: str
    created_branch: bool = False
    reused: bool = False


@dataclass
class UpdateResult:
    feature: Feature
    branch: str
    changed: List[str] = field(default_factory=list)
    renamed_references: List[Feature] = field(default_factory=list)


@dataclass
class DeleteResult:
    feature: Feature
    branch: str
    cleaned: List[Feature] = field(default_factory=list)


@dataclass
class CommitResult:
    branch: str
    features: List[Feature] = field(default_factory=list)
    changed_files: List[str] = field(default_factory=list)
    commit: Optional[str] = None
    nothing_to_commit: bool = False


@dataclass
class MergeResult:
    feature_branch: str = ""
    base_branch: str = ""
    closed: List[Feature] = field(default_factory=list)
    merge_performed: bool = False
    conflict_detected: bool = False
    conflicts: List[str] = field(default_factory=list)
    branch_deleted: bool = False
    aborted: bool = False
    commit: Optional[str] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class SwitchResult:
    feature: Feature
    branch: str
    switched: bool = False
    created_branch: bool = False


@dataclass
class FeatureStatus:
    feature: Feature
    state: FeatureState
    merge_in_progress: bool = False


@dataclass
class StatusReport:
    branch: Optional[str]
    mode: str
    features: List[FeatureStatus] = field(default_factory=list)
    merge_state: Optional[MergeState] = None
    uncommitted: List[str] = field(default_factory=list)


class WorkflowEngine:
    """Feature lifecycle operations on one repository."""

    def __init__(
        self,
        repo: GitRepo,
        store: FeatureStore,
        config: Optional[Config] = None,
        prompter: Optional[Prompter] = None,
        search: Optional[Callable[..., List[SimilarFeature]]] = None,
    ):
        self.repo = repo
        self.store = store
        self.config = config or store.config
        self.prompter = prompter or Prompter()
        self.find_similar = search or find_similar
        self.graph = RelationshipGraph(store, self.config)

    # --- helpers --------------------------------------------------------

    def _require_branch(self) -> str:
        branch = self.repo.current_branch()
        if branch is None:
            raise GitError("HEAD is detached", remediation="Check out a branch first")
        return branch

    def _require_no_merge(self) -> None:
        state = load_merge_state(self.repo)
        if state is not None:
            raise MergeInProgressError(state.feature_branch)

    def _require_clean(self) -> None:
        changed = self.repo.changed_files(include_untracked=False)
        if changed:
            raise UncommittedChangesError(changed)

    def _branch_features(self, branch: str) -> List[Feature]:
        """Non-closed features in the working tree attributed to ``branch``.

        Versions with no branch (trunk-based and shared-branch work) belong to
        whichever branch holds them. Falls back to the most recently modified
        non-closed feature when none matches.
        """
        active = [f for f in self.store.load_current_branch() if not f.is_closed]
        attributed = [f for f in active if f.current_version.branch in (branch, "")]
        if attributed or not active:
            return attributed
        return [max(active, key=lambda f: f.modified_at)]

    # --- create ---------------------------------------------------------

    def create(
        self,
        name: str,
        description: str = "",
        tags: Iterable[str] = (),
        category: str = "",
        priority: str = "",
        type: str = "",
        same_branch: bool = False,
        parent: Optional[str] = None,
    ) -> CreateResult:
        """Create a feature with Version 1 in the open state.

        Raises:
            WorkflowError: Shared branches are disallowed, or the feature
                branch already exists.
        """
        self._require_no_merge()
        name = name.strip()
        if not name:
            raise WorkflowError("Feature name cannot be empty")

        existing = self._ask_reuse(name)
        if existing is not None:
            branch = self.store.owning_branch(existing)
            return CreateResult(existing, branch, reused=True)

        parent_feature = self.store.find_by_name_or_id(parent) if parent else None
        parent_branch = self.store.owning_branch(parent_feature) if parent_feature else None
        current = self._require_branch()
        trunk = self.config.trunk_based
        if same_branch and not trunk and not self.config.workflow.allow_shared_branches:
            raise WorkflowError(
                "Shared branches are disabled",
                remediation="Set workflow.allow_shared_branches: true or drop --same-branch",
            )

        version_branch = ""
        created_branch = False
        target = current
        if not trunk and not same_branch:
            version_branch = branch_name_for(name, self.config.workflow.branch_prefix)
            if self.repo.branch_exists(version_branch):
                raise WorkflowError(
                    f"Branch '{version_branch}' already exists",
                    remediation=f"Switch to it with 'featgraph switch \"{name}\"' or pick another name",
                )
            self.repo.checkout(version_branch, create=True)
            created_branch = True
            target = version_branch

        try:
            feature = Feature.create(
                name,
                branch=version_branch,
                description=description,
                tags=list(tags),
                category=category,
                priority=priority or self.config.default_priority,
                type=type,
            )
        except ValueError as e:
            self._undo_branch(current, version_branch, created_branch)
            raise WorkflowError(str(e))

        records = [feature]
        branches = {feature.id: target}
        try:
            if parent_feature is not None:
                self.graph.link(feature, parent_feature, "contained-by", save=False)
                records.append(parent_feature)
                branches[parent_feature.id] = parent_branch
            self.store.save_all(records, message=f"featgraph: create {name}", branches=branches)
        except FeatgraphError:
            self.store.invalidate()
            self._undo_branch(current, version_branch, created_branch)
            raise
        logger.info("Created feature %s on %s", name, target)
        return CreateResult(feature, target, created_branch=created_branch)

    def _undo_branch(self, previous: str, branch: str, created: bool) -> None:
        if not created:
            return
        try:
            self.repo.checkout(previous)
            self.repo.delete_branch(branch, force=True)
        except GitError as e:
            logger.warning("Could not remove branch %s: %s", branch, e.message)
        self.store.invalidate()

    def _ask_reuse(self, name: str) -> Optional[Feature]:
        """Offer existing features with the same or a similar name."""
        features = self.store.load_all_branches()
        exact = self.store.find_by_name(name)
        similar = [
            match.feature for match in self.find_similar(name, features, self.config.feature_search)
            if match.feature not in exact
        ]
        candidates = exact + similar
        if not candidates:
            return None

        labels = {
            f"Use existing: {f.name} ({f.id[:8]}, {f.state.value})": f for f in candidates
        }
        choices = [CREATE_NEW] + list(labels)
        default = list(labels)[0] if exact else CREATE_NEW
        answer = self.prompter.choose(
            f"Features similar to '{name}' already exist.", choices, default=default
        )
        return labels.get(answer)

    # --- update / delete ------------------------------------------------

    def update(
        self,
        identifier: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        priority: Optional[str] = None,
        type: Optional[str] = None,
        category: Optional[str] = None,
        tags: Optional[Iterable[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> UpdateResult:
        """Edit a feature's fields on the branch that owns it.

        A new name moves the record to a matching filename and refreshes the
        ``target_name`` of relationships that point at the feature.

        Raises:
            WorkflowError: Nothing to change, an empty name or a bad priority.
        """
        self._require_no_merge()
        fields = {
            key: value
            for key, value in (
                ("description", description),
                ("priority", priority),
                ("type", type),
                ("category", category),
            )
            if value is not None
        }
        if name is not None:
            name = name.strip()
            if not name:
                raise WorkflowError("Feature name cannot be empty")
            fields["name"] = name
        if not fields and tags is None and not metadata:
            raise WorkflowError(
                "No updates specified",
                remediation="Pass at least one of --name, --description, --priority, --type, --category, --tag, --meta",
            )
        if priority and priority not in PRIORITIES:
            raise WorkflowError(f"Invalid priority '{priority}' (must be: {', '.join(PRIORITIES)})")

        feature = self.store.find_by_name_or_id(identifier, Scope.CROSS_BRANCH)
        records = [feature]
        if name is not None and name != feature.name:
            for other in self.store.load_all_branches():
                if other.id != feature.id and other.find_relationships(None, feature.id):
                    records.append(other)
        snapshot = self.store.snapshot(records)

        changed = sorted(key for key, value in fields.items() if getattr(feature, key) != value)
        for key in changed:
            setattr(feature, key, fields[key])
        if tags is not None:
            tags = sorted(set(tags))
            if tags != feature.tags:
                feature.tags = tags
                changed.append("tags")
        if metadata:
            feature.metadata.update(metadata)
            changed.append("metadata")
        if not changed:
            return UpdateResult(feature, self.store.owning_branch(feature))

        feature.touch()
        for other in records[1:]:
            for rel in other.find_relationships(None, feature.id):
                rel.target_name = feature.name
            other.touch()

        try:
            branches = self.store.save_all(records, message=f"featgraph: update {feature.name}")
        except FeatgraphError:
            for record in records:
                record.__dict__.update(snapshot[record.id].__dict__)
            raise
        logger.info("Updated %s (%s)", feature.name, ", ".join(changed))
        return UpdateResult(feature, branches[0], changed=changed, renamed_references=records[1:])

    def delete(self, identifier: str) -> DeleteResult:
        """Remove a feature record and every relationship pointing at it."""
        self._require_no_merge()
        feature = self.store.find_by_name_or_id(identifier, Scope.CROSS_BRANCH)
        branch = self.store.owning_branch(feature)
        referrers = [
            other for other in self.store.load_all_branches()
            if other.id != feature.id and other.find_relationships(None, feature.id)
        ]
        snapshot = self.store.snapshot(referrers)

        if referrers:
            for other in referrers:
                other.remove_relationships(None, feature.id)
            self.store.save_all(referrers, message=f"featgraph: drop relationships to {feature.name}")
        try:
            self.store.delete(feature, message=f"featgraph: delete {feature.name}")
        except FeatgraphError:
            if referrers:
                for other in referrers:
                    other.__dict__.update(snapshot[other.id].__dict__)
                    other.touch()
                self.store.invalidate()
                self.store.save_all(referrers, message=f"featgraph: restore relationships to {feature.name}")
            raise
        logger.info("Deleted %s from %s", feature.name, branch)
        return DeleteResult(feature, branch, cleaned=referrers)

    # --- commit ---------------------------------------------------------

    def commit(self, message: Optional[str] = None, author: Optional[str] = None, link_files: bool = False) -> CommitResult:
        """Commit all changes and move the branch's open features to in-progress."""
        self._require_no_merge()
        branch = self._require_branch()
        changed = self.repo.changed_files()
        if not changed:
            return CommitResult(branch, changed_files=[], nothing_to_commit=True)

        features = self._branch_features(branch)
        if not features:
            raise WorkflowError(
                "No active feature on this branch",
                remediation="Create one with 'featgraph create <name>'",
            )

        if link_files:
            primary = features[0]
            for path in changed:
                if not path.startswith(".featgraph/") and path not in primary.files:
                    primary.files.append(path)

        for feature in features:
            feature.record_commit()
            self.store.save(feature, target_branch=branch, commit=False)

        if message is None:
            primary = features[0]
            message = self.config.render_commit_message(primary.name, primary.id)
        self.repo.add_all()
        sha = self.repo.commit(message, author=author)
        self.store.invalidate()
        return CommitResult(branch, features, changed, sha)

    # --- merge ----------------------------------------------------------

    def merge(
        self,
        identifier: Optional[str] = None,
        squash: bool = False,
        keep_branch: bool = False,
        base_branch: Optional[str] = None,
    ) -> MergeResult:
        """Close features by merging their branch into the base branch.

        On conflicts nothing is closed; the merge is left for
        :meth:`merge_continue` or :meth:`merge_abort`.
        """
        self._require_no_merge()
        base = base_branch or self.config.workflow.base_branch
        current = self._require_branch()

        if identifier:
            feature = self.store.find_by_name_or_id(identifier, Scope.CROSS_BRANCH)
            if feature.is_closed:
                raise InvalidTransitionError(f"Feature '{feature.name}' is already closed")
            version_branch = feature.current_version.branch
            if version_branch and self.repo.branch_exists(version_branch):
                feature_branch = version_branch
            else:
                feature_branch = self.store.owning_branch(feature)
            features = [feature]
        else:
            feature_branch = current
            features = self._branch_features(current)
        if not features:
            raise WorkflowError("No open features found to close")

        result = MergeResult(feature_branch=feature_branch, base_branch=base)
        if self.config.trunk_based or feature_branch == base:
            for feature in features:
                feature.close()
            names = ", ".join(f.name for f in features)
            self.store.save_all(features, message=f"featgraph: close {names}")
            result.closed = features
            return result

        if not self.repo.branch_exists(base):
            raise WorkflowError(
                f"Base branch '{base}' does not exist",
                remediation=f"Set workflow.base_branch in .featgraph/config.yml or create it with 'git branch {base}'",
            )
        self._require_clean()

        state = MergeState(
            feature_branch=feature_branch,
            base_branch=base,
            feature_ids=[f.id for f in features],
            keep_branch=keep_branch,
            squash=squash,
        )
        if current != base:
            self.repo.checkout(base)
        try:
            outcome = self.repo.merge(feature_branch, squash=squash)
        except GitError:
            if current != base:
                self.repo.checkout(current)
            self.store.invalidate()
            raise
        if not outcome.clean:
            state.conflict_files = outcome.conflicts
            save_merge_state(self.repo, state)
            self.store.invalidate()
            logger.warning("Merge of %s stopped on %d conflict(s)", feature_branch, len(outcome.conflicts))
            result.conflict_detected = True
            result.conflicts = outcome.conflicts
            return result

        return self._finish_merge(state, result)

    def _finish_merge(self, state: MergeState, result: MergeResult) -> MergeResult:
        """Close the merged features on the base branch and commit once."""
        self.store.invalidate()
        in_tree = {f.id: f for f in self.store.load_current_branch()}
        closed = []
        for feature_id in state.feature_ids:
            feature = in_tree.get(feature_id)
            if feature is None:
                feature = self.store.get(feature_id, Scope.CROSS_BRANCH)
            if not feature.is_closed:
                feature.close()
            closed.append(feature)

        for feature in closed:
            self.store.save(feature, target_branch=state.base_branch, commit=False)
        self.repo.add([FEATURES_DIR])

        names = ", ".join(f.name for f in closed)
        kind = "Squash merge" if state.squash else "Merge"
        result.commit = self.repo.commit(f"{kind} branch '{state.feature_branch}' (close {names})")
        result.merge_performed = True
        result.closed = closed

        if not state.keep_branch:
            try:
                self.repo.delete_branch(state.feature_branch, force=state.squash)
                result.branch_deleted = True
            except GitError as e:
                message = f"Could not delete branch '{state.feature_branch}': {e.stderr or e.message}"
                logger.warning(message)
                result.warnings.append(message)

        clear_merge_state(self.repo)
        self.store.invalidate()
        return result

    def merge_continue(self) -> MergeResult:
        """Finish a merge after its conflicts were resolved and staged.

        Raises:
            NoMergeInProgressError: Nothing to continue.
            ConflictsRemainingError: Unresolved paths remain (listed).
        """
        state = load_merge_state(self.repo)
        if state is None:
            raise NoMergeInProgressError()
        conflicts = self.repo.conflicted_files()
        if conflicts:
            raise ConflictsRemainingError(conflicts)
        if self.repo.current_branch() != state.base_branch:
            raise WorkflowError(
                f"Expected to be on '{state.base_branch}' to finish the merge",
                remediation=f"git checkout {state.base_branch}",
            )
        result = MergeResult(feature_branch=state.feature_branch, base_branch=state.base_branch)
        return self._finish_merge(state, result)

    def merge_abort(self) -> MergeResult:
        """Undo a stopped merge and return to the feature branch."""
        state = load_merge_state(self.repo)
        if state is None:
            raise NoMergeInProgressError()
        if self.repo.is_merging() or state.squash:
            self.repo.abort_merge()
        if self.repo.branch_exists(state.feature_branch):
            self.repo.checkout(state.feature_branch)
        clear_merge_state(self.repo)
        self.store.invalidate()
        return MergeResult(
            feature_branch=state.feature_branch,
            base_branch=state.base_branch,
            aborted=True,
        )

    # --- switch / reopen ------------------------------------------------

    def switch(self, identifier: str) -> SwitchResult:
        """Check out the branch of a feature's active version.

        Raises:
            InvalidTransitionError: The feature is closed.
            UncommittedChangesError: The working tree is dirty.
            RemoteRefError: The feature only exists on a remote-tracking branch.
        """
        feature = self.store.find_by_name_or_id(identifier, Scope.CROSS_BRANCH)
        if feature.is_closed:
            raise InvalidTransitionError(
                f"Feature '{feature.name}' is closed",
                remediation=f"Reopen it with 'featgraph reopen \"{feature.name}\"'",
            )
        if self.config.trunk_based:
            return SwitchResult(feature, self.repo.current_branch() or "")

        branch = feature.current_version.branch
        start = None
        if not branch or not self.repo.branch_exists(branch):
            location = self.store.discover().location_of(feature.id)
            if location is not None and location.is_remote:
                local = self.store.owning_branch(feature)
                branch = branch or local
                if not self.repo.branch_exists(branch):
                    raise RemoteRefError(location.ref, feature.name)
            elif not branch:
                branch = self.store.owning_branch(feature)
            elif location is not None:
                start = location.ref

        if branch == self.repo.current_branch():
            return SwitchResult(feature, branch)

        self._require_clean()
        created = not self.repo.branch_exists(branch)
        if created:
            self.repo.create_branch(branch, start)
        self.repo.checkout(branch)
        self.store.invalidate()
        return SwitchResult(feature, branch, switched=True, created_branch=created)

    def reopen(self, identifier: str, notes: str = "") -> CreateResult:
        """Start a new open version of a closed feature."""
        self._require_no_merge()
        feature = self.store.find_by_name_or_id(identifier, Scope.CROSS_BRANCH)
        if not feature.is_closed:
            raise InvalidTransitionError(
                f"Feature '{feature.name}' is {feature.state.value}; only closed features can be reopened"
            )
        number = feature.current_version.number + 1
        notes = notes or f"Reopened from version {number - 1}"

        if self.config.trunk_based:
            feature.reopen(notes=notes)
            branch = self.store.save(feature, message=f"featgraph: reopen {feature.name} v{number}")
            return CreateResult(feature, branch)

        current = self._require_branch()
        branch = branch_name_for(feature.name, self.config.workflow.branch_prefix, suffix=f"-v{number}")
        if self.repo.branch_exists(branch):
            raise WorkflowError(f"Branch '{branch}' already exists")
        self.repo.checkout(branch, create=True)
        try:
            feature.reopen(branch=branch, notes=notes)
            self.store.save(feature, target_branch=branch, message=f"featgraph: reopen {feature.name} v{number}")
        except FeatgraphError:
            self._undo_branch(current, branch, True)
            raise
        return CreateResult(feature, branch, created_branch=True)

    # --- status ---------------------------------------------------------

    def status(self) -> StatusReport:
        branch = self.repo.current_branch()
        state = load_merge_state(self.repo)
        pending = set(state.feature_ids) if state else set()
        report = StatusReport(
            branch=branch,
            mode=self.config.workflow.mode,
            merge_state=state,
            uncommitted=self.repo.changed_files(),
        )
        for feature in sorted(self.store.load_current_branch(), key=lambda f: f.name.lower()):
            report.features.append(
                FeatureStatus(feature, feature.state, merge_in_progress=feature.id in pending)
            )
        return report
