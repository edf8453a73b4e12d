"""
featgraph Exceptions

Typed errors with remediation hints. Every error raised by the engine
derives from FeatgraphError so the CLI can render the message, details and
suggested fix uniformly and map the error family to an exit code.
"""

from typing import List, Optional, Sequence


class FeatgraphError(Exception):
    """Base exception for all featgraph errors."""

    def __init__(
        self,
        message: str,
        remediation: Optional[str] = None,
        details: Optional[str] = None
    ):
        """Initialize the error.

        Args:
            message: Human-readable error message
            remediation: Suggested fix for the user
            details: Technical details for debugging
        """
        super().__init__(message)
        self.message = message
        self.remediation = remediation
        self.details = details

    def __str__(self) -> str:
        parts = [self.message]
        if self.details:
            parts.append(f"Details: {self.details}")
        if self.remediation:
            parts.append(f"To fix: {self.remediation}")
        return "\n".join(parts)


# --- NotFound family -------------------------------------------------------


class NotFoundError(FeatgraphError):
    """A feature, type or other named thing could not be resolved."""


class FeatureNotFoundError(NotFoundError):
    """No feature matches the given id or name on any discoverable branch."""

    def __init__(
        self,
        query: str,
        suggestions: Optional[Sequence[str]] = None,
        remediation: Optional[str] = None,
        details: Optional[str] = None
    ):
        self.query = query
        self.suggestions = list(suggestions or [])
        if not remediation:
            if self.suggestions:
                remediation = "Did you mean: " + ", ".join(self.suggestions)
            else:
                remediation = "Run 'featgraph list' to see known features"
        super().__init__(f"Feature not found: {query}", remediation, details)


class AmbiguousNameError(NotFoundError):
    """Several features share the requested name."""

    def __init__(
        self,
        name: str,
        candidates: Optional[Sequence[str]] = None,
        remediation: Optional[str] = None,
        details: Optional[str] = None
    ):
        self.name = name
        self.candidates = list(candidates or [])
        if not remediation:
            remediation = "Use the feature id instead, or narrow the scope with --current"
        if not details and self.candidates:
            details = "Candidates: " + ", ".join(self.candidates)
        super().__init__(f"Multiple features named '{name}'", remediation, details)


class UnknownRelationshipTypeError(NotFoundError):
    """The relationship type is not defined in the configuration."""

    def __init__(
        self,
        type_name: str,
        known: Optional[Sequence[str]] = None,
        remediation: Optional[str] = None,
        details: Optional[str] = None
    ):
        self.type_name = type_name
        if not remediation and known:
            remediation = "Valid types: " + ", ".join(sorted(known))
        super().__init__(f"Unknown relationship type: {type_name}", remediation, details)


# --- Conflict family -------------------------------------------------------


class ConflictError(FeatgraphError):
    """The repository changed underneath us or a merge needs resolution."""


class WriteConflictError(ConflictError):
    """A branch moved between the time it was read and the time it was written."""

    retryable = True

    def __init__(
        self,
        ref: str,
        expected: Optional[str] = None,
        actual: Optional[str] = None,
        remediation: Optional[str] = None,
        details: Optional[str] = None
    ):
        self.ref = ref
        self.expected = expected
        self.actual = actual
        if not remediation:
            remediation = "Re-read the feature graph and retry the command"
        if not details and (expected or actual):
            details = f"expected tip {expected or '(none)'}, found {actual or '(none)'}"
        super().__init__(f"Branch '{ref}' changed while writing", remediation, details)


class MergeConflictError(ConflictError):
    """A merge stopped with unresolved paths."""

    def __init__(
        self,
        message: str,
        paths: Optional[List[str]] = None,
        remediation: Optional[str] = None,
        details: Optional[str] = None
    ):
        self.paths = list(paths or [])
        if not details and self.paths:
            details = "Unresolved: " + ", ".join(self.paths)
        if not remediation:
            remediation = (
                "Resolve the conflicts, stage them with 'git add', then run "
                "'featgraph merge --continue' (or 'featgraph merge --abort')"
            )
        super().__init__(message, remediation, details)


class ConflictsRemainingError(MergeConflictError):
    """merge --continue was requested while conflicts are still unresolved."""

    def __init__(self, paths: List[str], details: Optional[str] = None):
        super().__init__("Unresolved conflicts remain", paths=paths, details=details)


class MergeInProgressError(ConflictError):
    """Another featgraph merge is waiting for --continue or --abort."""

    def __init__(self, feature_branch: str = "", details: Optional[str] = None):
        self.feature_branch = feature_branch
        message = "A merge is already in progress"
        if feature_branch:
            message += f" for branch '{feature_branch}'"
        super().__init__(
            message,
            remediation="Run 'featgraph merge --continue' or 'featgraph merge --abort'",
            details=details,
        )


class NoMergeInProgressError(ConflictError):
    """--continue or --abort was requested without a pending merge."""

    def __init__(self):
        super().__init__(
            "No merge in progress",
            remediation="Start a merge with 'featgraph merge'",
        )


# --- InvariantViolation family ---------------------------------------------


class InvariantViolationError(FeatgraphError):
    """The requested change would break a graph invariant."""


class CycleError(InvariantViolationError):
    """Adding the relationship would close a cycle in a strict category."""

    def __init__(
        self,
        path: Sequence[str],
        type_name: str = "",
        category: str = "",
        remediation: Optional[str] = None
    ):
        self.path = list(path)
        self.type_name = type_name
        self.category = category
        rendered = " -> ".join(self.path)
        message = "Relationship would create a cycle"
        if category:
            message += f" in category '{category}'"
        if not remediation:
            remediation = "Remove one of the relationships on the path, or use a category that allows cycles"
        super().__init__(message, remediation, f"Cycle: {rendered}")


class SelfReferenceError(InvariantViolationError):
    """A feature cannot have a relationship with itself."""

    def __init__(self, feature_name: str):
        self.feature_name = feature_name
        super().__init__(f"Feature '{feature_name}' cannot reference itself")


class DuplicateRelationshipError(InvariantViolationError):
    """The same (type, target) relationship already exists on the source."""

    def __init__(self, source: str, type_name: str, target: str):
        self.source = source
        self.type_name = type_name
        self.target = target
        super().__init__(
            f"'{source}' already has a '{type_name}' relationship to '{target}'",
            remediation="Run 'featgraph unlink' first if you want to replace it",
        )


class InvalidTransitionError(InvariantViolationError):
    """The feature is not in a state that allows the requested transition."""


# --- Malformed / configuration / repository -------------------------------


class MalformedRecordError(FeatgraphError):
    """A feature record could not be parsed."""

    def __init__(
        self,
        message: str,
        path: Optional[str] = None,
        ref: Optional[str] = None,
        details: Optional[str] = None
    ):
        self.path = path
        self.ref = ref
        location = path or ""
        if ref:
            location = f"{ref}:{location}"
        if location:
            message = f"{message} ({location})"
        super().__init__(message, "Fix or remove the record, then run 'featgraph validate'", details)


class ConfigError(FeatgraphError):
    """Configuration-related errors."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        remediation: Optional[str] = None,
        details: Optional[str] = None
    ):
        self.config_key = config_key
        if not remediation and config_key:
            remediation = f"Check '{config_key}' in .featgraph/config.yml or .env"
        super().__init__(message, remediation, details)


class GitError(FeatgraphError):
    """A git command failed."""

    def __init__(
        self,
        message: str,
        command: Optional[Sequence[str]] = None,
        stderr: str = "",
        remediation: Optional[str] = None
    ):
        self.command = list(command or [])
        self.stderr = stderr.strip()
        super().__init__(message, remediation, self.stderr or None)


class NotARepositoryError(GitError):
    """The working directory is not inside a git repository."""

    def __init__(self, path: str = ""):
        super().__init__(
            f"Not a git repository: {path}" if path else "Not a git repository",
            remediation="Run 'git init' first, then 'featgraph init'",
        )


class UncommittedChangesError(GitError):
    """The working tree has changes that would be lost or mixed in."""

    def __init__(self, files: Optional[List[str]] = None):
        self.files = list(files or [])
        super().__init__(
            "Working tree has uncommitted changes",
            remediation="Commit with 'featgraph commit' or stash your changes first",
        )
        if self.files:
            self.details = ", ".join(self.files[:5]) + (
                f" and {len(self.files) - 5} more" if len(self.files) > 5 else ""
            )


class RemoteRefError(GitError):
    """The feature only exists on a remote-tracking branch."""

    def __init__(self, ref: str, feature_name: str = ""):
        self.ref = ref
        subject = f"Feature '{feature_name}'" if feature_name else "Feature"
        super().__init__(
            f"{subject} only exists on remote-tracking branch '{ref}'",
            remediation="Create a local branch from it first (git switch --track " + ref + ")",
        )


class WorkflowError(FeatgraphError):
    """The workflow configuration does not allow the requested operation."""


# Error code mapping for CLI exit codes (most specific first)
ERROR_CODES = {
    AmbiguousNameError: 11,
    NotFoundError: 10,
    WriteConflictError: 20,
    ConflictError: 21,
    InvariantViolationError: 30,
    MalformedRecordError: 40,
    ConfigError: 50,
    GitError: 60,
    WorkflowError: 60,
    FeatgraphError: 1,
}


def get_error_code(error: Exception) -> int:
    """Get the exit code for an error type."""
    for error_type, code in ERROR_CODES.items():
        if isinstance(error, error_type):
            return code
    return 1
