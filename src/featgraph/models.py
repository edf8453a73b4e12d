"""
Feature Records

Dataclasses for features, their versions and their relationships, plus the
YAML-friendly dict conversion used by the feature store.

Record Structure:
    id: 3f0c9a52-...
    name: "User Login"
    description: ""
    tags: [auth]
    category: ""
    priority: high
    type: ""
    created_at: "2026-01-10T09:00:00+00:00"
    modified_at: "2026-01-11T14:30:00+00:00"
    closed_at: null
    versions:
      - number: 1
        branch: feature/user-login
        created_at: ...
        modified_at: ...
    relationships:
      - id: 9b1e...
        type: depends-on
        target_id: 7d22...
        target_name: "Session Store"
        version_constraint: {operator: ">=", version: 2}
        created_at: ...
"""

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from featgraph.exceptions import DuplicateRelationshipError, InvalidTransitionError

PRIORITIES = ("low", "medium", "high", "critical")

_EPSILON = timedelta(microseconds=1)


class FeatureState(str, Enum):
    """Lifecycle state of a feature's current version."""

    OPEN = "open"
    IN_PROGRESS = "in-progress"
    CLOSED = "closed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def parse_time(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp. Naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        parsed = datetime.fromisoformat(text)
    else:
        raise ValueError(f"not a timestamp: {value!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def format_time(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.astimezone(timezone.utc).isoformat()


def later_than(previous: Optional[datetime], now: Optional[datetime] = None) -> datetime:
    """A timestamp strictly after ``previous`` (the current time when possible)."""
    now = now or utcnow()
    if previous is not None and now <= previous:
        return previous + _EPSILON
    return now


class ConstraintStatus(str, Enum):
    """Result of checking a relationship's version constraint."""

    SATISFIED = "satisfied"
    VIOLATED = "violated"
    INDETERMINATE = "indeterminate"


_CONSTRAINT_RE = re.compile(r"^\s*(>=|<=|=|>|<)?\s*v?(\d+)\s*$")


@dataclass
class VersionConstraint:
    """A comparator and version number a relationship target must meet."""

    operator: str
    version: int
    note: str = ""

    OPERATORS = ("=", ">", "<", ">=", "<=")

    def __post_init__(self):
        if self.operator not in self.OPERATORS:
            raise ValueError(f"invalid constraint operator: {self.operator!r}")
        if int(self.version) < 1:
            raise ValueError("constraint version must be a positive integer")
        self.version = int(self.version)

    @classmethod
    def parse(cls, text: str, note: str = "") -> "VersionConstraint":
        """Parse strings such as ``>=2`` or ``3`` (meaning ``=3``)."""
        match = _CONSTRAINT_RE.match(text or "")
        if not match:
            raise ValueError(f"invalid version constraint: {text!r}")
        return cls(operator=match.group(1) or "=", version=int(match.group(2)), note=note)

    def satisfied_by(self, version: int) -> bool:
        if self.operator == "=":
            return version == self.version
        if self.operator == ">":
            return version > self.version
        if self.operator == "<":
            return version < self.version
        if self.operator == ">=":
            return version >= self.version
        return version <= self.version

    def __str__(self) -> str:
        return f"{self.operator}{self.version}"

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"operator": self.operator, "version": self.version}
        if self.note:
            result["note"] = self.note
        return result

    @classmethod
    def from_value(cls, data: Any) -> Optional["VersionConstraint"]:
        if data is None or data == "":
            return None
        if isinstance(data, str):
            return cls.parse(data)
        if isinstance(data, dict):
            return cls(
                operator=str(data.get("operator", "=")),
                version=int(data["version"]),
                note=data.get("note", "") or "",
            )
        raise ValueError(f"invalid version constraint: {data!r}")


@dataclass
class Relationship:
    """A typed edge stored on its source feature."""

    type: str
    target_id: str
    target_name: str = ""
    description: str = ""
    version_constraint: Optional[VersionConstraint] = None
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "target_id": self.target_id,
            "target_name": self.target_name,
        }
        if self.description:
            result["description"] = self.description
        if self.version_constraint:
            result["version_constraint"] = self.version_constraint.to_dict()
        result["created_at"] = format_time(self.created_at)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Relationship":
        if not data.get("type") or not data.get("target_id"):
            raise ValueError("relationship needs 'type' and 'target_id'")
        return cls(
            id=str(data.get("id") or new_id()),
            type=str(data["type"]),
            target_id=str(data["target_id"]),
            target_name=str(data.get("target_name") or ""),
            description=str(data.get("description") or ""),
            version_constraint=VersionConstraint.from_value(data.get("version_constraint")),
            created_at=parse_time(data.get("created_at")) or utcnow(),
        )


@dataclass
class Version:
    """One lifecycle of a feature."""

    number: int
    branch: str = ""
    created_at: datetime = field(default_factory=utcnow)
    modified_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    notes: str = ""

    def __post_init__(self):
        if self.modified_at is None:
            self.modified_at = self.created_at

    @property
    def state(self) -> FeatureState:
        if self.closed_at is not None:
            return FeatureState.CLOSED
        if self.modified_at > self.created_at:
            return FeatureState.IN_PROGRESS
        return FeatureState.OPEN

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "number": self.number,
            "branch": self.branch,
            "created_at": format_time(self.created_at),
            "modified_at": format_time(self.modified_at),
        }
        if self.closed_at:
            result["closed_at"] = format_time(self.closed_at)
        if self.notes:
            result["notes"] = self.notes
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Version":
        created = parse_time(data.get("created_at"))
        if created is None:
            raise ValueError("version needs 'created_at'")
        version = cls(
            number=int(data["number"]),
            branch=str(data.get("branch") or ""),
            created_at=created,
            modified_at=parse_time(data.get("modified_at")) or created,
            closed_at=parse_time(data.get("closed_at")),
            notes=str(data.get("notes") or ""),
        )
        if version.number < 1:
            raise ValueError(f"version number must be positive, got {version.number}")
        if version.modified_at < version.created_at:
            raise ValueError(f"version {version.number}: modified_at precedes created_at")
        if version.closed_at is not None and version.closed_at < version.modified_at:
            raise ValueError(f"version {version.number}: closed_at precedes modified_at")
        return version


@dataclass
class Feature:
    """A trackable unit of work."""

    name: str
    id: str = field(default_factory=new_id)
    description: str = ""
    tags: List[str] = field(default_factory=list)
    category: str = ""
    priority: str = ""
    type: str = ""
    created_at: datetime = field(default_factory=utcnow)
    modified_at: Optional[datetime] = None
    closed_at: Optional[datetime] = None
    versions: List[Version] = field(default_factory=list)
    relationships: List[Relationship] = field(default_factory=list)
    files: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.modified_at is None:
            self.modified_at = self.created_at
        self.tags = sorted(set(self.tags))
        if self.priority and self.priority not in PRIORITIES:
            raise ValueError(f"invalid priority {self.priority!r} (must be: {', '.join(PRIORITIES)})")
        if not self.versions:
            self.versions = [Version(number=1, created_at=self.created_at)]

    # --- lifecycle ------------------------------------------------------

    @classmethod
    def create(
        cls,
        name: str,
        branch: str = "",
        now: Optional[datetime] = None,
        **fields: Any,
    ) -> "Feature":
        """A new feature with Version 1 in the open state."""
        now = now or utcnow()
        return cls(
            name=name,
            created_at=now,
            modified_at=now,
            versions=[Version(number=1, branch=branch, created_at=now, modified_at=now)],
            **fields,
        )

    @property
    def current_version(self) -> Version:
        return max(self.versions, key=lambda v: v.number)

    @property
    def state(self) -> FeatureState:
        return self.current_version.state

    @property
    def is_closed(self) -> bool:
        return self.state is FeatureState.CLOSED

    def touch(self, now: Optional[datetime] = None) -> datetime:
        """Bump ``modified_at``; every stored mutation calls this."""
        self.modified_at = later_than(self.modified_at, now)
        return self.modified_at

    def record_commit(self, now: Optional[datetime] = None) -> None:
        """Commit-transition: moves an open version to in-progress."""
        version = self.current_version
        if version.closed_at is not None:
            raise InvalidTransitionError(
                f"Feature '{self.name}' version {version.number} is closed",
                remediation="Reopen the feature to start a new version",
            )
        stamp = later_than(max(version.modified_at, version.created_at), now)
        version.modified_at = stamp
        self.modified_at = later_than(self.modified_at, stamp)

    def close(self, now: Optional[datetime] = None) -> None:
        version = self.current_version
        if version.closed_at is not None:
            raise InvalidTransitionError(f"Feature '{self.name}' is already closed")
        stamp = later_than(max(self.modified_at, version.modified_at), now)
        version.closed_at = stamp
        self.closed_at = stamp
        self.modified_at = stamp

    def reopen(self, branch: str = "", notes: str = "", now: Optional[datetime] = None) -> Version:
        """Start Version N+1 in the open state."""
        if not self.is_closed:
            raise InvalidTransitionError(
                f"Feature '{self.name}' is {self.state.value}; only closed features can be reopened",
            )
        stamp = later_than(self.modified_at, now)
        version = Version(
            number=self.current_version.number + 1,
            branch=branch,
            created_at=stamp,
            modified_at=stamp,
            notes=notes,
        )
        self.versions.append(version)
        self.closed_at = None
        self.modified_at = stamp
        return version

    def highest_closed_version(self) -> Optional[int]:
        closed = [v.number for v in self.versions if v.closed_at is not None]
        return max(closed) if closed else None

    # --- relationships --------------------------------------------------

    def find_relationships(self, type_name: Optional[str] = None, target_id: Optional[str] = None) -> List[Relationship]:
        return [
            rel for rel in self.relationships
            if (type_name is None or rel.type == type_name)
            and (target_id is None or rel.target_id == target_id)
        ]

    def has_relationship(self, type_name: str, target_id: str) -> bool:
        return bool(self.find_relationships(type_name, target_id))

    def add_relationship(self, relationship: Relationship) -> None:
        if self.has_relationship(relationship.type, relationship.target_id):
            raise DuplicateRelationshipError(
                self.name, relationship.type, relationship.target_name or relationship.target_id
            )
        self.relationships.append(relationship)
        self.touch()

    def remove_relationships(self, type_name: Optional[str], target_id: str) -> List[Relationship]:
        """Remove matching relationships; returns what was removed."""
        removed = self.find_relationships(type_name, target_id)
        if removed:
            ids = {rel.id for rel in removed}
            self.relationships = [rel for rel in self.relationships if rel.id not in ids]
            self.touch()
        return removed

    # --- serialization --------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for YAML serialization."""
        result: Dict[str, Any] = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "tags": sorted(set(self.tags)),
            "category": self.category,
            "priority": self.priority,
            "type": self.type,
            "created_at": format_time(self.created_at),
            "modified_at": format_time(self.modified_at),
            "closed_at": format_time(self.closed_at),
            "versions": [v.to_dict() for v in sorted(self.versions, key=lambda v: v.number)],
            "relationships": [r.to_dict() for r in self.relationships],
        }
        if self.files:
            result["files"] = list(self.files)
        if self.metadata:
            result["metadata"] = dict(self.metadata)
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Feature":
        """Create from dictionary.

        Raises:
            ValueError, KeyError, TypeError: The record is structurally invalid.
        """
        if not isinstance(data, dict):
            raise ValueError("feature record must be a mapping")
        if not data.get("id"):
            raise ValueError("feature record has no 'id'")
        if not data.get("name"):
            raise ValueError("feature record has no 'name'")
        created = parse_time(data.get("created_at"))
        if created is None:
            raise ValueError("feature record has no 'created_at'")

        versions = [Version.from_dict(v) for v in data.get("versions") or []]
        if not versions:
            raise ValueError("feature record has no versions")
        numbers = [v.number for v in versions]
        if len(set(numbers)) != len(numbers):
            raise ValueError("feature record has duplicate version numbers")

        tags = data.get("tags") or []
        if isinstance(tags, str):
            tags = [tags]

        feature = cls(
            id=str(data["id"]),
            name=str(data["name"]),
            description=str(data.get("description") or ""),
            tags=[str(t) for t in tags],
            category=str(data.get("category") or ""),
            priority=str(data.get("priority") or ""),
            type=str(data.get("type") or ""),
            created_at=created,
            modified_at=parse_time(data.get("modified_at")) or created,
            closed_at=parse_time(data.get("closed_at")),
            versions=versions,
            relationships=[Relationship.from_dict(r) for r in data.get("relationships") or []],
            files=[str(f) for f in data.get("files") or []],
            metadata=dict(data.get("metadata") or {}),
        )
        if feature.closed_at is None and feature.current_version.closed_at is not None:
            feature.closed_at = feature.current_version.closed_at
        return feature
