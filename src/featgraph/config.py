"""
featgraph Configuration

Loads ``.featgraph/config.yml`` (and ``.env`` overrides) into an immutable
snapshot. The snapshot is built once per invocation and passed explicitly to
the graph engine, validator and workflow engine.

Usage:
    from featgraph.config import load_config

    config = load_config(repo_root)
    rel_type = config.resolve_type("requires")   # alias of depends-on
    category = config.category_of(rel_type)
"""

import copy
import os
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Tuple

import yaml
from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from featgraph.exceptions import ConfigError, UnknownRelationshipTypeError
from featgraph.logging_config import get_logger

logger = get_logger(__name__)

METADATA_DIR = ".featgraph"
CONFIG_FILE = "config.yml"

PRIORITIES = ("low", "medium", "high", "critical")
WORKFLOW_MODES = ("branch-per-feature", "trunk-based")
CYCLE_DETECTION_MODES = ("strict", "warn", "none")

DEFAULT_CONFIG: Dict[str, Any] = {
    "workflow": {
        "mode": "branch-per-feature",
        "base_branch": "main",
        "allow_shared_branches": True,
        "branch_prefix": "feature/",
    },
    "auto_commit": True,
    "commit_template": "feat: {title} ({id})",
    "default_priority": "",
    "feature_search": {
        "fuzzy_match": True,
        "min_similarity": 60.0,
        "max_suggestions": 5,
    },
    "relationships": {
        "system": {
            "allow_custom_types": True,
            "auto_create_inverse": True,
        },
        "categories": {
            "structural": {
                "description": "Dependencies that form system architecture",
                "allow_cycles": False,
                "cycle_detection": "strict",
                "include_in_impact": True,
            },
            "informational": {
                "description": "References and associations",
                "allow_cycles": True,
                "cycle_detection": "none",
                "include_in_impact": False,
            },
            "workflow": {
                "description": "Work ordering between features",
                "allow_cycles": False,
                "cycle_detection": "warn",
                "include_in_impact": True,
            },
            "compliance": {
                "description": "Regulatory and policy requirements",
                "allow_cycles": False,
                "cycle_detection": "strict",
                "include_in_impact": False,
            },
        },
        "types": {
            "depends-on": {
                "category": "structural",
                "inverse": "required-by",
                "description": "Feature requires another feature",
                "aliases": ["requires", "needs"],
            },
            "required-by": {
                "category": "structural",
                "inverse": "depends-on",
                "description": "Feature is needed by another feature",
            },
            "contains": {
                "category": "structural",
                "inverse": "contained-by",
                "description": "Feature contains a sub-feature",
            },
            "contained-by": {
                "category": "structural",
                "inverse": "contains",
                "description": "Feature is part of a larger feature",
            },
            "implements": {
                "category": "structural",
                "inverse": "implemented-by",
                "description": "Feature implements a specification",
            },
            "implemented-by": {
                "category": "structural",
                "inverse": "implements",
                "description": "Specification is implemented by a feature",
            },
            "replaces": {
                "category": "structural",
                "inverse": "replaced-by",
                "description": "Feature supersedes another feature",
            },
            "replaced-by": {
                "category": "structural",
                "inverse": "replaces",
                "description": "Feature is superseded by another feature",
            },
            "references": {
                "category": "informational",
                "inverse": "referenced-by",
                "description": "Feature mentions another feature",
            },
            "referenced-by": {
                "category": "informational",
                "inverse": "references",
                "description": "Feature is mentioned by another feature",
            },
            "related-to": {
                "category": "informational",
                "bidirectional": True,
                "description": "Features are related",
            },
            "conflicts-with": {
                "category": "informational",
                "bidirectional": True,
                "description": "Features cannot ship together",
            },
            "tested-by": {
                "category": "informational",
                "inverse": "tests",
                "description": "Feature is verified by another feature",
            },
            "tests": {
                "category": "informational",
                "inverse": "tested-by",
                "description": "Feature verifies another feature",
            },
            "blocks": {
                "category": "workflow",
                "inverse": "blocked-by",
                "description": "Feature must finish before another can start",
            },
            "blocked-by": {
                "category": "workflow",
                "inverse": "blocks",
                "description": "Feature waits for another feature",
            },
        },
        "defaults": {
            "relationship_category": "informational",
            "tree_relationship_type": "depends-on",
        },
    },
}


class CategoryConfig(BaseModel):
    """A policy grouping of relationship types."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = ""
    description: str = ""
    allow_cycles: bool = False
    cycle_detection: Literal["strict", "warn", "none"] = "strict"
    include_in_impact: bool = False

    @property
    def checks_cycles(self) -> bool:
        return not self.allow_cycles and self.cycle_detection != "none"


class RelationshipTypeConfig(BaseModel):
    """A relationship type definition."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    name: str = ""
    category: str
    inverse: Optional[str] = None
    bidirectional: bool = False
    description: str = ""
    aliases: Tuple[str, ...] = ()


class RelationshipSystem(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    allow_custom_types: bool = True
    auto_create_inverse: bool = True


class RelationshipDefaults(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    relationship_category: str = "informational"
    tree_relationship_type: str = "depends-on"


class RelationshipsConfig(BaseModel):
    """Relationship catalogue: categories, types and their defaults."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    system: RelationshipSystem = Field(default_factory=RelationshipSystem)
    categories: Dict[str, CategoryConfig] = Field(default_factory=dict)
    types: Dict[str, RelationshipTypeConfig] = Field(default_factory=dict)
    defaults: RelationshipDefaults = Field(default_factory=RelationshipDefaults)

    @model_validator(mode="before")
    @classmethod
    def _fill_names(cls, data: Any) -> Any:
        """Copy mapping keys into each entry's ``name``."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for key in ("categories", "types"):
            entries = data.get(key)
            if not isinstance(entries, dict):
                continue
            filled = {}
            for name, spec in entries.items():
                if spec is None:
                    spec = {}
                if isinstance(spec, dict):
                    spec = {**spec, "name": name}
                filled[name] = spec
            data[key] = filled
        return data

    @model_validator(mode="after")
    def _check_consistency(self) -> "RelationshipsConfig":
        defaults = self.defaults
        if defaults.tree_relationship_type and defaults.tree_relationship_type not in self.types:
            raise ValueError(
                f"defaults.tree_relationship_type '{defaults.tree_relationship_type}' "
                "is not a defined relationship type"
            )
        if defaults.relationship_category and defaults.relationship_category not in self.categories:
            raise ValueError(
                f"defaults.relationship_category '{defaults.relationship_category}' "
                "is not a defined category"
            )

        if not self.system.allow_custom_types:
            custom = sorted(set(self.types) - set(DEFAULT_CONFIG["relationships"]["types"]))
            if custom:
                raise ValueError(
                    f"custom relationship types {', '.join(custom)} are not allowed "
                    "(relationships.system.allow_custom_types is false)"
                )

        for name, type_def in self.types.items():
            if type_def.category not in self.categories:
                raise ValueError(
                    f"relationship type '{name}' references unknown category '{type_def.category}'"
                )
            if type_def.bidirectional and type_def.inverse:
                raise ValueError(
                    f"relationship type '{name}' is bidirectional but also defines "
                    f"inverse '{type_def.inverse}'"
                )
            if type_def.inverse:
                inverse = self.types.get(type_def.inverse)
                if inverse is None:
                    raise ValueError(
                        f"relationship type '{name}' specifies inverse "
                        f"'{type_def.inverse}' which is not defined"
                    )
                if inverse.inverse != name:
                    raise ValueError(
                        f"relationship type '{name}' has inverse '{type_def.inverse}', "
                        f"but the inverse of '{type_def.inverse}' is '{inverse.inverse}'"
                    )
                if inverse.category != type_def.category:
                    raise ValueError(
                        f"relationship types '{name}' and '{type_def.inverse}' "
                        "must share a category"
                    )

        seen_aliases: Dict[str, str] = {}
        for name, type_def in self.types.items():
            for alias in type_def.aliases:
                if alias in self.types:
                    raise ValueError(f"alias '{alias}' of '{name}' shadows a relationship type")
                if alias in seen_aliases:
                    raise ValueError(
                        f"alias '{alias}' is declared by both '{seen_aliases[alias]}' and '{name}'"
                    )
                seen_aliases[alias] = name

        for name, category in self.categories.items():
            if category.allow_cycles and category.cycle_detection != "none":
                raise ValueError(
                    f"category '{name}' has allow_cycles=true but cycle_detection="
                    f"'{category.cycle_detection}' (should be 'none')"
                )
        return self


class WorkflowConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    mode: Literal["branch-per-feature", "trunk-based"] = "branch-per-feature"
    base_branch: str = "main"
    allow_shared_branches: bool = True
    branch_prefix: str = "feature/"


class SearchConfig(BaseModel):
    model_config = ConfigDict(frozen=True, extra="ignore")

    fuzzy_match: bool = True
    min_similarity: float = Field(default=60.0, ge=0, le=100)
    max_suggestions: int = Field(default=5, ge=0)


class Config(BaseModel):
    """Immutable configuration snapshot for one invocation."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    workflow: WorkflowConfig = Field(default_factory=WorkflowConfig)
    auto_commit: bool = True
    commit_template: str = "feat: {title} ({id})"
    default_priority: str = ""
    feature_search: SearchConfig = Field(default_factory=SearchConfig)
    relationships: RelationshipsConfig = Field(default_factory=RelationshipsConfig)

    @model_validator(mode="after")
    def _check_priority(self) -> "Config":
        if self.default_priority and self.default_priority not in PRIORITIES:
            raise ValueError(
                f"default_priority '{self.default_priority}' is invalid "
                f"(must be: {', '.join(PRIORITIES)})"
            )
        return self

    @classmethod
    def default(cls) -> "Config":
        """The built-in configuration."""
        return cls.model_validate(copy.deepcopy(DEFAULT_CONFIG))

    @property
    def trunk_based(self) -> bool:
        return self.workflow.mode == "trunk-based"

    def resolve_type(self, name: str) -> RelationshipTypeConfig:
        """Look up a relationship type by name or alias."""
        types = self.relationships.types
        if name in types:
            return types[name]
        for type_def in types.values():
            if name in type_def.aliases:
                return type_def
        raise UnknownRelationshipTypeError(name, known=list(types))

    def has_type(self, name: str) -> bool:
        try:
            self.resolve_type(name)
        except UnknownRelationshipTypeError:
            return False
        return True

    def category_of(self, type_def: RelationshipTypeConfig) -> CategoryConfig:
        return self.relationships.categories[type_def.category]

    def category_name_of(self, type_name: str) -> str:
        """Category for a type name; unknown types fall back to the default category."""
        try:
            return self.resolve_type(type_name).category
        except UnknownRelationshipTypeError:
            return self.relationships.defaults.relationship_category

    def canonical_type(self, type_name: str) -> Tuple[str, bool]:
        """Normalize a type for graph membership.

        A type and its declared inverse describe one semantic edge. The
        lexicographically smaller name of the pair is canonical; an edge of
        the other type is reported as flipped.
        """
        type_def = self.resolve_type(type_name)
        if type_def.inverse:
            canonical = min(type_def.name, type_def.inverse)
            return canonical, canonical != type_def.name
        return type_def.name, False

    def impact_categories(self) -> List[str]:
        return [
            name for name, cat in self.relationships.categories.items()
            if cat.include_in_impact
        ]

    def render_commit_message(self, title: str, feature_id: str) -> str:
        return self.commit_template.replace("{title}", title).replace("{id}", feature_id)


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = dict(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _env_bool(value: str) -> bool:
    return value.strip().lower() in ("1", "true", "yes", "on")


def _apply_env_overrides(data: Dict[str, Any], env: Dict[str, Optional[str]]) -> Dict[str, Any]:
    workflow = dict(data.get("workflow") or {})
    if env.get("FEATGRAPH_MODE"):
        workflow["mode"] = env["FEATGRAPH_MODE"]
    if env.get("FEATGRAPH_BASE_BRANCH"):
        workflow["base_branch"] = env["FEATGRAPH_BASE_BRANCH"]
    data["workflow"] = workflow
    if env.get("FEATGRAPH_AUTO_COMMIT"):
        data["auto_commit"] = _env_bool(env["FEATGRAPH_AUTO_COMMIT"])
    return data


def config_path(root: Path) -> Path:
    return Path(root) / METADATA_DIR / CONFIG_FILE


def load_config(root: Optional[Path] = None, use_env: bool = True) -> Config:
    """Load the configuration snapshot for the repository at ``root``.

    Missing keys take their defaults. Relationship categories and types in
    the file are merged over the built-in catalogue. ``FEATGRAPH_*``
    variables (from the environment or ``<root>/.env``) override workflow
    settings.

    Raises:
        ConfigError: The file is unreadable or the result is inconsistent.
    """
    root = Path(root) if root else Path.cwd()
    data = copy.deepcopy(DEFAULT_CONFIG)

    path = config_path(root)
    if path.exists():
        try:
            loaded = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigError(f"Could not read {path}", details=str(e))
        if not isinstance(loaded, dict):
            raise ConfigError(f"{path} must contain a mapping")
        data = _deep_merge(data, loaded)
    else:
        logger.debug("No config at %s, using defaults", path)

    if use_env:
        env: Dict[str, Optional[str]] = {}
        env_file = root / ".env"
        if env_file.exists():
            env.update(dotenv_values(env_file))
        env.update({k: v for k, v in os.environ.items() if k.startswith("FEATGRAPH_")})
        data = _apply_env_overrides(data, env)

    try:
        return Config.model_validate(data)
    except ValidationError as e:
        first = e.errors()[0]
        key = ".".join(str(part) for part in first.get("loc", ()))
        raise ConfigError(
            f"Invalid configuration: {first.get('msg', e)}",
            config_key=key or None,
            details=str(e),
        )


def write_default_config(root: Path, overrides: Optional[Dict[str, Any]] = None) -> Path:
    """Write the default configuration (plus overrides) to ``.featgraph/config.yml``."""
    data = copy.deepcopy(DEFAULT_CONFIG)
    if overrides:
        data = _deep_merge(data, overrides)
    Config.model_validate(data)
    path = config_path(root)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
    return path
