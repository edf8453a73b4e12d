"""Shared fixtures: throwaway git repositories with featgraph initialized."""

import subprocess
from pathlib import Path

import pytest


def git(cwd: Path, *args: str) -> str:
    """Run git in ``cwd`` and return stripped stdout."""
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


@pytest.fixture
def repo_path(tmp_path, monkeypatch):
    """An empty git repository on ``main`` with one commit."""
    path = tmp_path / "repo"
    path.mkdir()
    git(path, "init", "-q")
    git(path, "symbolic-ref", "HEAD", "refs/heads/main")
    git(path, "config", "user.name", "Test User")
    git(path, "config", "user.email", "test@example.com")
    git(path, "config", "commit.gpgsign", "false")
    (path / "README.md").write_text("# test\n")
    git(path, "add", "README.md")
    git(path, "commit", "-q", "-m", "initial")
    monkeypatch.delenv("FEATGRAPH_MODE", raising=False)
    monkeypatch.delenv("FEATGRAPH_BASE_BRANCH", raising=False)
    monkeypatch.delenv("FEATGRAPH_AUTO_COMMIT", raising=False)
    monkeypatch.chdir(path)
    return path


def _initialize(repo_path: Path, overrides=None):
    from featgraph.config import load_config
    from featgraph.gitrepo import GitRepo
    from featgraph.storage import FeatureStore

    repo = GitRepo(repo_path)
    paths = FeatureStore(repo).initialize(overrides)
    repo.add(paths)
    repo.commit("featgraph: initialize", paths=paths)
    return repo, FeatureStore(repo, load_config(repo_path))


@pytest.fixture
def repo(repo_path):
    """A GitRepo handle on an initialized repository."""
    return _initialize(repo_path)[0]


@pytest.fixture
def store(repo):
    """A FeatureStore on the initialized repository (branch-per-feature)."""
    from featgraph.config import load_config
    from featgraph.storage import FeatureStore

    return FeatureStore(repo, load_config(repo.root))


@pytest.fixture
def trunk_store(repo_path):
    """A FeatureStore on a repository configured for trunk-based work."""
    return _initialize(repo_path, {"workflow": {"mode": "trunk-based"}})[1]


@pytest.fixture
def engine(store):
    """A WorkflowEngine that never prompts."""
    from featgraph.workflow import WorkflowEngine

    return WorkflowEngine(store.repo, store)


@pytest.fixture
def graph(store):
    from featgraph.graph import RelationshipGraph

    return RelationshipGraph(store)


@pytest.fixture
def make_feature(store):
    """Create a feature on the checked-out branch and commit it."""
    from featgraph.models import Feature

    def _make(name, **fields):
        feature = Feature.create(name, **fields)
        store.save(feature)
        return feature

    return _make
