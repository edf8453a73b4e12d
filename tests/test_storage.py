"""Tests for the feature store: codec, filenames, scoped reads and writes."""

import pytest

from conftest import git


def on_branch(store, branch, name, **fields):
    """Create a feature committed on a new ``branch``, then return to main."""
    from featgraph.models import Feature

    git(store.repo.root, "checkout", "-q", "-b", branch)
    feature = Feature.create(name, branch=branch, **fields)
    store.save(feature)
    git(store.repo.root, "checkout", "-q", "main")
    store.invalidate()
    return feature


class TestFilenames:
    """Test slug filenames."""

    @pytest.mark.parametrize(
        "name, slug",
        [
            ("User Login", "user-login"),
            ("OAuth 2.0 / SSO", "oauth-2-0-sso"),
            ("  snake_case  name ", "snake-case-name"),
            ("!!!", ""),
        ],
    )
    def test_slugify(self, name, slug):
        """Test slugs are lowercase and hyphenated."""
        from featgraph.storage import slugify

        assert slugify(name) == slug

    def test_collision_suffix(self):
        """Test taken filenames get the short id, then the full id."""
        from featgraph.storage import feature_filename

        fid = "12345678-aaaa-bbbb-cccc-1234567890ab"
        assert feature_filename("Login", fid) == "login.yml"
        assert feature_filename("Login", fid, ["login.yml"]) == "login-12345678.yml"
        assert feature_filename("Login", fid, ["login.yml", "login-12345678.yml"]) == f"login-{fid}.yml"
        assert feature_filename("!!!", fid) == "feature-12345678.yml"

    def test_parse_malformed(self):
        """Test unparseable bytes raise MalformedRecordError."""
        from featgraph.exceptions import MalformedRecordError
        from featgraph.storage import parse_feature

        with pytest.raises(MalformedRecordError):
            parse_feature(b"name: [unclosed", path="x.yml")
        with pytest.raises(MalformedRecordError):
            parse_feature(b"name: no id\n")


class TestCurrentBranch:
    """Test working-tree writes."""

    def test_initialize(self, repo_path):
        """Test initialize lays out .featgraph/."""
        from featgraph.gitrepo import GitRepo
        from featgraph.storage import FeatureStore

        store = FeatureStore(GitRepo(repo_path))
        assert not store.is_initialized
        paths = store.initialize()
        assert store.is_initialized
        assert ".featgraph/config.yml" in paths
        assert "metadata/" in (repo_path / ".featgraph" / ".gitignore").read_text()

    def test_save_commits_record(self, store, make_feature):
        """Test an auto-committed working-tree write."""
        feature = make_feature("User Login", tags=["auth"])
        assert (store.features_dir / "user-login.yml").exists()
        assert store.repo.is_clean(include_untracked=True)
        assert git(store.repo.root, "log", "-1", "--format=%s") == "featgraph: update User Login"
        assert [f.id for f in store.load_current_branch()] == [feature.id]
        assert store.index.get(feature.id) == "user-login.yml"

    def test_save_without_commit(self, store):
        """Test commit=False leaves the record uncommitted."""
        from featgraph.models import Feature

        store.save(Feature.create("Draft"), commit=False)
        assert ".featgraph/features/draft.yml" in store.repo.changed_files()

    def test_same_name_gets_suffix(self, store, make_feature):
        """Test a second feature with a taken name gets a suffixed file."""
        from featgraph.exceptions import AmbiguousNameError

        first = make_feature("Login")
        second = make_feature("Login")
        assert (store.features_dir / "login.yml").exists()
        assert (store.features_dir / f"login-{second.id[:8]}.yml").exists()
        with pytest.raises(AmbiguousNameError):
            store.find_by_name_or_id("login")
        assert store.find_by_name_or_id(first.id).id == first.id

    def test_rename_moves_file(self, store, make_feature):
        """Test renaming a feature renames its record."""
        feature = make_feature("Login")
        feature.name = "Sign In"
        store.save(feature)
        assert not (store.features_dir / "login.yml").exists()
        assert (store.features_dir / "sign-in.yml").exists()
        assert store.repo.is_clean(include_untracked=True)

    def test_stale_index_is_repaired(self, store, make_feature):
        """Test a wrong index entry falls back to a directory scan."""
        feature = make_feature("Login")
        store.index.set(feature.id, "missing.yml")
        store.index.save()

        feature.description = "updated"
        store.save(feature)
        records = sorted(p.name for p in store.features_dir.glob("*.yml"))
        assert records == ["login.yml"]
        assert store.index.get(feature.id) == "login.yml"

    def test_lookup_by_prefix_and_suggestions(self, store, make_feature):
        """Test id prefixes resolve and misses carry suggestions."""
        from featgraph.exceptions import FeatureNotFoundError

        feature = make_feature("User Login")
        assert store.find_by_name_or_id(feature.id[:6]).id == feature.id
        with pytest.raises(FeatureNotFoundError) as exc_info:
            store.find_by_name_or_id("User Logn")
        assert exc_info.value.suggestions == ["User Login"]

    def test_delete(self, store, make_feature):
        """Test delete removes the record and its index entry."""
        feature = make_feature("Login")
        store.delete(feature)
        assert not (store.features_dir / "login.yml").exists()
        assert store.index.get(feature.id) is None
        assert store.list_features() == []


class TestCrossBranch:
    """Test discovery across refs and plumbing writes."""

    def test_discovery_is_complete(self, store, make_feature):
        """Test features on every branch are found, current-branch scope is narrower."""
        from featgraph.storage import Scope

        local = make_feature("Dashboard")
        a = on_branch(store, "feature/a", "Alpha")
        b = on_branch(store, "feature/b", "Beta")

        everything = {f.id for f in store.list_features(Scope.CROSS_BRANCH)}
        assert everything == {local.id, a.id, b.id}
        assert {f.id for f in store.list_features(Scope.CURRENT_BRANCH)} == {local.id}
        assert store.discover().location_of(a.id).ref == "feature/a"

    def test_remote_refs_are_discovered(self, store):
        """Test records only on a remote-tracking ref are visible."""
        feature = on_branch(store, "feature/r", "Remote Thing")
        sha = git(store.repo.root, "rev-parse", "feature/r")
        git(store.repo.root, "update-ref", "refs/remotes/origin/feature/r", sha)
        git(store.repo.root, "branch", "-q", "-D", "feature/r")
        store.invalidate()

        location = store.discover().location_of(feature.id)
        assert location.is_remote
        assert location.describe() == "origin/feature/r:.featgraph/features/remote-thing.yml"

    def test_remote_only_write_is_refused(self, store):
        """Test writing a feature that only exists on a remote raises RemoteRefError."""
        from featgraph.exceptions import RemoteRefError

        feature = on_branch(store, "feature/r", "Remote Thing")
        sha = git(store.repo.root, "rev-parse", "feature/r")
        git(store.repo.root, "update-ref", "refs/remotes/origin/feature/r", sha)
        git(store.repo.root, "branch", "-q", "-D", "feature/r")
        store.invalidate()

        with pytest.raises(RemoteRefError):
            store.save(store.get(feature.id))

    def test_plumbing_write_leaves_worktree_alone(self, store):
        """Test writing to another branch commits there without a checkout."""
        feature = on_branch(store, "feature/a", "Alpha")
        head_before = git(store.repo.root, "rev-parse", "HEAD")

        target = store.get(feature.id)
        target.description = "written from main"
        assert store.save(target) == "feature/a"

        assert store.repo.current_branch() == "main"
        assert git(store.repo.root, "rev-parse", "HEAD") == head_before
        assert not (store.features_dir / "alpha.yml").exists()
        committed = git(store.repo.root, "show", "feature/a:.featgraph/features/alpha.yml")
        assert "written from main" in committed
        assert store.repo.is_clean(include_untracked=True)

    def test_write_conflict_when_branch_moves(self, store):
        """Test a stale expected tip raises WriteConflictError and moves nothing."""
        from featgraph.config import load_config
        from featgraph.exceptions import WriteConflictError
        from featgraph.storage import FeatureStore

        feature = on_branch(store, "feature/a", "Alpha")
        mine = store.get(feature.id)

        other = FeatureStore(store.repo, load_config(store.repo.root))
        theirs = other.get(feature.id)
        theirs.description = "theirs"
        other.save(theirs)
        moved_tip = git(store.repo.root, "rev-parse", "feature/a")

        mine.description = "mine"
        with pytest.raises(WriteConflictError) as exc_info:
            store.save(mine)
        assert exc_info.value.retryable
        assert git(store.repo.root, "rev-parse", "feature/a") == moved_tip

    def test_refreshed_view_picks_up_moved_tip(self, store):
        """Test writes after invalidate() use the branch tip as it is now."""
        from featgraph.config import load_config
        from featgraph.storage import FeatureStore

        feature = on_branch(store, "feature/a", "Alpha")
        mine = store.get(feature.id)

        other = FeatureStore(store.repo, load_config(store.repo.root))
        theirs = other.get(feature.id)
        theirs.description = "theirs"
        other.save(theirs)
        moved_tip = git(store.repo.root, "rev-parse", "feature/a")
        store.invalidate()

        mine.priority = "high"
        assert store.save(mine, target_branch="feature/a") == "feature/a"
        assert git(store.repo.root, "rev-parse", "feature/a~1") == moved_tip
        committed = git(store.repo.root, "show", "feature/a:.featgraph/features/alpha.yml")
        assert "high" in committed

    def test_delete_after_branch_moves(self, store):
        """Test deleting from another branch after it moved and the view was refreshed."""
        from featgraph.config import load_config
        from featgraph.storage import FeatureStore

        feature = on_branch(store, "feature/a", "Alpha")
        store.discover()

        other = FeatureStore(store.repo, load_config(store.repo.root))
        theirs = other.get(feature.id)
        theirs.description = "theirs"
        other.save(theirs)
        store.invalidate()

        assert store.delete(feature) == "feature/a"
        listing = git(store.repo.root, "ls-tree", "--name-only", "feature/a", ".featgraph/features/")
        assert "alpha.yml" not in listing

    def test_save_all_groups_by_branch(self, store, make_feature):
        """Test one save_all writes each feature to its own branch."""
        local = make_feature("Dashboard")
        remote = on_branch(store, "feature/a", "Alpha")
        local.description = "one"
        other = store.get(remote.id)
        other.description = "two"

        branches = store.save_all([local, other])
        assert sorted(branches) == ["feature/a", "main"]
        assert "one" in (store.features_dir / "dashboard.yml").read_text()
        assert "two" in git(store.repo.root, "show", "feature/a:.featgraph/features/alpha.yml")

    def test_newest_copy_wins(self, store, make_feature):
        """Test deduplication keeps the copy with the latest modified_at."""
        feature = make_feature("Login")
        git(store.repo.root, "branch", "feature/copy")
        feature.description = "newer"
        feature.touch()
        store.save(feature)
        store.invalidate()

        discovery = store.discover()
        assert discovery.features[feature.id].description == "newer"
        assert len(discovery.locations[feature.id]) == 2
        assert discovery.divergences == []

    def test_divergent_copies_reported(self, store, make_feature):
        """Test same-timestamp copies with different content are flagged."""
        feature = make_feature("Login")
        git(store.repo.root, "branch", "feature/copy")
        feature.description = "edited without a bump"
        store.save(feature)
        store.invalidate()

        divergences = store.discover().divergences
        assert [d.feature_id for d in divergences] == [feature.id]

    def test_malformed_records_are_collected(self, store, make_feature):
        """Test a broken file is reported and does not hide the others."""
        make_feature("Login")
        (store.features_dir / "broken.yml").write_text("id: [oops\n")
        store.invalidate()

        discovery = store.discover()
        assert len(discovery.features) == 1
        assert [m.path for m in discovery.malformed] == [".featgraph/features/broken.yml"]
        assert len(store.load_current_branch()) == 1
