"""
Git Repository Access

A narrow wrapper over the ``git`` binary. Porcelain commands drive the
working tree (checkout, commit, merge); plumbing commands read committed
trees without a checkout and build commits on branches that are not checked
out.
"""

import os
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Sequence

from featgraph.exceptions import GitError, NotARepositoryError, WriteConflictError
from featgraph.logging_config import get_logger

logger = get_logger(__name__)

ZERO_SHA = "0" * 40


@dataclass
class TreeEntry:
    mode: str
    type: str
    sha: str
    path: str


@dataclass
class MergeOutcome:
    """Result of starting a merge into the checked-out branch."""

    clean: bool
    conflicts: List[str] = field(default_factory=list)
    output: str = ""


class GitRepo:
    """Git operations for one repository, run through subprocess."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self._git_dir: Optional[Path] = None

    @classmethod
    def discover(cls, path: Optional[Path] = None) -> "GitRepo":
        """Find the repository containing ``path`` (default: cwd)."""
        path = Path(path) if path else Path.cwd()
        try:
            result = subprocess.run(
                ["git", "rev-parse", "--show-toplevel"],
                cwd=path,
                capture_output=True,
                text=True,
            )
        except (FileNotFoundError, OSError) as e:
            raise GitError("git is not available", remediation="Install git and make sure it is on PATH", stderr=str(e))
        if result.returncode != 0:
            raise NotARepositoryError(str(path))
        return cls(Path(result.stdout.strip()))

    # --- low level ------------------------------------------------------

    def run(
        self,
        *args: str,
        check: bool = True,
        env: Optional[Mapping[str, str]] = None,
        input: Optional[bytes] = None,
        binary: bool = False,
    ) -> subprocess.CompletedProcess:
        """Run a git command in the repository root.

        Raises:
            GitError: The command exited non-zero and ``check`` is set.
        """
        command = ["git", *args]
        logger.debug("git %s", " ".join(args))
        run_env = None
        if env:
            run_env = {**os.environ, **env}
        if binary or input is not None:
            result = subprocess.run(
                command, cwd=self.root, capture_output=True, env=run_env, input=input
            )
        else:
            result = subprocess.run(
                command, cwd=self.root, capture_output=True, text=True, env=run_env
            )
        if check and result.returncode != 0:
            stderr = result.stderr
            if isinstance(stderr, bytes):
                stderr = stderr.decode("utf-8", "replace")
            raise GitError(f"git {args[0]} failed", command=command, stderr=stderr)
        return result

    def _out(self, *args: str, **kwargs) -> str:
        output = self.run(*args, **kwargs).stdout
        if isinstance(output, bytes):
            output = output.decode("utf-8")
        return output.strip()

    @property
    def git_dir(self) -> Path:
        if self._git_dir is None:
            self._git_dir = Path(self._out("rev-parse", "--absolute-git-dir"))
        return self._git_dir

    # --- refs -----------------------------------------------------------

    def current_branch(self) -> Optional[str]:
        """Name of the checked-out branch, or None when HEAD is detached."""
        result = self.run("symbolic-ref", "--quiet", "--short", "HEAD", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def rev_parse(self, ref: str) -> Optional[str]:
        """Commit sha for ``ref``, or None if it does not resolve."""
        result = self.run("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False)
        if result.returncode != 0:
            return None
        return result.stdout.strip()

    def _for_each_ref(self, pattern: str) -> Dict[str, str]:
        output = self._out(
            "for-each-ref", "--format=%(refname)%00%(objectname)%00%(symref)", pattern
        )
        refs: Dict[str, str] = {}
        for line in output.splitlines():
            refname, sha, symref = (line.split("\0") + ["", ""])[:3]
            if symref:
                continue
            refs[refname] = sha
        return refs

    def local_branches(self) -> Dict[str, str]:
        """Local branch name -> tip sha."""
        prefix = "refs/heads/"
        return {
            ref[len(prefix):]: sha
            for ref, sha in self._for_each_ref(prefix).items()
        }

    def remote_branches(self) -> Dict[str, str]:
        """Remote-tracking branch name (``origin/x``) -> tip sha, without ``*/HEAD``."""
        prefix = "refs/remotes/"
        return {
            ref[len(prefix):]: sha
            for ref, sha in self._for_each_ref(prefix).items()
            if not ref.endswith("/HEAD")
        }

    def branch_exists(self, name: str) -> bool:
        return self.rev_parse(f"refs/heads/{name}") is not None

    def branch_tip(self, name: str) -> Optional[str]:
        return self.rev_parse(f"refs/heads/{name}")

    def create_branch(self, name: str, start: Optional[str] = None) -> None:
        args = ["branch", name]
        if start:
            args.append(start)
        self.run(*args)

    def checkout(self, name: str, create: bool = False) -> None:
        if create:
            self.run("checkout", "-b", name)
        else:
            self.run("checkout", name)

    def delete_branch(self, name: str, force: bool = False) -> None:
        self.run("branch", "-D" if force else "-d", name)

    # --- committed trees ------------------------------------------------

    def ls_tree(self, treeish: str, path: str) -> List[TreeEntry]:
        """Recursively list blobs under ``path`` in ``treeish``; empty if absent."""
        result = self.run("ls-tree", "-r", "-z", treeish, "--", path, check=False, binary=True)
        if result.returncode != 0:
            return []
        entries = []
        for record in result.stdout.split(b"\0"):
            if not record:
                continue
            meta, _, name = record.partition(b"\t")
            mode, obj_type, sha = meta.decode("ascii").split(" ")
            entries.append(TreeEntry(mode, obj_type, sha, name.decode("utf-8")))
        return entries

    def read_blobs(self, shas: Sequence[str]) -> Dict[str, bytes]:
        """Read several blobs with a single ``cat-file --batch``."""
        if not shas:
            return {}
        request = "".join(f"{sha}\n" for sha in shas).encode("ascii")
        output = self.run("cat-file", "--batch", input=request).stdout
        blobs: Dict[str, bytes] = {}
        pos = 0
        while pos < len(output):
            header_end = output.index(b"\n", pos)
            header = output[pos:header_end].decode("ascii").split(" ")
            pos = header_end + 1
            if len(header) < 3 or header[1] == "missing":
                continue
            size = int(header[2])
            blobs[header[0]] = output[pos:pos + size]
            pos += size + 1
        return blobs

    def show_file(self, ref: str, path: str) -> Optional[bytes]:
        result = self.run("show", f"{ref}:{path}", check=False, binary=True)
        if result.returncode != 0:
            return None
        return result.stdout

    # --- plumbing write -------------------------------------------------

    def commit_files_to_branch(
        self,
        branch: str,
        files: Mapping[str, bytes],
        message: str,
        expected_tip: Optional[str],
        deletions: Iterable[str] = (),
    ) -> str:
        """Commit ``files`` onto ``branch`` without touching the working tree.

        The new commit is built from ``expected_tip`` in a throwaway index and
        the ref only moves if it still points at ``expected_tip``.

        Raises:
            WriteConflictError: The branch moved since ``expected_tip`` was read.
        """
        ref = f"refs/heads/{branch}"
        with tempfile.TemporaryDirectory(prefix="featgraph-index-") as tmp:
            env = {"GIT_INDEX_FILE": str(Path(tmp) / "index")}
            if expected_tip:
                self.run("read-tree", expected_tip, env=env)
            else:
                self.run("read-tree", "--empty", env=env)

            lines = []
            for path, data in files.items():
                sha = self.run("hash-object", "-w", "--stdin", input=data).stdout.decode("ascii").strip()
                lines.append(f"100644 {sha}\t{path}\n")
            for path in deletions:
                lines.append(f"0 {ZERO_SHA}\t{path}\n")
            if lines:
                self.run("update-index", "--index-info", env=env, input="".join(lines).encode("utf-8"))

            tree = self._out("write-tree", env=env)

        args = ["commit-tree", tree, "-m", message]
        if expected_tip:
            args[2:2] = ["-p", expected_tip]
        commit = self._out(*args)

        result = self.run("update-ref", ref, commit, expected_tip or ZERO_SHA, check=False)
        if result.returncode != 0:
            actual = self.branch_tip(branch)
            raise WriteConflictError(branch, expected=expected_tip, actual=actual)
        logger.debug("Moved %s to %s", ref, commit[:8])
        return commit

    # --- working tree ---------------------------------------------------

    def changed_files(self, include_untracked: bool = True) -> List[str]:
        """Paths with staged, unstaged or (optionally) untracked changes."""
        args = ["status", "--porcelain=v1", "-z"]
        if not include_untracked:
            args.append("--untracked-files=no")
        output = self.run(*args, binary=True).stdout.decode("utf-8")
        records = output.split("\0")
        paths = []
        skip = False
        for record in records:
            if skip:
                skip = False
                continue
            if not record:
                continue
            status, path = record[:2], record[3:]
            paths.append(path)
            if status[0] in "RC":
                skip = True
        return paths

    def is_clean(self, include_untracked: bool = False) -> bool:
        return not self.changed_files(include_untracked=include_untracked)

    def add(self, paths: Sequence[str]) -> None:
        if paths:
            self.run("add", "--", *paths)

    def add_all(self) -> None:
        self.run("add", "-A")

    def commit(self, message: str, paths: Optional[Sequence[str]] = None, author: Optional[str] = None) -> str:
        """Commit the index (or only ``paths``); returns the new HEAD sha."""
        args = ["commit", "-m", message]
        if author:
            args.append(f"--author={author}")
        if paths:
            args += ["--", *paths]
        self.run(*args)
        return self._out("rev-parse", "HEAD")

    # --- merges ---------------------------------------------------------

    def merge(self, branch: str, squash: bool = False) -> MergeOutcome:
        """Merge ``branch`` into HEAD without committing."""
        if squash:
            result = self.run("merge", "--squash", branch, check=False)
        else:
            result = self.run("merge", "--no-ff", "--no-commit", branch, check=False)
        conflicts = self.conflicted_files()
        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode != 0 and not conflicts:
            raise GitError(f"git merge {branch} failed", command=result.args, stderr=result.stderr)
        return MergeOutcome(clean=not conflicts, conflicts=conflicts, output=output)

    def conflicted_files(self) -> List[str]:
        output = self._out("diff", "--name-only", "--diff-filter=U")
        return [line for line in output.splitlines() if line]

    def is_merging(self) -> bool:
        return (self.git_dir / "MERGE_HEAD").exists()

    def abort_merge(self) -> None:
        """Abort a merge; squash merges leave no MERGE_HEAD and are reset instead."""
        if self.is_merging():
            self.run("merge", "--abort")
        else:
            self.run("reset", "--hard", "HEAD")
