"""
Ref Scanner

Enumerates local and remote-tracking branches and reads the feature records
committed under the metadata directory of each tip, straight from the object
store. Nothing here checks out, fetches or moves a ref, so it is safe to run
while a merge or another command is in flight.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, Iterator, List, Optional, Sequence

from featgraph.gitrepo import GitRepo
from featgraph.logging_config import get_logger

logger = get_logger(__name__)

FEATURES_DIR = ".featgraph/features"
RECORD_SUFFIXES = (".yml", ".yaml")
PARALLEL_WORKERS = 8


@dataclass(frozen=True)
class RefInfo:
    """A branch tip to scan."""

    name: str
    tip: str
    is_remote: bool = False

    @property
    def full_name(self) -> str:
        prefix = "refs/remotes/" if self.is_remote else "refs/heads/"
        return prefix + self.name


@dataclass(frozen=True)
class RefBlob:
    """One feature record as committed on one ref."""

    ref: str
    path: str
    data: bytes
    tip: str
    is_remote: bool = False


class RefScanner:
    """Reads feature records from every branch tip without a checkout."""

    def __init__(self, repo: GitRepo, metadata_dir: str = FEATURES_DIR, workers: int = PARALLEL_WORKERS):
        self.repo = repo
        self.metadata_dir = metadata_dir.rstrip("/")
        self.workers = workers

    def list_refs(self, include_remotes: bool = True) -> List[RefInfo]:
        """Local branches first, then remote-tracking branches."""
        refs = [RefInfo(name, tip) for name, tip in sorted(self.repo.local_branches().items())]
        if include_remotes:
            refs += [
                RefInfo(name, tip, is_remote=True)
                for name, tip in sorted(self.repo.remote_branches().items())
            ]
        return refs

    def scan_ref(self, ref: RefInfo) -> List[RefBlob]:
        """Records on one ref; empty when the ref has no metadata directory."""
        entries = [
            entry for entry in self.repo.ls_tree(ref.tip, self.metadata_dir)
            if entry.type == "blob" and entry.path.endswith(RECORD_SUFFIXES)
        ]
        if not entries:
            return []
        blobs = self.repo.read_blobs([entry.sha for entry in entries])
        return [
            RefBlob(ref.name, entry.path, blobs[entry.sha], ref.tip, ref.is_remote)
            for entry in entries
            if entry.sha in blobs
        ]

    def scan(self, refs: Optional[Sequence[RefInfo]] = None) -> Iterator[RefBlob]:
        """Yield every record on every ref.

        Refs are read in parallel; results come back grouped by ref in the
        order of ``refs``.
        """
        if refs is None:
            refs = self.list_refs()
        if not refs:
            return

        results: Dict[RefInfo, List[RefBlob]] = {}
        with ThreadPoolExecutor(max_workers=max(1, min(self.workers, len(refs)))) as executor:
            futures = {executor.submit(self.scan_ref, ref): ref for ref in refs}
            for future in as_completed(futures):
                ref = futures[future]
                results[ref] = future.result()
                logger.debug("Scanned %s: %d record(s)", ref.full_name, len(results[ref]))

        for ref in refs:
            yield from results.get(ref, [])
