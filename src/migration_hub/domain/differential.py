"""
Differential analyzer.

Computes, per entity, which source records still need migrating: an
anti-join of source legacy ids against the mapping store, plus a content
hash comparison that surfaces conflict candidates (records present on both
sides whose source content changed since the last migration).

The mapped side is loaded once per entity into a membership index. Normal
entities use a dict; massive ones (or anything above the configured
threshold) use ``CompactMembershipIndex``: a sorted signed 64-bit id array
plus a parallel array of 64-bit hash prefixes, searched with ``bisect``.
That keeps resident memory at 16 bytes per mapped row.

The source side is streamed page by page (keyset pagination on the legacy
id), so the analyzer never materializes a whole source table.
"""

from array import array
from bisect import bisect_left
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Protocol, Tuple

from migration_hub.domain.models import EntityDefinition, VolumeClass
from migration_hub.domain.results import DeltaSummary
from migration_hub.utils.hashing import content_hash, hash_prefix
from migration_hub.utils.logging import get_logger

logger = get_logger(__name__)


class MembershipIndex(Protocol):
    def __contains__(self, legacy_id: object) -> bool:
        ...

    def __len__(self) -> int:
        ...

    def matches(self, legacy_id: int, digest: str) -> bool:
        """True when the stored hash for ``legacy_id`` equals ``digest``."""
        ...

    def stored_hash(self, legacy_id: int) -> Optional[str]:
        ...


class DictMembershipIndex:
    """Exact index keeping full hashes; for normal-volume entities."""

    def __init__(self, items: Iterable[Tuple[int, str]] = ()):
        self._hashes: Dict[int, str] = dict(items)

    def __contains__(self, legacy_id: object) -> bool:
        return legacy_id in self._hashes

    def __len__(self) -> int:
        return len(self._hashes)

    def matches(self, legacy_id: int, digest: str) -> bool:
        return self._hashes.get(legacy_id) == digest

    def stored_hash(self, legacy_id: int) -> Optional[str]:
        return self._hashes.get(legacy_id)


class CompactMembershipIndex:
    """
    Memory-compact index for massive entities.

    Hash comparison uses the first 64 bits of the digest. A changed row is
    missed only on a 64-bit prefix collision.
    """

    def __init__(self, items: Iterable[Tuple[int, str]] = ()):
        ids = array("q")
        prefixes = array("Q")
        previous: Optional[int] = None
        ordered = True
        for legacy_id, digest in items:
            if previous is not None and legacy_id < previous:
                ordered = False
            ids.append(legacy_id)
            prefixes.append(hash_prefix(digest))
            previous = legacy_id
        if not ordered:
            order = sorted(range(len(ids)), key=ids.__getitem__)
            ids = array("q", (ids[i] for i in order))
            prefixes = array("Q", (prefixes[i] for i in order))
        self._ids = ids
        self._prefixes = prefixes

    def _position(self, legacy_id: int) -> int:
        pos = bisect_left(self._ids, legacy_id)
        if pos < len(self._ids) and self._ids[pos] == legacy_id:
            return pos
        return -1

    def __contains__(self, legacy_id: object) -> bool:
        if not isinstance(legacy_id, int):
            return False
        return self._position(legacy_id) >= 0

    def __len__(self) -> int:
        return len(self._ids)

    def matches(self, legacy_id: int, digest: str) -> bool:
        pos = self._position(legacy_id)
        return pos >= 0 and self._prefixes[pos] == hash_prefix(digest)

    def stored_hash(self, legacy_id: int) -> Optional[str]:
        pos = self._position(legacy_id)
        return f"{self._prefixes[pos]:016x}" if pos >= 0 else None

    @property
    def nbytes(self) -> int:
        return self._ids.itemsize * len(self._ids) + self._prefixes.itemsize * len(self._prefixes)


@dataclass
class ConflictCandidate:
    """A source row already migrated whose content hash changed."""

    legacy_id: int
    row: Dict[str, Any]
    stored_hash: Optional[str]
    new_hash: str


@dataclass
class DeltaPage:
    """One source page split into missing rows and conflict candidates."""

    missing: List[Dict[str, Any]] = field(default_factory=list)
    conflicts: List[ConflictCandidate] = field(default_factory=list)
    unchanged: int = 0
    cursor: Optional[int] = None

    @property
    def source_rows(self) -> int:
        return len(self.missing) + len(self.conflicts) + self.unchanged


class DifferentialAnalyzer:
    """
    Read-only delta computation over the source reader and mapping store.

    Args:
        source: SourceReader for the legacy store
        mappings: MappingRepository
        batch_size_for: Page size per entity (normally RunOptions.batch_size_for)
        massive_threshold: Mapped-row count above which the compact index is used
    """

    def __init__(
        self,
        source,
        mappings,
        batch_size_for: Callable[[EntityDefinition], int],
        massive_threshold: int = 100_000,
    ):
        self.source = source
        self.mappings = mappings
        self.batch_size_for = batch_size_for
        self.massive_threshold = massive_threshold

    def load_index(self, entity: EntityDefinition) -> MembershipIndex:
        mapped_count = self.mappings.count(entity.name)
        compact = (
            entity.volume_class == VolumeClass.MASSIVE
            or mapped_count > self.massive_threshold
        )
        stream = self.mappings.iter_mapped(entity.name)
        index: MembershipIndex = (
            CompactMembershipIndex(stream) if compact else DictMembershipIndex(stream)
        )
        logger.info(
            "differential.index_loaded",
            entity=entity.name,
            mapped=len(index),
            compact=compact,
        )
        return index

    def scan(
        self,
        entity: EntityDefinition,
        after: Optional[int] = None,
        index: Optional[MembershipIndex] = None,
    ) -> Iterator[DeltaPage]:
        """
        Stream source pages after ``after`` and classify every row.

        Each page's ``cursor`` is the largest legacy id it contains, so it
        can be persisted as a resume point once the page is committed.
        """
        index = index if index is not None else self.load_index(entity)
        limit = self.batch_size_for(entity)
        cursor = after
        while True:
            rows = self.source.fetch_page(entity, cursor, limit)
            if not rows:
                return
            page = DeltaPage()
            for row in rows:
                legacy_id = int(row[entity.id_field])
                if legacy_id not in index:
                    page.missing.append(row)
                    continue
                digest = content_hash(row)
                if index.matches(legacy_id, digest):
                    page.unchanged += 1
                else:
                    page.conflicts.append(
                        ConflictCandidate(
                            legacy_id=legacy_id,
                            row=row,
                            stored_hash=index.stored_hash(legacy_id),
                            new_hash=digest,
                        )
                    )
            cursor = int(rows[-1][entity.id_field])
            page.cursor = cursor
            yield page
            if len(rows) < limit:
                return

    def compute_missing(
        self, entity: EntityDefinition, index: Optional[MembershipIndex] = None
    ) -> Iterator[int]:
        """Lazily yield source legacy ids absent from the mapping store."""
        for page in self.scan(entity, index=index):
            for row in page.missing:
                yield int(row[entity.id_field])

    def summarize(self, entity: EntityDefinition) -> DeltaSummary:
        """Counts only; used for dry-run reports."""
        summary = DeltaSummary(entity=entity.name)
        for page in self.scan(entity):
            summary.source_rows += page.source_rows
            summary.missing += len(page.missing)
            summary.conflicts += len(page.conflicts)
            summary.unchanged += page.unchanged
        logger.info(
            "differential.summarized",
            entity=entity.name,
            source_rows=summary.source_rows,
            missing=summary.missing,
            conflicts=summary.conflicts,
            unchanged=summary.unchanged,
        )
        return summary
