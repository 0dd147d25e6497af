"""Tests for the differential analyzer and its membership indexes."""

from unittest.mock import Mock

import pytest

from migration_hub.domain.differential import (
    CompactMembershipIndex,
    DictMembershipIndex,
    DifferentialAnalyzer,
)
from migration_hub.domain.models import VolumeClass
from migration_hub.utils.hashing import content_hash
from tests.fixtures.migration_data import OFFICE_ROWS, office_definition


class _PagedSource:
    """In-memory SourceReader honouring keyset pagination."""

    def __init__(self, rows):
        self.rows = sorted(rows, key=lambda r: r["id"])
        self.calls = []

    def fetch_page(self, entity, after, limit):
        self.calls.append((after, limit))
        eligible = [r for r in self.rows if after is None or r["id"] > after]
        return [dict(r) for r in eligible[:limit]]


def _mappings(items):
    repo = Mock()
    repo.count.return_value = len(items)
    repo.iter_mapped.side_effect = lambda name: iter(items)
    return repo


def _rows(n):
    return [{"id": i, "name": f"office {i}"} for i in range(1, n + 1)]


@pytest.mark.unit
class TestMembershipIndexes:
    @pytest.mark.parametrize("index_cls", [DictMembershipIndex, CompactMembershipIndex])
    def test_membership_and_hash_match(self, index_cls):
        digest = content_hash({"id": 5})
        index = index_cls([(5, digest), (2, content_hash({"id": 2}))])

        assert 5 in index
        assert 3 not in index
        assert len(index) == 2
        assert index.matches(5, digest)
        assert not index.matches(5, content_hash({"id": 6}))
        assert not index.matches(4, digest)

    def test_compact_index_sorts_unordered_input(self):
        items = [(30, content_hash({"v": 30})), (10, content_hash({"v": 10})), (20, content_hash({"v": 20}))]
        index = CompactMembershipIndex(items)

        for legacy_id, digest in items:
            assert legacy_id in index
            assert index.matches(legacy_id, digest)

    def test_compact_index_uses_sixteen_bytes_per_row(self):
        index = CompactMembershipIndex((i, content_hash({"id": i})) for i in range(1000))

        assert index.nbytes == 16 * 1000

    def test_compact_index_stores_hash_prefix_only(self):
        digest = content_hash({"id": 1})
        index = CompactMembershipIndex([(1, digest)])

        assert index.stored_hash(1) == digest[:16]
        assert index.stored_hash(2) is None
        assert "1" not in index


@pytest.mark.unit
class TestDifferentialAnalyzer:
    def test_scan_classifies_missing_unchanged_and_conflicts(self):
        rows = _rows(5)
        changed = dict(rows[2], name="renamed")
        source = _PagedSource([rows[0], rows[1], changed, rows[3], rows[4]])
        mappings = _mappings(
            [(1, content_hash(rows[0])), (2, content_hash(rows[1])), (3, content_hash(rows[2]))]
        )
        analyzer = DifferentialAnalyzer(source, mappings, lambda e: 10)

        pages = list(analyzer.scan(office_definition()))

        assert len(pages) == 1
        page = pages[0]
        assert [r["id"] for r in page.missing] == [4, 5]
        assert page.unchanged == 2
        assert [c.legacy_id for c in page.conflicts] == [3]
        assert page.conflicts[0].stored_hash == content_hash(rows[2])
        assert page.conflicts[0].new_hash == content_hash(changed)
        assert page.cursor == 5
        assert page.source_rows == 5

    def test_scan_pages_with_keyset_cursor(self):
        source = _PagedSource(_rows(7))
        analyzer = DifferentialAnalyzer(source, _mappings([]), lambda e: 3)

        pages = list(analyzer.scan(office_definition()))

        assert [p.cursor for p in pages] == [3, 6, 7]
        assert source.calls == [(None, 3), (3, 3), (6, 3)]

    def test_scan_resumes_after_cursor(self):
        source = _PagedSource(_rows(6))
        analyzer = DifferentialAnalyzer(source, _mappings([]), lambda e: 3)

        pages = list(analyzer.scan(office_definition(), after=3))

        assert [r["id"] for p in pages for r in p.missing] == [4, 5, 6]

    def test_exact_page_multiple_ends_on_empty_page(self):
        source = _PagedSource(_rows(6))
        analyzer = DifferentialAnalyzer(source, _mappings([]), lambda e: 3)

        pages = list(analyzer.scan(office_definition()))

        assert len(pages) == 2
        assert source.calls[-1] == (6, 3)

    def test_compute_missing_is_anti_join(self):
        rows = _rows(4)
        source = _PagedSource(rows)
        mappings = _mappings([(2, content_hash(rows[1])), (4, content_hash(rows[3]))])
        analyzer = DifferentialAnalyzer(source, mappings, lambda e: 2)

        assert list(analyzer.compute_missing(office_definition())) == [1, 3]

    def test_massive_entity_uses_compact_index(self):
        analyzer = DifferentialAnalyzer(_PagedSource([]), _mappings([(1, "ab" * 32)]), lambda e: 10)

        index = analyzer.load_index(office_definition(volume_class=VolumeClass.MASSIVE))

        assert isinstance(index, CompactMembershipIndex)

    def test_threshold_switches_to_compact_index(self):
        items = [(i, content_hash({"id": i})) for i in range(1, 6)]
        analyzer = DifferentialAnalyzer(
            _PagedSource([]), _mappings(items), lambda e: 10, massive_threshold=3
        )

        assert isinstance(analyzer.load_index(office_definition()), CompactMembershipIndex)

    def test_normal_entity_uses_dict_index(self):
        analyzer = DifferentialAnalyzer(_PagedSource([]), _mappings([]), lambda e: 10)

        assert isinstance(analyzer.load_index(office_definition()), DictMembershipIndex)

    def test_summarize_counts_without_writing(self):
        source = _PagedSource(OFFICE_ROWS)
        mappings = _mappings([(1, content_hash(OFFICE_ROWS[0])), (2, "00" * 32)])
        analyzer = DifferentialAnalyzer(source, mappings, lambda e: 2)

        summary = analyzer.summarize(office_definition())

        assert (summary.source_rows, summary.missing, summary.conflicts, summary.unchanged) == (
            3,
            1,
            1,
            1,
        )
        mappings.upsert.assert_not_called()
