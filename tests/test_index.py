"""Tests for the tag index engine."""

import pytest

from marginalia.errors import AnnotationNotFound, IndexEncodingError, TagNotFound
from marginalia.index import normalize_tags, split_values
from marginalia.models import EMPTY_TAG, IGNORE_TAG

from conftest import make_annotation


class TestNormalizeTags:

    def test_strips_and_dedupes(self):
        assert normalize_tags([' x', 'y', 'x ', '', '  ']) == ['x', 'y']

    def test_sentinel_is_folded_away(self):
        assert normalize_tags([EMPTY_TAG, 'x']) == ['x']

    def test_delimiter_rejected(self):
        with pytest.raises(IndexEncodingError):
            normalize_tags(['a;b'])


def test_split_values_rejects_empty_segments():
    with pytest.raises(IndexEncodingError):
        split_values('a;;b')


class TestUpsert:

    # When an annotation is tagged x and y, both tags should map back to it
    def test_tags_map_both_ways(self, index):
        index.upsert(make_annotation('a1', tags=['x', 'y']))

        assert index.annotations_of('x') == {'a1'}
        assert index.annotations_of('y') == {'a1'}
        assert index.tags_of('a1') == {'x', 'y'}

    # When re-upserted with different tags, stale memberships should go
    def test_retag_removes_old_tags(self, index):
        index.upsert(make_annotation('a1', tags=['x', 'y']))
        index.upsert(make_annotation('a1', tags=['y', 'z']))

        with pytest.raises(TagNotFound):
            index.annotations_of('x')
        assert index.annotations_of('y') == {'a1'}
        assert index.annotations_of('z') == {'a1'}
        assert index.tags_of('a1') == {'y', 'z'}

    def test_returns_whether_existed(self, index):
        assert index.upsert(make_annotation('a1')) is False
        assert index.upsert(make_annotation('a1')) is True

    # When the same record is upserted twice, the index should not change
    def test_idempotent(self, index):
        annotation = make_annotation('a1', tags=['x'])
        index.upsert(annotation)
        before = (index.all_tags(), index.tags_of('a1'), index.get('a1'))
        index.upsert(annotation)
        assert (index.all_tags(), index.tags_of('a1'), index.get('a1')) == before
        assert index.annotations_of('x') == {'a1'}

    def test_record_round_trip(self, index):
        annotation = make_annotation('a1', tags=['x'], text='note', quote='words')
        index.upsert(annotation)
        assert index.get('a1') == annotation

    def test_shared_tag(self, index):
        index.upsert(make_annotation('a1', tags=['x']))
        index.upsert(make_annotation('a2', tags=['x']))
        assert index.annotations_of('x') == {'a1', 'a2'}
        assert index.all_tags() == {'x': 2}

    # When an annotation has no tags, it should be reachable via the sentinel
    def test_untagged_uses_sentinel(self, index):
        index.upsert(make_annotation('a1'))

        assert index.tags_of('a1') == set()
        assert index.annotations_of(EMPTY_TAG) == {'a1'}
        assert index.annotations_of('') == {'a1'}

    def test_tagging_leaves_sentinel(self, index):
        index.upsert(make_annotation('a1'))
        index.upsert(make_annotation('a1', tags=['x']))
        with pytest.raises(TagNotFound):
            index.annotations_of(EMPTY_TAG)

    def test_blank_tags_ignored(self, index):
        index.upsert(make_annotation('a1', tags=['  ', 'x', '']))
        assert index.tags_of('a1') == {'x'}

    def test_delimiter_in_tag_stores_nothing(self, index):
        with pytest.raises(IndexEncodingError):
            index.upsert(make_annotation('a1', tags=['a;b']))
        assert not index.exists('a1')

    def test_ignore_tag_rejected(self, index):
        with pytest.raises(ValueError):
            index.upsert(make_annotation('a1', tags=[IGNORE_TAG]))
        assert not index.exists('a1')


class TestDelete:

    def test_delete_removes_everything(self, index):
        index.upsert(make_annotation('a1', tags=['x', 'y']))
        index.upsert(make_annotation('a2', tags=['y']))

        removed = index.delete('a1')

        assert removed.id == 'a1'
        assert not index.exists('a1')
        with pytest.raises(TagNotFound):
            index.annotations_of('x')
        assert index.annotations_of('y') == {'a2'}
        with pytest.raises(AnnotationNotFound):
            index.tags_of('a1')

    def test_delete_missing(self, index):
        with pytest.raises(AnnotationNotFound):
            index.delete('nope')

    def test_delete_batch(self, index):
        index.upsert(make_annotation('a1', tags=['x', 'y']))
        index.upsert(make_annotation('a2', tags=['x']))
        index.upsert(make_annotation('a3', tags=['x']))
        index.upsert(make_annotation('a4'))

        removed = index.delete_batch(['a1', 'a2', 'a4'])

        assert sorted(a.id for a in removed) == ['a1', 'a2', 'a4']
        assert index.annotations_of('x') == {'a3'}
        assert index.all_tags() == {'x': 1}
        assert index.count() == 1
        assert index.check_consistency() == []

    # When one ID in a batch is unknown, nothing should be removed
    def test_delete_batch_unknown_id(self, index):
        index.upsert(make_annotation('a1', tags=['x']))
        with pytest.raises(AnnotationNotFound):
            index.delete_batch(['a1', 'nope'])
        assert index.exists('a1')
        assert index.annotations_of('x') == {'a1'}


class TestLookups:

    def test_tags_of_unknown(self, index):
        with pytest.raises(AnnotationNotFound):
            index.tags_of('nope')

    def test_annotations_of_unknown(self, index):
        with pytest.raises(TagNotFound) as exc:
            index.annotations_of('nope')
        assert exc.value.tag == 'nope'

    def test_tags_of_missing_entry(self, index, temp_db):
        index.upsert(make_annotation('a1', tags=['x']))
        temp_db.delete_annotation_tags('a1')
        with pytest.raises(IndexEncodingError):
            index.tags_of('a1')

    def test_iterate_and_get_many(self, index):
        for annotation_id in ('a2', 'a1'):
            index.upsert(make_annotation(annotation_id))
        assert [a.id for a in index.iterate()] == ['a1', 'a2']
        assert [a.id for a in index.get_many(['a2', 'a1'])] == ['a2', 'a1']


class TestConsistency:

    def test_consistent_after_mixed_writes(self, index):
        index.upsert(make_annotation('a1', tags=['x', 'y']))
        index.upsert(make_annotation('a2'))
        index.upsert(make_annotation('a1', tags=['z']))
        index.upsert(make_annotation('a2', tags=['z']))
        index.delete('a1')
        assert index.check_consistency() == []

    def test_reports_mismatch(self, index, temp_db):
        index.upsert(make_annotation('a1', tags=['x']))
        temp_db.set_tag_annotations('x', 'a1;ghost')
        problems = index.check_consistency()
        assert any('ghost' in p for p in problems)

    def test_clear(self, index):
        index.upsert(make_annotation('a1', tags=['x']))
        index.clear()
        assert index.count() == 0
        assert index.all_tags() == {}
