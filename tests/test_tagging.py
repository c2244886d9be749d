"""Tests for tag editing and deletion."""

import pytest

from marginalia.errors import HypothesisError, IndexEncodingError, InvalidTag, TagNotFound
from marginalia.models import EMPTY_TAG, IGNORE_TAG
from marginalia.tagging import add_tag, delete_annotations, remove_tag, validate_tag

from conftest import make_annotation


NEWER = '2024-06-01T00:00:00+00:00'


class FakeClient:
    """Records write calls and echoes back the changed annotation."""

    def __init__(self):
        self.patched = []
        self.deleted = []

    def update_tags(self, annotation_id, tags):
        self.patched.append((annotation_id, list(tags)))
        return make_annotation(annotation_id, tags=tags, updated=NEWER)

    def delete(self, annotation_id):
        self.deleted.append(annotation_id)


@pytest.fixture
def client():
    return FakeClient()


class TestValidateTag:

    def test_strips(self):
        assert validate_tag('  x ') == 'x'

    @pytest.mark.parametrize('tag', ['', '   ', EMPTY_TAG, IGNORE_TAG])
    def test_rejects_blank_and_reserved(self, tag):
        with pytest.raises(InvalidTag):
            validate_tag(tag)

    def test_rejects_delimiter(self):
        with pytest.raises(IndexEncodingError):
            validate_tag('a;b')


def test_add_tag(index, client):
    index.upsert(make_annotation('a1', tags=['x']))
    index.upsert(make_annotation('a2', tags=['y']))
    annotations = list(index.iterate())

    changed = add_tag(index, client, annotations, 'y')

    assert changed == 1
    assert client.patched == [('a1', ['x', 'y'])]
    assert index.annotations_of('y') == {'a1', 'a2'}
    assert index.get('a1').updated.isoformat() == NEWER


def test_add_tag_to_untagged(index, client):
    index.upsert(make_annotation('a1'))
    add_tag(index, client, [index.get('a1')], 'x')
    assert index.annotations_of('x') == {'a1'}
    with pytest.raises(TagNotFound):
        index.annotations_of(EMPTY_TAG)


def test_remove_tag(index, client):
    index.upsert(make_annotation('a1', tags=['x', 'y']))
    index.upsert(make_annotation('a2', tags=['x']))

    changed = remove_tag(index, client, list(index.iterate()), 'x')

    assert changed == 2
    assert index.tags_of('a1') == {'y'}
    assert index.annotations_of(EMPTY_TAG) == {'a2'}
    with pytest.raises(TagNotFound):
        index.annotations_of('x')


# When deleting locally, annotations should be tagged upstream and dropped here
def test_delete_marks_ignored(index, client):
    index.upsert(make_annotation('a1', tags=['x']))
    index.upsert(make_annotation('a2'))

    count = delete_annotations(index, client, list(index.iterate()))

    assert count == 2
    assert client.patched == [('a1', ['x', IGNORE_TAG]), ('a2', [IGNORE_TAG])]
    assert client.deleted == []
    assert index.count() == 0
    assert index.all_tags() == {}


def test_delete_remote(index, client):
    index.upsert(make_annotation('a1', tags=['x']))

    delete_annotations(index, client, [index.get('a1')], remote=True)

    assert client.deleted == ['a1']
    assert client.patched == []
    assert not index.exists('a1')


class FailingClient(FakeClient):
    """Fails on the nth write call."""

    def __init__(self, fail_on):
        super().__init__()
        self.fail_on = fail_on
        self.calls = 0

    def _maybe_fail(self):
        self.calls += 1
        if self.calls == self.fail_on:
            raise HypothesisError('HTTP 503', status_code=503)

    def delete(self, annotation_id):
        self._maybe_fail()
        super().delete(annotation_id)

    def update_tags(self, annotation_id, tags):
        self._maybe_fail()
        return super().update_tags(annotation_id, tags)


# When Hypothesis fails part way, annotations already deleted there should be gone locally
def test_delete_remote_partial_failure(index):
    for annotation_id in ('a1', 'a2', 'a3'):
        index.upsert(make_annotation(annotation_id, tags=['x']))
    client = FailingClient(fail_on=2)

    with pytest.raises(HypothesisError):
        delete_annotations(index, client, list(index.iterate()), remote=True)

    assert client.deleted == ['a1']
    assert not index.exists('a1')
    assert index.exists('a2')
    assert index.exists('a3')
    assert index.annotations_of('x') == {'a2', 'a3'}
    assert index.check_consistency() == []


def test_delete_ignore_partial_failure(index):
    for annotation_id in ('a1', 'a2'):
        index.upsert(make_annotation(annotation_id))
    client = FailingClient(fail_on=2)

    with pytest.raises(HypothesisError):
        delete_annotations(index, client, list(index.iterate()))

    assert client.patched == [('a1', [IGNORE_TAG])]
    assert not index.exists('a1')
    assert index.exists('a2')
