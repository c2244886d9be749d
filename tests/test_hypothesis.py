"""Tests for the Hypothesis API client, against a mocked transport."""

import json

import httpx
import pytest

from marginalia.config import Scope
from marginalia.errors import HypothesisError
from marginalia.hypothesis import HypothesisClient, search_after_for
from marginalia.models import MIN_DATE

from conftest import make_annotation


def make_client(handler):
    return HypothesisClient(
        'reader', 'secret-key',
        api_url='https://hyp.test/api',
        transport=httpx.MockTransport(handler),
    )


def test_search_after_steps_back():
    assert search_after_for('2024-01-02T00:00:00+00:00') == '2024-01-01T23:59:59.999999+00:00'
    assert search_after_for(MIN_DATE) == MIN_DATE


def test_search_after_rejects_garbage():
    with pytest.raises(ValueError):
        search_after_for('soon')


class TestSearch:

    def test_sends_scope_and_paging(self):
        seen = {}

        def handler(request):
            seen['request'] = request
            row = make_annotation('a1', tags=['x']).to_api()
            return httpx.Response(200, json={'total': 1, 'rows': [row]})

        scope = Scope(groups=('g1', 'g2'), users=('acct:reader@hypothes.is',))
        with make_client(handler) as client:
            page = client.search(scope, '2024-01-02T00:00:00+00:00', page_size=50)

        request = seen['request']
        params = request.url.params
        assert request.url.path == '/api/search'
        assert request.headers['Authorization'] == 'Bearer secret-key'
        assert params['limit'] == '50'
        assert params['sort'] == 'updated'
        assert params['order'] == 'asc'
        assert params['search_after'] == '2024-01-01T23:59:59.999999+00:00'
        assert params.get_list('group') == ['g1', 'g2']
        assert params.get_list('user') == ['acct:reader@hypothes.is']
        assert [a.id for a in page] == ['a1']
        assert page[0].tags == ['x']

    def test_page_size_capped(self):
        seen = {}

        def handler(request):
            seen['limit'] = request.url.params['limit']
            return httpx.Response(200, json={'rows': []})

        with make_client(handler) as client:
            assert client.search(Scope(), page_size=1000) == []
        assert seen['limit'] == '200'

    def test_optional_filters(self):
        seen = {}

        def handler(request):
            seen['params'] = request.url.params
            return httpx.Response(200, json={'rows': []})

        with make_client(handler) as client:
            client.search(Scope(), uri='example.com', any_text='cell', tags=['a', 'b'])
        assert seen['params']['uri.parts'] == 'example.com'
        assert seen['params']['any'] == 'cell'
        assert seen['params'].get_list('tags') == ['a', 'b']

    def test_malformed_row(self):
        def handler(request):
            return httpx.Response(200, json={'rows': [{'text': 'no id'}]})

        with make_client(handler) as client:
            with pytest.raises(HypothesisError):
                client.search(Scope())


class TestErrors:

    # When the key is wrong, the error should say so
    def test_unauthorized(self):
        def handler(request):
            return httpx.Response(401, json={'reason': 'bad token'})

        with make_client(handler) as client:
            with pytest.raises(HypothesisError) as exc:
                client.search(Scope())
        assert exc.value.status_code == 401
        assert 'API key' in str(exc.value)

    def test_server_error(self):
        def handler(request):
            return httpx.Response(503, text='down for maintenance')

        with make_client(handler) as client:
            with pytest.raises(HypothesisError) as exc:
                client.search(Scope())
        assert exc.value.status_code == 503

    def test_network_error(self):
        def handler(request):
            raise httpx.ConnectError('connection refused', request=request)

        with make_client(handler) as client:
            with pytest.raises(HypothesisError) as exc:
                client.search(Scope())
        assert exc.value.status_code is None


class TestWrites:

    def test_update_tags(self):
        seen = {}

        def handler(request):
            seen['method'] = request.method
            seen['path'] = request.url.path
            seen['body'] = json.loads(request.content)
            row = make_annotation('a1', tags=['x', 'y'], updated='2024-02-01T00:00:00+00:00')
            return httpx.Response(200, json=row.to_api())

        with make_client(handler) as client:
            updated = client.update_tags('a1', ['x', 'y'])

        assert seen == {'method': 'PATCH', 'path': '/api/annotations/a1', 'body': {'tags': ['x', 'y']}}
        assert updated.tags == ['x', 'y']

    def test_delete(self):
        seen = {}

        def handler(request):
            seen['method'] = request.method
            seen['path'] = request.url.path
            return httpx.Response(200, json={'id': 'a1', 'deleted': True})

        with make_client(handler) as client:
            client.delete('a1')
        assert seen == {'method': 'DELETE', 'path': '/api/annotations/a1'}

    def test_authorize(self):
        def handler(request):
            assert request.url.path == '/api/profile'
            return httpx.Response(200, json={'userid': 'acct:reader@hypothes.is'})

        with make_client(handler) as client:
            assert client.authorize()
            assert client.user == 'acct:reader@hypothes.is'

    def test_authorize_without_user(self):
        def handler(request):
            return httpx.Response(200, json={'userid': None})

        with make_client(handler) as client:
            assert not client.authorize()
