"""Shared fixtures for marginalia tests."""

import tempfile
from pathlib import Path

import pytest

from marginalia.database import Database
from marginalia.index import IndexEngine
from marginalia.models import Annotation


def make_annotation(
    annotation_id,
    tags=(),
    updated='2024-01-01T00:00:00+00:00',
    created=None,
    uri='https://example.com/article',
    text='',
    quote=None,
    title='Example article',
):
    """Build an Annotation the way the API would send it.

    Without a quote the annotation is a page note (no selectors).
    """
    target = [{'source': uri}]
    if quote is not None:
        target = [{
            'source': uri,
            'selector': [
                {'type': 'TextPositionSelector', 'start': 0, 'end': len(quote)},
                {'type': 'TextQuoteSelector', 'exact': quote, 'prefix': '', 'suffix': ''},
            ],
        }]
    return Annotation.from_api({
        'id': annotation_id,
        'created': created or updated,
        'updated': updated,
        'user': 'acct:reader@hypothes.is',
        'uri': uri,
        'group': '__world__',
        'text': text,
        'tags': list(tags),
        'target': target,
        'document': {'title': [title]},
        'links': {'incontext': f'https://hyp.is/{annotation_id}'},
        'permissions': {'read': ['group:__world__']},
    })


@pytest.fixture
def temp_dir():
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def temp_db(temp_dir):
    """Create a temporary database."""
    db = Database(temp_dir / 'db')
    with db:
        yield db


@pytest.fixture
def index(temp_db):
    return IndexEngine(temp_db)
