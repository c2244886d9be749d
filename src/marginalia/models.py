"""Annotation records mirrored from Hypothesis.

Annotations arrive as JSON from the Hypothesis API and are cached verbatim:
fields we don't use directly (permissions, user_info, flags...) are kept in
``extra`` so that ``Annotation.from_api(a.to_api())`` loses nothing.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any


# Reserved tag standing in for "no tags" in the tag index
EMPTY_TAG = "Untagged"

# Reserved tag meaning "drop this annotation from the mirror"
IGNORE_TAG = "marginalia_ignore"

# Cursor value meaning "beginning of time"
MIN_DATE = "1900-01-01T00:00:00.000Z"

_KNOWN_FIELDS = (
    'id', 'created', 'updated', 'user', 'uri', 'group', 'text', 'tags',
    'target', 'document', 'links',
)


def parse_datetime(dt_str: str | None) -> datetime | None:
    """Parse an ISO 8601 timestamp from the API into an aware datetime."""
    if not dt_str:
        return None
    try:
        dt = datetime.fromisoformat(dt_str.replace('Z', '+00:00'))
    except (ValueError, TypeError):
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def format_datetime(dt: datetime) -> str:
    """Format an aware datetime the way the API does."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


@dataclass
class Annotation:
    """A Hypothesis annotation."""
    id: str
    created: datetime
    updated: datetime
    uri: str = ""
    group: str = "__world__"
    user: str = ""
    text: str = ""
    tags: list[str] = field(default_factory=list)
    target: list[dict] = field(default_factory=list)   # selectors, opaque
    document: dict = field(default_factory=dict)        # title etc., opaque
    links: dict = field(default_factory=dict)
    extra: dict = field(default_factory=dict)           # everything else

    @classmethod
    def from_api(cls, data: dict[str, Any]) -> 'Annotation':
        """Build from a Hypothesis API row (or a stored record)."""
        if not data.get('id'):
            raise ValueError("annotation has no id")
        created = parse_datetime(data.get('created'))
        updated = parse_datetime(data.get('updated'))
        if created is None:
            raise ValueError(f"annotation {data['id']} has no valid 'created' timestamp")
        if updated is None:
            updated = created
        return cls(
            id=data['id'],
            created=created,
            updated=updated,
            uri=data.get('uri') or '',
            group=data.get('group') or '__world__',
            user=data.get('user') or '',
            text=data.get('text') or '',
            tags=list(data.get('tags') or []),
            target=list(data.get('target') or []),
            document=dict(data.get('document') or {}),
            links=dict(data.get('links') or {}),
            extra={k: v for k, v in data.items() if k not in _KNOWN_FIELDS},
        )

    def to_api(self) -> dict[str, Any]:
        """Serialize back to the API's JSON shape."""
        data = dict(self.extra)
        data.update({
            'id': self.id,
            'created': format_datetime(self.created),
            'updated': format_datetime(self.updated),
            'user': self.user,
            'uri': self.uri,
            'group': self.group,
            'text': self.text,
            'tags': list(self.tags),
            'target': list(self.target),
            'document': dict(self.document),
            'links': dict(self.links),
        })
        return data

    @property
    def quotes(self) -> list[str]:
        """Highlighted text from TextQuoteSelectors."""
        quotes = []
        for target in self.target:
            for selector in target.get('selector') or []:
                if selector.get('type') == 'TextQuoteSelector' and selector.get('exact'):
                    quotes.append(selector['exact'])
        return quotes

    @property
    def is_page_note(self) -> bool:
        # Page notes target the document as a whole, no selectors
        return not any(target.get('selector') for target in self.target)

    @property
    def title(self) -> str:
        titles = self.document.get('title') or []
        if isinstance(titles, str):
            return titles or "Untitled document"
        return titles[0] if titles and titles[0] else "Untitled document"

    @property
    def incontext(self) -> str:
        return self.links.get('incontext') or self.uri
