"""Filtering mirrored annotations.

A FilterSpec is built once per command from the CLI options and evaluated
as a pure predicate over each annotation. Tag-only filters are answered
from the tag index; anything else scans the record store.
"""

from dataclasses import dataclass, fields
from datetime import datetime, timedelta, timezone

import dateparser

from .errors import TagNotFound
from .index import IndexEngine
from .models import Annotation, EMPTY_TAG


@dataclass(frozen=True)
class FilterSpec:
    """Declarative filter over annotations. Empty values mean "don't filter"."""
    from_date: datetime | None = None     # inclusive lower bound
    before: datetime | None = None        # exclusive upper bound
    include_updated: bool = False         # compare `updated` instead of `created`
    uri: str = ""
    any: str = ""                         # uri, text, tags or quote
    quote: str = ""
    text: str = ""
    tags: tuple[str, ...] = ()
    and_: bool = False                    # all of `tags` rather than any
    exclude_tags: tuple[str, ...] = ()
    page_notes: bool = False              # only page notes
    annotations: bool = False             # only in-document annotations
    not_: bool = False                    # keep what fails everything else
    descending: bool = False

    def __post_init__(self):
        if self.from_date is not None and self.before is not None:
            raise ValueError("Use either a 'from' date or a 'before' date, not both")
        if self.page_notes and self.annotations:
            raise ValueError("Use either page notes or annotations, not both")
        # Accept lists from callers but keep the filter immutable
        object.__setattr__(self, 'tags', tuple(self.tags))
        object.__setattr__(self, 'exclude_tags', tuple(self.exclude_tags))

    @property
    def is_tag_only(self) -> bool:
        """True when only the tag predicate is set."""
        if not self.tags or self.not_:
            return False
        ignored = {'tags', 'and_', 'descending'}
        return all(
            getattr(self, f.name) == f.default
            for f in fields(self) if f.name not in ignored
        )


def _tag_set(tags) -> set[str]:
    # Same folding as the index: blanks and the sentinel mean "no tag"
    stripped = {(tag or '').strip() for tag in tags}
    return stripped - {'', EMPTY_TAG}


def _query_tags(tags) -> set[str]:
    wanted = _tag_set(tags)
    if any((tag or '').strip() in ('', EMPTY_TAG) for tag in tags):
        wanted.add(EMPTY_TAG)
    return wanted


def _date_of(annotation: Annotation, spec: FilterSpec) -> datetime:
    return annotation.updated if spec.include_updated else annotation.created


def _matches_all(spec: FilterSpec, annotation: Annotation) -> bool:
    """Conjunction of every predicate except negation."""
    date = _date_of(annotation, spec)
    if spec.from_date is not None and date < spec.from_date:
        return False
    if spec.before is not None and date >= spec.before:
        return False

    if spec.uri and spec.uri not in annotation.uri:
        return False
    if spec.text and spec.text not in annotation.text:
        return False
    quote_text = " ".join(annotation.quotes)
    if spec.quote and spec.quote not in quote_text:
        return False
    if spec.any:
        haystacks = (annotation.uri, annotation.text, " ".join(annotation.tags), quote_text)
        if not any(spec.any in haystack for haystack in haystacks):
            return False

    held = _tag_set(annotation.tags) or {EMPTY_TAG}
    if spec.tags:
        wanted = _query_tags(spec.tags)
        if spec.and_:
            if not wanted <= held:
                return False
        elif not wanted & held:
            return False
    if spec.exclude_tags and held & _query_tags(spec.exclude_tags):
        return False

    if spec.page_notes and not annotation.is_page_note:
        return False
    if spec.annotations and annotation.is_page_note:
        return False
    return True


def matches(spec: FilterSpec, annotation: Annotation) -> bool:
    """Evaluate a FilterSpec against one annotation.

    Negation applies to the whole conjunction, not to each predicate: with
    ``not_`` an annotation is kept if it fails any one of the others.
    """
    result = _matches_all(spec, annotation)
    return not result if spec.not_ else result


def _tag_candidates(index: IndexEngine, spec: FilterSpec) -> set[str]:
    id_sets = []
    for tag in spec.tags:
        try:
            id_sets.append(index.annotations_of(tag))
        except TagNotFound:
            id_sets.append(set())
    if spec.and_:
        return set.intersection(*id_sets)
    return set.union(*id_sets)


def filter_annotations(index: IndexEngine, spec: FilterSpec) -> list[Annotation]:
    """Annotations matching ``spec``, sorted by date.

    Ascending unless ``descending`` is set or an upper bound (``before``)
    is given, mirroring how the remote pages in each direction.
    """
    if spec.is_tag_only:
        candidates = index.get_many(sorted(_tag_candidates(index, spec)))
        # Candidates still go through the full predicate
        found = [a for a in candidates if matches(spec, a)]
    else:
        found = [a for a in index.iterate() if matches(spec, a)]

    descending = spec.descending or spec.before is not None
    found.sort(key=lambda a: (_date_of(a, spec), a.id), reverse=descending)
    return found


def parse_date(value: str, now: datetime | None = None) -> datetime:
    """Parse a CLI date such as '2024-03-01', 'yesterday', '3 days ago' or 'March 3'.

    'today' and 'yesterday' mean midnight UTC. Anything else goes to
    dateparser, relative to ``now``; dates without a timezone are UTC.
    """
    now = now or datetime.now(timezone.utc)
    text = value.strip().lower()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if text == 'today':
        return midnight
    if text == 'yesterday':
        return midnight - timedelta(days=1)

    dt = dateparser.parse(value.strip(), settings={
        'RELATIVE_BASE': now.astimezone(timezone.utc).replace(tzinfo=None),
        'TIMEZONE': 'UTC',
        'TO_TIMEZONE': 'UTC',
        'RETURN_AS_TIMEZONE_AWARE': True,
        'PREFER_DATES_FROM': 'past',
    })
    if dt is None:
        raise ValueError(
            f"Couldn't read {value!r} as a date; try YYYY-MM-DD, 'yesterday' or '3 days ago'"
        )
    return dt
