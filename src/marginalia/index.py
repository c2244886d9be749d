"""Index engine: keeps records and both tag mappings consistent.

The two mappings are

    annotation_tags:  id  -> "tag1;tag2"   ("Untagged" when there are none)
    tag_annotations:  tag -> "id1;id2"

and every write goes through read-modify-write here. Appending to a stored
list without reading it first can't deduplicate, so an update would leave
stale tag entries behind.

Each public mutation runs in a single database transaction: either all of
an annotation's mappings change or none do.
"""

import logging
from collections import defaultdict
from typing import Iterable, Iterator

from .database import Database
from .errors import AnnotationNotFound, IndexEncodingError, TagNotFound
from .models import Annotation, EMPTY_TAG, IGNORE_TAG


logger = logging.getLogger(__name__)

TAG_DELIMITER = ';'


def normalize_tags(tags: Iterable[str]) -> list[str]:
    """Strip, drop blanks and duplicates, keep first-seen order.

    The empty-tag sentinel is folded away like a blank tag. Raises
    IndexEncodingError for a tag containing the delimiter.
    """
    result = []
    seen = set()
    for tag in tags:
        tag = (tag or '').strip()
        if not tag or tag == EMPTY_TAG or tag in seen:
            continue
        if TAG_DELIMITER in tag:
            raise IndexEncodingError(f"Tag {tag!r} can't contain {TAG_DELIMITER!r}")
        seen.add(tag)
        result.append(tag)
    return result


def join_values(values: Iterable[str]) -> str:
    return TAG_DELIMITER.join(values)


def split_values(joined: str) -> list[str]:
    """Split a stored index value; empty segments mean corruption."""
    if not isinstance(joined, str):
        raise IndexEncodingError(f"Index value {joined!r} is not text")
    parts = joined.split(TAG_DELIMITER)
    if any(not part for part in parts):
        raise IndexEncodingError(f"Malformed index value {joined!r}")
    return parts


class IndexEngine:
    """Upsert/delete annotations and answer tag lookups."""

    def __init__(self, db: Database):
        self.db = db

    # Mutations

    def upsert(self, annotation: Annotation) -> bool:
        """Insert or fully replace an annotation.

        Old tag memberships are removed before the new ones are written, so
        repeated upserts of the same record leave the same mappings.

        Returns True if the annotation already existed.
        """
        if IGNORE_TAG in annotation.tags:
            raise ValueError(f"{IGNORE_TAG!r} annotations are never stored")
        tags = normalize_tags(annotation.tags)
        with self.db.transaction():
            existed = self.db.record_exists(annotation.id)
            if existed:
                self._unlink(annotation.id)
            self.db.put_record(annotation.id, annotation.to_api())
            self._link(annotation.id, tags)
        logger.debug("%s %s tags=%s", "updated" if existed else "added", annotation.id, tags)
        return existed

    def delete(self, annotation_id: str) -> Annotation:
        """Remove an annotation and all its tag memberships."""
        with self.db.transaction():
            record = self.db.remove_record(annotation_id)
            self._unlink(annotation_id)
        logger.debug("deleted %s", annotation_id)
        return Annotation.from_api(record)

    def delete_batch(self, annotation_ids: Iterable[str]) -> list[Annotation]:
        """Remove several annotations as one unit.

        All annotation rows go first, then each affected tag row is rewritten
        once. Nothing is removed if any ID is unknown.
        """
        annotation_ids = list(dict.fromkeys(annotation_ids))
        for annotation_id in annotation_ids:
            if not self.db.record_exists(annotation_id):
                raise AnnotationNotFound(annotation_id)

        removed = []
        by_tag: dict[str, set[str]] = defaultdict(set)
        with self.db.transaction():
            for annotation_id in annotation_ids:
                for tag in self._stored_tags(annotation_id):
                    by_tag[tag].add(annotation_id)
                self.db.delete_annotation_tags(annotation_id)
                removed.append(Annotation.from_api(self.db.remove_record(annotation_id)))
            for tag, ids in by_tag.items():
                self._remove_from_tag(tag, ids)
        logger.debug("deleted %d annotations, touched %d tags", len(removed), len(by_tag))
        return removed

    def clear(self) -> None:
        self.db.clear()

    # Lookups

    def get(self, annotation_id: str) -> Annotation:
        return Annotation.from_api(self.db.get_record(annotation_id))

    def exists(self, annotation_id: str) -> bool:
        return self.db.record_exists(annotation_id)

    def iterate(self) -> Iterator[Annotation]:
        for record in self.db.iter_records():
            yield Annotation.from_api(record)

    def get_many(self, annotation_ids: Iterable[str]) -> list[Annotation]:
        return [self.get(annotation_id) for annotation_id in annotation_ids]

    def count(self) -> int:
        return self.db.count_records()

    def tags_of(self, annotation_id: str) -> set[str]:
        """Tags held by an annotation; empty set when untagged."""
        stored = self.db.get_annotation_tags(annotation_id)
        if stored is None:
            if self.db.record_exists(annotation_id):
                raise IndexEncodingError(f"Annotation {annotation_id!r} has no tag index entry")
            raise AnnotationNotFound(annotation_id)
        tags = set(split_values(stored))
        tags.discard(EMPTY_TAG)
        return tags

    def annotations_of(self, tag: str) -> set[str]:
        """IDs of annotations holding a tag.

        A blank tag or the empty-tag sentinel looks up untagged annotations.
        """
        key = (tag or '').strip() or EMPTY_TAG
        stored = self.db.get_tag_annotations(key)
        if stored is None:
            raise TagNotFound(tag)
        return set(split_values(stored))

    def all_tags(self) -> dict[str, int]:
        """Every indexed tag (including the sentinel) with its annotation count."""
        return {
            tag: len(split_values(ids))
            for tag, ids in self.db.iter_tag_annotations()
        }

    def check_consistency(self) -> list[str]:
        """Compare the two mappings and the records; list any mismatches."""
        problems = []
        forward: dict[str, set[str]] = {}
        for annotation_id, joined in self.db.iter_annotation_tags():
            forward[annotation_id] = set(split_values(joined))
        reverse: dict[str, set[str]] = defaultdict(set)
        for tag, joined in self.db.iter_tag_annotations():
            for annotation_id in split_values(joined):
                reverse[annotation_id].add(tag)

        record_ids = {record['id'] for record in self.db.iter_records()}
        for annotation_id in sorted(record_ids - set(forward)):
            problems.append(f"{annotation_id}: record has no tag entry")
        for annotation_id in sorted(set(forward) - record_ids):
            problems.append(f"{annotation_id}: tag entry without a record")
        for annotation_id in sorted(set(forward) | set(reverse)):
            held = forward.get(annotation_id, set())
            indexed = reverse.get(annotation_id, set())
            if held != indexed:
                problems.append(
                    f"{annotation_id}: holds {sorted(held)} but indexed under {sorted(indexed)}"
                )
        return problems

    # Internals

    def _stored_tags(self, annotation_id: str) -> list[str]:
        stored = self.db.get_annotation_tags(annotation_id)
        return split_values(stored) if stored is not None else []

    def _link(self, annotation_id: str, tags: list[str]) -> None:
        keys = tags or [EMPTY_TAG]
        for tag in keys:
            stored = self.db.get_tag_annotations(tag)
            ids = split_values(stored) if stored is not None else []
            if annotation_id not in ids:
                ids.append(annotation_id)
            self.db.set_tag_annotations(tag, join_values(ids))
        self.db.set_annotation_tags(annotation_id, join_values(keys))

    def _unlink(self, annotation_id: str) -> None:
        for tag in self._stored_tags(annotation_id):
            self._remove_from_tag(tag, {annotation_id})
        self.db.delete_annotation_tags(annotation_id)

    def _remove_from_tag(self, tag: str, annotation_ids: set[str]) -> None:
        stored = self.db.get_tag_annotations(tag)
        if stored is None:
            raise IndexEncodingError(
                f"Tag {tag!r} is missing from the index but annotations reference it"
            )
        remaining = [i for i in split_values(stored) if i not in annotation_ids]
        if remaining:
            self.db.set_tag_annotations(tag, join_values(remaining))
        else:
            self.db.delete_tag_annotations(tag)
