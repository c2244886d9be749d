"""Editing tags and deleting annotations, locally and on Hypothesis.

Changes are pushed upstream first and the annotation Hypothesis returns is
then upserted, so the local copy carries the new ``updated`` timestamp. The
next sync fetches it again and counts it as updated; re-applying the same
record leaves the index unchanged.

Deletes are applied one annotation at a time, upstream then locally, so a
failure part way leaves the mirror matching Hypothesis for every annotation
already handled.
"""

import logging
from typing import Iterable

from .errors import IndexEncodingError, InvalidTag
from .hypothesis import HypothesisClient
from .index import IndexEngine, TAG_DELIMITER
from .models import Annotation, EMPTY_TAG, IGNORE_TAG

logger = logging.getLogger(__name__)


def validate_tag(tag: str) -> str:
    """Return the stripped tag, rejecting blanks, reserved tags and the delimiter."""
    tag = (tag or '').strip()
    if not tag:
        raise InvalidTag("Tag can't be empty")
    if tag in (EMPTY_TAG, IGNORE_TAG):
        raise InvalidTag(f"{tag!r} is reserved")
    if TAG_DELIMITER in tag:
        raise IndexEncodingError(f"Tag {tag!r} can't contain {TAG_DELIMITER!r}")
    return tag


def add_tag(
    index: IndexEngine,
    client: HypothesisClient,
    annotations: Iterable[Annotation],
    tag: str,
) -> int:
    """Add ``tag`` to each annotation that doesn't have it. Returns count changed."""
    tag = validate_tag(tag)
    changed = 0
    for annotation in annotations:
        if tag in annotation.tags:
            continue
        updated = client.update_tags(annotation.id, [*annotation.tags, tag])
        index.upsert(updated)
        changed += 1
    logger.info("added tag %r to %d annotations", tag, changed)
    return changed


def remove_tag(
    index: IndexEngine,
    client: HypothesisClient,
    annotations: Iterable[Annotation],
    tag: str,
) -> int:
    """Remove ``tag`` from each annotation holding it. Returns count changed."""
    tag = validate_tag(tag)
    changed = 0
    for annotation in annotations:
        if tag not in annotation.tags:
            continue
        updated = client.update_tags(annotation.id, [t for t in annotation.tags if t != tag])
        index.upsert(updated)
        changed += 1
    logger.info("removed tag %r from %d annotations", tag, changed)
    return changed


def delete_annotations(
    index: IndexEngine,
    client: HypothesisClient,
    annotations: Iterable[Annotation],
    remote: bool = False,
) -> int:
    """Drop annotations from the mirror.

    With ``remote`` they are deleted from Hypothesis too. Otherwise they are
    tagged with the ignore tag upstream, so future syncs skip them. Each
    annotation is removed locally as soon as its upstream call succeeds.
    """
    deleted = 0
    for annotation in annotations:
        if remote:
            client.delete(annotation.id)
        elif IGNORE_TAG not in annotation.tags:
            client.update_tags(annotation.id, [*annotation.tags, IGNORE_TAG])
        if index.exists(annotation.id):
            index.delete(annotation.id)
        deleted += 1
    logger.info("deleted %d annotations (remote=%s)", deleted, remote)
    return deleted
