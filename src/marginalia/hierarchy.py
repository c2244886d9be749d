"""Grouping annotations into a folder-like hierarchy.

A hierarchy is a list of OrderBy levels, e.g. [tag, base_uri]: annotations
are split by tag, then each tag's annotations by site. build_tree returns
the resulting tree of GroupNodes; what gets written for each leaf is up to
the caller.

Nested tags ("science/biology" with separator "/") become nested path
segments only here, at display time. The stored tag never changes.
"""

import re
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from urllib.parse import urlsplit

from .models import Annotation, EMPTY_TAG


class OrderBy(str, Enum):
    TAG = 'tag'
    URI = 'uri'
    BASE_URI = 'base_uri'
    TITLE = 'title'
    ID = 'id'
    CREATED = 'created'
    UPDATED = 'updated'


# Levels that make sense as folders (dates are for sorting only)
GROUPABLE = (OrderBy.TAG, OrderBy.URI, OrderBy.BASE_URI, OrderBy.TITLE, OrderBy.ID)

_UNSAFE = re.compile(r'[\\/:*?"<>|\x00-\x1f]+')


def base_uri(uri: str) -> str:
    """Scheme and host of a URI, or the URI itself if it doesn't parse."""
    parts = urlsplit(uri)
    if parts.scheme and parts.netloc:
        return f"{parts.scheme}://{parts.netloc}"
    return uri


def clean_uri(uri: str) -> str:
    """URI without its scheme, for sorting and naming."""
    parts = urlsplit(uri)
    if parts.scheme and parts.netloc:
        return uri[len(parts.scheme) + 3:]
    return uri


def sanitize(name: str) -> str:
    """Make a string usable as a single path segment."""
    name = _UNSAFE.sub('_', name).strip(' .')
    return name[:250] or 'EMPTY'


def nest_tag(tag: str, separator: str | None) -> list[str]:
    """Split a nested tag into path segments, e.g. 'a/b' -> ['a', 'b']."""
    if not separator or separator not in tag:
        return [sanitize(tag)]
    return [sanitize(part) for part in tag.split(separator) if part.strip()] or [sanitize(tag)]


def group_annotations(
    order: OrderBy,
    annotations: list[Annotation],
    nested_separator: str | None = None,
) -> dict[tuple[str, ...], list[Annotation]]:
    """Split annotations by one hierarchy level.

    Keys are tuples of path segments (more than one only for nested tags).
    With OrderBy.TAG an annotation lands under each of its tags, or under
    the empty-tag sentinel when it has none.
    """
    order = OrderBy(order)
    groups: dict[tuple[str, ...], list[Annotation]] = {}
    for annotation in annotations:
        if order is OrderBy.TAG:
            tags = list(dict.fromkeys(t.strip() for t in annotation.tags if t.strip()))
            keys = [tuple(nest_tag(tag, nested_separator)) for tag in tags] or [(EMPTY_TAG,)]
        elif order is OrderBy.URI:
            keys = [(sanitize(clean_uri(annotation.uri)),)]
        elif order is OrderBy.BASE_URI:
            keys = [(sanitize(clean_uri(base_uri(annotation.uri))),)]
        elif order is OrderBy.TITLE:
            keys = [(sanitize(annotation.title),)]
        elif order is OrderBy.ID:
            keys = [(annotation.id,)]
        else:
            raise ValueError(f"{order.value} can't be used as a hierarchy level")
        for key in dict.fromkeys(keys):
            groups.setdefault(key, []).append(annotation)
    return groups


def sort_key(annotation: Annotation, sort: list[OrderBy]) -> tuple:
    values = []
    for field_name in sort:
        field_name = OrderBy(field_name)
        if field_name is OrderBy.TAG:
            values.append(",".join(annotation.tags))
        elif field_name is OrderBy.URI:
            values.append(clean_uri(annotation.uri))
        elif field_name is OrderBy.BASE_URI:
            values.append(clean_uri(base_uri(annotation.uri)))
        elif field_name is OrderBy.TITLE:
            values.append(annotation.title)
        elif field_name is OrderBy.ID:
            values.append(annotation.id)
        elif field_name is OrderBy.CREATED:
            values.append(annotation.created)
        else:
            values.append(annotation.updated)
    return tuple(values)


def sort_annotations(annotations: list[Annotation], sort: list[OrderBy]) -> list[Annotation]:
    """Sort by several keys in turn (stable)."""
    return sorted(annotations, key=lambda a: sort_key(a, sort))


@dataclass
class GroupNode:
    """One folder in the hierarchy. Leaves hold annotations."""
    name: str
    path: tuple[str, ...] = ()
    children: dict[str, 'GroupNode'] = field(default_factory=dict)
    annotations: list[Annotation] = field(default_factory=list)

    @property
    def is_leaf(self) -> bool:
        return not self.children

    def child(self, name: str) -> 'GroupNode':
        if name not in self.children:
            self.children[name] = GroupNode(name=name, path=self.path + (name,))
        return self.children[name]

    def leaves(self) -> list['GroupNode']:
        """Nodes holding annotations, in path order.

        A nested tag's parent can hold annotations and children at once.
        """
        found = []
        stack = [self]
        while stack:
            node = stack.pop()
            if node.annotations or node.is_leaf:
                found.append(node)
            if not node.is_leaf:
                stack.extend(node.children[name] for name in sorted(node.children, reverse=True))
        return found


def build_tree(
    annotations: list[Annotation],
    hierarchy: list[OrderBy],
    nested_separator: str | None = None,
    sort: list[OrderBy] | None = None,
) -> GroupNode:
    """Build the group tree for a hierarchy, breadth first.

    Works through a queue of (remaining levels, annotations, node). An empty
    hierarchy gives a single root leaf holding everything.
    """
    sort = sort or [OrderBy.CREATED]
    root = GroupNode(name='')
    queue = deque([(list(hierarchy), list(annotations), root)])
    while queue:
        levels, subset, node = queue.popleft()
        if not levels:
            node.annotations.extend(sort_annotations(subset, sort))
            continue
        for key, group in group_annotations(levels[0], subset, nested_separator).items():
            target = node
            for segment in key:
                target = target.child(segment)
            queue.append((levels[1:], group, target))
    return root
