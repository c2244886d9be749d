"""Incremental sync from Hypothesis into the local index.

One run walks the remote in ascending ``updated`` order, a page at a time,
starting from the cursor stored for the configured scope:

    fetch page (updated >= cursor) -> apply every record -> store cursor

The cursor is written only once a page is fully applied, so an interrupted
run redoes at most one page and never skips one. Re-applying a page is
harmless: upserting an identical record rebuilds identical mappings.

The fetch is inclusive, so records sharing the cursor timestamp come back on
the next page. Those already applied are recognised and not counted twice.
"""

import logging
from dataclasses import dataclass

from .config import Scope
from .errors import HypothesisError, MarginaliaError, SyncError
from .hypothesis import MAX_PAGE_SIZE
from .index import IndexEngine
from .models import Annotation, IGNORE_TAG, MIN_DATE, format_datetime, parse_datetime

logger = logging.getLogger(__name__)

CURSOR_PREFIX = 'sync_cursor:'
DEFAULT_PAGE_SIZE = 200


@dataclass
class SyncResult:
    """Counts for the work a sync run completed."""
    added: int = 0
    updated: int = 0
    ignored: int = 0
    pages: int = 0
    cursor: str = MIN_DATE


class SyncEngine:
    """Pull annotations for one scope and apply them to the index.

    ``remote`` needs a ``search(scope, since, order=..., page_size=...)``
    method returning a list of Annotations updated at or after ``since``,
    oldest first (HypothesisClient does).
    """

    def __init__(self, index: IndexEngine, remote, scope: Scope, page_size: int = DEFAULT_PAGE_SIZE):
        self.index = index
        self.remote = remote
        self.scope = scope
        self.page_size = page_size

    @property
    def cursor_key(self) -> str:
        return CURSOR_PREFIX + self.scope.key

    def get_cursor(self) -> str:
        return self.index.db.get_meta(self.cursor_key) or MIN_DATE

    def set_cursor(self, cursor: str) -> None:
        self.index.db.set_meta(self.cursor_key, cursor)

    def reset(self) -> None:
        """Rewind to the beginning of time; the next sync re-reads everything."""
        self.set_cursor(MIN_DATE)

    def sync(self) -> SyncResult:
        """Run until the remote returns no new records.

        Raises SyncError (with the partial result attached) if a fetch or an
        apply fails; the stored cursor then marks the last complete page.
        """
        cursor = self.get_cursor()
        result = SyncResult(cursor=cursor)
        # IDs applied in this run whose ``updated`` equals the cursor
        at_cursor: set[str] = set()
        limit = self.page_size
        logger.info("sync %s from %s", self.scope.key, cursor)

        while True:
            try:
                page = self.remote.search(self.scope, cursor, order="asc", page_size=limit)
            except HypothesisError as e:
                raise SyncError(f"Sync stopped after {result.pages} pages: {e}", result) from e
            if not page:
                break

            try:
                applied = self._apply_page(page, cursor, at_cursor, result)
            except MarginaliaError as e:
                raise SyncError(f"Sync stopped after {result.pages} pages: {e}", result) from e

            if not applied:
                if len(page) < limit:
                    break
                # A full page of records already seen at the cursor
                if limit >= MAX_PAGE_SIZE:
                    raise SyncError(
                        f"More than {MAX_PAGE_SIZE} annotations share the timestamp "
                        f"{cursor}; can't page past them",
                        result,
                    )
                limit = min(limit * 2, MAX_PAGE_SIZE)
                logger.debug("page full of ties at %s, retrying with %d rows", cursor, limit)
                continue
            limit = self.page_size

            last = format_datetime(page[-1].updated)
            if last != cursor:
                at_cursor = set()
            at_cursor.update(a.id for a in page if format_datetime(a.updated) == last)
            cursor = last
            self.set_cursor(cursor)
            result.pages += 1
            result.cursor = cursor
            logger.info(
                "page %d applied: cursor=%s added=%d updated=%d ignored=%d",
                result.pages, cursor, result.added, result.updated, result.ignored,
            )

        return result

    def _apply_page(
        self,
        page: list[Annotation],
        cursor: str,
        at_cursor: set[str],
        result: SyncResult,
    ) -> int:
        """Apply one page. Returns how many records were new to this run."""
        cursor_dt = parse_datetime(cursor)
        applied = 0
        for annotation in page:
            if annotation.updated == cursor_dt and self._already_applied(annotation, at_cursor):
                continue
            applied += 1
            if IGNORE_TAG in annotation.tags:
                if self.index.exists(annotation.id):
                    self.index.delete(annotation.id)
                result.ignored += 1
            elif self.index.upsert(annotation):
                result.updated += 1
            else:
                result.added += 1
        return applied

    def _already_applied(self, annotation: Annotation, at_cursor: set[str]) -> bool:
        if annotation.id in at_cursor:
            return True
        if not self.index.exists(annotation.id):
            # An ignored record at the cursor was dropped by an earlier run
            return IGNORE_TAG in annotation.tags
        return self.index.get(annotation.id).updated == annotation.updated
