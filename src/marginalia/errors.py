"""Exceptions raised by the marginalia mirror.

Everything derives from MarginaliaError so the CLI can catch one type,
print a clean message and exit non-zero.
"""


class MarginaliaError(Exception):
    """Base class for all marginalia errors."""


class AnnotationNotFound(MarginaliaError):
    """No annotation with this ID is recorded locally."""

    def __init__(self, annotation_id: str):
        self.id = annotation_id
        super().__init__(f"Couldn't find an annotation with ID {annotation_id!r}")


class TagNotFound(MarginaliaError):
    """No annotation is currently indexed under this tag."""

    def __init__(self, tag: str):
        self.tag = tag
        super().__init__(f"You haven't tagged anything as {tag!r} yet.")


class HypothesisError(MarginaliaError):
    """The Hypothesis API could not be reached or refused the request."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class StoreError(MarginaliaError):
    """Local storage failed (I/O, SQLite)."""


class StoreLocked(StoreError):
    """Another process holds the database directory."""


class IndexEncodingError(StoreError):
    """An index value is malformed or a tag collides with the delimiter."""


class SyncError(MarginaliaError):
    """A sync run stopped part way through.

    ``result`` holds the counts for the pages applied before the failure.
    """

    def __init__(self, message: str, result=None):
        self.result = result
        super().__init__(message)


class ConfigError(MarginaliaError):
    """The configuration is missing or unusable."""


class DoingNothing(MarginaliaError):
    """The user declined a destructive action."""

    def __init__(self):
        super().__init__("I'm a coward. Doing nothing.")


class InvalidTag(MarginaliaError):
    """A tag given on the command line can't be used (blank or reserved)."""
