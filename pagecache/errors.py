"""Error taxonomy for the page cache core.

The core reports failures synchronously by raising these; callers (HTTP
handlers, CLI, worker) decide whether to retry.
"""


class PageCacheError(Exception):
    """Base class for page cache failures."""

    retryable = False

    def __init__(self, message, **context):
        super().__init__(message)
        self.message = message
        self.context = context

    def to_dict(self):
        data = {"error": type(self).__name__, "message": self.message, "retryable": self.retryable}
        data.update({k: v for k, v in self.context.items() if v is not None})
        return data


class DuplicatePage(PageCacheError):
    """A page was written twice with conflicting storage paths in one attempt."""


class ActiveJobExists(PageCacheError):
    """A document already has a queued or processing conversion job."""


class AccessDenied(PageCacheError):
    """The principal may not view the document."""


class StorageUnavailable(PageCacheError):
    """The storage backend failed, timed out or refused the request."""

    retryable = True


class PhantomPageDetected(PageCacheError):
    """A page record has no live backing object. Triggers cleanup."""


class ConversionFailed(PageCacheError):
    """Terminal conversion failure, carries the worker's error message."""


class InvalidTransition(PageCacheError):
    """A job was asked to move from a state that does not allow it."""


class JobNotFound(PageCacheError):
    pass


class DocumentNotFound(PageCacheError):
    pass


class PageNotFound(PageCacheError):
    pass


class ObjectNotFound(PageCacheError):
    """The storage backend has no object at the requested path."""
