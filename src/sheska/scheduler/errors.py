"""
Exceptions raised by the post scheduler.

Configuration problems (a codec registered twice, a stored post whose type
was never registered) derive from :class:`SerializerFatalException` and are
never retried. A malformed stored document raises :class:`SerializerException`.
"""


class SchedulerError(Exception):
    """Base exception for all scheduler errors."""
    pass


class SchedulerStoppedError(SchedulerError):
    """Raised when a post is scheduled on a scheduler that was stopped."""

    def __init__(self) -> None:
        super().__init__("Tried to schedule a post, but the scheduler isn't running")


class SerializerException(SchedulerError):
    """Raised when a stored document cannot be turned back into a post."""
    pass


class SerializerFatalException(SchedulerError):
    """Raised on codec configuration errors. These are programming mistakes."""
    pass


class DuplicatePostTypeError(SerializerFatalException):
    """Raised when a second codec is registered under an existing type id."""

    def __init__(self, post_type: str):
        self.post_type = post_type
        super().__init__(f"A serializer is already registered for post type {post_type!r}")


class UnknownPostTypeError(SerializerFatalException):
    """Raised when a post type id has no registered codec."""

    def __init__(self, post_type: str):
        self.post_type = post_type
        super().__init__(
            f"No serializer registered for post type {post_type!r}; "
            "call register_post_type() before using it"
        )
