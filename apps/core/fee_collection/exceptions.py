class FeeCollectionError(Exception):
    """Base class for fee collection engine errors."""


class FeedUnavailable(FeeCollectionError):
    """One of the read feeds could not be loaded.

    Never propagated out of the ledger builder: the feed is logged and treated as empty.
    """

    def __init__(self, feed_name, cause=None):
        self.feed_name = feed_name
        self.cause = cause
        message = f"Feed '{feed_name}' is unavailable"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class SessionNotSelected(FeeCollectionError):
    def __init__(self, message='Select an academic session before loading fee details.'):
        super().__init__(message)
