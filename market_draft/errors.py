"""
Error taxonomy for draft sessions, the market feed and persistence.

Pick rejections never mutate session state. Feed and persistence errors are
transient and handled by retry loops; they never reach draft callers.
"""


class DraftError(Exception):
    """Base class for all errors raised by this package."""

    retryable = False


class InvalidConfig(DraftError):
    """Session setup rejected (empty order, bad slot count, league busy)."""


class SessionNotFound(DraftError):
    """No session exists with the requested id."""


class PickRejected(DraftError):
    """A pick or turn action was refused; session state is unchanged."""


class NotYourTurn(PickRejected):
    pass


class AssetUnavailable(PickRejected):
    pass


class RosterFull(PickRejected):
    pass


class SessionNotActive(PickRejected):
    pass


class FeedConnectionError(DraftError):
    """Upstream socket failed or closed unexpectedly."""

    retryable = True


class MalformedMessage(DraftError):
    """Inbound feed payload could not be turned into price ticks."""


class PersistenceFailure(DraftError):
    """The persistence collaborator failed after all retries."""

    retryable = True
