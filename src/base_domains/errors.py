class RelayError(Exception):
    pass


class OrderValidationError(RelayError):
    """Client input rejected before anything is persisted."""


class PersistenceError(RelayError):
    """Local store unavailable; the caller may retry."""


class PublishError(RelayError):
    """The broker did not durably accept an append."""


class HandlerTransientError(RelayError):
    """Handler failed in a way that may succeed on a later attempt."""


class HandlerPermanentError(RelayError):
    """Handler failed in a way no retry will fix."""


class InvalidTransition(RelayError):
    pass
