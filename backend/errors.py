class DiaryError(Exception):
    """Base class for errors surfaced to diary users."""


class StoreOperationError(DiaryError):
    """A document store call failed (network, permission, quota)."""


class NotFoundError(DiaryError):
    pass


class InvalidInputError(DiaryError):
    """Input rejected before any store call was attempted."""
