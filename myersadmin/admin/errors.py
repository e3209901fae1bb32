"""Exceptions shared by the admin core."""


class AuthorizationError(RuntimeError):
    """Raised when a principal action is not permitted."""


class ValidationError(RuntimeError):
    """Raised when incoming data fails validation."""


class NotFoundError(ValidationError):
    """Raised when a record id does not exist in its collection."""


class StorageError(RuntimeError):
    """Raised when a collection cannot be serialized into its slot."""
