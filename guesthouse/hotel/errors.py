"""Exception types shared across the guesthouse platform."""


class AuthorizationError(RuntimeError):
    """Raised when a user action is not permitted."""


class ValidationError(RuntimeError):
    """Raised when incoming data fails validation."""
