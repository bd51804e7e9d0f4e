"""
Domain errors for the campaign and trigger engine.

Services raise these; API routes map them to HTTP status codes and the
scheduler cycle records them as health issues. Partial send failures and
losing the execute compare-and-set are outcomes, not errors.
"""


class NotificationEngineError(Exception):
    """Base class for engine errors."""
    status_code = 500


class ValidationError(NotificationEngineError):
    """Bad input, rejected before any state change."""
    status_code = 400


class NotFoundError(NotificationEngineError):
    """Unknown campaign, trigger or delivery id."""
    status_code = 404


class ConflictError(NotificationEngineError):
    """Operation not permitted in the entity's current state."""
    status_code = 409


class DependencyFailure(NotificationEngineError):
    """Store or delivery gateway unreachable or not configured."""
    status_code = 503
