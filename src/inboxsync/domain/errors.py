"""Domain errors for reconciliation runs.

Fatal errors abort a whole invocation. Per-item failures never use these;
they are recorded in the run's error list instead.
"""


class SetupError(RuntimeError):
    """Invocation cannot proceed (instance unknown or disconnected, bad config)."""

    status_code = 400


class InstanceNotFoundError(SetupError):
    status_code = 404


class ConversationNotFoundError(LookupError):
    """Explicitly requested conversation does not exist for the tenant."""

    status_code = 404
