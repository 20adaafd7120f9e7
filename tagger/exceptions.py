class TaggingError(Exception):
    pass


class SessionSetupError(TaggingError):
    """Missing or invalid setup (no server chosen, impossible starting score)."""
    pass


class InvalidActionError(TaggingError):
    """Action that the current state does not allow (its control is disabled)."""
    pass


class StoreError(TaggingError):
    pass


class RecordNotFoundError(StoreError):
    pass


class ResumeError(TaggingError):
    pass
