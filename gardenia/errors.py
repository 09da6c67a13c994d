class ConflictError(ValueError):
    """Raised when a write collides with existing state (duplicates, used tokens, last owner)."""
