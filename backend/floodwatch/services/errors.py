class PolicyImportError(ValueError):
    """A policy document failed validation; nothing was applied."""

