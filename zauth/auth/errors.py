"""
Error types for the authentication kernel.

Only configuration mistakes are raised. Validation failures are returned as
field-level error dicts and authentication failures are plain negative
results (None / False), so login UX can branch on them without try/except.
"""


class ConfigurationError(RuntimeError):
    """A required binding or setting was not supplied by the host application."""


def missing_setting(owner: str, name: str) -> ConfigurationError:
    """Build the error raised when `owner` is used without `name` configured."""
    return ConfigurationError(
        f"{owner} requires '{name}' to be configured before use"
    )
