"""Error taxonomy shared by the CLI and the HTTP servers.

Each error carries the HTTP status the servers answer with; the CLI prints
the message and exits 1.
"""

from __future__ import annotations


class FarmError(Exception):
    """Base class for all reported Agent Farm failures."""

    status_code = 500


class ConfigurationError(FarmError):
    """A required external binary or template is missing."""


class ValidationError(FarmError):
    """Caller input was rejected (bad id, bad port, malformed body)."""

    status_code = 400


class PathOutsideProject(ValidationError):
    """A requested path escapes the project root."""

    status_code = 403


class NotFoundError(FarmError):
    status_code = 404


class ResourceExhausted(FarmError):
    """A bounded resource ran out; the operator can free some and retry."""

    status_code = 429


class TabLimitReached(ResourceExhausted):
    pass


class RegistryExhausted(ResourceExhausted):
    pass


class ProcessSpawnFailure(FarmError):
    """A child process failed to start or never became ready."""


class LockTimeout(FarmError):
    status_code = 503


class UnsupportedOperation(FarmError):
    status_code = 501
