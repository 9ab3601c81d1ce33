"""Error taxonomy shared by the supervisor, the enumerator and the HTTP layer.

Each error carries the HTTP status it maps to; ``main`` installs a single
exception handler that renders them as ``{"success": false, "error": ...}``.
"""
from typing import Any, Dict, Optional


class LetheError(Exception):
    status_code = 500

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"success": False, "error": self.message}
        if self.details:
            out["details"] = self.details
        return out


class ValidationError(LetheError):
    """Missing or malformed request fields."""
    status_code = 400


class AuthError(LetheError):
    status_code = 401


class ConflictError(LetheError):
    """A wipe is already running for the device."""
    status_code = 409


class NotFoundError(LetheError):
    status_code = 404


class ExternalToolError(LetheError):
    """The lethe binary (or an OS listing tool) could not be run or failed."""
    status_code = 500


class ArtifactError(LetheError):
    """Log or certificate persistence failed after the wipe itself finished.

    Never changes the job state; it is recorded on the session instead.
    """
    status_code = 500
