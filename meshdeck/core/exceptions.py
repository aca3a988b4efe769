"""Custom exception classes for MeshDeck."""

from typing import List, Optional


class MeshDeckError(Exception):
    """Base exception for MeshDeck."""

    status_code = 400

    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)

    def to_payload(self) -> dict:
        return {"error": self.message}


class AuthenticationError(MeshDeckError):
    """Raised when no valid session accompanies the request."""

    status_code = 401

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message)

    def to_payload(self) -> dict:
        return {"error": "Unauthorized"}


class AuthorizationError(MeshDeckError):
    """Raised when an authenticated caller lacks the required role."""

    status_code = 403

    def __init__(
        self,
        required: Optional[List[str]] = None,
        required_level: Optional[str] = None,
    ):
        self.required = required
        self.required_level = required_level
        super().__init__("Forbidden")

    def to_payload(self) -> dict:
        payload = {"error": "Forbidden"}
        if self.required is not None:
            payload["required"] = self.required
        if self.required_level is not None:
            payload["requiredLevel"] = self.required_level
        return payload


class ValidationError(MeshDeckError):
    """Raised when caller input is malformed."""

    status_code = 400

    def __init__(self, message: str, valid_values: Optional[List[str]] = None):
        self.valid_values = valid_values
        super().__init__(message)

    def to_payload(self) -> dict:
        payload = {"error": self.message}
        if self.valid_values is not None:
            payload["validValues"] = self.valid_values
        return payload


class ResourceNotFoundError(MeshDeckError):
    """Raised when a requested resource is not found."""

    status_code = 404


class ResourceConflictError(MeshDeckError):
    """Raised when a resource already exists."""

    status_code = 409


class AuditWriteError(MeshDeckError):
    """Raised internally when an audit entry cannot be persisted.

    Never rendered to a client; the audit service converts it into an
    unrecorded outcome.
    """

    status_code = 500
