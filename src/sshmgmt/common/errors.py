"""Error taxonomy shared by the control plane and node agents.

Each layer classifies a failure exactly once into one of the exceptions below.
Every exception renders to the ``{"Err": {...}}`` body used at the HTTP boundary
through :meth:`SSHMgmtError.to_payload`, and carries the status code that body is
served with. Nothing here retries or recovers.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class SSHMgmtError(Exception):
    """Base class for classified errors that cross layer boundaries unchanged."""

    error_type = "internal"
    status_code = 500

    def __init__(self, message: str, *, code: Any = None, raw_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.raw_message = raw_message

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.error_type, "code": self.code, "msg": self.message}
        if self.raw_message is not None:
            payload["raw_msg"] = self.raw_message
        return payload


# Store


class StoreErrorKind(str, Enum):
    NOT_FOUND = "NotFound"
    UNEXPECTED = "Unexpected"


class StoreError(SSHMgmtError):
    error_type = "db"

    def __init__(self, kind: StoreErrorKind, *, raw_message: Optional[str] = None) -> None:
        if kind is StoreErrorKind.NOT_FOUND:
            message, code = "Record not found", 404
        else:
            message, code = "Unexpected Error", 500
        super().__init__(message, code=code, raw_message=raw_message)
        self.kind = kind
        self.status_code = code


class RecordNotFound(StoreError):
    def __init__(self, entity: str, record_id: Any) -> None:
        super().__init__(StoreErrorKind.NOT_FOUND, raw_message=f"{entity} {record_id} not found")
        self.entity = entity
        self.record_id = record_id


class SellAlreadyVerified(SSHMgmtError):
    error_type = "db"
    status_code = 409

    def __init__(self, sell_id: int) -> None:
        super().__init__(f"sell {sell_id} is already verified", code=409)
        self.sell_id = sell_id


# Transport


class TransportErrorKind(str, Enum):
    CONNECTION_REFUSED = "ConnectionRefused"
    TIMEOUT = "Timeout"
    REQUEST_ERROR = "RequestError"
    UNEXPECTED = "Unexpected"


_TRANSPORT_DETAILS = {
    TransportErrorKind.CONNECTION_REFUSED: (111, "connection refused"),
    TransportErrorKind.TIMEOUT: (110, "connection timeout"),
    TransportErrorKind.REQUEST_ERROR: (400, "request error"),
    TransportErrorKind.UNEXPECTED: (900, "unexpected error"),
}


class TransportError(SSHMgmtError):
    error_type = "req"
    status_code = 502

    def __init__(self, kind: TransportErrorKind, *, raw_message: Optional[str] = None) -> None:
        code, message = _TRANSPORT_DETAILS[kind]
        super().__init__(message, code=code, raw_message=raw_message)
        self.kind = kind


class InvalidNodeAddress(SSHMgmtError):
    status_code = 422

    def __init__(self, message: str, address: str) -> None:
        super().__init__(f"internal: {message}", code=422, raw_message=address)
        self.address = address


class NodeResponseError(SSHMgmtError):
    """A node answered with an error body that is not one of the tagged errors above."""

    error_type = "node"
    status_code = 502

    def __init__(self, status: int, body: Any) -> None:
        super().__init__("node-api returned an error", code=status, raw_message=str(body))
        self.body = body


# Account administration


class UserErrorKind(str, Enum):
    USER_ALREADY_EXISTS = "UserAlreadyExists"
    INVALID_USER_OR_GROUP = "InvalidUserOrGroup"
    INVALID_SHELL = "InvalidShell"
    INVALID_EXP_DATE = "InvalidExpDate"
    INVALID_PASSWORD_HASH = "InvalidPasswordHash"
    PERMISSION_DENIED = "PermissionDenied"
    UNEXPECTED_ERROR = "UnexpectedError"
    PROCESS_TERMINATED = "ProcessTerminated"
    CANNOT_DELETE_YOURSELF = "CannotDeleteYourSelf"
    INVALID_TRACE_FILE = "InvalidTraceFile"
    COMMAND_NOT_FOUND = "CommandNotFound"


_USER_ERROR_MESSAGES = {
    UserErrorKind.USER_ALREADY_EXISTS: "user already exists",
    UserErrorKind.INVALID_USER_OR_GROUP: "invalid user or group",
    UserErrorKind.INVALID_SHELL: "invalid shell",
    UserErrorKind.INVALID_EXP_DATE: "invalid expiry date",
    UserErrorKind.INVALID_PASSWORD_HASH: "invalid password hash",
    UserErrorKind.PERMISSION_DENIED: "permission denied",
    UserErrorKind.UNEXPECTED_ERROR: "unexpected error",
    UserErrorKind.PROCESS_TERMINATED: "process terminated by signal",
    UserErrorKind.CANNOT_DELETE_YOURSELF: "cannot delete yourself",
    UserErrorKind.INVALID_TRACE_FILE: "bandwidth trace file is unreadable",
    UserErrorKind.COMMAND_NOT_FOUND: "account administration command not found",
}

_USER_ERROR_STATUS = {
    UserErrorKind.USER_ALREADY_EXISTS: 409,
    UserErrorKind.INVALID_USER_OR_GROUP: 422,
    UserErrorKind.INVALID_SHELL: 422,
    UserErrorKind.INVALID_EXP_DATE: 422,
    UserErrorKind.INVALID_PASSWORD_HASH: 422,
    UserErrorKind.CANNOT_DELETE_YOURSELF: 422,
}

# useradd(8)/usermod(8)/userdel(8) exit statuses
_EXIT_CODES = {
    1: UserErrorKind.PERMISSION_DENIED,
    3: UserErrorKind.INVALID_SHELL,
    6: UserErrorKind.INVALID_USER_OR_GROUP,
    9: UserErrorKind.USER_ALREADY_EXISTS,
}


class UserError(SSHMgmtError):
    error_type = "user"

    def __init__(self, kind: UserErrorKind, *, raw_message: Optional[str] = None) -> None:
        super().__init__(_USER_ERROR_MESSAGES[kind], code=kind.value, raw_message=raw_message)
        self.kind = kind
        self.status_code = _USER_ERROR_STATUS.get(kind, 500)


def exit_code_to_error(returncode: Optional[int]) -> Optional[UserErrorKind]:
    """Classify an account tool's exit status; ``None`` means success.

    A missing or negative return code means the process never exited on its own.
    """
    if returncode is None or returncode < 0:
        return UserErrorKind.PROCESS_TERMINATED
    if returncode == 0:
        return None
    return _EXIT_CODES.get(returncode, UserErrorKind.UNEXPECTED_ERROR)


# Auth


class AuthErrorKind(str, Enum):
    MISSING = "Missing"
    INVALID = "Invalid"
    FORBIDDEN = "Forbidden"


class AuthError(SSHMgmtError):
    error_type = "auth"

    def __init__(self, kind: AuthErrorKind, *, raw_message: Optional[str] = None) -> None:
        if kind is AuthErrorKind.MISSING:
            message, status = "authorization token missing", 401
        elif kind is AuthErrorKind.INVALID:
            message, status = "authorization token invalid", 401
        else:
            message, status = "Authentication Failed", 403
        super().__init__(message, code=kind.value, raw_message=raw_message)
        self.kind = kind
        self.status_code = status


def error_from_payload(status: int, payload: Any) -> SSHMgmtError:
    """Rebuild a tagged error relayed by a node agent, keeping its classification."""
    if isinstance(payload, dict):
        error_type = payload.get("type")
        code = payload.get("code")
        raw = payload.get("raw_msg")
        if error_type == "user":
            try:
                return UserError(UserErrorKind(code), raw_message=raw)
            except ValueError:
                pass
        elif error_type == "auth":
            try:
                return AuthError(AuthErrorKind(code), raw_message=raw)
            except ValueError:
                pass
    return NodeResponseError(status, payload)
