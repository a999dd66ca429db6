from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    """Error codes returned by an instance in ``{"error": <code>}`` bodies."""

    INCORRECT_LOGIN = "incorrect_login"
    NOT_LOGGED_IN = "not_logged_in"

    NOT_FOUND = "not_found"
    OBJECT_NOT_FOUND = "couldnt_find_object"
    COMMUNITY_NOT_FOUND = "couldnt_find_community"
    POST_NOT_FOUND = "couldnt_find_post"
    COMMENT_NOT_FOUND = "couldnt_find_comment"
    PERSON_NOT_FOUND = "couldnt_find_person"
    PRIVATE_MESSAGE_NOT_FOUND = "couldnt_find_private_message"

    COMMUNITY_ALREADY_EXISTS = "community_already_exists"
    USER_ALREADY_EXISTS = "user_already_exists"
    PASSWORDS_DONT_MATCH = "passwords_dont_match"
    INVALID_NAME = "invalid_name"
    INVALID_POST_TITLE = "invalid_post_title"
    INVALID_BODY = "invalid_body_field"

    POST_LOCKED = "locked"
    DELETED = "deleted"
    BANNED_FROM_COMMUNITY = "banned_from_community"
    PRIVATE_COMMUNITY = "private_community"
    NO_POST_EDIT_ALLOWED = "no_post_edit_allowed"
    NO_COMMENT_EDIT_ALLOWED = "no_comment_edit_allowed"
    NO_PRIVATE_MESSAGE_EDIT_ALLOWED = "no_private_message_edit_allowed"
    NOT_A_MOD_OR_ADMIN = "not_a_mod_or_admin"
    NOT_AN_ADMIN = "not_an_admin"


class HarnessError(Exception):
    def __init__(
        self,
        message: str,
        *,
        kind: ErrorKind | None = None,
        code: str | None = None,
        status_code: int | None = None,
        operation: str | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.code = code if code is not None else (kind.value if kind is not None else None)
        self.status_code = status_code
        self.operation = operation


class AuthError(HarnessError):
    pass


class NotFoundError(HarnessError):
    pass


class ValidationError(HarnessError):
    pass


class PermissionDeniedError(HarnessError):
    pass


class InvalidTransitionError(HarnessError):
    pass


class AbsentValueError(HarnessError, LookupError):
    pass


class ConvergenceTimeoutError(HarnessError, TimeoutError):
    def __init__(
        self,
        description: str,
        *,
        timeout_seconds: float,
        poll_interval_seconds: float,
        attempts: int,
        elapsed_seconds: float,
        last_value: Any = None,
        last_error: BaseException | None = None,
    ) -> None:
        message = (
            f"timed out waiting for {description} after {elapsed_seconds:.2f}s "
            f"({attempts} attempts, timeout={timeout_seconds}s, interval={poll_interval_seconds}s)"
        )
        if last_error is not None:
            message = f"{message}; last error: {last_error}"
        super().__init__(message, operation=description)
        self.description = description
        self.timeout_seconds = timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.attempts = attempts
        self.elapsed_seconds = elapsed_seconds
        self.last_value = last_value
        self.last_error = last_error


_KIND_TO_ERROR: dict[ErrorKind, type[HarnessError]] = {
    ErrorKind.INCORRECT_LOGIN: AuthError,
    ErrorKind.NOT_LOGGED_IN: AuthError,
    ErrorKind.NOT_FOUND: NotFoundError,
    ErrorKind.OBJECT_NOT_FOUND: NotFoundError,
    ErrorKind.COMMUNITY_NOT_FOUND: NotFoundError,
    ErrorKind.POST_NOT_FOUND: NotFoundError,
    ErrorKind.COMMENT_NOT_FOUND: NotFoundError,
    ErrorKind.PERSON_NOT_FOUND: NotFoundError,
    ErrorKind.PRIVATE_MESSAGE_NOT_FOUND: NotFoundError,
    ErrorKind.COMMUNITY_ALREADY_EXISTS: ValidationError,
    ErrorKind.USER_ALREADY_EXISTS: ValidationError,
    ErrorKind.PASSWORDS_DONT_MATCH: ValidationError,
    ErrorKind.INVALID_NAME: ValidationError,
    ErrorKind.INVALID_POST_TITLE: ValidationError,
    ErrorKind.INVALID_BODY: ValidationError,
    ErrorKind.POST_LOCKED: PermissionDeniedError,
    ErrorKind.DELETED: PermissionDeniedError,
    ErrorKind.BANNED_FROM_COMMUNITY: PermissionDeniedError,
    ErrorKind.PRIVATE_COMMUNITY: PermissionDeniedError,
    ErrorKind.NO_POST_EDIT_ALLOWED: PermissionDeniedError,
    ErrorKind.NO_COMMENT_EDIT_ALLOWED: PermissionDeniedError,
    ErrorKind.NO_PRIVATE_MESSAGE_EDIT_ALLOWED: PermissionDeniedError,
    ErrorKind.NOT_A_MOD_OR_ADMIN: PermissionDeniedError,
    ErrorKind.NOT_AN_ADMIN: PermissionDeniedError,
}

_STATUS_TO_ERROR: dict[int, type[HarnessError]] = {
    401: AuthError,
    403: PermissionDeniedError,
    404: NotFoundError,
}


def classify_api_error(
    status_code: int,
    code: str | None,
    *,
    operation: str,
    detail: str | None = None,
) -> HarnessError:
    """Map an error response onto the harness error taxonomy.

    The error code wins over the HTTP status: instances report most
    failures as 400 with a descriptive code.
    """
    kind: ErrorKind | None = None
    if code is not None:
        try:
            kind = ErrorKind(code)
        except ValueError:
            kind = None

    if kind is not None:
        error_cls = _KIND_TO_ERROR[kind]
    elif status_code in _STATUS_TO_ERROR:
        error_cls = _STATUS_TO_ERROR[status_code]
    elif 400 <= status_code < 500:
        error_cls = ValidationError
    else:
        error_cls = HarnessError

    message = f"{operation}: HTTP {status_code}"
    if code:
        message = f"{message} {code}"
    if detail:
        message = f"{message}: {detail}"
    return error_cls(message, kind=kind, code=code, status_code=status_code, operation=operation)
