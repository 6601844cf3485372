from enum import Enum


class ErrorKind(Enum):
    INVALID_INPUT = 100
    TRANSPORT_ERROR = 101
    REJECTED = 102
    APPROVAL_PENDING = 201  # interim, never shown as an error
    TIMEOUT = 301
    EXPIRED_TOKEN = 302
    AUTHENTICATE_FAILURE = 401
    INTERNAL = 500


class SignerLoginError(Exception):
    kind = ErrorKind.INTERNAL

    def __init__(self, message, kind=None):
        if kind is not None:
            self.kind = kind
        self.code = self.kind.value
        self.message = message
        super().__init__(f"[{self.code}] {message}")


class InvalidInputError(SignerLoginError):
    kind = ErrorKind.INVALID_INPUT


class TransportError(SignerLoginError):
    kind = ErrorKind.TRANSPORT_ERROR


class RejectedError(SignerLoginError):
    kind = ErrorKind.REJECTED


class ExpiredTokenError(SignerLoginError):
    kind = ErrorKind.EXPIRED_TOKEN


class SessionTimeoutError(SignerLoginError):
    kind = ErrorKind.TIMEOUT


# Kinds that burn a single-use bunker secret.
TERMINAL_TOKEN_KINDS = frozenset({ErrorKind.REJECTED, ErrorKind.EXPIRED_TOKEN})
