from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from signer_login.core.state_machine import Stage
from signer_login.utils.error_codes import ErrorKind


class TokenScheme(Enum):
    DIRECT_CONNECT = "nostrconnect"  # generated here, shown as link/QR
    BUNKER_URL = "bunker"  # issued by the signer, pasted by the user


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionToken:
    raw: str
    scheme: TokenScheme
    issued_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def direct(cls, raw: str) -> "SessionToken":
        return cls(raw=raw, scheme=TokenScheme.DIRECT_CONNECT)

    @classmethod
    def bunker(cls, raw: str) -> "SessionToken":
        return cls(raw=raw, scheme=TokenScheme.BUNKER_URL)

    @property
    def is_single_use(self) -> bool:
        return self.scheme is TokenScheme.BUNKER_URL


@dataclass(frozen=True)
class PeerIdentity:
    public_key: str

    @property
    def short(self) -> str:
        return self.public_key[:16] + "..."


@dataclass(frozen=True)
class ApprovalRequest:
    approval_uri: Optional[str]
    poll_attempt: int
    max_poll_attempts: int
    poll_interval_seconds: float

    @property
    def exhausted(self) -> bool:
        return self.poll_attempt >= self.max_poll_attempts


@dataclass(frozen=True)
class ProgressSnapshot:
    """Everything a caller may render; timers and counters stay private to the core."""

    stage: Stage
    peer_identity: Optional[PeerIdentity] = None
    approval_request: Optional[ApprovalRequest] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    error_stage: Optional[Stage] = None
    slow_warning: bool = False
    message: Optional[str] = None
    connection_uri: Optional[str] = None


@dataclass(frozen=True)
class AuthResult:
    success: bool
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
