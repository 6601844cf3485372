from dataclasses import dataclass, field

from signer_login.core.state_machine import Stage

DEFAULT_RELAYS = (
    "wss://relay.nsec.app",
    "wss://relay.damus.io",
    "wss://nos.lol",
)

DEFAULT_PERMISSIONS = ("sign_event:22242", "get_public_key")


@dataclass(frozen=True)
class StageTimings:
    """Minimum visible dwell per post-connection stage."""

    connected_min_seconds: float = 0.8
    signing_min_seconds: float = 1.0
    syncing_min_seconds: float = 0.8

    def min_display(self, stage: Stage) -> float:
        if stage is Stage.CONNECTED:
            return self.connected_min_seconds
        if stage is Stage.SIGNING:
            return self.signing_min_seconds
        if stage is Stage.SYNCING:
            return self.syncing_min_seconds
        raise ValueError(f"No dwell time for stage {stage.name}")


@dataclass(frozen=True)
class SessionConfig:
    timings: StageTimings = field(default_factory=StageTimings)
    # Scanning a QR code takes the user a while; a pasted bunker URL should answer fast.
    direct_connect_deadline_seconds: float = 120.0
    bunker_connect_deadline_seconds: float = 30.0
    authenticate_deadline_seconds: float = 30.0
    slow_warning_after_seconds: float = 15.0
    approval_poll_interval_seconds: float = 4.0
    approval_max_poll_attempts: int = 30
    approval_probe_timeout_seconds: float = 30.0
    passive_scanning: bool = True


@dataclass(frozen=True)
class RelayConfig:
    relays: tuple = DEFAULT_RELAYS
    app_name: str = "Signer Login"
    permissions: tuple = DEFAULT_PERMISSIONS
    sign_timeout_seconds: float = 30.0
