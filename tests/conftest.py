import asyncio
import itertools

import pytest

from signer_login.core.config import SessionConfig, StageTimings
from signer_login.core.models import AuthResult
from signer_login.network.transport import ConnectOutcome, ConnectStatus, SignerTransport

PEER_KEY = "ab" * 32
SIGNER_KEY = "cd" * 32
CONNECT_URI = f"nostrconnect://{'ef' * 32}?relay=wss%3A%2F%2Frelay.example&secret=0123456789abcdef&name=test"
BUNKER_URL = f"bunker://{SIGNER_KEY}?relay=wss://relay.example&secret=s3cret"

# call_later may fire a hair early on coarse clocks
EPS = 0.005

HANG = object()


def connected(public_key=PEER_KEY):
    return ConnectOutcome(status=ConnectStatus.CONNECTED, public_key=public_key)


def needs_approval(approval_uri=None):
    return ConnectOutcome(status=ConnectStatus.NEEDS_APPROVAL, approval_uri=approval_uri)


class Delayed:
    def __init__(self, seconds, step):
        self.seconds = seconds
        self.step = step


class FakeTransport(SignerTransport):
    """
    Scripted transport. Each connect() consumes one step: a ConnectOutcome,
    an exception instance, Delayed(seconds, step) or HANG. Tracks which
    subscriptions are open so tests can assert there is never more than one.
    """

    def __init__(self, steps=(), default=HANG):
        self.steps = list(steps)
        self.default = default
        self.connect_calls = []
        self.disconnect_calls = 0
        self.open = set()
        self.max_open = 0
        self.connected = False
        self._ids = itertools.count()

    async def connect(self, token, on_approval_uri=None):
        self.connect_calls.append(token)
        attempt = next(self._ids)
        self.open.add(attempt)
        self.max_open = max(self.max_open, len(self.open))
        step = self.steps.pop(0) if self.steps else self.default
        try:
            while isinstance(step, Delayed):
                await asyncio.sleep(step.seconds)
                step = step.step
            if step is HANG:
                await asyncio.Event().wait()
            if isinstance(step, BaseException):
                raise step
            if step.approval_uri and on_approval_uri:
                on_approval_uri(step.approval_uri)
        except BaseException:
            self.open.discard(attempt)
            raise
        if step.status is ConnectStatus.CONNECTED:
            self.connected = True
        else:
            self.open.discard(attempt)
        return step

    def is_connected(self):
        return self.connected

    async def request_signature(self, payload, timeout):
        raise NotImplementedError

    async def disconnect(self):
        self.disconnect_calls += 1
        self.open.clear()
        self.connected = False


class Recorder:
    def __init__(self):
        self.snapshots = []
        self.times = []

    def __call__(self, snapshot):
        self.times.append(asyncio.get_running_loop().time())
        self.snapshots.append(snapshot)

    @property
    def stages(self):
        return [s.stage for s in self.snapshots]

    def distinct_stages(self):
        return [stage for stage, _ in itertools.groupby(self.stages)]

    def entered_at(self, stage):
        for t, snapshot in zip(self.times, self.snapshots):
            if snapshot.stage is stage:
                return t
        raise AssertionError(f"{stage.name} never published")

    async def wait_for(self, stage, timeout=3.0):
        async def _poll():
            while stage not in self.stages:
                await asyncio.sleep(0.005)
        await asyncio.wait_for(_poll(), timeout)


def make_authenticate(steps=("signing", "syncing", "complete"), delay=0.0, result=None, hang=False):
    calls = []

    async def authenticate(peer, *, on_progress, timeout_seconds):
        calls.append(peer)
        if hang:
            await asyncio.Event().wait()
        for step in steps:
            if delay:
                await asyncio.sleep(delay)
            on_progress(step, step)
        return result or AuthResult(success=True)

    authenticate.calls = calls
    return authenticate


FAST_TIMINGS = StageTimings(connected_min_seconds=0.05, signing_min_seconds=0.08, syncing_min_seconds=0.05)


@pytest.fixture
def fast_config():
    return SessionConfig(
        timings=FAST_TIMINGS,
        direct_connect_deadline_seconds=1.0,
        bunker_connect_deadline_seconds=1.0,
        authenticate_deadline_seconds=1.0,
        slow_warning_after_seconds=5.0,
        approval_poll_interval_seconds=0.01,
        approval_max_poll_attempts=5,
        approval_probe_timeout_seconds=1.0,
        passive_scanning=True,
    )


@pytest.fixture
def recorder():
    return Recorder()
