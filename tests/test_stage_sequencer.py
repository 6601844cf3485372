"""Tests for the minimum-dwell stage walk."""

import asyncio

import pytest

from conftest import EPS, FAST_TIMINGS, PEER_KEY, make_authenticate
from signer_login.core.models import AuthResult, PeerIdentity
from signer_login.core.stage_sequencer import StageFailure, StageSequencer
from signer_login.core.state_machine import Stage
from signer_login.utils.error_codes import ErrorKind, RejectedError

PEER = PeerIdentity(PEER_KEY)


class StageLog:
    def __init__(self):
        self.stages = []
        self.times = []

    def __call__(self, stage):
        self.stages.append(stage)
        self.times.append(asyncio.get_running_loop().time())

    def gap(self, first, second):
        return self.times[self.stages.index(second)] - self.times[self.stages.index(first)]


@pytest.mark.asyncio
async def test_instant_authenticate_still_honours_minimum_times():
    log = StageLog()
    sequencer = StageSequencer(make_authenticate(), FAST_TIMINGS, log)

    await sequencer.run(PEER)

    assert log.stages == [Stage.CONNECTED, Stage.SIGNING, Stage.SYNCING, Stage.COMPLETE]
    assert log.gap(Stage.CONNECTED, Stage.SIGNING) >= FAST_TIMINGS.connected_min_seconds - EPS
    assert log.gap(Stage.SIGNING, Stage.SYNCING) >= FAST_TIMINGS.signing_min_seconds - EPS
    assert log.gap(Stage.SYNCING, Stage.COMPLETE) >= FAST_TIMINGS.syncing_min_seconds - EPS
    assert sequencer.completed


@pytest.mark.asyncio
async def test_slow_readiness_holds_the_stage():
    log = StageLog()
    authenticate = make_authenticate(delay=0.15)
    sequencer = StageSequencer(authenticate, FAST_TIMINGS, log)

    await sequencer.run(PEER)

    # "syncing" arrives after two delays, well past the signing minimum
    assert log.gap(Stage.CONNECTED, Stage.SYNCING) >= 0.3 - EPS
    assert log.stages[-1] is Stage.COMPLETE


@pytest.mark.asyncio
async def test_authenticate_runs_once_per_run():
    authenticate = make_authenticate()
    sequencer = StageSequencer(authenticate, FAST_TIMINGS, StageLog())

    await sequencer.run(PEER)

    assert authenticate.calls == [PEER]
    assert sequencer.auth_calls == 1


@pytest.mark.asyncio
async def test_immediate_failure_is_tagged_connected():
    authenticate = make_authenticate(
        steps=(), result=AuthResult(success=False, error_kind=ErrorKind.REJECTED, error_message="declined")
    )
    log = StageLog()
    sequencer = StageSequencer(authenticate, FAST_TIMINGS, log)

    with pytest.raises(StageFailure) as excinfo:
        await sequencer.run(PEER)

    assert excinfo.value.stage is Stage.CONNECTED
    assert excinfo.value.kind is ErrorKind.REJECTED
    assert log.stages == [Stage.CONNECTED]
    assert not sequencer.completed


@pytest.mark.asyncio
async def test_failure_while_signing_is_tagged_signing():
    async def authenticate(peer, *, on_progress, timeout_seconds):
        on_progress("signing")
        await asyncio.sleep(0.12)
        raise RejectedError("User declined")

    log = StageLog()
    sequencer = StageSequencer(authenticate, FAST_TIMINGS, log)

    with pytest.raises(StageFailure) as excinfo:
        await sequencer.run(PEER)

    assert excinfo.value.stage is Stage.SIGNING
    assert excinfo.value.kind is ErrorKind.REJECTED
    assert Stage.SYNCING not in log.stages


@pytest.mark.asyncio
async def test_unexpected_exception_is_an_authenticate_failure():
    async def authenticate(peer, *, on_progress, timeout_seconds):
        raise ValueError("bad payload")

    sequencer = StageSequencer(authenticate, FAST_TIMINGS, StageLog())

    with pytest.raises(StageFailure) as excinfo:
        await sequencer.run(PEER)

    assert excinfo.value.kind is ErrorKind.AUTHENTICATE_FAILURE
    assert excinfo.value.message == "bad payload"


@pytest.mark.asyncio
async def test_complete_is_reported_once():
    log = StageLog()
    sequencer = StageSequencer(make_authenticate(), FAST_TIMINGS, log)
    await sequencer.run(PEER)

    with pytest.raises(RuntimeError):
        await sequencer.run(PEER)

    assert log.stages.count(Stage.COMPLETE) == 1


@pytest.mark.asyncio
async def test_resume_at_signing_skips_connected():
    log = StageLog()
    authenticate = make_authenticate()
    sequencer = StageSequencer(authenticate, FAST_TIMINGS, log)

    await sequencer.run(PEER, resume_at=Stage.SIGNING)

    assert log.stages == [Stage.SIGNING, Stage.SYNCING, Stage.COMPLETE]
    assert len(authenticate.calls) == 1


@pytest.mark.asyncio
async def test_timeout_is_passed_to_authenticate():
    seen = []

    async def authenticate(peer, *, on_progress, timeout_seconds):
        seen.append(timeout_seconds)
        return AuthResult(success=True)

    await StageSequencer(authenticate, FAST_TIMINGS, StageLog(), timeout_seconds=12.5).run(PEER)

    assert seen == [12.5]
