"""Tests for approval polling."""

import asyncio

import pytest

from conftest import BUNKER_URL, HANG, PEER_KEY, FakeTransport, connected, needs_approval
from signer_login.core.approval_poller import ApprovalPoller, PollOutcome
from signer_login.core.models import SessionToken
from signer_login.utils.error_codes import ErrorKind, ExpiredTokenError, TransportError

TOKEN = SessionToken.bunker(BUNKER_URL)


async def wait_until(predicate, timeout=2.0):
    async def _poll():
        while not predicate():
            await asyncio.sleep(0.005)
    await asyncio.wait_for(_poll(), timeout)


@pytest.mark.asyncio
async def test_stops_after_exactly_max_attempts():
    transport = FakeTransport(default=needs_approval())
    results = []
    poller = ApprovalPoller(transport, interval_seconds=0.01, max_attempts=5)

    poller.start(TOKEN, results.append)
    await wait_until(lambda: results and results[-1].outcome is PollOutcome.EXHAUSTED)
    await asyncio.sleep(0.08)

    assert len(transport.connect_calls) == 5
    assert poller.attempts == 5
    assert [r.outcome for r in results] == [PollOutcome.STILL_PENDING] * 4 + [PollOutcome.EXHAUSTED]
    assert not poller.polling


@pytest.mark.asyncio
async def test_unanswered_probes_still_count_toward_the_limit():
    transport = FakeTransport([needs_approval()], default=HANG)
    results = []
    poller = ApprovalPoller(transport, interval_seconds=0.01, max_attempts=5, probe_timeout_seconds=0.02)

    poller.start(TOKEN, results.append)
    await wait_until(lambda: results and results[-1].outcome is PollOutcome.EXHAUSTED)

    assert poller.attempts == 5
    assert len(transport.connect_calls) == 5
    assert [r.outcome for r in results] == [PollOutcome.STILL_PENDING] * 4 + [PollOutcome.EXHAUSTED]
    assert [r.error_kind for r in results[1:4]] == [ErrorKind.TIMEOUT] * 3
    assert transport.open == set()


@pytest.mark.asyncio
async def test_check_now_returns_when_the_signer_is_silent():
    transport = FakeTransport(default=HANG)
    poller = ApprovalPoller(transport, interval_seconds=10.0, max_attempts=30, probe_timeout_seconds=0.05)
    poller.start(TOKEN, lambda result: None)

    result = await asyncio.wait_for(poller.check_now(), 1.0)

    assert result.outcome is PollOutcome.STILL_PENDING
    assert result.error_kind is ErrorKind.TIMEOUT
    assert poller.attempts == 0
    poller.stop()


@pytest.mark.asyncio
async def test_every_probe_reuses_the_same_token():
    transport = FakeTransport(default=needs_approval())
    poller = ApprovalPoller(transport, interval_seconds=0.01, max_attempts=3)

    poller.start(TOKEN, lambda result: None)
    await wait_until(lambda: len(transport.connect_calls) == 3)

    assert all(token is TOKEN for token in transport.connect_calls)
    poller.stop()


@pytest.mark.asyncio
async def test_check_now_probes_without_touching_the_counter():
    transport = FakeTransport(default=needs_approval())
    results = []
    poller = ApprovalPoller(transport, interval_seconds=10.0, max_attempts=30)
    poller.start(TOKEN, results.append)

    result = await poller.check_now()

    assert result.outcome is PollOutcome.STILL_PENDING
    assert result.manual
    assert poller.attempts == 0
    assert len(transport.connect_calls) == 1
    assert results == [result]
    poller.stop()


@pytest.mark.asyncio
async def test_check_now_still_works_after_exhaustion():
    transport = FakeTransport([needs_approval(), needs_approval()])
    poller = ApprovalPoller(transport, interval_seconds=0.01, max_attempts=2)
    results = []
    poller.start(TOKEN, results.append)
    await wait_until(lambda: results and results[-1].outcome is PollOutcome.EXHAUSTED)
    transport.steps.append(connected())

    result = await poller.check_now()

    assert result.outcome is PollOutcome.APPROVED
    assert result.peer_identity.public_key == PEER_KEY
    assert poller.attempts == 2


@pytest.mark.asyncio
async def test_approval_stops_polling():
    transport = FakeTransport([needs_approval(), needs_approval(), connected()], default=needs_approval())
    results = []
    poller = ApprovalPoller(transport, interval_seconds=0.01, max_attempts=30)

    poller.start(TOKEN, results.append)
    await wait_until(lambda: results and results[-1].outcome is PollOutcome.APPROVED)
    await asyncio.sleep(0.05)

    assert len(transport.connect_calls) == 3
    assert poller.attempts == 3
    assert not poller.polling
    assert await poller.check_now() is None


@pytest.mark.asyncio
async def test_relay_errors_keep_polling_but_expiry_ends_it():
    transport = FakeTransport([TransportError("relay hiccup"), ExpiredTokenError("used")])
    results = []
    poller = ApprovalPoller(transport, interval_seconds=0.01, max_attempts=30)

    poller.start(TOKEN, results.append)
    await wait_until(lambda: results and results[-1].outcome is PollOutcome.FAILED)
    await asyncio.sleep(0.05)

    assert [r.outcome for r in results] == [PollOutcome.STILL_PENDING, PollOutcome.FAILED]
    assert results[-1].error_kind is ErrorKind.EXPIRED_TOKEN
    assert len(transport.connect_calls) == 2


@pytest.mark.asyncio
async def test_stop_is_idempotent_and_silences_results():
    transport = FakeTransport(default=needs_approval())
    results = []
    poller = ApprovalPoller(transport, interval_seconds=0.01, max_attempts=30)
    poller.start(TOKEN, results.append)
    await wait_until(lambda: len(results) >= 1)

    poller.stop()
    poller.stop()
    seen = len(results)
    calls = len(transport.connect_calls)
    await asyncio.sleep(0.05)

    assert len(results) == seen
    assert len(transport.connect_calls) == calls
