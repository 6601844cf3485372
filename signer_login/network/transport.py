import asyncio
import json
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum, auto
from typing import Callable, Optional

import websockets

from signer_login.core.models import SessionToken, TokenScheme
from signer_login.utils.error_codes import (
    ExpiredTokenError,
    RejectedError,
    SessionTimeoutError,
    SignerLoginError,
    TransportError,
)
from signer_login.utils.validators import parse_bunker_url, parse_connect_uri

logger = logging.getLogger(__name__)


class ConnectStatus(Enum):
    CONNECTED = auto()
    NEEDS_APPROVAL = auto()


@dataclass(frozen=True)
class ConnectOutcome:
    status: ConnectStatus
    public_key: Optional[str] = None
    approval_uri: Optional[str] = None
    message: Optional[str] = None


class SignerTransport(ABC):
    """
    What the core needs from a remote-signer client.

    connect() opens the one subscription this transport may hold and returns
    once the signer answers. It raises TransportError, RejectedError or
    ExpiredTokenError. is_connected() is true only while that subscription is
    still open and a peer key was confirmed over it; the cheap-retry path
    relies on exactly this.
    """

    @abstractmethod
    async def connect(
        self, token: SessionToken, on_approval_uri: Optional[Callable[[str], None]] = None
    ) -> ConnectOutcome:
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        ...

    @abstractmethod
    async def request_signature(self, payload: bytes, timeout: float) -> bytes:
        ...

    @abstractmethod
    async def disconnect(self):
        ...


def classify_signer_error(error: str, approval_uri: Optional[str] = None) -> ConnectOutcome:
    """Maps a signer error string onto an outcome, or raises the matching error."""
    text = (error or "").lower()
    # Signers that want a human to approve answer the first probe with "invalid secret".
    if "invalid secret" in text:
        return ConnectOutcome(
            status=ConnectStatus.NEEDS_APPROVAL,
            approval_uri=approval_uri,
            message="Approve the connection request in your signer app.",
        )
    if "already used" in text or "expired" in text:
        raise ExpiredTokenError(
            "This connection string has already been used. Generate a new one in your signer app."
        )
    if "reject" in text or "denied" in text:
        raise RejectedError("The signer declined the connection request.")
    raise TransportError(error or "Connection failed")


class RelayTransport(SignerTransport):
    def __init__(self, relay_uri: Optional[str] = None):
        # When set, overrides the relays named in the token.
        self.relay_uri = relay_uri
        self.websocket = None
        self.peer_public_key = None
        self._listen_task = None
        self._pending = {}

    async def connect(self, token, on_approval_uri=None):
        await self.disconnect()

        if token.scheme is TokenScheme.BUNKER_URL:
            pointer = parse_bunker_url(token.raw)
            room = uuid.uuid4().hex
        else:
            pointer = parse_connect_uri(token.raw)
            room = pointer.client_pubkey
        uri = self.relay_uri or pointer.relays[0]

        try:
            self.websocket = await websockets.connect(uri)
            await self._send({"type": "JOIN", "room": room})
            if token.scheme is TokenScheme.BUNKER_URL:
                await self._send({
                    "type": "SIGNAL",
                    "kind": "CONNECT",
                    "to": pointer.signer_pubkey,
                    "from": room,
                    "secret": pointer.secret,
                })
            outcome = await self._await_connect_reply(pointer.secret, on_approval_uri)
        except websockets.exceptions.ConnectionClosed:
            await self.disconnect()
            raise TransportError("Connection was closed. Please try again.")
        except OSError as e:
            await self.disconnect()
            raise TransportError(f"Could not reach relay {uri}: {e}")
        except SignerLoginError:
            await self.disconnect()
            raise

        if outcome.status is ConnectStatus.CONNECTED:
            self.peer_public_key = outcome.public_key
            self._listen_task = asyncio.create_task(self.listen())
            logger.info("Signer connected over %s", uri)
        else:
            await self.disconnect()
        return outcome

    async def _await_connect_reply(self, secret, on_approval_uri):
        approval_uri = None
        while True:
            data = self._decode(await self.websocket.recv())
            if data is None or data.get("type") != "SIGNAL":
                continue
            kind = data.get("kind")

            if kind == "CONNECT_ACK":
                # Replayed acks from earlier attempts carry another secret.
                if data.get("secret") not in (None, secret):
                    logger.debug("Ignoring connect ack for a different secret")
                    continue
                return ConnectOutcome(status=ConnectStatus.CONNECTED, public_key=data.get("pubkey"))
            if kind == "AUTH_URL":
                approval_uri = data.get("url")
                logger.info("Signer requested approval via auth URL")
                if on_approval_uri and approval_uri:
                    on_approval_uri(approval_uri)
            elif kind == "ERROR":
                return classify_signer_error(data.get("error"), approval_uri)

    async def listen(self):
        websocket = self.websocket
        try:
            async for message in websocket:
                data = self._decode(message)
                if data is None or data.get("type") != "SIGNAL":
                    continue
                request_id = data.get("id")
                future = self._pending.get(request_id)
                if future is None or future.done():
                    continue
                if data.get("kind") == "SIGN_RESPONSE":
                    future.set_result(bytes.fromhex(data.get("signature", "")))
                elif data.get("kind") == "ERROR":
                    future.set_exception(RejectedError(data.get("error") or "Signing request declined"))
        except websockets.exceptions.ConnectionClosed:
            logger.warning("Relay connection closed")
        finally:
            # A newer connect() may already own the transport.
            if self.websocket is websocket:
                self.peer_public_key = None
                self._fail_pending(TransportError("Relay connection closed"))

    def is_connected(self) -> bool:
        return (
            self.websocket is not None
            and self.peer_public_key is not None
            and self._listen_task is not None
            and not self._listen_task.done()
        )

    async def request_signature(self, payload: bytes, timeout: float) -> bytes:
        if not self.is_connected():
            raise TransportError("Not connected to a signer")
        request_id = uuid.uuid4().hex
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({
                "type": "SIGNAL",
                "kind": "SIGN_REQUEST",
                "id": request_id,
                "payload": payload.hex(),
            })
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            raise SessionTimeoutError(f"Signer did not answer within {timeout:g} seconds")
        finally:
            self._pending.pop(request_id, None)

    async def disconnect(self):
        task, self._listen_task = self._listen_task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        websocket, self.websocket = self.websocket, None
        self.peer_public_key = None
        self._fail_pending(TransportError("Disconnected"))
        if websocket is not None:
            await websocket.close()

    async def _send(self, payload: dict):
        await self.websocket.send(json.dumps(payload))

    def _fail_pending(self, error):
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    @staticmethod
    def _decode(message):
        try:
            data = json.loads(message)
        except (TypeError, json.JSONDecodeError):
            logger.debug("Dropping non-JSON relay frame")
            return None
        return data if isinstance(data, dict) else None
