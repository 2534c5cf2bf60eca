"""Gateway connection: WebSocket session and handshake state machine.

States::

    IDLE → CONNECTING → AWAITING_CHALLENGE → HANDSHAKING → CONNECTED → CLOSING → IDLE
                 └──────────────┴──────────────────┴─────────────┴──→ FAILED

  connect() opens the socket (CONNECTING)
  the first text frame is the gateway's challenge (AWAITING_CHALLENGE)
  one ConnectRequest carrying a signed device assertion goes out (HANDSHAKING)
  the matching ``res`` with ok=true completes the handshake (CONNECTED)
  disconnect() from any state ends in IDLE, abandoning an attempt in flight

Once connected this object is only a transport: each inbound ``req`` runs
as its own task against the dispatcher and responses are written back one
at a time. Nothing here retries; reconnecting is up to the caller.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import quote

import websockets
from websockets.asyncio.client import connect as ws_connect

from . import __version__
from .capabilities import CapabilityRegistry
from .config import SettingsStore
from .dispatcher import CommandDispatcher
from .identity import DeviceIdentityManager, IdentityError
from .protocol import (
    AuthInfo,
    ClientInfo,
    ConnectParams,
    ConnectRequest,
    ConnectResponse,
    DecodeError,
    InvokeRequest,
    InvokeResponse,
    Response,
    decode,
    encode,
    extract_nonce,
)

logger = logging.getLogger(__name__)

CANCEL_GRACE = 2.0  # seconds to wait for cancelled commands on teardown

Connector = Callable[..., Awaitable[Any]]
StateListener = Callable[["ConnectionState"], None]


class GatewayConnectionError(Exception):
    """Base for connection-level failures."""


class TransportError(GatewayConnectionError):
    """Socket could not be opened, read or written."""


class HandshakeRejected(GatewayConnectionError):
    """The gateway answered the connect request with ok=false."""

    def __init__(self, error: str):
        super().__init__(error)
        self.error = error


class ConnectionState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    AWAITING_CHALLENGE = "awaiting_challenge"
    HANDSHAKING = "handshaking"
    CONNECTED = "connected"
    CLOSING = "closing"
    FAILED = "failed"


class ConnectionStatus(enum.Enum):
    DISCONNECTED = "Disconnected"
    CONNECTING = "Connecting"
    CONNECTED = "Connected"


_STATUS = {
    ConnectionState.IDLE: ConnectionStatus.DISCONNECTED,
    ConnectionState.CONNECTING: ConnectionStatus.CONNECTING,
    ConnectionState.AWAITING_CHALLENGE: ConnectionStatus.CONNECTING,
    ConnectionState.HANDSHAKING: ConnectionStatus.CONNECTING,
    ConnectionState.CONNECTED: ConnectionStatus.CONNECTED,
    ConnectionState.CLOSING: ConnectionStatus.DISCONNECTED,
    ConnectionState.FAILED: ConnectionStatus.DISCONNECTED,
}


class _Session:
    """One socket plus the work spawned on it."""

    def __init__(self, ws: Any):
        self.ws = ws
        self.open = True
        self.tasks: set[asyncio.Task] = set()
        self.write_lock = asyncio.Lock()


class GatewayConnection:
    """Owns the gateway socket and the handshake; forwards commands to the dispatcher."""

    def __init__(
        self,
        store: SettingsStore,
        identity: DeviceIdentityManager,
        dispatcher: CommandDispatcher,
        registry: CapabilityRegistry,
        connector: Connector = ws_connect,
    ):
        self.store = store
        self.identity = identity
        self.dispatcher = dispatcher
        self.registry = registry
        self._connector = connector

        self._state = ConnectionState.IDLE
        self._session: Optional[_Session] = None
        self._reader: Optional[asyncio.Task] = None
        self._listeners: list[StateListener] = []
        self._last_error = ""
        self._request_id: Optional[str] = None
        self._attempt = 0

        self.protocol: Optional[int] = None
        self.policy: dict[str, int] = {}
        self.role: Optional[str] = None
        self.scopes: list[str] = []

    # ── Public API ────────────────────────────────────────────────

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def status(self) -> ConnectionStatus:
        return _STATUS[self._state]

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def last_error(self) -> str:
        return self._last_error

    def add_listener(self, listener: StateListener) -> None:
        """Call *listener* with the new state on every transition."""
        self._listeners.append(listener)

    def gateway_url(self, redact: bool = False) -> str:
        cfg = self.store.config
        scheme = "wss" if cfg.gateway_tls else "ws"
        url = f"{scheme}://{cfg.gateway_host}:{cfg.gateway_port}/"
        if cfg.gateway_token:
            token = "***" if redact else quote(cfg.gateway_token, safe="")
            url += f"?token={token}"
        return url

    async def connect(self) -> bool:
        """Open a session and run the handshake. Returns True once connected."""
        if self._state not in (ConnectionState.IDLE, ConnectionState.FAILED):
            logger.warning("connect() ignored in state %s", self._state.value)
            return False

        self._attempt += 1
        attempt = self._attempt
        self._last_error = ""
        self._set_state(ConnectionState.CONNECTING)
        if not self.store.config.gateway_host:
            await self._fail("Gateway host is not configured")
            return False

        logger.info("Connecting to %s", self.gateway_url(redact=True))
        try:
            ws = await self._open()
            if attempt != self._attempt:
                logger.info("Connection attempt abandoned after disconnect")
                await self._close_socket(ws)
                return False
            self._session = _Session(ws)
            await self._handshake(self._session)
        except HandshakeRejected as exc:
            logger.error("Gateway rejected connection: %s", exc.error)
            await self._abort(attempt, exc.error or "Handshake rejected")
            return False
        except IdentityError as exc:
            logger.error("Device identity unavailable: %s", exc)
            await self._abort(attempt, f"Device identity unavailable: {exc}")
            return False
        except TransportError as exc:
            if attempt == self._attempt:
                logger.error("Connection error: %s", exc)
            await self._abort(attempt, str(exc))
            return False
        except asyncio.CancelledError:
            await self._abort(attempt, "Connection attempt cancelled")
            raise
        except Exception as exc:
            logger.exception("Unexpected error while connecting")
            await self._abort(attempt, f"Connection failed: {exc}")
            return False

        self._reader = asyncio.create_task(self._read_loop(self._session))
        return True

    async def disconnect(self) -> None:
        """Close the session, cancelling in-flight commands. Ends in IDLE.

        An attempt still opening its socket is abandoned: it closes the
        socket once it arrives and leaves the state alone.
        """
        self._attempt += 1
        session = self._session
        if session is None:
            if self._state not in (ConnectionState.IDLE, ConnectionState.CLOSING):
                self._set_state(ConnectionState.IDLE)
            return
        self._set_state(ConnectionState.CLOSING)
        await self._teardown(session)
        reader = self._reader
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        self._reader = None
        self._set_state(ConnectionState.IDLE)
        logger.info("Disconnected from gateway")

    async def wait_closed(self) -> None:
        """Wait until the current session's read loop has ended."""
        reader = self._reader
        if reader is not None and not reader.done():
            await asyncio.wait({reader})

    # ── Handshake ─────────────────────────────────────────────────

    async def _open(self) -> Any:
        try:
            ws = await self._connector(
                self.gateway_url(),
                max_size=None,
                ping_interval=20,
                ping_timeout=20,
                close_timeout=5,
            )
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as exc:
            raise TransportError(f"Cannot open {self.gateway_url(redact=True)}: {exc}") from exc
        logger.debug("WebSocket open")
        return ws

    async def _handshake(self, session: _Session) -> None:
        self._set_state(ConnectionState.AWAITING_CHALLENGE)
        challenge = await self._recv(session)
        if isinstance(challenge, bytes):
            challenge = challenge.decode("utf-8", errors="replace")
        logger.debug("Received challenge (%d chars)", len(challenge))

        self._set_state(ConnectionState.HANDSHAKING)
        nonce = extract_nonce(challenge)
        assertion = await asyncio.get_running_loop().run_in_executor(
            None, self.identity.sign_assertion, nonce, challenge
        )
        _ensure_open(session)
        request = self._build_connect_request(assertion.to_device_info())
        self._request_id = request.id
        await self._write(session, encode(request))
        logger.debug("Sent connect request %s", request.id)

        while True:
            raw = await self._recv(session)
            _ensure_open(session)
            try:
                envelope = decode(raw)
            except DecodeError as exc:
                logger.warning("Dropping malformed frame during handshake: %s", exc)
                continue
            if not isinstance(envelope, Response) or envelope.id != request.id:
                logger.debug("Skipping frame during handshake: %s", type(envelope).__name__)
                continue
            try:
                response = envelope.as_connect_response()
            except (ValueError, TypeError) as exc:
                raise HandshakeRejected(f"Malformed connect response: {exc}") from exc
            self._complete_handshake(response)
            return

    def _build_connect_request(self, device) -> ConnectRequest:
        cfg = self.store.config
        return ConnectRequest(
            id=str(uuid.uuid4()),
            params=ConnectParams(
                client=ClientInfo(version=__version__),
                caps=[d.name for d in self.registry.descriptors()],
                commands=self.dispatcher.commands,
                permissions=self.registry.permissions(),
                auth=AuthInfo(token=cfg.gateway_token) if cfg.gateway_token else None,
                locale=cfg.locale,
                user_agent=f"clawnode-python/{__version__}",
                device=device,
            ),
        )

    def _complete_handshake(self, response: ConnectResponse) -> None:
        if not response.ok:
            raise HandshakeRejected(response.error or "Handshake rejected")

        payload = response.payload
        if payload is not None:
            self.protocol = payload.protocol
            self.policy = dict(payload.policy)
            if payload.auth is not None:
                self.role = payload.auth.role
                self.scopes = list(payload.auth.scopes)
                if payload.auth.device_token:
                    cfg = self.store.config
                    try:
                        self.store.save_device_info(cfg.device_id, payload.auth.device_token)
                    except OSError:
                        logger.exception("Could not persist device token")
        self._set_state(ConnectionState.CONNECTED)
        logger.info("Connected to gateway (protocol %s)", self.protocol)

    # ── Session I/O ───────────────────────────────────────────────

    async def _recv(self, session: _Session) -> str | bytes:
        timeout = self.store.config.handshake_timeout or None
        try:
            return await asyncio.wait_for(session.ws.recv(), timeout=timeout)
        except asyncio.TimeoutError as exc:
            raise TransportError(f"No handshake frame within {timeout}s") from exc
        except websockets.ConnectionClosed as exc:
            raise TransportError(f"Connection closed during handshake: {exc}") from exc
        except OSError as exc:
            raise TransportError(f"Read failed: {exc}") from exc

    async def _write(self, session: _Session, frame: str) -> None:
        async with session.write_lock:
            try:
                await session.ws.send(frame)
            except (websockets.ConnectionClosed, OSError) as exc:
                raise TransportError(f"Write failed: {exc}") from exc

    async def _read_loop(self, session: _Session) -> None:
        failure: Optional[str] = None
        try:
            async for raw in session.ws:
                self._handle_frame(session, raw)
        except websockets.ConnectionClosedError as exc:
            failure = f"Connection lost: {exc}"
        except OSError as exc:
            failure = f"Read failed: {exc}"
        except asyncio.CancelledError:
            return

        if session is not self._session or self._state is ConnectionState.CLOSING:
            return
        if failure:
            logger.error("Gateway %s", failure[0].lower() + failure[1:])
            await self._fail(failure)
        else:
            logger.info("Gateway closed the connection")
            await self._teardown(session)
            self._set_state(ConnectionState.IDLE)

    def _handle_frame(self, session: _Session, raw: str | bytes) -> None:
        try:
            envelope = decode(raw)
        except DecodeError as exc:
            logger.warning("Dropping malformed frame: %s", exc)
            return
        if isinstance(envelope, InvokeRequest):
            task = asyncio.create_task(self._handle_request(session, envelope))
            session.tasks.add(task)
            task.add_done_callback(session.tasks.discard)
        else:
            self._handle_response(envelope)

    def _handle_response(self, response: Response) -> None:
        if response.id == self._request_id:
            logger.debug("Duplicate connect response %s ignored", response.id)
        else:
            logger.debug("Unsolicited response %s (ok=%s)", response.id, response.ok)

    async def _handle_request(self, session: _Session, request: InvokeRequest) -> None:
        response = await self.dispatcher.dispatch(request)
        await self._send_response(session, response)

    async def _send_response(self, session: _Session, response: InvokeResponse) -> None:
        if not session.open or session is not self._session:
            logger.debug("Discarding response %s for closed session", response.id)
            return
        try:
            await self._write(session, encode(response))
        except TransportError as exc:
            logger.warning("Could not send response %s: %s", response.id, exc)

    # ── Teardown ──────────────────────────────────────────────────

    async def _teardown(self, session: _Session) -> None:
        session.open = False
        tasks = [t for t in session.tasks if t is not asyncio.current_task()]
        for task in tasks:
            task.cancel()
        cancelled = self.registry.cancel_pending()
        if tasks:
            # Tasks that ignore cancellation keep running; their responses
            # are dropped because the session is no longer open.
            await asyncio.wait(tasks, timeout=CANCEL_GRACE)
        if tasks or cancelled:
            logger.debug("Cancelled %d command(s), %d pending operation(s)", len(tasks), cancelled)
        await self._close_socket(session.ws)
        if session is self._session:
            self._session = None

    async def _close_socket(self, ws: Any) -> None:
        try:
            await ws.close()
        except (websockets.WebSocketException, OSError):
            logger.debug("Error while closing socket", exc_info=True)

    async def _abort(self, attempt: int, error: str) -> None:
        # a disconnect() since this attempt started owns its teardown
        if attempt != self._attempt or self._state in (ConnectionState.CLOSING, ConnectionState.IDLE):
            return
        await self._fail(error)

    async def _fail(self, error: str) -> None:
        self._last_error = error
        session = self._session
        if session is not None:
            await self._teardown(session)
        self._set_state(ConnectionState.FAILED)

    def _set_state(self, state: ConnectionState) -> None:
        if state is self._state:
            return
        logger.debug("State %s -> %s", self._state.value, state.value)
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.exception("State listener failed")


def _ensure_open(session: _Session) -> None:
    if not session.open:
        raise TransportError("Disconnected during handshake")
