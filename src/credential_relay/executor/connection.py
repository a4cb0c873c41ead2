# PUBLIC_INTERFACE
"""
Persistent duplex connection to the execution backend.

State machine:
    disconnected -> connecting -> connected -> (reconnecting <-> connecting) -> disconnected

- connect() is a no-op while connecting/connected to the same target.
- A closed channel schedules a reconnect after a fixed delay, up to
  max_reconnect_attempts in a row; then the counter resets to zero and the
  connection waits for an external trigger (new credential or retry()).
- Without a credential nothing reconnects.
- Observers get read-only ConnectionEvent notifications; the state, target and
  socket are owned by this class alone.
"""
from __future__ import annotations

import asyncio
import inspect
import json
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set, Union

import aiohttp
from pydantic import ValidationError

from ..core.errors import ConnectionLost, ReconnectExhausted
from ..core.logging import get_logger
from ..core.models import ConnectionEvent, ConnectionState, ConnectionTarget, ExecutorEnvelope
from ..core.observability import increment_metric, log_context, mask_secret_value, target_ctx
from .discovery import CodespacesDiscovery
from .handoff import CredentialHandoff

logger = get_logger(__name__)


class DuplexSocket(Protocol):
    async def receive(self) -> aiohttp.WSMessage: ...

    async def send_str(self, data: str) -> None: ...

    async def close(self) -> Any: ...


WsConnect = Callable[[str, Dict[str, str]], Awaitable[DuplexSocket]]
Observer = Callable[[ConnectionEvent], Union[None, Awaitable[None]]]
MessageHandler = Callable[[ExecutorEnvelope], Union[None, Awaitable[None]]]

_CLOSING_TYPES = (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSING, aiohttp.WSMsgType.CLOSED)


class _SessionSocket:
    """An aiohttp websocket together with the session that owns it."""

    def __init__(self, session: aiohttp.ClientSession, ws: aiohttp.ClientWebSocketResponse):
        self._session = session
        self._ws = ws

    async def receive(self) -> aiohttp.WSMessage:
        return await self._ws.receive()

    async def send_str(self, data: str) -> None:
        await self._ws.send_str(data)

    async def close(self) -> None:
        try:
            await self._ws.close()
        finally:
            await self._session.close()


# PUBLIC_INTERFACE
def aiohttp_connector(heartbeat: Optional[float] = 30.0, timeout: float = 15.0) -> WsConnect:
    """Default channel factory: aiohttp websocket with ping/pong keepalive."""

    async def _connect(url: str, headers: Dict[str, str]) -> DuplexSocket:
        session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=None, connect=timeout))
        try:
            ws = await session.ws_connect(url, headers=headers, heartbeat=heartbeat or None)
        except BaseException:
            await session.close()
            raise
        return _SessionSocket(session, ws)

    return _connect


class ExecutorConnection:
    """Owns the current executor target, the duplex socket and the reconnect timer."""

    def __init__(
        self,
        local_url: str = "ws://127.0.0.1:4002",
        discovery: Optional[CodespacesDiscovery] = None,
        handoff: Optional[CredentialHandoff] = None,
        observers: Optional[List[Observer]] = None,
        on_message: Optional[MessageHandler] = None,
        credential: Optional[str] = None,
        reconnect_delay: float = 5.0,
        max_reconnect_attempts: int = 10,
        ws_connect: Optional[WsConnect] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.local_url = local_url
        self.discovery = discovery
        self.handoff = handoff
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_attempts = max_reconnect_attempts
        self._observers: List[Observer] = list(observers or [])
        self._on_message = on_message
        self._credential = credential or None
        self._ws_connect = ws_connect or aiohttp_connector()
        self._sleep = sleep

        self._state = ConnectionState.DISCONNECTED
        self._target: Optional[ConnectionTarget] = None
        self._ws: Optional[DuplexSocket] = None
        self._reconnect_attempts = 0
        self._exhausted = False
        self._reconnect_task: Optional[asyncio.Task] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._pending: Set[asyncio.Task] = set()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def target(self) -> Optional[ConnectionTarget]:
        return self._target

    @property
    def connected(self) -> bool:
        return self._state is ConnectionState.CONNECTED

    @property
    def exhausted(self) -> bool:
        return self._exhausted

    @property
    def reconnect_attempts(self) -> int:
        return self._reconnect_attempts

    @property
    def credential(self) -> Optional[str]:
        return self._credential

    # PUBLIC_INTERFACE
    def add_observer(self, observer: Observer) -> None:
        """Subscribe to connection notifications."""
        self._observers.append(observer)

    # PUBLIC_INTERFACE
    def remove_observer(self, observer: Observer) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    async def _emit(self, kind: str, **fields: Any) -> None:
        event = ConnectionEvent(kind=kind, **fields)
        for observer in list(self._observers):
            try:
                result = observer(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Connection observer failed on %s", kind)

    def _cancel_reconnect(self) -> None:
        task = self._reconnect_task
        self._reconnect_task = None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    # PUBLIC_INTERFACE
    def info(self) -> Dict[str, Any]:
        """Snapshot for status surfaces."""
        return {
            "state": self._state.value,
            "target": self._target.to_wire() if self._target else None,
            "connected": self.connected,
            "exhausted": self._exhausted,
            "reconnectAttempts": self._reconnect_attempts,
            "maxReconnectAttempts": self.max_reconnect_attempts,
        }

    # PUBLIC_INTERFACE
    async def set_credential(self, credential: Optional[str]) -> None:
        """Install or clear the executor credential.

        A new credential is the external trigger that resumes a connection that
        gave up; clearing it tears the connection down.
        """
        self._credential = credential or None
        if not self._credential:
            logger.info("Executor credential cleared; disconnecting")
            await self.disconnect()
            return
        logger.info("Executor credential set (%s)", mask_secret_value(self._credential))
        self._exhausted = False
        if self._state is ConnectionState.DISCONNECTED:
            await self.auto_connect()

    # PUBLIC_INTERFACE
    async def auto_connect(self) -> Optional[ConnectionTarget]:
        """Pick a target (discovered remote first, else localhost) and connect to it."""
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return self._target

        target: Optional[ConnectionTarget] = None
        if self.discovery is not None and self.discovery.available():
            try:
                candidates = await self.discovery.discover()
            except Exception:
                logger.warning("Remote discovery failed; falling back to localhost", exc_info=True)
                candidates = []
            target = candidates[0] if candidates else None
        if target is None:
            target = ConnectionTarget(type="localhost", url=self.local_url, name="localhost")

        await self.connect(target)
        return target

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self._credential}"} if self._credential else {}

    # PUBLIC_INTERFACE
    async def connect(self, target: ConnectionTarget) -> None:
        """Open the duplex channel to target."""
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            if self._target == target:
                logger.debug("Already %s to %s", self._state.value, target.label)
                return
            await self.switch_target(target)
            return

        self._cancel_reconnect()
        self._target = target
        self._state = ConnectionState.CONNECTING
        with log_context(target=target.label):
            await self._emit("connecting", target=target)
            try:
                ws = await self._ws_connect(target.url, self._headers())
            except Exception as exc:
                if self._target != target or self._state is not ConnectionState.CONNECTING:
                    return
                err = ConnectionLost(f"could not connect to {target.label}: {type(exc).__name__}", cause=exc)
                logger.warning(err.message)
                self._state = ConnectionState.DISCONNECTED
                await self._emit("error", target=target, message=err.message)
                await self._emit("disconnected", target=target)
                await self._attempt_reconnect()
                return

            if self._target != target or self._state is not ConnectionState.CONNECTING:
                # disconnected or switched while the handshake was in flight
                await self._close_quietly(ws)
                return

            self._ws = ws
            self._reconnect_attempts = 0
            self._exhausted = False
            self._state = ConnectionState.CONNECTED
            logger.info("Connected to executor at %s", target.label)
            await self._emit("connected", target=target)
            if self._ws is ws:
                self._reader_task = asyncio.create_task(self._read_loop(ws, target))

    async def _attempt_reconnect(self) -> None:
        target = self._target
        if not self._credential or target is None:
            logger.info("No executor credential; waiting before reconnecting")
            return
        if self._reconnect_attempts >= self.max_reconnect_attempts:
            err = ReconnectExhausted(
                f"gave up on {target.label} after {self._reconnect_attempts} reconnect attempts"
            )
            logger.error(err.message)
            self._reconnect_attempts = 0
            self._exhausted = True
            await self._emit(
                "reconnect_exhausted",
                target=target,
                max_attempts=self.max_reconnect_attempts,
                message=err.message,
            )
            return

        self._reconnect_attempts += 1
        increment_metric("reconnect_attempts_total", 1.0)
        self._state = ConnectionState.RECONNECTING
        attempt = self._reconnect_attempts
        logger.info("Reconnecting to %s in %.1fs (attempt %d/%d)", target.label, self.reconnect_delay, attempt, self.max_reconnect_attempts)
        self._reconnect_task = asyncio.create_task(self._reconnect_after_delay(target))
        await self._emit("reconnecting", target=target, attempt=attempt, max_attempts=self.max_reconnect_attempts)

    async def _reconnect_after_delay(self, target: ConnectionTarget) -> None:
        await self._sleep(self.reconnect_delay)
        if self._reconnect_task is not asyncio.current_task():
            return
        self._reconnect_task = None
        await self.connect(target)

    async def _read_loop(self, ws: DuplexSocket, target: ConnectionTarget) -> None:
        target_ctx.set(target.label)
        try:
            while True:
                msg = await ws.receive()
                if msg.type == aiohttp.WSMsgType.TEXT:
                    await self._on_text(msg.data, target)
                elif msg.type in _CLOSING_TYPES:
                    break
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning("Executor channel error: %s", msg.data)
                    break
                else:
                    logger.debug("Ignoring %s frame from executor", msg.type.name)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.warning("Executor channel to %s failed", target.label, exc_info=True)
        await self._close_quietly(ws)
        await self._handle_close(ws, target)

    async def _handle_close(self, ws: DuplexSocket, target: ConnectionTarget) -> None:
        if self._ws is not ws:
            return
        self._ws = None
        self._reader_task = None
        self._state = ConnectionState.DISCONNECTED
        logger.info("Executor channel to %s closed", target.label)
        await self._emit("disconnected", target=target)
        await self._attempt_reconnect()

    async def _on_text(self, data: str, target: ConnectionTarget) -> None:
        try:
            payload = json.loads(data)
            envelope = ExecutorEnvelope.model_validate(payload)
        except (ValueError, ValidationError):
            logger.warning("Dropping malformed executor message")
            return

        if self.handoff is not None:
            task = asyncio.create_task(self._respond(self.handoff, envelope, target))
            self._pending.add(task)
            task.add_done_callback(self._pending.discard)

        if self._on_message is not None:
            try:
                result = self._on_message(envelope)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Executor message handler failed for %s", envelope.type)

    async def _respond(self, handoff: CredentialHandoff, envelope: ExecutorEnvelope, target: ConnectionTarget) -> None:
        response = await handoff.handle(envelope, target)
        if response is not None:
            await self.send(response)

    # PUBLIC_INTERFACE
    async def send(self, envelope: Union[Dict[str, Any], ExecutorEnvelope]) -> bool:
        """Send an envelope if connected; otherwise log and drop it."""
        payload = envelope.to_wire() if isinstance(envelope, ExecutorEnvelope) else envelope
        ws = self._ws
        if self._state is not ConnectionState.CONNECTED or ws is None:
            logger.warning("Not connected; dropping outbound %s", payload.get("type"))
            return False
        try:
            await ws.send_str(json.dumps(payload))
        except Exception as exc:
            logger.warning("Sending %s failed: %s", payload.get("type"), type(exc).__name__)
            return False
        return True

    async def _close_quietly(self, ws: DuplexSocket) -> None:
        try:
            await ws.close()
        except Exception:
            logger.debug("Error while closing executor channel", exc_info=True)

    # PUBLIC_INTERFACE
    async def disconnect(self) -> None:
        """Tear down the connection and fully reset target and retry state."""
        self._cancel_reconnect()
        previous = self._target
        ws = self._ws
        reader = self._reader_task

        self._ws = None
        self._reader_task = None
        self._target = None
        self._reconnect_attempts = 0
        self._state = ConnectionState.DISCONNECTED

        if reader is not None and reader is not asyncio.current_task() and not reader.done():
            reader.cancel()
        for task in list(self._pending):
            task.cancel()
        if ws is not None:
            await self._close_quietly(ws)
        if self.handoff is not None and previous is not None:
            self.handoff.forget_public_key(previous)
        if previous is not None:
            logger.info("Disconnected from %s", previous.label)
            await self._emit("disconnected", target=previous)

    # PUBLIC_INTERFACE
    async def switch_target(self, new_target: ConnectionTarget) -> None:
        """Deliberately move to another target."""
        previous = self._target
        await self._emit("switching", target=new_target, previous=previous)
        await self.disconnect()
        await self.connect(new_target)

    # PUBLIC_INTERFACE
    async def retry(self) -> Optional[ConnectionTarget]:
        """Manual retry: resume after exhaustion or reconnect immediately."""
        if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
            return self._target
        self._cancel_reconnect()
        self._exhausted = False
        self._reconnect_attempts = 0
        self._state = ConnectionState.DISCONNECTED
        if self._target is not None:
            target = self._target
            await self.connect(target)
            return target
        return await self.auto_connect()

    # PUBLIC_INTERFACE
    async def close(self) -> None:
        """Disconnect and wait for in-flight hand-offs to settle."""
        pending = list(self._pending)
        await self.disconnect()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
