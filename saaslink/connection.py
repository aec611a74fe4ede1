import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Dict, List, Optional

from . import messages as m
from .framing import ACK, EVENT, ack_frame, event_frame, read_frame, write_frame
from .handshake import HandshakeError, Session

"""
connection.py — the event channel and the connection lifecycle.

EventChannel: named events over framed JSON on one asyncio stream pair.
    - on(event, handler)   handler(data) -> ack args (list) or None
    - emit(event, data)    fire and forget
    - call(event, data)    wait for the peer's acknowledgement
    Every inbound event runs in its own task, so a slow command never holds
    up the reader loop (or other commands).

ConnectionManager: keeps one logical session alive.
    - bounded reconnects (5 attempts, 2s growing to at most 5s)
    - a fresh Session and a fresh handshake on every connect
    - lifecycle notifications: connected, disconnected, handshake_complete,
      transport_error, reconnect_failed
"""

logger = logging.getLogger("saaslink.connection")

CONNECT_TIMEOUT = 10.0
CALL_TIMEOUT = 30.0

EventHandler = Callable[[Any], Awaitable[Optional[List[Any]]]]


class EventChannel:
    """Event/acknowledgement protocol on top of the frame codec."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.reader = reader
        self.writer = writer
        self._handlers: Dict[str, EventHandler] = {}
        self._pending: Dict[int, asyncio.Future] = {}
        self._tasks: set = set()
        self._next_id = 0
        self._closed = False

    @classmethod
    async def open(cls, host: str, port: int, timeout: float = CONNECT_TIMEOUT) -> "EventChannel":
        reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
        return cls(reader, writer)

    @property
    def closed(self) -> bool:
        return self._closed

    def on(self, event: str, handler: EventHandler) -> None:
        self._handlers[event] = handler

    async def emit(self, event: str, data: Any = None) -> None:
        await write_frame(self.writer, event_frame(event, data))

    async def call(self, event: str, data: Any = None, timeout: float = CALL_TIMEOUT) -> List[Any]:
        """Emit and wait for the acknowledgement arguments."""
        self._next_id += 1
        ack_id = self._next_id
        future = asyncio.get_running_loop().create_future()
        self._pending[ack_id] = future
        try:
            await write_frame(self.writer, event_frame(event, data, ack_id))
            return await asyncio.wait_for(future, timeout)
        finally:
            self._pending.pop(ack_id, None)

    async def run(self) -> None:
        """
        Reader loop. Returns on a clean EOF; codec and socket errors propagate.
        Pending calls fail with ConnectionError either way.
        """
        try:
            while True:
                frame = await read_frame(self.reader)
                if frame is None:
                    break
                self._route(frame)
        finally:
            self._closed = True
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(ConnectionError("Channel closed"))

    def _route(self, frame: Dict[str, Any]) -> None:
        kind = frame.get("type")
        if kind == ACK:
            ack_id = frame.get("id")
            future = self._pending.get(ack_id) if isinstance(ack_id, int) else None
            if future is not None and not future.done():
                args = frame.get("args")
                future.set_result(args if isinstance(args, list) else [])
            return

        if kind != EVENT:
            logger.debug("Ignoring frame of unknown type %r", kind)
            return

        handler = self._handlers.get(frame.get("event"))
        if handler is None:
            logger.debug("No handler for event %r", frame.get("event"))
            return

        task = asyncio.create_task(self._handle(handler, frame))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _handle(self, handler: EventHandler, frame: Dict[str, Any]) -> None:
        event = frame.get("event")
        try:
            args = await handler(frame.get("data"))
        except Exception:
            logger.exception("Handler for %r failed", event)
            return

        ack_id = frame.get("id")
        if ack_id is None or args is None:
            return
        if self._closed:
            logger.info("Reply to %r not delivered: channel closed.", event)
            return
        try:
            try:
                await write_frame(self.writer, ack_frame(ack_id, args))
            except ValueError as exc:
                logger.warning("Reply to %r dropped: %s", event, exc)
                await write_frame(self.writer, ack_frame(ack_id, m.plain_error(m.REPLY_TOO_LARGE)))
        except (OSError, RuntimeError) as exc:
            logger.info("Reply to %r not delivered: %s", event, exc)

    async def close(self) -> None:
        self._closed = True
        self.writer.close()
        try:
            await self.writer.wait_closed()
        except OSError:
            pass


class ReconnectPolicy:
    """
    Exponential backoff with jitter, socket.io style.

    Delay for attempt n (1-based) is delay * 2**(n-1), randomized by
    +/- `randomization`, and always kept within [delay, delay_max].
    """
    def __init__(
        self,
        attempts: int = 5,
        delay: float = 2.0,
        delay_max: float = 5.0,
        randomization: float = 0.5,
    ) -> None:
        self.attempts = attempts
        self.delay = delay
        self.delay_max = delay_max
        self.randomization = randomization

    def backoff(self, attempt: int) -> float:
        wait = self.delay * (2 ** max(attempt - 1, 0))
        if self.randomization:
            deviation = random.random() * self.randomization * wait
            wait = wait - deviation if random.random() < 0.5 else wait + deviation
        return min(max(wait, self.delay), self.delay_max)

    def exhausted(self, attempt: int) -> bool:
        return attempt > self.attempts


class ConnectionManager:
    """
    Owns the transport and the Session for one agent.

    Transport errors and disconnects only reset the session; whether and
    when to try again is decided by the ReconnectPolicy alone.
    """

    LIFECYCLE_EVENTS = ("connected", "disconnected", "handshake_complete",
                        "transport_error", "reconnect_failed")

    def __init__(
        self,
        agent,
        policy: Optional[ReconnectPolicy] = None,
        opener: Optional[Callable[[], Awaitable[EventChannel]]] = None,
    ) -> None:
        self.agent = agent
        self.policy = policy or ReconnectPolicy()
        self._opener = opener
        self.first_attempt = True
        self.channel: Optional[EventChannel] = None
        self._listeners: Dict[str, List[Callable[..., Any]]] = {e: [] for e in self.LIFECYCLE_EVENTS}
        self._stopped = False

    # -- listeners ---------------------------------------------------------

    def add_listener(self, event: str, callback: Callable[..., Any]) -> None:
        if event not in self._listeners:
            raise ValueError(f"Unknown lifecycle event: {event}")
        self._listeners[event].append(callback)

    def _notify(self, event: str, *args: Any) -> None:
        for callback in list(self._listeners[event]):
            try:
                callback(*args)
            except Exception:
                logger.exception("Listener for %s failed", event)

    # -- lifecycle ---------------------------------------------------------

    async def _open(self) -> EventChannel:
        if self._opener is not None:
            return await self._opener()
        host, port = self.agent.config.channel_address()
        return await EventChannel.open(host, port)

    async def run(self) -> None:
        """Connect, serve, reconnect; returns once retries are exhausted or stop() is called."""
        failures = 0
        while not self._stopped:
            if failures:
                if self.policy.exhausted(failures):
                    logger.warning("Reconnection to the SaaS server failed!")
                    self._notify("reconnect_failed")
                    return
                logger.warning(
                    "Connection error with the SaaS server, new attempt in progress... (%d)", failures)
                await asyncio.sleep(self.policy.backoff(failures))
                if self._stopped:
                    return

            try:
                channel = await self._open()
            except (OSError, asyncio.TimeoutError) as exc:
                if self.first_attempt:
                    logger.warning("Connection to the SaaS server failed!")
                    self.first_attempt = False
                self._notify("transport_error", exc)
                failures += 1
                continue

            if failures:
                logger.info("Connection to the SaaS server found, please wait a few seconds...")
            self.first_attempt = False
            failures = 0
            await self.serve(channel)
            # A dropped connection counts as the first failed attempt.
            failures = 1

    async def stop(self) -> None:
        self._stopped = True
        if self.channel is not None:
            await self.channel.close()

    async def serve(self, channel: EventChannel) -> None:
        """Run one connection from handshake to disconnect."""
        session = Session(token=self.agent.load_token())
        self.agent.session = session
        self.channel = channel

        channel.on(m.AUTHORIZED, lambda data: self._on_authorized(channel, session, data))
        channel.on(m.TODO, self.agent.dispatcher.dispatch)
        channel.on(m.ERR, self._on_err)

        logger.info("Connection with the SaaS server found, please wait a few seconds...")
        self._notify("connected")
        handshake = asyncio.create_task(self.handshake(channel, session))

        try:
            await channel.run()
        except (OSError, ValueError, asyncio.IncompleteReadError) as exc:
            logger.warning("SaaS transport error: %s", exc)
            self._notify("transport_error", exc)
        finally:
            if not handshake.done():
                handshake.cancel()
            session.reset()
            self.channel = None
            await channel.close()
            logger.info("Disconnected from the SaaS server.")
            self._notify("disconnected")

    # -- handshake ---------------------------------------------------------

    async def handshake(self, channel: EventChannel, session: Session) -> None:
        """Keypair, peer key, trust proof. The `authorized` event finishes it."""
        protocol = self.agent.handshake
        try:
            await asyncio.to_thread(protocol.begin_handshake, session)
        except HandshakeError as exc:
            logger.error("Cannot secure the SaaS connection: %s", exc)
            await channel.close()
            return

        try:
            args = await channel.call(m.GET_PUBLIC_KEY, None)
        except (ConnectionError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("No public key from the SaaS server: %s", exc)
            return

        raw_key = args[0] if args else None
        if not raw_key or not protocol.on_peer_public_key(session, raw_key):
            logger.debug("Handshake aborted: peer public key unusable.")
            return

        try:
            await channel.emit(m.CHECK, protocol.build_trust_proof(session))
        except (HandshakeError, OSError, RuntimeError) as exc:
            logger.warning("Trust proof not sent to the SaaS server: %s", exc)

    async def _on_authorized(self, channel: EventChannel, session: Session, data: Any) -> None:
        confirmation = self.agent.handshake.on_challenge(session, data)
        if confirmation is None:
            logger.debug("Challenge rejected; session stays untrusted.")
            return None

        try:
            args = await channel.call(m.TEST_ENCRYPTION, confirmation)
        except (ConnectionError, OSError, asyncio.TimeoutError) as exc:
            logger.warning("Encryption test with the SaaS server failed: %s", exc)
            return None

        if args and args[0]:
            logger.warning(args[0])
        logger.info("Connected with the SaaS server.")
        self._notify("handshake_complete")
        return None

    async def _on_err(self, data: Any) -> None:
        text = data.get("text") if isinstance(data, dict) else data
        logger.warning("%s", text)
        return None
