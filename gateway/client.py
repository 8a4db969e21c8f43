"""
Gateway client - correlated requests and event subscriptions over one WebSocket.
"""
import asyncio
import time
import uuid
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from loguru import logger
from pydantic import BaseModel, ValidationError

from .agent_run import DEFAULT_FRAGMENT_CAPACITY, AgentRun
from .connection import GatewayConnection
from .errors import (
    AuthRejected,
    DecodeError,
    HandshakeTimeout,
    InvokeFailed,
    RequestTimeout,
    TransportError,
)
from .events import EventHandler, EventRegistry
from .protocol import (
    LIFECYCLE_END,
    PROTOCOL_VERSION,
    AgentAcceptedPayload,
    AgentEventPayload,
    AgentParams,
    AgentStream,
    AssistantDelta,
    AuthInfo,
    ConnectParams,
    EventMessage,
    GatewayEvent,
    GatewayProtocol,
    LifecycleData,
    RequestMethod,
    ResponseMessage,
)

Connector = Callable[[str, Optional[float]], Awaitable[Any]]

# Runs whose events arrived before their invoke response was processed.
MAX_UNCLAIMED_RUNS = 32


class _PendingRequest:
    __slots__ = ("request_id", "method", "future", "created_at")

    def __init__(self, request_id: str, method: str, future: asyncio.Future):
        self.request_id = request_id
        self.method = method
        self.future = future
        self.created_at = time.monotonic()


class GatewayClient:
    """Moltbot gateway client.

    One instance owns one connection. Requests are correlated to responses by
    id, events are dispatched by name through an ``EventRegistry``, and agent
    turns are exposed as ``AgentRun`` handles fed by the ``agent`` event.
    """

    def __init__(
        self,
        url: str,
        token: str,
        agent_id: str = "main",
        *,
        handshake_timeout: float = 5.0,
        request_timeout: float = 30.0,
        locale: str = "zh-CN",
        fragment_capacity: int = DEFAULT_FRAGMENT_CAPACITY,
        connector: Optional[Connector] = None,
    ):
        self.url = url
        self.token = token
        self.agent_id = agent_id
        self.handshake_timeout = handshake_timeout
        self.request_timeout = request_timeout
        self.locale = locale
        self.fragment_capacity = fragment_capacity
        self._connector: Connector = connector or GatewayConnection.open

        self._conn = None
        self._read_task: Optional[asyncio.Task] = None
        self._ready = False

        self._pending: Dict[str, _PendingRequest] = {}
        self._pending_lock = asyncio.Lock()
        self._events = EventRegistry()

        self._runs: Dict[str, AgentRun] = {}
        self._unclaimed: "OrderedDict[str, List[AgentEventPayload]]" = OrderedDict()

    # ============ Lifecycle ============

    @property
    def is_connected(self) -> bool:
        return self._ready and self._conn is not None

    async def connect(self, timeout: Optional[float] = 10.0) -> None:
        """Open the socket, wait for the challenge and authenticate."""
        logger.info(f"Connecting to gateway: {self.url}")
        conn = await self._connector(self.url, timeout)
        self._conn = conn

        loop = asyncio.get_running_loop()
        challenge: asyncio.Future = loop.create_future()

        def on_challenge(_payload: Dict[str, Any]) -> None:
            if not challenge.done():
                challenge.set_result(None)

        # Subscribe before the read loop starts so the challenge cannot be missed.
        self._events.on(GatewayEvent.CONNECT_CHALLENGE.value, on_challenge)
        self._read_task = asyncio.create_task(self._read_loop(conn))

        try:
            logger.info("Waiting for gateway handshake (connect.challenge)...")
            try:
                await asyncio.wait_for(challenge, self.handshake_timeout)
            except asyncio.TimeoutError:
                logger.error(f"Gateway handshake timed out ({self.handshake_timeout:g}s)")
                raise HandshakeTimeout(self.handshake_timeout) from None
            finally:
                self._events.off(GatewayEvent.CONNECT_CHALLENGE.value, on_challenge)

            logger.info(f"Sending connect request (protocol={PROTOCOL_VERSION}, role=operator)")
            params = ConnectParams(
                auth=AuthInfo(token=self.token),
                locale=self.locale,
            )
            response = await self.request(RequestMethod.CONNECT, params)
            if not response.ok:
                message = response.error_message("unknown error")
                logger.error(f"Gateway rejected authentication: {message}")
                raise AuthRejected(message)
        except BaseException:
            await self.close()
            raise

        self._ready = True
        logger.info("Gateway authenticated, connection ready")

    async def close(self) -> None:
        """Release the connection. Safe to call more than once."""
        conn, self._conn = self._conn, None
        self._ready = False
        read_task, self._read_task = self._read_task, None

        if read_task is not None and not read_task.done():
            read_task.cancel()
            await asyncio.gather(read_task, return_exceptions=True)
        if conn is not None:
            await conn.close()
            logger.info("Gateway connection closed")
        await self._events.cancel_dispatches()

    # ============ Events ============

    def on_event(self, event: Union[GatewayEvent, str], handler: EventHandler) -> None:
        self._events.on(_event_name(event), handler)

    def off_event(self, event: Union[GatewayEvent, str], handler: Optional[EventHandler] = None) -> None:
        self._events.off(_event_name(event), handler)

    # ============ Requests ============

    async def request(
        self,
        method: Union[RequestMethod, str],
        params: Union[BaseModel, Dict[str, Any], None] = None,
        request_id: Optional[str] = None,
    ) -> ResponseMessage:
        """Send a request and wait for the response carrying the same id."""
        conn = self._conn
        if conn is None or (self._read_task is not None and self._read_task.done()):
            raise TransportError("gateway is not connected")

        message = GatewayProtocol.create_request(method, params, request_id or str(uuid.uuid4()))
        pending = _PendingRequest(message.id, message.method, asyncio.get_running_loop().create_future())

        async with self._pending_lock:
            if self._read_task is None or self._read_task.done():
                raise TransportError("gateway is not connected")
            if message.id in self._pending:
                raise ValueError(f"request id already in flight: {message.id}")
            self._pending[message.id] = pending

        try:
            await conn.send_message(message)
            try:
                return await asyncio.wait_for(pending.future, self.request_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Request timed out: method={message.method}, id={message.id}")
                raise RequestTimeout(message.method, self.request_timeout) from None
        finally:
            async with self._pending_lock:
                if self._pending.get(message.id) is pending:
                    del self._pending[message.id]

    async def invoke_agent(self, session_key: str, message: str) -> AgentRun:
        """Start an agent turn and return its live run handle."""
        params = AgentParams(
            message=message,
            agent_id=self.agent_id,
            session_key=session_key,
            deliver=False,
        )
        # Register the demultiplexer before the request so early events are kept.
        if self._events.get(GatewayEvent.AGENT.value) != self._on_agent_event:
            self._events.on(GatewayEvent.AGENT.value, self._on_agent_event)

        response = await self.request(RequestMethod.AGENT, params)
        if not response.ok:
            code = response.error.code if response.error else None
            raise InvokeFailed(response.error_message("request failed"), code=code)

        try:
            accepted = AgentAcceptedPayload.model_validate(response.payload or {})
        except ValidationError as e:
            raise DecodeError(f"failed to parse agent response: {e}") from e

        run = AgentRun(accepted.run_id, self.fragment_capacity)
        self._claim_run(run)
        logger.info(f"Agent run started: run_id={run.run_id}, session={session_key}")
        return run

    def release_run(self, run: AgentRun) -> None:
        """Forget a run the caller has finished consuming."""
        if self._runs.get(run.run_id) is run:
            del self._runs[run.run_id]
        self._unclaimed.pop(run.run_id, None)

    @property
    def active_runs(self) -> int:
        return len(self._runs)

    # ============ Inbound ============

    async def _read_loop(self, conn) -> None:
        error: BaseException = TransportError("gateway connection closed")
        try:
            while True:
                data = await conn.receive()
                if data is None:
                    logger.warning("Gateway closed the connection")
                    break
                try:
                    frame = GatewayProtocol.parse_message(data)
                except DecodeError as e:
                    logger.debug(f"Dropping undecodable frame: {e}")
                    continue

                if isinstance(frame, ResponseMessage):
                    await self._deliver_response(frame)
                elif isinstance(frame, EventMessage):
                    self._events.dispatch(frame.event, frame.payload)
        except TransportError as e:
            logger.error(f"Gateway read loop stopped: {e}")
            error = e
        finally:
            self._ready = False
            await self._fail_outstanding(error)

    async def _deliver_response(self, response: ResponseMessage) -> None:
        async with self._pending_lock:
            pending = self._pending.pop(response.id, None)
        if pending is None:
            logger.debug(f"Dropping response with no waiting caller: id={response.id}")
            return
        if not pending.future.done():
            pending.future.set_result(response)

    async def _fail_outstanding(self, error: BaseException) -> None:
        async with self._pending_lock:
            pending, self._pending = list(self._pending.values()), {}
        for item in pending:
            if not item.future.done():
                item.future.set_exception(error)

        runs, self._runs = list(self._runs.values()), {}
        self._unclaimed.clear()
        for run in runs:
            run.fail(error)
        if pending or runs:
            logger.warning(
                f"Failed {len(pending)} pending request(s) and {len(runs)} run(s): {error}"
            )

    def _on_agent_event(self, payload: Dict[str, Any]) -> None:
        try:
            event = AgentEventPayload.model_validate(payload)
        except ValidationError as e:
            logger.debug(f"Dropping malformed agent event: {e}")
            return

        run = self._runs.get(event.run_id)
        if run is None:
            self._hold_unclaimed(event)
            return
        self._route_agent_event(run, event)

    def _route_agent_event(self, run: AgentRun, event: AgentEventPayload) -> None:
        data = event.data or {}
        try:
            if event.stream == AgentStream.ASSISTANT.value:
                delta = AssistantDelta.model_validate(data).delta
                if delta:
                    run.push_fragment(delta)
            elif event.stream == AgentStream.LIFECYCLE.value:
                if LifecycleData.model_validate(data).phase == LIFECYCLE_END:
                    run.end()
                    if self._runs.get(run.run_id) is run:
                        del self._runs[run.run_id]
                    logger.info(f"Agent run finished: run_id={run.run_id}")
        except ValidationError as e:
            logger.debug(f"Dropping malformed '{event.stream}' data for run {run.run_id}: {e}")

    def _hold_unclaimed(self, event: AgentEventPayload) -> None:
        held = self._unclaimed.get(event.run_id)
        if held is None:
            held = self._unclaimed[event.run_id] = []
            while len(self._unclaimed) > MAX_UNCLAIMED_RUNS:
                self._unclaimed.popitem(last=False)
        # Only assistant deltas count against the capacity; lifecycle events are always kept.
        if event.stream == AgentStream.ASSISTANT.value:
            deltas = sum(1 for e in held if e.stream == AgentStream.ASSISTANT.value)
            if deltas >= self.fragment_capacity:
                logger.debug(f"Dropping early fragment for unclaimed run {event.run_id}")
                return
        held.append(event)

    def _claim_run(self, run: AgentRun) -> None:
        self._runs[run.run_id] = run
        for event in self._unclaimed.pop(run.run_id, []):
            self._route_agent_event(run, event)


def _event_name(event: Union[GatewayEvent, str]) -> str:
    return event.value if isinstance(event, GatewayEvent) else event
