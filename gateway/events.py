"""Event subscription table used by the gateway client."""
import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, Optional, Set, Union

from loguru import logger

EventPayload = Dict[str, Any]
EventHandler = Callable[[EventPayload], Union[None, Awaitable[None]]]


class EventRegistry:
    """Named-event handler table with concurrent dispatch.

    At most one handler is kept per event name; registering again replaces
    the previous handler. ``dispatch`` never runs the handler inline: every
    call gets its own task, so a slow or failing handler cannot stall the
    caller (the read loop) or other events. Tasks start in dispatch order.
    """

    def __init__(self):
        self._handlers: Dict[str, EventHandler] = {}
        self._tasks: Set[asyncio.Task] = set()

    def on(self, event: str, handler: EventHandler) -> None:
        """Register the handler for an event, replacing any previous one."""
        if event in self._handlers and self._handlers[event] != handler:
            logger.debug(f"Replacing handler for event: {event}")
        self._handlers[event] = handler
        logger.debug(f"Registered handler for event: {event}")

    def off(self, event: str, handler: Optional[EventHandler] = None) -> None:
        """Unregister a handler.

        With ``handler`` given, the entry is only removed while it is still
        that handler, so a stale unsubscribe cannot drop a newer registration.
        """
        current = self._handlers.get(event)
        if current is None:
            return
        if handler is not None and current != handler:
            return
        del self._handlers[event]
        logger.debug(f"Unregistered handler for event: {event}")

    def get(self, event: str) -> Optional[EventHandler]:
        return self._handlers.get(event)

    def dispatch(self, event: str, payload: Optional[EventPayload]) -> bool:
        """Schedule the handler for ``event``; returns False when nobody listens."""
        handler = self._handlers.get(event)
        if handler is None:
            logger.debug(f"No handler for event: {event}")
            return False

        task = asyncio.create_task(self._invoke(event, handler, payload or {}))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return True

    async def _invoke(self, event: str, handler: EventHandler, payload: EventPayload) -> None:
        try:
            result = handler(payload)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            logger.error(f"Error in event handler for {event}: {e}")

    @property
    def pending_dispatches(self) -> int:
        return len(self._tasks)

    async def cancel_dispatches(self) -> None:
        """Cancel in-flight handler tasks and wait for them to finish."""
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
