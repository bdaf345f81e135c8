"""Publish/subscribe channel for flow progress events."""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Union

from .contracts import FlowEvent

logger = logging.getLogger(__name__)

EventCallback = Callable[[FlowEvent], Union[None, Awaitable[None]]]

_ALL_FLOWS = "*"


class EventBus:
    """Deliver flow events to subscribers registered per flow id.

    Events are delivered in publication order to the subscribers attached at
    emission time. Nothing is buffered for subscribers that attach later.
    """

    def __init__(self) -> None:
        self._callbacks: Dict[str, List[EventCallback]] = defaultdict(list)
        self._queues: Dict[str, List[asyncio.Queue[FlowEvent]]] = defaultdict(list)

    def subscribe(
        self, callback: EventCallback, flow_id: Optional[str] = None
    ) -> Callable[[], None]:
        """Register ``callback`` for one flow, or for all flows when ``None``.

        Returns a function that removes the subscription.
        """
        key = flow_id or _ALL_FLOWS
        self._callbacks[key].append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks.get(key, []):
                self._callbacks[key].remove(callback)

        return unsubscribe

    async def publish(self, event: FlowEvent) -> None:
        for key in (event.flow_id, _ALL_FLOWS):
            for callback in list(self._callbacks.get(key, [])):
                try:
                    result = callback(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    logger.warning(
                        f"Event subscriber failed for {event.type.value} "
                        f"on flow {event.flow_id}: {e}"
                    )
            for queue in list(self._queues.get(key, [])):
                queue.put_nowait(event)

    async def stream(
        self, flow_id: Optional[str] = None, lifespan: Optional[float] = None
    ) -> AsyncIterator[FlowEvent]:
        """Yield events as they are published.

        Args:
            flow_id: Flow to follow, or ``None`` for every flow.
            lifespan: Maximum time in seconds to keep streaming. If None, runs
                until the consumer stops iterating.
        """
        key = flow_id or _ALL_FLOWS
        queue: asyncio.Queue[FlowEvent] = asyncio.Queue()
        self._queues[key].append(queue)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan else None
        try:
            while True:
                timeout = None
                if deadline is not None:
                    timeout = deadline - loop.time()
                    if timeout <= 0:
                        break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout)
                except asyncio.TimeoutError:
                    break
                yield event
        finally:
            self._queues[key].remove(queue)
