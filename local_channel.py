#!/usr/bin/env python3

import asyncio
import inspect
import json
import logging
import traceback
from typing import Dict, Any, Optional, List, Callable, Awaitable

logger = logging.getLogger(__name__)

LOCAL_STORAGE_TOPIC = "localStorage"
DEFAULT_REQUEST_TIMEOUT = 4.0

Sink = Callable[[Dict[str, Any]], Awaitable[None]]


def _decode(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return value
    return value


class LocalChannel:
    """
    Topic-based messaging between the host process and the UI.

    Outbound messages go to every attached sink (one per connected UI
    socket). Replies and UI-initiated messages come back through deliver().
    A request waits for the reply on "<topic>:<key>" and resolves to None
    when no reply arrives in time.
    """

    def __init__(self):
        self._sinks: List[Sink] = []
        self._pending: Dict[str, List[asyncio.Future]] = {}
        self._subscribers: Dict[str, List[Callable]] = {}

    def attach(self, sink: Sink):
        self._sinks.append(sink)
        logger.info(f"UI channel attached ({len(self._sinks)} connected)")

    def detach(self, sink: Sink):
        if sink in self._sinks:
            self._sinks.remove(sink)
            logger.info(f"UI channel detached ({len(self._sinks)} connected)")

    @property
    def connected(self) -> bool:
        return bool(self._sinks)

    def subscribe(self, topic: str, handler: Callable):
        """Handle UI-initiated messages on a topic; handler(value) may be async"""
        self._subscribers.setdefault(topic, []).append(handler)

    async def send(self, topic: str, key: Optional[str] = None, value: Any = None, action: Optional[str] = None) -> bool:
        """Push a message to the UI; returns False if no UI is connected"""
        message: Dict[str, Any] = {"topic": topic, "key": key, "value": value}
        if action:
            message["action"] = action

        if not self._sinks:
            logger.warning(f"No UI connected, dropping message on {topic}")
            return False

        delivered = False
        for sink in list(self._sinks):
            try:
                await sink(message)
                delivered = True
            except Exception as e:
                logger.error(f"Error sending {topic} to UI: {e}")
                self.detach(sink)
        return delivered

    async def request(
        self,
        topic: str,
        key: str,
        value: Any = None,
        action: Optional[str] = None,
        timeout: float = DEFAULT_REQUEST_TIMEOUT,
    ) -> Any:
        """Send and wait for the reply on "<topic>:<key>"; None on timeout"""
        reply_topic = f"{topic}:{key}"
        future = asyncio.get_running_loop().create_future()
        self._pending.setdefault(reply_topic, []).append(future)

        try:
            if not await self.send(topic, key, value, action=action):
                return None
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError:
            logger.error(f"Timeout waiting for {reply_topic}")
            return None
        finally:
            waiting = self._pending.get(reply_topic, [])
            if future in waiting:
                waiting.remove(future)
            if not waiting:
                self._pending.pop(reply_topic, None)

    async def deliver(self, topic: str, value: Any = None) -> bool:
        """
        Hand a message from the UI to whoever waits for it.

        Returns:
            True if a pending request or a subscriber took the message
        """
        value = _decode(value)

        waiting = self._pending.pop(topic, [])
        resolved = False
        for future in waiting:
            if not future.done():
                future.set_result(value)
                resolved = True
        if resolved:
            return True

        handlers = self._subscribers.get(topic, [])
        if not handlers:
            logger.debug(f"No receiver for UI message on {topic}")
            return False

        for handler in list(handlers):
            try:
                result = handler(value)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error handling UI message on {topic}: {e}")
                logger.error(f"Handler traceback: {traceback.format_exc()}")
        return True

    # The UI's local storage, reached through the channel

    async def set_item(self, key: str, value: Any) -> bool:
        if isinstance(value, (dict, list)):
            value = json.dumps(value)
        return await self.send(LOCAL_STORAGE_TOPIC, key, value, action="setItem")

    async def remove_item(self, key: str) -> bool:
        return await self.send(LOCAL_STORAGE_TOPIC, key, None, action="removeItem")

    async def get_item(self, key: str, timeout: float = DEFAULT_REQUEST_TIMEOUT) -> Any:
        return await self.request(LOCAL_STORAGE_TOPIC, key, action="getItem", timeout=timeout)
