import asyncio
import json
from typing import Any, Awaitable, Callable, Dict, Set

from .logs import structured_log

WIPE_STATUS = "wipe_status"
WIPE_OUTPUT = "wipe_output"


class Observer:
    """One connected client: a bounded outbound queue drained by one writer."""

    def __init__(self, maxsize: int = 1000):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.open = True
        self.dropped = 0

    def offer(self, message: Dict[str, Any]) -> bool:
        if not self.open:
            return False
        try:
            self.queue.put_nowait(message)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            return False

    def close(self):
        self.open = False


class TelemetryBroadcaster:
    """Best-effort fan-out of status/output events. No replay for late joiners.

    ``publish`` must be called from the event loop thread.
    """

    def __init__(self, queue_size: int = 1000):
        self.queue_size = queue_size
        self._observers: Set[Observer] = set()

    @property
    def observer_count(self) -> int:
        return len(self._observers)

    def subscribe(self) -> Observer:
        obs = Observer(self.queue_size)
        self._observers.add(obs)
        return obs

    def unsubscribe(self, obs: Observer):
        obs.close()
        self._observers.discard(obs)

    def publish(self, event_type: str, payload: Any) -> int:
        message = {"type": event_type, "payload": payload}
        delivered = 0
        for obs in list(self._observers):
            if obs.offer(message):
                delivered += 1
        return delivered

    def status(self, payload: Dict[str, Any]) -> int:
        return self.publish(WIPE_STATUS, payload)

    def output(self, text: str) -> int:
        return self.publish(WIPE_OUTPUT, text)

    async def pump(self, obs: Observer, send: Callable[[str], Awaitable[None]]):
        """Serialize queued events onto one observer's transport until it fails."""
        try:
            while obs.open:
                message = await obs.queue.get()
                await send(json.dumps(message))
        except Exception as e:
            structured_log("observer_send_failed", error=str(e))
        finally:
            self.unsubscribe(obs)
