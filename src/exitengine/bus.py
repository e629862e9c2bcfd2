import asyncio
from collections import defaultdict
from typing import Callable, Any

from .utils.logging import get_logger

log = get_logger(__name__)

# Topics published by the exit engine
TOPIC_INTENT = "exit:intent"
TOPIC_SIGNAL = "exit:signal"


class EventBus:
    """In-process publish/subscribe.

    Subscribers may be plain callables or coroutine functions.  A failing
    subscriber is logged and does not prevent delivery to the others.
    """

    def __init__(self):
        self._subs: dict[str, list[Callable[[Any], None]]] = defaultdict(list)

    def subscribe(self, topic: str, cb: Callable[[Any], None]):
        self._subs[topic].append(cb)

    async def publish(self, topic: str, msg: Any):
        for cb in self._subs.get(topic, []):
            try:
                res = cb(msg)
                if asyncio.iscoroutine(res):
                    await res
            except Exception:
                log.exception("subscriber of %s failed", topic)
