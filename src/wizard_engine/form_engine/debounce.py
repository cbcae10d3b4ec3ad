from __future__ import annotations

import inspect
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import anyio

logger = logging.getLogger("wizard_engine.debounce")

FireCallback = Callable[[Dict[str, Any]], Union[None, Awaitable[None]]]


class KeyedDebouncer:
    """
    Last-write-wins debounce per key.

    `push()` is synchronous: it stamps a deadline for the key and wakes the consumer through a
    bounded memory channel. A single consumer (`run()`) fires every key whose deadline passed as
    one merged batch `{key: last payload}`.
    """

    def __init__(self, delay_s: float, on_fire: FireCallback, *, name: str = "debounce", max_buffer: int = 256) -> None:
        self.delay_s = max(0.0, float(delay_s))
        self.name = name
        self._on_fire = on_fire
        self._send, self._recv = anyio.create_memory_object_stream(max_buffer)
        self._deadlines: Dict[str, float] = {}
        self._payloads: Dict[str, Any] = {}
        self._closed = False
        self._running = False

    @property
    def pending(self) -> List[str]:
        return list(self._deadlines.keys())

    @property
    def closed(self) -> bool:
        return self._closed

    def push(self, key: str, payload: Any = None) -> None:
        if self._closed:
            return
        self._deadlines[key] = time.monotonic() + self.delay_s
        self._payloads[key] = payload
        try:
            self._send.send_nowait(key)
        except anyio.WouldBlock:
            # Consumer is behind; it reads the deadline table when it catches up.
            pass
        except (anyio.ClosedResourceError, anyio.BrokenResourceError):
            pass

    def cancel(self, key: str) -> None:
        self._deadlines.pop(key, None)
        self._payloads.pop(key, None)

    def _next_timeout(self) -> Optional[float]:
        if not self._deadlines:
            return None
        return max(0.0, min(self._deadlines.values()) - time.monotonic())

    def _take(self, *, due_only: bool) -> Dict[str, Any]:
        now = time.monotonic()
        keys = [k for k, d in self._deadlines.items() if not due_only or d <= now]
        batch: Dict[str, Any] = {}
        for k in keys:
            self._deadlines.pop(k, None)
            batch[k] = self._payloads.pop(k, None)
        return batch

    async def _fire(self, batch: Dict[str, Any]) -> None:
        if not batch or self._closed:
            return
        try:
            result = self._on_fire(batch)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("%s handler failed for keys=%s", self.name, sorted(batch))

    async def flush(self) -> None:
        """Fire everything pending now, without waiting for deadlines."""
        await self._fire(self._take(due_only=False))

    async def run(self) -> None:
        if self._closed:
            return
        self._running = True
        async with self._recv:
            while True:
                with anyio.move_on_after(self._next_timeout()):
                    try:
                        await self._recv.receive()
                    except anyio.EndOfStream:
                        return
                await self._fire(self._take(due_only=True))

    async def aclose(self) -> None:
        """Drop pending keys and stop the consumer."""
        self._closed = True
        self._deadlines.clear()
        self._payloads.clear()
        await self._send.aclose()
        if not self._running:
            await self._recv.aclose()
