from __future__ import annotations

from typing import Any, Dict, List

import anyio

from wizard_engine.form_engine.debounce import KeyedDebouncer


def test_burst_fires_once_per_key_with_last_payload():
    batches: List[Dict[str, Any]] = []

    async def main() -> None:
        debouncer = KeyedDebouncer(0.05, batches.append, name="test")
        async with anyio.create_task_group() as tg:
            tg.start_soon(debouncer.run)
            debouncer.push("a", 1)
            debouncer.push("a", 2)
            debouncer.push("b", 1)
            await anyio.sleep(0.25)
            await debouncer.aclose()

    anyio.run(main)

    merged: Dict[str, Any] = {}
    for batch in batches:
        merged.update(batch)
    assert merged == {"a": 2, "b": 1}
    assert sum(1 for batch in batches if "a" in batch) == 1


def test_flush_fires_pending_and_cancel_drops_a_key():
    batches: List[Dict[str, Any]] = []

    async def main() -> None:
        debouncer = KeyedDebouncer(10, batches.append)
        debouncer.push("keep", "x")
        debouncer.push("drop", "y")
        debouncer.cancel("drop")
        assert debouncer.pending == ["keep"]
        await debouncer.flush()
        assert debouncer.pending == []
        await debouncer.aclose()

    anyio.run(main)
    assert batches == [{"keep": "x"}]


def test_closed_debouncer_ignores_pushes_and_drops_pending():
    batches: List[Dict[str, Any]] = []

    async def main() -> None:
        debouncer = KeyedDebouncer(10, batches.append)
        debouncer.push("a", 1)
        await debouncer.aclose()
        debouncer.push("b", 2)
        await debouncer.flush()
        assert debouncer.closed

    anyio.run(main)
    assert batches == []


def test_failing_handler_does_not_stop_the_consumer():
    seen: List[Dict[str, Any]] = []

    async def handler(batch: Dict[str, Any]) -> None:
        seen.append(batch)
        if "bad" in batch:
            raise RuntimeError("boom")

    async def main() -> None:
        debouncer = KeyedDebouncer(0.01, handler)
        async with anyio.create_task_group() as tg:
            tg.start_soon(debouncer.run)
            debouncer.push("bad")
            await anyio.sleep(0.1)
            debouncer.push("good", 1)
            await anyio.sleep(0.1)
            await debouncer.aclose()

    anyio.run(main)
    assert {"bad": None} in seen
    assert {"good": 1} in seen
