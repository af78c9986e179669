import asyncio

import pytest

from services.concurrency_gate import ConcurrencyGate


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        ConcurrencyGate(0)


def test_gate_limits_concurrent_holders():
    async def main():
        gate = ConcurrencyGate(2)
        peak = 0

        async def worker():
            nonlocal peak
            async with gate:
                peak = max(peak, gate.in_use)
                await asyncio.sleep(0.01)

        await asyncio.gather(*(worker() for _ in range(6)))
        return gate, peak

    gate, peak = asyncio.run(main())
    assert peak == 2
    assert gate.in_use == 0


def test_gate_releases_on_error():
    async def main():
        gate = ConcurrencyGate(1)
        with pytest.raises(RuntimeError):
            async with gate:
                raise RuntimeError("boom")
        # A second acquisition must not block.
        await asyncio.wait_for(gate.acquire(), timeout=1)
        gate.release()
        return gate

    gate = asyncio.run(main())
    assert gate.in_use == 0
