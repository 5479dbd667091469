import asyncio

from tapecapture.watchdog import Watchdog


async def test_fires_after_timeout():
    fired = []

    async def on_timeout(job_id):
        fired.append(job_id)

    dog = Watchdog(timeout=0.02)
    dog.arm("capture_1", on_timeout)
    assert dog.armed("capture_1")

    await asyncio.sleep(0.1)
    assert fired == ["capture_1"]
    assert not dog.armed("capture_1")


async def test_disarm_prevents_firing():
    fired = []

    async def on_timeout(job_id):
        fired.append(job_id)

    dog = Watchdog(timeout=0.02)
    dog.arm("a", on_timeout)
    dog.arm("b", on_timeout)
    dog.disarm("a")
    dog.disarm("unknown")
    await asyncio.sleep(0.1)
    assert fired == ["b"]

    dog.arm("c", on_timeout)
    dog.disarm_all()
    await asyncio.sleep(0.1)
    assert fired == ["b"]
