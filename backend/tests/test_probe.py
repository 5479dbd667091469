import sys
import time

import pytest

from tapecapture.probe import DeviceProbe


def py(code):
    return (sys.executable, "-c", code)


@pytest.mark.parametrize("code, expected", [
    ("print('Sony DCR-TRV900 on /dev/fw0')", True),
    ("print('Error: device not found')", False),
    ("print('No devices')", False),
    ("print('dvrescue: command not found')", False),
    ("print('')", False),
    ("import sys; print('Sony DCR-TRV900'); sys.exit(1)", False),
])
async def test_probe_interprets_output(code, expected):
    assert await DeviceProbe(py(code), timeout=5.0).has_device() is expected


async def test_probe_missing_tool_means_no_device(tmp_path):
    probe = DeviceProbe((str(tmp_path / "dvrescue"), "--status"))
    assert await probe.has_device() is False


async def test_probe_timeout_means_no_device():
    probe = DeviceProbe(py("import time; time.sleep(30)"), timeout=0.2)
    started = time.monotonic()
    assert await probe.has_device() is False
    assert time.monotonic() - started < 5.0


async def test_probe_lists_one_device_per_line():
    code = "print('Sony DCR-TRV900 on /dev/fw0'); print(); print('Canon XM2 on /dev/fw1')"
    assert await DeviceProbe(py(code)).list_devices() == ["Sony DCR-TRV900 on /dev/fw0", "Canon XM2 on /dev/fw1"]
    assert await DeviceProbe(py("print('No devices')")).list_devices() == []
