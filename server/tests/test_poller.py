"""
PollingScheduler のユニットテスト

2つの定期取得が同じシリアルポートで交互に混ざらないことを確認する
"""

import asyncio
import sys
import threading
import time
from pathlib import Path

import pytest

# serverディレクトリをパスに追加
sys.path.insert(0, str(Path(__file__).parent.parent))

from errors import UnexpectedString
from line_transport import LineTransport
from mock_client import METER_IPV6, MockBP35A1
from poller import LoggingSink, MultiSink, PollingScheduler
from wisun_client import WiSUNClient


class InstrumentedMock(MockBP35A1):
    """
    要求〜応答の重なりを検出する擬似ポート

    SKSENDTO を書き込んでから応答を読み切るまでを1往復とし、
    その間に別の書き込みがあれば違反として記録する
    """

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.outstanding = False
        self.violations = []
        self.threads = set()

    def write(self, data):
        if data.startswith(b"SKSENDTO"):
            self.threads.add(threading.get_ident())
            if self.outstanding:
                self.violations.append(data)
            self.outstanding = True
            # 応答が届くまでの遅延（他のタスクが割り込む隙を作る）
            time.sleep(0.005)
        return super().write(data)

    def read(self, size=1):
        data = super().read(size)
        if self.outstanding:
            self.threads.add(threading.get_ident())
            with self._cond:
                if not self._rx:
                    self.outstanding = False
        return data


class CollectingSink:
    """受け取った計測値を記録し、十分集まったら止める"""

    def __init__(self, powers=5, energies=2):
        self.scheduler = None
        self.powers = []
        self.energies = []
        self._want = (powers, energies)

    async def on_instant_power(self, power):
        self.powers.append(power)
        self._check()

    async def on_energy(self, reading):
        self.energies.append(reading)
        self._check()

    def _check(self):
        if len(self.powers) >= self._want[0] and len(self.energies) >= self._want[1]:
            self.scheduler.stop()


def make_scheduler(port, sink, power_interval=0.01, energy_interval=0.03):
    transport = LineTransport(port)
    meter = WiSUNClient(transport, "ID", "PW").connect()
    transport.set_read_timeout(0.5)
    scheduler = PollingScheduler(meter, sink, power_interval, energy_interval)
    sink.scheduler = scheduler
    return scheduler


@pytest.mark.asyncio
async def test_exchanges_never_interleave():
    port = InstrumentedMock(power_source=lambda: 411, energy_count=1000, timeout=0)
    sink = CollectingSink(powers=8, energies=3)
    scheduler = make_scheduler(port, sink)

    await asyncio.wait_for(scheduler.run(), timeout=10)

    assert port.violations == []
    # シリアルポートに触れるのは1本のワーカースレッドだけ
    assert len(port.threads) == 1
    assert threading.get_ident() not in port.threads
    assert set(sink.powers) == {411}
    assert all(r.count == 1000 for r in sink.energies)


@pytest.mark.asyncio
async def test_read_timeout_skips_tick():
    port = MockBP35A1(power_source=lambda: 300, timeout=0)
    sink = CollectingSink(powers=3, energies=1)
    scheduler = make_scheduler(port, sink, energy_interval=0.02)
    port.timeout = 0.05
    port.drop_responses = 2

    await asyncio.wait_for(scheduler.run(), timeout=10)

    assert sink.powers[:3] == [300, 300, 300]
    assert port.drop_responses == 0


@pytest.mark.asyncio
async def test_other_errors_are_fatal():
    class SendFailMock(MockBP35A1):
        def _on_sendto(self, data):
            header = b" ".join(data.split(b" ", 6)[:6]).decode("ascii")
            self.feed(header, f"EVENT 21 {METER_IPV6} 02", "OK")

    sink = CollectingSink()
    scheduler = make_scheduler(SendFailMock(timeout=0), sink)

    with pytest.raises(UnexpectedString):
        await asyncio.wait_for(scheduler.run(), timeout=10)
    assert sink.powers == []


@pytest.mark.asyncio
async def test_ticks_queue_behind_slow_exchange():
    """前の往復が終わっていなくてもティックは捨てずに順番待ちする"""
    port = InstrumentedMock(power_source=lambda: 1, timeout=0)
    sink = CollectingSink(powers=20, energies=0)
    # 往復（5ms以上）より短い間隔でティックを発生させる
    scheduler = make_scheduler(port, sink, power_interval=0.001, energy_interval=60)

    await asyncio.wait_for(scheduler.run(), timeout=10)

    assert len(sink.powers) >= 20
    assert port.violations == []


@pytest.mark.asyncio
async def test_multi_sink_and_logging_sink(caplog):
    import logging

    caplog.set_level(logging.INFO)
    collected = CollectingSink(powers=1, energies=1)
    sink = MultiSink(LoggingSink(), collected)
    scheduler = make_scheduler(
        MockBP35A1(power_source=lambda: 411, energy_unit=0x00, energy_count=1000, timeout=0),
        collected,
    )
    scheduler.sink = sink

    await asyncio.wait_for(scheduler.run(), timeout=10)

    assert "Instant power: 411W" in caplog.text
    assert "Cumulative energy: 1000.0kWh" in caplog.text
