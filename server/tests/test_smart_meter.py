"""
SmartMeter（接続後の計測値取得）のユニットテスト
"""

import sys
from datetime import datetime
from pathlib import Path

import pytest

# serverディレクトリをパスに追加
sys.path.insert(0, str(Path(__file__).parent.parent))

from errors import ParseError, ReadTimeout, UnexpectedString
from line_transport import LineTransport
from mock_client import METER_IPV6, MockBP35A1
from wisun_client import WiSUNClient


def connect(port: MockBP35A1):
    return WiSUNClient(LineTransport(port), "ID", "PW").connect()


class SendFailMock(MockBP35A1):
    """UDP送信に失敗する（EVENT 21 の結果が 01）"""

    def _on_sendto(self, data):
        header = b" ".join(data.split(b" ", 6)[:6]).decode("ascii")
        self.feed(header, f"EVENT 21 {METER_IPV6} 01", "OK")


class WrongSenderMock(MockBP35A1):
    """スマートメーター以外からの応答"""

    def get_response(self, frame):
        response = bytearray(super().get_response(frame))
        response[4:7] = bytes.fromhex("05FF01")
        return bytes(response)


def test_get_instant_power():
    meter = connect(MockBP35A1(power_source=lambda: 411, timeout=0))
    assert meter.get_instant_power() == 411


def test_get_instant_power_negative():
    meter = connect(MockBP35A1(power_source=lambda: -16, timeout=0))
    assert meter.get_instant_power() == -16


def test_sendto_frame_is_sent_verbatim():
    port = MockBP35A1(power_source=lambda: 100, timeout=0)
    meter = connect(port)

    meter.get_instant_power()

    assert port.written[-1] == (
        f"SKSENDTO 1 {METER_IPV6} 0E1A 1 000E ".encode()
        + bytes.fromhex("1081000105FF010288016201E700")
    )


def test_get_energy_unit():
    meter = connect(MockBP35A1(energy_unit=0x02, timeout=0))
    assert meter.get_energy_unit() == 0.01


def test_get_energy_unit_unknown():
    meter = connect(MockBP35A1(energy_unit=0x0E, timeout=0))
    with pytest.raises(ParseError):
        meter.get_energy_unit()


def test_get_fixed_cumulative_energy():
    meter = connect(MockBP35A1(energy_count=1000, timeout=0))
    fixed = meter.get_fixed_cumulative_energy()

    assert fixed.count == 1000
    assert fixed.timestamp.minute in (0, 30)
    assert fixed.timestamp <= datetime.now()


def test_get_unit_and_fixed_cumulative_energy():
    meter = connect(MockBP35A1(energy_unit=0x01, energy_count=123456, timeout=0))
    reading = meter.get_unit_and_fixed_cumulative_energy()

    assert reading.unit == 0.1
    assert reading.count == 123456
    assert reading.kwh == pytest.approx(12345.6)


def test_send_failure_is_unexpected_string():
    meter = connect(SendFailMock(timeout=0))
    with pytest.raises(UnexpectedString):
        meter.get_instant_power()


def test_wrong_sender_is_parse_error():
    meter = connect(WrongSenderMock(timeout=0))
    with pytest.raises(ParseError):
        meter.get_instant_power()


def test_read_timeout_then_recover():
    """応答がなければReadTimeout、次の要求は通常どおり"""
    port = MockBP35A1(power_source=lambda: 500, timeout=0)
    meter = connect(port)

    port.drop_responses = 1
    with pytest.raises(ReadTimeout):
        meter.get_instant_power()

    assert meter.get_instant_power() == 500


def test_read_timeout_clears_late_lines():
    """タイムアウト時に途中まで届いた応答は破棄する"""
    port = MockBP35A1(power_source=lambda: 500, timeout=0)
    meter = connect(port)

    port.drop_responses = 1
    port.feed("SKSENDTO 1 stale")
    with pytest.raises(ReadTimeout):
        meter.get_instant_power()

    assert port.read() == b""
    assert meter.get_instant_power() == 500


def test_get_connection_info():
    meter = connect(MockBP35A1(timeout=0))
    info = meter.get_connection_info()

    assert info["channel"] == "21"
    assert info["pan_id"] == "8888"
    assert info["ipv6_addr"] == METER_IPV6
    assert info["lqi"] == "E1"
