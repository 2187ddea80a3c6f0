"""
LineTransport のユニットテスト
"""

import sys
from pathlib import Path

import pytest
import serial

# serverディレクトリをパスに追加
sys.path.insert(0, str(Path(__file__).parent.parent))

from errors import ReadTimeout, TransportError
from line_transport import LineTransport


class FakePort:
    """バイト列を1バイトずつ返す擬似ポート"""

    def __init__(self, data: bytes = b""):
        self.rx = bytearray(data)
        self.tx = bytearray()
        self.timeout = None
        self.reset_count = 0

    def read(self, size=1):
        data = bytes(self.rx[:size])
        del self.rx[:size]
        return data

    def write(self, data):
        self.tx += data
        return len(data)

    def reset_input_buffer(self):
        self.rx.clear()
        self.reset_count += 1

    def reset_output_buffer(self):
        pass


class BrokenPort(FakePort):
    def read(self, size=1):
        raise serial.SerialException("device disconnected")

    def write(self, data):
        raise serial.SerialException("device disconnected")


@pytest.mark.parametrize("payload", [
    b"OK",
    b"EVER 1.2.10",
    b"",
    b"ERXUDP FE80:0000:0000:0000:021C:6400:0000:1234 0E1A",
    b"line with \r inside",
])
def test_write_then_read_line(payload):
    """書き込んだ行（CRLF付き）をそのまま読み戻せる"""
    writer = FakePort()
    LineTransport(writer).write_line(payload)
    assert bytes(writer.tx) == payload + b"\r\n"

    reader = LineTransport(FakePort(bytes(writer.tx)))
    assert reader.read_line() == payload


def test_read_line_consumes_one_line_only():
    port = FakePort(b"SKVER\r\nEVER 1.2.10\r\nOK\r\n")
    transport = LineTransport(port)

    assert transport.read_text_line() == "SKVER"
    assert transport.read_text_line() == "EVER 1.2.10"
    assert bytes(port.rx) == b"OK\r\n"


def test_read_line_zero_byte_is_timeout():
    """先頭が0x00ならそれ以上読まずにReadTimeout"""
    port = FakePort(b"\x00OK\r\n")

    with pytest.raises(ReadTimeout):
        LineTransport(port).read_line()

    assert bytes(port.rx) == b"OK\r\n"


def test_read_line_empty_read_is_timeout():
    """pyserialのタイムアウト（空の読み込み）もReadTimeout"""
    with pytest.raises(ReadTimeout):
        LineTransport(FakePort(b"EVENT 2")).read_line()


def test_read_line_too_long():
    port = FakePort(b"A" * 100 + b"\r\n")

    with pytest.raises(TransportError):
        LineTransport(port, max_line_length=16).read_line()


def test_serial_errors_become_transport_errors():
    transport = LineTransport(BrokenPort())

    with pytest.raises(TransportError):
        transport.read_line()
    with pytest.raises(TransportError):
        transport.write_line(b"SKVER")


def test_write_does_not_append_crlf():
    port = FakePort()
    LineTransport(port).write(b"SKSENDTO 1 \x10\x81")
    assert bytes(port.tx) == b"SKSENDTO 1 \x10\x81"


def test_reset_buffers_and_timeout():
    port = FakePort(b"stale\r\n")
    transport = LineTransport(port)

    transport.reset_buffers()
    transport.set_read_timeout(10)

    assert port.rx == bytearray()
    assert port.reset_count == 1
    assert port.timeout == 10
