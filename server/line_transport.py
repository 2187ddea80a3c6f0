"""
シリアル行トランスポート

Wi-SUNモジュールとのバイトストリームをCRLF区切りの行として読み書きする
"""

import logging
from typing import Optional

import serial

from errors import ReadTimeout, TransportError

CRLF = b"\r\n"

# 壊れたリンクで際限なくバッファが伸びないようにする上限
DEFAULT_MAX_LINE_LENGTH = 4096


class LineTransport:
    """CRLF区切りの行単位でシリアルポートを読み書きする"""

    def __init__(self, port, max_line_length: int = DEFAULT_MAX_LINE_LENGTH):
        """
        Args:
            port: pyserial互換のポート（read/write/reset_*_buffer/timeout）
            max_line_length: 1行の最大バイト数
        """
        self.port = port
        self.max_line_length = max_line_length

    def write(self, data: bytes):
        """生のバイト列を書き込む（CRLFは付けない）"""
        logging.debug(f">> {data!r}")
        try:
            self.port.write(data)
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"serial write error: {e}") from e

    def write_line(self, data: bytes):
        """CRLFを付けて1行書き込む"""
        self.write(data + CRLF)

    def read_line(self) -> bytes:
        """
        1行読み込む

        1バイトずつ読み、末尾2バイトがCRLFになったら終了する。
        0x00 または空の読み込みはポートの読み込みタイムアウトを意味する。

        Returns:
            CRLFを除いた行

        Raises:
            ReadTimeout: 読み込みタイムアウト
            TransportError: I/Oエラー、または行が長すぎる
        """
        data = bytearray()
        while True:
            try:
                b = self.port.read(1)
            except (serial.SerialException, OSError) as e:
                raise TransportError(f"serial read error: {e}") from e

            if not b or b[0] == 0:
                raise ReadTimeout()

            data += b
            if data.endswith(CRLF):
                break
            if len(data) > self.max_line_length:
                raise TransportError(
                    f"line exceeds {self.max_line_length} bytes: {bytes(data[:40])!r}..."
                )

        line = bytes(data[:-2])
        logging.debug(f"<< {line.decode('ascii', errors='replace')}")
        return line

    def read_text_line(self) -> str:
        """1行読み込んで文字列として返す"""
        return self.read_line().decode("ascii", errors="replace")

    def reset_buffers(self):
        """送受信バッファをクリア"""
        try:
            self.port.reset_input_buffer()
            self.port.reset_output_buffer()
        except (serial.SerialException, OSError) as e:
            raise TransportError(f"serial reset error: {e}") from e

    def set_read_timeout(self, seconds: Optional[float]):
        """読み込みタイムアウトを設定（Noneで無期限）"""
        self.port.timeout = seconds
