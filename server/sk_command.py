"""
SKコマンドセッション

SKSTACK IP のコマンドを1行送信し、コマンドごとに決まった数の応答行
（エコーバック + ステータス/結果行）を読み込む
"""

import logging

from errors import UnexpectedString
from line_transport import LineTransport

# コマンドごとの応答行数（エコーバックを含む）と、最終行がOKかどうか
RESPONSE_SHAPES = {
    "SKVER": (3, True),      # エコーバック, EVER x.y.z, OK
    "SKSETRBID": (2, True),  # エコーバック, OK
    "SKSETPWD": (2, True),
    "SKSREG": (2, True),
    "SKLL64": (2, False),    # エコーバック, IPv6アドレス
}
DEFAULT_SHAPE = (2, True)


class CommandSession:
    """SKコマンドの送受信"""

    def __init__(self, transport: LineTransport):
        self.transport = transport

    def send(self, command: str):
        """コマンドを送信する（応答は読まない）"""
        self.transport.write_line(command.encode("ascii"))

    def read_line(self) -> str:
        return self.transport.read_text_line()

    def exchange(self, command: str) -> list[str]:
        """
        コマンドを送信して応答行を読み込む

        Args:
            command: 送信するコマンド（CRLFなし）

        Returns:
            受信した行のリスト（先頭はエコーバック）

        Raises:
            UnexpectedString: OKで終わるべき応答がOKでなかった
        """
        name = command.split(" ", 1)[0]
        count, ends_with_ok = RESPONSE_SHAPES.get(name, DEFAULT_SHAPE)

        self.send(command)
        lines = [self.read_line() for _ in range(count)]

        if ends_with_ok and not lines[-1].startswith("OK"):
            raise UnexpectedString(f"{name} was not accepted", lines[-1])

        logging.debug(f"{name}: {lines[1:]}")
        return lines
