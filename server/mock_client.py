"""
Mock Wi-SUN モジュール

Wi-SUNアダプタなしでテスト可能な、BP35A1 のSKコマンド応答を返す
pyserial互換の擬似シリアルポート
"""

import random
import threading
from datetime import datetime
from typing import Callable, Optional

METER_MAC = "001C640000001234"
METER_IPV6 = "FE80:0000:0000:0000:021C:6400:0000:1234"
MY_IPV6 = "FE80:0000:0000:0000:021D:1290:0003:C890"


def realistic_power() -> int:
    """
    時間帯によって変動する瞬時電力（W）

    - 時間帯別のベース電力
    - ランダムなノイズ
    - たまに発生する高負荷スパイク
    """
    hour = datetime.now().hour

    if 6 <= hour < 9:  # 朝（起床・朝食準備）
        base = 1500
    elif 9 <= hour < 18:  # 日中
        base = 700
    elif 18 <= hour < 22:  # 夜（夕食・入浴・エアコンなど）
        base = 2000
    else:  # 深夜（待機電力中心）
        base = 300

    power = int(base * (1 + random.uniform(-0.2, 0.2)))

    # 10%の確率で高負荷スパイク（電子レンジ、ドライヤーなど）
    if random.random() < 0.1:
        power += random.choice([800, 1000, 1200, 1500])
    return power


class MockBP35A1:
    """BP35A1 を模擬するシリアルポート（テスト用）"""

    def __init__(
        self,
        found_at_duration: Optional[int] = 5,
        join_succeeds: bool = True,
        power_source: Optional[Callable[[], int]] = None,
        energy_unit: int = 0x01,
        energy_count: int = 123456,
        timeout: Optional[float] = 2.0,
    ):
        """
        Args:
            found_at_duration: スマートメーターが見つかるスキャン時間（Noneなら見つからない）
            join_succeeds: PANA認証が成功するか
            power_source: 瞬時電力を返す関数
            energy_unit: E1 の応答値
            energy_count: EA の積算電力量
            timeout: 読み込みタイムアウト（秒）
        """
        self.found_at_duration = found_at_duration
        self.join_succeeds = join_succeeds
        self.power_source = power_source or realistic_power
        self.energy_unit = energy_unit
        self.energy_count = energy_count
        self.timeout = timeout

        self.is_open = True
        self.written: list[bytes] = []
        self.drop_responses = 0  # 次のN回のSKSENDTOに応答しない
        self._rx = bytearray()
        self._cond = threading.Condition()

    # --- pyserial互換 ---

    def read(self, size: int = 1) -> bytes:
        with self._cond:
            if not self._rx:
                self._cond.wait_for(lambda: self._rx, timeout=self.timeout)
            data = bytes(self._rx[:size])
            del self._rx[:size]
            return data

    def write(self, data: bytes) -> int:
        self.written.append(bytes(data))
        if data.startswith(b"SKSENDTO"):
            self._on_sendto(data)
        else:
            self._on_command(data.rstrip(b"\r\n").decode("ascii"))
        return len(data)

    def reset_input_buffer(self):
        with self._cond:
            self._rx.clear()

    def reset_output_buffer(self):
        pass

    def close(self):
        self.is_open = False

    # --- 応答生成 ---

    def feed(self, *lines: str):
        """受信バッファに行を追加"""
        with self._cond:
            for line in lines:
                self._rx += line.encode("ascii") + b"\r\n"
            self._cond.notify_all()

    def _on_command(self, command: str):
        name, *args = command.split()

        if name == "SKVER":
            self.feed(command, "EVER 1.2.10", "OK")
        elif name == "SKSCAN":
            self._on_scan(command, int(args[-1]))
        elif name == "SKLL64":
            self.feed(command, METER_IPV6)
        elif name == "SKJOIN":
            self._on_join(command)
        else:
            self.feed(command, "OK")

    def _on_scan(self, command: str, duration: int):
        self.feed(command, "OK")
        if self.found_at_duration is not None and duration >= self.found_at_duration:
            self.feed(
                f"EVENT 20 {METER_IPV6}",
                "EPANDESC",
                "  Channel:21",
                "  Channel Page:09",
                "  Pan ID:8888",
                f"  Addr:{METER_MAC}",
                "  LQI:E1",
                "  PairID:00112233",
            )
        self.feed(f"EVENT 22 {MY_IPV6}")

    def _on_join(self, command: str):
        self.feed(
            command,
            "OK",
            f"EVENT 21 {METER_IPV6} 00",
            f"EVENT 02 {METER_IPV6}",
        )
        if not self.join_succeeds:
            self.feed(f"EVENT 24 {METER_IPV6}")
            return
        self.feed(
            f"EVENT 25 {METER_IPV6}",
            f"ERXUDP {METER_IPV6} FF02:0000:0000:0000:0000:0000:0000:0001 0E1A 0E1A "
            f"{METER_MAC} 1 0012 108100000EF0010EF0017301D50401028801",
        )

    def _on_sendto(self, data: bytes):
        # SKSENDTO HANDLE IPADDR PORT SEC DATALEN DATA
        fields = data.split(b" ", 6)
        header = b" ".join(fields[:6]).decode("ascii")
        frame = fields[6]

        if self.drop_responses > 0:
            self.drop_responses -= 1
            return

        response = self.get_response(frame)
        self.feed(
            header,
            f"EVENT 21 {METER_IPV6} 00",
            "OK",
            f"ERXUDP {METER_IPV6} {MY_IPV6} 0E1A 0E1A {METER_MAC} 1 "
            f"{len(response):04X} {response.hex().upper()}",
        )

    def get_response(self, frame: bytes) -> bytes:
        """Get要求に対するGet_Resフレーム"""
        tid = frame[2:4]
        opc = frame[11]
        epcs = [frame[12 + i * 2] for i in range(opc)]

        body = bytearray()
        for epc in epcs:
            edt = self._property_value(epc)
            body += bytes([epc, len(edt)]) + edt

        return (b"\x10\x81" + tid + bytes.fromhex("028801") + bytes.fromhex("05FF01")
                + b"\x72" + bytes([len(epcs)]) + bytes(body))

    def _property_value(self, epc: int) -> bytes:
        if epc == 0xE7:
            return self.power_source().to_bytes(4, "big", signed=True)
        if epc == 0xE1:
            return bytes([self.energy_unit])
        if epc == 0xEA:
            # 定時積算電力量の時刻（30分単位に丸める）
            now = datetime.now()
            fixed = now.replace(minute=(now.minute // 30) * 30, second=0)
            return (fixed.year.to_bytes(2, "big")
                    + bytes([fixed.month, fixed.day, fixed.hour, fixed.minute, fixed.second])
                    + self.energy_count.to_bytes(4, "big"))
        return b""
