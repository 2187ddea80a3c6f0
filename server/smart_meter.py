"""
スマートメーター（接続済みセッション）

PANA認証済みのスマートメーターにECHONET Lite Get要求を送り、
応答を解析して計測値を返す
"""

import logging

import echonet_lite as el
from errors import ReadTimeout
from line_transport import LineTransport


class SmartMeter:
    """
    接続済みのスマートメーター

    WiSUNClient.connect() が返す。ネットワーク情報とIPv6アドレスは
    接続時に確定し、以後変更されない。
    """

    def __init__(self, transport: LineTransport, network_info, ipv6_addr: str):
        self._transport = transport
        self._network_info = network_info
        self._ipv6_addr = ipv6_addr

    @property
    def network_info(self):
        return self._network_info

    @property
    def ipv6_addr(self) -> str:
        return self._ipv6_addr

    def request(self, epcs: list[int]) -> el.EchonetResponse:
        """
        Get要求を送信して応答を受信

        応答は エコーバック → EVENT 21 → OK → ERXUDP の順に届く

        Args:
            epcs: 取得するプロパティ

        Returns:
            検証済みの応答

        Raises:
            ReadTimeout: 応答が来なかった
            UnexpectedString: 送信失敗、またはERXUDP以外の行
            ParseError: 応答がGet要求と一致しない
        """
        frame = el.build_get_frame(epcs)
        command = el.build_sendto_command(self._ipv6_addr, frame)
        logging.debug(f"SKSENDTO frame: {frame.hex().upper()}")

        try:
            # テセラ/ROHM製モジュール: データの後にCRLFは送信しない
            self._transport.write(command)

            self._transport.read_text_line()  # エコーバック
            el.check_send_result(self._transport.read_text_line())
            self._transport.read_text_line()  # OK
            erxudp = self._transport.read_text_line()
        except ReadTimeout:
            # 遅れて届いた応答が次の要求に混ざらないようにバッファクリア
            self._transport.reset_buffers()
            raise

        return el.decode_response_line(erxudp, epcs)

    def get_instant_power(self) -> int:
        """
        瞬時電力を取得

        Returns:
            瞬時電力（W）。逆潮流時は負の値
        """
        response = self.request([el.EPC_INSTANT_POWER])
        power = el.decode_instant_power(response.edt(el.EPC_INSTANT_POWER))
        logging.debug(f"Instant power: {power}W")
        return power

    def get_energy_unit(self) -> float:
        """積算電力量単位（kWh）を取得"""
        response = self.request([el.EPC_CUMULATIVE_ENERGY_UNIT])
        unit = el.decode_energy_unit(response.edt(el.EPC_CUMULATIVE_ENERGY_UNIT))
        logging.debug(f"Energy unit: {unit}kWh")
        return unit

    def get_fixed_cumulative_energy(self) -> el.FixedEnergy:
        """定時積算電力量（正方向）を取得"""
        response = self.request([el.EPC_CUMULATIVE_ENERGY_FIXED])
        fixed = el.decode_fixed_energy(response.edt(el.EPC_CUMULATIVE_ENERGY_FIXED))
        logging.debug(f"Fixed energy: {fixed.timestamp} count={fixed.count}")
        return fixed

    def get_unit_and_fixed_cumulative_energy(self) -> el.EnergyReading:
        """積算電力量単位と定時積算電力量を1回の要求で取得"""
        response = self.request([el.EPC_CUMULATIVE_ENERGY_UNIT,
                                 el.EPC_CUMULATIVE_ENERGY_FIXED])
        reading = el.decode_unit_and_fixed_energy(response)
        logging.debug(
            f"Fixed energy: {reading.timestamp} count={reading.count} unit={reading.unit}"
        )
        return reading

    def get_connection_info(self) -> dict:
        """
        接続情報を取得

        Returns:
            {
                "channel": チャンネル番号,
                "pan_id": PAN ID,
                "mac_addr": MACアドレス,
                "ipv6_addr": IPv6アドレス,
                "lqi": リンク品質
            }
        """
        return {
            "channel": self._network_info.channel,
            "pan_id": self._network_info.pan_id,
            "mac_addr": self._network_info.addr,
            "ipv6_addr": self._ipv6_addr,
            "lqi": self._network_info.lqi,
        }
