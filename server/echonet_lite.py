"""
ECHONET Lite 電文コーデック

低圧スマート電力量メーター（028801）へのGet要求を組み立て、
Get_Res応答を検証・解析する。扱うプロパティは以下の3つのみ。

- E7: 瞬時電力計測値（符号付き4バイト, W）
- E1: 積算電力量単位（1バイト, kWh）
- EA: 定時積算電力量計測値（正方向）（日時7バイト + 符号なし4バイト）
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from errors import ParseError, UnexpectedString

# ECHONET Lite定数
EHD = "1081"                 # ECHONET Lite ヘッダ
TID = 0x0001                 # トランザクションID
SEOJ_CONTROLLER = "05FF01"   # 送信元（コントローラー）
DEOJ_SMART_METER = "028801"  # 低圧スマート電力量メーター

ESV_GET = 0x62               # Get
ESV_GET_RES = 0x72           # Get_Res

# EPC（ECHONET Liteプロパティコード）
EPC_INSTANT_POWER = 0xE7
EPC_CUMULATIVE_ENERGY_UNIT = 0xE1
EPC_CUMULATIVE_ENERGY_FIXED = 0xEA

# SKSENDTO パラメータ
ECHONET_UDP_PORT = "0E1A"
SENDTO_HANDLE = "1"
SENDTO_SECURED = "1"

# ERXUDP SENDER DEST RPORT LPORT SENDERLLA SECURED DATALEN DATA
ERXUDP_DATA_FIELD = 8

# 0x00=1kWh, 0x01=0.1kWh, 0x02=0.01kWh, 0x03=0.001kWh, 0x04=0.0001kWh
# 0x0A=10kWh, 0x0B=100kWh, 0x0C=1000kWh, 0x0D=10000kWh
ENERGY_UNITS = {
    0x00: 1.0,
    0x01: 0.1,
    0x02: 0.01,
    0x03: 0.001,
    0x04: 0.0001,
    0x0A: 10.0,
    0x0B: 100.0,
    0x0C: 1000.0,
    0x0D: 10000.0,
}

HEADER_HEX_LEN = 24  # EHD(4) + TID(4) + SEOJ(6) + DEOJ(6) + ESV(2) + OPC(2)


@dataclass(frozen=True)
class EchonetFrame:
    """ECHONET Lite 要求電文"""
    esv: int
    deoj: str
    properties: tuple  # ((epc, edt), ...)
    seoj: str = SEOJ_CONTROLLER
    tid: int = TID

    def to_bytes(self) -> bytes:
        frame = bytearray.fromhex(EHD)
        frame += self.tid.to_bytes(2, "big")
        frame += bytes.fromhex(self.seoj)
        frame += bytes.fromhex(self.deoj)
        frame.append(self.esv)
        frame.append(len(self.properties))
        for epc, edt in self.properties:
            frame.append(epc)
            frame.append(len(edt))
            frame += edt
        return bytes(frame)


@dataclass(frozen=True)
class EchonetResponse:
    """ECHONET Lite 応答電文"""
    tid: int
    seoj: str
    deoj: str
    esv: int
    properties: tuple  # ((epc, edt), ...)

    @property
    def epcs(self) -> list[int]:
        return [epc for epc, _ in self.properties]

    def edt(self, epc: int) -> bytes:
        for code, edt in self.properties:
            if code == epc:
                return edt
        raise ParseError(f"property {epc:02X} not in response")


@dataclass(frozen=True)
class FixedEnergy:
    """定時積算電力量計測値"""
    timestamp: datetime
    count: int


@dataclass(frozen=True)
class EnergyReading:
    """積算電力量単位 + 定時積算電力量"""
    timestamp: datetime
    count: int
    unit: float

    @property
    def kwh(self) -> float:
        return self.count * self.unit


def encode_frame(esv: int, deoj: str, properties: Sequence[tuple[int, bytes]],
                 tid: int = TID, seoj: str = SEOJ_CONTROLLER) -> bytes:
    """ECHONET Liteフレームを構築"""
    return EchonetFrame(esv=esv, deoj=deoj, properties=tuple(properties),
                        seoj=seoj, tid=tid).to_bytes()


def build_get_frame(epcs: Sequence[int], deoj: str = DEOJ_SMART_METER) -> bytes:
    """Get要求フレームを構築（PDCはすべて0）"""
    return encode_frame(ESV_GET, deoj, [(epc, b"") for epc in epcs])


def build_sendto_command(ipv6_addr: str, frame: bytes) -> bytes:
    """
    SKSENDTOコマンドを構築

    コマンドの後ろにフレームをそのまま連結する（CRLFは付けない）
    """
    header = (
        f"SKSENDTO {SENDTO_HANDLE} {ipv6_addr} {ECHONET_UDP_PORT} "
        f"{SENDTO_SECURED} {len(frame):04X} "
    )
    return header.encode("ascii") + frame


def check_send_result(line: str):
    """
    EVENT 21（UDP送信完了）の結果を確認

    EVENT 21 <IPv6> <RESULT> の RESULT が 00 以外なら送信失敗（近隣到達不能）

    Raises:
        UnexpectedString: 送信失敗
    """
    parts = line.split()
    if parts[:2] != ["EVENT", "21"]:
        return
    if len(parts) < 4 or parts[-1] != "00":
        raise UnexpectedString("datagram was not delivered", line)


def parse_erxudp(line: str) -> str:
    """
    ERXUDP行からECHONET Liteデータ（16進文字列）を取り出す

    Raises:
        UnexpectedString: ERXUDP行でない
        ParseError: フィールドが足りない
    """
    if not line.startswith("ERXUDP"):
        raise UnexpectedString("ERXUDP expected", line)

    parts = line.strip().split()
    if len(parts) <= ERXUDP_DATA_FIELD:
        raise ParseError(f"ERXUDP has {len(parts)} fields: {line!r}")
    return parts[ERXUDP_DATA_FIELD]


def decode_frame(data: str) -> EchonetResponse:
    """
    ECHONET Liteデータ（16進文字列）を解析

    Raises:
        ParseError: 長さ・形式の不正
    """
    if len(data) % 2:
        raise ParseError(f"odd number of hex chars: {len(data)}")
    try:
        raw = bytes.fromhex(data)
    except ValueError as e:
        raise ParseError(f"not a hex string: {data[:40]!r}") from e

    if len(raw) < HEADER_HEX_LEN // 2:
        raise ParseError(f"frame too short: {len(raw)} bytes")
    if raw[0:2].hex().upper() != EHD:
        raise ParseError(f"not an ECHONET Lite frame: EHD={raw[0:2].hex().upper()}")

    tid = int.from_bytes(raw[2:4], "big")
    seoj = raw[4:7].hex().upper()
    deoj = raw[7:10].hex().upper()
    esv = raw[10]
    opc = raw[11]

    properties = []
    pos = 12
    for i in range(opc):
        if pos + 2 > len(raw):
            raise ParseError(f"property {i} header out of range (OPC={opc})")
        epc = raw[pos]
        pdc = raw[pos + 1]
        edt = raw[pos + 2:pos + 2 + pdc]
        if len(edt) != pdc:
            raise ParseError(f"EPC {epc:02X}: PDC={pdc} but {len(edt)} bytes left")
        properties.append((epc, edt))
        pos += 2 + pdc

    return EchonetResponse(tid=tid, seoj=seoj, deoj=deoj, esv=esv,
                           properties=tuple(properties))


def validate_response(response: EchonetResponse, expected_epcs: Sequence[int]):
    """
    スマートメーターからのGet_Resであることを確認

    SEOJ, ESV, EPC がすべて一致しなければエラー

    Raises:
        ParseError: いずれかが不一致
    """
    if (response.seoj != DEOJ_SMART_METER
            or response.esv != ESV_GET_RES
            or response.epcs != list(expected_epcs)):
        raise ParseError(
            f"unexpected response: SEOJ={response.seoj} ESV={response.esv:02X} "
            f"EPC={[f'{e:02X}' for e in response.epcs]}"
        )


def decode_response_line(line: str, expected_epcs: Sequence[int]) -> EchonetResponse:
    """ERXUDP行を解析・検証する"""
    response = decode_frame(parse_erxudp(line))
    validate_response(response, expected_epcs)
    return response


def decode_instant_power(edt: bytes) -> int:
    """瞬時電力計測値（符号付き32ビット整数, W）"""
    if len(edt) != 4:
        raise ParseError(f"instant power needs 4 bytes, got {len(edt)}")
    return int.from_bytes(edt, "big", signed=True)


def decode_energy_unit(edt: bytes) -> float:
    """積算電力量単位（kWh）"""
    if len(edt) != 1:
        raise ParseError(f"energy unit needs 1 byte, got {len(edt)}")
    try:
        return ENERGY_UNITS[edt[0]]
    except KeyError:
        raise ParseError(f"incorrect energy unit: {edt[0]:#04x}") from None


def decode_fixed_energy(edt: bytes) -> FixedEnergy:
    """
    定時積算電力量計測値

    年(2バイト) + 月(1) + 日(1) + 時(1) + 分(1) + 秒(1) + 積算電力量(4バイト)
    """
    if len(edt) != 11:
        raise ParseError(f"fixed energy needs 11 bytes, got {len(edt)}")

    year = int.from_bytes(edt[0:2], "big")
    month, day, hour, minute, second = edt[2:7]
    try:
        timestamp = datetime(year, month, day, hour, minute, second)
    except ValueError as e:
        raise ParseError(
            f"invalid timestamp {year:04d}-{month:02d}-{day:02d} "
            f"{hour:02d}:{minute:02d}:{second:02d}: {e}"
        ) from e

    return FixedEnergy(timestamp=timestamp, count=int.from_bytes(edt[7:11], "big"))


def decode_unit_and_fixed_energy(response: EchonetResponse) -> EnergyReading:
    """E1 + EA の複合応答を解析（単位 → 積算電力量の順）"""
    unit = decode_energy_unit(response.edt(EPC_CUMULATIVE_ENERGY_UNIT))
    fixed = decode_fixed_energy(response.edt(EPC_CUMULATIVE_ENERGY_FIXED))
    return EnergyReading(timestamp=fixed.timestamp, count=fixed.count, unit=unit)
