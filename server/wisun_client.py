"""
Wi-SUN Bルート接続クライアント

ROHM BP35A1 系の Wi-SUN モジュール対応
SKコマンドでスマートメーターを探し、PANA認証まで行う
"""

import enum
import functools
import logging
from dataclasses import dataclass, fields
from typing import Optional

from errors import JoinFailure, ScanExhausted, WiSUNError
from line_transport import LineTransport
from sk_command import CommandSession
from smart_meter import SmartMeter

# スキャン時間（Duration）の範囲
SCAN_DURATION_START = 5
SCAN_DURATION_MAX = 7

EVENT_SCAN_DONE = "EVENT 22"
EVENT_PANA_FAILED = "EVENT 24"
EVENT_PANA_SUCCEEDED = "EVENT 25"


class JoinState(enum.Enum):
    INIT = "init"
    LOGGED_IN = "logged_in"
    SCANNED = "scanned"
    CHANNEL_REGISTERED = "channel_registered"
    PAN_REGISTERED = "pan_registered"
    ADDRESS_RESOLVED = "address_resolved"
    JOINED = "joined"
    FAILED = "failed"


@dataclass(frozen=True)
class NetworkInfo:
    """スキャン結果（EPANDESC）"""
    channel: str = ""
    channel_page: str = ""
    pan_id: str = ""
    addr: str = ""
    lqi: str = ""
    pair_id: str = ""

    def is_valid(self) -> bool:
        return all(getattr(self, f.name) for f in fields(self))


# EPANDESCのキー → NetworkInfoのフィールド
SCAN_KEYS = {
    "Channel": "channel",
    "Channel Page": "channel_page",
    "Pan ID": "pan_id",
    "Addr": "addr",
    "LQI": "lqi",
    "PairID": "pair_id",
}


def _step(expected: JoinState, reached: JoinState):
    """接続手順の1ステップ。前の状態を確認し、成功したら状態を進める"""
    def decorator(func):
        @functools.wraps(func)
        def wrapper(self, *args, **kwargs):
            if self.state != expected:
                raise RuntimeError(
                    f"{func.__name__} needs state {expected.value}, now {self.state.value}"
                )
            try:
                result = func(self, *args, **kwargs)
            except WiSUNError:
                self.state = JoinState.FAILED
                raise
            self.state = reached
            logging.debug(f"Join state: {reached.value}")
            return result
        return wrapper
    return decorator


class WiSUNClient:
    """Wi-SUN Bルート接続クライアント"""

    def __init__(self, transport: LineTransport, broute_id: str, broute_pwd: str):
        """
        Args:
            transport: Wi-SUNモジュールとの行トランスポート
            broute_id: BルートID（32文字）
            broute_pwd: Bルートパスワード（12文字）
        """
        self.transport = transport
        self.session = CommandSession(transport)
        self._broute_id = broute_id
        self._broute_pwd = broute_pwd

        self.state = JoinState.INIT
        self.network_info: Optional[NetworkInfo] = None
        self.ipv6_addr: Optional[str] = None
        self.last_scan_duration: Optional[int] = None

    def fetch_version(self) -> str:
        """ファームウェアバージョンを取得（アダプタの応答確認）"""
        _, version, _ = self.session.exchange("SKVER")
        return version

    @_step(JoinState.INIT, JoinState.LOGGED_IN)
    def login(self):
        """BルートID・パスワードを設定"""
        logging.info("Setting B-route ID...")
        self.session.exchange(f"SKSETRBID {self._broute_id}")
        logging.info("Setting password...")
        self.session.exchange(f"SKSETPWD C {self._broute_pwd}")

    @_step(JoinState.LOGGED_IN, JoinState.SCANNED)
    def scan(self) -> NetworkInfo:
        """
        アクティブスキャンでスマートメーターを探す

        見つからなければスキャン時間を1ずつ延ばして再スキャンする

        Returns:
            スキャン結果

        Raises:
            ScanExhausted: 最大スキャン時間でも見つからなかった
        """
        for duration in range(SCAN_DURATION_START, SCAN_DURATION_MAX + 1):
            logging.info(f"Scanning for smart meter (duration={duration})...")
            info = self._scan_once(duration)
            if info.is_valid():
                logging.info(f"Found: CH={info.channel}, PAN={info.pan_id}, LQI={info.lqi}")
                self.network_info = info
                self.last_scan_duration = duration
                return info
            logging.warning(f"Smart meter not found (duration={duration})")

        raise ScanExhausted(
            f"scan retry over: smart meter not found up to duration {SCAN_DURATION_MAX}"
        )

    def _scan_once(self, duration: int) -> NetworkInfo:
        """1回分のスキャン。EVENT 22 までの EPANDESC を集める"""
        self.session.send(f"SKSCAN 2 FFFFFFFF {duration}")

        found = {}
        while True:
            line = self.session.read_line()
            if line.startswith(EVENT_SCAN_DONE):
                return NetworkInfo(**found)
            if line.startswith("  ") and ":" in line:
                key, value = line.strip().split(":", 1)
                name = SCAN_KEYS.get(key)
                if name:
                    found[name] = value.strip()

    @_step(JoinState.SCANNED, JoinState.CHANNEL_REGISTERED)
    def register_channel(self):
        """チャンネルをレジスタS2に設定"""
        self.session.exchange(f"SKSREG S2 {self.network_info.channel}")

    @_step(JoinState.CHANNEL_REGISTERED, JoinState.PAN_REGISTERED)
    def register_pan_id(self):
        """PAN IDをレジスタS3に設定"""
        self.session.exchange(f"SKSREG S3 {self.network_info.pan_id}")

    @_step(JoinState.PAN_REGISTERED, JoinState.ADDRESS_RESOLVED)
    def resolve_address(self) -> str:
        """MACアドレスからIPv6リンクローカルアドレスを取得"""
        _, line = self.session.exchange(f"SKLL64 {self.network_info.addr}")
        self.ipv6_addr = line.strip("\r\n")
        logging.info(f"IPv6 Addr: {self.ipv6_addr}")
        return self.ipv6_addr

    @_step(JoinState.ADDRESS_RESOLVED, JoinState.JOINED)
    def join(self):
        """
        PANA認証

        Raises:
            JoinFailure: EVENT 24 を受信した
        """
        logging.info("Connecting (SKJOIN)...")
        self.session.send(f"SKJOIN {self.ipv6_addr}")
        self.session.read_line()  # エコーバック
        self.session.read_line()  # OK

        while True:
            line = self.session.read_line()
            if line.startswith(EVENT_PANA_FAILED):
                raise JoinFailure("PANA authentication failed")
            if line.startswith(EVENT_PANA_SUCCEEDED):
                logging.info("Successful PANA authentication")
                break

        # 接続直後のインスタンスリスト通知
        instance_list = self.session.read_line()
        logging.debug(f"Instance list: {instance_list}")

    def connect(self) -> SmartMeter:
        """
        スマートメーターに接続

        Returns:
            接続済みのスマートメーター

        Raises:
            WiSUNError: いずれかの手順で失敗した
        """
        try:
            version = self.fetch_version()
        except WiSUNError:
            self.state = JoinState.FAILED
            raise
        logging.info(f"Wi-SUN adapter firmware: {version}")

        self.login()
        self.scan()
        self.register_channel()
        self.register_pan_id()
        self.resolve_address()
        self.join()

        logging.info("Successful connection to B route")
        return SmartMeter(self.transport, self.network_info, self.ipv6_addr)
