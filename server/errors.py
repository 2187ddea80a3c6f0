"""
Wi-SUN / ECHONET Lite 通信エラー

エラーの種類ごとにクラスを分け、呼び出し側で種類によって
処理を分けられるようにする（ポーリング中の ReadTimeout のみスキップ等）
"""


class WiSUNError(Exception):
    """Wi-SUN通信エラーの基底クラス"""


class ReadTimeout(WiSUNError):
    """シリアル読み込みタイムアウト"""

    def __init__(self, message: str = "read timeout"):
        super().__init__(message)


class TransportError(WiSUNError):
    """シリアルポートのI/Oエラー"""


class UnexpectedString(WiSUNError):
    """想定外の応答行"""

    def __init__(self, message: str = "unexpected string", line: str = ""):
        super().__init__(message if not line else f"{message}: {line!r}")
        self.line = line


class ParseError(WiSUNError):
    """ECHONET Lite電文の解析エラー"""


class JoinFailure(WiSUNError):
    """PANA認証失敗（EVENT 24）"""


class ScanExhausted(WiSUNError):
    """アクティブスキャンのリトライ上限超過"""
