#!/usr/bin/env python3
"""
Bルート スマートメーター計測

Wi-SUN Bルートでスマートメーターに接続し、瞬時電力と積算電力量を
定期的に取得してログ出力する（オプションで REST API / WebSocket でも配信）
"""

import argparse
import asyncio
import logging
import logging.handlers
import os
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import serial
import uvicorn

from errors import WiSUNError
from line_transport import LineTransport
from poller import (
    DEFAULT_ENERGY_INTERVAL,
    DEFAULT_POWER_INTERVAL,
    LoggingSink,
    MultiSink,
    PollingScheduler,
)
from wisun_client import WiSUNClient

# ローカル設定（任意）
try:
    import config
except ImportError:
    config = None

DEFAULT_BAUD_RATE = 115200
DEFAULT_READ_TIMEOUT = 10.0


def setup_logging(debug: bool = False, log_dir: Optional[Path] = None):
    """ロギング設定（コンソール + ファイル）"""
    # ログディレクトリ
    log_dir = log_dir or Path(__file__).parent / "logs"
    log_dir.mkdir(exist_ok=True)

    # ログファイル名（追記モード）
    log_file = log_dir / "broute.log"

    # ルートロガー設定
    logger = logging.getLogger()
    logger.setLevel(logging.DEBUG)

    # 既存のハンドラをクリア（重複防止）
    logger.handlers.clear()

    # フォーマッター
    formatter = logging.Formatter(
        "%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # コンソールハンドラ（デバッグモードでは送受信行も表示）
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if debug else logging.INFO)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    # ファイルハンドラ（ローテーション: 1MB x 5世代）
    file_handler = logging.handlers.RotatingFileHandler(
        log_file, maxBytes=1_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    return logger, log_file


def build_parser() -> argparse.ArgumentParser:
    """コマンドライン引数の定義"""
    parser = argparse.ArgumentParser(description="Bルート スマートメーター計測")
    parser.add_argument("-p", "--port", help="シリアルポート名（例: /dev/ttyUSB0）")
    parser.add_argument("-i", "--id", dest="broute_id", help="Bルート認証ID")
    parser.add_argument("-P", "--password", dest="broute_pwd", help="Bルート認証パスワード")
    parser.add_argument("-d", "--debug", action="store_true", help="デバッグモード")
    parser.add_argument(
        "-m", "--mock", action="store_true", help="Mockモードで起動（Wi-SUNアダプタ不要）"
    )
    parser.add_argument("--api", action="store_true", help="REST API / WebSocket で配信")
    return parser


@dataclass
class Settings:
    port: Optional[str]
    broute_id: Optional[str]
    broute_pwd: Optional[str]
    debug: bool = False
    mock: bool = False
    baud_rate: int = DEFAULT_BAUD_RATE
    read_timeout: float = DEFAULT_READ_TIMEOUT
    power_interval: float = DEFAULT_POWER_INTERVAL
    energy_interval: float = DEFAULT_ENERGY_INTERVAL
    api_enabled: bool = False
    api_host: str = "0.0.0.0"
    api_port: int = 8000


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("true", "1", "yes")


def _pick(arg, env_name: Optional[str], config_name: str, default=None):
    """優先順位: コマンドライン > 環境変数 > config.py > デフォルト"""
    if arg:
        return arg
    if env_name and os.environ.get(env_name):
        return os.environ[env_name]
    return getattr(config, config_name, default)


def load_settings(args) -> Settings:
    """引数・環境変数・config.py から設定を作る"""
    return Settings(
        port=_pick(args.port, "WISUN_PORT", "SERIAL_PORT"),
        broute_id=_pick(args.broute_id, "BROUTE_ID", "BROUTE_ID"),
        broute_pwd=_pick(args.broute_pwd, "BROUTE_PASSWORD", "BROUTE_PASSWORD"),
        debug=args.debug or _env_flag("WISUN_DEBUG") or bool(getattr(config, "DEBUG", False)),
        mock=args.mock or _env_flag("MOCK_MODE") or bool(getattr(config, "MOCK_MODE", False)),
        baud_rate=getattr(config, "BAUD_RATE", DEFAULT_BAUD_RATE),
        read_timeout=getattr(config, "READ_TIMEOUT", DEFAULT_READ_TIMEOUT),
        power_interval=getattr(config, "POWER_INTERVAL", DEFAULT_POWER_INTERVAL),
        energy_interval=getattr(config, "ENERGY_INTERVAL", DEFAULT_ENERGY_INTERVAL),
        api_enabled=(args.api or _env_flag("API_ENABLED")
                     or bool(getattr(config, "API_ENABLED", False))),
        api_host=getattr(config, "API_HOST", "0.0.0.0"),
        api_port=getattr(config, "API_PORT", 8000),
    )


def check_settings(parser: argparse.ArgumentParser, settings: Settings):
    """必須項目がなければ使い方を表示して終了"""
    if settings.mock:
        return
    if not settings.port:
        parser.error("ポート名を入力してください (-p)")
    if not settings.broute_id:
        parser.error("Bルート認証IDを入力してください (-i)")
    if not settings.broute_pwd:
        parser.error("Bルート認証パスワードを入力してください (-P)")


def open_port(settings: Settings):
    """シリアルポートを開く（Mockモードでは擬似ポート）"""
    if settings.mock:
        from mock_client import MockBP35A1

        return MockBP35A1(timeout=None)

    # 接続手順中は応答が来るまで待つ（タイムアウトなし）
    return serial.Serial(
        settings.port,
        settings.baud_rate,
        bytesize=serial.EIGHTBITS,
        timeout=None,
    )


async def run_polling(scheduler: PollingScheduler, settings: Settings):
    """ポーリング（とAPIサーバー）を実行"""
    poll_task = asyncio.create_task(scheduler.run())
    if not settings.api_enabled:
        await poll_task
        return

    import api

    logging.info(f"Starting API server on http://{settings.api_host}:{settings.api_port}")
    server_config = uvicorn.Config(
        api.app, host=settings.api_host, port=settings.api_port, log_level="warning"
    )
    server = uvicorn.Server(server_config)
    serve_task = asyncio.create_task(server.serve())

    try:
        await asyncio.wait({poll_task, serve_task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        server.should_exit = True
        scheduler.stop()
        await serve_task

    # ポーリングのエラーを呼び出し元に伝える
    await poll_task


def main(argv=None) -> int:
    """メイン関数"""
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = load_settings(args)
    check_settings(parser, settings)

    _, log_file = setup_logging(settings.debug)

    logging.info("=" * 50)
    logging.info("Bルート スマートメーター計測")
    if settings.mock:
        logging.info("*** MOCK MODE ***")
    logging.info(f"Log file: {log_file}")
    logging.info("=" * 50)

    try:
        port = open_port(settings)
    except serial.SerialException as e:
        logging.error(f"ポートに接続できませんでした: {e}")
        return 1

    transport = LineTransport(port)
    try:
        transport.reset_buffers()

        client = WiSUNClient(transport, settings.broute_id or "", settings.broute_pwd or "")
        meter = client.connect()

        # ポーリング中は読み込みタイムアウトを設定（応答なしはその回をスキップ）
        transport.set_read_timeout(settings.read_timeout)

        sinks = [LoggingSink()]
        if settings.api_enabled:
            import api

            api.set_mock_mode(settings.mock)
            api.update_connection_info(meter.get_connection_info())
            sinks.append(api.ApiSink())

        scheduler = PollingScheduler(
            meter,
            MultiSink(*sinks),
            power_interval=settings.power_interval,
            energy_interval=settings.energy_interval,
        )
        asyncio.run(run_polling(scheduler, settings))
    except WiSUNError as e:
        logging.error(f"{type(e).__name__}: {e}")
        return 1
    except KeyboardInterrupt:
        logging.info("Shutting down...")
    finally:
        port.close()

    return 0


def signal_handler(sig, frame):
    """シグナルハンドラ"""
    raise KeyboardInterrupt


if __name__ == "__main__":
    # シグナルハンドラ設定
    signal.signal(signal.SIGTERM, signal_handler)

    sys.exit(main())
