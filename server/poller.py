"""
計測値ポーリング

瞬時電力（短周期）と積算電力量（長周期）の2つの定期取得を並行して行う。
シリアルポートに触れるのは1本のワーカースレッドだけで、各タスクは
要求〜応答の1往復をワーカーに渡して結果を待つ。
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from echonet_lite import EnergyReading
from errors import ReadTimeout
from smart_meter import SmartMeter

DEFAULT_POWER_INTERVAL = 1.0
DEFAULT_ENERGY_INTERVAL = 10.0


class LoggingSink:
    """計測値をログに出力する"""

    async def on_instant_power(self, power: int):
        logging.info(f"Instant power: {power}W")

    async def on_energy(self, reading: EnergyReading):
        logging.info(f"Measured at: {reading.timestamp}")
        logging.info(f"Cumulative energy: {reading.kwh}kWh")


class MultiSink:
    """複数の出力先にまとめて渡す"""

    def __init__(self, *sinks):
        self.sinks = list(sinks)

    async def on_instant_power(self, power: int):
        for sink in self.sinks:
            await sink.on_instant_power(power)

    async def on_energy(self, reading: EnergyReading):
        for sink in self.sinks:
            await sink.on_energy(reading)


class PollingScheduler:
    """瞬時電力・積算電力量の定期取得"""

    def __init__(self, meter: SmartMeter, sink=None,
                 power_interval: float = DEFAULT_POWER_INTERVAL,
                 energy_interval: float = DEFAULT_ENERGY_INTERVAL):
        """
        Args:
            meter: 接続済みスマートメーター
            sink: 計測値の出力先（on_instant_power / on_energy）
            power_interval: 瞬時電力の取得間隔（秒）
            energy_interval: 積算電力量の取得間隔（秒）
        """
        self.meter = meter
        self.sink = sink or LoggingSink()
        self.power_interval = power_interval
        self.energy_interval = energy_interval

        self._executor: Optional[ThreadPoolExecutor] = None
        self._done: Optional[asyncio.Future] = None
        self._inflight: set[asyncio.Task] = set()

    async def _exchange(self, func):
        """要求〜応答の1往復をリンクワーカーで実行"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func)

    async def poll_instant_power(self):
        try:
            power = await self._exchange(self.meter.get_instant_power)
        except ReadTimeout:
            logging.warning("Instant power: read timeout, skipped")
            return
        await self.sink.on_instant_power(power)

    async def poll_energy(self):
        try:
            reading = await self._exchange(self.meter.get_unit_and_fixed_cumulative_energy)
        except ReadTimeout:
            logging.warning("Cumulative energy: read timeout, skipped")
            return
        await self.sink.on_energy(reading)

    async def _ticker(self, interval: float, poll):
        """interval ごとに poll を起動する（前回の完了は待たない）"""
        while True:
            await asyncio.sleep(interval)
            task = asyncio.create_task(poll())
            self._inflight.add(task)
            task.add_done_callback(self._on_poll_done)

    def _on_poll_done(self, task: asyncio.Task):
        self._inflight.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None and not self._done.done():
            logging.error(f"Polling stopped: {error}")
            self._done.set_exception(error)

    def stop(self):
        """ポーリングを終了する"""
        if self._done is not None and not self._done.done():
            self._done.set_result(None)

    async def run(self):
        """
        ポーリングを開始し、stop() されるか致命的エラーまで戻らない

        Raises:
            WiSUNError: ReadTimeout以外のエラー
        """
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="wisun-link")
        self._done = asyncio.get_running_loop().create_future()
        tickers = [
            asyncio.create_task(self._ticker(self.power_interval, self.poll_instant_power)),
            asyncio.create_task(self._ticker(self.energy_interval, self.poll_energy)),
        ]
        logging.info(
            f"Polling started (power: {self.power_interval}s, energy: {self.energy_interval}s)"
        )

        try:
            await self._done
        finally:
            pending = tickers + list(self._inflight)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            self._executor.shutdown(wait=False, cancel_futures=True)
            logging.info("Polling stopped")
