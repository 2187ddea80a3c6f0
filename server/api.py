"""
REST API / WebSocket サーバー

スマートメーターから取得した計測値をJSON APIとWebSocketで配信
"""

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from collections import deque
from datetime import datetime
import asyncio
import json

from echonet_lite import EnergyReading

# アプリケーション
app = FastAPI(title="B-route Smart Meter API")

# 最新の瞬時電力
current_data: dict = {
    "instant_power": None,
    "timestamp": None,
}

# 最新の積算電力量
energy_data: dict = {
    "timestamp": None,
    "cumulative_energy": None,
    "count": None,
    "unit": None,
}

# 接続情報
connection_info: dict = {
    "channel": None,
    "pan_id": None,
    "mac_addr": None,
    "ipv6_addr": None,
    "lqi": None,
}

# 履歴データ
history: deque = deque(maxlen=100)

# WebSocket接続管理
connected_clients: list[WebSocket] = []

# Mockモードフラグ
_mock_mode: bool = False


def set_mock_mode(mock: bool):
    """mockモードを設定"""
    global _mock_mode
    _mock_mode = mock


def update_power_data(power: int | None):
    """電力データを更新"""
    current_data["instant_power"] = power
    current_data["timestamp"] = datetime.now().isoformat()

    # 履歴に追加
    history.append(current_data.copy())


def update_energy_data(reading: EnergyReading):
    """積算電力量データを更新"""
    energy_data["timestamp"] = reading.timestamp.isoformat()
    energy_data["cumulative_energy"] = reading.kwh
    energy_data["count"] = reading.count
    energy_data["unit"] = reading.unit


def update_connection_info(info: dict):
    """接続情報を更新"""
    connection_info.update(info)


async def broadcast_power_data():
    """全WebSocketクライアントにデータを送信"""
    if not connected_clients:
        return

    data = json.dumps(current_data)
    disconnected = []

    for client in connected_clients:
        try:
            await client.send_text(data)
        except Exception:
            disconnected.append(client)

    # 切断されたクライアントを削除
    for client in disconnected:
        connected_clients.remove(client)


class ApiSink:
    """ポーリング結果をAPIの状態に反映する"""

    async def on_instant_power(self, power: int):
        update_power_data(power)
        await broadcast_power_data()

    async def on_energy(self, reading: EnergyReading):
        update_energy_data(reading)


# --- REST API ---


@app.get("/api/power")
async def get_power():
    """現在の電力値を取得"""
    return current_data


@app.get("/api/history")
async def get_history(limit: int = 0):
    """
    履歴データを取得

    Args:
        limit: 取得件数（0=全件）
    """
    if limit > 0:
        return list(history)[-limit:]
    return list(history)


@app.get("/api/energy")
async def get_energy():
    """最新の積算電力量を取得"""
    return energy_data


@app.get("/api/connection")
async def get_connection():
    """接続情報を取得"""
    return connection_info


@app.get("/api/status")
async def get_status():
    """サーバーステータス"""
    return {
        "status": "running",
        "mock_mode": _mock_mode,
        "history_count": len(history),
        "connected_clients": len(connected_clients),
        "last_update": current_data.get("timestamp"),
        "last_energy_update": energy_data.get("timestamp"),
    }


# --- WebSocket ---


@app.websocket("/ws/power")
async def websocket_power(websocket: WebSocket):
    """WebSocket: リアルタイム電力データ配信"""
    await websocket.accept()
    connected_clients.append(websocket)

    try:
        # 接続直後に現在値を送信
        await websocket.send_json(current_data)

        # 切断まで待機
        while True:
            # クライアントからのメッセージを待つ（ping/pongなど）
            try:
                await asyncio.wait_for(websocket.receive_text(), timeout=30)
            except asyncio.TimeoutError:
                # タイムアウトでもOK、接続は維持
                pass
    except WebSocketDisconnect:
        pass
    finally:
        if websocket in connected_clients:
            connected_clients.remove(websocket)
