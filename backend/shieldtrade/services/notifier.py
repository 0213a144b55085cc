"""
Notifications for connected dashboards and chat.

- WebSocketManager: broadcasts JSON events to every connected /ws client
- TelegramNotifier: optional HTML messages through the Bot API (httpx)
- Notifier: the engine-facing facade. Every notify_* call is fire-and-forget:
  delivery runs in a background task and failures are logged, never raised
  into the trading path.
"""

import asyncio
import logging
from datetime import datetime
from typing import List, Optional, Set

import httpx
from fastapi import WebSocket

logger = logging.getLogger(__name__)

TELEGRAM_API_URL = "https://api.telegram.org"


class WebSocketManager:
    """Manages WebSocket connections and broadcasts messages to clients"""

    def __init__(self):
        self.active_connections: List[WebSocket] = []
        self._lock = asyncio.Lock()

    async def connect(self, websocket: WebSocket):
        await websocket.accept()
        async with self._lock:
            self.active_connections.append(websocket)
        logger.info(f"WebSocket connected. Total connections: {len(self.active_connections)}")

    async def disconnect(self, websocket: WebSocket):
        async with self._lock:
            if websocket in self.active_connections:
                self.active_connections.remove(websocket)
        logger.info(f"WebSocket disconnected. Total connections: {len(self.active_connections)}")

    async def broadcast(self, message: dict):
        """Broadcast a message to all connected clients, dropping dead connections"""
        if not self.active_connections:
            return

        async with self._lock:
            connections = list(self.active_connections)

        disconnected = []
        for connection in connections:
            try:
                await connection.send_json(message)
            except Exception as e:
                logger.warning(f"Failed to send message to client: {e}")
                disconnected.append(connection)

        if disconnected:
            async with self._lock:
                for conn in disconnected:
                    if conn in self.active_connections:
                        self.active_connections.remove(conn)


class TelegramNotifier:
    def __init__(self, bot_token: str, chat_id: str, timeout: float = 10.0):
        self.bot_token = bot_token
        self.chat_id = chat_id
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token and self.chat_id)

    async def send(self, text: str):
        if not self.enabled:
            return
        url = f"{TELEGRAM_API_URL}/bot{self.bot_token}/sendMessage"
        payload = {
            "chat_id": self.chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        }
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(url, json=payload)
            resp.raise_for_status()


def _short(asset: str, symbol: Optional[str]) -> str:
    return symbol or f"{asset[:8]}..."


def _tx_link(signature: str) -> str:
    return f'<a href="https://solscan.io/tx/{signature}">View Transaction</a>'


class Notifier:
    def __init__(self, ws_manager: Optional[WebSocketManager] = None, telegram: Optional[TelegramNotifier] = None):
        self.ws_manager = ws_manager or WebSocketManager()
        self.telegram = telegram
        self._tasks: Set[asyncio.Task] = set()

    def _dispatch(self, event: dict, text: Optional[str] = None):
        event.setdefault("timestamp", datetime.utcnow().isoformat())
        task = asyncio.create_task(self._deliver(event, text))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, event: dict, text: Optional[str]):
        try:
            await self.ws_manager.broadcast(event)
        except Exception as e:
            logger.error(f"WebSocket broadcast of {event.get('type')} failed: {e}")
        if text and self.telegram is not None and self.telegram.enabled:
            try:
                await self.telegram.send(text)
            except Exception as e:
                logger.error(f"Telegram send failed: {e}")

    async def drain(self):
        """Wait for in-flight deliveries (used at shutdown and in tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def notify_dca_buy(
        self,
        owner: str,
        asset: str,
        asset_symbol: Optional[str],
        buy_number: int,
        number_of_buys: int,
        signature: str,
        token_amount: float,
        sol_amount: float,
        price: float,
    ):
        event = {
            "type": "dca_buy",
            "owner": owner,
            "asset": asset,
            "buy_number": buy_number,
            "number_of_buys": number_of_buys,
            "signature": signature,
            "token_amount": token_amount,
            "sol_amount": sol_amount,
            "price": price,
        }
        text = (
            f"💵 <b>DCA Buy Executed ({buy_number}/{number_of_buys})</b>\n\n"
            f"<b>Token:</b> {_short(asset, asset_symbol)}\n"
            f"<b>Bought:</b> {token_amount:,.4f} tokens\n"
            f"<b>Spent:</b> {sol_amount:.4f} SOL\n"
            f"<b>Price:</b> {price:.10f} SOL\n\n"
            f"{_tx_link(signature)}"
        )
        self._dispatch(event, text)

    def notify_exit_triggered(
        self,
        owner: str,
        asset: str,
        asset_symbol: Optional[str],
        reason: str,
        profit_percent: float,
        quantity: float,
        signature: Optional[str] = None,
    ):
        event = {
            "type": "exit_triggered",
            "owner": owner,
            "asset": asset,
            "reason": reason,
            "profit_percent": profit_percent,
            "quantity": quantity,
            "signature": signature,
        }
        tail = _tx_link(signature) if signature else "<i>Awaiting signature</i>"
        text = (
            f"🚨 <b>Exit Triggered: {_short(asset, asset_symbol)}</b>\n\n"
            f"<b>Reason:</b> {reason}\n"
            f"<b>Current P&amp;L:</b> {profit_percent:+.2f}%\n"
            f"<b>Selling:</b> {quantity:,.4f} tokens\n\n"
            f"{tail}"
        )
        self._dispatch(event, text)

    def notify_pending_buy(self, pending: dict):
        self._dispatch({"type": "pending_buy", **pending})

    def notify_pending_sell(self, pending: dict):
        self._dispatch({"type": "pending_sell", **pending})
