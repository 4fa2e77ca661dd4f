"""
Telegram Notifier — async Telegram bot alerts for lifecycle events.
Silent no-op when token or chat id is missing; delivery failures are only logged.
"""
import asyncio

import aiohttp
from loguru import logger


class TelegramNotifier:
    def __init__(self, token: str = '', chat_id: str = ''):
        self.token = token
        self.chat_id = chat_id
        self._pending: set[asyncio.Task] = set()

    @property
    def enabled(self) -> bool:
        return bool(self.token and self.chat_id)

    def schedule(self, coro) -> asyncio.Task:
        """Fire-and-forget a notification, holding a reference until it finishes."""
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _send(self, text: str):
        if not self.enabled:
            return
        url = f'https://api.telegram.org/bot{self.token}/sendMessage'
        payload = {'chat_id': self.chat_id, 'text': text, 'parse_mode': 'HTML'}
        try:
            async with aiohttp.ClientSession() as session:
                async with session.post(url, json=payload, timeout=aiohttp.ClientTimeout(total=5)) as resp:
                    if resp.status != 200:
                        logger.warning(f'[TG] Failed: {resp.status}')
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f'[TG] Error: {e}')

    async def notify_open(self, symbol: str, side: str, price: float, quantity: float, leverage: int):
        emoji = '🟢' if side == 'long' else '🔴'
        text = (
            f'{emoji} <b>OPEN {side.upper()} {symbol}</b>\n'
            f'Entry: <code>{price:.4f}</code>  Qty: <code>{quantity:g}</code>  Lev: {leverage}x'
        )
        await self._send(text)

    async def notify_close(self, symbol: str, side: str, pnl: float, reason: str):
        emoji = '✅' if pnl > 0 else '❌'
        text = (
            f'{emoji} <b>CLOSE {side.upper()} {symbol}</b>\n'
            f'PnL: <code>${pnl:+.2f}</code>  Reason: {reason}'
        )
        await self._send(text)

    async def notify_risk_block(self, reason: str):
        await self._send(f'⛔ <b>Risk block:</b> {reason}')

    async def notify_force_close_all(self, reason: str, balance: float):
        await self._send(
            f'🚨 <b>Closing all positions</b>\n'
            f'Balance: <code>${balance:.2f}</code>\nReason: {reason}'
        )

    async def notify_halt(self, reason: str):
        await self._send(f'🛑 <b>Engine halted:</b> {reason}')

    async def send_startup_alert(self, symbols: list, strategy: str, venue: str):
        """Notify that the engine has started and which symbols it manages."""
        text = (
            f'🚀 <b>Lifecycle Engine Started</b>\n'
            f'Venue: {venue}  Strategy: {strategy}\n'
            f'Symbols: {", ".join(symbols)}'
        )
        await self._send(text)
