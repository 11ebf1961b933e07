# src/modules/notifier.py
import logging
import asyncio
from telegram import Bot
from telegram.error import TelegramError
from telegram.helpers import escape_markdown

from core.config import settings
from models.action import ActionEvent

logger = logging.getLogger(__name__)

ACTION_ICONS = {
    "REDUCE_LIQUIDITY": "🔻",
    "REBALANCE": "🔄",
    "TAKE_PROFIT": "✅",
    "STOP_LOSS": "⚠️",
    "EMERGENCY_CLOSE": "🚨",
    "CLAIM_REWARDS": "💰",
    "AUTO_COMPOUND": "📈",
}

class Notifier:
    def __init__(self, token: str | None, chat_id: str | None):
        if token and chat_id:
            self.bot = Bot(token=token)
            self.chat_id = chat_id
            logger.info("El notificador de Telegram está configurado.")
        else:
            self.bot = None
            self.chat_id = None
            logger.warning("El notificador de Telegram no está configurado. No se enviarán alertas.")

    def send_telegram_message(self, message: str):
        if not self.bot or not self.chat_id: return
        # Los jobs corren en hilos del scheduler sin event loop propio
        try:
            asyncio.run(self._send_message_async(message))
        except RuntimeError as e:
            logger.error(f"No se pudo programar la notificación de Telegram: {e}")

    async def _send_message_async(self, message: str):
        try:
            async with self.bot:
                await self.bot.send_message(
                    chat_id=self.chat_id,
                    text=message,
                    parse_mode='MarkdownV2'
                )
            logger.info(f"Notificación enviada a Telegram Chat ID {self.chat_id}.")
        except TelegramError as e:
            logger.error(f"Error al enviar notificación a Telegram: {e}", exc_info=False)

    def notify_action(self, event: ActionEvent):
        self.send_telegram_message(format_action_for_telegram(event))


def format_action_for_telegram(event: ActionEvent) -> str:
    icon = ACTION_ICONS.get(event.action, "ℹ️")
    action = escape_markdown(event.action, version=2)
    engine = escape_markdown(event.engine, version=2)
    justification = escape_markdown(event.justification or "-", version=2, entity_type="pre")
    position = escape_markdown(event.position_key or "-", version=2, entity_type="code")
    pool = escape_markdown(event.pool_address or "-", version=2, entity_type="code")
    timestamp = escape_markdown(event.created_at.strftime('%Y-%m-%d %H:%M:%S UTC'), version=2)

    message = (
        f"{icon} *{action}* \\({engine}\\)\n\n"
        f"*Posición:* `{position}`\n"
        f"*Pool:* `{pool}`\n"
        f"*Hora:* {timestamp}\n\n"
        f"```{justification}```"
    )
    if event.signatures:
        # La URL en sí no debe ser escapada, pero su texto sí.
        last = event.signatures[-1]
        message += f"\n\n[Ver transacción en Solscan](https://solscan.io/tx/{last})"
    return message

# Instancia global
notifier = Notifier(token=settings.TELEGRAM_BOT_TOKEN, chat_id=settings.TELEGRAM_CHAT_ID)
