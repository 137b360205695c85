"""Telegram bot for hedge notifications and remote control."""

import asyncio
import logging
import threading
from typing import Optional

from telegram import Update, InlineKeyboardButton, InlineKeyboardMarkup
from telegram.ext import (
    Application,
    CommandHandler,
    CallbackQueryHandler,
    ContextTypes,
)
from sqlmodel import Session, select

from lp_hedger.config import settings

logger = logging.getLogger(__name__)

_bot_instance: Optional["TelegramBot"] = None


def notify(message: str):
    """Send a Telegram notification (fire-and-forget)."""
    bot = get_bot()
    if bot and bot._loop:
        asyncio.run_coroutine_threadsafe(bot.send_notification(message), bot._loop)
    else:
        logger.debug(f"Notification (no bot): {message}")


class TelegramBot:
    """Telegram bot running in a background thread with its own event loop."""

    def __init__(self, token: str, chat_ids: list[int]):
        self.token = token
        self.chat_ids = set(chat_ids)
        self._app: Optional[Application] = None
        self._thread: Optional[threading.Thread] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _is_authorized(self, user_id: int) -> bool:
        return user_id in self.chat_ids

    async def _check_auth(self, update: Update) -> bool:
        if not update.effective_user or not self._is_authorized(update.effective_user.id):
            if update.message:
                await update.message.reply_text("Unauthorized.")
            return False
        return True

    async def _cmd_status(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        from lp_hedger.engine.scheduler import get_scheduler_status
        from lp_hedger.database import engine
        from lp_hedger.models.hedge import Hedge
        from lp_hedger.models.position import Position

        status = get_scheduler_status()
        with Session(engine) as session:
            hedge_count = len(session.exec(select(Hedge).where(Hedge.active == True)).all())
            position_count = len(session.exec(select(Position).where(Position.active == True)).all())

        scheduler_str = "running" if status["running"] else "stopped"
        text = (
            f"Scheduler: {scheduler_str}\n"
            f"Jobs: {status['job_count']}\n"
            f"Active positions: {position_count}\n"
            f"Active hedges: {hedge_count}"
        )
        await update.message.reply_text(text)

    async def _cmd_hedges(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        from lp_hedger.database import engine
        from lp_hedger.models.hedge import Hedge
        from lp_hedger.models.position import Position
        from lp_hedger.models.short_rebalance import ShortRebalance

        with Session(engine) as session:
            hedges = session.exec(select(Hedge).where(Hedge.active == True)).all()
            if not hedges:
                await update.message.reply_text("No active hedges.")
                return

            lines = []
            for hedge in hedges:
                position = session.get(Position, hedge.position_id)
                last = session.exec(
                    select(ShortRebalance)
                    .where(ShortRebalance.hedge_id == hedge.id)
                    .order_by(ShortRebalance.rebalanced_at.desc())
                ).first()
                pair = f"{position.asset0}/{position.asset1}" if position else f"#{hedge.position_id}"
                last_str = f"{last.status} {last.rebalanced_at:%Y-%m-%d %H:%M}" if last else "never"
                lines.append(
                    f"#{hedge.id} {pair}: target {hedge.target:.2f} "
                    f"tol {hedge.tolerance:.2%} | last {last_str}"
                )

        await update.message.reply_text("\n".join(lines))

    async def _cmd_breaker(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        if not await self._check_auth(update):
            return

        from lp_hedger.database import engine
        from lp_hedger.models.user import User
        from lp_hedger.services.circuit_breaker import CircuitBreaker

        with Session(engine) as session:
            users = session.exec(select(User).where(User.is_active == True)).all()

        lines = []
        for user in users:
            status = await CircuitBreaker.for_user(user.id).status()
            lines.append(f"{user.username}: {status['state']} ({status['failures']} failures)")
        await update.message.reply_text("\n".join(lines) or "No users.")

    async def _confirm(self, update: Update, prompt: str, label: str, action: str):
        if not await self._check_auth(update):
            return
        keyboard = InlineKeyboardMarkup([[
            InlineKeyboardButton(label, callback_data=f"confirm_{action}"),
            InlineKeyboardButton("Cancel", callback_data="cancel"),
        ]])
        await update.message.reply_text(prompt, reply_markup=keyboard)

    async def _cmd_rebalance_all(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._confirm(update, "Run a hedge sync for all active hedges now?", "Yes, rebalance", "rebalance_all")

    async def _cmd_close_all(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._confirm(update, "Close all hedge shorts (keep hedges active)?", "Yes, close all", "close_all")

    async def _cmd_stop_all(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        await self._confirm(
            update, "Close all hedge shorts AND deactivate all hedges?", "Yes, stop everything", "stop_all"
        )

    async def _handle_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        query = update.callback_query
        if not query or not query.from_user or not self._is_authorized(query.from_user.id):
            return

        await query.answer()

        if query.data == "cancel":
            await query.edit_message_text("Cancelled.")
            return

        from lp_hedger.services.hedge_lifecycle import run_emergency_stop

        if query.data == "confirm_rebalance_all":
            from lp_hedger.engine.hedge_sync import run_hedge_sync

            await query.edit_message_text("Rebalancing...")
            results = await run_hedge_sync()
            failed = sum(1 for r in results if r.error)
            await query.edit_message_text(f"Synced {len(results)} hedges, {failed} failed.")

        elif query.data == "confirm_close_all":
            await query.edit_message_text("Closing all hedge shorts...")
            result = await run_emergency_stop(close_shorts=True, deactivate_hedges=False)
            errors = f"\nErrors: {len(result['errors'])}" if result["errors"] else ""
            await query.edit_message_text(f"Closed {result['shorts_closed']} shorts.{errors}")

        elif query.data == "confirm_stop_all":
            await query.edit_message_text("Emergency stop in progress...")
            result = await run_emergency_stop(close_shorts=True, deactivate_hedges=True)
            errors = f"\nErrors: {len(result['errors'])}" if result["errors"] else ""
            await query.edit_message_text(
                f"Closed {result['shorts_closed']} shorts, "
                f"deactivated {result['hedges_deactivated']} hedges.{errors}"
            )

    async def send_notification(self, message: str):
        """Send a message to all whitelisted chat IDs."""
        if not self._app or not self._app.bot:
            return
        for chat_id in self.chat_ids:
            try:
                await self._app.bot.send_message(chat_id=chat_id, text=message)
            except Exception as e:
                logger.warning(f"Failed to send Telegram notification to {chat_id}: {e}")

    def _run_bot(self):
        """Run the bot in a background thread with its own event loop."""
        self._loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self._loop)

        self._app = (
            Application.builder()
            .token(self.token)
            .build()
        )

        self._app.add_handler(CommandHandler("status", self._cmd_status))
        self._app.add_handler(CommandHandler("hedges", self._cmd_hedges))
        self._app.add_handler(CommandHandler("breaker", self._cmd_breaker))
        self._app.add_handler(CommandHandler("rebalance_all", self._cmd_rebalance_all))
        self._app.add_handler(CommandHandler("close_all", self._cmd_close_all))
        self._app.add_handler(CommandHandler("stop_all", self._cmd_stop_all))
        self._app.add_handler(CallbackQueryHandler(self._handle_callback))

        logger.info("Telegram bot starting...")
        self._loop.run_until_complete(self._app.initialize())
        self._loop.run_until_complete(self._app.start())
        self._loop.run_until_complete(self._app.updater.start_polling())
        self._loop.run_forever()

    def start(self):
        self._thread = threading.Thread(target=self._run_bot, daemon=True)
        self._thread.start()

    def stop(self):
        if self._loop and self._app:
            async def _shutdown():
                await self._app.updater.stop()
                await self._app.stop()
                await self._app.shutdown()

            asyncio.run_coroutine_threadsafe(_shutdown(), self._loop).result(timeout=10)
            self._loop.call_soon_threadsafe(self._loop.stop)


def init_bot() -> TelegramBot:
    """Initialize and return the bot singleton."""
    global _bot_instance
    _bot_instance = TelegramBot(
        token=settings.telegram_bot_token,
        chat_ids=settings.telegram_chat_ids,
    )
    return _bot_instance


def get_bot() -> Optional[TelegramBot]:
    """Get the bot singleton, or None if not initialized."""
    return _bot_instance
