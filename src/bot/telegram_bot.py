"""
Waste Reminder Bot — Telegram Bot.

Telegram is the only user interface. Users register their collection
location, pick waste categories and a reminder time through commands and
inline buttons; the per-minute reminder tick runs on the application's job
queue.

No input from Telegram may crash a handler: payload and validation errors
are answered with a fixed message and logged.
"""

from __future__ import annotations

import logging
from functools import wraps
from typing import TYPE_CHECKING, Any, Callable, Coroutine

from telegram import InlineKeyboardButton, InlineKeyboardMarkup, Update
from telegram.ext import (
    Application,
    ApplicationBuilder,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from src.config import settings
from src.core.action_service import ResponseKind
from src.core.callback_actions import DELETE_CANCEL, DELETE_CONFIRM, build_payload
from src.core.errors import MalformedPayload, StoreUnavailable, ValidationError
from src.core.waste import SUPPORTED_CATEGORIES

if TYPE_CHECKING:
    from src.core.action_service import ActionService, ServiceResponse, SettingsView
    from src.core.callback_actions import CallbackStateMachine
    from src.data.db import SubscriptionStore
    from src.ports.notification_port import NotificationPort

logger = logging.getLogger(__name__)

UNKNOWN_INPUT_MESSAGE = "Sorry, I couldn't understand that."
TRANSIENT_ERROR_MESSAGE = "Something went wrong on my side. Please try again in a minute."
IDLE_TEXT_MESSAGE = "Please use /start to set up your location or /settings to change it."


# ---------------------------------------------------------------------------
# Security: silent-ignore decorator
# ---------------------------------------------------------------------------


def authorized_only(
    func: Callable[..., Coroutine[Any, Any, None]],
) -> Callable[..., Coroutine[Any, Any, None]]:
    """Decorator that silently ignores updates from users outside the allowlist.

    An empty ALLOWED_USER_IDS opens the bot to everyone.
    """

    @wraps(func)
    async def wrapper(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
        if settings.ALLOWED_USER_IDS:
            user = update.effective_user
            if user is None or user.id not in settings.ALLOWED_USER_IDS:
                uid = user.id if user else "unknown"
                logger.warning("Unauthorized access attempt from user_id=%s", uid)
                return  # Silent ignore
        return await func(update, context)

    return wrapper


# ---------------------------------------------------------------------------
# Keyboards & rendering
# ---------------------------------------------------------------------------


def build_settings_keyboard(view: SettingsView) -> InlineKeyboardMarkup:
    """Toggle buttons for each category, then time and location controls."""
    keyboard = []
    for category in SUPPORTED_CATEGORIES:
        subscribed = category in view.subscriptions
        label = f"{'✅' if subscribed else '❌'} {category}"
        data = build_payload("delcat" if subscribed else "addcat", category)
        keyboard.append([InlineKeyboardButton(label, callback_data=data)])

    keyboard.append([
        InlineKeyboardButton(f"⏰ {view.notify_time} (+1h)", callback_data=build_payload("time")),
        InlineKeyboardButton("Set time", callback_data=build_payload("edit", "time")),
    ])
    keyboard.append([
        InlineKeyboardButton("📍 Change location", callback_data=build_payload("edit", "location")),
        InlineKeyboardButton("🏷️ Rename", callback_data=build_payload("edit", "alias")),
    ])
    keyboard.append([
        InlineKeyboardButton("🗑️ Delete location", callback_data=build_payload("delloc")),
    ])
    return InlineKeyboardMarkup(keyboard)


def build_confirm_delete_keyboard() -> InlineKeyboardMarkup:
    return InlineKeyboardMarkup([[
        InlineKeyboardButton("Yes, delete", callback_data=build_payload("delloc", DELETE_CONFIRM)),
        InlineKeyboardButton("No", callback_data=build_payload("delloc", DELETE_CANCEL)),
    ]])


def render_response(response: ServiceResponse) -> tuple[str, InlineKeyboardMarkup | None]:
    """Turn a ServiceResponse into message text and an optional keyboard."""
    if response.kind == ResponseKind.CONFIRM_DELETE:
        return response.message, build_confirm_delete_keyboard()
    if response.settings is not None:
        return response.message, build_settings_keyboard(response.settings)
    return response.message, None


def _chat_id(update: Update) -> int | None:
    chat = update.effective_chat
    return chat.id if chat else None


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


@authorized_only
async def cmd_start(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /start — show settings, or ask for a location on first use."""
    actions: ActionService = context.bot_data["actions"]
    machine: CallbackStateMachine = context.bot_data["machine"]
    chat_id = _chat_id(update)

    try:
        view = actions.settings_view(chat_id)
    except StoreUnavailable as exc:
        logger.error("/start error: %s", exc)
        await update.effective_message.reply_text(TRANSIENT_ERROR_MESSAGE)
        return

    if view is not None:
        await update.effective_message.reply_text(
            f"Welcome back! Settings for {view.label}:",
            reply_markup=build_settings_keyboard(view),
        )
        return

    prompt = machine.begin_edit(chat_id, "location")
    response = actions.apply(chat_id, prompt)
    await update.effective_message.reply_text(
        "Welcome to the *Waste Reminder Bot*!\n\n"
        "I'll remind you before your bins are collected.\n\n"
        + response.message,
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_help(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /help — list available commands."""
    await update.effective_message.reply_text(
        "*Available commands:*\n"
        "/start — Set up your location\n"
        "/settings — Choose waste types, reminder time and location\n"
        "/stop — Stop all reminders and delete your data\n"
        "/help — Show this message",
        parse_mode="Markdown",
    )


@authorized_only
async def cmd_settings(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /settings — show the settings menu."""
    actions: ActionService = context.bot_data["actions"]
    machine: CallbackStateMachine = context.bot_data["machine"]
    chat_id = _chat_id(update)

    try:
        response = actions.apply(chat_id, machine.handle(build_payload("menu"), chat_id))
    except StoreUnavailable as exc:
        logger.error("/settings error: %s", exc)
        await update.effective_message.reply_text(TRANSIENT_ERROR_MESSAGE)
        return

    text, keyboard = render_response(response)
    await update.effective_message.reply_text(text, reply_markup=keyboard)


@authorized_only
async def cmd_stop(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle /stop — delete the user and all subscriptions."""
    actions: ActionService = context.bot_data["actions"]
    machine: CallbackStateMachine = context.bot_data["machine"]
    chat_id = _chat_id(update)

    machine.reset(chat_id)
    try:
        response = actions.unsubscribe(chat_id)
    except StoreUnavailable as exc:
        logger.error("/stop error: %s", exc)
        await update.effective_message.reply_text(TRANSIENT_ERROR_MESSAGE)
        return
    await update.effective_message.reply_text(response.message)


# ---------------------------------------------------------------------------
# Callback & message handlers
# ---------------------------------------------------------------------------


@authorized_only
async def handle_callback(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle every inline button press through the state machine."""
    actions: ActionService = context.bot_data["actions"]
    machine: CallbackStateMachine = context.bot_data["machine"]

    query = update.callback_query
    chat_id = _chat_id(update)
    if chat_id is None:
        await query.answer()
        return

    try:
        action = machine.handle(query.data or "", chat_id)
    except MalformedPayload:
        await query.answer(UNKNOWN_INPUT_MESSAGE)
        return

    try:
        response = actions.apply(chat_id, action)
    except StoreUnavailable as exc:
        logger.error("Callback %r from %d failed: %s", query.data, chat_id, exc)
        await query.answer(TRANSIENT_ERROR_MESSAGE)
        return

    await query.answer()
    text, keyboard = render_response(response)
    if response.kind == ResponseKind.PROMPT:
        await context.bot.send_message(chat_id=chat_id, text=text)
    else:
        await query.edit_message_text(text, reply_markup=keyboard)


@authorized_only
async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle plain text — completes a pending location, alias or time edit."""
    actions: ActionService = context.bot_data["actions"]
    machine: CallbackStateMachine = context.bot_data["machine"]
    chat_id = _chat_id(update)
    message = update.effective_message
    if message is None or chat_id is None:
        return

    try:
        action = machine.handle_text(message.text or "", chat_id)
    except ValidationError as exc:
        await message.reply_text(f"{exc} Please try again.")
        return

    if action is None:
        await message.reply_text(IDLE_TEXT_MESSAGE)
        return

    try:
        response = actions.apply(chat_id, action)
    except StoreUnavailable as exc:
        logger.error("Text input from %d failed: %s", chat_id, exc)
        await message.reply_text(TRANSIENT_ERROR_MESSAGE)
        return

    text, keyboard = render_response(response)
    await message.reply_text(text, reply_markup=keyboard)


async def _on_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Log handler errors that slipped through; the application keeps running."""
    logger.error("Unhandled error while processing %r: %s", update, context.error)


# ---------------------------------------------------------------------------
# App builder
# ---------------------------------------------------------------------------


async def _on_shutdown(app: Application) -> None:
    reminders = app.bot_data.get("reminders")
    if reminders is not None:
        reminders.stop()


def build_app(
    store: SubscriptionStore | None = None,
    notifier: NotificationPort | None = None,
) -> Application:
    """Build and configure the Telegram Application with all handlers.

    Args:
        store: Subscription store. Defaults to the SQLite file from settings.
        notifier: Notification port implementation. Defaults to TelegramNotifier
                  (created from the bot instance after app is built).
    """
    from src.core.action_service import ActionService
    from src.core.callback_actions import CallbackStateMachine
    from src.core.scheduler import ReminderService

    app = ApplicationBuilder().token(settings.TELEGRAM_BOT_TOKEN).post_shutdown(_on_shutdown).build()

    # Wire default adapters if not provided
    if store is None:
        from src.data.db import SubscriptionStore
        store = SubscriptionStore()

    if notifier is None:
        from src.adapters.telegram_notifier import TelegramNotifier
        notifier = TelegramNotifier(app.bot)

    reminders = ReminderService(store, notifier)

    # Store services in bot_data for handler access
    app.bot_data["actions"] = ActionService(store)
    app.bot_data["machine"] = CallbackStateMachine()
    app.bot_data["reminders"] = reminders

    # Commands
    app.add_handler(CommandHandler("start", cmd_start))
    app.add_handler(CommandHandler("help", cmd_help))
    app.add_handler(CommandHandler("settings", cmd_settings))
    app.add_handler(CommandHandler("stop", cmd_stop))

    # Inline buttons
    app.add_handler(CallbackQueryHandler(handle_callback))

    # Text messages (non-command, edits ignored)
    app.add_handler(MessageHandler(filters.UpdateType.MESSAGE & filters.TEXT & ~filters.COMMAND, handle_text))

    app.add_error_handler(_on_error)

    # Reminder ticks and pickup calendar refresh
    reminders.start(app.job_queue)

    logger.info("Telegram bot application built with %d handlers", len(app.handlers[0]))
    return app


def main() -> None:
    """Entry point: build the app and start polling."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logger.info("Starting Waste Reminder Bot...")
    app = build_app()
    app.run_polling()


if __name__ == "__main__":
    main()
