from loguru import logger
from telegram import Update
from telegram.error import BadRequest, TelegramError
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from tallybot.config import get_settings
from tallybot.deps import orchestrator, repo
from tallybot.models.schemas import InboundMessage, OutboundMessage, Participant

settings = get_settings()


def _is_allowed(channel: str) -> bool:
    return not settings.allowed_user_ids or channel in settings.allowed_user_ids


def _participant_for(update: Update) -> Participant | None:
    user = update.effective_user
    if user is None:
        return None
    channel = str(user.id)
    if not _is_allowed(channel):
        logger.warning("Ignoring message from unauthorized Telegram user {}", channel)
        return None
    return repo.get_or_create_participant(channel, user.first_name or user.username or channel)


def _message_id(update: Update) -> str:
    return f"tg:{update.effective_chat.id}:{update.message.message_id}"


async def _send(context: ContextTypes.DEFAULT_TYPE, chat_id: str | int, text: str) -> None:
    """Best-effort send: Markdown first, plain text if Telegram rejects the markup."""
    try:
        await context.bot.send_message(chat_id=chat_id, text=text, parse_mode="Markdown")
    except BadRequest:
        try:
            await context.bot.send_message(chat_id=chat_id, text=text)
        except TelegramError as e:
            logger.error("Failed to send message to {}: {}", chat_id, e)
    except TelegramError as e:
        logger.error("Failed to send message to {}: {}", chat_id, e)


async def deliver(
    context: ContextTypes.DEFAULT_TYPE,
    sender: Participant,
    chat_id: int,
    replies: list[OutboundMessage],
) -> None:
    """Send replies to the sender's chat and notifications to other participants."""
    for reply in replies:
        if reply.participant_id == sender.id:
            await _send(context, chat_id, reply.text)
            continue
        recipient = repo.get_participant(reply.participant_id)
        if recipient is None or not recipient.channel:
            logger.warning("No channel for participant {}, notification dropped", reply.participant_id)
            continue
        await _send(context, recipient.channel, reply.text)


async def handle_text(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Every text message, commands included, goes through the orchestrator."""
    participant = _participant_for(update)
    if participant is None:
        return

    text = update.message.text.strip()
    logger.info("Telegram message from {} ({} chars)", participant.id, len(text))
    await update.message.chat.send_action("typing")

    replies = await orchestrator.handle_message(
        InboundMessage(user_id=participant.id, text=text, message_id=_message_id(update))
    )
    await deliver(context, participant, update.effective_chat.id, replies)


async def handle_media(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Transfer receipts sent as a photo or a PDF document."""
    participant = _participant_for(update)
    if participant is None:
        return

    message = update.message
    if message.photo:
        file = await message.photo[-1].get_file()
        mime_type = "image/jpeg"
    else:
        file = await message.document.get_file()
        mime_type = message.document.mime_type or "application/pdf"

    logger.info("Telegram {} from {}", mime_type, participant.id)
    await message.chat.send_action("typing")
    media = bytes(await file.download_as_bytearray())

    replies = await orchestrator.handle_media(
        participant.id,
        media,
        mime_type,
        caption=message.caption,
        message_id=_message_id(update),
    )
    await deliver(context, participant, update.effective_chat.id, replies)


async def handle_audio(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Voice notes and audio files describing an expense."""
    participant = _participant_for(update)
    if participant is None:
        return

    message = update.message
    audio = message.voice or message.audio
    mime_type = audio.mime_type or "audio/ogg"
    logger.info("Telegram {} from {} ({}s)", mime_type, participant.id, audio.duration)
    await message.chat.send_action("typing")
    file = await audio.get_file()
    media = bytes(await file.download_as_bytearray())

    replies = await orchestrator.handle_audio(participant.id, media, mime_type, message_id=_message_id(update))
    await deliver(context, participant, update.effective_chat.id, replies)


def build_bot_app() -> Application:
    """Build and return the Telegram bot application."""
    app = Application.builder().token(settings.telegram_bot_token).build()

    app.add_handler(MessageHandler(filters.VOICE | filters.AUDIO, handle_audio))
    app.add_handler(MessageHandler(filters.PHOTO | filters.Document.PDF | filters.Document.IMAGE, handle_media))
    app.add_handler(MessageHandler(filters.TEXT, handle_text))

    return app
