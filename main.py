import asyncio
import sys

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from tallybot.api.routes import router
from tallybot.config import get_settings

settings = get_settings()

# Configure loguru
logger.remove()
logger.add(sys.stderr, level=settings.log_level, format="{time:HH:mm:ss} | {level:<7} | {message}")

app = FastAPI(title="Tallybot", version="0.1.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    logger.info("{} {}", request.method, request.url.path)
    response: Response = await call_next(request)
    logger.info("→ {}", response.status_code)
    return response


app.include_router(router)


@app.on_event("startup")
async def startup():
    """Start the expiry sweeps and the Telegram bot alongside FastAPI."""
    from tallybot.core.pending import run_sweeps
    from tallybot.deps import dedup, pending

    app.state.sweeper = asyncio.create_task(
        run_sweeps(settings.sweep_interval_seconds, pending.sweep, dedup.sweep)
    )
    logger.info("Sweeps running every {}s", settings.sweep_interval_seconds)

    if not settings.oracle_enabled:
        logger.warning("Oracle disabled — using the deterministic parser only")

    if not settings.telegram_bot_token:
        logger.warning("TELEGRAM_BOT_TOKEN not set — bot will not start")
        return

    from tallybot.bot.handler import build_bot_app

    bot_app = build_bot_app()
    app.state.bot = bot_app

    # Initialize and start polling in the background
    await bot_app.initialize()
    await bot_app.start()
    await bot_app.updater.start_polling(drop_pending_updates=True)
    logger.info("Telegram bot started (polling)")


@app.on_event("shutdown")
async def shutdown():
    """Stop the sweeps and the Telegram bot, then close the store."""
    sweeper = getattr(app.state, "sweeper", None)
    if sweeper:
        sweeper.cancel()

    bot_app = getattr(app.state, "bot", None)
    if bot_app:
        await bot_app.updater.stop()
        await bot_app.stop()
        await bot_app.shutdown()
        logger.info("Telegram bot stopped")

    from tallybot.deps import repo

    repo.close()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
