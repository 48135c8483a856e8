import asyncio
import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import uvicorn
from fastapi import FastAPI, Header, HTTPException, Request
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from .dispatcher import TurnDispatcher
from .exceptions import ConfigError
from .poller import UpdatePoller
from .services.completion import OpenAICompletionSource, build_openai_client
from .services.session_store import RedisTokenBackend, SessionStore, TokenBackend
from .services.telegram import TelegramTransport
from .settings import EnvConfigWriter, Settings, get_settings


def setup_server_logging(level: str = "INFO") -> logging.Logger:
    """Configure the package logger and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger("gptrelay")
    logger = logging.getLogger("gptrelay.server")
    if root.handlers:
        return logger

    root.setLevel(level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    root.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    root.addHandler(fh)

    return logger


LOGGER = setup_server_logging(get_settings().log_level)


@dataclass
class BotServices:
    """Everything the running bot owns; built at startup, closed at shutdown."""

    transport: TelegramTransport
    store: SessionStore
    source: OpenAICompletionSource
    dispatcher: TurnDispatcher
    poller_task: "asyncio.Task[None] | None" = field(default=None)


async def _build_token_backend(settings: Settings) -> TokenBackend | None:
    """Connect the Redis backend when configured; None means in-memory."""
    if not settings.redis_url or not settings.redis_url.strip():
        return None
    backend = RedisTokenBackend(settings.redis_url.strip(), ttl_seconds=settings.session_ttl_seconds)
    try:
        await backend.connect()
    except (RedisConnectionError, RedisTimeoutError, ConnectionError, TimeoutError) as e:
        LOGGER.warning("Redis unavailable, keeping sessions in memory: %s", e)
        return None
    return backend


async def restore_session(store: SessionStore, settings: Settings) -> None:
    """Install the persisted OPENAI_SESSION token after a restart.

    /renew records the chat it ran in; a token set by hand without one goes to
    each allow-listed user's private chat (private chat id equals user id).
    """
    token = settings.openai_session.strip()
    if not token:
        return
    if settings.openai_session_chat is not None:
        chats = [settings.openai_session_chat]
    else:
        chats = list(settings.telegram_id)
    if not chats:
        LOGGER.warning("OPENAI_SESSION is set but no chat to restore it to; set OPENAI_SESSION_CHAT")
        return
    for chat_id in chats:
        await store.set(chat_id, token)
    LOGGER.info("Restored persisted session for chat(s) %s", ", ".join(map(str, chats)))


async def build_services(settings: Settings) -> BotServices:
    store = SessionStore(backend=await _build_token_backend(settings))
    source = OpenAICompletionSource(build_openai_client(settings), store, settings)
    store.set_validator(source.validate)

    transport = TelegramTransport.from_settings(settings)
    me = await transport.get_me()
    LOGGER.info("Started Telegram bot! Message @%s to start.", me.get("username"))

    await restore_session(store, settings)

    dispatcher = TurnDispatcher(
        settings=settings,
        store=store,
        source=source,
        transport=transport,
        config_writer=EnvConfigWriter(settings.env_file_path),
        bot_username=transport.username,
    )
    return BotServices(transport=transport, store=store, source=source, dispatcher=dispatcher)


async def close_services(services: BotServices) -> None:
    if services.poller_task is not None:
        services.poller_task.cancel()
        try:
            await services.poller_task
        except asyncio.CancelledError:
            pass
        except Exception:
            LOGGER.exception("Poller task had failed before shutdown")
    await services.dispatcher.shutdown()
    await services.transport.close()
    await services.source.close()
    await services.store.close()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the bot at startup, then either register the webhook or start polling."""
    settings = get_settings()
    settings.validate_required()
    services = await build_services(settings)
    app.state.services = services

    if settings.webhook_url:
        await services.transport.set_webhook(settings.webhook_url, settings.webhook_secret)
    else:
        await services.transport.delete_webhook()
        poller = UpdatePoller(
            services.transport,
            services.dispatcher,
            timeout=settings.telegram_poll_timeout,
        )
        services.poller_task = asyncio.create_task(poller.run(), name="telegram-poller")

    yield

    LOGGER.info("Shutting down...")
    await close_services(services)
    app.state.services = None


app = FastAPI(
    title="GPT Telegram Relay",
    version="0.1.0",
    lifespan=lifespan,
)


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring.

    Returns:
        dict[str, Any]: status plus the number of replies currently streaming.
    """
    services = getattr(app.state, "services", None)
    active = services.dispatcher.active_turns if services is not None else 0
    return {"status": "ok", "active_turns": active}


@app.post("/telegram/webhook")
async def telegram_webhook(
    request: Request,
    x_telegram_bot_api_secret_token: str | None = Header(default=None),
) -> dict[str, Any]:
    """Receive one Telegram update pushed by the Bot API."""
    settings = get_settings()
    if settings.webhook_secret and x_telegram_bot_api_secret_token != settings.webhook_secret:
        LOGGER.warning("Webhook call with a bad secret token")
        raise HTTPException(status_code=403, detail="Invalid secret token")

    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Bot is not ready")

    update = await request.json()
    await services.dispatcher.handle_update(update)
    return {"ok": True}


def run() -> None:
    """Console entry point: validate config and serve the app with uvicorn."""
    settings = get_settings()
    try:
        settings.validate_required()
    except ConfigError as e:
        LOGGER.critical("Couldn't load config: %s", e)
        sys.exit(1)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
