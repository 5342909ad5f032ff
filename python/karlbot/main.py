from __future__ import annotations

import asyncio
import sys
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv
from fastapi import FastAPI

try:
  from .auth_store import MultiFileAuthStore
  from .completion import CompletionClient
  from .config import BotConfig, ConfigError, load_config
  from .errors import TransportError
  from .log import setup_logging
  from .orchestrator import ReplyOrchestrator
  from .server import create_app
  from .transport import EventSink, GatewayTransport
except ImportError:  # allow running as `python python/karlbot/main.py`
  from pathlib import Path
  sys.path.append(str(Path(__file__).resolve().parent.parent))
  from karlbot.auth_store import MultiFileAuthStore  # type: ignore
  from karlbot.completion import CompletionClient  # type: ignore
  from karlbot.config import BotConfig, ConfigError, load_config  # type: ignore
  from karlbot.errors import TransportError  # type: ignore
  from karlbot.log import setup_logging  # type: ignore
  from karlbot.orchestrator import ReplyOrchestrator  # type: ignore
  from karlbot.server import create_app  # type: ignore
  from karlbot.transport import EventSink, GatewayTransport  # type: ignore

load_dotenv()
logger = setup_logging()


def build_orchestrator(config: BotConfig) -> ReplyOrchestrator:
  store = MultiFileAuthStore(config.auth_dir)
  completion = CompletionClient(config)

  def transport_factory(sink: EventSink, generation: int) -> GatewayTransport:
    return GatewayTransport(config, store, sink, generation)

  return ReplyOrchestrator(config, completion, store, transport_factory)


def _install_exception_logging(loop: asyncio.AbstractEventLoop) -> None:
  # Keep the process alive under the supervisor; log and move on.
  def _loop_handler(_loop, context: dict) -> None:
    logger.error(
      "Unhandled async error: %s",
      context.get("message"),
      exc_info=context.get("exception"),
    )

  def _excepthook(exc_type, exc, tb) -> None:
    logger.error("Uncaught exception: %s", exc, exc_info=(exc_type, exc, tb))

  loop.set_exception_handler(_loop_handler)
  sys.excepthook = _excepthook


@asynccontextmanager
async def lifespan(app: FastAPI):
  bot: ReplyOrchestrator = app.state.orchestrator
  config: BotConfig = app.state.config
  _install_exception_logging(asyncio.get_running_loop())
  logger.info("Web service running on port %s (health: http://localhost:%s/health)", config.port, config.port)

  await bot.start()
  try:
    await bot.initialize()
  except TransportError as err:
    logger.error("Failed to start bot: %s", err)
    logger.info("Try visiting /pair endpoint to generate pairing code")
  else:
    bot.schedule_auto_pair()

  yield

  await bot.shutdown()


def main() -> None:
  try:
    config = load_config()
  except ConfigError as err:
    logger.error("Error: %s", err)
    sys.exit(1)

  logger.info("Starting %s", config.bot_name)
  logger.info("Phone Number: %s", config.phone_number)
  logger.info("AI Provider: %s (%s)", config.llm_model, config.llm_endpoint)

  app = create_app(build_orchestrator(config), config, lifespan=lifespan)
  uvicorn.run(app, host="0.0.0.0", port=config.port, log_level="info")


if __name__ == "__main__":
  main()
