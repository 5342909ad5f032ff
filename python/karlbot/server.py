"""
HTTP surface for the assistant.

Thin FastAPI routes over the ReplyOrchestrator that `create_app` receives;
each route catches its own failures and answers with JSON.
"""
from __future__ import annotations

import json
from typing import Any, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import BotConfig
from .log import setup_logging
from .models import user_jid
from .orchestrator import ReplyOrchestrator
from .status import health_payload, iso_now

logger = setup_logging()

AVAILABLE_ENDPOINTS = ["/", "/health", "/status", "/pair", "/start"]
PAIR_INSTRUCTIONS = [
  "1. Open WhatsApp on your phone",
  "2. Settings > Linked Devices > Link a Device",
  '3. Choose "Link with phone number"',
  "4. Enter the 6-digit code from logs",
]


def _orchestrator(request: Request) -> ReplyOrchestrator:
  return request.app.state.orchestrator


async def _json_body(request: Request) -> dict[str, Any]:
  raw = await request.body()
  if not raw.strip():
    return {}
  try:
    body = json.loads(raw)
  except (json.JSONDecodeError, UnicodeDecodeError):
    return {}
  return body if isinstance(body, dict) else {}


def create_app(orchestrator: ReplyOrchestrator, config: BotConfig, *, lifespan: Optional[Any] = None) -> FastAPI:
  app = FastAPI(
    title=config.bot_name,
    description="WhatsApp AI Assistant powered by DeepSeek",
    version="1.0.0",
    lifespan=lifespan,
  )
  app.state.orchestrator = orchestrator
  app.state.config = config
  app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["GET", "POST", "PUT", "DELETE"],
    allow_headers=["Content-Type"],
  )

  @app.exception_handler(StarletteHTTPException)
  async def not_found_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code in (404, 405):
      return JSONResponse(
        status_code=404,
        content={"error": "Endpoint not found", "available": AVAILABLE_ENDPOINTS},
      )
    return JSONResponse(status_code=exc.status_code, content={"error": exc.detail})

  @app.exception_handler(Exception)
  async def error_handler(request: Request, exc: Exception):
    logger.exception("HTTP handler error on %s: %s", request.url.path, exc)
    return JSONResponse(
      status_code=500,
      content={
        "error": "Internal server error",
        "message": str(exc) if config.is_development else "Something went wrong",
      },
    )

  @app.get("/health")
  async def health(request: Request):
    return health_payload(_orchestrator(request).get_status())

  @app.get("/status")
  async def status(request: Request):
    return _orchestrator(request).get_status().model_dump()

  @app.post("/pair")
  async def pair(request: Request):
    bot = _orchestrator(request)
    try:
      await bot.initialize()
      await bot.request_pairing_code()
      record = bot.store.read_pairing_record()
      return {
        "success": True,
        "message": "Pairing code generated successfully!",
        "phone": config.phone_number,
        "code": record.code if record else "Check logs for code",
        "instructions": PAIR_INSTRUCTIONS,
      }
    except Exception as err:
      logger.error("POST /pair failed: %s", err)
      return JSONResponse(
        status_code=500,
        content={"success": False, "error": str(err), "message": "Failed to generate pairing code"},
      )

  @app.post("/start")
  async def start(request: Request):
    bot = _orchestrator(request)
    try:
      await bot.initialize()
      return {
        "success": True,
        "message": f"{config.bot_name} started successfully!",
        "status": bot.connected,
        "endpoints": {
          "health": "/health",
          "status": "/status",
          "pair": "/pair",
          "start": "/start",
        },
      }
    except Exception as err:
      logger.error("POST /start failed: %s", err)
      return JSONResponse(status_code=500, content={"success": False, "error": str(err)})

  @app.post("/send/{number}")
  async def send(number: str, request: Request):
    body = await _json_body(request)
    message = body.get("message")
    if not message:
      return JSONResponse(status_code=400, content={"error": "Message required"})
    to = user_jid(number)
    try:
      result = await _orchestrator(request).send_direct_message(to, str(message))
      return {"success": True, "message": "Message sent", "to": to, "id": result.id}
    except Exception as err:
      logger.error("POST /send failed: %s", err, extra={"to": to})
      return JSONResponse(status_code=500, content={"success": False, "error": str(err)})

  @app.get("/")
  async def root(request: Request):
    return {
      "service": config.bot_name,
      "description": "WhatsApp AI Assistant powered by DeepSeek",
      "version": "1.0.0",
      "endpoints": {
        "/health": "Service health check",
        "/status": "Bot connection status",
        "/pair": "Generate WhatsApp pairing code",
        "/start": "Start/restart bot",
        "/send/:number": "Send test message",
      },
      "status": "running" if _orchestrator(request).connected else "initializing",
      "documentation": "Visit /health for current status",
      "timestamp": iso_now(),
    }

  return app
