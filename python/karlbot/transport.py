from __future__ import annotations

import asyncio
import itertools
import json
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Union

import websockets
from pydantic import BaseModel, Field, ValidationError

from .auth_store import MultiFileAuthStore
from .config import BotConfig
from .errors import TransportError, TransportErrorKind
from .lifecycle import DisconnectReason
from .log import setup_logging, trunc
from .models import InboundEvent, OutgoingMessage, SendResult

logger = setup_logging()

_request_counter = itertools.count(1)


@dataclass(frozen=True)
class ConnectionUpdate:
  connection: str  # "connecting" | "open" | "close"
  status_code: Optional[int] = None
  qr: Optional[str] = None


@dataclass(frozen=True)
class CredsUpdate:
  creds: Dict[str, Any]


@dataclass(frozen=True)
class MessagesUpsert:
  kind: str
  events: list[InboundEvent] = field(default_factory=list)


TransportEvent = Union[ConnectionUpdate, CredsUpdate, MessagesUpsert]
EventSink = Callable[[int, TransportEvent], None]


class SessionTransport(ABC):
  """One authenticated WhatsApp session. A transport is never reused after end()."""

  generation: int

  @abstractmethod
  async def connect(self) -> None: ...

  @abstractmethod
  async def send_message(self, jid: str, message: OutgoingMessage) -> SendResult: ...

  @abstractmethod
  async def request_pairing_code(self, phone_number: str) -> str: ...

  @abstractmethod
  async def end(self) -> None: ...


class GatewayFrame(BaseModel):
  type: str
  payload: Dict[str, Any] = Field(default_factory=dict)


def request_id(prefix: str) -> str:
  return f"{prefix}-{int(time.time() * 1000)}-{next(_request_counter)}"


def _error_kind(code: Any) -> TransportErrorKind:
  normalized = str(code or "").strip().lower()
  if normalized in {"already_paired", "authenticated"}:
    return TransportErrorKind.ALREADY_PAIRED
  if normalized == "not_connected":
    return TransportErrorKind.NOT_CONNECTED
  return TransportErrorKind.REQUEST_FAILED


class GatewayTransport(SessionTransport):
  """
  Websocket client for the Baileys gateway sidecar.

  The gateway owns the WhatsApp protocol; this side supplies the stored
  credentials, answers signal-key reads/writes from the auth store and turns
  gateway frames into transport events for the orchestrator.
  """

  def __init__(
    self,
    config: BotConfig,
    store: MultiFileAuthStore,
    sink: EventSink,
    generation: int,
    *,
    connector: Callable[..., Any] = websockets.connect,
  ) -> None:
    self.config = config
    self.store = store
    self.generation = generation
    self._sink = sink
    self._connector = connector
    self._ws = None
    self._reader: asyncio.Task | None = None
    self._pending: dict[str, asyncio.Future] = {}
    self._ended = False
    self._close_reported = False

  async def connect(self) -> None:
    try:
      self._ws = await self._connector(
        self.config.gateway_url,
        max_size=20 * 1024 * 1024,
        ping_interval=20,
        ping_timeout=20,
        open_timeout=self.config.connect_timeout_ms / 1000,
      )
    except (OSError, asyncio.TimeoutError, websockets.InvalidHandshake) as err:
      raise TransportError(
        TransportErrorKind.REQUEST_FAILED,
        f"gateway unreachable at {self.config.gateway_url}: {err}",
      ) from err

    try:
      await self._send_frame(
        "connect",
        {
          "creds": self.store.load_creds(),
          "browser": self.config.browser,
          "printQRInTerminal": False,
          "markOnlineOnConnect": True,
          "syncFullHistory": False,
          "generateHighQualityLinkPreview": False,
          "keepAliveIntervalMs": self.config.keep_alive_interval_ms,
          "connectTimeoutMs": self.config.connect_timeout_ms,
          "defaultQueryTimeoutMs": self.config.query_timeout_ms,
        },
      )
    except BaseException:
      ws, self._ws = self._ws, None
      self._ended = True
      await ws.close()
      raise
    self._reader = asyncio.create_task(self._read_loop())
    logger.info("Gateway session opened (generation=%s)", self.generation)

  async def _send_frame(self, frame_type: str, payload: dict) -> None:
    if self._ws is None or self._ended:
      raise TransportError(TransportErrorKind.CLOSED, "transport is closed")
    try:
      await self._ws.send(json.dumps({"type": frame_type, "payload": payload}))
    except websockets.ConnectionClosed as err:
      raise TransportError(TransportErrorKind.CLOSED, f"gateway connection closed: {err}") from err

  async def _request(self, prefix: str, frame_type: str, payload: dict) -> dict:
    req_id = request_id(prefix)
    future: asyncio.Future = asyncio.get_running_loop().create_future()
    self._pending[req_id] = future
    try:
      await self._send_frame(frame_type, {"requestId": req_id, **payload})
      return await asyncio.wait_for(future, timeout=self.config.query_timeout_ms / 1000)
    except asyncio.TimeoutError as err:
      raise TransportError(TransportErrorKind.TIMEOUT, f"{frame_type} timed out") from err
    finally:
      self._pending.pop(req_id, None)

  async def send_message(self, jid: str, message: OutgoingMessage) -> SendResult:
    reply = await self._request(
      "send",
      "send_message",
      {"chatId": jid, "text": message.text, "mentions": message.mentions},
    )
    return SendResult(id=reply.get("messageId"))

  async def request_pairing_code(self, phone_number: str) -> str:
    reply = await self._request("pair", "request_pairing_code", {"phoneNumber": phone_number})
    code = reply.get("code")
    if not code:
      raise TransportError(TransportErrorKind.REQUEST_FAILED, "gateway returned no pairing code")
    return str(code)

  async def end(self) -> None:
    if self._ended:
      return
    if self._ws is not None:
      try:
        await self._send_frame("end", {})
      except TransportError as err:
        logger.debug("Gateway end frame not delivered: %s", err, extra={"generation": self.generation})
    self._ended = True
    if self._ws is not None:
      await self._ws.close()
    if self._reader is not None:
      self._reader.cancel()
    self._fail_pending("transport ended")
    logger.info("Gateway session ended (generation=%s)", self.generation)

  def _fail_pending(self, reason: str) -> None:
    for future in self._pending.values():
      if not future.done():
        future.set_exception(TransportError(TransportErrorKind.CLOSED, reason))
    self._pending.clear()

  def _resolve(self, payload: dict, *, error: TransportError | None = None) -> None:
    future = self._pending.get(str(payload.get("requestId")))
    if future is None or future.done():
      return
    if error is not None:
      future.set_exception(error)
    else:
      future.set_result(payload)

  def _emit_close(self, status_code: Optional[int]) -> None:
    if self._close_reported:
      return
    self._close_reported = True
    self._sink(self.generation, ConnectionUpdate("close", status_code))

  async def _read_loop(self) -> None:
    try:
      async for raw in self._ws:
        try:
          frame = GatewayFrame.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError):
          logger.warning("Dropping malformed gateway frame", extra={"raw": trunc(raw, 200)})
          continue
        try:
          await self._handle_frame(frame)
        except websockets.ConnectionClosed:
          raise
        except Exception as err:
          logger.exception("Gateway frame handler error (%s): %s", frame.type, err)
    except websockets.ConnectionClosed:
      pass
    finally:
      self._fail_pending("gateway connection closed")
      if not self._ended:
        self._emit_close(int(DisconnectReason.CONNECTION_LOST))

  async def _handle_frame(self, frame: GatewayFrame) -> None:
    payload = frame.payload
    if frame.type == "connection_update":
      update = ConnectionUpdate(
        connection=str(payload.get("connection") or ""),
        status_code=payload.get("statusCode"),
        qr=payload.get("qr"),
      )
      if update.connection == "close":
        self._emit_close(update.status_code)
      elif update.connection:
        self._close_reported = False
        self._sink(self.generation, update)
      elif update.qr:
        self._sink(self.generation, update)
      return

    if frame.type == "creds_update":
      self._sink(self.generation, CredsUpdate(payload.get("creds") or {}))
      return

    if frame.type == "keys_get":
      values = self.store.get_keys(str(payload.get("type")), payload.get("ids") or [])
      await self._send_frame("keys_result", {"requestId": payload.get("requestId"), "values": values})
      return

    if frame.type == "keys_set":
      self.store.set_keys(payload.get("data") or {})
      return

    if frame.type == "messages_upsert":
      events = []
      for raw_msg in payload.get("messages") or []:
        if not isinstance(raw_msg, dict):
          continue
        try:
          event = InboundEvent.from_wa_message(raw_msg)
        except (ValidationError, AttributeError, TypeError) as err:
          logger.warning("Dropping malformed message: %s", err, extra={"raw": trunc(raw_msg, 200)})
          continue
        if event is not None:
          events.append(event)
      self._sink(self.generation, MessagesUpsert(str(payload.get("type") or ""), events))
      return

    if frame.type in {"send_ack", "pairing_code"}:
      self._resolve(payload)
      return

    if frame.type == "error":
      message = str(payload.get("message") or "gateway error")
      self._resolve(payload, error=TransportError(_error_kind(payload.get("code")), message))
      if not payload.get("requestId"):
        logger.warning("Gateway error: %s", message, extra={"code": payload.get("code")})
      return

    logger.debug("Ignoring gateway frame %s", frame.type)
