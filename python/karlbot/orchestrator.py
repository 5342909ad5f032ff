from __future__ import annotations

import asyncio
import time
from dataclasses import replace
from typing import Awaitable, Callable, Optional, Set

from .auth_store import MultiFileAuthStore
from .completion import CompletionClient, apology_for
from .config import BotConfig
from .errors import CompletionError, TransportError, TransportErrorKind
from .lifecycle import (
  Action,
  ConnectionClosed,
  ConnectionOpened,
  ConnectionState,
  ConnectStarted,
  DisconnectReason,
  Lifecycle,
  LifecycleEvent,
  ReportFatal,
  RequestPairing,
  RetryPolicy,
  ScheduleReconnect,
  reason_name,
  reduce,
)
from .log import reset_chat_log_context, set_chat_log_context, setup_logging, trunc
from .models import BotStatus, InboundEvent, OutgoingMessage, PairingRecord, SendResult, digits_only
from .status import build_status, iso_now
from .transport import (
  ConnectionUpdate,
  CredsUpdate,
  EventSink,
  MessagesUpsert,
  SessionTransport,
  TransportEvent,
)
from .triggers import MIN_TEXT_LENGTH, TriggerSet

logger = setup_logging()

TransportFactory = Callable[[EventSink, int], SessionTransport]
Sleep = Callable[[float], Awaitable[None]]


def pairing_instructions(phone: str, code: str) -> list[str]:
  return [
    f"1. Open WhatsApp on {phone}",
    "2. Go to Settings > Linked Devices",
    '3. Tap "Link a Device"',
    '4. Choose "Link with phone number"',
    f"5. Enter code: {code}",
    "6. Bot will connect automatically!",
  ]


def build_context(event: InboundEvent) -> str:
  if event.is_group:
    return f"Group chat with {event.display_name}. Keep it appropriate for groups."
  return f"Direct message from {event.display_name}."


class ReplyOrchestrator:
  """
  Owns the WhatsApp session lifecycle and the trigger -> completion -> reply
  path.

  Transport events arrive through `dispatch()` and are applied in order by a
  single dispatcher task. Each `initialize()` bumps the connection
  generation; events and scheduled reconnects from older generations are
  dropped by the lifecycle reducer.
  """

  def __init__(
    self,
    config: BotConfig,
    completion: CompletionClient,
    store: MultiFileAuthStore,
    transport_factory: TransportFactory,
    *,
    triggers: Optional[TriggerSet] = None,
    sleep: Sleep = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
  ) -> None:
    self.config = config
    self.completion = completion
    self.store = store
    self.triggers = triggers or TriggerSet.from_config(config)
    self._transport_factory = transport_factory
    self._policy = RetryPolicy(config.max_reconnect_attempts, config.reconnect_base_seconds)
    self._lifecycle = Lifecycle()
    self._transport: Optional[SessionTransport] = None
    self._generation = 0
    self._init_lock = asyncio.Lock()
    self._events: asyncio.Queue[tuple[int, TransportEvent]] = asyncio.Queue()
    self._dispatcher: Optional[asyncio.Task] = None
    self._tasks: Set[asyncio.Task] = set()
    self._sleep = sleep
    self._clock = clock
    self._started_at = clock()

  @property
  def lifecycle(self) -> Lifecycle:
    return self._lifecycle

  @property
  def connected(self) -> bool:
    return self._lifecycle.connected and self._transport is not None

  @property
  def transport(self) -> Optional[SessionTransport]:
    return self._transport

  def _track(self, coro: Awaitable[None]) -> asyncio.Task:
    task = asyncio.ensure_future(coro)
    self._tasks.add(task)
    task.add_done_callback(self._tasks.discard)
    return task

  # Event channel

  def dispatch(self, generation: int, event: TransportEvent) -> None:
    self._events.put_nowait((generation, event))

  async def start(self) -> None:
    if self._dispatcher is None or self._dispatcher.done():
      self._dispatcher = asyncio.create_task(self._run_events())

  async def _run_events(self) -> None:
    while True:
      generation, event = await self._events.get()
      try:
        await self.process_event(generation, event)
      except Exception as err:
        logger.exception("Transport event handler error: %s", err)
      finally:
        self._events.task_done()

  async def process_event(self, generation: int, event: TransportEvent) -> None:
    if isinstance(event, CredsUpdate):
      self.store.save_creds(event.creds)
      return

    if isinstance(event, MessagesUpsert):
      if event.kind == "notify" and event.events:
        self._track(self.handle_inbound(event.events[0]))
      return

    if isinstance(event, ConnectionUpdate):
      if event.qr:
        logger.info("QR code generated by gateway; phone-number pairing is used instead")
      if event.connection == "open":
        await self._apply(ConnectionOpened(generation, registered=self.store.registered))
      elif event.connection == "close":
        logger.info(
          "Connection closed: %s (Code: %s)",
          reason_name(event.status_code),
          event.status_code,
          extra={"generation": generation},
        )
        await self._apply(ConnectionClosed(generation, event.status_code))

  async def _apply(self, event: LifecycleEvent) -> None:
    before = self._lifecycle
    self._lifecycle, actions = reduce(before, event, self._policy)
    if self._lifecycle is before and not actions:
      logger.debug("Ignoring stale lifecycle event", extra={"event": repr(event)})
      return
    if self._lifecycle.state is not before.state:
      logger.debug(
        "Connection state %s -> %s",
        before.state.value,
        self._lifecycle.state.value,
        extra={"generation": self._lifecycle.generation},
      )
    if self._lifecycle.connected and not before.connected:
      logger.info(
        "%s connected successfully! Phone: %s | Status: Online",
        self.config.bot_name,
        self.config.phone_number,
      )
    for action in actions:
      self._execute(action)

  def _execute(self, action: Action) -> None:
    if isinstance(action, ScheduleReconnect):
      logger.info(
        "Reconnecting in %ss... Attempt %s/%s",
        action.delay_s,
        action.attempt,
        self._policy.max_attempts,
      )
      self._track(self._reconnect_after(action))
    elif isinstance(action, RequestPairing):
      if action.reason == "logged_out":
        logger.warning("Logged out. Need to re-pair.")
      else:
        logger.info("Not paired yet. Generating pairing code...")
      self._track(self.request_pairing_code())
    elif isinstance(action, ReportFatal):
      logger.error("Max reconnect attempts reached. Please restart service.", extra={"detail": action.message})

  async def _reconnect_after(self, action: ScheduleReconnect) -> None:
    await self._sleep(action.delay_s)
    await self.initialize(from_retry=True, expected_generation=action.generation)

  # Connection

  async def initialize(
    self,
    *,
    from_retry: bool = False,
    expected_generation: Optional[int] = None,
  ) -> Optional[SessionTransport]:
    """
    Replace the current transport with a fresh connection.

    Manual calls raise TransportError when the gateway is unreachable. Retry
    calls feed the failure back into the backoff instead, and are skipped
    when `expected_generation` is no longer the current one.
    """
    async with self._init_lock:
      if expected_generation is not None and expected_generation != self._generation:
        logger.info("Discarding stale reconnect", extra={"generation": expected_generation})
        return None
      logger.info("Initializing WhatsApp connection...")
      previous, self._transport = self._transport, None
      if previous is not None:
        try:
          await previous.end()
        except Exception as err:
          logger.warning("Previous transport did not close cleanly: %s", err)

      self._generation += 1
      generation = self._generation
      await self._apply(ConnectStarted(generation))
      transport = self._transport_factory(self.dispatch, generation)
      self._transport = transport
      try:
        await transport.connect()
      except TransportError as err:
        self._transport = None
        logger.error("Bot initialization failed: %s", err)
        if from_retry:
          await self._apply(ConnectionClosed(generation, int(DisconnectReason.CONNECTION_CLOSED)))
          return None
        self._lifecycle = replace(self._lifecycle, state=ConnectionState.DISCONNECTED)
        raise
      logger.info("WhatsApp transport initialized", extra={"generation": generation})
      return transport

  # Messages

  def build_reply(self, event: InboundEvent, reply_text: str) -> OutgoingMessage:
    message = OutgoingMessage(text=f"{self.config.bot_name}: {reply_text}")
    if event.is_group and event.mentioned_participant_id and self.triggers.mentions_bot(event.raw_text):
      message.mentions = [event.mentioned_participant_id]
    return message

  async def _completion_reply(self, text: str, context: str) -> str:
    try:
      return await self.completion.complete(text, context)
    except CompletionError as err:
      logger.error("AI API error (%s): %s", err.kind.value, trunc(err, 200))
      return apology_for(err.kind)

  async def handle_inbound(self, event: InboundEvent) -> None:
    if not event.has_content or event.from_me:
      return
    text = event.raw_text
    if not text or len(text) < MIN_TEXT_LENGTH:
      return
    if not self.triggers.matches(text):
      return

    token = set_chat_log_context(chat_id=event.conversation_id, chat_name=event.display_name)
    try:
      logger.info(
        "[%s] %s (%s): %s",
        "GROUP" if event.is_group else "DM",
        event.display_name,
        event.conversation_id,
        trunc(text, 50),
      )
      reply_text = await self._completion_reply(text, build_context(event))
      outgoing = self.build_reply(event, reply_text)
      transport = self._transport
      if transport is None or not self._lifecycle.connected:
        logger.warning("Dropping reply; WhatsApp is not connected")
        return
      await transport.send_message(event.conversation_id, outgoing)
      logger.info("Replied to %s: %s", event.display_name, trunc(reply_text, 50))
    except Exception as err:
      logger.exception("Message handling error: %s", err)
    finally:
      reset_chat_log_context(token)

  async def send_direct_message(self, to: str, message: str) -> SendResult:
    transport = self._transport
    if transport is None or not self._lifecycle.connected:
      raise TransportError(TransportErrorKind.NOT_CONNECTED, "Bot not connected")
    return await transport.send_message(to, OutgoingMessage(text=message))

  # Pairing

  async def request_pairing_code(self) -> Optional[PairingRecord]:
    transport = self._transport
    if transport is None:
      logger.warning("Socket not ready for pairing")
      return None

    phone = digits_only(self.config.phone_number)
    try:
      code = await transport.request_pairing_code(phone)
    except TransportError as err:
      if err.kind is TransportErrorKind.ALREADY_PAIRED:
        logger.info("Already paired! No action needed.")
      else:
        logger.error(
          "Pairing code error: %s. Try manual pairing (POST /pair) or restart service.",
          err,
          extra={"kind": err.kind.value},
        )
      return None

    record = PairingRecord(
      timestamp=iso_now(),
      phone=self.config.phone_number,
      code=code,
      status="generated",
    )
    self.store.write_pairing_record(record)
    logger.info(
      "PAIRING CODE GENERATED: %s (phone %s, valid for 5 minutes)\n%s",
      code,
      self.config.phone_number,
      "\n".join(f"   {line}" for line in pairing_instructions(self.config.phone_number, code)),
    )
    return record

  async def auto_pair_after(self, delay_s: float) -> None:
    await self._sleep(delay_s)
    if not self.connected:
      logger.info("Auto-generating pairing code...")
      await self.request_pairing_code()

  def schedule_auto_pair(self) -> asyncio.Task:
    return self._track(self.auto_pair_after(self.config.auto_pair_delay_seconds))

  # Status / shutdown

  def get_status(self) -> BotStatus:
    return build_status(self.config, self._lifecycle, self._clock() - self._started_at)

  async def shutdown(self) -> None:
    logger.info("Shutting down gracefully...")
    if self._dispatcher is not None:
      self._dispatcher.cancel()
    for task in list(self._tasks):
      task.cancel()
    pending = [t for t in [self._dispatcher, *self._tasks] if t is not None]
    if pending:
      await asyncio.gather(*pending, return_exceptions=True)
    transport, self._transport = self._transport, None
    if transport is not None:
      await transport.end()
    await self.completion.aclose()
