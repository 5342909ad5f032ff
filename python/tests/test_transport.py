from __future__ import annotations

import asyncio
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from fakes import make_config

from karlbot.auth_store import MultiFileAuthStore
from karlbot.errors import TransportError, TransportErrorKind
from karlbot.models import OutgoingMessage
from karlbot.transport import ConnectionUpdate, CredsUpdate, GatewayTransport, MessagesUpsert


class FakeWebSocket:
  def __init__(self) -> None:
    self.sent: list[dict] = []
    self.closed = False
    self._incoming: asyncio.Queue = asyncio.Queue()

  async def send(self, data: str) -> None:
    self.sent.append(json.loads(data))

  def feed(self, frame_type: str, payload: dict) -> None:
    self._incoming.put_nowait(json.dumps({"type": frame_type, "payload": payload}))

  def drop(self) -> None:
    self._incoming.put_nowait(None)

  def __aiter__(self):
    return self

  async def __anext__(self) -> str:
    item = await self._incoming.get()
    if item is None:
      raise StopAsyncIteration
    return item

  async def close(self) -> None:
    self.closed = True
    self._incoming.put_nowait(None)


async def _settle(rounds: int = 20) -> None:
  for _ in range(rounds):
    await asyncio.sleep(0)


class GatewayTransportTests(unittest.IsolatedAsyncioTestCase):
  async def asyncSetUp(self) -> None:
    self._tmp = tempfile.TemporaryDirectory()
    auth_dir = Path(self._tmp.name)
    self.config = make_config(auth_dir, query_timeout_ms=2000)
    self.store = MultiFileAuthStore(auth_dir)
    self.store.save_creds({"registered": True, "me": {"id": "263777965084:3@s.whatsapp.net"}})
    self.ws = FakeWebSocket()
    self.events: list[tuple[int, object]] = []
    self.connect_kwargs: dict = {}

    async def connector(url: str, **kwargs):
      self.connect_kwargs = {"url": url, **kwargs}
      return self.ws

    self.transport = GatewayTransport(
      self.config,
      self.store,
      lambda generation, event: self.events.append((generation, event)),
      7,
      connector=connector,
    )
    await self.transport.connect()

  async def asyncTearDown(self) -> None:
    await self.transport.end()
    self._tmp.cleanup()

  def _frames(self, frame_type: str) -> list[dict]:
    return [frame["payload"] for frame in self.ws.sent if frame["type"] == frame_type]

  async def test_connect_sends_stored_creds(self) -> None:
    self.assertEqual(self.connect_kwargs["url"], "ws://127.0.0.1:8081/ws")
    payload = self._frames("connect")[0]
    self.assertTrue(payload["creds"]["registered"])
    self.assertEqual(payload["browser"], ["KARL AI ASSISTANCE", "Chrome", "1.0.0"])
    self.assertEqual(payload["defaultQueryTimeoutMs"], 2000)

  async def test_connection_updates_are_tagged_with_generation(self) -> None:
    self.ws.feed("connection_update", {"connection": "open"})
    self.ws.feed("connection_update", {"connection": "close", "statusCode": 401})
    await _settle()
    self.assertEqual(
      self.events,
      [(7, ConnectionUpdate("open")), (7, ConnectionUpdate("close", 401))],
    )

  async def test_creds_update_is_forwarded(self) -> None:
    self.ws.feed("creds_update", {"creds": {"registered": True}})
    await _settle()
    self.assertEqual(self.events, [(7, CredsUpdate({"registered": True}))])

  async def test_signal_keys_round_trip_through_store(self) -> None:
    self.ws.feed("keys_set", {"data": {"pre-key": {"1": {"public": "AAA"}, "2": {"public": "BBB"}}}})
    self.ws.feed("keys_get", {"requestId": "k-1", "type": "pre-key", "ids": ["1", "3"]})
    await _settle()
    result = self._frames("keys_result")[0]
    self.assertEqual(result, {"requestId": "k-1", "values": {"1": {"public": "AAA"}}})

  async def test_messages_upsert_is_parsed(self) -> None:
    self.ws.feed(
      "messages_upsert",
      {
        "type": "notify",
        "messages": [
          {
            "key": {
              "remoteJid": "1203630@g.us",
              "participant": "263771111111@s.whatsapp.net",
              "fromMe": False,
              "id": "ABC",
            },
            "pushName": "Tendai",
            "message": {"extendedTextMessage": {"text": "@karl hello"}},
          },
          {"key": {}},
        ],
      },
    )
    await _settle()
    generation, event = self.events[0]
    self.assertEqual(generation, 7)
    assert isinstance(event, MessagesUpsert)
    self.assertEqual(event.kind, "notify")
    self.assertEqual(len(event.events), 1)
    inbound = event.events[0]
    self.assertTrue(inbound.is_group)
    self.assertEqual(inbound.raw_text, "@karl hello")
    self.assertEqual(inbound.sender_id, "263771111111@s.whatsapp.net")
    self.assertEqual(inbound.display_name, "Tendai")

  async def test_send_message_waits_for_ack(self) -> None:
    task = asyncio.create_task(
      self.transport.send_message("A@s.whatsapp.net", OutgoingMessage(text="hi", mentions=["B@s.whatsapp.net"]))
    )
    await _settle()
    payload = self._frames("send_message")[0]
    self.assertEqual(payload["chatId"], "A@s.whatsapp.net")
    self.assertEqual(payload["mentions"], ["B@s.whatsapp.net"])

    self.ws.feed("send_ack", {"requestId": payload["requestId"], "messageId": "3EB0"})
    result = await task
    self.assertEqual(result.id, "3EB0")

  async def test_pairing_already_paired_error(self) -> None:
    task = asyncio.create_task(self.transport.request_pairing_code("263777965084"))
    await _settle()
    payload = self._frames("request_pairing_code")[0]
    self.assertEqual(payload["phoneNumber"], "263777965084")

    self.ws.feed(
      "error",
      {"requestId": payload["requestId"], "code": "already_paired", "message": "already paired"},
    )
    with self.assertRaises(TransportError) as ctx:
      await task
    self.assertEqual(ctx.exception.kind, TransportErrorKind.ALREADY_PAIRED)

  async def test_pairing_code_is_returned(self) -> None:
    task = asyncio.create_task(self.transport.request_pairing_code("263777965084"))
    await _settle()
    req_id = self._frames("request_pairing_code")[0]["requestId"]
    self.ws.feed("pairing_code", {"requestId": req_id, "code": "WXYZ9876"})
    self.assertEqual(await task, "WXYZ9876")

  async def test_socket_drop_reports_connection_lost(self) -> None:
    self.ws.drop()
    await _settle()
    self.assertEqual(self.events, [(7, ConnectionUpdate("close", 408))])

  async def test_end_is_silent_and_final(self) -> None:
    await self.transport.end()
    await _settle()
    self.assertEqual(self.events, [])
    self.assertTrue(self.ws.closed)
    self.assertEqual(self._frames("end"), [{}])
    with self.assertRaises(TransportError) as ctx:
      await self.transport.send_message("A@s.whatsapp.net", OutgoingMessage(text="late"))
    self.assertEqual(ctx.exception.kind, TransportErrorKind.CLOSED)

  async def test_end_logs_undelivered_end_frame(self) -> None:
    closed = TransportError(TransportErrorKind.CLOSED, "gateway connection closed")
    with patch.object(self.transport, "_send_frame", side_effect=closed):
      with self.assertLogs("karlbot", level="DEBUG") as logs:
        await self.transport.end()

    self.assertTrue(any("end frame not delivered" in line for line in logs.output))
    self.assertTrue(self.ws.closed)

  async def test_malformed_frames_are_skipped(self) -> None:
    self.ws._incoming.put_nowait("not json")
    self.ws._incoming.put_nowait(json.dumps({"payload": {}}))
    self.ws.feed("connection_update", {"connection": "open"})
    await _settle()
    self.assertEqual(self.events, [(7, ConnectionUpdate("open"))])

  async def test_bad_message_in_batch_is_dropped_alone(self) -> None:
    self.ws.feed(
      "messages_upsert",
      {
        "type": "notify",
        "messages": [
          {"key": {"remoteJid": "A@s.whatsapp.net", "id": "BAD"}, "pushName": 42, "message": {"conversation": "karl"}},
          {"key": {"remoteJid": "B@s.whatsapp.net", "id": "OK"}, "message": {"conversation": "karl hi"}},
        ],
      },
    )
    self.ws.feed("creds_update", {"creds": {"registered": True}})
    await _settle()

    generation, upsert = self.events[0]
    assert isinstance(upsert, MessagesUpsert)
    self.assertEqual([event.message_id for event in upsert.events], ["OK"])
    self.assertEqual(self.events[1], (7, CredsUpdate({"registered": True})))
    self.assertFalse(self.transport._reader.done())

  async def test_frame_handler_error_keeps_session_alive(self) -> None:
    self.ws.feed("keys_set", {"data": "not-a-mapping"})
    self.ws.feed("creds_update", {"creds": {"registered": True}})
    await _settle()

    self.assertEqual(self.events, [(7, CredsUpdate({"registered": True}))])
    self.assertFalse(self.transport._reader.done())

  async def test_failed_connect_frame_closes_socket(self) -> None:
    ws = FakeWebSocket()

    async def connector(url: str, **kwargs):
      return ws

    transport = GatewayTransport(self.config, self.store, lambda generation, event: None, 8, connector=connector)
    with patch.object(self.store, "load_creds", side_effect=OSError("disk unavailable")):
      with self.assertRaises(OSError):
        await transport.connect()

    self.assertTrue(ws.closed)
    self.assertEqual(ws.sent, [])
    await transport.end()


if __name__ == "__main__":
  unittest.main()
