from __future__ import annotations

from typing import Any, Optional

from pydantic import BaseModel, Field

from .triggers import extract_text

GROUP_SUFFIX = "@g.us"
USER_SUFFIX = "@s.whatsapp.net"
DEFAULT_DISPLAY_NAME = "User"


def digits_only(value: str) -> str:
  return "".join(ch for ch in value if ch.isdigit())


def user_jid(number: str) -> str:
  return f"{digits_only(number)}{USER_SUFFIX}"


class InboundEvent(BaseModel):
  sender_id: str
  conversation_id: str
  is_group: bool = False
  display_name: str = DEFAULT_DISPLAY_NAME
  raw_text: str = ""
  mentioned_participant_id: Optional[str] = None
  message_id: Optional[str] = None
  from_me: bool = False
  has_content: bool = True

  @classmethod
  def from_wa_message(cls, raw: dict[str, Any]) -> "InboundEvent | None":
    """Build an event from a Baileys WAMessage dict; None without a chat id."""
    key = raw.get("key") or {}
    conversation_id = key.get("remoteJid")
    if not conversation_id:
      return None
    participant = key.get("participant") or None
    content = raw.get("message")
    return cls(
      sender_id=participant or conversation_id,
      conversation_id=conversation_id,
      is_group=conversation_id.endswith(GROUP_SUFFIX),
      display_name=raw.get("pushName") or DEFAULT_DISPLAY_NAME,
      raw_text=extract_text(content),
      mentioned_participant_id=participant,
      message_id=key.get("id"),
      from_me=bool(key.get("fromMe")),
      has_content=bool(content),
    )


class OutgoingMessage(BaseModel):
  text: str
  mentions: list[str] = Field(default_factory=list)


class SendResult(BaseModel):
  id: Optional[str] = None


class PairingRecord(BaseModel):
  timestamp: str
  phone: str
  code: str
  status: str = "generated"


class BotStatus(BaseModel):
  name: str
  connected: bool
  phone: str
  reconnectAttempts: int
  timestamp: str
  uptime: float
  state: str
  fatal: bool = False
