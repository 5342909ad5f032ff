from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from .config import BotConfig
from .lifecycle import Lifecycle
from .models import BotStatus


def iso_now(now: Optional[datetime] = None) -> str:
  moment = now or datetime.now(timezone.utc)
  return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def build_status(
  config: BotConfig,
  lifecycle: Lifecycle,
  uptime_s: float,
  *,
  now: Optional[datetime] = None,
) -> BotStatus:
  return BotStatus(
    name=config.bot_name,
    connected=lifecycle.connected,
    phone=config.phone_number,
    reconnectAttempts=lifecycle.reconnect_attempts,
    timestamp=iso_now(now),
    uptime=round(max(uptime_s, 0.0), 3),
    state=lifecycle.state.value,
    fatal=lifecycle.fatal,
  )


def health_payload(status: BotStatus) -> dict:
  return {
    "status": "ok",
    "service": status.name,
    "whatsapp": "connected" if status.connected else "disconnected",
    "uptime": f"{int(status.uptime // 60)} minutes",
    "timestamp": status.timestamp,
  }
