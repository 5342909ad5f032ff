"""
Connection lifecycle reducer.

(lifecycle, event) -> (new_lifecycle, actions)

Rules:
- Pure: no IO, no timers, no clocks. The orchestrator executes actions.
- Events tagged with an older generation are stale and change nothing.
"""
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum, IntEnum
from typing import Optional, Union


class ConnectionState(str, Enum):
  DISCONNECTED = "disconnected"
  CONNECTING = "connecting"
  OPEN = "open"
  LOGGED_OUT = "logged_out"


class DisconnectReason(IntEnum):
  """Close status codes reported by the WhatsApp gateway (Baileys values)."""

  CONNECTION_CLOSED = 428
  CONNECTION_LOST = 408
  TIMED_OUT = 408
  CONNECTION_REPLACED = 440
  LOGGED_OUT = 401
  BAD_SESSION = 500
  RESTART_REQUIRED = 515
  MULTIDEVICE_MISMATCH = 411
  FORBIDDEN = 403
  UNAVAILABLE_SERVICE = 503


def reason_name(status_code: Optional[int]) -> str:
  try:
    return DisconnectReason(status_code).name.lower()
  except ValueError:
    return "unknown"


@dataclass(frozen=True)
class RetryPolicy:
  max_attempts: int = 5
  base_interval_s: float = 5.0

  def delay_for(self, attempt: int) -> float:
    return attempt * self.base_interval_s


@dataclass(frozen=True)
class Lifecycle:
  state: ConnectionState = ConnectionState.DISCONNECTED
  reconnect_attempts: int = 0
  fatal: bool = False
  generation: int = 0

  @property
  def connected(self) -> bool:
    return self.state is ConnectionState.OPEN


# Events

@dataclass(frozen=True)
class ConnectStarted:
  generation: int


@dataclass(frozen=True)
class ConnectionOpened:
  generation: int
  registered: bool = True


@dataclass(frozen=True)
class ConnectionClosed:
  generation: int
  status_code: Optional[int] = None


LifecycleEvent = Union[ConnectStarted, ConnectionOpened, ConnectionClosed]


# Actions

@dataclass(frozen=True)
class ScheduleReconnect:
  attempt: int
  delay_s: float
  generation: int


@dataclass(frozen=True)
class RequestPairing:
  reason: str


@dataclass(frozen=True)
class ReportFatal:
  message: str


Action = Union[ScheduleReconnect, RequestPairing, ReportFatal]


def reduce(
  lifecycle: Lifecycle,
  event: LifecycleEvent,
  policy: RetryPolicy,
) -> tuple[Lifecycle, tuple[Action, ...]]:
  if isinstance(event, ConnectStarted):
    if event.generation <= lifecycle.generation:
      return lifecycle, ()
    return (
      replace(lifecycle, state=ConnectionState.CONNECTING, fatal=False, generation=event.generation),
      (),
    )

  if event.generation != lifecycle.generation:
    return lifecycle, ()

  if isinstance(event, ConnectionOpened):
    opened = replace(lifecycle, state=ConnectionState.OPEN, reconnect_attempts=0, fatal=False)
    if event.registered:
      return opened, ()
    return opened, (RequestPairing("unregistered"),)

  if event.status_code == DisconnectReason.LOGGED_OUT:
    return replace(lifecycle, state=ConnectionState.LOGGED_OUT), (RequestPairing("logged_out"),)

  if lifecycle.reconnect_attempts < policy.max_attempts:
    attempt = lifecycle.reconnect_attempts + 1
    return (
      replace(lifecycle, state=ConnectionState.DISCONNECTED, reconnect_attempts=attempt),
      (ScheduleReconnect(attempt, policy.delay_for(attempt), lifecycle.generation),),
    )

  return (
    replace(lifecycle, state=ConnectionState.DISCONNECTED, fatal=True),
    (ReportFatal(f"max reconnects exceeded ({policy.max_attempts})"),),
  )
