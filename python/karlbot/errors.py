from __future__ import annotations

from enum import Enum


class CompletionErrorKind(str, Enum):
  RATE_LIMITED = "rate_limited"
  MISCONFIGURED = "misconfigured"
  UNAVAILABLE = "unavailable"


class CompletionError(Exception):
  """Completion request failed; `kind` decides the apology sent to the chat."""

  def __init__(self, kind: CompletionErrorKind, message: str) -> None:
    super().__init__(message)
    self.kind = kind


class TransportErrorKind(str, Enum):
  NOT_CONNECTED = "not_connected"
  ALREADY_PAIRED = "already_paired"
  TIMEOUT = "timeout"
  CLOSED = "closed"
  REQUEST_FAILED = "request_failed"


class TransportError(Exception):
  def __init__(self, kind: TransportErrorKind, message: str) -> None:
    super().__init__(message)
    self.kind = kind
