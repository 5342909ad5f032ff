from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from typing import Any

from dotenv import load_dotenv

LOGGER_NAME = "karlbot"
EXTRAS_LIMIT = 2000
CHAT_LABEL_WIDTH = 20
CHAT_LABEL_DEFAULT = "system"

# Attributes every LogRecord carries, plus the ones this formatter sets itself.
_RECORD_FIELDS = frozenset(logging.makeLogRecord({}).__dict__) | {
  "message",
  "asctime",
  "taskName",
  "chat_scope",
}

_chat_label: contextvars.ContextVar[str | None] = contextvars.ContextVar("karlbot_chat_label", default=None)


def env_flag(name: str, default: bool = False) -> bool:
  raw = os.getenv(name)
  if raw is None:
    return default
  return raw.strip().lower() in {"1", "true", "yes", "on"}


def set_chat_log_context(*, chat_id: str | None = None, chat_name: str | None = None) -> contextvars.Token:
  """Tag every record logged from the current task with the chat it serves."""
  label = " ".join(str(chat_name or chat_id or "").split()) or CHAT_LABEL_DEFAULT
  return _chat_label.set(label)


def reset_chat_log_context(token: contextvars.Token) -> None:
  _chat_label.reset(token)


def _chat_scope() -> str:
  label = _chat_label.get() or CHAT_LABEL_DEFAULT
  if len(label) > CHAT_LABEL_WIDTH:
    return f"{label[: CHAT_LABEL_WIDTH - 3]}..."
  return label.ljust(CHAT_LABEL_WIDTH)


class ExtraFormatter(logging.Formatter):
  """Prefixes the chat label and appends `extra=` fields as JSON."""

  def __init__(self, *args: Any, info_extras: bool = False, **kwargs: Any) -> None:
    super().__init__(*args, **kwargs)
    self.info_extras = info_extras

  def format(self, record: logging.LogRecord) -> str:
    record.chat_scope = _chat_scope()
    line = super().format(record)
    # INFO lines stay compact unless KARL_LOG_INFO_EXTRAS is set.
    if record.levelno == logging.INFO and not self.info_extras:
      return line
    extras = {k: v for k, v in record.__dict__.items() if k not in _RECORD_FIELDS}
    if not extras:
      return line
    return f"{line} | extras={trunc(json.dumps(extras, ensure_ascii=False, default=str), EXTRAS_LIMIT)}"


def setup_logging() -> logging.Logger:
  logger = logging.getLogger(LOGGER_NAME)
  if logger.handlers:
    return logger
  load_dotenv()
  level = os.getenv("KARL_LOG_LEVEL", "INFO").upper()
  logger.setLevel(getattr(logging, level, logging.INFO))
  handler = logging.StreamHandler(sys.stdout)
  handler.setFormatter(
    ExtraFormatter(
      fmt="%(asctime)s %(levelname)s [%(chat_scope)s] %(message)s",
      datefmt="%H:%M:%S",
      info_extras=env_flag("KARL_LOG_INFO_EXTRAS"),
    )
  )
  logger.addHandler(handler)
  logger.propagate = False
  return logger


def trunc(value: Any, limit: int = 400) -> str:
  """Stringify and truncate long values for logging."""
  text = str(value)
  if len(text) > limit:
    return text[:limit] + f"...[{len(text) - limit} more]"
  return text
