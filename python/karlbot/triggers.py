from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable

from .config import (
  DEFAULT_MENTION_KEYWORDS,
  DEFAULT_TRIGGER_KEYWORDS,
  DEFAULT_TRIGGER_PREFIXES,
  BotConfig,
)

MIN_TEXT_LENGTH = 2


def extract_text(message: dict[str, Any] | None) -> str:
  """First non-empty text of a WhatsApp message content, or ''."""
  if not isinstance(message, dict):
    return ""
  extended = message.get("extendedTextMessage") or {}
  image = message.get("imageMessage") or {}
  video = message.get("videoMessage") or {}
  candidates = (
    message.get("conversation"),
    extended.get("text") if isinstance(extended, dict) else None,
    image.get("caption") if isinstance(image, dict) else None,
    video.get("caption") if isinstance(video, dict) else None,
  )
  for candidate in candidates:
    if isinstance(candidate, str) and candidate:
      return candidate
  return ""


def normalize(text: str) -> str:
  return text.lower().strip()


def _lowered(phrases: Iterable[str]) -> tuple[str, ...]:
  return tuple(p.lower() for p in phrases if p)


@dataclass(frozen=True)
class TriggerSet:
  keywords: tuple[str, ...] = DEFAULT_TRIGGER_KEYWORDS
  prefixes: tuple[str, ...] = DEFAULT_TRIGGER_PREFIXES
  mention_keywords: tuple[str, ...] = DEFAULT_MENTION_KEYWORDS

  @classmethod
  def from_config(cls, config: BotConfig) -> "TriggerSet":
    return cls(
      keywords=_lowered(config.trigger_keywords),
      prefixes=_lowered(config.trigger_prefixes),
      mention_keywords=_lowered(config.mention_keywords),
    )

  def matches(self, text: str) -> bool:
    lowered = normalize(text)
    if not lowered:
      return False
    if any(keyword in lowered for keyword in self.keywords):
      return True
    return any(lowered.startswith(prefix) for prefix in self.prefixes)

  def mentions_bot(self, text: str) -> bool:
    lowered = normalize(text)
    return any(keyword in lowered for keyword in self.mention_keywords)
