from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from dotenv import load_dotenv

DEFAULT_BOT_NAME = "KARL AI ASSISTANCE"
DEFAULT_PHONE_NUMBER = "+263777965084"
DEFAULT_TRIGGER_KEYWORDS = ("karl", "@karl", "assistant", "ai ")
DEFAULT_TRIGGER_PREFIXES = ("karl ", "karl,")
DEFAULT_MENTION_KEYWORDS = ("@karl", "karl")


class ConfigError(RuntimeError):
  """Raised when a required setting is missing."""


def _clean_env(raw: str | None) -> str | None:
  if raw is None:
    return None
  cleaned = raw.strip()
  return cleaned or None


def _parse_positive_int(raw: str | None, default: int) -> int:
  if raw is None:
    return default
  try:
    parsed = int(raw)
  except (TypeError, ValueError):
    return default
  return parsed if parsed > 0 else default


def _parse_positive_float(raw: str | None, default: float) -> float:
  if raw is None:
    return default
  try:
    parsed = float(raw)
  except (TypeError, ValueError):
    return default
  return parsed if parsed > 0 else default


def _parse_float(raw: str | None, default: float) -> float:
  if raw is None:
    return default
  try:
    return float(raw)
  except (TypeError, ValueError):
    return default


def _parse_phrases(raw: str | None, default: tuple[str, ...]) -> tuple[str, ...]:
  # "|"-separated so phrases may carry meaningful spaces ("ai ").
  if raw is None or not raw.strip():
    return default
  phrases = tuple(item.lower() for item in raw.split("|") if item.strip())
  return phrases or default


@dataclass(frozen=True)
class BotConfig:
  api_key: str
  phone_number: str = DEFAULT_PHONE_NUMBER
  port: int = 3000
  bot_name: str = DEFAULT_BOT_NAME
  environment: str = "production"

  llm_model: str = "deepseek-chat"
  llm_endpoint: str | None = "https://api.deepseek.com/v1"
  llm_max_tokens: int = 150
  llm_temperature: float = 0.7
  llm_timeout: float = 60.0

  trigger_keywords: tuple[str, ...] = DEFAULT_TRIGGER_KEYWORDS
  trigger_prefixes: tuple[str, ...] = DEFAULT_TRIGGER_PREFIXES
  mention_keywords: tuple[str, ...] = DEFAULT_MENTION_KEYWORDS

  max_reconnect_attempts: int = 5
  reconnect_base_seconds: float = 5.0
  auto_pair_delay_seconds: float = 10.0

  auth_dir: Path = field(default_factory=lambda: Path("auth_info_baileys"))
  gateway_url: str = "ws://127.0.0.1:8081/ws"
  connect_timeout_ms: int = 60000
  query_timeout_ms: int = 60000
  keep_alive_interval_ms: int = 30000

  @property
  def is_development(self) -> bool:
    return self.environment == "development"

  @property
  def browser(self) -> list[str]:
    return [self.bot_name, "Chrome", "1.0.0"]


def load_config() -> BotConfig:
  load_dotenv()
  api_key = _clean_env(os.getenv("OPENAI_API_KEY"))
  if not api_key:
    raise ConfigError("OPENAI_API_KEY not set in environment variables")

  return BotConfig(
    api_key=api_key,
    phone_number=_clean_env(os.getenv("PHONE_NUMBER")) or DEFAULT_PHONE_NUMBER,
    port=_parse_positive_int(os.getenv("PORT"), 3000),
    bot_name=_clean_env(os.getenv("BOT_NAME")) or DEFAULT_BOT_NAME,
    environment=(_clean_env(os.getenv("APP_ENV")) or "production").lower(),
    llm_model=_clean_env(os.getenv("LLM_MODEL")) or "deepseek-chat",
    llm_endpoint=_clean_env(os.getenv("LLM_ENDPOINT")) or "https://api.deepseek.com/v1",
    llm_max_tokens=_parse_positive_int(os.getenv("LLM_MAX_TOKENS"), 150),
    llm_temperature=_parse_float(os.getenv("LLM_TEMPERATURE"), 0.7),
    llm_timeout=_parse_positive_float(os.getenv("LLM_TIMEOUT"), 60.0),
    trigger_keywords=_parse_phrases(os.getenv("TRIGGER_KEYWORDS"), DEFAULT_TRIGGER_KEYWORDS),
    trigger_prefixes=_parse_phrases(os.getenv("TRIGGER_PREFIXES"), DEFAULT_TRIGGER_PREFIXES),
    mention_keywords=_parse_phrases(os.getenv("MENTION_KEYWORDS"), DEFAULT_MENTION_KEYWORDS),
    max_reconnect_attempts=_parse_positive_int(os.getenv("MAX_RECONNECT_ATTEMPTS"), 5),
    reconnect_base_seconds=_parse_positive_float(os.getenv("RECONNECT_BASE_SECONDS"), 5.0),
    auto_pair_delay_seconds=_parse_positive_float(os.getenv("AUTO_PAIR_DELAY_SECONDS"), 10.0),
    auth_dir=Path(_clean_env(os.getenv("AUTH_DIR")) or "auth_info_baileys"),
    gateway_url=_clean_env(os.getenv("GATEWAY_WS_URL")) or "ws://127.0.0.1:8081/ws",
    connect_timeout_ms=_parse_positive_int(os.getenv("CONNECT_TIMEOUT_MS"), 60000),
    query_timeout_ms=_parse_positive_int(os.getenv("QUERY_TIMEOUT_MS"), 60000),
    keep_alive_interval_ms=_parse_positive_int(os.getenv("KEEP_ALIVE_INTERVAL_MS"), 30000),
  )
