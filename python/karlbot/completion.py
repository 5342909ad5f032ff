from __future__ import annotations

import time
from pathlib import Path
from typing import Any

import httpx
import openai
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from .config import BotConfig
from .errors import CompletionError, CompletionErrorKind
from .log import setup_logging, trunc

logger = setup_logging()
SYSTEM_PROMPT_PATH = Path(__file__).resolve().parent / "systemprompt.txt"
_SYSTEM_PROMPT_CACHE: str | None = None

EMPTY_REPLY = "Sorry, I could not process that request."
APOLOGIES = {
  CompletionErrorKind.RATE_LIMITED: "⏳ I'm busy right now. Please try again in a moment!",
  CompletionErrorKind.MISCONFIGURED: "🔑 My AI brain needs a checkup. Try again soon!",
  CompletionErrorKind.UNAVAILABLE: "🤖 AI service is having issues. I'll be back!",
}

_MISCONFIGURED_ERRORS = (
  openai.AuthenticationError,
  openai.PermissionDeniedError,
  openai.NotFoundError,
  openai.BadRequestError,
  openai.UnprocessableEntityError,
)
_MISCONFIGURED_STATUS = {400, 401, 403, 404, 422}


def apology_for(kind: CompletionErrorKind) -> str:
  return APOLOGIES[kind]


def _load_system_prompt() -> str:
  global _SYSTEM_PROMPT_CACHE
  if _SYSTEM_PROMPT_CACHE is None:
    _SYSTEM_PROMPT_CACHE = SYSTEM_PROMPT_PATH.read_text(encoding="utf-8").strip()
  return _SYSTEM_PROMPT_CACHE


def render_system_prompt(bot_name: str, context: str) -> str:
  return (
    _load_system_prompt()
    .replace("{{bot_name}}", bot_name)
    .replace("{{context}}", context.strip())
  )


def classify_error(err: BaseException) -> CompletionErrorKind:
  current: BaseException | None = err
  depth = 0
  while current is not None and depth < 8:
    if isinstance(current, openai.RateLimitError):
      return CompletionErrorKind.RATE_LIMITED
    if isinstance(current, _MISCONFIGURED_ERRORS):
      return CompletionErrorKind.MISCONFIGURED
    status = getattr(current, "status_code", None)
    if status == 429:
      return CompletionErrorKind.RATE_LIMITED
    if status in _MISCONFIGURED_STATUS:
      return CompletionErrorKind.MISCONFIGURED
    current = current.__cause__ or current.__context__
    depth += 1
  return CompletionErrorKind.UNAVAILABLE


def _content_to_text(content: Any) -> str:
  if isinstance(content, str):
    return content.strip()
  if isinstance(content, list):
    parts = [part for part in content if isinstance(part, str)]
    parts.extend(
      part.get("text", "") for part in content if isinstance(part, dict) and part.get("type") == "text"
    )
    return "\n".join(p for p in parts if p).strip()
  return ""


class CompletionClient:
  """Single-turn chat completion against an OpenAI-compatible endpoint."""

  def __init__(self, config: BotConfig, *, llm: Any = None) -> None:
    self.config = config
    self._http_client: httpx.AsyncClient | None = None
    if llm is None:
      self._http_client = httpx.AsyncClient(timeout=httpx.Timeout(config.llm_timeout))
      llm = ChatOpenAI(
        model=config.llm_model,
        temperature=config.llm_temperature,
        max_tokens=config.llm_max_tokens,
        base_url=config.llm_endpoint,
        api_key=config.api_key,
        timeout=config.llm_timeout,
        max_retries=0,
        http_async_client=self._http_client,
      )
    self._llm = llm

  async def complete(self, prompt: str, context: str = "") -> str:
    """Return the reply text; raises CompletionError with a structured kind."""
    messages = [
      SystemMessage(content=render_system_prompt(self.config.bot_name, context)),
      HumanMessage(content=prompt),
    ]
    started = time.perf_counter()
    try:
      response = await self._llm.ainvoke(messages)
    except Exception as err:
      kind = classify_error(err)
      logger.warning(
        "Completion failed (%s)",
        kind.value,
        extra={
          "model": self.config.llm_model,
          "endpoint": self.config.llm_endpoint,
          "error_type": type(err).__name__,
          "error": trunc(err, 300),
        },
      )
      raise CompletionError(kind, str(err)) from err

    elapsed_ms = int((time.perf_counter() - started) * 1000)
    text = _content_to_text(getattr(response, "content", None))
    logger.debug(
      "Completion success",
      extra={"model": self.config.llm_model, "elapsed_ms": elapsed_ms, "reply_preview": trunc(text, 200)},
    )
    return text or EMPTY_REPLY

  async def aclose(self) -> None:
    if self._http_client is not None:
      await self._http_client.aclose()
