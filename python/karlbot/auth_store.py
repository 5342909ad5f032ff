from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from .log import setup_logging
from .models import PairingRecord

logger = setup_logging()

CREDS_FILE = "creds.json"
PAIRING_LOG_FILE = "pairing_log.json"


def _fix_file_name(name: str) -> str:
  return name.replace("/", "__").replace(":", "-")


class MultiFileAuthStore:
  """
  File-per-entry session store: `creds.json`, one `<type>-<id>.json` per
  signal key and the latest pairing record. Values are opaque JSON produced
  by the gateway.
  """

  def __init__(self, directory: Path | str) -> None:
    self.directory = Path(directory)
    self.directory.mkdir(parents=True, exist_ok=True)
    self._creds: Optional[dict[str, Any]] = None

  def _path(self, name: str) -> Path:
    return self.directory / _fix_file_name(name)

  def _read_json(self, name: str) -> Any:
    path = self._path(name)
    if not path.exists():
      return None
    try:
      return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as err:
      logger.warning("Unreadable auth file %s: %s", path.name, err)
      return None

  def _write_json(self, name: str, data: Any, *, indent: int | None = None) -> None:
    path = self._path(name)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_text(json.dumps(data, ensure_ascii=False, indent=indent), encoding="utf-8")
    os.replace(tmp, path)

  def load_creds(self) -> dict[str, Any]:
    if self._creds is None:
      stored = self._read_json(CREDS_FILE)
      self._creds = stored if isinstance(stored, dict) else {}
    return self._creds

  def save_creds(self, creds: dict[str, Any]) -> None:
    # Gateway sends partial updates; merge like Object.assign on the creds object.
    merged = dict(self.load_creds())
    merged.update(creds)
    self._creds = merged
    self._write_json(CREDS_FILE, merged)

  @property
  def registered(self) -> bool:
    return bool(self.load_creds().get("registered"))

  def get_keys(self, key_type: str, ids: Iterable[str]) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for key_id in ids:
      value = self._read_json(f"{key_type}-{key_id}.json")
      if value is not None:
        values[key_id] = value
    return values

  def set_keys(self, data: dict[str, dict[str, Any]]) -> None:
    for key_type, entries in data.items():
      for key_id, value in (entries or {}).items():
        name = f"{key_type}-{key_id}.json"
        if value is None:
          self._path(name).unlink(missing_ok=True)
        else:
          self._write_json(name, value)

  def write_pairing_record(self, record: PairingRecord) -> None:
    self._write_json(PAIRING_LOG_FILE, record.model_dump(), indent=2)

  def read_pairing_record(self) -> Optional[PairingRecord]:
    stored = self._read_json(PAIRING_LOG_FILE)
    if not isinstance(stored, dict):
      return None
    try:
      return PairingRecord.model_validate(stored)
    except ValidationError as err:
      logger.warning("Ignoring malformed pairing log: %s", err)
      return None
