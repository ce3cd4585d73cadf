import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from ..errors import CorruptStateError, PersistenceError
from ..models import FilterMode, PersistedState

logger = logging.getLogger("mitm_sieve")

STATE_PATH_ENV = "MITM_SIEVE_STATE"
STATE_VERSION = 1


def default_state_path() -> Path:
    """``$MITM_SIEVE_STATE`` if set, otherwise ``~/.mitm-sieve/state.json``."""
    override = os.environ.get(STATE_PATH_ENV)
    if override:
        return Path(override).expanduser()
    return Path.home() / ".mitm-sieve" / "state.json"


def _migrate_legacy(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Converts the unversioned desktop-app layout into version 1.

    That layout stored ``filter_enabled``/``filter_type`` flags, where an
    ``Allow`` filter type meant "allow by default, block the deny list".
    """
    filter_list = raw.get("filter_list") or {}
    if not raw.get("filter_enabled", False):
        mode = FilterMode.DISABLED
    elif str(raw.get("filter_type", "Allow")).lower() == "deny":
        mode = FilterMode.BLOCK_BY_DEFAULT
    else:
        mode = FilterMode.ALLOW_BY_DEFAULT

    settings: Dict[str, Any] = {}
    if raw.get("port") not in (None, ""):
        settings["port"] = raw["port"]
    if raw.get("log_level") is not None:
        settings["log_level"] = raw["log_level"]

    return {
        "version": STATE_VERSION,
        "settings": settings,
        "policy": {
            "mode": mode.value,
            "allow": {"name": "allow", "entries": filter_list.get("allow", [])},
            "deny": {"name": "deny", "entries": filter_list.get("deny", [])},
        },
    }


class StateStore:
    """Reads and writes ``PersistedState`` as a single JSON document."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path is not None else default_state_path()

    def save(self, state: PersistedState) -> None:
        """Writes ``state`` atomically: a crash leaves either the old or new file."""
        payload = state.model_dump_json(indent=2)
        tmp_name = None
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                prefix=f".{self.path.name}.", suffix=".tmp", dir=self.path.parent
            )
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
            tmp_name = None
        except OSError as e:
            raise PersistenceError(f"Couldn't write state to {self.path}: {e}") from e
        finally:
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
        logger.debug("State saved to %s", self.path)

    def load(self) -> Optional[PersistedState]:
        """Returns the stored state, or None if nothing has been saved yet.

        Raises CorruptStateError when the file exists but cannot be used as a
        whole; a partially valid file is never applied.
        """
        try:
            text = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as e:
            raise PersistenceError(f"Couldn't read state from {self.path}: {e}") from e

        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise CorruptStateError(f"State file {self.path} is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise CorruptStateError(f"State file {self.path} does not hold an object")

        if "version" not in raw:
            if "filter_list" not in raw and "filter_enabled" not in raw:
                raise CorruptStateError(f"State file {self.path} has no version")
            logger.info("Migrating legacy state file %s", self.path)
            raw = _migrate_legacy(raw)
        elif raw["version"] != STATE_VERSION:
            raise CorruptStateError(
                f"State file {self.path} has unsupported version {raw['version']!r}"
            )

        try:
            return PersistedState.model_validate(raw)
        except ValidationError as e:
            raise CorruptStateError(f"State file {self.path} failed validation: {e}") from e
