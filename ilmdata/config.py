# FILE: ilmdata/config.py
from __future__ import annotations

import hashlib
import logging
import os
import threading
from typing import Any, Dict, Optional

try:
    import yaml  # type: ignore
except Exception:  # pragma: no cover
    yaml = None

from pydantic import BaseModel, ConfigDict

from .codec import dumps_value


_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except Exception:
        return default


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a simple top-level mapping from YAML.

    Missing files, a missing YAML library, and non-mapping documents all
    yield {}. Non-scalar values are coerced with str().
    """
    if not path or yaml is None:
        return {}
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            doc = yaml.safe_load(f)
    except Exception:
        _log.warning("failed to load YAML config from %s", path, exc_info=True)
        return {}
    if not isinstance(doc, dict):
        return {}
    out: Dict[str, Any] = {}
    for k, v in doc.items():
        if isinstance(v, (str, int, float, bool)) or v is None:
            out[str(k)] = v
        else:
            out[str(k)] = str(v)
    return out


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    """
    Process configuration snapshot.

    The encryption secret is not a field here: it is read by
    ilmdata.crypto straight from the environment (or passed explicitly) and
    never lands in a model that may be dumped or hashed.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Core / identity --------------------------------------------------

    version: str = "dev"
    app_name: str = "ilmdata"
    config_origin: str = "defaults"

    # --- Artifacts --------------------------------------------------------

    data_dir: str = os.path.join("public", "data")
    # Brotli: quality 0-11, window (lgwin) 10-24.
    brotli_quality: int = 11
    brotli_window: int = 24
    canonical_json: bool = True

    # --- Leaderboards -----------------------------------------------------

    leaderboard_size: int = 10
    top_versions: int = 5

    # --- Redaction --------------------------------------------------------

    redaction_mark: str = "_redacted"
    redacted_prefix: str = "__REDACTED__"

    # --- Logging ----------------------------------------------------------

    log_level: str = "INFO"
    log_json: bool = True

    def config_hash(self) -> str:
        """Stable hash of the current settings; safe to log."""
        payload = self.model_dump(mode="json")
        digest = hashlib.blake2s(
            dumps_value(payload, canonical=True).encode("utf-8"), digest_size=16
        )
        return digest.hexdigest()

    def dataset_dir(self, *parts: str) -> str:
        return os.path.join(self.data_dir, *parts)


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def load_settings() -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by ILM_CONFIG_PATH.
      3. Environment variables (ILM_*). Out-of-range values are ignored.
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    yaml_path = os.environ.get("ILM_CONFIG_PATH", "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        tmp = dict(merged)
        tmp.update(yaml_doc)
        merged = Settings(**tmp).model_dump()  # extra="forbid" rejects typos
        origin = "yaml"

    merged["version"] = _env_str("ILM_VERSION", merged["version"])
    merged["data_dir"] = _env_str("ILM_DATA_DIR", merged["data_dir"])

    quality = _env_int("ILM_BROTLI_QUALITY", merged["brotli_quality"])
    if 0 <= quality <= 11:
        merged["brotli_quality"] = quality

    window = _env_int("ILM_BROTLI_WINDOW", merged["brotli_window"])
    if 10 <= window <= 24:
        merged["brotli_window"] = window

    merged["canonical_json"] = _env_bool("ILM_CANONICAL_JSON", merged["canonical_json"])

    board = _env_int("ILM_LEADERBOARD_SIZE", merged["leaderboard_size"])
    if board > 0:
        merged["leaderboard_size"] = board

    top_versions = _env_int("ILM_TOP_VERSIONS", merged["top_versions"])
    if top_versions > 0:
        merged["top_versions"] = top_versions

    merged["log_level"] = _env_str("ILM_LOG_LEVEL", merged["log_level"]).upper()
    merged["log_json"] = _env_bool("ILM_LOG_JSON", merged["log_json"])

    merged["config_origin"] = origin
    return Settings(**merged)


_SETTINGS: Optional[Settings] = None
_SETTINGS_LOCK = threading.RLock()


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is not None:
        return _SETTINGS
    with _SETTINGS_LOCK:
        if _SETTINGS is None:
            _SETTINGS = load_settings()
    return _SETTINGS


def reload_settings() -> Settings:
    global _SETTINGS
    with _SETTINGS_LOCK:
        _SETTINGS = load_settings()
        return _SETTINGS


__all__ = ["Settings", "load_settings", "get_settings", "reload_settings"]
