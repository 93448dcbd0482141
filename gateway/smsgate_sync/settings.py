"""Configuration loading and persisted device identity."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from .backoff import BackoffPolicy
from .client import DEFAULT_SERVER_URL
from .models import RegistrationInfo

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "~/.smsgate/sync/config.yaml"
DEFAULT_STATE_PATH = "~/.smsgate/sync/registration.json"
DEFAULT_PAGE_SIZE = 100


def load_config(config_path: str = DEFAULT_CONFIG_PATH) -> dict[str, Any]:
    """Load YAML config, falling back to an empty dict if missing."""
    path = Path(config_path).expanduser()
    if not path.exists():
        logger.warning("Config file not found: %s, using defaults", path)
        return {}
    data = yaml.safe_load(path.read_text())
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return data


@dataclass
class GatewaySettings:
    """Static settings for the sync engine.

    Config keys mirror the attribute names; ``inbox.page_size`` and the
    ``backoff`` section are nested.
    """

    enabled: bool = True
    server_url: str = DEFAULT_SERVER_URL
    private_token: str | None = None
    username: str | None = None
    password: str | None = None
    device_name: str = "smsgate-sync"
    request_timeout: float = 30.0
    state_path: Path = field(
        default_factory=lambda: Path(DEFAULT_STATE_PATH).expanduser()
    )
    log_path: Path | None = None
    page_size: int = DEFAULT_PAGE_SIZE
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)

    @classmethod
    def from_config(cls, config: dict[str, Any] | None) -> GatewaySettings:
        config = config or {}
        log_path = config.get("log_path")
        return cls(
            enabled=bool(config.get("enabled", True)),
            server_url=config.get("server_url", DEFAULT_SERVER_URL),
            private_token=config.get("private_token"),
            username=config.get("username"),
            password=config.get("password"),
            device_name=config.get("device_name", "smsgate-sync"),
            request_timeout=float(config.get("request_timeout", 30.0)),
            state_path=Path(
                config.get("state_path", DEFAULT_STATE_PATH)
            ).expanduser(),
            log_path=Path(log_path).expanduser() if log_path else None,
            page_size=int(
                (config.get("inbox") or {}).get("page_size", DEFAULT_PAGE_SIZE)
            ),
            backoff=BackoffPolicy.from_config(config.get("backoff")),
        )


class RegistrationStore:
    """Persistent RegistrationInfo and push token, backed by a JSON file.

    Every write replaces the whole file atomically, so a reader sees either
    the previous identity or the new one, never a mix.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path).expanduser()
        self._lock = threading.Lock()
        self._info: RegistrationInfo | None = None
        self._push_token: str | None = None
        self._load()

    # ---- persistence ----

    def _load(self) -> None:
        if not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text())
        except (json.JSONDecodeError, OSError):
            logger.warning("Unreadable registration file %s, ignoring", self._path)
            return
        if not isinstance(data, dict):
            logger.warning("Unexpected registration file layout in %s, ignoring", self._path)
            return

        rec = data.get("registration")
        if rec:
            self._info = RegistrationInfo(
                device_id=rec["device_id"],
                login=rec["login"],
                password=rec.get("password", ""),
                access_token=rec["access_token"],
            )
        self._push_token = data.get("push_token")

    def _save(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        info = self._info
        payload = json.dumps(
            {
                "registration": (
                    {
                        "device_id": info.device_id,
                        "login": info.login,
                        "password": info.password,
                        "access_token": info.access_token,
                    }
                    if info
                    else None
                ),
                "push_token": self._push_token,
            },
            indent=2,
        )

        # Atomic write: temp file + rename
        fd, tmp = tempfile.mkstemp(dir=str(self._path.parent), suffix=".tmp")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(payload)
            os.replace(tmp, str(self._path))
        except Exception:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    # ---- registration info ----

    def load(self) -> RegistrationInfo | None:
        return self._info

    def save(self, info: RegistrationInfo) -> None:
        """Replace the stored identity wholesale."""
        with self._lock:
            previous = self._info
            self._info = info
            try:
                self._save()
            except Exception:
                self._info = previous
                raise

    def save_registration(self, info: RegistrationInfo, push_token: str | None) -> None:
        """Replace the identity and the push token in one write."""
        with self._lock:
            previous = (self._info, self._push_token)
            self._info = info
            self._push_token = push_token
            try:
                self._save()
            except Exception:
                self._info, self._push_token = previous
                raise

    def clear(self) -> None:
        with self._lock:
            self._info = None
            self._save()

    # ---- push token ----

    def load_push_token(self) -> str | None:
        return self._push_token

    def save_push_token(self, token: str | None) -> None:
        with self._lock:
            previous = self._push_token
            self._push_token = token
            try:
                self._save()
            except Exception:
                self._push_token = previous
                raise
