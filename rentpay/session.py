"""
Session storage for the RentPay client.

The browser client kept its credential, user profile and last payment in
``sessionStorage``.  Here the same data lives behind an injected key-value
store so the reconciliation engine never touches ambient global state.

Stores:
    MemoryStore     -- process-local, used by tests and embedded callers
    JsonFileStore   -- survives restarts; one JSON document, atomic writes

Keys:
    token    -- bearer credential
    user     -- JSON profile {"id": ..., "name": ...}
    payment  -- JSON of the last accepted PaymentRecord (single slot)

Usage:
    from rentpay.session import JsonFileStore, PaymentCache, SessionContext

    store = JsonFileStore()
    session = SessionContext.from_store(store)
    cache = PaymentCache(store)
    record = cache.load()
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from rentpay.models import PaymentRecord

logger = logging.getLogger("session")

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

BASE_DIR = Path(__file__).resolve().parent.parent
DATA_DIR = Path(os.getenv("RENTPAY_DATA_DIR", str(BASE_DIR / "data" / "session")))
SESSION_FILE = DATA_DIR / "session.json"

TOKEN_KEY = "token"
USER_KEY = "user"
PAYMENT_KEY = "payment"


# ---------------------------------------------------------------------------
# JSON helpers
# ---------------------------------------------------------------------------

def _load_json(path: Path, default: Any = None) -> Any:
    """Load JSON from path, returning default when missing or corrupt."""
    if default is None:
        default = {}
    try:
        with open(path, "r", encoding="utf-8") as fh:
            return json.load(fh)
    except (FileNotFoundError, json.JSONDecodeError):
        return default


def _save_json(path: Path, data: Any) -> None:
    """Atomically write data as pretty-printed JSON to path."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2, ensure_ascii=False)
    os.replace(str(tmp), str(path))


# ---------------------------------------------------------------------------
# Key-value stores
# ---------------------------------------------------------------------------

class KeyValueStore:
    """String key-value store interface (get / set / delete / clear)."""

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError


class MemoryStore(KeyValueStore):
    """In-process store; contents vanish with the process."""

    def __init__(self, initial: Optional[Dict[str, str]] = None) -> None:
        self._data: Dict[str, str] = dict(initial or {})

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()


class JsonFileStore(KeyValueStore):
    """Store backed by a single JSON file, rewritten atomically on each change."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else SESSION_FILE
        raw = _load_json(self.path, default={})
        if not isinstance(raw, dict):
            logger.warning("Session file %s is not an object; starting empty", self.path)
            raw = {}
        self._data: Dict[str, str] = {str(k): str(v) for k, v in raw.items() if v is not None}

    def _flush(self) -> None:
        _save_json(self.path, self._data)

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        self._data[key] = value
        self._flush()

    def delete(self, key: str) -> None:
        if key in self._data:
            del self._data[key]
            self._flush()

    def clear(self) -> None:
        self._data = {}
        self._flush()


# ---------------------------------------------------------------------------
# Session context
# ---------------------------------------------------------------------------

@dataclass
class SessionContext:
    """Current tenant identity and bearer credential.  Read-only to the core."""
    tenant_id: Optional[str] = None
    token: str = ""
    tenant_name: str = ""

    @property
    def auth_header(self) -> str:
        return f"Bearer {self.token}" if self.token else ""

    @property
    def is_authenticated(self) -> bool:
        return bool(self.tenant_id and self.token)

    @classmethod
    def from_store(cls, store: KeyValueStore) -> SessionContext:
        """Read the session the login flow left in the store."""
        user: Dict[str, Any] = {}
        raw_user = store.get(USER_KEY)
        if raw_user:
            try:
                parsed = json.loads(raw_user)
                if isinstance(parsed, dict):
                    user = parsed
            except json.JSONDecodeError:
                logger.warning("Stored user profile is not valid JSON; ignoring it")
        tenant_id = user.get("id") or user.get("_id")
        return cls(
            tenant_id=str(tenant_id) if tenant_id else None,
            token=store.get(TOKEN_KEY) or "",
            tenant_name=str(user.get("name") or ""),
        )

    def save_to(self, store: KeyValueStore) -> None:
        store.set(TOKEN_KEY, self.token)
        store.set(USER_KEY, json.dumps({"id": self.tenant_id, "name": self.tenant_name}))


# ---------------------------------------------------------------------------
# Persisted payment slot
# ---------------------------------------------------------------------------

class PaymentCache:
    """Single-slot mirror of the last accepted payment record.

    Written only by the reconciliation engine; read at bootstrap.
    """

    def __init__(self, store: KeyValueStore, key: str = PAYMENT_KEY) -> None:
        self.store = store
        self.key = key

    def load(self) -> Optional[PaymentRecord]:
        raw = self.store.get(self.key)
        if not raw:
            return None
        try:
            return PaymentRecord.from_dict(json.loads(raw))
        except ValueError as exc:
            logger.warning("Discarding unreadable cached payment: %s", exc)
            return None

    def save(self, record: PaymentRecord) -> None:
        self.store.set(self.key, json.dumps(record.to_dict()))

    def clear(self) -> None:
        self.store.delete(self.key)
