from __future__ import annotations

import copy
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Protocol

from algotrader.ops.retry import RetryPolicy, retry_call
from algotrader.persistence.db import DB

log = logging.getLogger("algotrader.persistence")

# Collection keys. Values are JSON-serializable (lists / dicts / str).
COLLECTIONS = (
    "positions",
    "signals",
    "market_data",
    "balance",
    "trading_config",
    "app_status",
    "connection_status",
)


class Backing(Protocol):
    def load(self) -> Dict[str, Any]: ...

    def save(self, collections: Dict[str, Any]) -> None: ...


class MemoryBacking:
    """Keeps the last saved snapshot in memory. Tests and STATE_BACKEND=memory."""

    def __init__(self, initial: Dict[str, Any] | None = None):
        self.data: Dict[str, Any] = copy.deepcopy(initial or {})
        self.saves = 0

    def load(self) -> Dict[str, Any]:
        return copy.deepcopy(self.data)

    def save(self, collections: Dict[str, Any]) -> None:
        self.data.update(copy.deepcopy(collections))
        self.saves += 1


class JsonFileBacking:
    """
    One JSON document holding every collection.
    Writes go to a temp file in the same folder, then os.replace().
    """

    def __init__(self, path: str, attempts: int = 3, retry_delay: float = 0.1):
        self.path = Path(path)
        self.policy = RetryPolicy(attempts=max(1, attempts), base_delay=retry_delay, max_delay=1.0)
        self._doc: Dict[str, Any] = {}

        if self.path.parent and str(self.path.parent) not in ("", "."):
            self.path.parent.mkdir(parents=True, exist_ok=True)

    def load(self) -> Dict[str, Any]:
        if not self.path.exists():
            self._doc = {}
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as f:
                doc = json.load(f)
        except (OSError, ValueError) as e:
            log.error("state file %s unreadable, starting empty: %s", self.path, e)
            doc = {}
        self._doc = doc if isinstance(doc, dict) else {}
        return copy.deepcopy(self._doc)

    def _write(self, doc: Dict[str, Any]) -> None:
        fd, tmp = tempfile.mkstemp(
            prefix=f".{self.path.name}.", suffix=".tmp", dir=str(self.path.parent)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(doc, f, ensure_ascii=False, indent=2)
            os.replace(tmp, self.path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def save(self, collections: Dict[str, Any]) -> None:
        doc = dict(self._doc)
        doc.update(collections)
        retry_call(
            lambda: self._write(doc),
            policy=self.policy,
            label=f"state save {self.path.name}",
        )
        self._doc = doc


class SqliteBacking:
    """Each collection is one row of kv_state."""

    def __init__(self, db: DB):
        self.db = db

    def load(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        for key, raw in self.db.read_kv().items():
            if key not in COLLECTIONS:
                continue
            try:
                out[key] = json.loads(raw)
            except ValueError as e:
                log.error("kv_state[%s] unreadable, ignoring: %s", key, e)
        return out

    def save(self, collections: Dict[str, Any]) -> None:
        self.db.write_kv(
            {k: json.dumps(v, ensure_ascii=False) for k, v in collections.items()}
        )


def make_backing(kind: str, *, state_file: str, db: DB | None = None) -> Backing:
    kind = (kind or "json").lower()
    if kind == "memory":
        return MemoryBacking()
    if kind == "sqlite":
        if db is None:
            raise ValueError("sqlite backing requires a DB")
        return SqliteBacking(db)
    if kind == "json":
        return JsonFileBacking(state_file)
    raise ValueError(f"Unknown state backend: {kind}")
