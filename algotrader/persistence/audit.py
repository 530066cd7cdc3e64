# algotrader/persistence/audit.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from algotrader.core.models import utc_now_iso
from algotrader.ops.context import get_cycle_id, get_run_id
from algotrader.persistence.db import DB

log = logging.getLogger("algotrader.audit")


class Audit:
    """
    DB audit is the source of truth.
    Events are mirrored to a JSONL file for tailing.
    run_id / cycle_id default to the context-local values.
    """

    def __init__(self, db: DB, jsonl_path: str = "logs/audit.jsonl"):
        self.db = db
        self.jsonl_path = Path(jsonl_path)

        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            self.jsonl_path.touch(exist_ok=True)
        except OSError as e:
            # never crash the trader due to audit file issues
            log.warning("audit file unavailable (%s): %s", self.jsonl_path, e)

    def start_run(
        self, run_id: str, mode: str, interval_seconds: int, max_positions: int
    ) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO runs(run_id, started_at, mode, interval_seconds, max_positions) VALUES (?,?,?,?,?)",
                (run_id, utc_now_iso(), mode, interval_seconds, max_positions),
            )

        self._write_jsonl(
            {
                "timestamp_utc": utc_now_iso(),
                "event_type": "RUN_START",
                "run_id": run_id,
                "details": {
                    "mode": mode,
                    "interval_seconds": interval_seconds,
                    "max_positions": max_positions,
                },
            }
        )

    def stop_run(self, run_id: str) -> None:
        with self.db.connect() as conn:
            conn.execute(
                "UPDATE runs SET stopped_at = ? WHERE run_id = ?",
                (utc_now_iso(), run_id),
            )

        self._write_jsonl(
            {
                "timestamp_utc": utc_now_iso(),
                "event_type": "RUN_STOP",
                "run_id": run_id,
                "details": {},
            }
        )

    def event(
        self,
        event_type: str,
        run_id: Optional[str] = None,
        cycle_id: Optional[str] = None,
        symbol: Optional[str] = None,
        action: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        run_id = run_id or get_run_id()
        cycle_id = cycle_id or get_cycle_id()
        payload = json.dumps(details or {}, ensure_ascii=False, default=str)
        ts = utc_now_iso()

        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO events(timestamp_utc, run_id, cycle_id, symbol, event_type, action, details_json)
                VALUES (?,?,?,?,?,?,?)
                """,
                (ts, run_id, cycle_id, symbol, event_type, action, payload),
            )

        self._write_jsonl(
            {
                "timestamp_utc": ts,
                "event_type": event_type,
                "run_id": run_id,
                "cycle_id": cycle_id,
                "symbol": symbol,
                "action": action,
                "details": details or {},
            }
        )

    def safe_event(self, event_type: str, **kwargs: Any) -> None:
        """event() for hot paths: failures are logged, never raised."""
        try:
            self.event(event_type, **kwargs)
        except Exception as e:
            log.warning("audit %s failed: %s: %s", event_type, type(e).__name__, e)

    def recent(self, limit: int = 50, run_id: Optional[str] = None) -> List[Dict[str, Any]]:
        sql = "SELECT * FROM events"
        args: tuple = ()
        if run_id:
            sql += " WHERE run_id = ?"
            args = (run_id,)
        sql += " ORDER BY id DESC LIMIT ?"
        args = args + (int(limit),)

        with self.db.connect() as conn:
            rows = conn.execute(sql, args).fetchall()

        out = []
        for r in rows:
            d = dict(r)
            d["details"] = json.loads(d.pop("details_json") or "{}")
            out.append(d)
        return out

    def _write_jsonl(self, obj: Dict[str, Any]) -> None:
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
        except OSError as e:
            log.warning("audit jsonl write failed: %s", e)
