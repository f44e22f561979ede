"""
Run History Tracking for Ledgerlink

Every reconciliation run (dry or live) is recorded through the shared DB
helper (Postgres when DATABASE_URL is set, SQLite otherwise) for audit/debug.
"""
import json
import os
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ledgerlink.services.db import DB
from ledgerlink.services.errors import RunNotFoundError

DEFAULT_DB_PATH = os.getenv("RUN_HISTORY_DB_PATH", "ledgerlink_runs.db")


class RunHistory:
    def __init__(self, db_path: str = DEFAULT_DB_PATH, db: Optional[DB] = None):
        self.db = db or DB(sqlite_path=db_path)
        self.init_db()

    def init_db(self) -> None:
        """Initialize the run history table."""
        self.db.execute("""
            CREATE TABLE IF NOT EXISTS reconciliation_runs (
                run_id TEXT PRIMARY KEY,
                sources TEXT NOT NULL,
                period_start TEXT,
                period_end TEXT,
                dry_run INTEGER DEFAULT 0,
                status TEXT DEFAULT 'RUNNING',
                started_at TEXT NOT NULL,
                completed_at TEXT,
                matched INTEGER DEFAULT 0,
                needs_review INTEGER DEFAULT 0,
                errors INTEGER DEFAULT 0,
                total_value_matched REAL DEFAULT 0,
                config_json TEXT,
                summary_json TEXT,
                error_message TEXT
            )
        """)
        self.db.execute(
            "CREATE INDEX IF NOT EXISTS idx_reconciliation_runs_started "
            "ON reconciliation_runs(started_at DESC)"
        )

    def create_run(
        self,
        run_id: str,
        sources: List[str],
        period_start: Optional[str],
        period_end: Optional[str],
        dry_run: bool = False,
        config: Optional[Dict] = None,
    ) -> Dict:
        """Create a new run record."""
        now = datetime.now(timezone.utc).isoformat()
        self.db.execute("""
            INSERT INTO reconciliation_runs
                (run_id, sources, period_start, period_end, dry_run, started_at, config_json)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, (
            run_id,
            ",".join(sources),
            period_start,
            period_end,
            1 if dry_run else 0,
            now,
            json.dumps(config, default=str) if config else None,
        ))
        return {"run_id": run_id, "status": "RUNNING", "started_at": now}

    def complete_run(self, run_id: str, summary: Dict) -> Dict:
        """Mark a run as completed successfully."""
        now = datetime.now(timezone.utc).isoformat()
        updated = self.db.execute("""
            UPDATE reconciliation_runs
            SET status = 'SUCCEEDED',
                completed_at = ?,
                matched = ?,
                needs_review = ?,
                errors = ?,
                total_value_matched = ?,
                summary_json = ?
            WHERE run_id = ?
        """, (
            now,
            summary.get("matched", 0),
            summary.get("needs_review", 0),
            summary.get("errors", 0),
            summary.get("total_value_matched", 0),
            json.dumps(summary, default=str),
            run_id,
        ))
        if not updated:
            raise RunNotFoundError(run_id)
        return {"run_id": run_id, "status": "SUCCEEDED", "completed_at": now}

    def fail_run(self, run_id: str, error_message: str, summary: Optional[Dict] = None) -> Dict:
        """Mark a run as failed, keeping whatever statistics were gathered."""
        now = datetime.now(timezone.utc).isoformat()
        updated = self.db.execute("""
            UPDATE reconciliation_runs
            SET status = 'FAILED',
                completed_at = ?,
                error_message = ?,
                summary_json = ?
            WHERE run_id = ?
        """, (now, error_message, json.dumps(summary, default=str) if summary else None, run_id))
        if not updated:
            raise RunNotFoundError(run_id)
        return {"run_id": run_id, "status": "FAILED", "error_message": error_message}

    def get_run(self, run_id: str) -> Optional[Dict]:
        """Get a run by ID, with its summary decoded."""
        row = self.db.query_one("SELECT * FROM reconciliation_runs WHERE run_id = ?", (run_id,))
        return self._decode(row) if row else None

    def list_runs(self, limit: int = 50, status: Optional[str] = None) -> List[Dict]:
        """List recent runs, newest first."""
        query = "SELECT * FROM reconciliation_runs WHERE 1=1"
        params: list = []
        if status:
            query += " AND status = ?"
            params.append(status.upper())
        query += " ORDER BY started_at DESC LIMIT ?"
        params.append(limit)
        return [self._decode(row) for row in self.db.query(query, params)]

    def get_run_stats(self) -> Dict:
        """Aggregate run statistics."""
        row = self.db.query_one("""
            SELECT
                COUNT(*) as total_runs,
                SUM(CASE WHEN status = 'SUCCEEDED' THEN 1 ELSE 0 END) as succeeded,
                SUM(CASE WHEN status = 'FAILED' THEN 1 ELSE 0 END) as failed,
                SUM(matched) as matched,
                SUM(needs_review) as needs_review,
                SUM(total_value_matched) as total_value_matched
            FROM reconciliation_runs
        """)
        return {
            "total_runs": row["total_runs"] or 0,
            "succeeded": row["succeeded"] or 0,
            "failed": row["failed"] or 0,
            "matched": row["matched"] or 0,
            "needs_review": row["needs_review"] or 0,
            "total_value_matched": round(float(row["total_value_matched"] or 0), 2),
        }

    def _decode(self, row: Dict) -> Dict:
        run = dict(row)
        run["dry_run"] = bool(run.get("dry_run"))
        run["sources"] = [s for s in (run.get("sources") or "").split(",") if s]
        for key in ("config_json", "summary_json"):
            raw = run.pop(key, None)
            run[key.replace("_json", "")] = json.loads(raw) if raw else None
        return run
