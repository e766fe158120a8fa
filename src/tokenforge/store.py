from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Any

from .models import DeploymentResult, Job, JobState, VerificationOutcome, to_jsonable
from .utils import utc_now_iso


def _loads(value: str | None) -> Any:
    if value is None:
        return None
    return json.loads(value)


def _dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(to_jsonable(value), sort_keys=True)


def _row_to_job_record(row: sqlite3.Row) -> dict[str, Any]:
    return {
        "job_id": row["job_id"],
        "kind": row["kind"],
        "state": row["state"],
        "created_at": row["created_at"],
        "started_at": row["started_at"],
        "finished_at": row["finished_at"],
        "payload": _loads(row["payload_json"]),
        "result": _loads(row["result_json"]),
        "error": _loads(row["error_json"]),
    }


class JobStore:
    """Flat audit records for jobs and deployments.

    Shared by the scheduler worker threads, so every statement runs under one lock.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self.lock = threading.Lock()
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row

    def close(self) -> None:
        with self.lock:
            self.conn.close()

    def init_schema(self) -> None:
        with self.lock:
            self.conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    job_id TEXT PRIMARY KEY,
                    kind TEXT NOT NULL,
                    state TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    started_at TEXT,
                    finished_at TEXT,
                    payload_json TEXT,
                    result_json TEXT,
                    error_json TEXT
                );

                CREATE TABLE IF NOT EXISTS job_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    job_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    details_json TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS deployments (
                    address TEXT PRIMARY KEY,
                    job_id TEXT,
                    artifact_key TEXT,
                    network TEXT NOT NULL,
                    tx_hash TEXT,
                    deployer_address TEXT,
                    constructor_args_json TEXT NOT NULL,
                    constructor_args_encoded TEXT NOT NULL,
                    deployed_at TEXT NOT NULL,
                    verification_status TEXT,
                    verification_guid TEXT,
                    verification_message TEXT,
                    verification_updated_at TEXT
                );

                CREATE INDEX IF NOT EXISTS idx_jobs_created_at
                    ON jobs(created_at);
                CREATE INDEX IF NOT EXISTS idx_job_events_job_timestamp
                    ON job_events(job_id, timestamp);
                """
            )
            self.conn.commit()

    def save_job(self, job: Job) -> None:
        record = job.to_dict()
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO jobs(
                    job_id, kind, state, created_at, started_at, finished_at,
                    payload_json, result_json, error_json
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(job_id) DO UPDATE SET
                    state = excluded.state,
                    started_at = excluded.started_at,
                    finished_at = excluded.finished_at,
                    result_json = excluded.result_json,
                    error_json = excluded.error_json
                """,
                (
                    record["job_id"],
                    record["kind"],
                    record["state"],
                    record["created_at"],
                    record["started_at"],
                    record["finished_at"],
                    _dumps(record["payload"]),
                    _dumps(record["result"]),
                    _dumps(record["error"]),
                ),
            )
            self.conn.commit()

    def add_event(self, job_id: str, event_type: str, details: dict[str, Any] | None = None) -> None:
        with self.lock:
            self.conn.execute(
                """
                INSERT INTO job_events(job_id, event_type, timestamp, details_json)
                VALUES (?, ?, ?, ?)
                """,
                (job_id, event_type, utc_now_iso(), _dumps(details or {})),
            )
            self.conn.commit()

    def list_events(self, job_id: str) -> list[dict[str, Any]]:
        with self.lock:
            rows = self.conn.execute(
                "SELECT event_type, timestamp, details_json FROM job_events WHERE job_id = ? ORDER BY id",
                (job_id,),
            ).fetchall()
        return [
            {"event_type": row["event_type"], "timestamp": row["timestamp"], "details": _loads(row["details_json"])}
            for row in rows
        ]

    def get_job_record(self, job_id: str) -> dict[str, Any] | None:
        with self.lock:
            row = self.conn.execute("SELECT * FROM jobs WHERE job_id = ?", (job_id,)).fetchone()
        if row is None:
            return None
        return _row_to_job_record(row)

    def list_job_records(self, limit: int = 50) -> list[dict[str, Any]]:
        with self.lock:
            rows = self.conn.execute(
                "SELECT * FROM jobs ORDER BY created_at DESC LIMIT ?",
                (max(1, min(200, int(limit))),),
            ).fetchall()
        return [_row_to_job_record(row) for row in rows]

    def record_deployment(self, result: DeploymentResult, job_id: str | None) -> None:
        with self.lock:
            self.conn.execute(
                """
                INSERT OR REPLACE INTO deployments(
                    address, job_id, artifact_key, network, tx_hash, deployer_address,
                    constructor_args_json, constructor_args_encoded, deployed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    result.address,
                    job_id,
                    result.artifact_key,
                    result.network,
                    result.tx_hash,
                    result.deployer_address,
                    _dumps(result.constructor_args),
                    result.constructor_args_encoded,
                    result.deployed_at,
                ),
            )
            self.conn.commit()

    def update_verification(self, address: str, outcome: VerificationOutcome) -> bool:
        with self.lock:
            cursor = self.conn.execute(
                """
                UPDATE deployments
                SET verification_status = ?,
                    verification_guid = COALESCE(?, verification_guid),
                    verification_message = ?,
                    verification_updated_at = ?
                WHERE address = ?
                """,
                (outcome.status.value, outcome.guid, outcome.message, utc_now_iso(), address),
            )
            self.conn.commit()
        return cursor.rowcount > 0

    def get_deployment(self, address: str) -> dict[str, Any] | None:
        with self.lock:
            row = self.conn.execute("SELECT * FROM deployments WHERE address = ?", (address,)).fetchone()
        if row is None:
            return None
        record = dict(row)
        record["constructor_args"] = _loads(record.pop("constructor_args_json"))
        return record

    def find_deployment_by_guid(self, guid: str) -> dict[str, Any] | None:
        with self.lock:
            row = self.conn.execute(
                "SELECT address FROM deployments WHERE verification_guid = ?", (guid,)
            ).fetchone()
        if row is None:
            return None
        return self.get_deployment(row["address"])

    def summary_counts(self) -> dict[str, int]:
        with self.lock:
            rows = self.conn.execute("SELECT state, COUNT(*) AS count FROM jobs GROUP BY state").fetchall()
        output = {state.value: 0 for state in JobState}
        for row in rows:
            output[str(row["state"])] = int(row["count"])
        return output
