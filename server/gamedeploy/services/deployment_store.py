"""Durable records for deployments, jobs and their audit logs."""
from __future__ import annotations

import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from typing import Dict, FrozenSet, Iterable, Iterator, List, Optional, Set

from ..core.database import Database, to_db_timestamp, utc_now
from ..core.errors import DeploymentNotFoundError, PersistenceError
from ..core.models import (
    DEPLOYMENT_TYPE_MINECRAFT_JAVA,
    GAME_MINECRAFT,
    JOB_TYPE_DEPLOY,
    Deployment,
    DeploymentLogEntry,
    DeploymentStatus,
    DeploymentSummary,
    HypervisorConfig,
    Job,
    JobStatus,
    LogLevel,
)
from ..core.pydantic_models import DeploymentRequest, DeploymentResult

logger = logging.getLogger(__name__)

HYPERVISOR_CONFIG_KEY = "proxmox_config"

# Statuses a deployment may be in before moving to the key status.
_ALLOWED_PREDECESSORS: Dict[DeploymentStatus, FrozenSet[DeploymentStatus]] = {
    DeploymentStatus.RUNNING: frozenset({DeploymentStatus.QUEUED, DeploymentStatus.RUNNING}),
    DeploymentStatus.SUCCESS: frozenset({DeploymentStatus.RUNNING}),
    DeploymentStatus.FAILED: frozenset({DeploymentStatus.QUEUED, DeploymentStatus.RUNNING}),
    DeploymentStatus.CANCELLED: frozenset({DeploymentStatus.QUEUED, DeploymentStatus.RUNNING}),
}

_JOB_COLUMNS = (
    "id, type, payload_json, status, deployment_id, run_after, "
    "last_error, attempts, created_at, updated_at"
)


class DeploymentStore:
    """Repository over the deployments, jobs and deployment_logs tables."""

    def __init__(self, db: Database):
        self.db = db

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Cursor]:
        try:
            with self.db.transaction() as cursor:
                yield cursor
        except sqlite3.Error as exc:
            raise PersistenceError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def enqueue_deployment(self, request: DeploymentRequest) -> int:
        """Insert one queued deployment and its queued job atomically."""
        raw_request = request.model_dump_json()
        now = to_db_timestamp(utc_now())
        with self._tx() as cursor:
            deployment_id = self._insert_deployment(cursor, raw_request, now)
            self._insert_job(cursor, deployment_id, raw_request, now)
        logger.info("Queued deployment %s (%s)", deployment_id, request.name)
        return deployment_id

    @staticmethod
    def _insert_deployment(cursor: sqlite3.Cursor, raw_request: str, now: str) -> int:
        cursor.execute(
            """
            INSERT INTO deployments (game, type, request_json, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                GAME_MINECRAFT,
                DEPLOYMENT_TYPE_MINECRAFT_JAVA,
                raw_request,
                DeploymentStatus.QUEUED.value,
                now,
                now,
            ),
        )
        return int(cursor.lastrowid)

    @staticmethod
    def _insert_job(
        cursor: sqlite3.Cursor, deployment_id: int, raw_payload: str, now: str
    ) -> int:
        cursor.execute(
            """
            INSERT INTO jobs (type, payload_json, status, deployment_id, run_after, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (JOB_TYPE_DEPLOY, raw_payload, JobStatus.QUEUED.value, deployment_id, now, now, now),
        )
        return int(cursor.lastrowid)

    # ------------------------------------------------------------------
    # Deployment reads
    # ------------------------------------------------------------------

    def get_deployment(self, deployment_id: int) -> Optional[Deployment]:
        row = self.db.fetch_one(
            """
            SELECT id, game, type, request_json, result_json, vmid, ip_address,
                   status, error_message, created_at, updated_at
            FROM deployments WHERE id = ?
            """,
            (deployment_id,),
        )
        return Deployment.model_validate(dict(row)) if row else None

    def require_deployment(self, deployment_id: int) -> Deployment:
        deployment = self.get_deployment(deployment_id)
        if deployment is None:
            raise DeploymentNotFoundError(deployment_id)
        return deployment

    def list_deployments(self, limit: int = 100) -> List[DeploymentSummary]:
        rows = self.db.fetch_all(
            """
            SELECT id, game, type, status, vmid, ip_address, created_at, updated_at
            FROM deployments
            ORDER BY created_at DESC, id DESC
            LIMIT ?
            """,
            (limit,),
        )
        return [DeploymentSummary.model_validate(dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Audit log
    # ------------------------------------------------------------------

    def append_log(self, deployment_id: int, level: LogLevel, message: str) -> Optional[int]:
        """Append an audit line; a failed write is logged but never aborts the caller."""
        try:
            _, log_id = self.db.execute(
                """
                INSERT INTO deployment_logs (deployment_id, ts, level, message)
                VALUES (?, ?, ?, ?)
                """,
                (deployment_id, to_db_timestamp(utc_now()), level.value, message),
            )
        except PersistenceError as exc:
            logger.warning(
                "Could not append log line to deployment %s: %s", deployment_id, exc
            )
            return None
        return log_id

    def list_logs(
        self, deployment_id: int, after_id: Optional[int] = None
    ) -> List[DeploymentLogEntry]:
        if after_id is None:
            rows = self.db.fetch_all(
                """
                SELECT id, deployment_id, ts, level, message
                FROM deployment_logs WHERE deployment_id = ?
                ORDER BY id ASC
                """,
                (deployment_id,),
            )
        else:
            rows = self.db.fetch_all(
                """
                SELECT id, deployment_id, ts, level, message
                FROM deployment_logs WHERE deployment_id = ? AND id > ?
                ORDER BY id ASC
                """,
                (deployment_id, after_id),
            )
        return [DeploymentLogEntry.model_validate(dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Deployment status
    # ------------------------------------------------------------------

    def _set_status(
        self,
        deployment_id: int,
        status: DeploymentStatus,
        *,
        vmid: Optional[int] = None,
        ip_address: Optional[str] = None,
        error_message: Optional[str] = None,
        result_json: Optional[str] = None,
        force: bool = False,
    ) -> bool:
        # vmid/ip use COALESCE: the first recorded value always wins.
        sql = """
            UPDATE deployments
            SET status = ?, updated_at = ?,
                vmid = COALESCE(vmid, ?),
                ip_address = COALESCE(ip_address, ?),
                error_message = ?,
                result_json = COALESCE(?, result_json)
            WHERE id = ?
        """
        params: List[object] = [
            status.value,
            to_db_timestamp(utc_now()),
            vmid,
            ip_address,
            error_message,
            result_json,
            deployment_id,
        ]
        if not force:
            predecessors = sorted(s.value for s in _ALLOWED_PREDECESSORS[status])
            sql += f" AND status IN ({', '.join('?' for _ in predecessors)})"
            params.extend(predecessors)

        changed, _ = self.db.execute(sql, params)
        if not changed:
            logger.warning(
                "Deployment %s: ignored transition to %s (missing or already terminal)",
                deployment_id,
                status.value,
            )
        return changed > 0

    def mark_running(self, deployment_id: int) -> bool:
        return self._set_status(deployment_id, DeploymentStatus.RUNNING)

    def record_checkpoint(self, deployment_id: int, vmid: int, ip_address: str) -> bool:
        """Persist the VM identity as soon as the VM exists."""
        return self._set_status(
            deployment_id, DeploymentStatus.RUNNING, vmid=vmid, ip_address=ip_address
        )

    def mark_success(
        self,
        deployment_id: int,
        result: DeploymentResult,
        vmid: Optional[int],
        ip_address: Optional[str],
    ) -> bool:
        return self._set_status(
            deployment_id,
            DeploymentStatus.SUCCESS,
            vmid=vmid,
            ip_address=ip_address,
            result_json=result.model_dump_json(),
        )

    def mark_failed(self, deployment_id: int, message: str) -> bool:
        return self._set_status(deployment_id, DeploymentStatus.FAILED, error_message=message)

    def mark_cancelled(self, deployment_id: int, message: Optional[str] = None) -> bool:
        return self._set_status(
            deployment_id, DeploymentStatus.CANCELLED, error_message=message
        )

    def mark_teardown_failed(self, deployment_id: int, message: str) -> bool:
        """Flag a deployment whose VM could not be destroyed, whatever its status."""
        return self._set_status(
            deployment_id, DeploymentStatus.FAILED, error_message=message, force=True
        )

    def delete_deployment(self, deployment_id: int) -> bool:
        changed, _ = self.db.execute("DELETE FROM deployments WHERE id = ?", (deployment_id,))
        return changed > 0

    # ------------------------------------------------------------------
    # Job queue
    # ------------------------------------------------------------------

    def claim_next_job(self, now: Optional[datetime] = None) -> Optional[Job]:
        """Atomically move the oldest due queued job to running.

        The select and the update are one statement, so two claimers can never
        both receive the same job.
        """
        stamp = to_db_timestamp(now or utc_now())
        with self._tx() as cursor:
            cursor.execute(
                f"""
                UPDATE jobs
                SET status = ?, attempts = attempts + 1, updated_at = ?
                WHERE id = (
                    SELECT id FROM jobs
                    WHERE status = ? AND run_after <= ?
                    ORDER BY id
                    LIMIT 1
                ) AND status = ?
                RETURNING {_JOB_COLUMNS}
                """,
                (
                    JobStatus.RUNNING.value,
                    stamp,
                    JobStatus.QUEUED.value,
                    stamp,
                    JobStatus.QUEUED.value,
                ),
            )
            rows = cursor.fetchall()
        return Job.model_validate(dict(rows[0])) if rows else None

    def finalize_job(
        self, job_id: int, status: JobStatus, error: Optional[str] = None
    ) -> bool:
        """Write a running job's terminal status; a job cancelled meanwhile stays cancelled."""
        changed, _ = self.db.execute(
            """
            UPDATE jobs SET status = ?, last_error = ?, updated_at = ?
            WHERE id = ? AND status = ?
            """,
            (
                status.value,
                error,
                to_db_timestamp(utc_now()),
                job_id,
                JobStatus.RUNNING.value,
            ),
        )
        return changed > 0

    def cancel_open_jobs(self, deployment_id: int) -> int:
        changed, _ = self.db.execute(
            """
            UPDATE jobs SET status = ?, updated_at = ?
            WHERE deployment_id = ? AND status IN (?, ?)
            """,
            (
                JobStatus.CANCELLED.value,
                to_db_timestamp(utc_now()),
                deployment_id,
                JobStatus.QUEUED.value,
                JobStatus.RUNNING.value,
            ),
        )
        return changed

    def get_job(self, job_id: int) -> Optional[Job]:
        row = self.db.fetch_one(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,))
        return Job.model_validate(dict(row)) if row else None

    def jobs_for_deployment(self, deployment_id: int) -> List[Job]:
        rows = self.db.fetch_all(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE deployment_id = ? ORDER BY id",
            (deployment_id,),
        )
        return [Job.model_validate(dict(row)) for row in rows]

    # ------------------------------------------------------------------
    # Address pool
    # ------------------------------------------------------------------

    @staticmethod
    def _used_addresses(cursor: sqlite3.Cursor) -> Set[str]:
        cursor.execute(
            """
            SELECT ip_address FROM deployments WHERE ip_address IS NOT NULL
            UNION
            SELECT ip_address FROM address_reservations
            """
        )
        return {row[0].strip() for row in cursor.fetchall() if row[0]}

    def used_ip_addresses(self) -> Set[str]:
        with self._tx() as cursor:
            return self._used_addresses(cursor)

    def reserve_address(self, deployment_id: int, candidates: Iterable[str]) -> Optional[str]:
        """Reserve the first free candidate for a deployment in one transaction.

        A deployment that already holds a reservation gets the same address back.
        Returns None when every candidate is taken.
        """
        with self._tx() as cursor:
            cursor.execute(
                "SELECT ip_address FROM address_reservations WHERE deployment_id = ?",
                (deployment_id,),
            )
            existing = cursor.fetchall()
            if existing:
                return existing[0][0]

            used = self._used_addresses(cursor)
            for candidate in candidates:
                if candidate in used:
                    continue
                cursor.execute(
                    """
                    INSERT INTO address_reservations (ip_address, deployment_id, created_at)
                    VALUES (?, ?, ?)
                    """,
                    (candidate, deployment_id, to_db_timestamp(utc_now())),
                )
                return candidate
        return None

    # ------------------------------------------------------------------
    # Hypervisor configuration
    # ------------------------------------------------------------------

    def load_hypervisor_config(self) -> Optional[HypervisorConfig]:
        row = self.db.fetch_one(
            "SELECT value FROM settings WHERE key = ?", (HYPERVISOR_CONFIG_KEY,)
        )
        if row is None:
            return None
        try:
            return HypervisorConfig.model_validate(json.loads(row["value"]))
        except ValueError as exc:
            raise PersistenceError(f"stored hypervisor configuration is unreadable: {exc}") from exc

    def save_hypervisor_config(self, config: HypervisorConfig) -> None:
        stored = config.model_copy(update={"created_at": to_db_timestamp(utc_now())})
        self.db.execute(
            """
            INSERT INTO settings (key, value) VALUES (?, ?)
            ON CONFLICT(key) DO UPDATE SET value = excluded.value
            """,
            (HYPERVISOR_CONFIG_KEY, stored.model_dump_json()),
        )
