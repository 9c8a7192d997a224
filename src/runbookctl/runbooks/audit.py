"""Runbook run audit logging."""

import getpass
import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from runbookctl.core.logging import StructuredLogger
from runbookctl.runbooks.schema import RunbookResult

logger = StructuredLogger(__name__)


class RunbookAuditLogger:
    """Keep a JSON record of every runbook run."""

    def __init__(
        self,
        log_dir: str | Path | None = None,
        max_logs: int = 500,
    ):
        """Initialize audit logger.

        Args:
            log_dir: Directory to store audit logs; None disables file output
            max_logs: Maximum number of runs to retain
        """
        self._log_dir = Path(log_dir).expanduser() if log_dir else None
        self._max_logs = max_logs

    @property
    def log_dir(self) -> Path | None:
        return self._log_dir

    def log_execution(
        self,
        result: RunbookResult,
        user: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Log a runbook run.

        Args:
            result: Runbook run result
            user: User who ran the runbook; defaults to the login name
            metadata: Additional metadata, e.g. the source file

        Returns:
            Audit log ID
        """
        now = datetime.now(timezone.utc)
        audit_id = now.strftime("%Y%m%d_%H%M%S_%f")

        audit_entry = {
            "audit_id": audit_id,
            "timestamp": now.isoformat(),
            "user": user or _current_user(),
            "runbook_name": result.runbook_name,
            "status": result.status.value,
            "mode": result.mode.value,
            "started_at": result.started_at.isoformat(),
            "ended_at": result.ended_at.isoformat() if result.ended_at else None,
            "duration_seconds": result.duration_seconds,
            "summary": {
                "total_steps": len(result.step_results),
                "successful": result.successful_steps,
                "failed": result.failed_steps,
                "skipped": result.skipped_steps,
                "manual": result.manual_steps,
            },
            "failed_step": result.failed_step,
            "error": result.error,
            "metadata": metadata or {},
        }

        if self._log_dir:
            self._write_log(self._log_dir, audit_id, audit_entry, result)

        logger.info(
            "Runbook run recorded",
            audit_id=audit_id,
            runbook=result.runbook_name,
            status=result.status.value,
        )

        return audit_id

    def _write_log(
        self,
        log_dir: Path,
        audit_id: str,
        audit_entry: dict[str, Any],
        result: RunbookResult,
    ) -> None:
        """Write audit log to file."""
        log_dir.mkdir(parents=True, exist_ok=True)

        summary_file = log_dir / f"{audit_id}_summary.json"
        with open(summary_file, "w") as f:
            json.dump(audit_entry, f, indent=2)

        detail_file = log_dir / f"{audit_id}_detail.json"
        with open(detail_file, "w") as f:
            json.dump(result.to_dict(), f, indent=2, default=str)

        self._cleanup_old_logs()

    def _cleanup_old_logs(self) -> None:
        """Remove old audit logs beyond max_logs limit."""
        if not self._log_dir:
            return

        summary_files = sorted(self._log_dir.glob("*_summary.json"))

        if len(summary_files) > self._max_logs:
            for old_file in summary_files[: -self._max_logs]:
                old_file.unlink(missing_ok=True)
                detail_file = old_file.parent / old_file.name.replace("_summary", "_detail")
                detail_file.unlink(missing_ok=True)

    def get_history(
        self,
        runbook_name: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[dict[str, Any]]:
        """Get run history, newest first.

        Args:
            runbook_name: Filter by runbook name
            limit: Maximum entries to return
            offset: Skip first N entries

        Returns:
            List of audit entries
        """
        if not self._log_dir or not self._log_dir.is_dir():
            return []

        entries: list[dict[str, Any]] = []
        summary_files = sorted(self._log_dir.glob("*_summary.json"), reverse=True)

        for summary_file in summary_files:
            try:
                with open(summary_file) as f:
                    entry = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                logger.warning("Unreadable audit log", file=str(summary_file), error=str(e))
                continue

            if runbook_name and entry.get("runbook_name") != runbook_name:
                continue

            entries.append(entry)

        return entries[offset : offset + limit]

    def get_execution(self, audit_id: str) -> dict[str, Any] | None:
        """Get full run details by audit ID.

        Args:
            audit_id: Audit log ID

        Returns:
            Full run result or None
        """
        if not self._log_dir:
            return None

        detail_file = self._log_dir / f"{audit_id}_detail.json"

        if not detail_file.exists():
            return None

        try:
            with open(detail_file) as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("Unreadable audit log", file=str(detail_file), error=str(e))
            return None


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "unknown"
