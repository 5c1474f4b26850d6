"""Append-only audit log of operation attempts and outcomes."""

import json
from pathlib import Path

from pydantic import ValidationError

from node_pilot.exceptions import ConfigurationError
from node_pilot.logging_config import get_logger
from node_pilot.models.operation import AuditRecord

logger = get_logger(__name__)


class AuditLogger:
    """Records every step and plan outcome.

    Records are kept in memory and, when a path is given, appended to a
    JSON Lines file. Existing lines are never rewritten.
    """

    def __init__(self, path: str | Path | None = None):
        self.path = Path(path).expanduser() if path else None
        self._records: list[AuditRecord] = []
        if self.path is not None:
            try:
                self.path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise ConfigurationError(
                    f"Cannot create audit log directory: {self.path.parent}", str(e)
                )

    @property
    def records(self) -> tuple[AuditRecord, ...]:
        return tuple(self._records)

    def record(self, record: AuditRecord) -> AuditRecord:
        """Append one record."""
        self._records.append(record)
        logger.info(
            f"audit: context={record.context} plan={record.plan_id} "
            f"member={record.member or '-'} step={record.step} outcome={record.outcome.value}"
            + (f" reason={record.reason}" if record.reason else "")
        )

        if self.path is not None:
            try:
                with open(self.path, "a") as f:
                    f.write(record.model_dump_json() + "\n")
            except OSError as e:
                logger.error(f"Failed to append to audit log {self.path}: {e}")
        return record

    def read(self, limit: int | None = None) -> list[AuditRecord]:
        """Read records back from the audit file (most recent last)."""
        if self.path is None or not self.path.exists():
            records = list(self._records)
        else:
            records = []
            with open(self.path) as f:
                for number, line in enumerate(f, start=1):
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        records.append(AuditRecord.model_validate(json.loads(line)))
                    except (json.JSONDecodeError, ValidationError) as e:
                        logger.warning(f"Skipping unreadable audit line {number}: {e}")
        if limit is not None:
            records = records[-limit:]
        return records
