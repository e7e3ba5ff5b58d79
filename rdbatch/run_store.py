from datetime import UTC, datetime
import json
import logging
import os
from pathlib import Path
import tempfile
import threading

from rdbatch.lists import BatchList
from rdbatch.schemas import RunState, RunStateRecord


logger = logging.getLogger(__name__)

TERMINAL_STATES = (RunState.SUCCESS, RunState.FAILED)


def utc_now() -> datetime:
    return datetime.now(UTC).replace(tzinfo=None)


def record_for_list(batch_list: BatchList) -> RunStateRecord | None:
    signature = batch_list.signature()
    if not signature or batch_list.run_state not in TERMINAL_STATES:
        return None
    return RunStateRecord(
        signature=signature,
        status=batch_list.run_state,
        reference_number=batch_list.reference_number if batch_list.is_success else "",
        failure_reason=batch_list.failure_reason if batch_list.is_failed else "",
        updated_at=utc_now(),
    )


class RunStateStore:
    """Last known outcome per payload signature, kept in one JSON file.

    Every mutation rewrites the whole file through a temp file and an
    atomic rename. Read and write failures are logged and swallowed: the
    in-memory mapping stays authoritative for the running session.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._lock = threading.Lock()
        self._records: dict[str, RunStateRecord] = {}

    @property
    def records(self) -> dict[str, RunStateRecord]:
        with self._lock:
            return dict(self._records)

    def get(self, signature: str) -> RunStateRecord | None:
        with self._lock:
            return self._records.get(signature)

    def load(self) -> dict[str, RunStateRecord]:
        with self._lock:
            self._records = _read_records(self.path)
            return dict(self._records)

    def persist(self, record: RunStateRecord) -> None:
        if not record.signature or record.status not in TERMINAL_STATES:
            return
        with self._lock:
            existing = self._records.get(record.signature)
            if existing is not None and existing.same_outcome(record):
                return
            if record.updated_at is None:
                record = RunStateRecord(
                    signature=record.signature,
                    status=record.status,
                    reference_number=record.reference_number,
                    failure_reason=record.failure_reason,
                    updated_at=utc_now(),
                )
            self._records[record.signature] = record
            self._write()

    def remove(self, signature: str) -> None:
        with self._lock:
            if self._records.pop(signature, None) is None:
                return
            self._write()

    def clear(self) -> None:
        with self._lock:
            self._records.clear()
            self._write()

    def persist_list(self, batch_list: BatchList) -> None:
        """Mirror a list's current state: terminal states upsert, anything else removes."""
        record = record_for_list(batch_list)
        if record is not None:
            self.persist(record)
            return
        signature = batch_list.signature()
        if signature:
            self.remove(signature)

    def apply_to_list(self, batch_list: BatchList) -> bool:
        signature = batch_list.signature()
        if not signature:
            return False
        record = self.get(signature)
        if record is None:
            return False

        if record.status is RunState.SUCCESS:
            if not record.reference_number:
                return False
            if batch_list.is_success and batch_list.reference_number == record.reference_number:
                return False
            batch_list.mark_success(record.reference_number)
            return True

        if batch_list.is_failed and batch_list.failure_reason == record.failure_reason:
            return False
        batch_list.mark_failed(record.failure_reason)
        return True

    def _write(self) -> None:
        ordered = sorted(self._records.values(), key=lambda item: item.updated_at or datetime.min, reverse=True)
        payload = {
            "states": [
                {
                    "signature": item.signature,
                    "status": item.status.value,
                    "reference_number": item.reference_number,
                    "failure_reason": item.failure_reason,
                    "updated_at": item.updated_at.isoformat() if item.updated_at else None,
                }
                for item in ordered
            ]
        }
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                mode="w",
                encoding="utf-8",
                dir=self.path.parent,
                suffix=".tmp",
                delete=False,
            ) as outfile:
                json.dump(payload, outfile, indent=2)
                temp_path = outfile.name
            os.replace(temp_path, self.path)
        except OSError:
            logger.warning("could not write run state file", extra={"path": str(self.path)}, exc_info=True)


def _read_records(path: Path) -> dict[str, RunStateRecord]:
    if not path.exists():
        return {}

    try:
        with path.open("r", encoding="utf-8") as infile:
            payload = json.load(infile)
        items = payload.get("states") or []
    except (OSError, ValueError, AttributeError):
        logger.warning("ignoring unreadable run state file", extra={"path": str(path)})
        return {}

    records: dict[str, RunStateRecord] = {}
    for item in items:
        try:
            signature = str(item.get("signature") or "").strip()
            status = RunState(item.get("status"))
            updated_raw = item.get("updated_at")
            updated_at = datetime.fromisoformat(updated_raw) if updated_raw else None
            if updated_at is not None and updated_at.tzinfo is not None:
                updated_at = updated_at.astimezone(UTC).replace(tzinfo=None)
        except (AttributeError, TypeError, ValueError):
            continue
        if not signature or status not in TERMINAL_STATES:
            continue
        records[signature] = RunStateRecord(
            signature=signature,
            status=status,
            reference_number=str(item.get("reference_number") or ""),
            failure_reason=str(item.get("failure_reason") or ""),
            updated_at=updated_at,
        )
    return records
