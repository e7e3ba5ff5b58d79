from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
import json
import os
from pathlib import Path
import tempfile

from rdbatch.lists import BatchList


def snapshot_lists(lists: Iterable[BatchList], pending_aslaas: Mapping[str, str]) -> dict[str, object]:
    return {
        "generated_at_utc": datetime.now(UTC).replace(tzinfo=None).isoformat(),
        "pending_aslaas_updates": [
            {"account_no": account_no, "aslaas_no": aslaas_no}
            for account_no, aslaas_no in sorted(pending_aslaas.items(), key=lambda item: item[0].casefold())
        ],
        "lists": [
            {
                "list_number": batch_list.ordinal,
                "payment_mode": batch_list.mode.value,
                "status": batch_list.run_state.value,
                "reference_number": batch_list.reference_number,
                "failure_reason": batch_list.failure_reason,
                "items": [
                    {"account_no": entry.account_no, "installment": entry.effective_installment}
                    for entry in batch_list.entries
                ],
            }
            for batch_list in lists
        ],
    }


def write_json(path: Path, payload: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(mode="w", encoding="utf-8", dir=path.parent, suffix=".tmp", delete=False) as outfile:
        json.dump(payload, outfile, indent=2, sort_keys=True)
        outfile.write("\n")
        temp_path = outfile.name
    os.replace(temp_path, path)


def read_lot(path: Path) -> dict[str, object]:
    with path.open("r", encoding="utf-8") as infile:
        payload = json.load(infile)
    if not isinstance(payload, dict):
        raise ValueError("lot snapshot must be a JSON object")
    return payload


def saved_lists(snapshot: Mapping[str, object]) -> list[dict[str, object]]:
    lists = [item for item in snapshot.get("lists") or [] if isinstance(item, dict)]
    return sorted(lists, key=lambda item: as_int(item.get("list_number")))


def saved_pending_aslaas(snapshot: Mapping[str, object]) -> list[tuple[str, str]]:
    pending: list[tuple[str, str]] = []
    for item in snapshot.get("pending_aslaas_updates") or []:
        if not isinstance(item, dict):
            continue
        account_no = str(item.get("account_no") or "").strip()
        if account_no:
            pending.append((account_no, str(item.get("aslaas_no") or "")))
    return pending


def as_int(value: object, default: int = 0) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default
