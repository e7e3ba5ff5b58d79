"""Recover list outcomes from the append-only payment reference log.

The batch processor appends one block per completed list::

    ================================================================================
    Timestamp: 2026-02-14 10:32:11
    List #: 1
    Reference Number: C123456789
    Accounts: [020001, 020002_2]
    ================================================================================

When the run-state file is lost or stale, a list whose current signature
matches a logged block is known to have been paid already.
"""

from collections.abc import Iterable
from datetime import UTC, datetime
import logging
from pathlib import Path
import re

from rdbatch.codec import normalize_logged_accounts
from rdbatch.lists import BatchList
from rdbatch.run_store import RunStateStore
from rdbatch.schemas import ReferenceLogEntry


logger = logging.getLogger(__name__)

REFERENCE_ENTRY_RE = re.compile(
    r"Timestamp:\s*(?P<timestamp>[^\r\n]+)\s*[\r\n]+"
    r"List #:\s*(?P<list>\d+)\s*[\r\n]+"
    r"Reference Number:\s*(?P<reference>[^\r\n]+)\s*[\r\n]+"
    r"Accounts:\s*(?P<accounts>[^\r\n]+)",
    re.IGNORECASE,
)

_TIMESTAMP_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%d-%m-%Y %H:%M:%S",
    "%d/%m/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
    "%d-%b-%Y %H:%M:%S",
)


def parse_timestamp(raw: str) -> datetime:
    """Best-effort timestamp parse; unreadable values sort before everything."""
    raw = raw.strip()
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        parsed = None
        for fmt in _TIMESTAMP_FORMATS:
            try:
                parsed = datetime.strptime(raw, fmt)
                break
            except ValueError:
                continue
    if parsed is None:
        return datetime.min
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(UTC).replace(tzinfo=None)
    return parsed


def iter_log_entries(log_text: str) -> Iterable[ReferenceLogEntry]:
    for match in REFERENCE_ENTRY_RE.finditer(log_text or ""):
        reference = match.group("reference").strip()
        signature = normalize_logged_accounts(match.group("accounts"))
        if not reference or not signature:
            continue
        yield ReferenceLogEntry(
            timestamp=parse_timestamp(match.group("timestamp")),
            list_ordinal=int(match.group("list")),
            reference_number=reference,
            accounts_raw=match.group("accounts").strip(),
            signature=signature,
        )


def build_latest_index(log_text: str) -> dict[str, ReferenceLogEntry]:
    index: dict[str, ReferenceLogEntry] = {}
    for entry in iter_log_entries(log_text):
        existing = index.get(entry.signature)
        # Later or equal timestamps replace, so the last block in the file wins a tie.
        if existing is None or entry.timestamp >= existing.timestamp:
            index[entry.signature] = entry
    return index


def load_latest_index(path: Path | str) -> dict[str, ReferenceLogEntry]:
    path = Path(path)
    if not path.exists():
        return {}
    try:
        log_text = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        logger.warning("could not read reference log", extra={"path": str(path)})
        return {}
    return build_latest_index(log_text)


def reconcile(
    lists: Iterable[BatchList],
    index: dict[str, ReferenceLogEntry],
    store: RunStateStore | None = None,
) -> list[BatchList]:
    """Mark lists found in the log as Success. Lists already in Success are never touched."""
    if not index:
        return []

    recovered: list[BatchList] = []
    for batch_list in lists:
        if batch_list.is_success or not batch_list.has_processable_entries:
            continue

        signature = batch_list.signature()
        entry = index.get(signature) if signature else None
        if entry is None:
            continue

        batch_list.mark_success(entry.reference_number)
        if store is not None:
            store.persist_list(batch_list)
        recovered.append(batch_list)
        logger.info(
            "list reconciled from reference log",
            extra={"list_ordinal": batch_list.ordinal, "reference_number": entry.reference_number},
        )
    return recovered
