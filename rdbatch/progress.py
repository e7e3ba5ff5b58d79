from dataclasses import dataclass
import re


PROCESSING_LIST_RE = re.compile(r"PROCESSING LIST #\s*(\d+)", re.IGNORECASE)
REFERENCE_RE = re.compile(r"Reference:\s*([A-Z0-9]+)\b", re.IGNORECASE)
ERROR_PROCESSING_RE = re.compile(r"Error processing list #\s*(\d+)\s*:\s*(.+)$", re.IGNORECASE)
FAILED_LIST_RE = re.compile(r"^\s*List #\s*(\d+)\s*:\s*(.+?)\s*$", re.IGNORECASE)


@dataclass(frozen=True)
class ProcessingAnnounced:
    position: int


@dataclass(frozen=True)
class ReferenceReported:
    reference_number: str


@dataclass(frozen=True)
class ListFailed:
    position: int
    reason: str


@dataclass(frozen=True)
class Opaque:
    text: str


ProgressEvent = ProcessingAnnounced | ReferenceReported | ListFailed | Opaque


def classify_line(line: str) -> ProgressEvent:
    text = line.strip()

    # "Error processing list #n" also contains the announcement pattern.
    match = ERROR_PROCESSING_RE.search(text)
    if match:
        return ListFailed(int(match.group(1)), match.group(2).strip())

    match = PROCESSING_LIST_RE.search(text)
    if match:
        return ProcessingAnnounced(int(match.group(1)))

    match = REFERENCE_RE.search(text)
    if match:
        return ReferenceReported(match.group(1).strip())

    match = FAILED_LIST_RE.match(text)
    if match:
        return ListFailed(int(match.group(1)), match.group(2).strip())

    return Opaque(text)


def first_meaningful_line(text: str | None, fallback: str = "Processing failed.") -> str:
    for line in (text or "").splitlines():
        if line.strip():
            return line.strip()
    return fallback
