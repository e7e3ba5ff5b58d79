from rdbatch.progress import (
    ListFailed,
    Opaque,
    ProcessingAnnounced,
    ReferenceReported,
    classify_line,
    first_meaningful_line,
)


def test_processing_announcement() -> None:
    assert classify_line("==== PROCESSING LIST #3 ====") == ProcessingAnnounced(3)
    assert classify_line("processing list # 12") == ProcessingAnnounced(12)


def test_reference_line() -> None:
    assert classify_line("Payment saved. Reference: C1234567 (copied)") == ReferenceReported("C1234567")


def test_explicit_failures() -> None:
    assert classify_line("Error processing list #2: session expired") == ListFailed(2, "session expired")
    assert classify_line("  List #4: account 020001 locked  ") == ListFailed(4, "account 020001 locked")


def test_other_lines_are_opaque() -> None:
    assert classify_line("Logging in to portal...") == Opaque("Logging in to portal...")
    assert classify_line("List #: 3") == Opaque("List #: 3")
    assert classify_line("Report saved to: /tmp/out.pdf") == Opaque("Report saved to: /tmp/out.pdf")


def test_first_meaningful_line() -> None:
    assert first_meaningful_line("\n  \nTimeout waiting for page\nTraceback") == "Timeout waiting for page"
    assert first_meaningful_line("   ") == "Processing failed."
    assert first_meaningful_line(None) == "Processing failed."
