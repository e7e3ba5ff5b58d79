from decimal import Decimal

from rdbatch.lists import BatchList, ListEntry
from rdbatch.schemas import AccountRecord, PaymentMode, RunState


ACCOUNTS = {
    "020001": AccountRecord("020001", account_name="Asha Patil", amount=Decimal("2000")),
    "020002": AccountRecord("020002", account_name="Ravi Kulkarni", amount=Decimal("1500")),
    "020003": AccountRecord("020003", denomination="5,000.00 Cr."),
    "020004": AccountRecord("020004", amount=Decimal("10000")),
    "020006": AccountRecord("020006", amount=Decimal("9000")),
    "020007": AccountRecord("020007", amount=Decimal("1000")),
}
lookup = ACCOUNTS.get


def build_list(*entries: tuple[str, int], mode: str = "cash") -> BatchList:
    batch_list = BatchList(1, mode=mode)
    for account_no, installment in entries:
        assert batch_list.add_entry(account_no, installment, lookup).added
    return batch_list


def test_signature_payload_and_total_for_mixed_installments() -> None:
    batch_list = build_list(("020001", 1), ("020002", 2))

    assert batch_list.signature() == "020001,020002_2"
    assert batch_list.payload_token() == "[020001, 020002_2]"
    assert batch_list.payload_with_mode() == "cash:[020001, 020002_2]"
    assert batch_list.total_amount == Decimal("5000")


def test_signature_ignores_payment_mode() -> None:
    batch_list = build_list(("020001", 1), ("020002", 2))
    before = batch_list.signature()

    batch_list.set_mode(PaymentMode.NON_DOP_CHEQUE)

    assert batch_list.signature() == before
    assert batch_list.payload_with_mode() == "non_dop_cheque:[020001, 020002_2]"


def test_amount_falls_back_to_denomination() -> None:
    batch_list = build_list(("020003", 2))
    assert batch_list.total_amount == Decimal("10000")


def test_add_rejects_blank_unknown_and_duplicate_accounts() -> None:
    batch_list = build_list(("020001", 1))

    blank = batch_list.add_entry("   ", 1, lookup)
    unknown = batch_list.add_entry("999999", 1, lookup)
    duplicate = batch_list.add_entry("020002", 1, lookup, existing_accounts=["020001", "020002"])

    assert not blank.added and blank.message == "Enter an account number."
    assert not unknown.added and unknown.message == "999999 not found in database."
    assert not duplicate.added and duplicate.message == "020002 already exists in a list."
    assert batch_list.signature() == "020001"


def test_ceiling_rejection_leaves_total_unchanged() -> None:
    batch_list = build_list(("020004", 1), ("020006", 1))
    before = batch_list.total_amount

    result = batch_list.add_entry("020001", 1, lookup)

    assert not result.added
    assert "limited to Rs. 20,000" in result.message
    assert batch_list.total_amount == before


def test_ceiling_allows_exactly_the_limit() -> None:
    batch_list = build_list(("020004", 1), ("020006", 1))

    result = batch_list.add_entry("020007", 1, lookup)

    assert result.added
    assert batch_list.total_amount == Decimal("20000")
    assert batch_list.is_full


def test_dop_cheque_lists_have_no_ceiling() -> None:
    batch_list = build_list(("020004", 1), ("020006", 1), mode="dop_cheque")

    result = batch_list.add_entry("020001", 2, lookup)

    assert result.added
    assert batch_list.total_amount == Decimal("23000")
    assert batch_list.remaining_amount is None
    assert not batch_list.is_full


def test_installment_below_one_is_treated_as_one() -> None:
    batch_list = build_list(("020001", 0))
    assert batch_list.signature() == "020001"


def test_entry_without_account_is_not_part_of_payload() -> None:
    batch_list = build_list(("020001", 1))
    batch_list._entries.append(ListEntry(account_no="020099", installment=3))

    assert batch_list.signature() == "020001"
    assert batch_list.payload_token() == "[020001]"
    assert batch_list.total_amount == Decimal("2000")


def test_empty_list_is_not_processable() -> None:
    batch_list = BatchList(2)

    assert batch_list.signature() == ""
    assert batch_list.payload_with_mode() == "cash:[]"
    assert not batch_list.has_processable_entries


def test_changing_entries_after_success_resets_to_pending() -> None:
    batch_list = build_list(("020001", 1), ("020002", 1))
    batch_list.mark_success("REF1")
    assert batch_list.name == "REF1"

    batch_list.remove_entry(batch_list.find_entry("020002"))

    assert batch_list.run_state is RunState.PENDING
    assert batch_list.reference_number == ""
    assert batch_list.name == "List 1"


def test_adding_entry_after_failure_resets_to_pending() -> None:
    batch_list = build_list(("020001", 1))
    batch_list.mark_failed("portal down")

    batch_list.add_entry("020002", 1, lookup)

    assert batch_list.run_state is RunState.PENDING
    assert batch_list.failure_reason == ""


def test_edits_that_keep_the_signature_do_not_reset_state() -> None:
    batch_list = build_list(("020001", 1))
    batch_list.mark_failed("portal down")
    events: list[RunState] = []
    batch_list.subscribe(lambda changed: events.append(changed.run_state))

    assert batch_list.remove_entry(None) is False
    assert batch_list.remove_entry(ListEntry(account_no="020001")) is False
    batch_list.set_mode("cash")
    rejected = batch_list.add_entry("020001", 1, lookup)

    assert not rejected.added
    assert batch_list.run_state is RunState.FAILED
    assert batch_list.failure_reason == "portal down"
    assert events == []


def test_mode_change_after_outcome_resets_to_pending() -> None:
    batch_list = build_list(("020001", 1))
    batch_list.mark_success("REF1")

    batch_list.set_mode("DOP Cheque")

    assert batch_list.mode is PaymentMode.DOP_CHEQUE
    assert batch_list.run_state is RunState.PENDING


def test_mode_change_before_any_outcome_keeps_pending_quietly() -> None:
    batch_list = build_list(("020001", 1))
    events: list[RunState] = []
    batch_list.subscribe(lambda changed: events.append(changed.run_state))

    batch_list.set_mode("non_dop_cheque")

    assert batch_list.run_state is RunState.PENDING
    assert events == []


def test_listeners_see_every_transition() -> None:
    batch_list = build_list(("020001", 1))
    events: list[RunState] = []
    batch_list.subscribe(lambda changed: events.append(changed.run_state))

    batch_list.mark_processing()
    batch_list.mark_failed("")

    assert events == [RunState.PROCESSING, RunState.FAILED]
    assert batch_list.failure_reason == "Processing failed."
