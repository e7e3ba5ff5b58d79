from rdbatch.codec import combine_segments, entry_token, normalize_logged_accounts, unique_tokens, with_mode
from rdbatch.schemas import PaymentMode


def test_entry_token_omits_first_installment() -> None:
    assert entry_token("020001", 1) == "020001"
    assert entry_token(" 020002 ", 3) == "020002_3"


def test_unique_tokens_keeps_first_occurrence_of_an_account() -> None:
    tokens = unique_tokens([("020001", 1), ("020002", 2), ("020001", 4), ("", 1)])
    assert tokens == ["020001", "020002_2"]


def test_combined_payload_joins_segments_in_order() -> None:
    payload = combine_segments(
        [
            with_mode(PaymentMode.CASH, ["020001", "020002_2"]),
            with_mode(PaymentMode.DOP_CHEQUE, ["020004"]),
        ]
    )
    assert payload == "cash:[020001, 020002_2], dop_cheque:[020004]"


def test_logged_accounts_normalize_to_signature() -> None:
    assert normalize_logged_accounts("[020001, 020002_2]") == "020001,020002_2"
    assert normalize_logged_accounts("['020001', \"020003\"]") == "020001,020003"
    assert normalize_logged_accounts("n/a") == ""


def test_payment_mode_parse_accepts_labels() -> None:
    assert PaymentMode.parse("DOP Cheque") is PaymentMode.DOP_CHEQUE
    assert PaymentMode.parse("Non DOP Cheque") is PaymentMode.NON_DOP_CHEQUE
    assert PaymentMode.parse("something else") is PaymentMode.CASH
    assert not PaymentMode.DOP_CHEQUE.has_amount_limit
