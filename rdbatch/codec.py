"""Wire tokens and payload signatures for the batch processor.

A list's entries are rendered as ``accountNo`` (first installment) or
``accountNo_installment``. The same tokens feed two outputs:

* the signature, a comma-joined token string used as the list's identity;
* the payload, ``[tok1, tok2]`` prefixed with the payment mode token.

Tokens are never quoted.
"""

from collections.abc import Iterable
import re

from rdbatch.schemas import PaymentMode


ACCOUNT_TOKEN_RE = re.compile(r"\d+(?:_\d+)?")

SEGMENT_SEPARATOR = ", "


def entry_token(account_no: str, installment: int) -> str:
    account_no = account_no.strip()
    if installment > 1:
        return f"{account_no}_{installment}"
    return account_no


def unique_tokens(pairs: Iterable[tuple[str, int]]) -> list[str]:
    """Tokens for (account, installment) pairs, first occurrence of an account wins."""
    seen: set[str] = set()
    tokens: list[str] = []
    for account_no, installment in pairs:
        key = account_no.strip().casefold()
        if not key or key in seen:
            continue
        seen.add(key)
        tokens.append(entry_token(account_no, installment))
    return tokens


def signature_from_tokens(tokens: Iterable[str]) -> str:
    return ",".join(token for token in tokens if token)


def bracketed(tokens: Iterable[str]) -> str:
    return "[" + SEGMENT_SEPARATOR.join(tokens) + "]"


def with_mode(mode: PaymentMode, tokens: Iterable[str]) -> str:
    return f"{mode.value}:{bracketed(tokens)}"


def combine_segments(segments: Iterable[str]) -> str:
    return SEGMENT_SEPARATOR.join(segments)


def normalize_logged_accounts(raw_accounts: str) -> str:
    # An account containing a literal underscore cannot be told apart from
    # an installment suffix here; tokens are taken at face value.
    return signature_from_tokens(ACCOUNT_TOKEN_RE.findall(raw_accounts or ""))
