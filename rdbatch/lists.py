"""Payment lists: bounded, ordered collections of account entries.

A list owns its run state. Terminal states are sticky until the
payload they were recorded for changes: once a list reaches Success or
Failed it remembers the signature and payment mode of that outcome, and
any later edit that changes either one drops it back to Pending.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass
from decimal import Decimal
import logging

from rdbatch.codec import bracketed, entry_token, signature_from_tokens, unique_tokens, with_mode
from rdbatch.schemas import AccountRecord, AddResult, PaymentMode, RunState


logger = logging.getLogger(__name__)

DEFAULT_AMOUNT_CEILING = Decimal("20000")
DUE_SOON_DAYS = 30
FALLBACK_FAILURE_REASON = "Processing failed."

AccountLookup = Callable[[str], AccountRecord | None]
StateListener = Callable[["BatchList"], None]


@dataclass(eq=False)
class ListEntry:
    account_no: str
    installment: int = 1
    account: AccountRecord | None = None
    due_soon: bool = False

    @property
    def effective_installment(self) -> int:
        return self.installment if self.installment > 0 else 1

    @property
    def participates(self) -> bool:
        return self.account is not None and bool(self.account_no.strip())

    @property
    def total(self) -> Decimal:
        if self.account is None:
            return Decimal("0")
        return self.account.amount_value() * self.effective_installment

    @property
    def token(self) -> str:
        return entry_token(self.account_no, self.effective_installment)


class BatchList:
    def __init__(
        self,
        ordinal: int,
        *,
        mode: PaymentMode | str = PaymentMode.CASH,
        amount_ceiling: Decimal = DEFAULT_AMOUNT_CEILING,
    ) -> None:
        self.ordinal = max(1, ordinal)
        self.amount_ceiling = amount_ceiling
        self.run_state = RunState.PENDING
        self.reference_number = ""
        self.failure_reason = ""
        self.message = ""
        self._entries: list[ListEntry] = []
        self._mode = PaymentMode.parse(mode)
        self._last_processed_signature = ""
        self._last_processed_mode = self._mode
        self._listeners: list[StateListener] = []

    def __repr__(self) -> str:
        return f"BatchList(ordinal={self.ordinal}, state={self.run_state.value}, signature={self.signature()!r})"

    @property
    def name(self) -> str:
        if self.run_state is RunState.SUCCESS and self.reference_number:
            return self.reference_number
        return f"List {self.ordinal}"

    @property
    def entries(self) -> tuple[ListEntry, ...]:
        return tuple(self._entries)

    @property
    def participating_entries(self) -> list[ListEntry]:
        return [entry for entry in self._entries if entry.participates]

    @property
    def mode(self) -> PaymentMode:
        return self._mode

    @property
    def total_amount(self) -> Decimal:
        return sum((entry.total for entry in self._entries), Decimal("0"))

    @property
    def has_amount_limit(self) -> bool:
        return self._mode.has_amount_limit

    @property
    def remaining_amount(self) -> Decimal | None:
        if not self.has_amount_limit:
            return None
        return max(Decimal("0"), self.amount_ceiling - self.total_amount)

    @property
    def is_full(self) -> bool:
        return self.has_amount_limit and self.total_amount >= self.amount_ceiling

    @property
    def has_processable_entries(self) -> bool:
        return any(entry.participates for entry in self._entries)

    @property
    def is_success(self) -> bool:
        return self.run_state is RunState.SUCCESS

    @property
    def is_failed(self) -> bool:
        return self.run_state is RunState.FAILED

    def account_numbers(self) -> list[str]:
        return [entry.account_no for entry in self._entries if entry.account_no.strip()]

    def subscribe(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: StateListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def add_entry(
        self,
        account_no: str,
        installment: int,
        lookup: AccountLookup,
        existing_accounts: Iterable[str] | None = None,
    ) -> AddResult:
        account_no = (account_no or "").strip()
        installment = max(1, installment)

        if not account_no:
            return self._reply(False, "Enter an account number.")

        account = lookup(account_no)
        if account is None:
            return self._reply(False, f"{account_no} not found in database.")

        existing = self.account_numbers() if existing_accounts is None else existing_accounts
        key = account_no.casefold()
        if any(other.strip().casefold() == key for other in existing):
            return self._reply(False, f"{account_no} already exists in a list.")

        amount_to_add = account.amount_value() * installment
        if self.has_amount_limit and self.total_amount + amount_to_add > self.amount_ceiling:
            return self._reply(False, f"Cannot add {account_no}. This list is limited to Rs. {self.amount_ceiling:,.0f}.")

        due_soon = account.is_due_within(DUE_SOON_DAYS)
        self._entries.append(ListEntry(account_no=account_no, installment=installment, account=account, due_soon=due_soon))
        self._entries_changed()
        return self._reply(True, f"{account_no} added (due soon)." if due_soon else f"{account_no} added.")

    def remove_entry(self, entry: ListEntry | None) -> bool:
        if entry is None or entry not in self._entries:
            return False
        self._entries.remove(entry)
        self.message = f"{entry.account_no} removed."
        self._entries_changed()
        return True

    def find_entry(self, account_no: str) -> ListEntry | None:
        key = account_no.strip().casefold()
        for entry in self._entries:
            if entry.account_no.strip().casefold() == key:
                return entry
        return None

    def clear(self) -> None:
        self._entries.clear()
        self.message = "List cleared."
        self._entries_changed()

    def set_mode(self, mode: PaymentMode | str) -> None:
        mode = PaymentMode.parse(mode)
        if mode is self._mode:
            return
        self._mode = mode
        if not self._last_processed_signature or self._last_processed_mode is mode:
            return
        self._last_processed_signature = ""
        self._last_processed_mode = mode
        self.mark_pending()

    def tokens(self) -> list[str]:
        return unique_tokens((entry.account_no, entry.effective_installment) for entry in self.participating_entries)

    def signature(self) -> str:
        return signature_from_tokens(self.tokens())

    def payload_token(self) -> str:
        return bracketed(self.tokens())

    def payload_with_mode(self) -> str:
        return with_mode(self._mode, self.tokens())

    def mark_pending(self) -> None:
        self.run_state = RunState.PENDING
        self.reference_number = ""
        self.failure_reason = ""
        self._notify()

    def mark_processing(self) -> None:
        self.run_state = RunState.PROCESSING
        self.reference_number = ""
        self.failure_reason = ""
        self._notify()

    def mark_success(self, reference_number: str) -> None:
        self.reference_number = (reference_number or "").strip()
        self.failure_reason = ""
        self.run_state = RunState.SUCCESS
        self._remember_outcome()
        self._notify()

    def mark_failed(self, reason: str | None) -> None:
        self.failure_reason = (reason or "").strip() or FALLBACK_FAILURE_REASON
        self.reference_number = ""
        self.run_state = RunState.FAILED
        self._remember_outcome()
        self._notify()

    def _remember_outcome(self) -> None:
        self._last_processed_signature = self.signature()
        self._last_processed_mode = self._mode

    def _entries_changed(self) -> None:
        if not self._last_processed_signature:
            return
        if self.signature() == self._last_processed_signature:
            return
        logger.debug("list payload changed, resetting run state", extra={"list_ordinal": self.ordinal})
        self._last_processed_signature = ""
        self.mark_pending()

    def _reply(self, added: bool, message: str) -> AddResult:
        self.message = message
        return AddResult(added=added, message=message)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)
