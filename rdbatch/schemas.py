from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from enum import Enum


class RunState(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    SUCCESS = "Success"
    FAILED = "Failed"


class PaymentMode(str, Enum):
    CASH = "cash"
    DOP_CHEQUE = "dop_cheque"
    NON_DOP_CHEQUE = "non_dop_cheque"

    @classmethod
    def parse(cls, value: "str | PaymentMode | None") -> "PaymentMode":
        """Accept wire tokens and display labels ("DOP Cheque"); anything else is cash."""
        if isinstance(value, PaymentMode):
            return value
        normalized = (value or "").strip().lower().replace(" ", "_")
        for mode in cls:
            if mode.value == normalized:
                return mode
        return cls.CASH

    @property
    def has_amount_limit(self) -> bool:
        return self is not PaymentMode.DOP_CHEQUE


class ProcessMode(str, Enum):
    ALL = "all"
    RETRY_FAILED_ONLY = "retry_failed_only"


_DUE_DATE_FORMATS = ("%Y-%m-%d", "%d-%b-%Y", "%d-%m-%Y", "%d/%m/%Y")


@dataclass(frozen=True)
class AccountRecord:
    account_no: str
    account_name: str = ""
    aslaas_no: str = ""
    denomination: str = ""
    amount: Decimal = Decimal("0")
    month_paid_upto: int = 0
    next_installment_date: str = ""
    is_active: bool = True

    def amount_value(self) -> Decimal:
        if self.amount > 0:
            return self.amount
        cleaned = self.denomination.replace("Cr.", "").replace(",", "").strip()
        if not cleaned:
            return Decimal("0")
        try:
            return Decimal(cleaned)
        except InvalidOperation:
            return Decimal("0")

    def next_installment_on(self) -> date | None:
        raw = self.next_installment_date.strip()
        for fmt in _DUE_DATE_FORMATS:
            try:
                return datetime.strptime(raw, fmt).date()
            except ValueError:
                continue
        return None

    def is_due_within(self, days: int, today: date | None = None) -> bool:
        due = self.next_installment_on()
        if due is None:
            return False
        today = today or date.today()
        return today <= due <= today + timedelta(days=days)


@dataclass(frozen=True)
class AslaasUpdate:
    account_no: str
    aslaas_no: str


@dataclass(frozen=True)
class DopChequeInput:
    list_index: int
    account_no: str
    cheque_no: str
    payment_account_no: str


@dataclass(frozen=True)
class AslaasRequest:
    account_no: str
    account_name: str
    suggested_aslaas_no: str = "APPLIED"


@dataclass(frozen=True)
class DopChequeRequest:
    list_ordinal: int
    list_name: str
    account_no: str
    account_name: str
    installment: int
    suggested_cheque_no: str = ""
    suggested_payment_account_no: str = ""


@dataclass(frozen=True)
class DopChequeResponse:
    cheque_no: str
    payment_account_no: str


@dataclass(frozen=True)
class RunStateRecord:
    signature: str
    status: RunState
    reference_number: str = ""
    failure_reason: str = ""
    updated_at: datetime | None = None

    def same_outcome(self, other: "RunStateRecord") -> bool:
        return (
            self.signature == other.signature
            and self.status == other.status
            and self.reference_number == other.reference_number
            and self.failure_reason == other.failure_reason
        )


@dataclass(frozen=True)
class ReferenceLogEntry:
    timestamp: datetime
    list_ordinal: int
    reference_number: str
    accounts_raw: str
    signature: str


@dataclass(frozen=True)
class AddResult:
    added: bool
    message: str


@dataclass(frozen=True)
class ProcessorResult:
    exit_code: int | None
    output: str
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.exit_code == 0


@dataclass(frozen=True)
class BatchResult:
    status: str
    message: str
    selected: int = 0
    succeeded: int = 0
    failed: int = 0
    reference_numbers: tuple[str, ...] = field(default_factory=tuple)
