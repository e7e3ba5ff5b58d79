from collections.abc import Iterable
from decimal import Decimal, InvalidOperation
import json
import logging
from pathlib import Path

from sqlalchemy import select
from sqlalchemy.orm import Session, sessionmaker

from rdbatch.db_models import Account, utc_now
from rdbatch.schemas import AccountRecord, AslaasUpdate


logger = logging.getLogger(__name__)

DEFAULT_ASLAAS = "APPLIED"


def normalize_aslaas(value: str | None) -> str:
    value = (value or "").strip()
    return value.upper() if value else DEFAULT_ASLAAS


def to_record(account: Account) -> AccountRecord:
    return AccountRecord(
        account_no=account.account_no,
        account_name=account.account_name or "",
        aslaas_no=account.aslaas_no or "",
        denomination=account.denomination or "",
        amount=Decimal(account.amount or 0),
        month_paid_upto=account.month_paid_upto or 0,
        next_installment_date=account.next_installment_date or "",
        is_active=bool(account.is_active),
    )


class AccountDirectory:
    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self.session_factory = session_factory

    def get_account(self, account_no: str) -> AccountRecord | None:
        account_no = (account_no or "").strip()
        if not account_no:
            return None
        with self.session_factory() as db:
            stmt = select(Account).where(Account.account_no == account_no)
            account = db.execute(stmt).scalar_one_or_none()
            return to_record(account) if account is not None else None

    def save_aslaas_updates(self, updates: Iterable[AslaasUpdate]) -> int:
        normalized = {
            item.account_no.strip(): normalize_aslaas(item.aslaas_no)
            for item in updates
            if item.account_no.strip()
        }
        if not normalized:
            return 0

        with self.session_factory() as db:
            stmt = select(Account).where(Account.account_no.in_(normalized.keys()))
            accounts = db.execute(stmt).scalars().all()
            for account in accounts:
                account.aslaas_no = normalized[account.account_no]
                account.last_updated = utc_now()
            db.commit()
            logger.info("aslaas updates saved", extra={"count": len(accounts)})
            return len(accounts)

    def upsert_accounts(self, rows: Iterable[dict[str, object]]) -> int:
        count = 0
        with self.session_factory() as db:
            for row in rows:
                account_no = str(row.get("account_no", "")).strip()
                if not account_no:
                    continue
                account = db.execute(select(Account).where(Account.account_no == account_no)).scalar_one_or_none()
                if account is None:
                    account = Account(account_no=account_no)
                    db.add(account)
                account.account_name = str(row.get("account_name", "")).strip()
                aslaas = str(row.get("aslaas_no") or "").strip()
                account.aslaas_no = aslaas or None
                account.denomination = str(row.get("denomination", "")).strip()
                account.amount = _parse_amount(row.get("amount"))
                account.month_paid_upto = int(row.get("month_paid_upto") or 0)
                account.next_installment_date = str(row.get("next_installment_date", "")).strip()
                account.is_active = bool(row.get("is_active", True))
                account.last_updated = utc_now()
                count += 1
            db.commit()
        return count


def _parse_amount(value: object) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value).replace(",", "").strip())
    except InvalidOperation:
        return Decimal("0")


def load_account_rows(input_path: Path) -> list[dict[str, object]]:
    if not input_path.exists():
        raise FileNotFoundError(f"input file not found: {input_path}")

    rows: list[dict[str, object]] = []
    with input_path.open("r", encoding="utf-8") as infile:
        for line in infile:
            line = line.strip()
            if not line:
                continue
            rows.append(json.loads(line))
    return rows
