from collections.abc import Callable, Sequence
from decimal import Decimal
from pathlib import Path

import pytest
from sqlalchemy.orm import Session, sessionmaker

from rdbatch.accounts import AccountDirectory
from rdbatch.config import Settings
from rdbatch.database import build_session_factory
from rdbatch.orchestrator import BatchOrchestrator
from rdbatch.run_store import RunStateStore
from rdbatch.schemas import AslaasUpdate, DopChequeInput, ProcessorResult


ACCOUNT_ROWS = [
    {"account_no": "020001", "account_name": "Asha Patil", "aslaas_no": "AS-1", "amount": "2000"},
    {"account_no": "020002", "account_name": "Ravi Kulkarni", "aslaas_no": "AS-2", "amount": "1500"},
    {"account_no": "020003", "account_name": "Meena Joshi", "aslaas_no": "AS-3", "denomination": "5,000.00 Cr."},
    {"account_no": "020004", "account_name": "Sunil Rao", "aslaas_no": "AS-4", "amount": "10000"},
    {"account_no": "020005", "account_name": "Kavita Shah", "aslaas_no": "", "amount": "500"},
    {"account_no": "020006", "account_name": "Nitin Desai", "aslaas_no": "AS-6", "amount": "9000"},
    {"account_no": "020007", "account_name": "Pooja Nair", "aslaas_no": "AS-7", "amount": "1000"},
]


class ScriptedProcessor:
    """Stands in for the payment script: replays lines, then exits with a fixed code."""

    def __init__(
        self,
        lines: Sequence[str] = (),
        exit_code: int | None = 0,
        error: str | None = None,
        raises: Exception | None = None,
        on_run: Callable[[], None] | None = None,
    ) -> None:
        self.lines = list(lines)
        self.exit_code = exit_code
        self.error = error
        self.raises = raises
        self.on_run = on_run
        self.calls: list[dict[str, object]] = []

    def run(
        self,
        payload: str,
        *,
        aslaas_updates: Sequence[AslaasUpdate] = (),
        dop_cheque_inputs: Sequence[DopChequeInput] = (),
        on_line=None,
    ) -> ProcessorResult:
        self.calls.append(
            {
                "payload": payload,
                "aslaas_updates": list(aslaas_updates),
                "dop_cheque_inputs": list(dop_cheque_inputs),
            }
        )
        if self.on_run is not None:
            self.on_run()
        for line in self.lines:
            if on_line is not None:
                on_line(line)
        if self.raises is not None:
            raise self.raises
        return ProcessorResult(exit_code=self.exit_code, output="\n".join(self.lines), error=self.error)


@pytest.fixture()
def temp_workspace(tmp_path: Path) -> Path:
    (tmp_path / "state").mkdir(parents=True, exist_ok=True)
    (tmp_path / "reports" / "references").mkdir(parents=True, exist_ok=True)
    return tmp_path


@pytest.fixture()
def test_settings(temp_workspace: Path) -> Settings:
    return Settings(
        app_name="rdbatch",
        database_url=f"sqlite:///{temp_workspace / 'test.db'}",
        log_level="INFO",
        state_dir=str(temp_workspace / "state"),
        reference_log_path=str(temp_workspace / "reports" / "references" / "payment_references.txt"),
        processor_command="python3 -u ScheduleArguments.py",
        processor_workdir=str(temp_workspace),
        amount_ceiling=Decimal("20000"),
        schedule_hour_utc=9,
        schedule_minute_utc=30,
    )


@pytest.fixture()
def session_factory(test_settings: Settings) -> sessionmaker[Session]:
    return build_session_factory(test_settings.database_url)


@pytest.fixture()
def directory(session_factory: sessionmaker[Session]) -> AccountDirectory:
    directory = AccountDirectory(session_factory)
    directory.upsert_accounts(ACCOUNT_ROWS)
    return directory


@pytest.fixture()
def store(test_settings: Settings) -> RunStateStore:
    return RunStateStore(test_settings.run_state_path)


@pytest.fixture()
def make_orchestrator(test_settings: Settings, directory: AccountDirectory, store: RunStateStore):
    def factory(processor=None, inputs=None, run_store: RunStateStore | None = None) -> BatchOrchestrator:
        return BatchOrchestrator(
            test_settings,
            directory,
            run_store or store,
            processor or ScriptedProcessor(),
            inputs=inputs,
        )

    return factory


def write_reference_log(path: Path, blocks: Sequence[tuple[str, int, str, str]]) -> None:
    separator = "=" * 80
    parts = []
    for timestamp, list_number, reference, accounts in blocks:
        parts.append(
            f"{separator}\nTimestamp: {timestamp}\nList #: {list_number}\n"
            f"Reference Number: {reference}\nAccounts: {accounts}\n{separator}\n"
        )
    path.write_text("\n".join(parts), encoding="utf-8")
