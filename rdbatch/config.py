from dataclasses import dataclass
from decimal import Decimal
import os
from pathlib import Path

from dotenv import load_dotenv


load_dotenv()


@dataclass(frozen=True)
class Settings:
    app_name: str
    database_url: str
    log_level: str
    state_dir: str
    reference_log_path: str
    processor_command: str
    processor_workdir: str
    amount_ceiling: Decimal
    schedule_hour_utc: int
    schedule_minute_utc: int

    @property
    def run_state_path(self) -> Path:
        return Path(self.state_dir) / "list_processing_state.json"

    @property
    def lot_snapshot_path(self) -> Path:
        return Path(self.state_dir) / "list_lot_snapshot.json"


def get_settings() -> Settings:
    return Settings(
        app_name=os.getenv("APP_NAME", "rdbatch"),
        database_url=os.getenv("DATABASE_URL", "sqlite:///./accounts.db"),
        log_level=os.getenv("LOG_LEVEL", "INFO"),
        state_dir=os.getenv("STATE_DIR", "./state"),
        reference_log_path=os.getenv("REFERENCE_LOG_PATH", "./reports/references/payment_references.txt"),
        processor_command=os.getenv("PROCESSOR_COMMAND", "python3 -u ScheduleArguments.py"),
        processor_workdir=os.getenv("PROCESSOR_WORKDIR", "."),
        amount_ceiling=Decimal(os.getenv("AMOUNT_CEILING", "20000")),
        schedule_hour_utc=int(os.getenv("SCHEDULE_HOUR_UTC", "9")),
        schedule_minute_utc=int(os.getenv("SCHEDULE_MINUTE_UTC", "30")),
    )
