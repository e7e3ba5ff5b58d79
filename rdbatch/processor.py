from collections.abc import Callable, Sequence
import json
import logging
import os
from pathlib import Path
import shlex
import subprocess

from rdbatch.schemas import AslaasUpdate, DopChequeInput, ProcessorResult


logger = logging.getLogger(__name__)

LineCallback = Callable[[str], None]


def build_arguments(
    payload: str,
    *,
    aslaas_updates: Sequence[AslaasUpdate] = (),
    dop_cheque_inputs: Sequence[DopChequeInput] = (),
) -> list[str]:
    args = ["--bulk", payload, "--pay-mode", "cash"]

    cheques = [
        {
            "list_index": item.list_index,
            "account_no": item.account_no.strip(),
            "cheque_no": item.cheque_no.strip(),
            "payment_account_no": item.payment_account_no.strip(),
        }
        for item in dop_cheque_inputs
        if item.list_index > 0 and item.account_no.strip() and item.cheque_no.strip() and item.payment_account_no.strip()
    ]
    if cheques:
        args.extend(["--dop-cheque-data", json.dumps(cheques)])

    updates = [
        {"account_no": item.account_no.strip(), "aslaas_no": item.aslaas_no.strip() or "APPLIED"}
        for item in aslaas_updates
        if item.account_no.strip()
    ]
    if updates:
        args.extend(["--aslaas-updates", json.dumps(updates)])

    return args


class BatchProcessor:
    """Runs the external payment script and streams its output line by line.

    stderr is folded into stdout so lines reach the caller in the order the
    script wrote them. The call blocks until the child exits.
    """

    def __init__(self, command: str | Sequence[str], workdir: str | Path = ".") -> None:
        self.command = shlex.split(command) if isinstance(command, str) else list(command)
        self.workdir = Path(workdir)

    def run(
        self,
        payload: str,
        *,
        aslaas_updates: Sequence[AslaasUpdate] = (),
        dop_cheque_inputs: Sequence[DopChequeInput] = (),
        on_line: LineCallback | None = None,
    ) -> ProcessorResult:
        cmd = self.command + build_arguments(
            payload,
            aslaas_updates=aslaas_updates,
            dop_cheque_inputs=dop_cheque_inputs,
        )
        env = os.environ.copy()
        env["PYTHONUNBUFFERED"] = "1"
        env["PYTHONUTF8"] = "1"
        env["PYTHONIOENCODING"] = "utf-8"

        logger.info("starting batch processor", extra={"command": self.command, "workdir": str(self.workdir)})
        output: list[str] = []
        try:
            with subprocess.Popen(
                cmd,
                cwd=self.workdir,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            ) as process:
                for raw_line in process.stdout:
                    line = raw_line.rstrip("\r\n")
                    output.append(line)
                    if on_line is not None:
                        on_line(line)
                exit_code = process.wait()
        except OSError as exc:
            logger.error("batch processor could not be started", extra={"command": self.command})
            return ProcessorResult(exit_code=None, output="\n".join(output), error=f"Error executing script: {exc}")

        logger.info("batch processor finished", extra={"exit_code": exit_code})
        return ProcessorResult(exit_code=exit_code, output="\n".join(output))
