import argparse
import logging
from pathlib import Path

from rdbatch.accounts import AccountDirectory, load_account_rows
from rdbatch.config import Settings, get_settings
from rdbatch.database import build_session_factory
from rdbatch.orchestrator import BatchOrchestrator, InputProvider
from rdbatch.processor import BatchProcessor
from rdbatch.run_store import RunStateStore
from rdbatch.scheduler import start_scheduler
from rdbatch.schemas import AslaasRequest, DopChequeRequest, DopChequeResponse, PaymentMode, ProcessMode


class ConsolePrompts:
    """Asks for auxiliary inputs on the terminal. End of input cancels."""

    def request_aslaas(self, request: AslaasRequest) -> str | None:
        prompt = f"ASLAAS number for {request.account_no} ({request.account_name or '-'}) [{request.suggested_aslaas_no}]: "
        try:
            answer = input(prompt).strip()
        except EOFError:
            return None
        return answer or request.suggested_aslaas_no

    def request_dop_cheque(self, request: DopChequeRequest) -> DopChequeResponse | None:
        print(f"DOP cheque for {request.list_name}: {request.account_no} ({request.account_name}) x{request.installment}")
        try:
            cheque_no = input(f"  cheque number [{request.suggested_cheque_no}]: ").strip()
            payment_account_no = input(f"  paying account number [{request.suggested_payment_account_no}]: ").strip()
        except EOFError:
            return None
        return DopChequeResponse(
            cheque_no=cheque_no or request.suggested_cheque_no,
            payment_account_no=payment_account_no or request.suggested_payment_account_no,
        )


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Batch recurring-deposit payment lists")
    subparsers = parser.add_subparsers(dest="command", required=True)

    import_parser = subparsers.add_parser("import-accounts", help="load account rows from a JSON-lines file")
    import_parser.add_argument("path", help="JSON-lines file with one account per line")

    add_parser = subparsers.add_parser("add", help="add an account to a list")
    add_parser.add_argument("--list", dest="list_number", type=int, default=1, help="1-based list number")
    add_parser.add_argument("--account", required=True, help="account number")
    add_parser.add_argument("--installment", type=int, default=1, help="number of installments to pay")

    remove_parser = subparsers.add_parser("remove", help="remove an account from a list")
    remove_parser.add_argument("--list", dest="list_number", type=int, default=1)
    remove_parser.add_argument("--account", required=True)

    mode_parser = subparsers.add_parser("mode", help="set a list's payment mode")
    mode_parser.add_argument("--list", dest="list_number", type=int, default=1)
    mode_parser.add_argument("--mode", required=True, choices=[mode.value for mode in PaymentMode])

    subparsers.add_parser("show", help="print the saved lot")

    process_parser = subparsers.add_parser("process", help="submit lists to the batch processor")
    process_parser.add_argument("--retry-failed", action="store_true", help="only resubmit failed lists")

    subparsers.add_parser("reconcile", help="recover outcomes from the reference log")
    subparsers.add_parser("clear", help="delete all lists and stored run state")

    schedule_parser = subparsers.add_parser("schedule", help="process the saved lot daily")
    schedule_parser.add_argument("--run-now", action="store_true", help="also run once immediately")

    return parser.parse_args()


def build_orchestrator(settings: Settings, inputs: InputProvider | None = None) -> BatchOrchestrator:
    session_factory = build_session_factory(settings.database_url)
    return BatchOrchestrator(
        settings,
        AccountDirectory(session_factory),
        RunStateStore(settings.run_state_path),
        BatchProcessor(settings.processor_command, settings.processor_workdir),
        inputs=inputs,
    )


def print_lot(orchestrator: BatchOrchestrator) -> None:
    for batch_list in orchestrator.lists:
        print(
            "list={ordinal} name={name} mode={mode} state={state} total={total} signature={signature} reference={reference} reason={reason}".format(
                ordinal=batch_list.ordinal,
                name=batch_list.name,
                mode=batch_list.mode.value,
                state=batch_list.run_state.value,
                total=batch_list.total_amount,
                signature=batch_list.signature(),
                reference=batch_list.reference_number or "-",
                reason=batch_list.failure_reason or "-",
            )
        )


def main() -> None:
    args = parse_args()
    settings = get_settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    if args.command == "import-accounts":
        directory = AccountDirectory(build_session_factory(settings.database_url))
        count = directory.upsert_accounts(load_account_rows(Path(args.path)))
        print(f"imported={count}")
        return

    if args.command == "schedule":
        start_scheduler(settings, run_now=args.run_now)
        return

    orchestrator = build_orchestrator(settings, ConsolePrompts())
    if settings.lot_snapshot_path.exists():
        orchestrator.reload_lot()

    if args.command == "clear":
        orchestrator.delete_all_lists()
        orchestrator.save_lot()
        print(f"status={orchestrator.status}")
        return

    if args.command in ("add", "remove", "mode"):
        try:
            batch_list = orchestrator.ensure_list(args.list_number)
        except ValueError as exc:
            print(f"error={exc}")
            raise SystemExit(1)

        if args.command == "add":
            result = orchestrator.add_entry(batch_list, args.account, args.installment)
            orchestrator.save_lot()
            print(f"added={result.added} message={result.message}")
            if not result.added:
                raise SystemExit(1)
        elif args.command == "remove":
            removed = orchestrator.remove_entry(batch_list, args.account)
            orchestrator.save_lot()
            print(f"removed={removed}")
            if not removed:
                raise SystemExit(1)
        else:
            orchestrator.set_mode(batch_list, args.mode)
            orchestrator.save_lot()
            print(f"list={batch_list.ordinal} mode={batch_list.mode.value} state={batch_list.run_state.value}")
        return

    if args.command == "show":
        print_lot(orchestrator)
        return

    if args.command == "reconcile":
        orchestrator.apply_persisted_states()
        recovered = orchestrator.reconcile_from_log()
        orchestrator.save_lot()
        print(f"reconciled={len(recovered)}")
        print_lot(orchestrator)
        return

    orchestrator.subscribe_progress(lambda line: print(f"  | {line}"))
    mode = ProcessMode.RETRY_FAILED_ONLY if args.retry_failed else ProcessMode.ALL
    result = orchestrator.process_batch(mode)
    orchestrator.save_lot()

    print(
        "status={status} selected={selected} succeeded={succeeded} failed={failed} references={references} message={message}".format(
            status=result.status,
            selected=result.selected,
            succeeded=result.succeeded,
            failed=result.failed,
            references=",".join(result.reference_numbers) or "-",
            message=result.message,
        )
    )
    if result.status in ("failed", "completed_with_issues"):
        raise SystemExit(1)


if __name__ == "__main__":
    main()
