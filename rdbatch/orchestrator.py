from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
import logging
from pathlib import Path
import threading
from typing import Protocol

from sqlalchemy.exc import SQLAlchemyError

from rdbatch.accounts import AccountDirectory, normalize_aslaas
from rdbatch.codec import combine_segments
from rdbatch.config import Settings
from rdbatch.lists import BatchList
from rdbatch.lot import as_int, read_lot, saved_lists, saved_pending_aslaas, snapshot_lists, write_json
from rdbatch.processor import LineCallback
from rdbatch.progress import ListFailed, ProcessingAnnounced, ReferenceReported, classify_line, first_meaningful_line
from rdbatch.reconcile import load_latest_index, reconcile
from rdbatch.run_store import RunStateStore
from rdbatch.schemas import (
    AddResult,
    AslaasRequest,
    AslaasUpdate,
    BatchResult,
    DopChequeInput,
    DopChequeRequest,
    DopChequeResponse,
    PaymentMode,
    ProcessMode,
    ProcessorResult,
    RunState,
)


logger = logging.getLogger(__name__)

NO_REFERENCE_REASON = "No reference number returned."


class InputProvider(Protocol):
    def request_aslaas(self, request: AslaasRequest) -> str | None: ...

    def request_dop_cheque(self, request: DopChequeRequest) -> DopChequeResponse | None: ...


class Processor(Protocol):
    def run(
        self,
        payload: str,
        *,
        aslaas_updates: Sequence[AslaasUpdate] = (),
        dop_cheque_inputs: Sequence[DopChequeInput] = (),
        on_line: LineCallback | None = None,
    ) -> ProcessorResult: ...


class NoInputProvider:
    """Answers every prompt with a cancel. Used for unattended runs."""

    def request_aslaas(self, request: AslaasRequest) -> str | None:
        return None

    def request_dop_cheque(self, request: DopChequeRequest) -> DopChequeResponse | None:
        return None


@dataclass
class _Submission:
    positions: dict[int, BatchList]
    current_position: int = 0


class BatchOrchestrator:
    """Owns the payment lists of one lot and drives them through the processor.

    All list mutations happen on the thread that calls into the
    orchestrator. Processor output is consumed on that same thread, so
    output events are applied one at a time in arrival order.
    """

    def __init__(
        self,
        settings: Settings,
        directory: AccountDirectory,
        store: RunStateStore,
        processor: Processor,
        *,
        inputs: InputProvider | None = None,
    ) -> None:
        self.settings = settings
        self.directory = directory
        self.store = store
        self.processor = processor
        self.inputs = inputs or NoInputProvider()
        self.reference_log_path = Path(settings.reference_log_path)

        self.lists: list[BatchList] = []
        self.reference_numbers: list[str] = []
        self.pending_aslaas: dict[str, str] = {}
        self.status = ""

        self._guard = threading.Lock()
        self._state_listeners: list[Callable[[BatchList], None]] = []
        self._progress_listeners: list[Callable[[str], None]] = []
        self._last_cheque_no = ""
        self._last_payment_account_no = ""

        self.store.load()
        self.add_list()

    @property
    def is_processing(self) -> bool:
        return self._guard.locked()

    @property
    def has_failed_lists(self) -> bool:
        return any(batch_list.is_failed for batch_list in self.lists)

    def subscribe(self, listener: Callable[[BatchList], None]) -> None:
        self._state_listeners.append(listener)

    def subscribe_progress(self, listener: Callable[[str], None]) -> None:
        self._progress_listeners.append(listener)

    def get_list(self, ordinal: int) -> BatchList | None:
        for batch_list in self.lists:
            if batch_list.ordinal == ordinal:
                return batch_list
        return None

    def ensure_list(self, ordinal: int) -> BatchList:
        while True:
            if (found := self.get_list(ordinal)) is not None:
                return found
            if len(self.lists) >= ordinal:
                raise ValueError(f"list {ordinal} cannot be created")
            self.add_list()

    def add_list(self) -> BatchList:
        batch_list = self._create_list(len(self.lists) + 1, apply_persisted=True)
        self.lists.append(batch_list)
        self._refresh_reference_numbers()
        return batch_list

    def all_account_numbers(self) -> list[str]:
        return [account_no for batch_list in self.lists for account_no in batch_list.account_numbers()]

    def add_entry(self, batch_list: BatchList, account_no: str, installment: int = 1) -> AddResult:
        account_no = (account_no or "").strip()
        existing = self.all_account_numbers()
        key = account_no.casefold()
        is_duplicate = any(other.strip().casefold() == key for other in existing)

        if account_no and not is_duplicate:
            account = self.directory.get_account(account_no)
            if account is not None and not account.aslaas_no.strip() and account_no not in self.pending_aslaas:
                answer = self.inputs.request_aslaas(
                    AslaasRequest(account_no=account.account_no, account_name=account.account_name)
                )
                if answer is None or not answer.strip():
                    message = f"{account_no} requires ASLAAS before adding."
                    batch_list.message = message
                    return AddResult(added=False, message=message)
                self.pending_aslaas[account_no] = normalize_aslaas(answer)

        return batch_list.add_entry(account_no, installment, self.directory.get_account, existing)

    def add_accounts(self, batch_list: BatchList, account_numbers: Iterable[str]) -> list[AddResult]:
        results: list[AddResult] = []
        for account_no in account_numbers:
            if batch_list.is_full:
                break
            results.append(self.add_entry(batch_list, account_no, 1))
        return results

    def remove_entry(self, batch_list: BatchList, account_no: str) -> bool:
        return batch_list.remove_entry(batch_list.find_entry(account_no))

    def clear_list(self, batch_list: BatchList) -> None:
        batch_list.clear()

    def set_mode(self, batch_list: BatchList, mode: PaymentMode | str) -> None:
        batch_list.set_mode(mode)

    def apply_persisted_states(self) -> None:
        for batch_list in self.lists:
            self.store.apply_to_list(batch_list)

    def reconcile_from_log(self, lists: Iterable[BatchList] | None = None) -> list[BatchList]:
        index = load_latest_index(self.reference_log_path)
        return reconcile(self.lists if lists is None else lists, index, self.store)

    def process_batch(self, mode: ProcessMode = ProcessMode.ALL) -> BatchResult:
        if not self._guard.acquire(blocking=False):
            logger.warning("batch already running, request rejected")
            return BatchResult(status="busy", message="A batch is already running.")
        try:
            return self._process(mode)
        finally:
            self._guard.release()

    def save_lot(self, path: Path | None = None) -> bool:
        path = path or self.settings.lot_snapshot_path
        try:
            write_json(path, snapshot_lists(self.lists, self.pending_aslaas))
        except OSError as exc:
            logger.warning("could not save lot", extra={"path": str(path)})
            self._set_status(f"Save lot failed: {exc}")
            return False
        self._set_status(f"Lot saved to: {path}")
        return True

    def reload_lot(self, path: Path | None = None) -> bool:
        if self.is_processing:
            self._set_status("Cannot reload while processing is running.")
            return False

        path = path or self.settings.lot_snapshot_path
        if not path.exists():
            self._set_status("No saved lot found. Use Save Lot first.")
            return False

        try:
            snapshot = read_lot(path)
            saved = saved_lists(snapshot)
        except (OSError, TypeError, ValueError) as exc:
            logger.warning("could not reload lot", extra={"path": str(path)})
            self._set_status(f"Reload lot failed: {exc}")
            return False

        self._clear_lists()
        self.pending_aslaas = {account_no: normalize_aslaas(value) for account_no, value in saved_pending_aslaas(snapshot)}

        skipped: list[str] = []
        for item in saved:
            ordinal = as_int(item.get("list_number"))
            if ordinal <= 0 or self.get_list(ordinal) is not None:
                ordinal = len(self.lists) + 1
            batch_list = self._create_list(ordinal, apply_persisted=False)
            batch_list.set_mode(str(item.get("payment_mode") or ""))
            self.lists.append(batch_list)

            for saved_entry in item.get("items") or []:
                if not isinstance(saved_entry, dict):
                    continue
                account_no = str(saved_entry.get("account_no") or "").strip()
                if not account_no:
                    continue
                result = self.add_entry(batch_list, account_no, max(1, as_int(saved_entry.get("installment"), 1)))
                if not result.added:
                    skipped.append(account_no)

            self._apply_snapshot_status(batch_list, item)

        if not self.lists:
            self.add_list()

        self.reconcile_from_log()
        self._refresh_reference_numbers()

        if skipped:
            self._set_status(f"Reloaded {len(self.lists)} list(s); skipped {len(skipped)} invalid/duplicate account(s).")
        else:
            self._set_status(f"Reloaded {len(self.lists)} list(s) from saved lot.")
        return True

    def delete_all_lists(self) -> None:
        self._clear_lists()
        self.pending_aslaas.clear()
        self.store.clear()
        self.add_list()
        self._set_status("All lists deleted.")

    def _process(self, mode: ProcessMode) -> BatchResult:
        retry_only = mode is ProcessMode.RETRY_FAILED_ONLY

        self.apply_persisted_states()
        self.reconcile_from_log()

        selected = [
            batch_list
            for batch_list in self.lists
            if batch_list.has_processable_entries and (batch_list.is_failed if retry_only else not batch_list.is_success)
        ]
        if not selected:
            message = "No failed lists available to retry." if retry_only else "No pending lists to process."
            self._set_status(message)
            return BatchResult(status="nothing_to_process", message=message)

        aslaas_updates = self._collect_aslaas_updates(selected)
        cheque_inputs = self._collect_dop_cheque_inputs(selected)
        if cheque_inputs is None:
            self._set_status("Processing cancelled.")
            logger.info("batch cancelled while collecting cheque details")
            return BatchResult(status="cancelled", message="Processing cancelled.", selected=len(selected))

        for batch_list in selected:
            batch_list.mark_processing()

        payload = combine_segments(batch_list.payload_with_mode() for batch_list in selected)
        submission = _Submission(positions={position: batch_list for position, batch_list in enumerate(selected, start=1)})
        if retry_only:
            self._set_status(f"Retrying {len(selected)} failed list(s)...")
        else:
            self._set_status(f"Running {len(selected)} pending list(s)...")
        logger.info("submitting batch", extra={"lists": len(selected), "mode": mode.value})

        try:
            result = self.processor.run(
                payload,
                aslaas_updates=aslaas_updates,
                dop_cheque_inputs=cheque_inputs,
                on_line=lambda line: self._handle_line(submission, line),
            )
        except Exception as exc:
            logger.exception("batch processor raised")
            result = ProcessorResult(exit_code=None, output="", error=f"Error: {exc}")

        if not result.succeeded:
            reason = first_meaningful_line(result.error or result.output)
            for batch_list in selected:
                if not batch_list.is_success:
                    batch_list.mark_failed(reason)
            logger.error("batch processor failed", extra={"exit_code": result.exit_code, "reason": reason})
            self._set_status(f"List processing failed: {reason}")
            return self._result("failed", self.status, selected)

        if aslaas_updates:
            try:
                self.directory.save_aslaas_updates(aslaas_updates)
            except SQLAlchemyError:
                # Updates stay queued and are sent again with the next batch.
                logger.exception("could not save aslaas updates")
            else:
                for update in aslaas_updates:
                    self.pending_aslaas.pop(update.account_no, None)

        # A clean exit still needs a reference for every list.
        for batch_list in selected:
            if not batch_list.is_success:
                batch_list.mark_failed(NO_REFERENCE_REASON)

        completed = sum(1 for batch_list in selected if batch_list.is_success)
        failed = sum(1 for batch_list in selected if batch_list.is_failed)
        if failed == 0:
            self._set_status(f"Completed. {completed}/{len(selected)} list(s) processed successfully.")
            return self._result("completed", self.status, selected)
        self._set_status(f"Completed with issues. Success: {completed}, Failed: {failed}.")
        return self._result("completed_with_issues", self.status, selected)

    def _handle_line(self, submission: _Submission, line: str) -> None:
        text = line.strip()
        if not text:
            return

        self._set_status(text)
        for listener in list(self._progress_listeners):
            listener(text)

        event = classify_line(text)
        if isinstance(event, ProcessingAnnounced):
            submission.current_position = event.position
            target = submission.positions.get(event.position)
            if target is not None and not target.is_success:
                target.mark_processing()
        elif isinstance(event, ReferenceReported):
            target = submission.positions.get(submission.current_position)
            if target is None:
                logger.warning("reference reported with no announced list", extra={"reference_number": event.reference_number})
                return
            target.mark_success(event.reference_number)
        elif isinstance(event, ListFailed):
            target = submission.positions.get(event.position)
            if target is not None and not target.is_success:
                target.mark_failed(event.reason)

    def _collect_aslaas_updates(self, selected: Sequence[BatchList]) -> list[AslaasUpdate]:
        relevant = {
            entry.account_no.strip().casefold()
            for batch_list in selected
            for entry in batch_list.participating_entries
        }
        updates = [
            AslaasUpdate(account_no=account_no, aslaas_no=normalize_aslaas(value))
            for account_no, value in self.pending_aslaas.items()
            if account_no.strip().casefold() in relevant
        ]
        return sorted(updates, key=lambda item: item.account_no.casefold())

    def _collect_dop_cheque_inputs(self, selected: Sequence[BatchList]) -> list[DopChequeInput] | None:
        collected: list[DopChequeInput] = []
        cheque_no = self._last_cheque_no
        payment_account_no = self._last_payment_account_no

        for position, batch_list in enumerate(selected, start=1):
            if batch_list.mode is not PaymentMode.DOP_CHEQUE:
                continue
            for entry in batch_list.participating_entries:
                response = self.inputs.request_dop_cheque(
                    DopChequeRequest(
                        list_ordinal=batch_list.ordinal,
                        list_name=batch_list.name,
                        account_no=entry.account_no,
                        account_name=(entry.account.account_name if entry.account else "") or "-",
                        installment=entry.effective_installment,
                        suggested_cheque_no=cheque_no,
                        suggested_payment_account_no=payment_account_no,
                    )
                )
                if response is None:
                    return None
                answer_cheque = (response.cheque_no or "").strip()
                answer_account = (response.payment_account_no or "").strip()
                if not answer_cheque or not answer_account:
                    return None

                cheque_no, payment_account_no = answer_cheque, answer_account
                collected.append(
                    DopChequeInput(
                        list_index=position,
                        account_no=entry.account_no.strip(),
                        cheque_no=answer_cheque,
                        payment_account_no=answer_account,
                    )
                )

        if collected:
            self._last_cheque_no = cheque_no
            self._last_payment_account_no = payment_account_no
        return collected

    def _create_list(self, ordinal: int, *, apply_persisted: bool) -> BatchList:
        batch_list = BatchList(ordinal, amount_ceiling=self.settings.amount_ceiling)
        batch_list.subscribe(self._on_list_state_changed)
        if apply_persisted:
            self.store.apply_to_list(batch_list)
            self.reconcile_from_log([batch_list])
        return batch_list

    def _clear_lists(self) -> None:
        for batch_list in self.lists:
            batch_list.unsubscribe(self._on_list_state_changed)
        self.lists.clear()
        self.reference_numbers.clear()

    def _apply_snapshot_status(self, batch_list: BatchList, saved: dict[str, object]) -> None:
        status = str(saved.get("status") or "").strip().casefold()
        reference_number = str(saved.get("reference_number") or "").strip()

        if status == RunState.SUCCESS.value.casefold() and reference_number:
            batch_list.mark_success(reference_number)
        elif status == RunState.FAILED.value.casefold():
            batch_list.mark_failed(str(saved.get("failure_reason") or ""))
        else:
            # Pending or an interrupted Processing run: trust the run-state file.
            self.store.apply_to_list(batch_list)

    def _on_list_state_changed(self, batch_list: BatchList) -> None:
        self.store.persist_list(batch_list)
        self._refresh_reference_numbers()
        logger.debug(
            "list state changed",
            extra={"list_ordinal": batch_list.ordinal, "run_state": batch_list.run_state.value},
        )
        for listener in list(self._state_listeners):
            listener(batch_list)

    def _refresh_reference_numbers(self) -> None:
        seen: dict[str, str] = {}
        for batch_list in self.lists:
            if batch_list.is_success and batch_list.reference_number:
                seen.setdefault(batch_list.reference_number.casefold(), batch_list.reference_number)
        self.reference_numbers = sorted(seen.values(), key=str.casefold)

    def _set_status(self, message: str) -> None:
        self.status = message
        logger.debug("status", extra={"status": message})

    def _result(self, status: str, message: str, selected: Sequence[BatchList]) -> BatchResult:
        return BatchResult(
            status=status,
            message=message,
            selected=len(selected),
            succeeded=sum(1 for batch_list in selected if batch_list.is_success),
            failed=sum(1 for batch_list in selected if batch_list.is_failed),
            reference_numbers=tuple(self.reference_numbers),
        )
