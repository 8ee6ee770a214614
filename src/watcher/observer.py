"""Upload pipeline and drop-folder watcher.

UploadPipeline runs one statement file end to end:
  dedup → parse → detect columns → resolve convention → normalize →
  categorize → validate → atomic insert → learn

A file either lands completely (upload row plus every valid transaction)
or not at all. Row-level problems are reported in the result, never fatal.

FileWatcher feeds the same pipeline from a watched drop folder. It uses
PollingObserver as primary (not fallback) because inotify is unreliable on
network and container volumes.
"""

from __future__ import annotations

import logging
import sqlite3
import time
import zipfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Callable

from watchdog.events import FileSystemEventHandler

from src.categorize.claude_ai import ClaudeFn
from src.categorize.pipeline import PipelineContext, categorize_batch, learn_from_results
from src.config import Config
from src.database.dedup import DuplicateGuard
from src.database.models import Transaction, Upload, validate_transaction
from src.database.repository import DuplicateFileError, Repository
from src.parsers.base import BaseParser, FileParseError
from src.parsers.columns import MissingColumnsError, detect_columns
from src.parsers.convention import resolve_convention
from src.parsers.csv_parser import StatementCsvParser
from src.parsers.excel_parser import StatementExcelParser
from src.parsers.normalizer import normalize_rows

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".csv", ".xlsx", ".xlsm"}

STATUS_SUCCESS = "success"
STATUS_DUPLICATE = "duplicate"
STATUS_ERROR = "error"

# Default stability check parameters
DEFAULT_STABILITY_SECONDS = 10
DEFAULT_CHECK_INTERVAL = 2.0

# Default polling interval for PollingObserver
DEFAULT_POLL_INTERVAL = 30


@dataclass
class FileUploadResult:
    """Result of uploading a single file."""
    file_name: str
    success: bool
    status: str  # "success", "duplicate", "error"
    message: str
    transaction_count: int = 0
    total_spending: Decimal = Decimal("0")
    skipped_count: int = 0
    errors: list[str] = field(default_factory=list)
    convention: str | None = None
    convention_branch: str | None = None
    approved_count: int = 0
    pending_review_count: int = 0
    upload_id: str | None = None


@dataclass
class BatchUploadResult:
    per_file: list[FileUploadResult] = field(default_factory=list)
    total_transactions: int = 0
    total_spending: Decimal = Decimal("0")

    @property
    def success(self) -> bool:
        return bool(self.per_file) and all(r.success for r in self.per_file)

    @property
    def message(self) -> str:
        if not self.per_file:
            return "No files provided"
        succeeded = sum(1 for r in self.per_file if r.success)
        if succeeded == 0:
            return "All uploads failed"
        return (
            f"Successfully uploaded {succeeded} of {len(self.per_file)} file(s). "
            f"{self.total_transactions} transactions, ${self.total_spending:,.2f} total."
        )


class FileStabilityError(Exception):
    """Raised when a file fails post-stability validation."""


# ── File stability & validation ──────────────────────────


def wait_for_stable(
    filepath: Path,
    stability_seconds: int = DEFAULT_STABILITY_SECONDS,
    check_interval: float = DEFAULT_CHECK_INTERVAL,
    max_wait: float = 300.0,
) -> None:
    """Wait until file size and mtime are stable for stability_seconds.

    Raises:
        TimeoutError: If file doesn't stabilize within max_wait.
    """
    prev_size = -1
    prev_mtime = -1.0
    stable_since: float | None = None
    start = time.monotonic()

    while True:
        if time.monotonic() - start > max_wait:
            raise TimeoutError(
                f"File did not stabilize within {max_wait}s: {filepath}"
            )

        stat = filepath.stat()
        if stat.st_size == prev_size and stat.st_mtime == prev_mtime:
            if stable_since is None:
                stable_since = time.monotonic()
            elif time.monotonic() - stable_since >= stability_seconds:
                return
        else:
            stable_since = None

        prev_size = stat.st_size
        prev_mtime = stat.st_mtime
        time.sleep(check_interval)


def validate_file_completeness(filepath: Path) -> None:
    """Post-stability validation: reject empty files and truncated workbooks.

    Raises:
        FileStabilityError: If file appears incomplete.
    """
    if filepath.stat().st_size == 0:
        raise FileStabilityError(f"Empty file: {filepath}")
    if filepath.suffix.lower() in (".xlsx", ".xlsm") and not zipfile.is_zipfile(filepath):
        raise FileStabilityError(f"Excel file is not a complete workbook: {filepath}")


# ── Parser detection ─────────────────────────────────────


def detect_parser(filepath: Path) -> BaseParser:
    """Pick the parser for a statement file by extension.

    Raises:
        ValueError: If no parser can handle the file.
    """
    for parser in (StatementCsvParser(), StatementExcelParser()):
        if parser.detect(filepath):
            return parser
    raise ValueError(f"No parser found for file: {filepath}")


# ── Upload pipeline ──────────────────────────────────────


class UploadPipeline:
    """Process statement files for one user.

    Args:
        repo: Database repository.
        config: Application config.
        user_id: Owner of every upload this pipeline processes.
        claude_fn: Optional (system, prompt) -> str for AI categorization.
            Without it, unmatched merchants get the uniform fallback.
        context: Prebuilt PipelineContext (built from config if omitted).
        clock: Returns the upload timestamp; injectable for tests.
    """

    def __init__(
        self,
        repo: Repository,
        config: Config,
        user_id: str,
        claude_fn: ClaudeFn | None = None,
        context: PipelineContext | None = None,
        clock: Callable[[], datetime] | None = None,
    ):
        self.repo = repo
        self.config = config
        self.user_id = user_id
        self.context = context or PipelineContext.from_config(repo, config, claude_fn)
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.guard = DuplicateGuard(repo)

    def process_files(self, paths: list[Path]) -> BatchUploadResult:
        """Process files independently; one failure does not stop the rest."""
        batch = BatchUploadResult()
        for path in paths:
            result = self.process_file(Path(path))
            batch.per_file.append(result)
            if result.success:
                batch.total_transactions += result.transaction_count
                batch.total_spending += result.total_spending
        logger.info(batch.message)
        return batch

    def process_file(self, filepath: Path, file_name: str | None = None) -> FileUploadResult:
        file_name = file_name or filepath.name
        try:
            return self._process(filepath, file_name)
        except Exception as e:
            logger.exception("Upload failed for %s", file_name)
            return self._failure(file_name, str(e) or "Unknown error", [str(e)])

    def _process(self, filepath: Path, file_name: str) -> FileUploadResult:
        sample_size = self.config.error_sample_size

        # Step 1: Check extension
        if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
            return self._failure(
                file_name, f"Unsupported file extension: {filepath.suffix}",
            )

        # Step 2: Duplicate pre-check
        uploaded_at = self.clock()
        try:
            fingerprint = self.guard.check(file_name, self.user_id, uploaded_at)
        except DuplicateFileError as e:
            logger.info("Duplicate file skipped: %s (upload %s)", file_name, e.existing_upload_id)
            return self._duplicate(file_name)

        # Step 3: Parse
        parser = detect_parser(filepath)
        try:
            rows = parser.parse(filepath)
        except FileParseError as e:
            return self._failure(file_name, str(e), [str(e)])
        if not rows:
            return self._failure(
                file_name, "No data found in file", ["File is empty or could not be parsed"],
            )

        # Step 4: Columns and convention
        try:
            columns = detect_columns(rows)
        except MissingColumnsError as e:
            return self._failure(file_name, f"Column detection failed: {e}", [str(e)])

        decision = resolve_convention(
            file_name, rows, columns, self.config.known_issuers,
        )
        logger.info(
            "%s: %d rows, convention=%s (%s)",
            file_name, len(rows), decision.convention.value, decision.branch,
        )

        # Step 5: Normalize
        normalized = normalize_rows(rows, columns, decision.convention)
        errors = [e.describe() for e in normalized.errors]
        if normalized.errors:
            logger.info("%s: skipped rows by reason %s", file_name, normalized.reason_counts())
        if not normalized.transactions:
            return self._failure(
                file_name, "No valid transactions after normalization",
                errors[:sample_size],
                skipped_count=len(normalized.errors),
                decision=decision,
            )

        # Step 6: Categorize
        batch = categorize_batch(normalized.transactions, self.user_id, self.context)

        # Step 7: Build and validate records
        upload = Upload(
            user_id=self.user_id,
            file_name=file_name,
            fingerprint=fingerprint,
            uploaded_at=uploaded_at.isoformat(),
            convention=decision.convention.value,
            convention_branch=decision.branch,
        )
        records: list[Transaction] = []
        kept = []
        for norm, result in zip(normalized.transactions, batch.results):
            txn = Transaction(
                user_id=self.user_id,
                upload_id=upload.id,
                date=norm.date.isoformat(),
                merchant=norm.merchant,
                amount_raw=norm.amount_raw,
                amount_spending=norm.amount_spending,
                convention=norm.convention.value,
                is_credit=norm.is_credit,
                is_payment=norm.is_payment,
                category_id=result.category_id,
                confidence=result.confidence_score,
                status=result.status,
                categorization_method=result.method,
                notes=norm.merchant_raw if norm.merchant_raw != norm.merchant else None,
            )
            problem = validate_transaction(txn)
            if problem:
                errors.append(f"Row {txn.date} {norm.merchant_raw or txn.merchant}: {problem}")
                continue
            records.append(txn)
            kept.append((norm, result))

        skipped_count = len(normalized.errors) + (len(normalized.transactions) - len(records))
        if not records:
            return self._failure(
                file_name, "No valid transactions after processing",
                errors[:sample_size], skipped_count=skipped_count, decision=decision,
            )

        upload.record_count = len(records)
        upload.skipped_count = skipped_count
        upload.total_spending = sum((t.amount_spending for t in records), Decimal("0"))

        # Step 8: Atomic insert
        try:
            self.repo.insert_upload_with_transactions(upload, records)
        except DuplicateFileError:
            logger.info("Duplicate file (race): %s", file_name)
            return self._duplicate(file_name)
        except sqlite3.Error as e:
            logger.error("Insert failed for %s: %s", file_name, e)
            return self._failure(
                file_name, f"Insert failed: {e}", [str(e), *errors][:sample_size],
                skipped_count=skipped_count, decision=decision,
            )

        # Step 9: Learn from confident AI results
        learn_from_results(
            [n for n, _ in kept], [r for _, r in kept], self.user_id, self.context,
        )

        approved = sum(1 for t in records if t.status == "approved")
        return FileUploadResult(
            file_name=file_name,
            success=True,
            status=STATUS_SUCCESS,
            message=f"Successfully inserted {len(records)} transactions",
            transaction_count=len(records),
            total_spending=upload.total_spending,
            skipped_count=skipped_count,
            errors=errors[:sample_size],
            convention=decision.convention.value,
            convention_branch=decision.branch,
            approved_count=approved,
            pending_review_count=len(records) - approved,
            upload_id=upload.id,
        )

    @staticmethod
    def _duplicate(file_name: str) -> FileUploadResult:
        return FileUploadResult(
            file_name=file_name,
            success=False,
            status=STATUS_DUPLICATE,
            message="File already uploaded (duplicate detected)",
            errors=["Duplicate file detected by fingerprint"],
        )

    @staticmethod
    def _failure(
        file_name: str, message: str, errors: list[str] | None = None,
        skipped_count: int = 0, decision=None,
    ) -> FileUploadResult:
        return FileUploadResult(
            file_name=file_name,
            success=False,
            status=STATUS_ERROR,
            message=message,
            errors=errors or [message],
            skipped_count=skipped_count,
            convention=decision.convention.value if decision else None,
            convention_branch=decision.branch if decision else None,
        )


# ── File watcher ─────────────────────────────────────────


class FileWatcher(FileSystemEventHandler):
    """Watch a drop folder for new statement files using PollingObserver.

    Files are processed sequentially, one at a time.

    Args:
        watch_dir: Directory to watch for new files.
        pipeline: UploadPipeline to process files.
        stability_seconds: Seconds of stability before processing.
        check_interval: Seconds between stability checks.
    """

    def __init__(
        self,
        watch_dir: Path,
        pipeline: UploadPipeline,
        stability_seconds: int = DEFAULT_STABILITY_SECONDS,
        check_interval: float = DEFAULT_CHECK_INTERVAL,
    ):
        self.watch_dir = Path(watch_dir)
        self.pipeline = pipeline
        self.stability_seconds = stability_seconds
        self.check_interval = check_interval
        self._observer = None

    def start(self) -> None:
        from watchdog.observers.polling import PollingObserver

        if not self.watch_dir.exists():
            self.watch_dir.mkdir(parents=True, exist_ok=True)

        self._observer = PollingObserver(timeout=DEFAULT_POLL_INTERVAL)
        self._observer.schedule(self, str(self.watch_dir), recursive=False)
        self._observer.start()
        logger.info("Watching %s for new statement files", self.watch_dir)

    def stop(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None
            logger.info("File watcher stopped")

    def on_created(self, event) -> None:
        if event.is_directory:
            return

        filepath = Path(event.src_path)
        if filepath.suffix.lower() not in SUPPORTED_EXTENSIONS:
            return

        logger.info("New file detected: %s", filepath.name)
        self._process_file(filepath)

    def _process_file(self, filepath: Path) -> FileUploadResult:
        """Wait for stability, validate, then upload."""
        try:
            wait_for_stable(
                filepath,
                stability_seconds=self.stability_seconds,
                check_interval=self.check_interval,
            )
            validate_file_completeness(filepath)
        except (FileStabilityError, TimeoutError, OSError) as e:
            logger.error("File not ready: %s", e)
            return FileUploadResult(
                file_name=filepath.name, success=False, status=STATUS_ERROR,
                message=str(e), errors=[str(e)],
            )

        result = self.pipeline.process_file(filepath)
        logger.info(
            "Upload result for %s: %s (%d transactions, %d approved, %d pending review)",
            filepath.name, result.status, result.transaction_count,
            result.approved_count, result.pending_review_count,
        )
        return result
