"""
Batch Change Loader

Bulk ingestion of booking change extracts (CSV, JSON Lines, Parquet) into
the ingestion buffer. Supports:
- Flat rows or nested change envelopes
- Duplicate rows absorbed by the buffer's dedup key (re-loading a file is safe)
- Dead-letter Parquet files for rows that cannot be interpreted
- Audit logging
"""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Tuple, Union

import polars as pl
import structlog
from pydantic import BaseModel

from booking_cdc.config import get_settings
from booking_cdc.errors import DuplicateEventError, MalformedEnvelopeError
from booking_cdc.ingestion.buffer import IngestionBuffer
from booking_cdc.ingestion.events import change_event_from_envelope
from booking_cdc.schemas import utcnow

logger = structlog.get_logger(__name__)


class FileFormat(str, Enum):
    """Supported file formats"""
    CSV = "csv"
    JSONL = "jsonl"
    PARQUET = "parquet"

    @classmethod
    def from_path(cls, path: Path) -> "FileFormat":
        suffix = path.suffix.lower().lstrip(".")
        if suffix in ("json", "ndjson"):
            return cls.JSONL
        try:
            return cls(suffix)
        except ValueError:
            raise ValueError(f"Unsupported file format: {path.suffix}")


class LoadStatus(str, Enum):
    """Batch load status"""
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


@dataclass
class BatchFileConfig:
    """Configuration for batch file loading"""
    file_path: Union[str, Path]
    file_format: Optional[FileFormat] = None
    delimiter: str = ","
    encoding: str = "utf8"
    null_values: List[str] = field(default_factory=lambda: ["", "NULL", "null", "None", "NA", "N/A"])

    def __post_init__(self):
        self.file_path = Path(self.file_path)
        if self.file_format is None:
            self.file_format = FileFormat.from_path(self.file_path)


class LoadResult(BaseModel):
    """Result of a batch load operation"""
    file_path: str
    status: LoadStatus
    rows_read: int = 0
    rows_appended: int = 0
    duplicates: int = 0
    rows_rejected: int = 0
    dead_letter_file: Optional[str] = None
    error_message: Optional[str] = None
    load_duration_seconds: float = 0
    started_at: datetime
    completed_at: Optional[datetime] = None
    file_hash: Optional[str] = None


# Row yielded by a reader: (parsed row, None) or (raw text, parse error)
ReadItem = Tuple[Union[Dict[str, Any], str], Optional[str]]


class BatchLoader:
    """
    Loads change extract files into the ingestion buffer.

    Example:
        loader = BatchLoader(buffer)
        result = await loader.load(BatchFileConfig("exports/changes.csv"))
    """

    def __init__(
        self,
        buffer: Optional[IngestionBuffer] = None,
        dead_letter_path: Optional[str] = None,
    ):
        self.buffer = buffer or IngestionBuffer()
        self.dead_letter_path = Path(dead_letter_path or get_settings().pipeline.dead_letter_path)

    def _compute_file_hash(self, file_path: Path) -> str:
        """Compute MD5 hash of file for the audit trail"""
        hash_md5 = hashlib.md5()
        with open(file_path, "rb") as f:
            for chunk in iter(lambda: f.read(4096), b""):
                hash_md5.update(chunk)
        return hash_md5.hexdigest()

    def _read_csv(self, config: BatchFileConfig) -> Iterator[ReadItem]:
        # Every column as text; typing happens in ChangeEvent coercion
        df = pl.read_csv(
            config.file_path,
            separator=config.delimiter,
            encoding=config.encoding,
            null_values=config.null_values,
            infer_schema_length=0,
        )
        for row in df.iter_rows(named=True):
            yield row, None

    def _read_parquet(self, config: BatchFileConfig) -> Iterator[ReadItem]:
        for row in pl.read_parquet(config.file_path).iter_rows(named=True):
            yield row, None

    def _read_jsonl(self, config: BatchFileConfig) -> Iterator[ReadItem]:
        # Line by line so one corrupt line is rejected instead of failing the file
        with open(config.file_path, encoding="utf-8") as f:
            for line_no, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                try:
                    row = json.loads(line)
                except json.JSONDecodeError as e:
                    yield line, f"line {line_no}: invalid JSON ({e.msg})"
                    continue
                if not isinstance(row, dict):
                    yield line, f"line {line_no}: not a JSON object"
                    continue
                yield row, None

    def _read_file(self, config: BatchFileConfig) -> Iterator[ReadItem]:
        readers = {
            FileFormat.CSV: self._read_csv,
            FileFormat.JSONL: self._read_jsonl,
            FileFormat.PARQUET: self._read_parquet,
        }
        return readers[config.file_format](config)

    def _write_to_dead_letter(self, rejected: List[Tuple[Any, str]], config: BatchFileConfig) -> Path:
        """Write rejected rows to a Parquet dead-letter file"""
        self.dead_letter_path.mkdir(parents=True, exist_ok=True)
        failed_at = utcnow()
        dead_letter_file = (
            self.dead_letter_path
            / f"{config.file_path.stem}_{failed_at.strftime('%Y%m%d_%H%M%S_%f')}.parquet"
        )

        df = pl.DataFrame(
            {
                "_raw": [raw if isinstance(raw, str) else json.dumps(raw, default=str) for raw, _ in rejected],
                "_error_message": [error for _, error in rejected],
                "_source_file": [str(config.file_path)] * len(rejected),
                "_failed_at": [failed_at] * len(rejected),
            }
        )
        df.write_parquet(dead_letter_file)
        logger.warning(
            "Written rejected rows to dead letter file",
            file=str(dead_letter_file),
            records=len(rejected),
        )
        return dead_letter_file

    async def load(self, config: BatchFileConfig) -> LoadResult:
        """
        Load a change extract into the buffer.

        Rows are appended in file order. Unreadable files produce a FAILED
        result; storage errors propagate so the caller can retry the file.
        """
        started_at = utcnow()
        result = LoadResult(
            file_path=str(config.file_path),
            status=LoadStatus.RUNNING,
            started_at=started_at,
        )
        logger.info("Starting batch load", file=str(config.file_path), format=config.file_format.value)

        rejected: List[Tuple[Any, str]] = []
        try:
            result.file_hash = self._compute_file_hash(config.file_path)
            for row, parse_error in self._read_file(config):
                result.rows_read += 1
                if parse_error is not None:
                    rejected.append((row, parse_error))
                    continue
                try:
                    event = change_event_from_envelope(row)
                except MalformedEnvelopeError as e:
                    rejected.append((row, e.message))
                    continue
                try:
                    await self.buffer.append(event)
                    result.rows_appended += 1
                except DuplicateEventError:
                    result.duplicates += 1
        except (OSError, UnicodeDecodeError, pl.exceptions.PolarsError) as e:
            result.status = LoadStatus.FAILED
            result.error_message = str(e)
            logger.error("Batch load failed", error=str(e), file=str(config.file_path))

        if rejected:
            result.rows_rejected = len(rejected)
            result.dead_letter_file = str(self._write_to_dead_letter(rejected, config))

        if result.status == LoadStatus.RUNNING:
            result.status = LoadStatus.PARTIAL if rejected else LoadStatus.COMPLETED

        result.completed_at = utcnow()
        result.load_duration_seconds = (result.completed_at - started_at).total_seconds()

        logger.info(
            "Batch load finished",
            file=str(config.file_path),
            status=result.status.value,
            rows_read=result.rows_read,
            rows_appended=result.rows_appended,
            duplicates=result.duplicates,
            rows_rejected=result.rows_rejected,
            duration_seconds=result.load_duration_seconds,
        )
        return result

    async def load_directory(self, directory: Union[str, Path], pattern: str = "*") -> List[LoadResult]:
        """
        Load all supported files from a directory, in name order.

        Args:
            directory: Directory containing extracts
            pattern: Glob pattern for file matching

        Returns:
            List of LoadResult for each file
        """
        directory = Path(directory)
        suffixes = {".csv", ".jsonl", ".json", ".ndjson", ".parquet"}
        files = sorted(p for p in directory.glob(pattern) if p.is_file() and p.suffix.lower() in suffixes)
        logger.info("Found files to load", directory=str(directory), files=len(files))

        results = [await self.load(BatchFileConfig(file_path=path)) for path in files]

        logger.info(
            "Directory load completed",
            total_files=len(files),
            completed=sum(1 for r in results if r.status == LoadStatus.COMPLETED),
            partial=sum(1 for r in results if r.status == LoadStatus.PARTIAL),
            failed=sum(1 for r in results if r.status == LoadStatus.FAILED),
        )
        return results
