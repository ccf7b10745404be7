"""
Data Quality Validation

Rule-based batch profiling of derived booking records on Polars DataFrames.
Each derivation run is profiled so that drifting source data (missing keys,
non-positive counts, broken revenue split) is visible in the job-run log
without blocking the pipeline.

Features:
- Null checks
- Uniqueness checks
- Range checks
- Allowed-value checks
- Custom business rules
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

import polars as pl
import structlog

from booking_cdc.schemas import ChangeAction, DerivedRecord, SizeCategory, PriceCategory, utcnow

logger = structlog.get_logger(__name__)


class ValidationSeverity(str, Enum):
    """Severity levels for validation failures"""
    ERROR = "error"  # broken pipeline invariant
    WARNING = "warning"  # bad source data, already flagged invalid
    INFO = "info"


class ValidationStatus(str, Enum):
    """Overall validation status"""
    PASSED = "passed"
    FAILED = "failed"
    PARTIAL = "partial"


@dataclass
class ValidationCheck:
    """Single validation check result"""
    name: str
    passed: bool
    severity: ValidationSeverity
    message: str
    details: Optional[Dict[str, Any]] = None
    failed_rows: int = 0
    total_rows: int = 0


@dataclass
class ValidationResult:
    """Complete validation suite result"""
    status: ValidationStatus
    total_checks: int
    passed_checks: int
    failed_checks: int
    warning_count: int
    checks: List[ValidationCheck] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    @property
    def success_rate(self) -> float:
        """Percentage of passed checks"""
        if self.total_checks == 0:
            return 100.0
        return (self.passed_checks / self.total_checks) * 100

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        """
        Combine the results of the same suite run over two batches.

        Row counts add up and a check passes only if it passed in both, so a
        run can be profiled page by page without keeping its records.
        """
        merged: Dict[str, ValidationCheck] = {}
        for check in self.checks + other.checks:
            seen = merged.get(check.name)
            if seen is None:
                merged[check.name] = replace(check)
                continue
            failing = seen if not seen.passed else check
            merged[check.name] = ValidationCheck(
                name=check.name,
                passed=seen.passed and check.passed,
                severity=seen.severity,
                message=failing.message,
                details=failing.details,
                failed_rows=seen.failed_rows + check.failed_rows,
                total_rows=seen.total_rows + check.total_rows,
            )

        checks = list(merged.values())
        passed_checks = sum(1 for c in checks if c.passed)
        failed_checks = sum(1 for c in checks if not c.passed and c.severity == ValidationSeverity.ERROR)
        warning_count = sum(1 for c in checks if not c.passed and c.severity == ValidationSeverity.WARNING)

        # a strict-mode failure on either side stays a failure
        if failed_checks > 0 or ValidationStatus.FAILED in (self.status, other.status):
            status = ValidationStatus.FAILED
        elif warning_count > 0:
            status = ValidationStatus.PARTIAL
        else:
            status = ValidationStatus.PASSED

        return ValidationResult(
            status=status,
            total_checks=len(checks),
            passed_checks=passed_checks,
            failed_checks=failed_checks,
            warning_count=warning_count,
            checks=checks,
            started_at=min(self.started_at, other.started_at),
            completed_at=other.completed_at or self.completed_at,
        )

    def summary(self) -> Dict[str, Any]:
        """Compact, JSON-friendly view for job-run details"""
        return {
            "status": self.status.value,
            "total_checks": self.total_checks,
            "passed_checks": self.passed_checks,
            "failed_checks": self.failed_checks,
            "warning_count": self.warning_count,
            "success_rate": round(self.success_rate, 2),
            "failures": [
                {"name": c.name, "severity": c.severity.value, "failed_rows": c.failed_rows}
                for c in self.checks
                if not c.passed
            ],
        }


class DataValidator:
    """
    Chainable validator over a Polars DataFrame.

    Example:
        validator = DataValidator()
        validator.add_not_null_check("booking_id")
        validator.add_range_check("ticket_count", min_value=1)
        result = validator.validate(df)
    """

    def __init__(self, strict_mode: bool = False):
        self.strict_mode = strict_mode  # warnings fail the suite
        self._checks: List[Callable[[pl.DataFrame], ValidationCheck]] = []

    def _missing_column(self, name: str, column: str, severity: ValidationSeverity) -> ValidationCheck:
        return ValidationCheck(
            name=name,
            passed=False,
            severity=severity,
            message=f"Column '{column}' not found",
        )

    def add_not_null_check(
        self,
        column: str,
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        """Add check for null values in column"""
        def check(df: pl.DataFrame) -> ValidationCheck:
            name = f"not_null_{column}"
            if column not in df.columns:
                return self._missing_column(name, column, severity)

            null_count = df[column].null_count()
            total = len(df)
            return ValidationCheck(
                name=name,
                passed=null_count == 0,
                severity=severity,
                message=f"Column '{column}' has {null_count} null values",
                details={"null_percentage": (null_count / total) * 100 if total > 0 else 0},
                failed_rows=null_count,
                total_rows=total,
            )

        self._checks.append(check)
        return self

    def add_unique_check(
        self,
        column: str,
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        """Add check for uniqueness of column values"""
        def check(df: pl.DataFrame) -> ValidationCheck:
            name = f"unique_{column}"
            if column not in df.columns:
                return self._missing_column(name, column, severity)

            total = len(df)
            duplicate_count = total - df[column].n_unique()
            return ValidationCheck(
                name=name,
                passed=duplicate_count == 0,
                severity=severity,
                message=f"Column '{column}' has {duplicate_count} duplicate values",
                failed_rows=duplicate_count,
                total_rows=total,
            )

        self._checks.append(check)
        return self

    def add_range_check(
        self,
        column: str,
        min_value: Optional[float] = None,
        max_value: Optional[float] = None,
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        """Add check for values within [min_value, max_value]; nulls count as out of range"""
        def check(df: pl.DataFrame) -> ValidationCheck:
            name = f"range_{column}"
            if column not in df.columns:
                return self._missing_column(name, column, severity)

            condition = pl.col(column).is_null()
            if min_value is not None:
                condition = condition | (pl.col(column) < min_value)
            if max_value is not None:
                condition = condition | (pl.col(column) > max_value)

            out_of_range = df.filter(condition).height
            return ValidationCheck(
                name=name,
                passed=out_of_range == 0,
                severity=severity,
                message=f"Column '{column}' has {out_of_range} values outside [{min_value}, {max_value}]",
                details={"min": min_value, "max": max_value},
                failed_rows=out_of_range,
                total_rows=len(df),
            )

        self._checks.append(check)
        return self

    def add_enum_check(
        self,
        column: str,
        allowed_values: List[Any],
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        """Add check for non-null values in an allowed set"""
        def check(df: pl.DataFrame) -> ValidationCheck:
            name = f"enum_{column}"
            if column not in df.columns:
                return self._missing_column(name, column, severity)

            invalid = df.filter(
                ~pl.col(column).is_in(allowed_values) & pl.col(column).is_not_null()
            ).height
            return ValidationCheck(
                name=name,
                passed=invalid == 0,
                severity=severity,
                message=f"Column '{column}' has {invalid} unexpected values",
                details={"allowed_values": allowed_values},
                failed_rows=invalid,
                total_rows=len(df),
            )

        self._checks.append(check)
        return self

    def add_row_rule(
        self,
        name: str,
        violation: pl.Expr,
        message: str,
        severity: ValidationSeverity = ValidationSeverity.ERROR,
    ) -> "DataValidator":
        """Add a business rule; ``violation`` selects offending rows"""
        def check(df: pl.DataFrame) -> ValidationCheck:
            try:
                failed = df.filter(violation).height
            except pl.exceptions.PolarsError as e:
                return ValidationCheck(
                    name=name,
                    passed=False,
                    severity=severity,
                    message=f"Check failed with error: {e}",
                )
            return ValidationCheck(
                name=name,
                passed=failed == 0,
                severity=severity,
                message=message if failed else "Check passed",
                failed_rows=failed,
                total_rows=len(df),
            )

        self._checks.append(check)
        return self

    def validate(self, df: pl.DataFrame) -> ValidationResult:
        """Run all validation checks on the DataFrame"""
        started_at = utcnow()
        results = [check(df) for check in self._checks]

        for result in results:
            if not result.passed:
                logger.warning(
                    "Validation check failed",
                    check=result.name,
                    message=result.message,
                    severity=result.severity.value,
                )

        passed_checks = sum(1 for r in results if r.passed)
        failed_checks = sum(1 for r in results if not r.passed and r.severity == ValidationSeverity.ERROR)
        warning_count = sum(1 for r in results if not r.passed and r.severity == ValidationSeverity.WARNING)

        if failed_checks > 0:
            status = ValidationStatus.FAILED
        elif warning_count > 0 and self.strict_mode:
            status = ValidationStatus.FAILED
        elif warning_count > 0:
            status = ValidationStatus.PARTIAL
        else:
            status = ValidationStatus.PASSED

        logger.info(
            "Validation complete",
            status=status.value,
            rows=len(df),
            passed=passed_checks,
            failed=failed_checks,
            warnings=warning_count,
        )

        return ValidationResult(
            status=status,
            total_checks=len(results),
            passed_checks=passed_checks,
            failed_checks=failed_checks,
            warning_count=warning_count,
            checks=results,
            started_at=started_at,
            completed_at=utcnow(),
        )


FRAME_SCHEMA = {
    "event_sequence": pl.Int64,
    "booking_id": pl.Utf8,
    "customer_id": pl.Utf8,
    "movie_id": pl.Utf8,
    "status": pl.Utf8,
    "ticket_count": pl.Int64,
    "ticket_price": pl.Float64,
    "total_amount": pl.Float64,
    "change_action": pl.Utf8,
    "booking_status_category": pl.Utf8,
    "booking_size_category": pl.Utf8,
    "price_category": pl.Utf8,
    "active_revenue": pl.Float64,
    "lost_revenue": pl.Float64,
    "is_valid_booking": pl.Boolean,
}


def records_to_frame(records: Sequence[DerivedRecord]) -> pl.DataFrame:
    """Project derived records onto a flat Polars frame for profiling"""
    def _num(value):
        return float(value) if value is not None else None

    def _enum(value):
        return value.value if value is not None else None

    rows = [
        {
            "event_sequence": r.event_sequence,
            "booking_id": r.booking_id,
            "customer_id": r.customer_id,
            "movie_id": r.movie_id,
            "status": r.status,
            "ticket_count": r.ticket_count,
            "ticket_price": _num(r.ticket_price),
            "total_amount": _num(r.total_amount),
            "change_action": r.change_action.value,
            "booking_status_category": _enum(r.booking_status_category),
            "booking_size_category": _enum(r.booking_size_category),
            "price_category": _enum(r.price_category),
            "active_revenue": float(r.active_revenue),
            "lost_revenue": float(r.lost_revenue),
            "is_valid_booking": r.is_valid_booking,
        }
        for r in records
    ]
    return pl.DataFrame(rows, schema=FRAME_SCHEMA)


def create_derived_bookings_validator() -> DataValidator:
    """Create pre-configured validator for a batch of derived bookings"""
    return (
        DataValidator()
        .add_not_null_check("event_sequence")
        .add_unique_check("event_sequence")
        .add_enum_check("change_action", [a.value for a in ChangeAction])
        .add_row_rule(
            "exclusive_revenue_split",
            (pl.col("active_revenue") > 0) & (pl.col("lost_revenue") > 0),
            "Records carry both active and lost revenue",
        )
        .add_row_rule(
            "valid_bookings_categorised",
            pl.col("is_valid_booking")
            & (pl.col("booking_size_category").is_null() | pl.col("price_category").is_null()),
            "Valid bookings without size or price category",
        )
        .add_not_null_check("booking_id", severity=ValidationSeverity.WARNING)
        .add_not_null_check("movie_id", severity=ValidationSeverity.WARNING)
        .add_not_null_check("customer_id", severity=ValidationSeverity.WARNING)
        .add_range_check("ticket_count", min_value=1, severity=ValidationSeverity.WARNING)
        .add_range_check("ticket_price", min_value=0.01, severity=ValidationSeverity.WARNING)
        .add_enum_check(
            "booking_size_category",
            [c.value for c in SizeCategory],
            severity=ValidationSeverity.WARNING,
        )
        .add_enum_check(
            "price_category",
            [c.value for c in PriceCategory],
            severity=ValidationSeverity.WARNING,
        )
        .add_row_rule(
            "unrecognised_status",
            pl.col("booking_status_category").is_null(),
            "Records with a status outside BOOKED/CANCELLED",
            severity=ValidationSeverity.WARNING,
        )
    )


def profile_records(records: Sequence[DerivedRecord]) -> ValidationResult:
    """Run the derived-bookings suite over a batch of records"""
    return create_derived_bookings_validator().validate(records_to_frame(records))
