"""
Data Quality Module
"""
from .validators import (
    DataValidator,
    ValidationResult,
    ValidationStatus,
    create_derived_bookings_validator,
    profile_records,
    records_to_frame,
)

__all__ = [
    "DataValidator",
    "ValidationResult",
    "ValidationStatus",
    "create_derived_bookings_validator",
    "profile_records",
    "records_to_frame",
]
