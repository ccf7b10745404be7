"""
Derivation Module
"""
from .derivation import derive, derive_many, is_valid_booking
from .processor import DerivationProcessor, DerivationRunResult

__all__ = [
    "derive",
    "derive_many",
    "is_valid_booking",
    "DerivationProcessor",
    "DerivationRunResult",
]
