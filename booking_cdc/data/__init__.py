"""
Data Generation Module
"""
from .generators import BookingChangeGenerator

__all__ = [
    "BookingChangeGenerator",
]
