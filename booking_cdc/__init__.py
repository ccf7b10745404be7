"""
Movie Booking CDC Analytics
"""

__version__ = "1.0.0"
