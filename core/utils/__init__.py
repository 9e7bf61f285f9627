"""
Core Utilities Package

Modules:
    - time: Timestamp conversion and duration parsing
    - ntp: Minimal SNTP client used by the time-sync probe
"""

from core.utils.time import current_utc_datetime, parse_duration, to_utc_datetime

__all__ = ["current_utc_datetime", "parse_duration", "to_utc_datetime"]
