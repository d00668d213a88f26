"""
Data models for storage layer.

Defines the authentication log entities read by the statement pipeline.
"""

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class Organization:
    """A billed customer."""
    org_id: str
    org_name: str


@dataclass(frozen=True)
class EventRecord:
    """One authentication attempt, de-normalized with its organization name.

    Rows are read-only; the pipeline never writes back to the log tables.
    """
    org_id: str
    org_name: str
    auth_mode: str
    result_code: str
    result_message: str
    exec_start_time: datetime
