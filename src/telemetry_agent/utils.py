"""
Utility functions for the telemetry pipeline.
"""

import uuid
from datetime import datetime, timezone


def generate_id() -> uuid.UUID:
    """Generate a random event/batch identifier."""
    return uuid.uuid4()


def utc_now() -> datetime:
    """Get current UTC datetime."""
    return datetime.now(timezone.utc)
