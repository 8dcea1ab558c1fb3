from datetime import datetime
from typing import Optional


def naive_local(value: Optional[datetime]) -> Optional[datetime]:
    """Stored timestamps are naive local time; aware input is converted to match."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value
