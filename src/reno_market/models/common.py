from __future__ import annotations

from datetime import datetime, timezone
from typing import Annotated, Optional

from pydantic import AfterValidator


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps are read as UTC; aware ones are converted to it."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]
