"""Time utilities for consistent UTC timestamp handling.

Use these functions instead of deprecated datetime.utcnow().
"""

import datetime


def utc_now() -> datetime.datetime:
    """Get current UTC time (timezone-aware).

    Returns
    -------
    datetime.datetime
        Current UTC time with timezone info
    """
    return datetime.datetime.now(datetime.timezone.utc)


def ensure_aware(value: datetime.datetime) -> datetime.datetime:
    """Attach UTC to naive datetimes so server and local timestamps compare.

    Parameters
    ----------
    value : datetime.datetime
        A naive or aware datetime. Naive values are assumed to be UTC.

    Returns
    -------
    datetime.datetime
        Timezone-aware datetime
    """
    if value.tzinfo is None:
        return value.replace(tzinfo=datetime.timezone.utc)
    return value
