"""
Rolling window calculation for purchase events.

The window floats forward from the oldest surviving qualifying purchase:
its start is the earliest purchase among the customer's unlocked,
unexpired events for the offer; its end is the new purchase plus the
offer's window length.
"""
from datetime import date, datetime
from typing import Iterable, Optional, Tuple

from dateutil.relativedelta import relativedelta


def calculate_window(
    purchased_at: datetime,
    window_months: int,
    active_purchase_times: Optional[Iterable[datetime]] = None,
) -> Tuple[date, date]:
    """
    Compute (window_start, window_end) for a purchase.

    Args:
        purchased_at: Timestamp of the purchase being recorded
        window_months: Offer window length in months
        active_purchase_times: Purchase timestamps of the customer's currently
            unlocked, unexpired events for the same offer

    Returns:
        Tuple of window start and end dates
    """
    window_end = (purchased_at + relativedelta(months=window_months)).date()

    earliest = purchased_at
    for ts in active_purchase_times or ():
        if ts is not None and ts < earliest:
            earliest = ts

    return earliest.date(), window_end
