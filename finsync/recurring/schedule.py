"""
Occurrence arithmetic for recurring transactions.

Every occurrence is computed from the template's start date, never from
the previous occurrence. Monthly and yearly steps clamp to the end of a
shorter month (Jan 31 -> Feb 29 -> Mar 31 -> Apr 30) without drifting.
"""

from datetime import date

from dateutil.relativedelta import relativedelta

from finsync.models.records import Frequency


def occurrence(start: date, frequency: Frequency, n: int) -> date:
    """The n-th occurrence (n=0 is the start date itself)."""
    if n < 0:
        raise ValueError("Occurrence index cannot be negative")
    if frequency == Frequency.DAILY:
        return start + relativedelta(days=n)
    if frequency == Frequency.WEEKLY:
        return start + relativedelta(weeks=n)
    if frequency == Frequency.MONTHLY:
        return start + relativedelta(months=n)
    if frequency == Frequency.YEARLY:
        return start + relativedelta(years=n)
    raise ValueError(f"Unknown frequency: {frequency}")


def _estimate_index(start: date, frequency: Frequency, after: date) -> int:
    if frequency == Frequency.DAILY:
        return (after - start).days
    if frequency == Frequency.WEEKLY:
        return (after - start).days // 7
    if frequency == Frequency.MONTHLY:
        return (after.year - start.year) * 12 + (after.month - start.month)
    return after.year - start.year


def next_occurrence(start: date, frequency: Frequency, after: date) -> date:
    """
    First occurrence strictly after `after`.

    `after` does not have to be an occurrence itself, so watermarks
    written by older clients still land back on the schedule.
    """
    if after < start:
        return start

    n = max(_estimate_index(start, frequency, after), 0)
    while n > 0 and occurrence(start, frequency, n - 1) > after:
        n -= 1
    while occurrence(start, frequency, n) <= after:
        n += 1
    return occurrence(start, frequency, n)


def occurrences_between(
    start: date,
    frequency: Frequency,
    after: date,
    until: date,
) -> list[date]:
    """All occurrences in (after, until]."""
    days = []
    current = next_occurrence(start, frequency, after)
    while current <= until:
        days.append(current)
        current = next_occurrence(start, frequency, current)
    return days
