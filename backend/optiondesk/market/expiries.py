"""Candidate expiry dates for the expiry picker."""

from __future__ import annotations

from datetime import date, datetime, time, timedelta, timezone

IST = timezone(timedelta(hours=5, minutes=30))
MARKET_OPEN = time(9, 15)
MARKET_CLOSE = time(15, 30)


def weekly_expiries(today: date, weekday: int = 3, count: int = 4) -> list[date]:
    """The next ``count`` occurrences of ``weekday`` (Mon=0), today included."""
    first = today + timedelta(days=(weekday - today.weekday()) % 7)
    return [first + timedelta(weeks=i) for i in range(count)]


def monthly_expiry(today: date, weekday: int = 3) -> date:
    """Last ``weekday`` of the month, rolling to next month once it has passed."""
    year, month = today.year, today.month
    while True:
        next_month = date(year + month // 12, month % 12 + 1, 1)
        last_day = next_month - timedelta(days=1)
        expiry = last_day - timedelta(days=(last_day.weekday() - weekday) % 7)
        if expiry >= today:
            return expiry
        year, month = next_month.year, next_month.month


def expiry_option(expiry: date) -> dict:
    """``{"value": "2025-05-22", "display": "22 May 2025"}``."""
    return {
        "value": expiry.isoformat(),
        "display": f"{expiry.day:02d} {expiry.strftime('%b')} {expiry.year}",
    }


def ist_now() -> datetime:
    return datetime.now(IST)


def market_open(now: datetime) -> bool:
    """NSE cash session: weekdays 09:15–15:30 IST. Exchange holidays are not known here."""
    local = now.astimezone(IST)
    return local.weekday() < 5 and MARKET_OPEN <= local.time() < MARKET_CLOSE
