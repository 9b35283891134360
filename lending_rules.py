"""
Derived lending state: expiry, due dates, borrowing states and fines.

Everything here is a pure function of stored fields and a supplied "now".
Nothing derived is ever written back to the database, so there is no
recomputation job and no stale overdue flag.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

from lending_errors import ValidationFailedError

STATE_ACTIVE = 'active'
STATE_OVERDUE = 'overdue'
STATE_RETURNED = 'returned'
BORROWING_STATES = (STATE_ACTIVE, STATE_OVERDUE, STATE_RETURNED)
CENT = Decimal('0.01')


def utc_naive(dt, field='datetime'):
    """all stored datetimes are naive UTC; aware inputs are converted first"""
    if dt is None:
        return None
    if not isinstance(dt, datetime):
        raise ValidationFailedError(f"{field} must be a datetime, got {dt!r}")
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


class SystemClock:

    def now(self):
        return datetime.now(timezone.utc).replace(tzinfo=None)


class FixedClock:
    """settable clock for tests and replays"""

    def __init__(self, now):
        self._now = utc_naive(now)

    def now(self):
        return self._now

    def advance(self, **kwargs):
        self._now = self._now + timedelta(**kwargs)
        return self._now


@dataclass(frozen=True)
class MembershipTerms:
    duration: int
    fine_per_day: Decimal
    loan_period: int
    active_loan_limit: int


def snapshot_terms(membership):
    # value copy, so later membership edits cannot reach the subscription
    return MembershipTerms(
        duration=int(membership.duration),
        fine_per_day=to_money(membership.fine_per_day, 'fine_per_day'),
        loan_period=int(membership.loan_period),
        active_loan_limit=int(membership.active_loan_limit),
    )


def compute_expires_at(created_at, duration_days):
    return created_at + timedelta(days=duration_days)


def compute_due_at(borrowed_at, loan_period_days):
    return borrowed_at + timedelta(days=loan_period_days)


def is_expired(expires_at, now):
    return expires_at <= now


def is_returned(returned_at):
    return returned_at is not None


def is_overdue(due_at, returned_at, now):
    return returned_at is None and due_at < now


def is_active(due_at, returned_at, now):
    return returned_at is None and due_at >= now


def borrowing_state(due_at, returned_at, now):
    if is_returned(returned_at):
        return STATE_RETURNED
    if is_overdue(due_at, returned_at, now):
        return STATE_OVERDUE
    return STATE_ACTIVE


def overdue_days(due_at, returned_at, now):
    """whole days between due_at and the return (or now), partial days dropped"""
    end = returned_at if returned_at is not None else now
    return max(0, (end - due_at).days)


def compute_fine(due_at, returned_at, fine_per_day, now):
    return overdue_days(due_at, returned_at, now) * fine_per_day


def to_money(value, field='amount'):
    """non-negative Decimal with two places; floats go through str to drop binary noise"""
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise ValidationFailedError(f"{field} must be a non-negative number, got {value!r}")
    try:
        amount = Decimal(str(value)).quantize(CENT)
    except InvalidOperation:
        raise ValidationFailedError(f"{field} must be a non-negative number, got {value!r}")
    if not amount.is_finite() or amount < 0:
        raise ValidationFailedError(f"{field} must be a non-negative number, got {value!r}")
    return amount
