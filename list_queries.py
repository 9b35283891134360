"""
Shared read path for subscription and borrowing listings.

Filters are applied to SQLAlchemy queries; derived filters (is_active,
is_expired, ...) are evaluated in SQL against the request's single "now".
Totals are counted over the whole filtered set, not over the returned page.
"""

import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import and_, not_

from database_models import Borrowing, Membership, Subscription
from lending_errors import ValidationFailedError
from lending_rules import utc_naive

MAX_LIMIT = 100
SORT_ORDERS = ('asc', 'desc')

SUBSCRIPTION_SORT_FIELDS = {
    'created_at': Subscription.created_at,
    'updated_at': Subscription.updated_at,
    'expires_at': Subscription.expires_at,
}

BORROWING_SORT_FIELDS = {
    'created_at': Borrowing.created_at,
    'updated_at': Borrowing.updated_at,
    'borrowed_at': Borrowing.borrowed_at,
    'due_at': Borrowing.due_at,
    'returned_at': Borrowing.returned_at,
}


def parse_id(value, field='id'):
    if isinstance(value, uuid.UUID):
        return value
    if isinstance(value, str):
        try:
            return uuid.UUID(value)
        except ValueError:
            pass
    raise ValidationFailedError(f"{field} is not a valid UUID: {value!r}")


def parse_optional_id(value, field):
    if value is None:
        return None
    return parse_id(value, field)


@dataclass
class ListOptions:
    limit: int = None
    skip: int = 0
    sort_by: str = 'created_at'
    sort_order: str = 'desc'

    def validate(self, sort_fields):
        if self.limit is None:
            raise ValidationFailedError("limit is required")
        if isinstance(self.limit, bool) or not isinstance(self.limit, int) or not 1 <= self.limit <= MAX_LIMIT:
            raise ValidationFailedError(f"limit must be between 1 and {MAX_LIMIT}, got {self.limit!r}")
        if isinstance(self.skip, bool) or not isinstance(self.skip, int) or self.skip < 0:
            raise ValidationFailedError(f"skip must be a non-negative integer, got {self.skip!r}")
        if self.sort_by not in sort_fields:
            raise ValidationFailedError(f"cannot sort by {self.sort_by!r}; expected one of {sorted(sort_fields)}")
        if self.sort_order not in SORT_ORDERS:
            raise ValidationFailedError(f"sort_order must be 'asc' or 'desc', got {self.sort_order!r}")
        return self


@dataclass
class TimeRange:
    """inclusive bounds, either side may be left open"""
    start: datetime = None
    end: datetime = None


@dataclass
class SubscriptionFilter:
    user_id: object = None
    membership_id: object = None
    library_id: object = None
    is_expired: bool = None


@dataclass
class BorrowingFilter:
    book_id: object = None
    subscription_id: object = None
    staff_id: object = None
    membership_id: object = None
    library_id: object = None
    user_id: object = None
    borrowed_at: object = None
    due_at: object = None
    returned_at: object = None
    is_active: bool = None
    is_overdue: bool = None
    is_returned: bool = None
    is_expired: bool = None


def _match_time(column, value, field):
    if isinstance(value, TimeRange):
        start = utc_naive(value.start, f'{field}.start')
        end = utc_naive(value.end, f'{field}.end')
        clauses = []
        if start is not None:
            clauses.append(column >= start)
        if end is not None:
            clauses.append(column <= end)
        if start is not None and end is not None and start > end:
            raise ValidationFailedError(f"{field} range starts after it ends")
        return and_(*clauses) if clauses else None
    if isinstance(value, datetime):
        return column == utc_naive(value, field)
    raise ValidationFailedError(f"{field} must be a datetime or TimeRange, got {value!r}")


def _tri_state(query, flag, predicate):
    if flag is None:
        return query
    return query.filter(predicate if flag else not_(predicate))


def filter_subscriptions(query, flt, now):
    query = query.filter(Subscription.deleted_at.is_(None))
    user_id = parse_optional_id(flt.user_id, 'user_id')
    membership_id = parse_optional_id(flt.membership_id, 'membership_id')
    library_id = parse_optional_id(flt.library_id, 'library_id')

    if user_id is not None:
        query = query.filter(Subscription.user_id == user_id)
    if membership_id is not None:
        query = query.filter(Subscription.membership_id == membership_id)
    if library_id is not None:
        query = query.join(Membership, Subscription.membership_id == Membership.id)
        query = query.filter(Membership.library_id == library_id)
    query = _tri_state(query, flt.is_expired, Subscription.expires_at <= now)
    return query


def filter_borrowings(query, flt, now):
    query = query.filter(Borrowing.deleted_at.is_(None))
    book_id = parse_optional_id(flt.book_id, 'book_id')
    subscription_id = parse_optional_id(flt.subscription_id, 'subscription_id')
    staff_id = parse_optional_id(flt.staff_id, 'staff_id')
    membership_id = parse_optional_id(flt.membership_id, 'membership_id')
    library_id = parse_optional_id(flt.library_id, 'library_id')
    user_id = parse_optional_id(flt.user_id, 'user_id')

    if book_id is not None:
        query = query.filter(Borrowing.book_id == book_id)
    if subscription_id is not None:
        query = query.filter(Borrowing.subscription_id == subscription_id)
    if staff_id is not None:
        query = query.filter(Borrowing.staff_id == staff_id)

    # user, membership, library and expiry all live on the subscription
    if any(v is not None for v in (membership_id, library_id, user_id, flt.is_expired)):
        query = query.join(Subscription, Borrowing.subscription_id == Subscription.id)
        if membership_id is not None:
            query = query.filter(Subscription.membership_id == membership_id)
        if user_id is not None:
            query = query.filter(Subscription.user_id == user_id)
        if library_id is not None:
            query = query.join(Membership, Subscription.membership_id == Membership.id)
            query = query.filter(Membership.library_id == library_id)
        query = _tri_state(query, flt.is_expired, Subscription.expires_at <= now)

    for field, column in (('borrowed_at', Borrowing.borrowed_at),
                          ('due_at', Borrowing.due_at),
                          ('returned_at', Borrowing.returned_at)):
        value = getattr(flt, field)
        if value is None:
            continue
        clause = _match_time(column, value, field)
        if clause is not None:
            query = query.filter(clause)

    unreturned = Borrowing.returned_at.is_(None)
    query = _tri_state(query, flt.is_active, and_(unreturned, Borrowing.due_at >= now))
    query = _tri_state(query, flt.is_overdue, and_(unreturned, Borrowing.due_at < now))
    query = _tri_state(query, flt.is_returned, Borrowing.returned_at.isnot(None))
    return query


def paginate(query, options, sort_fields, id_column):
    """returns (page rows, total rows matching the filters)"""
    total = query.order_by(None).count()
    column = sort_fields[options.sort_by]
    if options.sort_order == 'asc':
        query = query.order_by(column.asc(), id_column.asc())
    else:
        query = query.order_by(column.desc(), id_column.desc())
    rows = query.offset(options.skip).limit(options.limit).all()
    return rows, total


def unreturned_count_clause(subscription_id, now, count_overdue):
    """borrowings of a subscription that occupy an active-loan slot"""
    clauses = [
        Borrowing.subscription_id == subscription_id,
        Borrowing.deleted_at.is_(None),
        Borrowing.returned_at.is_(None),
    ]
    if not count_overdue:
        clauses.append(Borrowing.due_at >= now)
    return and_(*clauses)
