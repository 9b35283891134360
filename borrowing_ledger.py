"""
Borrowing Ledger - admits, corrects, returns and voids borrowings.

Admission reads the subscription's snapshot terms and counts the
subscription's unreturned borrowings before inserting. Count and insert run
in one unit of work holding a lock on the subscription (SELECT ... FOR UPDATE,
or the SQLite write lock taken by BEGIN IMMEDIATE), so concurrent borrow
requests against one subscription cannot both take its last slot.

A borrowing is active while unreturned and not past due, overdue while
unreturned and past due, and returned once returned_at is set. Only the
dates are stored; state and fines are computed on read.
"""

import logging

from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import joinedload

from database_models import Borrowing, Membership, Subscription, session_scope
from lending_errors import (
    ConflictRetryableError,
    LoanLimitExceededError,
    NotFoundError,
    SubscriptionExpiredError,
    ValidationFailedError,
)
from lending_rules import (
    SystemClock,
    borrowing_state,
    compute_due_at,
    compute_fine,
    is_expired,
    utc_naive,
)
from list_queries import (
    BORROWING_SORT_FIELDS,
    BorrowingFilter,
    ListOptions,
    filter_borrowings,
    paginate,
    parse_id,
    unreturned_count_clause,
)
from subscription_manager import load_subscription

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ('book_id', 'subscription_id', 'staff_id', 'borrowed_at', 'due_at', 'returned_at')

# lock conflicts: PostgreSQL serialization failure, deadlock, lock not available
LOCK_SQLSTATES = ('40001', '40P01', '55P03')
LOCK_MESSAGES = ('database is locked', 'database table is locked', 'lock wait timeout', 'deadlock')


def with_display_rows(query):
    return query.options(
        joinedload(Borrowing.book),
        joinedload(Borrowing.staff),
        joinedload(Borrowing.subscription).joinedload(Subscription.user),
        joinedload(Borrowing.subscription).joinedload(Subscription.membership).joinedload(Membership.library),
    )


def is_lock_conflict(error):
    orig = getattr(error, 'orig', None)
    sqlstate = getattr(orig, 'pgcode', None) or getattr(orig, 'sqlstate', None)
    if sqlstate in LOCK_SQLSTATES:
        return True
    message = str(orig if orig is not None else error).lower()
    return any(text in message for text in LOCK_MESSAGES)


class BorrowingLedger:

    def __init__(self, session_factory, clock=None, count_overdue_against_limit=True):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()
        # overdue-but-unreturned items are still in the member's hands
        self.count_overdue_against_limit = count_overdue_against_limit

    def create_borrowing(self, book_id, subscription_id, staff_id, borrowed_at=None):
        book_id = parse_id(book_id, 'book_id')
        subscription_id = parse_id(subscription_id, 'subscription_id')
        staff_id = parse_id(staff_id, 'staff_id')
        now = self.clock.now()
        borrowed_at = utc_naive(borrowed_at, 'borrowed_at') if borrowed_at is not None else now

        try:
            with session_scope(self.session_factory) as session:
                subscription = load_subscription(session, subscription_id, for_update=True)

                if is_expired(subscription.expires_at, borrowed_at):
                    logger.warning(
                        f"Rejected borrowing of book {book_id}: subscription {subscription_id} "
                        f"expired at {subscription.expires_at.isoformat()}"
                    )
                    raise SubscriptionExpiredError(subscription_id, subscription.expires_at)

                active = (
                    session.query(func.count(Borrowing.id))
                    .filter(unreturned_count_clause(subscription_id, borrowed_at, self.count_overdue_against_limit))
                    .scalar()
                )
                if active >= subscription.active_loan_limit:
                    logger.warning(
                        f"Rejected borrowing of book {book_id}: subscription {subscription_id} "
                        f"holds {active} of {subscription.active_loan_limit} loans"
                    )
                    raise LoanLimitExceededError(subscription_id, subscription.active_loan_limit, active)

                borrowing = Borrowing(
                    book_id=book_id,
                    subscription_id=subscription_id,
                    staff_id=staff_id,
                    borrowed_at=borrowed_at,
                    due_at=compute_due_at(borrowed_at, subscription.loan_period),
                    created_at=now,
                    updated_at=now,
                )
                session.add(borrowing)
        except OperationalError as e:
            if not is_lock_conflict(e):
                raise
            logger.warning(f"Borrowing against subscription {subscription_id} hit a lock conflict: {e.orig}")
            raise ConflictRetryableError(
                f"Borrowing against subscription {subscription_id} conflicted with a concurrent request"
            ) from e

        logger.info(
            f"Created borrowing {borrowing.id}: book {book_id} on subscription {subscription_id} "
            f"by staff {staff_id}, due {borrowing.due_at.isoformat()}"
        )
        return borrowing

    def update_borrowing(self, borrowing_id, **fields):
        """administrative correction; admission checks are not re-run"""
        borrowing_id = parse_id(borrowing_id, 'borrowing_id')
        changes = _clean_update(fields)

        with session_scope(self.session_factory) as session:
            borrowing = load_borrowing(session, borrowing_id)
            if 'subscription_id' in changes:
                load_subscription(session, changes['subscription_id'])
            was_returned = borrowing.returned_at is not None
            for name, value in changes.items():
                setattr(borrowing, name, value)
            _check_dates(borrowing)
            borrowing.updated_at = self.clock.now()

        if 'returned_at' in changes and not was_returned:
            logger.info(f"Borrowing {borrowing_id} returned at {borrowing.returned_at.isoformat()}")
        logger.info(f"Updated borrowing {borrowing_id}: {sorted(changes)}")
        return borrowing

    def return_borrowing(self, borrowing_id, returned_at=None):
        borrowing_id = parse_id(borrowing_id, 'borrowing_id')
        now = self.clock.now()
        returned_at = utc_naive(returned_at, 'returned_at') if returned_at is not None else now

        with session_scope(self.session_factory) as session:
            borrowing = load_borrowing(session, borrowing_id, with_display=True)
            if borrowing.returned_at is not None:
                raise ValidationFailedError(
                    f"Borrowing {borrowing_id} was already returned at {borrowing.returned_at.isoformat()}"
                )
            borrowing.returned_at = returned_at
            _check_dates(borrowing)
            borrowing.updated_at = now

        fine = compute_fine(borrowing.due_at, borrowing.returned_at, borrowing.subscription.fine_per_day, now)
        logger.info(f"Borrowing {borrowing_id} returned at {returned_at.isoformat()} (fine {fine})")
        return borrowing

    def delete_borrowing(self, borrowing_id):
        borrowing_id = parse_id(borrowing_id, 'borrowing_id')
        with session_scope(self.session_factory) as session:
            borrowing = load_borrowing(session, borrowing_id)
            borrowing.deleted_at = self.clock.now()
        logger.info(f"Voided borrowing {borrowing_id}")
        return borrowing

    def get_borrowing_by_id(self, borrowing_id):
        borrowing_id = parse_id(borrowing_id, 'borrowing_id')
        with session_scope(self.session_factory) as session:
            return load_borrowing(session, borrowing_id, with_display=True)

    def list_borrowings(self, options, flt=None):
        """returns (borrowings, total) for one page of the filtered set"""
        options = options if isinstance(options, ListOptions) else ListOptions(**options)
        options.validate(BORROWING_SORT_FIELDS)
        flt = flt or BorrowingFilter()
        now = self.clock.now()
        with session_scope(self.session_factory) as session:
            query = with_display_rows(session.query(Borrowing))
            query = filter_borrowings(query, flt, now)
            return paginate(query, options, BORROWING_SORT_FIELDS, Borrowing.id)

    def get_fine(self, borrowing_id):
        borrowing = self.get_borrowing_by_id(borrowing_id)
        return self.fine_for(borrowing)

    def fine_for(self, borrowing, now=None):
        """fine at `now` using the subscription's snapshot fine-per-day"""
        now = now if now is not None else self.clock.now()
        return compute_fine(borrowing.due_at, borrowing.returned_at, borrowing.subscription.fine_per_day, now)

    def state_of(self, borrowing, now=None):
        now = now if now is not None else self.clock.now()
        return borrowing_state(borrowing.due_at, borrowing.returned_at, now)


def _clean_update(fields):
    unknown = set(fields) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationFailedError(f"Unknown borrowing fields: {sorted(unknown)}")

    changes = {}
    for name, value in fields.items():
        if value is None:
            continue
        if name.endswith('_id'):
            changes[name] = parse_id(value, name)
        else:
            changes[name] = utc_naive(value, name)
    return changes


def _check_dates(borrowing):
    if borrowing.due_at < borrowing.borrowed_at:
        raise ValidationFailedError(f"due_at {borrowing.due_at.isoformat()} is before borrowed_at")
    if borrowing.returned_at is not None and borrowing.returned_at < borrowing.borrowed_at:
        raise ValidationFailedError(f"returned_at {borrowing.returned_at.isoformat()} is before borrowed_at")


def load_borrowing(session, borrowing_id, with_display=False):
    query = session.query(Borrowing)
    if with_display:
        query = with_display_rows(query)
    borrowing = query.filter(Borrowing.id == borrowing_id, Borrowing.deleted_at.is_(None)).one_or_none()
    if borrowing is None:
        raise NotFoundError('Borrowing', borrowing_id)
    return borrowing
