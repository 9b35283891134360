"""
Pytest tests for list_queries.py
Borrowing listing filters, derived boolean filters and pagination totals
"""

import uuid
from datetime import timedelta, timezone

import pytest

from conftest import START
from lending_errors import ValidationFailedError
from list_queries import BorrowingFilter, ListOptions, TimeRange, parse_id


@pytest.fixture
def lending_history(ledger, manager, catalog, clock, seed, membership):
    """Fixture providing two subscriptions with returned, overdue and active borrowings

    Timeline, with the clock left at START + 20 days:
      sub_a: returned (borrowed day 0), overdue (borrowed day 1)
      sub_b: active (borrowed day 10), short plan expiring on day 15
    """
    short_plan = catalog.create_membership(seed.library_id, 'Short', duration=15, active_loan_limit=5, loan_period=14)
    sub_a = manager.create_subscription(seed.user_id, membership.id)
    sub_b = manager.create_subscription(seed.user_id, short_plan.id)

    returned = ledger.create_borrowing(seed.book_ids[0], sub_a.id, seed.staff_id)
    clock.advance(days=1)
    overdue = ledger.create_borrowing(seed.book_ids[1], sub_a.id, seed.staff_id)
    clock.advance(days=2)
    ledger.return_borrowing(returned.id)
    clock.advance(days=7)
    active = ledger.create_borrowing(seed.book_ids[2], sub_b.id, seed.staff_id)
    clock.advance(days=10)

    return {
        'sub_a': sub_a, 'sub_b': sub_b, 'short_plan': short_plan,
        'returned': returned, 'overdue': overdue, 'active': active,
    }


def ids(rows):
    return {row.id for row in rows}


def test_is_active_filter(ledger, lending_history):
    rows, total = ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(is_active=True))
    assert ids(rows) == {lending_history['active'].id}
    assert total == 1


def test_is_active_false_is_the_negation(ledger, lending_history):
    rows, _ = ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(is_active=False))
    assert ids(rows) == {lending_history['returned'].id, lending_history['overdue'].id}


def test_overdue_and_returned_filters(ledger, lending_history):
    rows, _ = ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(is_overdue=True))
    assert ids(rows) == {lending_history['overdue'].id}
    rows, _ = ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(is_returned=True))
    assert ids(rows) == {lending_history['returned'].id}


def test_is_active_and_is_expired_are_independent(ledger, lending_history):
    """Test that subscription expiry and borrowing activity combine as separate predicates"""
    rows, _ = ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(is_active=True, is_expired=True))
    assert ids(rows) == {lending_history['active'].id}

    rows, _ = ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(is_expired=False))
    assert ids(rows) == {lending_history['returned'].id, lending_history['overdue'].id}


def test_filters_through_subscription(ledger, seed, lending_history):
    flt = BorrowingFilter(membership_id=lending_history['short_plan'].id)
    rows, _ = ledger.list_borrowings(ListOptions(limit=10), flt)
    assert ids(rows) == {lending_history['active'].id}

    rows, total = ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(user_id=seed.user_id, library_id=seed.library_id))
    assert total == 3

    rows, total = ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(library_id=uuid.uuid4()))
    assert (rows, total) == ([], 0)


def test_foreign_key_filters(ledger, seed, lending_history):
    rows, _ = ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(book_id=seed.book_ids[1]))
    assert ids(rows) == {lending_history['overdue'].id}
    rows, _ = ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(subscription_id=str(lending_history['sub_a'].id)))
    assert len(rows) == 2
    _, total = ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(staff_id=seed.staff_id))
    assert total == 3


def test_time_filters_exact_and_range(ledger, lending_history):
    rows, _ = ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(borrowed_at=START + timedelta(days=1)))
    assert ids(rows) == {lending_history['overdue'].id}

    window = TimeRange(start=START + timedelta(days=15), end=START + timedelta(days=20))
    rows, _ = ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(due_at=window))
    assert ids(rows) == {lending_history['overdue'].id}

    rows, _ = ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(returned_at=TimeRange(start=START)))
    assert ids(rows) == {lending_history['returned'].id}


def test_inverted_time_range_rejected(ledger, lending_history):
    with pytest.raises(ValidationFailedError):
        ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(due_at=TimeRange(START, START - timedelta(days=1))))


def test_time_range_mixes_aware_and_naive_bounds(ledger, lending_history):
    """Test that an aware bound is converted to UTC before it is compared with a naive one"""
    window = TimeRange(start=(START + timedelta(days=15)).replace(tzinfo=timezone.utc), end=START + timedelta(days=20))
    rows, _ = ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(due_at=window))
    assert ids(rows) == {lending_history['overdue'].id}

    inverted = TimeRange(start=START + timedelta(days=20), end=(START + timedelta(days=15)).replace(tzinfo=timezone.utc))
    with pytest.raises(ValidationFailedError):
        ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(due_at=inverted))


def test_time_filter_rejects_non_datetime_bounds(ledger, lending_history):
    with pytest.raises(ValidationFailedError, match='due_at.start'):
        ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(due_at=TimeRange(start='x')))


def test_pagination_total_covers_full_set(ledger, lending_history):
    """Test that total reflects every matching row, not just the page"""
    page, total = ledger.list_borrowings(ListOptions(limit=1, skip=1))
    assert total == 3
    assert len(page) == 1

    rows, _ = ledger.list_borrowings(ListOptions(limit=10, sort_by='borrowed_at', sort_order='asc'))
    assert [r.id for r in rows] == [
        lending_history['returned'].id, lending_history['overdue'].id, lending_history['active'].id,
    ]
    rows, _ = ledger.list_borrowings(ListOptions(limit=10))
    assert rows[0].id == lending_history['active'].id

    page, total = ledger.list_borrowings(ListOptions(limit=5, skip=10))
    assert (page, total) == ([], 3)


def test_listed_borrowings_carry_subscription_terms(ledger, lending_history):
    rows, _ = ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(is_overdue=True))
    assert ledger.fine_for(rows[0]) == 5.0


def test_malformed_filter_id(ledger):
    with pytest.raises(ValidationFailedError):
        ledger.list_borrowings(ListOptions(limit=10), BorrowingFilter(book_id='12'))


def test_parse_id_accepts_strings_and_uuids():
    value = uuid.uuid4()
    assert parse_id(value) is value
    assert parse_id(str(value)) == value
    with pytest.raises(ValidationFailedError):
        parse_id(42, 'book_id')


def test_listed_borrowings_carry_display_rows(ledger, lending_history):
    """Test that listed borrowings can be shown without another query"""
    rows, _ = ledger.list_borrowings(ListOptions(limit=10, sort_by='borrowed_at', sort_order='asc'))
    assert [row.book.title for row in rows] == ['Book 1', 'Book 2', 'Book 3']
    for row in rows:
        assert row.staff.name == 'Bob'
        assert row.subscription.user.name == 'Alice'
        assert row.subscription.membership.library.name == 'Central Library'
    assert {row.subscription.membership.name for row in rows} == {'Standard', 'Short'}
