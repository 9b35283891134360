import uuid
from datetime import datetime
from types import SimpleNamespace

import pytest

from borrowing_ledger import BorrowingLedger
from database_models import Book, Library, Staff, User, create_database, get_session_factory, session_scope
from lending_rules import FixedClock
from membership_catalog import MembershipCatalog
from subscription_manager import SubscriptionManager

START = datetime(2024, 1, 1, 9, 0, 0)


@pytest.fixture
def session_factory(tmp_path):
    """Fixture providing a session factory bound to a fresh SQLite file"""
    engine = create_database(f"sqlite:///{tmp_path / 'lending_test.db'}")
    yield get_session_factory(engine)
    engine.dispose()


@pytest.fixture
def clock():
    """Fixture providing a clock frozen at START"""
    return FixedClock(START)


@pytest.fixture
def catalog(session_factory, clock):
    return MembershipCatalog(session_factory, clock)


@pytest.fixture
def manager(session_factory, clock):
    return SubscriptionManager(session_factory, clock)


@pytest.fixture
def ledger(session_factory, clock):
    return BorrowingLedger(session_factory, clock)


@pytest.fixture
def seed(session_factory):
    """Fixture providing a library with one member, one staff member and three books"""
    with session_scope(session_factory) as session:
        library = Library(name='Central Library')
        session.add(library)
        session.flush()
        user = User(name='Alice')
        staff = Staff(name='Bob', library_id=library.id)
        books = [
            Book(code=f'B-00{i}', title=f'Book {i}', library_id=library.id)
            for i in range(1, 4)
        ]
        session.add_all([user, staff] + books)
    return SimpleNamespace(
        library_id=library.id,
        user_id=user.id,
        staff_id=staff.id,
        book_ids=[b.id for b in books],
    )


@pytest.fixture
def membership(catalog, seed):
    """Fixture providing the standard plan: 30 days, 2 loans of 14 days, 1.0 per day late"""
    return catalog.create_membership(
        seed.library_id, 'Standard', duration=30, active_loan_limit=2, loan_period=14, fine_per_day=1.0
    )


@pytest.fixture
def subscription(manager, seed, membership):
    return manager.create_subscription(seed.user_id, membership.id)


@pytest.fixture
def unknown_id():
    return uuid.uuid4()
