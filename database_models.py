import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Uuid,
    create_engine,
    event,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from lending_errors import LendingError

logger = logging.getLogger(__name__)

Base = declarative_base()


def _utc_now():
    return datetime.now(timezone.utc).replace(tzinfo=None)


class TimestampMixin:
    created_at = Column(DateTime, nullable=False, default=_utc_now)
    updated_at = Column(DateTime, nullable=False, default=_utc_now, onupdate=_utc_now)
    deleted_at = Column(DateTime, nullable=True)


class Library(TimestampMixin, Base):
    """library table - a lending branch owning memberships, staff and books"""
    __tablename__ = 'libraries'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)

    memberships = relationship('Membership', back_populates='library')

    def __repr__(self):
        return f"<Library(id={self.id}, name='{self.name}')>"


class User(TimestampMixin, Base):
    """user table - library members who hold subscriptions"""
    __tablename__ = 'users'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)

    subscriptions = relationship('Subscription', back_populates='user')

    def __repr__(self):
        return f"<User(id={self.id}, name='{self.name}')>"


class Staff(TimestampMixin, Base):
    """staff table - library employees who process borrowings"""
    __tablename__ = 'staffs'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    library_id = Column(Uuid, ForeignKey('libraries.id'), nullable=False)
    user_id = Column(Uuid, ForeignKey('users.id'), nullable=True)

    def __repr__(self):
        return f"<Staff(id={self.id}, name='{self.name}')>"


class Book(TimestampMixin, Base):
    """book table - physical items held by a library"""
    __tablename__ = 'books'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    code = Column(String(64), nullable=False)
    title = Column(String(500), nullable=False)
    author = Column(String(255), nullable=True)
    year = Column(Integer, nullable=True)
    library_id = Column(Uuid, ForeignKey('libraries.id'), nullable=False)

    def __repr__(self):
        return f"<Book(id={self.id}, code='{self.code}', title='{self.title}')>"


class Membership(TimestampMixin, Base):
    """membership table - borrowing plan templates defined per library"""
    __tablename__ = 'memberships'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    library_id = Column(Uuid, ForeignKey('libraries.id'), nullable=False)
    duration = Column(Integer, nullable=False)
    active_loan_limit = Column(Integer, nullable=False)
    loan_period = Column(Integer, nullable=False)
    fine_per_day = Column(Numeric(10, 2), nullable=False, default=0)

    library = relationship('Library', back_populates='memberships')
    subscriptions = relationship('Subscription', back_populates='membership')

    def __repr__(self):
        return f"<Membership(id={self.id}, name='{self.name}', library_id={self.library_id})>"


class Subscription(TimestampMixin, Base):
    """subscription table - a user's enrollment in a membership

    expires_at, fine_per_day, loan_period and active_loan_limit are copied
    from the membership when the row is created and never follow it after.
    """
    __tablename__ = 'subscriptions'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey('users.id'), nullable=False, index=True)
    membership_id = Column(Uuid, ForeignKey('memberships.id'), nullable=False, index=True)

    expires_at = Column(DateTime, nullable=False)
    fine_per_day = Column(Numeric(10, 2), nullable=False)
    loan_period = Column(Integer, nullable=False)
    active_loan_limit = Column(Integer, nullable=False)

    user = relationship('User', back_populates='subscriptions')
    membership = relationship('Membership', back_populates='subscriptions')
    borrowings = relationship('Borrowing', back_populates='subscription')

    def __repr__(self):
        return f"<Subscription(id={self.id}, user_id={self.user_id}, membership_id={self.membership_id})>"


class Borrowing(TimestampMixin, Base):
    """borrowing table - a single loan of a book against a subscription"""
    __tablename__ = 'borrowings'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    book_id = Column(Uuid, ForeignKey('books.id'), nullable=False, index=True)
    subscription_id = Column(Uuid, ForeignKey('subscriptions.id'), nullable=False, index=True)
    staff_id = Column(Uuid, ForeignKey('staffs.id'), nullable=False)

    borrowed_at = Column(DateTime, nullable=False)
    due_at = Column(DateTime, nullable=False)
    returned_at = Column(DateTime, nullable=True)

    subscription = relationship('Subscription', back_populates='borrowings')
    book = relationship('Book')
    staff = relationship('Staff')

    def __repr__(self):
        return f"<Borrowing(id={self.id}, book_id={self.book_id}, subscription_id={self.subscription_id}, returned={self.returned_at is not None})>"


def _use_immediate_transactions(engine):
    # pysqlite defers BEGIN until the first write; take the write lock up front
    @event.listens_for(engine, 'connect')
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _on_begin(conn):
        conn.exec_driver_sql('BEGIN IMMEDIATE')


def create_database(db_url='sqlite:///library_lending.db', echo=False, lock_timeout=30):
    if '://' not in db_url:
        db_url = f'sqlite:///{db_url}'
    connect_args = {}
    if db_url.startswith('sqlite'):
        connect_args = {'timeout': lock_timeout, 'check_same_thread': False}
    engine = create_engine(db_url, echo=echo, connect_args=connect_args)
    if engine.dialect.name == 'sqlite':
        _use_immediate_transactions(engine)
    Base.metadata.create_all(engine)
    logger.info(f"Database ready: {engine.url.render_as_string(hide_password=True)}")
    return engine


def get_session_factory(engine):
    return sessionmaker(bind=engine, expire_on_commit=False)


@contextmanager
def session_scope(session_factory):
    """one unit of work: commit on success, roll back everything on failure"""
    session = session_factory()
    try:
        yield session
        session.commit()
    except LendingError:
        session.rollback()
        raise
    except Exception as e:
        session.rollback()
        logger.error(f"Unit of work rolled back: {e}", exc_info=True)
        raise
    finally:
        session.close()

