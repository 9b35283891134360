"""
Library Lending Back Office - command line entry point
Subcommands for setting up the database, enrolling members, lending and
returning books, listing borrowings and exporting a fines report.
"""

import argparse
import logging
import os
import sys
from datetime import datetime
from decimal import Decimal, InvalidOperation

from borrowing_ledger import BorrowingLedger
from database_models import create_database, get_session_factory
from lending_errors import LendingError
from lending_reports import borrowings_frame, lending_summary, save_borrowings_report
from list_queries import BorrowingFilter, ListOptions
from membership_catalog import MembershipCatalog
from subscription_manager import SubscriptionManager

DEFAULT_DB_URL = 'sqlite:///library_lending.db'
DEFAULT_LOG_FILE = 'library_lending.log'

logger = logging.getLogger(__name__)


def configure_logging(log_file=DEFAULT_LOG_FILE, level=logging.INFO):
    handlers = [logging.StreamHandler()]
    if log_file:
        handlers.insert(0, logging.FileHandler(log_file))
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=handlers,
    )


def _datetime_arg(value):
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an ISO 8601 datetime: {value!r}")


def _money_arg(value):
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a decimal amount: {value!r}")


def build_parser():
    parser = argparse.ArgumentParser(
        prog='lending',
        description='Library Lending Back Office'
    )

    parser.add_argument(
        '--db-url',
        default=os.environ.get('LENDING_DB_URL', DEFAULT_DB_URL),
        help=f'SQLAlchemy database URL (default: $LENDING_DB_URL or {DEFAULT_DB_URL})'
    )

    parser.add_argument(
        '--log-file',
        default=DEFAULT_LOG_FILE,
        help=f'Path for the log file, empty to disable (default: {DEFAULT_LOG_FILE})'
    )

    sub = parser.add_subparsers(dest='command', required=True)

    sub.add_parser('init-db', help='Create the lending tables')

    p = sub.add_parser('create-membership', help='Define a borrowing plan for a library')
    p.add_argument('--library-id', required=True)
    p.add_argument('--name', required=True)
    p.add_argument('--duration', type=int, required=True, help='Subscription length in days')
    p.add_argument('--active-loan-limit', type=int, required=True)
    p.add_argument('--loan-period', type=int, required=True, help='Days per borrowing')
    p.add_argument('--fine-per-day', type=_money_arg, default=Decimal('0'))

    p = sub.add_parser('subscribe', help='Enrol a user in a membership')
    p.add_argument('--user-id', required=True)
    p.add_argument('--membership-id', required=True)

    p = sub.add_parser('borrow', help='Lend a book against a subscription')
    p.add_argument('--book-id', required=True)
    p.add_argument('--subscription-id', required=True)
    p.add_argument('--staff-id', required=True)
    p.add_argument('--borrowed-at', type=_datetime_arg, default=None)

    p = sub.add_parser('return', help='Record the return of a borrowing')
    p.add_argument('--borrowing-id', required=True)
    p.add_argument('--returned-at', type=_datetime_arg, default=None)

    for name, help_text in (('list-borrowings', 'List borrowings'),
                            ('report', 'Export borrowings with state and fines to CSV')):
        p = sub.add_parser(name, help=help_text)
        p.add_argument('--subscription-id', default=None)
        p.add_argument('--user-id', default=None)
        p.add_argument('--library-id', default=None)
        p.add_argument('--overdue', action='store_true', help='Only unreturned borrowings past due')
        p.add_argument('--skip', type=int, default=0)
        p.add_argument('--limit', type=int, default=100)
        if name == 'report':
            p.add_argument('--output', default='borrowings_report.csv')

    return parser


def _borrowing_filter(args):
    return BorrowingFilter(
        subscription_id=args.subscription_id,
        user_id=args.user_id,
        library_id=args.library_id,
        is_overdue=True if args.overdue else None,
    )


def run(args):
    engine = create_database(args.db_url)
    try:
        dispatch(args, get_session_factory(engine))
    finally:
        engine.dispose()


def dispatch(args, session_factory):
    ledger = BorrowingLedger(session_factory)

    if args.command == 'init-db':
        print(f"Database ready: {args.db_url}")

    elif args.command == 'create-membership':
        membership = MembershipCatalog(session_factory).create_membership(
            args.library_id, args.name, args.duration,
            args.active_loan_limit, args.loan_period, args.fine_per_day,
        )
        print(membership.id)

    elif args.command == 'subscribe':
        subscription = SubscriptionManager(session_factory).create_subscription(args.user_id, args.membership_id)
        print(f"{subscription.id} expires {subscription.expires_at.isoformat()}")

    elif args.command == 'borrow':
        borrowing = ledger.create_borrowing(args.book_id, args.subscription_id, args.staff_id, args.borrowed_at)
        print(f"{borrowing.id} due {borrowing.due_at.isoformat()}")

    elif args.command == 'return':
        borrowing = ledger.return_borrowing(args.borrowing_id, args.returned_at)
        print(f"{borrowing.id} returned, fine {ledger.fine_for(borrowing):.2f}")

    elif args.command == 'list-borrowings':
        options = ListOptions(limit=args.limit, skip=args.skip)
        borrowings, total = ledger.list_borrowings(options, _borrowing_filter(args))
        now = ledger.clock.now()
        for b in borrowings:
            print(f"{b.id}  {ledger.state_of(b, now):<8}  due {b.due_at.isoformat()}  fine {ledger.fine_for(b, now):.2f}")
        print(f"Showing {len(borrowings)} of {total} borrowings")

    elif args.command == 'report':
        options = ListOptions(limit=args.limit, skip=args.skip)
        borrowings, total = ledger.list_borrowings(options, _borrowing_filter(args))
        df = borrowings_frame(borrowings, ledger.clock.now())
        save_borrowings_report(df, args.output)
        summary = lending_summary(df)
        print(
            f"{summary['total']} of {total} borrowings: {summary['active']} active, "
            f"{summary['overdue']} overdue, {summary['returned']} returned; "
            f"outstanding fines {summary['fines_outstanding']:.2f}"
        )


def main(argv=None):
    args = build_parser().parse_args(argv)
    configure_logging(args.log_file)

    logger.info(f"lending {args.command} started")
    try:
        run(args)
    except LendingError as e:
        logger.error(f"{args.command} failed [{e.code}]: {e}")
        return 1
    logger.info(f"lending {args.command} complete")
    return 0


if __name__ == "__main__":
    sys.exit(main())
