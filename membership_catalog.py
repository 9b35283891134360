import logging

from database_models import Membership, session_scope
from lending_errors import NotFoundError, ValidationFailedError
from lending_rules import SystemClock, to_money
from list_queries import parse_id

logger = logging.getLogger(__name__)

MEMBERSHIP_FIELDS = ('name', 'duration', 'active_loan_limit', 'loan_period', 'fine_per_day')


def _check_terms(fields):
    for name in ('duration', 'active_loan_limit', 'loan_period'):
        value = fields.get(name)
        if name in fields and (isinstance(value, bool) or not isinstance(value, int) or value < 1):
            raise ValidationFailedError(f"{name} must be a positive integer, got {fields[name]!r}")
    if 'fine_per_day' in fields:
        fields['fine_per_day'] = to_money(fields['fine_per_day'], 'fine_per_day')


class MembershipCatalog:
    """borrowing plan templates; edits here never reach existing subscriptions"""

    def __init__(self, session_factory, clock=None):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()

    def create_membership(self, library_id, name, duration, active_loan_limit, loan_period, fine_per_day=0.0):
        library_id = parse_id(library_id, 'library_id')
        _check_terms({
            'duration': duration,
            'active_loan_limit': active_loan_limit,
            'loan_period': loan_period,
            'fine_per_day': fine_per_day,
        })
        now = self.clock.now()
        with session_scope(self.session_factory) as session:
            membership = Membership(
                library_id=library_id,
                name=name,
                duration=duration,
                active_loan_limit=active_loan_limit,
                loan_period=loan_period,
                fine_per_day=fine_per_day,
                created_at=now,
                updated_at=now,
            )
            session.add(membership)
        logger.info(f"Created membership {membership.id} '{name}' for library {library_id}")
        return membership

    def get_membership_by_id(self, membership_id):
        membership_id = parse_id(membership_id, 'membership_id')
        with session_scope(self.session_factory) as session:
            return load_membership(session, membership_id)

    def update_membership(self, membership_id, **fields):
        membership_id = parse_id(membership_id, 'membership_id')
        unknown = set(fields) - set(MEMBERSHIP_FIELDS)
        if unknown:
            raise ValidationFailedError(f"Unknown membership fields: {sorted(unknown)}")
        _check_terms(fields)
        with session_scope(self.session_factory) as session:
            membership = load_membership(session, membership_id)
            for name, value in fields.items():
                setattr(membership, name, value)
            membership.updated_at = self.clock.now()
        logger.info(f"Updated membership {membership_id}: {sorted(fields)}")
        return membership


def load_membership(session, membership_id):
    membership = (
        session.query(Membership)
        .filter(Membership.id == membership_id, Membership.deleted_at.is_(None))
        .one_or_none()
    )
    if membership is None:
        raise NotFoundError('Membership', membership_id)
    return membership
