"""
Subscription Manager - enrols users in memberships.

A subscription copies the membership's terms when it is created
(grandfathering): later membership edits never reach it. Only an explicit
staff update changes those terms, and that update never touches borrowings
already made under the subscription.
"""

import logging

from sqlalchemy.orm import joinedload

from database_models import Membership, Subscription, session_scope
from lending_errors import NotFoundError, ValidationFailedError
from lending_rules import SystemClock, compute_expires_at, snapshot_terms, to_money, utc_naive
from list_queries import (
    SUBSCRIPTION_SORT_FIELDS,
    ListOptions,
    SubscriptionFilter,
    filter_subscriptions,
    paginate,
    parse_id,
)
from membership_catalog import load_membership

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = ('user_id', 'membership_id', 'expires_at', 'fine_per_day', 'loan_period', 'active_loan_limit')


def with_display_rows(query):
    return query.options(
        joinedload(Subscription.user),
        joinedload(Subscription.membership).joinedload(Membership.library),
    )


class SubscriptionManager:

    def __init__(self, session_factory, clock=None):
        self.session_factory = session_factory
        self.clock = clock or SystemClock()

    def create_subscription(self, user_id, membership_id):
        user_id = parse_id(user_id, 'user_id')
        membership_id = parse_id(membership_id, 'membership_id')
        now = self.clock.now()

        with session_scope(self.session_factory) as session:
            membership = load_membership(session, membership_id)
            terms = snapshot_terms(membership)
            subscription = Subscription(
                user_id=user_id,
                membership_id=membership_id,
                expires_at=compute_expires_at(now, terms.duration),
                fine_per_day=terms.fine_per_day,
                loan_period=terms.loan_period,
                active_loan_limit=terms.active_loan_limit,
                created_at=now,
                updated_at=now,
            )
            session.add(subscription)

        logger.info(
            f"Created subscription {subscription.id} for user {user_id} on membership {membership_id} "
            f"(expires {subscription.expires_at.isoformat()}, limit {subscription.active_loan_limit}, "
            f"loan period {subscription.loan_period}d, fine {subscription.fine_per_day}/day)"
        )
        return subscription

    def update_subscription(self, subscription_id, **fields):
        """overwrite only the supplied fields; borrowings are left as they are"""
        subscription_id = parse_id(subscription_id, 'subscription_id')
        changes = _clean_update(fields)

        with session_scope(self.session_factory) as session:
            subscription = load_subscription(session, subscription_id)
            if 'membership_id' in changes:
                load_membership(session, changes['membership_id'])
            for name, value in changes.items():
                setattr(subscription, name, value)
            subscription.updated_at = self.clock.now()

        logger.info(f"Updated subscription {subscription_id}: {sorted(changes)}")
        return subscription

    def delete_subscription(self, subscription_id):
        subscription_id = parse_id(subscription_id, 'subscription_id')
        with session_scope(self.session_factory) as session:
            subscription = load_subscription(session, subscription_id)
            subscription.deleted_at = self.clock.now()
        logger.info(f"Soft-deleted subscription {subscription_id}")
        return subscription

    def get_subscription_by_id(self, subscription_id):
        subscription_id = parse_id(subscription_id, 'subscription_id')
        with session_scope(self.session_factory) as session:
            return load_subscription(session, subscription_id, with_display=True)

    def list_subscriptions(self, options, flt=None):
        """returns (subscriptions, total) for one page of the filtered set"""
        options = options if isinstance(options, ListOptions) else ListOptions(**options)
        options.validate(SUBSCRIPTION_SORT_FIELDS)
        flt = flt or SubscriptionFilter()
        now = self.clock.now()
        with session_scope(self.session_factory) as session:
            query = with_display_rows(session.query(Subscription))
            query = filter_subscriptions(query, flt, now)
            return paginate(query, options, SUBSCRIPTION_SORT_FIELDS, Subscription.id)


def _clean_update(fields):
    unknown = set(fields) - set(UPDATABLE_FIELDS)
    if unknown:
        raise ValidationFailedError(f"Unknown subscription fields: {sorted(unknown)}")

    changes = {}
    for name, value in fields.items():
        if value is None:
            continue
        if name in ('user_id', 'membership_id'):
            changes[name] = parse_id(value, name)
        elif name == 'expires_at':
            changes[name] = utc_naive(value, name)
        elif name == 'fine_per_day':
            changes[name] = to_money(value, name)
        else:
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                raise ValidationFailedError(f"{name} must be a positive integer, got {value!r}")
            changes[name] = value
    return changes


def load_subscription(session, subscription_id, with_display=False, for_update=False):
    query = session.query(Subscription)
    if with_display:
        query = with_display_rows(query)
    query = query.filter(Subscription.id == subscription_id, Subscription.deleted_at.is_(None))
    if for_update:
        query = query.with_for_update()
    subscription = query.one_or_none()
    if subscription is None:
        raise NotFoundError('Subscription', subscription_id)
    return subscription
