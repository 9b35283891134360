class LendingError(Exception):
    """Base exception for lending back office errors."""

    code = 'lending_error'


class NotFoundError(LendingError):
    """Requested membership, subscription or borrowing does not exist."""

    code = 'not_found'

    def __init__(self, entity, entity_id):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = entity_id


class SubscriptionExpiredError(LendingError):
    """Borrowing attempted against a subscription past its expiry."""

    code = 'subscription_expired'

    def __init__(self, subscription_id, expires_at):
        super().__init__(f"Subscription {subscription_id} expired at {expires_at.isoformat()}")
        self.subscription_id = subscription_id
        self.expires_at = expires_at


class LoanLimitExceededError(LendingError):
    """Subscription already holds as many unreturned borrowings as it allows."""

    code = 'loan_limit_exceeded'

    def __init__(self, subscription_id, limit, active):
        super().__init__(f"Subscription {subscription_id} has {active} unreturned borrowings (limit {limit})")
        self.subscription_id = subscription_id
        self.limit = limit
        self.active = active


class ValidationFailedError(LendingError):
    """Malformed identifier, field value or list option."""

    code = 'validation_failed'


class ConflictRetryableError(LendingError):
    """The store refused the unit of work because of a concurrent one; safe to retry."""

    code = 'conflict_retryable'
