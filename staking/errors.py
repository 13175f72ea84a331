class StakingError(Exception):
    pass


class NotFound(StakingError):
    pass


class UserNotFound(NotFound):
    pass


class StakeNotFound(NotFound):
    pass


class DepositNotFound(NotFound):
    pass


class AlreadyProcessed(StakingError):
    """Idempotency short-circuit. Callers treat it as success."""


class AlreadyCompleted(AlreadyProcessed):
    pass


class AlreadyLocked(StakingError):
    pass


class InvalidAmount(StakingError):
    pass


class TransientStoreError(StakingError):
    """Timeout or write conflict. The outcome is unknown; retry idempotently."""


class TransactionError(StakingError):
    pass
