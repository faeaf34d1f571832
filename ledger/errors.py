class LedgerServiceError(Exception):
    pass


class ConfigurationError(LedgerServiceError):
    pass


class ValidationError(LedgerServiceError):
    pass


class InvalidType(ValidationError):
    pass


class InvalidAmount(ValidationError):
    pass


class MissingFields(ValidationError):
    pass


class NotFoundError(LedgerServiceError):
    pass


class WalletNotFound(NotFoundError):
    pass


class TransactionNotFound(NotFoundError):
    pass


class UserNotFound(NotFoundError):
    pass


class PersistenceConflict(LedgerServiceError):
    pass


class DuplicateReferralCode(PersistenceConflict):
    pass


class AuthenticationError(LedgerServiceError):
    pass
