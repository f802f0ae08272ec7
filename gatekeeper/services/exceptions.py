"""Domain-specific exceptions."""


class ServiceError(Exception):
    pass


class InvalidRole(ServiceError, ValueError):
    pass


class ProfileNotFound(ServiceError):
    pass


class ProfileAlreadyExists(ServiceError):
    pass


class SubscriptionLookupError(ServiceError):
    pass


class ProcedureError(ServiceError):
    pass


class AccessDenied(ServiceError):
    pass


class QuotaExceeded(ServiceError):
    pass
