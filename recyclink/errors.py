class RecyclinkError(Exception):
    pass


class InvalidType(RecyclinkError):
    pass


class TooLarge(RecyclinkError):
    pass


class TooManyFiles(RecyclinkError):
    pass


class DecodeFailure(RecyclinkError):
    pass


class SendFailed(RecyclinkError):
    pass


class NotAuthenticated(RecyclinkError):
    pass


class ServiceError(RecyclinkError):
    """Failure reported by one of the managed-service collaborators."""
