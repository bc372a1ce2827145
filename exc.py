class ApplicationError(Exception):
    """Base class for errors raised while handling an admission request."""


class RequestError(ApplicationError):
    """The request cannot be processed as sent. Reported as a 400."""


class MalformedRequest(RequestError):
    pass


class UnsupportedKind(RequestError):
    pass


class EncodingFailure(ApplicationError):
    pass


class ConfigurationError(ApplicationError):
    pass
