class SegscribeError(Exception):
    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message or self.__class__.__name__


class InvalidInput(SegscribeError):
    status_code = 400


class PayloadTooLarge(InvalidInput):
    status_code = 413


class NotFound(SegscribeError):
    status_code = 404


class Unauthorized(SegscribeError):
    status_code = 401

    def __init__(self):
        # The reason for a failed check is never exposed
        super().__init__("Invalid signature")


class BadRequest(SegscribeError):
    status_code = 400


class JobNotReady(SegscribeError):
    status_code = 409


class UpstreamFailure(SegscribeError):
    status_code = 502


class Unresolvable(SegscribeError):
    """Webhook could not be matched to any job; acknowledged, never surfaced."""
