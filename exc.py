class ApplicationError(Exception):
    pass


class DecodeError(ApplicationError):
    pass


class WrongResourceError(ApplicationError):
    def __init__(self, msg="Wrong resource type"):
        super().__init__(msg)


class InstanceNotConfiguredError(ApplicationError):
    pass


class SerializationError(ApplicationError):
    pass


class PatchError(ApplicationError):
    pass


class CertificateError(ApplicationError):
    pass


class InvalidReviewError(ApplicationError):
    """The admission review could not be read from the HTTP request.

    Carries the HTTP status to answer with and, when it could be recovered from
    the payload, the uid of the admission request.
    """

    def __init__(self, msg, status=400, uid=None):
        super().__init__(msg)
        self.status = status
        self.uid = uid
