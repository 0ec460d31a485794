class ServiceError(Exception):
    code = 'INTERNAL_ERROR'

    def __init__(self, message, code=None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class NotFoundError(ServiceError):
    code = 'NOT_FOUND'


class ConcurrentModificationError(ServiceError):
    code = 'CONCURRENT_MODIFICATION'
