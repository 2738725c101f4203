# manufacturing/errors.py - Typed engine errors
"""Errors raised by the manufacturing engine.

Every error carries a stable ``kind`` and a human readable message so the
request layer can map it to a response without inspecting persistence details.
"""


class EngineError(Exception):
    """Base class for all engine errors"""

    kind = 'EngineError'

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        payload = {'kind': self.kind, 'message': self.message}
        if self.details:
            payload['details'] = self.details
        return payload


class NotFound(EngineError):
    kind = 'NotFound'


class ValidationError(EngineError):
    kind = 'ValidationError'


class InvalidBOM(EngineError):
    kind = 'InvalidBOM'


class BOMNotEditable(EngineError):
    kind = 'BOMNotEditable'


class InsufficientStock(EngineError):
    kind = 'InsufficientStock'


class ReservationIncomplete(EngineError):
    """Aggregate error for a partially successful reservation pass.

    ``failures`` lists one dict per component that could not be reserved;
    ``reserved`` lists the transactions of the components that were.
    """

    kind = 'ReservationIncomplete'

    def __init__(self, message, failures, reserved):
        super().__init__(message, failures=failures)
        self.failures = failures
        self.reserved = reserved


class AlreadyGenerated(EngineError):
    kind = 'AlreadyGenerated'


class NoBOM(EngineError):
    kind = 'NoBOM'


class EmptyBOM(EngineError):
    kind = 'EmptyBOM'


class IncompleteWorkOrders(EngineError):
    kind = 'IncompleteWorkOrders'


class AlreadyDone(EngineError):
    kind = 'AlreadyDone'


class InvalidTransition(EngineError):
    kind = 'InvalidTransition'


class MaterialInUse(EngineError):
    kind = 'MaterialInUse'


class ConcurrentModification(EngineError):
    """Optimistic lock conflict; always safe to retry after re-reading"""

    kind = 'ConcurrentModification'


class StorageError(EngineError):
    kind = 'StorageError'
