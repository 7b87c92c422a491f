class DispatchError(Exception):
    """Base class for errors surfaced by the request dispatch engine."""


class NotFound(DispatchError):
    pass


class InvalidTransition(DispatchError):
    """The action is not allowed from the request's current status."""


class AlreadyAssigned(DispatchError):
    """The request belongs to another doctor, or its group already has a winner."""


class DoctorNotEligible(DispatchError):
    pass


class StoreUnavailable(DispatchError):
    """Transient store failure; the operation may be retried."""


class MissingReference(DispatchError):
    """A request points at a business or service that no longer exists."""
