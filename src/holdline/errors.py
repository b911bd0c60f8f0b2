"""Exception types raised by the call and media layers."""


class HoldlineError(Exception):
    """Base class for holdline errors."""


class SetupFailure(HoldlineError):
    """A call could not be set up before it was answered."""


class PortAllocationError(SetupFailure):
    """No free media socket pair could be bound in the configured range."""


class TransmissionFault(HoldlineError):
    """Sending a media packet failed."""


class InvalidStateTransition(HoldlineError):
    """A call session was asked to move to a state it cannot reach."""
