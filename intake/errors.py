"""Exception hierarchy shared by the flow, the allocator and the collaborators."""


class IntakeError(Exception):
    """Base class for all intake errors."""


class ExternalServiceError(IntakeError):
    """An external collaborator (oracle, channel, database) failed."""


class OracleUnavailableError(ExternalServiceError):
    """The validation/intent oracle could not be reached or answered garbage."""


class PersistenceError(ExternalServiceError):
    """A database read or write failed."""


class SlotTakenError(IntakeError):
    """The requested appointment time is already booked."""

    def __init__(self, slot) -> None:
        super().__init__(f"Slot {slot} is already booked")
        self.slot = slot


class FlowPreconditionError(IntakeError):
    """A flow step was reached without the data it depends on."""
