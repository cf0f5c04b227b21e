"""Errors raised by the assessment engine."""


class GradingIntegrityError(ValueError):
    """An answer set that cannot belong to the assessment being graded.

    Raised for answers keyed by an unknown question id or selecting an option
    the question does not own. Never converted into an incorrect verdict.
    """


class AttemptStateError(ValueError):
    """An operation that the attempt's current state does not allow."""


class InvalidTransitionError(AttemptStateError):
    def __init__(self, state, event):
        self.state = state
        self.event = event
        super().__init__(f"Cannot apply '{event.value}' to an attempt in state '{state.value}'")


class SessionNotFoundError(LookupError):
    pass


class AssessmentNotFoundError(LookupError):
    pass


class PersistenceError(RuntimeError):
    """A write or read against the backing store failed."""
