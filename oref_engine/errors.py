class OrefError(Exception):
    """Base class for every error the engine raises."""


class InvalidProfile(OrefError):
    """Profile values are missing, non-positive or out of their allowed bounds."""


class InvalidTreatment(OrefError):
    """A treatment record cannot be interpreted (negative amounts, bad duration)."""


class StaleOrMissingGlucose(OrefError):
    """No usable glucose reading at the evaluation time."""


class ComputationError(OrefError):
    """A curve or intermediate value became non-finite or singular."""
