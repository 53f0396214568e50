"""Exceptions raised by forkingpaths.

Structural errors (parsing and merging branch declarations) abort the
``add_code`` call that triggered them and leave the multiverse unchanged.
Execution errors are recorded on the failing universe and never raised
from a full execution pass.
"""


class MultiverseError(Exception):
    """Base exception for all forkingpaths errors."""


class ParseError(MultiverseError, ValueError):
    """Raised when a code fragment or a branch call is malformed."""

    def __init__(self, message, lineno=None):
        self.lineno = lineno
        if lineno is not None:
            message = f"{message} (line {lineno})"
        super().__init__(message)


class DuplicateOptionLabelError(MultiverseError, ValueError):
    """Raised when two options of the same branch share a label."""

    def __init__(self, parameter, label):
        self.parameter = parameter
        self.label = label
        super().__init__(f"Option '{label}' is declared more than once for parameter '{parameter}'")


class InconsistentBranchDefinitionError(MultiverseError, ValueError):
    """Raised when a redeclared option differs from its first declaration."""

    def __init__(self, parameter, label, previous, current):
        self.parameter = parameter
        self.label = label
        self.previous = previous
        self.current = current
        super().__init__(
            f"Option '{label}' of parameter '{parameter}' was declared as '{previous}' "
            f"and is now redeclared as '{current}'"
        )


class UnknownParameterReferenceError(MultiverseError, ValueError):
    """Raised when a condition names a parameter that is not declared before it."""

    def __init__(self, parameter, label, name):
        self.parameter = parameter
        self.label = label
        self.name = name
        super().__init__(
            f"Condition on option '{label}' of parameter '{parameter}' references '{name}', "
            f"which is not a parameter declared before '{parameter}'"
        )


class NoValidUniverseError(MultiverseError):
    """Raised when the conditions exclude every combination of options."""


class UniverseLimitError(MultiverseError):
    """Raised when expansion grows past the configured ``max_universes``."""

    def __init__(self, count, limit):
        self.count = count
        self.limit = limit
        super().__init__(f"Expansion reached {count} universes, exceeding max_universes={limit}")


class ExecutionError(MultiverseError):
    """A step of one universe raised while it was executed.

    Attributes
    ----------
    universe : int
        Id of the universe that failed.
    step : int
        Index (0-based) of the failing code step.
    cause : Exception
        The exception raised by the user code.
    """

    def __init__(self, universe, step, cause):
        self.universe = universe
        self.step = step
        self.cause = cause
        super().__init__(f"Universe {universe} failed at step {step}: {type(cause).__name__}: {cause}")

    def __reduce__(self):
        return (type(self), (self.universe, self.step, self.cause))
