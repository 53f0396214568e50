from .exceptions import NoValidUniverseError, UniverseLimitError

class Universe:
    """
    One combination of option labels, one per parameter.

    Attributes
    ----------
    id : int
        1-based position in the expanded multiverse.
    assignment : dict
        Maps parameter names to chosen labels, in declaration order.
    """

    def __init__(self, id, assignment):
        self.id = id
        self.assignment = dict(assignment)

    @property
    def key(self):
        """Hashable form of the assignment, used to look up cached results."""
        return tuple(self.assignment.items())

    def __eq__(self, other):
        if not isinstance(other, Universe):
            return NotImplemented
        return self.id == other.id and self.key == other.key

    def __hash__(self):
        return hash((self.id, self.key))

    def __repr__(self):
        return f"Universe({self.id}, {self.assignment})"


def expand_universes(registry, max_universes=None):
    """
    Compute all valid universes of a parameter registry.

    Parameters are attached in declaration order. A partial assignment is only
    extended by options whose condition holds for it, so pruned branches of
    the decision tree are never instantiated.

    Parameters
    ----------
    registry : ParameterRegistry
        Declared parameters and options.
    max_universes : int, optional
        Stop with UniverseLimitError once more partial universes than this
        exist. Default is None (no limit).

    Returns
    -------
    universes : list of Universe
        Valid universes with ids 1..N in generation order.
    """
    frontier = [{}]

    for parameter in registry:
        extended = []
        for partial in frontier:
            for option in parameter.options:
                if option.eligible(partial):
                    assignment = dict(partial)
                    assignment[parameter.name] = option.label
                    extended.append(assignment)

        if max_universes is not None and len(extended) > max_universes:
            raise UniverseLimitError(len(extended), max_universes)
        frontier = extended

    if not frontier:
        raise NoValidUniverseError("The conditions exclude every combination of options; no valid universe remains.")

    return [Universe(i, assignment) for i, assignment in enumerate(frontier, start=1)]


def default_universe(registry):
    """
    Find the default universe: the first eligible option of every parameter.

    Backtracking only happens when a choice leaves a later parameter without
    any eligible option, so the result is always the first universe that
    expand_universes() would generate.

    Returns
    -------
    assignment : dict or None
        The default assignment, or None if no valid universe exists.
    """
    parameters = registry.parameters()

    def search(level, partial):
        if level == len(parameters):
            return partial
        parameter = parameters[level]
        for option in parameter.options:
            if option.eligible(partial):
                assignment = dict(partial)
                assignment[parameter.name] = option.label
                found = search(level + 1, assignment)
                if found is not None:
                    return found
        return None

    return search(0, {})


def count_universes(registry):
    """
    Size of the unconstrained Cartesian product of all options
    """
    count = 1
    for parameter in registry:
        count *= len(parameter)
    return count
