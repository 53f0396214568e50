import ast
from simpleeval import EvalWithCompoundTypes, DEFAULT_FUNCTIONS, DEFAULT_NAMES

from .exceptions import InconsistentBranchDefinitionError, UnknownParameterReferenceError

class Option:
    """
    One choice of a parameter.

    Attributes
    ----------
    parameter : str
        Name of the parameter the option belongs to.
    label : str
        Label of the option, unique within its parameter.
    expression : ast.expr
        Code substituted for the branch call when this option is chosen.
        Never evaluated outside of a universe.
    condition : ast.expr or None
        Guard over the labels chosen for earlier parameters. None means the
        option is always eligible.
    """

    def __init__(self, parameter, label, expression, condition=None):
        self.parameter = parameter
        self.label = label
        self.expression = expression
        self.condition = condition

    @property
    def source(self):
        return ast.unparse(self.expression)

    @property
    def condition_source(self):
        return ast.unparse(self.condition) if self.condition is not None else None

    def references(self):
        """
        Names used by the condition that have to be parameters.
        Literals and the functions available to conditions are not included.
        """
        if self.condition is None:
            return []

        names = []
        for node in ast.walk(self.condition):
            if isinstance(node, ast.Name) and node.id not in DEFAULT_NAMES and node.id not in DEFAULT_FUNCTIONS:
                if node.id not in names:
                    names.append(node.id)
        return names

    def eligible(self, assignment):
        """
        Evaluate the condition under a (partial) assignment of parameter labels.

        Parameters
        ----------
        assignment : dict
            Maps already chosen parameters to their labels.

        Returns
        -------
        bool
            True if the option can be chosen.
        """
        if self.condition is None:
            return True
        evaluator = EvalWithCompoundTypes(names=dict(assignment))
        return bool(evaluator.eval(self.condition_source))

    def same_as(self, other):
        return self.source == other.source and self.condition_source == other.condition_source

    def __repr__(self):
        when = f" %when% {self.condition_source}" if self.condition is not None else ""
        return f"{self.label!r}{when} ~ {self.source}"


class Parameter:
    """
    A decision point and its options in declaration order.
    """

    def __init__(self, name, options=()):
        self.name = name
        self.options = tuple(options)

    @property
    def labels(self):
        return [option.label for option in self.options]

    def option(self, label):
        for option in self.options:
            if option.label == label:
                return option
        raise KeyError(f"Parameter '{self.name}' has no option '{label}'")

    def extend(self, options):
        """
        Return a new parameter with additional options appended.
        """
        return Parameter(self.name, self.options + tuple(options))

    def __len__(self):
        return len(self.options)

    def __repr__(self):
        return f"Parameter({self.name!r}, {self.labels})"


class ParameterRegistry:
    """
    Table of all parameters declared so far.

    The registry only grows. First-seen declaration order is kept, as it
    decides the default universe and the order in which conditions are
    evaluated.

    Attributes
    ----------
    version : int
        Incremented whenever a merge changes the registry.
    """

    def __init__(self):
        self._parameters = {}
        self.version = 0

    def merge(self, declarations):
        """
        Merge branch declarations into the registry.

        Validation happens on a staged copy, so a failing merge leaves the
        registry untouched.

        Parameters
        ----------
        declarations : iterable
            Objects with ``parameter`` and ``options`` attributes, as produced
            by the branch parser.

        Returns
        -------
        changed : bool
            True if parameters or options were added.
        """
        staged = dict(self._parameters)
        changed = False

        for declaration in declarations:
            name = declaration.parameter
            order = list(staged)
            existing = staged.get(name)

            if existing is None:
                self._check_references(name, declaration.options, order)
                staged[name] = Parameter(name, declaration.options)
                changed = True
                continue

            # Redeclaration: identical options are fine, new labels extend the parameter
            additions = []
            for option in declaration.options:
                try:
                    previous = existing.option(option.label)
                except KeyError:
                    additions.append(option)
                    continue
                if not previous.same_as(option):
                    raise InconsistentBranchDefinitionError(name, option.label, repr(previous), repr(option))

            if additions:
                self._check_references(name, additions, order[:order.index(name)])
                staged[name] = existing.extend(additions)
                changed = True

        if changed:
            self._parameters = staged
            self.version += 1
        return changed

    def _check_references(self, name, options, earlier):
        for option in options:
            for reference in option.references():
                if reference not in earlier:
                    raise UnknownParameterReferenceError(name, option.label, reference)

    def parameters(self):
        return list(self._parameters.values())

    def names(self):
        return list(self._parameters)

    def options(self, name):
        return list(self[name].options)

    def index(self, name):
        return self.names().index(name)

    def conditions(self):
        """
        List every option that carries a condition

        Returns
        -------
        list of dict
            Entries with the keys 'parameter', 'option' and 'condition'.
        """
        return [{"parameter": parameter.name, "option": option.label, "condition": option.condition_source}
                for parameter in self._parameters.values()
                for option in parameter.options
                if option.condition is not None]

    def __getitem__(self, name):
        return self._parameters[name]

    def __contains__(self, name):
        return name in self._parameters

    def __iter__(self):
        return iter(self._parameters.values())

    def __len__(self):
        return len(self._parameters)
