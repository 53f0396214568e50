import ast
import copy
import types
import builtins
from joblib import Parallel, delayed
from joblib.externals import cloudpickle
from tqdm.auto import tqdm
from tqdm_joblib import tqdm_joblib

from .exceptions import ExecutionError, MultiverseError
from .parser import is_marker

class ExecutionResult:
    """
    Outcome of running the code of one universe.

    Attributes
    ----------
    universe : int
        Id of the executed universe.
    assignment : dict
        Parameter labels the universe was run with.
    bindings : dict
        Variables left in the universe's namespace. If a step failed, these are
        the bindings of all steps before it.
    error : ExecutionError or None
        Set if a step raised.
    digest : str
        Digest of the code the universe was run with.
    dropped : list of str
        Variables removed from the bindings because they could not be sent
        back from a worker process.
    """

    def __init__(self, universe, assignment, bindings, error=None, digest=None, dropped=()):
        self.universe = universe
        self.assignment = dict(assignment)
        self.bindings = bindings
        self.error = error
        self.digest = digest
        self.dropped = list(dropped)

    @property
    def status(self):
        return "success" if self.error is None else "error"

    @property
    def failed_step(self):
        return None if self.error is None else self.error.step

    def __repr__(self):
        return f"ExecutionResult(universe={self.universe}, status={self.status!r}, variables={list(self.bindings)})"


class _SubstituteBranches(ast.NodeTransformer):
    """
    Replace branch markers by the expression of the chosen option
    """

    def __init__(self, registry, assignment):
        self.registry = registry
        self.assignment = assignment

    def visit_Call(self, node):
        if not is_marker(node):
            return self.generic_visit(node)

        name = node.args[0].value
        if name not in self.assignment:
            raise MultiverseError(f"Parameter '{name}' has no chosen option in this universe.")

        option = self.registry[name].option(self.assignment[name])
        expression = self.visit(copy.deepcopy(option.expression))

        # Substituted code reports the line of the branch call it replaces
        for child in ast.walk(expression):
            if "lineno" in child._attributes:
                child.lineno = node.lineno
                child.col_offset = node.col_offset
                child.end_lineno = node.end_lineno
                child.end_col_offset = node.end_col_offset
        return expression


def render_step(step, registry, assignment):
    """
    Build the code of a step for one parameter assignment.

    Parameters
    ----------
    step : CodeStep
        The step to render.
    registry : ParameterRegistry
        Registry holding the options of every referenced parameter.
    assignment : dict
        Chosen label per parameter.

    Returns
    -------
    module : ast.Module
        A fresh tree; the step's template is left unchanged.
    """
    module = _SubstituteBranches(registry, assignment).visit(copy.deepcopy(step.template))
    return ast.fix_missing_locations(module)


def run_universe(steps, registry, universe, inputs=None, digest=None):
    """
    Execute all steps for one universe in a fresh namespace.

    Steps run strictly in order. The first step that raises ends the run;
    later steps are not attempted.

    Parameters
    ----------
    steps : sequence of CodeStep
        Code of the multiverse.
    registry : ParameterRegistry
        Declared parameters.
    universe : Universe
        The universe to execute.
    inputs : dict, optional
        Shared input data. Each universe works on its own deep copy.
    digest : str, optional
        Digest of the code store, stored on the result.

    Returns
    -------
    ExecutionResult
    """
    namespace = {"__builtins__": builtins}
    if inputs:
        namespace.update(copy.deepcopy(dict(inputs)))

    error = None
    for step in steps:
        module = render_step(step, registry, universe.assignment)
        try:
            code = compile(module, f"<universe {universe.id}, step {step.index}>", "exec")
            exec(code, namespace)
        except (Exception, SystemExit) as e:
            error = ExecutionError(universe.id, step.index, e)
            break

    # Imported modules are not results
    bindings = {name: value for name, value in namespace.items()
                if name != "__builtins__" and not isinstance(value, types.ModuleType)}

    return ExecutionResult(universe.id, universe.assignment, bindings, error, digest)


def _picklable(value):
    try:
        cloudpickle.dumps(value)
    except Exception:
        return False
    return True


def _run_in_worker(steps, registry, universe, inputs=None, digest=None):
    """
    Internal function: run_universe for joblib workers

    The result has to travel back to the main process, so bindings that
    cannot be pickled are dropped and listed in ``result.dropped``.
    """
    result = run_universe(steps, registry, universe, inputs, digest)

    for name in list(result.bindings):
        if not _picklable(result.bindings[name]):
            del result.bindings[name]
            result.dropped.append(name)

    if result.error is not None and not _picklable(result.error):
        cause = result.error.cause
        result.error = ExecutionError(result.error.universe, result.error.step,
                                      RuntimeError(f"{type(cause).__name__}: {cause}"))
    return result


class ExecutionEngine:
    """
    Runs universes and caches their results.

    Results are cached per parameter assignment and tagged with the digest of
    the code they were produced with. invalidate() drops all of them.

    Attributes
    ----------
    code : CodeStore
        Steps of the multiverse.
    registry : ParameterRegistry
        Declared parameters.
    inputs : dict
        Shared, read-only input data.
    digest : str
        Digest of the code store the cache is valid for.
    """

    def __init__(self, code, registry, inputs=None):
        self.code = code
        self.registry = registry
        self.inputs = dict(inputs) if inputs else {}
        self.digest = code.digest()
        self._cache = {}

    def invalidate(self):
        self._cache.clear()
        self.digest = self.code.digest()

    def result(self, universe):
        """
        Cached result of a universe, or None if it has not been executed
        """
        cached = self._cache.get(universe.key)
        if cached is None or cached.digest != self.digest:
            return None
        return cached

    def results(self):
        return list(self._cache.values())

    def run(self, universe, use_cache=True):
        """
        Execute a single universe synchronously.
        """
        if use_cache:
            cached = self.result(universe)
            if cached is not None:
                return cached

        result = run_universe(self.code.steps(), self.registry, universe, self.inputs, self.digest)
        self._cache[universe.key] = result
        return result

    def run_all(self, universes, parallel=1, backend="loky", progress=True):
        """
        Execute every universe that has no valid cached result.

        Parameters
        ----------
        universes : list of Universe
            Universes to execute.
        parallel : int
            Number of universes to run in parallel. Default is 1.
        backend : str
            joblib backend used when parallel is not 1. Default is "loky".
        progress : bool
            Show a progress bar. Default is True.

        Returns
        -------
        results : list of ExecutionResult
            One result per universe, in the order given.
        """
        pending = [universe for universe in universes if self.result(universe) is None]
        steps = self.code.steps()

        if parallel == 1:
            results = [run_universe(steps, self.registry, universe, self.inputs, self.digest)
                       for universe in tqdm(pending, desc="Performing multiverse analysis", disable=not progress)]
        else:
            with tqdm_joblib(total=len(pending), desc="Performing multiverse analysis", disable=not progress):
                results = Parallel(n_jobs=parallel, backend=backend)(
                    delayed(_run_in_worker)(steps, self.registry, universe, self.inputs, self.digest)
                    for universe in pending)

        for universe, result in zip(pending, results):
            self._cache[universe.key] = result

        return [self.result(universe) for universe in universes]
