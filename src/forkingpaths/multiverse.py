import os
import ast
from jinja2 import Template

from .codestore import CodeStore
from .registry import ParameterRegistry
from .parser import parse_step
from .universes import Universe, expand_universes, default_universe
from .execution import ExecutionEngine, render_step
from . import results

DEFAULT_CONFIG = {
    "parallel": 1,            # number of universes executed in parallel by execute_all()
    "backend": "loky",        # joblib backend for parallel execution
    "max_universes": None,    # raise UniverseLimitError above this many universes
    "execute_default": True,  # run the default universe whenever code is added
    "progress": True,         # tqdm progress bars
    "verbose": True,          # status messages
}

SCRIPT_TEMPLATE = Template(
    "# Universe {{ universe }} of the multiverse '{{ name }}'\n"
    "# The decisions for this universe are:\n"
    "{% for parameter, label in assignment.items() %}"
    "#   {{ parameter }}: {{ label }}\n"
    "{% endfor %}"
    "{% if inputs %}"
    "#\n"
    "# Shared inputs that have to be defined before running: {{ inputs | join(', ') }}\n"
    "{% endif %}"
    "\n"
    "{{ code }}\n"
)

class Multiverse:
    """
    Multiverse class for declaring, expanding, and running a multiverse analysis.

    Analysis code is added step by step. Every ``branch(...)`` call in the code
    declares a decision point; the multiverse consists of all combinations of
    options that satisfy their ``%when%`` conditions. Each universe is executed
    in its own namespace and its variables can be extracted afterwards.

    Attributes
    ----------
    name : str
        Name of the multiverse analysis. Default is "multiverse".
    config : dict
        Configuration, see DEFAULT_CONFIG.
    code_store : CodeStore
        The added code steps.
    registry : ParameterRegistry
        All declared parameters and options.
    engine : ExecutionEngine
        Executes universes and caches their results.
    version : int
        Incremented each time code is added.
    """

    def __init__(self, name="multiverse", inputs=None, config=None):
        self.name = name
        self.config = self._check_config(config)
        self.code_store = CodeStore()
        self.registry = ParameterRegistry()
        self.engine = ExecutionEngine(self.code_store, self.registry, inputs)
        self.version = 0
        self._universes = None

    # Public methods
    def add_code(self, code):
        """
        Add a step of analysis code

        The branch declarations of the code are merged into the registry and
        the default universe is executed again. If the code is malformed or its
        declarations conflict with earlier ones, an error is raised and the
        multiverse stays unchanged.

        Parameters
        ----------
        code : str
            Python code, possibly containing branch calls.

        Returns
        -------
        result : ExecutionResult or None
            Result of the default universe, if it was executed.
        """
        parsed = parse_step(code)
        self.registry.merge(parsed.declarations)
        self.code_store.append(code, parsed.template, parsed.parameters)

        self.version += 1
        self._universes = None
        self.engine.invalidate()

        if self.config["execute_default"]:
            return self._execute_default()
        return None

    def parameters(self):
        """
        List the declared parameters and their option labels

        Returns
        -------
        list of dict
            Entries with the keys 'name' and 'options'.
        """
        return [{"name": parameter.name, "options": parameter.labels} for parameter in self.registry]

    def conditions(self):
        """
        List all options that carry a %when% condition
        """
        return self.registry.conditions()

    def universes(self):
        """
        Get the valid universes, expanding the registry if it changed

        Returns
        -------
        list of Universe
        """
        if self._universes is None:
            self._universes = expand_universes(self.registry, self.config["max_universes"])
        return self._universes

    @property
    def num_universes(self):
        return len(self.universes())

    def default_universe(self):
        """
        Get the parameter assignment of the default universe, or None if no
        valid universe exists
        """
        return default_universe(self.registry)

    def expand(self):
        """
        Expand the multiverse into a table with one row per valid universe

        Returns
        -------
        table : pandas.DataFrame
            Columns '.universe', one column per parameter, '.status' and '.error'.
        """
        return results.universe_table(self.universes(), self.engine)

    def code(self):
        """
        Get the accumulated, unevaluated code
        """
        return self.code_store.text()

    def universe_code(self, universe):
        """
        Get the code of one universe with all branches resolved

        Parameters
        ----------
        universe : int
            Number of the universe.

        Returns
        -------
        code : str
        """
        selected = self._get_universe(universe)
        steps = [ast.unparse(render_step(step, self.registry, selected.assignment)) for step in self.code_store]
        return "\n\n".join(steps)

    def execute_all(self, parallel=None, backend=None):
        """
        Run all universes of the multiverse

        Universes with a cached result for the current code are not run again.
        A failing universe does not stop the others; its error is recorded and
        reported by expand() and extract_variable().

        Parameters
        ----------
        parallel : int
            Number of universes to run in parallel. Default is config["parallel"].

        backend : str
            joblib backend used for parallel execution. Default is config["backend"].
        """
        parallel = self.config["parallel"] if parallel is None else parallel
        backend = self.config["backend"] if backend is None else backend
        universes = self.universes()

        self._print("Starting multiverse analysis for all universes...")
        executed = self.engine.run_all(universes, parallel=parallel, backend=backend,
                                       progress=self.config["progress"])

        failed = [result for result in executed if result.error is not None]
        if not failed:
            self._print("The multiverse analysis completed without any errors.")
        else:
            self._print(f"The multiverse analysis completed. {len(failed)} out of {len(executed)} universes failed:")
            for result in failed:
                self._print(f"  - {result.error}")

        for result in executed:
            if result.dropped:
                self._print(f"Universe {result.universe}: could not transfer {result.dropped} from the worker process, "
                            f"use backend='threading' to keep them.")
        return

    def execute_universe(self, universe):
        """
        Run a single universe

        Parameters
        ----------
        universe : int
            Number of the universe.

        Returns
        -------
        result : ExecutionResult
        """
        return self.engine.run(self._get_universe(universe))

    def extract_variable(self, name):
        """
        Extract a variable from all executed universes

        Parameters
        ----------
        name : str
            Name of the variable.

        Returns
        -------
        table : pandas.DataFrame
            The expanded multiverse joined with the value of the variable.
            Universes that were not executed hold NOT_EXECUTED.
        """
        return results.extract_variable(self.universes(), self.engine, name)

    def extract_variables(self, *names):
        """
        Extract several variables, one column each
        """
        return results.extract_variables(self.universes(), self.engine, names)

    def summary(self, universe=None, print_df=True, return_df=False):
        """
        Print the multiverse summary to the terminal/notebook

        Parameters
        ----------
        universe : int, list, range, or None
            The universe number(s) to display. Default is None (all universes)

        print_df : bool
            Print or display the table. Default is True

        return_df : bool
            Return the table. Default is False
        """
        multiverse_summary = self.expand()

        if universe is not None:
            numbers = self._universe_numbers(universe)
            multiverse_summary = multiverse_summary[multiverse_summary[results.UNIVERSE].isin(numbers)]

        if print_df:
            if self._in_notebook():
                from IPython.display import display
                display(multiverse_summary)
            else:
                print(multiverse_summary)

        return multiverse_summary if return_df else None

    def export_scripts(self, directory):
        """
        Write one standalone script per universe

        Creates ``universe_<number>.py`` files with all branches resolved and a
        ``multiverse_summary.csv`` with the decisions of all universes. Python
        files from a previous export are removed first.

        Parameters
        ----------
        directory : str
            Target directory. Created if it does not exist.
        """
        os.makedirs(directory, exist_ok=True)

        # Remove scripts of a previous export but keep other files
        for item in os.listdir(directory):
            item_path = os.path.join(directory, item)
            if os.path.isfile(item_path) and item.startswith("universe_") and item.endswith(".py"):
                os.remove(item_path)

        for universe in self.universes():
            rendered_content = SCRIPT_TEMPLATE.render(
                universe=universe.id,
                name=self.name,
                assignment=universe.assignment,
                inputs=list(self.engine.inputs),
                code=self.universe_code(universe.id),
            )
            with open(os.path.join(directory, f"universe_{universe.id}.py"), "w") as file:
                file.write(rendered_content)

        self.expand().to_csv(os.path.join(directory, "multiverse_summary.csv"), index=False)
        return

    def __repr__(self):
        return f"Multiverse(name={self.name!r}, steps={len(self.code_store)}, parameters={self.registry.names()})"

    # Internal methods
    def _execute_default(self):
        """
        Internal function: Run the default universe for immediate feedback
        """
        assignment = default_universe(self.registry)
        if assignment is None:
            self._print("No valid universe exists, the default universe was not executed.")
            return None

        # The default universe is always the first one generated by the expansion
        result = self.engine.run(Universe(1, assignment))
        if result.error is not None:
            self._print(f"Default universe failed: {result.error}")
        return result

    def _get_universe(self, universe):
        universes = self.universes()
        if isinstance(universe, Universe):
            universe = universe.id
        if not isinstance(universe, int) or isinstance(universe, bool) or not 1 <= universe <= len(universes):
            raise ValueError(f"universe should be an int between 1 and {len(universes)}, got {universe!r}.")
        return universes[universe - 1]

    def _universe_numbers(self, universe):
        if isinstance(universe, int):
            return [universe]
        elif isinstance(universe, (list, tuple, range)):
            return list(universe)
        raise ValueError("universe should be None, an int, a list, tuple, or a range.")

    def _check_config(self, config):
        config = dict(config) if config else {}
        unknown = [key for key in config if key not in DEFAULT_CONFIG]
        if unknown:
            raise ValueError(f"Unknown configuration keys: {unknown}. Valid keys are: {list(DEFAULT_CONFIG)}")
        return {**DEFAULT_CONFIG, **config}

    def _print(self, message):
        if self.config["verbose"]:
            print(message)

    def _in_notebook(self):
        """
        Helper function to check if the code is running in a Jupyter notebook
        """
        try:
            from IPython import get_ipython
            if 'IPKernelApp' not in get_ipython().config:
                return False
        except Exception:
            return False
        return True


# Functional interface
def create_multiverse(name="multiverse", inputs=None, config=None):
    """
    Create an empty multiverse.

    Parameters
    ----------
    name : str
        Name of the multiverse analysis.
    inputs : dict, optional
        Shared input data available (as a private copy) to every universe.
    config : dict, optional
        Configuration overriding DEFAULT_CONFIG.
    """
    return Multiverse(name=name, inputs=inputs, config=config)

def add_code(m, code):
    return m.add_code(code)

def parameters(m):
    return m.parameters()

def conditions(m):
    return m.conditions()

def expand(m):
    return m.expand()

def code(m):
    return m.code()

def universe_code(m, universe):
    return m.universe_code(universe)

def execute_all(m, parallel=None, backend=None):
    return m.execute_all(parallel=parallel, backend=backend)

def execute_universe(m, universe):
    return m.execute_universe(universe)

def extract_variable(m, name):
    return m.extract_variable(name)

def extract_variables(m, *names):
    return m.extract_variables(*names)
