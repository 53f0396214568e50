# Submodule imports
from . import exceptions
from . import codestore
from . import parser
from . import registry
from . import universes
from . import execution
from . import results
from . import multiverse

from .multiverse import (Multiverse, create_multiverse, add_code, parameters, conditions, expand, code,
                         universe_code, execute_all, execute_universe, extract_variable, extract_variables)
from .results import NOT_EXECUTED
from .exceptions import (MultiverseError, ParseError, DuplicateOptionLabelError, InconsistentBranchDefinitionError,
                         UnknownParameterReferenceError, NoValidUniverseError, UniverseLimitError, ExecutionError)

__all__ = ["exceptions", "codestore", "parser", "registry", "universes", "execution", "results", "multiverse",
           "Multiverse", "create_multiverse", "add_code", "parameters", "conditions", "expand", "code",
           "universe_code", "execute_all", "execute_universe", "extract_variable", "extract_variables",
           "NOT_EXECUTED", "MultiverseError", "ParseError", "DuplicateOptionLabelError",
           "InconsistentBranchDefinitionError", "UnknownParameterReferenceError", "NoValidUniverseError",
           "UniverseLimitError", "ExecutionError"]
