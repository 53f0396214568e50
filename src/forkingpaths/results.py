import numpy as np
import pandas as pd

UNIVERSE = ".universe"
STATUS = ".status"
ERROR = ".error"

class _NotExecuted:
    """
    Marker for universes that have no execution result yet
    """
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "<not executed>"

    def __bool__(self):
        return False

    def __reduce__(self):
        return (_NotExecuted, ())

NOT_EXECUTED = _NotExecuted()


def _record(universe, result):
    record = {UNIVERSE: universe.id}
    record.update(universe.assignment)
    record[STATUS] = "not executed" if result is None else result.status
    record[ERROR] = None if result is None or result.error is None else str(result.error)
    return record


def _columns(engine):
    return [UNIVERSE] + engine.registry.names() + [STATUS, ERROR]


def _value_column(name, columns):
    # A variable may share its name with a parameter
    return f"{name}.value" if name in columns else name


def _frame(rows, columns):
    table = pd.DataFrame(rows, columns=columns)
    # Status and error stay plain objects, so a missing error is None
    for column in (STATUS, ERROR):
        table[column] = pd.Series([row[column] for row in rows], index=table.index, dtype=object)
    return table


def universe_table(universes, engine):
    """
    Table with one row per universe and its execution status.

    Parameters
    ----------
    universes : list of Universe
        The expanded universes.
    engine : ExecutionEngine
        Engine holding the cached results. Nothing is executed.

    Returns
    -------
    table : pandas.DataFrame
        Columns '.universe', one column per parameter with the chosen label,
        '.status' ('success', 'error' or 'not executed') and '.error'.
    """
    rows = [_record(universe, engine.result(universe)) for universe in universes]
    return _frame(rows, _columns(engine))


def extract_variable(universes, engine, name):
    """
    Gather the value of a variable from every universe.

    Extraction is read-only: universes without a result get the NOT_EXECUTED
    marker and are not run. Universes that failed still report values bound
    before the failing step. A variable that was never bound is NaN.

    Values that are pandas DataFrames (or Series, as a single column) are
    flattened one level: every sub-row
    becomes a row of the output with the sub-table's columns added. Columns
    that clash with existing ones are prefixed with '<name>.'.

    Parameters
    ----------
    universes : list of Universe
        The expanded universes.
    engine : ExecutionEngine
        Engine holding the cached results.
    name : str
        Name of the variable.

    Returns
    -------
    table : pandas.DataFrame
    """
    base_columns = _columns(engine)
    column = _value_column(name, base_columns)
    rows = []
    sub_columns = []
    has_scalar = False

    for universe in universes:
        result = engine.result(universe)
        record = _record(universe, result)
        value = NOT_EXECUTED if result is None else result.bindings.get(name, np.nan)
        # A Series fills the value column, one sub-row per element
        is_series = isinstance(value, pd.Series)
        if is_series:
            value = value.to_frame(name=column)
            has_scalar = True
        elif not isinstance(value, pd.DataFrame):
            has_scalar = True
            record[column] = value
            rows.append(record)
            continue

        # Keep a meaningful index (e.g. coefficient names) as a column
        table = value if isinstance(value.index, pd.RangeIndex) else value.reset_index()
        renamed = {col: f"{name}.{col}" for col in table.columns
                   if col in base_columns or (col == column and not is_series)}
        table = table.rename(columns=renamed)

        for col in table.columns:
            if col != column and col not in sub_columns:
                sub_columns.append(col)

        if table.empty:
            rows.append(record)
        for sub_row in table.to_dict("records"):
            rows.append({**record, **sub_row})

    columns = base_columns + ([column] if has_scalar else []) + sub_columns
    return _frame(rows, columns)


def extract_variables(universes, engine, names):
    """
    Gather several variables side by side, one row per universe.
    Values are not flattened.
    """
    base_columns = _columns(engine)
    value_columns = [_value_column(name, base_columns) for name in names]
    rows = []
    for universe in universes:
        result = engine.result(universe)
        record = _record(universe, result)
        for name, column in zip(names, value_columns):
            record[column] = NOT_EXECUTED if result is None else result.bindings.get(name, np.nan)
        rows.append(record)

    return _frame(rows, base_columns + value_columns)
