import os
import pandas as pd
import pytest
import forkingpaths
from forkingpaths import multiverse
from forkingpaths.exceptions import (ParseError, UnknownParameterReferenceError, NoValidUniverseError,
                                     InconsistentBranchDefinitionError)

QUIET = {"verbose": False, "progress": False}

@pytest.fixture
def hurricane():
    """
    Small multiverse over a shared data frame: outlier handling, a transform
    that only applies to cleaned data, and the model family.
    """
    data = pd.DataFrame({"damage": [1.0, 2.0, 4.0, 8.0, 100.0],
                         "femininity": [0.2, 0.4, 0.6, 0.8, 1.0]})
    m = multiverse.create_multiverse(name="hurricane", inputs={"data": data}, config=QUIET)
    m.add_code('df = branch(outliers, "keep" ~ data, "drop" ~ data[data.damage < 50])')
    m.add_code('import numpy as np\n'
               'y = branch(transform, "raw" ~ df.damage, "log" %when% (outliers == "drop") ~ np.log(df.damage))')
    m.add_code('slope = branch(model, "corr" ~ float(np.corrcoef(df.femininity, y)[0, 1]), '
               '"mean" ~ float(y.mean()))')
    return m

def test_parameters(hurricane):
    assert hurricane.parameters() == [
        {"name": "outliers", "options": ["keep", "drop"]},
        {"name": "transform", "options": ["raw", "log"]},
        {"name": "model", "options": ["corr", "mean"]},
    ]
    assert multiverse.conditions(hurricane) == [
        {"parameter": "transform", "option": "log", "condition": "outliers == 'drop'"}]

def test_expand(hurricane):
    table = multiverse.expand(hurricane)
    assert list(table.columns) == [".universe", "outliers", "transform", "model", ".status", ".error"]
    assert table[".universe"].tolist() == [1, 2, 3, 4, 5, 6]
    assert table["transform"].tolist() == ["raw", "raw", "raw", "raw", "log", "log"]
    assert hurricane.num_universes == 6

def test_expand_is_deterministic(hurricane):
    assert multiverse.expand(hurricane).equals(multiverse.expand(hurricane))

def test_code(hurricane):
    text = multiverse.code(hurricane)
    assert text.startswith('df = branch(outliers, "keep" ~ data')
    assert "%when%" in text
    assert len(hurricane.code_store) == 3

def test_universe_code(hurricane):
    code = hurricane.universe_code(5)
    assert "df = data[data.damage < 50]" in code
    assert "y = np.log(df.damage)" in code
    assert "branch" not in code

def test_default_universe_is_executed_on_add(hurricane):
    table = hurricane.extract_variable("slope")
    assert table[".status"].tolist() == ["success"] + ["not executed"] * 5
    assert table["slope"][1] is forkingpaths.NOT_EXECUTED
    assert hurricane.default_universe() == {"outliers": "keep", "transform": "raw", "model": "corr"}

def test_default_result_matches_full_execution(hurricane):
    default = hurricane.engine.result(hurricane.universes()[0])
    bindings = dict(default.bindings)

    hurricane.execute_all()
    full = hurricane.engine.result(hurricane.universes()[0])
    assert full.universe == default.universe == 1
    assert full.assignment == default.assignment
    assert full.bindings.keys() == bindings.keys()
    assert full.bindings["slope"] == bindings["slope"]

def test_execute_all(hurricane):
    multiverse.execute_all(hurricane)
    table = multiverse.extract_variable(hurricane, "slope")
    assert (table[".status"] == "success").all()
    assert table["slope"].notna().all()
    # Dropping the outlier changes the mean
    assert table["slope"][1] == pytest.approx(23.0)
    assert table["slope"][3] == pytest.approx(3.75)

def test_execute_all_reuses_results(hurricane):
    hurricane.execute_all()
    before = [hurricane.engine.result(universe) for universe in hurricane.universes()]
    hurricane.execute_all()
    after = [hurricane.engine.result(universe) for universe in hurricane.universes()]
    assert all(a is b for a, b in zip(before, after))

def test_add_code_invalidates_results(hurricane):
    hurricane.execute_all()
    hurricane.add_code("doubled = slope * 2")
    table = hurricane.extract_variable("doubled")
    assert table[".status"].tolist() == ["success"] + ["not executed"] * 5
    assert table["doubled"][0] == pytest.approx(2 * hurricane.engine.result(hurricane.universes()[0]).bindings["slope"])

def test_shared_inputs_are_not_modified(hurricane):
    hurricane.add_code('data["damage"] = data["damage"] * 0')
    hurricane.execute_all()
    assert hurricane.engine.inputs["data"]["damage"].tolist() == [1.0, 2.0, 4.0, 8.0, 100.0]

def test_failure_isolation():
    m = multiverse.create_multiverse(config=QUIET)
    result = m.add_code('x = 1\ny = branch(k, "ok" ~ 1, "bad" ~ 1 / 0, "ok2" ~ 2)\nz = x + y')
    assert result.status == "success"

    m.execute_all()
    table = m.extract_variable("z")
    assert table[".status"].tolist() == ["success", "error", "success"]
    assert table["z"][0] == 2
    assert table["z"][2] == 3
    assert "ZeroDivisionError" in table[".error"][1]

    # Bindings made before the failing statement stay available
    assert m.extract_variable("x")["x"].tolist() == [1, 1, 1]

def test_failed_default_universe_does_not_raise():
    m = multiverse.create_multiverse(config=QUIET)
    result = m.add_code('y = branch(k, "bad" ~ undefined, "ok" ~ 1)')
    assert result.status == "error"
    assert result.error.step == 0

def test_execute_universe(hurricane):
    result = multiverse.execute_universe(hurricane, 6)
    assert result.status == "success"
    assert result.assignment == {"outliers": "drop", "transform": "log", "model": "mean"}
    assert hurricane.expand()[".status"].tolist() == ["success", "not executed", "not executed",
                                                      "not executed", "not executed", "success"]
    with pytest.raises(ValueError):
        hurricane.execute_universe(7)
    with pytest.raises(ValueError):
        hurricane.execute_universe(0)

def test_extract_variables(hurricane):
    hurricane.execute_all()
    table = multiverse.extract_variables(hurricane, "slope", "y")
    assert list(table.columns)[-2:] == ["slope", "y"]
    assert len(table) == 6

def test_unknown_reference_is_atomic(hurricane):
    parameters_before = hurricane.parameters()
    code_before = hurricane.code()
    version = hurricane.version

    with pytest.raises(UnknownParameterReferenceError):
        hurricane.add_code('w = branch(weights, "none" ~ 1, "inverse" %when% (scaling == "z") ~ 2)')

    assert hurricane.parameters() == parameters_before
    assert hurricane.code() == code_before
    assert hurricane.version == version
    assert hurricane.num_universes == 6

def test_parse_error_is_atomic(hurricane):
    with pytest.raises(ParseError):
        hurricane.add_code('w = branch(weights, "none" ~ )')
    with pytest.raises(ParseError):
        hurricane.add_code('w = (')
    assert len(hurricane.code_store) == 3

def test_inconsistent_redefinition(hurricane):
    with pytest.raises(InconsistentBranchDefinitionError):
        hurricane.add_code('df2 = branch(outliers, "keep" ~ data.copy())')

def test_extending_parameter_in_later_code(hurricane):
    hurricane.add_code('df = branch(outliers, "keep" ~ data, "winsorize" ~ data.clip(upper=10))')
    assert hurricane.parameters()[0]["options"] == ["keep", "drop", "winsorize"]
    assert hurricane.num_universes == 8

def test_new_parameter_multiplies_universes(hurricane):
    hurricane.add_code('alpha = branch(alpha, "strict" ~ 0.01, "lenient" ~ 0.05)')
    assert hurricane.num_universes == 12

def test_no_valid_universe():
    m = multiverse.create_multiverse(config=QUIET)
    m.add_code('x = branch(p, "a" ~ 1)')
    result = m.add_code('y = branch(q, "b" %when% (p == "z") ~ 2)')
    assert result is None
    with pytest.raises(NoValidUniverseError):
        m.expand()
    with pytest.raises(NoValidUniverseError):
        m.execute_all()

def test_multiverse_without_branches():
    m = multiverse.create_multiverse(config=QUIET)
    m.add_code("x = 40 + 2")
    table = m.extract_variable("x")
    assert table[".universe"].tolist() == [1]
    assert table["x"].tolist() == [42]

def test_config():
    m = multiverse.Multiverse(config={"execute_default": False, "verbose": False})
    assert m.config["parallel"] == 1
    assert m.add_code('y = branch(k, "a" ~ 1)') is None
    assert m.expand()[".status"].tolist() == ["not executed"]
    with pytest.raises(ValueError):
        multiverse.Multiverse(config={"threads": 4})

def test_verbose_output(capsys):
    m = multiverse.create_multiverse(config={"progress": False})
    m.add_code('y = branch(k, "a" ~ 1, "b" ~ missing)')
    m.execute_all()
    out = capsys.readouterr().out
    assert "Starting multiverse analysis" in out
    assert "1 out of 2 universes failed" in out

def test_summary(hurricane, capsys):
    selection = hurricane.summary(universe=range(1, 3), return_df=True)
    assert selection[".universe"].tolist() == [1, 2]
    assert "outliers" in capsys.readouterr().out
    assert hurricane.summary(universe=4, print_df=False, return_df=True)[".universe"].tolist() == [4]
    with pytest.raises(ValueError):
        hurricane.summary(universe="4")

def test_export_scripts(hurricane, tmp_path):
    hurricane.export_scripts(str(tmp_path))
    files = sorted(os.listdir(tmp_path))
    assert "multiverse_summary.csv" in files
    assert [f for f in files if f.endswith(".py")] == [f"universe_{i}.py" for i in range(1, 7)]

    script = (tmp_path / "universe_5.py").read_text()
    assert "# Universe 5 of the multiverse 'hurricane'" in script
    assert "#   transform: log" in script
    assert script.splitlines()[6].endswith(": data")
    assert "y = np.log(df.damage)" in script

    summary = pd.read_csv(tmp_path / "multiverse_summary.csv")
    assert summary["outliers"].tolist() == ["keep", "keep", "drop", "drop", "drop", "drop"]

def test_extract_variable_named_like_parameter():
    m = multiverse.create_multiverse(config=QUIET)
    m.add_code('k = branch(k, "a" ~ 1, "b" ~ 2)')
    m.execute_all()
    table = m.extract_variable("k")
    assert table["k"].tolist() == ["a", "b"]
    assert table["k.value"].tolist() == [1, 2]

def test_execute_all_parallel_drops_unpicklable(capsys):
    m = multiverse.create_multiverse(config={"progress": False})
    m.add_code('x = branch(k, "a" ~ 1, "b" ~ 2, "c" ~ 3)')
    m.add_code("g = (i for i in range(x)) if x == 2 else None")
    capsys.readouterr()
    m.execute_all(parallel=2)

    out = capsys.readouterr().out
    assert "completed without any errors" in out
    assert "Universe 2: could not transfer ['g']" in out
    table = m.extract_variable("x")
    assert table[".status"].tolist() == ["success", "success", "success"]
    assert table["x"].tolist() == [1, 2, 3]
