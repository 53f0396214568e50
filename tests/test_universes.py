import pytest
from forkingpaths import parser, universes
from forkingpaths.registry import ParameterRegistry
from forkingpaths.exceptions import NoValidUniverseError, UniverseLimitError

def make_registry(code):
    registry = ParameterRegistry()
    registry.merge(parser.parse_step(code).declarations)
    return registry

# Five parameters with 5, 3, 3, 3 and 2 options (270 combinations). Two guarded
# options each remove 5 * 1 * 3 * 1 * 2 = 30 combinations.
CONSTRAINED = '''
a = branch(p1, "a1" ~ 1, "a2" ~ 2, "a3" ~ 3, "a4" ~ 4, "a5" ~ 5)
b = branch(p2, "b1" ~ 1, "b2" ~ 2, "b3" ~ 3)
c = branch(p3, "c1" %when% (p2 != "b2") ~ 1, "c2" ~ 2, "c3" ~ 3)
d = branch(p4, "d1" %when% (p2 != "b1") ~ 1, "d2" ~ 2, "d3" ~ 3)
e = branch(p5, "e1" ~ 1, "e2" ~ 2)
'''

@pytest.fixture(scope="module")
def constrained():
    return make_registry(CONSTRAINED)

def test_cartesian_product():
    registry = make_registry('a = branch(x, "1" ~ 1, "2" ~ 2)\n'
                             'b = branch(y, "1" ~ 1, "2" ~ 2, "3" ~ 3)\n'
                             'c = branch(z, "1" ~ 1, "2" ~ 2, "3" ~ 3, "4" ~ 4)')
    expanded = universes.expand_universes(registry)
    assert len(expanded) == 2 * 3 * 4
    assert universes.count_universes(registry) == 24
    assert len({universe.key for universe in expanded}) == 24

def test_constrained_count(constrained):
    expanded = universes.expand_universes(constrained)
    assert universes.count_universes(constrained) == 270
    assert len(expanded) == 210

def test_conditions_hold(constrained):
    for universe in universes.expand_universes(constrained):
        assignment = universe.assignment
        if assignment["p3"] == "c1":
            assert assignment["p2"] != "b2"
        if assignment["p4"] == "d1":
            assert assignment["p2"] != "b1"

def test_only_failing_guards_remove_universes(constrained):
    expanded = {universe.key for universe in universes.expand_universes(constrained)}
    kept = [u for u in expanded if dict(u)["p2"] == "b3"]
    # Neither guard is false for p2 == "b3", so nothing is removed there
    assert len(kept) == 5 * 3 * 3 * 2

def test_ids_and_order():
    registry = make_registry('a = branch(x, "1" ~ 1, "2" ~ 2)\nb = branch(y, "u" ~ 1, "v" ~ 2)')
    expanded = universes.expand_universes(registry)
    assert [universe.id for universe in expanded] == [1, 2, 3, 4]
    assert [universe.assignment for universe in expanded] == [
        {"x": "1", "y": "u"}, {"x": "1", "y": "v"}, {"x": "2", "y": "u"}, {"x": "2", "y": "v"}]

def test_deterministic(constrained):
    first = universes.expand_universes(constrained)
    second = universes.expand_universes(constrained)
    assert first == second

def test_empty_registry():
    expanded = universes.expand_universes(ParameterRegistry())
    assert len(expanded) == 1
    assert expanded[0].id == 1
    assert expanded[0].assignment == {}

def test_no_valid_universe():
    registry = make_registry('x = branch(p, "a" ~ 1)\ny = branch(q, "b" %when% (p == "z") ~ 1)')
    with pytest.raises(NoValidUniverseError):
        universes.expand_universes(registry)
    assert universes.default_universe(registry) is None

def test_universe_limit(constrained):
    with pytest.raises(UniverseLimitError) as excinfo:
        universes.expand_universes(constrained, max_universes=100)
    assert excinfo.value.limit == 100
    assert len(universes.expand_universes(constrained, max_universes=210)) == 210

def test_default_universe_takes_first_options(constrained):
    default = universes.default_universe(constrained)
    assert default == {"p1": "a1", "p2": "b1", "p3": "c1", "p4": "d2", "p5": "e1"}
    assert default == universes.expand_universes(constrained)[0].assignment

def test_default_universe_backtracks():
    registry = make_registry('x = branch(p, "a" ~ 1, "b" ~ 2)\n'
                             'y = branch(q, "only" %when% (p == "b") ~ 1)')
    default = universes.default_universe(registry)
    assert default == {"p": "b", "q": "only"}
    assert universes.expand_universes(registry)[0].assignment == default
