import ast
from forkingpaths.codestore import CodeStore

def test_append_and_text():
    store = CodeStore()
    first = store.append("x = 1\n", ast.parse("x = 1"))
    second = store.append("\ny = x + 1\n", ast.parse("y = x + 1"), ["k"])
    assert (first.index, second.index) == (0, 1)
    assert second.parameters == ("k",)
    assert len(store) == 2
    assert store[1] is second
    assert list(store) == [first, second]
    assert store.text() == "x = 1\n\ny = x + 1"

def test_digest_changes_with_every_append():
    store = CodeStore()
    digests = [store.digest()]
    store.append("x = 1", ast.parse("x = 1"))
    digests.append(store.digest())
    store.append("x = 1", ast.parse("x = 1"))
    digests.append(store.digest())
    assert len(set(digests)) == 3

def test_digest_is_deterministic():
    a, b = CodeStore(), CodeStore()
    for store in (a, b):
        store.append("x = 1", ast.parse("x = 1"))
        store.append("y = 2", ast.parse("y = 2"))
    assert a.digest() == b.digest()
    assert len(a.digest()) == 64
