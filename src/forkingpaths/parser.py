"""
Branch parser.

Finds ``branch(...)`` calls in a fragment of Python code and turns them into
parameter declarations. Each option is written as one of

    "label" ~ expression
    "label" %when% condition ~ expression
    expression
    expression %when% condition

The parser never evaluates an option. Every branch call is replaced in the
step's syntax tree by a ``__branch__("<parameter>")`` marker, which the
execution engine later swaps for the expression of the chosen option.
"""
import io
import ast
import keyword
import tokenize
from collections import namedtuple

from .exceptions import ParseError, DuplicateOptionLabelError
from .registry import Option

MARKER = "__branch__"

Declaration = namedtuple("Declaration", ["parameter", "options"])
ParsedStep = namedtuple("ParsedStep", ["template", "declarations", "parameters"])

_OPEN = "([{"
_CLOSE = ")]}"
_SKIP = {tokenize.COMMENT, tokenize.NL, tokenize.NEWLINE, tokenize.INDENT, tokenize.DEDENT, tokenize.ENDMARKER}
_OPERAND_END = {tokenize.NAME, tokenize.NUMBER, tokenize.STRING}
if hasattr(tokenize, "FSTRING_END"):
    _OPERAND_END.add(tokenize.FSTRING_END)


def parse_step(source):
    """
    Parse one code fragment.

    Parameters
    ----------
    source : str
        Python code, possibly containing branch calls.

    Returns
    -------
    ParsedStep
        ``template`` (ast.Module with markers), ``declarations`` (list of
        Declaration in order of appearance) and ``parameters`` (names of the
        declared parameters, without duplicates).
    """
    if not isinstance(source, str):
        raise TypeError(f"Code must be provided as a string, got {type(source).__name__}.")

    text, declarations = _rewrite(source)
    try:
        template = ast.parse(text)
    except SyntaxError as e:
        raise ParseError(f"Invalid code: {e.msg}", e.lineno) from e

    parameters = []
    for declaration in declarations:
        if declaration.parameter not in parameters:
            parameters.append(declaration.parameter)

    return ParsedStep(template, declarations, parameters)


def is_marker(node):
    """
    Check whether an AST node is a branch marker call
    """
    return (isinstance(node, ast.Call)
            and isinstance(node.func, ast.Name)
            and node.func.id == MARKER
            and len(node.args) == 1
            and isinstance(node.args[0], ast.Constant))


# Internal helpers
def _rewrite(source, first_line=1):
    """
    Replace the outermost branch calls of ``source`` by markers and collect
    the declarations, including those nested inside option expressions.
    """
    tokens, offsets = _tokenize(source, first_line)
    pieces = []
    declarations = []
    cursor = 0
    i = 0

    while i < len(tokens):
        if not _is_branch_call(tokens, i):
            i += 1
            continue

        close = _matching(tokens, i + 1, first_line)
        start = _position(offsets, tokens[i].start)
        end = _position(offsets, tokens[close].end)
        lineno = first_line + tokens[i].start[0] - 1

        arguments = _split_arguments(tokens[i + 2:close], lineno)
        found = _declarations(arguments, source, offsets, first_line, lineno)
        declarations.extend(found)

        # Keep the line count of the call so that line numbers stay valid
        newlines = "\n" * source.count("\n", start, end)
        pieces.append(source[cursor:start])
        pieces.append(f"{MARKER}({found[0].parameter!r}{newlines})")
        cursor = end
        i = close + 1

    pieces.append(source[cursor:])
    return "".join(pieces), declarations


def _tokenize(source, first_line):
    # Offsets of each line start, split the same way the tokenizer reads them
    offsets = [0]
    for line in io.StringIO(source):
        offsets.append(offsets[-1] + len(line))

    try:
        tokens = [tok for tok in tokenize.generate_tokens(io.StringIO(source).readline)
                  if tok.type not in _SKIP]
    except tokenize.TokenError as e:
        raise ParseError(f"Invalid code: {e.args[0]}", first_line + e.args[1][0] - 1) from e
    except SyntaxError as e:
        raise ParseError(f"Invalid code: {e.msg}", first_line + (e.lineno or 1) - 1) from e
    return tokens, offsets


def _position(offsets, location):
    row, col = location
    return offsets[row - 1] + col


def _text(source, offsets, tokens):
    return source[_position(offsets, tokens[0].start):_position(offsets, tokens[-1].end)]


def _is_op(tok, string):
    return tok.type == tokenize.OP and tok.string == string


def _is_branch_call(tokens, i):
    tok = tokens[i]
    if tok.type != tokenize.NAME or tok.string != "branch":
        return False
    if i + 1 >= len(tokens) or not _is_op(tokens[i + 1], "("):
        return False
    # Attribute access (obj.branch) and definitions (def branch) are left alone
    if i > 0 and (_is_op(tokens[i - 1], ".") or tokens[i - 1].string in ("def", "class")):
        return False
    return True


def _matching(tokens, open_index, first_line):
    depth = 0
    for j in range(open_index, len(tokens)):
        tok = tokens[j]
        if tok.type != tokenize.OP:
            continue
        if tok.string in _OPEN:
            depth += 1
        elif tok.string in _CLOSE:
            depth -= 1
            if depth == 0:
                return j
    raise ParseError("Unclosed branch call", first_line + tokens[open_index].start[0] - 1)


def _split_arguments(tokens, lineno):
    arguments = [[]]
    depth = 0
    for tok in tokens:
        if tok.type == tokenize.OP and tok.string in _OPEN:
            depth += 1
        elif tok.type == tokenize.OP and tok.string in _CLOSE:
            depth -= 1
        if depth == 0 and _is_op(tok, ","):
            if not arguments[-1]:
                raise ParseError("Empty argument in branch call", lineno)
            arguments.append([])
        else:
            arguments[-1].append(tok)

    # A trailing comma leaves one empty argument behind
    if not arguments[-1]:
        arguments.pop()
    return arguments


def _top_level(tokens):
    """
    Yield (index, token) pairs of tokens that are not nested in brackets
    """
    depth = 0
    for j, tok in enumerate(tokens):
        if tok.type == tokenize.OP and tok.string in _OPEN:
            depth += 1
        elif tok.type == tokenize.OP and tok.string in _CLOSE:
            depth -= 1
        elif depth == 0:
            yield j, tok


def _ends_operand(tok):
    if tok.type == tokenize.OP:
        return tok.string in _CLOSE
    if tok.type == tokenize.NAME and keyword.iskeyword(tok.string):
        return tok.string in ("True", "False", "None")
    return tok.type in _OPERAND_END


def _find_tilde(tokens):
    for j, tok in _top_level(tokens):
        if _is_op(tok, "~") and j > 0 and _ends_operand(tokens[j - 1]):
            return j
    return None


def _find_when(tokens):
    for j, tok in _top_level(tokens):
        if (_is_op(tok, "%") and j + 2 < len(tokens)
                and tokens[j + 1].type == tokenize.NAME and tokens[j + 1].string == "when"
                and _is_op(tokens[j + 2], "%")):
            return j
    return None


def _string(tok):
    try:
        value = ast.literal_eval(tok.string)
    except (ValueError, SyntaxError):
        return None
    return value if isinstance(value, str) else None


def _parameter_name(tokens, lineno):
    if len(tokens) == 1 and tokens[0].type == tokenize.NAME and not keyword.iskeyword(tokens[0].string):
        return tokens[0].string

    if len(tokens) == 1 and tokens[0].type == tokenize.STRING:
        name = _string(tokens[0])
        if name is not None and name.isidentifier() and not keyword.iskeyword(name):
            return name

    raise ParseError("The first argument of branch() must be a parameter name", lineno)


def _label(tokens, lineno):
    if len(tokens) == 1:
        tok = tokens[0]
        if tok.type == tokenize.NAME and not keyword.iskeyword(tok.string):
            return tok.string
        if tok.type == tokenize.STRING:
            label = _string(tok)
            if label is not None:
                return label
    raise ParseError("Option labels must be a string or an identifier", lineno)


def _expression(source, offsets, tokens, first_line):
    """
    Parse an option expression, resolving nested branch calls
    """
    lineno = first_line + tokens[0].start[0] - 1
    text = "(" + _text(source, offsets, tokens) + "\n)"
    rewritten, nested = _rewrite(text, lineno)
    try:
        expression = ast.parse(rewritten, mode="eval").body
    except SyntaxError as e:
        raise ParseError(f"Invalid option expression: {e.msg}", lineno + (e.lineno or 1) - 1) from e
    return expression, nested


def _condition(source, offsets, tokens, first_line):
    lineno = first_line + tokens[0].start[0] - 1
    text = "(" + _text(source, offsets, tokens) + "\n)"
    try:
        return ast.parse(text, mode="eval").body
    except SyntaxError as e:
        raise ParseError(f"Invalid condition: {e.msg}", lineno + (e.lineno or 1) - 1) from e


def _declarations(arguments, source, offsets, first_line, lineno):
    if not arguments:
        raise ParseError("branch() needs a parameter name and at least one option", lineno)

    name = _parameter_name(arguments[0], lineno)
    if len(arguments) < 2:
        raise ParseError(f"branch '{name}' declares no options", lineno)

    options = []
    nested = []
    for tokens in arguments[1:]:
        option_line = first_line + tokens[0].start[0] - 1

        if any(_is_op(tok, "=") for _, tok in _top_level(tokens)):
            raise ParseError(f"Keyword arguments are not supported in branch '{name}'", option_line)
        if _is_op(tokens[0], "~"):
            raise ParseError(f"Missing option label in branch '{name}'", option_line)

        tilde = _find_tilde(tokens)
        head = tokens if tilde is None else tokens[:tilde]
        when = _find_when(head)

        condition = None
        if when is not None:
            if not head[when + 3:]:
                raise ParseError(f"Missing condition after %when% in branch '{name}'", option_line)
            condition = _condition(source, offsets, head[when + 3:], first_line)
            head = head[:when]
            if not head:
                raise ParseError(f"Missing option label in branch '{name}'", option_line)

        if tilde is None:
            # Bare option: the expression doubles as its label
            expression, inner = _expression(source, offsets, head, first_line)
            if isinstance(expression, ast.Constant) and isinstance(expression.value, str):
                label = expression.value
            else:
                label = ast.unparse(expression)
        else:
            body = tokens[tilde + 1:]
            if not body:
                raise ParseError(f"Missing expression for an option of branch '{name}'", option_line)
            label = _label(head, option_line)
            expression, inner = _expression(source, offsets, body, first_line)

        if label in [option.label for option in options]:
            raise DuplicateOptionLabelError(name, label)

        options.append(Option(name, label, expression, condition))
        nested.extend(inner)

    return [Declaration(name, tuple(options))] + nested
