import hashlib


class CodeStep:
    """
    One appended piece of analysis code.

    Attributes
    ----------
    index : int
        Position of the step in the code store (0-based).
    source : str
        The code exactly as it was added.
    template : ast.Module
        Parsed code in which every branch call is replaced by a
        ``__branch__("<parameter>")`` marker.
    parameters : tuple of str
        Parameters referenced by the step, in order of appearance.
    """

    def __init__(self, index, source, template, parameters=()):
        self.index = index
        self.source = source
        self.template = template
        self.parameters = tuple(parameters)

    def __repr__(self):
        return f"CodeStep(index={self.index}, parameters={list(self.parameters)})"


class CodeStore:
    """
    Ordered, append-only sequence of code steps.
    """

    def __init__(self):
        self._steps = []

    def append(self, source, template, parameters=()):
        step = CodeStep(len(self._steps), source, template, parameters)
        self._steps.append(step)
        return step

    def steps(self):
        return tuple(self._steps)

    def text(self):
        """
        Return the accumulated, unevaluated code
        """
        return "\n\n".join(step.source.strip("\n") for step in self._steps)

    def digest(self):
        """
        SHA-256 digest of all step sources. Changes with every append.
        """
        sha = hashlib.sha256()
        for step in self._steps:
            sha.update(step.source.encode("utf-8"))
            sha.update(b"\x00")
        return sha.hexdigest()

    def __len__(self):
        return len(self._steps)

    def __iter__(self):
        return iter(self._steps)

    def __getitem__(self, index):
        return self._steps[index]
