"""
Structured error kinds raised by the Bass reader, evaluator and runtimes.

Every error derives from BassError. Errors raised by built-ins are routed into
the active continuation by the evaluator and reach the top level wrapped in
one TracedError per annotated form they unwind through.
"""

from typing import Any, List, Optional


def _fmt(value: Any) -> str:
    from bass.bass_printer import Printer
    return Printer().pformat(value)


def _type_name(value: Any) -> str:
    match value:
        case None:
            return "null"
        case bool():
            return "bool"
        case int():
            return "int"
        case str():
            return "string"
    return type(value).__name__.lower()


class BassError(Exception):
    """Base class for all Bass errors."""
    pass


class EndOfSource(BassError):
    """Raised when a reader or source has no more values."""
    def __init__(self):
        super().__init__("end of source")


class Interrupted(BassError):
    """Evaluation was cancelled."""
    def __init__(self):
        super().__init__("interrupted")


class ReadError(BassError):
    """Malformed source text."""
    # set when more input could complete the form (used by the REPL)
    incomplete = False

    def __init__(self, message: str, text: Optional[str] = None, range: Any = None):
        super().__init__(message)
        self.message = message
        self.text = text
        self.range = range

    def __str__(self):
        loc = f"{self.range}: " if self.range is not None else ""
        if self.text:
            return f"{loc}{self.message}: {self.text}"
        return f"{loc}{self.message}"


class UnboundError(BassError):
    """A symbol was not bound in the scope it was evaluated in."""
    def __init__(self, symbol: Any, scope: Any = None):
        super().__init__(f"unbound symbol: {symbol}")
        self.symbol = symbol
        self.scope = scope

    def suggestions(self, limit: int = 3) -> List[str]:
        if self.scope is None:
            return []
        name = str(self.symbol)
        scored = []
        seen = set()
        for key, _ in self.scope.walk():
            cand = str(key)
            if cand in seen:
                continue
            seen.add(cand)
            dist = levenshtein(name, cand)
            if dist <= 2:
                scored.append((dist, cand))
        scored.sort()
        return [cand for _, cand in scored[:limit]]

    def nice_message(self) -> str:
        msg = str(self)
        similar = self.suggestions()
        if similar:
            msg += f"\n\ndid you mean {', '.join(similar)}, perchance?"
        return msg


class DecodeError(BassError):
    """A value could not be coerced into the requested shape."""
    def __init__(self, source: Any, destination: Any):
        self.source = source
        self.destination = destination
        dest = getattr(destination, "__name__", None) or str(destination)
        super().__init__(f"cannot decode {_fmt(source)} ({_type_name(source)}) into {dest}")


class BindMismatchError(BassError):
    def __init__(self, need: Any, have: Any):
        super().__init__(f"bind: need {_fmt(need)}, have {_fmt(have)}")
        self.need = need
        self.have = have


class CannotBindError(BassError):
    def __init__(self, have: Any):
        super().__init__(f"bind: cannot bind to {_fmt(have)}")
        self.have = have


class ArityError(BassError):
    """Wrong number of arguments passed to a combiner."""
    def __init__(self, name: str, need: int, have: int, variadic: bool = False):
        qualifier = "at least " if variadic else ""
        super().__init__(f"{name} arity: need {qualifier}{need} arguments, given {have}")
        self.name = name
        self.need = need
        self.have = have
        self.variadic = variadic


class BadKeyError(BassError):
    """A scope literal used something other than a keyword as a key."""
    def __init__(self, value: Any):
        super().__init__(f"bad key: {_fmt(value)} (expected keyword or symbol)")
        self.value = value


class EncodeError(BassError):
    """A value cannot be represented as JSON."""
    def __init__(self, value: Any, reason: str = "unencodable value"):
        super().__init__(f"cannot encode {type(value).__name__}: {reason}")
        self.value = value


class ExtendError(BassError):
    """A path cannot be extended with the given child."""
    def __init__(self, parent: Any, child: Any):
        super().__init__(f"cannot extend {_fmt(parent)} with {_fmt(child)}")
        self.parent = parent
        self.child = child


class StructuredError(BassError):
    """An error raised from Bass code via (error msg :key val ...)."""
    def __init__(self, message: str, fields: Any = None):
        super().__init__(message)
        self.message = message
        self.fields = fields

    def __str__(self):
        if self.fields is not None and self.fields.bindings:
            return f"{self.message} {_fmt(self.fields)}"
        return self.message


class NoRuntimeError(BassError):
    def __init__(self, platform: Any):
        super().__init__(f"no runtime configured for {platform}")
        self.platform = platform


class UnknownProtocolError(BassError):
    def __init__(self, protocol: str):
        super().__init__(f"unknown protocol: {protocol}")
        self.protocol = protocol


class ProtocolError(BassError):
    """Output that a response protocol cannot decode."""


class UnknownRuntimeError(BassError):
    def __init__(self, name: str, available: List[str]):
        super().__init__(f"unknown runtime: {name}; available: {', '.join(sorted(available))}")
        self.name = name
        self.available = available


class ConfigError(BassError):
    pass


class TracedError(BassError):
    """Wraps an error with the source range of a form it unwound through."""
    def __init__(self, err: BaseException, range: Any):
        super().__init__(str(err))
        self.err = err
        self.range = range

    def __str__(self):
        return str(self.err)

    @property
    def innermost(self) -> BaseException:
        err = self.err
        while isinstance(err, TracedError):
            err = err.err
        return err

    def ranges(self) -> list:
        """Ranges from the outermost form to the innermost one."""
        out = [self.range]
        err = self.err
        while isinstance(err, TracedError):
            out.append(err.range)
            err = err.err
        return out


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        cur = [i]
        for j, cb in enumerate(b, 1):
            cur.append(min(prev[j] + 1, cur[j - 1] + 1, prev[j - 1] + (ca != cb)))
        prev = cur
    return prev[-1]
