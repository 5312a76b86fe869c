"""
Defines the core data types of the Bass language.

Atoms are native Python values: null is None, booleans are bool, integers
are int and strings are str. Everything else (symbols, keywords, lists,
scopes, combiners, paths, streams) is one of the classes below. Operations
that dispatch over every variant (evaluation, decoding, JSON, printing) live
in their own modules and match on these classes.
"""

import hashlib
import importlib.resources
import posixpath
from typing import Any, Dict, Iterator, List, Optional, Tuple

from bass.bass_errors import BassError, EndOfSource, ExtendError, UnboundError


def is_int(value: Any) -> bool:
    # bool is a subclass of int, so check it explicitly
    return isinstance(value, int) and not isinstance(value, bool)


def unannotate(value: Any) -> Any:
    while isinstance(value, Annotated):
        value = value.value
    return value


def equal(a: Any, b: Any) -> bool:
    """Structural equality; Annotated wrappers are transparent."""
    a = unannotate(a)
    b = unannotate(b)
    if a is b:
        return True
    if isinstance(a, bool) or isinstance(b, bool):
        return isinstance(a, bool) and isinstance(b, bool) and a == b
    if a is None or b is None:
        return False
    if is_int(a) or isinstance(a, str):
        return type(a) is type(b) and a == b
    return a == b


# =================================================================
# Atoms
# =================================================================

class Symbol:
    """A name looked up in a scope when evaluated."""
    __slots__ = ("name",)

    def __init__(self, name: str):
        self.name = name

    def json_key(self) -> str:
        return self.name.replace("-", "_")

    @classmethod
    def from_json_key(cls, key: str) -> 'Symbol':
        return cls(key.replace("_", "-"))

    def __eq__(self, other):
        other = unannotate(other)
        if not isinstance(other, Symbol):
            return NotImplemented
        return self.name == other.name

    def __hash__(self):
        return hash(("sym", self.name))

    def __repr__(self):
        return f"Symbol({self.name!r})"

    def __str__(self):
        return self.name


class Keyword:
    """A self-evaluating constant which doubles as a getter on scopes."""
    __slots__ = ("name",)

    def __init__(self, name: str):
        self.name = name

    def symbol(self) -> Symbol:
        return Symbol(self.name)

    def __eq__(self, other):
        other = unannotate(other)
        if not isinstance(other, Keyword):
            return NotImplemented
        return self.name == other.name

    def __hash__(self):
        return hash(("kw", self.name))

    def __repr__(self):
        return f"Keyword({self.name!r})"

    def __str__(self):
        return f":{self.name}"


class IgnoreType:
    """The `_` value; binding to it discards the value."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self):
        return "Ignore"

    def __str__(self):
        return "_"


Ignore = IgnoreType()


# =================================================================
# Lists
# =================================================================

class EmptyType:
    """The empty list `()`."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __iter__(self):
        return iter(())

    def __repr__(self):
        return "Empty"

    def __str__(self):
        return "()"


Empty = EmptyType()


class Pair:
    """A list cell which evaluates as a combiner call."""
    __slots__ = ("a", "d")

    def __init__(self, a: Any, d: Any):
        self.a = a
        self.d = d

    def __eq__(self, other):
        other = unannotate(other)
        if not isinstance(other, Pair):
            return NotImplemented
        return equal(self.a, other.a) and equal(self.d, other.d)

    def __repr__(self):
        return f"Pair({self.a!r}, {self.d!r})"

    def __str__(self):
        from bass.bass_printer import Printer
        return Printer().pformat(self)


class Cons:
    """An inert list cell; evaluating it evaluates both halves into a Pair."""
    __slots__ = ("a", "d")

    def __init__(self, a: Any, d: Any):
        self.a = a
        self.d = d

    def __eq__(self, other):
        other = unannotate(other)
        if not isinstance(other, Cons):
            return NotImplemented
        return equal(self.a, other.a) and equal(self.d, other.d)

    def __repr__(self):
        return f"Cons({self.a!r}, {self.d!r})"

    def __str__(self):
        from bass.bass_printer import Printer
        return Printer().pformat(self)


def make_list(*values: Any, tail: Any = Empty) -> Any:
    """Builds a Pair list from values, ending in tail."""
    out = tail
    for value in reversed(values):
        out = Pair(value, out)
    return out


def list_items(value: Any) -> Tuple[List[Any], Any]:
    """Splits a list into its elements and its (possibly non-empty) tail."""
    items = []
    value = unannotate(value)
    while isinstance(value, (Pair, Cons)):
        items.append(value.a)
        value = unannotate(value.d)
    return items, value


def to_list(value: Any) -> List[Any]:
    """Returns the elements of a proper list, raising DecodeError otherwise."""
    items, tail = list_items(value)
    if tail is not Empty:
        from bass.bass_errors import DecodeError
        raise DecodeError(value, "list")
    return items


# =================================================================
# Source ranges and annotations
# =================================================================

class Range:
    """A span of source text: file, start line/col and end line/col."""
    __slots__ = ("file", "start_line", "start_col", "end_line", "end_col")

    def __init__(self, file: str, start_line: int, start_col: int, end_line: int, end_col: int):
        self.file = file
        self.start_line = start_line
        self.start_col = start_col
        self.end_line = end_line
        self.end_col = end_col

    def to_meta(self) -> 'Scope':
        meta = Scope()
        meta.set(Symbol("file"), self.file)
        meta.set(Symbol("line"), self.start_line)
        meta.set(Symbol("column"), self.start_col)
        return meta

    def __eq__(self, other):
        if not isinstance(other, Range):
            return NotImplemented
        return (self.file, self.start_line, self.start_col, self.end_line, self.end_col) == \
            (other.file, other.start_line, other.start_col, other.end_line, other.end_col)

    def __hash__(self):
        return hash((self.file, self.start_line, self.start_col, self.end_line, self.end_col))

    def __repr__(self):
        return f"Range({str(self)!r})"

    def __str__(self):
        return f"{self.file}:{self.start_line}:{self.start_col}..{self.end_line}:{self.end_col}"


class Annotated:
    """A value with its source range and an optional comment and meta scope."""
    __slots__ = ("value", "range", "comment", "meta")

    def __init__(self, value: Any, range: Optional[Range] = None, comment: str = "", meta: Optional['Scope'] = None):
        self.value = value
        self.range = range
        self.comment = comment
        self.meta = meta

    def __eq__(self, other):
        return equal(self.value, other)

    def __repr__(self):
        return f"Annotated({self.value!r}, {self.range!r})"

    def __str__(self):
        from bass.bass_printer import Printer
        return Printer().pformat(self.value)


# =================================================================
# Scopes
# =================================================================

class Scope:
    """An ordered mapping from symbols to values with ordered parent scopes.

    Lookup checks local bindings first, then each parent depth-first in order.
    Writes always go to this scope. Per-binding metadata (docs, ranges) lives
    in `binding_meta`; comments recorded while evaluating in this scope go to
    `commentary`.
    """
    def __init__(self, *parents: 'Scope', name: Optional[str] = None):
        self.bindings: Dict[Symbol, Any] = {}
        self.parents: List[Scope] = []
        self.binding_meta: Dict[Symbol, Scope] = {}
        self.commentary: List[Any] = []
        self.name = name
        self.frozen = False
        self._printing = False
        for parent in parents:
            self.add_parent(parent)

    def add_parent(self, parent: 'Scope'):
        if any(p is parent for p in self.parents):
            return
        if parent.has_ancestor(self):
            raise BassError("cyclic scope: the parent already inherits from this scope")
        self.parents.append(parent)

    def has_ancestor(self, other: 'Scope') -> bool:
        """True if other is this scope or transitively one of its parents."""
        seen = set()
        stack = [self]
        while stack:
            cur = stack.pop()
            if cur is other:
                return True
            if id(cur) in seen:
                continue
            seen.add(id(cur))
            stack.extend(cur.parents)
        return False

    def set(self, sym: Any, value: Any, *docs: str):
        if self.frozen:
            raise RuntimeError(f"cannot bind {sym} in frozen scope {self.name or ''}".rstrip())
        sym = _to_symbol(sym)
        self.bindings[sym] = value
        if docs:
            meta = self.binding_meta.setdefault(sym, Scope())
            meta.set(Symbol("doc"), "\n\n".join(docs))

    def set_meta(self, sym: Any, meta: 'Scope'):
        sym = _to_symbol(sym)
        existing = self.binding_meta.setdefault(sym, Scope())
        for key, value in meta.each():
            existing.set(key, value)

    def lookup(self, sym: Any) -> Tuple[Any, bool]:
        """Returns (value, found) using a depth-first walk over parents."""
        sym = _to_symbol(sym)
        seen = set()
        stack = [self]
        while stack:
            cur = stack.pop()
            if id(cur) in seen:
                continue
            seen.add(id(cur))
            if sym in cur.bindings:
                return cur.bindings[sym], True
            stack.extend(reversed(cur.parents))
        return None, False

    def find_owner(self, sym: Any) -> Optional['Scope']:
        sym = _to_symbol(sym)
        seen = set()
        stack = [self]
        while stack:
            cur = stack.pop()
            if id(cur) in seen:
                continue
            seen.add(id(cur))
            if sym in cur.bindings:
                return cur
            stack.extend(reversed(cur.parents))
        return None

    def get(self, sym: Any, default: Any = None) -> Any:
        value, found = self.lookup(sym)
        return value if found else default

    def find(self, sym: Any) -> Any:
        value, found = self.lookup(sym)
        if not found:
            raise UnboundError(_to_symbol(sym), self)
        return value

    def doc_meta(self, sym: Any) -> Optional['Scope']:
        owner = self.find_owner(sym)
        if owner is None:
            return None
        return owner.binding_meta.get(_to_symbol(sym))

    def __getitem__(self, sym: Any) -> Any:
        value, found = self.lookup(sym)
        if not found:
            raise KeyError(str(sym))
        return value

    def __setitem__(self, sym: Any, value: Any):
        self.set(sym, value)

    def __contains__(self, sym: Any) -> bool:
        return self.lookup(sym)[1]

    def each(self) -> Iterator[Tuple[Symbol, Any]]:
        """Iterates local bindings in insertion order."""
        return iter(list(self.bindings.items()))

    def walk(self) -> Iterator[Tuple[Symbol, Any]]:
        """Iterates every visible binding: parents first, then local, skipping shadowed names."""
        order: List[Symbol] = []
        self._collect(order, set(), set())
        return iter([(sym, self.lookup(sym)[0]) for sym in order])

    def _collect(self, order, seen, visited):
        if id(self) in visited:
            return
        visited.add(id(self))
        for parent in self.parents:
            parent._collect(order, seen, visited)
        for sym in self.bindings:
            if sym not in seen:
                seen.add(sym)
                order.append(sym)

    def complete(self, prefix: str) -> List[Tuple[Symbol, Any]]:
        """Bindings whose name starts with prefix; local ones first, shortest first."""
        local = [(sym, val) for sym, val in self.bindings.items() if sym.name.startswith(prefix)]
        local.sort(key=lambda kv: (len(kv[0].name), kv[0].name))
        out = list(local)
        taken = {sym for sym, _ in local}
        for parent in self.parents:
            for sym, val in parent.complete(prefix):
                if sym in taken:
                    continue
                taken.add(sym)
                out.append((sym, val))
        return out

    def copy(self) -> 'Scope':
        """Shallow copy: same parents, copied local bindings."""
        cp = Scope(*self.parents, name=self.name)
        cp.bindings = dict(self.bindings)
        cp.binding_meta = dict(self.binding_meta)
        return cp

    def freeze(self):
        self.frozen = True

    def __eq__(self, other):
        other = unannotate(other)
        if not isinstance(other, Scope):
            return NotImplemented
        if self is other:
            return True
        mine = list(self.walk())
        theirs = dict(other.walk())
        if len(mine) != len(theirs):
            return False
        for sym, value in mine:
            if sym not in theirs:
                return False
            if value is self or theirs[sym] is other:
                if not (value is self and theirs[sym] is other):
                    return False
                continue
            if not equal(value, theirs[sym]):
                return False
        return True

    __hash__ = object.__hash__

    def __repr__(self):
        return f"<Scope name={self.name!r} bindings={len(self.bindings)} parents={len(self.parents)}>"

    def __str__(self):
        from bass.bass_printer import Printer
        return Printer().pformat(self)


def _to_symbol(sym: Any) -> Symbol:
    sym = unannotate(sym)
    if isinstance(sym, Symbol):
        return sym
    if isinstance(sym, Keyword):
        return sym.symbol()
    if isinstance(sym, str):
        return Symbol(sym)
    raise TypeError(f"scope key must be a symbol, not {type(sym).__name__}")


class Bind:
    """A scope literal `{...}`; evaluates to a Scope."""
    __slots__ = ("items",)

    def __init__(self, items: List[Any]):
        self.items = list(items)

    def __eq__(self, other):
        other = unannotate(other)
        if not isinstance(other, Bind):
            return NotImplemented
        return len(self.items) == len(other.items) and all(equal(a, b) for a, b in zip(self.items, other.items))

    def __repr__(self):
        return f"Bind({self.items!r})"


# =================================================================
# Combiners
# =================================================================

class Operative:
    """A combiner receiving its operands unevaluated plus the caller's scope."""
    def __init__(self, formals: Any, eformal: Any, body: List[Any], static_scope: Scope):
        self.formals = formals
        self.eformal = eformal
        self.body = list(body)
        self.static_scope = static_scope

    def __eq__(self, other):
        return self is unannotate(other)

    __hash__ = object.__hash__

    def __repr__(self):
        return f"<Operative formals={self.formals}>"


class Wrapped:
    """An applicative: evaluates its operands, then calls the underlying combiner."""
    def __init__(self, underlying: Any):
        self.underlying = underlying

    def __eq__(self, other):
        other = unannotate(other)
        if not isinstance(other, Wrapped):
            return NotImplemented
        return equal(self.underlying, other.underlying)

    def __hash__(self):
        return hash(("wrap", id(self.underlying)))

    def __repr__(self):
        return f"<Wrapped {self.underlying!r}>"


class Builtin:
    """A native combiner backed by a Python callable.

    `fn` receives decoded arguments. When `operative` is set it also receives
    the caller's scope as the keyword-only `scope` argument. A callable that
    declares a keyword-only `cont` argument drives its own continuation.
    """
    def __init__(self, name: str, fn: Any, operative: bool = False):
        self.name = name
        self.fn = fn
        self.operative = operative

    def __eq__(self, other):
        other = unannotate(other)
        if not isinstance(other, Builtin):
            return NotImplemented
        return self.name == other.name and self.fn == other.fn

    def __hash__(self):
        return hash(("builtin", self.name))

    def __repr__(self):
        return f"<Builtin {self.name}>"


# =================================================================
# Paths
# =================================================================

def _join(base: str, child: str) -> str:
    if child.startswith("./"):
        child = child[2:]
    if base == "":
        return "/" + child
    return base.rstrip("/") + "/" + child


class DirPath:
    """A directory path; `.` is the working directory and `` the root."""
    __slots__ = ("path",)

    def __init__(self, path: str):
        if path not in ("", "/") and path.endswith("/"):
            path = path.rstrip("/")
        self.path = "" if path == "/" else path

    def is_dir(self) -> bool:
        return True

    def extend(self, child: Any) -> Any:
        child = unannotate(child)
        match child:
            case DirPath():
                return DirPath(_join(self.path, child.path))
            case FilePath():
                return FilePath(_join(self.path, child.path))
        raise ExtendError(self, child)

    def name(self) -> str:
        return posixpath.basename(self.path) or self.path

    def slash(self) -> str:
        return self.path + "/"

    def __eq__(self, other):
        other = unannotate(other)
        if not isinstance(other, DirPath):
            return NotImplemented
        return self.path == other.path

    def __hash__(self):
        return hash(("dir", self.path))

    def __repr__(self):
        return f"DirPath({self.path!r})"

    def __str__(self):
        return self.slash()


class FilePath:
    __slots__ = ("path",)

    def __init__(self, path: str):
        self.path = path

    def is_dir(self) -> bool:
        return False

    def extend(self, child: Any) -> Any:
        raise ExtendError(self, child)

    def dir(self) -> DirPath:
        parent = posixpath.dirname(self.path)
        return DirPath(parent if parent else ".")

    def name(self) -> str:
        return posixpath.basename(self.path)

    def slash(self) -> str:
        return self.path

    def __eq__(self, other):
        other = unannotate(other)
        if not isinstance(other, FilePath):
            return NotImplemented
        return self.path == other.path

    def __hash__(self):
        return hash(("file", self.path))

    def __repr__(self):
        return f"FilePath({self.path!r})"

    def __str__(self):
        return self.path


class CommandPath:
    """A command looked up in $PATH, written `.name`."""
    __slots__ = ("command",)

    def __init__(self, command: str):
        self.command = command

    def extend(self, child: Any) -> Any:
        raise ExtendError(self, child)

    def name(self) -> str:
        return self.command

    def __eq__(self, other):
        other = unannotate(other)
        if not isinstance(other, CommandPath):
            return NotImplemented
        return self.command == other.command

    def __hash__(self):
        return hash(("cmd", self.command))

    def __repr__(self):
        return f"CommandPath({self.command!r})"

    def __str__(self):
        return f".{self.command}"


def file_or_dir(path: str) -> Any:
    """Parses a relative path string into a DirPath or FilePath."""
    if path.endswith("/"):
        return DirPath(path)
    return FilePath(path)


class ExtendPath:
    """A deferred extension `parent/child`, resolved when evaluated."""
    __slots__ = ("parent", "child")

    def __init__(self, parent: Any, child: Any):
        self.parent = parent
        self.child = child

    def __eq__(self, other):
        other = unannotate(other)
        if not isinstance(other, ExtendPath):
            return NotImplemented
        return equal(self.parent, other.parent) and equal(self.child, other.child)

    def __hash__(self):
        return hash(("extend", str(self.child)))

    def __repr__(self):
        return f"ExtendPath({self.parent!r}, {self.child!r})"


class HostPath:
    """A path on the machine running Bass, relative to a context directory."""
    __slots__ = ("context", "path")

    def __init__(self, context: str, path: Any):
        self.context = context
        self.path = path

    def extend(self, child: Any) -> 'HostPath':
        return HostPath(self.context, self.path.extend(child))

    def name(self) -> str:
        return self.path.name()

    def is_dir(self) -> bool:
        return self.path.is_dir()

    def local(self) -> str:
        return posixpath.normpath(posixpath.join(self.context, self.path.slash()))

    def hash(self) -> str:
        return hashlib.sha256(self.context.encode("utf-8")).hexdigest()[:16]

    def __eq__(self, other):
        other = unannotate(other)
        if not isinstance(other, HostPath):
            return NotImplemented
        return self.context == other.context and self.path == other.path

    def __hash__(self):
        return hash(("host", self.context, self.path))

    def __repr__(self):
        return f"HostPath({self.context!r}, {self.path!r})"


class CachePath:
    """A path inside a named cache directory shared between runs."""
    __slots__ = ("id", "path")

    def __init__(self, id: str, path: Any):
        self.id = id
        self.path = path

    def extend(self, child: Any) -> 'CachePath':
        return CachePath(self.id, self.path.extend(child))

    def name(self) -> str:
        return self.path.name()

    def is_dir(self) -> bool:
        return self.path.is_dir()

    def hash(self) -> str:
        return hashlib.sha256(self.id.encode("utf-8")).hexdigest()[:16]

    def __eq__(self, other):
        other = unannotate(other)
        if not isinstance(other, CachePath):
            return NotImplemented
        return self.id == other.id and self.path == other.path

    def __hash__(self):
        return hash(("cache", self.id, self.path))

    def __repr__(self):
        return f"CachePath({self.id!r}, {self.path!r})"


class Secret:
    """A sensitive string which is never printed or marshalled."""
    __slots__ = ("name", "_secret")

    def __init__(self, name: str, secret: str):
        self.name = name
        self._secret = secret

    def reveal(self) -> str:
        return self._secret

    def to_json(self) -> dict:
        return {"secret": self.name}

    def __eq__(self, other):
        # the name is only a label; the secret itself decides equality
        other = unannotate(other)
        if not isinstance(other, Secret):
            return NotImplemented
        return self._secret == other._secret

    def __hash__(self):
        return hash(("secret", self._secret))

    def __repr__(self):
        return f"<secret: {self.name} (redacted)>"


# =================================================================
# Virtual filesystems
# =================================================================

FS_REGISTRY: Dict[str, Any] = {}


class MemoryFS:
    """A read-only in-memory filesystem keyed by slash-separated paths."""
    def __init__(self, files: Dict[str, str]):
        self.files = {posixpath.normpath(k.lstrip("/")): v for k, v in files.items()}
        digest = hashlib.sha256()
        for key in sorted(self.files):
            digest.update(key.encode("utf-8") + b"\0" + self.files[key].encode("utf-8") + b"\0")
        self.id = digest.hexdigest()[:16]
        FS_REGISTRY[self.id] = self

    def read_text(self, path: str) -> str:
        key = posixpath.normpath(path.lstrip("/"))
        if key not in self.files:
            raise FileNotFoundError(path)
        return self.files[key]

    def exists(self, path: str) -> bool:
        key = posixpath.normpath(path.lstrip("/"))
        if key in self.files:
            return True
        prefix = "" if key == "." else key + "/"
        return any(k.startswith(prefix) for k in self.files)

    def __repr__(self):
        return f"<fs {self.id}>"


class EmbeddedFS:
    """A read-only view of files shipped inside the bass package."""
    def __init__(self, package: str, id: str):
        self.package = package
        self.id = id
        FS_REGISTRY[self.id] = self

    def _resource(self, path: str):
        ref = importlib.resources.files(self.package)
        for part in posixpath.normpath(path.lstrip("/")).split("/"):
            if part not in (".", ""):
                ref = ref / part
        return ref

    def read_text(self, path: str) -> str:
        ref = self._resource(path)
        if not ref.is_file():
            raise FileNotFoundError(path)
        return ref.read_text(encoding="utf-8")

    def exists(self, path: str) -> bool:
        return self._resource(path).is_file() or self._resource(path).is_dir()

    def __repr__(self):
        return f"<fs {self.id}>"


class FSPath:
    """A path inside a virtual filesystem."""
    __slots__ = ("fs", "path")

    def __init__(self, fs: Any, path: Any):
        self.fs = fs
        self.path = path

    def extend(self, child: Any) -> 'FSPath':
        return FSPath(self.fs, self.path.extend(child))

    def name(self) -> str:
        return self.path.name()

    def is_dir(self) -> bool:
        return self.path.is_dir()

    def read_text(self) -> str:
        return self.fs.read_text(self.path.slash())

    def __eq__(self, other):
        other = unannotate(other)
        if not isinstance(other, FSPath):
            return NotImplemented
        return self.fs.id == other.fs.id and self.path == other.path

    def __hash__(self):
        return hash(("fs", self.fs.id, self.path))

    def __repr__(self):
        return f"FSPath({self.fs!r}, {self.path!r})"


# =================================================================
# Streams
# =================================================================

class StaticSource:
    """A pipe source over a fixed list of values."""
    def __init__(self, values: List[Any], name: str = "static"):
        self.values = list(values)
        self.offset = 0
        self.name = name

    def next(self) -> Any:
        if self.offset >= len(self.values):
            raise EndOfSource()
        value = self.values[self.offset]
        self.offset += 1
        return value

    def __str__(self):
        return self.name


class Source:
    """A reference to a lazy producer of values."""
    def __init__(self, pipe: Any):
        self.pipe = pipe

    def next(self) -> Any:
        return self.pipe.next()

    def __eq__(self, other):
        return self is unannotate(other)

    __hash__ = object.__hash__

    def __repr__(self):
        return f"<source: {self.pipe}>"


class Sink:
    """A reference to a consumer of values."""
    def __init__(self, pipe: Any):
        self.pipe = pipe

    def emit(self, value: Any):
        self.pipe.emit(value)

    def __eq__(self, other):
        return self is unannotate(other)

    __hash__ = object.__hash__

    def __repr__(self):
        return f"<sink: {self.pipe}>"


class ListSink:
    """A pipe sink collecting values into a list."""
    def __init__(self, name: str = "buffer"):
        self.values: List[Any] = []
        self.name = name

    def emit(self, value: Any):
        self.values.append(value)

    def __str__(self):
        return self.name
