"""
Ground, the run scope and script execution.

Ground is the primordial scope. It is built once: the StdLib methods are bound
as native combiners, then the bootstrap sources under `std/` are evaluated
into it and it is frozen. Every module evaluates in a run scope (binding
`*dir*`, `*env*`, `*args*`, `*stdin*`, `*stdout*` and a default `main`) whose
parent is Ground.
"""
import asyncio
import inspect
import io
import json
import os
import tarfile
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Literal, Optional

from bass.bass_binder import bind
from bass.bass_config import Config
from bass.bass_datatypes import (
    Symbol, Keyword, IgnoreType, EmptyType, Empty, Pair, Cons, Scope, Annotated,
    Operative, Wrapped, Builtin, DirPath, FilePath, CommandPath, HostPath, CachePath,
    FSPath, MemoryFS, Secret, Source, Sink, StaticSource,
    file_or_dir, is_int, list_items, make_list, unannotate, equal,
)
from bass.bass_decode import Combiner, Bindable, Form, truthy, revive
from bass.bass_errors import (
    BassError, EndOfSource, Interrupted, ReadError, DecodeError, ArityError,
    StructuredError, TracedError, UnboundError, UnknownProtocolError,
)
from bass.bass_interpreter import Evaluator, extend_path
from bass.bass_json import JSONSource, JSONSink, marshal, to_json, unmarshal
from bass.bass_pool import Pool, DEMOS_FS, STD_FS, read_thunk_bytes
from bass.bass_printer import Printer
from bass.bass_protocol import PROTOCOLS, decode_response
from bass.bass_reader import read_all
from bass.bass_thunk import (
    Thunk, ThunkPath, ThunkResponse, image_ref_from_scope, image_ref_to_scope,
)

BOOTSTRAP = ["root", "lists", "streams", "run", "bool"]

# method names that don't map onto a Bass name by the usual rules
SYMBOLIC_NAMES = {
    "add": "+",
    "sub": "-",
    "mul": "*",
    "eq": "=",
    "lt": "<",
    "lte": "<=",
    "gt": ">",
    "gte": ">=",
    "list_star": "list*",
}


def builtin_name(method: str) -> str:
    """`_string_to_symbol` -> `string->symbol`, `_null_q` -> `null?`."""
    name = method[1:]
    if name in SYMBOLIC_NAMES:
        return SYMBOLIC_NAMES[name]
    name = name.replace("_", "-")
    if name.endswith("-q"):
        name = name[:-2] + "?"
    return name.replace("-to-", "->")


def _text(value: Any) -> str:
    value = unannotate(value)
    if isinstance(value, str):
        return value
    return Printer().pformat(value)


def _fmt_args(args) -> tuple:
    out = []
    for arg in args:
        arg = unannotate(arg)
        out.append(arg if isinstance(arg, (str, int)) else Printer().pformat(arg))
    return tuple(out)


def _pool(evaluator: Evaluator) -> Pool:
    if evaluator.pool is None:
        raise BassError("no runtime pool configured")
    return evaluator.pool


def _protocol_name(protocol: Any) -> str:
    protocol = unannotate(protocol)
    if isinstance(protocol, (Symbol, Keyword)):
        protocol = protocol.name
    if not isinstance(protocol, str):
        raise DecodeError(protocol, "protocol")
    if protocol not in PROTOCOLS:
        raise UnknownProtocolError(protocol)
    return protocol


def _sequence(value: Any, name: str) -> Any:
    v = unannotate(value)
    if not isinstance(v, (Pair, Cons)):
        raise DecodeError(v, f"non-empty list for ({name})")
    return v


def _tar_entries(data: bytes) -> List[Any]:
    """Turns tar protocol entries into fs paths annotated with their headers."""
    entries = []
    for line in data.decode("utf-8").split("\n"):
        if not line.strip():
            continue
        header = json.loads(line)
        content = header.pop("content", None)
        name = header["name"]
        if header["type"] == tarfile.DIRTYPE.decode("ascii"):
            path = FSPath(MemoryFS({}), DirPath(name))
        else:
            path = FSPath(MemoryFS({name: content or ""}), FilePath(name))
        meta = Scope()
        for key, value in header.items():
            meta.set(Symbol(key), value)
        entries.append(Annotated(path, meta=meta))
    return entries


# ===================================================================
# The standard library
# ===================================================================

class StdLib:
    """Python implementations of the native Ground bindings.

    Each `_name` method is bound under its Bass name. Operatives receive their
    operands unevaluated; everything else is wrapped into an applicative.
    """

    OPERATIVES = {"op", "def", "if", "do", "quote", "get-current-scope", "doc"}

    def install(self, scope: Scope):
        for name, member in inspect.getmembers(self):
            if not name.startswith('_') or name.startswith('__') or not callable(member):
                continue
            bass_name = builtin_name(name)
            builtin = Builtin(bass_name, member, operative=bass_name in self.OPERATIVES)
            doc = inspect.getdoc(member)
            scope.set(bass_name, builtin if builtin.operative else Wrapped(builtin), *([doc] if doc else []))

    # --- Core combiners ---

    def _op(self, formals: Form, eformal: Form, *body: Form, scope: Scope):
        """Constructs an operative which receives its operands unevaluated along with the caller's scope."""
        return Operative(formals, eformal, list(body), scope)

    def _def(self, formals: Form, value: Form, *, scope: Scope, cont, evaluator):
        """Binds symbols to values in the current scope. Supports destructuring."""
        def bind_value(val):
            bind(scope, formals, val)
            return cont.call(unannotate(formals))
        return evaluator.eval_cps(value, scope, cont.then(bind_value))

    def _if(self, cond: Form, yes: Form, no: Form = None, *, scope: Scope, cont, evaluator):
        """Evaluates yes if cond is truthy (not false or null), otherwise no."""
        return evaluator.eval_cps(cond, scope, cont.then(
            lambda res: evaluator.eval_cps(yes if truthy(res) else no, scope, cont)))

    def _do(self, *body: Form, scope: Scope, cont, evaluator):
        """Evaluates a sequence, returning the last value."""
        return evaluator.eval_body(list(body), scope, cont)

    def _quote(self, form: Form):
        """Returns the form unevaluated."""
        return form

    def _eval(self, form: Form, env: Scope, *, cont, evaluator):
        """Evaluates a value in a scope."""
        return evaluator.eval_cps(form, env, cont)

    def _wrap(self, comb: Combiner):
        """Constructs an applicative from a combiner."""
        return Wrapped(comb)

    def _unwrap(self, app: Wrapped):
        """Returns an applicative's underlying combiner."""
        return app.underlying

    def _apply(self, comb: Any, args: list, *, scope: Scope, cont, evaluator):
        """Calls the combiner's underlying operative with the given arguments."""
        return evaluator.apply_cps(comb, make_list(*args), scope, cont)

    def _cons(self, a: Form, d: Form):
        """Constructs a pair from the given values."""
        return Pair(a, d)

    # --- Scopes and docs ---

    def _get_current_scope(self, *, scope: Scope):
        """Returns the scope the call is evaluated in."""
        return scope

    def _make_scope(self, *parents: Scope):
        """Constructs a scope with the given parents."""
        return Scope(*parents)

    def _bind(self, scope: Scope, formals: Bindable, value: Form):
        """Attempts to bind values in the scope, returning true if the binding succeeded."""
        try:
            bind(scope, formals, value)
        except (BassError, RuntimeError):
            return False
        return True

    def _assoc(self, obj: Scope, *kvs: Any):
        """Returns a copy of the scope with the given keys set."""
        if len(kvs) % 2 != 0:
            raise ArityError("assoc", len(kvs) + 2, len(kvs) + 1, True)
        clone = obj.copy()
        for i in range(0, len(kvs), 2):
            clone.set(kvs[i], kvs[i + 1])
        return clone

    def _scope_to_list(self, obj: Scope):
        """Returns a flat list alternating a scope's keys and values."""
        out = []
        for sym, val in obj.walk():
            out.extend([sym, val])
        return make_list(*out)

    async def _reduce_kv(self, fn: Combiner, init: Any, kv: Scope, *, scope: Scope, evaluator):
        """Calls (fn acc key value) for each binding of the scope."""
        acc = init
        for sym, val in kv.walk():
            acc = await evaluator.call(fn, [acc, sym, val], scope)
        return acc

    def _meta(self, val: Form):
        """Returns the meta attached to the value, or null."""
        if isinstance(val, Annotated) and isinstance(val.meta, Scope):
            return val.meta
        return None

    def _with_meta(self, val: Form, meta: Scope):
        """Returns val with the given scope as its metadata."""
        if isinstance(val, Annotated):
            merged = Scope()
            for src in (val.meta, meta):
                if isinstance(src, Scope):
                    for k, v in src.each():
                        merged.set(k, v)
            return Annotated(val.value, val.range, val.comment, merged)
        return Annotated(val, meta=meta)

    def _commentary(self, scope: Scope):
        """Returns the comments recorded while evaluating in the scope."""
        return make_list(*scope.commentary)

    def _doc(self, *symbols: Form, scope: Scope, evaluator):
        """Prints documentation for the given symbols, or the scope's commentary when none are given."""
        if not symbols:
            for comment in scope.commentary:
                evaluator.emit_stderr(comment)
            return None
        for form in symbols:
            sym = unannotate(form)
            if not isinstance(sym, Symbol):
                raise DecodeError(sym, Symbol)
            value = scope.find(sym)
            meta = scope.doc_meta(sym)
            lines = [f"{sym.name} ({_kind(value)})"]
            if meta is not None:
                doc = meta.get(Symbol("doc"))
                if doc:
                    lines.append(doc)
            evaluator.emit_stderr("\n".join(lines))
        return None

    # --- Predicates ---

    def _null_q(self, val: Any): return val is None
    def _ignore_q(self, val: Any): return isinstance(val, IgnoreType)
    def _boolean_q(self, val: Any): return isinstance(val, bool)
    def _number_q(self, val: Any): return is_int(val)
    def _string_q(self, val: Any): return isinstance(val, str)
    def _symbol_q(self, val: Any): return isinstance(val, Symbol)
    def _keyword_q(self, val: Any): return isinstance(val, Keyword)
    def _scope_q(self, val: Any): return isinstance(val, Scope)
    def _sink_q(self, val: Any): return isinstance(val, Sink)
    def _source_q(self, val: Any): return isinstance(val, Source)
    def _list_q(self, val: Any): return val is Empty or (isinstance(val, (Pair, Cons)) and list_items(val)[1] is Empty)
    def _pair_q(self, val: Any): return isinstance(val, (Pair, Cons))
    def _thunk_q(self, val: Any): return isinstance(val, Thunk)
    def _combiner_q(self, val: Any): return isinstance(val, (Operative, Wrapped, Builtin))
    def _applicative_q(self, val: Any): return isinstance(val, Wrapped)
    def _operative_q(self, val: Any): return isinstance(val, Operative) or (isinstance(val, Builtin) and val.operative)

    def _path_q(self, val: Any):
        return isinstance(val, (DirPath, FilePath, CommandPath, HostPath, CachePath, FSPath, ThunkPath))

    def _empty_q(self, val: Any):
        """Returns true for null, an empty list, an empty string or a scope with no bindings."""
        match val:
            case None | EmptyType():
                return True
            case str():
                return val == ""
            case Scope():
                return next(val.walk(), None) is None
        return False

    # --- Arithmetic and comparison ---

    def _add(self, *nums: int):
        """Sums the given numbers."""
        return sum(nums)

    def _sub(self, first: int, *rest: int):
        """Subtracts each number from the first; negates a single number."""
        if not rest:
            return -first
        for num in rest:
            first -= num
        return first

    def _mul(self, *nums: int):
        """Multiplies the given numbers."""
        out = 1
        for num in nums:
            out *= num
        return out

    def _quot(self, num: int, denom: int):
        """Divides num by denom, truncating toward zero."""
        if denom == 0:
            raise BassError("quot: division by zero")
        q = abs(num) // abs(denom)
        return q if (num >= 0) == (denom >= 0) else -q

    def _max(self, first: int, *rest: int): return max((first, *rest))
    def _min(self, first: int, *rest: int): return min((first, *rest))

    def _eq(self, first: Any, *rest: Any):
        """Returns true if every value is equal to the first."""
        return all(equal(first, other) for other in rest)

    def _lt(self, *vals: int | str): return _ordered(vals, lambda a, b: a < b)
    def _lte(self, *vals: int | str): return _ordered(vals, lambda a, b: a <= b)
    def _gt(self, *vals: int | str): return _ordered(vals, lambda a, b: a > b)
    def _gte(self, *vals: int | str): return _ordered(vals, lambda a, b: a >= b)

    # --- Lists ---

    def _first(self, lst: Any):
        return _sequence(lst, "first").a

    def _rest(self, lst: Any):
        return _sequence(lst, "rest").d

    def _length(self, val: Any):
        """Returns the number of elements in a list, characters in a string or bindings in a scope."""
        match val:
            case str():
                return len(val)
            case Scope():
                return len(list(val.walk()))
        items, _ = list_items(val)
        return len(items)

    def _list_star(self, *args: Any):
        """Like list, but the last argument is the tail."""
        if not args:
            raise ArityError("list*", 1, 0, True)
        return make_list(*args[:-1], tail=args[-1])

    def _append(self, *lists: list):
        """Concatenates lists."""
        out = []
        for lst in lists:
            out.extend(lst)
        return make_list(*out)

    # --- Strings and conversions ---

    def _str(self, *vals: Any):
        """Returns the concatenation of all given strings or values."""
        return "".join(_text(v) for v in vals)

    def _substring(self, s: str, start: int, end: Optional[int] = None):
        return s[start:] if end is None else s[start:end]

    def _trim(self, s: str):
        return s.strip()

    def _symbol_to_string(self, sym: Symbol): return sym.name
    def _string_to_symbol(self, s: str): return Symbol(s)
    def _string_to_keyword(self, s: str): return Keyword(s)
    def _keyword_to_string(self, kw: Keyword): return kw.name

    def _string_to_fs_path(self, s: str):
        """Parses a string into a file or directory path."""
        return file_or_dir(s)

    def _string_to_cmd_path(self, s: str):
        """Converts a string to a command path, or to a file path if it contains a /."""
        if "/" not in s:
            return CommandPath(s)
        return FilePath(s.rstrip("/"))

    def _string_to_dir(self, s: str):
        return DirPath(s)

    def _subpath(self, parent: Any, child: Any):
        """Extends a path with another path."""
        return extend_path(parent, child)

    def _path_name(self, path: Any):
        """Returns the base name of a path, or the hash of a thunk."""
        name = getattr(path, "name", None)
        if name is None:
            raise DecodeError(path, "path")
        return name()

    def _json(self, val: Any):
        """Returns a string containing val encoded as JSON."""
        return marshal(val)

    def _json_to_value(self, s: str):
        return revive(unmarshal(s))

    # --- Diagnostics ---

    def _log(self, val: Any, *, evaluator):
        """Logs a string message or arbitrary value to stderr, returning it."""
        evaluator.emit_stderr(_text(val))
        return val

    def _logf(self, fmt: str, *args: Any, evaluator):
        """Logs a message formatted with the given values."""
        evaluator.emit_stderr(fmt % _fmt_args(args))
        return None

    def _dump(self, val: Any, *, evaluator):
        """Encodes a value as JSON to stderr, returning it."""
        evaluator.emit_stderr(json.dumps(to_json(val), indent=2, ensure_ascii=False))
        return val

    def _now(self, seconds: int):
        """Returns the current UTC time truncated to the given seconds."""
        ts = int(time.time())
        if seconds > 0:
            ts -= ts % seconds
        return datetime.fromtimestamp(ts, timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")

    def _error(self, message: str, *fields: Any):
        """Errors with the given message and optional key-value fields."""
        scope = None
        if fields:
            scope = Scope()
            for i in range(0, len(fields) - 1, 2):
                scope.set(fields[i], fields[i + 1])
        raise StructuredError(message, scope)

    def _errorf(self, fmt: str, *args: Any):
        """Errors with a message formatted with the given values."""
        raise BassError(fmt % _fmt_args(args))

    # --- Filesystems and secrets ---

    def _mkfs(self, *kvs: Any):
        """Returns the root dir of an in-memory filesystem built from alternating paths and contents."""
        if len(kvs) % 2 != 0:
            raise ArityError("mkfs", len(kvs) + 1, len(kvs), True)
        files: Dict[str, str] = {}
        for i in range(0, len(kvs), 2):
            path, content = kvs[i], kvs[i + 1]
            if not isinstance(path, FilePath):
                raise DecodeError(path, FilePath)
            if not isinstance(content, str):
                raise DecodeError(content, str)
            files[path.path] = content
        return FSPath(MemoryFS(files), DirPath("."))

    def _mask(self, secret: str, name: Symbol | Keyword | str):
        """Wraps a string so it is never shown or marshalled."""
        return Secret(name if isinstance(name, str) else name.name, secret)

    def _cache_dir(self, id: str):
        """Returns a cache directory shared between thunk runs."""
        return CachePath(id, DirPath("."))

    # --- Thunk builders ---

    def _with_image(self, thunk: Thunk, image: Thunk | Scope):
        """Returns thunk with its base image set to an image ref or another thunk."""
        if isinstance(image, Scope):
            image = image_ref_from_scope(image)
        return thunk.with_image(image)

    def _with_dir(self, thunk: Thunk, dir: Any): return thunk.with_dir(dir)
    def _with_args(self, thunk: Thunk, args: list): return thunk.with_args(args)
    def _with_stdin(self, thunk: Thunk, vals: list): return thunk.with_stdin(vals)
    def _with_env(self, thunk: Thunk, env: Scope): return thunk.with_env(env)
    def _with_insecure(self, thunk: Thunk, insecure: bool): return thunk.with_insecure(insecure)
    def _with_mount(self, thunk: Thunk, source: Any, target: FilePath | DirPath): return thunk.with_mount(source, target)
    def _with_label(self, thunk: Thunk, key: Any, val: Any): return thunk.with_label(key, val)

    def _with_response(self, thunk: Thunk, response: Scope):
        """Returns thunk reading its response as given by {:stdout :file :exit :protocol}."""
        file = unannotate(response.get(Symbol("file")))
        if file is not None and not isinstance(file, FilePath):
            raise DecodeError(file, FilePath)
        protocol = response.get(Symbol("protocol"))
        return thunk.with_response(ThunkResponse(
            stdout=truthy(response.get(Symbol("stdout"), False)),
            file=file,
            exit=truthy(response.get(Symbol("exit"), False)),
            protocol=_protocol_name(protocol) if protocol is not None else "",
        ))

    def _wrap_cmd(self, thunk: Thunk, cmd: Any, *prepend: Any):
        """Runs cmd with prepend and then the thunk's original command and args as arguments."""
        return thunk.wrap(cmd, *prepend)

    def _thunk_cmd(self, thunk: Thunk): return thunk.cmd
    def _thunk_args(self, thunk: Thunk): return make_list(*thunk.args)

    # --- Runtime ---

    async def _run(self, thunk: Thunk, *, evaluator):
        """Runs a thunk, returning a source of the values in its response."""
        buf = io.BytesIO()
        await _pool(evaluator).run(thunk, buf)
        return Source(JSONSource(buf.getvalue().decode("utf-8"), name=str(thunk)))

    async def _read(self, target: Thunk | ThunkPath | HostPath | FSPath, protocol: Any, *, evaluator):
        """Returns a source of values read from a thunk's output or a file's content."""
        name = _protocol_name(protocol)
        pool = _pool(evaluator)
        match target:
            case Thunk():
                resp = target.effective_response()
                thunk = target.with_response(ThunkResponse(stdout=resp.stdout, file=resp.file, exit=resp.exit, protocol=name))
                buf = io.BytesIO()
                await pool.run(thunk, buf)
                data = buf.getvalue()
            case ThunkPath():
                data = decode_response(name, await read_thunk_bytes(pool, target))
            case HostPath():
                data = decode_response(name, Path(target.local()).read_bytes())
            case FSPath():
                data = decode_response(name, target.read_text().encode("utf-8"))
        if name == "tar":
            return Source(StaticSource(_tar_entries(data), name=str(target)))
        return Source(JSONSource(data.decode("utf-8"), name=str(target)))

    async def _succeeds_q(self, thunk: Thunk, *, evaluator):
        """Returns true if the thunk runs successfully, false if it fails."""
        driver = _pool(evaluator).select(thunk.platform())
        try:
            await driver.run(thunk, io.BytesIO())
        except Interrupted:
            raise
        except BassError as e:
            evaluator._dbg("FAILED", thunk.sha256()[:12], e)
            return False
        return True

    async def _load(self, thunk: Thunk, *, evaluator):
        """Loads a thunk as a module, returning its scope."""
        return await _pool(evaluator).load(thunk)

    async def _resolve(self, ref: Scope, *, evaluator):
        """Resolves an image reference to its digest."""
        resolved = await _pool(evaluator).resolve(image_ref_from_scope(ref))
        return image_ref_to_scope(resolved)

    async def _export(self, path: ThunkPath | Thunk, dest: HostPath, *, evaluator):
        """Writes the files at a thunk path into a host directory."""
        if isinstance(path, Thunk):
            path = ThunkPath(path, DirPath("."))
        buf = io.BytesIO()
        await _pool(evaluator).export(path, buf)
        buf.seek(0)
        root = Path(dest.local())
        root.mkdir(parents=True, exist_ok=True)
        with tarfile.open(fileobj=buf, mode="r|*") as tar:
            for member in tar:
                parts = PurePosixPath(member.name).parts
                if member.name.startswith("/") or ".." in parts or member.issym() or member.islnk():
                    raise BassError(f"export: refusing to write {member.name}")
                tar.extract(member, root, filter="data")
        return dest

    def _start(self, thunk: Thunk, handler: Optional[Combiner] = None, *, scope: Scope, evaluator):
        """Runs a thunk in the background, returning a combiner which waits for it.

        When a handler is given it is called with null on success or the error
        message on failure, and its result is what waiting returns.
        """
        pool = _pool(evaluator)

        async def work():
            err = None
            try:
                await pool.run(thunk, io.BytesIO())
            except BassError as e:
                err = e
            if handler is None:
                if err is not None:
                    raise err
                return True
            return await evaluator.fork().call(handler, [None if err is None else str(err)], scope)

        task = asyncio.get_running_loop().create_task(work())
        evaluator.workers.append(task)

        async def wait():
            return await task

        return Wrapped(Builtin(f"wait-{thunk.name()[:12]}", wait))

    async def _wait(self, *, evaluator):
        """Waits for every started thunk to finish, raising the first failure."""
        workers = list(evaluator.workers)
        evaluator.workers.clear()
        results = await asyncio.gather(*workers, return_exceptions=True)
        for res in results:
            if isinstance(res, BaseException):
                raise res
        return None

    # --- Streams ---

    def _emit(self, val: Any, sink: Sink):
        """Emits a value to a sink."""
        sink.emit(val)
        return None

    def _next(self, src: Source, *default: Any):
        """Returns the next value from a source, or the default once it has ended."""
        try:
            return src.next()
        except EndOfSource:
            if default:
                return default[0]
            raise

    def _list_to_source(self, values: list):
        """Creates a source producing the values of a list in order."""
        return Source(StaticSource(values, name="list"))


def _ordered(vals, cmp) -> bool:
    return all(cmp(a, b) for a, b in zip(vals, vals[1:]))


def _kind(value: Any) -> str:
    value = unannotate(value)
    match value:
        case Wrapped():
            return "applicative"
        case Operative():
            return "operative"
        case Builtin():
            return "operative" if value.operative else "applicative"
        case None:
            return "null"
        case bool():
            return "bool"
        case str():
            return "string"
    if is_int(value):
        return "number"
    return type(value).__name__.lower()


STDLIB = StdLib()


# ===================================================================
# Ground and run scopes
# ===================================================================

_ground: Optional[Scope] = None


async def ground() -> Scope:
    """Returns Ground, building it the first time it is asked for."""
    global _ground
    if _ground is None:
        scope = Scope(name="ground")
        STDLIB.install(scope)
        scope.set("*stdin*", Source(StaticSource([], name="stdin")), "standard input stream")
        scope.set("*stdout*", Sink(JSONSink(None, name="stdout")), "standard output sink")
        scope.set("*demos*", FSPath(DEMOS_FS, DirPath(".")), "the demo scripts shipped with bass")
        evaluator = Evaluator()
        for name in BOOTSTRAP:
            filename = f"std/{name}.bass"
            await evaluator.eval_text(STD_FS.read_text(f"{name}.bass"), scope, filename)
        scope.freeze()
        _ground = scope
    return _ground


def _noop_main(*args: Any):
    return None


@dataclass
class RunState:
    """What a module sees of the run it belongs to."""
    dir: Any = None
    env: Optional[Scope] = None
    args: List[Any] = field(default_factory=list)
    stdin: Optional[Source] = None
    stdout: Optional[Sink] = None


def new_module(state: RunState, parent: Scope) -> Scope:
    """Returns a fresh module scope whose parent is a run scope over parent."""
    run = Scope(parent, name="run")
    run.set("*dir*", state.dir if state.dir is not None else DirPath("."),
            "current working directory",
            "Always the directory containing the script being run, e.g. *dir*/foo loads a sibling file.")
    run.set("*env*", state.env.copy() if state.env is not None else Scope(),
            "environment variables",
            "Only the entrypoint script sees them; pass them on to thunks explicitly with (with-env).")
    run.set("*args*", make_list(*state.args), "arguments the module was run with")
    run.set("*stdin*", state.stdin if state.stdin is not None else Source(StaticSource([], name="stdin")),
            "standard input stream")
    run.set("*stdout*", state.stdout if state.stdout is not None else Sink(JSONSink(io.StringIO(), name="stdout")),
            "standard output sink")
    run.set("main", Wrapped(Builtin("main", _noop_main)),
            "script entrypoint",
            "Called with the command-line arguments after the script is evaluated.")
    return Scope(run, name="module")


async def run_main(evaluator: Evaluator, module: Scope, args: List[Any]) -> Any:
    """Calls the module's main with args, if it has one."""
    main, found = module.lookup(Symbol("main"))
    if not found:
        return None
    return await evaluator.call(main, args, module)


# ===================================================================
# Script Execution
# ===================================================================

Token = Dict[str, Any]


@dataclass
class ExecutionResult:
    """The structured result of a script execution."""
    status: Literal['success', 'error']
    value: Any = None
    error_message: Optional[str] = None
    error_token: Optional[Token] = None
    side_effects: List[Dict] = field(default_factory=list)

    def format_error(self) -> str:
        """Formats an error message with line and column if available."""
        if self.status != 'error':
            return ""
        msg = str(self.error_message or "Unknown error")
        if self.error_token and 'line' in self.error_token:
            line = self.error_token.get('line')
            col = self.error_token.get('col')
            if not msg.startswith("Error on line "):
                col_info = f", col {col}" if col is not None else ""
                return f"Error on line {line}{col_info}: {msg}"
        return msg


class ScriptRunner:
    """Reads and evaluates Bass scripts in a module scope over Ground."""

    def __init__(self, config: Optional[Config] = None, pool: Optional[Pool] = None):
        self.config = config or Config()
        self.evaluator = Evaluator(self.config.trace_capacity)
        self.pool = pool or Pool(self.config)
        self.pool.evaluator = self.evaluator
        self.evaluator.pool = self.pool
        self.source_dir: Optional[str] = None
        self.args: List[Any] = []
        self.env: Optional[Scope] = None
        self.stdin: Optional[Source] = None
        self.stdout: Optional[Sink] = None
        self.module: Optional[Scope] = None

    async def _initialize(self):
        """Builds Ground (once per process) and this runner's module scope."""
        if self.module is not None:
            return
        state = RunState(
            dir=HostPath(self.source_dir or os.getcwd(), DirPath(".")),
            env=self.env,
            args=list(self.args),
            stdin=self.stdin,
            stdout=self.stdout if self.stdout is not None else Sink(JSONSink(None, name="stdout")),
        )
        self.module = new_module(state, await ground())

    def _source_context(self, source: str, line: int, col: Optional[int], radius: int = 2) -> str:
        lines = source.splitlines()
        if not line or line < 1 or line > len(lines):
            return ""
        start = max(1, line - radius)
        end = min(len(lines), line + radius)
        width = len(str(end))
        out = []
        for i in range(start, end + 1):
            prefix = ">" if i == line else " "
            out.append(f"{prefix} {str(i).rjust(width)} | {lines[i - 1]}")
            if i == line and col is not None:
                caret = " " * max(col - 1, 0)
                out.append(f"  {' ' * width} | {caret}^")
        return "\n".join(out)

    def _format_trace(self, err: BaseException) -> str:
        if isinstance(err, TracedError):
            ranges = err.ranges()
        else:
            ranges = [f.range for f in self.evaluator.trace.frames() if f.range is not None]
        if not ranges:
            return ""
        out = ["Bass trace:"]
        elided = 0
        for rng in ranges:
            if rng.file.startswith("std/"):
                elided += 1
                continue
            if elided:
                out.append(f"  ({elided} internal frames elided)")
                elided = 0
            out.append(f"  {rng.file}:{rng.start_line}:{rng.start_col}")
        if elided:
            out.append(f"  ({elided} internal frames elided)")
        return "\n".join(out)

    def _format_runtime_error(self, e: BaseException, source: str, filename: str) -> tuple[str, Optional[Token]]:
        inner = e.innermost if isinstance(e, TracedError) else e
        match inner:
            case UnboundError():
                msg = f"UnboundError: {inner.nice_message()}"
            case BassError():
                msg = f"{type(inner).__name__}: {inner}"
            case _:
                msg = f"InternalError: {inner}"

        token = None
        rng = None
        if isinstance(e, TracedError):
            # the innermost range in the script itself
            for candidate in reversed(e.ranges()):
                if candidate.file == filename:
                    rng = candidate
                    break
        elif isinstance(inner, ReadError) and inner.range is not None:
            rng = inner.range
        if rng is not None:
            token = {'line': rng.start_line, 'col': rng.start_col}
            context = self._source_context(source, rng.start_line, rng.start_col)
            if context:
                msg = f"{msg}\n{context}"

        trace = self._format_trace(e)
        if trace:
            msg += "\n" + trace
        return msg, token

    async def handle_script(self, source_code: str, filename: str = "<script>", call_main: bool = False) -> ExecutionResult:
        """Evaluates a script, returning the value of its last form (or of main)."""
        self.evaluator.side_effects.clear()
        self.evaluator.trace.reset()
        try:
            await self._initialize()
            forms = read_all(source_code, filename)
            result = await self.evaluator.eval_all(forms, self.module)
            if call_main:
                result = await run_main(self.evaluator, self.module, self.args)
            return ExecutionResult(status='success', value=result, side_effects=self.evaluator.side_effects)
        except Exception as e:
            err_msg, err_token = self._format_runtime_error(e, source_code, filename)
            self.evaluator.side_effects.append({'topics': ['stderr'], 'message': err_msg})
            return ExecutionResult(
                status='error',
                error_message=err_msg,
                error_token=err_token,
                side_effects=self.evaluator.side_effects,
            )

    async def run_file(self, path: str, args: Optional[List[Any]] = None) -> ExecutionResult:
        """Runs a script file: its directory becomes *dir* and main is called with args."""
        p = Path(path)
        source = p.read_text(encoding="utf-8")
        self.source_dir = str(p.parent.resolve())
        self.args = list(args or [])
        self.module = None
        return await self.handle_script(source, str(p), call_main=True)
