"""
The Bass evaluator: a continuation-passing interpreter driven by a trampoline.

Every evaluation step returns either a ReadyCont (a continuation paired with
the value or error it should receive) or a Pending step wrapping an awaitable
from an async built-in. The trampoline is the only loop, so tail calls run in
constant stack space and Python recursion is bounded by form nesting.
"""
import asyncio
import inspect
import os
import sys
from typing import Any, Callable, List, Optional

from bass.bass_datatypes import (
    Symbol, Keyword, Empty, Pair, Cons, Scope, Bind, Annotated, Operative,
    Wrapped, Builtin, DirPath, FilePath, CommandPath, ExtendPath, HostPath,
    FSPath, list_items, to_list, make_list, unannotate,
)
from bass.bass_binder import bind, symbols, annotation_meta
from bass.bass_decode import decode
from bass.bass_errors import (
    ArityError, BadKeyError, DecodeError, ExtendError, TracedError, UnboundError,
)
from bass.bass_json import value_of
from bass.bass_reader import read_all
from bass.bass_thunk import Thunk, ThunkPath
from bass.bass_trace import Trace, DEFAULT_CAPACITY

YIELD_EVERY = 256


# =================================================================
# Continuations
# =================================================================

class Continuation:
    """A deferred computation waiting for a value.

    `depth` counts the annotated frames this continuation was traced through;
    resuming pops them from the trace and failing wraps the error once per
    frame. Errors raised by `fn` go to `parent`.
    """
    __slots__ = ("fn", "parent", "trace", "depth")

    def __init__(self, fn: Callable[[Any], Any], parent: Optional['Continuation'] = None):
        self.fn = fn
        self.parent = parent
        self.trace: Optional[Trace] = None
        self.depth = 0

    def then(self, fn: Callable[[Any], Any]) -> 'Continuation':
        return Continuation(fn, self)

    def traced(self, trace: Trace) -> 'Continuation':
        cp = Continuation(self.fn, self.parent)
        cp.trace = trace
        cp.depth = self.depth + 1
        return cp

    def call(self, value: Any, err: Optional[BaseException] = None) -> 'ReadyCont':
        return ReadyCont(self, value, err)

    def resume(self, value: Any) -> Any:
        if self.trace is not None and self.depth:
            self.trace.pop(self.depth)
        try:
            return self.fn(value)
        except Exception as e:
            if self.parent is None:
                raise
            return self.parent.call(None, e)

    def fail(self, err: BaseException) -> Any:
        if self.trace is not None and self.depth:
            err = self._wrap(err)
            self.trace.pop(self.depth)
        if self.parent is None:
            raise err
        return self.parent.call(None, err)

    def _wrap(self, err: BaseException) -> BaseException:
        trace = self.trace
        live = min(self.depth, trace.depth, trace.capacity)
        # innermost frame first
        for i in range(live):
            frame = trace.slots[(trace.depth - 1 - i) % trace.capacity]
            if frame is not None and frame.range is not None:
                err = TracedError(err, frame.range)
        return err

    def __repr__(self):
        return f"<continuation depth={self.depth}>"


class ReadyCont:
    """A continuation with its value (or error) filled in."""
    __slots__ = ("cont", "result", "err")

    def __init__(self, cont: Continuation, result: Any, err: Optional[BaseException] = None):
        self.cont = cont
        self.result = result
        self.err = err

    def go(self) -> Any:
        if self.err is not None:
            return self.cont.fail(self.err)
        return self.cont.resume(self.result)

    def __repr__(self):
        if self.err is not None:
            return "<error>"
        return f"<continue: {self.result!r}>"


class Pending:
    """An awaitable whose result resumes cont."""
    __slots__ = ("awaitable", "cont")

    def __init__(self, awaitable: Any, cont: Continuation):
        self.awaitable = awaitable
        self.cont = cont


def _identity(value):
    return value


def _native(result: Any) -> Any:
    # most builtins already return Bass values
    if isinstance(result, (list, tuple, dict, float)):
        return value_of(result)
    return result


Identity = Continuation(_identity)


async def trampoline(step: Any) -> Any:
    """Runs steps until a terminal value comes out of the identity continuation."""
    steps = 0
    while True:
        if isinstance(step, ReadyCont):
            step = step.go()
        elif isinstance(step, Pending):
            try:
                result = await step.awaitable
            except Exception as e:
                step = step.cont.call(None, e)
            else:
                step = step.cont.call(_native(result))
        else:
            return step
        steps += 1
        if steps % YIELD_EVERY == 0:
            await asyncio.sleep(0)


# =================================================================
# Built-in signatures
# =================================================================

class _Signature:
    """Positional parameters of a built-in and the keywords it wants injected."""
    def __init__(self, fn: Callable):
        sig = inspect.signature(fn, eval_str=True)
        self.params = []
        self.variadic = None
        self.wants = set()
        for param in sig.parameters.values():
            match param.kind:
                case inspect.Parameter.POSITIONAL_ONLY | inspect.Parameter.POSITIONAL_OR_KEYWORD:
                    self.params.append(param)
                case inspect.Parameter.VAR_POSITIONAL:
                    self.variadic = param
                case inspect.Parameter.KEYWORD_ONLY:
                    self.wants.add(param.name)
        self.required = sum(1 for p in self.params if p.default is inspect.Parameter.empty)
        self.is_async = inspect.iscoroutinefunction(fn)

    def coerce(self, name: str, args: List[Any]) -> List[Any]:
        have = len(args)
        if have < self.required or (self.variadic is None and have > len(self.params)):
            raise ArityError(name, self.required, have, self.variadic is not None)
        out = []
        for i, arg in enumerate(args):
            if i < len(self.params):
                target = self.params[i].annotation
            else:
                target = self.variadic.annotation
            out.append(decode(arg, target))
        return out


_signatures: dict = {}


def _signature(fn: Callable) -> _Signature:
    key = getattr(fn, "__func__", fn)
    sig = _signatures.get(key)
    if sig is None:
        sig = _Signature(fn)
        _signatures[key] = sig
    return sig


# =================================================================
# The evaluator
# =================================================================

class Evaluator:
    """The Bass execution engine."""

    def __init__(self, trace_capacity: int = DEFAULT_CAPACITY):
        self.trace = Trace(trace_capacity)
        self.debug = bool(os.environ.get("BASS_DEBUG"))
        self.side_effects: List[Any] = []
        # runtime pool used by run/load/export; installed by the runtime
        self.pool = None
        # background tasks started with (start)
        self.workers: List[asyncio.Task] = []

    def fork(self) -> 'Evaluator':
        """An evaluator for a concurrent worker: shared effects and pool, fresh trace."""
        child = Evaluator(self.trace.capacity)
        child.side_effects = self.side_effects
        child.pool = self.pool
        child.debug = self.debug
        child.workers = self.workers
        return child

    def _dbg(self, *parts):
        if self.debug:
            try:
                print("[DBG]", *parts, file=sys.stderr)
            except Exception:
                pass

    def emit_stderr(self, message: str):
        """Writes a user-facing message to stderr and records it as a side effect."""
        self.side_effects.append({'topics': ['stderr'], 'message': message})
        print(message, file=sys.stderr)

    # --- public entry points ---

    async def eval(self, form: Any, scope: Scope) -> Any:
        """Evaluates one form to completion."""
        return await trampoline(self.eval_cps(form, scope, Identity))

    async def eval_all(self, forms: List[Any], scope: Scope) -> Any:
        result = None
        for form in forms:
            result = await self.eval(form, scope)
        return result

    async def eval_text(self, text: str, scope: Scope, filename: str = "<source>") -> Any:
        """Reads and evaluates every form of a source text."""
        return await self.eval_all(read_all(text, filename), scope)

    async def call(self, combiner: Any, args: List[Any], scope: Scope) -> Any:
        """Applies a combiner to already-evaluated arguments."""
        return await trampoline(self.apply_cps(combiner, make_list(*args), scope, Identity))

    # --- CPS evaluation ---

    def eval_cps(self, form: Any, scope: Scope, cont: Continuation) -> Any:
        try:
            match form:
                case Annotated():
                    return self._eval_annotated(form, scope, cont)
                case Symbol():
                    value, found = scope.lookup(form)
                    if not found:
                        raise UnboundError(form, scope)
                    return cont.call(value)
                case Pair():
                    return self.eval_cps(form.a, scope, cont.then(
                        lambda head: self.call_cps(head, form.d, scope, cont)))
                case Cons():
                    return self._eval_cons(form, scope, cont)
                case Bind():
                    return self._eval_bind(form.items, 0, Scope(), scope, cont)
                case ExtendPath():
                    return self.eval_cps(form.parent, scope, cont.then(
                        lambda parent: cont.call(extend_path(parent, form.child))))
        except Exception as e:
            return cont.call(None, e)
        return cont.call(form)

    def _eval_cons(self, form: Cons, scope: Scope, cont: Continuation) -> Any:
        def with_head(head):
            return self.eval_cps(form.d, scope, cont.then(lambda tail: cont.call(Pair(head, tail))))
        return self.eval_cps(form.a, scope, cont.then(with_head))

    def _eval_bind(self, items: List[Any], i: int, out: Scope, scope: Scope, cont: Continuation) -> Any:
        if i >= len(items):
            return cont.call(out)
        key = unannotate(items[i])
        if isinstance(key, Keyword):
            if i + 1 >= len(items):
                return cont.call(None, BadKeyError(key))

            def with_value(value):
                out.set(key.symbol(), value)
                return self._eval_bind(items, i + 2, out, scope, cont)
            return self.eval_cps(items[i + 1], scope, cont.then(with_value))

        def with_parent(parent):
            parent = unannotate(parent)
            if not isinstance(parent, Scope):
                raise BadKeyError(parent)
            out.add_parent(parent)
            return self._eval_bind(items, i + 1, out, scope, cont)
        return self.eval_cps(items[i], scope, cont.then(with_parent))

    def _eval_annotated(self, form: Annotated, scope: Scope, cont: Continuation) -> Any:
        next_cont = cont
        if form.comment or form.meta is not None:
            next_cont = cont.then(lambda res: self._annotate_result(form, res, scope, cont))
        self.trace.record(form, form.range)
        return self.eval_cps(form.value, scope, next_cont.traced(self.trace))

    def _annotate_result(self, form: Annotated, res: Any, scope: Scope, cont: Continuation) -> Any:
        if form.comment:
            scope.commentary.append(form.comment)

        def finish(meta):
            bound = [sym for sym in symbols(res) if sym in scope.bindings]
            if bound:
                doc = annotation_meta(Annotated(None, form.range, form.comment))
                for sym in bound:
                    if doc is not None:
                        scope.set_meta(sym, doc)
                    if meta is not None:
                        scope.set_meta(sym, meta)
            return cont.call(res)

        if isinstance(form.meta, Bind):
            return self._eval_bind(form.meta.items, 0, Scope(), scope, cont.then(finish))
        return finish(form.meta if isinstance(form.meta, Scope) else None)

    def eval_body(self, forms: List[Any], scope: Scope, cont: Continuation) -> Any:
        """Evaluates forms in order; the last one is evaluated in tail position."""
        if not forms:
            return cont.call(None)
        if len(forms) == 1:
            return self.eval_cps(forms[0], scope, cont)
        return self.eval_cps(forms[0], scope, cont.then(
            lambda _: self.eval_body(forms[1:], scope, cont)))

    def eval_args(self, args: Any, scope: Scope, cont: Continuation) -> Any:
        """Evaluates each argument; a dotted tail is evaluated and spliced."""
        items, tail = list_items(args)
        as_cons = tail
        for item in reversed(items):
            as_cons = Cons(item, as_cons)
        return self.eval_cps(as_cons, scope, cont)

    # --- combiners ---

    def call_cps(self, combiner: Any, args: Any, scope: Scope, cont: Continuation) -> Any:
        comb = unannotate(combiner)
        self._dbg("CALL", type(comb).__name__)
        match comb:
            case Operative():
                return self._call_operative(comb, args, scope, cont)
            case Wrapped():
                return self.eval_args(args, scope, cont.then(
                    lambda evaled: self.call_cps(comb.underlying, evaled, scope, cont)))
            case Builtin():
                return self._call_builtin(comb, args, scope, cont)
            case Keyword():
                return self.eval_args(args, scope, cont.then(
                    lambda evaled: cont.call(keyword_get(comb, to_list(evaled)))))
            case FilePath() | CommandPath():
                return self.eval_args(args, scope, cont.then(
                    lambda evaled: cont.call(Thunk(comb, args=to_list(evaled)))))
            case HostPath() | FSPath() | ThunkPath() if not comb.is_dir():
                return self.eval_args(args, scope, cont.then(
                    lambda evaled: cont.call(Thunk(comb, args=to_list(evaled)))))
        return cont.call(None, DecodeError(comb, "combiner"))

    def apply_cps(self, combiner: Any, args: Any, scope: Scope, cont: Continuation) -> Any:
        """Calls a combiner with arguments that are already evaluated."""
        comb = unannotate(combiner)
        if isinstance(comb, Wrapped):
            return self.call_cps(comb.underlying, args, scope, cont)
        if isinstance(comb, (FilePath, CommandPath, HostPath, FSPath, ThunkPath)):
            return cont.call(Thunk(comb, args=to_list(args)))
        if isinstance(comb, Keyword):
            return cont.call(keyword_get(comb, to_list(args)))
        return self.call_cps(comb, args, scope, cont)

    def _call_operative(self, op: Operative, args: Any, caller: Scope, cont: Continuation) -> Any:
        try:
            local = Scope(op.static_scope)
            bind(local, op.formals, args)
            bind(local, op.eformal, caller)
        except Exception as e:
            return cont.call(None, e)
        return self.eval_body(op.body, local, cont)

    def _call_builtin(self, builtin: Builtin, args: Any, scope: Scope, cont: Continuation) -> Any:
        try:
            sig = _signature(builtin.fn)
            argv = sig.coerce(builtin.name, to_list(args))
            kwargs = {}
            if "scope" in sig.wants:
                kwargs["scope"] = scope
            if "evaluator" in sig.wants:
                kwargs["evaluator"] = self
            if "cont" in sig.wants:
                kwargs["cont"] = cont
                return builtin.fn(*argv, **kwargs)
            result = builtin.fn(*argv, **kwargs)
        except Exception as e:
            return cont.call(None, e)
        if inspect.isawaitable(result):
            return Pending(result, cont)
        return cont.call(_native(result))


def keyword_get(kw: Keyword, args: List[Any]) -> Any:
    """(:key scope default?)"""
    if not args or len(args) > 2:
        raise ArityError(str(kw), 1, len(args), False)
    target = unannotate(args[0])
    if not isinstance(target, Scope):
        raise DecodeError(target, Scope)
    value, found = target.lookup(kw.symbol())
    if found:
        return value
    return unannotate(args[1]) if len(args) == 2 else None


def extend_path(parent: Any, child: Any) -> Any:
    parent = unannotate(parent)
    child = unannotate(child)
    extend = getattr(parent, "extend", None)
    if extend is None:
        raise ExtendError(parent, child)
    return extend(child)
