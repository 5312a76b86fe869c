"""
A printer rendering Bass values as Bass source text.
"""
import json

from bass.bass_datatypes import (
    Symbol, Keyword, IgnoreType, EmptyType, Pair, Cons, Annotated, Scope, Bind,
    Operative, Wrapped, Builtin, DirPath, FilePath, CommandPath, ExtendPath,
    HostPath, CachePath, Secret, FSPath, Source, Sink, Ignore,
    unannotate,
)


class Printer:
    """Formats Bass values into readable, mostly re-readable source strings."""

    def __init__(self):
        self._handlers = self._create_handlers()

    def pformat(self, obj) -> str:
        """Public entry point to format an object."""
        obj = unannotate(obj)
        handler = self._handlers.get(type(obj))
        if handler is None:
            handler = self._fallback(obj)
        return handler(obj)

    def _create_handlers(self):
        from bass.bass_thunk import Thunk, ThunkPath, ThunkImageRef, ThunkMount, Platform
        return {
            type(None): lambda o: "null",
            bool: lambda o: "true" if o else "false",
            int: str,
            str: self._pformat_str,
            Symbol: lambda o: o.name,
            Keyword: lambda o: f":{o.name}",
            IgnoreType: lambda o: "_",
            EmptyType: lambda o: "()",
            Pair: lambda o: self._pformat_list(o, "(", ")"),
            Cons: lambda o: self._pformat_list(o, "[", "]"),
            Scope: self._pformat_scope,
            Bind: lambda o: "{" + " ".join(self.pformat(v) for v in o.items) + "}",
            Operative: self._pformat_operative,
            Wrapped: self._pformat_wrapped,
            Builtin: lambda o: f"<builtin: {o.name}>",
            DirPath: str,
            FilePath: str,
            CommandPath: str,
            ExtendPath: self._pformat_extend,
            HostPath: lambda o: f"<host: {o.context}>/{o.path}",
            CachePath: lambda o: f"<cache: {o.id}>/{o.path}",
            FSPath: lambda o: f"<fs: {o.fs.id}>/{o.path}",
            Secret: repr,
            Source: repr,
            Sink: repr,
            Thunk: self._pformat_thunk,
            ThunkPath: lambda o: f"{self._pformat_thunk(o.thunk)}/{o.path}",
            ThunkImageRef: lambda o: f"<image: {o.ref()}>",
            ThunkMount: lambda o: f"<mount: {self.pformat(o.source)} -> {o.target}>",
            Platform: str,
        }

    def _fallback(self, obj):
        return lambda o: f"<{type(o).__name__.lower()}>"

    def _pformat_str(self, s: str) -> str:
        return json.dumps(s, ensure_ascii=False)

    def _pformat_list(self, obj, open_: str, close: str) -> str:
        parts = []
        cur = obj
        while True:
            cur = unannotate(cur)
            if isinstance(cur, (Pair, Cons)):
                parts.append(self.pformat(cur.a))
                cur = cur.d
                continue
            if not isinstance(cur, EmptyType):
                parts.append("&")
                parts.append(self.pformat(cur))
            break
        return open_ + " ".join(parts) + close

    def _pformat_scope(self, scope: Scope) -> str:
        if scope.name:
            return f"<scope: {scope.name}>"
        if scope._printing:
            # recursive or otherwise noisy
            return "{...}"
        scope._printing = True
        try:
            parts = []
            for sym, value in scope.walk():
                parts.append(f":{sym.name}")
                parts.append(self.pformat(value))
            return "{" + " ".join(parts) + "}"
        finally:
            scope._printing = False

    def _pformat_operative(self, op: Operative) -> str:
        parts = ["op", self.pformat(op.formals), self.pformat(op.eformal)]
        parts.extend(self.pformat(form) for form in op.body)
        return "(" + " ".join(parts) + ")"

    def _pformat_wrapped(self, app: Wrapped) -> str:
        inner = unannotate(app.underlying)
        if isinstance(inner, Operative) and unannotate(inner.eformal) is Ignore:
            parts = ["fn", self.pformat(inner.formals)]
            parts.extend(self.pformat(form) for form in inner.body)
            return "(" + " ".join(parts) + ")"
        if isinstance(inner, Builtin):
            return f"<builtin: {inner.name}>"
        return f"(wrap {self.pformat(inner)})"

    def _pformat_extend(self, ext: ExtendPath) -> str:
        parent = self.pformat(ext.parent)
        child = self.pformat(ext.child)
        if child.startswith("./"):
            child = child[2:]
        if parent.endswith("/"):
            return parent + child
        return f"{parent}/{child}"

    def _pformat_thunk(self, thunk) -> str:
        cmd = self.pformat(thunk.cmd)
        args = " ".join(self.pformat(a) for a in thunk.args)
        call = f"({cmd} {args})" if args else f"({cmd})"
        return f"<thunk {thunk.name()[:12]}: {call}>"


def pformat(obj) -> str:
    return Printer().pformat(obj)
