"""
Destructuring bind of values against binding patterns.
"""
from typing import Any, Optional

from bass.bass_datatypes import (
    Symbol, Keyword, IgnoreType, EmptyType, Empty, Pair, Cons, Scope, Bind,
    Annotated, unannotate, equal, is_int,
)
from bass.bass_errors import BindMismatchError, CannotBindError, BadKeyError


def bind(scope: Scope, pattern: Any, value: Any):
    """Binds value against pattern, writing every bound symbol into scope."""
    if isinstance(pattern, Annotated):
        bind(scope, pattern.value, value)
        inner = unannotate(pattern)
        if isinstance(inner, Symbol):
            meta = annotation_meta(pattern)
            if meta is not None:
                scope.set_meta(inner, meta)
        return

    match pattern:
        case Symbol():
            scope.set(pattern, value)
        case IgnoreType():
            pass
        case EmptyType():
            if unannotate(value) is not Empty:
                raise BindMismatchError(pattern, value)
        case Pair() | Cons():
            have = unannotate(value)
            if not isinstance(have, (Pair, Cons)):
                raise BindMismatchError(pattern, value)
            bind(scope, pattern.a, have.a)
            bind(scope, pattern.d, have.d)
        case Bind():
            _bind_scope(scope, pattern, value)
        case None | bool() | str() | Keyword():
            if not equal(pattern, value):
                raise BindMismatchError(pattern, value)
        case _ if is_int(pattern):
            if not equal(pattern, value):
                raise BindMismatchError(pattern, value)
        case _:
            raise CannotBindError(pattern)


def _bind_scope(scope: Scope, pattern: Bind, value: Any):
    have = unannotate(value)
    if not isinstance(have, Scope):
        raise BindMismatchError(pattern, value)
    items = pattern.items
    i = 0
    while i < len(items):
        key = unannotate(items[i])
        if not isinstance(key, Keyword):
            raise BadKeyError(key)
        if i + 1 >= len(items):
            # {:foo} binds foo
            sub, default, has_default = Symbol(key.name), None, False
        else:
            sub, default, has_default = _pattern_with_default(items[i + 1])
        found_value, found = have.lookup(key.symbol())
        if not found:
            if not has_default:
                raise BindMismatchError(pattern, value)
            found_value = default
        bind(scope, sub, found_value)
        i += 2


def _pattern_with_default(item: Any):
    """A `(pattern default)` pair supplies a value for missing keys."""
    inner = unannotate(item)
    if isinstance(inner, Pair):
        rest = unannotate(inner.d)
        if isinstance(rest, Pair) and unannotate(rest.d) is Empty:
            return inner.a, unannotate(rest.a), True
    return item, None, False


def annotation_meta(form: Annotated) -> Optional[Scope]:
    """Builds binding metadata (doc, location and static meta) from an annotated form."""
    meta = Scope()
    if form.comment:
        meta.set("doc", form.comment)
    if form.range is not None:
        for key, val in form.range.to_meta().each():
            meta.set(key, val)
    if isinstance(form.meta, Scope):
        for key, val in form.meta.each():
            meta.set(key, val)
    elif isinstance(form.meta, Bind):
        items = form.meta.items
        for i in range(0, len(items) - 1, 2):
            key = unannotate(items[i])
            if isinstance(key, (Keyword, Symbol)):
                meta.set(key, unannotate(items[i + 1]))
    if not meta.bindings:
        return None
    return meta


def symbols(pattern: Any) -> list:
    """The symbols a pattern would bind, in order."""
    pattern = unannotate(pattern)
    match pattern:
        case Symbol():
            return [pattern]
        case Pair() | Cons():
            return symbols(pattern.a) + symbols(pattern.d)
        case Bind():
            out = []
            for item in pattern.items[1::2]:
                sub, _, _ = _pattern_with_default(item)
                out.extend(symbols(sub))
            return out
    return []
