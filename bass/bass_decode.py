"""
Structural coercion of Bass values into the shapes callers ask for.

`decode` checks a value against a Python type (or a union of them) and is
what turns evaluated arguments into a built-in's native signature. The
`*_from_scope` helpers revive tagged JSON objects back into paths, secrets,
image refs and thunks.
"""
import inspect
import types
import typing
from typing import Any

from bass.bass_datatypes import (
    Scope, Symbol, DirPath, FilePath, CommandPath, HostPath, CachePath, FSPath,
    Secret, Operative, Wrapped, Builtin, Pair, Cons, FS_REGISTRY,
    is_int, unannotate, to_list, make_list, list_items, Empty,
)
from bass.bass_errors import DecodeError
from bass.bass_thunk import (
    Thunk, ThunkPath, ThunkImageRef, ThunkMount, ThunkResponse, Platform,
)

COMBINER_TYPES = (Operative, Wrapped, Builtin)


class Combiner:
    """Marker type: any operative, applicative or builtin."""


class Bindable:
    """Marker type: any value accepted as a binding pattern."""


class Form:
    """Marker type: an unevaluated form, passed through with its annotations."""


def _union_args(target):
    origin = typing.get_origin(target)
    if origin is typing.Union or isinstance(target, types.UnionType):
        return typing.get_args(target)
    return None


def decode(value: Any, target: Any) -> Any:
    """Returns value coerced into target, or raises DecodeError."""
    if target is Form or target is Bindable:
        return value
    v = unannotate(value)
    if target is Any or target is inspect.Parameter.empty or target is object:
        return v
    options = _union_args(target)
    if options is not None:
        for option in options:
            if option is type(None):
                if v is None:
                    return None
                continue
            try:
                return decode(v, option)
            except DecodeError:
                continue
        raise DecodeError(v, target)
    if target is bool:
        if isinstance(v, bool):
            return v
        raise DecodeError(v, target)
    if target is int:
        if is_int(v):
            return v
        raise DecodeError(v, target)
    if target is str:
        if isinstance(v, str):
            return v
        raise DecodeError(v, target)
    if target is list:
        if v is Empty or isinstance(v, (Pair, Cons)):
            return to_list(v)
        raise DecodeError(v, target)
    if target is Combiner:
        if isinstance(v, COMBINER_TYPES):
            return v
        raise DecodeError(v, "combiner")
    if isinstance(target, type) and isinstance(v, target):
        return v
    if isinstance(v, Scope) and target in _REVIVERS:
        revived = revive(v)
        if isinstance(revived, target):
            return revived
    raise DecodeError(v, target)


def truthy(value: Any) -> bool:
    """Only false and null are falsy."""
    v = unannotate(value)
    return not (v is None or v is False)


# =================================================================
# Tagged JSON objects
# =================================================================

def _keys(scope: Scope) -> set:
    return {sym.name for sym in scope.bindings}


def _field(scope: Scope, name: str, default: Any = None) -> Any:
    return unannotate(scope.bindings.get(Symbol(name), default))


def path_from_scope(scope: Scope) -> Any:
    """Decodes one of the tagged path objects, or raises DecodeError."""
    scope = unannotate(scope)
    if not isinstance(scope, Scope):
        raise DecodeError(scope, "path")
    keys = _keys(scope)
    if keys & {"host", "cache", "fs"} and not isinstance(_field(scope, next(iter(keys))), Scope):
        raise DecodeError(scope, "path")
    if keys == {"dir"} and isinstance(_field(scope, "dir"), str):
        return DirPath(_field(scope, "dir"))
    if keys == {"file"} and isinstance(_field(scope, "file"), str):
        return FilePath(_field(scope, "file"))
    if keys == {"command"} and isinstance(_field(scope, "command"), str):
        return CommandPath(_field(scope, "command"))
    if keys == {"host"}:
        inner = _field(scope, "host")
        return HostPath(decode(_field(inner, "context"), str), path_from_scope(_field(inner, "path")))
    if keys == {"cache"}:
        inner = _field(scope, "cache")
        return CachePath(decode(_field(inner, "id"), str), path_from_scope(_field(inner, "path")))
    if keys == {"fs"}:
        inner = _field(scope, "fs")
        fs_id = decode(_field(inner, "id"), str)
        if fs_id not in FS_REGISTRY:
            raise DecodeError(scope, f"filesystem {fs_id}")
        return FSPath(FS_REGISTRY[fs_id], path_from_scope(_field(inner, "path")))
    if keys == {"thunk", "path"}:
        return ThunkPath(thunk_from_scope(_field(scope, "thunk")), path_from_scope(_field(scope, "path")))
    raise DecodeError(scope, "path")


def image_from_scope(scope: Scope) -> Any:
    if Symbol("cmd") in scope.bindings:
        return thunk_from_scope(scope)
    repo = _field(scope, "repository")
    if not isinstance(repo, str):
        raise DecodeError(scope, "image")
    plat = _field(scope, "platform")
    platform = Platform("linux")
    if isinstance(plat, Scope):
        platform = Platform(decode(_field(plat, "os", "linux"), str), _field(plat, "arch", "") or "")
    return ThunkImageRef(repo, platform, tag=_field(scope, "tag"), digest=_field(scope, "digest"))


def response_from_scope(scope: Scope) -> ThunkResponse:
    file = _field(scope, "file")
    if isinstance(file, Scope):
        file = path_from_scope(file)
    return ThunkResponse(
        stdout=bool(_field(scope, "stdout", False)),
        file=file,
        exit=bool(_field(scope, "exit", False)),
        protocol=_field(scope, "protocol", "") or "",
    )


def _revive_scope_values(scope: Any) -> Any:
    if not isinstance(scope, Scope):
        return scope
    out = Scope()
    for sym, val in scope.each():
        out.set(sym, revive(val))
    return out


def thunk_from_scope(scope: Scope) -> Thunk:
    """Decodes the JSON form of a thunk, as produced by Thunk.to_json."""
    if not isinstance(scope, Scope) or Symbol("cmd") not in scope.bindings:
        raise DecodeError(scope, Thunk)
    image = _field(scope, "image")
    mounts = []
    for mount in to_list(_field(scope, "mounts", Empty)):
        mount = unannotate(mount)
        source = unannotate(mount.bindings.get(Symbol("source")))
        mounts.append(ThunkMount(revive(source), path_from_scope(_field(mount, "target"))))
    response = _field(scope, "response")
    return Thunk(
        cmd=path_from_scope(_field(scope, "cmd")),
        image=image_from_scope(image) if isinstance(image, Scope) else None,
        insecure=bool(_field(scope, "insecure", False)),
        args=[revive(a) for a in to_list(_field(scope, "args", Empty))],
        stdin=[revive(v) for v in to_list(_field(scope, "stdin", Empty))],
        env=_revive_scope_values(_field(scope, "env")),
        dir=path_from_scope(_field(scope, "dir")) if isinstance(_field(scope, "dir"), Scope) else None,
        mounts=mounts,
        response=response_from_scope(response) if isinstance(response, Scope) else None,
        labels=_field(scope, "labels"),
    )


def revive(value: Any) -> Any:
    """Recursively turns tagged objects back into the values they encode."""
    v = unannotate(value)
    if isinstance(v, Scope):
        keys = _keys(v)
        if keys == {"secret"} and isinstance(_field(v, "secret"), str):
            return Secret(_field(v, "secret"), "")
        if Symbol("cmd") in v.bindings:
            try:
                return thunk_from_scope(v)
            except DecodeError:
                return v
        try:
            return path_from_scope(v)
        except DecodeError:
            return _revive_scope_values(v)
    if isinstance(v, (Pair, Cons)):
        items, tail = list_items(v)
        return make_list(*[revive(item) for item in items], tail=tail)
    return v


_REVIVERS = {
    DirPath, FilePath, CommandPath, HostPath, CachePath, FSPath, ThunkPath,
    Thunk, Secret,
}
