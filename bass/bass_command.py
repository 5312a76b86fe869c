"""
Lowers a Thunk into a concrete Command for a container runtime.

Logical path values are resolved to the strings the process will see, and
every path that lives outside the container (thunk outputs, host paths,
caches, virtual filesystems) is recorded as a mount along the way.
"""
import posixpath
from typing import Any, Dict, List, Optional

from bass.bass_datatypes import (
    Symbol, Scope, Pair, Cons, EmptyType, DirPath, FilePath, CommandPath,
    HostPath, CachePath, FSPath, Secret, list_items, to_list, unannotate, is_int,
)
from bass.bass_errors import DecodeError
from bass.bass_json import to_json
from bass.bass_thunk import Thunk, ThunkPath


class CommandMount:
    """A source to mount into the container at target."""

    def __init__(self, source: Any, target: str):
        self.source = source
        self.target = target

    def to_json(self) -> dict:
        return {"source": to_json(self.source), "target": self.target}

    def __eq__(self, other):
        if not isinstance(other, CommandMount):
            return NotImplemented
        return self.target == other.target and self.source == other.source

    def __repr__(self):
        return f"CommandMount({self.source!r}, {self.target!r})"


class Command:
    """The direct values handed to the process running in the container."""

    def __init__(self):
        self.entrypoint: List[str] = []
        self.args: List[str] = []
        self.stdin: List[Any] = []
        self.env: List[str] = []
        self.secret_env: Dict[str, str] = {}
        self.dir: Optional[str] = None
        self.mounts: List[CommandMount] = []
        self._mounted: set = set()

    def to_json(self) -> dict:
        """The shim's input; secrets are passed separately."""
        out = {"args": self.args, "stdin": self.stdin, "env": self.env}
        if self.entrypoint:
            out["entrypoint"] = self.entrypoint
        if self.dir is not None:
            out["dir"] = self.dir
        return out

    def __eq__(self, other):
        if not isinstance(other, Command):
            return NotImplemented
        return (self.entrypoint, self.args, self.stdin, self.env, self.dir, self.mounts) == \
            (other.entrypoint, other.args, other.stdin, other.env, other.dir, other.mounts)

    def __repr__(self):
        return f"<Command args={self.args!r} dir={self.dir!r} mounts={len(self.mounts)}>"

    # --- resolution ---

    def _mount(self, source: Any, target: str):
        if target not in self._mounted:
            self._mounted.add(target)
            self.mounts.append(CommandMount(source, target))

    def _relative(self, target: str, is_dir: bool) -> str:
        # targets are relative to the run dir; walk up out of the working dir
        value = target
        if self.dir is not None and not posixpath.isabs(self.dir):
            depth = len([p for p in self.dir.split("/") if p not in ("", ".")])
            if depth:
                value = "../" * depth + target.removeprefix("./")
        if is_dir and not value.endswith("/"):
            value += "/"
        return value

    def _mounted_path(self, source: Any, prefix: str, sub: Any) -> str:
        target = _target(prefix, sub)
        self._mount(source, target)
        return self._relative(target, sub.is_dir())

    def resolve(self, value: Any) -> Any:
        """Resolves one value to a string, or to a JSON-ready structure for stdin."""
        v = unannotate(value)
        match v:
            case str():
                return v
            case FilePath():
                return v.path
            case DirPath():
                return v.slash()
            case CommandPath():
                return v.command
            case ThunkPath():
                return self._mounted_path(v, v.thunk.sha1(), v.path)
            case HostPath():
                return self._mounted_path(v, v.hash(), v.path)
            case CachePath():
                return self._mounted_path(v, v.hash(), v.path)
            case FSPath():
                return self._mounted_path(v, v.fs.id, v.path)
            case Scope() if _is_concat(v):
                return "".join(self.resolve_string(part) for part in to_list(v.get(Symbol("arg"))))
        return None

    def resolve_string(self, value: Any) -> str:
        resolved = self.resolve(value)
        if not isinstance(resolved, str):
            raise DecodeError(unannotate(value), str)
        return resolved

    def resolve_structure(self, value: Any) -> Any:
        """Like resolve, but keeps lists and scopes intact for stdin."""
        v = unannotate(value)
        resolved = self.resolve(v)
        if resolved is not None:
            return resolved
        match v:
            case Pair() | Cons():
                items, _ = list_items(v)
                return [self.resolve_structure(item) for item in items]
            case EmptyType():
                return []
            case Scope():
                return {sym.json_key(): self.resolve_structure(val) for sym, val in v.walk()}
            case Secret():
                raise DecodeError(v, "stdin value (secrets may only be used in env or mounts)")
        return to_json(v)


def _is_concat(scope: Scope) -> bool:
    return list(scope.bindings) == [Symbol("arg")]


def _target(prefix: str, sub: Any) -> str:
    path = sub.path
    if path.startswith("./"):
        path = path[2:]
    if path in ("", "."):
        return f"./{prefix}"
    return f"./{prefix}/{path.lstrip('/')}"


def resolve_command(thunk: Thunk) -> Command:
    """Resolves every logical value of the thunk, collecting its mounts."""
    cmd = Command()

    if thunk.dir is not None:
        cmd.dir = cmd.resolve_string(thunk.dir)

    cmd.args = [cmd.resolve_string(thunk.cmd)]
    for arg in thunk.args:
        cmd.args.append(_resolve_arg(cmd, arg))

    if thunk.env is not None:
        for sym, val in thunk.env.walk():
            val = unannotate(val)
            if val is None:
                continue
            if isinstance(val, Secret):
                cmd.secret_env[sym.json_key()] = val.reveal()
                continue
            cmd.env.append(f"{sym.json_key()}={_resolve_arg(cmd, val)}")

    cmd.stdin = [cmd.resolve_structure(v) for v in thunk.stdin]

    for mount in thunk.mounts:
        target = unannotate(mount.target)
        target_path = target.slash() if isinstance(target, (FilePath, DirPath)) else str(target)
        cmd.mounts.append(CommandMount(mount.source, target_path))

    return cmd


def _resolve_arg(cmd: Command, value: Any) -> str:
    v = unannotate(value)
    # numbers and booleans are passed as their literal text
    if is_int(v):
        return str(v)
    if isinstance(v, bool):
        return "true" if v else "false"
    if isinstance(v, Secret):
        raise DecodeError(v, "argument (secrets may only be used in env or mounts)")
    return cmd.resolve_string(v)
