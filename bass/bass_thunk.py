"""
The thunk data model: a reproducible description of one process to run.

A Thunk is identified by the hash of its canonical JSON encoding. Keys are
emitted in a fixed order and absent fields are omitted, so two thunks with
the same hash are interchangeable.
"""
from __future__ import annotations

import copy
import hashlib
from typing import Any, List, Optional

from bass.bass_datatypes import (
    Scope, DirPath, FilePath, CommandPath, HostPath, FSPath, CachePath, Secret,
    Symbol, unannotate, equal,
)
from bass.bass_errors import DecodeError


class Platform:
    """An OS and optional architecture; an empty arch matches any."""
    def __init__(self, os: str, arch: str = ""):
        self.os = os
        self.arch = arch or ""

    def can_select(self, other: Optional['Platform']) -> bool:
        if other is None:
            return False
        if self.os != other.os:
            return False
        return self.arch == "" or self.arch == other.arch

    def to_json(self) -> dict:
        out = {"os": self.os}
        if self.arch:
            out["arch"] = self.arch
        return out

    def __eq__(self, other):
        if not isinstance(other, Platform):
            return NotImplemented
        return self.os == other.os and self.arch == other.arch

    def __hash__(self):
        return hash((self.os, self.arch))

    def __repr__(self):
        return f"Platform({self.os!r}, {self.arch!r})"

    def __str__(self):
        return f"{self.os}/{self.arch}" if self.arch else self.os


LINUX = Platform("linux")


class ThunkImageRef:
    """A reference to an image in a registry."""
    def __init__(self, repository: str, platform: Platform = LINUX, tag: Optional[str] = None, digest: Optional[str] = None):
        self.repository = repository
        self.platform = platform
        self.tag = tag
        self.digest = digest

    def ref(self) -> str:
        if self.digest:
            return f"{self.repository}@{self.digest}"
        if self.tag:
            return f"{self.repository}:{self.tag}"
        return f"{self.repository}:latest"

    def to_json(self) -> dict:
        out = {"platform": self.platform.to_json(), "repository": self.repository}
        if self.tag:
            out["tag"] = self.tag
        if self.digest:
            out["digest"] = self.digest
        return out

    def __eq__(self, other):
        other = unannotate(other)
        if not isinstance(other, ThunkImageRef):
            return NotImplemented
        return self.to_json() == other.to_json()

    def __hash__(self):
        return hash(self.ref())

    def __repr__(self):
        return f"ThunkImageRef({self.ref()!r}, {self.platform!r})"


class ThunkMount:
    """An explicit mount of a source path into the thunk's container."""
    def __init__(self, source: Any, target: Any):
        self.source = source
        self.target = target

    def to_json(self) -> dict:
        from bass.bass_json import to_json
        return {"source": to_json(self.source), "target": to_json(self.target)}

    def __eq__(self, other):
        if not isinstance(other, ThunkMount):
            return NotImplemented
        return equal(self.source, other.source) and equal(self.target, other.target)

    def __hash__(self):
        return hash(str(self.target))

    def __repr__(self):
        return f"ThunkMount({self.source!r}, {self.target!r})"


class ThunkResponse:
    """Where a thunk's response comes from and how it is decoded."""
    def __init__(self, stdout: bool = False, file: Optional[FilePath] = None, exit: bool = False, protocol: str = ""):
        self.stdout = stdout
        self.file = file
        self.exit = exit
        self.protocol = protocol

    def source(self) -> str:
        """The shim's response source string."""
        if self.exit:
            return "exit"
        if self.file is not None:
            return "file:" + self.file.path
        return "stdout"

    def to_json(self) -> dict:
        out: dict = {}
        if self.stdout:
            out["stdout"] = True
        if self.file is not None:
            out["file"] = {"file": self.file.path}
        if self.exit:
            out["exit"] = True
        if self.protocol:
            out["protocol"] = self.protocol
        return out

    def __eq__(self, other):
        if not isinstance(other, ThunkResponse):
            return NotImplemented
        return self.to_json() == other.to_json()

    def __hash__(self):
        return hash(tuple(sorted(self.to_json())))

    def __repr__(self):
        return f"ThunkResponse({self.to_json()!r})"


DEFAULT_RESPONSE = ThunkResponse(stdout=True, protocol="json")

CMD_TYPES = (CommandPath, FilePath, HostPath, FSPath)
MOUNT_SOURCE_TYPES = (HostPath, CachePath, Secret, FSPath)


class Thunk:
    """A command to run, plus everything needed to run it reproducibly."""
    def __init__(self, cmd: Any, image: Any = None, insecure: bool = False,
                 args: Optional[List[Any]] = None, stdin: Optional[List[Any]] = None,
                 env: Optional[Scope] = None, dir: Any = None,
                 mounts: Optional[List[ThunkMount]] = None,
                 response: Optional[ThunkResponse] = None,
                 labels: Optional[Scope] = None):
        cmd = unannotate(cmd)
        if not isinstance(cmd, CMD_TYPES + (ThunkPath,)):
            raise DecodeError(cmd, "thunk command path")
        self.image = image
        self.insecure = insecure
        self.cmd = cmd
        self.args = list(args or [])
        self.stdin = list(stdin or [])
        self.env = env
        self.dir = dir
        self.mounts = list(mounts or [])
        self.response = response
        self.labels = labels

    # --- identity ---

    def to_json(self) -> dict:
        from bass.bass_json import to_json
        out: dict = {}
        if self.image is not None:
            out["image"] = self.image.to_json()
        if self.insecure:
            out["insecure"] = True
        out["cmd"] = to_json(self.cmd)
        if self.args:
            out["args"] = [to_json(a) for a in self.args]
        if self.stdin:
            out["stdin"] = [to_json(v) for v in self.stdin]
        if self.env is not None and self.env.bindings:
            out["env"] = to_json(self.env)
        if self.dir is not None:
            out["dir"] = to_json(self.dir)
        if self.mounts:
            out["mounts"] = [m.to_json() for m in self.mounts]
        if self.response is not None and self.response.to_json():
            out["response"] = self.response.to_json()
        if self.labels is not None and self.labels.bindings:
            out["labels"] = to_json(self.labels)
        return out

    def canonical(self) -> bytes:
        from bass.bass_json import dumps
        return dumps(self.to_json()).encode("utf-8")

    def sha256(self) -> str:
        return hashlib.sha256(self.canonical()).hexdigest()

    def sha1(self) -> str:
        return hashlib.sha1(self.canonical()).hexdigest()

    def name(self) -> str:
        return self.sha256()

    def platform(self) -> Optional[Platform]:
        match self.image:
            case None:
                return None
            case ThunkImageRef():
                return self.image.platform
            case Thunk():
                return self.image.platform()
        return None

    def effective_response(self) -> ThunkResponse:
        resp = self.response or DEFAULT_RESPONSE
        if not resp.protocol:
            resp = ThunkResponse(stdout=resp.stdout, file=resp.file, exit=resp.exit, protocol="json")
        return resp

    # --- builders; each returns a modified copy ---

    def _replace(self, **changes) -> 'Thunk':
        cp = copy.copy(self)
        for key, value in changes.items():
            setattr(cp, key, value)
        return cp

    def with_image(self, image: Any) -> 'Thunk':
        # rebase onto the new image at the bottom of the image chain
        if isinstance(self.image, Thunk):
            return self._replace(image=self.image.with_image(image))
        return self._replace(image=image)

    def with_args(self, args: List[Any]) -> 'Thunk':
        return self._replace(args=list(args))

    def with_stdin(self, stdin: List[Any]) -> 'Thunk':
        return self._replace(stdin=list(stdin))

    def with_env(self, env: Scope) -> 'Thunk':
        return self._replace(env=env)

    def with_dir(self, dir: Any) -> 'Thunk':
        return self._replace(dir=unannotate(dir))

    def with_insecure(self, insecure: bool) -> 'Thunk':
        return self._replace(insecure=bool(insecure))

    def with_mount(self, source: Any, target: Any) -> 'Thunk':
        return self._replace(mounts=self.mounts + [ThunkMount(unannotate(source), unannotate(target))])

    def with_label(self, key: Any, value: Any) -> 'Thunk':
        labels = Scope()
        if self.labels is not None:
            for sym, val in self.labels.each():
                labels.set(sym, val)
        labels.set(key, value)
        return self._replace(labels=labels)

    def with_response(self, response: ThunkResponse) -> 'Thunk':
        return self._replace(response=response)

    def wrap(self, cmd: Any, *prepend: Any) -> 'Thunk':
        """Runs cmd with the old command and args appended after prepend."""
        return self._replace(cmd=unannotate(cmd), args=[self.cmd, *prepend, *self.args])

    def extend(self, child: Any) -> 'ThunkPath':
        return ThunkPath(self, DirPath(".").extend(child))

    def __eq__(self, other):
        other = unannotate(other)
        if not isinstance(other, Thunk):
            return NotImplemented
        return self.canonical() == other.canonical()

    def __hash__(self):
        return hash(self.sha256())

    def __repr__(self):
        return f"<Thunk {self.sha256()[:12]} cmd={self.cmd!r}>"

    def __str__(self):
        from bass.bass_printer import Printer
        return Printer().pformat(self)


class ThunkPath:
    """A file or directory path inside a thunk's output."""
    def __init__(self, thunk: Thunk, path: Any):
        self.thunk = thunk
        self.path = path

    def extend(self, child: Any) -> 'ThunkPath':
        return ThunkPath(self.thunk, self.path.extend(child))

    def name(self) -> str:
        return self.path.name()

    def is_dir(self) -> bool:
        return self.path.is_dir()

    def to_json(self) -> dict:
        from bass.bass_json import to_json
        return {"thunk": self.thunk.to_json(), "path": to_json(self.path)}

    def __eq__(self, other):
        other = unannotate(other)
        if not isinstance(other, ThunkPath):
            return NotImplemented
        return self.thunk == other.thunk and self.path == other.path

    def __hash__(self):
        return hash((self.thunk.sha256(), str(self.path)))

    def __repr__(self):
        return f"ThunkPath({self.thunk!r}, {self.path!r})"

    def __str__(self):
        from bass.bass_printer import Printer
        return Printer().pformat(self)


def image_ref_from_scope(scope: Scope) -> ThunkImageRef:
    """Builds an image ref from {:repository "..." :tag "..." :platform {:os ...}}."""
    repo = scope.get(Symbol("repository"))
    if not isinstance(unannotate(repo), str):
        raise DecodeError(scope, "image ref")
    platform = LINUX
    plat = unannotate(scope.get(Symbol("platform")))
    if isinstance(plat, Scope):
        platform = Platform(unannotate(plat.get(Symbol("os"), "linux")), unannotate(plat.get(Symbol("arch"), "")) or "")
    return ThunkImageRef(
        repository=unannotate(repo),
        platform=platform,
        tag=unannotate(scope.get(Symbol("tag"))),
        digest=unannotate(scope.get(Symbol("digest"))),
    )


def image_ref_to_scope(ref: ThunkImageRef) -> Scope:
    platform = Scope()
    platform.set("os", ref.platform.os)
    if ref.platform.arch:
        platform.set("arch", ref.platform.arch)
    out = Scope()
    out.set("platform", platform)
    out.set("repository", ref.repository)
    if ref.tag:
        out.set("tag", ref.tag)
    if ref.digest:
        out.set("digest", ref.digest)
    return out
