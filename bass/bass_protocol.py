"""
Response protocols: turn the bytes a thunk writes into a JSON stream.

A protocol writer receives raw output chunks through `write` and emits JSON
values (one per line) to `out`. Text that is not part of the response goes to
`log`. Protocols that build a single response incrementally emit it on
`flush`, which must be called once the output is complete.
"""
import io
import json
import re
import tarfile
from typing import Any, BinaryIO, Dict, Optional

from bass.bass_errors import ProtocolError, UnknownProtocolError


def _encode(value) -> bytes:
    return (json.dumps(value, separators=(",", ":"), ensure_ascii=False) + "\n").encode("utf-8")


class ProtoWriter:
    """Base protocol writer."""

    def __init__(self, out: BinaryIO, log: Optional[BinaryIO] = None):
        self.out = out
        self.log = log

    def write(self, data: bytes) -> int:
        raise NotImplementedError

    def flush(self):
        pass

    def _log(self, data: bytes):
        if self.log is not None and data:
            self.log.write(data)


class JSONProtocol(ProtoWriter):
    """The output is already a JSON stream; pass it through untouched."""

    def write(self, data: bytes) -> int:
        self.out.write(data)
        return len(data)


class RawProtocol(ProtoWriter):
    """Buffers all output and emits it as one JSON string."""

    def __init__(self, out: BinaryIO, log: Optional[BinaryIO] = None):
        super().__init__(out, log)
        self.buf = bytearray()

    def write(self, data: bytes) -> int:
        self.buf.extend(data)
        return len(data)

    def flush(self):
        self.out.write(_encode(self.buf.decode("utf-8", errors="replace")))


class LinesProtocol(ProtoWriter):
    """Emits each line of output as a JSON string.

    Empty lines are empty strings and a trailing carriage return is dropped.
    A trailing unterminated line is held until the next write or flush.
    """

    def __init__(self, out: BinaryIO, log: Optional[BinaryIO] = None):
        super().__init__(out, log)
        self.buf = b""

    def write(self, data: bytes) -> int:
        written = len(data)
        data = self.buf + data
        self.buf = b""
        while data:
            ln = data.find(b"\n")
            if ln == -1:
                self.buf = data
                break
            self._row(data[:ln])
            data = data[ln + 1:]
        return written

    def _row(self, line: bytes):
        self.out.write(_encode(line.decode("utf-8", errors="replace").removesuffix("\r")))

    def flush(self):
        if self.buf:
            self._row(self.buf)
            self.buf = b""


class UnixTableProtocol(LinesProtocol):
    """Emits each line as an array of its whitespace-separated columns.

    Rows may have different numbers of columns and an empty line is an empty
    array.
    """

    def _row(self, line: bytes):
        self.out.write(_encode(line.decode("utf-8", errors="replace").split()))


class TarProtocol(ProtoWriter):
    """Buffers a tar stream and emits one object per archive entry.

    Each object carries the entry's header fields and, for regular files,
    its `content` as text.
    """

    def __init__(self, out: BinaryIO, log: Optional[BinaryIO] = None):
        super().__init__(out, log)
        self.buf = bytearray()

    def write(self, data: bytes) -> int:
        self.buf.extend(data)
        return len(data)

    def flush(self):
        if not self.buf:
            return
        try:
            with tarfile.open(fileobj=io.BytesIO(bytes(self.buf)), mode="r:*") as tar:
                for member in tar:
                    self.out.write(_encode(_tar_entry(tar, member)))
        except tarfile.TarError as e:
            raise ProtocolError(f"tar: {e}") from e


def _tar_entry(tar: tarfile.TarFile, member: tarfile.TarInfo) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "type": member.type.decode("ascii"),
        "name": member.name,
    }
    if member.linkname:
        entry["link"] = member.linkname
    entry["size"] = member.size
    entry["mode"] = member.mode
    entry["uid"] = member.uid
    entry["gid"] = member.gid
    if member.uname:
        entry["uname"] = member.uname
    if member.gname:
        entry["gname"] = member.gname
    if member.isfile():
        entry["content"] = tar.extractfile(member).read().decode("utf-8", errors="replace")
    return entry


# =================================================================
# GitHub workflow commands
# =================================================================

DISPATCH = b"::"

_CMD_RE = re.compile(r"^::([^\s]+)(\s+(.+))?::(.*)$")


class WorkflowCommand:
    """A `::name k=v,...::value` line."""

    def __init__(self, name: str, params: Dict[str, str], value: str):
        self.name = name
        self.params = params
        self.value = value

    def __str__(self):
        if self.params:
            params = ",".join(f"{k}={v}" for k, v in self.params.items())
            return f"::{self.name} {params}::{self.value}"
        return f"::{self.name}::{self.value}"


def parse_command(line: str) -> WorkflowCommand:
    """Parses one command line, without its trailing newline."""
    match = _CMD_RE.match(line)
    if match is None:
        raise ProtocolError(f"malformed command: {line!r}")
    params: Dict[str, str] = {}
    for param in (match.group(3) or "").split(","):
        if param == "":
            continue
        if "=" not in param:
            raise ProtocolError(f"malformed command kv: {param!r}")
        key, value = param.split("=", 1)
        params[key] = value
    return WorkflowCommand(match.group(1), params, match.group(4))


class GitHubActionProtocol(ProtoWriter):
    """Splits output into logs and workflow commands.

    `set-output` commands build the response object, which is emitted on
    flush. Message commands are printed to the log in colour. Plain text
    passes through to the log as soon as it arrives; only a line that starts
    with `::` is buffered until its newline.
    """

    def __init__(self, out: BinaryIO, log: Optional[BinaryIO] = None):
        super().__init__(out, log)
        self.response: Dict[str, str] = {}
        self.midline = False
        self.partial: Optional[bytes] = None

    def write(self, data: bytes) -> int:
        written = len(data)
        while data:
            if self.partial is not None:
                data = self.partial + data
                self.partial = None

            ln = data.find(b"\n")
            if ln == 0 and len(data) == 1:
                self._log(data)
                self.midline = False
                return written

            if self.midline:
                if ln == -1:
                    self._log(data)
                    return written
                self._log(data[:ln + 1])
                self.midline = False
                data = data[ln + 1:]
                continue

            if data.startswith(DISPATCH) or (len(data) < len(DISPATCH) and DISPATCH.startswith(data)):
                if ln == -1:
                    self.partial = data
                    return written
                line = data[:ln].decode("utf-8", errors="replace")
                self.handle(parse_command(line.rstrip("\r")))
                data = data[ln + 1:]
                continue

            if ln == -1:
                self.midline = True
                self._log(data)
                return written
            self._log(data[:ln + 1])
            data = data[ln + 1:]
        return written

    def handle(self, cmd: WorkflowCommand):
        match cmd.name:
            case "set-output":
                self.response[cmd.params.get("name", "")] = cmd.value
            case "error":
                self._log(f"\x1b[31merror: {cmd.value}\x1b[0m\n".encode("utf-8"))
            case "notice":
                self._log(f"\x1b[34mnotice: {cmd.value}\x1b[0m\n".encode("utf-8"))
            case "warning":
                self._log(f"\x1b[33mwarning: {cmd.value}\x1b[0m\n".encode("utf-8"))
            case _:
                self._log(f"\x1b[33munimplemented command: {cmd}\x1b[0m\n".encode("utf-8"))

    def flush(self):
        if self.partial is not None:
            # output ended without a newline after the command
            partial, self.partial = self.partial, None
            if partial.startswith(DISPATCH):
                self.handle(parse_command(partial.decode("utf-8", errors="replace")))
            else:
                self._log(partial)
        self.out.write(_encode(self.response))


PROTOCOLS = {
    "": JSONProtocol,
    "json": JSONProtocol,
    "raw": RawProtocol,
    "lines": LinesProtocol,
    "unix-table": UnixTableProtocol,
    "tar": TarProtocol,
    "github-action": GitHubActionProtocol,
}


def protocol_writer(name: str, out: BinaryIO, log: Optional[BinaryIO] = None) -> ProtoWriter:
    """Builds the writer for the named protocol."""
    cls = PROTOCOLS.get(name)
    if cls is None:
        raise UnknownProtocolError(name)
    return cls(out, log)


def decode_response(name: str, data: bytes) -> bytes:
    """Runs a complete output through a protocol, returning the JSON stream."""
    out = io.BytesIO()
    log = io.BytesIO()
    writer = protocol_writer(name, out, log)
    writer.write(data)
    writer.flush()
    return out.getvalue()
