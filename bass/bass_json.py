"""
JSON marshalling for Bass values.

Encoding is compact and keeps insertion order, which makes it canonical
enough to hash. Decoding produces plain values: objects come back as Scopes
and `bass_decode` turns tagged objects back into paths and thunks.
"""
from __future__ import annotations

import json
import sys
from typing import Any, Optional, TextIO

from bass.bass_datatypes import (
    Symbol, Keyword, EmptyType, Empty, Pair, Cons, Scope, DirPath, FilePath,
    CommandPath, HostPath, CachePath, FSPath, make_list, list_items, unannotate,
)
from bass.bass_errors import EncodeError, EndOfSource, ReadError


def dumps(obj: Any) -> str:
    """Compact JSON text of already-converted data."""
    return json.dumps(obj, separators=(",", ":"), ensure_ascii=False)


def to_json(value: Any) -> Any:
    """Converts a Bass value into JSON-ready Python data."""
    value = unannotate(value)
    match value:
        case None | bool() | int() | str():
            return value
        case Symbol() | Keyword():
            return value.name
        case EmptyType():
            return []
        case Pair() | Cons():
            items, tail = list_items(value)
            if tail is not Empty:
                raise EncodeError(value, "improper list")
            return [to_json(item) for item in items]
        case Scope():
            return {sym.json_key(): to_json(val) for sym, val in value.walk()}
        case DirPath():
            return {"dir": value.path}
        case FilePath():
            return {"file": value.path}
        case CommandPath():
            return {"command": value.command}
        case HostPath():
            return {"host": {"context": value.context, "path": to_json(value.path)}}
        case CachePath():
            return {"cache": {"id": value.id, "path": to_json(value.path)}}
        case FSPath():
            return {"fs": {"id": value.fs.id, "path": to_json(value.path)}}
    # thunks, thunk paths, image refs and secrets know their own encoding
    encode = getattr(value, "to_json", None)
    if encode is not None:
        return encode()
    raise EncodeError(value)


def marshal(value: Any) -> str:
    return dumps(to_json(value))


def value_of(obj: Any) -> Any:
    """Converts native Python data into a Bass value."""
    match obj:
        case None | bool() | int() | str():
            return obj
        case float():
            # non-integer numbers keep their literal text
            return repr(obj)
        case list() | tuple():
            return make_list(*[value_of(item) for item in obj])
        case dict():
            scope = Scope()
            for key, val in obj.items():
                scope.set(Symbol.from_json_key(str(key)), value_of(val))
            return scope
    return obj


def unmarshal(text: str) -> Any:
    """Parses one JSON document into a Bass value."""
    try:
        data = json.loads(text, parse_float=str)
    except json.JSONDecodeError as e:
        raise ReadError(f"malformed JSON: {e.msg}", text[e.pos:e.pos + 40]) from e
    return value_of(data)


class JSONSource:
    """A pipe source decoding a concatenated stream of JSON values."""
    def __init__(self, text: str, name: str = "json"):
        self.text = text
        self.pos = 0
        self.name = name
        self._decoder = json.JSONDecoder(parse_float=str)

    def next(self) -> Any:
        text = self.text
        pos = self.pos
        while pos < len(text) and text[pos].isspace():
            pos += 1
        if pos >= len(text):
            self.pos = pos
            raise EndOfSource()
        try:
            data, end = self._decoder.raw_decode(text, pos)
        except json.JSONDecodeError as e:
            raise ReadError(f"malformed JSON: {e.msg}", text[pos:pos + 40]) from e
        self.pos = end
        return value_of(data)

    def __str__(self):
        return self.name


class JSONSink:
    """A pipe sink writing one JSON value per line to a text stream."""
    def __init__(self, stream: Optional[TextIO] = None, name: str = "stdout"):
        self.stream = stream
        self.name = name

    def emit(self, value: Any):
        stream = self.stream if self.stream is not None else sys.stdout
        stream.write(marshal(value) + "\n")
        stream.flush()

    def __str__(self):
        return self.name
