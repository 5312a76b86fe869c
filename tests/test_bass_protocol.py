import io
import json
import tarfile

import pytest

from bass.bass_errors import BassError, ProtocolError, UnknownProtocolError
from bass.bass_protocol import (
    GitHubActionProtocol, LinesProtocol, UnixTableProtocol, decode_response,
    parse_command, protocol_writer,
)


def lines(data: bytes):
    return [json.loads(line) for line in data.decode("utf-8").splitlines()]


def test_json_passes_through():
    assert decode_response("json", b'1\n{"a":2}\n') == b'1\n{"a":2}\n'
    assert decode_response("", b"[]") == b"[]"


def test_raw_emits_one_string():
    assert lines(decode_response("raw", b"hello\nworld\n")) == ["hello\nworld\n"]
    assert lines(decode_response("raw", b"")) == [""]


def test_unix_table_rows():
    out = io.BytesIO()
    proto = UnixTableProtocol(out)
    proto.write(b"a  b\tc\n\nd")
    # the unterminated line waits for more output
    assert lines(out.getvalue()) == [["a", "b", "c"], []]
    proto.write(b" e\nf")
    proto.flush()
    assert lines(out.getvalue()) == [["a", "b", "c"], [], ["d", "e"], ["f"]]


def test_lines_emit_strings():
    out = io.BytesIO()
    proto = LinesProtocol(out)
    proto.write(b"one\r\ntwo\n\nthr")
    assert lines(out.getvalue()) == ["one", "two", ""]
    proto.write(b"ee")
    proto.flush()
    assert lines(out.getvalue()) == ["one", "two", "", "three"]
    assert decode_response("lines", b"") == b""


def tar_bytes():
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        info = tarfile.TarInfo("sub")
        info.type = tarfile.DIRTYPE
        info.mode = 0o755
        tar.addfile(info)
        data = b"hello\n"
        info = tarfile.TarInfo("sub/greeting.txt")
        info.size = len(data)
        info.mode = 0o644
        info.uid = 1000
        info.uname = "me"
        tar.addfile(info, io.BytesIO(data))
        info = tarfile.TarInfo("link")
        info.type = tarfile.SYMTYPE
        info.linkname = "sub/greeting.txt"
        tar.addfile(info)
    return buf.getvalue()


def test_tar_entries():
    entries = lines(decode_response("tar", tar_bytes()))
    assert [(e["type"], e["name"]) for e in entries] == [("5", "sub"), ("0", "sub/greeting.txt"), ("2", "link")]
    directory, greeting, link = entries
    assert directory["mode"] == 0o755
    assert "content" not in directory
    assert greeting["content"] == "hello\n"
    assert greeting["size"] == 6
    assert greeting["uid"] == 1000
    assert greeting["uname"] == "me"
    assert link["link"] == "sub/greeting.txt"


def test_tar_rejects_garbage():
    assert decode_response("tar", b"") == b""
    with pytest.raises(ProtocolError):
        decode_response("tar", b"this is not an archive")


def test_github_action_outputs_and_logs():
    out, log = io.BytesIO(), io.BytesIO()
    proto = GitHubActionProtocol(out, log)
    proto.write(b"building...\n::set-output name=foo::bar\n::warning::careful\ndone\n")
    proto.flush()
    assert lines(out.getvalue()) == [{"foo": "bar"}]
    logged = log.getvalue().decode("utf-8")
    assert logged.startswith("building...\n")
    assert "warning: careful" in logged
    assert logged.endswith("done\n")


def test_github_action_buffers_partial_commands():
    out, log = io.BytesIO(), io.BytesIO()
    proto = GitHubActionProtocol(out, log)
    proto.write(b":")
    proto.write(b":set-out")
    proto.write(b"put name=x::1\n::set-output name=y::2")
    proto.flush()
    assert lines(out.getvalue()) == [{"x": "1", "y": "2"}]
    assert log.getvalue() == b""


def test_github_action_midline_text_is_not_a_command():
    out, log = io.BytesIO(), io.BytesIO()
    proto = GitHubActionProtocol(out, log)
    proto.write(b"hello ")
    proto.write(b"::set-output name=x::1\n")
    proto.flush()
    assert lines(out.getvalue()) == [{}]
    assert log.getvalue() == b"hello ::set-output name=x::1\n"


def test_parse_command():
    cmd = parse_command("::error file=a.txt,line=1::boom")
    assert cmd.name == "error"
    assert cmd.params == {"file": "a.txt", "line": "1"}
    assert cmd.value == "boom"
    assert str(cmd) == "::error file=a.txt,line=1::boom"
    assert str(parse_command("::notice::hi")) == "::notice::hi"
    with pytest.raises(ProtocolError):
        parse_command("::error file::boom")
    with pytest.raises(ProtocolError):
        parse_command("not a command")


def test_unknown_protocol():
    with pytest.raises(UnknownProtocolError) as exc:
        protocol_writer("xml", io.BytesIO())
    assert "unknown protocol: xml" in str(exc.value)


def test_malformed_commands_are_bass_errors():
    out, log = io.BytesIO(), io.BytesIO()
    proto = GitHubActionProtocol(out, log)
    with pytest.raises(BassError) as exc:
        proto.write(b"::error::bad\n::bogus\n")
    assert "malformed command: '::bogus'" in str(exc.value)
    assert b"error: bad" in log.getvalue()
