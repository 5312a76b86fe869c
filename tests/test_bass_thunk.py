import hashlib

from bass.bass_datatypes import (
    Symbol, Scope, DirPath, FilePath, CommandPath, HostPath,
)
from bass.bass_thunk import (
    LINUX, DEFAULT_RESPONSE, Platform, Thunk, ThunkImageRef, ThunkPath,
    ThunkResponse, image_ref_from_scope, image_ref_to_scope,
)


def echo(*args):
    return Thunk(CommandPath("echo"), args=list(args))


def test_hash_is_stable_and_content_addressed():
    a = echo("hello")
    b = echo("hello")
    assert a.sha256() == b.sha256()
    assert a.name() == a.sha256()
    assert a.sha256() == hashlib.sha256(b'{"cmd":{"command":"echo"},"args":["hello"]}').hexdigest()
    assert a == b
    assert hash(a) == hash(b)
    assert echo("goodbye").sha256() != a.sha256()


def test_absent_fields_are_omitted():
    thunk = echo()
    assert thunk.to_json() == {"cmd": {"command": "echo"}}
    assert thunk.with_env(Scope()).sha256() == thunk.sha256()


def test_canonical_key_order():
    thunk = echo("x").with_image(ThunkImageRef("alpine", tag="3.18")).with_dir(DirPath("./src"))
    assert list(thunk.to_json()) == ["image", "cmd", "args", "dir"]


def test_builders_return_copies():
    base = echo("a")
    env = Scope()
    env.set(Symbol("FOO"), "bar")
    changed = base.with_args(["b"]).with_env(env).with_insecure(True)
    assert base.args == ["a"]
    assert base.env is None
    assert not base.insecure
    assert changed.args == ["b"]
    assert changed.insecure
    assert changed.to_json()["env"] == {"FOO": "bar"}


def test_labels_accumulate():
    thunk = echo().with_label(Symbol("a"), 1).with_label(Symbol("b"), 2)
    assert thunk.to_json()["labels"] == {"a": 1, "b": 2}
    assert echo().with_label(Symbol("a"), 1).sha256() != echo().sha256()


def test_mounts():
    src = HostPath("/ctx", DirPath("./data"))
    thunk = echo().with_mount(src, DirPath("./mnt"))
    assert thunk.to_json()["mounts"] == [
        {"source": {"host": {"context": "/ctx", "path": {"dir": "./data"}}}, "target": {"dir": "./mnt"}},
    ]


def test_wrap_prepends_command():
    thunk = echo("hi").wrap(CommandPath("strace"), "-f")
    assert thunk.cmd == CommandPath("strace")
    assert thunk.args == [CommandPath("echo"), "-f", "hi"]


def test_with_image_rebases_the_chain():
    alpine = ThunkImageRef("alpine", tag="3.18")
    ubuntu = ThunkImageRef("ubuntu", tag="22.04")
    builder = echo("setup").with_image(alpine)
    thunk = echo("run").with_image(builder)
    rebased = thunk.with_image(ubuntu)
    assert rebased.image.image == ubuntu
    assert thunk.image.image == alpine


def test_platform_follows_the_image_chain():
    ref = ThunkImageRef("alpine", Platform("linux", "arm64"))
    assert echo().platform() is None
    assert echo().with_image(ref).platform() == Platform("linux", "arm64")
    assert echo().with_image(echo().with_image(ref)).platform() == Platform("linux", "arm64")


def test_platform_selection():
    assert LINUX.can_select(Platform("linux", "amd64"))
    assert Platform("linux", "amd64").can_select(Platform("linux", "amd64"))
    assert not Platform("linux", "amd64").can_select(Platform("linux", "arm64"))
    assert not LINUX.can_select(Platform("darwin"))
    assert not LINUX.can_select(None)


def test_image_refs():
    assert ThunkImageRef("alpine").ref() == "alpine:latest"
    assert ThunkImageRef("alpine", tag="3.18").ref() == "alpine:3.18"
    assert ThunkImageRef("alpine", tag="3.18", digest="sha256:abc").ref() == "alpine@sha256:abc"

    scope = image_ref_to_scope(ThunkImageRef("alpine", Platform("linux", "arm64"), tag="3.18"))
    assert image_ref_from_scope(scope) == ThunkImageRef("alpine", Platform("linux", "arm64"), tag="3.18")


def test_responses():
    assert echo().effective_response() == DEFAULT_RESPONSE
    assert DEFAULT_RESPONSE.source() == "stdout"
    assert ThunkResponse(exit=True).source() == "exit"
    assert ThunkResponse(file=FilePath("./out.json")).source() == "file:./out.json"

    thunk = echo().with_response(ThunkResponse(stdout=True, protocol="raw"))
    assert thunk.to_json()["response"] == {"stdout": True, "protocol": "raw"}
    assert echo().with_response(ThunkResponse(exit=True)).effective_response().protocol == "json"


def test_extend_builds_thunk_paths():
    thunk = echo()
    path = thunk.extend(FilePath("out/a.txt"))
    assert path == ThunkPath(thunk, FilePath("./out/a.txt"))
    assert path.name() == "a.txt"
    assert not path.is_dir()
    sub = thunk.extend(DirPath("out")).extend(FilePath("b"))
    assert sub.path == FilePath("./out/b")
