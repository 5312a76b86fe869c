import io
import tarfile

import pytest

from bass.bass_config import Config
from bass.bass_datatypes import Symbol, Scope, CommandPath, to_list, unannotate
from bass.bass_errors import BassError, NoRuntimeError
from bass.bass_pool import Driver, Pool
from bass.bass_protocol import decode_response
from bass.bass_runtime import ScriptRunner
from bass.bass_thunk import Platform, Thunk, ThunkImageRef


class FakeDriver(Driver):
    """Pretends to run commands in a container: `echo` prints its args, `false` fails."""

    name = "fake"

    def __init__(self):
        self.ran = []

    async def run(self, thunk, out):
        self.ran.append(thunk)
        if thunk.cmd == CommandPath("false"):
            raise BassError("exit status 1")
        text = " ".join(str(a) for a in thunk.args) + "\n"
        out.write(decode_response(thunk.effective_response().protocol, text.encode("utf-8")))

    async def export(self, path, out):
        data = b"hi there\n"
        with tarfile.open(fileobj=out, mode="w") as tar:
            info = tarfile.TarInfo("out.txt")
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))

    async def resolve(self, ref):
        return ThunkImageRef(ref.repository, ref.platform, tag=ref.tag, digest="sha256:deadbeef")


IMAGE = '(def img {:repository "alpine" :tag "3.18" :platform {:os "linux"}})\n'


@pytest.fixture
def driver():
    return FakeDriver()


@pytest.fixture
def runner(driver, tmp_path):
    runner = ScriptRunner(Config())
    runner.pool.install(Platform("linux"), driver)
    runner.source_dir = str(tmp_path)
    return runner


async def evaluate(runner, source):
    res = await runner.handle_script(IMAGE + source)
    assert res.status == "success", res.error_message
    return unannotate(res.value)


def test_select_by_platform(driver):
    pool = Pool(Config())
    pool.install(Platform("linux"), driver)
    assert pool.select(None) is pool.bass
    assert pool.select(Platform("linux", "amd64")) is driver
    with pytest.raises(NoRuntimeError):
        pool.select(Platform("darwin"))


@pytest.mark.asyncio
async def test_run_returns_a_source(runner, driver):
    assert to_list(await evaluate(runner, "(collect (run (from img (.echo 1 2))))")) == [1, 2]
    assert driver.ran[-1].image == ThunkImageRef("alpine", tag="3.18")


@pytest.mark.asyncio
async def test_read_with_protocols(runner):
    assert await evaluate(runner, '(next (read (from img (.echo "hello" "world")) :raw))') == "hello world\n"
    rows = await evaluate(runner, '(collect (read (from img (.echo "a" "b")) :unix-table))')
    assert [to_list(row) for row in to_list(rows)] == [["a", "b"]]
    res = await runner.handle_script(IMAGE + '(read (from img (.echo)) :xml)')
    assert "unknown protocol: xml" in res.error_message


@pytest.mark.asyncio
async def test_read_lines(runner, tmp_path):
    assert to_list(await evaluate(runner, '(collect (read (from img (.echo "a" "b")) :lines))')) == ["a b"]
    (tmp_path / "notes.txt").write_bytes(b"one\r\ntwo\n\nthree")
    assert to_list(await evaluate(runner, "(collect (read *dir*/notes.txt :lines))")) == ["one", "two", "", "three"]


@pytest.mark.asyncio
async def test_read_tar_entries(runner, tmp_path):
    with tarfile.open(tmp_path / "files.tar", "w") as tar:
        data = b"hello"
        info = tarfile.TarInfo("greeting.txt")
        info.size = len(data)
        info.mode = 0o644
        tar.addfile(info, io.BytesIO(data))
        info = tarfile.TarInfo("sub")
        info.type = tarfile.DIRTYPE
        tar.addfile(info)
    res = await evaluate(runner, """
(def entries (collect (read *dir*/files.tar :tar)))
(def greeting (first entries))
[(meta greeting) (next (read greeting :raw)) (meta (second entries)) (path? greeting)]
""")
    meta, content, dir_meta, is_path = to_list(res)
    assert meta.get(Symbol("name")) == "greeting.txt"
    assert meta.get(Symbol("type")) == "0"
    assert meta.get(Symbol("size")) == 5
    assert meta.get(Symbol("mode")) == 0o644
    assert content == "hello"
    assert dir_meta.get(Symbol("type")) == "5"
    assert dir_meta.get(Symbol("name")) == "sub"
    assert is_path is True


@pytest.mark.asyncio
async def test_read_thunk_path(runner):
    assert await evaluate(runner, "(def t (from img (.echo))) (next (read t/out.txt :raw))") == "hi there\n"


@pytest.mark.asyncio
async def test_succeeds(runner):
    assert await evaluate(runner, "(succeeds? (from img (.echo)))") is True
    assert await evaluate(runner, "(succeeds? (from img (.false)))") is False


@pytest.mark.asyncio
async def test_start_and_wait(runner):
    assert await evaluate(runner, "((start (from img (.echo))))") is True
    assert await evaluate(runner, "((start (from img (.false)) (fn [err] err)))") == "exit status 1"
    assert await evaluate(runner, "((start (from img (.echo)) (fn [err] (null? err))))") is True

    res = await runner.handle_script(IMAGE + "(start (from img (.false))) (wait)")
    assert res.status == "error"
    assert "exit status 1" in res.error_message


@pytest.mark.asyncio
async def test_resolve(runner):
    assert await evaluate(runner, "(:digest (resolve img))") == "sha256:deadbeef"


@pytest.mark.asyncio
async def test_export(runner, tmp_path):
    res = await evaluate(runner, "(export (from img (.echo)) *dir*/exported/)")
    assert res.local() == str(tmp_path / "exported")
    assert (tmp_path / "exported" / "out.txt").read_text() == "hi there\n"


@pytest.mark.asyncio
async def test_no_runtime_for_platform(runner):
    res = await runner.handle_script('(run (with-image (.echo) {:repository "x" :platform {:os "darwin"}}))')
    assert res.status == "error"
    assert "no runtime configured for darwin" in res.error_message


# --- the in-process Bass runtime ---

@pytest.mark.asyncio
async def test_bass_scripts_run_with_args_and_stdout(runner, tmp_path):
    (tmp_path / "echo.bass").write_text("""
(defn main args
  (each args (fn [a] (emit a *stdout*))))
""")
    assert to_list(await evaluate(runner, '(collect (run (*dir*/echo.bass "a" 2)))')) == ["a", 2]


@pytest.mark.asyncio
async def test_bass_scripts_see_stdin_and_env(runner, tmp_path):
    (tmp_path / "stdin.bass").write_text("""
(defn main []
  (emit {:in (next *stdin*) :foo *env*:FOO} *stdout*))
""")
    res = await evaluate(runner, '(next (run (with-env (with-stdin (*dir*/stdin.bass) [{:a 1}]) {:FOO "bar"})))')
    assert res.get(Symbol("foo")) == "bar"
    assert res.get(Symbol("in")).get(Symbol("a")) == 1


@pytest.mark.asyncio
async def test_bass_runs_are_cached(runner, tmp_path):
    (tmp_path / "count.bass").write_text('(defn main args (log "ran") (emit 1 *stdout*))\n')
    await evaluate(runner, "(next (run (*dir*/count.bass)))")
    await evaluate(runner, "(next (run (*dir*/count.bass)))")
    assert len(runner.pool.bass.modules) == 1
    await evaluate(runner, "(next (run (*dir*/count.bass 1)))")
    assert len(runner.pool.bass.modules) == 2


@pytest.mark.asyncio
async def test_load_returns_the_module_scope(runner, tmp_path):
    (tmp_path / "lib.bass").write_text("; the answer\n(def answer 42)\n(defn main [] (error \"not called\"))\n")
    assert await evaluate(runner, "(def mod (load (*dir*/lib))) mod:answer") == 42
    module = await evaluate(runner, "mod")
    assert isinstance(module, Scope)
    assert module.doc_meta(Symbol("answer")).get(Symbol("doc")) == "the answer"


@pytest.mark.asyncio
async def test_embedded_demos(runner):
    assert await evaluate(runner, "(path? *demos*)") is True
    greetings = await evaluate(runner, '(collect (run (*demos*/hello.bass "bass" "you")))')
    assert to_list(greetings) == ["hello, bass!", "hello, you!"]
    assert to_list(await evaluate(runner, "(collect (run (*demos*/hello.bass)))")) == ["hello, world!"]
    assert to_list(await evaluate(runner, "(collect (run (*demos*/fib.bass 7)))")) == [0, 1, 1, 2, 3, 5, 8]
    assert await evaluate(runner, '(def demo (load (*demos*/greet))) (demo:greet "x")') == "hello, x!"


@pytest.mark.asyncio
async def test_bare_file_paths_cannot_run_on_the_host(runner):
    res = await runner.handle_script("(run (./script))")
    assert res.status == "error"
    assert "bad path" in res.error_message


@pytest.mark.asyncio
async def test_bass_driver_needs_an_evaluator():
    pool = Pool(Config())
    with pytest.raises(BassError):
        await pool.run(Thunk(CommandPath("lists")), io.BytesIO())
