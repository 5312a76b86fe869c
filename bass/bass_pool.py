"""
The runtime pool: dispatches thunks to the driver serving their platform.

Thunks without an image run on the in-process Bass driver, which evaluates
Bass source files as modules. Everything else goes to the first configured
driver whose platform matches the thunk's.
"""
import asyncio
import io
import os
import sys
import tarfile
from typing import Any, BinaryIO, Callable, Dict, List, Optional, Tuple

from bass.bass_config import Config, RuntimeConfig
from bass.bass_datatypes import (
    Scope, FilePath, DirPath, CommandPath, HostPath, FSPath, EmbeddedFS,
    StaticSource, Source, Sink,
)
from bass.bass_errors import BassError, NoRuntimeError, UnknownRuntimeError
from bass.bass_json import JSONSink
from bass.bass_thunk import Thunk, ThunkPath, ThunkImageRef, Platform

EXT = ".bass"
NO_EXT = ""

STD_FS = EmbeddedFS("bass.std", "std")
DEMOS_FS = EmbeddedFS("bass.demos", "demos")


def _dbg(*parts):
    if os.environ.get("BASS_DEBUG"):
        print("[DBG]", *parts, file=sys.stderr)


class Driver:
    """Interface implemented by every runtime driver."""

    name = "driver"

    async def run(self, thunk: Thunk, out: BinaryIO):
        """Runs the thunk, writing its response as a JSON stream to out."""
        raise NotImplementedError

    async def load(self, thunk: Thunk) -> Scope:
        """Runs the thunk and returns its bindings as a module scope."""
        raise NotImplementedError

    async def export(self, path: ThunkPath, out: BinaryIO):
        """Writes a tar stream of the subtree at path to out."""
        raise NotImplementedError

    async def resolve(self, ref: ThunkImageRef) -> ThunkImageRef:
        """Returns ref with its digest filled in."""
        raise NotImplementedError

    async def prune(self):
        pass

    def close(self):
        pass


DriverFactory = Callable[['Pool', Dict[str, Any]], Driver]

DRIVERS: Dict[str, DriverFactory] = {}


def register_driver(name: str):
    """Registers a driver factory under name."""
    def decorator(factory: DriverFactory) -> DriverFactory:
        DRIVERS[name] = factory
        return factory
    return decorator


def init_driver(name: str, pool: 'Pool', config: Dict[str, Any]) -> Driver:
    # the docker driver registers itself on import
    import bass.bass_docker  # noqa: F401
    factory = DRIVERS.get(name)
    if factory is None:
        raise UnknownRuntimeError(name, list(DRIVERS))
    return factory(pool, config)


class Pool(Driver):
    """A union driver delegating each call by platform."""

    name = "pool"

    def __init__(self, config: Optional[Config] = None, evaluator: Any = None):
        self.config = config or Config()
        self.evaluator = evaluator
        self.bass = BassDriver(self)
        self.runtimes: List[Tuple[Platform, Driver]] = []
        for rc in self.config.runtimes:
            self.add(rc)

    def add(self, rc: RuntimeConfig) -> Driver:
        settings = dict(rc.config)
        settings.setdefault("data", str(self.config.data_dir))
        try:
            driver = init_driver(rc.runtime, self, settings)
        except UnknownRuntimeError:
            raise
        except Exception as e:
            raise BassError(f"init runtime for platform {rc.platform}: {e}") from e
        self.runtimes.append((rc.platform, driver))
        return driver

    def install(self, platform: Platform, driver: Driver):
        """Registers an already-constructed driver for platform."""
        self.runtimes.append((platform, driver))

    def select(self, platform: Optional[Platform]) -> Driver:
        if platform is None:
            return self.bass
        for candidate, driver in self.runtimes:
            if candidate.can_select(platform):
                return driver
        raise NoRuntimeError(platform)

    async def run(self, thunk: Thunk, out: BinaryIO):
        driver = self.select(thunk.platform())
        _dbg("RUN", thunk.sha256()[:12], "on", driver.name)
        await driver.run(thunk, out)

    async def load(self, thunk: Thunk) -> Scope:
        return await self.select(thunk.platform()).load(thunk)

    async def export(self, path: ThunkPath, out: BinaryIO):
        await self.select(path.thunk.platform()).export(path, out)

    async def resolve(self, ref: ThunkImageRef) -> ThunkImageRef:
        return await self.select(ref.platform).resolve(ref)

    async def prune(self):
        await self.bass.prune()
        for _, driver in self.runtimes:
            await driver.prune()

    def close(self):
        for _, driver in self.runtimes:
            driver.close()


class BassDriver(Driver):
    """Runs Bass source files in-process and caches the results by thunk hash."""

    name = "bass"

    def __init__(self, pool: Pool):
        self.pool = pool
        self.responses: Dict[str, bytes] = {}
        self.modules: Dict[str, Scope] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    async def resolve(self, ref: ThunkImageRef) -> ThunkImageRef:
        raise BassError("bass runtime cannot resolve images")

    async def export(self, path: ThunkPath, out: BinaryIO):
        raise BassError("cannot export from bass thunk")

    async def prune(self):
        self.responses.clear()
        self.modules.clear()

    async def run(self, thunk: Thunk, out: BinaryIO):
        _, response = await self._run(thunk, NO_EXT)
        out.write(response)

    async def load(self, thunk: Thunk) -> Scope:
        module, _ = await self._run(thunk, EXT)
        return module

    async def _run(self, thunk: Thunk, ext: str) -> Tuple[Scope, bytes]:
        key = thunk.sha256() + ext
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            if key in self.modules:
                _dbg("CACHED", key[:12])
                return self.modules[key], self.responses[key]
            module, response = await self._evaluate(thunk, ext)
            module.name = str(thunk)
            self.modules[key] = module
            self.responses[key] = response
            return module, response

    async def _source(self, thunk: Thunk, ext: str) -> Tuple[str, str, Any]:
        """Returns (text, filename, *dir*) for the thunk's command."""
        cmd = thunk.cmd
        match cmd:
            case CommandPath():
                name = cmd.command + ext
                return STD_FS.read_text(name), f"std/{name}", FSPath(STD_FS, DirPath("."))
            case HostPath() if not cmd.is_dir():
                local = cmd.local() + ext
                with open(local, encoding="utf-8") as f:
                    text = f.read()
                return text, local, HostPath(cmd.context, cmd.path.dir())
            case FSPath() if not cmd.is_dir():
                return cmd.fs.read_text(cmd.path.path + ext), f"{cmd.fs.id}/{cmd.path.path}{ext}", \
                    FSPath(cmd.fs, cmd.path.dir())
            case ThunkPath() if not cmd.is_dir():
                file = ThunkPath(cmd.thunk, FilePath(cmd.path.path + ext))
                text = await read_thunk_file(self.pool, file)
                return text, str(file), ThunkPath(cmd.thunk, cmd.path.dir())
            case FilePath():
                raise BassError(f"bad path: did you mean *dir*/{cmd.path}? (. is only resolveable in a container)")
        raise BassError(f"cannot run {cmd} in the bass runtime")

    async def _evaluate(self, thunk: Thunk, ext: str) -> Tuple[Scope, bytes]:
        from bass.bass_runtime import RunState, ground, new_module, run_main

        evaluator = self.pool.evaluator
        if evaluator is None:
            raise BassError("bass runtime has no evaluator")
        evaluator = evaluator.fork()

        text, filename, dir = await self._source(thunk, ext)
        buf = io.StringIO()
        state = RunState(
            dir=dir,
            env=thunk.env,
            args=list(thunk.args),
            stdin=Source(StaticSource(thunk.stdin, name=str(thunk))),
            stdout=Sink(JSONSink(buf, name=str(thunk))),
        )
        module = new_module(state, await ground())
        await evaluator.eval_text(text, module, filename)
        if ext == NO_EXT:
            await run_main(evaluator, module, list(thunk.args))
        return module, buf.getvalue().encode("utf-8")


async def read_thunk_file(pool: Driver, path: ThunkPath) -> str:
    """Exports a single file from a thunk and returns its content."""
    return (await read_thunk_bytes(pool, path)).decode("utf-8")


async def read_thunk_bytes(pool: Driver, path: ThunkPath) -> bytes:
    buf = io.BytesIO()
    await pool.export(path, buf)
    buf.seek(0)
    with tarfile.open(fileobj=buf, mode="r|*") as tar:
        for member in tar:
            if not member.isfile():
                continue
            f = tar.extractfile(member)
            return f.read()
    raise BassError(f"export {path}: no file in archive")
