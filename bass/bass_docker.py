"""
A container driver backed by the `docker` command line.

State lives under a data directory:

    artifacts/<hash>/   the thunk's working directory, kept as its output
    responses/<hash>    the decoded JSON response; its presence marks a cache hit
    logs/<hash>         everything the container printed
    locks/<hash>.lock   held exclusively while the thunk runs
    caches/<id>/        cache directories shared between runs
"""
import asyncio
import fcntl
import io
import os
import re
import shutil
import sys
import tarfile
import tempfile
from pathlib import Path
from typing import Any, BinaryIO, Dict, List, Optional

import httpx

from bass.bass_command import Command, CommandMount, resolve_command
from bass.bass_datatypes import Scope, HostPath, CachePath, FSPath, Secret, MemoryFS, unannotate
from bass.bass_errors import BassError, Interrupted
from bass.bass_json import dumps
from bass.bass_pool import Driver, Pool, register_driver, _dbg
from bass.bass_protocol import protocol_writer
from bass.bass_thunk import Thunk, ThunkPath, ThunkImageRef

RUN_DIR = "/tmp/run"
SHIM_DIR = "/bass"
SHIM_SOURCE = Path(__file__).parent / "bass_shim.py"

DOCKER_HUB = "registry-1.docker.io"
MANIFEST_TYPES = ", ".join([
    "application/vnd.oci.image.index.v1+json",
    "application/vnd.docker.distribution.manifest.list.v2+json",
    "application/vnd.oci.image.manifest.v1+json",
    "application/vnd.docker.distribution.manifest.v2+json",
])


class DockerConfig:
    """The on-disk cache layout."""

    def __init__(self, data: str):
        self.data = Path(os.path.expanduser(data))

    def artifacts_path(self, name: str, *sub: str) -> Path:
        return self.data.joinpath("artifacts", name, *[s for s in sub if s not in ("", ".")])

    def response_path(self, name: str) -> Path:
        return self.data / "responses" / name

    def log_path(self, name: str) -> Path:
        return self.data / "logs" / name

    def lock_path(self, name: str) -> Path:
        return self.data / "locks" / f"{name}.lock"

    def cache_path(self, id: str) -> Path:
        return self.data / "caches" / id

    def setup(self, name: str):
        for sub in ("responses", "logs", "locks"):
            (self.data / sub).mkdir(parents=True, exist_ok=True)
        self.artifacts_path(name).mkdir(parents=True, exist_ok=True)

    def cleanup(self, name: str):
        shutil.rmtree(self.artifacts_path(name), ignore_errors=True)
        for path in (self.response_path(name), self.log_path(name)):
            if path.exists():
                path.unlink()

    def prune(self):
        for sub in ("artifacts", "responses", "logs", "locks", "caches"):
            shutil.rmtree(self.data / sub, ignore_errors=True)


class FileLock:
    """An exclusive flock on a path, acquired without blocking the event loop."""

    def __init__(self, path: Path):
        self.path = path
        self.fd: Optional[int] = None

    async def __aenter__(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.fd = os.open(self.path, os.O_RDWR | os.O_CREAT, 0o600)
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, fcntl.flock, self.fd, fcntl.LOCK_EX)
        return self

    async def __aexit__(self, *exc):
        fcntl.flock(self.fd, fcntl.LOCK_UN)
        os.close(self.fd)
        self.fd = None


async def docker(*args: str, stdin: Optional[bytes] = None, env: Optional[Dict[str, str]] = None,
                 check: bool = True) -> tuple:
    """Runs a docker command, returning (status, stdout, stderr)."""
    if shutil.which("docker") is None:
        raise BassError("docker runtime: the docker command was not found in $PATH")
    _dbg("DOCKER", *args)
    proc = await asyncio.create_subprocess_exec(
        "docker", *args,
        stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=env,
    )
    out, err = await proc.communicate(stdin)
    if check and proc.returncode != 0:
        raise BassError(f"docker {args[0]}: {err.decode('utf-8', errors='replace').strip()}")
    return proc.returncode, out, err


class DockerDriver(Driver):
    """Runs thunks in containers through the docker CLI."""

    name = "docker"

    def __init__(self, pool: Pool, config: DockerConfig, retries: int = 2, backoff: float = 0.2,
                 timeout: float = 10.0, log: Optional[BinaryIO] = None):
        self.pool = pool
        self.config = config
        self.retries = retries
        self.backoff = backoff
        self.timeout = timeout
        self.log = log
        self.config.data.mkdir(parents=True, exist_ok=True)

    def _log_stream(self) -> BinaryIO:
        return self.log if self.log is not None else sys.stderr.buffer

    # --- Driver ---

    async def run(self, thunk: Thunk, out: BinaryIO):
        name = thunk.name()
        response_path = self.config.response_path(name)
        if response_path.exists():
            _dbg("CACHED", name[:12])
            out.write(response_path.read_bytes())
            log_path = self.config.log_path(name)
            if log_path.exists():
                self._log_stream().write(log_path.read_bytes())
            return

        self.config.setup(name)
        async with FileLock(self.config.lock_path(name)):
            # another process may have finished it while we waited
            if response_path.exists():
                out.write(response_path.read_bytes())
                return
            try:
                await self._run(thunk, out)
            except BaseException:
                self.config.cleanup(name)
                raise

    async def load(self, thunk: Thunk) -> Scope:
        raise BassError("docker runtime cannot load modules; use (run) and read the response")

    async def export(self, path: ThunkPath, out: BinaryIO):
        name = path.thunk.name()
        sub = path.path.path
        artifacts = self.config.artifacts_path(name, sub)
        if not artifacts.exists():
            await self.run(path.thunk, io.BytesIO())
        if not artifacts.exists():
            raise BassError(f"export: {path} does not exist")
        with tarfile.open(fileobj=out, mode="w|") as tar:
            if path.is_dir():
                for child in sorted(artifacts.iterdir()):
                    tar.add(str(child), arcname=child.name)
            else:
                tar.add(str(artifacts), arcname=artifacts.name)

    async def resolve(self, ref: ThunkImageRef) -> ThunkImageRef:
        if ref.digest:
            return ref
        digest = await resolve_digest(ref, retries=self.retries, backoff=self.backoff, timeout=self.timeout)
        return ThunkImageRef(ref.repository, ref.platform, tag=ref.tag, digest=digest)

    async def prune(self):
        self.config.prune()

    # --- running ---

    async def _run(self, thunk: Thunk, out: BinaryIO, commit: Optional[str] = None):
        name = thunk.name()
        image = await self._image(thunk.image)
        cmd = resolve_command(thunk)
        data_dir = self.config.artifacts_path(name)

        with tempfile.TemporaryDirectory(prefix="bass-") as shim_dir:
            shim = Path(shim_dir)
            shutil.copyfile(SHIM_SOURCE, shim / "shim.py")
            (shim / "cmd.json").write_text(dumps(cmd.to_json()), encoding="utf-8")

            args = ["run", "--name", f"bass-{name[:32]}", "--label", "bass=yes"]
            if commit is None:
                args.append("--rm")
            if thunk.insecure:
                args.append("--privileged")
            args += ["--mount", f"type=bind,source={data_dir},target={RUN_DIR}"]
            args += ["--mount", f"type=bind,source={shim_dir},target={SHIM_DIR}"]
            args += ["--tmpfs", "/dev/shm:mode=1777"]
            for mount in cmd.mounts:
                args += ["--mount", await self._mount(mount, shim, data_dir)]

            env = dict(os.environ)
            response = thunk.effective_response()
            args += ["-e", f"_BASS_RESPONSE_SOURCE={response.source()}"]
            for key, value in cmd.secret_env.items():
                env[key] = value
                args += ["-e", key]

            cwd = RUN_DIR
            if cmd.dir is not None:
                cwd = cmd.dir if cmd.dir.startswith("/") else f"{RUN_DIR}/{cmd.dir.removeprefix('./')}"
            args += ["-w", cwd.rstrip("/") or "/"]
            args += ["--entrypoint", "python3", image, f"{SHIM_DIR}/shim.py"]

            await self._exec(thunk, args, env, shim / "response", response.protocol or "json", out)

        if commit is not None:
            container = f"bass-{name[:32]}"
            await docker("commit", container, commit)
            await docker("rm", "-f", container, check=False)

    async def _exec(self, thunk: Thunk, args: List[str], env: Dict[str, str], response_file: Path,
                    protocol: str, out: BinaryIO):
        name = thunk.name()
        container = args[args.index("--name") + 1]
        proc = await asyncio.create_subprocess_exec(
            "docker", *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=env,
        )
        log_stream = self._log_stream()
        with open(self.config.log_path(name), "wb") as log_file:
            try:
                while True:
                    chunk = await proc.stdout.read(65536)
                    if not chunk:
                        break
                    log_file.write(chunk)
                    log_stream.write(chunk)
                status = await proc.wait()
            except asyncio.CancelledError:
                await docker("kill", container, check=False)
                raise Interrupted()

        if status != 0:
            raise BassError(f"run {thunk}: exit status {status}")

        raw = response_file.read_bytes() if response_file.exists() else b""
        decoded = io.BytesIO()
        with open(self.config.log_path(name), "ab") as log_file:
            tee = _Tee(log_file, log_stream)
            writer = protocol_writer(protocol, decoded, tee)
            writer.write(raw)
            writer.flush()
        self.config.response_path(name).write_bytes(decoded.getvalue())
        out.write(decoded.getvalue())

    async def _mount(self, mount: CommandMount, shim: Path, data_dir: Path) -> str:
        target = mount.target if mount.target.startswith("/") else f"{RUN_DIR}/{mount.target.removeprefix('./')}"
        target = target.rstrip("/") or "/"
        source = unannotate(mount.source)
        readonly = ""
        match source:
            case ThunkPath():
                host = self.config.artifacts_path(source.thunk.name(), source.path.path)
                if not host.exists():
                    await self.pool.run(source.thunk, io.BytesIO())
                if not host.exists():
                    raise BassError(f"mount {mount.target}: {source} does not exist")
            case HostPath():
                host = Path(source.local())
            case CachePath():
                host = self.config.cache_path(source.id)
                sub = source.path.path
                if sub not in (".", ""):
                    host = host / sub.removeprefix("./")
                if source.is_dir():
                    host.mkdir(parents=True, exist_ok=True)
                else:
                    host.parent.mkdir(parents=True, exist_ok=True)
                    host.touch()
            case FSPath():
                host = _materialize_fs(source, shim / "fs" / source.fs.id)
                readonly = ",readonly"
            case Secret():
                secrets = shim / "secrets"
                secrets.mkdir(exist_ok=True)
                host = secrets / f"{len(list(secrets.iterdir()))}"
                host.write_text(source.reveal(), encoding="utf-8")
                host.chmod(0o600)
                readonly = ",readonly"
            case _:
                raise BassError(f"unknown mount source: {source!r}")
        return f"type=bind,source={host},target={target}{readonly}"

    async def _image(self, image: Any) -> str:
        match image:
            case None:
                raise BassError("no image provided")
            case ThunkImageRef():
                ref = image.ref()
                status, _, _ = await docker("image", "inspect", ref, check=False)
                if status != 0:
                    await docker("pull", "--platform", str(image.platform), ref)
                return ref
            case Thunk():
                tag = f"bass-thunk:{image.sha1()}"
                status, _, _ = await docker("image", "inspect", tag, check=False)
                if status != 0:
                    self.config.setup(image.name())
                    async with FileLock(self.config.lock_path(image.name())):
                        await self._run(image, io.BytesIO(), commit=tag)
                return tag
        raise BassError(f"unsupported image type: {image!r}")


class _Tee:
    def __init__(self, *streams: BinaryIO):
        self.streams = streams

    def write(self, data: bytes) -> int:
        for stream in self.streams:
            stream.write(data)
        return len(data)


def _materialize_fs(path: FSPath, root: Path) -> Path:
    """Writes a virtual filesystem path out to disk so it can be bind-mounted."""
    sub = path.path.path.removeprefix("./")
    if not path.is_dir():
        dest = root / sub
        dest.parent.mkdir(parents=True, exist_ok=True)
        dest.write_text(path.read_text(), encoding="utf-8")
        return dest
    if not isinstance(path.fs, MemoryFS):
        raise BassError(f"cannot mount directory {sub} of {path.fs!r}")
    prefix = "" if sub in ("", ".") else sub.rstrip("/") + "/"
    for key, content in path.fs.files.items():
        if key.startswith(prefix):
            dest = root / key
            dest.parent.mkdir(parents=True, exist_ok=True)
            dest.write_text(content, encoding="utf-8")
    dest = root / sub if prefix else root
    dest.mkdir(parents=True, exist_ok=True)
    return dest


# =================================================================
# Registry digests
# =================================================================

def _split_repository(repository: str) -> tuple:
    """Returns (registry host, repository path) for a docker-style reference."""
    first, _, rest = repository.partition("/")
    if rest and ("." in first or ":" in first or first == "localhost"):
        return first, rest
    if not rest:
        return DOCKER_HUB, f"library/{repository}"
    return DOCKER_HUB, repository


_CHALLENGE_RE = re.compile(r'(\w+)="([^"]*)"')


async def _token(client: httpx.AsyncClient, challenge: str, repo: str) -> Optional[str]:
    if not challenge.lower().startswith("bearer "):
        return None
    params = dict(_CHALLENGE_RE.findall(challenge))
    realm = params.pop("realm", None)
    if realm is None:
        return None
    params.setdefault("scope", f"repository:{repo}:pull")
    resp = await client.get(realm, params=params)
    resp.raise_for_status()
    body = resp.json()
    return body.get("token") or body.get("access_token")


async def resolve_digest(ref: ThunkImageRef, *, retries: int = 2, backoff: float = 0.2, timeout: float = 10.0) -> str:
    """Asks the image's registry for the digest of its tag."""
    host, repo = _split_repository(ref.repository)
    url = f"https://{host}/v2/{repo}/manifests/{ref.tag or 'latest'}"
    headers = {"Accept": MANIFEST_TYPES}

    async with httpx.AsyncClient(timeout=timeout, follow_redirects=True) as client:
        last_exc = None
        for attempt in range(retries + 1):
            try:
                resp = await client.head(url, headers=headers)
                if resp.status_code == 401:
                    token = await _token(client, resp.headers.get("WWW-Authenticate", ""), repo)
                    if token:
                        headers = {**headers, "Authorization": f"Bearer {token}"}
                        resp = await client.head(url, headers=headers)
                if not 200 <= resp.status_code < 300:
                    raise BassError(f"resolve {ref.ref()}: HTTP {resp.status_code}")
                digest = resp.headers.get("Docker-Content-Digest")
                if not digest:
                    raise BassError(f"resolve {ref.ref()}: registry returned no digest")
                return digest
            except (httpx.HTTPError, BassError) as e:
                if attempt < retries:
                    await asyncio.sleep(backoff * (2 ** attempt))
                    continue
                if isinstance(e, BassError):
                    raise
                raise BassError(f"resolve {ref.ref()}: {e}") from e


@register_driver("docker")
def new_docker(pool: Pool, config: Dict[str, Any]) -> DockerDriver:
    return DockerDriver(
        pool,
        DockerConfig(config.get("data") or "~/.local/share/bass"),
        retries=int(config.get("retries", 2)),
        backoff=float(config.get("backoff", 0.2)),
        timeout=float(config.get("timeout", 10.0)),
    )
