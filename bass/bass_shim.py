"""
The in-container shim.

Mounted into every container and run with the image's python3. Only the
standard library is available here, so this module must not import anything
from the bass package.

It reads the resolved command from a JSON file, runs it with the requested
env, working directory and stdin, relays stdout to the response file when the
response comes from stdout, normalizes the mtimes of everything it produced
and exits with the command's status.
"""
import ctypes
import json
import os
import shutil
import subprocess
import sys
import threading
import time
from datetime import datetime, timezone

INPUT = "/bass/cmd.json"
OUTPUT = "/bass/response"
CA_PATH = "/bass/ca.crt"

FROM_STDOUT = "stdout"
FROM_EXIT = "exit"
FROM_FILE = "file:"

EPOCH = datetime(1985, 10, 26, 8, 15, 0, tzinfo=timezone.utc).timestamp()

PR_SET_CHILD_SUBREAPER = 36

# per-distro locations of the trust store and the command that rebuilds it
CA_TARGETS = [
    ("/usr/local/share/ca-certificates/bass.crt", ["update-ca-certificates"]),
    ("/etc/pki/ca-trust/source/anchors/bass.crt", ["update-ca-trust", "extract"]),
    ("/etc/ca-certificates/trust-source/anchors/bass.crt", ["trust", "extract-compat"]),
]
CA_BUNDLES = [
    "/etc/ssl/certs/ca-certificates.crt",
    "/etc/pki/tls/certs/ca-bundle.crt",
    "/etc/ssl/ca-bundle.pem",
    "/etc/ssl/cert.pem",
]


def _env(name: str, default: str = "") -> str:
    value = os.environ.pop(name, None)
    return value if value is not None else default


def install_ca(path: str = CA_PATH) -> bool:
    """Adds the Bass CA to the container's trust store, if one was mounted."""
    if not os.path.exists(path):
        return False
    for target, update in CA_TARGETS:
        if os.path.isdir(os.path.dirname(target)) and shutil.which(update[0]):
            shutil.copyfile(path, target)
            subprocess.run(update, check=False, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)
            return True
    with open(path, "rb") as f:
        cert = f.read()
    for bundle in CA_BUNDLES:
        if os.path.exists(bundle):
            with open(bundle, "ab") as f:
                f.write(b"\n" + cert)
            return True
    return False


def become_subreaper():
    try:
        libc = ctypes.CDLL(None, use_errno=True)
        libc.prctl(PR_SET_CHILD_SUBREAPER, 1, 0, 0, 0)
    except (OSError, AttributeError):
        pass


def reap_orphans(child_pid: int, stop: threading.Event):
    """Reaps re-parented zombies without touching the main child's status."""
    while not stop.is_set():
        try:
            info = os.waitid(os.P_ALL, 0, os.WEXITED | os.WNOHANG | os.WNOWAIT)
        except ChildProcessError:
            info = None
        if info is not None and info.si_pid != child_pid:
            try:
                os.waitpid(info.si_pid, 0)
            except ChildProcessError:
                pass
            continue
        time.sleep(0.05)


def normalize_times(root: str):
    """Sets every path under root to a fixed mtime, staying on one filesystem."""
    dev = os.lstat(root).st_dev
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = [d for d in dirnames if os.lstat(os.path.join(dirpath, d)).st_dev == dev]
        for name in filenames:
            path = os.path.join(dirpath, name)
            if os.lstat(path).st_dev == dev:
                os.utime(path, (EPOCH, EPOCH), follow_symlinks=False)
        os.utime(dirpath, (EPOCH, EPOCH), follow_symlinks=False)


def encode_stdin(values) -> bytes:
    return b"".join(json.dumps(v, separators=(",", ":")).encode("utf-8") + b"\n" for v in values)


def run(input_path: str, output_path: str, response_from: str) -> int:
    try:
        with open(input_path, encoding="utf-8") as f:
            command = json.load(f)
        os.remove(input_path)
    except OSError as e:
        print(f"read input error: {e}", file=sys.stderr)
        return 1

    args = command.get("args") or []
    if not args:
        print("no command given", file=sys.stderr)
        return 1

    install_ca()
    become_subreaper()

    env = dict(os.environ)
    for pair in command.get("env") or []:
        key, _, value = pair.partition("=")
        env[key] = value

    cwd = command.get("dir") or os.getcwd()
    if not os.path.isabs(cwd):
        cwd = os.path.join(os.getcwd(), cwd)

    try:
        response = open(output_path, "wb")
    except OSError as e:
        print(f"create output error: {e}", file=sys.stderr)
        return 1

    argv = (command.get("entrypoint") or []) + args
    stop = threading.Event()
    with response:
        try:
            proc = subprocess.Popen(argv, cwd=cwd, env=env, stdin=subprocess.PIPE, stdout=subprocess.PIPE)
        except OSError as e:
            print(f"run error: {e}", file=sys.stderr)
            return 1

        reaper = threading.Thread(target=reap_orphans, args=(proc.pid, stop), daemon=True)
        reaper.start()

        feeder = threading.Thread(target=_feed, args=(proc.stdin, encode_stdin(command.get("stdin") or [])), daemon=True)
        feeder.start()

        out = sys.stdout.buffer
        for chunk in iter(lambda: proc.stdout.read1(65536), b""):
            out.write(chunk)
            out.flush()
            if response_from == FROM_STDOUT:
                response.write(chunk)

        code = proc.wait()
        stop.set()

        if response_from == FROM_EXIT:
            response.write(json.dumps(code).encode("utf-8") + b"\n")
            # the point is to observe the status, so a failure is not an error
            code = 0
        elif code == 0 and response_from.startswith(FROM_FILE):
            path = response_from[len(FROM_FILE):]
            if not os.path.isabs(path):
                path = os.path.join(cwd, path)
            try:
                with open(path, "rb") as src:
                    shutil.copyfileobj(src, response)
            except OSError as e:
                print(f"open response file error: {e}", file=sys.stderr)
                return 1

    if code == 0:
        normalize_times(cwd)
    return code


def _feed(pipe, data: bytes):
    try:
        pipe.write(data)
    except BrokenPipeError:
        pass
    finally:
        try:
            pipe.close()
        except BrokenPipeError:
            pass


def main() -> int:
    input_path = _env("_BASS_INPUT", INPUT)
    output_path = _env("_BASS_OUTPUT", OUTPUT)
    response_from = _env("_BASS_RESPONSE_SOURCE", FROM_STDOUT)
    return run(input_path, output_path, response_from)


if __name__ == "__main__":
    sys.exit(main())
