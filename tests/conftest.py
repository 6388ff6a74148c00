from __future__ import annotations

import contextlib
import json
import os
import sys
import threading
import time
import uuid
from pathlib import Path

import docker.errors
import pytest


# A stand-in for the Playwright MCP server: newline-delimited JSON-RPC on
# stdin/stdout, with browser state that lives as long as the process.
_FAKE_SANDBOX_SCRIPT = """#!/usr/bin/env python3
import json
import os
import sys
import time

LOG = os.environ.get("FAKE_SANDBOX_LOG")
if LOG:
    with open(LOG, "a") as f:
        f.write(f"{os.getpid()}\\n")

MUTE = "--mute" in sys.argv

TOOLS = [
    {
        "name": "browser_navigate",
        "description": "Navigate to a URL",
        "inputSchema": {
            "type": "object",
            "properties": {"url": {"type": "string"}},
            "required": ["url"],
        },
    },
    {"name": "browser_snapshot", "description": "Report the current page"},
    {"name": "browser_click", "inputSchema": {"type": "object", "properties": {}}},
    {"name": "browser_wait", "description": "Sleep for a while"},
    {"name": "browser_crash", "description": "Exit without answering"},
]

state = {"url": "about:blank", "history": []}


def send(msg):
    sys.stdout.write(json.dumps(msg) + "\\n")
    sys.stdout.flush()


def reply(msg_id, result=None, error=None):
    msg = {"jsonrpc": "2.0", "id": msg_id}
    if error is not None:
        msg["error"] = error
    else:
        msg["result"] = result
    send(msg)


def text(t):
    return {"content": [{"type": "text", "text": t}]}


while True:
    line = sys.stdin.readline()
    if not line:
        break
    line = line.strip()
    if not line or MUTE:
        continue
    msg = json.loads(line)
    msg_id = msg.get("id")
    method = msg.get("method")
    params = msg.get("params") or {}
    if msg_id is None:
        continue
    if method == "initialize":
        print("fake sandbox starting", file=sys.stderr, flush=True)
        send({"jsonrpc": "2.0", "method": "notifications/message", "params": {"level": "info", "data": "hello"}})
        reply(msg_id, {
            "protocolVersion": params.get("protocolVersion"),
            "capabilities": {"tools": {}},
            "serverInfo": {"name": "fake-playwright", "version": "0.0.1"},
        })
    elif method == "ping":
        reply(msg_id, {})
    elif method == "tools/list":
        reply(msg_id, {"tools": TOOLS})
    elif method == "tools/call":
        name = params.get("name")
        args = params.get("arguments") or {}
        if name == "browser_navigate":
            state["url"] = args["url"]
            state["history"].append(args["url"])
            reply(msg_id, text(f"Navigated to {args['url']}"))
        elif name == "browser_snapshot":
            reply(msg_id, text(f"Page URL: {state['url']} (history: {len(state['history'])})"))
        elif name == "browser_click":
            reply(msg_id, {
                "content": [{"type": "text", "text": "Element not found"}],
                "isError": True,
            })
        elif name == "browser_wait":
            time.sleep(float(args.get("seconds", 1)))
            reply(msg_id, text("waited"))
        elif name == "browser_crash":
            sys.exit(3)
        else:
            reply(msg_id, error={"code": -32602, "message": f"Tool {name} not found"})
    else:
        reply(msg_id, error={"code": -32601, "message": "Method not found"})
"""


# A stand-in for the docker CLI: run/exec/stop/inspect/rm against a JSON
# state file shared with FakeDockerClient below.
_FAKE_DOCKER_SCRIPT = """#!/usr/bin/env python3
import json
import os
import shlex
import sys
import uuid

STATE_PATH = os.environ["FAKE_DOCKER_STATE"]


def load_state():
    if os.path.exists(STATE_PATH):
        with open(STATE_PATH) as f:
            return json.load(f)
    return {"containers": {}}


def save_state(state):
    tmp = f"{STATE_PATH}.{os.getpid()}.tmp"
    with open(tmp, "w") as f:
        json.dump(state, f)
    os.replace(tmp, STATE_PATH)


def die(msg, code=1):
    print(msg, file=sys.stderr)
    sys.exit(code)


def find(state, ref):
    for cid, info in state["containers"].items():
        if cid == ref or cid.startswith(ref) or info.get("name") == ref:
            return cid
    return None


def handle_run(args, state):
    if os.environ.get("FAKE_DOCKER_FAIL_RUN"):
        die("docker: Error response from daemon: pull access denied")
    interactive = "-i" in args
    name = None
    image = None
    i = 0
    while i < len(args):
        tok = args[i]
        if tok in ("--name", "--label", "--security-opt", "-p", "--network", "--entrypoint"):
            if tok == "--name":
                name = args[i + 1]
            i += 2
            continue
        if tok.startswith("-"):
            i += 1
            continue
        image = tok
        break
    if not image:
        die("invalid run command")
    if interactive:
        cmd = shlex.split(os.environ["FAKE_SANDBOX_CMD"])
        os.execvp(cmd[0], cmd)
    cid = uuid.uuid4().hex + uuid.uuid4().hex
    state["containers"][cid] = {"name": name, "image": image, "status": "running", "via": "cli"}
    save_state(state)
    print(cid)
    return 0


def main():
    argv = sys.argv[1:]
    if not argv:
        die("missing command")
    state = load_state()
    cmd = argv[0]

    if cmd == "run":
        return handle_run(argv[1:], state)

    if cmd == "exec":
        args = argv[1:]
        while args and args[0].startswith("-"):
            args = args[1:]
        if not args:
            die("missing container")
        if find(state, args[0]) is None:
            die(f"Error: No such container: {args[0]}")
        inner = args[1:]
        os.execvp(inner[0], inner)

    if cmd == "stop":
        if os.environ.get("FAKE_DOCKER_FAIL_STOP"):
            die("Error response from daemon: cannot stop container")
        cid = find(state, argv[-1])
        if cid is None:
            die(f"Error: No such container: {argv[-1]}")
        del state["containers"][cid]
        save_state(state)
        print(argv[-1])
        return 0

    if cmd == "inspect":
        cid = find(state, argv[-1])
        if cid is None:
            die(f"Error: No such object: {argv[-1]}")
        print(state["containers"][cid]["status"])
        return 0

    die(f"unsupported command: {cmd}")


if __name__ == "__main__":
    sys.exit(main())
"""


def _load_docker_state(path: Path) -> dict:
    if path.exists():
        return json.loads(path.read_text())
    return {"containers": {}}


def _save_docker_state(path: Path, state: dict) -> None:
    tmp = path.with_name(f"{path.name}.{os.getpid()}.{threading.get_ident()}.tmp")
    tmp.write_text(json.dumps(state))
    os.replace(tmp, path)


class FakeContainer:
    def __init__(self, client: "FakeDockerClient", cid: str):
        self.client = client
        self.id = cid

    @property
    def status(self) -> str:
        state = _load_docker_state(self.client.state_file)
        if self.id not in state["containers"]:
            raise docker.errors.NotFound(f"No such container: {self.id}")
        return state["containers"][self.id]["status"]

    def stop(self, timeout: int = 10) -> None:
        self.client.stops.append((self.id, timeout))
        time.sleep(self.client.stop_delay)
        if self.client.fail_stop:
            raise docker.errors.APIError("cannot stop container")
        with self.client.lock:
            state = _load_docker_state(self.client.state_file)
            state["containers"].pop(self.id, None)  # auto_remove
            _save_docker_state(self.client.state_file, state)


class FakeContainers:
    def __init__(self, client: "FakeDockerClient"):
        self.client = client

    def run(self, image, command=None, entrypoint=None, name=None, detach=False, **kwargs):
        self.client.runs.append({"image": image, "name": name, "entrypoint": entrypoint, **kwargs})
        time.sleep(self.client.run_delay)
        if self.client.fail_run:
            raise docker.errors.APIError("unauthorized: authentication required")
        cid = uuid.uuid4().hex + uuid.uuid4().hex
        with self.client.lock:
            state = _load_docker_state(self.client.state_file)
            state["containers"][cid] = {"name": name, "image": image, "status": "running", "via": "api"}
            _save_docker_state(self.client.state_file, state)
        return FakeContainer(self.client, cid)

    def get(self, ref):
        state = _load_docker_state(self.client.state_file)
        for cid, info in state["containers"].items():
            if cid == ref or info.get("name") == ref:
                return FakeContainer(self.client, cid)
        raise docker.errors.NotFound(f"No such container: {ref}")


class FakeDockerClient:
    """Just enough of docker.DockerClient for the engine, backed by the CLI fake's state."""

    def __init__(self, state_file: Path, fail_run: bool = False, fail_stop: bool = False):
        self.state_file = state_file
        self.fail_run = fail_run
        self.fail_stop = fail_stop
        self.run_delay = 0.0
        self.stop_delay = 0.0
        self.lock = threading.Lock()
        self.runs: list[dict] = []
        self.stops: list[tuple[str, int]] = []
        self.containers = FakeContainers(self)


@pytest.fixture
def fake_docker(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> dict:
    """Fake docker CLI on PATH, fake SDK client, and a fake Playwright MCP sandbox."""
    import browser_mcp_orchestrator as bmo

    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()
    fake_cli = bin_dir / "docker"
    fake_cli.write_text(_FAKE_DOCKER_SCRIPT)
    fake_cli.chmod(0o755)

    sandbox_script = tmp_path / "fake_sandbox.py"
    sandbox_script.write_text(_FAKE_SANDBOX_SCRIPT)

    state_file = tmp_path / "fake-docker-state.json"
    sandbox_log = tmp_path / "sandbox-sessions.log"
    sandbox_cmd = f"{sys.executable} {sandbox_script}"

    old_path = os.environ.get("PATH", "")
    monkeypatch.setenv("PATH", f"{bin_dir}:{old_path}")
    monkeypatch.setenv("FAKE_DOCKER_STATE", str(state_file))
    monkeypatch.setenv("FAKE_SANDBOX_LOG", str(sandbox_log))
    monkeypatch.setenv("FAKE_SANDBOX_CMD", sandbox_cmd)

    client = FakeDockerClient(state_file)
    monkeypatch.setattr(bmo.docker, "from_env", lambda: client)

    return {
        "tmp_path": tmp_path,
        "state_file": state_file,
        "sandbox_log": sandbox_log,
        "sandbox_cmd": sandbox_cmd,
        "client": client,
    }


def _session_count(paths: dict) -> int:
    log_file: Path = paths["sandbox_log"]
    if not log_file.exists():
        return 0
    return len(log_file.read_text().split())


def _docker_state(paths: dict) -> dict:
    return _load_docker_state(paths["state_file"])


@contextlib.asynccontextmanager
async def _orchestrator(bmo, paths: dict, **overrides):
    kwargs = {
        "server_command": paths["sandbox_cmd"],
        "startup_timeout": 15.0,
        "health_timeout": 5.0,
        "call_timeout": 15.0,
    }
    kwargs.update(overrides)
    orch = bmo.Orchestrator(**kwargs)
    try:
        yield orch
    finally:
        await orch.shutdown()
