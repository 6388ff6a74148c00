#!/usr/bin/env python3
"""MCP server that runs one Playwright MCP sandbox per session and proxies tool calls to it."""

import asyncio
import collections
import contextlib
import functools
import json
import logging
import os
import random
import re
import shlex
import sys
import time
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Sequence

import docker
from docker.errors import DockerException, NotFound
from mcp import types
from mcp.server.fastmcp import FastMCP
from pydantic import ValidationError

# ── Logging (stderr only, stdout is MCP protocol) ───────────────────────

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(message)s",
    stream=sys.stderr,
)
log = logging.getLogger("browser-orchestrator")

# ── Config ───────────────────────────────────────────────────────────────

DEFAULT_IMAGE = os.environ.get("PLAYWRIGHT_MCP_IMAGE", "mcr.microsoft.com/playwright/mcp")

# "container": keep-alive container + `docker exec -i` session
# "stdio":     the session itself runs `docker run -i --rm` (no engine calls)
SANDBOX_MODE = os.environ.get("SANDBOX_MODE", "container")
SANDBOX_MODES = ("container", "stdio")

# MCP server command inside the image (its ENTRYPOINT is replaced by the keep-alive)
SANDBOX_SERVER_COMMAND = os.environ.get(
    "SANDBOX_SERVER_COMMAND", "node cli.js --headless --browser chromium --no-sandbox"
)

DOCKER_BIN = os.environ.get("DOCKER_BIN", "docker")

MAX_INSTANCES = int(os.environ.get("MAX_INSTANCES", "10"))
EXPOSED_PORT = int(os.environ.get("EXPOSED_PORT_IN_CONTAINER", "3001"))
CONTAINER_NETWORK = os.environ.get("CONTAINER_NETWORK") or None

STARTUP_TIMEOUT = int(os.environ.get("CONTAINER_STARTUP_TIMEOUT_MS", "30000")) / 1000
HEALTH_CHECK_TIMEOUT = int(os.environ.get("HEALTH_CHECK_TIMEOUT_MS", "2500")) / 1000
TOOL_CALL_TIMEOUT = int(os.environ.get("TOOL_CALL_TIMEOUT_MS", "120000")) / 1000

# Readiness polling
PROBE_INTERVAL = 1.0
PROBE_ATTEMPT_TIMEOUT = 5.0

STOP_GRACE_SECONDS = 10
CLI_RUN_TIMEOUT = 300.0  # may include an image pull
CLI_TIMEOUT = 30.0

# Host ports handed to containers: [start, end)
PORT_RANGE = (30000, 50000)
PORT_ALLOCATION_ATTEMPTS = 50

# Error records linger this long before the reaper stops and drops them
ERROR_RETENTION_SECONDS = 300
REAP_INTERVAL = 60

# Control handle for sessions that own their container process
STDIO_MANAGED = "stdio-managed"

CONTAINER_PREFIX = "mcp-playwright"
CONTAINER_LABELS = {
    "mcp.role": "playwright",
    "mcp.orchestrator": "true",
    "mcp.created-by": "browser-mcp-orchestrator",
}

CLIENT_INFO = {"name": "browser-mcp-orchestrator", "version": "0.1.0"}

# Screenshots come back base64-encoded on a single line
MAX_MESSAGE_BYTES = 32 * 1024 * 1024

# Instance states
STARTING = "starting"
RUNNING = "running"
STOPPING = "stopping"
STOPPED = "stopped"
ERROR = "error"

_TRANSITIONS = {
    STARTING: {RUNNING, STOPPING, ERROR},
    RUNNING: {STOPPING, ERROR},
    STOPPING: {STOPPED, ERROR},
    ERROR: {STOPPING, ERROR},
    STOPPED: set(),
}

# Session states
DISCONNECTED = "disconnected"
CONNECTING = "connecting"
CONNECTED = "connected"


# ── Errors ───────────────────────────────────────────────────────────────


class OrchestratorError(RuntimeError):
    pass


class InvalidArgument(OrchestratorError):
    pass


class CapacityExceeded(OrchestratorError):
    pass


class InstanceNotFound(OrchestratorError):
    def __init__(self, instance_id: str):
        super().__init__(f"Instance not found: {instance_id}")
        self.instance_id = instance_id


class ProvisioningFailed(OrchestratorError):
    def __init__(self, message: str, instance_id: Optional[str] = None):
        super().__init__(message)
        self.instance_id = instance_id


class StopFailed(OrchestratorError):
    pass


class InvalidTransition(OrchestratorError):
    pass


class StartupTimeout(OrchestratorError):
    def __init__(self, message: str, instance_id: Optional[str] = None):
        super().__init__(message)
        self.instance_id = instance_id


class SessionConnectionError(OrchestratorError):
    pass


class ToolCallTimeout(SessionConnectionError):
    pass


class ToolInvocationError(OrchestratorError):
    """JSON-RPC error reply from the sandbox. Carries the sandbox's error object verbatim."""

    def __init__(self, error: Any):
        self.error = error
        if isinstance(error, dict):
            message = str(error.get("message", error))
        else:
            message = str(error)
        super().__init__(message)


# ── Helpers ──────────────────────────────────────────────────────────────


async def _run(
    cmd: list[str], timeout: float = CLI_TIMEOUT, input_data: Optional[bytes] = None
) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        *cmd,
        stdin=asyncio.subprocess.PIPE if input_data else None,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(input=input_data), timeout=timeout
        )
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise
    return (
        proc.returncode or 0,
        stdout.decode(errors="replace"),
        stderr.decode(errors="replace"),
    )


async def _in_executor(fn: Callable, *args, **kwargs):
    """Run a blocking docker SDK call off the event loop."""
    return await asyncio.get_running_loop().run_in_executor(
        None, functools.partial(fn, *args, **kwargs)
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_IMAGE_RE = re.compile(r"^[^\s]+$")


def _validate_instance_id(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument("instance_id is required")
    try:
        return str(uuid.UUID(value.strip()))
    except ValueError:
        raise InvalidArgument(f"Invalid instance id: {value!r}") from None


def _validate_tool_name(value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise InvalidArgument("tool name must be a non-empty string")
    return value.strip()


def _validate_args(value: Any) -> dict:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise InvalidArgument(f"args must be an object, got {type(value).__name__}")
    return value


def _validate_name(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    if not isinstance(value, str) or len(value) > 64 or not _NAME_RE.match(value):
        raise InvalidArgument(
            f"Invalid instance name {value!r}: use letters, digits, '.', '_' or '-' (max 64)"
        )
    return value


def _validate_image(value: Optional[str]) -> Optional[str]:
    if value is None or value == "":
        return None
    if not isinstance(value, str) or not _IMAGE_RE.match(value):
        raise InvalidArgument(f"Invalid image: {value!r}")
    return value


def _normalize_tool(raw: dict) -> dict:
    data = dict(raw)
    if not data.get("inputSchema"):
        data["inputSchema"] = {"type": "object", "properties": {}}
    tool = types.Tool.model_validate(data)
    return {
        "name": tool.name,
        "description": tool.description or "",
        "inputSchema": tool.inputSchema,
    }


def _failure(error: Exception, **extra) -> dict:
    result = {"success": False, "error": str(error), "errorType": type(error).__name__}
    instance_id = getattr(error, "instance_id", None)
    if instance_id:
        result["instanceId"] = instance_id
    result.update(extra)
    return result


def _tool_error(text: str) -> dict:
    return {"content": [{"type": "text", "text": text}], "isError": True}


# ── Instance ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Instance:
    id: str
    image: str
    connection_target: tuple[str, ...]
    control_handle: Optional[str] = None
    display_name: Optional[str] = None
    port: Optional[int] = None
    created_at: str = field(default_factory=_now_iso)
    status: str = STARTING
    error: Optional[str] = None
    status_since: float = field(default_factory=time.time, compare=False)

    def to_dict(self) -> dict:
        info = {
            "id": self.id,
            "name": self.display_name,
            "image": self.image,
            "containerId": self.control_handle,
            "port": self.port,
            "status": self.status,
            "createdAt": self.created_at,
        }
        if self.error:
            info["error"] = self.error
        return info


# ── Resource allocator ───────────────────────────────────────────────────


class ResourceAllocator:
    """Instance ids, host ports and container names. No I/O."""

    def __init__(
        self,
        port_range: tuple[int, int] = PORT_RANGE,
        attempts: int = PORT_ALLOCATION_ATTEMPTS,
        rng: Optional[random.Random] = None,
    ):
        self.port_range = port_range
        self.attempts = attempts
        self._rng = rng or random.Random()
        self._issued: set[str] = set()

    def new_instance_id(self) -> str:
        while True:
            instance_id = str(uuid.uuid4())
            if instance_id not in self._issued:
                self._issued.add(instance_id)
                return instance_id

    def allocate_port(self, in_use: set[int]) -> int:
        lo, hi = self.port_range
        for _ in range(self.attempts):
            port = self._rng.randrange(lo, hi)
            if port not in in_use:
                return port
        raise ProvisioningFailed(
            f"No free host port in {lo}-{hi - 1} after {self.attempts} attempts"
        )

    @staticmethod
    def container_name(instance_id: str, display_name: Optional[str] = None) -> str:
        short = instance_id.replace("-", "")[:8]
        if display_name:
            return f"{CONTAINER_PREFIX}-{display_name}-{short}"
        return f"{CONTAINER_PREFIX}-{short}"


# ── Instance registry ────────────────────────────────────────────────────


class InstanceRegistry:
    """
    In-memory map of instance id -> Instance. The only record of which sessions exist.

    Records are frozen; status changes swap in a new value, so callers only
    ever hold snapshots. No method awaits, so every mutation runs to
    completion on the event loop before another task can observe the map.
    """

    def __init__(self):
        self._instances: dict[str, Instance] = {}

    def register(self, instance: Instance) -> Instance:
        if instance.id in self._instances:
            raise ValueError(f"Instance {instance.id} is already registered")
        self._instances[instance.id] = instance
        return instance

    def get(self, instance_id: str) -> Optional[Instance]:
        return self._instances.get(instance_id)

    def list_all(self) -> list[Instance]:
        return list(self._instances.values())

    def remove(self, instance_id: str) -> Optional[Instance]:
        return self._instances.pop(instance_id, None)

    def count(self) -> int:
        return len(self._instances)

    def ports_in_use(self) -> set[int]:
        return {i.port for i in self._instances.values() if i.port is not None}

    def set_status(
        self, instance_id: str, status: str, error: Optional[str] = None
    ) -> Instance:
        current = self._instances.get(instance_id)
        if current is None:
            raise InstanceNotFound(instance_id)
        if status not in _TRANSITIONS[current.status]:
            raise InvalidTransition(
                f"Instance {instance_id}: invalid transition {current.status} -> {status}"
            )
        updated = replace(
            current,
            status=status,
            error=error if status == ERROR else current.error,
            status_since=time.time(),
        )
        self._instances[instance_id] = updated
        return updated

    def clear(self):
        self._instances.clear()


# ── Container engine (API first, CLI fallback) ───────────────────────────


@dataclass(frozen=True)
class ContainerSpec:
    name: str
    image: str
    labels: dict
    host_port: Optional[int] = None
    exposed_port: int = EXPOSED_PORT
    network: Optional[str] = None
    entrypoint: str = "tail"
    command: tuple[str, ...] = ("-f", "/dev/null")


class ContainerEngine:
    """
    Starts, stops and inspects containers through the Docker Engine API.

    Every call that fails on the API falls back once to the equivalent
    `docker` CLI invocation. Some environments reject authenticated registry
    pulls through the API while the CLI (which reads the user's credential
    helpers) succeeds.
    """

    def __init__(
        self,
        docker_bin: str = DOCKER_BIN,
        client_factory: Optional[Callable[[], Any]] = None,
    ):
        self.docker_bin = docker_bin
        self._client_factory = client_factory
        self._client = None

    @property
    def client(self):
        if self._client is None:
            factory = self._client_factory or docker.from_env
            self._client = factory()
        return self._client

    # ── run ──

    async def run(self, spec: ContainerSpec) -> str:
        """Start a detached container. Returns its id."""
        try:
            container_id = await _in_executor(self._api_run, spec)
            log.info(f"Container {spec.name} started via Docker API: {container_id[:12]}")
            return container_id
        except (DockerException, OSError) as e:
            api_error = e
            log.warning(
                f"Docker API could not start {spec.name} ({e}), falling back to CLI"
            )

        try:
            container_id = await self._cli_run(spec)
        except (RuntimeError, OSError, asyncio.TimeoutError) as e:
            log.error(f"Docker CLI could not start {spec.name} either: {e}")
            raise ProvisioningFailed(
                f"Could not start container {spec.name}: "
                f"api: {api_error}; cli: {e or type(e).__name__}"
            ) from e
        log.info(f"Container {spec.name} started via Docker CLI: {container_id[:12]}")
        return container_id

    def _api_run(self, spec: ContainerSpec) -> str:
        ports = {f"{spec.exposed_port}/tcp": spec.host_port} if spec.host_port else None
        container = self.client.containers.run(
            spec.image,
            command=list(spec.command),
            entrypoint=[spec.entrypoint],
            name=spec.name,
            detach=True,
            auto_remove=True,
            labels=dict(spec.labels),
            ports=ports,
            network=spec.network,
            cap_add=["SYS_ADMIN"],
            security_opt=["seccomp=unconfined"],
            extra_hosts={"host.docker.internal": "host-gateway"},
        )
        return container.id

    def _cli_run_args(self, spec: ContainerSpec) -> list[str]:
        cmd = [self.docker_bin, "run", "-d", "--rm", "--name", spec.name]
        for key, value in spec.labels.items():
            cmd.extend(["--label", f"{key}={value}"])
        cmd.extend(
            [
                "--cap-add=SYS_ADMIN",
                "--security-opt",
                "seccomp=unconfined",
                "--add-host=host.docker.internal:host-gateway",
            ]
        )
        if spec.host_port:
            cmd.extend(["-p", f"{spec.host_port}:{spec.exposed_port}"])
        if spec.network:
            cmd.extend(["--network", spec.network])
        cmd.extend(["--entrypoint", spec.entrypoint, spec.image, *spec.command])
        return cmd

    async def _cli_run(self, spec: ContainerSpec) -> str:
        code, stdout, stderr = await _run(self._cli_run_args(spec), timeout=CLI_RUN_TIMEOUT)
        if code != 0:
            raise RuntimeError(f"docker run exited {code}: {stderr.strip()}")
        lines = stdout.strip().splitlines()
        if not lines:
            raise RuntimeError("docker run printed no container id")
        return lines[-1].strip()

    # ── stop ──

    async def stop(self, handle: str, grace: int = STOP_GRACE_SECONDS):
        try:
            await _in_executor(self._api_stop, handle, grace)
            return
        except (DockerException, OSError) as e:
            api_error = e
            log.warning(f"Docker API could not stop {handle[:12]} ({e}), falling back to CLI")

        try:
            code, _, stderr = await _run(
                [self.docker_bin, "stop", "-t", str(grace), handle],
                timeout=grace + CLI_TIMEOUT,
            )
        except (OSError, asyncio.TimeoutError) as e:
            raise StopFailed(
                f"Could not stop container {handle[:12]}: api: {api_error}; cli: {e}"
            ) from e
        if code != 0 and "no such container" not in stderr.lower():
            raise StopFailed(
                f"Could not stop container {handle[:12]}: "
                f"api: {api_error}; cli: {stderr.strip()}"
            )

    def _api_stop(self, handle: str, grace: int):
        try:
            container = self.client.containers.get(handle)
        except NotFound:
            return  # auto-removed already
        try:
            container.stop(timeout=grace)
        except NotFound:
            pass

    # ── inspect ──

    async def inspect(self, handle: str) -> Optional[str]:
        """Container state ("running", "exited", ...), or None when unknown."""
        try:
            return await _in_executor(self._api_inspect, handle)
        except (DockerException, OSError) as e:
            log.debug(f"Docker API inspect failed for {handle[:12]}: {e}")

        try:
            code, stdout, _ = await _run(
                [self.docker_bin, "inspect", "-f", "{{.State.Status}}", handle]
            )
        except (OSError, asyncio.TimeoutError):
            return None
        if code != 0:
            return None
        return stdout.strip() or None

    def _api_inspect(self, handle: str) -> Optional[str]:
        try:
            return self.client.containers.get(handle).status
        except NotFound:
            return None


# ── Sandbox provisioner ──────────────────────────────────────────────────


class SandboxProvisioner:
    """Creates and stops sandboxes under the capacity cap and keeps the registry in step."""

    def __init__(
        self,
        registry: InstanceRegistry,
        engine: Optional[ContainerEngine] = None,
        allocator: Optional[ResourceAllocator] = None,
        image: str = DEFAULT_IMAGE,
        mode: str = SANDBOX_MODE,
        max_instances: int = MAX_INSTANCES,
        server_command: str = SANDBOX_SERVER_COMMAND,
        exposed_port: int = EXPOSED_PORT,
        network: Optional[str] = CONTAINER_NETWORK,
        docker_bin: str = DOCKER_BIN,
        stop_grace: int = STOP_GRACE_SECONDS,
    ):
        if mode not in SANDBOX_MODES:
            raise ValueError(f"Unknown sandbox mode {mode!r}, expected one of {SANDBOX_MODES}")
        self.registry = registry
        self.engine = engine or ContainerEngine(docker_bin=docker_bin)
        self.allocator = allocator or ResourceAllocator()
        self.image = image
        self.mode = mode
        self.max_instances = max_instances
        self.server_command = shlex.split(server_command)
        self.exposed_port = exposed_port
        self.network = network
        self.docker_bin = docker_bin
        self.stop_grace = stop_grace
        self._pending = 0

    def _reserve_slot(self):
        # Counts creates still waiting on the engine so concurrent calls can't overshoot.
        in_use = self.registry.count() + self._pending
        if in_use >= self.max_instances:
            raise CapacityExceeded(
                f"Maximum instances limit reached: {self.max_instances}"
            )
        self._pending += 1

    async def create(
        self, image: Optional[str] = None, display_name: Optional[str] = None
    ) -> Instance:
        image = image or self.image
        self._reserve_slot()
        try:
            instance_id = self.allocator.new_instance_id()
            name = self.allocator.container_name(instance_id, display_name)

            if self.mode == "stdio":
                instance = Instance(
                    id=instance_id,
                    image=image,
                    display_name=display_name,
                    control_handle=STDIO_MANAGED,
                    connection_target=(
                        self.docker_bin, "run", "-i", "--rm", "--init", "--name", name, image,
                    ),
                )
                self.registry.register(instance)
                log.info(f"Registered instance {instance_id} ({name}, {image}, stdio-managed)")
                return instance

            port = self.allocator.allocate_port(self.registry.ports_in_use())
            spec = ContainerSpec(
                name=name,
                image=image,
                labels={**CONTAINER_LABELS, "mcp.instance-id": instance_id},
                host_port=port,
                exposed_port=self.exposed_port,
                network=self.network,
            )
            try:
                handle = await self.engine.run(spec)
            except ProvisioningFailed as e:
                failed = Instance(
                    id=instance_id,
                    image=image,
                    display_name=display_name,
                    connection_target=(),
                    port=port,
                    status=ERROR,
                    error=str(e),
                )
                self.registry.register(failed)
                raise ProvisioningFailed(str(e), instance_id=instance_id) from e

            instance = Instance(
                id=instance_id,
                image=image,
                display_name=display_name,
                control_handle=handle,
                port=port,
                connection_target=(
                    self.docker_bin, "exec", "-i", handle, *self.server_command,
                ),
            )
            self.registry.register(instance)
            log.info(f"Registered instance {instance_id} ({name}, {image}, port {port})")
            return instance
        finally:
            self._pending -= 1

    async def stop(self, instance: Instance, claimed: bool = False):
        """
        Stop the instance's container and drop its record.

        The move to `stopping` is the claim on the instance: a second stop
        fails with InvalidTransition. Callers that already made the move
        pass claimed=True.
        """
        if not claimed:
            self.registry.set_status(instance.id, STOPPING)
        handle = instance.control_handle
        if handle and handle != STDIO_MANAGED:
            try:
                await self.engine.stop(handle, self.stop_grace)
            except StopFailed as e:
                if self.registry.get(instance.id) is not None:
                    self.registry.set_status(instance.id, ERROR, error=str(e))
                log.error(f"Failed to stop instance {instance.id}: {e}")
                raise
        # Shutdown may have cleared the registry while the engine call ran
        if self.registry.get(instance.id) is not None:
            self.registry.set_status(instance.id, STOPPED)
            self.registry.remove(instance.id)
        log.info(f"Stopped instance {instance.id}")

    async def inspect(self, instance: Instance) -> Optional[str]:
        handle = instance.control_handle
        if not handle or handle == STDIO_MANAGED:
            return None
        return await self.engine.inspect(handle)


# ── Session client (JSON-RPC over stdio) ─────────────────────────────────


class SessionClient:
    """
    One MCP session over the stdin/stdout of a spawned process.

    Messages are newline-delimited JSON-RPC 2.0. A reader task routes replies
    to waiting requests by id; replies for requests that already timed out
    are dropped. Requests are serialized: the sandbox assumes a single client
    and one request in flight.

    A client connects at most once. After close or a lost connection it is
    dead and the pool replaces it.
    """

    def __init__(self, instance_id: str, command: Sequence[str]):
        self.instance_id = instance_id
        self.command = tuple(command)
        self.state = DISCONNECTED
        self.server_info: Optional[dict] = None
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._reader: Optional[asyncio.Task] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._pending: dict[int, asyncio.Future] = {}
        self._next_id = 0
        self._lock = asyncio.Lock()
        self._connect_lock = asyncio.Lock()
        self._stderr_tail: collections.deque = collections.deque(maxlen=20)
        self._ever_connected = False
        self._closed = False
        self._last_error: Optional[str] = None

    def is_alive(self) -> bool:
        return (
            self.state == CONNECTED
            and self._proc is not None
            and self._proc.returncode is None
            and self._reader is not None
            and not self._reader.done()
        )

    def is_dead(self) -> bool:
        """Closed, or was connected and lost the connection."""
        return self._closed or (self._ever_connected and not self.is_alive())

    @property
    def busy(self) -> bool:
        """A request is in flight; anything else queues behind it."""
        return self._lock.locked()

    async def connect(self, timeout: float = STARTUP_TIMEOUT) -> bool:
        """
        Spawn the process and run the initialize handshake.

        Returns True if this call opened the connection, False if it was already open.
        """
        async with self._connect_lock:
            if self.is_alive():
                return False
            if self.is_dead():
                raise SessionConnectionError(
                    self._last_error or f"Session for instance {self.instance_id} is closed"
                )

            self.state = CONNECTING
            log.debug(f"[{self.instance_id}] launching: {shlex.join(self.command)}")
            try:
                self._proc = await asyncio.create_subprocess_exec(
                    *self.command,
                    stdin=asyncio.subprocess.PIPE,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                    limit=MAX_MESSAGE_BYTES,
                )
            except OSError as e:
                self._last_error = f"Could not launch session for instance {self.instance_id}: {e}"
                self.state = DISCONNECTED
                self._closed = True
                raise SessionConnectionError(self._last_error) from e

            self._reader = asyncio.create_task(self._read_loop())
            self._stderr_task = asyncio.create_task(self._drain_stderr())

            try:
                result = await self._request(
                    "initialize",
                    {
                        "protocolVersion": types.LATEST_PROTOCOL_VERSION,
                        "capabilities": {},
                        "clientInfo": CLIENT_INFO,
                    },
                    timeout,
                )
                await self._notify("notifications/initialized")
            except (SessionConnectionError, ToolInvocationError) as e:
                self._closed = True
                await self._teardown()
                message = f"Handshake with instance {self.instance_id} failed: {e}"
                hint = self._stderr_hint()
                if hint not in message:
                    message += hint
                self._last_error = message
                raise SessionConnectionError(message) from e

            self.server_info = result.get("serverInfo")
            self.state = CONNECTED
            self._ever_connected = True
            log.info(
                f"[{self.instance_id}] session open "
                f"(server={(self.server_info or {}).get('name', '?')})"
            )
            return True

    async def list_tools(self, timeout: float = TOOL_CALL_TIMEOUT) -> list[dict]:
        tools: list[dict] = []
        cursor = None
        async with self._lock:
            while True:
                params = {"cursor": cursor} if cursor else {}
                result = await self._request("tools/list", params, timeout)
                tools.extend(result.get("tools") or [])
                cursor = result.get("nextCursor")
                if not cursor:
                    return tools

    async def call_tool(
        self, name: str, arguments: dict, timeout: float = TOOL_CALL_TIMEOUT
    ) -> dict:
        async with self._lock:
            return await self._request(
                "tools/call", {"name": name, "arguments": arguments}, timeout
            )

    async def ping(self, timeout: float = HEALTH_CHECK_TIMEOUT) -> bool:
        async def _locked_ping():
            async with self._lock:
                await self._request("ping", {}, timeout)

        try:
            await asyncio.wait_for(_locked_ping(), timeout=timeout)
            return True
        except (OrchestratorError, asyncio.TimeoutError) as e:
            log.debug(f"[{self.instance_id}] ping failed: {e}")
            return False

    async def close(self):
        self._closed = True
        await self._teardown()

    # ── internals ──

    async def _request(self, method: str, params: dict, timeout: float) -> dict:
        if self._reader is None or self._reader.done():
            raise SessionConnectionError(
                f"Session for instance {self.instance_id} is not connected{self._stderr_hint()}"
            )
        self._next_id += 1
        request_id = self._next_id
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send(
                {"jsonrpc": "2.0", "id": request_id, "method": method, "params": params}
            )
            message = await asyncio.wait_for(future, timeout=timeout)
        except asyncio.TimeoutError:
            raise ToolCallTimeout(
                f"'{method}' on instance {self.instance_id} timed out after {timeout}s"
            ) from None
        finally:
            self._pending.pop(request_id, None)

        if "error" in message:
            raise ToolInvocationError(message["error"])
        return message.get("result") or {}

    async def _notify(self, method: str, params: Optional[dict] = None):
        message: dict = {"jsonrpc": "2.0", "method": method}
        if params is not None:
            message["params"] = params
        await self._send(message)

    async def _send(self, message: dict):
        proc = self._proc
        if proc is None or proc.stdin is None or proc.returncode is not None:
            raise SessionConnectionError(
                f"Session for instance {self.instance_id} is not connected"
            )
        try:
            proc.stdin.write(json.dumps(message).encode() + b"\n")
            await proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            raise SessionConnectionError(
                f"Session for instance {self.instance_id} lost: {e}{self._stderr_hint()}"
            ) from e

    async def _read_loop(self):
        proc = self._proc
        if proc is None or proc.stdout is None:
            return
        try:
            while True:
                line = await proc.stdout.readline()
                if not line:
                    break
                text = line.decode(errors="replace").strip()
                if not text:
                    continue
                try:
                    message = json.loads(text)
                except json.JSONDecodeError:
                    log.debug(f"[{self.instance_id}] non-JSON output: {text[:200]}")
                    continue
                if isinstance(message, dict):
                    await self._dispatch(message)
        except ValueError as e:
            # StreamReader raises ValueError when a line exceeds MAX_MESSAGE_BYTES
            log.error(f"[{self.instance_id}] unreadable message from sandbox: {e}")
        finally:
            self.state = DISCONNECTED
            lost = SessionConnectionError(
                f"Session for instance {self.instance_id} closed{self._stderr_hint()}"
            )
            for future in self._pending.values():
                if not future.done():
                    future.set_exception(lost)

    async def _dispatch(self, message: dict):
        method = message.get("method")
        msg_id = message.get("id")
        if method is not None:
            if msg_id is None:
                log.debug(f"[{self.instance_id}] notification: {method}")
                return
            # Requests from the sandbox to us
            if method == "ping":
                reply: dict = {"jsonrpc": "2.0", "id": msg_id, "result": {}}
            else:
                reply = {
                    "jsonrpc": "2.0",
                    "id": msg_id,
                    "error": {"code": -32601, "message": f"Method not found: {method}"},
                }
            try:
                await self._send(reply)
            except SessionConnectionError as e:
                log.debug(f"[{self.instance_id}] could not answer {method}: {e}")
            return

        future = self._pending.get(msg_id)
        if future is None or future.done():
            log.debug(f"[{self.instance_id}] dropping reply for request {msg_id}")
            return
        future.set_result(message)

    async def _drain_stderr(self):
        proc = self._proc
        if proc is None or proc.stderr is None:
            return
        while True:
            try:
                line = await proc.stderr.readline()
            except ValueError:
                continue
            if not line:
                return
            text = line.decode(errors="replace").rstrip()
            if text:
                self._stderr_tail.append(text)
                log.debug(f"[{self.instance_id}] stderr: {text}")

    def _stderr_hint(self) -> str:
        if not self._stderr_tail:
            return ""
        return f" (stderr: {self._stderr_tail[-1][:300]})"

    async def _teardown(self):
        proc, self._proc = self._proc, None
        self.state = DISCONNECTED
        if proc is not None and proc.returncode is None:
            if proc.stdin:
                proc.stdin.close()
            try:
                await asyncio.wait_for(proc.wait(), timeout=3)
            except asyncio.TimeoutError:
                proc.kill()
                await proc.wait()
        if self._stderr_task is not None and not self._stderr_task.done():
            # Process is gone; let its last stderr lines land for error messages
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(asyncio.shield(self._stderr_task), timeout=1)
        for task in (self._reader, self._stderr_task):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._reader = None
        self._stderr_task = None


# ── Readiness prober ─────────────────────────────────────────────────────


class ReadinessProber:
    """
    Polls a sandbox with throwaway initialize handshakes until it answers.

    Probe sessions are separate from the pool: a cached session is only ever
    opened once the sandbox is known to be usable.
    """

    def __init__(
        self,
        interval: float = PROBE_INTERVAL,
        attempt_timeout: float = PROBE_ATTEMPT_TIMEOUT,
        client_factory: Callable[..., SessionClient] = SessionClient,
    ):
        self.interval = interval
        self.attempt_timeout = attempt_timeout
        self.client_factory = client_factory

    async def check(self, instance: Instance, timeout: float) -> bool:
        client = self.client_factory(instance.id, instance.connection_target)
        try:
            await client.connect(timeout=timeout)
            return True
        except SessionConnectionError as e:
            log.debug(f"Probe of instance {instance.id} failed: {e}")
            return False
        finally:
            await client.close()

    async def await_ready(self, instance: Instance, timeout: float = STARTUP_TIMEOUT):
        deadline = time.monotonic() + timeout
        attempts = 0
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            attempts += 1
            if await self.check(instance, min(self.attempt_timeout, remaining)):
                log.info(f"Instance {instance.id} ready after {attempts} probe(s)")
                return
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                break
            await asyncio.sleep(min(self.interval, remaining))
        raise StartupTimeout(
            f"Instance {instance.id} did not become ready within {timeout}s "
            f"({attempts} probe(s))",
            instance_id=instance.id,
        )


# ── Session client pool ──────────────────────────────────────────────────


class ClientPool:
    """
    Exactly one SessionClient per instance, reused by every call.

    The sandbox keeps browser state (open pages, history) per session, so a
    new connection per call loses everything the previous call did.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        client_factory: Callable[..., SessionClient] = SessionClient,
        connect_timeout: float = STARTUP_TIMEOUT,
        call_timeout: float = TOOL_CALL_TIMEOUT,
    ):
        self.registry = registry
        self.client_factory = client_factory
        self.connect_timeout = connect_timeout
        self.call_timeout = call_timeout
        self.connections_opened = 0
        self._clients: dict[str, SessionClient] = {}

    def __len__(self) -> int:
        return len(self._clients)

    def get_connected(self, instance_id: str) -> Optional[SessionClient]:
        client = self._clients.get(instance_id)
        if client is not None and client.is_alive():
            return client
        return None

    def _get_or_create(self, instance: Instance) -> tuple[SessionClient, Optional[SessionClient]]:
        # No await in here: lookup, eviction and insert happen as one step.
        stale = None
        client = self._clients.get(instance.id)
        if client is not None and client.is_dead():
            stale, client = client, None
        if client is None:
            client = self.client_factory(instance.id, instance.connection_target)
            self._clients[instance.id] = client
        return client, stale

    def _evict(self, instance_id: str, client: SessionClient):
        if self._clients.get(instance_id) is client:
            del self._clients[instance_id]

    def _usable(self, instance_id: str) -> Instance:
        instance = self.registry.get(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        if instance.status != RUNNING:
            raise InvalidArgument(f"Instance {instance_id} is {instance.status}")
        return instance

    async def _session(self, instance_id: str) -> SessionClient:
        instance = self._usable(instance_id)

        client, stale = self._get_or_create(instance)
        if stale is not None:
            log.warning(f"Session for instance {instance_id} died, reconnecting")
            await stale.close()

        try:
            opened = await client.connect(timeout=self.connect_timeout)
        except SessionConnectionError:
            self._evict(instance_id, client)
            await client.close()
            raise
        if opened:
            self.connections_opened += 1

        # The instance may have been stopped while the handshake ran
        try:
            self._usable(instance_id)
        except OrchestratorError:
            self._evict(instance_id, client)
            await client.close()
            raise
        return client

    async def connect(self, instance_id: str) -> SessionClient:
        """Open (or reuse) the instance's session without sending a request."""
        return await self._session(instance_id)

    async def _with_session(self, instance_id: str, call: Callable):
        client = await self._session(instance_id)
        try:
            return await call(client)
        except ToolCallTimeout:
            raise  # the session stays usable
        except SessionConnectionError:
            self._evict(instance_id, client)
            await client.close()
            raise

    async def list_tools(self, instance_id: str) -> list[dict]:
        raw = await self._with_session(
            instance_id, lambda c: c.list_tools(timeout=self.call_timeout)
        )
        tools = []
        for entry in raw:
            try:
                tools.append(_normalize_tool(entry))
            except (TypeError, ValueError) as e:
                log.warning(f"Skipping malformed tool from instance {instance_id}: {e}")
        log.info(f"Instance {instance_id} offers {len(tools)} tools")
        return tools

    async def call_tool(self, instance_id: str, tool: str, args: dict) -> dict:
        log.debug(f"[{instance_id}] call {tool} {args}")
        result = await self._with_session(
            instance_id, lambda c: c.call_tool(tool, args, timeout=self.call_timeout)
        )
        log.debug(f"[{instance_id}] {tool} done (isError={result.get('isError', False)})")
        return result

    async def disconnect(self, instance_id: str):
        client = self._clients.pop(instance_id, None)
        if client is not None:
            await client.close()
            log.debug(f"Disconnected session for instance {instance_id}")

    async def disconnect_all(self):
        clients = list(self._clients.items())
        self._clients.clear()
        log.info(f"Disconnecting {len(clients)} session(s)")
        for instance_id, client in clients:
            try:
                await client.close()
            except Exception as e:
                log.warning(f"Error disconnecting session for {instance_id}: {e}")


# ── Orchestrator ─────────────────────────────────────────────────────────


class Orchestrator:
    """Validates requests and wires the registry, provisioner, prober and pool together."""

    def __init__(
        self,
        image: str = DEFAULT_IMAGE,
        mode: str = SANDBOX_MODE,
        max_instances: int = MAX_INSTANCES,
        server_command: str = SANDBOX_SERVER_COMMAND,
        startup_timeout: float = STARTUP_TIMEOUT,
        health_timeout: float = HEALTH_CHECK_TIMEOUT,
        call_timeout: float = TOOL_CALL_TIMEOUT,
        docker_bin: str = DOCKER_BIN,
        engine: Optional[ContainerEngine] = None,
        allocator: Optional[ResourceAllocator] = None,
        prober: Optional[ReadinessProber] = None,
        client_factory: Callable[..., SessionClient] = SessionClient,
        error_retention: float = ERROR_RETENTION_SECONDS,
    ):
        self.registry = InstanceRegistry()
        self.provisioner = SandboxProvisioner(
            self.registry,
            engine=engine,
            allocator=allocator,
            image=image,
            mode=mode,
            max_instances=max_instances,
            server_command=server_command,
            docker_bin=docker_bin,
        )
        self.prober = prober or ReadinessProber(client_factory=client_factory)
        self.pool = ClientPool(
            self.registry,
            client_factory=client_factory,
            connect_timeout=startup_timeout,
            call_timeout=call_timeout,
        )
        self.startup_timeout = startup_timeout
        self.health_timeout = health_timeout
        self.error_retention = error_retention
        self._reaper_task: Optional[asyncio.Task] = None
        self._shutting_down = False
        # Readiness waits by instance id; stopping an instance cancels its wait
        self._readiness: dict[str, asyncio.Task] = {}
        # One future per provision or stop in flight, resolved when it returns
        self._inflight: set[asyncio.Future] = set()

    def _resolve(self, instance_id: str) -> Instance:
        instance = self.registry.get(instance_id)
        if instance is None:
            raise InstanceNotFound(instance_id)
        return instance

    def _ensure_reaper(self):
        if self._reaper_task is None or self._reaper_task.done():
            self._reaper_task = asyncio.create_task(self._reap_loop())

    @contextlib.contextmanager
    def _in_flight(self):
        done = asyncio.get_running_loop().create_future()
        self._inflight.add(done)
        try:
            yield
        finally:
            self._inflight.discard(done)
            done.set_result(None)

    def _is_starting(self, instance_id: str) -> bool:
        instance = self.registry.get(instance_id)
        return instance is not None and instance.status == STARTING

    async def _provision(
        self, image: Optional[str] = None, name: Optional[str] = None
    ) -> Instance:
        if self._shutting_down:
            raise OrchestratorError("Orchestrator is shutting down")
        self._ensure_reaper()
        image = _validate_image(image)
        name = _validate_name(name)

        with self._in_flight():
            return await self._create_and_wait(image, name)

    async def _create_and_wait(self, image: Optional[str], name: Optional[str]) -> Instance:
        try:
            instance = await self.provisioner.create(image, name)
        except ProvisioningFailed as e:
            if self._shutting_down and e.instance_id:
                self.registry.remove(e.instance_id)
            raise

        if self._shutting_down:
            # Shutdown already swept the registry; this one is ours to clean up
            await self._release(self._claim(instance.id))
            raise OrchestratorError("Orchestrator is shutting down")

        readiness = asyncio.create_task(
            self.prober.await_ready(instance, self.startup_timeout)
        )
        self._readiness[instance.id] = readiness
        try:
            await readiness
        except asyncio.CancelledError:
            if instance.id in self._readiness:
                raise  # we were cancelled, not the readiness wait
            raise ProvisioningFailed(
                f"Instance {instance.id} was stopped while starting", instance_id=instance.id
            ) from None
        except StartupTimeout as e:
            if self._is_starting(instance.id):
                self.registry.set_status(instance.id, ERROR, error=str(e))
            log.error(str(e))
            raise
        finally:
            self._readiness.pop(instance.id, None)

        if not self._is_starting(instance.id):
            raise ProvisioningFailed(
                f"Instance {instance.id} was stopped while starting", instance_id=instance.id
            )
        return self.registry.set_status(instance.id, RUNNING)

    def _claim(self, instance_id: str) -> Instance:
        """
        Move an instance to `stopping`. No await: once this returns, no other
        caller can claim it and the pool refuses new sessions for it.
        """
        instance = self._resolve(instance_id)
        if instance.status == STOPPING:
            raise InvalidArgument(f"Instance {instance_id} is already stopping")
        instance = self.registry.set_status(instance_id, STOPPING)
        readiness = self._readiness.pop(instance_id, None)
        if readiness is not None:
            readiness.cancel()
        return instance

    async def _release(self, instance: Instance):
        with self._in_flight():
            await self.pool.disconnect(instance.id)
            await self.provisioner.stop(instance, claimed=True)

    # ── operations ──

    async def new_instance(
        self, image: Optional[str] = None, name: Optional[str] = None
    ) -> dict:
        try:
            instance = await self._provision(image, name)
        except OrchestratorError as e:
            log.error(f"new_instance failed: {e}")
            return _failure(e)
        return {"success": True, "instanceId": instance.id, "instance": instance.to_dict()}

    def list_instances(self) -> dict:
        instances = [i.to_dict() for i in self.registry.list_all()]
        log.debug(f"Listed {len(instances)} instance(s)")
        return {"success": True, "instances": instances, "count": len(instances)}

    async def list_tools(self, instance_id: Optional[str] = None) -> dict:
        try:
            if instance_id:
                instance_id = _validate_instance_id(instance_id)
            else:
                instance_id = (await self._provision()).id
                log.info(f"Auto-created instance {instance_id} for list_tools")
            tools = await self.pool.list_tools(instance_id)
        except OrchestratorError as e:
            log.error(f"list_tools failed for {instance_id}: {e}")
            if instance_id and not isinstance(e, InvalidArgument):
                return _failure(e, instanceId=instance_id)
            return _failure(e)
        return {
            "success": True,
            "instanceId": instance_id,
            "tools": tools,
            "count": len(tools),
        }

    async def call_tool(
        self, instance_id: str, tool: str, args: Optional[dict] = None
    ) -> dict:
        """
        Forward a tool call. The sandbox's result comes back untouched,
        including its own isError results.
        """
        try:
            instance_id = _validate_instance_id(instance_id)
            tool = _validate_tool_name(tool)
            args = _validate_args(args)
            return await self.pool.call_tool(instance_id, tool, args)
        except ToolInvocationError as e:
            log.warning(f"Sandbox rejected {tool!r} on {instance_id}: {e}")
            return _tool_error(str(e))
        except OrchestratorError as e:
            log.error(f"call_tool {tool!r} on {instance_id} failed: {e}")
            return _tool_error(f"Error calling tool '{tool}': {e}")

    async def stop_instance(self, instance_id: str) -> dict:
        try:
            instance_id = _validate_instance_id(instance_id)
            await self._release(self._claim(instance_id))
        except OrchestratorError as e:
            log.error(f"stop_instance failed for {instance_id}: {e}")
            return _failure(e)
        return {
            "success": True,
            "instanceId": instance_id,
            "message": f"Instance {instance_id} stopped",
        }

    async def check_health(self, instance_id: str) -> dict:
        try:
            instance_id = _validate_instance_id(instance_id)
            instance = self._resolve(instance_id)
        except OrchestratorError as e:
            return _failure(e)

        container_state = await self.provisioner.inspect(instance)
        healthy = instance.status == RUNNING and container_state in (None, "running")
        if healthy:
            healthy = await self._session_healthy(instance)

        return {
            "success": True,
            "instanceId": instance_id,
            "health": "healthy" if healthy else "unhealthy",
            "status": instance.status,
            "container": container_state,
            "sessionConnected": self.pool.get_connected(instance_id) is not None,
        }

    async def _session_healthy(self, instance: Instance) -> bool:
        client = self.pool.get_connected(instance.id)
        if client is None:
            if instance.control_handle != STDIO_MANAGED:
                return await self.prober.check(instance, self.health_timeout)
            # The session owns the container, so a probe would start a second
            # one under the same name. Open the pooled session instead.
            try:
                client = await self.pool.connect(instance.id)
            except OrchestratorError as e:
                log.warning(f"Health check could not open session for {instance.id}: {e}")
                return False
        if client.busy:
            # ping would queue behind the running tool call
            return client.is_alive()
        return await client.ping(self.health_timeout)

    # ── cleanup ──

    async def reap_errors(self, now: Optional[float] = None) -> list[str]:
        """Stop and drop error records older than the retention window."""
        now = now or time.time()
        reaped = []
        for instance in self.registry.list_all():
            current = self.registry.get(instance.id)
            if current is None or current.status != ERROR:
                continue
            if now - current.status_since < self.error_retention:
                continue
            try:
                await self._release(self._claim(current.id))
            except OrchestratorError as e:
                log.warning(f"Reaper could not stop instance {current.id}: {e}")
                continue
            reaped.append(current.id)
        if reaped:
            log.info(f"Reaped {len(reaped)} failed instance(s)")
        return reaped

    async def _reap_loop(self):
        while True:
            try:
                await asyncio.sleep(REAP_INTERVAL)
                await self.reap_errors()
            except asyncio.CancelledError:
                return
            except Exception as e:
                log.warning(f"Reaper error: {e}")

    async def shutdown(self):
        """
        Disconnect sessions, stop every instance, then wait for provisions
        still in flight to clean up after themselves. Safe to call twice.
        """
        if self._shutting_down:
            return
        self._shutting_down = True

        if self._reaper_task:
            self._reaper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reaper_task

        await self.pool.disconnect_all()

        # Claim everything up front so no session or stop can slip in between
        claimed = []
        for instance in self.registry.list_all():
            if instance.status == STOPPING:
                continue  # someone else's stop is already running
            claimed.append(self._claim(instance.id))
        log.info(f"Stopping {len(claimed)} instance(s)")
        results = await asyncio.gather(
            *(self._release(i) for i in claimed), return_exceptions=True
        )
        for instance, result in zip(claimed, results):
            if isinstance(result, Exception):
                log.error(f"Error stopping instance {instance.id} during shutdown: {result}")

        if self._inflight:
            log.info(f"Waiting for {len(self._inflight)} provision(s) or stop(s) in flight")
            await asyncio.wait(list(self._inflight), timeout=CLI_RUN_TIMEOUT)
        self.registry.clear()
        log.info("Shutdown complete")


# ── MCP Server ───────────────────────────────────────────────────────────


@contextlib.asynccontextmanager
async def _lifespan(server: FastMCP):
    try:
        yield
    finally:
        await orchestrator.shutdown()


mcp_server = FastMCP(
    "playwright-orchestrator",
    instructions=(
        "Manages isolated Playwright browser sandboxes, one per session. "
        "Use list_tools (without instance_id) to start a browser and see the browser tools it offers; "
        "keep the returned instanceId and pass it to call_tool for every browser action. "
        "Each instance keeps its browser state (open pages, history) across call_tool calls. "
        "Use new_browser to start additional sessions, list_instances to see them, "
        "check_health to diagnose one, and stop_browser to shut one down when done."
    ),
    lifespan=_lifespan,
)

orchestrator = Orchestrator()


def _to_json(result: dict) -> str:
    return json.dumps(result, indent=2)


def _as_call_tool_result(result: dict) -> types.CallToolResult:
    try:
        return types.CallToolResult.model_validate(result)
    except ValidationError:
        # Not a tool result shape; hand the raw JSON back as text.
        return types.CallToolResult(
            content=[types.TextContent(type="text", text=json.dumps(result))],
            isError=bool(result.get("isError", False)),
        )


@mcp_server.tool()
async def new_browser(image: str = "", name: str = "") -> str:
    """
    Start a new isolated browser sandbox.

    Args:
        image: Sandbox image to run (default: the configured Playwright MCP image)
        name: Optional label for the instance (letters, digits, '.', '_', '-')

    Returns:
        JSON with success, instanceId and the instance record.
    """
    return _to_json(await orchestrator.new_instance(image=image or None, name=name or None))


@mcp_server.tool()
async def list_instances() -> str:
    """
    List all browser instances and their status.

    Returns:
        JSON with the instances and their count.
    """
    return _to_json(orchestrator.list_instances())


@mcp_server.tool()
async def list_tools(instance_id: str = "") -> str:
    """
    List the browser tools an instance offers. Starts a new instance when
    instance_id is omitted.

    Args:
        instance_id: ID of an existing instance (optional)

    Returns:
        JSON with instanceId, the tool descriptors and their count.
    """
    return _to_json(await orchestrator.list_tools(instance_id or None))


@mcp_server.tool()
async def call_tool(instance_id: str, tool: str, args: Optional[dict[str, Any]] = None):
    """
    Call a browser tool on an instance. The browser session persists between calls.

    Args:
        instance_id: ID of the instance
        tool: Name of the tool (from list_tools)
        args: Arguments for the tool

    Returns:
        The sandbox's own tool result, unmodified.
    """
    return _as_call_tool_result(await orchestrator.call_tool(instance_id, tool, args))


@mcp_server.tool()
async def stop_browser(instance_id: str) -> str:
    """
    Stop an instance and release its sandbox.

    Args:
        instance_id: ID of the instance

    Returns:
        JSON confirmation or error.
    """
    return _to_json(await orchestrator.stop_instance(instance_id))


@mcp_server.tool()
async def check_health(instance_id: str) -> str:
    """
    Check whether an instance's sandbox is up and answering.

    Args:
        instance_id: ID of the instance

    Returns:
        JSON with health ("healthy" or "unhealthy"), status and container state.
    """
    return _to_json(await orchestrator.check_health(instance_id))


# ── Entry point ──────────────────────────────────────────────────────────


def main():
    mcp_server.run(transport="stdio")


if __name__ == "__main__":
    main()
