"""Container tooling: ``docker``, ``enroot``, ``nvidia-container-cli`` and ``ngc``.

The simulator keeps no container table of its own. ``docker ps`` lists one
container per running job on the node (the Pyxis naming Slurm uses), and
``docker run``/``enroot start`` execute their inner command through the
shell router, so ``docker run --gpus all IMAGE nvidia-smi`` prints exactly
what ``nvidia-smi`` prints on the host.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Callable, Optional

from clustersim.parser import ParsedCommand, split_pipeline, tokenize
from clustersim.simulators.base import (
    CommandContext,
    CommandResult,
    SimulatorMetadata,
    error,
    format_table,
    handle_help_version,
    help_text,
    parse_id_list,
    resolve_node,
    run_nested,
    success,
    usage_error,
)
from clustersim.state.models import Node

LOGGER = logging.getLogger(__name__)

DOCKER_VERSION = "24.0.7"
ENROOT_VERSION = "3.4.1"
CONTAINER_TOOLKIT_VERSION = "1.14.3"
NGC_VERSION = "3.41.4"

IMAGES = (
    ("nvcr.io/nvidia/pytorch", "24.01-py3", "8.5GB"),
    ("nvcr.io/nvidia/tensorflow", "24.01-tf2-py3", "7.8GB"),
    ("nvcr.io/nvidia/cuda", "12.2.2-base-ubuntu22.04", "245MB"),
    ("nvcr.io/nvidia/hpc-benchmarks", "23.10", "5.1GB"),
)

# docker run options that consume the next token
_RUN_VALUE_OPTIONS = {"--gpus", "-e", "--env", "-v", "--volume", "--name", "--shm-size", "-w", "--workdir", "--ipc", "--network", "-u", "--user"}

_GPU_LOST = "nvidia-container-cli: initialization error: nvml error: GPU is lost"


def image_id(repository: str, tag: str) -> str:
    return hashlib.sha256(f"{repository}:{tag}".encode()).hexdigest()[:12]


def find_image(reference: str) -> Optional[tuple[str, str, str]]:
    """Known image for ``repo[:tag]``, accepting names without the registry prefix."""
    reference = reference.split("://", 1)[-1].replace("#", "/")
    repository, _, tag = reference.partition(":")
    for repo, image_tag, size in IMAGES:
        if repository in (repo, repo.split("/", 1)[1]) and tag in ("", image_tag):
            return repo, image_tag, size
    return None


def split_run_arguments(tokens: list[str]) -> tuple[dict[str, str], Optional[str], list[str]]:
    """Split ``docker run`` tokens into ``(options, image, command)``."""
    options: dict[str, str] = {}
    i = 0
    while i < len(tokens):
        token = tokens[i]
        if not token.startswith("-"):
            return options, token, tokens[i + 1:]
        name, sep, value = token.partition("=")
        if sep:
            options[name] = value
        elif name in _RUN_VALUE_OPTIONS and i + 1 < len(tokens):
            options[name] = tokens[i + 1]
            i += 1
        else:
            options[name] = "true"
        i += 1
    return options, None, []


def running_containers(node: Node, context: CommandContext) -> list:
    return [
        job
        for job in context.cluster.get_cluster().jobs
        if job.state == "RUNNING" and job.node_id == node.id
    ]


class ContainerSimulator:
    """Simulates container runtimes with GPU access on the current node."""

    METADATA = SimulatorMetadata(
        name="container-tools",
        version=CONTAINER_TOOLKIT_VERSION,
        description="Container management tools (Docker, Enroot, NGC)",
        commands=("docker", "enroot", "nvidia-container-cli", "ngc"),
    )

    def __init__(self):
        self._handlers: dict[str, Callable[[ParsedCommand, CommandContext, Node], CommandResult]] = {
            "docker": self._docker,
            "enroot": self._enroot,
            "nvidia-container-cli": self._container_cli,
            "ngc": self._ngc,
        }

    def describe(self) -> SimulatorMetadata:
        return self.METADATA

    def execute(self, parsed: ParsedCommand, context: CommandContext) -> CommandResult:
        handler = self._handlers.get(parsed.base_command)
        if handler is None:
            return error(f"Unknown container tool: {parsed.base_command}", 127)
        # options after "docker run IMAGE" belong to the container command
        if parsed.args[:1] not in (["run"], ["start"]):
            banners = {
                "docker": f"Docker version {DOCKER_VERSION}, build afdd53b\n",
                "enroot": f"{ENROOT_VERSION}\n",
                "nvidia-container-cli": f"cli-version: {CONTAINER_TOOLKIT_VERSION}\nlib-version: {CONTAINER_TOOLKIT_VERSION}\n",
                "ngc": f"NGC CLI {NGC_VERSION}\n",
            }
            handled = handle_help_version(parsed, context, banners[parsed.base_command], short_help=True, short_version=True)
            if handled is not None:
                return handled
        node = resolve_node(context)
        if node is None:
            return error(f"{parsed.base_command}: node {context.current_node} not found")
        return handler(parsed, context, node)

    def _raw_args(self, parsed: ParsedCommand) -> list[str]:
        return tokenize(split_pipeline(parsed.raw)[0])[1:]

    def _docker(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if not parsed.args:
            return success(help_text("docker", context))
        if node.services.get("docker") != "active":
            return error(
                "Cannot connect to the Docker daemon at unix:///var/run/docker.sock. Is the docker daemon running?", 1
            )
        action = parsed.args[0]
        if action == "ps":
            rows = [
                [image_id("job", str(job.job_id)), IMAGES[0][0] + ":" + IMAGES[0][1], f'"{job.command or job.name}"'[:20],
                 "Up", f"pyxis_{job.job_id}"]
                for job in running_containers(node, context)
            ]
            return success(format_table(["CONTAINER ID", "IMAGE", "COMMAND", "STATUS", "NAMES"], rows, gap=3) + "\n")
        if action == "images":
            rows = [[repo, tag, image_id(repo, tag), "2 weeks ago", size] for repo, tag, size in IMAGES]
            return success(format_table(["REPOSITORY", "TAG", "IMAGE ID", "CREATED", "SIZE"], rows, gap=3) + "\n")
        if action == "pull":
            reference = parsed.args[1] if len(parsed.args) > 1 else None
            if reference is None:
                return usage_error("docker pull", "requires exactly 1 argument", 1)
            image = find_image(reference)
            if image is None:
                return error(f"Error response from daemon: manifest for {reference} not found: manifest unknown", 1)
            repo, tag, _ = image
            return success(
                f"{tag}: Pulling from {repo.split('/', 1)[1]}\n"
                f"Digest: sha256:{hashlib.sha256(repo.encode()).hexdigest()}\n"
                f"Status: Image is up to date for {repo}:{tag}\n{repo}:{tag}\n"
            )
        if action == "run":
            return self._docker_run(parsed, context, node)
        if action == "version":
            return success(
                f"Client: Docker Engine - Community\n Version:           {DOCKER_VERSION}\n\n"
                f"Server: Docker Engine - Community\n Engine:\n  Version:          {DOCKER_VERSION}\n"
            )
        if action == "info":
            running = len(running_containers(node, context))
            return success(
                f"Server:\n Containers: {running}\n  Running: {running}\n Images: {len(IMAGES)}\n"
                f" Server Version: {DOCKER_VERSION}\n Runtimes: io.containerd.runc.v2 nvidia runc\n"
                f" Default Runtime: runc\n Operating System: {node.os_version}\n CPUs: {node.cpu_count}\n"
                f" Total Memory: {node.ram_total_gb / 1024:.1f}TiB\n Name: {node.hostname}\n"
            )
        return usage_error("docker", f"'{action}' is not a docker command.", 1)

    def _docker_run(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        args = self._raw_args(parsed)
        options, reference, command = split_run_arguments(args[1:])
        if reference is None:
            return usage_error("docker run", "requires at least 1 argument", 125)
        if find_image(reference) is None:
            return error(f"docker: Error response from daemon: pull access denied for {reference}, repository does not exist.", 125)
        gpu_spec = options.get("--gpus")
        if gpu_spec is not None:
            gpu_spec = gpu_spec.strip("'\"")
            if gpu_spec == "all":
                gpu_ids = [g.id for g in node.gpus]
            else:
                wanted = gpu_spec.split("=", 1)[1] if gpu_spec.startswith("device=") else None
                gpu_ids = parse_id_list(wanted) if wanted else None
                if gpu_spec.isdigit():
                    gpu_ids = [g.id for g in node.gpus][: int(gpu_spec)]
                if gpu_ids is None or any(node.get_gpu(i) is None for i in gpu_ids):
                    return error(f"docker: Error response from daemon: invalid --gpus value '{gpu_spec}'.", 125)
            if any(node.get_gpu(i).has_fatal_xid for i in gpu_ids):
                return error(
                    "docker: Error response from daemon: failed to create task for container: "
                    f"OCI runtime create failed: {_GPU_LOST}: unknown.",
                    125,
                )
        if not command:
            return success("")
        if gpu_spec is None and command[0] in ("nvidia-smi", "dcgmi"):
            return error(f'docker: Error response from daemon: exec: "{command[0]}": executable file not found in $PATH: unknown.', 127)
        LOGGER.debug("docker run %s on %s: %s", reference, node.id, command)
        return run_nested(context, " ".join(_quote(t) for t in command))

    def _enroot(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        if not parsed.args:
            return success(help_text("enroot", context))
        action = parsed.args[0]
        if action == "version":
            return success(f"{ENROOT_VERSION}\n")
        if action == "import":
            source = parsed.args[1] if len(parsed.args) > 1 else ""
            if not source.startswith("docker://"):
                return error("enroot-import: error: Invalid image reference (expected docker://)", 1)
            image = find_image(source)
            if image is None:
                return error(f"[ERROR] URL {source} returned error code: 404 Not Found", 1)
            repo, tag, _ = image
            name = f"{repo.replace('/', '+')}+{tag}.sqsh"
            return success(f"[INFO] Querying registry for permission grant\n[INFO] Creating squashfs filesystem...\nParallel mksquashfs: Using {node.cpu_count} processors\n{name}\n")
        if action == "list":
            names = [f"{repo.split('/')[-1]}-{tag}" for repo, tag, _ in IMAGES]
            return success("\n".join(names) + "\n")
        if action == "start":
            args = [a for a in self._raw_args(parsed)[1:] if not a.startswith("--")]
            if not args:
                return usage_error("enroot", "start: missing container name", 1)
            if args[1:]:
                return run_nested(context, " ".join(_quote(t) for t in args[1:]))
            return success("")
        return usage_error("enroot", f"unknown command '{action}'", 1)

    def _container_cli(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        action = parsed.args[0] if parsed.args else ""
        if action not in ("info", "list"):
            return usage_error("nvidia-container-cli", "command must be one of: info, list", 1)
        if any(g.has_fatal_xid for g in node.gpus):
            return error(_GPU_LOST, 1)
        if action == "info":
            lines = [f"NVRM version:   {node.nvidia_driver_version}", f"CUDA version:   {node.cuda_version}", ""]
            for gpu in node.gpus:
                lines.extend(
                    [
                        f"Device Index:   {gpu.id}",
                        f"Device Minor:   {gpu.id}",
                        f"Model:          {gpu.name}",
                        "Brand:          NVIDIA",
                        f"GPU UUID:       {gpu.uuid}",
                        f"Bus Location:   {gpu.pci_address.lower()}",
                        f"Architecture:   {_architecture(gpu.type)}",
                        "",
                    ]
                )
            return success("\n".join(lines))
        lines = ["/dev/nvidiactl", "/dev/nvidia-uvm", "/dev/nvidia-uvm-tools"]
        lines.extend(f"/dev/nvidia{g.id}" for g in node.gpus)
        lines.extend(
            f"/usr/lib/x86_64-linux-gnu/{lib}.so.{node.nvidia_driver_version}"
            for lib in ("libnvidia-ml", "libcuda", "libnvidia-ptxjitcompiler")
        )
        lines.append("/usr/bin/nvidia-smi")
        return success("\n".join(lines) + "\n")

    def _ngc(self, parsed: ParsedCommand, context: CommandContext, node: Node) -> CommandResult:
        words = parsed.args
        if not words:
            return success(help_text("ngc", context))
        if words[0] == "version":
            return success(f"NGC CLI {NGC_VERSION}\n")
        if words[0] == "config":
            if words[1:2] == ["current"]:
                return success(
                    format_table(["key", "value", "source"], [["apikey", "********", "user settings"], ["format_type", "ascii", "user settings"], ["org", "nvidia", "user settings"]]) + "\n"
                )
            if words[1:2] == ["set"]:
                return success("Successfully saved NGC configuration to /root/.ngc/config\n")
        if words[:3] == ["registry", "image", "list"]:
            rows = [[repo.replace("nvcr.io/", ""), tag, size] for repo, tag, size in IMAGES]
            return success(format_table(["Name", "Latest Tag", "Size"], rows, gap=3) + "\n")
        return usage_error("ngc", f"invalid choice: '{' '.join(words)}'", 1)


def _quote(token: str) -> str:
    return f'"{token}"' if " " in token else token


def _architecture(gpu_type: str) -> str:
    for prefix, arch in (("H", "9.0"), ("B", "10.0"), ("A", "8.0")):
        if gpu_type.upper().startswith(prefix):
            return arch
    return "8.0"
