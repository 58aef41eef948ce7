"""``af``: command-line entry point for Agent Farm.

Usage:
    af start [--cmd CMD] [--port PORT]
    af stop
    af status
    af spawn --project ID
    af util [--name NAME]          (alias: af shell)
    af annotate FILE
    af cleanup --project ID [--force]
    af overview [--port PORT]
    af ports list | cleanup
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import re
import shlex
import shutil
import subprocess
import sys
from datetime import datetime, timezone
from pathlib import Path

import httpx

from .config import FarmConfig
from .errors import ConfigurationError, FarmError, NotFoundError, ProcessSpawnFailure, ValidationError
from .models.registry import ProjectPorts
from .models.state import ArchitectRecord, BuilderRecord, BuilderStatus, FarmState
from .services.paths import validate_id, validate_name
from .services.port_registry import BASE_PORT, PortRegistry
from .services.process import command_exists, find_available_port, is_process_alive, spawn_detached
from .services.sessions import SessionManager, architect_session, builder_session
from .services.state_store import open_store
from .services.tabs import TabService, matches_builder, new_record_id

logger = logging.getLogger("agent_farm.cli")

STOP_TIMEOUT = 3.0


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(asctime)s [%(name)s] %(levelname)s: %(message)s")


def _git(cwd: Path, *args: str) -> subprocess.CompletedProcess:
    return subprocess.run(["git", *args], cwd=str(cwd), capture_output=True, text=True)


def _registered_base_port(config: FarmConfig) -> int | None:
    """Base port of this project's block, without allocating one."""
    doc = PortRegistry(config.farm_home).load()
    entry = doc.entries.get(str(config.project_root))
    return entry.base_port if entry else None


def _tab_service(config: FarmConfig) -> TabService:
    ports = PortRegistry(config.farm_home).get_project_ports(config.project_root)
    return TabService(config, open_store(config), SessionManager(), ports)


def find_spec_file(codev_dir: Path, project_id: str) -> Path | None:
    """Find ``codev/specs/<project_id>*.md``, preferring an exact-prefix match."""
    specs_dir = codev_dir / "specs"
    if not specs_dir.is_dir():
        return None
    candidates = sorted(p for p in specs_dir.iterdir() if p.suffix == ".md" and p.name.startswith(project_id))
    exact = [p for p in candidates if p.stem == project_id or p.name.startswith(f"{project_id}-")]
    if exact:
        return exact[0]
    return candidates[0] if candidates else None


def branch_slug(spec_name: str) -> str:
    return re.sub(r"-+", "-", re.sub(r"[^a-z0-9_-]", "-", spec_name.lower()))


# ── start / stop / status ────────────────────────────────────────────────


def cmd_start(args: argparse.Namespace, config: FarmConfig) -> int:
    store = open_store(config)
    state = store.load()
    if state.architect is not None and is_process_alive(state.architect.pid):
        print(f"Architect already running on port {state.architect.port}")
        return 0

    config.ensure_directories()
    sessions = SessionManager()
    sessions.check_dependencies()

    cmd = args.cmd or config.architect_cmd
    argv = shlex.split(cmd)
    if not argv or not command_exists(argv[0]):
        raise ConfigurationError(f"Command not found: {cmd}")

    ports = PortRegistry(config.farm_home).get_project_ports(config.project_root)
    architect_port = args.port or ports.architect_port
    if not 1024 <= architect_port <= 65535:
        raise ValidationError(f"Invalid port: {architect_port}. Must be a number between 1024-65535")

    session = architect_session(architect_port)
    try:
        sessions.ensure_session(session, argv, config.project_root)
    except RuntimeError as exc:
        raise ProcessSpawnFailure(str(exc)) from exc
    pid = sessions.attach_terminal_server(session, architect_port, config.project_root, {"titleFixed": "Architect"})
    if pid is None:
        raise ProcessSpawnFailure("Failed to start terminal server for architect")

    store.set_architect(
        ArchitectRecord(
            port=architect_port,
            pid=pid,
            cmd=cmd,
            started_at=datetime.now(timezone.utc).isoformat(),
            tmux_session=session,
        )
    )

    if config.dashboard_template.is_file():
        dashboard_args = [
            sys.executable,
            "-m",
            "agent_farm.dashboard",
            "--port",
            str(ports.dashboard_port),
            "--project-root",
            str(config.project_root),
        ]
        spawn_detached(dashboard_args, cwd=config.project_root)
    else:
        logger.warning("Dashboard template not found at %s, skipping dashboard", config.dashboard_template)

    print("Agent Farm started")
    print(f"  Architect: http://localhost:{architect_port}")
    print(f"  Dashboard: http://localhost:{ports.dashboard_port}")
    return 0


def cmd_stop(args: argparse.Namespace, config: FarmConfig) -> int:
    base_port = _registered_base_port(config)
    if base_port is not None:
        url = f"http://localhost:{base_port}/api/stop"
        try:
            response = httpx.post(url, timeout=STOP_TIMEOUT)
            response.raise_for_status()
            print(f"Stopped {response.json().get('killed', 0)} process(es)")
            return 0
        except httpx.HTTPError as exc:
            logger.info("Dashboard not reachable (%s), stopping locally", exc)

    # No dashboard: kill whatever the state file still tracks
    ports = ProjectPorts.from_base(base_port or BASE_PORT)
    service = TabService(config, open_store(config), SessionManager(), ports)
    killed = asyncio.run(service.stop_all())
    print(f"Stopped {killed} process(es)")
    return 0


def _status_line(kind: str, label: str, port: int, pid: int) -> str:
    alive = "running" if is_process_alive(pid) else "dead"
    return f"  {kind:<10} {label:<24} http://localhost:{port:<6} pid {pid} ({alive})"


def cmd_status(args: argparse.Namespace, config: FarmConfig) -> int:
    state: FarmState = open_store(config).load()
    print(f"Project: {config.project_root}")

    if state.architect is None:
        print("  Architect not running")
    else:
        print(_status_line("architect", state.architect.cmd, state.architect.port, state.architect.pid))
    for b in state.builders:
        print(_status_line("builder", f"{b.id} {b.name} [{b.status}]", b.port, b.pid))
    for u in state.utils:
        print(_status_line("shell", f"{u.id} {u.name}", u.port, u.pid))
    for a in state.annotations:
        print(_status_line("file", f"{a.id} {Path(a.file).name}", a.port, a.pid))
    return 0


# ── Builders ─────────────────────────────────────────────────────────────


def cmd_spawn(args: argparse.Namespace, config: FarmConfig) -> int:
    project_id = validate_id(args.project, "project id")
    spec_file = find_spec_file(config.codev_dir, project_id)
    if spec_file is None:
        raise NotFoundError(f"Spec not found for project: {project_id}")

    if not command_exists("git"):
        raise ConfigurationError("git not found")
    sessions = SessionManager()
    sessions.check_dependencies()
    config.ensure_directories()

    store = open_store(config)
    state = store.load()
    builder_id = new_record_id("", {b.id for b in state.builders})
    branch = f"builder/{builder_id}-{branch_slug(spec_file.stem)}"
    worktree = config.builders_dir / builder_id

    logger.info("Spawning builder %s for %s on %s", builder_id, spec_file.name, branch)
    result = _git(config.project_root, "branch", branch)
    if result.returncode != 0:
        logger.debug("git branch %s: %s", branch, result.stderr.strip())
    result = _git(config.project_root, "worktree", "add", str(worktree), branch)
    if result.returncode != 0:
        raise ProcessSpawnFailure(f"Failed to create worktree: {result.stderr.strip()}")

    ports = PortRegistry(config.farm_home).get_project_ports(config.project_root)
    try:
        port = find_available_port(ports.builder_port_range[0], exclude=state.used_ports())
    except OSError as exc:
        raise ProcessSpawnFailure(str(exc)) from exc

    cmd = state.architect.cmd if state.architect else config.architect_cmd
    session = builder_session(builder_id)
    try:
        sessions.ensure_session(session, shlex.split(cmd), worktree)
    except RuntimeError as exc:
        raise ProcessSpawnFailure(str(exc)) from exc
    pid = sessions.attach_terminal_server(session, port, worktree, {"titleFixed": f"Builder {builder_id}"})
    if pid is None:
        sessions.kill_session(session)
        raise ProcessSpawnFailure("Failed to start terminal server for builder")

    store.upsert_builder(
        BuilderRecord(
            id=builder_id,
            name=spec_file.stem,
            port=port,
            pid=pid,
            status=BuilderStatus.SPAWNING,
            phase="init",
            worktree=str(worktree),
            branch=branch,
            tmux_session=session,
        )
    )
    print(f"Builder {builder_id} spawned")
    print(f"  Spec:     {spec_file}")
    print(f"  Branch:   {branch}")
    print(f"  Worktree: {worktree}")
    print(f"  Terminal: http://localhost:{port}")
    return 0


def cmd_cleanup(args: argparse.Namespace, config: FarmConfig) -> int:
    project_id = validate_id(args.project, "project id")
    store = open_store(config)
    state = store.load()
    builder = next((b for b in state.builders if b.id == project_id), None)
    if builder is None:
        builder = next((b for b in state.builders if matches_builder(b, project_id)), None)
    if builder is None:
        raise NotFoundError(f"Builder not found for project: {project_id}")

    logger.info("Cleaning up builder %s (%s)", builder.id, builder.name)
    SessionManager().kill_process_gracefully(builder.pid, builder.tmux_session or builder_session(builder.id))

    worktree = Path(builder.worktree)
    if worktree.exists():
        remove_args = ["worktree", "remove", str(worktree)] + (["--force"] if args.force else [])
        result = _git(config.project_root, *remove_args)
        if result.returncode != 0:
            if not args.force:
                raise FarmError(f"Failed to remove worktree: {result.stderr.strip()}. Use --force to override.")
            shutil.rmtree(worktree, ignore_errors=True)
            _git(config.project_root, "worktree", "prune")

    if _git(config.project_root, "branch", "-d", builder.branch).returncode != 0:
        if not args.force:
            logger.warning("Branch %s not fully merged. Use --force to delete anyway.", builder.branch)
        elif _git(config.project_root, "branch", "-D", builder.branch).returncode != 0:
            logger.warning("Could not delete branch %s", builder.branch)

    store.remove_builder(builder.id)
    print(f"Builder {builder.id} cleaned up")
    return 0


# ── Tabs ─────────────────────────────────────────────────────────────────


def cmd_util(args: argparse.Namespace, config: FarmConfig) -> int:
    if args.name is not None:
        validate_name(args.name)
    SessionManager().check_dependencies()
    result = asyncio.run(_tab_service(config).create_shell_tab(args.name))
    print(f"Shell {result.name} started: http://localhost:{result.port}")
    return 0


def cmd_annotate(args: argparse.Namespace, config: FarmConfig) -> int:
    # Relative paths are relative to where the user typed the command
    path = str(Path(args.file).resolve())
    result = asyncio.run(_tab_service(config).create_file_tab(path))
    verb = "Already open" if result.existing else "Opened"
    print(f"{verb}: http://localhost:{result.port}")
    return 0


# ── Machine-wide ─────────────────────────────────────────────────────────


def cmd_overview(args: argparse.Namespace, config: FarmConfig) -> int:
    from .overview import main as overview_main

    return overview_main(["--port", str(args.port)])


def cmd_ports(args: argparse.Namespace, config: FarmConfig) -> int:
    registry = PortRegistry(config.farm_home)

    if args.ports_command == "cleanup":
        result = registry.cleanup_stale_entries()
        for path in result.removed:
            print(f"  removed {path}")
        print(f"Removed {len(result.removed)} stale allocation(s), {result.remaining} remaining")
        return 0

    allocations = registry.list_allocations()
    if not allocations:
        print("No port allocations")
        return 0
    for alloc in allocations:
        flags = [] if alloc.exists else ["missing"]
        if alloc.pid_alive:
            flags.append(f"pid {alloc.pid}")
        suffix = f" ({', '.join(flags)})" if flags else ""
        print(f"  {alloc.base_port}-{alloc.base_port + 99}  {alloc.path}{suffix}")
    return 0


_COMMANDS = {
    "start": cmd_start,
    "stop": cmd_stop,
    "status": cmd_status,
    "spawn": cmd_spawn,
    "util": cmd_util,
    "shell": cmd_util,
    "annotate": cmd_annotate,
    "cleanup": cmd_cleanup,
    "overview": cmd_overview,
    "ports": cmd_ports,
}


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="af", description="Multi-agent orchestration for software development")
    parser.add_argument("--verbose", "-v", action="store_true", default=False, help="Enable DEBUG logging")
    sub = parser.add_subparsers(dest="command", required=True)

    start = sub.add_parser("start", help="Start the architect terminal and the dashboard")
    start.add_argument("--cmd", "-c", default=None, help="Command to run in the architect terminal")
    start.add_argument("--port", "-p", type=int, default=None, help="Port for the architect terminal")

    sub.add_parser("stop", help="Stop all agent farm processes")
    sub.add_parser("status", help="Show status of all agents")

    spawn = sub.add_parser("spawn", help="Spawn a new builder for a project")
    spawn.add_argument("--project", "-p", required=True, help="Project/spec id to work on")

    util = sub.add_parser("util", aliases=["shell"], help="Spawn a utility shell terminal")
    util.add_argument("--name", "-n", default=None, help="Name for the shell terminal")

    annotate = sub.add_parser("annotate", help="Open a file in the annotation viewer")
    annotate.add_argument("file")

    cleanup = sub.add_parser("cleanup", help="Remove a builder's worktree and branch")
    cleanup.add_argument("--project", "-p", required=True, help="Builder id or spec name")
    cleanup.add_argument("--force", "-f", action="store_true", help="Remove even if unmerged")

    overview = sub.add_parser("overview", help="Serve the machine-wide overview")
    overview.add_argument("--port", type=int, default=4100)

    ports = sub.add_parser("ports", help="Inspect the global port registry")
    ports_sub = ports.add_subparsers(dest="ports_command", required=True)
    ports_sub.add_parser("list", help="List port allocations")
    ports_sub.add_parser("cleanup", help="Remove allocations for deleted projects")

    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    """Entry point. Returns 0 on success, 1 on any reported failure."""
    args = _parse_args(argv)
    _setup_logging(args.verbose)

    try:
        return _COMMANDS[args.command](args, FarmConfig())
    except FarmError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
