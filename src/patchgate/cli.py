"""
patchgate command line.

    patchgate sync-check --wsus-server wsus01 [--start-sync | -- CMD ...]
    patchgate adr-run --site-code P01 --rule-patterns "Workstations*,Servers*"
    patchgate task-check --task-name '\\Patching\\Export' [-- CMD ...]
    patchgate status
    patchgate groups-plan source.json target.json

Exit codes: 0 action performed, 1 nothing new, 2 fatal, 3..255 the remote
system's or command's own error code. Codes that do not fit exit 2.
"""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from . import __version__
from ._types import format_timestamp
from .config import GateSettings, load_settings
from .errors import ConfigError, PatchGateError
from .groups import format_path, load_tree, plan_import
from .jobs import DeploymentRuleJob, Job, SyncGateJob, TaskGateJob
from .logging_setup import configure_logging
from .orchestrator import ExitCode, exit_code_for, process_exit_code
from .rotation import RotationStore
from .watermark import WatermarkStore

logger = logging.getLogger(__name__)

# argparse dest -> settings field
SETTING_FLAGS = (
    "state_dir", "poll_interval", "lead_time", "max_wait", "max_attempts",
    "retry_delay", "settle_seconds", "force", "log_level", "log_file",
    "winrm_host", "winrm_port", "winrm_username", "winrm_transport", "winrm_use_ssl",
    "wsus_server", "wsus_port", "wsus_use_ssl", "site_code", "rule_patterns", "task_name",
)


def _common_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", type=Path, help="YAML or INI config file")
    common.add_argument("--state-dir", type=Path, help="Directory holding watermark state")
    common.add_argument("--log-level", help="DEBUG, INFO, WARNING, ERROR")
    common.add_argument("--log-file", type=Path, help="Also log to this rotating file")
    return common


def _gate_parser() -> argparse.ArgumentParser:
    gate = argparse.ArgumentParser(add_help=False)
    gate.add_argument("--poll-interval", type=int, help="Seconds between busy/idle checks")
    gate.add_argument("--lead-time", type=int, help="Seconds a completion must age before it is trusted")
    gate.add_argument("--max-wait", type=int, help="Give up waiting for idle after N seconds")
    gate.add_argument("--max-attempts", type=int, help="Attempts per guarded action")
    gate.add_argument("--retry-delay", type=int, help="Seconds between attempts")
    gate.add_argument("--settle-seconds", type=int, help="Wait before checking an action's result")
    gate.add_argument("--force", action="store_true", default=None,
                      help="Run the action even if nothing is new")
    gate.add_argument("--winrm-host", help="Management host reached over WinRM")
    gate.add_argument("--winrm-port", type=int, help="WinRM port")
    gate.add_argument("--winrm-username", help="WinRM user (password via config or environment)")
    gate.add_argument("--winrm-transport", help="ntlm, kerberos, certificate, basic, credssp")
    gate.add_argument("--winrm-use-ssl", action="store_true", default=None, help="Use WinRM over HTTPS")
    return gate


def _add_wsus_flags(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--wsus-server", help="WSUS server name")
    parser.add_argument("--wsus-port", type=int, help="WSUS port")
    parser.add_argument("--wsus-use-ssl", action="store_true", default=None, help="Connect to WSUS over SSL")


def _add_command_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--command-timeout", type=float, help="Seconds before the command is killed")
    parser.add_argument("command", nargs="*", help="Command to run when something is new (after --)")


def build_parser() -> argparse.ArgumentParser:
    common = _common_parser()
    gate = _gate_parser()

    parser = argparse.ArgumentParser(
        prog="patchgate",
        description="Watermark-gated retry runner for patch-management jobs",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = parser.add_subparsers(dest="subcommand", required=True)

    sync = sub.add_parser("sync-check", parents=[common, gate],
                          help="Wait for WSUS sync and act once per new successful sync")
    _add_wsus_flags(sync)
    sync.add_argument("--start-sync", action="store_true", help="Start a new synchronization as the action")
    _add_command_args(sync)
    sync.set_defaults(handler=cmd_sync_check)

    adr = sub.add_parser("adr-run", parents=[common, gate],
                         help="Run the next pattern's deployment rules after a new sync")
    _add_wsus_flags(adr)
    adr.add_argument("--site-code", help="ConfigMgr site code")
    adr.add_argument("--rule-patterns", help="Comma-separated rule name patterns")
    adr.set_defaults(handler=cmd_adr_run)

    task = sub.add_parser("task-check", parents=[common, gate],
                          help="Act once per new successful run of a scheduled task")
    task.add_argument("--task-name", help="Scheduled task path, e.g. \\Patching\\Export")
    _add_command_args(task)
    task.set_defaults(handler=cmd_task_check)

    status = sub.add_parser("status", parents=[common], help="Show stored watermarks and rotations")
    status.set_defaults(handler=cmd_status)

    groups = sub.add_parser("groups-plan", parents=[common],
                            help="List computer groups to create on the target server")
    groups.add_argument("source", type=Path, help="JSON group records exported from the source")
    groups.add_argument("target", type=Path, help="JSON group records exported from the target")
    groups.add_argument("--json", action="store_true", help="Print records instead of paths")
    groups.set_defaults(handler=cmd_groups_plan)

    return parser


def settings_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Flag values that were actually given on the command line."""
    return {
        name: getattr(args, name)
        for name in SETTING_FLAGS
        if getattr(args, name, None) is not None
    }


# =============================================================================
# SUBCOMMANDS
# =============================================================================


def _run_job(job: Job) -> int:
    report = asyncio.run(job.run())
    return int(report.exit_code)


def cmd_sync_check(args: argparse.Namespace, settings: GateSettings) -> int:
    return _run_job(SyncGateJob(
        settings,
        start_sync=args.start_sync,
        command=args.command,
        command_timeout=args.command_timeout,
    ))


def cmd_adr_run(args: argparse.Namespace, settings: GateSettings) -> int:
    return _run_job(DeploymentRuleJob(settings))


def cmd_task_check(args: argparse.Namespace, settings: GateSettings) -> int:
    return _run_job(TaskGateJob(
        settings,
        command=args.command,
        command_timeout=args.command_timeout,
    ))


def cmd_status(args: argparse.Namespace, settings: GateSettings) -> int:
    watermarks = WatermarkStore(settings.state_dir).list_all()
    rotations = RotationStore(settings.state_dir)

    print(f"State directory: {settings.state_dir}")
    if not watermarks:
        print("No watermarks recorded")
    for wm in watermarks:
        value = format_timestamp(wm.value) if isinstance(wm.value, datetime) else wm.value
        target = f"@{wm.target}" if wm.target else ""
        print(f"  {wm.check_name}{target}: {value} (recorded {format_timestamp(wm.recorded_at)})")

    for name in rotations.names():
        state = rotations.load(name)
        print(f"Rotation {name}: {state.current!r} ({state.position + 1}/{len(state.patterns)})")
    return ExitCode.OK


def cmd_groups_plan(args: argparse.Namespace, settings: GateSettings) -> int:
    source = load_tree(args.source)
    target = load_tree(args.target)
    missing = plan_import(source, target)

    if args.json:
        print(json.dumps([node.to_record() for node in missing], indent=2))
    else:
        for node in missing:
            print(format_path(source.path(node.id)))
    return ExitCode.OK


# =============================================================================
# ENTRY POINT
# =============================================================================


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point; returns the process exit code."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.config, settings_overrides(args))
    except ConfigError as e:
        configure_logging("INFO")
        logger.error(str(e))
        return ExitCode.FATAL

    configure_logging(settings.log_level, settings.log_file)
    logger.debug(f"patchgate {__version__} {args.subcommand}")

    try:
        return process_exit_code(args.handler(args, settings))
    except PatchGateError as e:
        code = exit_code_for(e)
        remote = getattr(e, "code", None)
        logger.error(
            f"{args.subcommand} failed: {e} (exit {int(code)}"
            + (f", remote code {remote})" if remote is not None else ")")
        )
        return code
    except Exception as e:
        logger.exception(f"{args.subcommand} failed unexpectedly: {e}")
        return ExitCode.FATAL


if __name__ == "__main__":
    sys.exit(main())
