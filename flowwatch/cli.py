"""Command-line entry point for watching flow executions."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from flowwatch.api import ExecutionsClient, ExecutionsClientError
from flowwatch.config import MonitorSettings, get_settings
from flowwatch.graph import FlowDefinition, detect_all_feedback_loops, get_feedback_loop_config
from flowwatch.projection import Notice, ProjectionState, merge_timeline
from flowwatch.projection.state import LlmResponse
from flowwatch.tracker import ExecutionTracker, TrackerError

LOGGER = logging.getLogger("flowwatch")


def _configure_logging(settings: MonitorSettings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _read_flow(path: str) -> FlowDefinition:
    try:
        return FlowDefinition.from_json(Path(path).read_bytes())
    except OSError as exc:
        print(f"Cannot read flow file {path}: {exc}", file=sys.stderr)
        sys.exit(1)
    except ValueError as exc:
        print(f"Invalid flow file {path}: {exc}", file=sys.stderr)
        sys.exit(1)


def _load_flow(path: Optional[str]) -> Optional[FlowDefinition]:
    return _read_flow(path) if path else None


def _parse_json_option(raw: Optional[str], name: str) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        print(f"--{name} must be a JSON object: {exc}", file=sys.stderr)
        sys.exit(2)
    if not isinstance(value, dict):
        print(f"--{name} must be a JSON object", file=sys.stderr)
        sys.exit(2)
    return value


async def _print_notice(notice: Notice) -> None:
    print(f"[{notice.level.value}] {notice.title}: {notice.description}")


def _print_summary(state: ProjectionState) -> None:
    execution = state.execution
    print(f"Execution {state.execution_id}: {state.status.value}")
    if execution.completed_steps:
        print(f"  completed: {', '.join(sorted(execution.completed_steps))}")
    if execution.failed_steps:
        print(f"  failed: {', '.join(sorted(execution.failed_steps))}")
    if execution.skipped_steps:
        print(f"  skipped: {', '.join(sorted(execution.skipped_steps))}")
    for step_id, output in state.step_outputs.items():
        for entry in merge_timeline(output):
            if isinstance(entry, LlmResponse):
                print(f"  {step_id} round {entry.round}: {entry.display_content}")
            else:
                print(f"  {step_id} round {entry.round}: tool {entry.tool_name} {entry.status.value}")
        if output.final_output:
            print(f"  {step_id} output: {output.final_output}")
    for edge, loop in state.feedback_loops.items():
        reason = loop.completion_reason.value if loop.completion_reason else "active"
        print(f"  loop {edge}: iteration {loop.current_iteration}/{loop.max_iterations} ({reason})")
    if state.error:
        print(f"  error: {state.error}")


def _tracker(settings: MonitorSettings, args: argparse.Namespace) -> ExecutionTracker:
    return ExecutionTracker(
        settings,
        flow=_load_flow(getattr(args, "flow_file", None)),
        on_notice=_print_notice,
    )


async def _follow(tracker: ExecutionTracker) -> None:
    try:
        await tracker.wait_closed()
    finally:
        await tracker.close()
    _print_summary(tracker.state)


async def _run(settings: MonitorSettings, args: argparse.Namespace) -> None:
    tracker = _tracker(settings, args)
    await tracker.run(
        args.flow_id,
        input_data=_parse_json_option(args.input, "input"),
        variables=_parse_json_option(args.variables, "variables"),
    )
    await _follow(tracker)


async def _watch(settings: MonitorSettings, args: argparse.Namespace) -> None:
    tracker = _tracker(settings, args)
    if not await tracker.connect(args.execution_id):
        print(f"Execution {args.execution_id} is already finished.")
        return
    if args.history:
        await tracker.replay_history()
    await _follow(tracker)


async def _resume(settings: MonitorSettings, args: argparse.Namespace) -> None:
    tracker = _tracker(settings, args)
    execution_id = await tracker.resume_on_load(args.flow_id)
    if execution_id is None:
        print(f"No recent running execution of flow {args.flow_id} to resume.")
        return
    await _follow(tracker)


def cancel_execution(settings: MonitorSettings, args: argparse.Namespace) -> None:
    ExecutionsClient.from_settings(settings).cancel_execution(args.execution_id)
    print(f"Cancellation requested for execution {args.execution_id}")


def submit_decision(settings: MonitorSettings, args: argparse.Namespace) -> None:
    approved = args.command == "approve"
    response = ExecutionsClient.from_settings(settings).submit_approval(args.execution_id, approved)
    print(response.message or f"Execution {args.execution_id} {'approved' if approved else 'rejected'}")


def list_executions(settings: MonitorSettings, args: argparse.Namespace) -> None:
    listing = ExecutionsClient.from_settings(settings).list_executions(
        flow_id=args.flow_id, skip=args.skip, limit=args.limit
    )
    for execution in listing.executions:
        current = f" @ {execution.current_step_id}" if execution.current_step_id else ""
        print(
            f"{execution.id} flow={execution.flow_id} [{execution.status.value}]{current} "
            f"updated={execution.last_activity.isoformat()}"
        )
    print(f"{len(listing.executions)} of {listing.total} execution(s)")


def show_loops(settings: MonitorSettings, args: argparse.Namespace) -> None:
    flow = _read_flow(args.flow_file)
    loops = detect_all_feedback_loops(flow.steps)
    if not loops:
        print("No feedback loops.")
        return
    for edge, info in sorted(loops.items()):
        config = get_feedback_loop_config(flow.edge_metadata, edge)
        suffix = (
            f" max_iterations={config.max_iterations} quality_threshold={config.quality_threshold}"
            if config
            else " (not configured)"
        )
        print(f"{edge}: {' -> '.join(info.cycle_steps)} (length {info.cycle_length}){suffix}")


def _async(handler):
    def _invoke(settings: MonitorSettings, args: argparse.Namespace) -> None:
        asyncio.run(handler(settings, args))

    return _invoke


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="flowwatch", description="Watch flow executions in real time")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Start a flow and follow its execution")
    run.add_argument("flow_id")
    run.add_argument("--flow-file", help="Flow definition JSON used for step names and loop settings")
    run.add_argument("--input", help="JSON object passed as input_data")
    run.add_argument("--variables", help="JSON object passed as variables")
    run.set_defaults(func=_async(_run))

    watch = sub.add_parser("watch", help="Follow an existing execution")
    watch.add_argument("execution_id")
    watch.add_argument("--flow-file")
    watch.add_argument("--history", action="store_true", help="Replay persisted events first")
    watch.set_defaults(func=_async(_watch))

    resume = sub.add_parser("resume", help="Reattach to a recent running execution of a flow")
    resume.add_argument("flow_id")
    resume.add_argument("--flow-file")
    resume.set_defaults(func=_async(_resume))

    cancel = sub.add_parser("cancel", help="Request cancellation of an execution")
    cancel.add_argument("execution_id")
    cancel.set_defaults(func=cancel_execution)

    approve = sub.add_parser("approve", help="Approve the pending approval step")
    approve.add_argument("execution_id")
    approve.set_defaults(func=submit_decision)

    reject = sub.add_parser("reject", help="Reject the pending approval step")
    reject.add_argument("execution_id")
    reject.set_defaults(func=submit_decision)

    list_cmd = sub.add_parser("list", help="List recent executions")
    list_cmd.add_argument("--flow-id")
    list_cmd.add_argument("--skip", type=int, default=0)
    list_cmd.add_argument("--limit", type=int, default=20)
    list_cmd.set_defaults(func=list_executions)

    loops = sub.add_parser("loops", help="Show feedback loops in a flow definition")
    loops.add_argument("flow_file")
    loops.set_defaults(func=show_loops)

    return parser


def main(argv: Optional[list[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    _configure_logging(settings)
    try:
        args.func(settings, args)
    except (ExecutionsClientError, TrackerError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        print("Interrupted.", file=sys.stderr)
        sys.exit(130)


if __name__ == "__main__":
    main()
