"""
BananaFlow - Main Entry Point

Command line access to saved workflows:

    bananaflow run workflow.json --node gen_1
    bananaflow inputs workflow.json --node gen_1
    bananaflow preset source-layers layers.json
    bananaflow plan "product shots on a beach" beach.json
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from bananaflow import __version__
from bananaflow.config import load_settings
from bananaflow.core.dispatcher import NodeDispatcher, RunState
from bananaflow.core.graph import GraphStore
from bananaflow.core.planner import plan_workflow
from bananaflow.core.presets import PRESETS
from bananaflow.core.resolution import MissingInputError, resolve_run_inputs
from bananaflow.core.scheduler import configure_scheduler
from bananaflow.core.workflow import SnapshotStore, WorkflowFormatError, load_workflow, save_workflow
from bananaflow.providers.base import ServiceError
from bananaflow.providers.gemini import GeminiService


logger = logging.getLogger(__name__)


def _print_notice(node_id: str, level: str, message: str) -> None:
    print(f"[{level}] {node_id}: {message}")


async def run_node(store: GraphStore, node_id: str, settings_path: Path | None = None) -> RunState:
    """Run one node of a loaded workflow and wait for it."""
    settings = load_settings(settings_path)
    scheduler = configure_scheduler(settings.min_request_gap, settings.retry)
    service = GeminiService(settings.provider_config())

    dispatcher = NodeDispatcher(store, service, scheduler=scheduler, language=settings.language)
    dispatcher.set_notification_callback(_print_notice)
    await dispatcher.execute(node_id)

    SnapshotStore(settings.snapshot_dir).save(store)
    return dispatcher.state(node_id)


def cmd_run(args: argparse.Namespace) -> int:
    store = load_workflow(args.workflow)
    if args.node not in store:
        print(f"Error: Node '{args.node}' not found", file=sys.stderr)
        return 1

    state = asyncio.run(run_node(store, args.node, args.settings))
    if state is RunState.IDLE:
        print(f"Node '{args.node}' has nothing to run")

    output = args.output or args.workflow
    save_workflow(output, store)
    print(f"Saved to: {output}")
    return 1 if state is RunState.FAILED else 0


def cmd_inputs(args: argparse.Namespace) -> int:
    store = load_workflow(args.workflow)
    node = store.get_node(args.node)
    if node is None:
        print(f"Error: Node '{args.node}' not found", file=sys.stderr)
        return 1

    try:
        inputs = resolve_run_inputs(node, store.nodes, store.edges)
    except MissingInputError as e:
        print(f"Missing input: {e}")
        return 1

    print(f"Prompts ({len(inputs.prompts)}):")
    for prompt in inputs.prompts:
        print(f"  • {prompt}")
    print(f"Images ({len(inputs.images)}):")
    for image in inputs.images:
        print(f"  • {len(image)} bytes encoded")
    return 0


def cmd_preset(args: argparse.Namespace) -> int:
    image = args.image.read_text().strip() if args.image else None
    store = PRESETS[args.name](image)
    save_workflow(args.output, store)
    print(f"Wrote {args.name} ({len(store)} nodes) to: {args.output}")
    return 0


def cmd_plan(args: argparse.Namespace) -> int:
    settings = load_settings(args.settings)
    scheduler = configure_scheduler(settings.min_request_gap, settings.retry)
    service = GeminiService(settings.provider_config())
    image = args.image.read_text().strip() if args.image else None

    try:
        plan = asyncio.run(plan_workflow(args.request, service, scheduler, image))
    except ServiceError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    save_workflow(args.output, plan.store)
    print(plan.description)
    print(f"Wrote plan ({len(plan.store)} nodes) to: {args.output}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="bananaflow", description="Run BananaFlow workflows")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    parser.add_argument("--settings", type=Path, default=None, help="Settings file")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Run one node and save the result")
    run.add_argument("workflow", type=Path)
    run.add_argument("--node", required=True, help="Node ID")
    run.add_argument("--output", type=Path, default=None, help="Where to save (defaults to WORKFLOW)")
    run.set_defaults(func=cmd_run)

    inputs = sub.add_parser("inputs", help="Show the resolved inputs of a node")
    inputs.add_argument("workflow", type=Path)
    inputs.add_argument("--node", required=True, help="Node ID")
    inputs.set_defaults(func=cmd_inputs)

    preset = sub.add_parser("preset", help="Write a built-in workflow")
    preset.add_argument("name", choices=sorted(PRESETS))
    preset.add_argument("output", type=Path)
    preset.add_argument("--image", type=Path, default=None, help="File holding a base64 source image")
    preset.set_defaults(func=cmd_preset)

    plan = sub.add_parser("plan", help="Design a workflow from a description")
    plan.add_argument("request", help="What the workflow should do")
    plan.add_argument("output", type=Path)
    plan.add_argument("--image", type=Path, default=None, help="File holding a base64 attached image")
    plan.set_defaults(func=cmd_plan)

    return parser


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for BananaFlow.

    Returns:
        Exit code (0 for success, non-zero for errors)
    """
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        return args.func(args)
    except (OSError, WorkflowFormatError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
