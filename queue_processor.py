"""Queue Processor — runs the decision queue engine from the command line.

``watch`` keeps the in-memory queue in sync with pending/ until Ctrl+C and
logs what the producer drops in.  The other commands load the queue once
and perform a single action, which is handy for scripting and for checking
a queue folder by hand.

REQUIREMENTS
------------
    pip install watchdog

USAGE
-----
    python queue_processor.py watch
    python queue_processor.py --queue-dir /path/to/queue list
    python queue_processor.py show PLAN_ID
    python queue_processor.py answer PLAN_ID DECISION_ID VALUE
    python queue_processor.py skip PLAN_ID DECISION_ID
    python queue_processor.py submit PLAN_ID
"""

import argparse
import logging
import sys
import time
from datetime import datetime
from pathlib import Path

from plan_models import SKIP_SENTINEL, Plan, QueueError
from queue_config import ConfigError, load_config
from queue_manager import QueueManager

# ------------------------------------------------------------------
# Logging
# ------------------------------------------------------------------

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
logger = logging.getLogger("QueueProcessor")


def setup_logging(queue_dir: Path, log_to_file: bool = False, verbose: bool = False) -> None:
    """Configure console logging and optional file logging into queue/logs/."""
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    if log_to_file:
        logs_dir = queue_dir / "logs"
        logs_dir.mkdir(parents=True, exist_ok=True)
        date_stamp = datetime.now().strftime("%Y-%m-%d")
        log_file = logs_dir / f"queue_{date_stamp}.log"
        handlers.append(logging.FileHandler(str(log_file), encoding="utf-8"))

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )


# ------------------------------------------------------------------
# Output
# ------------------------------------------------------------------

def format_plan_line(plan: Plan) -> str:
    tag = f" #{plan.tag}" if plan.tag else ""
    return (
        f"[{plan.priority:>6}] {plan.id}  {plan.title}{tag}  "
        f"({plan.answered}/{plan.total} answered, {plan.status})"
    )


def format_plan(plan: Plan) -> str:
    lines = [format_plan_line(plan), f"agent: {plan.agent}  session: {plan.session}"]
    if plan.context:
        lines += ["", plan.context]

    next_index = plan.first_pending_index()
    for index, decision in enumerate(plan.decisions):
        marker = ">" if index == next_index else " "
        answer = "(skipped)" if decision.answer == SKIP_SENTINEL else decision.answer or "-"
        lines += ["", f"{marker} {index + 1}. {decision.title or decision.id}  [{decision.id}: {answer}]"]
        if decision.context:
            lines.append(f"    {decision.context}")
        for option in decision.options:
            lines.append(f"    - {option.key}" + (f" — {option.label}" if option.label else ""))
        if decision.allow_custom:
            lines.append("    (custom answers allowed)")
    return "\n".join(lines)


# ------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------

def run_watch(manager: QueueManager) -> int:
    logger.info("=" * 60)
    logger.info("Decision queue starting")
    logger.info("Queue: %s", manager.queue_dir)
    logger.info("=" * 60)

    manager.init()
    logger.info("Watching %s (Ctrl+C to stop)", manager.pending_dir)

    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Shutdown requested — stopping watcher")
    finally:
        manager.shutdown()

    logger.info("Decision queue stopped gracefully")
    return 0


def run_command(manager: QueueManager, args: argparse.Namespace) -> int:
    manager.init(watch=False)
    try:
        if args.command == "list":
            plans = manager.get_pending()
            if not plans:
                print("Queue is empty.")
            for plan in plans:
                print(format_plan_line(plan))
            return 0

        if args.command == "stats":
            stats = manager.get_stats()
            print(
                f"urgent: {stats.urgent}  high: {stats.high}  "
                f"normal: {stats.normal}  low: {stats.low}  total: {stats.total}"
            )
            return 0

        if args.command == "show":
            plan = manager.get_plan(args.plan_id)
        elif args.command == "answer":
            plan = manager.answer_decision(args.plan_id, args.decision_id, args.value)
        elif args.command == "skip":
            plan = manager.skip_decision(args.plan_id, args.decision_id)
        else:
            plan = manager.submit_plan(args.plan_id)

        if plan is None:
            print(f"Plan not found: {args.plan_id}", file=sys.stderr)
            return 1
        print(format_plan(plan))
        return 0

    except QueueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    finally:
        manager.shutdown()


# ------------------------------------------------------------------
# Main
# ------------------------------------------------------------------

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Decision queue — watch pending plans and record answers",
        epilog="Example: python queue_processor.py --queue-dir ~/.arbiter/queue list",
    )
    parser.add_argument("--config", help="Path to config.json (default: ~/.arbiter/config.json)")
    parser.add_argument("--queue-dir", help="Queue root folder (overrides config)")
    parser.add_argument(
        "--log-to-file",
        action="store_true",
        help="Also write logs to <queue>/logs/queue_DATE.log",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command")
    sub.add_parser("watch", help="Keep the queue loaded and watch for changes (default)")
    sub.add_parser("list", help="List pending plans, most urgent first")
    sub.add_parser("stats", help="Count pending plans by priority")

    show = sub.add_parser("show", help="Show one plan and its decisions")
    show.add_argument("plan_id")

    answer = sub.add_parser("answer", help="Answer a decision")
    answer.add_argument("plan_id")
    answer.add_argument("decision_id")
    answer.add_argument("value")

    skip = sub.add_parser("skip", help="Skip a decision")
    skip.add_argument("plan_id")
    skip.add_argument("decision_id")

    submit = sub.add_parser("submit", help="Submit a ready plan")
    submit.add_argument("plan_id")
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except ConfigError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    if args.queue_dir:
        config.queue_dir = Path(args.queue_dir).expanduser()

    setup_logging(config.queue_dir, log_to_file=args.log_to_file, verbose=args.verbose)
    manager = QueueManager.from_config(config)

    if args.command in (None, "watch"):
        return run_watch(manager)
    return run_command(manager, args)


if __name__ == "__main__":
    sys.exit(main())
