"""Entry point for `python -m phasegate` and the `phasegate` CLI script."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from dotenv import load_dotenv

from phasegate import CommandInterpreter, PlanningPass, WorkflowEngine
from phasegate.errors import ConfigurationError, ExecutionNotFound, PersistenceError, StaleQueueError, TransitionError
from phasegate.models import Candidate
from phasegate.scoring import load_weights
from phasegate.settings import RuntimeSettings
from phasegate.templates import load_template


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Phase-gate workflow engine and leverage queue")
    parser.add_argument(
        "--repo-root",
        type=Path,
        default=Path.cwd(),
        help="Directory that relative state store paths resolve against (default: cwd)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "--template-dir",
        type=Path,
        default=None,
        help="Directory of JSON workflow templates to register alongside the built-in ones",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    init = sub.add_parser("init", help="Start a new execution from a template")
    init.add_argument("template", help="Template id (engineering-loop, bugfix-loop) or path to a JSON template")
    init.add_argument("--mode", default=None, help="Execution mode (defaults to the template's default mode)")
    init.add_argument("--project", default=None, help="Optional project label")

    directive = sub.add_parser("directive", help="Apply a directive to an execution")
    directive.add_argument("instance_id")
    directive.add_argument("text", nargs="+", help="Directive text, e.g. 'request-changes: tighten the spec'")

    status = sub.add_parser("status", help="Show execution progress")
    status.add_argument("instance_id")

    sub.add_parser("list", help="List live executions")
    sub.add_parser("templates", help="List registered template ids")

    runs = sub.add_parser("runs", help="List archived runs")
    runs.add_argument("--template", default=None, help="Only runs of this template id")
    runs.add_argument("--limit", type=int, default=20)

    plan = sub.add_parser("plan", help="Score candidates and publish a queue")
    plan.add_argument("candidates", type=Path, help="JSON file holding a list of candidates")
    plan.add_argument("--resolved", nargs="*", default=[], help="Blocker ids already resolved")
    plan.add_argument("--limit", type=int, default=None)

    sub.add_parser("claim", help="Claim the top entry of the published queue")
    return parser.parse_args(argv)


def _load_candidates(path: Path) -> list[Candidate]:
    if not path.is_file():
        raise FileNotFoundError(f"Candidate file does not exist: {path}")
    payload = json.loads(path.read_text(encoding="utf-8"))
    if not isinstance(payload, list):
        raise ValueError("candidate file must contain a JSON list")
    return [Candidate.model_validate(item) for item in payload]


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    repo_root = args.repo_root.resolve()
    env_path = repo_root / ".env"
    if env_path.is_file():
        load_dotenv(env_path)

    try:
        settings = RuntimeSettings.from_env()
    except ValueError as exc:
        logging.error("Invalid configuration: %s", exc)
        return 2
    engine = WorkflowEngine.from_settings(settings, repo_root)

    try:
        if args.template_dir is not None:
            count = engine.registry.register_directory(args.template_dir)
            logging.info("Registered %d template(s) from %s", count, args.template_dir)

        if args.command == "init":
            template_path = Path(args.template)
            if template_path.suffix == ".json":
                template = load_template(template_path)
                engine.registry.register(template)
            else:
                template = engine.registry.get(args.template)
            state = engine.initialize(template, args.mode, project=args.project)
            print(state.instance_id)
            return 0

        if args.command == "directive":
            interpreter = CommandInterpreter(engine)
            result = interpreter.execute(args.instance_id, " ".join(args.text))
            print(result.message)
            return 0 if result.accepted else 1

        if args.command == "status":
            summary = engine.summarize(engine.load(args.instance_id))
            print(summary.model_dump_json(indent=2))
            return 0

        if args.command == "list":
            for instance_id in engine.list_instances():
                print(instance_id)
            return 0

        if args.command == "templates":
            for template_id in engine.registry.list_ids():
                print(template_id)
            return 0

        if args.command == "runs":
            for run in engine.query_runs(template_id=args.template, limit=args.limit):
                completed = run.state.completed_at.isoformat() if run.state.completed_at else "-"
                print(f"{completed} {run.state.template_id} {run.state.instance_id} {run.fingerprint[:12]}")
            return 0

        if args.command == "plan":
            candidates = _load_candidates(args.candidates)
            planner = PlanningPass(
                lambda: candidates,
                weights=load_weights(settings.weights_json),
                resolved_source=lambda: args.resolved,
                limit=args.limit or settings.queue_limit,
                ttl=settings.queue_ttl_seconds,
                store=engine.store,
            )
            queue = planner.run()
            for entry in queue.entries:
                print(f"{entry.rank}. {entry.candidate.candidate_id} score={entry.candidate.score:.4f}")
            for blocked in queue.blocked:
                print(f"blocked {blocked.candidate.candidate_id} by {', '.join(sorted(blocked.blocked_by))}")
            return 0

        if args.command == "claim":
            entry = engine.store.claim_queue_head()
            if entry is None:
                print("queue is empty")
                return 1
            print(entry.candidate.model_dump_json(indent=2))
            return 0
    except StaleQueueError as exc:
        logging.error("%s", exc)
        return 3
    except (ConfigurationError, TransitionError) as exc:
        logging.error("%s", exc)
        return 2
    except (ExecutionNotFound, PersistenceError, OSError, ValueError) as exc:
        logging.error("%s", exc)
        return 1

    logging.error("Unknown command: %s", args.command)
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
