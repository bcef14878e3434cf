"""
Command-line interface for controlsync.

Usage (examples):
  - Show what would change:
      csync plan --manifest ./controlsync.manifest.yml

  - Apply the manifest:
      csync apply --manifest ./controlsync.manifest.yml --api-key "$KUBIYA_CONTROL_PLANE_API_KEY"

  - Adopt an existing resource into state:
      csync import agent agent.svc-bot 8d1c...

  - Delete everything recorded in state:
      csync destroy

Exit codes: 0 ok, 1 failures reported, 2 configuration, 3 validation,
4 network / remote API.
"""

from __future__ import annotations

import argparse
import sys
from typing import Any, Dict, Iterable, Optional

from .core.config import AppConfig, load_config
from .core.diagnostics import DiagnosticSink
from .core.engine import Engine, load_manifest
from .core.errors import ConfigError, ControlPlaneError
from .core.logging_setup import build_logger
from .core.state import StateStore
from .core.transport import Transport, TransportOptions
from .utils.reporting import print_rows

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CONFIG = 2
EXIT_VALIDATION = 3
EXIT_REMOTE = 4


def _summarize_counts(counts: Dict[str, int], keys: Iterable[str]) -> str:
    # stable order for readability
    parts = [f"{k}={counts.get(k, 0)}" for k in keys]
    return " | ".join(parts)


_APPLY_KEYS = ("CREATED", "UPDATED", "UNCHANGED", "DELETED", "GONE", "ERROR")
_PLAN_KEYS = ("CREATE", "UPDATE", "UNCHANGED", "DELETE", "GONE", "ERROR")


def _exit_code_from_counts(counts: Dict[str, int]) -> int:
    if counts.get("ERROR", 0):
        return EXIT_FAILED
    return EXIT_OK


def _build_arg_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--config", default=None, help="YAML config file (default: ./controlsync.yml, ...)")
    common.add_argument("--manifest", default=None, help="Manifest file (YAML)")
    common.add_argument("--state", default=None, help="State file (JSON)")

    # Control plane / HTTP
    common.add_argument("--base-url", default=None, help="Control plane base URL")
    common.add_argument("--api-key", default=None, help="Control plane API key")
    common.add_argument("--insecure", action="store_true", help="Disable TLS verification")
    common.add_argument("--timeout-sec", type=float, default=None, help="HTTP timeout seconds")

    # Logging / output
    common.add_argument("--logs-dir", default=None, help="Logs base directory")
    common.add_argument("--console-level", default=None, help="Console log level (INFO..CRITICAL)")
    common.add_argument("--file-level", default=None, help="File log level (DEBUG..CRITICAL)")
    common.add_argument("--format", default="table", choices=["table", "json"], help="Output format")

    p = argparse.ArgumentParser(prog="csync", description="Declarative sync for the control plane API")
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("plan", parents=[common], help="Show what apply would do")
    sub.add_parser("apply", parents=[common], help="Create, update and delete to match the manifest")
    sub.add_parser("destroy", parents=[common], help="Delete every resource recorded in state")
    sub.add_parser("show", parents=[common], help="List resources recorded in state")

    i = sub.add_parser("import", parents=[common], help="Adopt an existing remote resource into state")
    i.add_argument("kind", help="Entity kind (agent, team, worker_queue, ...)")
    i.add_argument("address", help="State address, e.g. agent.svc-bot")
    i.add_argument("identity", help="Remote identifier")
    return p


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    """Only options actually given on the command line override lower layers."""
    out: Dict[str, Any] = {}

    def put(section: str, key: str, value: Any) -> None:
        if value is not None:
            out.setdefault(section, {})[key] = value

    put("api", "base_url", args.base_url)
    put("api", "api_key", args.api_key)
    put("api", "timeout_sec", args.timeout_sec)
    if args.insecure:
        put("api", "verify_tls", False)
    put("state", "path", args.state)
    put("state", "manifest", args.manifest)
    put("logging", "base_dir", args.logs_dir)
    put("logging", "console_level", args.console_level)
    put("logging", "file_level", args.file_level)
    return out


def _transport(cfg: AppConfig) -> Transport:
    return Transport(
        cfg.api.base_url,
        cfg.api.api_key,
        options=TransportOptions(verify=bool(cfg.api.verify_tls), timeout_sec=float(cfg.api.timeout_sec)),
        sink=DiagnosticSink(cfg.diagnostics.log_file),
    )


def _run(args: argparse.Namespace) -> int:
    overrides = _cli_overrides(args)
    # show works offline
    require_api = args.cmd != "show"
    if args.config:
        cfg = load_config(overrides, (args.config,), require_api=require_api)
    else:
        cfg = load_config(overrides, require_api=require_api)

    logger = build_logger(
        run_id=cfg.run_id,
        action=args.cmd,
        base_dir=cfg.logging.base_dir,
        console_level=cfg.logging.console_level,
        file_level=cfg.logging.file_level,
        extra={"org": cfg.api.org_id},
    )
    logger.info("Starting csync %s (state=%s)", args.cmd, cfg.state.path)

    state = StateStore(cfg.state.path).load()

    if args.cmd == "show":
        rows = [
            {"address": a, "kind": o.kind.value, "identity": o.identity, "name": o.get("name") or ""}
            for a, o in state.items()
        ]
        print_rows(rows, args.format)
        return EXIT_OK

    transport = _transport(cfg)
    try:
        if args.cmd == "import":
            engine = Engine(transport, state, logger=logger)
            result = engine.import_resource(args.address, args.kind, args.identity)
            print_rows([result], args.format)
            return EXIT_OK

        if args.cmd == "destroy":
            engine = Engine(transport, state, logger=logger)
            results, counts = engine.destroy()
            print_rows(results, args.format)
            summary = _summarize_counts(counts, _APPLY_KEYS)
            logger.info("Destroy summary: %s", summary)
            print(summary)
            return _exit_code_from_counts(counts)

        resources = load_manifest(cfg.state.manifest)
        logger.info("Loaded %s resource(s) from %s", len(resources), cfg.state.manifest)
        engine = Engine(transport, state, resources, logger=logger)

        if args.cmd == "plan":
            items = engine.plan()
            print_rows(items, args.format)
            plan_counts: Dict[str, int] = {}
            for it in items:
                plan_counts[it.action] = plan_counts.get(it.action, 0) + 1
            summary = _summarize_counts(plan_counts, _PLAN_KEYS)
            logger.info("Plan summary: %s", summary)
            print(summary)
            return _exit_code_from_counts(plan_counts)

        results, counts = engine.apply()
        print_rows(results, args.format)
        summary = _summarize_counts(counts, _APPLY_KEYS)
        logger.info("Apply summary: %s", summary)
        print(summary)
        return _exit_code_from_counts(counts)
    finally:
        transport.close()


def main(argv: Optional[Iterable[str]] = None) -> int:
    parser = _build_arg_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    try:
        return _run(args)
    except ConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG
    except ValueError as e:
        print(f"Validation error: {e}", file=sys.stderr)
        return EXIT_VALIDATION
    except ControlPlaneError as e:
        print(f"API error: {e}", file=sys.stderr)
        return EXIT_REMOTE


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
