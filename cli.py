from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from dataclasses import asdict

from dpr import db
from dpr.docker_ops import DockerRuntime
from dpr.reconciler import Reconciler
from dpr.render import render
from dpr.routes import build_route_table, resolve
from dpr.runtime import OUTCOMES
from dpr.settings import settings


def _print(obj) -> None:
    print(json.dumps(obj, indent=2, ensure_ascii=False))


def configure_logging(level: str = settings.log_level, log_file: str = settings.log_file) -> None:
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file, mode="a", encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=handlers,
    )


def _run(rec: Reconciler) -> int:
    def _shutdown(signum, frame) -> None:
        db.log_event("INFO", f"Signal {signum} received; stopping after the current cycle")
        rec.stop()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    if settings.create_network and rec.source.ensure_network():
        db.log_event("INFO", f"Created docker network '{settings.docker_network}'.")
    rec.run()
    return 0


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Docker Proxy Reconciler: keep nginx routes in sync with containers")
    p.add_argument("--log-level", default=settings.log_level)
    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="Reconcile once, then follow docker events until stopped")
    sub.add_parser("once", help="Run a single reconciliation cycle")
    sub.add_parser("render", help="Print the config the current containers would produce (no changes)")

    s_res = sub.add_parser("resolve", help="Show which route serves a request URI")
    s_res.add_argument("uri")
    s_res.add_argument("--host", default=None)

    s_audit = sub.add_parser("audit", help="Show recent reconciliation results")
    s_audit.add_argument("--limit", type=int, default=20)
    s_audit.add_argument("--outcome", default=None, choices=OUTCOMES)

    s_ev = sub.add_parser("events", help="Show recent service events")
    s_ev.add_argument("--limit", type=int, default=20)

    args = p.parse_args(argv)
    configure_logging(level=args.log_level, log_file=settings.log_file)
    db.init_db()

    if args.cmd == "audit":
        _print([asdict(r) for r in db.latest_results(args.limit, outcome=args.outcome)])
        return 0

    if args.cmd == "events":
        _print(db.latest_events(args.limit))
        return 0

    runtime = DockerRuntime(cfg=settings)
    if not runtime.available():
        print("Docker is not available. Start the docker daemon and try again.", file=sys.stderr)
        return 1

    if args.cmd == "render":
        report = build_route_table(runtime, settings)
        artifact = render(report.table)
        for ex in report.excluded:
            print(f"# excluded {ex.name}: {ex.reason}", file=sys.stderr)
        sys.stdout.write(f"# --- {settings.upstreams_file}\n{artifact.upstreams_text}")
        sys.stdout.write(f"# --- {settings.locations_file}\n{artifact.locations_text}")
        return 0

    if args.cmd == "resolve":
        report = build_route_table(runtime, settings)
        match = resolve(report.table, args.uri, host=args.host)
        if match is None:
            _print({"uri": args.uri, "route": None})
            return 1
        _print(
            {
                "uri": args.uri,
                "route": match.route.name,
                "location": match.route.path,
                "upstream": match.upstream,
                "backend": f"{match.route.ip}:{match.route.port}",
                "forwarded": match.forwarded,
            }
        )
        return 0

    rec = Reconciler.from_settings(settings, docker_runtime=runtime)

    if args.cmd == "once":
        result = rec.reconcile(trigger="manual")
        _print(asdict(result))
        return 0 if result.outcome in {"applied", "unchanged"} else 1

    if args.cmd == "run":
        return _run(rec)

    return 2


if __name__ == "__main__":
    raise SystemExit(main(sys.argv[1:]))
