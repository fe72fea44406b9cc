from __future__ import annotations

import logging
import queue
import time
from threading import Event
from typing import Callable

import requests
from docker.errors import DockerException

from . import db
from .docker_ops import DockerRuntime
from .health import check_health
from .proxy import Applier, ApplyError, CommandError, NginxValidator, make_runner
from .render import ConfigArtifact, RenderError, render
from .routes import ContainerSource, build_route_table
from .runtime import APPLYING, COLLECTING, IDLE, REJECTED, RENDERING, VALIDATING, ReconciliationResult, RuntimeState
from .settings import Settings, settings
from .watcher import START, ContainerEvent, EventWatcher

logger = logging.getLogger("dpr.reconciler")


class CycleTimeout(Exception):
    pass


class Deadline:
    """Cooperative per-cycle time budget, checked between stages."""

    def __init__(self, seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self.clock = clock
        self.expires_at = clock() + max(0.0, seconds)

    def remaining(self) -> float:
        return max(0.0, self.expires_at - self.clock())

    def check(self, stage: str) -> None:
        if self.remaining() <= 0:
            raise CycleTimeout(f"cycle deadline exceeded during {stage}")


class Reconciler:
    """Keeps the proxy's generated config equal to what the running containers ask for.

    Each cycle rebuilds the route table from scratch, renders it, has nginx
    check it and only then installs it and reloads. Cycles run one at a time
    on the caller's thread; the watcher thread only queues events.
    """

    def __init__(
        self,
        source: ContainerSource,
        validator: NginxValidator,
        applier: Applier,
        runtime: RuntimeState | None = None,
        cfg: Settings = settings,
        events: "queue.Queue[ContainerEvent] | None" = None,
        watcher: EventWatcher | None = None,
        probe: Callable[[str], tuple[bool, str, float | None]] = check_health,
    ) -> None:
        self.source = source
        self.validator = validator
        self.applier = applier
        self.runtime = runtime or RuntimeState()
        self.cfg = cfg
        self.events: queue.Queue[ContainerEvent] = events if events is not None else queue.Queue()
        self.watcher = watcher
        self.probe = probe
        self._stop = Event()

    @classmethod
    def from_settings(cls, cfg: Settings = settings, docker_runtime: DockerRuntime | None = None) -> "Reconciler":
        dr = docker_runtime or DockerRuntime(cfg=cfg)
        runner = make_runner(dr, cfg)
        events: queue.Queue[ContainerEvent] = queue.Queue()
        return cls(
            source=dr,
            validator=NginxValidator(runner, cfg),
            applier=Applier(runner, cfg),
            cfg=cfg,
            events=events,
            watcher=EventWatcher(dr, events, cfg),
        )

    # --- one cycle -------------------------------------------------------

    def reconcile(self, trigger: str = "manual") -> ReconciliationResult:
        deadline = Deadline(self.cfg.cycle_timeout_s)
        try:
            self.runtime.transition(COLLECTING)
            report = build_route_table(self.source, self.cfg)
            for ex in report.excluded:
                if ex.error:
                    self._record(ReconciliationResult(trigger, "skipped-container", ex.reason, container=ex.name))
                else:
                    logger.info("excluded %s: %s", ex.name, ex.reason)
            deadline.check("collecting")

            self.runtime.transition(RENDERING)
            artifact = render(report.table)
            deadline.check("rendering")

            result = self._validate_and_apply(artifact, trigger, deadline, routes=len(report.table))
        except CycleTimeout as e:
            result = ReconciliationResult(trigger, "fatal", f"{e}; previous configuration left in place")
        except RenderError as e:
            result = ReconciliationResult(trigger, "fatal", f"render bug: {e}")
        except ApplyError as e:
            result = ReconciliationResult(trigger, "fatal", str(e))
        except CommandError as e:
            result = ReconciliationResult(trigger, "fatal", f"proxy command unavailable: {e}")
        except (DockerException, requests.exceptions.RequestException) as e:
            result = ReconciliationResult(trigger, "fatal", f"container runtime unavailable: {type(e).__name__}: {e}")
        except Exception as e:
            result = ReconciliationResult(trigger, "fatal", f"unexpected error: {type(e).__name__}: {e}")
        finally:
            self.runtime.reset()
        self._record(result)
        return result

    def _validate_and_apply(
        self, artifact: ConfigArtifact, trigger: str, deadline: Deadline, routes: int
    ) -> ReconciliationResult:
        digest = artifact.digest
        if self.runtime.last_applied_digest == digest and self.applier.current() == artifact:
            self.runtime.transition(IDLE)
            return ReconciliationResult(trigger, "unchanged", "configuration already current", routes=routes, digest=digest)

        self.runtime.transition(VALIDATING)
        check = self.validator.check(artifact, deadline.remaining())
        if not check.ok:
            self.runtime.transition(REJECTED)
            return ReconciliationResult(
                trigger, "rejected", f"nginx -t failed: {check.diagnostic}", routes=routes, digest=digest
            )
        deadline.check("validating")

        self.runtime.transition(APPLYING)
        output = self.applier.apply(artifact, deadline.remaining())
        diagnostic = f"installed {routes} route(s) and reloaded" + (f": {output}" if output else "")
        if self.cfg.proxy_health_url:
            ok, msg, latency = self.probe(self.cfg.proxy_health_url)
            if not ok:
                db.log_event("WARN", f"Proxy health check after reload failed: {msg}")
                diagnostic += f"; health check failed: {msg}"
            else:
                diagnostic += f"; healthy in {latency}ms"
        return ReconciliationResult(trigger, "applied", diagnostic, routes=routes, digest=digest)

    def _record(self, result: ReconciliationResult) -> None:
        self.runtime.add_result(result)
        try:
            db.record_result(result)
        except Exception as e:
            # Audit write failures are logged, never raised.
            logger.error("could not write audit row: %s: %s", type(e).__name__, e)

    # --- service loop ----------------------------------------------------

    def handle(self, ev: ContainerEvent) -> ReconciliationResult | None:
        if ev.action == START and self.cfg.start_settle_s > 0:
            # Give the container a moment to finish attaching to its networks.
            if self._stop.wait(self.cfg.start_settle_s):
                return None
        return self.reconcile(trigger=ev.label)

    def run(self, poll_s: float = 0.5) -> None:
        db.log_event("INFO", f"Reconciler started (network={self.cfg.docker_network})")
        # Watch first so nothing that happens during the startup pass is lost.
        if self.watcher:
            self.watcher.start()
        self.reconcile(trigger="startup")
        while not self._stop.is_set():
            try:
                ev = self.events.get(timeout=poll_s)
            except queue.Empty:
                continue
            self.handle(ev)
        if self.watcher:
            self.watcher.stop()
            self.watcher.join(timeout=5)
        db.log_event("INFO", "Reconciler stopped")

    def stop(self) -> None:
        self._stop.set()
        if self.watcher:
            self.watcher.stop()
