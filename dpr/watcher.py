from __future__ import annotations

import logging
import queue
from dataclasses import dataclass
from threading import Event, Thread
from typing import Any, Iterator, Protocol

import requests
from docker.errors import DockerException

from . import db
from .settings import Settings, settings

logger = logging.getLogger("dpr.watcher")

START = "start"
DIE = "die"
RESYNC = "resync"


@dataclass(frozen=True)
class ContainerEvent:
    action: str  # start|die|resync
    container_id: str = ""
    name: str = ""

    @property
    def label(self) -> str:
        if self.action == RESYNC:
            return RESYNC
        return f"{self.action}:{self.name or self.container_id[:12]}"


class EventSource(Protocol):
    def events(self) -> Iterator[dict[str, Any]]: ...

    def container_networks(self, container_id: str) -> set[str] | None: ...


def parse_event(raw: dict[str, Any]) -> ContainerEvent | None:
    """Map a decoded docker event onto a ContainerEvent, or None if irrelevant."""
    if raw.get("Type", "container") != "container":
        return None
    action = raw.get("Action") or raw.get("status") or ""
    if action not in (START, DIE):
        return None
    actor = raw.get("Actor") or {}
    cid = actor.get("ID") or raw.get("id") or ""
    name = (actor.get("Attributes") or {}).get("name", "")
    return ContainerEvent(action=action, container_id=cid, name=name)


class EventWatcher:
    """Feeds container start/die events on the managed network into a queue.

    Runs on its own thread and holds no routing state. When the stream drops
    it reconnects with exponential backoff and, once reconnected, queues a
    resync since events may have been missed meanwhile.
    """

    def __init__(self, source: EventSource, sink: "queue.Queue[ContainerEvent]", cfg: Settings = settings) -> None:
        self.source = source
        self.sink = sink
        self.cfg = cfg
        self._stop = Event()
        self._stream: Any = None
        self._thr: Thread | None = None

    def start(self) -> None:
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        self._thr = Thread(target=self._loop, name="dpr-watcher", daemon=True)
        self._thr.start()

    def stop(self) -> None:
        self._stop.set()
        self._close_stream()

    def join(self, timeout: float | None = None) -> None:
        if self._thr:
            self._thr.join(timeout)

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        close = getattr(stream, "close", None)
        if close:
            try:
                close()
            except (DockerException, requests.exceptions.RequestException, OSError) as e:
                logger.debug("closing event stream: %s", e)

    def relevant(self, ev: ContainerEvent) -> bool:
        try:
            networks = self.source.container_networks(ev.container_id)
        except (DockerException, requests.exceptions.RequestException) as e:
            logger.debug("network lookup for %s failed (%s); reconciling anyway", ev.label, e)
            return True
        # Already removed: it may have held a route, so reconcile.
        if networks is None:
            return True
        return self.cfg.docker_network in networks

    def pump(self, stream: Iterator[dict[str, Any]]) -> int:
        """Queue every relevant event from `stream` until it ends or stop() is called."""
        queued = 0
        for raw in stream:
            if self._stop.is_set():
                break
            ev = parse_event(raw)
            if ev is None:
                continue
            if not self.relevant(ev):
                logger.debug("ignoring %s: not on %s", ev.label, self.cfg.docker_network)
                continue
            self.sink.put(ev)
            queued += 1
        return queued

    def _loop(self) -> None:
        backoff = self.cfg.reconnect_initial_s
        missed = False
        while not self._stop.is_set():
            try:
                self._stream = self.source.events()
                if missed:
                    db.log_event("INFO", "Docker event stream reconnected; queueing resync")
                    self.sink.put(ContainerEvent(RESYNC))
                missed = False
                backoff = self.cfg.reconnect_initial_s
                self.pump(self._stream)
                missed = True
                if not self._stop.is_set():
                    db.log_event("WARN", "Docker event stream ended")
            except (DockerException, requests.exceptions.RequestException, OSError) as e:
                missed = True
                if self._stop.is_set():
                    break
                db.log_event("WARN", f"Docker event stream failed: {type(e).__name__}: {e}; retrying in {backoff:.0f}s")
            except Exception as e:
                # Broken chunked reads (urllib3) and undecodable payloads surface here.
                missed = True
                if self._stop.is_set():
                    break
                db.log_event("ERROR", f"Error in docker event stream: {type(e).__name__}: {e}; retrying in {backoff:.0f}s")
            finally:
                self._close_stream()
            if self._stop.wait(backoff):
                break
            backoff = min(backoff * 2, self.cfg.reconnect_max_s)
