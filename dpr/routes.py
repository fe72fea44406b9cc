from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Protocol

from .docker_ops import ContainerRecord, NotEligible, TransientDiscoveryError, extract_metadata
from .labels import LabelError
from .settings import Settings, settings

COLLISION_POLICIES = ("reject", "last-wins")

# RFC 3339 with up to nanosecond precision; docker trims trailing zeros from the fraction.
_CREATED_RE = re.compile(r"^(\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2})(?:\.(\d{1,9}))?(Z|[+-]\d{2}:\d{2})$")
_UNKNOWN_CREATED = (datetime.max.replace(tzinfo=timezone.utc), 0)


class ContainerSource(Protocol):
    def running_container_ids(self) -> list[str]: ...

    def inspect(self, container_id: str) -> dict: ...


@dataclass(frozen=True)
class Exclusion:
    name: str
    reason: str
    error: bool = True  # False for deliberate exclusions (disabled, other network)


@dataclass(frozen=True)
class RouteTable:
    routes: tuple[ContainerRecord, ...] = ()

    def __post_init__(self) -> None:
        object.__setattr__(self, "routes", tuple(sorted(self.routes, key=lambda r: (r.name, r.id))))

    def __len__(self) -> int:
        return len(self.routes)

    def __iter__(self):
        return iter(self.routes)

    def names(self) -> set[str]:
        return {r.name for r in self.routes}


@dataclass
class BuildReport:
    table: RouteTable
    excluded: list[Exclusion] = field(default_factory=list)

    @property
    def errors(self) -> list[Exclusion]:
        return [e for e in self.excluded if e.error]


def created_key(created: str) -> tuple[datetime, int]:
    """Sortable (second, nanosecond) form of a docker `Created` timestamp.

    Unparseable values sort as newest.
    """
    m = _CREATED_RE.match(created or "")
    if not m:
        return _UNKNOWN_CREATED
    base, frac, tz = m.groups()
    when = datetime.fromisoformat(base + ("+00:00" if tz == "Z" else tz))
    return when, int((frac or "").ljust(9, "0"))


def resolve_collisions(records: list[ContainerRecord], policy: str) -> tuple[list[ContainerRecord], list[Exclusion]]:
    """Keep one container per literal path.

    reject:    the earliest created claimant keeps the path, later ones are excluded.
    last-wins: the most recently created claimant takes the path over.
    Ties on creation time fall back to container name so the result is deterministic.
    """
    if policy not in COLLISION_POLICIES:
        raise ValueError(f"Unknown collision policy '{policy}'. Use one of {', '.join(COLLISION_POLICIES)}.")

    claims: dict[str, list[ContainerRecord]] = {}
    for r in records:
        claims.setdefault(r.path, []).append(r)

    kept: list[ContainerRecord] = []
    excluded: list[Exclusion] = []
    for path in sorted(claims):
        claimants = sorted(claims[path], key=lambda r: (created_key(r.created), r.name))
        if len(claimants) == 1:
            kept.append(claimants[0])
            continue
        winner = claimants[0] if policy == "reject" else claimants[-1]
        kept.append(winner)
        for loser in claimants:
            if loser is winner:
                continue
            if policy == "reject":
                reason = f"path collision: {path} already claimed by {winner.name}; route rejected"
            else:
                reason = f"path collision: {path} taken over by newer container {winner.name}"
            excluded.append(Exclusion(loser.name, reason))
    return kept, excluded


def build_route_table(source: ContainerSource, cfg: Settings = settings) -> BuildReport:
    """Full snapshot of every eligible running container.

    Never patches a previous table: the result depends only on what the
    runtime reports right now.
    """
    records: list[ContainerRecord] = []
    excluded: list[Exclusion] = []

    for cid in source.running_container_ids():
        try:
            attrs = source.inspect(cid)
            meta = extract_metadata(attrs, cfg)
        except TransientDiscoveryError as e:
            excluded.append(Exclusion(cid[:12], f"discovery failed: {e}"))
            continue
        except LabelError as e:
            name = (attrs.get("Name") or cid[:12]).lstrip("/")
            excluded.append(Exclusion(name, f"invalid labels: {e}"))
            continue
        if isinstance(meta, NotEligible):
            excluded.append(Exclusion(meta.name, meta.reason, error=False))
            continue
        records.append(meta)

    kept, collisions = resolve_collisions(records, cfg.collision_policy)
    excluded.extend(collisions)
    return BuildReport(table=RouteTable(tuple(kept)), excluded=excluded)


@dataclass(frozen=True)
class Resolution:
    route: ContainerRecord
    upstream: str
    forwarded: str


def resolve(table: RouteTable, uri: str, host: str | None = None) -> Resolution | None:
    """Which route serves `uri`, and what request line the backend receives.

    Longest matching prefix wins, as with nginx prefix locations. The prefix
    is stripped, so /dev/foo/bar?x=1 under /dev/foo/ forwards /bar?x=1.
    The host guard is checked only on the chosen location: a mismatch there
    is a 404, never a fall back to a shorter prefix.
    """
    path, sep, query = uri.partition("?")
    best: ContainerRecord | None = None
    for r in table:
        if path.startswith(r.path) or path == r.path.rstrip("/"):
            if best is None or len(r.path) > len(best.path):
                best = r
    if best is None:
        return None
    if best.host and host is not None and best.host != host.lower():
        return None
    rest = path[len(best.path):] if path.startswith(best.path) else ""
    forwarded = "/" + rest + (sep + query if sep else "")
    return Resolution(route=best, upstream=best.upstream_name, forwarded=forwarded)
