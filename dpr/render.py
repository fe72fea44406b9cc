from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from typing import Union

from .docker_ops import ContainerRecord
from .routes import RouteTable

PROXY_TIMEOUT = "60s"
KEEPALIVE_CONNECTIONS = 32
UPGRADE_VAR = "$dpr_connection_upgrade"
HEADER = "Generated by dpr. Do not edit; rewritten on every reconciliation."

_NEEDS_QUOTES = re.compile(r"[\s;{}\"'\\]")


class RenderError(Exception):
    """The route table could not be turned into configuration (indicates a bug upstream)."""


@dataclass(frozen=True)
class Comment:
    text: str


@dataclass(frozen=True)
class Directive:
    name: str
    args: tuple[str, ...] = ()


@dataclass(frozen=True)
class Block:
    name: str
    args: tuple[str, ...] = ()
    body: tuple["Node", ...] = ()


Node = Union[Comment, Directive, Block]


def _quote(token: str) -> str:
    if token and not _NEEDS_QUOTES.search(token):
        return token
    return '"' + token.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _head(name: str, args: tuple[str, ...]) -> str:
    return " ".join([_quote(name), *(_quote(a) for a in args)])


def serialize(nodes: tuple[Node, ...] | list[Node], indent: int = 0) -> str:
    pad = "    " * indent
    lines: list[str] = []
    for node in nodes:
        if isinstance(node, Comment):
            lines.append(f"{pad}# {node.text}")
        elif isinstance(node, Directive):
            lines.append(f"{pad}{_head(node.name, node.args)};")
        else:
            lines.append(f"{pad}{_head(node.name, node.args)} {{")
            inner = serialize(node.body, indent + 1)
            if inner:
                lines.append(inner)
            lines.append(f"{pad}}}")
    return "\n".join(lines)


@dataclass(frozen=True)
class ConfigArtifact:
    upstreams_text: str
    locations_text: str

    @property
    def digest(self) -> str:
        h = hashlib.sha256()
        h.update(self.upstreams_text.encode("utf-8"))
        h.update(b"\0")
        h.update(self.locations_text.encode("utf-8"))
        return h.hexdigest()[:16]


def _origin(r: ContainerRecord) -> Comment:
    return Comment(f"container: {r.name} ({r.short_id})")


def _regex_literal(path: str) -> str:
    # Label paths are limited to characters where only '.' and '+' mean something to PCRE.
    return path.replace(".", "[.]").replace("+", "[+]")


def upstream_block(r: ContainerRecord) -> Block:
    return Block(
        "upstream",
        (r.upstream_name,),
        (
            Directive("server", (f"{r.ip}:{r.port}",)),
            Directive("keepalive", (str(KEEPALIVE_CONNECTIONS),)),
        ),
    )


def location_block(r: ContainerRecord) -> Block:
    body: list[Node] = []
    if r.host:
        host_var = "$http_host" if ":" in r.host else "$host"
        body.append(Block("if", (f"({host_var}", "!=", f"{r.host})"), (Directive("return", ("404",)),)))
    if r.path != "/":
        # Backends see root-relative paths; the query string is carried over by rewrite.
        body.append(Directive("rewrite", (f"^{_regex_literal(r.path)}(.*)$", "/$1", "break")))
    body.extend(
        [
            Directive("proxy_pass", (f"http://{r.upstream_name}",)),
            Directive("proxy_set_header", ("Host", "$host")),
            Directive("proxy_set_header", ("X-Real-IP", "$remote_addr")),
            Directive("proxy_set_header", ("X-Forwarded-For", "$proxy_add_x_forwarded_for")),
            Directive("proxy_set_header", ("X-Forwarded-Proto", "$scheme")),
            Directive("proxy_http_version", ("1.1",)),
            Directive("proxy_set_header", ("Upgrade", "$http_upgrade")),
            Directive("proxy_set_header", ("Connection", UPGRADE_VAR)),
            Directive("proxy_connect_timeout", (PROXY_TIMEOUT,)),
            Directive("proxy_send_timeout", (PROXY_TIMEOUT,)),
            Directive("proxy_read_timeout", (PROXY_TIMEOUT,)),
        ]
    )
    return Block("location", (r.path,), tuple(body))


def _upgrade_map() -> Block:
    # Plain requests get an empty Connection header so upstream keepalive works.
    return Block(
        "map",
        ("$http_upgrade", UPGRADE_VAR),
        (Directive("default", ("upgrade",)), Directive("", ("",))),
    )


def render(table: RouteTable) -> ConfigArtifact:
    """Pure function of the route table; equal tables give byte-identical artifacts."""
    seen_paths: set[str] = set()
    seen_upstreams: set[str] = set()
    for r in table:
        if r.path in seen_paths:
            raise RenderError(f"duplicate location {r.path} reached the renderer")
        if r.upstream_name in seen_upstreams:
            raise RenderError(f"duplicate upstream {r.upstream_name} reached the renderer")
        seen_paths.add(r.path)
        seen_upstreams.add(r.upstream_name)

    summary = Comment(f"{len(table)} route(s)")
    upstreams: list[Node] = [Comment(HEADER), summary, _upgrade_map()]
    locations: list[Node] = [Comment(HEADER), summary]
    for r in table:
        upstreams.extend([_origin(r), upstream_block(r)])
        locations.extend([_origin(r), location_block(r)])

    return ConfigArtifact(
        upstreams_text=serialize(upstreams) + "\n",
        locations_text=serialize(locations) + "\n",
    )
