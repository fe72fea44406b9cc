from __future__ import annotations

import re

from pydantic import BaseModel, Field, ValidationError, field_validator

# Anything outside these sets could break out of the directive the value is rendered into.
PATH_RE = re.compile(r"^[A-Za-z0-9._~%@:+,=/\-]+$")
HOST_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9\-\.]{0,252}(:[0-9]{1,5})?$")


class LabelError(ValueError):
    """A container's routing labels could not be parsed."""


def normalize_path(path: str) -> str:
    """Canonical location prefix: leading slash, no empty segments, trailing slash."""
    parts = [p for p in path.split("/") if p]
    if not parts:
        return "/"
    return "/" + "/".join(parts) + "/"


class RouteLabels(BaseModel):
    """Typed view of the `<prefix>enable|path|host|port` label contract."""

    enable: bool = Field(True, description="Route this container at all")
    path: str | None = Field(None, description="URL prefix served; defaults to /<container name>")
    host: str | None = Field(None, description="Optional Host header match")
    port: int | None = Field(None, ge=1, le=65535, description="Backend port; inferred from exposed ports if unset")

    @field_validator("path")
    @classmethod
    def _check_path(cls, v: str | None) -> str | None:
        if v is None:
            return None
        if not PATH_RE.match(v):
            raise ValueError("path may only contain letters, digits, '/' and ._~%@:+,=-")
        if ".." in v.split("/"):
            raise ValueError("path must not contain '..' segments")
        return normalize_path(v)

    @field_validator("host")
    @classmethod
    def _check_host(cls, v: str | None) -> str | None:
        if v is None:
            return None
        if not HOST_RE.match(v):
            raise ValueError("host must be an exact hostname (optionally with :port); wildcards are not supported")
        return v.lower()


def parse_labels(labels: dict[str, str] | None, prefix: str) -> RouteLabels:
    """Pick the routing labels out of a container's label map.

    Empty values count as unset, so `nginx.port=` falls back to inference.
    Raises LabelError with a readable message on any invalid value.
    """
    raw: dict[str, str] = {}
    for key, value in (labels or {}).items():
        if not key.startswith(prefix):
            continue
        field = key[len(prefix):]
        if field in RouteLabels.model_fields and value is not None and value.strip() != "":
            raw[field] = value.strip()
    try:
        return RouteLabels(**raw)
    except ValidationError as e:
        problems = "; ".join(
            f"{prefix}{'.'.join(str(x) for x in err['loc'])}: {err['msg']}" for err in e.errors()
        )
        raise LabelError(problems) from e
