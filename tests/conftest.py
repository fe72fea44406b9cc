import os
import sys
from dataclasses import replace

import pytest
from docker.errors import DockerException

# Project root importable so `dpr` and `cli` work without installing.
_project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from dpr import db  # noqa: E402
from dpr.proxy import CommandResult  # noqa: E402
from dpr.settings import Settings  # noqa: E402

NETWORK = "app-network"


def make_container(
    name,
    ip="172.18.0.2",
    labels=None,
    network=NETWORK,
    running=True,
    exposed=None,
    created="2024-01-01T00:00:00Z",
    cid=None,
):
    """Minimal `docker inspect` document."""
    cid = cid or (name.encode().hex() + "0" * 64)[:64]
    networks = {network: {"IPAddress": ip}} if network else {}
    return {
        "Id": cid,
        "Name": f"/{name}",
        "Created": created,
        "State": {"Running": running},
        "Config": {"Labels": labels or {}, "ExposedPorts": exposed if exposed is not None else {"8080/tcp": {}}},
        "NetworkSettings": {"Networks": networks},
        "HostConfig": {"NetworkMode": network or "bridge"},
    }


class FakeRuntime:
    """Stands in for DockerRuntime: containers are plain inspect dicts keyed by id."""

    def __init__(self, network=NETWORK):
        self.network = network
        self.containers = {}
        self.broken = set()
        self.streams = []

    def add(self, attrs):
        self.containers[attrs["Id"]] = attrs
        return attrs["Id"]

    def start(self, name, **kw):
        return self.add(make_container(name, **kw))

    def stop(self, name):
        for attrs in self.containers.values():
            if attrs["Name"] == f"/{name}":
                attrs["State"]["Running"] = False

    def remove(self, name):
        self.containers = {k: v for k, v in self.containers.items() if v["Name"] != f"/{name}"}

    def running_container_ids(self):
        out = []
        for cid, attrs in self.containers.items():
            if attrs["State"]["Running"] and self.network in attrs["NetworkSettings"]["Networks"]:
                out.append(cid)
        return sorted(out)

    def inspect(self, container_id):
        from dpr.docker_ops import TransientDiscoveryError

        if container_id in self.broken:
            raise TransientDiscoveryError(f"inspect {container_id[:12]} failed: boom")
        if container_id not in self.containers:
            raise TransientDiscoveryError(f"container {container_id[:12]} disappeared")
        return self.containers[container_id]

    def container_networks(self, container_id):
        attrs = self.containers.get(container_id)
        if attrs is None:
            return None
        return set(attrs["NetworkSettings"]["Networks"])

    def events(self):
        if not self.streams:
            raise DockerException("event stream unavailable")
        item = self.streams.pop(0)
        if isinstance(item, Exception):
            raise item
        return iter(item)


def _balanced(text):
    depth = 0
    for ch in text:
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth < 0:
                return False
    return depth == 0


class FakeNginx:
    """Command runner that plays nginx: `-t` checks brace balance of the staged files."""

    def __init__(self, cfg):
        self.cfg = cfg
        self.calls = []
        self.checked = []
        self.reload_result = CommandResult(0, "")
        self.force_test_failure = None

    def run(self, argv, timeout):
        self.calls.append(list(argv))
        if "-t" in argv:
            staged = {}
            for fname in (self.cfg.upstreams_file, self.cfg.locations_file):
                with open(os.path.join(self.cfg.staging_dir, fname), encoding="utf-8") as f:
                    staged[fname] = f.read()
            self.checked.append(staged)
            if self.force_test_failure:
                return CommandResult(1, self.force_test_failure)
            for fname, text in staged.items():
                if not _balanced(text):
                    return CommandResult(
                        1,
                        f'nginx: [emerg] unexpected end of file, expecting "}}" in {fname}\n'
                        "nginx: configuration file test failed",
                    )
            return CommandResult(0, "nginx: configuration file test is successful")
        return self.reload_result

    @property
    def reloads(self):
        return [c for c in self.calls if "-t" not in c]


@pytest.fixture()
def cfg(tmp_path):
    conf = str(tmp_path / "conf.d" / "auto-generated")
    return Settings(
        docker_network=NETWORK,
        label_prefix="nginx.",
        config_dir=conf,
        proxy_config_dir=conf,
        nginx_container="",
        reload_cmd="nginx -s reload",
        collision_policy="reject",
        cycle_timeout_s=30.0,
        start_settle_s=0.0,
        reconnect_initial_s=0.01,
        reconnect_max_s=0.05,
        db_path=str(tmp_path / "audit.db"),
        proxy_health_url="",
    )


@pytest.fixture(autouse=True)
def audit_db(monkeypatch, cfg):
    """Isolated sqlite audit database per test."""
    monkeypatch.setattr(db, "settings", replace(db.settings, db_path=cfg.db_path))
    db.init_db()
    return cfg.db_path


@pytest.fixture()
def fake_runtime():
    return FakeRuntime()


@pytest.fixture()
def fake_nginx(cfg):
    return FakeNginx(cfg)
