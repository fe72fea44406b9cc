from __future__ import annotations

import os
import shlex
import subprocess
import tempfile
from dataclasses import dataclass
from typing import Protocol

import requests
from docker.errors import DockerException

from .docker_ops import DockerRuntime
from .render import Block, Comment, ConfigArtifact, Directive, serialize
from .settings import Settings, settings

HARNESS_FILE = "harness.conf"


class CommandError(Exception):
    """A proxy control command could not be executed at all."""


class ApplyError(Exception):
    """A validated artifact could not be installed or the reload signal was not delivered."""


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    output: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner(Protocol):
    def run(self, argv: list[str], timeout: float) -> CommandResult: ...


class LocalRunner:
    """Runs proxy commands on this host (nginx installed next to the reconciler)."""

    def run(self, argv: list[str], timeout: float) -> CommandResult:
        try:
            proc = subprocess.run(argv, capture_output=True, text=True, timeout=max(0.1, timeout), check=False)
        except FileNotFoundError as e:
            raise CommandError(f"{argv[0]}: command not found") from e
        except subprocess.TimeoutExpired as e:
            raise CommandError(f"{' '.join(argv)} timed out after {e.timeout:.1f}s") from e
        output = "\n".join(x.strip() for x in (proc.stdout, proc.stderr) if x and x.strip())
        return CommandResult(proc.returncode, output)


class DockerExecRunner:
    """Runs proxy commands inside the proxy's container via docker exec."""

    def __init__(self, runtime: DockerRuntime, container: str) -> None:
        self.runtime = runtime
        self.container = container

    def run(self, argv: list[str], timeout: float) -> CommandResult:
        # exec_run has no per-call timeout; the docker client timeout bounds it.
        try:
            code, output = self.runtime.exec_run(self.container, argv)
        except (DockerException, requests.exceptions.RequestException) as e:
            raise CommandError(f"docker exec in '{self.container}' failed: {e}") from e
        return CommandResult(code, output.strip())


def make_runner(runtime: DockerRuntime, cfg: Settings = settings) -> CommandRunner:
    if cfg.nginx_container:
        return DockerExecRunner(runtime, cfg.nginx_container)
    return LocalRunner()


@dataclass(frozen=True)
class ValidationResult:
    ok: bool
    diagnostic: str


def _write_file(path: str, text: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        f.write(text)


class NginxValidator:
    """Syntax-checks a rendered artifact with `nginx -t` before it can go live.

    The artifact is staged next to the live files together with a minimal
    harness config that includes it exactly the way the real config does:
    upstreams at http level, locations inside a single server block.
    The static server config is not part of the harness, so a generated
    location that clashes with a static one is only caught by the reload.
    """

    def __init__(self, runner: CommandRunner, cfg: Settings = settings) -> None:
        self.runner = runner
        self.cfg = cfg

    def harness_text(self) -> str:
        staged = self.cfg.proxy_staging_dir
        nodes = (
            Comment("dpr validation harness"),
            Directive("error_log", ("stderr",)),
            Block("events"),
            Block(
                "http",
                body=(
                    Directive("include", (os.path.join(staged, self.cfg.upstreams_file),)),
                    Block(
                        "server",
                        body=(
                            Directive("listen", (str(self.cfg.listen_port),)),
                            Directive("include", (os.path.join(staged, self.cfg.locations_file),)),
                        ),
                    ),
                ),
            ),
        )
        return serialize(nodes) + "\n"

    def check(self, artifact: ConfigArtifact, timeout: float) -> ValidationResult:
        staging = self.cfg.staging_dir
        os.makedirs(staging, exist_ok=True)
        staged = {
            os.path.join(staging, self.cfg.upstreams_file): artifact.upstreams_text,
            os.path.join(staging, self.cfg.locations_file): artifact.locations_text,
            os.path.join(staging, HARNESS_FILE): self.harness_text(),
        }
        try:
            for path, text in staged.items():
                _write_file(path, text)
            argv = [self.cfg.nginx_bin, "-t", "-c", os.path.join(self.cfg.proxy_staging_dir, HARNESS_FILE)]
            res = self.runner.run(argv, timeout)
        finally:
            for path in staged:
                try:
                    os.remove(path)
                except FileNotFoundError:
                    pass
        return ValidationResult(ok=res.ok, diagnostic=res.output or f"exit status {res.returncode}")


class Applier:
    """Sole writer of the live artifact files; swaps them in atomically and reloads the proxy."""

    def __init__(self, runner: CommandRunner, cfg: Settings = settings) -> None:
        self.runner = runner
        self.cfg = cfg

    @property
    def upstreams_path(self) -> str:
        return os.path.join(self.cfg.config_dir, self.cfg.upstreams_file)

    @property
    def locations_path(self) -> str:
        return os.path.join(self.cfg.config_dir, self.cfg.locations_file)

    def current(self) -> ConfigArtifact | None:
        """The artifact currently on disk, or None if nothing was installed yet."""
        try:
            with open(self.upstreams_path, encoding="utf-8") as f:
                upstreams = f.read()
            with open(self.locations_path, encoding="utf-8") as f:
                locations = f.read()
        except FileNotFoundError:
            return None
        return ConfigArtifact(upstreams_text=upstreams, locations_text=locations)

    def _atomic_write(self, path: str, text: str) -> None:
        directory = os.path.dirname(path)
        fd, tmp = tempfile.mkstemp(prefix=f".{os.path.basename(path)}.", suffix=".tmp", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(text)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, 0o644)
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.remove(tmp)
            raise

    def install(self, artifact: ConfigArtifact) -> None:
        os.makedirs(self.cfg.config_dir, exist_ok=True)
        previous = self.current()
        try:
            self._atomic_write(self.upstreams_path, artifact.upstreams_text)
        except OSError as e:
            raise ApplyError(f"writing {self.upstreams_path} failed: {e}") from e
        try:
            self._atomic_write(self.locations_path, artifact.locations_text)
        except OSError as e:
            # Put the old upstreams back so the pair on disk stays consistent.
            if previous is not None:
                self._atomic_write(self.upstreams_path, previous.upstreams_text)
            else:
                os.remove(self.upstreams_path)
            raise ApplyError(f"writing {self.locations_path} failed: {e}") from e

    def reload(self, timeout: float) -> str:
        argv = shlex.split(self.cfg.reload_cmd)
        try:
            res = self.runner.run(argv, timeout)
        except CommandError as e:
            raise ApplyError(f"reload not delivered: {e}") from e
        if not res.ok:
            raise ApplyError(f"reload failed (exit {res.returncode}): {res.output}")
        return res.output

    def apply(self, artifact: ConfigArtifact, timeout: float) -> str:
        self.install(artifact)
        return self.reload(timeout)
