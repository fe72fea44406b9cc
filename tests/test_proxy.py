import os

import pytest

from dpr.proxy import Applier, ApplyError, CommandError, CommandResult, LocalRunner, NginxValidator
from dpr.render import ConfigArtifact

GOOD = ConfigArtifact(
    upstreams_text="upstream a_backend {\n    server 10.0.0.1:80;\n}\n",
    locations_text="location /a/ {\n    proxy_pass http://a_backend;\n}\n",
)
BROKEN = ConfigArtifact(
    upstreams_text=GOOD.upstreams_text,
    locations_text="location /broken/ {\n    proxy_pass http://a_backend;\n",
)


def test_harness_includes_staged_files_inside_one_server(cfg, fake_nginx):
    text = NginxValidator(fake_nginx, cfg).harness_text()
    staged = cfg.proxy_staging_dir
    assert f"include {staged}/upstreams.inc;" in text
    assert "server {\n        listen 80;\n" in text
    assert f"include {staged}/locations.inc;" in text
    assert "events {\n}" in text


def test_validator_passes_and_cleans_staging(cfg, fake_nginx):
    res = NginxValidator(fake_nginx, cfg).check(GOOD, timeout=5)
    assert res.ok
    assert "successful" in res.diagnostic
    assert fake_nginx.calls[0][:3] == ["nginx", "-t", "-c"]
    assert fake_nginx.checked[0]["locations.inc"] == GOOD.locations_text
    assert os.listdir(cfg.staging_dir) == []


def test_validator_reports_diagnostic_and_does_not_touch_live_files(cfg, fake_nginx):
    res = NginxValidator(fake_nginx, cfg).check(BROKEN, timeout=5)
    assert not res.ok
    assert "unexpected end of file" in res.diagnostic
    assert not os.path.exists(os.path.join(cfg.config_dir, cfg.locations_file))
    assert os.listdir(cfg.staging_dir) == []


def test_applier_installs_both_files_and_reloads(cfg, fake_nginx):
    applier = Applier(fake_nginx, cfg)
    assert applier.current() is None

    applier.apply(GOOD, timeout=5)

    assert applier.current() == GOOD
    assert fake_nginx.reloads == [["nginx", "-s", "reload"]]
    leftovers = [f for f in os.listdir(cfg.config_dir) if f.endswith(".tmp")]
    assert leftovers == []


def test_applier_reload_failure_raises_apply_error(cfg, fake_nginx):
    fake_nginx.reload_result = CommandResult(1, 'nginx: [error] open() "/var/run/nginx.pid" failed')
    with pytest.raises(ApplyError) as exc:
        Applier(fake_nginx, cfg).apply(GOOD, timeout=5)
    assert "nginx.pid" in str(exc.value)


def test_applier_wraps_unreachable_proxy(cfg):
    class Unreachable:
        def run(self, argv, timeout):
            raise CommandError("docker exec in 'nginx' failed: no such container")

    with pytest.raises(ApplyError) as exc:
        Applier(Unreachable(), cfg).reload(timeout=5)
    assert "reload not delivered" in str(exc.value)


def test_local_runner_missing_binary():
    with pytest.raises(CommandError):
        LocalRunner().run(["dpr-no-such-binary-xyz", "-t"], timeout=5)


def test_failed_locations_write_leaves_no_orphaned_upstreams(cfg, monkeypatch):
    applier = Applier(None, cfg)
    real_write = Applier._atomic_write

    def failing(self, path, text):
        if path == self.locations_path:
            raise OSError(28, "No space left on device")
        real_write(self, path, text)

    monkeypatch.setattr(Applier, "_atomic_write", failing)
    with pytest.raises(ApplyError) as exc:
        applier.install(GOOD)
    assert "No space left" in str(exc.value)
    assert not os.path.exists(applier.upstreams_path)
    assert applier.current() is None


def test_failed_locations_write_restores_previous_upstreams(cfg, monkeypatch):
    applier = Applier(None, cfg)
    applier.install(GOOD)
    real_write = Applier._atomic_write

    def failing(self, path, text):
        if path == self.locations_path:
            raise OSError(28, "No space left on device")
        real_write(self, path, text)

    monkeypatch.setattr(Applier, "_atomic_write", failing)
    changed = ConfigArtifact(upstreams_text="upstream b_backend {\n}\n", locations_text="")
    with pytest.raises(ApplyError):
        applier.install(changed)
    assert applier.current() == GOOD
