from dpr.docker_ops import ContainerRecord
from dpr.render import Block, Directive, RenderError, render, serialize
from dpr.routes import RouteTable

import pytest

BENEFICIARIES = ContainerRecord(
    id="a1b2c3d4e5f6" + "0" * 52,
    name="beneficiaries",
    ip="172.18.0.5",
    port=8080,
    path="/dev/beneficiaries/",
)

EXPECTED_UPSTREAMS = """\
# Generated by dpr. Do not edit; rewritten on every reconciliation.
# 1 route(s)
map $http_upgrade $dpr_connection_upgrade {
    default upgrade;
    "" "";
}
# container: beneficiaries (a1b2c3d4e5f6)
upstream beneficiaries_backend {
    server 172.18.0.5:8080;
    keepalive 32;
}
"""

EXPECTED_LOCATIONS = """\
# Generated by dpr. Do not edit; rewritten on every reconciliation.
# 1 route(s)
# container: beneficiaries (a1b2c3d4e5f6)
location /dev/beneficiaries/ {
    rewrite ^/dev/beneficiaries/(.*)$ /$1 break;
    proxy_pass http://beneficiaries_backend;
    proxy_set_header Host $host;
    proxy_set_header X-Real-IP $remote_addr;
    proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
    proxy_set_header X-Forwarded-Proto $scheme;
    proxy_http_version 1.1;
    proxy_set_header Upgrade $http_upgrade;
    proxy_set_header Connection $dpr_connection_upgrade;
    proxy_connect_timeout 60s;
    proxy_send_timeout 60s;
    proxy_read_timeout 60s;
}
"""


def test_single_container_golden_output():
    artifact = render(RouteTable((BENEFICIARIES,)))
    assert artifact.upstreams_text == EXPECTED_UPSTREAMS
    assert artifact.locations_text == EXPECTED_LOCATIONS


def test_rendering_is_byte_identical_regardless_of_input_order():
    other = ContainerRecord(id="f" * 64, name="api", ip="172.18.0.9", port=3000, path="/api/")
    first = render(RouteTable((BENEFICIARIES, other)))
    second = render(RouteTable((other, BENEFICIARIES)))
    assert first == second
    assert first.digest == second.digest
    assert first.locations_text.index("location /api/") < first.locations_text.index("location /dev/beneficiaries/")


def test_no_server_blocks_are_generated():
    many = tuple(
        ContainerRecord(id=str(i) * 64, name=f"svc{i}", ip=f"10.0.0.{i}", port=80, path=f"/svc{i}/") for i in range(5)
    )
    artifact = render(RouteTable(many))
    assert "server {" not in artifact.locations_text
    assert "listen" not in artifact.locations_text + artifact.upstreams_text
    assert artifact.locations_text.count("location ") == 5
    assert artifact.upstreams_text.count("upstream ") == 5


def test_empty_table_renders_valid_skeleton():
    artifact = render(RouteTable())
    assert "# 0 route(s)" in artifact.locations_text
    assert "location" not in artifact.locations_text
    assert artifact.upstreams_text.count("{") == artifact.upstreams_text.count("}")


def test_host_guard_and_root_path():
    rec = ContainerRecord(id="b" * 64, name="site", ip="10.0.0.2", port=80, path="/", host="www.example.com")
    text = render(RouteTable((rec,))).locations_text
    assert "location / {" in text
    assert "if ($host != www.example.com) {" in text
    assert "return 404;" in text
    assert "rewrite" not in text


def test_dots_in_path_are_literal_in_rewrite():
    rec = ContainerRecord(id="c" * 64, name="v1.api", ip="10.0.0.3", port=80, path="/v1.api/")
    text = render(RouteTable((rec,))).locations_text
    assert "rewrite ^/v1[.]api/(.*)$ /$1 break;" in text


def test_duplicate_paths_are_a_render_bug():
    dup = ContainerRecord(id="d" * 64, name="other", ip="10.0.0.4", port=80, path="/dev/beneficiaries/")
    with pytest.raises(RenderError):
        render(RouteTable((BENEFICIARIES, dup)))


def test_serialize_quotes_unsafe_tokens():
    text = serialize([Block("x", ("a b",), (Directive("y", ('say "hi"',)),))])
    assert text == 'x "a b" {\n    y "say \\"hi\\"";\n}'
