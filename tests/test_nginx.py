# tests/test_nginx.py
import asyncio
import threading
import time

import pytest

from controller.api import CLIENT_KEY_HEADER
from controller.nginx import UpstreamConfigWriter
from metrics import MetricsExporter
from state import BackendEndpoint, HealthState, PoolSnapshot, RoutingAlgorithm


def snapshot(*endpoints, pool_id="web", version=1, algorithm=RoutingAlgorithm.ROUND_ROBIN):
    eps = tuple(
        BackendEndpoint(id=e[0], address="10.0.0.1", port=e[1], weight=e[2] if len(e) > 2 else 1,
                        health=HealthState.HEALTHY)
        for e in endpoints
    )
    return PoolSnapshot(pool_id=pool_id, version=version, algorithm=algorithm, endpoints=eps)


def test_render_servers_and_weights(tmp_path):
    writer = UpstreamConfigWriter(str(tmp_path))
    text = writer.render(snapshot(("a", 8001), ("b", 8002, 3), ("c", 8003, 0)))
    assert "upstream web {" in text
    assert "server 10.0.0.1:8001 max_fails=0;" in text
    assert "server 10.0.0.1:8002 weight=3 max_fails=0;" in text
    assert "8003" not in text


def test_render_algorithm_directives(tmp_path):
    writer = UpstreamConfigWriter(str(tmp_path))
    assert "least_conn;" in writer.render(snapshot(("a", 8001), algorithm=RoutingAlgorithm.LEAST_CONNECTIONS))
    assert "consistent;" in writer.render(snapshot(("a", 8001), algorithm=RoutingAlgorithm.CLIENT_AFFINITY))


def test_affinity_hashes_the_router_client_key(tmp_path):
    text = UpstreamConfigWriter(str(tmp_path)).render(
        snapshot(("a", 8001), pool_id="web-eu", algorithm=RoutingAlgorithm.CLIENT_AFFINITY))
    header_var = "$http_" + CLIENT_KEY_HEADER.replace("-", "_")
    assert f"map {header_var} $poolkeeper_web_eu_key {{" in text
    assert "\"\"      $remote_addr;" in text
    assert "hash $poolkeeper_web_eu_key consistent;" in text


def test_proxy_leaves_health_to_poolkeeper(tmp_path):
    text = UpstreamConfigWriter(str(tmp_path)).render(snapshot(("a", 8001), ("b", 8002, 2)))
    assert "server 10.0.0.1:8001 max_fails=0;" in text
    assert "server 10.0.0.1:8002 weight=2 max_fails=0;" in text
    assert "keepalive 32;" in text
    assert "map " not in text


def test_empty_pool_renders_placeholder(tmp_path):
    text = UpstreamConfigWriter(str(tmp_path)).render(snapshot())
    assert "server 127.0.0.1:1 down;" in text


def test_update_writes_file_and_skips_unchanged(tmp_path):
    exporter = MetricsExporter()
    writer = UpstreamConfigWriter(str(tmp_path), exporter=exporter)
    assert writer.update_upstreams(snapshot(("a", 8001)))
    assert "10.0.0.1:8001" in (tmp_path / "web.conf").read_text()

    assert writer.update_upstreams(snapshot(("a", 8001)))
    writes = exporter.registry.get_sample_value("poolkeeper_upstream_config_writes_total", {"status": "success"})
    assert writes == 1.0
    assert writer.list_pool_configs() == ["web"]


def test_invalid_pool_name_is_rejected(tmp_path):
    writer = UpstreamConfigWriter(str(tmp_path))
    assert not writer.update_upstreams(snapshot(("a", 8001), pool_id="../etc"))
    assert writer.list_pool_configs() == []


def test_failed_reload_restores_previous_file(tmp_path):
    UpstreamConfigWriter(str(tmp_path)).update_upstreams(snapshot(("a", 8001)))
    writer = UpstreamConfigWriter(str(tmp_path), reload_command="false")

    assert not writer.update_upstreams(snapshot(("b", 8002)))
    content = (tmp_path / "web.conf").read_text()
    assert "8001" in content
    assert "8002" not in content
    assert not (tmp_path / "web.conf.backup").exists()


def test_remove_pool_config(tmp_path):
    writer = UpstreamConfigWriter(str(tmp_path))
    writer.update_upstreams(snapshot(("a", 8001)))
    assert writer.remove_pool_config("web")
    assert writer.list_pool_configs() == []
    assert writer.remove_pool_config("web")


def test_custom_template(tmp_path):
    template = tmp_path / "upstream.j2"
    template.write_text("{{ pool }}:{% for s in servers %}{{ s.port }},{% endfor %}")
    writer = UpstreamConfigWriter(str(tmp_path / "out"), template_path=str(template))
    assert writer.render(snapshot(("a", 8001), ("b", 8002))) == "web:8001,8002,"


def test_missing_template_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        UpstreamConfigWriter(str(tmp_path), template_path=str(tmp_path / "nope.j2"))


@pytest.mark.asyncio
async def test_follows_registry_snapshots(tmp_path, registry, add_endpoint):
    writer = UpstreamConfigWriter(str(tmp_path))
    registry.add_listener(writer.on_snapshot)

    add_endpoint("a", 9001)
    assert await writer.flush() == 1
    assert "127.0.0.1:9001" in (tmp_path / "web.conf").read_text()

    add_endpoint("b", 9002, health=HealthState.UNHEALTHY)
    await writer.flush()
    assert "9002" not in (tmp_path / "web.conf").read_text()

    registry.mark_draining("web", "a", 1.0)
    await writer.flush()
    assert "server 127.0.0.1:1 down;" in (tmp_path / "web.conf").read_text()


@pytest.mark.asyncio
async def test_only_latest_snapshot_per_pool_is_written(tmp_path, registry, add_endpoint, monkeypatch):
    writer = UpstreamConfigWriter(str(tmp_path))
    registry.add_listener(writer.on_snapshot)
    written = []
    monkeypatch.setattr(writer, "update_upstreams", lambda snap: written.append(snap.ids()))

    add_endpoint("a", 9001)
    add_endpoint("b", 9002)
    add_endpoint("c", 9003)
    assert await writer.flush() == 1
    assert written == [("a", "b", "c")]


@pytest.mark.asyncio
async def test_slow_reload_does_not_block_registry_writes(tmp_path, registry, add_endpoint, monkeypatch):
    writer = UpstreamConfigWriter(str(tmp_path))
    registry.add_listener(writer.on_snapshot)
    release = threading.Event()
    written = []

    def slow_update(snap):
        release.wait(5)
        written.append(snap.ids())
        return True

    monkeypatch.setattr(writer, "update_upstreams", slow_update)
    await writer.start()
    try:
        add_endpoint("a", 9001)
        # the writer task is now stuck in its worker thread
        for _ in range(5):
            await asyncio.sleep(0)

        started = time.monotonic()
        add_endpoint("b", 9002)
        assert registry.snapshot("web").ids() == ("a", "b")
        await asyncio.sleep(0)
        assert time.monotonic() - started < 1.0
        assert written == []
    finally:
        release.set()
        await writer.stop()
    assert written == [("a",), ("a", "b")]


@pytest.mark.asyncio
async def test_forget_pool_removes_file_in_writer_task(tmp_path):
    writer = UpstreamConfigWriter(str(tmp_path))
    writer.update_upstreams(snapshot(("a", 8001)))
    await writer.start()
    writer.forget_pool("web")
    await writer.stop()
    assert writer.list_pool_configs() == []
