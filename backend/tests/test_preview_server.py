import asyncio
import socket

import httpx
import pytest

from core.errors import PreviewError, PreviewErrorKind
from services import preview_server
from services.preview_server import (
    PreviewFile,
    PreviewServerManager,
    PreviewStatus,
    build_index_html,
    sanitize_filename,
)

APP_FILES = [
    PreviewFile("App.js", "window.App = () => React.createElement('h1', null, 'Hi');", "main"),
    PreviewFile("Header.js", "window.Header = () => null;"),
    PreviewFile("styles.css", "h1 { color: blue; }", "style"),
]


@pytest.fixture
async def manager():
    mgr = PreviewServerManager(host="127.0.0.1", startup_timeout=5)
    yield mgr
    await mgr.stop()


@pytest.mark.parametrize("name,expected", [
    ("App.js", "App.js"),
    ("components/Header.js", "components_Header.js"),
    ("${name}.js", ".js"),
    ('bad<>:"|?*name.js', "badname.js"),
    ("..", ""),
    ("../../etc/passwd", ""),
    ("   ", ""),
])
def test_sanitize_filename(name, expected):
    assert sanitize_filename(name) == expected


def test_index_loads_app_last():
    html = build_index_html(["App.js", "Header.js", "Footer.js"])
    assert html.index("components/Header.js") < html.index("components/App.js")
    assert html.index("components/Footer.js") < html.index("components/App.js")
    assert "window.App" in html


async def test_start_serves_files(manager):
    started = await manager.start(APP_FILES)

    assert started["port"] > 0
    assert started["url"] == f"http://127.0.0.1:{started['port']}"
    assert manager.get_url() == started["url"]
    assert manager.session.status == PreviewStatus.RUNNING

    async with httpx.AsyncClient(base_url=started["url"], trust_env=False) as http:
        index = await http.get("/")
        assert index.status_code == 200
        assert '<script src="/components/App.js"></script>' in index.text

        app_js = await http.get("/components/App.js")
        assert app_js.status_code == 200
        assert "window.App" in app_js.text

        css = await http.get("/styles.css")
        assert css.text == "h1 { color: blue; }"


async def test_supplied_index_html_is_kept(manager):
    started = await manager.start([PreviewFile("index.html", "<p>custom</p>", "html")])
    async with httpx.AsyncClient(base_url=started["url"], trust_env=False) as http:
        assert (await http.get("/")).text == "<p>custom</p>"


async def test_start_replaces_running_session(manager):
    first = await manager.start(APP_FILES)
    first_root = manager.session.root_dir

    second = await manager.start([PreviewFile("App.js", "window.App = () => 'v2';")])

    assert manager.get_url() == second["url"]
    assert not first_root.exists()
    async with httpx.AsyncClient(trust_env=False) as http:
        if second["port"] != first["port"]:
            with pytest.raises(httpx.ConnectError):
                await http.get(first["url"] + "/")
        resp = await http.get(second["url"] + "/components/App.js")
        assert "v2" in resp.text

    # first port is free for reuse
    reuse = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        reuse.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        if second["port"] != first["port"]:
            reuse.bind(("127.0.0.1", first["port"]))
    finally:
        reuse.close()


async def test_concurrent_starts_leave_one_session(manager):
    first, second = await asyncio.gather(
        manager.start([PreviewFile("App.js", "window.App = 1; // A")]),
        manager.start([PreviewFile("App.js", "window.App = 2; // B")]),
    )

    assert manager.get_url() == second["url"]
    async with httpx.AsyncClient(trust_env=False) as http:
        if first["port"] != second["port"]:
            with pytest.raises(httpx.ConnectError):
                await http.get(first["url"] + "/")
        resp = await http.get(second["url"] + "/components/App.js")
        assert "// B" in resp.text

        await manager.stop()
        for started in (first, second):
            with pytest.raises(httpx.ConnectError):
                await http.get(started["url"] + "/")
    assert manager.session is None


async def test_stop_is_idempotent(manager):
    started = await manager.start(APP_FILES)
    root = manager.session.root_dir

    await manager.stop()
    await manager.stop()

    assert manager.get_url() is None
    assert manager.session is None
    assert not root.exists()
    async with httpx.AsyncClient(trust_env=False) as http:
        with pytest.raises(httpx.ConnectError):
            await http.get(started["url"] + "/")


async def test_stop_without_session(manager):
    await manager.stop()
    assert manager.get_url() is None


async def test_bind_failure_reports_port_unavailable(manager, monkeypatch):
    def refuse(host):
        raise OSError(98, "Address already in use")

    monkeypatch.setattr(preview_server, "_bind_socket", refuse)

    with pytest.raises(PreviewError) as exc_info:
        await manager.start(APP_FILES)
    assert exc_info.value.kind == PreviewErrorKind.PORT_UNAVAILABLE
    assert manager.session is None


async def test_server_crash_reports_spawn_failed(manager, monkeypatch, tmp_path):
    roots = []

    def mkdtemp(prefix=""):
        path = tmp_path / f"{prefix}{len(roots)}"
        path.mkdir()
        roots.append(path)
        return str(path)

    async def crash(self, sockets=None):
        raise RuntimeError("boom")

    monkeypatch.setattr(preview_server.tempfile, "mkdtemp", mkdtemp)
    monkeypatch.setattr(preview_server._PreviewUvicornServer, "serve", crash)

    with pytest.raises(PreviewError) as exc_info:
        await manager.start(APP_FILES)
    assert exc_info.value.kind == PreviewErrorKind.SPAWN_FAILED
    assert "boom" in exc_info.value.message
    assert manager.session is None
    assert manager.get_url() is None
    assert not roots[0].exists()


async def test_failed_start_after_running_session_leaves_nothing(manager, monkeypatch):
    await manager.start(APP_FILES)

    def refuse(host):
        raise OSError("no ports")

    monkeypatch.setattr(preview_server, "_bind_socket", refuse)
    with pytest.raises(PreviewError):
        await manager.start(APP_FILES)
    assert manager.session is None
