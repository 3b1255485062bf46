"""
PreviewServerManager: one ephemeral local HTTP server for generated files.

start() binds a socket to port 0 (the OS picks a free port), writes the file
set into a temporary serving root and serves it with uvicorn on that socket.
A running session is always stopped first, so at most one port is in use.
Failures leave no session registered.
"""
from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import re
import shutil
import socket
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles

from config import settings
from core.errors import PreviewError, PreviewErrorKind

logger = logging.getLogger("loadout.preview")

SCRIPT_EXTENSIONS = (".js", ".jsx", ".ts", ".tsx")
COMPONENTS_DIR = "components"

INDEX_TEMPLATE = """<!DOCTYPE html>
<html lang="en">
<head>
  <meta charset="UTF-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
  <title>{title}</title>
  <script crossorigin src="https://unpkg.com/react@18/umd/react.production.min.js"></script>
  <script crossorigin src="https://unpkg.com/react-dom@18/umd/react-dom.production.min.js"></script>
  <script src="https://cdn.tailwindcss.com"></script>
</head>
<body>
  <div id="root"></div>
  <script>window.AppState = {{ state: {{}}, set(k, v) {{ this.state[k] = v; }}, get(k) {{ return this.state[k]; }} }};</script>
  {scripts}
  <script>
    window.addEventListener('load', () => {{
      const rootEl = document.getElementById('root');
      if (window.App) {{
        ReactDOM.createRoot(rootEl).render(React.createElement(window.App));
      }} else {{
        console.error('App component not found! Make sure window.App is defined.');
        rootEl.innerHTML = '<div style="padding: 20px; color: red;">Error: App component not found</div>';
      }}
    }});
  </script>
</body>
</html>
"""


class PreviewStatus(str, enum.Enum):
    STARTING = "starting"
    RUNNING = "running"
    STOPPED = "stopped"


@dataclass
class PreviewFile:
    filename: str
    content: str
    type: str = "component"


@dataclass
class PreviewSession:
    host: str
    port: int
    root_dir: Path
    files: list[PreviewFile]
    status: PreviewStatus = PreviewStatus.STARTING
    server: Optional[uvicorn.Server] = field(default=None, repr=False)
    task: Optional[asyncio.Task] = field(default=None, repr=False)
    sock: Optional[socket.socket] = field(default=None, repr=False)

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"


class _PreviewUvicornServer(uvicorn.Server):
    """uvicorn server that leaves the host process' signal handlers alone."""

    @contextlib.contextmanager
    def capture_signals(self):
        yield

    def install_signal_handlers(self) -> None:
        pass


def sanitize_filename(name: str) -> str:
    """Flatten a generated filename into one safe path component ('' if unusable)."""
    name = re.sub(r"\$\{[^}]+\}", "", name)
    name = re.sub(r'[<>:"|?*\\]', "", name)
    name = name.replace("/", "_").strip()
    if name in ("", ".", "..") or name.startswith(".."):
        return ""
    return name


def build_index_html(script_names: Iterable[str], title: str = "Loadout Preview") -> str:
    names = list(script_names)
    # App last so every component it references is already registered
    names.sort(key=lambda n: n.lower().startswith("app"))
    scripts = "\n  ".join(f'<script src="/{COMPONENTS_DIR}/{n}"></script>' for n in names)
    return INDEX_TEMPLATE.format(title=title, scripts=scripts)


def materialize(files: list[PreviewFile], root: Path) -> None:
    """Write the file set under ``root``; scripts go to components/."""
    components = root / COMPONENTS_DIR
    components.mkdir(parents=True, exist_ok=True)

    scripts: list[str] = []
    has_index = False
    for f in files:
        safe = sanitize_filename(f.filename)
        if not safe:
            logger.warning("Skipping invalid preview filename: %r", f.filename)
            continue
        if safe.lower() == "index.html":
            has_index = True
            (root / "index.html").write_text(f.content, encoding="utf-8")
        elif safe.endswith(SCRIPT_EXTENSIONS):
            scripts.append(safe)
            (components / safe).write_text(f.content, encoding="utf-8")
        else:
            (root / safe).write_text(f.content, encoding="utf-8")

    if not has_index:
        (root / "index.html").write_text(build_index_html(scripts), encoding="utf-8")


def _bind_socket(host: str) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, 0))
        sock.listen(128)
        sock.setblocking(False)
    except OSError:
        sock.close()
        raise
    return sock


def create_preview_app(root: Path) -> FastAPI:
    app = FastAPI(docs_url=None, redoc_url=None, openapi_url=None)
    app.mount("/", StaticFiles(directory=str(root), html=True), name="preview")
    return app


class PreviewServerManager:

    def __init__(
        self,
        *,
        host: str = settings.PREVIEW_HOST,
        startup_timeout: float = settings.PREVIEW_STARTUP_TIMEOUT,
    ):
        self.host = host
        self.startup_timeout = startup_timeout
        self._session: Optional[PreviewSession] = None
        # start/stop run one at a time so a session is never orphaned
        self._lock = asyncio.Lock()

    @property
    def session(self) -> Optional[PreviewSession]:
        return self._session

    def get_url(self) -> Optional[str]:
        if self._session is None or self._session.status != PreviewStatus.RUNNING:
            return None
        return self._session.url

    async def start(self, files: list[PreviewFile]) -> dict:
        """Serve ``files``; returns {"url", "port"}. Raises PreviewError."""
        async with self._lock:
            await self._stop_current()
            return await self._start(files)

    async def stop(self) -> None:
        """Stop the running session, if any. Idempotent."""
        async with self._lock:
            await self._stop_current()

    # ------------------------------------------------------------------
    async def _start(self, files: list[PreviewFile]) -> dict:
        try:
            sock = _bind_socket(self.host)
        except OSError as exc:
            logger.error("Preview port allocation failed: %s", exc)
            raise PreviewError(
                PreviewErrorKind.PORT_UNAVAILABLE, f"Could not bind a port on {self.host}: {exc}",
            ) from exc

        port = sock.getsockname()[1]
        root = Path(tempfile.mkdtemp(prefix="loadout-preview-"))
        session = PreviewSession(host=self.host, port=port, root_dir=root, files=list(files), sock=sock)

        try:
            await asyncio.to_thread(materialize, session.files, root)
            await self._launch(session)
        except PreviewError:
            await self._teardown(session)
            raise
        except Exception as exc:
            logger.error("Preview server failed to start: %s", exc, exc_info=True)
            await self._teardown(session)
            raise PreviewError(PreviewErrorKind.SPAWN_FAILED, str(exc)) from exc

        session.status = PreviewStatus.RUNNING
        self._session = session
        logger.info("Preview server running at %s (%d files)", session.url, len(session.files))
        return {"url": session.url, "port": session.port}

    async def _stop_current(self) -> None:
        session, self._session = self._session, None
        if session is None:
            return
        await self._teardown(session)
        logger.info("Preview server on port %d stopped", session.port)

    async def _launch(self, session: PreviewSession) -> None:
        config = uvicorn.Config(
            create_preview_app(session.root_dir),
            lifespan="off",
            log_config=None,
            log_level="warning",
            access_log=False,
        )
        server = _PreviewUvicornServer(config)
        session.server = server
        session.task = asyncio.create_task(
            self._serve(server, session.sock), name=f"preview-{session.port}",
        )

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.startup_timeout
        while not server.started:
            if session.task.done():
                exc = session.task.exception()
                raise PreviewError(
                    PreviewErrorKind.SPAWN_FAILED,
                    f"Preview server exited during startup: {exc or 'no error reported'}",
                )
            if loop.time() > deadline:
                raise PreviewError(
                    PreviewErrorKind.SPAWN_FAILED,
                    f"Preview server did not start within {self.startup_timeout:.0f}s",
                )
            await asyncio.sleep(0.02)

    @staticmethod
    async def _serve(server: uvicorn.Server, sock: socket.socket) -> None:
        try:
            await server.serve(sockets=[sock])
        except SystemExit as exc:
            # uvicorn exits the process on startup errors; keep it inside the task
            raise RuntimeError(f"uvicorn exited with code {exc.code}") from exc

    async def _teardown(self, session: PreviewSession) -> None:
        session.status = PreviewStatus.STOPPED
        if session.server is not None:
            session.server.should_exit = True
        if session.task is not None and not session.task.done():
            try:
                await asyncio.wait_for(asyncio.shield(session.task), timeout=5)
            except asyncio.TimeoutError:
                logger.warning("Preview server on port %d did not exit, cancelling", session.port)
                session.task.cancel()
                await asyncio.gather(session.task, return_exceptions=True)
            except Exception as exc:
                logger.debug("Preview server task ended with: %s", exc)
        if session.sock is not None:
            session.sock.close()
        await asyncio.to_thread(shutil.rmtree, session.root_dir, True)
