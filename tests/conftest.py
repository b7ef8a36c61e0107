import os
import stat
from pathlib import Path

import pytest

from xunlei_launcher.config import PackageLayout, Settings


@pytest.fixture
def layout(tmp_path):
    return PackageLayout(base=tmp_path / "pkg", arch="amd64", web_ui_home="/webman")


@pytest.fixture
def settings(tmp_path, layout):
    return Settings(
        port=5055,
        config_path=tmp_path / "config",
        download_path=tmp_path / "downloads",
        mount_bind_download_path=tmp_path / "bind",
        stop_timeout=1,
        layout=layout,
    )


@pytest.fixture
def write_cgi(settings):
    """Install a /bin/sh script as the package's web UI program."""

    def write(body: str) -> Path:
        path = settings.layout.cgi_exe
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("#!/bin/sh\n" + body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return write


@pytest.fixture(autouse=True)
def _no_proxy_env(monkeypatch):
    # CGI children inherit the environment; keep host proxy settings out
    for name in ("HTTP_PROXY", "http_proxy"):
        monkeypatch.delenv(name, raising=False)
    for name in list(os.environ):
        if name.startswith("XUNLEI_"):
            monkeypatch.delenv(name, raising=False)
