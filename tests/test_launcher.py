import pytest

from xunlei_launcher import __main__ as cli
from xunlei_launcher.launcher import Launcher
from xunlei_launcher.supervisor import SupervisorError


class FakeSupervisor:
    def __init__(self, error=None):
        self.error = error
        self.ran = False

    def run(self):
        self.ran = True
        if self.error is not None:
            raise self.error


@pytest.fixture
def panel_calls(monkeypatch):
    calls = []
    monkeypatch.setattr(Launcher, "start_panel", lambda self: calls.append("start"))
    monkeypatch.setattr(Launcher, "stop_panel", lambda self: calls.append("stop"))
    return calls


def test_run_starts_panel_then_supervises(settings, panel_calls):
    supervisor = FakeSupervisor()
    Launcher(settings, supervisor=supervisor).run()

    assert supervisor.ran
    assert panel_calls == ["start", "stop"]


def test_panel_is_stopped_when_supervisor_fails(settings, panel_calls):
    supervisor = FakeSupervisor(error=SupervisorError("boom"))

    with pytest.raises(SupervisorError):
        Launcher(settings, supervisor=supervisor).run()

    assert panel_calls == ["start", "stop"]


def test_server_config(settings):
    settings.host = "127.0.0.1"
    settings.max_connections = 16

    launcher = Launcher(settings, supervisor=FakeSupervisor())

    config = launcher.server.config
    assert config.host == "127.0.0.1"
    assert config.port == 5055
    assert config.limit_concurrency == 16
    assert launcher.store.ttl.total_seconds() == settings.session_ttl


def test_stop_panel_without_thread_requests_exit(settings):
    launcher = Launcher(settings, supervisor=FakeSupervisor())
    launcher.stop_panel()
    assert launcher.server.should_exit


# ------------------------------------------------------------------
# Command line
# ------------------------------------------------------------------

class RecordingLauncher:
    instances = []

    def __init__(self, settings):
        self.settings = settings
        self.ran = False
        RecordingLauncher.instances.append(self)

    def run(self):
        self.ran = True


@pytest.fixture
def recording_launcher(monkeypatch):
    RecordingLauncher.instances = []
    monkeypatch.setattr(cli, "Launcher", RecordingLauncher)
    return RecordingLauncher


def test_main_passes_cli_settings(recording_launcher, tmp_path):
    code = cli.main([
        "launcher", "-U", "admin", "-W", "secret", "-H", "127.0.0.1", "-P", "6060",
        "-d", str(tmp_path / "dl"), "--cgi-timeout", "15",
    ])

    assert code == 0
    [launcher] = recording_launcher.instances
    assert launcher.ran
    settings = launcher.settings
    assert settings.auth_user == "admin"
    assert settings.auth_password == "secret"
    assert settings.host == "127.0.0.1"
    assert settings.port == 6060
    assert settings.download_path == tmp_path / "dl"
    assert settings.cgi_timeout == 15.0


def test_main_rejects_privileged_port(recording_launcher):
    assert cli.main(["launcher", "-P", "80"]) == 1
    assert recording_launcher.instances == []


def test_main_rejects_bad_host(recording_launcher):
    assert cli.main(["launcher", "-H", "not-an-ip"]) == 1


def test_main_reports_missing_config_file(recording_launcher, tmp_path):
    assert cli.main(["launcher", "--config-file", str(tmp_path / "missing.yaml")]) == 1


def test_main_reports_supervisor_failure(monkeypatch):
    class FailingLauncher(RecordingLauncher):
        def run(self):
            raise SupervisorError("Failed to start")

    monkeypatch.setattr(cli, "Launcher", FailingLauncher)
    assert cli.main(["launcher"]) == 1


def test_subcommand_is_required():
    with pytest.raises(SystemExit):
        cli.main([])
