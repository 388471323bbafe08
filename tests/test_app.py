"""Tests for the application context and the command line entry point."""

import io
import logging
import os
import queue

import pytest

from config_archiver import cli
from config_archiver.app import ArchiverApp
from config_archiver.app_config import AppConfig, ChangeMeta
from config_archiver.config import Settings
from config_archiver.device import FetchResult, create_device
from config_archiver.error_handling import FetchErrorCode, StoreError


def ok_fetch(device, repository, max_files, store, filter_table=None):
    return FetchResult(model=device.model, device_id=device.id, host_port=device.host_port,
                       transport="tcp")


@pytest.fixture
def home(tmp_path):
    return tmp_path / "home"


@pytest.fixture
def make_app(home):
    apps = []

    def factory(fetch_func=ok_fetch):
        settings = Settings(home_dir=str(home), config_max_files=3)
        app = ArchiverApp(settings=settings, fetch_func=fetch_func)
        app.make_dirs()
        apps.append(app)
        return app

    yield factory
    for app in apps:
        app.stop()


class TestArchiverApp:

    def test_paths_from_settings(self, make_app, home):
        app = make_app()
        assert app.config_path_prefix == str(home / "etc" / "config-archiver.conf.")
        assert app.repository_path == str(home / "repo")
        assert os.path.isdir(app.repository_path)

    def test_load_without_config(self, make_app):
        app = make_app()
        assert app.load_config() is False
        assert app.options.get() == AppConfig()
        assert app.list_devices() == []

    def test_save_and_load(self, make_app):
        app = make_app()
        create_device(app.table, "cisco-ios", "r1", "10.0.0.1", "ssh", "lab", "pass", "en")
        create_device(app.table, "junos", "j1", "10.0.0.2", "ssh", "lab", "pass", "")
        app.set_options(AppConfig(holdtime=120))
        path = app.save_config(ChangeMeta.now(by="test", source="pytest"))
        assert path.endswith(".conf.0")

        other = make_app()
        assert other.load_config() is True
        assert [d.id for d in other.list_devices()] == ["j1", "r1"]
        assert other.options.get().holdtime == 120
        assert other.options.get().last_change.by == "test"
        assert other.table.get_device("r1").attr.command_list == ["show ver", "show run"]

    def test_config_snapshots_pruned(self, make_app):
        app = make_app()
        for _ in range(5):
            path = app.save_config()
        assert path.endswith(".conf.4")
        _, names = app.store.list_config(app.config_path_prefix)
        assert len(names) == 3

    def test_unknown_model_skipped_on_load(self, make_app):
        app = make_app()
        create_device(app.table, "linux", "l1", "h", "ssh", "u", "p", "")
        path = app.save_config()
        with open(path) as f:
            text = f.read()
        with open(path, "w") as f:
            f.write(text.replace("model: linux", "model: vanished"))

        other = make_app()
        assert other.load_config() is True
        assert other.list_devices() == []

    def test_make_dirs_failure(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("file, not a directory")
        app = ArchiverApp(config_path_prefix=str(blocker / "etc" / "a.conf."),
                          repository_path=str(blocker / "repo"),
                          settings=Settings(home_dir=str(tmp_path)))
        with pytest.raises(StoreError):
            app.make_dirs()

    def test_run_once(self, make_app):
        app = make_app()
        create_device(app.table, "linux", "l1", "h", "ssh", "u", "p", "")
        create_device(app.table, "linux", "l2", "h", "ssh", "u", "p", "")
        summary = app.run_once()
        assert (summary.good, summary.bad, summary.skipped) == (2, 0, 0)
        assert app.table.get_device("l1").last_status

    def test_priority_request(self, make_app):
        app = make_app()
        create_device(app.table, "linux", "l1", "h", "ssh", "u", "p", "")
        app.set_options(AppConfig(scan_interval=3600))
        app.start()
        reply = queue.Queue()
        app.request_priority("l1", reply)
        assert reply.get(timeout=10).code == FetchErrorCode.NONE


@pytest.fixture
def cli_args(tmp_path, monkeypatch):
    monkeypatch.setattr(cli, "setup_logging", lambda *args, **kwargs: None)
    return [
        "--configPathPrefix", str(tmp_path / "etc" / "archiver.conf."),
        "--repositoryPath", str(tmp_path / "repo"),
        "--logPathPrefix", str(tmp_path / "log" / "archiver.log"),
        "--disableStdoutLog",
    ]


class TestCli:

    def test_run_once_without_devices(self, cli_args, tmp_path):
        assert cli.main(cli_args + ["--runOnce"]) == 0
        assert os.path.exists(str(tmp_path / "etc" / "archiver.conf.0"))

    def test_import_list_delete(self, cli_args, monkeypatch, capsys):
        records = ("# lab devices\n"
                   "cisco-ios r1 10.0.0.1 ssh,telnet lab pass en\n"
                   "linux auto 10.0.0.2 ssh root secret\n")
        monkeypatch.setattr("sys.stdin", io.StringIO(records))
        assert cli.main(cli_args + ["--deviceImport"]) == 0

        capsys.readouterr()
        assert cli.main(cli_args + ["--deviceList"]) == 0
        listed = capsys.readouterr().out.splitlines()
        assert listed == [
            "linux auto0 10.0.0.2 ssh root secret .",
            "cisco-ios r1 10.0.0.1 ssh,telnet lab pass en",
        ]

        monkeypatch.setattr("sys.stdin", io.StringIO("r1\n"))
        assert cli.main(cli_args + ["--deviceDelete"]) == 0
        assert cli.main(cli_args + ["--deviceList"]) == 0
        assert capsys.readouterr().out.splitlines() == ["linux auto0 10.0.0.2 ssh root secret ."]

    def test_read_ids(self):
        ids = list(cli.read_ids(io.StringIO("a\n\n# skip\n  b extra\n")))
        assert ids == ["a", "b"]

    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--version"])
        assert exc_info.value.code == 0
        assert "config-archiver" in capsys.readouterr().out

    def test_setup_logging_writes_file(self, tmp_path):
        root = logging.getLogger()
        saved = root.handlers[:], root.level
        try:
            log_path = tmp_path / "log" / "archiver.log"
            cli.setup_logging(str(log_path), 2, 100000, disable_stdout=True)
            logging.getLogger("config_archiver.test").info("hello log")
            for h in logging.getLogger().handlers:
                h.flush()
            assert "hello log" in log_path.read_text()
        finally:
            for h in root.handlers:
                h.close()
            root.handlers[:] = saved[0]
            root.setLevel(saved[1])
