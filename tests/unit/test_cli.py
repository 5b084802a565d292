"""Unit tests for the fwguard CLI."""

import pytest
from unittest.mock import Mock, patch
from typer.testing import CliRunner

from fwguard import __version__
from fwguard.cli import app, require_root
from fwguard.core.exceptions import PrerequisiteError, SnapshotError
from fwguard.services.result import IssueKind, ReconciliationResult


runner = CliRunner()


@pytest.fixture
def as_root():
    with patch("os.geteuid", return_value=0):
        yield


class TestRequireRoot:
    """Tests for require_root."""

    def test_allows_root(self):
        with patch("os.geteuid", return_value=0):
            require_root("run")

    def test_allows_dry_run(self):
        """Should pass in dry-run mode even without root."""
        with patch("os.geteuid", return_value=1000):
            require_root("run", dry_run=True)

    def test_rejects_non_root(self):
        import typer

        with patch("os.geteuid", return_value=1000):
            with pytest.raises(typer.Exit) as exc_info:
                require_root("run")
            assert exc_info.value.exit_code == 6


class TestVersion:
    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout


class TestRunCommand:
    """Tests for 'fwguard run'."""

    @patch("fwguard.cli.build_reconciler")
    def test_clean_cycle_exits_zero(self, mock_build, as_root, tmp_path):
        mock_build.return_value.run_cycle.return_value = ReconciliationResult(
            hostname="gw", canary_before=True
        )

        result = runner.invoke(app, ["run", "-c", str(tmp_path / "none.yaml")])

        assert result.exit_code == 0
        mock_build.return_value.run_cycle.assert_called_once()

    @patch("fwguard.cli.build_reconciler")
    def test_cycle_with_errors_exits_one(self, mock_build, as_root, tmp_path):
        cycle = ReconciliationResult(hostname="gw", canary_before=False)
        cycle.add(IssueKind.RESTORE_FAILED, "No v4 snapshot")
        mock_build.return_value.run_cycle.return_value = cycle

        result = runner.invoke(app, ["run", "-c", str(tmp_path / "none.yaml")])

        assert result.exit_code == 1

    @patch("fwguard.cli.build_reconciler")
    def test_warnings_only_exit_zero(self, mock_build, as_root, tmp_path):
        cycle = ReconciliationResult(hostname="gw", canary_before=False)
        cycle.add(IssueKind.DEPENDENCY_TIMEOUT, "vpn not active after 60s")
        mock_build.return_value.run_cycle.return_value = cycle

        result = runner.invoke(app, ["run", "-c", str(tmp_path / "none.yaml")])

        assert result.exit_code == 0

    @patch("fwguard.cli.build_reconciler")
    def test_skipped_cycle_exits_zero(self, mock_build, as_root, tmp_path):
        mock_build.return_value.run_cycle.return_value = None

        result = runner.invoke(app, ["run", "-c", str(tmp_path / "none.yaml")])

        assert result.exit_code == 0

    @patch("fwguard.cli.build_reconciler")
    def test_fwguard_error_uses_its_exit_code(self, mock_build, as_root, tmp_path):
        mock_build.return_value.run_cycle.side_effect = PrerequisiteError("Cannot open lock file")

        result = runner.invoke(app, ["run", "-c", str(tmp_path / "none.yaml")])

        assert result.exit_code == 6

    def test_requires_root(self, tmp_path):
        with patch("os.geteuid", return_value=1000):
            result = runner.invoke(app, ["run", "-c", str(tmp_path / "none.yaml")])
        assert result.exit_code == 6

    @patch("fwguard.cli.build_reconciler")
    def test_dry_run_without_root(self, mock_build, tmp_path):
        mock_build.return_value.run_cycle.return_value = None

        with patch("os.geteuid", return_value=1000):
            result = runner.invoke(app, ["run", "--dry-run", "-c", str(tmp_path / "none.yaml")])

        assert result.exit_code == 0
        ctx = mock_build.call_args[0][0]
        assert ctx.dry_run is True


class TestSaveCommand:
    """Tests for 'fwguard save'."""

    @patch("fwguard.cli.SnapshotSaver")
    def test_save(self, mock_saver, as_root, tmp_path):
        mock_saver.return_value.save_all.return_value = Mock(
            canary_inserted=True,
            written={},
            sets_path=None,
        )

        result = runner.invoke(app, ["save", "-c", str(tmp_path / "none.yaml")])

        assert result.exit_code == 0
        mock_saver.return_value.save_all.assert_called_once()

    @patch("fwguard.cli.SnapshotSaver")
    def test_save_failure(self, mock_saver, as_root, tmp_path):
        mock_saver.return_value.save_all.side_effect = SnapshotError("Refusing to save empty v4 snapshot")

        result = runner.invoke(app, ["save", "-c", str(tmp_path / "none.yaml")])

        assert result.exit_code == 20


class TestInstallCommands:
    """Tests for 'fwguard install' and 'fwguard uninstall'."""

    @patch("fwguard.cli.SelfSupervisor")
    def test_install(self, mock_supervisor, as_root, tmp_path):
        mock_supervisor.return_value.render_units.return_value = {"fwguard.service": ""}
        config = tmp_path / "config.yaml"
        config.write_text(f"audit:\n  log_path: {tmp_path / 'reconcile.log'}\n")

        result = runner.invoke(app, ["install", "-c", str(config)])

        assert result.exit_code == 0
        mock_supervisor.return_value.install.assert_called_once()

    @patch("fwguard.cli.SelfSupervisor")
    def test_uninstall_asks_for_confirmation(self, mock_supervisor, as_root, tmp_path):
        result = runner.invoke(app, ["uninstall", "-c", str(tmp_path / "none.yaml")], input="n\n")

        assert result.exit_code == 1
        mock_supervisor.return_value.uninstall.assert_not_called()

    @patch("fwguard.cli.SelfSupervisor")
    def test_uninstall_with_yes(self, mock_supervisor, as_root, tmp_path):
        mock_supervisor.return_value.uninstall.return_value = ["fwguard.timer"]

        result = runner.invoke(app, ["uninstall", "--yes", "-c", str(tmp_path / "none.yaml")])

        assert result.exit_code == 0
        mock_supervisor.return_value.uninstall.assert_called_once()


class TestConfigCommands:
    """Tests for the config command group."""

    def test_init_and_show(self, tmp_path):
        path = tmp_path / "config.yaml"

        result = runner.invoke(app, ["config", "init", "-c", str(path)])
        assert result.exit_code == 0
        assert path.exists()

        result = runner.invoke(app, ["config", "show", "-c", str(path)])
        assert result.exit_code == 0

    def test_init_refuses_existing(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("hostname: keep\n")

        result = runner.invoke(app, ["config", "init", "-c", str(path)])

        assert result.exit_code == 2
        assert path.read_text() == "hostname: keep\n"

    def test_show_invalid_config(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("canary:\n  source: not-an-ip\n")

        result = runner.invoke(app, ["config", "show", "-c", str(path)])

        assert result.exit_code == 2

    def test_example(self):
        result = runner.invoke(app, ["config", "example"])
        assert result.exit_code == 0
        assert "canary:" in result.stdout
