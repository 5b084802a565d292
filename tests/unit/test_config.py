"""Unit tests for configuration loading and validation."""

import os
import stat
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from fwguard.core.config import (
    AppConfig,
    CanaryConfig,
    GateConfig,
    GuardConfig,
    SnapshotConfig,
    SupervisionConfig,
    get_example_config,
    init_config,
)
from fwguard.core.exceptions import ConfigurationError


class TestDefaults:
    """Every section works without a config file."""

    def test_defaults(self):
        config = GuardConfig()

        assert config.snapshots.rules_v4 == Path("/etc/iptables/rules.v4")
        assert config.snapshots.families == ["v4", "v6"]
        assert config.canary.source == "192.0.2.254"
        assert config.canary.comment == "fwguard-canary"
        assert config.gate.service is None
        assert config.gate.max_wait == 60
        assert config.auxiliary.service == "fail2ban.service"
        assert config.supervision.interval == "5min"
        assert config.lock_path == Path("/run/fwguard.lock")

    def test_load_or_default_without_file(self, tmp_path):
        config = GuardConfig.load_or_default(tmp_path / "missing.yaml")
        assert config == GuardConfig()

    def test_example_config_is_valid(self, tmp_path):
        """The commented example parses to the defaults."""
        data = yaml.safe_load(get_example_config())
        assert GuardConfig(**data) == GuardConfig()


class TestValidation:
    """Tests for field validators."""

    def test_families_are_ordered_v4_first(self):
        assert SnapshotConfig(families=["v6", "v4"]).families == ["v4", "v6"]

    def test_unknown_family_rejected(self):
        with pytest.raises(ValidationError):
            SnapshotConfig(families=["ipx"])

    def test_empty_families_rejected(self):
        with pytest.raises(ValidationError):
            SnapshotConfig(families=[])

    def test_v4_required_for_canary(self):
        """The canary lives in the v4 table, so a v6-only snapshot set could never verify a restore."""
        with pytest.raises(ValidationError, match="canary"):
            SnapshotConfig(families=["v6"])

    def test_canary_source_must_be_ipv4(self):
        with pytest.raises(ValidationError):
            CanaryConfig(source="2001:db8::1")

    def test_canary_action_normalized(self):
        assert CanaryConfig(action="drop").action == "DROP"

    def test_canary_comment_rejects_spaces(self):
        """The comment is matched verbatim and must survive iptables quoting."""
        with pytest.raises(ValidationError):
            CanaryConfig(comment="fwguard canary")

    def test_canary_position_positive(self):
        with pytest.raises(ValidationError):
            CanaryConfig(position=0)

    def test_gate_poll_interval_positive(self):
        with pytest.raises(ValidationError):
            GateConfig(poll_interval=0)

    def test_gate_unit_name_validated(self):
        with pytest.raises(ValidationError):
            GateConfig(service="vpn; rm -rf /")

    def test_timer_interval_validated(self):
        assert SupervisionConfig(interval="90s").interval == "90s"
        with pytest.raises(ValidationError):
            SupervisionConfig(interval="every five minutes")


class TestLoad:
    """Tests for GuardConfig.load."""

    def test_load_partial_file(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("gate:\n  service: openvpn-server@server.service\n  max_wait: 30\n")

        config = GuardConfig.load(path)

        assert config.gate.service == "openvpn-server@server.service"
        assert config.gate.max_wait == 30
        assert config.gate.poll_interval == 2

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("")
        assert GuardConfig.load(path) == GuardConfig()

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError) as exc_info:
            GuardConfig.load(tmp_path / "missing.yaml")
        assert exc_info.value.exit_code == 2

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("gate: [unclosed\n")

        with pytest.raises(ConfigurationError, match="Invalid YAML"):
            GuardConfig.load(path)

    def test_invalid_value(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("canary:\n  position: -1\n")

        with pytest.raises(ConfigurationError, match="Invalid configuration"):
            GuardConfig.load(path)

    def test_non_mapping(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")

        with pytest.raises(ConfigurationError):
            GuardConfig.load(path)

    def test_to_yaml_round_trips(self):
        config = GuardConfig(gate={"service": "wg-quick@wg0.service"})
        assert GuardConfig(**yaml.safe_load(config.to_yaml())) == config


class TestAppConfig:
    """Tests for environment overrides."""

    def test_hostname_precedence(self, monkeypatch):
        app = AppConfig(config=GuardConfig(hostname="from-config"))
        assert app.hostname == "from-config"

        monkeypatch.setenv("FWGUARD_HOSTNAME", "from-env")
        assert AppConfig(config=GuardConfig(hostname="from-config")).hostname == "from-env"

    def test_hostname_falls_back_to_system(self, monkeypatch):
        monkeypatch.setattr("socket.getfqdn", lambda: "host.example.com")
        assert AppConfig(config=GuardConfig()).hostname == "host.example.com"

    def test_alert_recipient_override(self, monkeypatch):
        monkeypatch.setenv("FWGUARD_ALERT_RECIPIENT", "noc@example.com")
        assert AppConfig(config=GuardConfig()).alert_recipient == "noc@example.com"


class TestInitConfig:
    """Tests for init_config."""

    def test_creates_file_0600(self, tmp_path):
        path = tmp_path / "etc" / "config.yaml"
        init_config(path)

        assert path.read_text() == get_example_config()
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600

    def test_refuses_overwrite(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("hostname: keep-me\n")

        with pytest.raises(ConfigurationError):
            init_config(path)
        assert path.read_text() == "hostname: keep-me\n"

    def test_force_overwrites(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("hostname: old\n")

        init_config(path, force=True)

        assert "fwguard configuration" in path.read_text()
