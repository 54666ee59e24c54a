"""
Tests for the CaptureHub command line interface.
"""

import pytest

from capturehub import cli
from capturehub.agents.models import AgentError
from capturehub.filters.models import FilterKind, FilterValidationError, LogicalOperator


@pytest.fixture(autouse=True)
def keep_logging_config(monkeypatch):
    monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: None)


class TestRuleTokens:
    """Tests for parsing filter rules from arguments."""

    def test_ip_rule(self):
        rule = cli.parse_rule("ip:src:10.0.0.5")
        assert (rule.kind, rule.sub_kind, rule.value) == (FilterKind.IP, "src", "10.0.0.5")

    def test_mac_value_keeps_colons(self):
        rule = cli.parse_rule("mac:dst:aa:bb:cc:dd:ee:ff")
        assert rule.value == "aa:bb:cc:dd:ee:ff"

    @pytest.mark.parametrize("token", ["tcp", "protocol:tcp", "TCP"])
    def test_protocol_forms(self, token):
        rule = cli.parse_rule(token)
        assert (rule.kind, rule.sub_kind) == (FilterKind.PROTOCOL, "tcp")

    def test_expression_operators(self):
        expression = cli.parse_expression(["tcp", "or", "udp", "port:dst:53"])

        operators = [rule.logical_operator for rule in expression]
        assert operators == [None, LogicalOperator.OR, LogicalOperator.AND]

    @pytest.mark.parametrize("tokens", [
        ["and", "tcp"],
        ["tcp", "or", "or", "udp"],
        ["tcp", "and"],
        ["ip:src"],
        ["gre"],
    ])
    def test_invalid_expressions(self, tokens):
        with pytest.raises(FilterValidationError):
            cli.parse_expression(tokens)


class TestCommands:
    """Tests for command dispatch and exit codes."""

    def test_compile(self, capsys):
        assert cli.main(["compile", "ip:src:10.0.0.5", "and", "port:dst:80"]) == 0
        assert "src host 10.0.0.5 and dst port 80" in capsys.readouterr().out

    def test_compile_invalid_rule(self):
        assert cli.main(["compile", "vlan:src:10"]) == 2

    def test_usage_error(self):
        with pytest.raises(SystemExit) as excinfo:
            cli.main(["start"])
        assert excinfo.value.code == 2

    def test_filter_and_rules_conflict(self):
        with pytest.raises(SystemExit) as excinfo:
            cli.main(["start", "http://agent:5000", "-i", "eth0", "-f", "tcp", "udp"])
        assert excinfo.value.code == 2

    def test_start_sends_compiled_rules(self, monkeypatch, fake_client):
        monkeypatch.setattr(cli, "AgentClient", lambda url: fake_client)

        code = cli.main(["start", "http://agent:5000", "-i", "eth0", "tcp", "or", "udp"])

        assert code == 0
        assert fake_client.command_calls == [("start_capture", "eth0", "tcp or udp")]
        assert fake_client.closed

    def test_start_raw_filter(self, monkeypatch, fake_client):
        monkeypatch.setattr(cli, "AgentClient", lambda url: fake_client)

        cli.main(["start", "http://agent:5000", "-i", "eth0", "-f", "tcp port 80"])

        assert fake_client.command_calls == [("start_capture", "eth0", "tcp port 80")]

    def test_start_rejected_while_capturing(self, monkeypatch, fake_client, snapshot):
        fake_client.status = snapshot("capturing", interface="eth0")
        monkeypatch.setattr(cli, "AgentClient", lambda url: fake_client)

        assert cli.main(["start", "http://agent:5000", "-i", "eth0"]) == 1
        assert fake_client.command_calls == []

    def test_stop_failure_exit_code(self, monkeypatch, fake_client, capsys):
        fake_client.stop_results.append(AgentError(error_type="application", message="not capturing"))
        monkeypatch.setattr(cli, "AgentClient", lambda url: fake_client)

        assert cli.main(["stop", "http://agent:5000"]) == 1
        assert "not capturing" in capsys.readouterr().out

    def test_status_unreachable(self, monkeypatch, fake_client, capsys):
        fake_client.status = AgentError(error_type="transport", message="refused")
        monkeypatch.setattr(cli, "AgentClient", lambda url: fake_client)

        assert cli.main(["status", "http://agent:5000"]) == 1
        assert "Connection to agent failed" in capsys.readouterr().out

    def test_status_failure_checks_health(self, monkeypatch, fake_client, capsys):
        fake_client.status = AgentError(error_type="malformed", message="bad status")
        monkeypatch.setattr(cli, "AgentClient", lambda url: fake_client)

        assert cli.main(["status", "http://agent:5000"]) == 1
        assert ("health",) in fake_client.calls
        assert "health check" in capsys.readouterr().out

    def test_status_failure_with_failed_health(self, monkeypatch, fake_client, capsys):
        fake_client.status = AgentError(error_type="transport", message="refused")
        fake_client.health_result = AgentError(error_type="transport", message="refused")
        monkeypatch.setattr(cli, "AgentClient", lambda url: fake_client)

        assert cli.main(["status", "http://agent:5000"]) == 1
        assert "health check" not in capsys.readouterr().out

    def test_ports(self, capsys):
        assert cli.main(["ports"]) == 0

        out = capsys.readouterr().out
        assert "443" in out
        assert "PostgreSQL" in out

    def test_presets_round_trip(self, tmp_path, capsys):
        path = str(tmp_path / "presets.json")

        assert cli.main(["--presets-file", path, "presets", "save", "global", "web", "-f", "tcp port 80"]) == 0
        assert cli.main(["--presets-file", path, "presets", "list", "agent-1"]) == 0

        out = capsys.readouterr().out
        assert "web" in out
        assert "BPF: tcp port 80" in out

    def test_presets_save_needs_filter(self, tmp_path):
        path = str(tmp_path / "presets.json")
        assert cli.main(["--presets-file", path, "presets", "save", "global", "web"]) == 2

    def test_presets_delete_missing(self, tmp_path):
        path = str(tmp_path / "presets.json")
        assert cli.main(["--presets-file", path, "presets", "delete", "global", "1"]) == 1
