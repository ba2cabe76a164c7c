"""Tests for configuration loading, CLI wiring and the service object."""

from __future__ import annotations

import pytest
from pydantic import ValidationError

from rendezvous.cli import _build_parser, load_config, main
from rendezvous.config import RendezvousConfig
from rendezvous.relay.service import RendezvousService, local_ip


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in ("PORT", "RENDEZVOUS_PORT", "RENDEZVOUS_HOST", "RENDEZVOUS_SWEEP_INTERVAL",
                 "RENDEZVOUS_LIVENESS_TIMEOUT", "RENDEZVOUS_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)


class TestRendezvousConfig:
    def test_defaults(self):
        cfg = RendezvousConfig()
        assert cfg.host == "0.0.0.0"
        assert cfg.port == 3030
        assert cfg.sweep_interval == 10.0
        assert cfg.liveness_timeout == 30.0
        assert cfg.max_message_size == 100_000_000
        assert cfg.trust_forwarded_for is True
        assert cfg.close_evicted is True

    def test_prefixed_env(self, monkeypatch):
        monkeypatch.setenv("RENDEZVOUS_SWEEP_INTERVAL", "2.5")
        monkeypatch.setenv("RENDEZVOUS_LOG_LEVEL", "debug")
        cfg = RendezvousConfig()
        assert cfg.sweep_interval == 2.5
        assert cfg.log_level == "DEBUG"

    def test_plain_port_env(self, monkeypatch):
        monkeypatch.setenv("PORT", "8080")
        assert RendezvousConfig().port == 8080

    def test_prefixed_port_env(self, monkeypatch):
        monkeypatch.setenv("RENDEZVOUS_PORT", "9000")
        assert RendezvousConfig().port == 9000

    def test_kwargs_win_over_env(self, monkeypatch):
        monkeypatch.setenv("PORT", "8080")
        assert RendezvousConfig(port=1234).port == 1234

    def test_rejects_bad_values(self):
        with pytest.raises(ValidationError):
            RendezvousConfig(port=70000)
        with pytest.raises(ValidationError):
            RendezvousConfig(liveness_timeout=0)

    def test_camel_case_keys(self):
        cfg = RendezvousConfig(sweepInterval=2.0, livenessTimeout=5.0, closeEvicted=False)
        assert cfg.sweep_interval == 2.0
        assert cfg.liveness_timeout == 5.0
        assert cfg.close_evicted is False

    def test_camel_case_key_wins_over_env(self, monkeypatch):
        monkeypatch.setenv("RENDEZVOUS_SWEEP_INTERVAL", "7")
        monkeypatch.setenv("RENDEZVOUS_LIVENESS_TIMEOUT", "50")
        cfg = RendezvousConfig(sweepInterval=2.0)
        assert cfg.sweep_interval == 2.0
        assert cfg.liveness_timeout == 50.0

    def test_unknown_key_rejected(self):
        with pytest.raises(ValidationError):
            RendezvousConfig(sweepIntervall=2.0)

    def test_log_level_must_be_known(self):
        assert RendezvousConfig(log_level="warning").log_level == "WARNING"
        with pytest.raises(ValidationError):
            RendezvousConfig(log_level="LOUD")


class TestCli:
    def test_flags_override(self):
        args = _build_parser().parse_args([
            "serve", "--port", "4000", "--liveness-timeout", "45", "--no-forwarded-for",
        ])
        cfg = load_config(args)
        assert cfg.port == 4000
        assert cfg.liveness_timeout == 45.0
        assert cfg.trust_forwarded_for is False
        assert cfg.sweep_interval == 10.0

    def test_command_required(self):
        with pytest.raises(SystemExit):
            _build_parser().parse_args([])

    def test_bad_log_level_exits_cleanly(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            main(["serve", "--log-level", "LOUD"])
        assert exc_info.value.code == 2
        assert "log_level" in capsys.readouterr().err


class TestService:
    def test_wiring(self):
        cfg = RendezvousConfig(sweep_interval=3, liveness_timeout=9, close_evicted=False)
        service = RendezvousService(cfg)
        assert service.transport.handler is service.router
        assert service.router.outbox is service.transport
        assert service.router.registry is service.registry
        assert service.router.close_evicted is False
        assert service.sweeper.interval == 3
        assert service.sweeper.timeout == 9

    def test_status_before_start(self):
        service = RendezvousService(RendezvousConfig())
        assert service.status() == {
            "devices": 0, "groups": 0, "connections": 0, "sessions": 0, "uptime": 0.0,
        }
        assert not service.running

    def test_local_ip_is_string(self):
        assert isinstance(local_ip(), str)

    def test_sessions_total_counts_registrations(self):
        service = RendezvousService(RendezvousConfig())
        service.registry.register("a", "8.8.8.8")
        service.registry.register("b", "8.8.8.9")
        service.registry.deregister("a")
        service.registry.update_profile("b", "phone", "p", "Pixel")
        assert service.sessions_total == 2
        assert service.status()["sessions"] == 2
        assert service.status()["devices"] == 1
