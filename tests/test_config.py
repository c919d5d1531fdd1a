"""Tests for configuration and secret resolution."""

import pytest

from zrelay.config import ServerConfig, load_shared_secret, parse_address
from zrelay.crypto import SharedSecret
from zrelay.errors import ConfigError
from zrelay.run_server import build_config, parse_args


class TestServerConfig:
    """Validation of option values."""

    def test_defaults_are_valid(self) -> None:
        """The stock configuration passes validation."""
        config = ServerConfig().validate()
        assert config.port == 5496
        assert config.auth_timeout == 10.0

    @pytest.mark.parametrize("kwargs", [
        {"port": 70000},
        {"ping_interval": 0},
        {"ping_interval": 1000},
        {"auth_timeout": 0},
        {"outbound_limit": 0},
        {"max_payload": 2_000_000},
        {"secret_passphrase": "a", "secret_file": "b"},
    ])
    def test_invalid_values(self, kwargs) -> None:
        """Out-of-range values are configuration errors."""
        with pytest.raises(ConfigError):
            ServerConfig(**kwargs).validate()

    def test_env_fallback(self) -> None:
        """ZRELAY_SECRET fills in when no secret option was given."""
        config = ServerConfig().with_env({"ZRELAY_SECRET": "abc"})
        assert config.secret_passphrase == "abc"

    def test_option_beats_env(self) -> None:
        """An explicit secret file wins over the environment."""
        config = ServerConfig(secret_file="x").with_env({"ZRELAY_SECRET": "abc"})
        assert config.secret_passphrase is None


class TestLoadSharedSecret:
    """Resolving the secret source."""

    def test_passphrase(self) -> None:
        secret = load_shared_secret(ServerConfig(secret_passphrase="abc"))
        assert secret == SharedSecret.from_passphrase("abc")

    def test_file(self, tmp_path) -> None:
        path = tmp_path / "secret"
        path.write_bytes(b"abc")
        assert load_shared_secret(ServerConfig(secret_file=str(path))) == SharedSecret.from_bytes(b"abc")

    def test_none_configured(self) -> None:
        """No secret means permissive mode."""
        assert load_shared_secret(ServerConfig()) is None

    def test_disabled(self) -> None:
        """Disabling auth ignores a configured secret."""
        assert load_shared_secret(ServerConfig(secret_passphrase="abc", auth_enabled=False)) is None

    def test_empty_passphrase(self) -> None:
        with pytest.raises(ConfigError):
            load_shared_secret(ServerConfig(secret_passphrase=""))


class TestParseAddress:
    @pytest.mark.parametrize("value, expected", [
        ("127.0.0.1:9000", ("127.0.0.1", 9000)),
        (":9000", ("0.0.0.0", 9000)),
        ("localhost", ("localhost", 5496)),
        ("[::1]:9000", ("::1", 9000)),
    ])
    def test_forms(self, value, expected) -> None:
        assert parse_address(value) == expected

    def test_bad_port(self) -> None:
        with pytest.raises(ConfigError):
            parse_address("host:http")


class TestCommandLine:
    """Options map onto ServerConfig."""

    def test_build_config(self, monkeypatch) -> None:
        monkeypatch.delenv("ZRELAY_SECRET", raising=False)
        monkeypatch.delenv("ZRELAY_SECRET_FILE", raising=False)
        args = parse_args(["--listen", "127.0.0.1:7000", "--secret", "abc", "-vv", "-p", "30"])
        config = build_config(args)
        assert (config.host, config.port) == ("127.0.0.1", 7000)
        assert config.secret_passphrase == "abc"
        assert config.verbosity == 2
        assert config.ping_interval == 30

    def test_no_auth(self, monkeypatch) -> None:
        monkeypatch.delenv("ZRELAY_SECRET", raising=False)
        monkeypatch.delenv("ZRELAY_SECRET_FILE", raising=False)
        config = build_config(parse_args(["--no-auth", "--secret", "abc"]))
        assert load_shared_secret(config) is None
