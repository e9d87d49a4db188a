import logging
from decimal import Decimal

import pytest

from napa.core.errors import ConfigError, StartupError
from napa.pipelines.control_loop import ControlLoop
from napa.pipelines.napa_pipeline import (
    build_trading_loop,
    initial_funds,
    load_credentials,
    main,
    run_trading,
)

logger = logging.getLogger("napa.tests.pipeline")


@pytest.fixture
def config(tmp_path):
    credentials = tmp_path / "private.txt"
    credentials.write_text("# sandbox keys\nkey=abc123\nsecret=c2VjcmV0\nphrase=hunter2\n")
    return {
        "product": "LTC-USD",
        "parameters": {"granularity": 60, "ema_short": 12, "ema_long": 26, "signal_period": 9},
        "execution": {"dry_run": True},
        "exchange": {"rest_url": "https://api.test", "timeout": 5},
        "data_paths": {
            "store_path": str(tmp_path / "store"),
            "log_path": str(tmp_path / "logs"),
            "credentials_path": str(credentials),
        },
        "initial_funds": {"USD": "250.00"},
    }


class TestCredentials:
    """Test reading the credentials file."""

    def test_load(self, tmp_path):
        path = tmp_path / "private.txt"
        path.write_text("key=abc123\nsecret=c2VjcmV0\nphrase=hunter2\n")
        auth = load_credentials(path, logger)
        assert (auth.key, auth.secret, auth.passphrase) == ("abc123", "c2VjcmV0", "hunter2")
        assert "hunter2" not in repr(auth)

    def test_missing_field(self, tmp_path):
        path = tmp_path / "private.txt"
        path.write_text("key=abc123\nsecret=c2VjcmV0\n")
        with pytest.raises(ConfigError, match="phrase"):
            load_credentials(path, logger)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError):
            load_credentials(tmp_path / "absent.txt", logger)


class TestStartup:
    """Test stages 2-3 and the fatal-startup rule."""

    def test_builds_loop_and_seeds_funds(self, config):
        loop = build_trading_loop(config, logger)
        assert isinstance(loop, ControlLoop)
        assert loop.ledger.available("USD") == Decimal("250.00")

    def test_missing_credentials_is_fatal(self, config, tmp_path):
        config["data_paths"]["credentials_path"] = str(tmp_path / "nope.txt")
        with pytest.raises(StartupError):
            build_trading_loop(config, logger)
        assert run_trading(config, logger) == 1

    def test_corrupt_store_is_fatal(self, config, tmp_path):
        store = tmp_path / "store"
        store.mkdir()
        (store / "orders.txt").write_text('{"id": "half-writ')
        with pytest.raises(StartupError):
            build_trading_loop(config, logger)

    def test_bad_parameters_are_fatal(self, config):
        config["parameters"]["ema_short"] = 30
        with pytest.raises(StartupError):
            build_trading_loop(config, logger)

    def test_negative_initial_funds(self):
        with pytest.raises(ConfigError):
            initial_funds({"initial_funds": {"USD": "-1"}})


def test_main_with_missing_config(tmp_path):
    assert main(["trade", str(tmp_path / "missing.json")]) == 1
