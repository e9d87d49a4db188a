import json

import pytest

from napa.core.errors import ConfigError
from napa.helpers.data_helper import (
    load_config,
    parse_map,
    read_map,
    require,
)


def test_read_map(tmp_path):
    path = tmp_path / "private.txt"
    path.write_text("# sandbox\nkey=abc\n\nsecret=c2VjcmV0==\n", encoding="utf-8")

    assert read_map(path) == {"key": "abc", "secret": "c2VjcmV0=="}


def test_parse_map_skips_blanks_and_comments():
    lines = ["# credentials", "", "key = abc ", "secret=c2VjcmV0==", "phrase=p=q"]
    result = parse_map(lines)
    # Only the first '=' separates key from value
    assert result == {"key": "abc", "secret": "c2VjcmV0==", "phrase": "p=q"}


def test_parse_map_rejects_malformed_line():
    with pytest.raises(ValueError):
        parse_map(["key=abc", "no separator here"])
    with pytest.raises(ValueError):
        parse_map(["=value"])


def test_read_map_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        read_map(tmp_path / "nope.txt")


class TestLoadConfig:
    """Test configuration loading."""

    def test_load_valid_config(self, tmp_path):
        config_data = {"product": "LTC-USD", "parameters": {"granularity": 60}}
        config_file = tmp_path / "napa.json"
        config_file.write_text(json.dumps(config_data))

        assert load_config(config_file) == config_data

    def test_load_config_file_not_found(self, tmp_path):
        with pytest.raises(ConfigError):
            load_config(tmp_path / "nonexistent_config.json")

    def test_load_invalid_json(self, tmp_path):
        config_file = tmp_path / "invalid_config.json"
        config_file.write_text("{ invalid json }")
        with pytest.raises(ConfigError):
            load_config(config_file)

    def test_load_non_object(self, tmp_path):
        config_file = tmp_path / "list.json"
        config_file.write_text("[1, 2]")
        with pytest.raises(ConfigError):
            load_config(config_file)


class TestRequire:
    """Test typed settings lookup."""

    def test_casts_value(self):
        assert require({"granularity": "60"}, "granularity", int) == 60

    def test_default_for_missing_key(self):
        assert require({}, "signal_period", int, default=9) == 9

    def test_missing_key_raises(self):
        with pytest.raises(ConfigError, match="ema_long"):
            require({}, "ema_long", int)

    def test_bad_value_raises(self):
        with pytest.raises(ConfigError):
            require({"ema_long": "twenty"}, "ema_long", int)
