"""Client configuration: YAML loading, validation and kernel bridges."""

from datetime import date
from decimal import Decimal

import pytest
import yaml

from billing_config import get_client_config
from billing_config.bridges import build_fiscal_calendar, build_penalty_policy
from billing_config.loader import compute_checksum, load_client_directory, parse_rate
from billing_config.validator import validate_client_config
from billing_kernel.exceptions import ConfigurationError
from tests.conftest import make_config


def write_client(root, name, data, **fragments):
    directory = root / name
    directory.mkdir()
    (directory / "root.yaml").write_text(yaml.safe_dump(data))
    for fragment, content in fragments.items():
        (directory / f"{fragment}.yaml").write_text(yaml.safe_dump(content))
    return directory


BASE = {
    "client_id": "DEMO",
    "timezone": "America/Cancun",
    "fiscal_year_start_month": 7,
    "due_day": 10,
    "penalty": {"rate": "0.05"},
    "rates": {"rate_per_unit": "50.00"},
}


class TestShippedConfiguration:
    def test_avii_loads(self):
        config = get_client_config("AVII")
        assert config.name == "Aventuras Villas II"
        assert config.fiscal_year_start_month == 7
        assert config.penalty.rate == Decimal("0.05")
        assert config.penalty.grace_days == 10
        assert config.rates.rate_per_unit == 5000
        assert len(config.checksum) == 64

    def test_trace_logged(self, captured_logs):
        config = get_client_config("AVII")
        traces = [r for r in captured_logs() if r["message"] == "BILLING_CONFIG_TRACE"]
        assert traces[0]["checksum"] == config.checksum

    def test_avii_calendar(self):
        calendar = build_fiscal_calendar(get_client_config("AVII"))
        boundaries = calendar.period_boundaries(2026, 3)
        assert boundaries.due_date == date(2025, 10, 10)


class TestLoading:
    def test_fragments_are_merged(self, tmp_path):
        write_client(tmp_path, "demo", BASE, penalty={"penalty": {"grace_days": 5}})
        config = get_client_config("DEMO", config_dir=tmp_path)
        assert config.penalty.rate == Decimal("0.05")
        assert config.penalty.grace_days == 5

    def test_unknown_client(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            get_client_config("NOPE", config_dir=tmp_path)

    def test_missing_root(self, tmp_path):
        (tmp_path / "demo").mkdir()
        with pytest.raises(FileNotFoundError):
            load_client_directory(tmp_path / "demo")

    def test_client_id_must_match_directory(self, tmp_path):
        write_client(tmp_path, "other", BASE)
        with pytest.raises(ConfigurationError):
            get_client_config("OTHER", config_dir=tmp_path)

    def test_all_errors_reported(self, tmp_path):
        bad = dict(BASE, fiscal_year_start_month=13, due_day=0, timezone="Mars/Base")
        write_client(tmp_path, "demo", bad)
        with pytest.raises(ConfigurationError) as info:
            get_client_config("DEMO", config_dir=tmp_path)
        assert len(info.value.errors) == 3

    def test_checksum_is_order_independent(self):
        assert compute_checksum({"a": 1, "b": 2}) == compute_checksum({"b": 2, "a": 1})

    def test_float_rate(self):
        assert parse_rate(0.05) == Decimal("0.05")


class TestValidation:
    def test_valid(self):
        assert validate_client_config(make_config()).is_valid

    def test_late_due_day_warns(self):
        result = validate_client_config(make_config(due_day=31))
        assert result.is_valid
        assert result.warnings

    def test_negative_chunk_size(self):
        from billing_config.schema import CacheTerms

        result = validate_client_config(make_config(cache=CacheTerms(rebuild_chunk_size=0)))
        assert not result.is_valid


def test_penalty_policy_bridge(config):
    policy = build_penalty_policy(config)
    assert policy.rate == Decimal("0.05")
    assert policy.compounding is True
