"""Tests for configuration loading."""

from decimal import Decimal

import pytest

from atelier.utils.config import Config, get_config, reset_config


@pytest.fixture(autouse=True)
def fresh_config():
    reset_config()
    yield
    reset_config()


class TestConfig:
    def test_defaults(self, monkeypatch):
        for name in (
            "ATELIER_DATABASE_URL",
            "ATELIER_RESERVATION_TTL_DAYS",
            "ATELIER_OVERHEAD_RATE",
            "ATELIER_LABOR_COST_PER_UNIT",
            "ATELIER_ASSIGNMENT_RANKING",
        ):
            monkeypatch.delenv(name, raising=False)

        config = Config("production")

        assert config.reservation_ttl_days == 7
        assert config.overhead_rate == Decimal("0.15")
        assert config.labor_cost_per_unit == Decimal("20.00")
        assert config.efficiency_display_range == (0.0, 200.0)
        assert config.assignment_ranking == [
            "is_primary_assignment",
            "efficiency_rating",
            "priority_level",
        ]
        assert config.database_url.startswith("sqlite:///")
        assert config.database_url.endswith("atelier.db")

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("ATELIER_DATABASE_URL", "postgresql://atelier@db/atelier")
        monkeypatch.setenv("ATELIER_RESERVATION_TTL_DAYS", "3")
        monkeypatch.setenv("ATELIER_OVERHEAD_RATE", "0.2")
        monkeypatch.setenv("ATELIER_LOG_LEVEL", "debug")

        config = Config("production")

        assert config.database_url == "postgresql://atelier@db/atelier"
        assert config.reservation_ttl_days == 3
        assert config.overhead_rate == Decimal("0.2")
        assert config.log_level == "DEBUG"

    def test_unknown_ranking_keys_are_dropped(self, monkeypatch):
        monkeypatch.setenv("ATELIER_ASSIGNMENT_RANKING", "nonsense")

        assert Config("production").assignment_ranking == [
            "is_primary_assignment",
            "efficiency_rating",
            "priority_level",
        ]

    def test_development_uses_project_data_dir(self):
        config = Config("development")

        assert config.is_development
        assert config.database_path.parent.name == "data"

    def test_singleton_keeps_first_environment(self, monkeypatch):
        monkeypatch.setenv("ATELIER_ENV", "development")

        first = get_config()
        second = get_config("production")

        assert first is second
        assert second.environment == "development"
