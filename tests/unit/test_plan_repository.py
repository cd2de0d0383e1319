"""Tests for PlanRepository."""

from unittest.mock import MagicMock

import pytest

from billing_engine.errors import PlanNotFoundError
from billing_engine.models import PlanDefinition
from billing_engine.repositories.plan_repository import (
    PlanRepository,
    get_plan_repository,
    reset_plan_repository,
)


@pytest.fixture
def mock_config():
    config = MagicMock()
    config.plans = [
        PlanDefinition(id="basic", name="Basic", price=1000, currency="usd"),
        PlanDefinition(id="pro", name="Pro", price=5000, currency="NGN", grace_period="P3D"),
    ]
    return config


@pytest.fixture
def repository(mock_config):
    return PlanRepository(config=mock_config)


class TestPlanLookup:
    def test_get_by_id(self, repository):
        assert repository.get_by_id("pro").price == 5000

    def test_get_unknown_raises(self, repository):
        with pytest.raises(PlanNotFoundError, match="Available plans"):
            repository.get_by_id("enterprise")

    def test_find_unknown_returns_none(self, repository):
        assert repository.find_by_id("enterprise") is None

    def test_currency_is_normalized(self, repository):
        assert repository.get_by_id("basic").currency == "USD"
        assert [p.id for p in repository.get_by_currency("usd")] == ["basic"]

    def test_container_protocol(self, repository):
        assert len(repository) == 2
        assert "basic" in repository
        assert repository.exists("pro")
        assert not repository.exists("enterprise")

    def test_get_all(self, repository):
        assert {p.id for p in repository.get_all()} == {"basic", "pro"}


class TestReload:
    def test_reload_rereads_config(self, repository, mock_config):
        mock_config.plans = [PlanDefinition(id="solo", name="Solo", price=1)]
        repository.reload()
        mock_config.reload.assert_called_once()
        assert [p.id for p in repository.get_all()] == ["solo"]


class TestGlobalRepository:
    def test_loads_from_global_config(self):
        repository = get_plan_repository()
        assert repository.exists("plan_pro_monthly")
        assert get_plan_repository() is repository

    def test_reset(self):
        first = get_plan_repository()
        reset_plan_repository()
        assert get_plan_repository() is not first
