"""
Tests for the merchant authorisation settings registry.
"""

import json
from decimal import Decimal
from uuid import uuid4

import pytest

from payguard.app.errors import ConfigurationError
from payguard.app.models.approvals import AuthorisationSetting, AuthorisationType
from payguard.app.models.entities import CurrencyType, Payout, Rule
from payguard.app.services.settings_registry import DEFAULT_MERCHANT_KEY, AuthorisationSettingsRegistry

MERCHANT = "6d8a4b2e-5c1f-4f0e-9a3b-2c7d1e8f9a10"


def payout(amount):
    return Payout(id=uuid4(), account_id=uuid4(), currency=CurrencyType.EUR, amount=Decimal(amount))


@pytest.fixture
def registry():
    registry = AuthorisationSettingsRegistry()
    registry.load_json(
        json.dumps(
            {
                MERCHANT: [
                    {"authorisation_type": "payout", "number_of_authorisers": 1, "amount_upper": "1000"},
                    {"authorisation_type": "payout", "number_of_authorisers": 3, "amount_lower": "1000"},
                ],
                DEFAULT_MERCHANT_KEY: [{"number_of_authorisers": 2}],
            }
        )
    )
    return registry


class TestResolve:
    @pytest.mark.parametrize("amount,expected", [("999.99", 1), ("1000", 3), ("50000", 3)])
    def test_amount_bands(self, registry, amount, expected):
        assert registry.resolve(MERCHANT, payout(amount)).number_of_authorisers == expected

    def test_merchant_without_settings_uses_default_entry(self, registry):
        assert registry.resolve(str(uuid4()), payout("10")).number_of_authorisers == 2

    def test_no_applicable_setting_means_one_authoriser(self, registry):
        rule = Rule(id=uuid4(), account_id=uuid4())
        assert registry.resolve(MERCHANT, rule) == AuthorisationSetting()

    def test_empty_registry(self):
        assert AuthorisationSettingsRegistry().resolve(None, payout("10")).number_of_authorisers == 1

    def test_set_replaces_merchant_settings(self, registry):
        registry.set(MERCHANT, [AuthorisationSetting(authorisation_type=AuthorisationType.PAYOUT, number_of_authorisers=0)])
        assert registry.resolve(MERCHANT, payout("50000")).number_of_authorisers == 0

    def test_remove_falls_back_to_default_entry(self, registry):
        registry.remove(MERCHANT)
        assert registry.resolve(MERCHANT, payout("50000")).number_of_authorisers == 2

    def test_settings_for_returns_copy(self, registry):
        registry.settings_for(MERCHANT).clear()
        assert len(registry.settings_for(MERCHANT)) == 2


class TestLoad:
    def test_load_returns_merchant_count(self):
        assert AuthorisationSettingsRegistry().load_json('{"a": [], "b": []}') == 2

    def test_invalid_json(self):
        with pytest.raises(ConfigurationError, match="not valid JSON"):
            AuthorisationSettingsRegistry().load_json("{not json")

    def test_must_be_object(self):
        with pytest.raises(ConfigurationError, match="JSON object"):
            AuthorisationSettingsRegistry().load_json("[]")

    def test_negative_authorisers_rejected(self):
        with pytest.raises(ConfigurationError, match="merchant m1"):
            AuthorisationSettingsRegistry().load_json('{"m1": [{"number_of_authorisers": -1}]}')

    def test_load_from_env(self, monkeypatch):
        monkeypatch.setenv("PAYGUARD_AUTHORISATION_SETTINGS", '{"m1": [{"number_of_authorisers": 2}]}')
        registry = AuthorisationSettingsRegistry()

        assert registry.load_from_env() == 1
        assert registry.resolve("m1", payout("10")).number_of_authorisers == 2

    def test_load_from_env_unset(self, monkeypatch):
        monkeypatch.delenv("PAYGUARD_AUTHORISATION_SETTINGS", raising=False)
        assert AuthorisationSettingsRegistry().load_from_env() == 0
