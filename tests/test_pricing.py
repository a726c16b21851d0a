import pytest

from billing.errors import ValidationError
from billing.pricing import RegistrationTier, list_tiers, price_of


def test_premier_is_recurring_monthly_fee():
    price = price_of("premier")
    assert price.amount == 70000
    assert price.is_recurring is True
    assert price.currency == "TZS"


def test_tier_lookup_is_case_insensitive():
    assert price_of(" Diamond ").tier is RegistrationTier.DIAMOND
    assert price_of(RegistrationTier.NORMAL).is_recurring is False


def test_unknown_tier_is_a_validation_error():
    with pytest.raises(ValidationError):
        price_of("platinum")


def test_table_covers_every_tier():
    assert [p.tier for p in list_tiers()] == list(RegistrationTier)
