"""
License key format and plan catalog lookups.
"""

import re
from decimal import Decimal

import pytest

from aurora_sync.core.exceptions import ErrorCode, NotFoundError
from aurora_sync.models.enums import BillingCycle
from aurora_sync.services.license_keys import (
    generate_license_key,
    mask_license_key,
    tier_code_of,
    verify_license_key,
)
from aurora_sync.services.plan_catalog import PlanCatalog

KEY_RE = re.compile(r"^AUR-(BAS|PRO|ENT)-V2-[A-Z0-9]{8}-[A-F0-9]{8}$")


class TestLicenseKeys:
    def test_generated_key_matches_format(self):
        key = generate_license_key("PRO", "cust_1001", secret="s3cret")
        assert KEY_RE.match(key)
        assert tier_code_of(key) == "PRO"

    def test_keys_are_random(self):
        keys = {generate_license_key("BAS", "cust_1001", secret="s3cret") for _ in range(20)}
        assert len(keys) == 20

    def test_signature_binds_customer(self):
        key = generate_license_key("ENT", "cust_1001", secret="s3cret")
        assert verify_license_key(key, "cust_1001", secret="s3cret")
        assert not verify_license_key(key, "cust_2002", secret="s3cret")
        assert not verify_license_key(key, "cust_1001", secret="other")

    def test_tampered_key_fails(self):
        key = generate_license_key("BAS", "cust_1001", secret="s3cret")
        tampered = key.replace("-BAS-", "-ENT-")
        assert not verify_license_key(tampered, "cust_1001", secret="s3cret")
        assert not verify_license_key("not-a-key", "cust_1001", secret="s3cret")

    def test_mask_keeps_prefix_only(self):
        key = generate_license_key("PRO", "cust_1001", secret="s3cret")
        assert mask_license_key(key) == "AUR-PRO-V2-****-****"


class TestPlanCatalog:
    def test_plans_from_settings(self, catalog):
        assert set(catalog.plans) == {"basic", "professional", "enterprise"}
        professional = catalog.get("professional")
        assert professional.tier_code == "PRO"
        assert professional.max_terminals == 3
        assert professional.price(BillingCycle.MONTHLY) == Decimal("99.0")

    def test_unknown_plan(self, catalog):
        with pytest.raises(NotFoundError) as exc_info:
            catalog.get("platinum")
        assert exc_info.value.error_code == ErrorCode.PLAN_NOT_FOUND

    def test_resolve_price(self, catalog):
        ref = catalog.resolve_price("price_enterprise_annual")
        assert ref.plan_id == "enterprise"
        assert ref.billing_cycle == BillingCycle.ANNUAL
        assert catalog.resolve_price("price_unknown") is None
        assert catalog.resolve_price(None) is None

    def test_catalog_is_read_only(self, catalog):
        with pytest.raises(TypeError):
            catalog.plans["basic"] = catalog.get("enterprise")

    @pytest.mark.parametrize(
        "policy,new_plan,new_cycle,expected",
        [
            ("tier", "enterprise", BillingCycle.MONTHLY, True),
            ("tier", "professional", BillingCycle.ANNUAL, False),
            ("any_change", "professional", BillingCycle.ANNUAL, True),
            ("never", "enterprise", BillingCycle.ANNUAL, False),
        ],
    )
    def test_reissue_policy(self, catalog, policy, new_plan, new_cycle, expected):
        configured = PlanCatalog(catalog.plans.values(), reissue_policy=policy)
        assert configured.requires_key_reissue("professional", new_plan, BillingCycle.MONTHLY, new_cycle) is expected

    def test_unknown_reissue_policy(self, catalog):
        with pytest.raises(ValueError):
            PlanCatalog(catalog.plans.values(), reissue_policy="sometimes")
