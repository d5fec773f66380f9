"""
Unit tests for configuration helpers and policy defaults.
"""

from core import config
from services.billing_policy import DEFAULT_POLICY, BillingPolicy


class TestGetBool:
    """Test boolean environment flags."""

    def test_truthy_values(self, monkeypatch):
        for raw in ("1", "true", "TRUE", "yes", "on", " True "):
            monkeypatch.setenv("SOME_BILLING_FLAG", raw)
            assert config._get_bool("SOME_BILLING_FLAG", False) is True

    def test_falsy_values(self, monkeypatch):
        for raw in ("0", "false", "no", "off", ""):
            monkeypatch.setenv("SOME_BILLING_FLAG", raw)
            assert config._get_bool("SOME_BILLING_FLAG", True) is False

    def test_missing_uses_default(self, monkeypatch):
        monkeypatch.delenv("SOME_BILLING_FLAG", raising=False)
        assert config._get_bool("SOME_BILLING_FLAG", True) is True


class TestBillingPolicy:
    """Test policy defaults come from config."""

    def test_defaults(self):
        assert DEFAULT_POLICY.max_partial_payments == config.BILLING_MAX_PARTIAL_PAYMENTS
        assert DEFAULT_POLICY.max_outstanding_invoices == config.BILLING_MAX_OUTSTANDING_INVOICES
        assert DEFAULT_POLICY.complete_visit_on_payment == config.BILLING_COMPLETE_VISIT_ON_PAYMENT

    def test_override(self):
        policy = BillingPolicy(max_partial_payments=4)
        assert policy.max_partial_payments == 4
