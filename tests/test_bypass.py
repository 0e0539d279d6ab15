"""
Unit tests for validation.bypass module.
"""

import pytest

from validator_config import ADMIN_BYPASS_LABEL, ValidatorConfig
from validation import bypass_allowed

PREFIX = ADMIN_BYPASS_LABEL


class TestBypassAllowed:
    """Test bypass label matching."""

    def test_no_labels(self):
        assert bypass_allowed(None, "my-cluster") is False
        assert bypass_allowed({}, "my-cluster") is False

    def test_global_label(self):
        assert bypass_allowed({PREFIX: "true"}, "my-cluster") is True
        assert bypass_allowed({PREFIX: "true"}, None) is True

    def test_cluster_label(self):
        labels = {f"{PREFIX}-my-cluster": "true"}
        assert bypass_allowed(labels, "my-cluster") is True
        assert bypass_allowed(labels, "other-cluster") is False

    def test_cluster_label_is_not_a_prefix_match(self):
        labels = {f"{PREFIX}-my-cluster-2": "true"}
        assert bypass_allowed(labels, "my-cluster") is False

    @pytest.mark.parametrize("alias", [
        "in-cluster",
        "kubernetes.default.svc",
        "kubernetes.svc.cluster.local",
        "https://kubernetes.default.svc",
    ])
    def test_in_cluster_label_covers_every_alias(self, alias):
        labels = {f"{PREFIX}-in-cluster": "true"}
        assert bypass_allowed(labels, alias) is True

    def test_in_cluster_label_does_not_cover_remote(self):
        labels = {f"{PREFIX}-in-cluster": "true"}
        assert bypass_allowed(labels, "my-cluster") is False

    @pytest.mark.parametrize("value", ["false", "", "yes", "1"])
    def test_disabled_values(self, value):
        assert bypass_allowed({PREFIX: value}, "my-cluster") is False

    def test_default_is_exact_match(self):
        assert bypass_allowed({PREFIX: "True"}, "my-cluster") is False

    def test_unrelated_labels(self):
        labels = {"team": "a", "argocd.dana.io/other": "true"}
        assert bypass_allowed(labels, "my-cluster") is False

    def test_custom_prefix(self):
        assert bypass_allowed({"example.com/skip-my-cluster": "true"}, "my-cluster",
                              prefix="example.com/skip") is True


class TestLabelCaseDiscipline:
    """Test the configured case discipline for bypass values."""

    def test_case_insensitive_by_default(self):
        config = ValidatorConfig()
        assert bypass_allowed({PREFIX: "TRUE"}, "c", label_enabled=config.label_enabled) is True

    def test_strict_values(self):
        config = ValidatorConfig(strict_bypass_values=True)
        assert bypass_allowed({PREFIX: "TRUE"}, "c", label_enabled=config.label_enabled) is False
        assert bypass_allowed({PREFIX: "true"}, "c", label_enabled=config.label_enabled) is True
