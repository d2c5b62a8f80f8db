"""Tests for diff normalization rules engine."""

from __future__ import annotations

import pytest

from edge_operator.diff_normalizer import (
    DEFAULT_NORMALIZATION_RULES,
    DiffNormalizer,
    NormalizationRule,
    NormalizationType,
)


class TestNormalizationRule:
    """Tests for NormalizationRule matching."""

    def test_matches_exact_kind(self) -> None:
        """Test exact resource kind matching."""
        rule = NormalizationRule(
            kind="ALB",
            path_pattern="*",
            normalization_type=NormalizationType.EMPTY_EQUIVALENCE,
        )

        assert rule.matches("ALB", "tags") is True
        assert rule.matches("TargetGroup", "tags") is False

    def test_matches_glob_kind(self) -> None:
        """Test glob pattern in resource kind."""
        rule = NormalizationRule(
            kind="WAF*",
            path_pattern="*",
            normalization_type=NormalizationType.CASE_INSENSITIVE,
        )

        assert rule.matches("WAFAcl", "default_action") is True
        assert rule.matches("WAFRule", "action") is True
        assert rule.matches("ALB", "scheme") is False

    def test_matches_path_pattern(self) -> None:
        """Test path pattern matching."""
        rule = NormalizationRule(
            kind="*",
            path_pattern="**.enabled",
            normalization_type=NormalizationType.BOOLEAN_NORMALIZE,
        )

        assert rule.matches("TargetGroup", "enabled") is True
        assert rule.matches("TargetGroup", "health_check.logging.enabled") is True
        assert rule.matches("TargetGroup", "name") is False

    def test_matches_case_insensitive(self) -> None:
        """Test case-insensitive matching."""
        rule = NormalizationRule(
            kind="dnsrecord",
            path_pattern="NAME",
            normalization_type=NormalizationType.DNS_NAME,
        )

        assert rule.matches("DNSRecord", "name") is True


class TestDiffNormalizer:
    """Tests for DiffNormalizer."""

    @pytest.fixture
    def normalizer(self) -> DiffNormalizer:
        """Create a normalizer with default rules."""
        return DiffNormalizer(enable_default_rules=True)

    @pytest.fixture
    def normalizer_no_defaults(self) -> DiffNormalizer:
        """Create a normalizer without default rules."""
        return DiffNormalizer(enable_default_rules=False)

    # Empty equivalence tests

    def test_normalize_empty_tags_to_none(self, normalizer: DiffNormalizer) -> None:
        """Test empty tags normalize to None."""
        assert normalizer.normalize_value({}, "ALB", "tags") is None
        assert normalizer.normalize_value(None, "TargetGroup", "tags") is None

    def test_non_empty_tags_preserved(self, normalizer: DiffNormalizer) -> None:
        """Test that non-empty values are preserved."""
        assert normalizer.normalize_value({"team": "edge"}, "ALB", "tags") == {"team": "edge"}

    def test_empty_annotations(self, normalizer: DiffNormalizer) -> None:
        """Kubernetes drops empty annotation maps."""
        assert normalizer.are_equivalent({}, None, "IngressRoute", "annotations")

    # Boolean normalization tests

    def test_normalize_alias_flag(self, normalizer: DiffNormalizer) -> None:
        """Test string booleans normalize to bool."""
        assert normalizer.normalize_value("true", "DNSRecord", "alias") is True
        assert normalizer.normalize_value("off", "DNSRecord", "alias") is False
        assert normalizer.normalize_value(1, "DNSRecord", "alias") is True

    # Numeric string tests

    def test_port_string_vs_int(self, normalizer: DiffNormalizer) -> None:
        """Ports reported as strings equal their integer value."""
        assert normalizer.are_equivalent(80, "80", "Listener", "port")
        assert normalizer.are_equivalent(8080, "8080", "IngressRoute", "service_port")
        assert not normalizer.are_equivalent(80, "8080", "Listener", "port")

    def test_ttl_and_priority(self, normalizer: DiffNormalizer) -> None:
        """TTL and rule priority tolerate string forms."""
        assert normalizer.normalize_value("300", "DNSRecord", "ttl") == 300
        assert normalizer.normalize_value("10", "WAFRule", "priority") == 10

    # Case tests

    def test_protocol_and_scheme_case(self, normalizer: DiffNormalizer) -> None:
        """Test enum-like values compare case-insensitively."""
        assert normalizer.are_equivalent("HTTP", "http", "Listener", "protocol")
        assert normalizer.are_equivalent("internal", "INTERNAL", "ALB", "scheme")
        assert normalizer.are_equivalent("block", "BLOCK", "WAFRule", "action")
        assert normalizer.are_equivalent("allow", "ALLOW", "WAFAcl", "default_action")

    def test_case_only_where_ruled(self, normalizer: DiffNormalizer) -> None:
        """Physical names stay case-sensitive."""
        assert not normalizer.are_equivalent("Edge", "edge", "ALB", "name")

    # DNS names

    def test_dns_name_trailing_dot(self, normalizer: DiffNormalizer) -> None:
        """Route 53 fully qualified names equal declared names."""
        assert normalizer.are_equivalent(
            "app.example.com", "App.Example.COM.", "DNSRecord", "name"
        )
        assert normalizer.are_equivalent(
            "App.example.com", "app.example.com", "IngressRoute", "host"
        )

    # Array order

    def test_subnet_order_ignored(self, normalizer: DiffNormalizer) -> None:
        """Set-like lists compare regardless of order."""
        assert normalizer.normalize_value(["subnet-b", "subnet-a"], "ALB", "subnets") == (
            "subnet-a",
            "subnet-b",
        )
        assert normalizer.are_equivalent(["i-1", "i-2"], ["i-2", "i-1"], "TargetGroup", "targets")

    def test_ordered_lists_stay_ordered(self, normalizer_no_defaults: DiffNormalizer) -> None:
        """Without a rule, list order matters."""
        assert not normalizer_no_defaults.are_equivalent(["a", "b"], ["b", "a"], "ALB", "subnets")

    # Default values

    def test_default_ip_address_type(self, normalizer: DiffNormalizer) -> None:
        """A missing address type equals the ipv4 default."""
        assert normalizer.are_equivalent("ipv4", None, "ALB", "ip_address_type")
        assert not normalizer.are_equivalent("dualstack", None, "ALB", "ip_address_type")

    # Custom rules

    def test_custom_rules(self, normalizer_no_defaults: DiffNormalizer) -> None:
        """Extra rules extend or replace the defaults."""
        normalizer = DiffNormalizer(
            rules=[
                NormalizationRule(
                    kind="ALB",
                    path_pattern="name",
                    normalization_type=NormalizationType.CASE_INSENSITIVE,
                )
            ],
            enable_default_rules=False,
        )

        assert normalizer.are_equivalent("Edge", "edge", "ALB", "name")
        assert not normalizer.are_equivalent({}, None, "ALB", "tags")
        assert not normalizer_no_defaults.are_equivalent("Edge", "edge", "ALB", "name")


class TestChangedAttributes:
    """Tests for DiffNormalizer.changed_attributes()."""

    @pytest.fixture
    def normalizer(self) -> DiffNormalizer:
        return DiffNormalizer()

    def test_observed_only_keys_ignored(self, normalizer: DiffNormalizer) -> None:
        """ARNs and other computed keys never count as drift."""
        desired = {"scheme": "internal", "subnets": ["a", "b"], "tags": {}}
        observed = {
            "scheme": "INTERNAL",
            "subnets": ["b", "a"],
            "arn": "arn:aws:elasticloadbalancing:alb",
            "dns_name": "alb.example.com",
        }
        assert normalizer.changed_attributes("ALB", desired, observed) == []

    def test_changes_sorted(self, normalizer: DiffNormalizer) -> None:
        """Changed attribute names come back sorted."""
        desired = {"tags": {"team": "edge"}, "scheme": "internal", "subnets": ["a", "b"]}
        observed = {"tags": {}, "scheme": "internet-facing", "subnets": ["a", "b"]}
        assert normalizer.changed_attributes("ALB", desired, observed) == ["scheme", "tags"]


class TestDefaultNormalizationRules:
    """Tests for the default rule set."""

    def test_has_empty_equivalence_rules(self) -> None:
        """Tags are covered for every kind."""
        assert any(
            r.normalization_type == NormalizationType.EMPTY_EQUIVALENCE
            and r.kind == "*"
            and r.path_pattern == "tags"
            for r in DEFAULT_NORMALIZATION_RULES
        )

    def test_every_rule_has_reason(self) -> None:
        """Each default rule documents why it exists."""
        assert all(r.reason for r in DEFAULT_NORMALIZATION_RULES)
