"""Attribute normalization for desired-vs-observed comparison.

AWS returns subnet lists in arbitrary order, upper-cases protocols and appends
a trailing dot to Route 53 names. The Kubernetes API drops empty annotation
maps. Comparing raw values would report drift on every pass, so both sides are
normalized first and only semantic differences count.

Rules are matched on resource kind and attribute path. Path patterns use
``*`` for one segment and ``**.`` for any number of leading segments, so
``**.port`` matches both ``port`` and ``health_check.port``.
"""

from __future__ import annotations

import functools
import json
import logging
import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class NormalizationType(str, Enum):
    """How a matched value is rewritten before comparison."""

    EMPTY_EQUIVALENCE = "empty_equivalence"  # "", [], {} and None
    BOOLEAN_NORMALIZE = "boolean_normalize"  # "true", "on", 1 -> True
    NUMERIC_STRING = "numeric_string"  # "443" -> 443
    CASE_INSENSITIVE = "case_insensitive"
    DNS_NAME = "dns_name"  # case and trailing dot
    ARRAY_UNORDERED = "array_unordered"
    DEFAULT_VALUE = "default_value"  # missing -> params["default"]


@functools.lru_cache(maxsize=256)
def _pattern_regex(pattern: str) -> re.Pattern[str]:
    parts = re.split(r"(\*\*\.|\*\*|\*)", pattern.lower())
    translated = {"**.": r"(?:.*\.)?", "**": ".*", "*": r"[^.]*"}
    return re.compile(
        "".join(translated.get(part, re.escape(part)) for part in parts) + r"\Z"
    )


def _glob(value: str, pattern: str) -> bool:
    return pattern == "*" or _pattern_regex(pattern).match(value.lower()) is not None


@dataclass(frozen=True)
class NormalizationRule:
    """Rewrites values of one attribute path on matching resource kinds.

    Both ``kind`` and ``path_pattern`` accept wildcards and match
    case-insensitively. ``reason`` is shown nowhere at runtime; it keeps the
    rule table self-explanatory.
    """

    kind: str
    path_pattern: str
    normalization_type: NormalizationType
    params: dict[str, Any] = field(default_factory=dict)
    reason: str = ""

    def matches(self, kind: str, path: str) -> bool:
        return _glob(kind, self.kind) and _glob(path, self.path_pattern)


def _empty(value: Any, _: NormalizationRule) -> Any:
    if isinstance(value, str | list | tuple | dict) and not value:
        return None
    return value


_TRUTHY = frozenset({"true", "yes", "1", "on"})
_FALSY = frozenset({"false", "no", "0", "off"})


def _boolean(value: Any, _: NormalizationRule) -> Any:
    if isinstance(value, str):
        lowered = value.lower()
        if lowered in _TRUTHY:
            return True
        if lowered in _FALSY:
            return False
    elif not isinstance(value, bool) and value in (0, 1):
        return bool(value)
    return value


def _numeric(value: Any, _: NormalizationRule) -> Any:
    if not isinstance(value, str):
        return value
    try:
        return float(value) if "." in value else int(value)
    except ValueError:
        return value


def _lowercase(value: Any, _: NormalizationRule) -> Any:
    return value.lower() if isinstance(value, str) else value


def _dns_name(value: Any, _: NormalizationRule) -> Any:
    return value.lower().rstrip(".") if isinstance(value, str) else value


def _unordered(value: Any, _: NormalizationRule) -> Any:
    if isinstance(value, list | tuple):
        return tuple(sorted(value, key=lambda x: json.dumps(x, sort_keys=True, default=str)))
    return value


def _default(value: Any, rule: NormalizationRule) -> Any:
    return rule.params.get("default") if value is None else value


_NORMALIZERS: dict[NormalizationType, Callable[[Any, NormalizationRule], Any]] = {
    NormalizationType.EMPTY_EQUIVALENCE: _empty,
    NormalizationType.BOOLEAN_NORMALIZE: _boolean,
    NormalizationType.NUMERIC_STRING: _numeric,
    NormalizationType.CASE_INSENSITIVE: _lowercase,
    NormalizationType.DNS_NAME: _dns_name,
    NormalizationType.ARRAY_UNORDERED: _unordered,
    NormalizationType.DEFAULT_VALUE: _default,
}


def _rule(
    kind: str, path: str, normalization_type: NormalizationType, reason: str, **params: Any
) -> NormalizationRule:
    return NormalizationRule(kind, path, normalization_type, dict(params), reason)


_N = NormalizationType

DEFAULT_NORMALIZATION_RULES: list[NormalizationRule] = [
    _rule("*", "tags", _N.EMPTY_EQUIVALENCE, "Empty tags equal missing tags"),
    _rule("IngressRoute", "annotations", _N.EMPTY_EQUIVALENCE,
          "Kubernetes omits empty annotation maps"),
    _rule("IngressRoute", "tls_hosts", _N.EMPTY_EQUIVALENCE,
          "No TLS hosts equals no TLS block"),

    _rule("ALB", "subnets", _N.ARRAY_UNORDERED, "Subnet membership is a set"),
    _rule("ALB", "security_groups", _N.ARRAY_UNORDERED, "Security group membership is a set"),
    _rule("TargetGroup", "targets", _N.ARRAY_UNORDERED, "Target membership is a set"),
    _rule("DNSRecord", "values", _N.ARRAY_UNORDERED, "Resource record values are a set"),
    _rule("IngressRoute", "tls_hosts", _N.ARRAY_UNORDERED, "TLS hosts are a set"),

    _rule("*", "**.port", _N.NUMERIC_STRING, "Ports may be reported as strings"),
    _rule("*", "**.service_port", _N.NUMERIC_STRING, "Service ports may be reported as strings"),
    _rule("DNSRecord", "ttl", _N.NUMERIC_STRING, "TTL may be reported as a string"),
    _rule("WAFRule", "priority", _N.NUMERIC_STRING, "Rule priority may be reported as a string"),

    _rule("*", "protocol", _N.CASE_INSENSITIVE, "Protocols are case-insensitive"),
    _rule("ALB", "scheme", _N.CASE_INSENSITIVE, "ELBv2 echoes schemes in its own case"),
    _rule("*", "**.action", _N.CASE_INSENSITIVE, "WAF reports actions upper-cased"),
    _rule("WAFAcl", "default_action", _N.CASE_INSENSITIVE, "WAF reports actions upper-cased"),
    _rule("DNSRecord", "type", _N.CASE_INSENSITIVE, "Record types are case-insensitive"),

    _rule("DNSRecord", "name", _N.DNS_NAME,
          "Route 53 returns fully qualified names with a trailing dot"),
    _rule("IngressRoute", "host", _N.DNS_NAME, "Hostnames are case-insensitive"),

    _rule("*", "**.enabled", _N.BOOLEAN_NORMALIZE, "Flags may be reported as strings"),
    _rule("DNSRecord", "alias", _N.BOOLEAN_NORMALIZE, "Alias flag may be string or bool"),

    _rule("ALB", "ip_address_type", _N.DEFAULT_VALUE, "ALB address type defaults to ipv4",
          default="ipv4"),
    _rule("TargetGroup", "target_type", _N.DEFAULT_VALUE, "Target type defaults to instance",
          default="instance"),
]


def _same(a: Any, b: Any) -> bool:
    if isinstance(a, dict) and isinstance(b, dict):
        return a.keys() == b.keys() and all(_same(a[k], b[k]) for k in a)
    if isinstance(a, list | tuple) and isinstance(b, list | tuple):
        return len(a) == len(b) and all(_same(x, y) for x, y in zip(a, b, strict=True))
    return a == b


class DiffNormalizer:
    """Decides whether desired and observed attribute values differ semantically."""

    def __init__(
        self,
        rules: list[NormalizationRule] | None = None,
        enable_default_rules: bool = True,
    ) -> None:
        self._rules = [*(DEFAULT_NORMALIZATION_RULES if enable_default_rules else ()),
                       *(rules or ())]

    def normalize_value(self, value: Any, kind: str, path: str) -> Any:
        """Normalize ``value`` found at ``path``, descending into maps and lists first."""
        if isinstance(value, Mapping):
            value = {
                k: self.normalize_value(v, kind, f"{path}.{k}" if path else str(k))
                for k, v in value.items()
            }
        elif isinstance(value, list | tuple):
            value = [self.normalize_value(v, kind, path) for v in value]

        for rule in self._rules:
            if rule.matches(kind, path):
                value = _NORMALIZERS[rule.normalization_type](value, rule)
        return value

    def are_equivalent(self, desired: Any, observed: Any, kind: str, path: str) -> bool:
        return _same(
            self.normalize_value(desired, kind, path),
            self.normalize_value(observed, kind, path),
        )

    def changed_attributes(
        self,
        kind: str,
        desired: Mapping[str, Any],
        observed: Mapping[str, Any],
    ) -> list[str]:
        """Return the desired attribute names whose observed value differs.

        Keys present only in ``observed`` (ARNs, DNS names, lock tokens) are
        backend-computed and never count as drift.
        """
        changed = sorted(
            key
            for key in desired
            if not self.are_equivalent(desired[key], observed.get(key), kind, key)
        )
        if changed:
            logger.debug(
                "Attribute drift detected",
                extra={"kind": kind, "changed_attributes": changed},
            )
        return changed
