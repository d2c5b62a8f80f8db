"""Pydantic models for edge declarations with validation.

These models provide:
1. Type-safe YAML parsing
2. Validation at the boundary (fail fast, fail loudly)
3. Clean transformation to a ResourceGraph

A declaration file looks like:
```yaml
resources:
  - kind: ALB
    name: k8s-alb
    attributes:
      scheme: internet-facing
      subnets: [subnet-a, subnet-b]
  - kind: DNSRecord
    name: app
    attributes:
      zoneId: Z123
      name: app.example.com
    dependsOn: [k8s-alb]
```

Attribute keys accept both snake_case and camelCase. Normalized attributes are
always snake_case and omit unset optional values.
"""

from __future__ import annotations

import re
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from .errors import GraphError, UnresolvedDependency
from .resource_graph import Resource, ResourceGraph, ResourceKind, resource_id

VALID_NAME_PATTERN = r"^[A-Za-z0-9]([A-Za-z0-9._-]{0,126}[A-Za-z0-9])?$"
VALID_AWS_NAME_PATTERN = r"^[A-Za-z0-9]([A-Za-z0-9-]{0,30}[A-Za-z0-9])?$"

Port = Annotated[int, Field(ge=1, le=65535)]


class AttributesModel(BaseModel):
    """Base for per-kind attribute models."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    def normalized(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


# =============================================================================
# Kubernetes
# =============================================================================


class IngressRouteAttributes(AttributesModel):
    """A networking.k8s.io/v1 Ingress rule routing a host and path to a service."""

    name: Annotated[str, Field(min_length=1, max_length=253)]
    namespace: Annotated[str, Field(min_length=1, max_length=63)] = "default"
    ingress_class: str | None = Field(None, alias="ingressClass")
    host: Annotated[str, Field(min_length=1)]
    path: str = "/"
    path_type: Literal["Prefix", "Exact", "ImplementationSpecific"] = Field(
        "Prefix", alias="pathType"
    )
    service_name: Annotated[str, Field(min_length=1, alias="serviceName")]
    service_port: Annotated[int, Field(ge=1, le=65535, alias="servicePort")]
    annotations: dict[str, str] = Field(default_factory=dict)
    tls_hosts: list[str] = Field(default_factory=list, alias="tlsHosts")
    tls_secret: str | None = Field(None, alias="tlsSecret")

    @field_validator("path")
    @classmethod
    def validate_path(cls, v: str) -> str:
        if not v.startswith("/"):
            raise ValueError("path must start with '/'")
        return v

    @model_validator(mode="after")
    def validate_tls(self) -> IngressRouteAttributes:
        if self.tls_hosts and not self.tls_secret:
            raise ValueError("tlsSecret is required when tlsHosts is set")
        return self


# =============================================================================
# Load balancing
# =============================================================================


class ALBAttributes(AttributesModel):
    """Application Load Balancer."""

    name: Annotated[str, Field(pattern=VALID_AWS_NAME_PATTERN)]
    scheme: Literal["internet-facing", "internal"] = "internet-facing"
    subnets: Annotated[list[str], Field(min_length=2)]
    security_groups: list[str] = Field(default_factory=list, alias="securityGroups")
    ip_address_type: Literal["ipv4", "dualstack"] = Field("ipv4", alias="ipAddressType")
    tags: dict[str, str] = Field(default_factory=dict)


class TargetGroupAttributes(AttributesModel):
    """Target group and its registered targets."""

    name: Annotated[str, Field(pattern=VALID_AWS_NAME_PATTERN)]
    protocol: Literal["HTTP", "HTTPS"] = "HTTP"
    port: Port = 80
    vpc_id: Annotated[str, Field(min_length=1, alias="vpcId")]
    target_type: Literal["instance", "ip"] = Field("instance", alias="targetType")
    health_check_path: str = Field("/", alias="healthCheckPath")
    targets: list[str] = Field(default_factory=list)
    tags: dict[str, str] = Field(default_factory=dict)

    @field_validator("protocol", mode="before")
    @classmethod
    def upper_protocol(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v


class ListenerAttributes(AttributesModel):
    """Listener on the ALB dependency forwarding to the TargetGroup dependency."""

    port: Port
    protocol: Literal["HTTP", "HTTPS"] = "HTTP"
    certificate_arn: str | None = Field(None, alias="certificateArn")
    ssl_policy: str | None = Field(None, alias="sslPolicy")

    @field_validator("protocol", mode="before")
    @classmethod
    def upper_protocol(cls, v: Any) -> Any:
        return v.upper() if isinstance(v, str) else v

    @model_validator(mode="after")
    def validate_certificate(self) -> ListenerAttributes:
        if self.protocol == "HTTPS" and not self.certificate_arn:
            raise ValueError("certificateArn is required for HTTPS listeners")
        if self.protocol == "HTTP" and (self.certificate_arn or self.ssl_policy):
            raise ValueError("certificateArn and sslPolicy apply to HTTPS listeners only")
        return self


# =============================================================================
# WAF
# =============================================================================


class WAFAclAttributes(AttributesModel):
    """WAFv2 web ACL. Rules are declared as separate WAFRule resources."""

    name: Annotated[str, Field(pattern=r"^[A-Za-z0-9_-]{1,128}$")]
    scope: Literal["REGIONAL", "CLOUDFRONT"] = "REGIONAL"
    default_action: Literal["allow", "block"] = Field("allow", alias="defaultAction")
    metric_name: str | None = Field(None, alias="metricName")
    description: str | None = None
    tags: dict[str, str] = Field(default_factory=dict)

    @model_validator(mode="after")
    def default_metric_name(self) -> WAFAclAttributes:
        if self.metric_name is None:
            self.metric_name = re.sub(r"[^A-Za-z0-9]", "", self.name) or "acl"
        return self


class WAFRuleAttributes(AttributesModel):
    """A rule inside the WAFAcl dependency. The statement is passed through as-is."""

    name: Annotated[str, Field(pattern=r"^[A-Za-z0-9_-]{1,128}$")]
    priority: Annotated[int, Field(ge=0)]
    action: Literal["allow", "block", "count"] = "block"
    statement: dict[str, Any]
    metric_name: str | None = Field(None, alias="metricName")

    @model_validator(mode="after")
    def default_metric_name(self) -> WAFRuleAttributes:
        if self.metric_name is None:
            self.metric_name = re.sub(r"[^A-Za-z0-9]", "", self.name) or "rule"
        return self


class WAFAssociationAttributes(AttributesModel):
    """Binds the WAFAcl dependency to the ALB dependency. No attributes of its own."""

    pass


# =============================================================================
# DNS
# =============================================================================


class DNSRecordAttributes(AttributesModel):
    """Route 53 record; an alias record points at the ALB dependency."""

    zone_id: Annotated[str, Field(min_length=1, alias="zoneId")]
    name: Annotated[str, Field(min_length=1, max_length=253)]
    type: Literal["A", "AAAA", "CNAME", "TXT"] = "A"
    alias: bool = True
    ttl: Annotated[int, Field(ge=0, le=604800)] | None = None
    values: list[str] = Field(default_factory=list)

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v: str) -> str:
        return v.rstrip(".").lower()

    @model_validator(mode="after")
    def validate_target(self) -> DNSRecordAttributes:
        if self.alias:
            if self.values or self.ttl is not None:
                raise ValueError("alias records take neither values nor ttl")
            if self.type not in ("A", "AAAA"):
                raise ValueError("alias records must be of type A or AAAA")
        else:
            if not self.values:
                raise ValueError("values are required for non-alias records")
            if self.ttl is None:
                self.ttl = 300
        return self


ATTRIBUTE_MODELS: dict[ResourceKind, type[AttributesModel]] = {
    ResourceKind.INGRESS_ROUTE: IngressRouteAttributes,
    ResourceKind.ALB: ALBAttributes,
    ResourceKind.TARGET_GROUP: TargetGroupAttributes,
    ResourceKind.LISTENER: ListenerAttributes,
    ResourceKind.WAF_ACL: WAFAclAttributes,
    ResourceKind.WAF_RULE: WAFRuleAttributes,
    ResourceKind.WAF_ASSOCIATION: WAFAssociationAttributes,
    ResourceKind.DNS_RECORD: DNSRecordAttributes,
}


def validate_attributes(
    kind: ResourceKind, name: str, attributes: dict[str, Any]
) -> dict[str, Any]:
    """Validate raw attributes for ``kind`` and return them normalized.

    Kinds with a physical ``name`` attribute default it to the declared name.

    Raises:
        pydantic.ValidationError: If the attributes are invalid.
    """
    model = ATTRIBUTE_MODELS[kind]
    data = dict(attributes)
    if "name" in model.model_fields and "name" not in data:
        data["name"] = name
    return model.model_validate(data).normalized()


# =============================================================================
# Declarations
# =============================================================================


class ResourceDeclaration(BaseModel):
    """One declared resource."""

    model_config = {"extra": "forbid", "populate_by_name": True}

    kind: ResourceKind
    name: Annotated[str, Field(pattern=VALID_NAME_PATTERN)]
    attributes: dict[str, Any] = Field(default_factory=dict)

    # Names of resources that must exist first, or Kind/name when ambiguous
    # Example: depends_on: ["k8s-alb", "TargetGroup/web"]
    depends_on: list[str] = Field(default_factory=list, alias="dependsOn")

    @property
    def id(self) -> str:
        return resource_id(self.kind, self.name)


class EdgeSpec(BaseModel):
    """A complete declaration: the resources the operator must converge."""

    model_config = {"extra": "forbid"}

    resources: list[ResourceDeclaration] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique(self) -> EdgeSpec:
        seen: set[str] = set()
        duplicates: set[str] = set()
        for decl in self.resources:
            if decl.id in seen:
                duplicates.add(decl.id)
            seen.add(decl.id)
        if duplicates:
            raise ValueError(f"duplicate resources: {sorted(duplicates)}")
        return self

    def merge(self, other: EdgeSpec) -> EdgeSpec:
        """Combine two declarations (e.g. from separate files)."""
        return EdgeSpec(resources=[*self.resources, *other.resources])

    def to_graph(self, attributes: dict[str, dict[str, Any]] | None = None) -> ResourceGraph:
        """Build the validated ResourceGraph.

        Args:
            attributes: Normalized attributes by resource id; defaults to
                validating each declaration's raw attributes.

        Raises:
            UnresolvedDependency: If a depends_on entry matches no resource.
            GraphError: If a depends_on name is ambiguous.
            CycleDetected: If the dependencies form a cycle.
        """
        by_name: dict[str, list[str]] = {}
        for decl in self.resources:
            by_name.setdefault(decl.name, []).append(decl.id)
        ids = {decl.id for decl in self.resources}

        graph = ResourceGraph()
        for decl in self.resources:
            dependencies = {self._resolve(decl, ref, by_name, ids) for ref in decl.depends_on}
            normalized = (
                attributes[decl.id]
                if attributes is not None
                else validate_attributes(decl.kind, decl.name, decl.attributes)
            )
            graph.add(
                Resource(
                    kind=decl.kind,
                    id=decl.id,
                    attributes=normalized,
                    dependencies=frozenset(dependencies),
                )
            )

        graph.validate()
        return graph

    @staticmethod
    def _resolve(
        decl: ResourceDeclaration,
        ref: str,
        by_name: dict[str, list[str]],
        ids: set[str],
    ) -> str:
        if "/" in ref:
            if ref not in ids:
                raise UnresolvedDependency(f"Resource '{decl.id}' depends on unknown '{ref}'")
            return ref
        candidates = by_name.get(ref, [])
        if not candidates:
            raise UnresolvedDependency(f"Resource '{decl.id}' depends on unknown '{ref}'")
        if len(candidates) > 1:
            raise GraphError(
                f"Resource '{decl.id}' depends on ambiguous name '{ref}', "
                f"use one of {sorted(candidates)}"
            )
        return candidates[0]
