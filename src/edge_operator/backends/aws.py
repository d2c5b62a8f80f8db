"""AWS capability objects (boto3): ELBv2, WAFv2 and Route 53.

Each capability wraps one boto3 client. Clients are created by
build_default_registry() and injected, so tests can pass MagicMock clients.

Physical identifiers (ARNs, ids, DNS names) are returned as observed-only
attributes. The differ ignores keys that are not declared, and dependents
read them through BackendContext.dependency().
"""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from botocore.exceptions import BotoCoreError, ClientError, EndpointConnectionError

from ..errors import BackendError, BackendUnavailable, PermissionDenied, ValidationError
from ..resource_graph import Resource, ResourceKind
from .base import BackendContext

logger = logging.getLogger(__name__)

# Error codes that resolve on their own: throttling, eventual consistency, locks
TRANSIENT_ERROR_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "TooManyRequestsException",
        "RequestLimitExceeded",
        "ServiceUnavailable",
        "InternalFailure",
        "InternalError",
        "PriorRequestNotComplete",
        "ResourceInUse",
        "WAFUnavailableEntityException",
        "WAFOptimisticLockException",
        "WAFAssociatedItemException",
        "WAFInternalErrorException",
    }
)

PERMISSION_ERROR_CODES = frozenset(
    {
        "AccessDenied",
        "AccessDeniedException",
        "UnauthorizedOperation",
        "ExpiredToken",
        "ExpiredTokenException",
    }
)

NOT_FOUND_ERROR_CODES = frozenset(
    {
        "LoadBalancerNotFound",
        "TargetGroupNotFound",
        "ListenerNotFound",
        "WAFNonexistentItemException",
    }
)


def error_code(error: ClientError) -> str:
    return error.response.get("Error", {}).get("Code", "")


def translate_aws_error(kind: ResourceKind, error: Exception) -> BackendError:
    """Map a botocore exception to the operator's error taxonomy."""
    if isinstance(error, ClientError):
        code = error_code(error)
        message = error.response.get("Error", {}).get("Message", str(error))
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        detail = f"{code}: {message}"
        if code in TRANSIENT_ERROR_CODES or status >= 500:
            return BackendUnavailable(kind, detail)
        if code in PERMISSION_ERROR_CODES or status == 403:
            return PermissionDenied(kind, detail)
        return ValidationError(kind, detail)
    if isinstance(error, EndpointConnectionError):
        return BackendUnavailable(kind, str(error))
    if isinstance(error, BotoCoreError):
        # Credential resolution and similar client-side failures
        if "credential" in type(error).__name__.lower():
            return PermissionDenied(kind, str(error))
        return BackendUnavailable(kind, str(error))
    return ValidationError(kind, str(error))


@contextmanager
def aws_errors(kind: ResourceKind) -> Iterator[None]:
    """Translate botocore exceptions raised inside the block."""
    try:
        yield
    except (ClientError, BotoCoreError) as e:
        raise translate_aws_error(kind, e) from e


def is_not_found(error: ClientError) -> bool:
    return error_code(error) in NOT_FOUND_ERROR_CODES


def tags_to_list(tags: Mapping[str, str]) -> list[dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in sorted(tags.items())]


def tags_from_list(tags: list[dict[str, str]] | None) -> dict[str, str]:
    return {t["Key"]: t["Value"] for t in tags or []}


def _without_none(data: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in data.items() if v is not None}


class AwsBackend:
    """Shared plumbing for boto3-backed capabilities."""

    kind: ResourceKind

    def __init__(self, client: Any) -> None:
        self._client = client

    def _merged(self, resource: Resource, current: Mapping[str, Any]) -> dict[str, Any]:
        """Live attributes after a successful update: desired over last-known."""
        return {**dict(current), **resource.plain_attributes()}


# =============================================================================
# Elastic Load Balancing v2
# =============================================================================


class ElbTagging:
    """ELBv2 tag reconciliation shared by load balancers and target groups."""

    _client: Any

    def _read_tags(self, arn: str) -> dict[str, str]:
        descriptions = self._client.describe_tags(ResourceArns=[arn])["TagDescriptions"]
        return tags_from_list(descriptions[0].get("Tags") if descriptions else [])

    def _sync_tags(self, arn: str, desired: Mapping[str, str], current: Mapping[str, str]) -> None:
        stale = sorted(set(current) - set(desired))
        changed = {k: v for k, v in desired.items() if current.get(k) != v}
        if stale:
            self._client.remove_tags(ResourceArns=[arn], TagKeys=stale)
        if changed:
            self._client.add_tags(ResourceArns=[arn], Tags=tags_to_list(changed))


class ALBBackend(ElbTagging, AwsBackend):
    """Application Load Balancer."""

    kind = ResourceKind.ALB

    def _describe(self, name: str) -> dict[str, Any] | None:
        try:
            result = self._client.describe_load_balancers(Names=[name])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        balancers = result.get("LoadBalancers", [])
        return balancers[0] if balancers else None

    def _attributes(self, lb: Mapping[str, Any], tags: dict[str, str]) -> dict[str, Any]:
        return {
            "name": lb["LoadBalancerName"],
            "scheme": lb["Scheme"],
            "subnets": [az["SubnetId"] for az in lb.get("AvailabilityZones", [])],
            "security_groups": list(lb.get("SecurityGroups", [])),
            "ip_address_type": lb.get("IpAddressType", "ipv4"),
            "tags": tags,
            "arn": lb["LoadBalancerArn"],
            "dns_name": lb["DNSName"],
            "canonical_hosted_zone_id": lb["CanonicalHostedZoneId"],
        }

    def read(self, resource: Resource, ctx: BackendContext) -> dict[str, Any] | None:
        with aws_errors(self.kind):
            lb = self._describe(resource.attributes["name"])
            if lb is None:
                return None
            return self._attributes(lb, self._read_tags(lb["LoadBalancerArn"]))

    def create(self, resource: Resource, ctx: BackendContext) -> dict[str, Any]:
        attrs = resource.plain_attributes()
        request: dict[str, Any] = {
            "Name": attrs["name"],
            "Subnets": attrs["subnets"],
            "Scheme": attrs.get("scheme", "internet-facing"),
            "Type": "application",
            "IpAddressType": attrs.get("ip_address_type", "ipv4"),
        }
        if attrs.get("security_groups"):
            request["SecurityGroups"] = attrs["security_groups"]
        if attrs.get("tags"):
            request["Tags"] = tags_to_list(attrs["tags"])

        with aws_errors(self.kind):
            lb = self._client.create_load_balancer(**request)["LoadBalancers"][0]
        logger.info(
            "Created load balancer",
            extra={"resource_id": resource.id, "arn": lb["LoadBalancerArn"]},
        )
        return self._attributes(lb, attrs.get("tags", {}))

    def update(
        self, resource: Resource, current: Mapping[str, Any], ctx: BackendContext
    ) -> dict[str, Any]:
        attrs = resource.plain_attributes()
        arn = current["arn"]
        with aws_errors(self.kind):
            if set(attrs["subnets"]) != set(current.get("subnets", [])):
                self._client.set_subnets(LoadBalancerArn=arn, Subnets=attrs["subnets"])
            desired_groups = attrs.get("security_groups", [])
            if desired_groups and set(desired_groups) != set(current.get("security_groups", [])):
                self._client.set_security_groups(
                    LoadBalancerArn=arn, SecurityGroups=desired_groups
                )
            ip_address_type = attrs.get("ip_address_type", "ipv4")
            if ip_address_type != current.get("ip_address_type", "ipv4"):
                self._client.set_ip_address_type(
                    LoadBalancerArn=arn, IpAddressType=ip_address_type
                )
            self._sync_tags(arn, attrs.get("tags", {}), current.get("tags", {}))
        return self._merged(resource, current)

    def delete(self, resource: Resource, ctx: BackendContext) -> None:
        with aws_errors(self.kind):
            arn = resource.attributes.get("arn")
            if arn is None:
                lb = self._describe(resource.attributes["name"])
                if lb is None:
                    return
                arn = lb["LoadBalancerArn"]
            try:
                self._client.delete_load_balancer(LoadBalancerArn=arn)
            except ClientError as e:
                if not is_not_found(e):
                    raise


class TargetGroupBackend(ElbTagging, AwsBackend):
    """Target group including target registration."""

    kind = ResourceKind.TARGET_GROUP

    def _describe(self, name: str) -> dict[str, Any] | None:
        try:
            result = self._client.describe_target_groups(Names=[name])
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        groups = result.get("TargetGroups", [])
        return groups[0] if groups else None

    def _registered_targets(self, arn: str) -> list[str]:
        descriptions = self._client.describe_target_health(TargetGroupArn=arn)
        return sorted(
            d["Target"]["Id"]
            for d in descriptions.get("TargetHealthDescriptions", [])
            if d.get("TargetHealth", {}).get("State") != "draining"
        )

    def read(self, resource: Resource, ctx: BackendContext) -> dict[str, Any] | None:
        with aws_errors(self.kind):
            tg = self._describe(resource.attributes["name"])
            if tg is None:
                return None
            arn = tg["TargetGroupArn"]
            return {
                "name": tg["TargetGroupName"],
                "protocol": tg["Protocol"],
                "port": tg["Port"],
                "vpc_id": tg["VpcId"],
                "target_type": tg.get("TargetType", "instance"),
                "health_check_path": tg.get("HealthCheckPath", "/"),
                "targets": self._registered_targets(arn),
                "tags": self._read_tags(arn),
                "arn": arn,
            }

    def create(self, resource: Resource, ctx: BackendContext) -> dict[str, Any]:
        attrs = resource.plain_attributes()
        request: dict[str, Any] = {
            "Name": attrs["name"],
            "Protocol": attrs["protocol"],
            "Port": attrs["port"],
            "VpcId": attrs["vpc_id"],
            "TargetType": attrs.get("target_type", "instance"),
            "HealthCheckPath": attrs.get("health_check_path", "/"),
        }
        if attrs.get("tags"):
            request["Tags"] = tags_to_list(attrs["tags"])

        with aws_errors(self.kind):
            tg = self._client.create_target_group(**request)["TargetGroups"][0]
            arn = tg["TargetGroupArn"]
            if attrs.get("targets"):
                self._client.register_targets(
                    TargetGroupArn=arn, Targets=[{"Id": t} for t in attrs["targets"]]
                )
        return {**attrs, "arn": arn}

    def update(
        self, resource: Resource, current: Mapping[str, Any], ctx: BackendContext
    ) -> dict[str, Any]:
        attrs = resource.plain_attributes()
        arn = current["arn"]
        desired_targets = set(attrs.get("targets", []))
        current_targets = set(current.get("targets", []))

        with aws_errors(self.kind):
            health_check_path = attrs.get("health_check_path", "/")
            if health_check_path != current.get("health_check_path"):
                self._client.modify_target_group(
                    TargetGroupArn=arn, HealthCheckPath=health_check_path
                )
            if desired_targets - current_targets:
                self._client.register_targets(
                    TargetGroupArn=arn,
                    Targets=[{"Id": t} for t in sorted(desired_targets - current_targets)],
                )
            if current_targets - desired_targets:
                self._client.deregister_targets(
                    TargetGroupArn=arn,
                    Targets=[{"Id": t} for t in sorted(current_targets - desired_targets)],
                )
            self._sync_tags(arn, attrs.get("tags", {}), current.get("tags", {}))
        return self._merged(resource, current)

    def delete(self, resource: Resource, ctx: BackendContext) -> None:
        with aws_errors(self.kind):
            arn = resource.attributes.get("arn")
            if arn is None:
                tg = self._describe(resource.attributes["name"])
                if tg is None:
                    return
                arn = tg["TargetGroupArn"]
            try:
                self._client.delete_target_group(TargetGroupArn=arn)
            except ClientError as e:
                if not is_not_found(e):
                    raise


class ListenerBackend(AwsBackend):
    """Listener on the ALB dependency, forwarding to the TargetGroup dependency."""

    kind = ResourceKind.LISTENER

    def _attributes(self, listener: Mapping[str, Any]) -> dict[str, Any]:
        certificates = listener.get("Certificates") or []
        forward = [
            a for a in listener.get("DefaultActions", []) if a.get("Type") == "forward"
        ]
        return _without_none(
            {
                "port": listener["Port"],
                "protocol": listener["Protocol"],
                "certificate_arn": certificates[0]["CertificateArn"] if certificates else None,
                "ssl_policy": listener.get("SslPolicy"),
                "arn": listener["ListenerArn"],
                "load_balancer_arn": listener["LoadBalancerArn"],
                "target_group_arn": forward[0].get("TargetGroupArn") if forward else None,
            }
        )

    def _request(self, resource: Resource, ctx: BackendContext) -> dict[str, Any]:
        attrs = resource.plain_attributes()
        target_group = ctx.require(ResourceKind.TARGET_GROUP)
        request: dict[str, Any] = {
            "Port": attrs["port"],
            "Protocol": attrs["protocol"],
            "DefaultActions": [{"Type": "forward", "TargetGroupArn": target_group["arn"]}],
        }
        if attrs.get("certificate_arn"):
            request["Certificates"] = [{"CertificateArn": attrs["certificate_arn"]}]
        if attrs.get("ssl_policy"):
            request["SslPolicy"] = attrs["ssl_policy"]
        return request

    def read(self, resource: Resource, ctx: BackendContext) -> dict[str, Any] | None:
        alb = ctx.dependency(ResourceKind.ALB)
        with aws_errors(self.kind):
            known_arn = ctx.prior.get("arn")
            if known_arn:
                try:
                    listeners = self._client.describe_listeners(ListenerArns=[known_arn])
                    return self._attributes(listeners["Listeners"][0])
                except ClientError as e:
                    if not is_not_found(e):
                        raise
            if alb is None:
                return None
            try:
                listeners = self._client.describe_listeners(LoadBalancerArn=alb["arn"])
            except ClientError as e:
                if is_not_found(e):
                    return None
                raise
        for listener in listeners.get("Listeners", []):
            if listener["Port"] == resource.attributes["port"]:
                return self._attributes(listener)
        return None

    def create(self, resource: Resource, ctx: BackendContext) -> dict[str, Any]:
        alb = ctx.require(ResourceKind.ALB)
        request = self._request(resource, ctx)
        with aws_errors(self.kind):
            listener = self._client.create_listener(LoadBalancerArn=alb["arn"], **request)
        return self._attributes(listener["Listeners"][0])

    def update(
        self, resource: Resource, current: Mapping[str, Any], ctx: BackendContext
    ) -> dict[str, Any]:
        alb = ctx.require(ResourceKind.ALB)
        if current.get("load_balancer_arn") != alb["arn"]:
            # Load balancer was replaced; the old listener goes away with it
            logger.info(
                "Recreating listener on replacement load balancer",
                extra={"resource_id": resource.id, "load_balancer_arn": alb["arn"]},
            )
            return self.create(resource, ctx)

        request = self._request(resource, ctx)
        with aws_errors(self.kind):
            listener = self._client.modify_listener(ListenerArn=current["arn"], **request)
        return self._attributes(listener["Listeners"][0])

    def delete(self, resource: Resource, ctx: BackendContext) -> None:
        arn = resource.attributes.get("arn")
        if arn is None:
            return
        with aws_errors(self.kind):
            try:
                self._client.delete_listener(ListenerArn=arn)
            except ClientError as e:
                if not is_not_found(e):
                    raise


# =============================================================================
# WAFv2
# =============================================================================


def _waf_action(action: str) -> dict[str, dict[str, Any]]:
    return {action.capitalize(): {}}


def _waf_action_name(action: Mapping[str, Any]) -> str:
    return next(iter(action), "").lower()


def _visibility(metric_name: str) -> dict[str, Any]:
    return {
        "SampledRequestsEnabled": True,
        "CloudWatchMetricsEnabled": True,
        "MetricName": metric_name,
    }


class WebAclLookup:
    """Finds web ACLs by name; WAFv2 addresses them by (name, scope, id)."""

    _client: Any

    def _find(self, name: str, scope: str) -> dict[str, Any] | None:
        marker: str | None = None
        while True:
            request: dict[str, Any] = {"Scope": scope, "Limit": 100}
            if marker:
                request["NextMarker"] = marker
            page = self._client.list_web_acls(**request)
            for summary in page.get("WebACLs", []):
                if summary["Name"] == name:
                    return summary
            marker = page.get("NextMarker")
            if not marker or not page.get("WebACLs"):
                return None

    def _get(self, name: str, scope: str, acl_id: str) -> tuple[dict[str, Any], str] | None:
        try:
            result = self._client.get_web_acl(Name=name, Scope=scope, Id=acl_id)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        return result["WebACL"], result["LockToken"]

    def _put_rules(
        self, acl: Mapping[str, Any], scope: str, rules: list[dict[str, Any]], lock_token: str
    ) -> None:
        """Rewrite the rule list of ``acl`` leaving everything else unchanged."""
        request: dict[str, Any] = {
            "Name": acl["Name"],
            "Scope": scope,
            "Id": acl["Id"],
            "DefaultAction": acl["DefaultAction"],
            "Rules": rules,
            "VisibilityConfig": acl["VisibilityConfig"],
            "LockToken": lock_token,
        }
        if acl.get("Description"):
            request["Description"] = acl["Description"]
        self._client.update_web_acl(**request)


class WAFAclBackend(WebAclLookup, AwsBackend):
    """WAFv2 web ACL. Rules are owned by WAFRule resources and preserved here."""

    kind = ResourceKind.WAF_ACL

    def read(self, resource: Resource, ctx: BackendContext) -> dict[str, Any] | None:
        scope = resource.attributes.get("scope", "REGIONAL")
        with aws_errors(self.kind):
            summary = self._find(resource.attributes["name"], scope)
            if summary is None:
                return None
            found = self._get(summary["Name"], scope, summary["Id"])
            if found is None:
                return None
            acl, _ = found
            tags = self._client.list_tags_for_resource(ResourceARN=acl["ARN"])
        return _without_none(
            {
                "name": acl["Name"],
                "scope": scope,
                "default_action": _waf_action_name(acl["DefaultAction"]),
                "metric_name": acl["VisibilityConfig"]["MetricName"],
                "description": acl.get("Description") or None,
                "tags": tags_from_list(tags.get("TagInfoForResource", {}).get("TagList")),
                "arn": acl["ARN"],
                "id": acl["Id"],
            }
        )

    def create(self, resource: Resource, ctx: BackendContext) -> dict[str, Any]:
        attrs = resource.plain_attributes()
        request: dict[str, Any] = {
            "Name": attrs["name"],
            "Scope": attrs["scope"],
            "DefaultAction": _waf_action(attrs["default_action"]),
            "Rules": [],
            "VisibilityConfig": _visibility(attrs["metric_name"]),
        }
        if attrs.get("description"):
            request["Description"] = attrs["description"]
        if attrs.get("tags"):
            request["Tags"] = tags_to_list(attrs["tags"])

        with aws_errors(self.kind):
            summary = self._client.create_web_acl(**request)["Summary"]
        return {**attrs, "arn": summary["ARN"], "id": summary["Id"]}

    def update(
        self, resource: Resource, current: Mapping[str, Any], ctx: BackendContext
    ) -> dict[str, Any]:
        attrs = resource.plain_attributes()
        with aws_errors(self.kind):
            found = self._get(attrs["name"], attrs["scope"], current["id"])
            if found is None:
                raise BackendUnavailable(self.kind, f"web ACL {attrs['name']} not visible yet")
            acl, lock_token = found
            request: dict[str, Any] = {
                "Name": attrs["name"],
                "Scope": attrs["scope"],
                "Id": current["id"],
                "DefaultAction": _waf_action(attrs["default_action"]),
                "Rules": acl.get("Rules", []),
                "VisibilityConfig": _visibility(attrs["metric_name"]),
                "LockToken": lock_token,
            }
            if attrs.get("description"):
                request["Description"] = attrs["description"]
            self._client.update_web_acl(**request)

            desired_tags = attrs.get("tags", {})
            current_tags = current.get("tags", {})
            stale = sorted(set(current_tags) - set(desired_tags))
            if stale:
                self._client.untag_resource(ResourceARN=current["arn"], TagKeys=stale)
            changed = {k: v for k, v in desired_tags.items() if current_tags.get(k) != v}
            if changed:
                self._client.tag_resource(ResourceARN=current["arn"], Tags=tags_to_list(changed))
        return self._merged(resource, current)

    def delete(self, resource: Resource, ctx: BackendContext) -> None:
        name = resource.attributes["name"]
        scope = resource.attributes.get("scope", "REGIONAL")
        with aws_errors(self.kind):
            acl_id = resource.attributes.get("id")
            if acl_id is None:
                summary = self._find(name, scope)
                if summary is None:
                    return
                acl_id = summary["Id"]
            found = self._get(name, scope, acl_id)
            if found is None:
                return
            _, lock_token = found
            try:
                self._client.delete_web_acl(Name=name, Scope=scope, Id=acl_id, LockToken=lock_token)
            except ClientError as e:
                if not is_not_found(e):
                    raise


class WAFRuleBackend(WebAclLookup, AwsBackend):
    """A rule inside the WAFAcl dependency."""

    kind = ResourceKind.WAF_RULE

    def _rule(self, attrs: Mapping[str, Any]) -> dict[str, Any]:
        return {
            "Name": attrs["name"],
            "Priority": attrs["priority"],
            "Statement": attrs["statement"],
            "Action": _waf_action(attrs["action"]),
            "VisibilityConfig": _visibility(attrs["metric_name"]),
        }

    def _acl_ref(self, acl: Mapping[str, Any]) -> dict[str, Any]:
        return {"acl_name": acl["name"], "acl_scope": acl["scope"], "acl_id": acl["id"]}

    def read(self, resource: Resource, ctx: BackendContext) -> dict[str, Any] | None:
        acl_attrs = ctx.dependency(ResourceKind.WAF_ACL)
        if acl_attrs is None:
            return None
        with aws_errors(self.kind):
            found = self._get(acl_attrs["name"], acl_attrs["scope"], acl_attrs["id"])
        if found is None:
            return None
        acl, _ = found
        for rule in acl.get("Rules", []):
            if rule["Name"] == resource.attributes["name"]:
                return {
                    "name": rule["Name"],
                    "priority": rule["Priority"],
                    "action": _waf_action_name(rule.get("Action", {})),
                    "statement": rule["Statement"],
                    "metric_name": rule["VisibilityConfig"]["MetricName"],
                    **self._acl_ref(acl_attrs),
                }
        return None

    def _upsert(self, resource: Resource, ctx: BackendContext) -> dict[str, Any]:
        attrs = resource.plain_attributes()
        acl_attrs = ctx.require(ResourceKind.WAF_ACL)
        with aws_errors(self.kind):
            found = self._get(acl_attrs["name"], acl_attrs["scope"], acl_attrs["id"])
            if found is None:
                raise BackendUnavailable(self.kind, f"web ACL {acl_attrs['name']} not visible yet")
            acl, lock_token = found
            rules = [r for r in acl.get("Rules", []) if r["Name"] != attrs["name"]]
            rules.append(self._rule(attrs))
            self._put_rules(acl, acl_attrs["scope"], rules, lock_token)
        return {**attrs, **self._acl_ref(acl_attrs)}

    def create(self, resource: Resource, ctx: BackendContext) -> dict[str, Any]:
        return self._upsert(resource, ctx)

    def update(
        self, resource: Resource, current: Mapping[str, Any], ctx: BackendContext
    ) -> dict[str, Any]:
        return self._upsert(resource, ctx)

    def delete(self, resource: Resource, ctx: BackendContext) -> None:
        attrs = resource.attributes
        acl_ref = ctx.dependency(ResourceKind.WAF_ACL)
        name, scope, acl_id = (
            (acl_ref["name"], acl_ref["scope"], acl_ref["id"])
            if acl_ref is not None
            else (attrs.get("acl_name"), attrs.get("acl_scope"), attrs.get("acl_id"))
        )
        if not (name and scope and acl_id):
            return
        with aws_errors(self.kind):
            found = self._get(name, scope, acl_id)
            if found is None:
                return
            acl, lock_token = found
            rules = [r for r in acl.get("Rules", []) if r["Name"] != attrs["name"]]
            if len(rules) != len(acl.get("Rules", [])):
                self._put_rules(acl, scope, rules, lock_token)


class WAFAssociationBackend(AwsBackend):
    """Association of the WAFAcl dependency with the ALB dependency."""

    kind = ResourceKind.WAF_ASSOCIATION

    def _associated_acl_arn(self, resource_arn: str) -> str | None:
        try:
            result = self._client.get_web_acl_for_resource(ResourceArn=resource_arn)
        except ClientError as e:
            if is_not_found(e):
                return None
            raise
        acl = result.get("WebACL")
        return acl["ARN"] if acl else None

    def read(self, resource: Resource, ctx: BackendContext) -> dict[str, Any] | None:
        alb = ctx.dependency(ResourceKind.ALB)
        acl = ctx.dependency(ResourceKind.WAF_ACL)
        if alb is None or acl is None:
            return None
        with aws_errors(self.kind):
            associated = self._associated_acl_arn(alb["arn"])
        # Associated with some other web ACL counts as absent
        if associated != acl["arn"]:
            return None
        return {"web_acl_arn": associated, "resource_arn": alb["arn"]}

    def create(self, resource: Resource, ctx: BackendContext) -> dict[str, Any]:
        alb = ctx.require(ResourceKind.ALB)
        acl = ctx.require(ResourceKind.WAF_ACL)
        with aws_errors(self.kind):
            self._client.associate_web_acl(WebACLArn=acl["arn"], ResourceArn=alb["arn"])
        return {"web_acl_arn": acl["arn"], "resource_arn": alb["arn"]}

    def update(
        self, resource: Resource, current: Mapping[str, Any], ctx: BackendContext
    ) -> dict[str, Any]:
        return self.create(resource, ctx)

    def delete(self, resource: Resource, ctx: BackendContext) -> None:
        resource_arn = resource.attributes.get("resource_arn")
        web_acl_arn = resource.attributes.get("web_acl_arn")
        if not resource_arn:
            return
        with aws_errors(self.kind):
            # A replacement may already have re-associated the load balancer
            if self._associated_acl_arn(resource_arn) != web_acl_arn:
                return
            try:
                self._client.disassociate_web_acl(ResourceArn=resource_arn)
            except ClientError as e:
                if not is_not_found(e):
                    raise


# =============================================================================
# Route 53
# =============================================================================


class DNSRecordBackend(AwsBackend):
    """Route 53 record set; alias records target the ALB dependency."""

    kind = ResourceKind.DNS_RECORD

    def _find(self, zone_id: str, name: str, record_type: str) -> dict[str, Any] | None:
        wanted = name.rstrip(".").lower()
        result = self._client.list_resource_record_sets(
            HostedZoneId=zone_id,
            StartRecordName=name,
            StartRecordType=record_type,
            MaxItems="1",
        )
        for record in result.get("ResourceRecordSets", []):
            if record["Name"].rstrip(".").lower() == wanted and record["Type"] == record_type:
                return record
        return None

    def _record_set(self, attrs: Mapping[str, Any], ctx: BackendContext) -> dict[str, Any]:
        record: dict[str, Any] = {"Name": attrs["name"], "Type": attrs["type"]}
        if attrs.get("alias", True):
            alb = ctx.require(ResourceKind.ALB)
            record["AliasTarget"] = {
                "HostedZoneId": alb["canonical_hosted_zone_id"],
                "DNSName": alb["dns_name"],
                "EvaluateTargetHealth": False,
            }
        else:
            record["TTL"] = attrs["ttl"]
            record["ResourceRecords"] = [{"Value": v} for v in attrs["values"]]
        return record

    def _change(self, zone_id: str, action: str, record: Mapping[str, Any]) -> None:
        self._client.change_resource_record_sets(
            HostedZoneId=zone_id,
            ChangeBatch={"Changes": [{"Action": action, "ResourceRecordSet": record}]},
        )

    def read(self, resource: Resource, ctx: BackendContext) -> dict[str, Any] | None:
        attrs = resource.attributes
        with aws_errors(self.kind):
            record = self._find(attrs["zone_id"], attrs["name"], attrs["type"])
        if record is None:
            return None
        alias_target = record.get("AliasTarget")
        observed: dict[str, Any] = {
            "zone_id": attrs["zone_id"],
            "name": record["Name"].rstrip(".").lower(),
            "type": record["Type"],
            "alias": alias_target is not None,
            "values": [r["Value"] for r in record.get("ResourceRecords", [])],
        }
        if alias_target is not None:
            observed["alias_target"] = alias_target["DNSName"].rstrip(".").lower()
        else:
            observed["ttl"] = record.get("TTL")
        return observed

    def _upsert(self, resource: Resource, ctx: BackendContext) -> dict[str, Any]:
        attrs = resource.plain_attributes()
        record = self._record_set(attrs, ctx)
        with aws_errors(self.kind):
            self._change(attrs["zone_id"], "UPSERT", record)
        observed = {**attrs}
        if "AliasTarget" in record:
            observed["alias_target"] = record["AliasTarget"]["DNSName"].rstrip(".").lower()
        return observed

    def create(self, resource: Resource, ctx: BackendContext) -> dict[str, Any]:
        return self._upsert(resource, ctx)

    def update(
        self, resource: Resource, current: Mapping[str, Any], ctx: BackendContext
    ) -> dict[str, Any]:
        return self._upsert(resource, ctx)

    def delete(self, resource: Resource, ctx: BackendContext) -> None:
        attrs = resource.attributes
        with aws_errors(self.kind):
            # Route 53 deletes only an exact match of the live record set
            record = self._find(attrs["zone_id"], attrs["name"], attrs["type"])
            if record is None:
                return
            self._change(attrs["zone_id"], "DELETE", record)
