"""Backend capabilities and the default registry wiring."""

from __future__ import annotations

import logging

import boto3
from botocore.config import Config as BotoConfig
from kubernetes import client
from kubernetes import config as kube_config

from ..config import Config, ConfigurationError
from .aws import (
    ALBBackend,
    DNSRecordBackend,
    ListenerBackend,
    TargetGroupBackend,
    WAFAclBackend,
    WAFAssociationBackend,
    WAFRuleBackend,
)
from .base import BackendContext, BackendRegistry, BlockingCallRunner, ResourceBackend
from .kubernetes import IngressRouteBackend

logger = logging.getLogger(__name__)

__all__ = [
    "BackendContext",
    "BackendRegistry",
    "BlockingCallRunner",
    "ResourceBackend",
    "build_default_registry",
]

# SDK-level retries stay small; the executor owns retry policy
BOTO_CLIENT_CONFIG = BotoConfig(retries={"max_attempts": 2, "mode": "standard"})


def _kubernetes_api(config: Config) -> client.NetworkingV1Api:
    try:
        if config.kube_in_cluster:
            kube_config.load_incluster_config()
        else:
            kube_config.load_kube_config(context=config.kube_context)
    except kube_config.ConfigException as e:
        raise ConfigurationError(f"Failed to load Kubernetes configuration: {e}") from e
    return client.NetworkingV1Api()


def build_default_registry(config: Config) -> BackendRegistry:
    """Create SDK clients from the default credential chains and register every kind.

    Raises:
        ConfigurationError: If the Kubernetes configuration cannot be loaded.
    """
    session = boto3.Session(profile_name=config.aws_profile, region_name=config.aws_region)
    elbv2 = session.client("elbv2", config=BOTO_CLIENT_CONFIG)
    wafv2 = session.client("wafv2", config=BOTO_CLIENT_CONFIG)
    # Route 53 is a global service
    route53 = session.client("route53", config=BOTO_CLIENT_CONFIG)

    registry = BackendRegistry(
        [
            IngressRouteBackend(_kubernetes_api(config)),
            ALBBackend(elbv2),
            TargetGroupBackend(elbv2),
            ListenerBackend(elbv2),
            WAFAclBackend(wafv2),
            WAFRuleBackend(wafv2),
            WAFAssociationBackend(wafv2),
            DNSRecordBackend(route53),
        ]
    )
    logger.info(
        "Backend registry ready",
        extra={
            "kinds": [k.value for k in registry.kinds],
            "aws_region": config.aws_region,
            "kube_in_cluster": config.kube_in_cluster,
        },
    )
    return registry
