"""Kubernetes capability: IngressRoute as a networking.k8s.io/v1 Ingress."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from typing import Any

from kubernetes import client
from kubernetes.client.rest import ApiException
from urllib3.exceptions import HTTPError

from ..errors import BackendError, BackendUnavailable, PermissionDenied, ValidationError
from ..resource_graph import Resource, ResourceKind
from .base import BackendContext

logger = logging.getLogger(__name__)

# Annotations written by tooling rather than declared
IGNORED_ANNOTATION_PREFIXES = ("kubectl.kubernetes.io/",)

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "edge-operator"


def translate_api_error(error: ApiException) -> BackendError:
    """Map a Kubernetes API error to the operator's error taxonomy."""
    kind = ResourceKind.INGRESS_ROUTE
    detail = f"{error.status} {error.reason}"
    status = error.status or 0
    if status == 429 or status >= 500:
        return BackendUnavailable(kind, detail)
    if status in (401, 403):
        return PermissionDenied(kind, detail)
    return ValidationError(kind, detail)


@contextmanager
def kubernetes_errors() -> Iterator[None]:
    try:
        yield
    except ApiException as e:
        raise translate_api_error(e) from e
    except HTTPError as e:
        # Connection refused, TLS failures and read timeouts from the API server
        raise BackendUnavailable(ResourceKind.INGRESS_ROUTE, str(e)) from e


class IngressRouteBackend:
    """Ingress routing one host and path to a service port."""

    kind = ResourceKind.INGRESS_ROUTE

    def __init__(self, api: client.NetworkingV1Api) -> None:
        self._api = api

    def _body(self, attrs: Mapping[str, Any]) -> client.V1Ingress:
        backend = client.V1IngressBackend(
            service=client.V1IngressServiceBackend(
                name=attrs["service_name"],
                port=client.V1ServiceBackendPort(number=attrs["service_port"]),
            )
        )
        rule = client.V1IngressRule(
            host=attrs["host"],
            http=client.V1HTTPIngressRuleValue(
                paths=[
                    client.V1HTTPIngressPath(
                        path=attrs.get("path", "/"),
                        path_type=attrs.get("path_type", "Prefix"),
                        backend=backend,
                    )
                ]
            ),
        )
        tls = None
        if attrs.get("tls_hosts"):
            tls = [client.V1IngressTLS(hosts=attrs["tls_hosts"], secret_name=attrs["tls_secret"])]
        return client.V1Ingress(
            api_version="networking.k8s.io/v1",
            kind="Ingress",
            metadata=client.V1ObjectMeta(
                name=attrs["name"],
                namespace=attrs["namespace"],
                annotations=attrs.get("annotations") or None,
                labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
            ),
            spec=client.V1IngressSpec(
                ingress_class_name=attrs.get("ingress_class"),
                rules=[rule],
                tls=tls,
            ),
        )

    def _attributes(self, ingress: client.V1Ingress) -> dict[str, Any]:
        metadata = ingress.metadata
        spec = ingress.spec
        annotations = {
            k: v
            for k, v in (metadata.annotations or {}).items()
            if not k.startswith(IGNORED_ANNOTATION_PREFIXES)
        }
        observed: dict[str, Any] = {
            "name": metadata.name,
            "namespace": metadata.namespace,
            "annotations": annotations,
            "tls_hosts": [],
        }
        if spec.ingress_class_name:
            observed["ingress_class"] = spec.ingress_class_name

        rules = spec.rules or []
        if rules:
            observed["host"] = rules[0].host
            paths = rules[0].http.paths if rules[0].http else []
            if paths:
                observed["path"] = paths[0].path
                observed["path_type"] = paths[0].path_type
                service = paths[0].backend.service
                if service is not None:
                    observed["service_name"] = service.name
                    observed["service_port"] = service.port.number
        if spec.tls:
            observed["tls_hosts"] = list(spec.tls[0].hosts or [])
            if spec.tls[0].secret_name:
                observed["tls_secret"] = spec.tls[0].secret_name
        return observed

    def read(self, resource: Resource, ctx: BackendContext) -> dict[str, Any] | None:
        attrs = resource.attributes
        with kubernetes_errors():
            try:
                ingress = self._api.read_namespaced_ingress(attrs["name"], attrs["namespace"])
            except ApiException as e:
                if e.status == 404:
                    return None
                raise
        return self._attributes(ingress)

    def create(self, resource: Resource, ctx: BackendContext) -> dict[str, Any]:
        attrs = resource.plain_attributes()
        with kubernetes_errors():
            ingress = self._api.create_namespaced_ingress(attrs["namespace"], self._body(attrs))
        logger.info(
            "Created ingress",
            extra={"resource_id": resource.id, "namespace": attrs["namespace"]},
        )
        return self._attributes(ingress)

    def update(
        self, resource: Resource, current: Mapping[str, Any], ctx: BackendContext
    ) -> dict[str, Any]:
        attrs = resource.plain_attributes()
        with kubernetes_errors():
            ingress = self._api.replace_namespaced_ingress(
                attrs["name"], attrs["namespace"], self._body(attrs)
            )
        return self._attributes(ingress)

    def delete(self, resource: Resource, ctx: BackendContext) -> None:
        attrs = resource.attributes
        with kubernetes_errors():
            try:
                self._api.delete_namespaced_ingress(attrs["name"], attrs["namespace"])
            except ApiException as e:
                if e.status != 404:
                    raise
