from __future__ import annotations

import copy
import logging
from pathlib import Path
from typing import Any

import urllib3
from kubernetes import client, config
from kubernetes.client import ApiException, CoreV1Api

from cert_controller.src.reconcile import ResourceRecord

LOGGER = logging.getLogger(__name__)


def default_kubeconfig_path() -> Path:
    return Path.home() / ".kube" / "config"


def load_kube_configuration(kubeconfig_path: Path | None = None) -> None:
    """Load Kubernetes client configuration.

    Uses the kubeconfig under the user's home directory when it exists
    (local development), otherwise the in-cluster service-account
    credentials.  Raises ``ConfigException`` when neither is usable.
    """
    path = kubeconfig_path or default_kubeconfig_path()
    if path.is_file():
        config.load_kube_config(config_file=str(path))
        LOGGER.info("Using out of cluster config %s", path)
        return

    config.load_incluster_config()
    LOGGER.info("Using in cluster config")


def build_core_client() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


class AnnotationWriteError(RuntimeError):
    """Raised when the API server rejects an annotation update."""

    def __init__(
        self, namespace: str, name: str, status: int | None, reason: str | None
    ) -> None:
        super().__init__(
            f"failed to update Service {namespace}/{name}: status={status} reason={reason}"
        )
        self.namespace = namespace
        self.name = name
        self.status = status
        self.reason = reason

    @property
    def conflict(self) -> bool:
        return self.status == 409


class AnnotationWriter:
    """Persist a single annotation value on a Service.

    The write is a full-object ``replace`` carrying the ``resourceVersion``
    the cache last observed, so the API server rejects it with ``409
    Conflict`` if the Service changed in the meantime.  The cached object is
    never modified: a deep copy is sent instead.
    """

    def __init__(self, core_api: CoreV1Api) -> None:
        self.core_api = core_api

    def apply(self, record: ResourceRecord, key: str, value: str) -> Any:
        if record.raw is None:
            raise ValueError(f"Service {record.namespace}/{record.name} has no API object")

        body = copy.deepcopy(record.raw)
        if body.metadata.annotations is None:
            body.metadata.annotations = {}
        body.metadata.annotations[key] = value
        body.metadata.resource_version = record.resource_version

        try:
            return self.core_api.replace_namespaced_service(
                name=record.name,
                namespace=record.namespace,
                body=body,
            )
        except ApiException as exc:
            raise AnnotationWriteError(
                namespace=record.namespace,
                name=record.name,
                status=exc.status,
                reason=exc.reason,
            ) from exc
        except (urllib3.exceptions.HTTPError, OSError) as exc:
            raise AnnotationWriteError(
                namespace=record.namespace,
                name=record.name,
                status=None,
                reason=f"{type(exc).__name__}: {exc}",
            ) from exc
