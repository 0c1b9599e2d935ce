from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

MANAGED_ANNOTATION_KEY = "service.beta.kubernetes.io/aws-load-balancer-ssl-cert"
CONTROLLER_CLASS_ANNOTATION_KEY = "easymile.com/certificate-controller.class"
DEFAULT_CONTROLLER_CLASS = "certificate-controller"


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class ControllerIdentity:
    """Who this controller instance is and what it writes.

    Attributes:
        controller_class: Value of the class annotation that marks a Service
                          as claimed by this instance.
        target_value:     Certificate ARN written to the managed annotation
                          of every claimed Service.
    """

    controller_class: str
    target_value: str


@dataclass(frozen=True)
class ControllerSettings:
    resync_period_seconds: int = 2
    write_retry_limit: int = 5
    health_port: int = 8080


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None:
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ValueError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ValueError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ValueError(f"{name} must be <= {maximum}, got: {value}")
    return value


def load_identity(env: Mapping[str, str] | None = None) -> ControllerIdentity:
    """Load the controller identity from the environment.

    ``CERTIFICATE_ARN`` is required; there is no sensible default for the
    certificate a load balancer should terminate TLS with.
    ``CONTROLLER_CLASS`` falls back to ``certificate-controller``.
    """
    values = env if env is not None else os.environ

    target_value = values.get("CERTIFICATE_ARN", "").strip()
    if not target_value:
        raise ConfigError(
            "Undefined certificate ARN. Please set environment variable CERTIFICATE_ARN"
        )

    controller_class = values.get("CONTROLLER_CLASS", "").strip() or DEFAULT_CONTROLLER_CLASS
    return ControllerIdentity(controller_class=controller_class, target_value=target_value)


def load_settings(env: Mapping[str, str] | None = None) -> ControllerSettings:
    return ControllerSettings(
        resync_period_seconds=env_int("RESYNC_PERIOD_SECONDS", 2, minimum=1, env=env),
        write_retry_limit=env_int("WRITE_RETRY_LIMIT", 5, minimum=0, env=env),
        health_port=env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535, env=env),
    )
