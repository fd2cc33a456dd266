"""Deployment backend interfaces and the HTTP director client."""

from ondemand_broker.broker.backend.base import (
    AdapterError,
    AdapterErrorKind,
    BackendError,
    BackendErrorKind,
    DeploymentBackend,
    InstanceCounter,
    SecretManager,
    ServiceAdapter,
)
from ondemand_broker.broker.backend.director_client import DirectorClient

__all__ = [
    "AdapterError",
    "AdapterErrorKind",
    "BackendError",
    "BackendErrorKind",
    "DeploymentBackend",
    "DirectorClient",
    "InstanceCounter",
    "SecretManager",
    "ServiceAdapter",
]
