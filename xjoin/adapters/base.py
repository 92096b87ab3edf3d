# Copyright 2025 ApeCloud, Inc.
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import copy
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

from xjoin.db.models import ResourceKind

logger = logging.getLogger(__name__)


class ReconcileOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


@dataclass
class HealthStatus:
    healthy: bool
    message: str = ""

    @classmethod
    def ok(cls) -> "HealthStatus":
        return cls(True)

    @classmethod
    def unhealthy(cls, message: str) -> "HealthStatus":
        return cls(False, message)


@dataclass(frozen=True)
class ConnectionParameters:
    """Connection settings for one pipeline, Settings merged with the definition's overrides"""

    namespace: str
    kafka_bootstrap: str
    schema_registry_protocol: str
    schema_registry_hostname: str
    schema_registry_port: int
    elasticsearch_url: str
    elasticsearch_username: str
    elasticsearch_password: str

    @property
    def schema_registry_url(self) -> str:
        return (
            f"{self.schema_registry_protocol}://{self.schema_registry_hostname}:"
            f"{self.schema_registry_port}/apis/registry/v2"
        )

    @classmethod
    def resolve(cls, settings, overrides=None) -> "ConnectionParameters":
        values = {
            "namespace": settings.namespace,
            "kafka_bootstrap": settings.kafka_bootstrap,
            "schema_registry_protocol": settings.schema_registry_protocol,
            "schema_registry_hostname": settings.schema_registry_hostname,
            "schema_registry_port": settings.schema_registry_port,
            "elasticsearch_url": settings.elasticsearch_url,
            "elasticsearch_username": settings.elasticsearch_username,
            "elasticsearch_password": settings.elasticsearch_password,
        }
        if overrides is not None:
            for key, value in overrides.model_dump(exclude_none=True).items():
                values[key] = value
        return cls(**values)


def is_subset(desired: Any, actual: Any) -> bool:
    """
    True when every field present in desired has the same value in actual.

    Fields the backend adds (defaults, status, bookkeeping) are ignored so a
    server-defaulted object never looks drifted.
    """
    if isinstance(desired, dict):
        if not isinstance(actual, dict):
            return False
        return all(key in actual and is_subset(value, actual[key]) for key, value in desired.items())
    if isinstance(desired, list):
        if not isinstance(actual, list) or len(desired) != len(actual):
            return False
        return all(is_subset(d, a) for d, a in zip(desired, actual))
    return desired == actual


def merge_owned(actual: dict, desired: dict) -> dict:
    """Overwrite the owned fields of actual with desired, keeping everything else"""
    merged = copy.deepcopy(actual)
    for key, value in desired.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_owned(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class BaseAdapter(ABC):
    """
    Uniform capability over one backend system.

    reconcile: create if absent, otherwise diff owned fields and patch.
    delete: idempotent, absence is success.
    read_health: observed health of one named resource.
    """

    backend: str = ""
    kinds: FrozenSet[ResourceKind] = frozenset()

    def _check_kind(self, kind: ResourceKind):
        if kind not in self.kinds:
            raise ValueError(f"{self.__class__.__name__} does not manage {kind.value}")

    @abstractmethod
    def reconcile(self, kind: ResourceKind, name: str, desired: Dict[str, Any]) -> ReconcileOutcome:
        pass

    @abstractmethod
    def delete(self, kind: ResourceKind, name: str) -> bool:
        """Returns False when the resource was already absent"""
        pass

    @abstractmethod
    def read_health(self, kind: ResourceKind, name: str) -> HealthStatus:
        pass


def ready_condition(obj: Optional[dict]) -> HealthStatus:
    """Health of a Kubernetes object reporting a Ready condition"""
    if obj is None:
        return HealthStatus.unhealthy("not found")
    for condition in obj.get("status", {}).get("conditions", []) or []:
        if condition.get("type") == "Ready":
            if condition.get("status") == "True":
                return HealthStatus.ok()
            return HealthStatus.unhealthy(condition.get("message") or condition.get("reason") or "not ready")
    return HealthStatus.unhealthy("no Ready condition reported yet")


def owned_fields(body: dict) -> dict:
    """metadata.labels and spec are owned by the controller, everything else is not"""
    owned = {"spec": body.get("spec", {})}
    labels = body.get("metadata", {}).get("labels")
    if labels:
        owned["metadata"] = {"labels": labels}
    return owned


def reconcile_kube_object(kube, resource, body: dict) -> ReconcileOutcome:
    """Create-if-absent, else patch owned fields through a full replace"""
    name = body["metadata"]["name"]
    actual = kube.get(resource, name)
    if actual is None:
        kube.create(resource, body)
        return ReconcileOutcome.CREATED

    owned = owned_fields(body)
    if is_subset(owned, actual):
        logger.debug(f"{resource.kind} {name} is up to date")
        return ReconcileOutcome.UNCHANGED

    kube.replace(resource, name, merge_owned(actual, owned))
    return ReconcileOutcome.UPDATED


class AdapterRegistry:
    """Routes each resource kind to the adapter that owns it"""

    def __init__(self, adapters, clients=()):
        self._clients = list(clients)
        self._by_kind: Dict[ResourceKind, BaseAdapter] = {}
        for adapter in adapters:
            for kind in adapter.kinds:
                if kind in self._by_kind:
                    raise ValueError(f"Two adapters claim {kind.value}")
                self._by_kind[kind] = adapter

    def for_kind(self, kind: ResourceKind) -> BaseAdapter:
        adapter = self._by_kind.get(kind)
        if adapter is None:
            raise ValueError(f"No adapter registered for {kind.value}")
        return adapter

    def close(self):
        """Close the HTTP connection pools shared by the adapters"""
        for client in self._clients:
            client.close()
