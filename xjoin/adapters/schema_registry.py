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


import json
import logging
from typing import Any, Dict

from xjoin.adapters.base import BaseAdapter, HealthStatus, ReconcileOutcome, is_subset
from xjoin.clients.schema_registry import SchemaRegistryClient
from xjoin.db.models import ResourceKind
from xjoin.exceptions import TransientBackendError

logger = logging.getLogger(__name__)


def value_subject(name: str) -> str:
    return f"{name}-value"


def _same_schema(left: str, right: str) -> bool:
    try:
        return json.loads(left) == json.loads(right)
    except (TypeError, json.JSONDecodeError):
        return left == right


class SchemaRegistryAdapter(BaseAdapter):
    """
    Value schemas and GraphQL schema artifacts in the apicurio registry.

    Registration is check-then-write-then-confirm in both namespaces, so a
    second pass with unchanged content only reads.
    """

    backend = "schema-registry"
    kinds = frozenset({ResourceKind.VALUE_SCHEMA, ResourceKind.GRAPHQL_SCHEMA})

    def __init__(self, registry: SchemaRegistryClient):
        self.registry = registry

    def reconcile(self, kind: ResourceKind, name: str, desired: Dict[str, Any]) -> ReconcileOutcome:
        self._check_kind(kind)
        if kind == ResourceKind.VALUE_SCHEMA:
            outcome = self._reconcile_value_schema(name, desired["schema"])
        else:
            outcome = self._reconcile_graphql_schema(name, desired["content"], desired.get("meta") or {})
        logger.info(f"{kind.value} {name}: {outcome.value}")
        return outcome

    def _reconcile_value_schema(self, name: str, schema: str) -> ReconcileOutcome:
        subject = value_subject(name)
        if not self.registry.subject_exists(subject):
            self.registry.register_subject_version(subject, schema)
            if self.registry.latest_subject_version(subject) is None:
                raise TransientBackendError(f"Subject {subject} not visible after registration", backend=self.backend)
            return ReconcileOutcome.CREATED

        latest = self.registry.latest_subject_version(subject) or {}
        if _same_schema(latest.get("schema", ""), schema):
            return ReconcileOutcome.UNCHANGED
        self.registry.register_subject_version(subject, schema)
        return ReconcileOutcome.UPDATED

    def _reconcile_graphql_schema(self, name: str, content: str, meta: dict) -> ReconcileOutcome:
        versions = self.registry.artifact_versions(name)
        if versions is None:
            self.registry.create_artifact(name, content)
            if meta:
                self.registry.set_artifact_meta(name, meta)
            return ReconcileOutcome.CREATED

        outcome = ReconcileOutcome.UNCHANGED
        if self.registry.artifact_content(name) != content:
            self.registry.update_artifact(name, content)
            outcome = ReconcileOutcome.UPDATED
        if meta:
            actual_meta = self.registry.artifact_meta(name) or {}
            if not is_subset(meta, actual_meta):
                self.registry.set_artifact_meta(name, meta)
                outcome = ReconcileOutcome.UPDATED
        return outcome

    def delete(self, kind: ResourceKind, name: str) -> bool:
        self._check_kind(kind)
        if kind == ResourceKind.VALUE_SCHEMA:
            return self.registry.delete_subject(value_subject(name))
        return self.registry.delete_artifact(name)

    def read_health(self, kind: ResourceKind, name: str) -> HealthStatus:
        self._check_kind(kind)
        if kind == ResourceKind.VALUE_SCHEMA:
            if self.registry.latest_subject_version(value_subject(name)) is None:
                return HealthStatus.unhealthy(f"subject {value_subject(name)} not registered")
            return HealthStatus.ok()

        meta = self.registry.artifact_meta(name)
        if meta is None:
            return HealthStatus.unhealthy(f"artifact {name} not registered")
        if meta.get("state") not in (None, "ENABLED"):
            return HealthStatus.unhealthy(f"artifact {name} is {meta.get('state')}")
        return HealthStatus.ok()
