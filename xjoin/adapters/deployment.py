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


import logging
from typing import Any, Dict, List

from xjoin.adapters.base import BaseAdapter, HealthStatus, ReconcileOutcome, reconcile_kube_object
from xjoin.clients.kube import DEPLOYMENTS, KubeClient
from xjoin.db.models import ResourceKind
from xjoin.naming import deployment_labels

logger = logging.getLogger(__name__)

WEB_PORT = 8000


def _env(pairs: List[tuple]) -> List[dict]:
    """The API server drops empty values, so they are never sent"""
    env = []
    for key, value in pairs:
        if value is None or value == "":
            env.append({"name": key})
        else:
            env.append({"name": key, "value": str(value)})
    return env


def core_env(desired: Dict[str, Any]) -> List[dict]:
    return _env(
        [
            ("SOURCE_TOPICS", ",".join(desired["source_topics"])),
            ("SINK_TOPIC", desired["sink_topic"]),
            ("SCHEMA_REGISTRY_URL", desired["schema_registry_url"]),
            ("KAFKA_BOOTSTRAP", desired["kafka_bootstrap"]),
            ("SINK_SCHEMA", desired["sink_schema"]),
        ]
    )


def subgraph_env(desired: Dict[str, Any]) -> List[dict]:
    return _env(
        [
            ("AVRO_SCHEMA", desired["avro_schema"]),
            ("SCHEMA_REGISTRY_PROTOCOL", desired["schema_registry_protocol"]),
            ("SCHEMA_REGISTRY_HOSTNAME", desired["schema_registry_hostname"]),
            ("SCHEMA_REGISTRY_PORT", desired["schema_registry_port"]),
            ("ELASTIC_SEARCH_URL", desired["elasticsearch_url"]),
            ("ELASTIC_SEARCH_USERNAME", desired["elasticsearch_username"]),
            ("ELASTIC_SEARCH_PASSWORD", desired["elasticsearch_password"]),
            ("ELASTIC_SEARCH_INDEX", desired["elasticsearch_index"]),
            ("GRAPHQL_SCHEMA_NAME", desired["graphql_schema_name"]),
        ]
    )


def deployment_body(name: str, generation: str, container: dict) -> dict:
    labels = deployment_labels(name, generation)
    return {
        "apiVersion": DEPLOYMENTS.api_version,
        "kind": DEPLOYMENTS.kind,
        "metadata": {"name": name, "labels": labels},
        "spec": {
            "replicas": 1,
            "selector": {"matchLabels": labels},
            "strategy": {
                "type": "RollingUpdate",
                "rollingUpdate": {"maxUnavailable": "25%", "maxSurge": "25%"},
            },
            "revisionHistoryLimit": 10,
            "progressDeadlineSeconds": 600,
            "template": {
                "metadata": {"labels": labels},
                "spec": {"containers": [container]},
            },
        },
    }


class DeploymentAdapter(BaseAdapter):
    """
    Core and API-subgraph Deployments.

    Every desired spec carries the generation (for labels) and the image.
    Core specs add source_topics, sink_topic, sink_schema, schema_registry_url
    and kafka_bootstrap; subgraph specs add the avro schema, the registry
    connection triple, the elasticsearch connection and index, and the
    GraphQL schema name the subgraph presents.
    """

    backend = "kubernetes"
    kinds = frozenset({ResourceKind.CORE_DEPLOYMENT, ResourceKind.SUBGRAPH_DEPLOYMENT})

    def __init__(self, kube: KubeClient):
        self.kube = kube

    def body(self, kind: ResourceKind, name: str, desired: Dict[str, Any]) -> dict:
        if kind == ResourceKind.CORE_DEPLOYMENT:
            container = {"name": name, "image": desired["image"], "env": core_env(desired)}
        else:
            container = {
                "name": name,
                "image": desired["image"],
                "env": subgraph_env(desired),
                "ports": [{"name": "web", "containerPort": WEB_PORT, "protocol": "TCP"}],
            }
        return deployment_body(name, desired["generation"], container)

    def reconcile(self, kind: ResourceKind, name: str, desired: Dict[str, Any]) -> ReconcileOutcome:
        self._check_kind(kind)
        outcome = reconcile_kube_object(self.kube, DEPLOYMENTS, self.body(kind, name, desired))
        logger.info(f"{kind.value} {name}: {outcome.value}")
        return outcome

    def delete(self, kind: ResourceKind, name: str) -> bool:
        self._check_kind(kind)
        return self.kube.delete(DEPLOYMENTS, name)

    def read_health(self, kind: ResourceKind, name: str) -> HealthStatus:
        self._check_kind(kind)
        deployment = self.kube.get(DEPLOYMENTS, name)
        if deployment is None:
            return HealthStatus.unhealthy("not found")

        status = deployment.get("status", {})
        if status.get("observedGeneration", 0) < deployment.get("metadata", {}).get("generation", 0):
            return HealthStatus.unhealthy("rollout not observed yet")
        wanted = deployment.get("spec", {}).get("replicas", 1)
        if status.get("availableReplicas", 0) < wanted:
            return HealthStatus.unhealthy(f"{status.get('availableReplicas', 0)}/{wanted} replicas available")
        return HealthStatus.ok()
