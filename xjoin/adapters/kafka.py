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
from typing import Any, Dict

from xjoin.adapters.base import BaseAdapter, HealthStatus, ReconcileOutcome, ready_condition, reconcile_kube_object
from xjoin.clients.kube import KAFKA_CONNECTORS, KAFKA_TOPICS, KubeClient
from xjoin.db.models import ResourceKind

logger = logging.getLogger(__name__)

STRIMZI_CLUSTER_LABEL = "strimzi.io/cluster"
SINK_CONNECTOR_CLASS = "io.confluent.connect.elasticsearch.ElasticsearchSinkConnector"


class KafkaAdapter(BaseAdapter):
    """
    Strimzi KafkaTopic and KafkaConnector custom resources.

    Topic desired spec: partitions, replicas, config.
    Connector desired spec: topics, index, schema, pipeline (optional), pause,
    plus connection parameters (elasticsearch_url/username/password,
    schema_registry_url).
    """

    backend = "kafka"
    kinds = frozenset({ResourceKind.TOPIC, ResourceKind.CONNECTOR})

    def __init__(self, kube: KubeClient, kafka_cluster: str, connect_cluster: str, tasks_max: int = 1):
        self.kube = kube
        self.kafka_cluster = kafka_cluster
        self.connect_cluster = connect_cluster
        self.tasks_max = tasks_max

    def topic_body(self, name: str, desired: Dict[str, Any]) -> dict:
        return {
            "apiVersion": KAFKA_TOPICS.api_version,
            "kind": KAFKA_TOPICS.kind,
            "metadata": {"name": name, "labels": {STRIMZI_CLUSTER_LABEL: self.kafka_cluster}},
            "spec": {
                "partitions": desired.get("partitions", 1),
                "replicas": desired.get("replicas", 1),
                "config": desired.get("config", {}),
            },
        }

    def connector_body(self, name: str, desired: Dict[str, Any]) -> dict:
        config = {
            "topics": desired["topics"],
            "connection.url": desired["elasticsearch_url"],
            "connection.username": desired["elasticsearch_username"],
            "connection.password": desired["elasticsearch_password"],
            "key.ignore": "false",
            "schema.ignore": "true",
            "behavior.on.null.values": "delete",
            "transforms": "valueToKey,extractKey",
            "transforms.valueToKey.type": "org.apache.kafka.connect.transforms.ValueToKey",
            "transforms.valueToKey.fields": "id",
            "transforms.extractKey.type": "org.apache.kafka.connect.transforms.ExtractField$Key",
            "transforms.extractKey.field": "id",
            "value.converter": "io.apicurio.registry.utils.converter.AvroConverter",
            "value.converter.apicurio.registry.url": desired["schema_registry_url"],
            "value.converter.avro.schema": desired["schema"],
            "key.converter": "org.apache.kafka.connect.storage.StringConverter",
        }
        # the connector writes into the index named after the topic
        config["topic.index.map"] = f"{desired['topics']}:{desired['index']}"
        if desired.get("pipeline"):
            config["pipeline"] = desired["pipeline"]
        return {
            "apiVersion": KAFKA_CONNECTORS.api_version,
            "kind": KAFKA_CONNECTORS.kind,
            "metadata": {"name": name, "labels": {STRIMZI_CLUSTER_LABEL: self.connect_cluster}},
            "spec": {
                "class": SINK_CONNECTOR_CLASS,
                "tasksMax": self.tasks_max,
                "pause": desired.get("pause", False),
                "config": config,
            },
        }

    def reconcile(self, kind: ResourceKind, name: str, desired: Dict[str, Any]) -> ReconcileOutcome:
        self._check_kind(kind)
        if kind == ResourceKind.TOPIC:
            outcome = reconcile_kube_object(self.kube, KAFKA_TOPICS, self.topic_body(name, desired))
        else:
            outcome = reconcile_kube_object(self.kube, KAFKA_CONNECTORS, self.connector_body(name, desired))
        logger.info(f"{kind.value} {name}: {outcome.value}")
        return outcome

    def delete(self, kind: ResourceKind, name: str) -> bool:
        self._check_kind(kind)
        resource = KAFKA_TOPICS if kind == ResourceKind.TOPIC else KAFKA_CONNECTORS
        return self.kube.delete(resource, name)

    def read_health(self, kind: ResourceKind, name: str) -> HealthStatus:
        self._check_kind(kind)
        if kind == ResourceKind.TOPIC:
            return ready_condition(self.kube.get(KAFKA_TOPICS, name))

        connector = self.kube.get(KAFKA_CONNECTORS, name)
        health = ready_condition(connector)
        if not health.healthy:
            return health
        status = connector.get("status", {}).get("connectorStatus", {})
        state = status.get("connector", {}).get("state")
        if state is not None and state != "RUNNING":
            return HealthStatus.unhealthy(f"connector state is {state}")
        for task in status.get("tasks", []) or []:
            if task.get("state") != "RUNNING":
                return HealthStatus.unhealthy(f"task {task.get('id')} state is {task.get('state')}")
        return HealthStatus.ok()
