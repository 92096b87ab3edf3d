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
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from xjoin import avro
from xjoin.adapters.base import AdapterRegistry, ConnectionParameters
from xjoin.adapters.deployment import WEB_PORT
from xjoin.db.models import ManagedMember, PipelineDefinition, ResourceKind
from xjoin.exceptions import ReconcileAborted, TransientBackendError, ValidationError
from xjoin.naming import NameSet, datasource_subject, datasource_topic, derive_names

logger = logging.getLogger(__name__)


@dataclass
class PlannedMember:
    kind: ResourceKind
    name: str
    desired: Dict[str, Any]

    def member(self) -> ManagedMember:
        return ManagedMember(kind=self.kind, name=self.name)


@dataclass
class ManagedResourceSet:
    """Every backend artifact of one generation, in creation order"""

    names: NameSet
    planned: List[PlannedMember] = field(default_factory=list)

    def add(self, kind: ResourceKind, name: str, desired: Dict[str, Any]):
        self.planned.append(PlannedMember(kind, name, desired))

    def members(self) -> List[ManagedMember]:
        return [p.member() for p in self.planned]

    def of_kind(self, kind: ResourceKind) -> List[PlannedMember]:
        return [p for p in self.planned if p.kind == kind]


class GenerationSynchronizer:
    """
    Drives the adapters to materialize one generation of a pipeline.

    Creation runs in dependency order: schemas, topic, index and ingest
    pipeline, connector, then deployments. The first failing step aborts the
    pass and leaves earlier steps in place; a retry re-applies them as no-ops.
    Teardown runs the recorded member list in reverse.
    """

    def __init__(self, adapters: AdapterRegistry, settings):
        self.adapters = adapters
        self.settings = settings

    def connection(self, definition: PipelineDefinition) -> ConnectionParameters:
        return ConnectionParameters.resolve(self.settings, definition.parameters)

    def resolve_schema(self, definition: PipelineDefinition) -> dict:
        """Parse the definition's schema and inline every data source reference"""
        versions = {ds.name: ds.version for ds in definition.data_sources}
        registry = self.adapters.for_kind(ResourceKind.VALUE_SCHEMA).registry

        def fetch_reference(datasource_name: str) -> dict:
            version = versions.get(datasource_name)
            if version is None:
                raise ValidationError(f"Schema references unknown data source {datasource_name}")
            subject = datasource_subject(datasource_name, version)
            latest = registry.latest_subject_version(subject)
            if latest is None:
                # the data source pipeline may not have registered its schema yet
                raise TransientBackendError(f"Data source schema {subject} not registered", backend="schema-registry")
            return avro.parse_schema(latest["schema"])

        return avro.resolve_references(avro.parse_schema(definition.avro_schema), fetch_reference)

    def plan(self, definition: PipelineDefinition, generation: str) -> ManagedResourceSet:
        """
        Build the desired spec of every member of one generation

        Args:
            definition: the pipeline definition
            generation: the generation token

        Returns:
            ManagedResourceSet: members with their desired specs, in creation order
        """
        images = {c.name: c.image for c in definition.custom_subgraph_images}
        try:
            names = derive_names(definition.kind, definition.name, generation, list(images))
        except ValueError as e:
            raise ValidationError(str(e))
        conn = self.connection(definition)
        schema = self.resolve_schema(definition)
        serialized = avro.serialize(schema)
        with_pipeline = avro.has_json_fields(schema)
        sdl = avro.graphql_sdl(schema, definition.name)

        resources = ManagedResourceSet(names)
        resources.add(ResourceKind.VALUE_SCHEMA, names.value_schema, {"schema": serialized})
        resources.add(
            ResourceKind.GRAPHQL_SCHEMA,
            names.graphql_schema,
            {"content": sdl, "meta": self._graphql_meta(names.graphql_schema, names.subgraph_deployment)},
        )
        for sid, schema_name in names.custom_graphql_schemas.items():
            deployment = names.custom_subgraph_deployment(sid)
            resources.add(
                ResourceKind.GRAPHQL_SCHEMA,
                schema_name,
                {"content": sdl, "meta": self._graphql_meta(schema_name, deployment)},
            )

        resources.add(
            ResourceKind.TOPIC,
            names.topic,
            {
                "partitions": self.settings.topic_partitions,
                "replicas": self.settings.topic_replicas,
                "config": {"retention.ms": str(self.settings.topic_retention_ms)},
            },
        )
        resources.add(ResourceKind.ELASTICSEARCH_INDEX, names.es_index, {"mappings": avro.elasticsearch_mapping(schema)})
        if with_pipeline:
            resources.add(
                ResourceKind.ELASTICSEARCH_PIPELINE,
                names.es_pipeline,
                {
                    "description": f"Expands json fields of {definition.name}",
                    "processors": avro.ingest_pipeline_processors(schema),
                },
            )
        resources.add(
            ResourceKind.CONNECTOR,
            names.connector,
            {
                "topics": names.topic,
                "index": names.es_index,
                "schema": serialized,
                "pipeline": names.es_pipeline if with_pipeline else None,
                "pause": definition.pause,
                "elasticsearch_url": conn.elasticsearch_url,
                "elasticsearch_username": conn.elasticsearch_username,
                "elasticsearch_password": conn.elasticsearch_password,
                "schema_registry_url": conn.schema_registry_url,
            },
        )

        resources.add(
            ResourceKind.CORE_DEPLOYMENT,
            names.core_deployment,
            {
                "generation": generation,
                "image": self.settings.core_image,
                "source_topics": [datasource_topic(ds.name, ds.version) for ds in definition.data_sources],
                "sink_topic": names.topic,
                "schema_registry_url": conn.schema_registry_url,
                "kafka_bootstrap": conn.kafka_bootstrap,
                "sink_schema": serialized,
            },
        )
        subgraph = {
            "generation": generation,
            "avro_schema": serialized,
            "schema_registry_protocol": conn.schema_registry_protocol,
            "schema_registry_hostname": conn.schema_registry_hostname,
            "schema_registry_port": conn.schema_registry_port,
            "elasticsearch_url": conn.elasticsearch_url,
            "elasticsearch_username": conn.elasticsearch_username,
            "elasticsearch_password": conn.elasticsearch_password,
            "elasticsearch_index": names.es_index,
        }
        resources.add(
            ResourceKind.SUBGRAPH_DEPLOYMENT,
            names.subgraph_deployment,
            {**subgraph, "image": self.settings.api_subgraph_image, "graphql_schema_name": names.graphql_schema},
        )
        for sid, deployment in names.custom_subgraph_deployments.items():
            resources.add(
                ResourceKind.SUBGRAPH_DEPLOYMENT,
                deployment,
                {**subgraph, "image": images[sid], "graphql_schema_name": names.custom_graphql_schema(sid)},
            )
        return resources

    def _graphql_meta(self, schema_name: str, deployment: str) -> dict:
        return {
            "name": schema_name,
            "labels": ["xjoin-subgraph"],
            "properties": {"xjoin-subgraph-url": f"http://{deployment}:{WEB_PORT}/graphql"},
        }

    def materialize(
        self,
        definition: PipelineDefinition,
        generation: str,
        should_abort: Optional[Callable[[], bool]] = None,
        resources: ManagedResourceSet = None,
    ) -> ManagedResourceSet:
        """
        Reconcile every member of one generation in dependency order.

        should_abort is consulted before each step; when it returns True the
        pass stops with ReconcileAborted.
        """
        resources = resources or self.plan(definition, generation)
        for planned in resources.planned:
            if should_abort is not None and should_abort():
                raise ReconcileAborted(f"Pipeline {definition.name} deleted during materialize of {generation}")
            adapter = self.adapters.for_kind(planned.kind)
            adapter.reconcile(planned.kind, planned.name, planned.desired)
        logger.info(f"Materialized generation {generation} of pipeline {definition.name}")
        return resources

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        retry=retry_if_exception_type(TransientBackendError),
        reraise=True,
    )
    def _delete(self, member: ManagedMember) -> bool:
        return self.adapters.for_kind(member.kind).delete(member.kind, member.name)

    def teardown(self, members: List[ManagedMember]) -> int:
        """
        Delete members in reverse creation order, stopping at the first failure.
        Absent members count as deleted.

        Returns:
            int: number of members that existed and were deleted
        """
        deleted = 0
        for member in reversed(members):
            if self._delete(member):
                deleted += 1
        logger.info(f"Tore down {len(members)} members ({deleted} existed)")
        return deleted
