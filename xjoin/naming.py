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

"""
Deterministic resource names for one generation of a pipeline.

Primary artifacts (topic, connector, schemas, index, ingest pipeline) are named
``<prefix>.<pipeline>[-<subgraph>].<generation>``. Deployment names replace the
dots with dashes, and the core deployment carries an ``xjoin-core-`` tag.
"""

import re
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, List, Optional, Set

INDEX_PIPELINE_KIND = "XJoinIndexPipeline"
DATASOURCE_PIPELINE_KIND = "XJoinDataSourcePipeline"

KIND_PREFIXES = {
    INDEX_PIPELINE_KIND: "xjoinindexpipeline",
    DATASOURCE_PIPELINE_KIND: "xjoindatasourcepipeline",
}

CORE_TAG = "xjoin-core"
APP_LABEL = "app"
INDEX_LABEL = "xjoin.index"

_DNS_LABEL = re.compile(r"^[a-z0-9]([-a-z0-9]*[a-z0-9])?$")
_GENERATION = re.compile(r"^[a-z0-9]+$")
MAX_KUBE_NAME = 63


def _check_dns_label(value: str, what: str):
    if not value or len(value) > MAX_KUBE_NAME or not _DNS_LABEL.match(value):
        raise ValueError(f"Invalid {what} '{value}': must be a lowercase DNS-1123 label")


def _check_generation(generation: str):
    if not generation or not _GENERATION.match(generation):
        raise ValueError(f"Invalid generation '{generation}': must be lowercase alphanumeric")


def deployment_labels(deployment_name: str, generation: str) -> Dict[str, str]:
    """app label is unique per generation, xjoin.index is stable across generations"""
    suffix = f"-{generation}"
    group = deployment_name[: -len(suffix)] if deployment_name.endswith(suffix) else deployment_name
    return {APP_LABEL: deployment_name, INDEX_LABEL: group}


@dataclass(frozen=True)
class NameSet:
    kind: str
    pipeline_name: str
    generation: str
    prefix: str
    subgraph_ids: tuple = ()

    @property
    def base(self) -> str:
        return f"{self.prefix}.{self.pipeline_name}.{self.generation}"

    @property
    def topic(self) -> str:
        return self.base

    @property
    def connector(self) -> str:
        return self.base

    @property
    def value_schema(self) -> str:
        return self.base

    @property
    def value_subject(self) -> str:
        return f"{self.base}-value"

    @property
    def graphql_schema(self) -> str:
        return self.base

    @property
    def es_index(self) -> str:
        return self.base

    @property
    def es_pipeline(self) -> str:
        return self.base

    @property
    def core_deployment(self) -> str:
        return f"{CORE_TAG}-{self.prefix}-{self.pipeline_name}-{self.generation}"

    @property
    def subgraph_deployment(self) -> str:
        return f"{self.prefix}-{self.pipeline_name}-{self.generation}"

    def custom_graphql_schema(self, subgraph_id: str) -> str:
        return f"{self.prefix}.{self.pipeline_name}-{subgraph_id}.{self.generation}"

    def custom_subgraph_deployment(self, subgraph_id: str) -> str:
        return f"{self.prefix}-{self.pipeline_name}-{subgraph_id}-{self.generation}"

    @property
    def custom_graphql_schemas(self) -> Dict[str, str]:
        return {sid: self.custom_graphql_schema(sid) for sid in self.subgraph_ids}

    @property
    def custom_subgraph_deployments(self) -> Dict[str, str]:
        return {sid: self.custom_subgraph_deployment(sid) for sid in self.subgraph_ids}

    def deployments(self) -> List[str]:
        return [self.core_deployment, self.subgraph_deployment, *self.custom_subgraph_deployments.values()]

    def labels(self, deployment_name: str) -> Dict[str, str]:
        return deployment_labels(deployment_name, self.generation)

    def all_names(self) -> Set[str]:
        names = {
            self.topic,
            self.value_subject,
            self.core_deployment,
            self.subgraph_deployment,
        }
        names.update(self.custom_graphql_schemas.values())
        names.update(self.custom_subgraph_deployments.values())
        return names


def derive_names(
    pipeline_kind: str, pipeline_name: str, generation: str, subgraph_ids: Optional[Iterable[str]] = None
) -> NameSet:
    """
    Derive every backend name for one generation

    Args:
        pipeline_kind: XJoinIndexPipeline or XJoinDataSourcePipeline
        pipeline_name: DNS-1123 label of the pipeline
        generation: lowercase alphanumeric generation token
        subgraph_ids: identifiers of the custom subgraph images

    Returns:
        NameSet: names for topic, connector, schemas, index, pipeline and deployments
    """
    prefix = KIND_PREFIXES.get(pipeline_kind)
    if prefix is None:
        raise ValueError(f"Unknown pipeline kind: {pipeline_kind}")
    _check_dns_label(pipeline_name, "pipeline name")
    _check_generation(generation)

    ids: List[str] = []
    for subgraph_id in subgraph_ids or []:
        _check_dns_label(subgraph_id, "subgraph id")
        if subgraph_id in ids:
            raise ValueError(f"Duplicate subgraph id: {subgraph_id}")
        ids.append(subgraph_id)

    names = NameSet(
        kind=pipeline_kind,
        pipeline_name=pipeline_name,
        generation=generation,
        prefix=prefix,
        subgraph_ids=tuple(ids),
    )
    # deployment names double as container names and app label values
    for deployment in names.deployments():
        if len(deployment) > MAX_KUBE_NAME:
            raise ValueError(
                f"Deployment name '{deployment}' exceeds {MAX_KUBE_NAME} characters, shorten the pipeline name"
            )
    return names


def datasource_topic(datasource_name: str, version: str) -> str:
    return f"{KIND_PREFIXES[DATASOURCE_PIPELINE_KIND]}.{datasource_name}.{version}"


def datasource_subject(datasource_name: str, version: str) -> str:
    return f"{datasource_topic(datasource_name, version)}-value"


def _epoch_seconds() -> int:
    return int(time.time())


@dataclass
class GenerationMinter:
    """
    Mints generation tokens strictly greater than any token already used.

    Tokens are epoch seconds, bumped past the newest existing token when two
    generations are minted within the same second.
    """

    clock: Callable[[], int] = field(default=_epoch_seconds)

    def mint(self, existing: Iterable[str] = ()) -> str:
        candidate = int(self.clock())
        for generation in existing:
            if generation.isdigit() and int(generation) >= candidate:
                candidate = int(generation) + 1
        return str(candidate)
