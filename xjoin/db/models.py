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

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, Field as PydanticField
from sqlalchemy import JSON, Column
from sqlmodel import Field, SQLModel

from xjoin.naming import INDEX_PIPELINE_KIND

FINALIZER = "finalizer.xjoin.indexpipeline.cloud.redhat.com"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class VersionState(str, Enum):
    NEW = "New"
    VALID = "Valid"
    ACTIVE = "Active"
    STANDBY = "Standby"
    REMOVING = "Removing"
    REMOVED = "Removed"


class ResourceKind(str, Enum):
    VALUE_SCHEMA = "ValueSchema"
    GRAPHQL_SCHEMA = "GraphQLSchema"
    TOPIC = "KafkaTopic"
    ELASTICSEARCH_INDEX = "ElasticsearchIndex"
    ELASTICSEARCH_PIPELINE = "ElasticsearchPipeline"
    CONNECTOR = "KafkaConnector"
    CORE_DEPLOYMENT = "CoreDeployment"
    SUBGRAPH_DEPLOYMENT = "SubgraphDeployment"


class ConditionType(str, Enum):
    READY = "Ready"
    SYNCED = "Synced"
    DELETING = "Deleting"


# Pipeline definition (desired state)
class DataSourceRef(BaseModel):
    name: str
    version: str


class CustomSubgraphImage(BaseModel):
    name: str
    image: str


class ValidationPolicy(BaseModel):
    min_document_count: Optional[int] = None
    max_consumer_lag: Optional[int] = None


class ConnectionOverrides(BaseModel):
    kafka_bootstrap: Optional[str] = None
    schema_registry_protocol: Optional[str] = None
    schema_registry_hostname: Optional[str] = None
    schema_registry_port: Optional[int] = None
    elasticsearch_url: Optional[str] = None
    elasticsearch_username: Optional[str] = None
    elasticsearch_password: Optional[str] = None


class PipelineDefinition(BaseModel):
    name: str
    kind: str = INDEX_PIPELINE_KIND
    avro_schema: Union[str, dict]
    data_sources: List[DataSourceRef] = PydanticField(default_factory=list)
    custom_subgraph_images: List[CustomSubgraphImage] = PydanticField(default_factory=list)
    pause: bool = False
    validation: ValidationPolicy = PydanticField(default_factory=ValidationPolicy)
    parameters: ConnectionOverrides = PydanticField(default_factory=ConnectionOverrides)

    def spec_hash(self) -> str:
        payload = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:16]


# Observed state
class ManagedMember(BaseModel):
    kind: ResourceKind
    name: str


class Condition(BaseModel):
    type: ConditionType
    status: bool
    reason: str = ""
    message: str = ""
    last_transition_time: datetime = PydanticField(default_factory=utc_now)


class GenerationStatus(BaseModel):
    generation: str
    state: VersionState = VersionState.NEW
    spec_hash: str
    members: List[ManagedMember] = PydanticField(default_factory=list)
    failed: bool = False
    attempts: int = 0
    message: Optional[str] = None
    created_at: datetime = PydanticField(default_factory=utc_now)
    state_changed_at: datetime = PydanticField(default_factory=utc_now)

    def transition(self, state: VersionState):
        if self.state != state:
            self.state = state
            self.state_changed_at = utc_now()


class PipelineStatus(BaseModel):
    """Two-slot register {active, standby set} plus per-generation bookkeeping"""

    active_version: Optional[str] = None
    standby_versions: List[str] = PydanticField(default_factory=list)
    generations: Dict[str, GenerationStatus] = PydanticField(default_factory=dict)
    conditions: List[Condition] = PydanticField(default_factory=list)

    def in_state(self, *states: VersionState) -> List[GenerationStatus]:
        return [g for g in self.generations.values() if g.state in states]

    def in_flight(self) -> Optional[GenerationStatus]:
        """The newest generation that is still being materialized or validated"""
        candidates = self.in_state(VersionState.NEW, VersionState.VALID)
        if not candidates:
            return None
        return max(candidates, key=lambda g: int(g.generation) if g.generation.isdigit() else 0)

    def active(self) -> Optional[GenerationStatus]:
        if self.active_version is None:
            return None
        return self.generations.get(self.active_version)

    def set_condition(self, condition_type: ConditionType, status: bool, reason: str = "", message: str = ""):
        for existing in self.conditions:
            if existing.type == condition_type:
                if existing.status != status:
                    existing.last_transition_time = utc_now()
                existing.status = status
                existing.reason = reason
                existing.message = message
                return
        self.conditions.append(Condition(type=condition_type, status=status, reason=reason, message=message))

    def condition(self, condition_type: ConditionType) -> Optional[Condition]:
        for existing in self.conditions:
            if existing.type == condition_type:
                return existing
        return None


class IndexPipeline(SQLModel, table=True):
    __tablename__ = "xjoin_index_pipeline"

    name: str = Field(primary_key=True, max_length=63)
    spec: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    finalizers: list = Field(default_factory=list, sa_column=Column(JSON, nullable=False))
    status: dict = Field(default_factory=dict, sa_column=Column(JSON, nullable=False))
    resource_version: int = 1
    deletion_timestamp: Optional[datetime] = None
    gmt_created: datetime = Field(default_factory=utc_now)
    gmt_updated: datetime = Field(default_factory=utc_now)

    def definition(self) -> PipelineDefinition:
        return PipelineDefinition(name=self.name, **{k: v for k, v in self.spec.items() if k != "name"})

    def observed_status(self) -> PipelineStatus:
        return PipelineStatus.model_validate(self.status or {})

    @property
    def marked_for_deletion(self) -> bool:
        return self.deletion_timestamp is not None
