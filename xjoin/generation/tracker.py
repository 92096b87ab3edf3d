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
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import List, Optional

from xjoin.adapters.base import AdapterRegistry
from xjoin.db.models import GenerationStatus, ResourceKind, ValidationPolicy, VersionState

logger = logging.getLogger(__name__)


class LagProbe(ABC):
    """Reads the consumer lag of a sink connector's consumer group"""

    @abstractmethod
    def consumer_lag(self, topic: str, group: str) -> Optional[int]:
        pass


def connector_group(connector_name: str) -> str:
    # kafka connect sink groups are named connect-<connector>
    return f"connect-{connector_name}"


@dataclass
class Evaluation:
    state: VersionState
    problems: List[str] = field(default_factory=list)

    @property
    def message(self) -> str:
        return "; ".join(self.problems)


class VersionStateTracker:
    """
    Computes whether a New generation has become Valid.

    A generation is Valid only when every recorded member reports healthy and
    the optional document count and consumer lag thresholds hold. The
    tracker never writes state; the lifecycle controller applies the result.
    """

    def __init__(self, adapters: AdapterRegistry, lag_probe: Optional[LagProbe] = None):
        self.adapters = adapters
        self.lag_probe = lag_probe

    def evaluate(self, generation: GenerationStatus, policy: ValidationPolicy = None) -> VersionState:
        return self.observe(generation, policy).state

    def observe(self, generation: GenerationStatus, policy: ValidationPolicy = None) -> Evaluation:
        if generation.state not in (VersionState.NEW, VersionState.VALID):
            return Evaluation(generation.state)
        if generation.failed:
            return Evaluation(VersionState.NEW, [generation.message or "generation failed"])
        if not generation.members:
            return Evaluation(VersionState.NEW, ["no members materialized"])

        problems = []
        for member in generation.members:
            health = self.adapters.for_kind(member.kind).read_health(member.kind, member.name)
            if not health.healthy:
                problems.append(f"{member.kind.value} {member.name}: {health.message}")

        if not problems and policy is not None:
            problems.extend(self._check_policy(generation, policy))

        if problems:
            logger.debug(f"Generation {generation.generation} not valid: {problems}")
            return Evaluation(VersionState.NEW, problems)
        return Evaluation(VersionState.VALID)

    def _member_name(self, generation: GenerationStatus, kind: ResourceKind) -> Optional[str]:
        for member in generation.members:
            if member.kind == kind:
                return member.name
        return None

    def _check_policy(self, generation: GenerationStatus, policy: ValidationPolicy) -> List[str]:
        problems = []
        if policy.min_document_count is not None:
            index = self._member_name(generation, ResourceKind.ELASTICSEARCH_INDEX)
            count = self.adapters.for_kind(ResourceKind.ELASTICSEARCH_INDEX).document_count(index)
            if count is None or count < policy.min_document_count:
                problems.append(f"index {index} holds {count} documents, need {policy.min_document_count}")

        if policy.max_consumer_lag is not None:
            if self.lag_probe is None:
                logger.warning(f"No lag probe configured, skipping lag check for generation {generation.generation}")
            else:
                topic = self._member_name(generation, ResourceKind.TOPIC)
                connector = self._member_name(generation, ResourceKind.CONNECTOR)
                lag = self.lag_probe.consumer_lag(topic, connector_group(connector))
                if lag is None or lag > policy.max_consumer_lag:
                    problems.append(f"consumer lag {lag} exceeds {policy.max_consumer_lag}")
        return problems
