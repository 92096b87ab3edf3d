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
Generation lifecycle controller for xjoin index pipelines

A pipeline is a declarative resource. Each reconcile pass materializes a
generation of named backend resources (topic, connector, schemas, index,
ingest pipeline, deployments), validates it from backend health, promotes
it to Active with the previous Active kept as Standby, and tears generations
down in reverse creation order before the pipeline's finalizer is released.

Key components:
- LifecycleController: per-pipeline state machine
- GenerationSynchronizer: ordered materialize and teardown of one generation
- VersionStateTracker: poll-based validity of a generation
- build_controller: wires store, clients and adapters from Settings
"""

from .factory import build_adapters, build_controller
from .lifecycle import LifecycleController, ReconcileResult

__all__ = [
    "LifecycleController",
    "ReconcileResult",
    "build_adapters",
    "build_controller",
]
