import itertools

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from fake_backends import ES_HOST, KUBE_HOST, REGISTRY_HOST, FakeBackends
from xjoin.config import Settings
from xjoin.controller.factory import build_controller
from xjoin.db.ops import PipelineStore
from xjoin.naming import GenerationMinter


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        database_url="sqlite://",
        kube_api_url=f"http://{KUBE_HOST}",
        namespace="xjoin",
        schema_registry_hostname=REGISTRY_HOST,
        schema_registry_port=1080,
        elasticsearch_url=f"http://{ES_HOST}:9200",
        backoff_base=2.0,
        backoff_cap=300.0,
        validation_poll_interval=10.0,
        resync_interval=300.0,
        standby_ttl_seconds=None,
        max_standby_versions=1,
    )


@pytest.fixture
def engine():
    engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return PipelineStore(engine)


@pytest.fixture
def backends():
    return FakeBackends()


@pytest.fixture
def minter():
    counter = itertools.count(1000)
    return GenerationMinter(clock=lambda: next(counter))


@pytest.fixture
def controller(settings, store, backends, minter):
    return build_controller(settings, store=store, transport=backends.transport, minter=minter)

