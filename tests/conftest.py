import pytest

from conduit.credentials import ConnectionCredentials, InMemoryCredentialStore
from conduit.engine import WorkflowEngine
from conduit.execute import StepExecutor
from conduit.persistence import InMemoryExecutionRepository
from tests.fixtures.workflows import build_registry


@pytest.fixture
def registry():
    return build_registry()


@pytest.fixture
def credentials():
    store = InMemoryCredentialStore()
    store.add("conn-1", ConnectionCredentials(type="api_key", data={"token": "t-123"}))
    return store


@pytest.fixture
def repository():
    return InMemoryExecutionRepository()


@pytest.fixture
def sleeps():
    """Delays requested by the step executor, recorded instead of slept."""
    return []


@pytest.fixture
def executor(registry, credentials, repository, sleeps):
    async def fake_sleep(delay):
        sleeps.append(delay)

    return StepExecutor(registry, credentials, repository, sleep=fake_sleep)


@pytest.fixture
def engine(registry, credentials, repository, executor):
    return WorkflowEngine(repository, registry, credentials, executor=executor)
