import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="forgegraph_test_")
os.environ.setdefault("STATE_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("LOG_JSON", "false")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from forgegraph.service.checkpoint import CheckpointStore  # noqa: E402
from forgegraph.service.engine import ExecutionEngine  # noqa: E402
from forgegraph.service.resilience import (  # noqa: E402
    CircuitBreaker,
    CircuitStateStore,
    ResilienceWrapper,
)
from forgegraph.service.runtime import reset_runtime_for_tests  # noqa: E402
from forgegraph.storage.memory import MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def checkpoint_store(memory_store):
    store = CheckpointStore(memory_store, max_workers=2)
    yield store
    store.close()


@pytest.fixture
def engine(checkpoint_store):
    """Engine with its own circuit state so tests never share circuits."""

    async def no_sleep(_seconds):
        return None

    breaker = CircuitBreaker(CircuitStateStore())
    return ExecutionEngine(
        checkpoint_store, resilience=ResilienceWrapper(breaker, sleep=no_sleep)
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
