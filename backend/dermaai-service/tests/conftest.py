import asyncio
import os
import sys
import tempfile
from pathlib import Path

import pytest

SERVICE_ROOT = Path(__file__).resolve().parents[1]
if str(SERVICE_ROOT) not in sys.path:
    sys.path.insert(0, str(SERVICE_ROOT))

# Keep tests hermetic regardless of local shell/.env values.
os.environ["DERMA_CASE_STORE_BACKEND"] = "memory"
os.environ["DERMA_PUSH_MODE"] = "off"
os.environ["DERMA_GEMINI_API_KEY"] = "test-gemini-key"
os.environ["DERMA_OPENAI_API_KEY"] = "test-openai-key"
os.environ["DERMA_ENABLE_GEMINI"] = "true"
os.environ["DERMA_ENABLE_OPENAI"] = "true"
os.environ["DERMA_PROVIDER_TIMEOUT_SECONDS"] = "5"
os.environ["DERMA_PROVIDER_RETRY_TIMEOUT_SECONDS"] = "2"
os.environ["DERMA_DEFAULT_CONFIDENCE_THRESHOLD"] = "40"
os.environ["DERMA_URGENT_CONDITIONS"] = ""
os.environ["DERMA_EXPOSE_ERRORS"] = "false"

_TEST_DATA_DIR = Path(tempfile.gettempdir()) / "dermaai-service-tests"
_TEST_DATA_DIR.mkdir(parents=True, exist_ok=True)
os.environ["DERMA_LOCAL_DATA_DIR"] = str(_TEST_DATA_DIR)
os.environ["DERMA_SQLITE_DB_PATH"] = str(_TEST_DATA_DIR / "derma_cases.sqlite3")

from models import ProviderFailure, ProviderName  # noqa: E402


class FakeAdapter:
    """
    Stands in for a provider adapter: returns a canned outcome per call.
    """

    def __init__(self, provider, outcome=None, compare_outcome=None, delay=0.0, gate=None):
        self.provider = provider
        self.model = f"fake-{provider.value}"
        self.enabled = True
        self.configured = True
        self.available = True
        self.outcome = outcome
        self.compare_outcome = compare_outcome
        self.delay = delay
        self.gate = gate
        self.calls = 0
        self.completed = 0
        self.instructions = []

    async def invoke(self, images, context, timeout_seconds, *, language="en", is_health_professional=False):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        self.completed += 1
        return self.outcome

    async def compare(self, previous_images, current_images, instruction, timeout_seconds):
        self.calls += 1
        self.instructions.append(instruction)
        return self.compare_outcome


@pytest.fixture
def fake_adapter():
    return FakeAdapter


@pytest.fixture
def failure():
    def _make(provider: ProviderName, code: str = "TIMEOUT", message: str = "provider failed"):
        return ProviderFailure(provider=provider, code=code, message=message, hint="retry", attempts=2)

    return _make
