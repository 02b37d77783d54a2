import os
import shutil
from collections.abc import Callable
from pathlib import Path

import pytest

TEST_DATA_DIR = Path("data-tests")

# botticelli.app builds a default app at import time; keep it out of ./data
os.environ.setdefault("BOTTICELLI_DATA_DIR", str(TEST_DATA_DIR))

from botticelli.llm import GenerateRequest, GenerateResponse  # noqa: E402
from botticelli.models import TokenUsage  # noqa: E402
from botticelli.storage import InMemoryRepository  # noqa: E402


class StubDriver:
    """Deterministic driver stand-in for tests.

    Responses are returned in call order. Pass a callable instead of a list to
    compute the response from the request. An Exception in the list is raised
    instead of returned. Every request is kept in `requests`.
    """

    def __init__(self, responses: list | Callable[[GenerateRequest], str]) -> None:
        self._responses = responses if callable(responses) else list(responses)
        self.requests: list[GenerateRequest] = []

    async def generate(self, request: GenerateRequest) -> GenerateResponse:
        self.requests.append(request)
        if callable(self._responses):
            text = self._responses(request)
        else:
            if not self._responses:
                raise AssertionError(
                    f"StubDriver: unexpected call #{len(self.requests)} (no responses queued)"
                )
            text = self._responses.pop(0)
        if isinstance(text, Exception):
            raise text
        return GenerateResponse(
            text=text,
            model=request.model or "stub-model",
            usage=TokenUsage(prompt_tokens=10, completion_tokens=5, total_tokens=15),
        )

    def assert_exhausted(self) -> None:
        """Assert every queued response was consumed, to catch missing driver calls."""
        if not callable(self._responses) and self._responses:
            raise AssertionError(f"StubDriver: unused responses remain: {self._responses}")


@pytest.fixture(autouse=True)
def clean_test_data():
    """Wipe data-tests/ before every test."""
    if TEST_DATA_DIR.exists():
        shutil.rmtree(TEST_DATA_DIR)
    yield
    # leave data-tests around after tests for inspection; CI can ignore it


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def stub_driver() -> Callable[..., StubDriver]:
    """Factory: stub_driver(["first response", "second response"])."""
    return StubDriver

