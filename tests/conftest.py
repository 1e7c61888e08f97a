from __future__ import annotations

from typing import Callable, List

import httpx
import pytest

from api_client import ApiClient, ApiClientConfig


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def sleeps() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def make_client(sleeps) -> Callable[..., ApiClient]:
    """Build an ApiClient whose requests are answered by ``handler``."""

    def factory(handler, **config) -> ApiClient:
        return ApiClient(ApiClientConfig(**config), transport=httpx.MockTransport(handler), sleep=sleeps)

    return factory
