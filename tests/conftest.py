"""Shared fixtures: fake backend instances and counting factories."""

import asyncio
from unittest.mock import AsyncMock

import pytest


class FakeInstance:
    """A backend instance with a name, a version and an AsyncMock close()."""

    def __init__(self, name: str = "fake-server", version: str = "1.0.0"):
        self.name = name
        self.version = version
        self.close = AsyncMock()


class CountingFactory:
    """An async factory that records every call and every instance it built.

    Args:
        name: Name given to built instances.
        error: Exception raised instead of building an instance.
        gate: Optional event the factory waits on after `started` is set.
    """

    def __init__(self, name="fake-server", version="1.0.0", error=None, gate=None):
        self.name = name
        self.version = version
        self.error = error
        self.gate = gate
        self.started = asyncio.Event()
        self.calls = 0
        self.instances: list[FakeInstance] = []

    async def __call__(self) -> FakeInstance:
        self.calls += 1
        self.started.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        instance = FakeInstance(self.name, self.version)
        self.instances.append(instance)
        return instance


@pytest.fixture
def make_factory():
    """Return the CountingFactory class."""
    return CountingFactory


@pytest.fixture
def make_instance():
    """Return the FakeInstance class."""
    return FakeInstance
