"""Shared fixtures."""

from __future__ import annotations

from typing import Dict

import aiohttp
import pytest
import pytest_asyncio

from pacman_mirror.config import Config
from pacman_mirror.state import SyncState

from tests.fakes import TREE, FakeMirror, start_mirror


@pytest_asyncio.fixture
async def mirror():
    fake = await start_mirror()
    yield fake
    await fake.server.close()


@pytest_asyncio.fixture
async def second_mirror():
    fake = await start_mirror()
    yield fake
    await fake.server.close()


@pytest_asyncio.fixture
async def session():
    async with aiohttp.ClientSession() as client:
        yield client


@pytest.fixture
def state(tmp_path):
    return SyncState(tmp_path / "mirror", echo=False)


@pytest.fixture
def make_config(tmp_path):
    def factory(*mirrors: FakeMirror, **overrides) -> Config:
        settings = dict(
            base_path=str(tmp_path),
            mirrors=[m.url for m in mirrors],
            folders=["core", "extra"],
            download_pause=0.0,
            list_timeout=2.0,
            file_timeout=2.0,
        )
        settings.update(overrides)
        return Config(**settings).resolve()

    return factory


@pytest_asyncio.fixture
async def mirror_factory():
    started = []

    async def factory(files: Dict[str, bytes] = TREE) -> FakeMirror:
        fake = await start_mirror(files)
        started.append(fake)
        return fake

    yield factory
    for fake in started:
        await fake.server.close()
