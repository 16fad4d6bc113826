"""Shared pytest fixtures for tunnel core tests."""

import asyncio
import os
import random

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from tunnelcore.autopilot import AutopilotMonitor, SimulatedProber
from tunnelcore.database import init_db
from tunnelcore.engines.catalog import build_engines
from tunnelcore.models import Node
from tunnelcore.port_allocator import PortAllocator
from tunnelcore.tunnel_manager import TunnelManager


class FakeProcess:
    """Stand-in for asyncio.subprocess.Process driven by the test."""

    def __init__(self, stdout_lines=(), stderr_lines=(), exit_code=None, ignore_terminate=False, pid=None):
        self.pid = pid or os.getpid()
        self.returncode = None
        self.stdout = asyncio.StreamReader()
        self.stderr = asyncio.StreamReader()
        for line in stdout_lines:
            self.stdout.feed_data(line.encode() + b"\n")
        for line in stderr_lines:
            self.stderr.feed_data(line.encode() + b"\n")
        self.ignore_terminate = ignore_terminate
        self.terminated = False
        self.killed = False
        self._exited = asyncio.Event()
        if exit_code is not None:
            self.exit(exit_code)

    def emit(self, line, stream="stdout"):
        getattr(self, stream).feed_data(line.encode() + b"\n")

    def exit(self, code):
        if self.returncode is not None:
            return
        self.returncode = code
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        self._exited.set()

    async def wait(self):
        await self._exited.wait()
        return self.returncode

    def terminate(self):
        self.terminated = True
        if not self.ignore_terminate:
            self.exit(-15)

    def kill(self):
        self.killed = True
        self.exit(-9)


class FakeSpawner:
    """Records every spawn and hands out FakeProcess objects.

    ``plan`` entries are consumed first (dicts of FakeProcess kwargs or
    exceptions to raise); afterwards ``default`` is used for every spawn.
    """

    def __init__(self):
        self.calls = []
        self.processes = []
        self.plan = []
        self.default = {}

    def queue(self, **kwargs):
        self.plan.append(kwargs)

    def fail_next(self, exc=None):
        self.plan.append(exc or FileNotFoundError("binary not found"))

    async def __call__(self, *argv, **kwargs):
        self.calls.append((list(argv), kwargs))
        entry = self.plan.pop(0) if self.plan else dict(self.default)
        if isinstance(entry, Exception):
            raise entry
        process = FakeProcess(**entry)
        self.processes.append(process)
        return process

    @property
    def count(self):
        return len(self.calls)


async def wait_until(predicate, timeout=3.0, interval=0.01):
    """Poll ``predicate`` until it is truthy or fail the test."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        if predicate():
            return
        await asyncio.sleep(interval)
    raise AssertionError("condition not reached before timeout")


@pytest.fixture
def spawner():
    return FakeSpawner()


@pytest.fixture
def allocator():
    allocator = PortAllocator(range_min=10000, range_max=65000, reserved=[80, 443], max_attempts=100)
    return allocator


@pytest.fixture
def engines(tmp_path, spawner):
    return build_engines(
        data_dir=tmp_path / "engines",
        serve_decoy=False,
        spawner=spawner,
        max_retries=3,
        reconnect_interval=0,
        settle_delay=0.05,
        stop_timeout=0.2,
    )


@pytest_asyncio.fixture
async def session_factory(tmp_path):
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_db(db_engine)
    yield async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    await db_engine.dispose()


@pytest_asyncio.fixture
async def nodes(session_factory):
    async with session_factory() as session:
        near = Node(name="near-1", role="near", ip_address="10.0.0.1", port=22)
        far = Node(name="far-1", role="far", ip_address="203.0.113.10", port=2222)
        session.add_all([near, far])
        await session.commit()
    return near, far


@pytest.fixture
def autopilot(session_factory, allocator):
    return AutopilotMonitor(
        session_factory,
        allocator,
        prober=SimulatedProber(time_scale=0, rng=random.Random(7)),
        probe_count=5,
        retention_hours=24,
    )


@pytest_asyncio.fixture
async def manager(session_factory, engines, allocator, autopilot):
    manager = TunnelManager(session_factory, engines, allocator, autopilot)
    await autopilot.initialize()
    await manager.initialize()
    yield manager
    await manager.cleanup()
