import asyncio
import os
import tempfile
from pathlib import Path
from typing import Sequence

# Keep test runs from writing into the user's home directory.
os.environ.setdefault("POLYPKG_LOG_FILE", str(Path(tempfile.gettempdir()) / "polypkg-tests.log"))

import pytest  # noqa: E402

from polypkg.core.config import get_settings  # noqa: E402
from polypkg.core.mock_runner import MockCommandRunner  # noqa: E402
from polypkg.core.models import Category, ListFilter, Options, PackageInfo, PackageStatus  # noqa: E402
from polypkg.managers.apt import AptManager  # noqa: E402
from polypkg.managers.base import BaseManager  # noqa: E402

APT_VERSION = "apt 2.4.9 (amd64)\n"


class FakeManager(BaseManager):
    """In-memory backend with controllable availability, latency and failure."""

    def __init__(
        self,
        name: str,
        category: str = Category.SYSTEM,
        available: bool = True,
        delay: float = 0.0,
        error: BaseException | None = None,
        packages: Sequence[str] = (),
        check_delay: float = 0.0,
    ) -> None:
        self.name = name
        self.category = category
        super().__init__(runner=MockCommandRunner())
        self.available = available
        self.delay = delay
        self.error = error
        self.packages = list(packages)
        self.check_delay = check_delay
        self.calls: list[str] = []
        self.cancelled = False
        self.finished = False

    async def is_available(self) -> bool:
        if self.check_delay:
            await asyncio.sleep(self.check_delay)
        return self.available

    async def _act(self, operation: str, names: Sequence[str], status: PackageStatus) -> list[PackageInfo]:
        self.calls.append(operation)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if self.error is not None:
            raise self.error
        self.finished = True
        return [PackageInfo(name=n, status=status, manager_name=self.name) for n in names]

    async def search(self, query, opts=None):
        return await self._act("search", self.packages or query, PackageStatus.AVAILABLE)

    async def list_packages(self, filter=ListFilter.INSTALLED, opts=None):
        return await self._act("list", self.packages, PackageStatus.INSTALLED)

    async def install(self, packages, opts=None):
        return await self._act("install", packages, PackageStatus.INSTALLED)

    async def refresh(self, opts=None):
        await self._act("refresh", [], PackageStatus.UNKNOWN)


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def runner() -> MockCommandRunner:
    return MockCommandRunner()


@pytest.fixture
def apt(runner: MockCommandRunner) -> AptManager:
    runner.add_command("apt", ["--version"], stdout=APT_VERSION)
    return AptManager(runner=runner)


@pytest.fixture
def yes_opts() -> Options:
    return Options(assume_yes=True)


@pytest.fixture
def fake_manager() -> type[FakeManager]:
    return FakeManager
