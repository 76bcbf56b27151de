"""pytest configuration for beacon tests."""

from __future__ import annotations

import asyncio

import pytest

from beacon.discovery.base import Discoverer
from beacon.targets import Target, TargetGroup


# Configure asyncio mode for pytest-asyncio
def pytest_configure(config):
    config.addinivalue_line(
        "markers", "asyncio: mark test as async"
    )


class FakeDiscoverer(Discoverer):
    """Returns queued results in order; the last one repeats.

    A queued exception is raised instead of returned.  Set ``block`` to an
    :class:`asyncio.Event` to hold every poll until it is set.
    """

    def __init__(self, *results) -> None:
        self.results = list(results)
        self.calls = 0
        self.call_times: list[float] = []
        self.closed = False
        self.block: asyncio.Event | None = None

    @classmethod
    def from_request(cls, request):
        return cls()

    async def poll(self):
        self.calls += 1
        self.call_times.append(asyncio.get_running_loop().time())
        if self.block is not None:
            await self.block.wait()
        if not self.results:
            return []
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, BaseException):
            raise result
        return result

    async def aclose(self) -> None:
        self.closed = True


class FakeProbe:
    def __init__(self, region: str = "us-east-1", error: Exception | None = None) -> None:
        self.region = region
        self.error = error
        self.calls = 0

    async def get_region(self) -> str:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.region


def make_group(source: str, *addresses: str, **labels: str) -> TargetGroup:
    return TargetGroup(
        source=source,
        targets=tuple(Target(address=a) for a in addresses),
        labels=labels,
    )


@pytest.fixture
def fake_discoverer():
    return FakeDiscoverer


@pytest.fixture
def probe():
    return FakeProbe()


@pytest.fixture
def failing_probe():
    from beacon.errors import ResolutionError

    return FakeProbe(error=ResolutionError("instance metadata unreachable"))


@pytest.fixture
def group():
    return make_group


@pytest.fixture
def make_probe():
    return FakeProbe


@pytest.fixture
def aws_files(tmp_path, monkeypatch):
    """Isolated shared config and credentials files with no ambient AWS state.

    ``dev`` lives in the config file as ``[profile dev]``; ``ops`` lives in
    the credentials file.
    """
    pytest.importorskip("boto3")
    config = tmp_path / "config"
    config.write_text(
        "[profile dev]\n"
        "aws_access_key_id = DEVKEY\n"
        "aws_secret_access_key = DEVSECRET\n"
    )
    credentials = tmp_path / "credentials"
    credentials.write_text(
        "[default]\n"
        "aws_access_key_id = DEFAULTKEY\n"
        "aws_secret_access_key = DEFAULTSECRET\n"
        "\n"
        "[ops]\n"
        "aws_access_key_id = OPSKEY\n"
        "aws_secret_access_key = OPSSECRET\n"
        "aws_session_token = OPSTOKEN\n"
    )
    monkeypatch.setenv("AWS_CONFIG_FILE", str(config))
    monkeypatch.setenv("AWS_SHARED_CREDENTIALS_FILE", str(credentials))
    monkeypatch.setenv("AWS_EC2_METADATA_DISABLED", "true")
    for name in (
        "AWS_PROFILE",
        "AWS_DEFAULT_PROFILE",
        "AWS_ACCESS_KEY_ID",
        "AWS_SECRET_ACCESS_KEY",
        "AWS_SESSION_TOKEN",
        "AWS_SECURITY_TOKEN",
    ):
        monkeypatch.delenv(name, raising=False)
    return tmp_path
