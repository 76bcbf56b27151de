"""Credential resolution chain.

Resolvers are tried in order; each returns :class:`ResolvedCredentials`
or ``None`` when it does not apply, and the first hit wins::

    static keys -> named profile -> role assumption -> instance metadata -> environment

Nothing is cached: the chain runs again on every validation pass because
the environment may have changed between reconfigurations.
"""

from __future__ import annotations

import abc
import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Sequence

from beacon.errors import ResolutionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedCredentials:
    source: str
    access_key: str = ""
    secret_key: str = field(default="", repr=False)
    session_token: str = field(default="", repr=False)
    profile: str = ""
    role_arn: str = ""


class CredentialResolver(abc.ABC):
    """One strategy in the resolution chain.

    *cfg* is anything carrying ``access_key``, ``secret_key``, ``profile``
    and ``role_arn`` attributes (a configuration or a converted request).
    """

    name: str = ""

    @abc.abstractmethod
    async def resolve(self, cfg: Any) -> ResolvedCredentials | None:
        raise NotImplementedError


class StaticCredentialsResolver(CredentialResolver):
    name = "static"

    async def resolve(self, cfg: Any) -> ResolvedCredentials | None:
        if not cfg.access_key:
            return None
        if not cfg.secret_key:
            raise ResolutionError("access_key is set but secret_key is empty")
        return ResolvedCredentials(
            source=self.name,
            access_key=cfg.access_key,
            secret_key=cfg.secret_key,
        )


def _botocore():
    try:
        import botocore.credentials
        import botocore.exceptions
        import botocore.utils
    except ImportError as exc:
        raise ResolutionError("botocore is not installed; install beacon-sd[aws]") from exc
    return botocore


def _frozen(source: str, credentials: Any, **kwargs: str) -> ResolvedCredentials:
    frozen = credentials.get_frozen_credentials()
    return ResolvedCredentials(
        source=source,
        access_key=frozen.access_key or "",
        secret_key=frozen.secret_key or "",
        session_token=frozen.token or "",
        **kwargs,
    )


class ProfileResolver(CredentialResolver):
    """Loads a named profile from the shared config and credentials files.

    Lookup goes through a boto3 session, so ``AWS_CONFIG_FILE``,
    ``AWS_SHARED_CREDENTIALS_FILE``, ``[profile name]`` sections and
    ``credential_process`` entries behave as they do for the AWS CLI.
    """

    name = "profile"

    async def resolve(self, cfg: Any) -> ResolvedCredentials | None:
        if not cfg.profile:
            return None
        return await asyncio.to_thread(self._load, cfg.profile)

    def _load(self, profile: str) -> ResolvedCredentials:
        botocore = _botocore()
        try:
            import boto3
        except ImportError as exc:
            raise ResolutionError("boto3 is not installed; install beacon-sd[aws]") from exc

        try:
            credentials = boto3.Session(profile_name=profile).get_credentials()
        except botocore.exceptions.BotoCoreError as exc:
            raise ResolutionError(
                f"cannot load credentials for profile {profile!r}: {exc}"
            ) from exc
        if credentials is None:
            raise ResolutionError(
                f"cannot load credentials for profile {profile!r}: profile has no credentials"
            )
        return _frozen(self.name, credentials, profile=profile)


class AssumeRoleResolver(CredentialResolver):
    """Role-only configurations; the role is assumed by the backend at poll time."""

    name = "assume_role"

    async def resolve(self, cfg: Any) -> ResolvedCredentials | None:
        if not cfg.role_arn:
            return None
        return ResolvedCredentials(source=self.name, role_arn=cfg.role_arn)


class InstanceMetadataResolver(CredentialResolver):
    """IAM role credentials served by the instance-metadata service.

    *fetcher* defaults to a botocore ``InstanceMetadataFetcher`` with a
    short timeout and a single attempt; an unreachable service means the
    resolver does not apply.
    """

    name = "instance_metadata"

    def __init__(self, fetcher: Any = None, timeout: float = 1.0) -> None:
        self.fetcher = fetcher
        self.timeout = timeout

    async def resolve(self, cfg: Any) -> ResolvedCredentials | None:
        return await asyncio.to_thread(self._load)

    def _load(self) -> ResolvedCredentials | None:
        botocore = _botocore()
        fetcher = self.fetcher or botocore.utils.InstanceMetadataFetcher(
            timeout=self.timeout, num_attempts=1
        )
        provider = botocore.credentials.InstanceMetadataProvider(iam_role_fetcher=fetcher)
        try:
            credentials = provider.load()
        except botocore.exceptions.BotoCoreError as exc:
            raise ResolutionError(f"malformed instance metadata credentials: {exc}") from exc
        if credentials is None:
            logger.debug("Instance metadata credentials not available")
            return None
        return _frozen(self.name, credentials)


class EnvironmentResolver(CredentialResolver):
    name = "environment"

    async def resolve(self, cfg: Any) -> ResolvedCredentials | None:
        botocore = _botocore()
        try:
            credentials = botocore.credentials.EnvProvider().load()
        except botocore.exceptions.BotoCoreError as exc:
            raise ResolutionError(f"cannot load credentials from the environment: {exc}") from exc
        if credentials is None:
            return None
        return _frozen(self.name, credentials)


def default_resolvers() -> list[CredentialResolver]:
    return [
        StaticCredentialsResolver(),
        ProfileResolver(),
        AssumeRoleResolver(),
        InstanceMetadataResolver(),
        EnvironmentResolver(),
    ]


async def resolve_credentials(
    cfg: Any,
    resolvers: Sequence[CredentialResolver] | None = None,
) -> ResolvedCredentials | None:
    """Run the chain; ``None`` means fall back to anonymous/ambient access.

    A configured ``role_arn`` is carried on whatever the chain returns.
    """
    if resolvers is None:
        resolvers = default_resolvers()

    for resolver in resolvers:
        creds = await resolver.resolve(cfg)
        if creds is None:
            continue
        logger.debug("Credentials resolved via %s", creds.source)
        if cfg.role_arn and creds.role_arn != cfg.role_arn:
            creds = dataclasses.replace(creds, role_arn=cfg.role_arn)
        return creds
    return None
