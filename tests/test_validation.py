"""Tests for validate() — structural checks and the region fallback probe."""

from __future__ import annotations

import asyncio

import pytest

from beacon.config import DiscoveryConfig, Filter, HTTPClientConfig, apply_defaults
from beacon.credentials import ProfileResolver, StaticCredentialsResolver
from beacon.errors import ConfigurationError, ResolutionError
from beacon.validation import check_structure, validate


def _cfg(**kwargs) -> DiscoveryConfig:
    return apply_defaults(DiscoveryConfig(**kwargs))


class _HangingProbe:
    def __init__(self) -> None:
        self.calls = 0

    async def get_region(self) -> str:
        self.calls += 1
        await asyncio.sleep(10)
        return "never"


class TestStructuralChecks:
    async def test_empty_filter_values_rejected_without_probe(self, probe):
        cfg = _cfg(filters=(Filter("tag:env", ()),))
        with pytest.raises(ConfigurationError, match="values cannot be empty"):
            await validate(cfg, probe=probe, resolvers=[])
        assert probe.calls == 0

    async def test_empty_filter_name_rejected(self, probe):
        cfg = _cfg(region="us-east-1", filters=(Filter("", ("x",)),))
        with pytest.raises(ConfigurationError, match="filter name"):
            await validate(cfg, probe=probe, resolvers=[])

    async def test_defaults_must_be_applied_first(self, probe):
        with pytest.raises(ConfigurationError, match="apply defaults first"):
            await validate(DiscoveryConfig(region="us-east-1"), probe=probe, resolvers=[])

    async def test_unknown_backend(self, probe):
        cfg = DiscoveryConfig(
            backend="consul",
            refresh_interval=60.0,
            port=80,
            http_client_config=HTTPClientConfig(),
        )
        with pytest.raises(ConfigurationError, match="unknown discovery backend"):
            await validate(cfg, probe=probe, resolvers=[])

    @pytest.mark.parametrize("interval", [0.0, -5.0])
    def test_non_positive_interval(self, interval):
        with pytest.raises(ConfigurationError, match="refresh_interval"):
            check_structure(_cfg(region="us-east-1", refresh_interval=interval))

    @pytest.mark.parametrize("port", [0, 70000])
    def test_port_out_of_range(self, port):
        with pytest.raises(ConfigurationError, match="port"):
            check_structure(_cfg(region="us-east-1", port=port))

    def test_http_client_config_checked(self):
        cfg = _cfg(
            region="us-east-1",
            http_client_config=HTTPClientConfig(bearer_token="a", bearer_token_file="/b"),
        )
        with pytest.raises(ConfigurationError, match="at most one"):
            check_structure(cfg)

    def test_endpoint_required_for_file_backend(self):
        with pytest.raises(ConfigurationError, match="requires an endpoint"):
            check_structure(_cfg(backend="file"))


class TestRegionResolution:
    async def test_explicit_region_never_probes(self, probe):
        cfg = _cfg(region="ap-south-1")
        result = await validate(cfg, probe=probe, resolvers=[])
        assert result.region == "ap-south-1"
        assert probe.calls == 0

    async def test_probe_success_fills_region(self, probe):
        cfg = _cfg()
        result = await validate(cfg, probe=probe, resolvers=[])
        assert result.region == "us-east-1"
        assert probe.calls == 1

    async def test_input_config_left_untouched(self, probe):
        cfg = _cfg()
        await validate(cfg, probe=probe, resolvers=[])
        assert cfg.region == ""

    async def test_probe_failure_is_configuration_error(self, failing_probe):
        with pytest.raises(ConfigurationError, match="requires a region") as exc_info:
            await validate(_cfg(), probe=failing_probe, resolvers=[])
        assert "set region explicitly" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, ResolutionError)

    async def test_unexpected_probe_error_is_configuration_error(self, make_probe):
        probe = make_probe(error=OSError("network down"))
        with pytest.raises(ConfigurationError, match="requires a region"):
            await validate(_cfg(), probe=probe, resolvers=[])

    async def test_probe_timeout(self):
        probe = _HangingProbe()
        with pytest.raises(ConfigurationError, match="timed out"):
            await validate(_cfg(), probe=probe, resolvers=[], probe_timeout=0.05)
        assert probe.calls == 1

    async def test_empty_region_from_probe(self, make_probe):
        with pytest.raises(ConfigurationError, match="empty region"):
            await validate(_cfg(), probe=make_probe(region=""), resolvers=[])

    async def test_credential_failure_reported_as_credentials(self, probe, aws_files):
        cfg = _cfg(profile="missing")
        with pytest.raises(ConfigurationError, match="cannot load ec2 credentials") as exc_info:
            await validate(cfg, probe=probe, resolvers=[ProfileResolver()])
        assert "requires a region" not in str(exc_info.value)
        assert "profile 'missing'" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, ResolutionError)
        assert probe.calls == 0

    async def test_partial_static_keys_reported_as_credentials(self, probe):
        cfg = _cfg(access_key="AKIA")
        with pytest.raises(ConfigurationError, match="cannot load ec2 credentials: access_key is set"):
            await validate(cfg, probe=probe, resolvers=[StaticCredentialsResolver()])
        assert probe.calls == 0

    async def test_region_not_required_for_file_backend(self, probe):
        cfg = _cfg(backend="file", endpoint="/tmp/targets.json")
        result = await validate(cfg, probe=probe, resolvers=[])
        assert result.region == ""
        assert probe.calls == 0

    async def test_probe_rerun_on_every_validation(self, probe):
        cfg = _cfg()
        await validate(cfg, probe=probe, resolvers=[])
        await validate(cfg, probe=probe, resolvers=[])
        assert probe.calls == 2
