"""Scan failure policy: fail-open, fail-closed, skip mode and settings."""
import pytest

from config.settings import Settings
from models.schemas import ScanClean, ScanFailed, ScanInfected
from services.scan_policy import ScanPolicyConfig, ScanPolicyEngine


class RecordingClient:
    """Stands in for ClamAVService; returns a fixed outcome and counts calls."""

    def __init__(self, outcome):
        self.outcome = outcome
        self.calls = 0

    async def scan(self, source, filename=None):
        self.calls += 1
        return self.outcome


def engine_with(outcome, **config):
    client = RecordingClient(outcome)
    return ScanPolicyEngine(ScanPolicyConfig(**config), client=client), client


@pytest.mark.asyncio
async def test_clean_scan_is_allowed():
    engine, _ = engine_with(ScanClean())

    decision = await engine.screen(b"data", "a.txt")

    assert decision.allowed is True
    assert decision.warning is None


@pytest.mark.asyncio
@pytest.mark.parametrize("strictness", ["fail-open", "fail-closed"])
async def test_infected_is_never_allowed(strictness):
    engine, _ = engine_with(ScanInfected(threat_name="Eicar-Signature"), strictness=strictness)

    decision = await engine.screen(b"data", "a.txt")

    assert decision.allowed is False
    assert decision.outcome.threat_name == "Eicar-Signature"


@pytest.mark.asyncio
@pytest.mark.parametrize("kind", ["unavailable", "timeout", "protocol"])
async def test_fail_closed_blocks_incomplete_scans(kind):
    engine, _ = engine_with(ScanFailed(kind=kind, detail="boom"), strictness="fail-closed")

    decision = await engine.screen(b"data", "a.txt")

    assert decision.allowed is False
    assert decision.outcome.kind == kind


@pytest.mark.asyncio
async def test_fail_open_allows_with_warning():
    engine, _ = engine_with(
        ScanFailed(kind="unavailable", detail="connection refused"), strictness="fail-open"
    )

    decision = await engine.screen(b"data", "a.txt")

    assert decision.allowed is True
    assert decision.warning == "Scan failed but allowed: connection refused"
    assert isinstance(decision.outcome, ScanFailed)


@pytest.mark.asyncio
async def test_skip_mode_never_calls_the_daemon():
    engine, client = engine_with(ScanInfected(threat_name="x"), skip_scanning=True)

    decision = await engine.screen(b"data", "a.txt")

    assert client.calls == 0
    assert decision.allowed is True
    assert isinstance(decision.outcome, ScanClean)
    assert decision.outcome.skipped is True
    assert decision.warning == "Virus scan skipped"


def test_config_defaults_to_fail_closed():
    config = ScanPolicyConfig.from_settings(Settings(_env_file=None))

    assert config.strictness == "fail-closed"
    assert config.daemon_port == 3310
    assert config.timeout_seconds == 30.0
    assert config.skip_scanning is False


@pytest.mark.parametrize(
    "overrides, expected",
    [
        ({"APP_ENV": "development"}, "fail-open"),
        ({"VIRUS_SCAN_FAIL_OPEN": True}, "fail-open"),
        ({"APP_ENV": "development", "VIRUS_SCAN_MODE": "fail-closed"}, "fail-closed"),
        ({"VIRUS_SCAN_MODE": "fail-open"}, "fail-open"),
    ],
)
def test_config_strictness_from_settings(overrides, expected):
    config = ScanPolicyConfig.from_settings(Settings(_env_file=None, **overrides))
    assert config.strictness == expected


def test_config_reads_environment(monkeypatch):
    monkeypatch.setenv("CLAMAV_HOST", "clamav")
    monkeypatch.setenv("CLAMAV_PORT", "3311")
    monkeypatch.setenv("CLAMAV_TIMEOUT", "5")
    monkeypatch.setenv("SKIP_VIRUS_SCAN", "true")

    config = ScanPolicyConfig.from_settings(Settings(_env_file=None))

    assert (config.daemon_host, config.daemon_port) == ("clamav", 3311)
    assert config.timeout_seconds == 5.0
    assert config.skip_scanning is True
    assert config.build_client().target == "clamav:3311"
