from typing import BinaryIO, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict

from config.settings import Settings
from models.schemas import PolicyDecision, ScanClean, ScanInfected, ScanOutcome
from services.clam_av import ClamAVService
from utils.logger import get_logger

logger = get_logger(__name__)

Strictness = Literal["fail-open", "fail-closed"]


class ScanPolicyConfig(BaseModel):
    """Static scan configuration, read once when the service starts."""

    model_config = ConfigDict(frozen=True)

    daemon_host: str = "localhost"
    daemon_port: int = 3310
    socket_path: Optional[str] = None
    timeout_seconds: float = 30.0
    strictness: Strictness = "fail-closed"
    skip_scanning: bool = False
    connect_retries: int = 0
    retry_backoff_seconds: float = 1.0

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScanPolicyConfig":
        if settings.VIRUS_SCAN_MODE:
            strictness = settings.VIRUS_SCAN_MODE
        elif settings.APP_ENV.lower() == "development" or settings.VIRUS_SCAN_FAIL_OPEN:
            strictness = "fail-open"
        else:
            strictness = "fail-closed"

        return cls(
            daemon_host=settings.CLAMAV_HOST,
            daemon_port=settings.CLAMAV_PORT,
            socket_path=settings.CLAMAV_SOCKET_PATH,
            timeout_seconds=settings.CLAMAV_TIMEOUT,
            strictness=strictness,
            skip_scanning=settings.SKIP_VIRUS_SCAN,
            connect_retries=settings.CLAMAV_CONNECT_RETRIES,
            retry_backoff_seconds=settings.CLAMAV_RETRY_BACKOFF,
        )

    def build_client(self) -> ClamAVService:
        return ClamAVService(
            daemon_host=self.daemon_host,
            daemon_port=self.daemon_port,
            timeout=self.timeout_seconds,
            socket_path=self.socket_path,
            connect_retries=self.connect_retries,
            retry_backoff=self.retry_backoff_seconds,
        )


class ScanPolicyEngine:
    """
    Turns a scan attempt into an allow/deny decision.

    Infected content is always denied. A scan that could not complete is
    allowed with a warning under fail-open and denied under fail-closed.
    Skip mode never contacts the daemon.
    """

    def __init__(self, config: ScanPolicyConfig, client: Optional[ClamAVService] = None) -> None:
        self.config = config
        self.client = client or config.build_client()

        if config.skip_scanning:
            logger.warning("Virus scanning is DISABLED (SKIP_VIRUS_SCAN); use only in test suites")
        logger.info(f"ScanPolicyEngine initialized | Mode: {config.strictness}")

    async def screen(
        self,
        source: Union[bytes, BinaryIO],
        filename: Optional[str] = None,
    ) -> PolicyDecision:
        if self.config.skip_scanning:
            return PolicyDecision(
                allowed=True,
                outcome=ScanClean(skipped=True),
                warning="Virus scan skipped",
            )

        outcome = await self.client.scan(source, filename=filename)
        return self.decide(outcome)

    def decide(self, outcome: ScanOutcome) -> PolicyDecision:
        if isinstance(outcome, ScanClean):
            return PolicyDecision(allowed=True, outcome=outcome)

        if isinstance(outcome, ScanInfected):
            return PolicyDecision(allowed=False, outcome=outcome)

        if self.config.strictness == "fail-open":
            warning = f"Scan failed but allowed: {outcome.detail}"
            logger.warning(
                f"Virus scan failed but allowing file due to fail-open policy: {outcome.detail}"
            )
            return PolicyDecision(allowed=True, outcome=outcome, warning=warning)

        return PolicyDecision(allowed=False, outcome=outcome)
