from typing import Any, BinaryIO, Dict, FrozenSet, Optional, Union

from config.settings import Settings
from models.schemas import (
    PipelineDecision,
    ReasonCode,
    ScanInfected,
    UploadAccepted,
    UploadCandidate,
    UploadRejected,
    VerdictRejected,
)
from services.content_type import ContentTypeClassifier
from services.filename_validator import FilenameValidator
from services.scan_policy import ScanPolicyConfig, ScanPolicyEngine
from utils.logger import get_logger

logger = get_logger(__name__)


class UploadPipeline:
    """
    Ordered validation of a single upload:
    presence -> size -> content type -> type/extension -> filename -> virus scan.

    The first failing stage ends the run. Nothing before the scan touches
    the network and nothing here persists the file.
    """

    MAX_FILE_SIZE = 2 * 1024 * 1024  # 2 MiB, inclusive

    ALLOWED_CONTENT_TYPES: FrozenSet[str] = frozenset([
        "image/jpeg",
        "image/jpg",
        "image/png",
        "image/gif",
        "image/svg+xml",
        "text/plain",
        "text/markdown",
        "text/x-markdown",
        "text/csv",
        "application/csv",
        "application/octet-stream",
    ])

    def __init__(
        self,
        policy_engine: ScanPolicyEngine,
        classifier: Optional[ContentTypeClassifier] = None,
        filename_validator: Optional[FilenameValidator] = None,
    ):
        self.classifier = classifier or ContentTypeClassifier()
        self.filename_validator = filename_validator or FilenameValidator(self.classifier)
        self.policy_engine = policy_engine

    @classmethod
    def from_settings(cls, settings: Settings) -> "UploadPipeline":
        config = ScanPolicyConfig.from_settings(settings)
        return cls(ScanPolicyEngine(config))

    async def process(
        self,
        data: Optional[Union[bytes, BinaryIO]],
        filename: Optional[str],
        declared_content_type: Optional[str] = None,
    ) -> PipelineDecision:
        """Run every stage for one upload and return its single decision."""
        candidate = UploadCandidate.from_upload(data, filename, declared_content_type)
        decision = await self._run(candidate)

        if isinstance(decision, UploadAccepted):
            logger.info(
                f"Upload accepted | File: {decision.filename} | "
                f"Type: {decision.content_type} | Size: {decision.file_size} bytes | "
                f"Scan: {decision.scan_outcome.status}"
                + (f" | Warning: {decision.warning}" if decision.warning else "")
            )
        else:
            logger.warning(
                f"Upload rejected | File: {filename or 'unknown'} | "
                f"Reason: {decision.reason_code.value} | {decision.message}"
            )

        return decision

    async def _run(self, candidate: UploadCandidate) -> PipelineDecision:
        # 1. Presence
        if candidate.source is None or candidate.size == 0:
            return self._reject(ReasonCode.NO_FILE, "No file provided")

        # 2. Size
        if candidate.size > self.MAX_FILE_SIZE:
            return self._reject(
                ReasonCode.TOO_LARGE,
                "File size exceeds 2MB limit",
                {"max_bytes": self.MAX_FILE_SIZE, "size": candidate.size},
            )

        # 3. Content type
        content_type = self.classifier.classify(
            candidate.head(self.classifier.SNIFF_SIZE), candidate.filename
        )
        candidate = candidate.model_copy(update={"content_type": content_type})

        # 4. Type / extension admissibility
        if content_type not in self.ALLOWED_CONTENT_TYPES:
            return self._reject(
                ReasonCode.UNSUPPORTED_TYPE,
                "File type not supported",
                {
                    "content_type": content_type,
                    "allowed_types": sorted(self.ALLOWED_CONTENT_TYPES),
                },
            )

        if content_type == ContentTypeClassifier.GENERIC_BINARY:
            verdict = self.filename_validator.check_extension(candidate.filename)
            if isinstance(verdict, VerdictRejected):
                return self._reject(
                    verdict.reason_code, verdict.message, {"content_type": content_type}
                )

        # 5. Filename
        verdict = self.filename_validator.validate(candidate.filename, content_type)
        if isinstance(verdict, VerdictRejected):
            return self._reject(
                verdict.reason_code, verdict.message, {"filename": candidate.filename}
            )

        # 6. Virus scan
        policy = await self.policy_engine.screen(candidate.source, candidate.filename)
        outcome = policy.outcome

        if not policy.allowed:
            if isinstance(outcome, ScanInfected):
                return self._reject(
                    ReasonCode.SCAN_INFECTED,
                    f"Virus detected: {outcome.threat_name}",
                    {"threat": outcome.threat_name},
                )
            return self._reject(
                ReasonCode.SCAN_UNAVAILABLE,
                "Virus scanning service unavailable, upload blocked",
                {"error": outcome.detail, "kind": outcome.kind},
            )

        # 7. Accept
        return UploadAccepted(
            filename=candidate.filename,
            content_type=content_type,
            file_size=candidate.size,
            scan_outcome=outcome,
            warning=policy.warning,
        )

    def _reject(
        self,
        reason_code: ReasonCode,
        message: str,
        detail: Optional[Dict[str, Any]] = None,
    ) -> UploadRejected:
        return UploadRejected(reason_code=reason_code, message=message, detail=detail or {})
