"""
SVSM vTPM attestation orchestration.

Runs one verification: request the report through configfs-tsm, decode it,
derive the EK on the vTPM from the default template and cross-check
everything. Each run moves through the stages in ``Stage`` and ends in
``VERIFIED`` or ``FAILED``; nothing is retried.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple, Union

from .abi_sevsnp import Report, decode_report
from .ek import build_ek_template
from .tpm import TpmKeyTransport
from .tsm import AttestationRequest, DEFAULT_TSM_REPORT_PATH, request_report
from .types import (
    ArtifactError,
    AsymmetricAlgorithm,
    AttestationError,
    RequestConfigError,
    SVSM_VTPM_ATTEST_GUID,
    Stage,
    VerificationVerdict,
)
from .verify import verify

logger = logging.getLogger(__name__)

DEFAULT_REPORT_PATH = "report.bin"

Requester = Callable[[AttestationRequest, str], Tuple[bytes, bytes]]


@dataclass
class PipelineResult:
    """Artifacts and verdict of one completed run"""
    stage: Stage
    verdict: VerificationVerdict
    report: Report
    raw_report: bytes
    manifest: bytes
    device_ek_public: bytes

    @property
    def verified(self) -> bool:
        return self.stage == Stage.VERIFIED


class AttestationPipeline:
    """
    Verifies the vTPM EK of an SVSM-hosted confidential VM.

    Stage errors are raised as ``AttestationError`` subclasses with
    ``stage`` set to the stage that failed. Verification mismatches are not
    errors: ``run`` returns a result in ``Stage.FAILED`` carrying the verdict.
    """

    def __init__(
        self,
        use_legacy_provider_attribute: bool = False,
        algorithm: Union[AsymmetricAlgorithm, str] = AsymmetricAlgorithm.RSA,
        tsm_path: str = DEFAULT_TSM_REPORT_PATH,
        report_path: Optional[str] = DEFAULT_REPORT_PATH,
        service_guid: str = SVSM_VTPM_ATTEST_GUID,
        transport: Optional[TpmKeyTransport] = None,
        requester: Requester = request_report,
    ):
        self.use_legacy_provider_attribute = use_legacy_provider_attribute
        self.algorithm = algorithm
        self.tsm_path = tsm_path
        self.report_path = report_path
        self.service_guid = service_guid
        self.transport = transport
        self.requester = requester
        self.stage = Stage.IDLE

    def _enter(self, stage: Stage) -> None:
        logger.debug(f"Stage {self.stage.value} -> {stage.value}")
        self.stage = stage

    def run(self, nonce: bytes) -> PipelineResult:
        """
        Run the whole verification with a caller-supplied nonce.

        The nonce must be fresh for every run; a fixed nonce only makes sense
        as a test fixture.
        """
        try:
            return self._run(nonce)
        except AttestationError as e:
            if e.stage is None:
                e.stage = self.stage
            self._enter(Stage.FAILED)
            raise
        except RequestConfigError:
            self._enter(Stage.FAILED)
            raise

    def _run(self, nonce: bytes) -> PipelineResult:
        self._enter(Stage.REQUESTING)
        request = AttestationRequest.from_options(
            self.use_legacy_provider_attribute, nonce, self.service_guid
        )
        logger.info("Getting vTPM attestation report from SVSM using configfs-tsm")
        raw_report, manifest = self.requester(request, self.tsm_path)
        self._persist(raw_report)

        self._enter(Stage.DECODING)
        report = decode_report(raw_report)

        self._enter(Stage.BUILDING_TEMPLATE)
        template = build_ek_template(self.algorithm)
        logger.debug(f"EK template: {template.publicArea.marshal().hex()}")

        self._enter(Stage.DERIVING_DEVICE_KEY)
        transport = self.transport if self.transport is not None else TpmKeyTransport()
        device_ek_public = transport.create_primary_public(template)
        logger.debug(f"EK public from vTPM: {device_ek_public.hex()}")

        self._enter(Stage.VERIFYING)
        verdict = verify(nonce, manifest, report, device_ek_public)

        self._enter(Stage.VERIFIED if verdict.verified else Stage.FAILED)
        return PipelineResult(
            stage=self.stage,
            verdict=verdict,
            report=report,
            raw_report=raw_report,
            manifest=manifest,
            device_ek_public=device_ek_public,
        )

    def _persist(self, raw_report: bytes) -> None:
        if not self.report_path:
            return
        try:
            Path(self.report_path).write_bytes(raw_report)
        except OSError as e:
            raise ArtifactError(f"failed to write report to {self.report_path}: {e}") from e
        logger.info(f"Wrote attestation report to {self.report_path}")
