"""
Report requests through the Linux configfs-tsm interface.

A request is a directory created under the configfs report root. Writing the
input attributes and then reading ``outblob`` makes the kernel forward the
request to the selected provider (the SVSM) and return the signed report. For
SVSM service requests the kernel also exposes the service manifest in
``manifestblob``; for the vTPM service this is the marshalled EK public area.
"""

import logging
import os
import secrets
import tempfile
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, Tuple

from .types import (
    AttributeReadError,
    AttributeWriteError,
    ContextCreationError,
    NONCE_SIZE,
    RequestConfigError,
    SVSM_VTPM_ATTEST_GUID,
)

logger = logging.getLogger(__name__)

DEFAULT_TSM_REPORT_PATH = "/sys/kernel/config/tsm/report"

# Attribute names
SVSM_ATTRIBUTE = "svsm"                  # pre Linux v6.10
SERVICE_PROVIDER_ATTRIBUTE = "service_provider"  # Linux v6.10+
INBLOB_ATTRIBUTE = "inblob"
SERVICE_GUID_ATTRIBUTE = "service_guid"
OUTBLOB_ATTRIBUTE = "outblob"
MANIFESTBLOB_ATTRIBUTE = "manifestblob"

SVSM_PROVIDER = "svsm"


def generate_nonce() -> bytes:
    """Return a fresh random nonce for a single request."""
    return secrets.token_bytes(NONCE_SIZE)


@dataclass(frozen=True)
class AttestationRequest:
    """
    Inputs of one configfs-tsm report request.

    Exactly one provider selector form must be set: either the legacy
    ``svsm`` flag attribute or a ``service_provider`` name.
    """
    nonce: bytes
    service_guid: str = SVSM_VTPM_ATTEST_GUID
    svsm_attribute: bool = False
    service_provider: Optional[str] = None

    def __post_init__(self):
        if self.svsm_attribute and self.service_provider is not None:
            raise RequestConfigError(
                "svsm attribute and service_provider are mutually exclusive, select one"
            )
        if not self.svsm_attribute and not self.service_provider:
            raise RequestConfigError("no provider selected: set svsm_attribute or service_provider")
        if len(self.nonce) != NONCE_SIZE:
            raise RequestConfigError(f"nonce is {len(self.nonce)} bytes, expected {NONCE_SIZE}")
        if len(self.service_guid) != 36:
            raise RequestConfigError(f"service GUID must be 36 characters, got {self.service_guid!r}")
        try:
            uuid.UUID(self.service_guid)
        except ValueError as e:
            raise RequestConfigError(f"invalid service GUID {self.service_guid!r}: {e}") from e

    @classmethod
    def from_options(
        cls,
        use_legacy_provider_attribute: bool,
        nonce: bytes,
        service_guid: str = SVSM_VTPM_ATTEST_GUID,
    ) -> "AttestationRequest":
        if use_legacy_provider_attribute:
            return cls(nonce=nonce, service_guid=service_guid, svsm_attribute=True)
        return cls(nonce=nonce, service_guid=service_guid, service_provider=SVSM_PROVIDER)

    def provider_attribute(self) -> Tuple[str, bytes]:
        """Attribute name and value selecting the provider."""
        if self.svsm_attribute:
            return SVSM_ATTRIBUTE, b"1"
        return SERVICE_PROVIDER_ATTRIBUTE, self.service_provider.encode()


class TsmReportContext:
    """
    A uniquely named configfs-tsm report directory.

    Use as a context manager: the directory is removed on exit whether or
    not the request succeeded. configfs attribute files cannot be unlinked,
    so removal is a plain ``rmdir``.
    """

    def __init__(self, tsm_path: str = DEFAULT_TSM_REPORT_PATH):
        self.tsm_path = tsm_path
        self.path: Optional[Path] = None

    def __enter__(self) -> "TsmReportContext":
        try:
            self.path = Path(tempfile.mkdtemp(prefix="vtpm-", dir=self.tsm_path))
        except OSError as e:
            raise ContextCreationError(
                f"failed to create report request under {self.tsm_path}: {e}"
            ) from e
        logger.debug(f"Report request directory: {self.path}")
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
        return False

    def close(self) -> None:
        if self.path is None:
            return
        path, self.path = self.path, None
        try:
            os.rmdir(path)
        except OSError as e:
            logger.warning(f"Failed to remove report request directory {path}: {e}")

    def write_attribute(self, attribute: str, value: bytes) -> None:
        try:
            (self.path / attribute).write_bytes(value)
        except OSError as e:
            raise AttributeWriteError(attribute, f"failed to write attribute {attribute!r}: {e}") from e

    def read_attribute(self, attribute: str) -> bytes:
        try:
            value = (self.path / attribute).read_bytes()
        except OSError as e:
            raise AttributeReadError(attribute, f"failed to read attribute {attribute!r}: {e}") from e
        if not value:
            raise AttributeReadError(attribute, f"attribute {attribute!r} is empty")
        return value


def request_report(
    request: AttestationRequest,
    tsm_path: str = DEFAULT_TSM_REPORT_PATH,
    context_factory: Callable[[str], TsmReportContext] = TsmReportContext,
) -> Tuple[bytes, bytes]:
    """
    Request a vTPM attestation report from the SVSM.

    Args:
        request: Validated request inputs
        tsm_path: configfs-tsm report root
        context_factory: Builds the request context (injectable for tests)

    Returns:
        Tuple of (raw report, raw manifest)

    Raises:
        RequestError: If the context cannot be created or an attribute
            cannot be written or read. Not retried: the request context is
            single use.
    """
    with context_factory(tsm_path) as ctx:
        attribute, value = request.provider_attribute()
        logger.info(f"Selecting provider with configfs-tsm attribute {attribute!r}")
        ctx.write_attribute(attribute, value)
        ctx.write_attribute(INBLOB_ATTRIBUTE, request.nonce)
        ctx.write_attribute(SERVICE_GUID_ATTRIBUTE, request.service_guid.encode())

        report = ctx.read_attribute(OUTBLOB_ATTRIBUTE)
        logger.debug(f"outblob ({len(report)} bytes): {report.hex()}")
        manifest = ctx.read_attribute(MANIFESTBLOB_ATTRIBUTE)
        logger.debug(f"manifest ({len(manifest)} bytes): {manifest.hex()}")

    return report, manifest
