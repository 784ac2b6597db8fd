"""
Shared types, errors, and protocol constants for vTPM attestation.

This module is the canonical source for types used across the requester,
decoder, key builder and verifier. It has no intra-package dependencies, so
any module can import from it without risk of circular imports.
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional


# =============================================================================
# Protocol-level constants
# =============================================================================

NONCE_SIZE = 64        # configfs-tsm inblob for SEV-SNP (bytes)
REPORT_DATA_SIZE = 64  # SHA-512 digest carried in report_data (bytes)

# SVSM attestation service GUID for the vTPM
SVSM_VTPM_ATTEST_GUID = "c476f1eb-0123-45a5-9641-b4e7dde5bfe3"


# =============================================================================
# Pipeline stages
# =============================================================================

class Stage(str, Enum):
    """States of a single verification run"""
    IDLE = "idle"
    REQUESTING = "requesting"
    DECODING = "decoding"
    BUILDING_TEMPLATE = "building-template"
    DERIVING_DEVICE_KEY = "deriving-device-key"
    VERIFYING = "verifying"
    VERIFIED = "verified"
    FAILED = "failed"


class AsymmetricAlgorithm(str, Enum):
    """EK key types with a published default template"""
    RSA = "rsa"
    ECC = "ecc"


class VerificationFailure(str, Enum):
    KEY_MISMATCH = "key-mismatch"
    FRESHNESS_MISMATCH = "freshness-mismatch"


# =============================================================================
# Errors
# =============================================================================

class AttestationError(Exception):
    """Base class for attestation errors"""

    def __init__(self, message: str = "", stage: Optional[Stage] = None):
        super().__init__(message)
        self.stage = stage

    def __str__(self) -> str:
        message = super().__str__()
        if self.stage is not None:
            return f"[{self.stage.value}] {message}"
        return message

class RequestConfigError(ValueError):
    """Raised when an attestation request is misconfigured, before any I/O"""
    pass

class RequestError(AttestationError):
    """Raised when the configfs-tsm request fails"""
    pass

class ContextCreationError(RequestError):
    """Raised when the report request directory cannot be created"""
    pass

class AttributeWriteError(RequestError):
    """Raised when an input attribute cannot be written"""

    def __init__(self, attribute: str, message: str = "", stage: Optional[Stage] = None):
        super().__init__(message or f"failed to write attribute {attribute!r}", stage)
        self.attribute = attribute

class AttributeReadError(RequestError):
    """Raised when an output attribute cannot be read"""

    def __init__(self, attribute: str, message: str = "", stage: Optional[Stage] = None):
        super().__init__(message or f"failed to read attribute {attribute!r}", stage)
        self.attribute = attribute

class ArtifactError(AttestationError):
    """Raised when the raw report cannot be persisted"""
    pass

class DecodeError(AttestationError):
    """Raised when an attestation report cannot be decoded"""
    pass

class MalformedReportError(DecodeError, ValueError):
    """Raised when the report does not match the SEV-SNP binary layout"""
    pass

class TemplateError(AttestationError):
    """Raised when an EK template cannot be built"""
    pass

class UnsupportedAlgorithmError(TemplateError):
    """Raised when no default EK template exists for an algorithm"""
    pass

class KeyTransportError(AttestationError):
    """Raised when the TPM cannot be reached or refuses to derive the EK"""
    pass

class KeyMismatchError(AttestationError):
    """Raised when the manifest does not match the EK derived on the device"""
    pass

class FreshnessMismatchError(AttestationError):
    """Raised when report_data is not SHA-512(nonce || manifest)"""
    pass


# =============================================================================
# Data types
# =============================================================================

@dataclass
class VerificationVerdict:
    """Outcome of the key-match and hash-binding checks"""
    key_match: bool
    hash_match: bool
    expected_report_data: bytes
    report_data: bytes

    @property
    def verified(self) -> bool:
        return self.key_match and self.hash_match

    @property
    def failures(self) -> List[VerificationFailure]:
        failures = []
        if not self.key_match:
            failures.append(VerificationFailure.KEY_MISMATCH)
        if not self.hash_match:
            failures.append(VerificationFailure.FRESHNESS_MISMATCH)
        return failures

    def raise_for_failure(self) -> None:
        """
        Raise the error matching the first failed check.
        Key mismatch takes precedence over freshness mismatch.
        """
        if not self.key_match:
            raise KeyMismatchError(
                "EK public key in the manifest does not match the EK created on the vTPM",
                Stage.VERIFYING,
            )
        if not self.hash_match:
            raise FreshnessMismatchError(
                f"report_data mismatch: got {self.report_data.hex()}, "
                f"expected {self.expected_report_data.hex()}",
                Stage.VERIFYING,
            )

    def __str__(self) -> str:
        if self.verified:
            return "VerificationVerdict(verified)"
        return f"VerificationVerdict(failed: {', '.join(f.value for f in self.failures)})"
