"""
Cross-checks of the vTPM attestation evidence.

The SVSM vTPM service binds its EK to the hardware report by placing
SHA-512(nonce || manifest) in REPORT_DATA, where the manifest is the
marshalled EK public area. Two independent checks follow:

* key match: the manifest equals the public area of the EK the vTPM creates
  from the default template;
* hash binding: REPORT_DATA equals SHA-512(nonce || manifest).
"""

import logging

from cryptography.hazmat.primitives import constant_time, hashes

from .abi_sevsnp import Report
from .types import NONCE_SIZE, VerificationVerdict

logger = logging.getLogger(__name__)


def report_data_digest(nonce: bytes, manifest: bytes) -> bytes:
    """SHA-512 over the nonce immediately followed by the manifest."""
    hasher = hashes.Hash(hashes.SHA512())
    hasher.update(nonce)
    hasher.update(manifest)
    return hasher.finalize()


def verify(
    nonce: bytes,
    manifest: bytes,
    report: Report,
    device_ek_public: bytes,
) -> VerificationVerdict:
    """
    Run both checks and return the verdict. Mismatches do not raise.

    Args:
        nonce: The 64-byte nonce written to inblob for this run
        manifest: Raw manifestblob
        report: Decoded attestation report
        device_ek_public: Marshalled EK public area created on the vTPM

    Raises:
        ValueError: If the nonce is not 64 bytes
    """
    if len(nonce) != NONCE_SIZE:
        raise ValueError(f"nonce is {len(nonce)} bytes, expected {NONCE_SIZE}")

    key_match = constant_time.bytes_eq(bytes(manifest), bytes(device_ek_public))
    if key_match:
        logger.info("EK public key in the manifest matches the one created in the vTPM")
    else:
        logger.error("EK public key in the manifest does not match the one created in the vTPM")

    expected = report_data_digest(nonce, manifest)
    logger.debug(f"SHA-512(nonce || manifest): {expected.hex()}")
    logger.debug(f"report.report_data: {report.report_data.hex()}")
    hash_match = constant_time.bytes_eq(expected, bytes(report.report_data))
    if hash_match:
        logger.info("SHA-512(nonce || manifest) matches report_data")
    else:
        logger.error("SHA-512(nonce || manifest) does not match report_data")

    return VerificationVerdict(
        key_match=key_match,
        hash_match=hash_match,
        expected_report_data=expected,
        report_data=bytes(report.report_data),
    )
