"""
Tests for the key-match and hash-binding checks.
"""

import hashlib

import pytest

from vtpm_attest.attestation.abi_sevsnp import decode_report
from vtpm_attest.attestation.types import (
    FreshnessMismatchError,
    KeyMismatchError,
    VerificationFailure,
)
from vtpm_attest.attestation.verify import report_data_digest, verify

from report_builder import build_report

NONCE = b'\xff' * 64
# Stand-in for a marshalled RSA 2048 EK public area
M0 = bytes((i * 7 + 3) & 0xff for i in range(256))


def flip_last_byte(data: bytes) -> bytes:
    return data[:-1] + bytes([data[-1] ^ 0xff])


def report_for(nonce: bytes, manifest: bytes):
    return decode_report(build_report(report_data=hashlib.sha512(nonce + manifest).digest()))


class TestReportDataDigest:

    def test_is_sha512_of_concatenation(self):
        assert report_data_digest(NONCE, M0) == hashlib.sha512(NONCE + M0).digest()

    def test_manifest_bit_flip_changes_digest(self):
        accepted = report_data_digest(NONCE, M0)
        flipped = bytearray(M0)
        flipped[100] ^= 0x01
        assert report_data_digest(NONCE, bytes(flipped)) != accepted

    def test_nonce_bit_flip_changes_digest(self):
        accepted = report_data_digest(NONCE, M0)
        nonce = bytearray(NONCE)
        nonce[0] ^= 0x80
        assert report_data_digest(bytes(nonce), M0) != accepted


class TestVerify:

    def test_fully_verified(self):
        """nonce 0xff*64, manifest M0, device EK M0"""
        verdict = verify(NONCE, M0, report_for(NONCE, M0), M0)
        assert verdict.key_match
        assert verdict.hash_match
        assert verdict.verified
        assert verdict.failures == []
        verdict.raise_for_failure()

    def test_key_mismatch_hash_still_matches(self):
        """The hash check uses the manifest, so only the key check fails"""
        verdict = verify(NONCE, M0, report_for(NONCE, M0), flip_last_byte(M0))
        assert not verdict.key_match
        assert verdict.hash_match
        assert not verdict.verified
        assert verdict.failures == [VerificationFailure.KEY_MISMATCH]
        with pytest.raises(KeyMismatchError):
            verdict.raise_for_failure()

    def test_zero_report_data(self):
        report = decode_report(build_report(report_data=b'\x00' * 64))
        verdict = verify(NONCE, M0, report, M0)
        assert verdict.key_match
        assert not verdict.hash_match
        assert verdict.failures == [VerificationFailure.FRESHNESS_MISMATCH]
        with pytest.raises(FreshnessMismatchError, match="report_data mismatch"):
            verdict.raise_for_failure()

    def test_zero_report_data_and_key_mismatch(self):
        report = decode_report(build_report(report_data=b'\x00' * 64))
        verdict = verify(NONCE, M0, report, flip_last_byte(M0))
        assert verdict.failures == [
            VerificationFailure.KEY_MISMATCH,
            VerificationFailure.FRESHNESS_MISMATCH,
        ]

    def test_tampered_manifest_fails_binding(self):
        report = report_for(NONCE, M0)
        tampered = bytearray(M0)
        tampered[0] ^= 0x01
        verdict = verify(NONCE, bytes(tampered), report, bytes(tampered))
        assert verdict.key_match
        assert not verdict.hash_match

    def test_replayed_report_with_new_nonce(self):
        report = report_for(NONCE, M0)
        verdict = verify(b'\x01' * 64, M0, report, M0)
        assert not verdict.hash_match

    @pytest.mark.parametrize("index", [0, 1, 128, 255])
    def test_any_byte_difference_fails_key_match(self, index):
        device = bytearray(M0)
        device[index] ^= 0x01
        assert not verify(NONCE, M0, report_for(NONCE, M0), bytes(device)).key_match

    def test_length_difference_fails_key_match(self):
        assert not verify(NONCE, M0, report_for(NONCE, M0), M0 + b'\x00').key_match

    def test_short_nonce_rejected(self):
        with pytest.raises(ValueError, match="expected 64"):
            verify(b'\xff' * 32, M0, report_for(NONCE, M0), M0)

    def test_verdict_str(self):
        verdict = verify(NONCE, M0, report_for(NONCE, M0), M0)
        assert str(verdict) == "VerificationVerdict(verified)"
