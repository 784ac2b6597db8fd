"""
Tests for the configfs-tsm report requester.
"""

import os
from pathlib import Path

import pytest
from unittest.mock import patch

from vtpm_attest.attestation.tsm import (
    AttestationRequest,
    TsmReportContext,
    generate_nonce,
    request_report,
)
from vtpm_attest.attestation.types import (
    AttributeReadError,
    AttributeWriteError,
    ContextCreationError,
    NONCE_SIZE,
    RequestConfigError,
    RequestError,
    SVSM_VTPM_ATTEST_GUID,
)

NONCE = b'\xff' * 64
REPORT = b'\x01' * 1184
MANIFEST = b'\x02' * 314


class FakeConfigfsContext:
    """Records attribute writes and serves canned outputs"""
    instances = []

    def __init__(self, tsm_path, outputs=None, fail_write=None):
        self.tsm_path = tsm_path
        self.outputs = {"outblob": REPORT, "manifestblob": MANIFEST} if outputs is None else outputs
        self.fail_write = fail_write
        self.writes = []
        self.closed = False
        FakeConfigfsContext.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.closed = True
        return False

    def write_attribute(self, attribute, value):
        if attribute == self.fail_write:
            raise AttributeWriteError(attribute)
        self.writes.append((attribute, value))

    def read_attribute(self, attribute):
        if attribute not in self.outputs:
            raise AttributeReadError(attribute)
        return self.outputs[attribute]


@pytest.fixture(autouse=True)
def reset_instances():
    FakeConfigfsContext.instances = []


class TestAttestationRequest:

    def test_current_provider(self):
        request = AttestationRequest.from_options(False, NONCE)
        assert request.service_provider == "svsm"
        assert not request.svsm_attribute
        assert request.provider_attribute() == ("service_provider", b"svsm")

    def test_legacy_provider(self):
        request = AttestationRequest.from_options(True, NONCE)
        assert request.svsm_attribute
        assert request.service_provider is None
        assert request.provider_attribute() == ("svsm", b"1")

    def test_both_provider_forms_rejected(self):
        with pytest.raises(RequestConfigError, match="mutually exclusive"):
            AttestationRequest(nonce=NONCE, svsm_attribute=True, service_provider="svsm")

    def test_no_provider_rejected(self):
        with pytest.raises(RequestConfigError, match="no provider"):
            AttestationRequest(nonce=NONCE)

    def test_nonce_length(self):
        with pytest.raises(RequestConfigError, match="expected 64"):
            AttestationRequest.from_options(False, b'\xff' * 63)

    @pytest.mark.parametrize("guid", ["", "not-a-guid", "c476f1eb012345a59641b4e7dde5bfe3",
                                      "g476f1eb-0123-45a5-9641-b4e7dde5bfe3"])
    def test_invalid_guid(self, guid):
        with pytest.raises(RequestConfigError):
            AttestationRequest.from_options(False, NONCE, guid)

    def test_default_guid(self):
        assert AttestationRequest.from_options(False, NONCE).service_guid == SVSM_VTPM_ATTEST_GUID

    def test_generate_nonce(self):
        first, second = generate_nonce(), generate_nonce()
        assert len(first) == NONCE_SIZE
        assert first != second


class TestRequestReport:

    def test_writes_inputs_and_reads_outputs(self):
        request = AttestationRequest.from_options(False, NONCE)
        report, manifest = request_report(request, "/tsm", context_factory=FakeConfigfsContext)

        assert report == REPORT
        assert manifest == MANIFEST
        ctx = FakeConfigfsContext.instances[0]
        assert ctx.tsm_path == "/tsm"
        assert ctx.writes == [
            ("service_provider", b"svsm"),
            ("inblob", NONCE),
            ("service_guid", SVSM_VTPM_ATTEST_GUID.encode()),
        ]
        assert ctx.closed

    def test_legacy_attribute(self):
        request = AttestationRequest.from_options(True, NONCE)
        request_report(request, "/tsm", context_factory=FakeConfigfsContext)
        writes = dict(FakeConfigfsContext.instances[0].writes)
        assert writes["svsm"] == b"1"
        assert "service_provider" not in writes

    def test_write_failure_releases_context(self):
        request = AttestationRequest.from_options(False, NONCE)
        factory = lambda path: FakeConfigfsContext(path, fail_write="inblob")
        with pytest.raises(AttributeWriteError) as exc_info:
            request_report(request, "/tsm", context_factory=factory)
        assert exc_info.value.attribute == "inblob"
        assert FakeConfigfsContext.instances[0].closed

    def test_read_failure_releases_context(self):
        request = AttestationRequest.from_options(False, NONCE)
        factory = lambda path: FakeConfigfsContext(path, outputs={"outblob": REPORT})
        with pytest.raises(AttributeReadError) as exc_info:
            request_report(request, "/tsm", context_factory=factory)
        assert exc_info.value.attribute == "manifestblob"
        assert isinstance(exc_info.value, RequestError)
        assert FakeConfigfsContext.instances[0].closed


class TestTsmReportContext:

    def test_creates_and_removes_directory(self, tmp_path):
        with TsmReportContext(str(tmp_path)) as ctx:
            assert ctx.path.is_dir()
            assert ctx.path.parent == tmp_path
            created = ctx.path
        assert not created.exists()
        assert list(tmp_path.iterdir()) == []

    def test_unique_names(self, tmp_path):
        with TsmReportContext(str(tmp_path)) as first, TsmReportContext(str(tmp_path)) as second:
            assert first.path != second.path

    def test_removed_on_error(self, tmp_path):
        with pytest.raises(RuntimeError):
            with TsmReportContext(str(tmp_path)):
                raise RuntimeError("boom")
        assert list(tmp_path.iterdir()) == []

    def test_missing_root(self, tmp_path):
        with pytest.raises(ContextCreationError, match="failed to create report request"):
            with TsmReportContext(str(tmp_path / "missing")):
                pass

    def test_write_failure(self, tmp_path):
        with TsmReportContext(str(tmp_path)) as ctx:
            with patch.object(Path, "write_bytes", side_effect=PermissionError("denied")):
                with pytest.raises(AttributeWriteError, match="inblob"):
                    ctx.write_attribute("inblob", NONCE)

    def test_read_missing_attribute(self, tmp_path):
        with TsmReportContext(str(tmp_path)) as ctx:
            with pytest.raises(AttributeReadError, match="outblob"):
                ctx.read_attribute("outblob")

    def test_read_empty_attribute(self, tmp_path):
        ctx = TsmReportContext(str(tmp_path)).__enter__()
        try:
            (ctx.path / "manifestblob").write_bytes(b"")
            with pytest.raises(AttributeReadError, match="empty"):
                ctx.read_attribute("manifestblob")
        finally:
            os.remove(ctx.path / "manifestblob")
            ctx.close()
        assert list(tmp_path.iterdir()) == []

    def test_round_trip_on_plain_directory(self, tmp_path):
        ctx = TsmReportContext(str(tmp_path)).__enter__()
        try:
            ctx.write_attribute("outblob", REPORT)
            assert ctx.read_attribute("outblob") == REPORT
        finally:
            os.remove(ctx.path / "outblob")
            ctx.close()

    def test_close_failure_is_logged(self, tmp_path, caplog):
        ctx = TsmReportContext(str(tmp_path)).__enter__()
        leftover = ctx.path / "outblob"
        leftover.write_bytes(b"x")
        ctx.close()
        assert "Failed to remove report request directory" in caplog.text
        assert ctx.path is None
