from .abi_sevsnp import Report, decode_report
from .tsm import AttestationRequest, request_report, generate_nonce
from .types import (
    AsymmetricAlgorithm,
    AttestationError,
    AttributeReadError,
    AttributeWriteError,
    ContextCreationError,
    DecodeError,
    FreshnessMismatchError,
    KeyMismatchError,
    KeyTransportError,
    MalformedReportError,
    RequestConfigError,
    RequestError,
    Stage,
    TemplateError,
    UnsupportedAlgorithmError,
    VerificationFailure,
    VerificationVerdict,
)
from .verify import verify

# ek, tpm and pipeline need tpm2-pytss and are imported from their modules.

__all__ = [
    'Report',
    'decode_report',
    'AttestationRequest',
    'request_report',
    'generate_nonce',
    'verify',
    'AsymmetricAlgorithm',
    'AttestationError',
    'AttributeReadError',
    'AttributeWriteError',
    'ContextCreationError',
    'DecodeError',
    'FreshnessMismatchError',
    'KeyMismatchError',
    'KeyTransportError',
    'MalformedReportError',
    'RequestConfigError',
    'RequestError',
    'Stage',
    'TemplateError',
    'UnsupportedAlgorithmError',
    'VerificationFailure',
    'VerificationVerdict',
]
