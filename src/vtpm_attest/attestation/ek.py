"""
Default EK templates from the TCG EK Credential Profile.

The templates are the "low range" ones (L-1 for RSA 2048, L-2 for NIST P-256)
that a TPM uses when no template is provisioned in NV. Creating a primary key
under the endorsement hierarchy from one of them yields the EK, so the public
area the TPM returns can be compared with the one the SVSM vouches for.
"""

from typing import Union

from tpm2_pytss.constants import TPM2_ALG, TPM2_ECC_CURVE, TPMA_OBJECT
from tpm2_pytss.types import (
    TPM2B_DIGEST,
    TPM2B_ECC_PARAMETER,
    TPM2B_PUBLIC,
    TPM2B_PUBLIC_KEY_RSA,
    TPMS_ECC_PARMS,
    TPMS_ECC_POINT,
    TPMS_RSA_PARMS,
    TPMT_ECC_SCHEME,
    TPMT_KDF_SCHEME,
    TPMT_PUBLIC,
    TPMT_RSA_SCHEME,
    TPMT_SYM_DEF_OBJECT,
    TPMU_PUBLIC_ID,
    TPMU_PUBLIC_PARMS,
    TPMU_SYM_KEY_BITS,
    TPMU_SYM_MODE,
)

from .types import AsymmetricAlgorithm, UnsupportedAlgorithmError

# PolicySecret(TPM_RH_ENDORSEMENT) with SHA-256
EK_AUTH_POLICY = bytes.fromhex(
    "837197674484b3f81a90cc8d46a5d724fd52d76e06520b64f2a1da1b331469aa"
)

EK_OBJECT_ATTRIBUTES = (
    TPMA_OBJECT.FIXEDTPM
    | TPMA_OBJECT.FIXEDPARENT
    | TPMA_OBJECT.SENSITIVEDATAORIGIN
    | TPMA_OBJECT.ADMINWITHPOLICY
    | TPMA_OBJECT.RESTRICTED
    | TPMA_OBJECT.DECRYPT
)

RSA_KEY_BITS = 2048
RSA_UNIQUE_SIZE = RSA_KEY_BITS // 8
ECC_P256_UNIQUE_SIZE = 32
SYMMETRIC_KEY_BITS = 128


def _aes128_cfb() -> TPMT_SYM_DEF_OBJECT:
    return TPMT_SYM_DEF_OBJECT(
        algorithm=TPM2_ALG.AES,
        keyBits=TPMU_SYM_KEY_BITS(aes=SYMMETRIC_KEY_BITS),
        mode=TPMU_SYM_MODE(aes=TPM2_ALG.CFB),
    )


def _rsa2048_template() -> TPMT_PUBLIC:
    return TPMT_PUBLIC(
        type=TPM2_ALG.RSA,
        nameAlg=TPM2_ALG.SHA256,
        objectAttributes=EK_OBJECT_ATTRIBUTES,
        authPolicy=TPM2B_DIGEST(EK_AUTH_POLICY),
        parameters=TPMU_PUBLIC_PARMS(
            rsaDetail=TPMS_RSA_PARMS(
                symmetric=_aes128_cfb(),
                scheme=TPMT_RSA_SCHEME(scheme=TPM2_ALG.NULL),
                keyBits=RSA_KEY_BITS,
                exponent=0,
            )
        ),
        unique=TPMU_PUBLIC_ID(rsa=TPM2B_PUBLIC_KEY_RSA(b"\x00" * RSA_UNIQUE_SIZE)),
    )


def _ecc_p256_template() -> TPMT_PUBLIC:
    return TPMT_PUBLIC(
        type=TPM2_ALG.ECC,
        nameAlg=TPM2_ALG.SHA256,
        objectAttributes=EK_OBJECT_ATTRIBUTES,
        authPolicy=TPM2B_DIGEST(EK_AUTH_POLICY),
        parameters=TPMU_PUBLIC_PARMS(
            eccDetail=TPMS_ECC_PARMS(
                symmetric=_aes128_cfb(),
                scheme=TPMT_ECC_SCHEME(scheme=TPM2_ALG.NULL),
                curveID=TPM2_ECC_CURVE.NIST_P256,
                kdf=TPMT_KDF_SCHEME(scheme=TPM2_ALG.NULL),
            )
        ),
        unique=TPMU_PUBLIC_ID(
            ecc=TPMS_ECC_POINT(
                x=TPM2B_ECC_PARAMETER(b"\x00" * ECC_P256_UNIQUE_SIZE),
                y=TPM2B_ECC_PARAMETER(b"\x00" * ECC_P256_UNIQUE_SIZE),
            )
        ),
    )


_TEMPLATES = {
    AsymmetricAlgorithm.RSA: _rsa2048_template,
    AsymmetricAlgorithm.ECC: _ecc_p256_template,
}


def build_ek_template(algorithm: Union[AsymmetricAlgorithm, str]) -> TPM2B_PUBLIC:
    """
    Build the default EK template for *algorithm*.

    The result only depends on the algorithm; no TPM is involved.

    Raises:
        UnsupportedAlgorithmError: If the profile has no default template
            for the algorithm
    """
    try:
        algorithm = AsymmetricAlgorithm(algorithm)
    except ValueError as e:
        raise UnsupportedAlgorithmError(f"no default EK template for algorithm {algorithm!r}") from e
    return TPM2B_PUBLIC(publicArea=_TEMPLATES[algorithm]())
