from dataclasses import dataclass
from enum import IntEnum
from typing import Optional

from .types import MalformedReportError, REPORT_DATA_SIZE

POLICY_RESERVED_1_BIT = 17
REPORT_SIZE = 0x4A0  # 1184 bytes
REPORT_DATA_OFFSET = 0x50
SIGNATURE_OFFSET = 0x2A0
ECDSA_RS_SIZE = 72
ECDSA_P384_SHA384_SIGNATURE_SIZE = ECDSA_RS_SIZE + ECDSA_RS_SIZE
SIGNATURE_ALGO_ECDSA_P384_SHA384 = 1

ZEN3ZEN4_FAMILY = 0x19
ZEN5_FAMILY     = 0x1A
MILAN_MODEL     = 0 | 1
GENOA_MODEL     = (1 << 4) | 1
TURIN_MODEL     = 2

class ReportSigner(IntEnum):
    VcekReportSigner = 0
    # VlekReportSigner is the SIGNING_KEY value for if the VLEK signed the attestation report.
    VlekReportSigner = 1
    endorseReserved2 = 2
    endorseReserved3 = 3
    endorseReserved4 = 4
    endorseReserved5 = 5
    endorseReserved6 = 6
    # NoneReportSigner is the SIGNING_KEY value for if the attestation report is not signed.
    NoneReportSigner = 7

@dataclass
class SignerInfo:
    """Signing circumstances for the attestation report."""
    signing_key: ReportSigner
    # Host enabled CHIP_ID masking, CHIP_ID is all zeros.
    mask_chip_key: bool
    # VM launched with an IDBLOCK that includes an author key.
    author_key_en: bool

    @classmethod
    def from_int(cls, value: int) -> "SignerInfo":
        return cls(
            signing_key=ReportSigner((value >> 2) & 7),
            mask_chip_key=(value & 2) != 0,
            author_key_en=(value & 1) != 0,
        )

@dataclass
class TCBParts:
    """Represents the decomposed parts of a TCB version"""
    ucode_spl: int
    snp_spl: int
    tee_spl: int
    bl_spl: int
    # Turin only
    fmc_spl: Optional[int] = None

    def __str__(self) -> str:
        # least-significant component first
        fmc = f"fmc_spl=0x{self.fmc_spl:02x}, " if self.fmc_spl is not None else ""
        return (
            "TCBParts("
            f"{fmc}"
            f"bl_spl=0x{self.bl_spl:02x}, "
            f"tee_spl=0x{self.tee_spl:02x}, "
            f"snp_spl=0x{self.snp_spl:02x}, "
            f"ucode_spl=0x{self.ucode_spl:02x})"
        )

    @classmethod
    def from_int(cls, tcb: int, turin: bool = False) -> "TCBParts":
        """
        Build a TCBParts instance from a 64-bit packed TCB value.

        Turin packs FMC, BL, TEE and SNP into the low four bytes; Milan and
        Genoa keep SNP next to the microcode SPL.
        """
        if turin:
            return cls(
                ucode_spl=((tcb >> 56) & 0xff),
                snp_spl=((tcb >> 24) & 0xff),
                tee_spl=((tcb >> 16) & 0xff),
                bl_spl=((tcb >> 8) & 0xff),
                fmc_spl=((tcb >> 0) & 0xff),
            )
        return cls(
            ucode_spl=((tcb >> 56) & 0xff),
            snp_spl=((tcb >> 48) & 0xff),
            tee_spl=((tcb >> 8) & 0xff),
            bl_spl=((tcb >> 0) & 0xff),
        )

@dataclass
class SnpPlatformInfo:
    """Decoded view of the 64-bit PLATFORM_INFO field."""

    smt_enabled: bool
    tsme_enabled: bool
    ecc_enabled: bool
    rapl_disabled: bool
    ciphertext_hiding_dram_enabled: bool
    alias_check_complete: bool
    tio_enabled: bool

    @classmethod
    def from_int(cls, value: int) -> "SnpPlatformInfo":
        return cls(
            smt_enabled=bool(value & (1 << 0)),
            tsme_enabled=bool(value & (1 << 1)),
            ecc_enabled=bool(value & (1 << 2)),
            rapl_disabled=bool(value & (1 << 3)),
            ciphertext_hiding_dram_enabled=bool(value & (1 << 4)),
            alias_check_complete=bool(value & (1 << 5)),
            tio_enabled=bool(value & (1 << 7))
        )


@dataclass
class SnpPolicy:
    """Decoded view of the 64-bit POLICY field (bits 0-25)."""

    abi_minor: int
    abi_major: int
    smt: bool
    migrate_ma: bool
    debug: bool
    single_socket: bool
    cxl_allowed: bool
    mem_aes256_xts: bool
    rapl_dis: bool
    ciphertext_hiding_dram: bool
    page_swap_disabled: bool

    @classmethod
    def from_int(cls, value: int) -> "SnpPolicy":
        """Parse the guest policy bit-field following AMD SEV-SNP spec."""
        return cls(
            abi_minor=value & 0xFF,
            abi_major=(value >> 8) & 0xFF,
            smt=bool(value & (1 << 16)),
            migrate_ma=bool(value & (1 << 18)),
            debug=bool(value & (1 << 19)),
            single_socket=bool(value & (1 << 20)),
            cxl_allowed=bool(value & (1 << 21)),
            mem_aes256_xts=bool(value & (1 << 22)),
            rapl_dis=bool(value & (1 << 23)),
            ciphertext_hiding_dram=bool(value & (1 << 24)),
            page_swap_disabled=bool(value & (1 << 25)),
        )

@dataclass
class Report:
    """SEV-SNP attestation report as returned in the configfs-tsm outblob"""
    version: int  # 2 for revision 1.55, 3 for revision 1.56, 5 for revision 1.58
    guest_svn: int
    policy: int
    policy_parsed: SnpPolicy
    family_id: bytes  # 16 bytes
    image_id: bytes   # 16 bytes
    vmpl: int
    signature_algo: int
    current_tcb: int
    platform_info: int
    platform_info_parsed: SnpPlatformInfo
    signer_info: int  # AuthorKeyEn, MaskChipKey, SigningKey
    signer_info_parsed: SignerInfo
    report_data: bytes  # 64 bytes, SHA-512(nonce || manifest) for the vTPM service
    measurement: bytes  # 48 bytes
    host_data: bytes   # 32 bytes
    id_key_digest: bytes  # 48 bytes
    author_key_digest: bytes  # 48 bytes
    report_id: bytes   # 32 bytes
    report_id_ma: bytes  # 32 bytes
    reported_tcb: int
    chip_id: bytes  # 64 bytes
    committed_tcb: int
    current_build: int
    current_minor: int
    current_major: int
    committed_build: int
    committed_minor: int
    committed_major: int
    launch_tcb: int
    # Report version 5 and later
    launch_mit_vector: Optional[int]
    current_mit_vector: Optional[int]
    signed_data: bytes
    signature: bytes  # 512 bytes
    family: Optional[int]
    model: Optional[int]
    stepping: Optional[int]
    product_name: str
    raw: bytes

    def __init__(self, data: bytes):
        """
        Parse an attestation report from raw bytes in SEV SNP ABI format.

        Args:
            data: Raw bytes of the attestation report
        Raises:
            MalformedReportError: If the bytes do not follow the report layout
        """

        if len(data) != REPORT_SIZE:
            raise MalformedReportError(
                f"Array size is 0x{len(data):x}, an SEV-SNP attestation report size is 0x{REPORT_SIZE:x}"
            )
        data = bytes(data)
        self.raw = data

        # All fields are little-endian
        self.version = int.from_bytes(data[0x00:0x04], byteorder='little')
        if self.version < 2:
            raise MalformedReportError(f"Unknown report version {self.version}")

        self.guest_svn = int.from_bytes(data[0x04:0x08], byteorder='little')
        self.policy = int.from_bytes(data[0x08:0x10], byteorder='little')

        if not (self.policy & (1 << POLICY_RESERVED_1_BIT)):
            raise MalformedReportError(f"policy[{POLICY_RESERVED_1_BIT}] is reserved, must be 1, got 0")
        if self.policy >> 26:
            raise MalformedReportError("policy bits 63-26 must be zero")

        self.family_id = data[0x10:0x20]
        self.image_id = data[0x20:0x30]
        self.vmpl = int.from_bytes(data[0x30:0x34], byteorder='little')
        self.signature_algo = int.from_bytes(data[0x34:0x38], byteorder='little')

        # The TCB layout depends on the product, so read CPUID first
        if self.version >= 3:
            self.family = data[0x188]
            self.model = data[0x189]
            self.stepping = data[0x18A]
        else:
            # CPUID fields were added in report version 3
            self.family = None
            self.model = None
            self.stepping = None
        self.product_name = _product_name(self.family, self.model)
        turin = self.family == ZEN5_FAMILY

        self.current_tcb = _read_tcb(data, 0x38, "current_tcb", turin)
        self.platform_info = int.from_bytes(data[0x40:0x48], byteorder='little')
        self.policy_parsed = SnpPolicy.from_int(self.policy)
        self.platform_info_parsed = SnpPlatformInfo.from_int(self.platform_info)

        self.signer_info = int.from_bytes(data[0x48:0x4C], byteorder='little')
        _check(mbz64, self.signer_info, "signer_info", 31, 5)
        self.signer_info_parsed = SignerInfo.from_int(self.signer_info)

        _check(mbz, data, 0x4C, REPORT_DATA_OFFSET)
        self.report_data = data[REPORT_DATA_OFFSET:REPORT_DATA_OFFSET + REPORT_DATA_SIZE]
        self.measurement = data[0x90:0xC0]
        self.host_data = data[0xC0:0xE0]
        self.id_key_digest = data[0xE0:0x110]
        self.author_key_digest = data[0x110:0x140]
        self.report_id = data[0x140:0x160]
        self.report_id_ma = data[0x160:0x180]
        self.reported_tcb = _read_tcb(data, 0x180, "reported_tcb", turin)
        _check(mbz, data, 0x18B if self.version >= 3 else 0x188, 0x1A0)

        self.chip_id = data[0x1A0:0x1E0]
        self.committed_tcb = _read_tcb(data, 0x1E0, "committed_tcb", turin)

        self.current_build = data[0x1E8]
        self.current_minor = data[0x1E9]
        self.current_major = data[0x1EA]
        _check(mbz, data, 0x1EB, 0x1EC)

        self.committed_build = data[0x1EC]
        self.committed_minor = data[0x1ED]
        self.committed_major = data[0x1EE]
        _check(mbz, data, 0x1EF, 0x1F0)

        self.launch_tcb = _read_tcb(data, 0x1F0, "launch_tcb", turin)

        mbz_lo = 0x1F8
        if self.version >= 5:
            self.launch_mit_vector = int.from_bytes(data[0x1F8:0x200], byteorder='little')
            self.current_mit_vector = int.from_bytes(data[0x200:0x208], byteorder='little')
            mbz_lo = 0x208
        else:
            self.launch_mit_vector = None
            self.current_mit_vector = None
        _check(mbz, data, mbz_lo, SIGNATURE_OFFSET)

        if self.signature_algo == SIGNATURE_ALGO_ECDSA_P384_SHA384:
            _check(mbz, data, SIGNATURE_OFFSET + ECDSA_P384_SHA384_SIGNATURE_SIZE, REPORT_SIZE)

        self.signed_data = data[0:SIGNATURE_OFFSET]
        self.signature = data[SIGNATURE_OFFSET:REPORT_SIZE]

    def to_bytes(self) -> bytes:
        """Return the report in its binary form."""
        return self.signed_data + self.signature

    def get_fms(self):
        return self.family, self.model, self.stepping

    def print_report(self):
        """Print all relevant fields of the SEV-SNP attestation report in a human-readable format."""
        turin = self.family == ZEN5_FAMILY
        print("=== SEV-SNP Attestation Report ===")
        print(f"Version: {self.version}")
        print(f"Guest SVN: {self.guest_svn}")
        print(f"Policy: 0x{self.policy:x}")
        print(f"  -> {self.policy_parsed}")
        print(f"Family ID: {self.family_id.hex()}")
        print(f"Image ID: {self.image_id.hex()}")
        print(f"VMPL: {self.vmpl}")
        print(f"Signature Algorithm: {self.signature_algo}")
        print(f"Current TCB: 0x{self.current_tcb:x}")
        print(f"  -> {TCBParts.from_int(self.current_tcb, turin)}")
        print(f"Platform Info: 0x{self.platform_info:x}")
        print(f"  -> {self.platform_info_parsed}")
        print(f"Signer Info: 0x{self.signer_info:x}")
        print(f"  - Signing Key: {self.signer_info_parsed.signing_key.name}")
        print(f"  - Mask Chip Key: {self.signer_info_parsed.mask_chip_key}")
        print(f"  - Author Key Enabled: {self.signer_info_parsed.author_key_en}")
        print(f"Report Data: {self.report_data.hex()}")
        print(f"Measurement: {self.measurement.hex()}")
        print(f"Host Data: {self.host_data.hex()}")
        print(f"ID Key Digest: {self.id_key_digest.hex()}")
        print(f"Author Key Digest: {self.author_key_digest.hex()}")
        print(f"Report ID: {self.report_id.hex()}")
        print(f"Report ID MA: {self.report_id_ma.hex()}")
        print(f"Reported TCB: 0x{self.reported_tcb:x}")
        print(f"  -> {TCBParts.from_int(self.reported_tcb, turin)}")
        print(f"Chip ID: {self.chip_id.hex()}")
        print(f"Committed TCB: 0x{self.committed_tcb:x}")
        print(f"  -> {TCBParts.from_int(self.committed_tcb, turin)}")
        print(f"Current Version: {self.current_major}.{self.current_minor}.{self.current_build}")
        print(f"Committed Version: {self.committed_major}.{self.committed_minor}.{self.committed_build}")
        print(f"Launch TCB: 0x{self.launch_tcb:x}")
        print(f"  -> {TCBParts.from_int(self.launch_tcb, turin)}")
        if self.launch_mit_vector is not None:
            print(f"Launch Mitigation Vector: 0x{self.launch_mit_vector:x}")
            print(f"Current Mitigation Vector: 0x{self.current_mit_vector:x}")
        print(f"Product Name: {self.product_name}")
        if self.family is not None:
            print(f"CPU: Family=0x{self.family:02x}, Model=0x{self.model:02x}, Stepping=0x{self.stepping:02x}")
        print(f"Signature Length: {len(self.signature)} bytes")
        print("=" * 40)


def decode_report(raw: bytes) -> Report:
    """
    Decode the configfs-tsm outblob into a Report.

    Raises:
        MalformedReportError: If the length or layout is wrong
    """
    return Report(raw)

## HELPER FUNCTIONS

def _product_name(family: Optional[int], model: Optional[int]) -> str:
    if family == ZEN3ZEN4_FAMILY:
        if model == MILAN_MODEL:
            return "Milan"
        if model == GENOA_MODEL:
            return "Genoa"
    elif family == ZEN5_FAMILY:
        if model == TURIN_MODEL:
            return "Turin"
    return "Unknown"

def _read_tcb(data: bytes, offset: int, name: str, turin: bool = False) -> int:
    tcb = int.from_bytes(data[offset:offset + 8], byteorder='little')
    try:
        if turin:
            mbz64(tcb, name, 55, 32)
        else:
            mbz64(tcb, name, 47, 16)
    except ValueError as e:
        raise MalformedReportError(f"{name} not correctly formed: {e}") from e
    return tcb

def _check(check, *args) -> None:
    try:
        check(*args)
    except ValueError as e:
        raise MalformedReportError(f"report not correctly formed: {e}") from e

def find_non_zero(data: bytes, lo: int, hi: int) -> int:
    """
    Returns the first index which is not zero, otherwise returns hi.
    """
    for i in range(lo, hi):
        if data[i] != 0:
            return i
    return hi

def mbz(data: bytes, lo: int, hi: int) -> None:
    """
    Checks if a range of bytes is all zeros.

    Args:
        data: Bytes object to check
        lo: Starting index (inclusive)
        hi: Ending index (exclusive)
    Raises:
        ValueError: If any byte in the range is non-zero
    """
    if find_non_zero(data, lo, hi) != hi:
        raise ValueError(f"mbz range [0x{lo:x}:0x{hi:x}] not all zero: {data[lo:hi].hex()}")

def mbz64(data: int, base: str, hi: int, lo: int) -> None:
    """
    Checks if a range of bits in an integer is all zeros.

    Args:
        data: Integer to check
        base: String identifier for error message
        hi: Highest bit position (inclusive)
        lo: Lowest bit position (inclusive)
    Raises:
        ValueError: If any bit in the range is non-zero
    """
    mask = (1 << (hi - lo + 1)) - 1
    if (data >> lo) & mask:
        raise ValueError(f"mbz range {base}[0x{lo:x}:0x{hi:x}] not all zero: {hex(data)}")
