import argparse
import logging
import sys

from .attestation.pipeline import AttestationPipeline, DEFAULT_REPORT_PATH
from .attestation.tpm import TpmKeyTransport
from .attestation.tsm import DEFAULT_TSM_REPORT_PATH, generate_nonce
from .attestation.types import (
    AsymmetricAlgorithm,
    AttestationError,
    NONCE_SIZE,
    RequestConfigError,
)


def _nonce(value: str) -> bytes:
    try:
        nonce = bytes.fromhex(value)
    except ValueError:
        raise argparse.ArgumentTypeError("nonce must be hex encoded")
    if len(nonce) != NONCE_SIZE:
        raise argparse.ArgumentTypeError(f"nonce must be {NONCE_SIZE} bytes, got {len(nonce)}")
    return nonce


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="vtpm-attest",
        description="Verify the SVSM vTPM attestation report obtained through configfs-tsm",
    )
    parser.add_argument('-s', '--svsm-attribute', action='store_true',
                        help='Use configfs-tsm svsm attribute, required by pre v6.10 kernels')
    parser.add_argument('-a', '--algorithm',
                        choices=[a.value for a in AsymmetricAlgorithm],
                        default=AsymmetricAlgorithm.RSA.value,
                        help='EK template algorithm')
    parser.add_argument('--tcti',
                        help='TCTI configuration, defaults to $TCTI or device:/dev/tpmrm0')
    parser.add_argument('--tsm-path', default=DEFAULT_TSM_REPORT_PATH,
                        help='configfs-tsm report directory')
    parser.add_argument('-o', '--output', default=DEFAULT_REPORT_PATH,
                        help='File receiving the raw attestation report')
    parser.add_argument('--nonce', type=_nonce,
                        help='Hex encoded 64-byte nonce, random if not given. Only for testing')
    parser.add_argument('-v', '--verbose', action='store_true',
                        help='Log blobs and print the decoded report')
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        format='%(message)s',
        level=logging.DEBUG if args.verbose else logging.INFO
    )

    nonce = args.nonce if args.nonce is not None else generate_nonce()
    if args.svsm_attribute:
        logging.info("Using configfs-tsm svsm attribute found in pre Linux v6.10")
    else:
        logging.info("Using configfs-tsm service_provider attribute added in Linux v6.10")

    pipeline = AttestationPipeline(
        use_legacy_provider_attribute=args.svsm_attribute,
        algorithm=args.algorithm,
        tsm_path=args.tsm_path,
        report_path=args.output,
        transport=TpmKeyTransport(args.tcti),
    )

    try:
        result = pipeline.run(nonce)
    except RequestConfigError as e:
        logging.error(f"Invalid request: {e}")
        return 1
    except AttestationError as e:
        logging.error(f"Attestation failed: {e}")
        return 1

    if args.verbose:
        result.report.print_report()

    if not result.verified:
        for failure in result.verdict.failures:
            logging.error(f"Verification failed: {failure.value}")
        return 1

    logging.info("Verification successful!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
