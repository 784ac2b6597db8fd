"""
TPM access through the tpm2-tss Enhanced System API.
"""

import logging
import os
from typing import Mapping, Optional

from tpm2_pytss import ESAPI, TSS2_Exception
from tpm2_pytss.constants import ESYS_TR
from tpm2_pytss.types import TPM2B_PUBLIC, TPM2B_SENSITIVE_CREATE

from .types import KeyTransportError

logger = logging.getLogger(__name__)

TCTI_ENV = "TCTI"
TPMRM_DEVICE = "/dev/tpmrm0"
TPM_DEVICE = "/dev/tpm0"


def resolve_tcti(override: Optional[str] = None, environ: Mapping[str, str] = os.environ) -> str:
    """
    Pick the TCTI configuration string.

    An explicit value wins, then the TCTI environment variable, then the
    in-kernel resource manager if present, then the raw TPM device.
    """
    if override:
        return override
    if environ.get(TCTI_ENV):
        return environ[TCTI_ENV]
    if os.path.exists(TPMRM_DEVICE):
        return f"device:{TPMRM_DEVICE}"
    return f"device:{TPM_DEVICE}"


class TpmKeyTransport:
    """Creates primary keys on a TPM reachable through a TCTI"""

    def __init__(self, tcti: Optional[str] = None):
        self.tcti = resolve_tcti(tcti)

    def create_primary_public(
        self,
        template: TPM2B_PUBLIC,
        hierarchy: ESYS_TR = ESYS_TR.ENDORSEMENT,
    ) -> bytes:
        """
        Create a primary key from *template* and return its marshalled public area.

        Authorization uses the password session with empty auth, which is
        what the default endorsement hierarchy expects. The transient key is
        flushed before returning.

        Raises:
            KeyTransportError: If the TCTI cannot be opened or the TPM
                rejects the command
        """
        logger.info(f"Creating primary key in hierarchy {hierarchy} using TCTI {self.tcti}")
        try:
            ectx = ESAPI(self.tcti)
        except (TSS2_Exception, OSError, RuntimeError) as e:
            raise KeyTransportError(f"failed to open TPM using TCTI {self.tcti}: {e}") from e

        try:
            with ectx:
                handle, out_public, _, _, _ = ectx.create_primary(
                    TPM2B_SENSITIVE_CREATE(),
                    template,
                    hierarchy,
                    session1=ESYS_TR.PASSWORD,
                )
                try:
                    return out_public.publicArea.marshal()
                finally:
                    ectx.flush_context(handle)
        except TSS2_Exception as e:
            raise KeyTransportError(f"TPM command failed: {e}") from e
