from payrecon.utils.hashing import generate_hash, sha256_hex
from payrecon.utils.upi import mask_vpa, mask_utr, normalize_upi_instrument_variant, mask_upi_identifier

__all__ = [
    "generate_hash", "sha256_hex",
    "mask_vpa", "mask_utr", "normalize_upi_instrument_variant", "mask_upi_identifier",
]
