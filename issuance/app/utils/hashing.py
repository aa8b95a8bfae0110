"""
Canonical serialization and integrity digests.

The integrity digest anchors a document's NFT metadata on the ledger.
It is computed over the canonical JSON bytes of the metadata object
(sorted keys, no insignificant whitespace, UTF-8) so that any party
holding the metadata can recompute it byte-for-byte.

IMPORTANT DESIGN RULE:
- ``canonical_json_bytes`` is the only serializer used before hashing.
- ``compute_integrity_digest`` hashes bytes, and bytes only.
"""

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Union
from uuid import UUID

from web3 import Web3


def _canonical_json_default(obj: Any) -> str:
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    raise TypeError(
        f"Object of type {obj.__class__.__name__} is not JSON serializable"
    )


def canonical_json_bytes(payload: Dict[str, Any]) -> bytes:
    return json.dumps(
        payload,
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        default=_canonical_json_default,
    ).encode("utf-8")


def compute_integrity_digest(canonical_bytes: Union[bytes, bytearray]) -> str:
    """
    Keccak-256 over canonical bytes, as a 0x-prefixed 32-byte hex string.

    The format is directly usable as a ``bytes32`` contract argument.
    """
    if not isinstance(canonical_bytes, (bytes, bytearray)):
        raise TypeError(
            "compute_integrity_digest expects canonical bytes, "
            f"got {type(canonical_bytes).__name__}"
        )

    return Web3.to_hex(Web3.keccak(bytes(canonical_bytes)))
