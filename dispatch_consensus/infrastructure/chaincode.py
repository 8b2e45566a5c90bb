"""
Chaincode semantics shared by the ledger transports.

Submitting ``SendUpdate(lambda, mismatch)`` as org ``X`` emits an event
named ``XSendUpdate`` whose payload carries the org, its round counter and
both values. Entries are hash-chained so any later edit is detectable.
"""

import hashlib
import json
from typing import Optional, Sequence

from ..consensus.payload import format_update_payload
from ..errors import BroadcastError
from .transport import SEND_UPDATE

GENESIS_HASH = "0" * 64


def event_name_for(org: str, function_name: str) -> str:
    return f"{org}{function_name}"


def invoke(org: str, function_name: str, args: Sequence[str], round_number: int) -> tuple[str, str]:
    """
    Run a chaincode function and return the (event name, payload) it emits.

    Raises:
        BroadcastError: unknown function or arguments the contract rejects
    """
    if function_name != SEND_UPDATE:
        raise BroadcastError(f"chaincode has no function {function_name!r}", function_name)
    if len(args) != 2:
        raise BroadcastError(
            f"{SEND_UPDATE} expects 2 arguments (lambda, mismatch), got {len(args)}",
            function_name,
        )
    try:
        price, mismatch = (float(a) for a in args)
    except (TypeError, ValueError) as e:
        raise BroadcastError(f"{SEND_UPDATE} arguments must be numeric: {e}", function_name) from e

    try:
        payload = format_update_payload(org, price, mismatch, iteration=round_number)
    except ValueError as e:
        raise BroadcastError(str(e), function_name) from e
    return event_name_for(org, function_name), payload


def compute_entry_hash(
    block_number: int,
    source_topic: str,
    payload: str,
    tx_id: str,
    previous_hash: Optional[str],
) -> str:
    """SHA-256 over the entry content and the previous entry's hash."""
    content = json.dumps(
        {
            "block_number": block_number,
            "source_topic": source_topic,
            "payload": payload,
            "tx_id": tx_id,
            "previous_hash": previous_hash or GENESIS_HASH,
        },
        sort_keys=True,
    )
    return hashlib.sha256(content.encode("utf-8")).hexdigest()
