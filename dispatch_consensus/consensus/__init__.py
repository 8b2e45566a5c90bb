"""
Consensus core: payload scanning and the price/mismatch update.

- payload: reads and writes the ``Lambda=...,Mismatch=..., end`` text
- updater: the diminishing-step dual update and stopping rule
"""

from .payload import (
    ExtractedUpdate,
    FieldResult,
    FieldSpec,
    extract_field,
    extract_update,
    format_update_payload,
    get_lambda,
    get_mismatch,
)
from .updater import DEFAULT_MODEL, EconomicModel, UpdateResult, consensus_update, step_size

__all__ = [
    "ExtractedUpdate",
    "FieldResult",
    "FieldSpec",
    "extract_field",
    "extract_update",
    "format_update_payload",
    "get_lambda",
    "get_mismatch",
    "DEFAULT_MODEL",
    "EconomicModel",
    "UpdateResult",
    "consensus_update",
    "step_size",
]
