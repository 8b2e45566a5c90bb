"""
Field scanner for ledger event payloads.

Peers publish their coordination variables as free-form text, e.g.::

    Org=Org2, Iteration=7, Lambda=4.9055, Mismatch=-0.0031, end

A field ``F`` is the run of ``0-9 . -`` characters directly after the
literal ``F=`` that is directly followed by the field's terminator. The
scanner never raises: anything it cannot read is reported as not found and
callers decide what to do about it.
"""

import math
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

NUMERIC_CHARS = frozenset("0123456789.-")
FALLBACK_VALUE = 0.0


@dataclass(frozen=True)
class FieldSpec:
    """A named numeric field and the text that must follow its value."""
    name: str
    terminator: str = ","

    @property
    def marker(self) -> str:
        return f"{self.name}="


LAMBDA = FieldSpec("Lambda", ",")
MISMATCH = FieldSpec("Mismatch", ", end")
ITERATION = FieldSpec("Iteration", ",")


@dataclass(frozen=True)
class FieldResult:
    """Outcome of scanning one field: a value, or the reason there is none."""
    name: str
    value: Optional[float] = None
    reason: Optional[str] = None

    @property
    def found(self) -> bool:
        return self.value is not None

    def value_or(self, default: float = FALLBACK_VALUE) -> float:
        return self.value if self.value is not None else default

    @classmethod
    def not_found(cls, name: str, reason: str) -> "FieldResult":
        return cls(name=name, value=None, reason=reason)


@dataclass(frozen=True)
class ExtractedUpdate:
    """Peer coordination variables read from one event."""
    price: float
    mismatch: float
    iteration: Optional[int] = None
    source: Optional[str] = None
    missing: tuple[str, ...] = field(default_factory=tuple)

    @property
    def complete(self) -> bool:
        return not self.missing


def _scan_run(payload: str, start: int) -> int:
    end = start
    while end < len(payload) and payload[end] in NUMERIC_CHARS:
        end += 1
    return end


def extract_field(payload: str, spec: FieldSpec) -> FieldResult:
    """
    Find the first well-terminated occurrence of ``spec`` in ``payload``.

    Occurrences whose numeric run is empty or not followed by the
    terminator are skipped. The first candidate that is terminated
    correctly decides the result, even if its text is not a valid float.
    """
    if not isinstance(payload, str):
        return FieldResult.not_found(spec.name, "payload is not text")

    marker = spec.marker
    position = payload.find(marker)
    while position != -1:
        start = position + len(marker)
        end = _scan_run(payload, start)
        if end > start and payload.startswith(spec.terminator, end):
            text = payload[start:end]
            try:
                value = float(text)
            except ValueError:
                return FieldResult.not_found(spec.name, f"malformed number {text!r}")
            return FieldResult(name=spec.name, value=value)
        position = payload.find(marker, position + 1)

    return FieldResult.not_found(spec.name, f"no '{marker}' value ending in {spec.terminator!r}")


def extract_source(payload: str) -> Optional[str]:
    """Return the ``Org=`` tag of a payload, if any."""
    if not isinstance(payload, str):
        return None
    start = payload.find("Org=")
    if start == -1:
        return None
    start += len("Org=")
    end = payload.find(",", start)
    source = payload[start:] if end == -1 else payload[start:end]
    return source.strip() or None


def extract_update(payload: str) -> ExtractedUpdate:
    """
    Read a peer's (price, mismatch) pair.

    Missing fields fall back to 0 and are listed in ``missing`` so the
    caller can choose between using the fallback, skipping, or aborting.
    """
    price = extract_field(payload, LAMBDA)
    mismatch = extract_field(payload, MISMATCH)
    iteration = extract_field(payload, ITERATION)

    missing = tuple(r.name for r in (price, mismatch) if not r.found)
    return ExtractedUpdate(
        price=price.value_or(),
        mismatch=mismatch.value_or(),
        iteration=int(iteration.value) if iteration.found and iteration.value.is_integer() else None,
        source=extract_source(payload),
        missing=missing,
    )


def get_lambda(payload: str) -> float:
    return extract_field(payload, LAMBDA).value_or()


def get_mismatch(payload: str) -> float:
    return extract_field(payload, MISMATCH).value_or()


def get_iteration(payload: str) -> float:
    return extract_field(payload, ITERATION).value_or()


def format_number(value: float) -> str:
    """
    Render ``value`` as a positional decimal that parses back exactly.

    ``repr`` switches to exponent notation for small and large magnitudes,
    which the scanner cannot read, so the shortest repr is re-expanded.
    """
    value = float(value)
    if not math.isfinite(value):
        raise ValueError(f"cannot broadcast non-finite value {value!r}")
    text = repr(value)
    if "e" in text or "E" in text:
        text = format(Decimal(text), "f")
    return text


def format_update_payload(
    source: str,
    price: float,
    mismatch: float,
    iteration: Optional[int] = None,
) -> str:
    """Build the payload text a ``SendUpdate`` event carries."""
    parts = [f"Org={source}"]
    if iteration is not None:
        parts.append(f"Iteration={int(iteration)}")
    parts.append(f"Lambda={format_number(price)}")
    parts.append(f"Mismatch={format_number(mismatch)}")
    parts.append("end")
    return ", ".join(parts)
