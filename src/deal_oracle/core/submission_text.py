"""
Submission Text Parsing

Free-text submissions may carry their payout address and proof links inline:

    - first point
    - second point
    - third point
    payout_address: 0x0123...abcd
    proof_links: https://developers.circle.com/..., https://example.org/demo
"""

import re
from typing import List, Optional

from .errors import ValidationError

PAYOUT_ADDRESS_RE = re.compile(r"0x[0-9a-fA-F]{40}")

_PAYOUT_LINE_RE = re.compile(r"payout_address\s*:\s*(\S+)", re.IGNORECASE)
_BARE_ADDRESS_RE = re.compile(r"(?<![0-9A-Za-z])(0x[0-9a-fA-F]{40})(?![0-9A-Za-z])")
_PROOF_LINE_RE = re.compile(r"^\s*proof_links\s*:\s*(.+)$", re.IGNORECASE | re.MULTILINE)


def is_valid_payout_address(address: Optional[str]) -> bool:
    """Exactly 0x followed by 40 hex characters."""
    return bool(address) and PAYOUT_ADDRESS_RE.fullmatch(address) is not None


def parse_payout_address(text: Optional[str]) -> Optional[str]:
    """
    Extract a payout address from submission text.

    A "payout_address:" line wins over a bare address elsewhere in the text.
    A labelled address that is not exactly 40 hex digits is rejected rather
    than silently skipped.
    """
    if not text:
        return None

    labelled = _PAYOUT_LINE_RE.search(text)
    if labelled:
        candidate = labelled.group(1).rstrip(".,;")
        if not is_valid_payout_address(candidate):
            raise ValidationError(
                f"Malformed payout address {candidate!r}: expected 0x followed by 40 hex characters"
            )
        return candidate

    bare = _BARE_ADDRESS_RE.search(text)
    return bare.group(1) if bare else None


def resolve_payout_address(explicit: Optional[str], text: Optional[str]) -> str:
    """Return the explicit address if given, else the one parsed from text."""
    if explicit:
        explicit = explicit.strip()
        if not is_valid_payout_address(explicit):
            raise ValidationError(
                f"Malformed payout address {explicit!r}: expected 0x followed by 40 hex characters"
            )
        return explicit

    parsed = parse_payout_address(text)
    if not parsed:
        raise ValidationError(
            "Missing payout address: pass payout_address or include 'payout_address: 0x...' in the text"
        )
    return parsed


def _split_csv(value: str) -> List[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


def parse_proof_links(text: Optional[str], proof_links_csv: Optional[str] = None) -> List[str]:
    """Merge CSV links with a 'proof_links:' line, de-duplicated in order."""
    links: List[str] = []
    if proof_links_csv:
        links.extend(_split_csv(proof_links_csv))
    if text:
        match = _PROOF_LINE_RE.search(text)
        if match:
            links.extend(_split_csv(match.group(1)))
    return list(dict.fromkeys(links))
