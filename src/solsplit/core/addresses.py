"""
Recipient address parsing.

Extracts base58 public keys from free-form text (pasted lists, CSV exports,
files) and validates individual addresses.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, List

from solders.pubkey import Pubkey

ADDRESS_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")

# Anything outside the base58 alphabet separates tokens
_SEPARATOR = re.compile(r"[^1-9A-HJ-NP-Za-km-z]+")


@dataclass
class ImportResult:
    """Outcome of parsing a block of text for addresses."""

    valid: List[str] = field(default_factory=list)
    invalid_count: int = 0
    duplicate_count: int = 0

    def summary(self) -> str:
        parts = [f"{len(self.valid)} address(es) imported"]
        if self.duplicate_count:
            parts.append(f"{self.duplicate_count} duplicate(s) skipped")
        if self.invalid_count:
            parts.append(f"{self.invalid_count} invalid token(s) ignored")
        return ", ".join(parts)


def is_valid_address(address: str) -> bool:
    """Check that a string looks like and decodes to a 32-byte public key."""
    if not ADDRESS_PATTERN.match(address):
        return False
    try:
        Pubkey.from_string(address)
    except ValueError:
        return False
    return True


def tokenize(raw: str) -> List[str]:
    """Split text on any run of non-base58 characters."""
    return [t for t in _SEPARATOR.split(raw.replace("\r", "\n")) if t]


def parse_addresses(raw: str) -> ImportResult:
    """
    Extract unique addresses from arbitrary text.

    Args:
        raw: Text containing addresses separated by anything

    Returns:
        ImportResult with addresses in first-seen order
    """
    result = ImportResult()
    seen = set()

    for token in tokenize(raw):
        if not ADDRESS_PATTERN.match(token):
            result.invalid_count += 1
            continue
        if token in seen:
            result.duplicate_count += 1
            continue
        seen.add(token)
        result.valid.append(token)

    return result


def merge_addresses(
    existing: Iterable[str],
    imported: Iterable[str],
    replace: bool = False,
) -> List[str]:
    """Append imported addresses to an existing list, or replace it."""
    base = [] if replace else [a.strip() for a in existing if a.strip()]
    seen = set(base)
    for address in imported:
        if address not in seen:
            seen.add(address)
            base.append(address)
    return base
