# app/x402/addresses.py
"""
Address handling for payers, recipients and settlement tokens.

All comparisons and stored values use the canonical lowercase form.
An address is syntactically valid when it is "0x" followed by 40 hex digits.
"""
import logging
import re
from typing import Any, Iterable, List, Optional, Union

logger = logging.getLogger(__name__)

ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")
TX_HASH_PATTERN = re.compile(r"^0x[0-9a-fA-F]{64}$")


def normalize_address(address: Optional[Any]) -> str:
    """Trim and lowercase an address. None becomes an empty string."""
    if address is None:
        return ""
    return str(address).strip().lower()


def is_valid_address(address: Optional[Any]) -> bool:
    """Check that the value looks like an EVM address."""
    if not address:
        return False
    return bool(ADDRESS_PATTERN.match(str(address).strip()))


def is_valid_tx_hash(tx_hash: Optional[Any]) -> bool:
    """Check that the value looks like a transaction hash."""
    if not tx_hash:
        return False
    return bool(TX_HASH_PATTERN.match(str(tx_hash).strip()))


def addresses_equal(left: Optional[Any], right: Optional[Any]) -> bool:
    """Case-insensitive address comparison."""
    return normalize_address(left) == normalize_address(right)


def parse_address_list(value: Union[str, Iterable[Any], None]) -> List[str]:
    """
    Parse an address list into normalized, de-duplicated addresses.

    Handles:
    - Comma-separated strings: "0xabc..., 0xdef..."
    - Lists of strings
    - Whitespace trimming and case folding

    Invalid entries are skipped with a warning. Order of first appearance is kept.

    Args:
        value: Comma-separated string or iterable of addresses

    Returns:
        List of normalized addresses
    """
    if value is None:
        return []

    if isinstance(value, str):
        items = value.split(",")
    else:
        try:
            items = list(value)
        except TypeError:
            logger.warning(f"Ignoring non-iterable address list: {value!r}")
            return []

    result: List[str] = []
    for item in items:
        address = normalize_address(item)
        if not address:
            continue
        if not is_valid_address(address):
            logger.warning(f"Invalid address in list: {item}")
            continue
        if address not in result:
            result.append(address)

    return result
