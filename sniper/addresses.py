import logging
import re
from typing import Iterable, List, Mapping, Optional, Pattern

import base58
from web3 import Web3

log = logging.getLogger(__name__)

# shape of legacy / base58 encodings; bech32 forms are checked separately
ADDRESS_PATTERNS = {
    "LTC": r"[LM3][a-km-zA-HJ-NP-Z1-9]{26,33}",
    "BTC": r"[13][a-km-zA-HJ-NP-Z1-9]{25,34}",
    "SOL": r"[1-9A-HJ-NP-Za-km-z]{32,44}",
    "ETH": r"0x[0-9a-fA-F]{40}",
}

BECH32_PATTERNS = {
    "LTC": re.compile(r"ltc1[ac-hj-np-z02-9]{35,60}"),
    "BTC": re.compile(r"bc1[ac-hj-np-z02-9]{39,59}"),
}

_STRIP_CHARS = "`<>.,;:\"'!?()[]{}*_|~"

_compiled_cache = {}


def _compiled(pattern: str) -> Pattern:
    compiled = _compiled_cache.get(pattern)
    if compiled is None:
        compiled = re.compile(pattern)
        _compiled_cache[pattern] = compiled
    return compiled


def _is_bech32(token: str, chain: str) -> bool:
    pattern = BECH32_PATTERNS.get(chain)
    if pattern is None:
        return False
    # bech32 is single-case; mixed case is malformed
    if token != token.lower() and token != token.upper():
        return False
    return pattern.fullmatch(token.lower()) is not None


def _base58check_ok(token: str) -> bool:
    try:
        base58.b58decode_check(token)
    except ValueError:
        return False
    return True


def _solana_key_ok(token: str) -> bool:
    try:
        return len(base58.b58decode(token)) == 32
    except ValueError:
        return False


def _evm_checksum_ok(token: str) -> bool:
    body = token[2:]
    if body == body.lower() or body == body.upper():
        return True
    return bool(Web3.is_checksum_address(token))


def is_valid_address(
    token: str,
    chain: str,
    patterns: Optional[Mapping[str, str]] = None,
    *,
    checksum: bool = False,
) -> bool:
    """Shape check for ``chain``; ``checksum`` also verifies base58check on LTC/BTC legacy forms."""
    if not isinstance(token, str) or not token:
        return False
    chain = (chain or "").upper()
    override = (patterns or {}).get(chain)
    if override:
        return _compiled(override).fullmatch(token) is not None
    if _is_bech32(token, chain):
        return True
    shape = ADDRESS_PATTERNS.get(chain)
    if shape is None or _compiled(shape).fullmatch(token) is None:
        return False
    if chain == "SOL":
        return _solana_key_ok(token)
    if chain == "ETH":
        return _evm_checksum_ok(token)
    if checksum:
        return _base58check_ok(token)
    return True


def canonical_address(address: str, chain: str) -> str:
    """Normalise an address for comparisons and payment fingerprints."""
    chain = (chain or "").upper()
    if chain == "ETH" or _is_bech32(address, chain):
        return address.lower()
    return address


def find_crypto_addresses(
    text: str,
    chain: str,
    patterns: Optional[Mapping[str, str]] = None,
    *,
    checksum: bool = False,
) -> List[str]:
    if not isinstance(text, str):
        return []
    found = []
    for word in text.split():
        cleaned = word.strip(_STRIP_CHARS)
        if cleaned and is_valid_address(cleaned, chain, patterns, checksum=checksum):
            found.append(cleaned)
    return found


def extract_crypto_address(
    text: str,
    chain: str,
    patterns: Optional[Mapping[str, str]] = None,
    exclude: Iterable[str] = (),
    *,
    checksum: bool = False,
) -> Optional[str]:
    """Return the first well-formed address for ``chain`` in ``text``.

    Addresses listed in ``exclude`` (compared canonically) are skipped, which
    is how handlers keep the bot's own receive address from ever being picked
    as a recipient.
    """
    excluded = {canonical_address(item, chain) for item in exclude if item}
    for candidate in find_crypto_addresses(text, chain, patterns, checksum=checksum):
        if canonical_address(candidate, chain) in excluded:
            continue
        return candidate
    return None
