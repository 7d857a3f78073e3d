"""Withdrawal wallet address checks per payout network"""

import re
import logging
from typing import Optional, Tuple

logger = logging.getLogger(__name__)

MIN_ADDRESS_LENGTH = 10

SUPPORTED_NETWORKS = ("TON", "TRC20")

# TON user-friendly form: bounceable EQ / non-bounceable UQ, base64url, 48 chars
_TON_PATTERN = re.compile(r"^(EQ|UQ)[A-Za-z0-9_-]{46}$")
# USDT on Tron: starts with T, base58, 34 chars
_TRC20_PATTERN = re.compile(r"^T[1-9A-HJ-NP-Za-km-z]{33}$")


def detect_network(address: str) -> Optional[str]:
    """Network implied by the address format, or None if unrecognised"""
    if not address:
        return None
    address = address.strip()
    if _TON_PATTERN.match(address):
        return "TON"
    if _TRC20_PATTERN.match(address):
        return "TRC20"
    return None


def validate_wallet_address(address: str, network: str = "TON") -> Tuple[bool, str]:
    """
    Returns (is_valid, reason). reason is empty when valid.

    An unknown network only gets the minimum length check, so a new payout
    rail can be enabled before a format rule exists for it.
    """
    if not address or not isinstance(address, str):
        return False, "A valid wallet address is required"

    address = address.strip()
    if len(address) < MIN_ADDRESS_LENGTH:
        return False, "A valid wallet address is required"

    network = (network or "TON").upper()
    if network == "TON" and not _TON_PATTERN.match(address):
        return False, "Invalid TON wallet address"
    if network == "TRC20" and not _TRC20_PATTERN.match(address):
        return False, "Invalid TRC20 wallet address"
    if network not in SUPPORTED_NETWORKS:
        logger.warning(f"⚠️ WALLET_VALIDATION: no format rule for network {network}, length check only")

    return True, ""
