"""Parsing of the asset id carried in on-chain mint remarks."""

import re

# "12", "MintNFT#12", "MintNFT#12:ipfs://...", "12:ipfs://..."
_REMARK_RE = re.compile(r"^(?:[^#:]*#)?(\d+)(?::.*)?$", re.DOTALL)


def parse_asset_id(remark: str) -> int:
    """Extract the asset id from a mint remark.

    Raises:
        ValueError: If the remark carries no asset id
    """
    match = _REMARK_RE.match(remark.strip())
    if match is None:
        raise ValueError(
            f"Unable to parse asset id from remark {remark!r}. Expected '12', "
            "'MintNFT#12', 'MintNFT#12:tokenURL' or '12:tokenURL'"
        )
    return int(match.group(1))
