"""Bundled contract ABIs."""

import json
from functools import lru_cache
from pathlib import Path

ABI_DIR = Path(__file__).parent


@lru_cache(maxsize=None)
def get_contract_abi(contract_name: str = "HakuNFT") -> list[dict]:
    """Return the ABI stored as ``<contract_name>.json`` in this package.

    Raises:
        FileNotFoundError: Unknown contract name
    """
    abi_path = ABI_DIR / f"{contract_name}.json"
    if not abi_path.is_file():
        raise FileNotFoundError(f"No ABI bundled for contract {contract_name!r} ({abi_path})")
    return json.loads(abi_path.read_text())
