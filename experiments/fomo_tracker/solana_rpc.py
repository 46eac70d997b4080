import logging
from typing import Optional

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment
from solders.pubkey import Pubkey

from errors import FailureKind, InvalidAddressFormat, UpstreamError

logger = logging.getLogger("SolanaRPC")

# Canonical base58 length of a mint public key.
MINT_ADDRESS_LENGTH = 44


def validate_address_length(address: str, min_length: int, max_length: int) -> str:
    if not isinstance(address, str) or not address or not (min_length <= len(address) <= max_length):
        raise InvalidAddressFormat(address)
    return address


def is_valid_mint_address(address: str, exact_length: int = MINT_ADDRESS_LENGTH) -> bool:
    """Strict check for on-chain paths: exact length plus a parseable base58 pubkey."""
    if not isinstance(address, str) or len(address) != exact_length:
        return False
    try:
        Pubkey.from_string(address)
    except ValueError:
        return False
    return True


class SolanaRpcClient:
    def __init__(self, rpc_url: str, commitment: str = "confirmed", client: Optional[AsyncClient] = None):
        self.rpc_url = rpc_url
        self.commitment = Commitment(commitment)
        self.client = client or AsyncClient(rpc_url, commitment=self.commitment)

    async def get_mint_info(self, address: str) -> dict:
        """Returns {'decimals', 'supply'} for a mint; supply is in UI units."""
        try:
            pubkey = Pubkey.from_string(address)
        except ValueError as e:
            raise InvalidAddressFormat(address) from e
        try:
            resp = await self.client.get_token_supply(pubkey)
        except Exception as e:
            raise UpstreamError(FailureKind.TRANSIENT, f"getTokenSupply failed for {address}: {e}", provider="solana") from e
        value = resp.value
        decimals = int(value.decimals)
        supply = float(value.amount) / (10 ** decimals) if decimals >= 0 else 0.0
        return {"decimals": decimals, "supply": supply}

    async def close(self):
        await self.client.close()
