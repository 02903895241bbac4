"""Stacks blockchain integration via the Hiro API.

This module provides:
- Transaction status lookups (``/extended/v1/tx/{txid}``)
- sBTC token balances (``/extended/v1/tokens/ft/{contract}/balances/{address}``)
- Ephemeral secp256k1 deposit keys with c32check Stacks addresses
- Deposit broadcast through a configured signing relay
"""

import hashlib

import httpx
import structlog
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from stacksgate.core.config import Settings
from stacksgate.core.exceptions import ChainUnavailable, ConfigurationError
from stacksgate.integrations.chain import ChainTxStatus, DepositKey
from stacksgate.schemas.payments import TransactionStatus

logger = structlog.get_logger(__name__)

NETWORKS = {
    "mainnet": {
        "api_url": "https://api.mainnet.hiro.so",
        "token_contract": "SP3DX3H4FEYZJZ586MFBS25ZW3HZDMEW92260R2PR.sbtc-token",
        "address_version": 22,  # SP, single-sig p2pkh
    },
    "testnet": {
        "api_url": "https://api.testnet.hiro.so",
        "token_contract": "ST1F7QA2MDF17S807EPA36TSS8AMEFY4KA9TVGWXT.sbtc-token",
        "address_version": 26,  # ST
    },
}

FAILED_TX_STATUSES = frozenset({
    "abort_by_response",
    "abort_by_post_condition",
    "dropped_replace_by_fee",
    "dropped_replace_across_fork",
    "dropped_too_expensive",
    "dropped_stale_garbage_collect",
    "dropped_problematic",
})

C32_ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"


def _c32_encode(data: bytes) -> str:
    number = int.from_bytes(data, "big")
    encoded = ""
    while number > 0:
        number, remainder = divmod(number, 32)
        encoded = C32_ALPHABET[remainder] + encoded
    leading_zero_bytes = len(data) - len(data.lstrip(b"\x00"))
    return "0" * leading_zero_bytes + encoded


def c32_address(version: int, hash160: bytes) -> str:
    """Encode a 20-byte hash as a c32check Stacks address."""
    if not 0 <= version < 32:
        raise ValueError(f"Invalid c32 version: {version}")
    checksum = hashlib.sha256(hashlib.sha256(bytes([version]) + hash160).digest()).digest()[:4]
    return "S" + C32_ALPHABET[version] + _c32_encode(hash160 + checksum)


def hash160(data: bytes) -> bytes:
    return hashlib.new("ripemd160", hashlib.sha256(data).digest()).digest()


class StacksClient:
    """Client for the Hiro Stacks API."""

    def __init__(
        self,
        network: str = "testnet",
        api_url: str | None = None,
        token_contract: str | None = None,
        relay_url: str | None = None,
        timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize Stacks client.

        Args:
            network: ``mainnet`` or ``testnet``
            api_url: Override for the Hiro API base URL
            token_contract: Override for the sBTC token contract id
            relay_url: Signing relay that broadcasts deposits; None disables broadcast
            timeout: Per-request timeout in seconds
            transport: httpx transport (tests inject MockTransport)
        """
        if network not in NETWORKS:
            raise ConfigurationError(f"Unknown Stacks network: {network}")

        defaults = NETWORKS[network]
        self.network = network
        self.api_url = (api_url or defaults["api_url"]).rstrip("/")
        self.token_contract = token_contract or defaults["token_contract"]
        self.address_version = defaults["address_version"]
        self.relay_url = relay_url.rstrip("/") if relay_url else None
        self.timeout = timeout
        self.transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "StacksClient":
        return cls(
            network=settings.stacks_network,
            api_url=settings.stacks_api_url or None,
            token_contract=settings.sbtc_token_contract or None,
            relay_url=settings.sbtc_deposit_relay_url or None,
            timeout=settings.chain_request_timeout,
        )

    async def _get(self, client: httpx.AsyncClient, path: str) -> httpx.Response:
        try:
            return await client.get(f"{self.api_url}{path}")
        except httpx.HTTPError as exc:
            raise ChainUnavailable(f"Stacks API request failed: {exc}") from exc

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout,
            transport=self.transport,
            headers={"Accept": "application/json"},
        )

    async def get_transaction_status(self, reference: str) -> ChainTxStatus:
        async with self._client() as client:
            response = await self._get(client, f"/extended/v1/tx/{reference}")

            if response.status_code == 404:
                # Not indexed yet: still in flight as far as we can tell
                return ChainTxStatus(txid=reference, status=TransactionStatus.PENDING)
            if response.status_code >= 400:
                raise ChainUnavailable(f"Stacks API error ({response.status_code}): {response.text[:200]}")

            try:
                data = response.json()
                tx_status = data["tx_status"]
            except (ValueError, KeyError, TypeError) as exc:
                raise ChainUnavailable(f"Malformed transaction response for {reference}") from exc

            block_height = data.get("block_height") if data.get("is_unanchored") is not True else None

            if tx_status == "success":
                confirmations = data.get("confirmations")
                if confirmations is None and block_height is not None:
                    confirmations = await self._confirmations_since(client, block_height)
                return ChainTxStatus(
                    txid=data.get("tx_id", reference),
                    status=TransactionStatus.CONFIRMED,
                    confirmations=confirmations or 1,
                    block_height=block_height,
                )

            if tx_status in FAILED_TX_STATUSES:
                tx_result = data.get("tx_result") or {}
                return ChainTxStatus(
                    txid=data.get("tx_id", reference),
                    status=TransactionStatus.FAILED,
                    block_height=block_height,
                    error=tx_result.get("repr") or tx_status,
                )

            return ChainTxStatus(
                txid=data.get("tx_id", reference),
                status=TransactionStatus.PENDING,
                confirmations=data.get("confirmations") or 0,
                block_height=block_height,
            )

    async def _confirmations_since(self, client: httpx.AsyncClient, block_height: int) -> int:
        response = await self._get(client, "/v2/info")
        if response.status_code >= 400:
            raise ChainUnavailable(f"Stacks API error ({response.status_code}) reading chain tip")
        try:
            tip = int(response.json()["stacks_tip_height"])
        except (ValueError, KeyError, TypeError) as exc:
            raise ChainUnavailable("Malformed chain info response") from exc
        return max(1, tip - block_height + 1)

    async def get_token_balance(self, address: str) -> int:
        async with self._client() as client:
            response = await self._get(client, f"/extended/v1/tokens/ft/{self.token_contract}/balances/{address}")

        if response.status_code == 404:
            return 0
        if response.status_code >= 400:
            raise ChainUnavailable(f"Stacks API error ({response.status_code}) fetching balance")
        try:
            return int(response.json().get("balance") or 0)
        except (ValueError, AttributeError) as exc:
            raise ChainUnavailable(f"Malformed balance response for {address}") from exc

    async def broadcast_deposit(self, amount_sats: int, recipient: str, private_key: str) -> str:
        """Hand a deposit to the signing relay and return its transaction id."""
        if not self.relay_url:
            raise ChainUnavailable("No sBTC deposit relay configured")

        async with self._client() as client:
            try:
                response = await client.post(
                    f"{self.relay_url}/deposits",
                    json={
                        "network": self.network,
                        "amount_sats": amount_sats,
                        "recipient": recipient,
                        "private_key": private_key,
                    },
                )
            except httpx.HTTPError as exc:
                raise ChainUnavailable(f"Deposit relay request failed: {exc}") from exc

        if response.status_code >= 400:
            raise ChainUnavailable(f"Deposit relay error ({response.status_code}): {response.text[:200]}")
        try:
            txid = response.json()["txid"]
        except (ValueError, KeyError, TypeError) as exc:
            raise ChainUnavailable("Malformed deposit relay response") from exc

        logger.info("sbtc_deposit_broadcast", txid=txid, amount_sats=amount_sats, recipient=recipient)
        return txid

    def generate_deposit_address(self) -> DepositKey:
        key = ec.generate_private_key(ec.SECP256K1())
        public = key.public_key().public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.CompressedPoint,
        )
        secret = key.private_numbers().private_value.to_bytes(32, "big")
        return DepositKey(
            address=c32_address(self.address_version, hash160(public)),
            private_key=secret.hex() + "01",
        )
