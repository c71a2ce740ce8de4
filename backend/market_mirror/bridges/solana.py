"""
Market Mirror - Solana Bridge

JSON-RPC client (httpx) and transaction helpers (solders) for the one write
the backend makes to the program: finalize_market.

Accounts for finalize_market, in order:
    global_config      PDA ["global-config"], read-only
    market             the market account, writable
    backend_authority  signer; must equal GlobalConfig.backend_authority
"""

import asyncio
import base64
import json
import logging
from typing import Any, Optional

import httpx
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from market_mirror.indexer.events import Instruction as ProgramInstruction

logger = logging.getLogger(__name__)

GLOBAL_CONFIG_SEED = b"global-config"

BASE58_ALPHABET = set("123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz")

# GlobalConfig layout: 8-byte account discriminator, admin (32), backend_authority (32)
BACKEND_AUTHORITY_OFFSET = 8 + 32

COMMITMENT_RANK = {"processed": 0, "confirmed": 1, "finalized": 2}

# JSON-RPC error codes worth retrying: block/slot not available, node unhealthy,
# slot skipped, min context slot not reached
TRANSIENT_RPC_CODES = {-32004, -32005, -32007, -32014, -32016}


# =============================================================================
# ERRORS
# =============================================================================

class RpcError(Exception):
    """JSON-RPC error response."""

    def __init__(self, code: int, message: str, data: Any = None):
        super().__init__(f"RPC error {code}: {message}")
        self.code = code
        self.message = message
        self.data = data

    @property
    def is_transient(self) -> bool:
        if self.code in TRANSIENT_RPC_CODES:
            return True
        # Preflight fails with -32002 for both an expired blockhash and a
        # program error; only the former is worth resending.
        return "BlockhashNotFound" in f"{self.message} {self.data}"


class RpcTransportError(Exception):
    """The RPC node could not be reached or answered with a server error."""
    pass


class TransactionFailed(Exception):
    """Transaction landed but the program returned an error."""

    def __init__(self, signature: str, err: Any):
        super().__init__(f"transaction {signature} failed: {err}")
        self.signature = signature
        self.err = err


class ConfirmationTimeout(Exception):
    """Transaction did not reach the requested commitment in time."""

    def __init__(self, signature: str, timeout: float):
        super().__init__(f"transaction {signature} not confirmed within {timeout:.0f}s")
        self.signature = signature


class InvalidKeypairError(ValueError):
    pass


# =============================================================================
# KEYS & ADDRESSES
# =============================================================================

def load_keypair(secret: str) -> Keypair:
    """Load a signer from a base58 secret key or a JSON byte array (CLI keyfile format)."""
    secret = secret.strip()
    try:
        if secret.startswith("["):
            return Keypair.from_bytes(bytes(json.loads(secret)))
        if not secret or set(secret) - BASE58_ALPHABET:
            raise ValueError("not base58")
        return Keypair.from_base58_string(secret)
    except (ValueError, TypeError) as exc:
        raise InvalidKeypairError("backend authority key is not a valid keypair") from exc


def derive_global_config_address(program_id: Pubkey) -> Pubkey:
    address, _bump = Pubkey.find_program_address([GLOBAL_CONFIG_SEED], program_id)
    return address


def read_backend_authority(account_data: bytes) -> Pubkey:
    end = BACKEND_AUTHORITY_OFFSET + 32
    if len(account_data) < end:
        raise ValueError(f"global config account too short ({len(account_data)} bytes)")
    return Pubkey.from_bytes(account_data[BACKEND_AUTHORITY_OFFSET:end])


def encode_finalize_data(agree_votes: Optional[int] = None, disagree_votes: Optional[int] = None) -> bytes:
    """Discriminator followed by two Borsh Option<u32> arguments."""
    data = bytearray([ProgramInstruction.FINALIZE_MARKET])
    for value in (agree_votes, disagree_votes):
        if value is None:
            data.append(0)
        else:
            data.append(1)
            data += int(value).to_bytes(4, "little")
    return bytes(data)


def build_finalize_instruction(
    program_id: Pubkey,
    market: Pubkey,
    authority: Pubkey,
    agree_votes: Optional[int] = None,
    disagree_votes: Optional[int] = None,
) -> Instruction:
    return Instruction(
        program_id,
        encode_finalize_data(agree_votes, disagree_votes),
        [
            AccountMeta(derive_global_config_address(program_id), is_signer=False, is_writable=False),
            AccountMeta(market, is_signer=False, is_writable=True),
            AccountMeta(authority, is_signer=True, is_writable=False),
        ],
    )


def sign_transaction(instruction: Instruction, signer: Keypair, blockhash: Hash) -> Transaction:
    message = Message.new_with_blockhash([instruction], signer.pubkey(), blockhash)
    return Transaction([signer], message, blockhash)


# =============================================================================
# RPC CLIENT
# =============================================================================

class SolanaRpcClient:
    """Minimal async JSON-RPC client for the calls the monitor needs."""

    def __init__(
        self,
        rpc_url: str,
        commitment: str = "confirmed",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self._request_id = 0

    async def close(self):
        await self.client.aclose()

    async def _call(self, method: str, params: Optional[list] = None) -> Any:
        self._request_id += 1
        body = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params or []}
        try:
            response = await self.client.post(self.rpc_url, json=body)
        except httpx.TransportError as exc:
            raise RpcTransportError(f"{method}: {exc}") from exc

        if response.status_code == 429 or response.status_code >= 500:
            raise RpcTransportError(f"{method}: HTTP {response.status_code}")
        response.raise_for_status()

        payload = response.json()
        if "error" in payload:
            error = payload["error"]
            raise RpcError(error.get("code", 0), error.get("message", ""), error.get("data"))
        return payload.get("result")

    async def get_slot(self) -> int:
        return await self._call("getSlot", [{"commitment": self.commitment}])

    async def get_latest_blockhash(self) -> Hash:
        result = await self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        return Hash.from_string(result["value"]["blockhash"])

    async def get_account_data(self, address: Pubkey) -> Optional[bytes]:
        result = await self._call(
            "getAccountInfo",
            [str(address), {"encoding": "base64", "commitment": self.commitment}],
        )
        value = result.get("value") if result else None
        if value is None:
            return None
        return base64.b64decode(value["data"][0])

    async def send_transaction(self, transaction: Transaction) -> str:
        encoded = base64.b64encode(bytes(transaction)).decode("ascii")
        return await self._call(
            "sendTransaction",
            [encoded, {"encoding": "base64", "preflightCommitment": self.commitment}],
        )

    async def get_signature_status(self, signature: str) -> Optional[dict]:
        result = await self._call(
            "getSignatureStatuses", [[signature], {"searchTransactionHistory": True}]
        )
        statuses = (result or {}).get("value") or [None]
        return statuses[0]

    def _reached(self, status: dict) -> bool:
        level = status.get("confirmationStatus") or "processed"
        return COMMITMENT_RANK.get(level, 0) >= COMMITMENT_RANK[self.commitment]

    async def confirm_transaction(self, signature: str, timeout: float, poll_interval: float = 0.5) -> None:
        """
        Poll until `signature` reaches our commitment level.

        Raises:
            TransactionFailed: landed with a program error
            ConfirmationTimeout: not confirmed within `timeout` seconds
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            status = await self.get_signature_status(signature)
            if status is not None:
                if status.get("err") is not None:
                    raise TransactionFailed(signature, status["err"])
                if self._reached(status):
                    return
            if loop.time() >= deadline:
                raise ConfirmationTimeout(signature, timeout)
            await asyncio.sleep(poll_interval)

    async def check_landed(self, signature: str) -> bool:
        """True if an earlier submission already reached our commitment without error."""
        status = await self.get_signature_status(signature)
        return status is not None and status.get("err") is None and self._reached(status)
