"""Ledger client for the certificate registry contract.

Wraps the handful of contract methods the service needs. Write calls are
split in two: ``prepare_*`` estimates gas, allocates a nonce and signs once;
``broadcast`` sends the signed bytes and can be retried safely, because a
node that already has the transaction answers "already known". Nonces come
from a local counter kept under a lock, so concurrent issuances never share
one; the counter resyncs from the node after a "nonce too low" rejection.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from eth_account import Account
from eth_account.datastructures import SignedTransaction
from web3 import AsyncHTTPProvider, AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from certregistry.errors import ConfirmationTimeout, LedgerReverted

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

CONTRACT_ABI = [
    {
        "inputs": [],
        "name": "admin",
        "outputs": [{"internalType": "address", "name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "_issuer", "type": "address"}],
        "name": "authorizeIssuer",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "address", "name": "", "type": "address"}],
        "name": "authorizedIssuers",
        "outputs": [{"internalType": "bool", "name": "", "type": "bool"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [
            {"internalType": "string", "name": "_id", "type": "string"},
            {"internalType": "string", "name": "_ipfsHash", "type": "string"},
        ],
        "name": "issueCertificate",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"internalType": "string", "name": "_id", "type": "string"}],
        "name": "verifyCertificate",
        "outputs": [
            {"internalType": "string", "name": "ipfsHash", "type": "string"},
            {"internalType": "address", "name": "issuer", "type": "address"},
            {"internalType": "bool", "name": "isValid", "type": "bool"},
            {"internalType": "uint256", "name": "issueDate", "type": "uint256"},
        ],
        "stateMutability": "view",
        "type": "function",
    },
]


@dataclass(frozen=True)
class LedgerRecord:
    storage_id: str
    issuer: str
    valid: bool
    issue_date: int


@dataclass(frozen=True)
class TxReceipt:
    tx_hash: str
    status: int
    block_number: Optional[int] = None


def revert_reason(exc: ContractLogicError) -> str:
    message = getattr(exc, "message", None) or str(exc)
    return message.replace("execution reverted: ", "").strip() or "execution reverted"


class LedgerClient:
    """Certificate registry contract reached through one RPC endpoint."""

    def __init__(
        self,
        rpc_url: str,
        contract_address: str,
        private_key: str,
        *,
        gas_buffer: float = 1.5,
        poll_latency: float = 2.0,
        request_timeout: float = 30.0,
    ):
        self.w3 = AsyncWeb3(AsyncHTTPProvider(rpc_url, request_kwargs={"timeout": request_timeout}))
        self.account = Account.from_key(private_key)
        self.contract_address = AsyncWeb3.to_checksum_address(contract_address)
        self.contract = self.w3.eth.contract(address=self.contract_address, abi=CONTRACT_ABI)
        self.gas_buffer = gas_buffer
        self.poll_latency = poll_latency
        # held from nonce allocation through signing
        self._nonce_lock = asyncio.Lock()
        self._next_nonce: Optional[int] = None

    @property
    def address(self) -> str:
        """Checksummed address of the signing identity."""
        return self.account.address

    def can_sign_for(self, identity: str) -> bool:
        return identity.lower() == self.address.lower()

    async def contract_deployed(self) -> bool:
        code = await self.w3.eth.get_code(self.contract_address)
        return len(code) > 0

    async def block_number(self) -> int:
        return await self.w3.eth.block_number

    async def is_authorized(self, identity: str) -> bool:
        fn = self.contract.functions.authorizedIssuers(AsyncWeb3.to_checksum_address(identity))
        return bool(await fn.call())

    async def admin(self) -> str:
        return await self.contract.functions.admin().call()

    async def prepare_authorize(self, identity: str) -> SignedTransaction:
        fn = self.contract.functions.authorizeIssuer(AsyncWeb3.to_checksum_address(identity))
        return await self._prepare(fn, f"authorizeIssuer({identity})")

    async def prepare_issue(self, certificate_id: str, storage_id: str) -> SignedTransaction:
        fn = self.contract.functions.issueCertificate(certificate_id, storage_id)
        return await self._prepare(fn, f"issueCertificate({certificate_id})")

    async def _prepare(self, fn, label: str) -> SignedTransaction:
        try:
            gas = await fn.estimate_gas({"from": self.address})
        except ContractLogicError as e:
            raise LedgerReverted(revert_reason(e)) from e
        logger.info("Gas estimate for %s: %d", label, gas)
        async with self._nonce_lock:
            nonce = await self._allocate_nonce()
            tx = await fn.build_transaction({
                "from": self.address,
                "nonce": nonce,
                "gas": int(gas * self.gas_buffer),
                "chainId": await self.w3.eth.chain_id,
            })
            signed = self.account.sign_transaction(tx)
        logger.info("Signed %s with nonce %d", label, nonce)
        return signed

    async def _allocate_nonce(self) -> int:
        """Next nonce for this wallet; callers hold ``_nonce_lock``.

        The node's pending count does not yet include transactions signed
        here but not broadcast, so the local counter wins when it is ahead.
        """
        pending = await self.w3.eth.get_transaction_count(self.address, "pending")
        nonce = pending if self._next_nonce is None else max(pending, self._next_nonce)
        self._next_nonce = nonce + 1
        return nonce

    @staticmethod
    def tx_hash_of(signed: SignedTransaction) -> str:
        return AsyncWeb3.to_hex(signed.hash)

    async def broadcast(self, signed: SignedTransaction) -> str:
        local_hash = self.tx_hash_of(signed)
        try:
            tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        except (ValueError, Web3Exception) as e:
            text = str(e).lower()
            if "already known" in text:
                logger.info("Transaction %s already known to the node", local_hash)
                return local_hash
            if "nonce too low" in text:
                logger.warning("Node rejected %s: nonce too low; resyncing from the pending count", local_hash)
                self._next_nonce = None
            raise
        return AsyncWeb3.to_hex(tx_hash)

    async def wait_for_confirmation(self, tx_hash: str, timeout: float) -> TxReceipt:
        try:
            receipt = await self.w3.eth.wait_for_transaction_receipt(
                tx_hash, timeout=timeout, poll_latency=self.poll_latency,
            )
        except TimeExhausted as e:
            raise ConfirmationTimeout(tx_hash, timeout) from e
        return TxReceipt(
            tx_hash=tx_hash,
            status=int(receipt["status"]),
            block_number=receipt.get("blockNumber"),
        )

    async def explain_issue_revert(self, certificate_id: str, storage_id: str) -> Optional[str]:
        """Dry-run the issuance to learn why it reverted. Best effort."""
        fn = self.contract.functions.issueCertificate(certificate_id, storage_id)
        try:
            await fn.call({"from": self.address})
        except ContractLogicError as e:
            return revert_reason(e)
        except Exception as e:
            logger.warning("Revert probe for %s failed: %s", certificate_id, e)
        return None

    async def verify_certificate(self, certificate_id: str) -> LedgerRecord:
        fn = self.contract.functions.verifyCertificate(certificate_id)
        try:
            storage_id, issuer, valid, issue_date = await fn.call()
        except ContractLogicError as e:
            logger.info("verifyCertificate(%s) reverted: %s", certificate_id, revert_reason(e))
            return LedgerRecord(storage_id="", issuer=ZERO_ADDRESS, valid=False, issue_date=0)
        return LedgerRecord(
            storage_id=storage_id,
            issuer=issuer,
            valid=bool(valid),
            issue_date=int(issue_date),
        )

    async def close(self) -> None:
        await self.w3.provider.disconnect()
