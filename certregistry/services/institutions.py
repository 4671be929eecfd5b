"""Institution registration and the admin approval workflow.

A registration is signed by the submitting wallet (EIP-191 personal message
over the institution JSON). The configured admin is registered directly;
everyone else waits in a pending request until an admin approves or rejects
it. Approval also authorizes the wallet as an issuer on the ledger when the
server's own wallet is the contract admin.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

from eth_account import Account
from eth_account.messages import encode_defunct
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from web3 import Web3

from certregistry.errors import InvalidInput, NotAuthorized, NotFound
from certregistry.models import Institution, InstitutionRequest

logger = logging.getLogger(__name__)

PENDING = "pending"
APPROVED = "approved"
REJECTED = "rejected"

InstitutionPayload = Union[str, dict[str, Any]]


def institution_message(institution: InstitutionPayload) -> str:
    """The exact text the wallet signed."""
    if isinstance(institution, str):
        return institution
    return json.dumps(institution, separators=(",", ":"), ensure_ascii=False)


def recover_signer(message: str, signature: str) -> str:
    try:
        return Account.recover_message(encode_defunct(text=message), signature=signature)
    except Exception as e:
        raise InvalidInput(f"Invalid signature format: {e}", public_message="Invalid signature format") from e


def _profile(institution: InstitutionPayload) -> dict[str, Any]:
    if isinstance(institution, str):
        try:
            profile = json.loads(institution)
        except ValueError:
            profile = {"name": institution}
    else:
        profile = dict(institution)
    if not isinstance(profile, dict) or not str(profile.get("name") or "").strip():
        raise InvalidInput("Institution name is required")
    return profile


def _now() -> datetime:
    return datetime.now(timezone.utc)


class InstitutionRegistry:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger,
        store,
        *,
        admin_identity: str = "",
        confirmation_timeout: float = 180.0,
    ):
        self._sessions = session_factory
        self.ledger = ledger
        self.store = store
        self.admin_identity = (admin_identity or "").lower()
        self.confirmation_timeout = confirmation_timeout
        self._write_lock = asyncio.Lock()

    def is_admin(self, identity: Optional[str]) -> bool:
        return bool(self.admin_identity) and (identity or "").lower() == self.admin_identity

    async def register(
        self,
        institution: InstitutionPayload,
        submitter: str,
        signature: str,
        pin: bool = False,
    ) -> dict[str, Any]:
        if not institution or not submitter or not signature:
            raise InvalidInput("institution, address and signature are required")
        if not Web3.is_address(submitter):
            raise InvalidInput(f"{submitter!r} is not a valid address")

        recovered = recover_signer(institution_message(institution), signature)
        if recovered.lower() != submitter.lower():
            raise NotAuthorized(
                f"Signature recovered {recovered}, expected {submitter}",
                public_message="Signature does not match address",
            )
        profile = _profile(institution)
        identity = submitter.lower()

        storage_id = None
        if pin:
            storage_id = await self._pin(profile, identity)

        now = _now()
        async with self._write_lock:
            async with self._sessions() as session:
                if self.is_admin(identity):
                    await session.merge(Institution(
                        identity=identity, profile=profile, storage_id=storage_id, registered_at=now,
                    ))
                    await session.commit()
                    logger.info("Admin institution registered for %s", identity)
                    return {"status": "registered", "identity": identity, "storage_id": storage_id}

                await session.merge(InstitutionRequest(
                    identity=identity,
                    profile=profile,
                    storage_id=storage_id,
                    status=PENDING,
                    requested_at=now,
                    handled_at=None,
                    history=[{"status": PENDING, "at": now.isoformat()}],
                ))
                await session.commit()
        logger.info("Institution registration from %s pending admin approval", identity)
        return {"status": PENDING, "identity": identity, "storage_id": storage_id}

    async def get(self, identity: str) -> Institution:
        async with self._sessions() as session:
            institution = await session.get(Institution, (identity or "").lower())
        if institution is None:
            raise NotFound(f"No institution for {identity}", public_message="No institution found for address")
        return institution

    async def list_requests(self, status: Optional[str] = None) -> list[InstitutionRequest]:
        query = select(InstitutionRequest).order_by(InstitutionRequest.requested_at)
        if status:
            query = query.where(InstitutionRequest.status == status)
        async with self._sessions() as session:
            return list((await session.execute(query)).scalars())

    async def approve(self, identity: str) -> dict[str, Any]:
        target = (identity or "").lower()
        async with self._write_lock:
            async with self._sessions() as session:
                request = await self._pending_request(session, target)
                storage_id = request.storage_id or await self._pin(request.profile, target)
                now = _now()
                await session.merge(Institution(
                    identity=target, profile=request.profile, storage_id=storage_id, registered_at=now,
                ))
                request.storage_id = storage_id
                self._transition(request, APPROVED, now)
                await session.commit()
        logger.info("Institution request for %s approved", target)

        authorization = await self._authorize_on_ledger(target)
        return {
            "identity": target,
            "status": APPROVED,
            "registered_at": now,
            "storage_id": storage_id,
            "on_chain_authorization": authorization,
        }

    async def reject(self, identity: str, note: Optional[str] = None) -> dict[str, Any]:
        target = (identity or "").lower()
        async with self._write_lock:
            async with self._sessions() as session:
                request = await self._pending_request(session, target)
                now = _now()
                request.note = note
                self._transition(request, REJECTED, now)
                await session.commit()
        logger.info("Institution request for %s rejected", target)
        return {"identity": target, "status": REJECTED, "handled_at": now}

    async def _pending_request(self, session: AsyncSession, target: str) -> InstitutionRequest:
        if not target:
            raise InvalidInput("Address required")
        request = await session.get(InstitutionRequest, target)
        if request is None:
            raise NotFound(f"No request for {target}", public_message="No pending request for that address")
        if request.status != PENDING:
            raise InvalidInput(f"Request for {target} is already {request.status}")
        return request

    @staticmethod
    def _transition(request: InstitutionRequest, status: str, at: datetime) -> None:
        request.status = status
        request.handled_at = at
        # new list so the JSON column is flagged dirty
        request.history = [*(request.history or []), {"status": status, "at": at.isoformat()}]

    async def _pin(self, profile: dict[str, Any], identity: str) -> Optional[str]:
        try:
            return await self.store.pin_json(profile, name=f"institution-{identity}")
        except Exception as e:
            logger.warning("Pinning institution %s to the store failed: %s", identity, e)
            return None

    async def _authorize_on_ledger(self, target: str) -> str:
        """Authorize ``target`` as an issuer when this server is the contract admin."""
        try:
            contract_admin = await self.ledger.admin()
            if contract_admin.lower() != self.ledger.address.lower():
                logger.info("Server wallet is not contract admin; skipping on-chain authorize for %s", target)
                return "skipped"
            if await self.ledger.is_authorized(target):
                logger.info("%s already authorized on the ledger", target)
                return "confirmed"
            signed = await self.ledger.prepare_authorize(target)
            tx_hash = await self.ledger.broadcast(signed)
            logger.info("Authorize tx sent for %s: %s", target, tx_hash)
            receipt = await self.ledger.wait_for_confirmation(tx_hash, self.confirmation_timeout)
        except Exception as e:
            logger.warning("On-chain authorization of %s failed: %s", target, e)
            return "failed"
        if receipt.status == 0:
            logger.warning("Authorize tx %s for %s reverted", tx_hash, target)
            return "failed"
        return "confirmed"
