"""Process-wide collaborators, built once at startup and shared by handlers."""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from certregistry.config import Settings
from certregistry.database import create_engine_for, create_session_factory, init_models
from certregistry.services.endpoint_selector import EndpointSelection, select_endpoint
from certregistry.services.institutions import InstitutionRegistry
from certregistry.services.issuance import IssuancePipeline
from certregistry.services.ledger_client import LedgerClient
from certregistry.services.local_index import LocalIndex
from certregistry.services.reconciliation import Reconciler
from certregistry.services.store_client import StoreClient
from certregistry.services.verification import CertificateVerifier

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    settings: Settings
    engine: AsyncEngine
    selection: EndpointSelection
    ledger: object
    store: object
    index: LocalIndex
    pipeline: IssuancePipeline
    verifier: CertificateVerifier
    institutions: InstitutionRegistry
    reconciler: Reconciler


async def build_context(
    settings: Settings,
    *,
    ledger=None,
    store=None,
    selection: Optional[EndpointSelection] = None,
) -> AppContext:
    """Wire up the service. Injected collaborators replace the network clients."""
    if selection is None:
        selection = await select_endpoint(settings.rpc_candidates, settings.rpc_probe_timeout_ms)

    if ledger is None:
        ledger = LedgerClient(
            selection.selected,
            settings.contract_address,
            settings.private_key,
            gas_buffer=settings.gas_buffer,
            poll_latency=settings.confirmation_poll_seconds,
            request_timeout=settings.rpc_request_timeout_seconds,
        )
        if settings.verify_contract_on_startup:
            await _check_contract(ledger, settings.contract_address)

    if store is None:
        store = StoreClient(
            settings.pinata_api_key,
            settings.pinata_secret_api_key,
            api_url=settings.pinata_api_url,
            gateway_url=settings.ipfs_gateway_url,
            timeout=settings.store_timeout_seconds,
        )

    engine = create_engine_for(settings)
    await init_models(engine)
    sessions = create_session_factory(engine)
    index = LocalIndex(sessions)

    upload_dir = settings.upload_path
    upload_dir.mkdir(parents=True, exist_ok=True)

    return AppContext(
        settings=settings,
        engine=engine,
        selection=selection,
        ledger=ledger,
        store=store,
        index=index,
        pipeline=IssuancePipeline(
            ledger,
            store,
            index,
            upload_dir=upload_dir,
            retry_attempts=settings.retry_attempts,
            retry_backoff=settings.retry_backoff_seconds,
            confirmation_timeout=settings.confirmation_timeout_seconds,
            max_blob_bytes=settings.max_upload_bytes,
        ),
        verifier=CertificateVerifier(
            ledger, index,
            retry_attempts=settings.retry_attempts,
            retry_backoff=settings.retry_backoff_seconds,
        ),
        institutions=InstitutionRegistry(
            sessions,
            ledger,
            store,
            admin_identity=settings.admin_address,
            confirmation_timeout=settings.confirmation_timeout_seconds,
        ),
        reconciler=Reconciler(
            ledger, store, index,
            upload_dir=upload_dir,
            retry_attempts=settings.retry_attempts,
        ),
    )


async def _check_contract(ledger: LedgerClient, address: str) -> None:
    try:
        if await ledger.contract_deployed():
            logger.info("Contract verified at %s", address)
        else:
            logger.error("No contract found at %s", address)
    except Exception as e:
        logger.error("Contract verification failed: %s", e)


async def close_context(context: AppContext) -> None:
    await context.pipeline.drain()
    for client in (context.ledger, context.store):
        close = getattr(client, "close", None)
        if close is not None:
            try:
                await close()
            except Exception as e:
                logger.warning("Closing %s failed: %s", type(client).__name__, e)
    await context.engine.dispose()


def get_context(request: Request) -> AppContext:
    """FastAPI dependency."""
    return request.app.state.context
