"""Process entrypoint: wires the store, chain client and reconciler together."""
from __future__ import annotations

import logging
import signal
import threading
from typing import Any, Optional

from loanledger.allowances import AllowanceLedger
from loanledger.chain import ChainClient, Web3ChainClient
from loanledger.config import Settings
from loanledger.processors import default_processors
from loanledger.reconciler import ChainPoller, ReconciliationWorker, Reconciler
from loanledger.service import LendingService
from loanledger.store import LedgerStore

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOGGER = logging.getLogger("loanledger.app")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def build_service(
    settings: Settings,
    *,
    store: Optional[LedgerStore] = None,
    chain: Optional[ChainClient] = None,
) -> LendingService:
    store = store or LedgerStore(settings.db_path, timeout=settings.db_timeout)
    ledger = AllowanceLedger(store)
    if chain is None and settings.rpc_url and settings.contract_address:
        chain = Web3ChainClient.from_settings(settings)
    reconciler = None
    if chain is not None:
        poller = ChainPoller(
            chain,
            store,
            lookback=settings.lookback_blocks,
            max_block_range=settings.max_block_range,
            confirmations=settings.confirmations,
            start_block=settings.start_block,
        )
        reconciler = Reconciler(poller, default_processors(store, chain, ledger, settings))
    else:
        LOGGER.warning("No RPC_URL / LENDING_POOL_ADDRESS configured, reconciliation disabled")
    return LendingService(store, ledger, reconciler)


def run(settings: Optional[Settings] = None) -> None:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    service = build_service(settings)
    if service.reconciler is None:
        LOGGER.error("Nothing to do without a chain client")
        return
    worker = ReconciliationWorker(service.reconciler, interval=settings.poll_interval)
    stopped = threading.Event()

    def _shutdown(signum: int, frame: Any) -> None:  # pragma: no cover - signal path
        LOGGER.info("Received signal %s, shutting down", signum)
        stopped.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)
    worker.start()
    LOGGER.info("Reconciling lending pool events every %.1fs", settings.poll_interval)
    try:
        stopped.wait()
    finally:
        worker.stop()
        worker.join(timeout=5)
        service.store.close()


if __name__ == "__main__":
    run()
