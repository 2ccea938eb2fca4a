"""
Transfer Status Poller

Refreshes a payout's transfer status on a fixed interval for progress display.
One asyncio task per watched transaction; the task ends by itself once the
transaction or the transfer reaches a terminal status, and can be cancelled
at any time. Settlement itself is driven by the reconciliation webhook.
"""

import asyncio
import logging
from typing import Optional, Callable, Dict

from config import Config
from models import TransferStatus

logger = logging.getLogger(__name__)

TERMINAL_TRANSFER_STATUSES = frozenset({TransferStatus.SUCCESS, TransferStatus.FAILED})

StatusListener = Callable[[str, TransferStatus], None]


class TransferStatusPoller:
    """Cancellable polling task bound to one transaction"""

    def __init__(self, transaction_id: str, payment_rail=None, transaction_ledger=None,
                 interval: Optional[float] = None, on_update: Optional[StatusListener] = None):
        if payment_rail is None:
            from services.paystack_service import get_payment_rail
            payment_rail = get_payment_rail()
        if transaction_ledger is None:
            from services.transaction_ledger import get_transaction_ledger
            transaction_ledger = get_transaction_ledger()

        self.transaction_id = transaction_id
        self.payment_rail = payment_rail
        self.ledger = transaction_ledger
        self.interval = interval if interval is not None else Config.TRANSFER_STATUS_POLL_INTERVAL_SECONDS
        self.on_update = on_update
        self.last_status: Optional[TransferStatus] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        if self.running:
            return self._task
        self._task = asyncio.create_task(self._run(), name=f"transfer-poll-{self.transaction_id}")
        return self._task

    async def stop(self):
        """Cancel the task and wait for it to finish"""
        if self._task is None:
            return
        if not self._task.done():
            self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        logger.debug(f"Transfer poller stopped for {self.transaction_id}")

    async def _run(self):
        logger.info(f"🔁 TRANSFER_POLL_START: {self.transaction_id} every {self.interval}s")
        while True:
            if not await self.poll_once():
                logger.info(f"🏁 TRANSFER_POLL_DONE: {self.transaction_id} ({self.last_status})")
                return
            await asyncio.sleep(self.interval)

    async def poll_once(self) -> bool:
        """One refresh. Returns False when polling should stop."""
        record = self.ledger.get(self.transaction_id)
        if record is None:
            logger.warning(f"⚠️ TRANSFER_POLL_UNKNOWN_TX: {self.transaction_id}")
            return False
        if record.is_terminal:
            return False
        if not record.payout_transfer_id:
            logger.warning(f"⚠️ TRANSFER_POLL_NO_TRANSFER: {self.transaction_id}")
            return False

        try:
            status = await self.payment_rail.get_transfer_status(record.payout_transfer_id)
        except Exception as e:
            logger.warning(f"⚠️ TRANSFER_POLL_LOOKUP_FAILED: {self.transaction_id}: {e}")
            return True

        if status != self.last_status:
            self.last_status = status
            self.ledger.update_transfer_status(self.transaction_id, status)
            if self.on_update is not None:
                try:
                    self.on_update(self.transaction_id, status)
                except Exception as e:
                    logger.error(f"❌ TRANSFER_POLL_LISTENER_FAILED: {self.transaction_id}: {e}")

        return status not in TERMINAL_TRANSFER_STATUSES


class TransferPollerRegistry:
    """Keeps at most one poller per transaction and drops finished ones"""

    def __init__(self):
        self._pollers: Dict[str, TransferStatusPoller] = {}

    def watch(self, transaction_id: str, **kwargs) -> TransferStatusPoller:
        poller = self._pollers.get(transaction_id)
        if poller is not None and poller.running:
            return poller

        poller = TransferStatusPoller(transaction_id, **kwargs)
        self._pollers[transaction_id] = poller
        task = poller.start()
        task.add_done_callback(lambda _task: self._forget(transaction_id, poller))
        return poller

    def _forget(self, transaction_id: str, poller: TransferStatusPoller):
        if self._pollers.get(transaction_id) is poller:
            del self._pollers[transaction_id]

    async def stop(self, transaction_id: str):
        poller = self._pollers.get(transaction_id)
        if poller is not None:
            await poller.stop()

    async def stop_all(self):
        for poller in list(self._pollers.values()):
            await poller.stop()
        self._pollers.clear()

    def __len__(self):
        return len(self._pollers)


# Global registry, stopped on application shutdown
transfer_poller_registry = TransferPollerRegistry()
