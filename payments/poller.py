"""
Provider status poller.

Each tracked intent gets one coordinating task. For push-based methods it
runs two child tasks, a periodic provider poll and a fallback countdown, and
waits for whichever finishes first; the other is cancelled. Wallet and cash
on delivery skip the countdown and settle after a short fixed delay.

The terminal transition itself goes through PaymentIntentDispatcher.resolve,
so a user cancel racing a late provider answer still resolves only once.
"""

import asyncio
from typing import Optional

from config import Config
from ledger.errors import ProviderError, ProviderTimeoutError
from logging_config import get_logger

from .dispatcher import PaymentIntentDispatcher
from .models import (
    FailureReason,
    IntentStatus,
    PaymentIntent,
    PaymentMethod,
    ReconciliationStrategy,
)

logger = get_logger(__name__)

Outcome = tuple[IntentStatus, Optional[FailureReason], Optional[str]]


class ProviderStatusPoller:
    def __init__(self, dispatcher: PaymentIntentDispatcher, config: Optional[Config] = None):
        self.dispatcher = dispatcher
        self.config = config or Config()
        self._tasks: dict[str, asyncio.Task] = {}

    def track(self, intent: PaymentIntent) -> asyncio.Task:
        """Start reconciling an intent in the background. Must be called from a running loop."""
        existing = self._tasks.get(intent.id)
        if existing is not None and not existing.done():
            return existing
        task = asyncio.create_task(self._run(intent), name=f"reconcile-{intent.id}")
        task.add_done_callback(self._on_task_done)
        self._tasks[intent.id] = task
        return task

    async def wait(self, intent_id: str) -> PaymentIntent:
        """Wait until the intent is terminal (or its task stopped) and return it."""
        task = self._tasks.get(intent_id)
        if task is not None:
            await asyncio.wait({task})
        return self.dispatcher.get_intent(intent_id)

    def cancel(self, intent_id: str) -> bool:
        """
        Buyer aborted the payment: fail the intent with ``user_cancelled``
        and stop its timers. Returns False if the intent was already terminal.
        """
        resolved = self.dispatcher.resolve(
            intent_id, IntentStatus.FAILED, FailureReason.USER_CANCELLED, message="Payment cancelled by user"
        )
        task = self._tasks.get(intent_id)
        if task is not None and not task.done():
            task.cancel()
        if resolved:
            logger.info(f"Intent {intent_id} cancelled by user")
        return resolved

    def is_tracking(self, intent_id: str) -> bool:
        task = self._tasks.get(intent_id)
        return task is not None and not task.done()

    async def shutdown(self) -> None:
        pending = [t for t in self._tasks.values() if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    async def _run(self, intent: PaymentIntent) -> PaymentIntent:
        if intent.status.is_terminal:
            return intent

        strategy = self.dispatcher.strategy_for(intent.method)
        if strategy == ReconciliationStrategy.SYNTHETIC:
            outcome = await self._settle_locally(intent)
        else:
            outcome = await self._race_provider(intent)

        status, reason, message = outcome
        self.dispatcher.resolve(intent.id, status, reason, message=message)
        return self.dispatcher.get_intent(intent.id)

    async def _settle_locally(self, intent: PaymentIntent) -> Outcome:
        if intent.method == PaymentMethod.WALLET:
            delay = self.config.wallet_settlement_delay_seconds
        else:
            delay = self.config.cod_settlement_delay_seconds
        await asyncio.sleep(delay)
        return IntentStatus.SUCCESS, None, None

    async def _race_provider(self, intent: PaymentIntent) -> Outcome:
        poll = asyncio.create_task(self._poll_provider(intent), name=f"poll-{intent.id}")
        deadline = asyncio.create_task(self._countdown(intent), name=f"countdown-{intent.id}")
        try:
            done, _ = await asyncio.wait({poll, deadline}, return_when=asyncio.FIRST_COMPLETED)
            if poll in done and poll.exception() is not None:
                logger.error(f"Status polling for intent {intent.id} stopped: {poll.exception()!r}; awaiting countdown")
                return await deadline
        finally:
            for task in (poll, deadline):
                task.cancel()
            await asyncio.gather(poll, deadline, return_exceptions=True)

        # A provider answer that lands in the same tick as the countdown wins.
        winner = poll if poll in done else deadline
        return winner.result()

    async def _poll_provider(self, intent: PaymentIntent) -> Outcome:
        provider = self.dispatcher.provider_for(intent.method)
        while True:
            await asyncio.sleep(self.config.poll_interval_seconds)
            try:
                response = await provider.poll_status(intent.provider_reference)
            except ProviderError as e:
                logger.warning(f"Status poll for intent {intent.id} failed, will retry: {e}")
                continue

            logger.debug(f"Intent {intent.id} poll: {response.status.value}")
            if response.status == IntentStatus.SUCCESS:
                return IntentStatus.SUCCESS, None, response.message
            if response.status == IntentStatus.FAILED:
                return IntentStatus.FAILED, FailureReason.PROVIDER_DECLINED, response.message

    async def _countdown(self, intent: PaymentIntent) -> Outcome:
        await asyncio.sleep(self.config.fallback_countdown_seconds)
        error = ProviderTimeoutError(
            f"No confirmation for intent {intent.id} within {self.config.fallback_countdown_seconds:g}s"
        )
        logger.warning(str(error))
        return IntentStatus.FAILED, FailureReason.PROVIDER_TIMEOUT, str(error)

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Reconciliation task {task.get_name()} crashed: {error!r}")
