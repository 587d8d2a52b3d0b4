"""Gateway execution with bounded retries.

Every attempt of one logical payment carries the same idempotency key so the
gateway can collapse duplicates, and attempts of one logical payment never
overlap. Different payments run fully in parallel.
"""
import asyncio
import functools
import logging
import weakref
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from payguard.config import RetryPolicy
from payguard.errors import PermanentGatewayError, TransientGatewayError
from payguard.models.payment import (
    AttemptOutcome,
    GatewayReceipt,
    PaymentAttempt,
    PaymentRequest,
    PaymentResult,
)
from payguard.services.three_d_secure import sanitize_card

logger = logging.getLogger(__name__)

MAX_TRACKED_PAYMENTS = 10_000
MAX_ATTEMPTS_PER_PAYMENT = 20

LateSuccessCallback = Callable[[PaymentAttempt], None]


class PaymentGateway(Protocol):
    async def charge(self, idempotency_key: str, amount: int, method: str,
                     details: Dict[str, Any]) -> GatewayReceipt: ...


def classify_error(exc: BaseException, policy: RetryPolicy) -> AttemptOutcome:
    """Typed gateway errors decide for themselves; anything else goes by message."""
    if isinstance(exc, TransientGatewayError):
        return "transient_failure"
    if isinstance(exc, PermanentGatewayError):
        return "permanent_failure"
    message = str(exc).lower()
    if any(pattern.lower() in message for pattern in policy.transient_patterns):
        return "transient_failure"
    return "permanent_failure"


def _charge_details(request: PaymentRequest) -> Dict[str, Any]:
    details: Dict[str, Any] = {
        "currency": request.currency,
        "user_id": request.user_id,
        "order_id": request.order_id or request.request_id,
    }
    if request.card is not None:
        details["card"] = sanitize_card(request.card).model_dump()
    return details


class PaymentExecutor:
    def __init__(
        self,
        gateway: PaymentGateway,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_tracked_payments: int = MAX_TRACKED_PAYMENTS,
    ):
        self._gateway = gateway
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._max_tracked = max_tracked_payments
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()
        self._attempts: "OrderedDict[str, List[PaymentAttempt]]" = OrderedDict()
        self._detached: Dict[str, asyncio.Future] = {}

    def attempts_for(self, idempotency_key: str) -> List[PaymentAttempt]:
        return list(self._attempts.get(idempotency_key, []))

    def _lock_for(self, idempotency_key: str) -> asyncio.Lock:
        lock = self._locks.get(idempotency_key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[idempotency_key] = lock
        return lock

    def _record(self, request: PaymentRequest, attempt_number: int, outcome: AttemptOutcome,
                receipt: Optional[GatewayReceipt] = None, error: Optional[str] = None) -> PaymentAttempt:
        attempt = PaymentAttempt(
            attempt_number=attempt_number,
            amount=request.amount,
            payment_method=request.payment_method,
            idempotency_key=request.request_id,
            outcome=outcome,
            transaction_id=receipt.transaction_id if receipt else None,
            receipt_url=receipt.receipt_url if receipt else None,
            error=error,
            attempted_at=datetime.now(timezone.utc),
        )
        log = self._attempts.setdefault(request.request_id, [])
        log.append(attempt)
        del log[:-MAX_ATTEMPTS_PER_PAYMENT]
        self._attempts.move_to_end(request.request_id)
        while len(self._attempts) > self._max_tracked:
            self._attempts.popitem(last=False)
        return attempt

    def _record_detached(self, request: PaymentRequest, attempt_number: int, policy: RetryPolicy,
                         on_late_success: Optional[LateSuccessCallback], task: asyncio.Future) -> None:
        self._detached.pop(request.request_id, None)
        if task.cancelled():
            return
        exc = task.exception()
        logger.info(
            "Charge attempt %d for %s settled after the caller went away",
            attempt_number, request.request_id,
        )
        if exc is not None:
            self._record(request, attempt_number, classify_error(exc, policy), error=str(exc))
            return
        attempt = self._record(request, attempt_number, "success", receipt=task.result())
        if on_late_success is not None:
            on_late_success(attempt)

    async def _charge_once(self, request: PaymentRequest, attempt_number: int, policy: RetryPolicy,
                           on_late_success: Optional[LateSuccessCallback]) -> GatewayReceipt:
        task = asyncio.ensure_future(
            self._gateway.charge(
                request.request_id, request.amount, request.payment_method, _charge_details(request)
            )
        )
        try:
            return await asyncio.shield(task)
        except asyncio.CancelledError:
            # The charge itself keeps running so the funds state stays unambiguous.
            self._detached[request.request_id] = task
            task.add_done_callback(
                functools.partial(
                    self._record_detached, request, attempt_number, policy, on_late_success
                )
            )
            raise

    async def execute(
        self,
        request: PaymentRequest,
        policy: Optional[RetryPolicy] = None,
        on_late_success: Optional[LateSuccessCallback] = None,
    ) -> PaymentResult:
        """Charge with retries.

        ``on_late_success`` runs when the caller was cancelled mid-charge and
        the gateway call it left behind later succeeds.
        """
        policy = policy or self.policy
        lock = self._lock_for(request.request_id)
        await lock.acquire()
        try:
            return await self._execute(request, policy, on_late_success)
        finally:
            # A charge left running by a cancelled caller keeps the key busy.
            detached = self._detached.get(request.request_id)
            if detached is not None and not detached.done():
                detached.add_done_callback(lambda _: lock.release())
            else:
                lock.release()

    async def _execute(self, request: PaymentRequest, policy: RetryPolicy,
                       on_late_success: Optional[LateSuccessCallback]) -> PaymentResult:
        key = request.request_id
        max_attempts = policy.max_retries + 1
        attempts: List[PaymentAttempt] = []
        last_error: Optional[str] = None

        for attempt_number in range(1, max_attempts + 1):
            try:
                receipt = await self._charge_once(request, attempt_number, policy, on_late_success)
            except Exception as exc:
                outcome = classify_error(exc, policy)
                last_error = str(exc) or exc.__class__.__name__
                attempts.append(self._record(request, attempt_number, outcome, error=last_error))

                if outcome == "permanent_failure":
                    logger.warning("Non-retryable gateway error for %s: %s", key, last_error)
                    break
                if attempt_number == max_attempts:
                    logger.error("Max attempts (%d) reached for %s", max_attempts, key)
                    break

                delay = policy.backoff_for(attempt_number)
                logger.warning(
                    "Attempt %d/%d for %s failed: %s. Retrying in %.2fs",
                    attempt_number, max_attempts, key, last_error, delay,
                )
                await self._sleep(delay)
                continue

            attempts.append(self._record(request, attempt_number, "success", receipt=receipt))
            return PaymentResult(
                success=True,
                transaction_id=receipt.transaction_id,
                receipt_url=receipt.receipt_url,
                attempts=attempts,
            )

        return PaymentResult(success=False, error=last_error, attempts=attempts)
