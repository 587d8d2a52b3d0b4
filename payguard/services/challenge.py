"""Step-up challenge orchestration.

Each ``ChallengeSession`` moves ``pending -> success | failed | canceled`` and
never leaves a terminal state. Completion is delivered through a single-shot
future registered when the session is created; the future is dropped on
every terminal transition so no waiter outlives its session.

A front-end result that still needs confirmation (3-D Secure) is ``report``ed
instead of completed: the waiter receives it while the session stays pending,
and the session becomes terminal only once the confirmation is in.
"""
import asyncio
import hashlib
import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Dict, List, Optional, Protocol

from payguard.config import ChallengeConfig
from payguard.errors import (
    ChallengeCanceledError,
    ChallengeError,
    ChallengeNotFoundError,
    ChallengeTimeoutError,
    ResendCooldownError,
)
from payguard.models.challenge import ChallengeMethod, ChallengeSession, ChallengeStatus
from payguard.models.payment import CustomerContext

logger = logging.getLogger(__name__)

OTP_METHODS = ("sms", "email")


class OtpSender(Protocol):
    async def send(self, session: ChallengeSession, code: str) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _digest(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


class ChallengeOrchestrator:
    def __init__(
        self,
        config: Optional[ChallengeConfig] = None,
        otp_sender: Optional[OtpSender] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config or ChallengeConfig()
        self._otp_sender = otp_sender
        self._clock = clock
        self._sessions: Dict[str, ChallengeSession] = {}
        self._active_by_request: Dict[str, str] = {}
        self._waiters: Dict[str, asyncio.Future] = {}
        self._otp_digests: Dict[str, str] = {}
        self._otp_failures: Dict[str, int] = {}

    # -- method selection ---------------------------------------------------

    def is_card_payment(self, payment_method: str) -> bool:
        return payment_method in self.config.card_payment_methods

    def select_method(
        self, payment_method: str, three_ds_enabled: bool, customer: CustomerContext
    ) -> ChallengeMethod:
        if three_ds_enabled and self.is_card_payment(payment_method):
            return "3ds"
        if customer.phone_verified:
            return "sms"
        if customer.email_verified:
            return "email"
        return "captcha"

    # -- lookup ---------------------------------------------------------------

    def get(self, session_id: str) -> ChallengeSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise ChallengeNotFoundError(f"challenge session {session_id} not found")
        if not session.is_terminal and self._is_overdue(session):
            self.expire(session_id)
        return session

    def active_for_request(self, request_id: str) -> Optional[ChallengeSession]:
        session_id = self._active_by_request.get(request_id)
        return self._sessions.get(session_id) if session_id else None

    def sessions_for_request(self, request_id: str) -> List[ChallengeSession]:
        return [s for s in self._sessions.values() if s.request_id == request_id]

    def has_waiter(self, session_id: str) -> bool:
        return session_id in self._waiters

    def _is_overdue(self, session: ChallengeSession) -> bool:
        return self._clock() - session.created_at >= timedelta(seconds=self.config.timeout_seconds)

    # -- creation -------------------------------------------------------------

    def _new_session(self, request_id: str, method: ChallengeMethod, risk_level: str,
                     reasons: List[str], **fields) -> ChallengeSession:
        active = self.active_for_request(request_id)
        if active is not None and not active.is_terminal:
            raise ChallengeError(
                f"request {request_id} already has an active challenge ({active.id})"
            )
        session = ChallengeSession(
            id=f"chl_{uuid.uuid4().hex}",
            request_id=request_id,
            method=method,
            risk_level=risk_level,
            reasons=list(reasons),
            created_at=self._clock(),
            **fields,
        )
        self._sessions[session.id] = session
        return session

    async def request_challenge(
        self,
        request_id: str,
        method: ChallengeMethod,
        risk_level: str,
        reasons: List[str],
        authentication_url: Optional[str] = None,
        issuer_reference: Optional[str] = None,
    ) -> ChallengeSession:
        """Open a pending session and register its completion future."""
        session = self._new_session(
            request_id, method, risk_level, reasons,
            authentication_url=authentication_url,
            issuer_reference=issuer_reference,
        )
        self._active_by_request[request_id] = session.id
        self._waiters[session.id] = asyncio.get_running_loop().create_future()
        logger.info("Opened %s challenge %s for request %s", method, session.id, request_id)

        if method in OTP_METHODS:
            try:
                await self._send_code(session)
            except asyncio.CancelledError:
                self.cancel(session.id)
                raise
            except Exception:
                logger.warning("Could not deliver %s code for challenge %s", method, session.id)
                self._finish(session.id, "failed", "undelivered")
                raise
        return session

    def record_frictionless(self, request_id: str, risk_level: str, reasons: List[str],
                            issuer_reference: Optional[str] = None) -> ChallengeSession:
        """A 3DS authentication the issuer approved without user interaction."""
        session = self._new_session(
            request_id, "3ds", risk_level, reasons,
            issuer_reference=issuer_reference,
            frictionless=True,
        )
        session.status = "success"
        session.completed_at = session.created_at
        return session

    # -- transitions ----------------------------------------------------------

    def _finish(self, session_id: str, status: ChallengeStatus,
                failure_reason: Optional[str] = None) -> ChallengeSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise ChallengeNotFoundError(f"challenge session {session_id} not found")
        if session.is_terminal:
            logger.info(
                "Ignoring %s for challenge %s, already %s", status, session_id, session.status
            )
            return session

        session.status = status
        session.failure_reason = failure_reason
        session.completed_at = self._clock()
        if self._active_by_request.get(session.request_id) == session_id:
            del self._active_by_request[session.request_id]
        self._otp_digests.pop(session_id, None)
        self._otp_failures.pop(session_id, None)

        waiter = self._waiters.pop(session_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(status)
        logger.info("Challenge %s finished: %s", session_id, status)
        return session

    def complete(self, session_id: str, success: bool) -> ChallengeSession:
        """Completion reported by the challenge front-end."""
        return self._finish(session_id, "success" if success else "failed",
                            None if success else "rejected")

    def report(self, session_id: str, success: bool) -> ChallengeSession:
        """Hand a front-end result to the waiter without finishing the session.

        The waiter decides the terminal state (see ``wait_for_outcome``'s
        ``confirm``). Only the first report counts.
        """
        session = self.get(session_id)
        if session.is_terminal:
            logger.info("Ignoring report for challenge %s, already %s", session_id, session.status)
            return session
        waiter = self._waiters.get(session_id)
        if waiter is not None and not waiter.done():
            waiter.set_result(success)
        return session

    def cancel(self, session_id: str) -> ChallengeSession:
        return self._finish(session_id, "canceled")

    def expire(self, session_id: str) -> ChallengeSession:
        """No completion arrived within the time budget."""
        return self._finish(session_id, "failed", "timeout")

    def expire_stale(self) -> List[ChallengeSession]:
        expired = []
        for session in list(self._sessions.values()):
            if not session.is_terminal and self._is_overdue(session):
                expired.append(self.expire(session.id))
        return expired

    def prune_finished(self) -> int:
        """Forget terminal sessions older than the retention window."""
        cutoff = self._clock() - timedelta(seconds=self.config.session_retention_seconds)
        stale = [
            session_id for session_id, session in self._sessions.items()
            if session.is_terminal and session.completed_at is not None
            and session.completed_at <= cutoff
        ]
        for session_id in stale:
            del self._sessions[session_id]
        return len(stale)

    # -- waiting --------------------------------------------------------------

    async def wait_for_outcome(
        self,
        session_id: str,
        confirm: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> ChallengeSession:
        """Suspend until the session is terminal.

        Returns the session on success or failure. Raises
        ``ChallengeTimeoutError`` when the budget runs out and
        ``ChallengeCanceledError`` when the user cancels. Cancelling the
        calling task cancels the session.

        A successful ``report`` is passed through ``confirm`` before the
        session is completed, so the terminal state is set exactly once.
        """
        session = self.get(session_id)
        waiter = self._waiters.get(session_id)
        if waiter is not None:
            elapsed = (self._clock() - session.created_at).total_seconds()
            remaining = max(self.config.timeout_seconds - elapsed, 0)
            try:
                try:
                    result = await asyncio.wait_for(asyncio.shield(waiter), timeout=remaining)
                except asyncio.TimeoutError:
                    self.expire(session_id)
                    result = None
                if isinstance(result, bool):
                    if result and confirm is not None:
                        try:
                            result = await confirm()
                        except Exception:
                            self.complete(session_id, False)
                            raise
                    self.complete(session_id, result)
            except asyncio.CancelledError:
                self.cancel(session_id)
                raise
            finally:
                self._waiters.pop(session_id, None)

        if session.status == "canceled":
            raise ChallengeCanceledError("challenge was canceled; payment not authorized")
        if session.failure_reason == "timeout":
            raise ChallengeTimeoutError(
                f"challenge not completed within {self.config.timeout_seconds:g}s"
            )
        return session

    async def challenge(self, request_id: str, method: ChallengeMethod,
                        risk_level: str, reasons: List[str]) -> bool:
        """Run a challenge to completion; ``True`` only on success."""
        session = await self.request_challenge(request_id, method, risk_level, reasons)
        try:
            outcome = await self.wait_for_outcome(session.id)
        except (ChallengeTimeoutError, ChallengeCanceledError) as exc:
            logger.info("Challenge %s ended without success: %s", session.id, exc.message)
            return False
        return outcome.status == "success"

    # -- one-time codes -------------------------------------------------------

    def _issue_code(self) -> str:
        return "".join(secrets.choice("0123456789") for _ in range(self.config.otp_length))

    async def _send_code(self, session: ChallengeSession) -> None:
        code = self._issue_code()
        self._otp_digests[session.id] = _digest(code)
        session.otp_sent_at = self._clock()
        if self._otp_sender is None:
            logger.warning("No OTP sender configured; code for %s was not delivered", session.id)
            return
        await self._otp_sender.send(session, code)

    def _pending_otp_session(self, session_id: str) -> ChallengeSession:
        session = self.get(session_id)
        if session.method not in OTP_METHODS:
            raise ChallengeError(f"challenge {session_id} does not use one-time codes")
        if session.is_terminal:
            raise ChallengeError(f"challenge {session_id} is already {session.status}")
        return session

    async def resend_code(self, session_id: str) -> ChallengeSession:
        session = self._pending_otp_session(session_id)
        if session.otp_sent_at is not None:
            elapsed = (self._clock() - session.otp_sent_at).total_seconds()
            cooldown = self.config.otp_resend_cooldown_seconds
            if elapsed < cooldown:
                raise ResendCooldownError(cooldown - elapsed)
        await self._send_code(session)
        return session

    def verify_code(self, session_id: str, code: str) -> ChallengeSession:
        session = self._pending_otp_session(session_id)
        expected = self._otp_digests.get(session_id)
        if expected is not None and hmac.compare_digest(expected, _digest(code)):
            return self.complete(session_id, True)

        failures = self._otp_failures.get(session_id, 0) + 1
        self._otp_failures[session_id] = failures
        if failures >= self.config.otp_max_attempts:
            return self.complete(session_id, False)
        return session
