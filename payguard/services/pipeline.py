"""End-to-end payment authorization.

Stages run strictly in order for one request: device signals, scoring,
decision, step-up challenge, gateway execution, history update. The
per-user history lock is held from the velocity read until the charge is
recorded, so two requests from the same user cannot both pass on a stale
history. A charge that settles after the caller went away is still
recorded, when it settles.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterable, List, Optional, Sequence

from payguard.config import EngineConfig, RetryPolicy
from payguard.errors import (
    ChallengeCanceledError,
    ChallengeTimeoutError,
    InternalPipelineError,
    ThreeDSecureError,
)
from payguard.models.challenge import ChallengeSession
from payguard.models.payment import AuthorizationResult, PaymentRequest, PipelineOptions
from payguard.models.risk import ConsolidatedAssessment, DeviceFingerprint
from payguard.models.transaction import (
    TransactionFeatures,
    TransactionHistoryEntry,
    UserHistorySummary,
)
from payguard.services.anomaly import default_patterns, detect_anomaly, payer_local_time
from payguard.services.challenge import ChallengeOrchestrator
from payguard.services.device_fingerprint import ClientSignalCollector, DeviceFingerprintCollector
from payguard.services.fraud_audit import record_assessment, report_suspicious
from payguard.services.fraud_patterns import PatternPredicate
from payguard.services.geo_risk import (
    GeoResolver,
    analyze_geo_risk,
    resolve_location,
    unknown_location_result,
)
from payguard.services.payment_executor import PaymentExecutor
from payguard.services.risk_consolidator import consolidate, device_trust_signal
from payguard.services.three_d_secure import ThreeDSecureAuthenticator, ThreeDSecurePolicy
from payguard.services.velocity import check_velocity
from payguard.stores import KeyValueStore, TransactionHistoryStore

logger = logging.getLogger(__name__)

HISTORY_WINDOW = timedelta(days=30)

BLOCKED_MESSAGE = "This transaction cannot be processed for security reasons. Please contact support."
REVIEW_MESSAGE = "This transaction needs a manual review before it can be processed."
GENERIC_FAILURE_MESSAGE = "The payment could not be processed. Please try again later."


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def summarize_history(entries: Iterable[TransactionHistoryEntry]) -> UserHistorySummary:
    successful = [e for e in entries if e.success]
    if not successful:
        return UserHistorySummary()
    return UserHistorySummary(
        transaction_count=len(successful),
        average_amount=sum(e.amount for e in successful) / len(successful),
        last_transaction_at=max(e.timestamp for e in successful),
        used_payment_methods=frozenset(e.payment_method for e in successful),
    )


class AuthorizationPipeline:
    def __init__(
        self,
        config: EngineConfig,
        history: TransactionHistoryStore,
        store: KeyValueStore,
        geo_resolver: GeoResolver,
        executor: PaymentExecutor,
        orchestrator: ChallengeOrchestrator,
        three_d_secure: ThreeDSecureAuthenticator,
        three_ds_policy: Optional[ThreeDSecurePolicy] = None,
        patterns: Optional[Callable[[], Sequence[PatternPredicate]]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.config = config
        self.history = history
        self.store = store
        self.executor = executor
        self.orchestrator = orchestrator
        self.three_d_secure = three_d_secure
        self.three_ds_policy = three_ds_policy or ThreeDSecurePolicy(config.three_d_secure)
        self.fingerprints = DeviceFingerprintCollector(store, config.signals)
        self._geo_resolver = geo_resolver
        self._patterns = patterns or (lambda: default_patterns(config.scoring.anomaly))
        self._clock = clock

    # -- scoring --------------------------------------------------------------

    async def collect_fingerprint(self, request: PaymentRequest) -> DeviceFingerprint:
        return await self.fingerprints.collect(
            request.user_id, ClientSignalCollector(request.device_signals)
        )

    async def assess(
        self,
        request: PaymentRequest,
        fingerprint: Optional[DeviceFingerprint] = None,
        now: Optional[datetime] = None,
    ) -> ConsolidatedAssessment:
        """Score one attempt. Reads history but writes nothing."""
        scoring = self.config.scoring
        now = now or self._clock()

        history = self.history.query(request.user_id, now - HISTORY_WINDOW)
        local = payer_local_time(
            now, fingerprint.signals if fingerprint else None, scoring.anomaly
        )
        velocity = check_velocity(
            request.user_id, request.amount, request.payment_method,
            history, scoring.velocity, now,
        )
        features = TransactionFeatures(
            amount=request.amount,
            payment_method=request.payment_method,
            device_id=fingerprint.device_id if fingerprint else None,
            ip_address=request.ip_address,
            time_of_day=local.hour,
            day_of_week=local.isoweekday() % 7,
            user_history=summarize_history(history),
            transactions_last_hour=velocity.transactions_last_hour,
        )

        current = await resolve_location(
            self._geo_resolver, request.ip_address, self.config.signals.geo_lookup_retries
        )
        if current is None:
            geo = unknown_location_result()
        else:
            geo = analyze_geo_risk(current, request.customer.registered_location, scoring.geo)

        anomaly = detect_anomaly(features, scoring.anomaly, self._patterns())
        device = device_trust_signal(fingerprint, scoring)

        return consolidate(
            anomaly, geo.signal, velocity.signal, device, scoring,
            geo_result=geo, velocity_result=velocity, assessed_at=now,
        )

    async def screen(self, request: PaymentRequest,
                     fingerprint: Optional[DeviceFingerprint] = None) -> ConsolidatedAssessment:
        """Assess, keep the audit entry and flag suspicious attempts."""
        assessment = await self.assess(request, fingerprint)
        record_assessment(self.store, request.user_id, assessment)
        report_suspicious(request, assessment)
        return assessment

    # -- authorization --------------------------------------------------------

    async def authorize(self, request: PaymentRequest,
                        options: Optional[PipelineOptions] = None) -> AuthorizationResult:
        options = options or PipelineOptions()
        try:
            async with self.history.user_lock(request.user_id):
                return await self._authorize(request, options)
        except Exception as exc:
            error = InternalPipelineError("authorization pipeline failed", original_error=exc)
            logger.error(
                "%s for request %s (user %s): %s",
                error.code, request.request_id, request.user_id, exc,
                exc_info=True,
            )
            return AuthorizationResult(
                approved=False, request_id=request.request_id, error=GENERIC_FAILURE_MESSAGE
            )

    async def _authorize(self, request: PaymentRequest, options: PipelineOptions) -> AuthorizationResult:
        fingerprint = None
        if options.collect_device_info:
            fingerprint = await self.collect_fingerprint(request)

        assessment = None
        if options.enable_fraud_detection:
            assessment = await self.screen(request, fingerprint)
            if assessment.block_transaction:
                logger.info("Blocked request %s (score %.3f)", request.request_id, assessment.overall_score)
                return self._result(request, assessment, approved=False, error=BLOCKED_MESSAGE)
            if options.route_manual_review and assessment.requires_manual_review:
                return self._result(
                    request, assessment, approved=False, error=REVIEW_MESSAGE,
                    requires_action=True, action_type="manual_review",
                )

        denial = await self._step_up(request, options, assessment)
        if denial is not None:
            return denial

        payment = await self.executor.execute(
            request, self._retry_policy(options),
            on_late_success=lambda attempt: self._record_charge(request, attempt.transaction_id),
        )
        if not payment.success:
            last = payment.attempts[-1] if payment.attempts else None
            transient = last is not None and last.outcome == "transient_failure"
            return self._result(
                request, assessment, approved=False,
                error=payment.error or GENERIC_FAILURE_MESSAGE,
                requires_action=transient,
                action_type="retry_later" if transient else None,
            )

        self._record_charge(request, payment.transaction_id)
        logger.info("Approved request %s as %s", request.request_id, payment.transaction_id)
        return self._result(request, assessment, approved=True, transaction_id=payment.transaction_id)

    def _record_charge(self, request: PaymentRequest, transaction_id: str) -> None:
        """Add a settled charge to the history velocity reads."""
        self.history.append(TransactionHistoryEntry(
            user_id=request.user_id,
            transaction_id=transaction_id,
            timestamp=self._clock(),
            amount=request.amount,
            payment_method=request.payment_method,
        ))

    def _retry_policy(self, options: PipelineOptions) -> RetryPolicy:
        policy = self.executor.policy
        if not options.retry_on_failure:
            return policy.model_copy(update={"max_retries": 0})
        if options.max_retries is not None:
            return policy.model_copy(update={"max_retries": options.max_retries})
        return policy

    def _requires_3ds(self, request: PaymentRequest, options: PipelineOptions) -> bool:
        return (
            options.enable_3d_secure
            and request.card is not None
            and self.orchestrator.is_card_payment(request.payment_method)
            and self.three_ds_policy.should_require(request.card, request.amount)
        )

    async def _step_up(self, request: PaymentRequest, options: PipelineOptions,
                       assessment: Optional[ConsolidatedAssessment]) -> Optional[AuthorizationResult]:
        """Run a challenge when one is due. Returns a denial, or None to continue."""
        policy_3ds = self._requires_3ds(request, options)
        risk_challenge = (
            assessment is not None
            and assessment.requires_additional_verification
            and options.enable_challenges
        )
        if not (policy_3ds or risk_challenge):
            return None

        if policy_3ds:
            method = "3ds"
        else:
            method = self.orchestrator.select_method(
                request.payment_method,
                options.enable_3d_secure and request.card is not None,
                request.customer,
            )
        risk_level = assessment.risk_level if assessment else "medium"
        reasons: List[str] = list(assessment.reasons) if assessment else []

        try:
            if method == "3ds":
                session = await self.three_d_secure.open(
                    request.request_id, request.card, request.amount,
                    request.order_id or request.request_id,
                    request.device_signals, risk_level, reasons,
                )
            else:
                session = await self.orchestrator.request_challenge(
                    request.request_id, method, risk_level, reasons
                )
        except ThreeDSecureError as exc:
            logger.warning("3DS could not start for %s: %s", request.request_id, exc.message)
            return self._result(request, assessment, approved=False,
                                error="Card authentication is unavailable for this payment.")

        try:
            outcome = await self._await_outcome(session)
        except ChallengeTimeoutError:
            return self._result(
                request, assessment, approved=False, session=session,
                error="Verification was not completed in time.",
            )
        except ChallengeCanceledError:
            return self._result(
                request, assessment, approved=False, session=session,
                error="Verification was canceled. The payment was not authorized.",
            )

        if outcome.status != "success":
            return self._result(
                request, assessment, approved=False, session=session,
                error="Verification failed.",
                requires_action=True, action_type="verification",
            )
        logger.info("Challenge %s passed for request %s", session.id, request.request_id)
        return None

    async def _await_outcome(self, session: ChallengeSession) -> ChallengeSession:
        if session.method == "3ds":
            return await self.three_d_secure.finish(session)
        return await self.orchestrator.wait_for_outcome(session.id)

    def _result(
        self,
        request: PaymentRequest,
        assessment: Optional[ConsolidatedAssessment],
        approved: bool,
        error: Optional[str] = None,
        transaction_id: Optional[str] = None,
        requires_action: bool = False,
        action_type: Optional[str] = None,
        session: Optional[ChallengeSession] = None,
    ) -> AuthorizationResult:
        return AuthorizationResult(
            approved=approved,
            request_id=request.request_id,
            transaction_id=transaction_id,
            error=error,
            requires_action=requires_action,
            action_type=action_type,
            reasons=list(assessment.reasons) if assessment else [],
            suggested_actions=list(assessment.suggested_actions) if assessment else [],
            risk_score=assessment.overall_score if assessment else None,
            challenge_session_id=session.id if session else None,
        )
