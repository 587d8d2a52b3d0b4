import sqlite3
from datetime import datetime
from typing import Callable, Optional

from fastapi import Request

from payguard.config import Settings
from payguard.services.challenge import ChallengeOrchestrator, OtpSender
from payguard.services.fraud_patterns import load_active_patterns
from payguard.services.geo_risk import GeoResolver
from payguard.services.payment_executor import PaymentExecutor, PaymentGateway
from payguard.services.pipeline import AuthorizationPipeline
from payguard.services.sandbox import (
    LoggingOtpSender,
    ScriptedIssuer,
    ScriptedPaymentGateway,
    StaticGeoResolver,
)
from payguard.services.three_d_secure import (
    IssuerAuthenticator,
    ThreeDSecureAuthenticator,
    ThreeDSecurePolicy,
)
from payguard.stores import SqliteHistoryStore, SqliteKeyValueStore


def build_pipeline(
    settings: Settings,
    connection: sqlite3.Connection,
    geo_resolver: Optional[GeoResolver] = None,
    gateway: Optional[PaymentGateway] = None,
    issuer: Optional[IssuerAuthenticator] = None,
    otp_sender: Optional[OtpSender] = None,
    three_ds_policy: Optional[ThreeDSecurePolicy] = None,
    clock: Optional[Callable[[], datetime]] = None,
) -> AuthorizationPipeline:
    """Wire the engine against sqlite storage. Unset collaborators use the sandbox."""
    config = settings.engine_config()
    orchestrator_kwargs = {"clock": clock} if clock else {}
    orchestrator = ChallengeOrchestrator(
        config.challenge, otp_sender or LoggingOtpSender(), **orchestrator_kwargs
    )
    pipeline_kwargs = {"clock": clock} if clock else {}
    return AuthorizationPipeline(
        config=config,
        history=SqliteHistoryStore(connection),
        store=SqliteKeyValueStore(connection),
        geo_resolver=geo_resolver or StaticGeoResolver(),
        executor=PaymentExecutor(gateway or ScriptedPaymentGateway(), config.retry),
        orchestrator=orchestrator,
        three_d_secure=ThreeDSecureAuthenticator(
            issuer or ScriptedIssuer(), orchestrator, config.three_d_secure
        ),
        three_ds_policy=three_ds_policy or ThreeDSecurePolicy(config.three_d_secure),
        patterns=lambda: load_active_patterns(connection),
        **pipeline_kwargs,
    )


def get_pipeline(request: Request) -> AuthorizationPipeline:
    return request.app.state.pipeline
