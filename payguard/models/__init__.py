from payguard.models.transaction import (
    TransactionFeatures,
    TransactionHistoryEntry,
    UserHistorySummary,
)
from payguard.models.risk import (
    ConsolidatedAssessment,
    DetailedScores,
    DeviceFingerprint,
    FraudAuditEntry,
    GeoLocation,
    GeoRiskResult,
    RiskSignal,
    VelocityCheckResult,
)
from payguard.models.challenge import (
    CardData,
    ChallengeOutcome,
    ChallengeSession,
    OtpVerification,
    SanitizedCard,
    ThreeDSecureData,
    ThreeDSecureMessage,
)
from payguard.models.payment import (
    AuthorizationResult,
    AuthorizeRequest,
    CustomerContext,
    GatewayReceipt,
    PaymentAttempt,
    PaymentRequest,
    PaymentResult,
    PipelineOptions,
)
from payguard.models.patterns import (
    PatternCondition,
    PatternRequest,
    PatternResponse,
)
