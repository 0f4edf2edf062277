"""Referral fraud scoring.

``score_referral`` is pure: it only looks at the usernames referred in the
velocity window and the candidate's username/email. ``evaluate`` loads those
inputs from the database and records an alert when the referral is flagged.
"""
import logging
import math
import re
from collections import Counter
from dataclasses import dataclass, field
from datetime import timedelta

from flask import current_app

from models import db
from models.user import User
from security.events import log_security_event
from utils.audit import log_event
from utils.clock import utcnow

logger = logging.getLogger(__name__)

REASON_VELOCITY = "High Velocity"
REASON_NAMING = "Suspicious Naming Pattern"
REASON_COMPOSITE = "Anomalous Referral Profile"

_NUMERIC_SUFFIX = re.compile(r"\d*")


@dataclass
class FraudPolicy:
    hard_limit: int = 5
    midpoint: float = 3
    steepness: float = 1.5
    weights: dict = field(default_factory=lambda: {
        "velocity": 0.5,
        "entropy": 0.2,
        "email_pattern": 0.15,
        "metadata_mismatch": 0.15,
    })
    threshold: float = 0.65
    entropy_high: float = 3.8
    entropy_medium: float = 3.0

    @classmethod
    def from_config(cls, config):
        return cls(
            hard_limit=config.get("FRAUD_VELOCITY_HARD_LIMIT", 5),
            midpoint=config.get("FRAUD_VELOCITY_MIDPOINT", 3),
            steepness=config.get("FRAUD_VELOCITY_STEEPNESS", 1.5),
            weights=dict(config.get("FRAUD_WEIGHTS") or cls().weights),
            threshold=config.get("FRAUD_THRESHOLD", 0.65),
            entropy_high=config.get("FRAUD_ENTROPY_HIGH", 3.8),
            entropy_medium=config.get("FRAUD_ENTROPY_MEDIUM", 3.0),
        )


@dataclass
class FraudDecision:
    is_fraud: bool
    score: float
    reason: str = None
    breakdown: dict = field(default_factory=dict)
    evidence: str = None

    def to_dict(self):
        return {"isFraud": self.is_fraud, "score": self.score, "reason": self.reason}


def _common_prefix(a: str, b: str) -> str:
    i = 0
    while i < len(a) and i < len(b) and a[i] == b[i]:
        i += 1
    return a[:i]


def find_naming_pattern(usernames):
    """First pair sharing a prefix longer than 3 followed by digits only, else None."""
    names = [u.lower() for u in usernames if u]
    for i, first in enumerate(names):
        for second in names[i + 1:]:
            prefix = _common_prefix(first, second)
            if len(prefix) <= 3:
                continue
            rest1, rest2 = first[len(prefix):], second[len(prefix):]
            if not (rest1 or rest2):
                continue
            if _NUMERIC_SUFFIX.fullmatch(rest1) and _NUMERIC_SUFFIX.fullmatch(rest2):
                return first, second
    return None


def velocity_score(count: int, midpoint: float = 3, steepness: float = 1.5) -> float:
    return 1 / (1 + math.exp(-steepness * (count - midpoint)))


def shannon_entropy(text: str) -> float:
    if not text:
        return 0.0
    total = len(text)
    return -sum((n / total) * math.log2(n / total) for n in Counter(text).values())


def entropy_score(username: str, high: float = 3.8, medium: float = 3.0) -> float:
    entropy = shannon_entropy(username or "")
    if entropy > high:
        return 1.0
    if entropy > medium:
        return 0.5
    return 0.0


def email_pattern_score(email: str) -> float:
    if not email:
        return 0.0
    lower = email.lower()
    local = lower.split("@")[0]
    score = 0.0
    if "+" in lower:
        score += 0.8
    if local.count(".") > 3:
        score += 0.6
    if len(local) < 5 or len(local) > 30:
        score += 0.3
    if local and sum(c.isdigit() for c in local) / len(local) > 0.6:
        score += 0.5
    return min(score, 1.0)


def metadata_mismatch_score(username: str, email: str) -> float:
    if not username or not email:
        return 0.0
    local = email.split("@")[0].lower()
    user = username.lower()
    if user in local or local in user:
        return 0.0
    for i in range(len(user) - 3):
        if user[i:i + 4] in local:
            return 0.1
    return 1.0


def score_referral(recent_usernames, username: str, email: str, policy: FraudPolicy = None) -> FraudDecision:
    """
    Hard rules first (velocity, then naming pattern), otherwise the
    weighted composite. ``recent_usernames`` includes the candidate.
    """
    policy = policy or FraudPolicy()
    count = len(recent_usernames)

    if count >= policy.hard_limit:
        return FraudDecision(
            True, 1.0, REASON_VELOCITY,
            breakdown={"velocity_count": count},
            evidence=f"Referrer produced {count} referred accounts inside the velocity window",
        )

    if count >= 2:
        pair = find_naming_pattern(recent_usernames)
        if pair:
            return FraudDecision(
                True, 0.9, REASON_NAMING,
                breakdown={"velocity_count": count},
                evidence=f"Sequential usernames: {pair[0]}, {pair[1]}",
            )

    breakdown = {
        "velocity": velocity_score(count, policy.midpoint, policy.steepness),
        "entropy": entropy_score(username, policy.entropy_high, policy.entropy_medium),
        "email_pattern": email_pattern_score(email),
        "metadata_mismatch": metadata_mismatch_score(username, email),
    }
    score = round(sum(breakdown[name] * policy.weights[name] for name in breakdown), 4)
    breakdown = {k: round(v, 4) for k, v in breakdown.items()}

    if score >= policy.threshold:
        return FraudDecision(True, score, REASON_COMPOSITE, breakdown=breakdown,
                             evidence=f"Composite score {score} at or above {policy.threshold}")
    return FraudDecision(False, score, None, breakdown=breakdown)


def recent_referral_usernames(referrer_id: int, minutes: int) -> list:
    since = utcnow() - timedelta(minutes=minutes)
    rows = (
        User.query
        .filter(User.referred_by_id == referrer_id, User.created_at >= since)
        .order_by(User.created_at.asc())
        .all()
    )
    return [r.username for r in rows]


def _record_flag(referrer: User, candidate: User, decision: FraudDecision):
    details = {
        "referrer_id": referrer.id,
        "new_user_id": candidate.id,
        "rule": decision.reason,
        "score": decision.score,
        "breakdown": decision.breakdown,
        "evidence": decision.evidence,
    }
    logger.warning("Referral reward withheld: %s referrer=%s new=%s", decision.reason, referrer.id, candidate.id)
    log_event(
        "FRAUD_ALERT",
        entity="User",
        entity_id=referrer.id,
        metadata={**details, "flagged_user": referrer.username, "fake_account": candidate.username},
        severity="HIGH",
    )
    log_security_event("referral_fraud_detected", details)


def evaluate(referrer_id: int, new_subject_id: int) -> dict:
    """Returns {"isFraud", "score", "reason"} for a freshly referred account."""
    referrer = db.session.get(User, referrer_id)
    candidate = db.session.get(User, new_subject_id)
    if referrer is None or candidate is None:
        return FraudDecision(False, 0.0).to_dict()

    policy = FraudPolicy.from_config(current_app.config)
    usernames = recent_referral_usernames(
        referrer_id, current_app.config.get("FRAUD_VELOCITY_WINDOW_MINUTES", 30)
    )
    decision = score_referral(usernames, candidate.username, candidate.email, policy)
    if decision.is_fraud:
        _record_flag(referrer, candidate, decision)
    return decision.to_dict()
