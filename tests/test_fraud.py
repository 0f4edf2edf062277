from datetime import timedelta

import pytest
from freezegun import freeze_time

from models.audit_log import AuditLog
from models.user import User
from security.fraud import (
    REASON_COMPOSITE,
    REASON_NAMING,
    REASON_VELOCITY,
    FraudPolicy,
    email_pattern_score,
    entropy_score,
    evaluate,
    find_naming_pattern,
    metadata_mismatch_score,
    score_referral,
    shannon_entropy,
    velocity_score,
)


class TestSubScores:
    """Each heuristic on its own."""

    def test_velocity_curve_is_centered_at_three(self):
        assert velocity_score(3) == pytest.approx(0.5)
        assert velocity_score(0) < 0.02
        assert velocity_score(6) > 0.98

    def test_entropy_buckets(self):
        assert shannon_entropy("aaaa") == 0.0
        assert entropy_score("priya") == 0.0
        assert entropy_score("abcdefghij") == 0.5   # log2(10) ~ 3.32
        assert entropy_score("abcdefghijklmno") == 1.0   # log2(15) ~ 3.91

    def test_email_penalties(self):
        assert email_pattern_score("priya.codes@gmail.com") == 0.0
        assert email_pattern_score("john+1@gmail.com") == pytest.approx(0.8)
        assert email_pattern_score("a.b.c.d.e@x.com") == pytest.approx(0.6)
        assert email_pattern_score("12345678@x.com") == pytest.approx(0.5)
        assert email_pattern_score("a+1@x.com") == 1.0

    def test_metadata_mismatch(self):
        assert metadata_mismatch_score("priya", "priya.codes@gmail.com") == 0.0
        assert metadata_mismatch_score("codesmith", "mycode@x.com") == 0.1
        assert metadata_mismatch_score("asdlkjasd93", "random99@unrelated.com") == 1.0

    def test_naming_pattern(self):
        assert find_naming_pattern(["deal1001", "alice", "deal1002"]) == ("deal1001", "deal1002")
        assert find_naming_pattern(["abc1", "abc2"]) is None   # prefix too short
        assert find_naming_pattern(["rahulsharma", "rahulverma"]) is None


class TestScoreReferral:
    """Rule order and the composite decision."""

    def test_hard_velocity_rule(self):
        decision = score_referral(["a1x", "b2y", "c3z", "d4w", "e5v"], "e5v", "e5v@x.com")
        assert decision.to_dict() == {"isFraud": True, "score": 1.0, "reason": REASON_VELOCITY}

    def test_naming_rule_needs_two_referrals(self):
        decision = score_referral(["promo2024", "promo2025"], "promo2025", "promo2025@x.com")
        assert decision.is_fraud and decision.score == 0.9
        assert decision.reason == REASON_NAMING

    def test_human_referral_is_not_flagged(self):
        decision = score_referral(["priya"], "priya", "priya.codes@gmail.com")
        assert not decision.is_fraud
        assert decision.score == pytest.approx(0.0237, abs=1e-4)

    def test_random_username_with_unrelated_email_and_burst(self):
        usernames = ["k7", "m9", "q2", "zx8wq3vbn4ml2tp"]
        decision = score_referral(usernames, "zx8wq3vbn4ml2tp", "random99@unrelated.com")
        assert decision.is_fraud
        assert decision.reason == REASON_COMPOSITE
        assert decision.score >= 0.65
        assert decision.breakdown["metadata_mismatch"] == 1.0

    def test_threshold_is_inclusive(self):
        policy = FraudPolicy(threshold=0.0237)
        assert score_referral(["priya"], "priya", "priya.codes@gmail.com", policy).is_fraud

    def test_scores_are_deterministic(self):
        args = (["a", "b"], "asdlkjasd93", "random99@unrelated.com")
        assert {score_referral(*args).score for _ in range(20)} == {score_referral(*args).score}


class TestEvaluate:
    """Database-backed entry point."""

    def test_five_referrals_in_twenty_minutes(self, app, make_user):
        with freeze_time("2026-04-01 12:00:00") as frozen:
            referrer = make_user("r@example.com", username="referrer")
            newest = None
            for i in range(5):
                newest = make_user(f"friend{i}@example.com", username=f"friend_{chr(97 + i)}",
                                   referred_by_id=referrer.id)
                frozen.tick(timedelta(minutes=4))

            result = evaluate(referrer.id, newest.id)

        assert result == {"isFraud": True, "score": 1.0, "reason": REASON_VELOCITY}
        alert = AuditLog.query.filter_by(action="FRAUD_ALERT").one()
        assert alert.entity_id == str(referrer.id)
        assert "friend_e" in alert.metadata_json

    def test_old_referrals_do_not_count(self, app, make_user):
        with freeze_time("2026-04-01 12:00:00") as frozen:
            referrer = make_user("r@example.com", username="referrer")
            for i in range(5):
                make_user(f"old{i}@example.com", username=f"oldie_{chr(97 + i)}", referred_by_id=referrer.id)
            frozen.tick(timedelta(minutes=31))
            newest = make_user("priya.codes@gmail.com", username="priya", referred_by_id=referrer.id)

            result = evaluate(referrer.id, newest.id)

        assert result["isFraud"] is False
        assert AuditLog.query.filter_by(action="FRAUD_ALERT").count() == 0

    def test_unknown_accounts(self, app):
        assert evaluate(1, 2) == {"isFraud": False, "score": 0.0, "reason": None}
