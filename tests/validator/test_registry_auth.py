"""Tests for registry access policy, challenge-response auth, and rate limiting."""

import time

import pytest

from lockin.validator.registry import InMemoryRegistry
from lockin.validator.registry.auth import AccessPolicy


@pytest.fixture
def policy():
    known = {"validator_a", "validator_b"}
    return AccessPolicy(is_registered=lambda hk: hk in known)


class TestEligibility:

    def test_registered_validator_passes(self, policy):
        assert policy.check_eligibility("validator_a").eligible

    def test_unknown_hotkey_rejected(self, policy):
        result = policy.check_eligibility("stranger")
        assert not result.eligible
        assert result.reason == "not_registered"

    def test_inactive_validator_still_eligible(self):
        registry = InMemoryRegistry()
        registry.register_validator("validator_a", active=False)
        policy = AccessPolicy(is_registered=registry.is_registered)
        assert policy.check_eligibility("validator_a").eligible
        assert not policy.check_eligibility("stranger").eligible

    def test_empty_hotkey_rejected(self, policy):
        result = policy.check_eligibility("")
        assert not result.eligible
        assert result.reason == "empty_hotkey"


class TestChallengeResponse:

    def test_full_flow(self, validator_wallet):
        hotkey = validator_wallet.hotkey.ss58_address
        policy = AccessPolicy(is_registered=lambda hk: hk == hotkey)
        nonce = policy.issue_challenge(hotkey)
        assert len(nonce) == 64

        sig = validator_wallet.hotkey.sign(nonce.encode()).hex()
        token = policy.verify_response(hotkey, nonce, sig)
        assert token is not None
        assert policy.validate_token(token) == hotkey

    def test_nonce_single_use(self, validator_wallet):
        hotkey = validator_wallet.hotkey.ss58_address
        policy = AccessPolicy(is_registered=lambda hk: True)
        nonce = policy.issue_challenge(hotkey)
        sig = validator_wallet.hotkey.sign(nonce.encode()).hex()
        assert policy.verify_response(hotkey, nonce, sig) is not None
        assert policy.verify_response(hotkey, nonce, sig) is None

    def test_wrong_signer_rejected(self, validator_wallet, other_wallet):
        hotkey = validator_wallet.hotkey.ss58_address
        policy = AccessPolicy(is_registered=lambda hk: True)
        nonce = policy.issue_challenge(hotkey)
        sig = other_wallet.hotkey.sign(nonce.encode()).hex()
        assert policy.verify_response(hotkey, nonce, sig) is None

    def test_hotkey_mismatch_rejected(self, policy):
        nonce = policy.issue_challenge("validator_a")
        assert policy.verify_response("validator_b", nonce, "00") is None

    def test_unknown_nonce_rejected(self, policy):
        assert policy.verify_response("validator_a", "deadbeef", "00") is None

    def test_expired_token(self, validator_wallet):
        hotkey = validator_wallet.hotkey.ss58_address
        policy = AccessPolicy(is_registered=lambda hk: True, token_ttl=0)
        nonce = policy.issue_challenge(hotkey)
        token = policy.verify_response(hotkey, nonce, validator_wallet.hotkey.sign(nonce.encode()).hex())
        time.sleep(0.01)
        assert policy.validate_token(token) is None

    def test_invalid_token(self, policy):
        assert policy.validate_token("not-a-token") is None


class TestRateLimit:

    def test_within_budget(self, policy):
        for _ in range(5):
            assert policy.check_rate_limit("validator_a")

    def test_over_budget(self):
        policy = AccessPolicy(is_registered=lambda hk: True, rate_limit_per_hour=3)
        results = [policy.check_rate_limit("validator_a") for _ in range(4)]
        assert results == [True, True, True, False]

    def test_budget_is_per_hotkey(self):
        policy = AccessPolicy(is_registered=lambda hk: True, rate_limit_per_hour=1)
        assert policy.check_rate_limit("validator_a")
        assert policy.check_rate_limit("validator_b")
