"""
Tests for the Release Gatekeeper

Ordered checks: dispute, challenge window, idempotent replay, evaluations,
threshold, then exactly one payout.
"""

from decimal import Decimal

import pytest
from deal_oracle.core.deal import DealStatus
from deal_oracle.core.errors import NoEvaluationsError, PayoutError
from deal_oracle.enforcement.release import ReleaseGatekeeper, payout_idempotency_key
from deal_oracle.payments.collaborator import TokenBalance
from deal_oracle.payments.retry import RetryPolicy

from conftest import ADDRESS_A, ADDRESS_B, WALLET_ID, FakePayments, submission_text


def submit_and_evaluate(oracle, deal_id, address=ADDRESS_A):
    result = oracle.submit(deal_id, submission_text(address))
    oracle.evaluate(deal_id)
    return result["submission_id"]


class TestReleaseScenarios:
    """End-to-end release outcomes."""

    def test_release_pays_winner(self, oracle, open_deal, payments):
        """Score 0.9 over threshold 0.75 releases to that submission."""
        submission_id = submit_and_evaluate(oracle, open_deal.deal_id)

        result = oracle.release(open_deal.deal_id)

        assert result.released is True
        assert result.winner_submission_id == submission_id
        assert result.payout_address == ADDRESS_A
        assert result.score == 0.9
        assert result.status == DealStatus.COMPLETED
        assert len(payments.transfers) == 1
        transfer = payments.transfers[0]
        assert transfer["destination_address"] == ADDRESS_A
        assert transfer["amount"] == Decimal("10")
        assert transfer["asset_ref"] == "token-usdc"
        assert transfer["wallet_ref"] == WALLET_ID

        stored = oracle.status(open_deal.deal_id)
        assert stored.status == DealStatus.COMPLETED
        assert stored.payout_reference == result.payout_reference
        assert stored.winner_submission_id == submission_id

    def test_below_threshold_rejects(self, oracle, open_deal, judge, payments):
        judge.score = 0.5
        submit_and_evaluate(oracle, open_deal.deal_id)

        result = oracle.release(open_deal.deal_id)

        assert result.released is False
        assert "threshold" in result.reason
        assert result.score == 0.5
        assert oracle.status(open_deal.deal_id).status == DealStatus.REJECTED
        assert payments.attempts == 0

    def test_threshold_boundary_releases(self, oracle, open_deal, judge):
        judge.score = 0.75
        submit_and_evaluate(oracle, open_deal.deal_id)

        assert oracle.release(open_deal.deal_id).released is True

    def test_rejection_is_redecided(self, oracle, open_deal, judge):
        """A REJECTED deal releases once a better evaluation exists."""
        judge.score = 0.5
        submit_and_evaluate(oracle, open_deal.deal_id)
        assert oracle.release(open_deal.deal_id).released is False

        judge.score = 0.95
        oracle.evaluate(open_deal.deal_id, reevaluate_all=True)

        assert oracle.release(open_deal.deal_id).released is True

    def test_best_of_many(self, oracle, open_deal, judge, clock):
        judge.by_address = {ADDRESS_A: 0.8, ADDRESS_B: 0.95}
        oracle.submit(open_deal.deal_id, submission_text(ADDRESS_A))
        clock.advance(seconds=1)
        second = oracle.submit(open_deal.deal_id, submission_text(ADDRESS_B))
        oracle.evaluate(open_deal.deal_id)

        result = oracle.release(open_deal.deal_id)

        assert result.winner_submission_id == second["submission_id"]
        assert result.payout_address == ADDRESS_B


class TestChallengeWindow:
    """Test the time gate."""

    def test_release_before_window_closes(self, oracle, payments, clock):
        deal = oracle.create(title="t", amount="5", requirements="r", challenge_minutes=30)
        submit_and_evaluate(oracle, deal.deal_id)

        result = oracle.release(deal.deal_id)

        assert result.released is False
        assert result.status == DealStatus.CHALLENGE_WINDOW
        assert result.challenge_until == deal.challenge_until
        assert payments.attempts == 0

    def test_release_after_window(self, oracle, clock):
        deal = oracle.create(title="t", amount="5", requirements="r", challenge_minutes=30)
        submit_and_evaluate(oracle, deal.deal_id)
        assert oracle.release(deal.deal_id).released is False

        clock.advance(minutes=30)

        assert oracle.release(deal.deal_id).released is True


class TestDispute:
    """Test dispute masking."""

    def test_dispute_blocks_release(self, oracle, open_deal, payments):
        submit_and_evaluate(oracle, open_deal.deal_id)
        oracle.dispute(open_deal.deal_id, "payout address belongs to someone else")

        result = oracle.release(open_deal.deal_id)

        assert result.released is False
        assert "someone else" in result.reason
        assert result.status == DealStatus.DISPUTED
        assert payments.attempts == 0

    def test_dispute_wins_over_open_window(self, oracle, payments):
        deal = oracle.create(title="t", amount="5", requirements="r", challenge_minutes=30)
        oracle.dispute(deal.deal_id)

        result = oracle.release(deal.deal_id)

        assert result.released is False
        assert result.status == DealStatus.DISPUTED

    def test_dispute_is_sticky(self, oracle, open_deal, judge, clock):
        submit_and_evaluate(oracle, open_deal.deal_id)
        oracle.dispute(open_deal.deal_id)
        judge.score = 1.0
        oracle.evaluate(open_deal.deal_id, reevaluate_all=True)
        clock.advance(minutes=600)

        assert oracle.release(open_deal.deal_id).released is False
        assert oracle.release(open_deal.deal_id).released is False


class TestIdempotency:
    """Test repeated release calls."""

    def test_second_release_replays(self, oracle, open_deal, payments):
        """Two releases share one reference and one transfer."""
        submit_and_evaluate(oracle, open_deal.deal_id)

        first = oracle.release(open_deal.deal_id)
        second = oracle.release(open_deal.deal_id)

        assert second.released is True
        assert second.already_released is True
        assert second.payout_reference == first.payout_reference
        assert second.winner_submission_id == first.winner_submission_id
        assert second.payout_address == first.payout_address
        assert second.score == first.score
        assert len(payments.transfers) == 1

    def test_later_evaluations_do_not_change_winner(self, oracle, open_deal, judge, payments):
        first_id = submit_and_evaluate(oracle, open_deal.deal_id)
        first = oracle.release(open_deal.deal_id)

        # A better submission cannot arrive after completion, but a re-score can.
        judge.score = 0.1
        oracle.evaluate(open_deal.deal_id, reevaluate_all=True)

        again = oracle.release(open_deal.deal_id)

        assert again.winner_submission_id == first_id
        assert again.payout_reference == first.payout_reference
        assert again.score == first.score == 0.9
        assert again.payout_address == first.payout_address
        assert len(payments.transfers) == 1

    def test_idempotency_key_is_stable(self, oracle, open_deal, payments):
        submission_id = submit_and_evaluate(oracle, open_deal.deal_id)
        oracle.release(open_deal.deal_id)

        expected = payout_idempotency_key(open_deal.deal_id, submission_id)
        assert payments.transfers[0]["idempotency_key"] == expected
        assert payout_idempotency_key(open_deal.deal_id, submission_id) == expected
        assert payout_idempotency_key(open_deal.deal_id, "sub-other") != expected


class TestNoEvaluations:
    """Test release with nothing scored."""

    def test_no_submissions(self, oracle, open_deal):
        with pytest.raises(NoEvaluationsError):
            oracle.release(open_deal.deal_id)

    def test_unevaluated_submission(self, oracle, open_deal):
        oracle.submit(open_deal.deal_id, submission_text())

        with pytest.raises(NoEvaluationsError):
            oracle.release(open_deal.deal_id)


class TestPayout:
    """Test payout execution and retries."""

    def test_transient_failures_are_retried(self, oracle, open_deal, payments, sleeps):
        payments.failures = 2
        submit_and_evaluate(oracle, open_deal.deal_id)

        result = oracle.release(open_deal.deal_id)

        assert result.released is True
        assert payments.attempts == 3
        assert sleeps == [1.0, 2.0]

    def test_exhausted_retries_leave_deal_untouched(self, oracle, open_deal, payments, sleeps):
        """PayoutError leaves the pre-payout status so release can be retried."""
        payments.failures = 3
        submit_and_evaluate(oracle, open_deal.deal_id)

        with pytest.raises(PayoutError):
            oracle.release(open_deal.deal_id)

        stored = oracle.status(open_deal.deal_id)
        assert stored.status == DealStatus.EVALUATED
        assert stored.payout_reference is None
        assert sleeps == [1.0, 2.0]

        result = oracle.release(open_deal.deal_id)
        assert result.released is True
        assert payments.attempts == 4

    def test_native_asset_never_selected(self, oracle, open_deal, payments):
        payments.balances = [
            TokenBalance(symbol="ETH", amount="1", is_native=True, asset_ref="token-eth"),
        ]
        submit_and_evaluate(oracle, open_deal.deal_id)

        with pytest.raises(PayoutError):
            oracle.release(open_deal.deal_id)
        assert payments.attempts == 0

    def test_non_preferred_asset_fallback(self, oracle, open_deal, payments):
        payments.balances = [
            TokenBalance(symbol="ETH", amount="1", is_native=True, asset_ref="token-eth"),
            TokenBalance(symbol="EURC", amount="50", is_native=False, asset_ref="token-eurc"),
        ]
        submit_and_evaluate(oracle, open_deal.deal_id)

        oracle.release(open_deal.deal_id)

        assert payments.transfers[0]["asset_ref"] == "token-eurc"

    def test_unconfigured_payments(self, oracle, open_deal):
        oracle.gatekeeper.payments = None
        submit_and_evaluate(oracle, open_deal.deal_id)

        with pytest.raises(PayoutError):
            oracle.release(open_deal.deal_id)
        assert oracle.status(open_deal.deal_id).status == DealStatus.EVALUATED


class TestGatekeeperUnit:
    """Gatekeeper against a bare Deal, without the service."""

    def test_custom_retry_policy(self, open_deal):
        from deal_oracle.core.deal import Evaluation, Submission

        open_deal.submissions.append(Submission(
            submission_id="sub-1",
            submission_text="x",
            payout_address=ADDRESS_A,
            evaluation=Evaluation(score=0.9),
        ))
        open_deal.status = DealStatus.EVALUATED
        delays = []
        gatekeeper = ReleaseGatekeeper(
            payments=FakePayments(failures=5),
            wallet_ref=WALLET_ID,
            retry_policy=RetryPolicy(max_attempts=5, base_delay=0.5),
            sleep=delays.append,
        )

        with pytest.raises(PayoutError):
            gatekeeper.release(open_deal, open_deal.challenge_until)

        assert delays == [0.5, 1.0, 2.0, 4.0]
        assert open_deal.status == DealStatus.EVALUATED
        assert open_deal.payout_reference is None
