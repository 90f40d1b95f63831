"""
Tests for contest prize settlement.

Settlement must rank, pay and latch a finished contest exactly once, even
when re-run or when a wallet credit fails half way.
"""

import os
import sys
from datetime import timedelta

import pytest
from sqlalchemy.exc import IntegrityError

# Add backend to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from stockleague.db.models import Contest, LeaderboardEntry, PrizeTier, Wallet, WalletTransaction
from stockleague.db.repositories import LeaderboardRepository, WalletRepository
from stockleague.services.settlement_engine import SettlementEngine, prize_for_rank
from stockleague.utils.errors import ContestNotSettledError, RecordNotFoundError

TIERS = [(1, 1, 500), (2, 3, 100)]


@pytest.fixture
def finished_contest(contest_factory, team_factory, now):
    """Ended an hour ago; four users on 50, 50, 30, 10 points."""
    contest = contest_factory(
        name="Opening Bell",
        start=now - timedelta(hours=6),
        end=now - timedelta(hours=1),
        tiers=TIERS,
    )
    team_factory(contest, 1, [("TCS", "BUY")], points=50.0, updated_at=now - timedelta(hours=3))
    team_factory(contest, 2, [("TCS", "SELL")], points=50.0, updated_at=now - timedelta(hours=2))
    team_factory(contest, 3, [("INFY", "BUY")], points=30.0)
    team_factory(contest, 4, [("INFY", "SELL")], points=10.0)
    return contest


def _balance(db_session, user_id):
    db_session.expire_all()
    wallet = db_session.query(Wallet).filter(Wallet.user_id == user_id).one_or_none()
    return wallet.balance if wallet else None


def _ledger(db_session, contest_id):
    db_session.expire_all()
    return db_session.query(WalletTransaction).filter(WalletTransaction.contest_id == contest_id).all()


class TestPrizeForRank:
    def test_first_covering_tier(self):
        tiers = [PrizeTier(rank_from=1, rank_to=1, prize_each=500), PrizeTier(rank_from=2, rank_to=3, prize_each=100)]
        assert prize_for_rank(tiers, 1) == 500
        assert prize_for_rank(tiers, 3) == 100
        assert prize_for_rank(tiers, 4) == 0


class TestSettlement:
    """Settling finished contests"""

    def test_settles_and_pays(self, db_session, finished_contest, now):
        outcome = SettlementEngine().settle_due_contests(db_session, now)

        assert outcome.failed == []
        assert len(outcome.settled) == 1
        result = outcome.settled[0].to_dict()
        assert result["contestId"] == finished_contest.id
        assert result["totalParticipants"] == 4
        assert result["totalWinners"] == 3
        assert result["totalPrizeDistributed"] == 700

        db_session.expire_all()
        entries = {
            e.user_id: e
            for e in db_session.query(LeaderboardEntry).filter(LeaderboardEntry.contest_id == finished_contest.id)
        }
        assert entries[1].rank == 1, "Tie goes to the earlier points update"
        assert entries[2].rank == 2
        assert [entries[u].winning_amount for u in (1, 2, 3, 4)] == [500, 100, 100, 0]

        assert _balance(db_session, 1) == 500
        assert _balance(db_session, 2) == 100
        assert _balance(db_session, 3) == 100
        assert _balance(db_session, 4) is None, "No prize, no wallet touch"
        assert len(_ledger(db_session, finished_contest.id)) == 3

        contest = db_session.query(Contest).filter(Contest.id == finished_contest.id).one()
        assert contest.is_prize_distributed
        assert contest.prize_distributed_at == now

    def test_rerun_is_a_no_op(self, db_session, finished_contest, now):
        engine = SettlementEngine()
        engine.settle_due_contests(db_session, now)

        outcome = engine.settle_due_contests(db_session, now + timedelta(minutes=1))
        again = engine.settle_contest(db_session, finished_contest.id, now + timedelta(minutes=2))

        assert outcome.settled == [] and outcome.failed == []
        assert again is None
        assert _balance(db_session, 1) == 500
        assert len(_ledger(db_session, finished_contest.id)) == 3

    def test_not_due_before_end(self, db_session, contest_factory, team_factory, now):
        contest = contest_factory(tiers=TIERS)
        team_factory(contest, 1, [("TCS", "BUY")], points=10.0)

        outcome = SettlementEngine().settle_due_contests(db_session, now)

        assert outcome.settled == []
        db_session.expire_all()
        assert not db_session.query(Contest).filter(Contest.id == contest.id).one().is_prize_distributed

    def test_empty_contest_still_latches(self, db_session, contest_factory, now):
        contest = contest_factory(start=now - timedelta(hours=3), end=now - timedelta(hours=1), tiers=TIERS)

        outcome = SettlementEngine().settle_due_contests(db_session, now)

        assert len(outcome.settled) == 1
        assert outcome.settled[0].total_participants == 0
        assert outcome.settled[0].total_prize_distributed == 0
        db_session.expire_all()
        assert db_session.query(Contest).filter(Contest.id == contest.id).one().is_prize_distributed

    def test_user_with_two_winning_teams_gets_one_ledger_line(
        self, db_session, contest_factory, team_factory, now
    ):
        contest = contest_factory(start=now - timedelta(hours=3), end=now - timedelta(hours=1), tiers=TIERS)
        team_factory(contest, 1, [("TCS", "BUY")], points=90.0)
        team_factory(contest, 1, [("TCS", "SELL")], points=80.0)
        team_factory(contest, 2, [("INFY", "BUY")], points=70.0)

        SettlementEngine().settle_due_contests(db_session, now)

        ledger = _ledger(db_session, contest.id)
        assert sorted((line.user_id, line.amount) for line in ledger) == [(1, 600), (2, 100)]
        assert _balance(db_session, 1) == 600

    def test_existing_prize_line_is_not_paid_again(self, db_session, finished_contest, now):
        wallet = WalletRepository(db_session).get_or_create(1)
        db_session.add(
            WalletTransaction(
                wallet_id=wallet.id,
                user_id=1,
                contest_id=finished_contest.id,
                type="CREDIT",
                kind="PRIZE",
                amount=500,
                reason="earlier partial run",
                created_at=now,
            )
        )
        db_session.commit()

        outcome = SettlementEngine().settle_due_contests(db_session, now)

        assert len(outcome.settled) == 1
        assert _balance(db_session, 1) == 0, "Already ledgered prize is not credited twice"
        assert len([line for line in _ledger(db_session, finished_contest.id) if line.user_id == 1]) == 1

    def test_failed_credit_rolls_back_everything(self, db_session, finished_contest, now, monkeypatch):
        original = WalletRepository.credit_prize

        def flaky(self, user_id, contest_id, amount, reason, now):
            if user_id == 2:
                raise RuntimeError("wallet service unavailable")
            return original(self, user_id, contest_id, amount, reason, now)

        monkeypatch.setattr(WalletRepository, "credit_prize", flaky)
        engine = SettlementEngine()
        outcome = engine.settle_due_contests(db_session, now)

        assert outcome.failed == [finished_contest.id]
        assert outcome.settled == []
        assert _balance(db_session, 1) is None, "User 1's credit rolled back with the contest"
        assert _ledger(db_session, finished_contest.id) == []
        contest = db_session.query(Contest).filter(Contest.id == finished_contest.id).one()
        assert not contest.is_prize_distributed

        monkeypatch.undo()
        retry = engine.settle_due_contests(db_session, now + timedelta(minutes=1))

        assert len(retry.settled) == 1
        assert _balance(db_session, 1) == 500
        assert _balance(db_session, 2) == 100

    def test_unknown_contest(self, db_session, now):
        with pytest.raises(RecordNotFoundError):
            SettlementEngine().settle_contest(db_session, 999, now)


class TestPrizeLedgerIndex:
    """Only prize lines are unique per (user, contest)"""

    def _line(self, wallet, contest_id, kind, amount, now):
        return WalletTransaction(
            wallet_id=wallet.id,
            user_id=wallet.user_id,
            contest_id=contest_id,
            type="DEBIT" if kind == "ENTRY_FEE" else "CREDIT",
            kind=kind,
            amount=amount,
            created_at=now,
        )

    def test_entry_fee_per_team_is_allowed(self, db_session, contest_factory, now):
        contest = contest_factory()
        wallet = WalletRepository(db_session).get_or_create(1)

        db_session.add(self._line(wallet, contest.id, "ENTRY_FEE", 50, now))
        db_session.add(self._line(wallet, contest.id, "ENTRY_FEE", 50, now))
        db_session.commit()

        assert len(_ledger(db_session, contest.id)) == 2, "Two teams, two entry fees"

    def test_second_prize_line_is_rejected(self, db_session, contest_factory, now):
        contest = contest_factory()
        wallet = WalletRepository(db_session).get_or_create(1)
        db_session.add(self._line(wallet, contest.id, "PRIZE", 500, now))
        db_session.commit()

        db_session.add(self._line(wallet, contest.id, "PRIZE", 500, now))
        with pytest.raises(IntegrityError):
            db_session.commit()
        db_session.rollback()


class TestSettlementResult:
    def test_not_settled_yet(self, db_session, finished_contest):
        with pytest.raises(ContestNotSettledError):
            LeaderboardRepository(db_session).get_settlement_result(finished_contest)

    def test_rebuilt_from_stored_entries(self, db_session, finished_contest, now):
        SettlementEngine().settle_due_contests(db_session, now)
        db_session.expire_all()
        contest = db_session.query(Contest).filter(Contest.id == finished_contest.id).one()

        result = LeaderboardRepository(db_session).get_settlement_result(contest)

        assert result["totalParticipants"] == 4
        assert result["totalWinners"] == 3
        assert [d["userId"] for d in result["distributions"]] == [1, 2, 3]
        assert result["distributions"][0]["winningAmount"] == 500
