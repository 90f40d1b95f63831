"""Leaderboard and settlement schemas"""
from pydantic import BaseModel
from typing import List, Optional


class LeaderboardRow(BaseModel):
    rank: Optional[int] = None
    teamId: int
    userId: int
    points: float
    winningAmount: float = 0


class LeaderboardResponse(BaseModel):
    contestId: int
    contestName: str
    isPrizeDistributed: bool
    entries: List[LeaderboardRow]


class Distribution(BaseModel):
    userId: int
    teamId: int
    rank: Optional[int] = None
    points: float
    winningAmount: float


class SettlementResponse(BaseModel):
    contestId: int
    contestName: str
    totalParticipants: int
    totalWinners: int
    totalPrizeDistributed: float
    distributions: List[Distribution]
