"""
Leaderboard & Badges
====================

Points live on Account (kept consistent by the vote ledger and the authoring
awards), so the leaderboard is a plain ordered read:

    SELECT account.user_id, auth_user.username, account.points
    FROM community_account account
    INNER JOIN auth_user ON account.user_id = auth_user.id
    ORDER BY account.points DESC, account.user_id ASC
    LIMIT 10;

This uses the index on account.points. Ties are broken by user id so the
order is stable between requests.

Badges are computed on read from how much the user has authored.
"""

from typing import List, Optional, TypedDict

from .models import Account, Answer, Note, Question


class LeaderboardEntry(TypedDict):
    """Type hint for leaderboard entries."""
    user_id: int
    username: str
    display_name: str
    points: int
    rank: int


class Badge(TypedDict):
    name: str
    description: str
    goal: int
    progress: int
    achieved: bool


# (name, description, counted model, goal)
BADGES = [
    ("First Note", "Create your first note.", Note, 1),
    ("Question Starter", "Ask your first question.", Question, 1),
    ("Helping Hand", "Provide your first answer.", Answer, 1),
    ("Note Taker Pro", "Create 10 notes.", Note, 10),
    ("Curious Mind", "Ask 10 questions.", Question, 10),
    ("Community Pillar", "Provide 10 answers.", Answer, 10),
]


def get_leaderboard(limit: int = 10) -> List[LeaderboardEntry]:
    """Top accounts by points."""
    accounts = (
        Account.objects
        .select_related('user')
        .order_by('-points', 'user_id')[:limit]
    )

    result: List[LeaderboardEntry] = []
    for rank, account in enumerate(accounts, start=1):
        result.append({
            'user_id': account.user_id,
            'username': account.user.username,
            'display_name': account.user.get_full_name() or account.user.username,
            'points': account.points,
            'rank': rank
        })

    return result


def get_user_points(user_id: int) -> int:
    points = Account.objects.filter(user_id=user_id).values_list('points', flat=True).first()
    return points or 0


def get_user_rank(user_id: int) -> Optional[int]:
    """
    1 + number of accounts with strictly more points, so tied users share a
    rank. None if the user has no account.
    """
    points = Account.objects.filter(user_id=user_id).values_list('points', flat=True).first()
    if points is None:
        return None
    return Account.objects.filter(points__gt=points).count() + 1


def get_badges(user_id: int) -> List[Badge]:
    counts = {}
    badges: List[Badge] = []
    for name, description, model, goal in BADGES:
        if model not in counts:
            counts[model] = model.objects.filter(author_id=user_id).count()
        done = counts[model]
        badges.append({
            'name': name,
            'description': description,
            'goal': goal,
            'progress': min(done * 100 // goal, 100),
            'achieved': done >= goal
        })
    return badges
