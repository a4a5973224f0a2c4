"""
Vote & Reputation Ledger
========================

This module handles vote operations with:
1. One atomic read-modify-write over three records
2. Optimistic concurrency with bounded, transparent retries
3. Author point bookkeeping

THE THREE RECORDS:
------------------
- Vote (voter's current direction on the item, absent = no vote)
- the content item's upvotes / downvotes counters
- the author's Account.points

Either all three change or none do.

CONCURRENCY STRATEGY:
---------------------
Problem: two voters on the same answer at the same moment both read
upvotes=3 and both write upvotes=4. One vote is lost.

Solution: version-checked writes (optimistic)
    - Read the three records without locking
    - Write each back with UPDATE ... WHERE version = <what we read>
    - First vote on an item is an INSERT guarded by the unique constraint
    - If any write touches zero rows (or the INSERT hits IntegrityError),
      somebody committed in between: roll back everything and start over
    - Lock contention reported by the database itself (SQLite "database is
      locked", PostgreSQL deadlock / serialization failure) is treated the
      same way: roll back and start over

We use optimistic writes instead of SELECT FOR UPDATE because:
- Votes are high-write, low-conflict
- A missing Vote row can't be locked anyway
- The retry is invisible to the caller and bounded by VOTE_MAX_ATTEMPTS

TOGGLE SEMANTICS:
-----------------
    previous   clicked   result      up   down   points
    -          up        up          +1    0     +w.up
    -          down      down         0   +1     +w.down
    up         up        retracted   -1    0     -w.up
    down       down      retracted    0   -1     -w.down
    up         down      down        -1   +1     -w.up + w.down
    down       up        up          +1   -1     -w.down + w.up
"""

import logging
import random
import time
from typing import Optional

from django.conf import settings
from django.contrib.contenttypes.models import ContentType
from django.db import transaction, IntegrityError, OperationalError
from django.db.models import F
from django.utils import timezone

from .exceptions import (
    AccountNotFound,
    ContentNotFound,
    SelfVoteForbidden,
    Unauthenticated,
    VoteConflict,
)
from .models import Account, ContentRef, Vote, VoteWeights, VOTE_WEIGHTS

logger = logging.getLogger(__name__)

DIRECTIONS = (Vote.Direction.UP, Vote.Direction.DOWN)


class VoteResult:
    """Result of a vote operation with type safety."""
    def __init__(
        self,
        upvotes: int,
        downvotes: int,
        direction: Optional[str],
        previous_direction: Optional[str],
        points_delta: int = 0
    ):
        self.upvotes = upvotes
        self.downvotes = downvotes
        # None after a retraction
        self.direction = direction
        self.previous_direction = previous_direction
        self.points_delta = points_delta

    @property
    def retracted(self) -> bool:
        return self.direction is None


class _StaleRead(Exception):
    """A conditional write found a record changed since it was read."""


class _LedgerState:
    """Snapshot of the three records taken at the start of an attempt."""
    def __init__(self, vote, item, account):
        self.vote = vote
        self.item = item
        self.account = account


# SQLSTATE 40001 serialization_failure, 40P01 deadlock_detected
RETRYABLE_SQLSTATES = ('40001', '40P01')
RETRYABLE_MESSAGES = ('database is locked', 'database table is locked', 'deadlock', 'could not serialize')


def is_transient_db_error(exc: OperationalError) -> bool:
    """Lock, deadlock or serialization failure: safe to roll back and retry."""
    cause = exc.__cause__
    if getattr(cause, 'pgcode', None) in RETRYABLE_SQLSTATES:
        return True
    if getattr(cause, 'sqlstate', None) in RETRYABLE_SQLSTATES:
        return True
    message = str(exc).lower()
    return any(fragment in message for fragment in RETRYABLE_MESSAGES)


def vote_deltas(previous: Optional[str], direction: str, weights: VoteWeights) -> tuple:
    """
    Counter and point changes for clicking `direction` when the voter's
    current vote is `previous`.

    Returns (upvote_delta, downvote_delta, points_delta).
    """
    up_delta = down_delta = points_delta = 0

    if previous == Vote.Direction.UP:
        up_delta -= 1
        points_delta -= weights.up
    elif previous == Vote.Direction.DOWN:
        down_delta -= 1
        points_delta -= weights.down

    if previous != direction:
        if direction == Vote.Direction.UP:
            up_delta += 1
            points_delta += weights.up
        else:
            down_delta += 1
            points_delta += weights.down

    return up_delta, down_delta, points_delta


def _stored_author(content_ref: ContentRef) -> Optional[int]:
    item = content_ref.model.objects.filter(pk=content_ref.content_id).values('author_id').first()
    if item is None:
        raise ContentNotFound(
            f"{content_ref.content_type.capitalize()} {content_ref.content_id} does not exist"
        )
    return item['author_id']


def _read_state(voter_id, content_ref: ContentRef, content_type, author_id) -> _LedgerState:
    model = content_ref.model
    item = (
        model.objects
        .filter(pk=content_ref.content_id)
        .values('pk', 'upvotes', 'downvotes', 'version')
        .first()
    )
    if item is None:
        raise ContentNotFound(
            f"{content_ref.content_type.capitalize()} {content_ref.content_id} does not exist"
        )

    vote = Vote.objects.filter(
        voter_id=voter_id,
        content_type=content_type,
        object_id=content_ref.content_id
    ).first()

    account = None
    if author_id is not None:
        account = Account.objects.filter(user_id=author_id).first()
        if account is None:
            raise AccountNotFound(f"Account for user {author_id} does not exist")

    return _LedgerState(vote, item, account)


def _write_vote(state, voter_id, content_type, content_ref, direction):
    vote = state.vote
    if vote is None:
        try:
            with transaction.atomic():
                Vote.objects.create(
                    voter_id=voter_id,
                    content_type=content_type,
                    object_id=content_ref.content_id,
                    direction=direction
                )
        except IntegrityError:
            # Another request by the same voter inserted first
            raise _StaleRead('vote')
        return

    votes = Vote.objects.filter(pk=vote.pk, version=vote.version)
    if vote.direction == direction:
        deleted, _ = votes.delete()
        changed = deleted
    else:
        changed = votes.update(
            direction=direction,
            version=F('version') + 1,
            updated_at=timezone.now()
        )
    if not changed:
        raise _StaleRead('vote')


def _apply_vote(voter_id, content_ref, content_type, direction, author_id, weights) -> VoteResult:
    """One attempt: read, compute, conditionally write. All or nothing."""
    model = content_ref.model

    with transaction.atomic():
        state = _read_state(voter_id, content_ref, content_type, author_id)
        previous = state.vote.direction if state.vote else None
        up_delta, down_delta, points_delta = vote_deltas(previous, direction, weights)

        _write_vote(state, voter_id, content_type, content_ref, direction)

        upvotes = state.item['upvotes'] + up_delta
        downvotes = state.item['downvotes'] + down_delta
        updated = model.objects.filter(
            pk=content_ref.content_id,
            version=state.item['version']
        ).update(
            upvotes=upvotes,
            downvotes=downvotes,
            version=F('version') + 1
        )
        if not updated:
            raise _StaleRead(content_ref.content_type)

        if state.account is not None and points_delta:
            updated = Account.objects.filter(
                pk=state.account.pk,
                version=state.account.version
            ).update(
                points=state.account.points + points_delta,
                version=F('version') + 1
            )
            if not updated:
                raise _StaleRead('account')

    return VoteResult(
        upvotes=upvotes,
        downvotes=downvotes,
        direction=None if previous == direction else direction,
        previous_direction=previous,
        points_delta=points_delta if state.account is not None else 0
    )


def cast_vote(
    voter_id: Optional[int],
    content_ref: ContentRef,
    direction: str,
    author_id: Optional[int] = None,
    weights: Optional[VoteWeights] = None
) -> VoteResult:
    """
    Cast, flip or retract `voter_id`'s vote on `content_ref`.

    Clicking the current direction again retracts the vote. `author_id`
    defaults to the item's stored author and `weights` to the content
    type's VOTE_WEIGHTS.

    RAISES:
    - Unauthenticated: no voter
    - SelfVoteForbidden: voter is the author (nothing is written)
    - ContentNotFound / AccountNotFound
    - VoteConflict: still conflicting after VOTE_MAX_ATTEMPTS attempts
    """
    if voter_id is None:
        raise Unauthenticated()
    if direction not in DIRECTIONS:
        raise ValueError(f"Invalid direction: {direction}")

    model = content_ref.model
    if weights is None:
        weights = VOTE_WEIGHTS[content_ref.content_type]

    max_attempts = settings.VOTE_MAX_ATTEMPTS
    backoff = settings.VOTE_RETRY_BACKOFF
    author_known = author_id is not None
    for attempt in range(1, max_attempts + 1):
        try:
            if not author_known:
                author_id = _stored_author(content_ref)
                author_known = True
            if voter_id == author_id:
                raise SelfVoteForbidden(f"You cannot vote on your own {content_ref.content_type}.")
            content_type = ContentType.objects.get_for_model(model)
            return _apply_vote(voter_id, content_ref, content_type, direction, author_id, weights)
        except _StaleRead as stale:
            reason = f"a concurrent write on {stale}"
        except OperationalError as exc:
            if not is_transient_db_error(exc):
                raise
            reason = f"database contention ({exc})"

        logger.debug(
            f"Vote by user {voter_id} on {content_ref.content_type}-{content_ref.content_id} "
            f"hit {reason} (attempt {attempt}/{max_attempts})"
        )
        if attempt < max_attempts and backoff:
            # Jitter so that colliding voters don't retry in lockstep
            time.sleep(backoff * attempt * random.uniform(0.5, 1.5))

    logger.warning(
        f"Giving up on vote by user {voter_id} on "
        f"{content_ref.content_type}-{content_ref.content_id} after {max_attempts} attempts"
    )
    raise VoteConflict()
