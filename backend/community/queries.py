"""
Read Helpers
============

Query functions used by the API to render vote state and threads without
N+1 problems.

THE N+1 PROBLEM HERE:
---------------------
Showing 30 answers with "did I vote on this?" naively costs one Vote lookup
per answer. get_user_vote_directions() fetches the caller's votes for a whole
page of items in one query per content type.
"""

from collections import defaultdict
from typing import Dict, Iterable, Optional

from django.contrib.contenttypes.models import ContentType
from django.db.models import F, Sum

from .exceptions import ContentNotFound
from .models import Answer, Comment, ContentRef, Vote, CONTENT_MODELS, VOTE_WEIGHTS


def get_user_vote_directions(user_id: Optional[int], refs: Iterable[ContentRef]) -> Dict[ContentRef, Optional[str]]:
    """
    Current vote direction ('up', 'down' or None) of `user_id` on each ref.

    Query: 1 per distinct content type in `refs`.
    """
    refs = list(refs)
    directions: Dict[ContentRef, Optional[str]] = {ref: None for ref in refs}
    if user_id is None or not refs:
        return directions

    ids_by_type = defaultdict(list)
    for ref in refs:
        ids_by_type[ref.content_type].append(ref.content_id)

    for type_name, ids in ids_by_type.items():
        if type_name not in CONTENT_MODELS:
            raise ValueError(f"Invalid content_type: {type_name}")
        content_type = ContentType.objects.get_for_model(CONTENT_MODELS[type_name])
        votes = Vote.objects.filter(
            voter_id=user_id,
            content_type=content_type,
            object_id__in=ids
        ).values_list('object_id', 'direction')
        for object_id, direction in votes:
            directions[ContentRef(type_name, object_id)] = direction

    return directions


def get_answers_for_question(question_id: int) -> list:
    """
    Answers in display order: the accepted answer first, then by score
    (upvotes - downvotes), newest first on ties.
    """
    return list(
        Answer.objects
        .filter(question_id=question_id)
        .select_related('author')
        .annotate(net_score=F('upvotes') - F('downvotes'))
        .order_by('-is_accepted', '-net_score', '-created_at', '-id')
    )


def get_comments_for(target_ref: ContentRef) -> list:
    """All comments on a note or question, newest first."""
    model = target_ref.model
    if not model.objects.filter(pk=target_ref.content_id).exists():
        raise ContentNotFound(
            f"{target_ref.content_type.capitalize()} {target_ref.content_id} does not exist"
        )
    return list(
        Comment.objects
        .filter(
            content_type=ContentType.objects.get_for_model(model),
            object_id=target_ref.content_id
        )
        .select_related('author')
        .order_by('-created_at', '-id')
    )


def derive_vote_points(user_id: int) -> int:
    """
    Recompute the vote-earned part of a user's points from the counters on
    everything they authored, using the default VOTE_WEIGHTS.

    Account.points also contains one-time authoring awards, so this is an
    audit figure, not a replacement for Account.points.
    """
    total = 0
    for type_name, model in CONTENT_MODELS.items():
        sums = model.objects.filter(author_id=user_id).aggregate(
            up=Sum('upvotes'),
            down=Sum('downvotes')
        )
        weights = VOTE_WEIGHTS[type_name]
        total += (sums['up'] or 0) * weights.up + (sums['down'] or 0) * weights.down
    return total
