"""
Data Models for StudyHub
========================

Design Philosophy:
------------------
1. Every votable thing (note, question, answer, comment) shares one abstract
   base, VotableContent, carrying the upvote/downvote counters, the author
   and a `version` column.
   - The counters are denormalized but must always equal the number of Vote
     rows pointing at the item. They are only written by the vote ledger.

2. Votes use a polymorphic approach via ContentType
   - One Vote table for every content type keeps the "current vote" lookup a
     single indexed query: (voter, content_type, object_id) is unique.
   - The row stores the direction; no row means "no vote".

3. Optimistic concurrency
   - Vote, the content counters and Account.points are read without locks
     and written back with `UPDATE ... WHERE version = <read version>`.
   - Zero rows updated means someone else committed first; the ledger rolls
     back and retries (see services.py).
   - Anything that changes Account.points MUST bump Account.version,
     otherwise a concurrent ledger write would silently overwrite it.

4. Notifications are plain rows per recipient with an optional event_key.
   - Unique (recipient, event_key) makes delivery of one event idempotent.

Indexes Strategy:
-----------------
- vote.voter + vote.content_type + vote.object_id: uniqueness + lookup
- comment.content_type + comment.object_id + comment.created_at: comments
  on a note or question, newest first
- notification.recipient + notification.is_read: unread badge count
- account.points: leaderboard ordering
"""

from typing import NamedTuple

from django.db import models
from django.contrib.auth.models import User
from django.contrib.contenttypes.fields import GenericForeignKey
from django.contrib.contenttypes.models import ContentType
from django.utils import timezone


class VotableContent(models.Model):
    """
    Abstract base for everything that can be voted on.

    `author` is nullable because questions may be posted anonymously; votes
    on authorless content move the counters but credit no one.
    """
    author = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        null=True,
        blank=True,
        related_name='%(class)ss',
    )
    content = models.TextField()
    upvotes = models.PositiveIntegerField(default=0)
    downvotes = models.PositiveIntegerField(default=0)
    version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True

    @property
    def score(self) -> int:
        return self.upvotes - self.downvotes


class Note(VotableContent):
    """A study note, public by default."""
    title = models.CharField(max_length=300)
    subject = models.CharField(max_length=100, blank=True)
    course = models.CharField(max_length=100, blank=True)
    is_public = models.BooleanField(default=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return self.title[:50]


class Question(VotableContent):
    """A forum question. `replies` mirrors the number of answers."""
    title = models.CharField(max_length=300)
    tags = models.JSONField(default=list, blank=True)
    views = models.PositiveIntegerField(default=0)
    replies = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return self.title[:50]


class Answer(VotableContent):
    question = models.ForeignKey(
        Question,
        on_delete=models.CASCADE,
        related_name='answers',
    )
    is_accepted = models.BooleanField(default=False)

    class Meta:
        indexes = [
            models.Index(fields=['question', '-created_at'], name='answer_question_created_idx'),
        ]

    def __str__(self):
        return f"Answer {self.pk} on question {self.question_id}"


class Comment(VotableContent):
    """
    Comment on a note or a question.

    Uses a generic relation like Vote does, so one table serves both
    comment sections.
    """
    content_type = models.ForeignKey(ContentType, on_delete=models.CASCADE)
    object_id = models.PositiveIntegerField()
    target = GenericForeignKey('content_type', 'object_id')

    class Meta:
        indexes = [
            models.Index(fields=['content_type', 'object_id', '-created_at'], name='comment_target_created_idx'),
        ]

    def __str__(self):
        return f"Comment {self.pk} on {self.content_type.model} {self.object_id}"


class Account(models.Model):
    """
    Per-user reputation and preferences.

    `points` may go negative when downvote weights are negative.
    `notification_preferences` maps an event class to a bool; a missing key
    means enabled.
    """
    user = models.OneToOneField(
        User,
        on_delete=models.CASCADE,
        related_name='account',
    )
    points = models.IntegerField(default=0, db_index=True)
    notification_preferences = models.JSONField(default=dict, blank=True)
    version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(default=timezone.now)

    def __str__(self):
        return f"{self.user.username} ({self.points} pts)"


class Vote(models.Model):
    """
    One voter's current vote on one content item.

    CONCURRENCY:
    - Unique constraint (voter, content_type, object_id) at DB level: two
      first votes racing each other cannot both insert.
    - Direction changes and retractions are conditional on `version`.
    """

    class Direction(models.TextChoices):
        UP = 'up', 'Up'
        DOWN = 'down', 'Down'

    voter = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='votes',
    )
    content_type = models.ForeignKey(ContentType, on_delete=models.CASCADE)
    object_id = models.PositiveIntegerField()
    content_object = GenericForeignKey('content_type', 'object_id')
    direction = models.CharField(max_length=4, choices=Direction.choices)
    version = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(default=timezone.now)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=['voter', 'content_type', 'object_id'],
                name='unique_vote_per_voter_per_object',
            ),
        ]
        indexes = [
            models.Index(fields=['content_type', 'object_id'], name='vote_target_idx'),
        ]

    @property
    def vote_key(self) -> str:
        """Composite key of the voted item, e.g. ``"answer-12"``."""
        return f"{self.content_type.model}-{self.object_id}"

    def __str__(self):
        return f"{self.voter.username} voted {self.direction} on {self.vote_key}"


class Notification(models.Model):
    """
    One message to one recipient.

    Lifecycle: created unread, turned read by the recipient. Never deleted
    and never un-read.
    """

    class EventClass(models.TextChoices):
        COMMENTS = 'comments', 'Comments on your content'
        ANSWERS = 'answers', 'Answers to your questions'
        VOTES = 'votes', 'Upvotes on your content'
        ACCEPTED_ANSWERS = 'accepted_answers', 'Your answer was accepted'

    recipient = models.ForeignKey(
        User,
        on_delete=models.CASCADE,
        related_name='notifications',
    )
    kind = models.CharField(max_length=32, choices=EventClass.choices)
    message = models.CharField(max_length=500)
    link = models.CharField(max_length=300, blank=True)
    is_read = models.BooleanField(default=False)
    event_key = models.CharField(max_length=100, null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        ordering = ['-created_at']
        constraints = [
            models.UniqueConstraint(
                fields=['recipient', 'event_key'],
                condition=models.Q(event_key__isnull=False),
                name='unique_notification_per_event',
            ),
        ]
        indexes = [
            models.Index(fields=['recipient', 'is_read'], name='notification_unread_idx'),
            models.Index(fields=['recipient', '-created_at'], name='notification_recent_idx'),
        ]

    def __str__(self):
        state = 'read' if self.is_read else 'unread'
        return f"To {self.recipient.username} ({state}): {self.message[:50]}"


class ContentRef(NamedTuple):
    """Reference to a votable item by type name and primary key."""
    content_type: str
    content_id: int

    @property
    def model(self):
        try:
            return CONTENT_MODELS[self.content_type]
        except KeyError:
            raise ValueError(f"Invalid content_type: {self.content_type}")

    @classmethod
    def for_instance(cls, instance: VotableContent) -> 'ContentRef':
        return cls(instance._meta.model_name, instance.pk)


class VoteWeights(NamedTuple):
    """Signed point deltas credited to the author per upvote / downvote."""
    up: int
    down: int


CONTENT_MODELS = {
    'note': Note,
    'question': Question,
    'answer': Answer,
    'comment': Comment,
}


# ============================================================================
# POINT CONSTANTS
# ============================================================================
# Centralized for easy adjustment and testing
VOTE_WEIGHTS = {
    'note': VoteWeights(up=2, down=0),
    'question': VoteWeights(up=2, down=0),
    'answer': VoteWeights(up=5, down=0),
    'comment': VoteWeights(up=2, down=0),
}

POINTS_NOTE_CREATED = 10
POINTS_QUESTION_CREATED = 5
POINTS_ANSWER_CREATED = 15
POINTS_COMMENT_CREATED = 10
POINTS_ANSWER_ACCEPTED = 25
POINTS_ACCEPTOR_BONUS = 5
