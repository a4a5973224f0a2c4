"""
Content Authoring
=================

Creating notes, questions, answers and comments, accepting answers,
counting question views and deleting comments.

Each operation is one transaction: the new row, the point award and any
counter bump commit together. Notifications are sent only after that
transaction has committed, through the best-effort notify_if_enabled(), so
a notification problem can never undo or fail the content itself.

POINT AWARDS:
-------------
Awards use F() increments and always bump Account.version. The vote ledger
writes Account.points as "value it read + delta" guarded by version, so an
award that skipped the version bump could be overwritten by a concurrent
vote.
"""

import logging
from typing import Iterable, Optional

from django.contrib.auth.models import User
from django.contrib.contenttypes.models import ContentType
from django.db import transaction
from django.db.models import F

from .exceptions import ContentNotFound, NotCommentAuthor, NotQuestionAuthor, Unauthenticated
from .models import (
    Account,
    Answer,
    Comment,
    ContentRef,
    Note,
    Notification,
    Question,
    Vote,
    POINTS_ACCEPTOR_BONUS,
    POINTS_ANSWER_ACCEPTED,
    POINTS_ANSWER_CREATED,
    POINTS_COMMENT_CREATED,
    POINTS_NOTE_CREATED,
    POINTS_QUESTION_CREATED,
    VOTE_WEIGHTS,
)
from .notifications import notify_if_enabled

logger = logging.getLogger(__name__)

COMMENTABLE_TYPES = ('note', 'question')


def award_points(user_id: Optional[int], delta: int) -> None:
    """One-time credit (or debit) outside the vote ledger."""
    if user_id is None or not delta:
        return
    updated = Account.objects.filter(user_id=user_id).update(
        points=F('points') + delta,
        version=F('version') + 1
    )
    if not updated:
        logger.warning(f"No account for user {user_id}; {delta} points not awarded")


def display_name(user: User) -> str:
    return user.get_full_name() or user.username


def content_link(item) -> str:
    """Page that shows `item`: answers and comments link to their parent."""
    if isinstance(item, Note):
        return f"/notes/{item.pk}"
    if isinstance(item, Question):
        return f"/forum/{item.pk}"
    if isinstance(item, Answer):
        return f"/forum/{item.question_id}"
    if item.content_type.model == 'note':
        return f"/notes/{item.object_id}"
    return f"/forum/{item.object_id}"


def _require_author(author_id: Optional[int]) -> User:
    if author_id is None:
        raise Unauthenticated()
    try:
        return User.objects.get(pk=author_id)
    except User.DoesNotExist:
        raise Unauthenticated(f"User {author_id} does not exist")


def _clean_text(value: str, field: str) -> str:
    value = (value or '').strip()
    if not value:
        raise ValueError(f"{field} cannot be empty.")
    return value


def create_note(
    author_id: Optional[int],
    title: str,
    content: str,
    subject: str = '',
    course: str = '',
    is_public: bool = True
) -> Note:
    """Publish a note and award POINTS_NOTE_CREATED."""
    _require_author(author_id)
    with transaction.atomic():
        note = Note.objects.create(
            author_id=author_id,
            title=_clean_text(title, 'Title'),
            content=_clean_text(content, 'Content'),
            subject=subject.strip(),
            course=course.strip(),
            is_public=is_public
        )
        award_points(author_id, POINTS_NOTE_CREATED)
    return note


def create_question(
    author_id: Optional[int],
    title: str,
    content: str,
    tags: Iterable[str] = (),
    anonymous: bool = False
) -> Question:
    """
    Ask a question. Anonymous questions store no author and earn no points,
    and votes on them credit nobody.
    """
    _require_author(author_id)
    with transaction.atomic():
        question = Question.objects.create(
            author_id=None if anonymous else author_id,
            title=_clean_text(title, 'Title'),
            content=_clean_text(content, 'Content'),
            tags=[tag.strip() for tag in tags if tag.strip()]
        )
        if not anonymous:
            award_points(author_id, POINTS_QUESTION_CREATED)
    return question


def create_answer(author_id: Optional[int], question_id: int, content: str) -> Answer:
    """
    Answer a question: +POINTS_ANSWER_CREATED, question.replies + 1, and an
    'answers' notification for the question author.
    """
    author = _require_author(author_id)
    content = _clean_text(content, 'Answer')

    with transaction.atomic():
        question = Question.objects.filter(pk=question_id).first()
        if question is None:
            raise ContentNotFound(f"Question {question_id} does not exist")

        answer = Answer.objects.create(
            question=question,
            author_id=author_id,
            content=content
        )
        Question.objects.filter(pk=question_id).update(replies=F('replies') + 1)
        award_points(author_id, POINTS_ANSWER_CREATED)

    if question.author_id and question.author_id != author_id:
        notify_if_enabled(
            question.author_id,
            Notification.EventClass.ANSWERS,
            f'{display_name(author)} answered your question: "{question.title}"',
            link=f"/forum/{question_id}",
            event_key=f"answer:{answer.pk}"
        )
    return answer


def create_comment(author_id: Optional[int], target_ref: ContentRef, content: str) -> Comment:
    """
    Comment on a note or question: +POINTS_COMMENT_CREATED and a
    'comments' notification for the target's author.
    """
    author = _require_author(author_id)
    content = _clean_text(content, 'Comment')
    if target_ref.content_type not in COMMENTABLE_TYPES:
        raise ValueError(f"Cannot comment on a {target_ref.content_type}")

    model = target_ref.model
    with transaction.atomic():
        target = model.objects.filter(pk=target_ref.content_id).first()
        if target is None:
            raise ContentNotFound(
                f"{target_ref.content_type.capitalize()} {target_ref.content_id} does not exist"
            )

        comment = Comment.objects.create(
            content_type=ContentType.objects.get_for_model(model),
            object_id=target.pk,
            author_id=author_id,
            content=content
        )
        award_points(author_id, POINTS_COMMENT_CREATED)

    if target.author_id and target.author_id != author_id:
        notify_if_enabled(
            target.author_id,
            Notification.EventClass.COMMENTS,
            f"{display_name(author)} commented on {target.title}",
            link=content_link(target),
            event_key=f"comment:{comment.pk}"
        )
    return comment


def toggle_accepted_answer(actor_id: Optional[int], answer_id: int) -> Answer:
    """
    Accept an answer, or un-accept it if it already is.

    Only the question author may do this. A question has at most one
    accepted answer: accepting a new one un-accepts the old one and reverses
    its awards. Accepting gives the answer author POINTS_ANSWER_ACCEPTED and
    the question author POINTS_ACCEPTOR_BONUS.
    """
    actor = _require_author(actor_id)

    with transaction.atomic():
        answer = Answer.objects.select_related('question').filter(pk=answer_id).first()
        if answer is None:
            raise ContentNotFound(f"Answer {answer_id} does not exist")
        # Serializes concurrent accept toggles on the same question
        question = Question.objects.select_for_update().get(pk=answer.question_id)
        if question.author_id != actor_id:
            raise NotQuestionAuthor()
        answer.refresh_from_db(fields=['is_accepted'])

        # Lock order matches the vote ledger: content rows first, accounts last
        if answer.is_accepted:
            Answer.objects.filter(pk=answer.pk).update(is_accepted=False)
            award_points(answer.author_id, -POINTS_ANSWER_ACCEPTED)
            award_points(question.author_id, -POINTS_ACCEPTOR_BONUS)
            answer.is_accepted = False
        else:
            previously_accepted = list(
                Answer.objects
                .filter(question=question, is_accepted=True)
                .values_list('pk', 'author_id')
            )
            Answer.objects.filter(pk__in=[pk for pk, _ in previously_accepted]).update(is_accepted=False)
            Answer.objects.filter(pk=answer.pk).update(is_accepted=True)

            for _, other_author_id in previously_accepted:
                award_points(other_author_id, -POINTS_ANSWER_ACCEPTED)
                award_points(question.author_id, -POINTS_ACCEPTOR_BONUS)
            award_points(answer.author_id, POINTS_ANSWER_ACCEPTED)
            award_points(question.author_id, POINTS_ACCEPTOR_BONUS)
            answer.is_accepted = True

    if answer.is_accepted and answer.author_id and answer.author_id != actor_id:
        notify_if_enabled(
            answer.author_id,
            Notification.EventClass.ACCEPTED_ANSWERS,
            f'{display_name(actor)} accepted your answer to "{question.title}"',
            link=f"/forum/{question.pk}",
            event_key=f"accepted:{answer.pk}"
        )
    return answer


def open_question(question_id: int) -> Question:
    """Fetch a question for its page and count the visit."""
    updated = Question.objects.filter(pk=question_id).update(views=F('views') + 1)
    if not updated:
        raise ContentNotFound(f"Question {question_id} does not exist")
    return Question.objects.select_related('author').get(pk=question_id)


def delete_comment(actor_id: Optional[int], comment_id: int) -> None:
    """
    Delete a comment. Only its author may do this.

    The comment's votes go with it, and the author loses what the comment
    earned: POINTS_COMMENT_CREATED plus the vote points on its counters.

    Locks are taken in the vote ledger's order (votes, content row,
    account). Votes are deleted before and after locking the comment, which
    catches any vote that committed in between; a ledger write still in
    flight on the comment fails its version check and retries into
    ContentNotFound.
    """
    _require_author(actor_id)
    content_type = ContentType.objects.get_for_model(Comment)

    with transaction.atomic():
        row = Comment.objects.filter(pk=comment_id).values('author_id').first()
        if row is None:
            raise ContentNotFound(f"Comment {comment_id} does not exist")
        author_id = row['author_id']
        if author_id != actor_id:
            raise NotCommentAuthor()

        votes = Vote.objects.filter(content_type=content_type, object_id=comment_id)
        votes.delete()
        comment = Comment.objects.select_for_update().filter(pk=comment_id).first()
        if comment is None:
            raise ContentNotFound(f"Comment {comment_id} does not exist")
        votes.delete()

        weights = VOTE_WEIGHTS['comment']
        vote_points = comment.upvotes * weights.up + comment.downvotes * weights.down
        comment.delete()
        award_points(author_id, -(POINTS_COMMENT_CREATED + vote_points))

    logger.info(f"User {actor_id} deleted comment {comment_id}")
