"""
Tests for StudyHub Community

Focus areas:
1. Vote ledger toggle semantics and point bookkeeping
2. Optimistic-concurrency retries (no lost updates, bounded retries)
3. Notification gating, idempotency and read state
4. Authoring awards, leaderboard and API error mapping
"""

import threading
from io import StringIO
from unittest.mock import patch

from django.contrib.auth.models import User
from django.contrib.contenttypes.models import ContentType
from django.core.management import call_command
from django.db import DatabaseError, OperationalError, connection
from django.db.models import F
from django.test import TestCase, TransactionTestCase, override_settings
from rest_framework.test import APIClient

from . import services
from .authoring import (
    award_points,
    create_answer,
    create_comment,
    create_note,
    create_question,
    delete_comment,
    open_question,
    toggle_accepted_answer,
)
from .exceptions import (
    ContentNotFound,
    NotCommentAuthor,
    NotQuestionAuthor,
    SelfVoteForbidden,
    Unauthenticated,
    VoteConflict,
)
from .leaderboard import get_badges, get_leaderboard, get_user_rank
from .models import (
    Account,
    Answer,
    Comment,
    ContentRef,
    Note,
    Notification,
    Question,
    Vote,
    VoteWeights,
    POINTS_ACCEPTOR_BONUS,
    POINTS_ANSWER_ACCEPTED,
    POINTS_ANSWER_CREATED,
    POINTS_COMMENT_CREATED,
    POINTS_NOTE_CREATED,
    POINTS_QUESTION_CREATED,
)
from .notifications import (
    get_preferences,
    list_notifications,
    mark_all_read,
    mark_read,
    notify_if_enabled,
    unread_count,
    update_preferences,
)
from .queries import derive_vote_points, get_answers_for_question, get_user_vote_directions
from .services import cast_vote, is_transient_db_error, vote_deltas


def points_of(user):
    return Account.objects.get(user=user).points


class VoteLedgerTestCase(TestCase):
    """
    Toggle semantics and bookkeeping of cast_vote().

    CRITICAL: after every call the counters equal the number of Vote rows
    and the author's points moved by exactly the weighted delta.
    """

    def setUp(self):
        self.author = User.objects.create_user('author', 'a@test.com', 'pass')
        self.voter = User.objects.create_user('voter', 'v@test.com', 'pass')
        self.other = User.objects.create_user('other', 'o@test.com', 'pass')
        self.note = Note.objects.create(author=self.author, title='Cells', content='Mitochondria ' * 5)
        self.ref = ContentRef.for_instance(self.note)

    def assertCounters(self, upvotes, downvotes):
        self.note.refresh_from_db()
        self.assertEqual((self.note.upvotes, self.note.downvotes), (upvotes, downvotes))
        self.assertEqual(Vote.objects.filter(object_id=self.note.pk, direction='up').count(), upvotes)
        self.assertEqual(Vote.objects.filter(object_id=self.note.pk, direction='down').count(), downvotes)

    def test_first_upvote(self):
        result = cast_vote(self.voter.id, self.ref, 'up')

        self.assertEqual((result.upvotes, result.downvotes), (1, 0))
        self.assertEqual(result.direction, 'up')
        self.assertIsNone(result.previous_direction)
        self.assertCounters(1, 0)
        self.assertEqual(points_of(self.author), 2)

    def test_up_down_retract_scenario(self):
        """up (1/0, +2) -> down (0/1, -1) -> down again (0/0, 0)."""
        weights = VoteWeights(up=2, down=-1)

        cast_vote(self.voter.id, self.ref, 'up', weights=weights)
        self.assertCounters(1, 0)
        self.assertEqual(points_of(self.author), 2)

        result = cast_vote(self.voter.id, self.ref, 'down', weights=weights)
        self.assertEqual(result.previous_direction, 'up')
        self.assertEqual(result.points_delta, -3)
        self.assertCounters(0, 1)
        self.assertEqual(points_of(self.author), -1)

        result = cast_vote(self.voter.id, self.ref, 'down', weights=weights)
        self.assertTrue(result.retracted)
        self.assertCounters(0, 0)
        self.assertEqual(points_of(self.author), 0)
        self.assertFalse(Vote.objects.filter(voter=self.voter).exists())

    def test_same_vote_twice_retracts(self):
        cast_vote(self.voter.id, self.ref, 'up')
        result = cast_vote(self.voter.id, self.ref, 'up')

        self.assertIsNone(result.direction)
        self.assertCounters(0, 0)
        self.assertEqual(points_of(self.author), 0)
        self.assertFalse(Vote.objects.filter(voter=self.voter).exists())

    def test_two_voters_point_invariant(self):
        """Weights {up: +2, down: -1}: one up and one down nets +1."""
        weights = VoteWeights(up=2, down=-1)
        before = points_of(self.author)

        cast_vote(self.voter.id, self.ref, 'up', weights=weights)
        cast_vote(self.other.id, self.ref, 'down', weights=weights)

        self.assertCounters(1, 1)
        self.assertEqual(points_of(self.author) - before, 1)

    def test_sequence_nets_to_final_state(self):
        """Intermediate flips cancel out exactly."""
        sequences = [
            ['up', 'down', 'up'],
            ['down', 'down', 'up', 'down'],
            ['up', 'up', 'up'],
            ['down', 'up', 'up', 'down', 'down'],
        ]
        weights = VoteWeights(up=3, down=-2)
        for sequence in sequences:
            with self.subTest(sequence=sequence):
                note = Note.objects.create(author=self.author, title='Seq', content='Sequence test')
                ref = ContentRef.for_instance(note)
                before = points_of(self.author)

                final = None
                for direction in sequence:
                    final = cast_vote(self.voter.id, ref, direction, weights=weights).direction

                note.refresh_from_db()
                expected = {
                    None: (0, 0, 0),
                    'up': (1, 0, weights.up),
                    'down': (0, 1, weights.down),
                }[final]
                self.assertEqual(
                    (note.upvotes, note.downvotes, points_of(self.author) - before),
                    expected
                )

    def test_many_voters_all_counted(self):
        voters = [User.objects.create_user(f'v{i}', f'v{i}@test.com', 'pass') for i in range(12)]
        for voter in voters:
            cast_vote(voter.id, self.ref, 'up')

        self.assertCounters(12, 0)
        self.assertEqual(points_of(self.author), 24)

    def test_self_vote_rejected_without_changes(self):
        before = points_of(self.author)

        with self.assertRaises(SelfVoteForbidden):
            cast_vote(self.author.id, self.ref, 'up')

        self.assertCounters(0, 0)
        self.assertFalse(Vote.objects.exists())
        self.assertEqual(points_of(self.author), before)

    def test_unauthenticated(self):
        with self.assertRaises(Unauthenticated):
            cast_vote(None, self.ref, 'up')
        self.assertCounters(0, 0)

    def test_missing_content(self):
        with self.assertRaises(ContentNotFound):
            cast_vote(self.voter.id, ContentRef('note', 999999), 'up')

    def test_invalid_direction_and_type(self):
        with self.assertRaises(ValueError):
            cast_vote(self.voter.id, self.ref, 'sideways')
        with self.assertRaises(ValueError):
            cast_vote(self.voter.id, ContentRef('poll', self.note.pk), 'up')

    def test_answer_uses_answer_weights(self):
        question = Question.objects.create(author=self.other, title='Why?', content='Because')
        answer = Answer.objects.create(question=question, author=self.author, content='This is why')

        result = cast_vote(self.voter.id, ContentRef.for_instance(answer), 'up')

        self.assertEqual(result.points_delta, 5)
        self.assertEqual(points_of(self.author), 5)

    def test_vote_on_anonymous_question_credits_nobody(self):
        question = Question.objects.create(author=None, title='Anon', content='Who asked?')

        result = cast_vote(self.voter.id, ContentRef.for_instance(question), 'up')

        self.assertEqual(result.upvotes, 1)
        self.assertEqual(result.points_delta, 0)

    def test_vote_key(self):
        cast_vote(self.voter.id, self.ref, 'down')
        vote = Vote.objects.get(voter=self.voter)
        self.assertEqual(vote.vote_key, f"note-{self.note.pk}")

    def test_vote_deltas_table(self):
        weights = VoteWeights(up=5, down=-1)
        self.assertEqual(vote_deltas(None, 'up', weights), (1, 0, 5))
        self.assertEqual(vote_deltas(None, 'down', weights), (0, 1, -1))
        self.assertEqual(vote_deltas('up', 'up', weights), (-1, 0, -5))
        self.assertEqual(vote_deltas('down', 'down', weights), (0, -1, 1))
        self.assertEqual(vote_deltas('up', 'down', weights), (-1, 1, -6))
        self.assertEqual(vote_deltas('down', 'up', weights), (1, -1, 6))


@override_settings(VOTE_RETRY_BACKOFF=0)
class VoteConflictTestCase(TestCase):
    """
    Simulate a competing writer committing between the ledger's read and its
    conditional writes.
    """

    def setUp(self):
        self.author = User.objects.create_user('author', 'a@test.com', 'pass')
        self.voter = User.objects.create_user('voter', 'v@test.com', 'pass')
        self.note = Note.objects.create(author=self.author, title='Cells', content='Mitochondria ' * 5)
        self.ref = ContentRef.for_instance(self.note)
        self.real_read_state = services._read_state

    def read_then_interfere(self, interfere, times):
        calls = {'count': 0}

        def wrapper(*args, **kwargs):
            state = self.real_read_state(*args, **kwargs)
            calls['count'] += 1
            if calls['count'] <= times:
                interfere()
            return state

        return wrapper

    def bump_note(self):
        Note.objects.filter(pk=self.note.pk).update(version=F('version') + 1)

    def test_retries_after_concurrent_counter_write(self):
        wrapper = self.read_then_interfere(self.bump_note, times=1)
        with patch.object(services, '_read_state', side_effect=wrapper) as read_state:
            result = cast_vote(self.voter.id, self.ref, 'up')

        self.assertEqual(read_state.call_count, 2)
        self.assertEqual(result.upvotes, 1)
        self.note.refresh_from_db()
        self.assertEqual(self.note.upvotes, 1)
        self.assertEqual(points_of(self.author), 2)

    def test_retries_after_concurrent_points_award(self):
        wrapper = self.read_then_interfere(lambda: award_points(self.author.id, 10), times=1)
        with patch.object(services, '_read_state', side_effect=wrapper) as read_state:
            cast_vote(self.voter.id, self.ref, 'up')

        self.assertEqual(read_state.call_count, 2)
        self.assertEqual(Vote.objects.filter(voter=self.voter).count(), 1)

    def test_retries_after_duplicate_vote_insert(self):
        def insert_vote():
            Vote.objects.create(
                voter=self.voter,
                content_type=ContentType.objects.get_for_model(Note),
                object_id=self.note.pk,
                direction='up'
            )

        wrapper = self.read_then_interfere(insert_vote, times=1)
        with patch.object(services, '_read_state', side_effect=wrapper) as read_state:
            result = cast_vote(self.voter.id, self.ref, 'up')

        self.assertEqual(read_state.call_count, 2)
        self.assertEqual(result.direction, 'up')
        self.assertEqual(Vote.objects.filter(voter=self.voter).count(), 1)

    @override_settings(VOTE_MAX_ATTEMPTS=3)
    def test_gives_up_with_vote_conflict(self):
        before = points_of(self.author)
        wrapper = self.read_then_interfere(self.bump_note, times=100)

        with patch.object(services, '_read_state', side_effect=wrapper) as read_state:
            with self.assertRaises(VoteConflict):
                cast_vote(self.voter.id, self.ref, 'up')

        self.assertEqual(read_state.call_count, 3)
        # All or nothing: nothing from any attempt survived
        self.note.refresh_from_db()
        self.assertEqual((self.note.upvotes, self.note.downvotes), (0, 0))
        self.assertFalse(Vote.objects.exists())
        self.assertEqual(points_of(self.author), before)

    def test_conflict_is_logged(self):
        wrapper = self.read_then_interfere(self.bump_note, times=100)
        with override_settings(VOTE_MAX_ATTEMPTS=2):
            with patch.object(services, '_read_state', side_effect=wrapper):
                with self.assertLogs('community.services', level='WARNING') as logs:
                    with self.assertRaises(VoteConflict):
                        cast_vote(self.voter.id, self.ref, 'up')
        self.assertIn('after 2 attempts', logs.output[0])


@override_settings(VOTE_RETRY_BACKOFF=0)
class TransientDatabaseErrorTestCase(TestCase):
    """Lock, deadlock and serialization errors are retried like stale reads."""

    def setUp(self):
        self.author = User.objects.create_user('author', 'a@test.com', 'pass')
        self.voter = User.objects.create_user('voter', 'v@test.com', 'pass')
        self.note = Note.objects.create(author=self.author, title='Cells', content='Mitochondria ' * 5)
        self.ref = ContentRef.for_instance(self.note)
        self.real_apply_vote = services._apply_vote

    def fail_first(self, error, times):
        calls = {'count': 0}

        def wrapper(*args, **kwargs):
            calls['count'] += 1
            if calls['count'] <= times:
                raise error
            return self.real_apply_vote(*args, **kwargs)

        return wrapper

    def test_retries_after_database_lock(self):
        wrapper = self.fail_first(OperationalError('database table is locked: community_vote'), times=1)
        with patch.object(services, '_apply_vote', side_effect=wrapper) as apply_vote:
            result = cast_vote(self.voter.id, self.ref, 'up')

        self.assertEqual(apply_vote.call_count, 2)
        self.assertEqual(result.upvotes, 1)
        self.note.refresh_from_db()
        self.assertEqual(self.note.upvotes, 1)
        self.assertEqual(points_of(self.author), 2)

    def test_retries_after_deadlock(self):
        wrapper = self.fail_first(OperationalError('deadlock detected'), times=2)
        with patch.object(services, '_apply_vote', side_effect=wrapper) as apply_vote:
            result = cast_vote(self.voter.id, self.ref, 'down')

        self.assertEqual(apply_vote.call_count, 3)
        self.assertEqual(result.direction, 'down')

    @override_settings(VOTE_MAX_ATTEMPTS=4)
    def test_persistent_lock_becomes_vote_conflict(self):
        wrapper = self.fail_first(OperationalError('database is locked'), times=100)
        with patch.object(services, '_apply_vote', side_effect=wrapper) as apply_vote:
            with self.assertRaises(VoteConflict):
                cast_vote(self.voter.id, self.ref, 'up')

        self.assertEqual(apply_vote.call_count, 4)
        self.assertFalse(Vote.objects.exists())
        self.assertEqual(points_of(self.author), 0)

    def test_other_operational_errors_propagate(self):
        wrapper = self.fail_first(OperationalError('no such table: community_vote'), times=100)
        with patch.object(services, '_apply_vote', side_effect=wrapper) as apply_vote:
            with self.assertRaises(OperationalError):
                cast_vote(self.voter.id, self.ref, 'up')

        self.assertEqual(apply_vote.call_count, 1)

    def test_transient_error_classification(self):
        self.assertTrue(is_transient_db_error(OperationalError('database is locked')))
        self.assertTrue(is_transient_db_error(OperationalError('could not serialize access due to concurrent update')))
        self.assertFalse(is_transient_db_error(OperationalError('server closed the connection unexpectedly')))


@override_settings(VOTE_MAX_ATTEMPTS=200, VOTE_RETRY_BACKOFF=0.002)
class ConcurrentVotersTestCase(TransactionTestCase):
    """
    Real threads, real transactions: N concurrent upvotes give N.

    Runs on every backend. SQLite reports contention as lock errors and
    PostgreSQL as failed version checks; both are retried.
    """

    def test_no_lost_updates(self):
        author = User.objects.create_user('author', 'a@test.com', 'pass')
        note = Note.objects.create(author=author, title='Hot note', content='Everyone votes')
        voters = [User.objects.create_user(f'voter{i}', f'v{i}@test.com', 'pass') for i in range(10)]
        ref = ContentRef.for_instance(note)
        errors = []
        barrier = threading.Barrier(len(voters))

        def vote(user_id):
            try:
                barrier.wait()
                cast_vote(user_id, ref, 'up')
            except Exception as exc:  # surfaced through `errors`
                errors.append(exc)
            finally:
                connection.close()

        threads = [threading.Thread(target=vote, args=(v.id,)) for v in voters]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(errors, [])
        note.refresh_from_db()
        self.assertEqual(note.upvotes, len(voters))
        self.assertEqual(Vote.objects.filter(object_id=note.pk).count(), len(voters))
        self.assertEqual(points_of(author), 2 * len(voters))


class NotificationTestCase(TestCase):

    def setUp(self):
        self.user = User.objects.create_user('user', 'u@test.com', 'pass')
        self.other = User.objects.create_user('other', 'o@test.com', 'pass')

    def test_creates_unread_notification(self):
        notification = notify_if_enabled(self.user.id, 'comments', 'Hi', link='/notes/1')

        self.assertIsNotNone(notification)
        self.assertFalse(notification.is_read)
        self.assertEqual(notification.kind, 'comments')
        self.assertIsNotNone(notification.created_at)
        self.assertEqual(unread_count(self.user.id), 1)

    def test_disabled_preference_gates_delivery(self):
        update_preferences(self.user.id, {'answers': False})

        for _ in range(3):
            self.assertIsNone(notify_if_enabled(self.user.id, 'answers', 'New answer'))
        self.assertEqual(Notification.objects.filter(recipient=self.user).count(), 0)

        # Other classes are unaffected
        notify_if_enabled(self.user.id, 'comments', 'New comment')
        self.assertEqual(Notification.objects.filter(recipient=self.user).count(), 1)

        update_preferences(self.user.id, {'answers': True})
        notify_if_enabled(self.user.id, 'answers', 'Answer 1')
        notify_if_enabled(self.user.id, 'answers', 'Answer 2')
        self.assertEqual(Notification.objects.filter(recipient=self.user, kind='answers').count(), 2)

    def test_missing_flag_defaults_to_enabled(self):
        self.assertEqual(Account.objects.get(user=self.user).notification_preferences, {})
        self.assertTrue(all(get_preferences(self.user.id).values()))
        self.assertIsNotNone(notify_if_enabled(self.user.id, 'votes', 'Upvoted'))

    def test_event_key_is_idempotent(self):
        first = notify_if_enabled(self.user.id, 'comments', 'Hi', event_key='comment:1')
        second = notify_if_enabled(self.user.id, 'comments', 'Hi', event_key='comment:1')

        self.assertEqual(first.pk, second.pk)
        self.assertEqual(Notification.objects.count(), 1)

        # Same key for a different recipient is a different event
        notify_if_enabled(self.other.id, 'comments', 'Hi', event_key='comment:1')
        self.assertEqual(Notification.objects.count(), 2)

    def test_write_failure_is_logged_not_raised(self):
        with patch.object(Notification.objects, 'create', side_effect=DatabaseError('disk full')):
            with self.assertLogs('community.notifications', level='ERROR') as logs:
                result = notify_if_enabled(self.user.id, 'comments', 'Hi')

        self.assertIsNone(result)
        self.assertIn("Could not deliver 'comments' notification", logs.output[0])

    def test_no_recipient(self):
        self.assertIsNone(notify_if_enabled(None, 'comments', 'Hi'))

    def test_invalid_event_class(self):
        with self.assertRaises(ValueError):
            notify_if_enabled(self.user.id, 'birthdays', 'Hi')

    def test_mark_read_only_touches_own_listed_unread(self):
        mine = [notify_if_enabled(self.user.id, 'comments', f'n{i}') for i in range(3)]
        theirs = notify_if_enabled(self.other.id, 'comments', 'not yours')

        marked = mark_read(self.user.id, [mine[0].pk, mine[1].pk, theirs.pk])

        self.assertEqual(marked, 2)
        self.assertEqual(unread_count(self.user.id), 1)
        self.assertEqual(unread_count(self.other.id), 1)
        # Read is terminal
        self.assertEqual(mark_read(self.user.id, [mine[0].pk]), 0)

    def test_mark_all_read(self):
        for i in range(4):
            notify_if_enabled(self.user.id, 'votes', f'n{i}')

        self.assertEqual(mark_all_read(self.user.id), 4)
        self.assertEqual(unread_count(self.user.id), 0)
        self.assertEqual(mark_all_read(self.user.id), 0)

    def test_list_newest_first(self):
        first = notify_if_enabled(self.user.id, 'votes', 'first')
        second = notify_if_enabled(self.user.id, 'votes', 'second')
        mark_read(self.user.id, [first.pk])

        self.assertEqual([n.pk for n in list_notifications(self.user.id)], [second.pk, first.pk])
        self.assertEqual([n.pk for n in list_notifications(self.user.id, unread_only=True)], [second.pk])

    def test_update_preferences_validation(self):
        with self.assertRaises(ValueError):
            update_preferences(self.user.id, {'birthdays': False})
        with self.assertRaises(ValueError):
            update_preferences(self.user.id, {'answers': 'no'})
        self.assertEqual(Account.objects.get(user=self.user).notification_preferences, {})


class AuthoringTestCase(TestCase):

    def setUp(self):
        self.asker = User.objects.create_user('asker', 'q@test.com', 'pass', first_name='Ada', last_name='L')
        self.helper = User.objects.create_user('helper', 'h@test.com', 'pass', first_name='Alan', last_name='T')

    def test_note_awards_points(self):
        note = create_note(self.asker.id, 'Photosynthesis', 'Light reactions and the Calvin cycle')

        self.assertEqual(note.author, self.asker)
        self.assertEqual(points_of(self.asker), POINTS_NOTE_CREATED)

    def test_empty_content_rejected(self):
        with self.assertRaises(ValueError):
            create_note(self.asker.id, 'Title', '   ')
        self.assertEqual(points_of(self.asker), 0)

    def test_unauthenticated_author(self):
        with self.assertRaises(Unauthenticated):
            create_note(None, 'Title', 'Content')

    def test_anonymous_question(self):
        question = create_question(self.asker.id, 'Anon?', 'Asked quietly', tags=['bio', ' '], anonymous=True)

        self.assertIsNone(question.author_id)
        self.assertEqual(question.tags, ['bio'])
        self.assertEqual(points_of(self.asker), 0)

    def test_answer_awards_and_notifies(self):
        question = create_question(self.asker.id, 'What is ATP?', 'Energy currency?')

        answer = create_answer(self.helper.id, question.pk, 'Adenosine triphosphate')

        question.refresh_from_db()
        self.assertEqual(question.replies, 1)
        self.assertEqual(points_of(self.helper), POINTS_ANSWER_CREATED)
        notification = Notification.objects.get(recipient=self.asker)
        self.assertEqual(notification.kind, 'answers')
        self.assertEqual(notification.message, 'Alan T answered your question: "What is ATP?"')
        self.assertEqual(notification.link, f"/forum/{question.pk}")
        self.assertEqual(notification.event_key, f"answer:{answer.pk}")

    def test_answer_respects_preferences(self):
        update_preferences(self.asker.id, {'answers': False})
        question = create_question(self.asker.id, 'Quiet please', 'No pings')

        create_answer(self.helper.id, question.pk, 'Sure')

        self.assertFalse(Notification.objects.filter(recipient=self.asker).exists())

    def test_own_answer_does_not_notify(self):
        question = create_question(self.asker.id, 'Self help', 'Answering myself')
        create_answer(self.asker.id, question.pk, 'Found it')
        self.assertFalse(Notification.objects.exists())

    def test_answer_missing_question(self):
        with self.assertRaises(ContentNotFound):
            create_answer(self.helper.id, 424242, 'Hello?')
        self.assertEqual(points_of(self.helper), 0)

    def test_comment_on_note_notifies_author(self):
        note = create_note(self.asker.id, 'Enzymes', 'Lock and key model')

        comment = create_comment(self.helper.id, ContentRef('note', note.pk), 'Great summary')

        self.assertEqual(comment.target, note)
        self.assertEqual(points_of(self.helper), POINTS_COMMENT_CREATED)
        notification = Notification.objects.get(recipient=self.asker)
        self.assertEqual(notification.message, 'Alan T commented on Enzymes')
        self.assertEqual(notification.link, f"/notes/{note.pk}")

    def test_comment_survives_notification_failure(self):
        question = create_question(self.asker.id, 'Fragile', 'Notifications may fail')

        with patch.object(Notification.objects, 'create', side_effect=DatabaseError('down')):
            with self.assertLogs('community.notifications', level='ERROR'):
                comment = create_comment(self.helper.id, ContentRef('question', question.pk), 'Still here')

        self.assertTrue(Comment.objects.filter(pk=comment.pk).exists())
        self.assertEqual(points_of(self.helper), POINTS_COMMENT_CREATED)
        self.assertFalse(Notification.objects.exists())

    def test_cannot_comment_on_answer(self):
        question = create_question(self.asker.id, 'Q', 'Body')
        answer = create_answer(self.helper.id, question.pk, 'A')
        with self.assertRaises(ValueError):
            create_comment(self.asker.id, ContentRef('answer', answer.pk), 'Nope')

    def test_accept_answer_awards(self):
        question = create_question(self.asker.id, 'Best answer?', 'Pick one')
        answer = create_answer(self.helper.id, question.pk, 'Me')
        asker_before, helper_before = points_of(self.asker), points_of(self.helper)

        accepted = toggle_accepted_answer(self.asker.id, answer.pk)

        self.assertTrue(accepted.is_accepted)
        self.assertEqual(points_of(self.helper) - helper_before, POINTS_ANSWER_ACCEPTED)
        self.assertEqual(points_of(self.asker) - asker_before, POINTS_ACCEPTOR_BONUS)
        self.assertTrue(Notification.objects.filter(recipient=self.helper, kind='accepted_answers').exists())

        toggle_accepted_answer(self.asker.id, answer.pk)
        answer.refresh_from_db()
        self.assertFalse(answer.is_accepted)
        self.assertEqual(points_of(self.helper), helper_before)
        self.assertEqual(points_of(self.asker), asker_before)

    def test_accepting_another_answer_moves_the_mark(self):
        question = create_question(self.asker.id, 'Which one?', 'Two answers')
        third = User.objects.create_user('third', 't@test.com', 'pass')
        first = create_answer(self.helper.id, question.pk, 'First')
        second = create_answer(third.id, question.pk, 'Second')
        helper_before = points_of(self.helper)

        toggle_accepted_answer(self.asker.id, first.pk)
        toggle_accepted_answer(self.asker.id, second.pk)

        self.assertEqual(list(Answer.objects.filter(is_accepted=True)), [second])
        self.assertEqual(points_of(self.helper), helper_before)
        self.assertEqual(points_of(third), POINTS_ANSWER_CREATED + POINTS_ANSWER_ACCEPTED)
        self.assertEqual(points_of(self.asker), POINTS_QUESTION_CREATED + POINTS_ACCEPTOR_BONUS)

    def test_only_question_author_accepts(self):
        question = create_question(self.asker.id, 'Mine', 'Only I decide')
        answer = create_answer(self.helper.id, question.pk, 'Accept me')
        with self.assertRaises(NotQuestionAuthor):
            toggle_accepted_answer(self.helper.id, answer.pk)

    def test_award_bumps_account_version(self):
        version = Account.objects.get(user=self.asker).version
        award_points(self.asker.id, 3)
        self.assertEqual(Account.objects.get(user=self.asker).version, version + 1)

    def test_accept_switch_updates_answers_before_accounts(self):
        """Answer rows are written before any account, like the vote ledger."""
        question = create_question(self.asker.id, 'Order?', 'Locks in order')
        first = create_answer(self.helper.id, question.pk, 'First')
        second = create_answer(self.helper.id, question.pk, 'Second')
        toggle_accepted_answer(self.asker.id, first.pk)
        seen = []

        def recording_award(user_id, delta):
            seen.append(dict(Answer.objects.filter(question=question).values_list('pk', 'is_accepted')))
            award_points(user_id, delta)

        with patch('community.authoring.award_points', side_effect=recording_award):
            toggle_accepted_answer(self.asker.id, second.pk)

        self.assertEqual(len(seen), 4)
        for accepted in seen:
            self.assertEqual(accepted, {first.pk: False, second.pk: True})

    def test_open_question_counts_views(self):
        question = create_question(self.asker.id, 'Popular?', 'Count me')

        open_question(question.pk)
        opened = open_question(question.pk)

        self.assertEqual(opened.views, 2)
        with self.assertRaises(ContentNotFound):
            open_question(987654)

    def test_delete_comment_reverses_points(self):
        note = create_note(self.asker.id, 'Genetics', 'Punnett squares')
        comment = create_comment(self.helper.id, ContentRef('note', note.pk), 'Helpful')
        voter = User.objects.create_user('voter', 'v@test.com', 'pass')
        cast_vote(voter.id, ContentRef.for_instance(comment), 'up')
        cast_vote(self.asker.id, ContentRef.for_instance(comment), 'down')
        self.assertEqual(points_of(self.helper), POINTS_COMMENT_CREATED + 2)

        delete_comment(self.helper.id, comment.pk)

        self.assertFalse(Comment.objects.filter(pk=comment.pk).exists())
        self.assertFalse(Vote.objects.filter(
            content_type=ContentType.objects.get_for_model(Comment),
            object_id=comment.pk
        ).exists())
        self.assertEqual(points_of(self.helper), 0)
        self.assertEqual(derive_vote_points(self.helper.id), points_of(self.helper))

    def test_only_comment_author_deletes(self):
        note = create_note(self.asker.id, 'Genetics', 'Punnett squares')
        comment = create_comment(self.helper.id, ContentRef('note', note.pk), 'Mine')

        with self.assertRaises(NotCommentAuthor):
            delete_comment(self.asker.id, comment.pk)
        with self.assertRaises(ContentNotFound):
            delete_comment(self.helper.id, 987654)

        self.assertTrue(Comment.objects.filter(pk=comment.pk).exists())
        self.assertEqual(points_of(self.helper), POINTS_COMMENT_CREATED)

    def test_vote_on_deleted_comment(self):
        note = create_note(self.asker.id, 'Genetics', 'Punnett squares')
        comment = create_comment(self.helper.id, ContentRef('note', note.pk), 'Short-lived')
        delete_comment(self.helper.id, comment.pk)

        with self.assertRaises(ContentNotFound):
            cast_vote(self.asker.id, ContentRef('comment', comment.pk), 'up')


class LeaderboardTestCase(TestCase):

    def setUp(self):
        self.users = [User.objects.create_user(f'user{i}', f'u{i}@test.com', 'pass') for i in range(4)]
        for user, points in zip(self.users, [30, 50, 30, 0]):
            Account.objects.filter(user=user).update(points=points)

    def test_ordering_and_rank(self):
        leaderboard = get_leaderboard()

        self.assertEqual([e['username'] for e in leaderboard], ['user1', 'user0', 'user2', 'user3'])
        self.assertEqual([e['rank'] for e in leaderboard], [1, 2, 3, 4])
        self.assertEqual(leaderboard[0]['points'], 50)

    def test_limit(self):
        self.assertEqual(len(get_leaderboard(limit=2)), 2)

    def test_user_rank_shares_ties(self):
        self.assertEqual(get_user_rank(self.users[1].id), 1)
        self.assertEqual(get_user_rank(self.users[0].id), 2)
        self.assertEqual(get_user_rank(self.users[2].id), 2)
        self.assertEqual(get_user_rank(self.users[3].id), 4)
        self.assertIsNone(get_user_rank(999999))

    def test_badges(self):
        author = self.users[0]
        for i in range(3):
            Note.objects.create(author=author, title=f'N{i}', content='Notes')

        badges = {b['name']: b for b in get_badges(author.id)}

        self.assertTrue(badges['First Note']['achieved'])
        self.assertEqual(badges['Note Taker Pro']['progress'], 30)
        self.assertFalse(badges['Note Taker Pro']['achieved'])
        self.assertFalse(badges['Helping Hand']['achieved'])


class QueriesTestCase(TestCase):

    def setUp(self):
        self.asker = User.objects.create_user('asker', 'q@test.com', 'pass')
        self.voter = User.objects.create_user('voter', 'v@test.com', 'pass')
        self.helper = User.objects.create_user('helper', 'h@test.com', 'pass')
        self.question = Question.objects.create(author=self.asker, title='Q', content='Body')

    def test_user_vote_directions(self):
        a1 = Answer.objects.create(question=self.question, author=self.helper, content='1')
        a2 = Answer.objects.create(question=self.question, author=self.helper, content='2')
        cast_vote(self.voter.id, ContentRef('answer', a1.pk), 'down')
        cast_vote(self.voter.id, ContentRef('question', self.question.pk), 'up')
        refs = [ContentRef('answer', a1.pk), ContentRef('answer', a2.pk), ContentRef('question', self.question.pk)]

        directions = get_user_vote_directions(self.voter.id, refs)

        self.assertEqual(directions, {refs[0]: 'down', refs[1]: None, refs[2]: 'up'})
        self.assertEqual(get_user_vote_directions(None, refs), {ref: None for ref in refs})

    def test_answers_display_order(self):
        low = Answer.objects.create(question=self.question, author=self.helper, content='low')
        high = Answer.objects.create(question=self.question, author=self.helper, content='high', upvotes=3)
        accepted = Answer.objects.create(question=self.question, author=self.helper, content='ok', is_accepted=True)

        self.assertEqual(get_answers_for_question(self.question.pk), [accepted, high, low])

    def test_derived_points_match_ledger(self):
        answer = Answer.objects.create(question=self.question, author=self.helper, content='A')
        note = Note.objects.create(author=self.helper, title='N', content='N')
        cast_vote(self.voter.id, ContentRef.for_instance(answer), 'up')
        cast_vote(self.voter.id, ContentRef.for_instance(note), 'up')
        cast_vote(self.asker.id, ContentRef.for_instance(note), 'down')

        self.assertEqual(derive_vote_points(self.helper.id), points_of(self.helper))


class APITestCase(TestCase):

    def setUp(self):
        self.client = APIClient()
        self.author = User.objects.create_user('author', 'a@test.com', 'pass', first_name='Grace', last_name='H')
        self.voter = User.objects.create_user('voter', 'v@test.com', 'pass', first_name='Linus', last_name='T')
        self.note = Note.objects.create(author=self.author, title='Compilers', content='Parsing and codegen')

    def vote(self, direction='up', content_type='note', content_id=None):
        return self.client.post('/api/votes/', {
            'content_type': content_type,
            'content_id': content_id or self.note.pk,
            'direction': direction
        }, format='json')

    def test_vote_requires_login(self):
        response = self.vote()
        self.assertEqual(response.status_code, 401)
        self.assertIn('error', response.data)

    def test_vote_and_upvote_notification(self):
        self.client.force_authenticate(self.voter)

        response = self.vote()

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['upvotes'], 1)
        self.assertEqual(response.data['direction'], 'up')
        notification = Notification.objects.get(recipient=self.author)
        self.assertEqual(notification.kind, 'votes')
        self.assertEqual(notification.message, 'Linus T upvoted your note')

        # Retract and re-vote: still one notification for this voter and item
        self.vote()
        self.vote()
        self.assertEqual(Notification.objects.filter(recipient=self.author).count(), 1)

    def test_self_vote_forbidden(self):
        self.client.force_authenticate(self.author)
        response = self.vote()
        self.assertEqual(response.status_code, 403)

    def test_vote_missing_content(self):
        self.client.force_authenticate(self.voter)
        response = self.vote(content_id=987654)
        self.assertEqual(response.status_code, 404)

    def test_vote_bad_payload(self):
        self.client.force_authenticate(self.voter)
        response = self.vote(direction='sideways')
        self.assertEqual(response.status_code, 400)

    def test_vote_conflict_maps_to_409(self):
        self.client.force_authenticate(self.voter)
        with patch('community.views.cast_vote', side_effect=VoteConflict()):
            response = self.vote()
        self.assertEqual(response.status_code, 409)

    def test_comment_flow(self):
        self.client.force_authenticate(self.voter)

        response = self.client.post(
            f'/api/notes/{self.note.pk}/comments/', {'content': 'Nice notes'}, format='json'
        )
        self.assertEqual(response.status_code, 201)

        response = self.client.get(f'/api/notes/{self.note.pk}/comments/')
        self.assertEqual(response.status_code, 200)
        self.assertEqual([c['content'] for c in response.data], ['Nice notes'])
        self.assertIsNone(response.data[0]['user_vote'])

    def test_notification_list_marks_read(self):
        notify_if_enabled(self.author.id, 'comments', 'one')
        notify_if_enabled(self.author.id, 'comments', 'two')
        self.client.force_authenticate(self.author)

        response = self.client.get('/api/notifications/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data['notifications']), 2)
        self.assertFalse(response.data['notifications'][0]['is_read'])
        self.assertEqual(response.data['unread_count'], 0)

    def test_preferences(self):
        self.client.force_authenticate(self.author)

        response = self.client.patch('/api/notifications/preferences/', {'votes': False}, format='json')

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.data['votes'])
        self.assertTrue(response.data['comments'])

    def test_leaderboard(self):
        create_note(self.author.id, 'Another', 'More notes here')
        self.client.force_authenticate(self.author)

        response = self.client.get('/api/leaderboard/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['leaderboard'][0]['username'], 'author')
        self.assertEqual(response.data['user_stats']['rank'], 1)

    def test_negative_leaderboard_limit_is_clamped(self):
        response = self.client.get('/api/leaderboard/?limit=-5')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.data['leaderboard']), 1)

    def test_question_detail_counts_views(self):
        question = create_question(self.author.id, 'Big O?', 'What is it')

        self.client.get(f'/api/questions/{question.pk}/')
        response = self.client.get(f'/api/questions/{question.pk}/')

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data['views'], 2)
        self.assertEqual(self.client.get('/api/questions/987654/').status_code, 404)

    def test_comment_delete(self):
        comment = create_comment(self.voter.id, ContentRef('note', self.note.pk), 'Oops')

        self.client.force_authenticate(self.author)
        self.assertEqual(self.client.delete(f'/api/comments/{comment.pk}/').status_code, 403)

        self.client.force_authenticate(self.voter)
        self.assertEqual(self.client.delete(f'/api/comments/{comment.pk}/').status_code, 204)
        self.assertFalse(Comment.objects.filter(pk=comment.pk).exists())


class MigrationsTestCase(TestCase):

    def test_models_match_migrations(self):
        out = StringIO()
        try:
            call_command('makemigrations', 'community', '--check', '--dry-run', stdout=out)
        except SystemExit:
            self.fail(f"Missing migrations:\n{out.getvalue()}")
