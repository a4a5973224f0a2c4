"""
DRF Views
=========

API endpoints for the community application.

The views are thin: they validate input with a serializer, take the caller's
identity from request.user, and delegate to the service modules. Domain
errors (Unauthenticated, SelfVoteForbidden, VoteConflict, ...) propagate to
community.exceptions.custom_exception_handler.

AUTHENTICATION NOTE:
--------------------
Session or basic authentication. The vote endpoint deliberately allows
anonymous requests through so that the ledger itself reports
Unauthenticated.
"""

from rest_framework import status, permissions
from rest_framework.views import APIView
from rest_framework.response import Response

from . import authoring, notifications
from .leaderboard import get_badges, get_leaderboard, get_user_points, get_user_rank
from .models import ContentRef, Notification, Vote
from .queries import get_answers_for_question, get_comments_for, get_user_vote_directions
from .serializers import (
    AnswerSerializer,
    BadgeSerializer,
    CommentSerializer,
    LeaderboardEntrySerializer,
    NoteSerializer,
    NotificationSerializer,
    PreferencesSerializer,
    QuestionSerializer,
    VoteActionSerializer,
    VoteResultSerializer,
)
from .services import cast_vote


def current_user_id(request):
    """Stable id of the caller, or None if unauthenticated."""
    return request.user.id if request.user.is_authenticated else None


def user_vote_map(request, type_name, items):
    """{object_id: direction} of the caller's votes on `items`."""
    refs = [ContentRef(type_name, item.pk) for item in items]
    directions = get_user_vote_directions(current_user_id(request), refs)
    return {ref.content_id: direction for ref, direction in directions.items()}


class VoteView(APIView):
    """
    POST /api/votes/

    Body:
    {
        "content_type": "note" | "question" | "answer" | "comment",
        "content_id": 123,
        "direction": "up" | "down"
    }

    Sending the current direction again retracts the vote.

    A new upvote also sends the author a 'votes' notification.
    """
    permission_classes = [permissions.AllowAny]

    def post(self, request):
        serializer = VoteActionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        ref = ContentRef(
            serializer.validated_data['content_type'],
            serializer.validated_data['content_id']
        )
        result = cast_vote(current_user_id(request), ref, serializer.validated_data['direction'])

        if result.direction == Vote.Direction.UP and result.previous_direction is None:
            item = ref.model.objects.filter(pk=ref.content_id).first()
            if item is not None:
                notifications.notify_if_enabled(
                    item.author_id,
                    Notification.EventClass.VOTES,
                    f"{authoring.display_name(request.user)} upvoted your {ref.content_type}",
                    link=authoring.content_link(item),
                    event_key=f"upvote:{request.user.id}:{ref.content_type}-{ref.content_id}"
                )

        return Response(VoteResultSerializer(result).data)


class NoteCreateView(APIView):
    """
    POST /api/notes/

    Create a note (+10 points).
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        serializer = NoteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        note = authoring.create_note(
            request.user.id,
            title=serializer.validated_data['title'],
            content=serializer.validated_data['content'],
            subject=serializer.validated_data.get('subject', ''),
            course=serializer.validated_data.get('course', ''),
            is_public=serializer.validated_data.get('is_public', True)
        )
        return Response(NoteSerializer(note).data, status=status.HTTP_201_CREATED)


class QuestionCreateView(APIView):
    """
    POST /api/questions/

    Ask a question (+5 points unless anonymous).
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        serializer = QuestionSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        question = authoring.create_question(
            request.user.id,
            title=serializer.validated_data['title'],
            content=serializer.validated_data['content'],
            tags=serializer.validated_data.get('tags', []),
            anonymous=serializer.validated_data.get('anonymous', False)
        )
        return Response(QuestionSerializer(question).data, status=status.HTTP_201_CREATED)


class QuestionDetailView(APIView):
    """
    GET /api/questions/<question_id>/

    Opening a question counts one view.
    """
    permission_classes = [permissions.AllowAny]

    def get(self, request, question_id):
        question = authoring.open_question(question_id)
        serializer = QuestionSerializer(
            question,
            context={'user_votes': user_vote_map(request, 'question', [question])}
        )
        return Response(serializer.data)


class AnswerListCreateView(APIView):
    """
    GET  /api/questions/<question_id>/answers/   accepted first, then by score
    POST /api/questions/<question_id>/answers/   answer (+15 points)
    """

    def get_permissions(self):
        if self.request.method == 'GET':
            return [permissions.AllowAny()]
        return [permissions.IsAuthenticated()]

    def get(self, request, question_id):
        answers = get_answers_for_question(question_id)
        serializer = AnswerSerializer(
            answers,
            many=True,
            context={'user_votes': user_vote_map(request, 'answer', answers)}
        )
        return Response(serializer.data)

    def post(self, request, question_id):
        serializer = AnswerSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        answer = authoring.create_answer(
            request.user.id,
            question_id,
            serializer.validated_data['content']
        )
        return Response(AnswerSerializer(answer).data, status=status.HTTP_201_CREATED)


class AcceptAnswerView(APIView):
    """
    POST /api/answers/<answer_id>/accept/

    Toggle the accepted mark. Question author only.
    """
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, answer_id):
        answer = authoring.toggle_accepted_answer(request.user.id, answer_id)
        return Response({'id': answer.pk, 'is_accepted': answer.is_accepted})


class CommentListCreateView(APIView):
    """
    GET  /api/<note|question>/<object_id>/comments/
    POST /api/<note|question>/<object_id>/comments/   (+10 points)
    """

    def get_permissions(self):
        if self.request.method == 'GET':
            return [permissions.AllowAny()]
        return [permissions.IsAuthenticated()]

    def get(self, request, target_type, object_id):
        comments = get_comments_for(ContentRef(target_type, object_id))
        serializer = CommentSerializer(
            comments,
            many=True,
            context={'user_votes': user_vote_map(request, 'comment', comments)}
        )
        return Response(serializer.data)

    def post(self, request, target_type, object_id):
        serializer = CommentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        comment = authoring.create_comment(
            request.user.id,
            ContentRef(target_type, object_id),
            serializer.validated_data['content']
        )
        return Response(CommentSerializer(comment).data, status=status.HTTP_201_CREATED)


class CommentDeleteView(APIView):
    """
    DELETE /api/comments/<comment_id>/

    Author only. Reverses the comment's points.
    """
    permission_classes = [permissions.IsAuthenticated]

    def delete(self, request, comment_id):
        authoring.delete_comment(request.user.id, comment_id)
        return Response(status=status.HTTP_204_NO_CONTENT)


class NotificationListView(APIView):
    """
    GET /api/notifications/?unread=true

    Returns the caller's notifications, newest first. Opening the list marks
    the unread ones it returned as read; the response still shows them as
    they were before opening.
    """
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        unread_only = request.query_params.get('unread', '').lower() == 'true'
        items = notifications.list_notifications(request.user.id, unread_only=unread_only)
        data = NotificationSerializer(items, many=True).data
        notifications.mark_read(request.user.id, [n.pk for n in items if not n.is_read])
        return Response({
            'notifications': data,
            'unread_count': notifications.unread_count(request.user.id)
        })


class MarkAllReadView(APIView):
    """POST /api/notifications/read-all/"""
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        marked = notifications.mark_all_read(request.user.id)
        return Response({'marked_read': marked})


class PreferencesView(APIView):
    """
    GET   /api/notifications/preferences/
    PATCH /api/notifications/preferences/   {"answers": false, ...}
    """
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        return Response(notifications.get_preferences(request.user.id))

    def patch(self, request):
        serializer = PreferencesSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        return Response(notifications.update_preferences(request.user.id, serializer.validated_data))


class LeaderboardView(APIView):
    """
    GET /api/leaderboard/

    Returns the top users by points.

    Query params:
    - limit: Number of results (default 10, clamped to 1..100)
    """
    permission_classes = [permissions.AllowAny]

    def get(self, request):
        try:
            limit = max(1, min(int(request.query_params.get('limit', 10)), 100))
        except ValueError:
            limit = 10

        leaderboard = get_leaderboard(limit=limit)

        # Add current user's stats if authenticated
        user_stats = None
        if request.user.is_authenticated:
            user_stats = {
                'user_id': request.user.id,
                'username': request.user.username,
                'points': get_user_points(request.user.id),
                'rank': get_user_rank(request.user.id)
            }

        return Response({
            'leaderboard': LeaderboardEntrySerializer(leaderboard, many=True).data,
            'user_stats': user_stats
        })


class BadgesView(APIView):
    """GET /api/badges/"""
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        return Response(BadgeSerializer(get_badges(request.user.id), many=True).data)
