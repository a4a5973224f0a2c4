"""
Community App URL Configuration
"""
from django.urls import path
from .views import (
    VoteView,
    NoteCreateView,
    QuestionCreateView,
    QuestionDetailView,
    AnswerListCreateView,
    AcceptAnswerView,
    CommentListCreateView,
    CommentDeleteView,
    NotificationListView,
    MarkAllReadView,
    PreferencesView,
    LeaderboardView,
    BadgesView,
)

urlpatterns = [
    # Votes
    path('votes/', VoteView.as_view(), name='vote'),

    # Content
    path('notes/', NoteCreateView.as_view(), name='note-create'),
    path('notes/<int:object_id>/comments/', CommentListCreateView.as_view(),
         {'target_type': 'note'}, name='note-comments'),
    path('questions/', QuestionCreateView.as_view(), name='question-create'),
    path('questions/<int:object_id>/comments/', CommentListCreateView.as_view(),
         {'target_type': 'question'}, name='question-comments'),
    path('questions/<int:question_id>/', QuestionDetailView.as_view(), name='question-detail'),
    path('questions/<int:question_id>/answers/', AnswerListCreateView.as_view(), name='question-answers'),
    path('answers/<int:answer_id>/accept/', AcceptAnswerView.as_view(), name='answer-accept'),
    path('comments/<int:comment_id>/', CommentDeleteView.as_view(), name='comment-delete'),

    # Notifications
    path('notifications/', NotificationListView.as_view(), name='notifications'),
    path('notifications/read-all/', MarkAllReadView.as_view(), name='notifications-read-all'),
    path('notifications/preferences/', PreferencesView.as_view(), name='notification-preferences'),

    # Rewards
    path('leaderboard/', LeaderboardView.as_view(), name='leaderboard'),
    path('badges/', BadgesView.as_view(), name='badges'),
]
