"""
DRF Serializers
===============

Serializers handle:
1. Validation of incoming data
2. Transformation of model instances to JSON

Write serializers only validate; the actual writes go through the service
modules (authoring, services, notifications) so point awards, counters and
notifications are never bypassed.
"""

from rest_framework import serializers
from django.contrib.auth.models import User

from .models import Answer, Comment, Note, Notification, Question, Vote, CONTENT_MODELS


class UserSerializer(serializers.ModelSerializer):
    """Minimal user representation for embedding in other objects."""

    class Meta:
        model = User
        fields = ['id', 'username']
        read_only_fields = fields


class VotableSerializer(serializers.ModelSerializer):
    """
    Adds the caller's own vote. The view passes a prebuilt
    {object_id: direction} map as `user_votes` in context.
    """
    author = UserSerializer(read_only=True)
    user_vote = serializers.SerializerMethodField()

    def get_user_vote(self, obj):
        return self.context.get('user_votes', {}).get(obj.pk)


class NoteSerializer(VotableSerializer):

    class Meta:
        model = Note
        fields = [
            'id', 'title', 'subject', 'course', 'content', 'is_public',
            'author', 'upvotes', 'downvotes', 'user_vote', 'created_at'
        ]
        read_only_fields = ['upvotes', 'downvotes', 'created_at']

    def validate_title(self, value):
        if len(value.strip()) < 3:
            raise serializers.ValidationError("Title must be at least 3 characters.")
        return value.strip()


class QuestionSerializer(VotableSerializer):
    tags = serializers.ListField(child=serializers.CharField(max_length=50), required=False, default=list)
    anonymous = serializers.BooleanField(write_only=True, required=False, default=False)

    class Meta:
        model = Question
        fields = [
            'id', 'title', 'content', 'tags', 'anonymous', 'author',
            'upvotes', 'downvotes', 'views', 'replies', 'user_vote', 'created_at'
        ]
        read_only_fields = ['upvotes', 'downvotes', 'views', 'replies', 'created_at']

    def validate_title(self, value):
        if len(value.strip()) < 3:
            raise serializers.ValidationError("Title must be at least 3 characters.")
        return value.strip()


class AnswerSerializer(VotableSerializer):

    class Meta:
        model = Answer
        fields = [
            'id', 'question', 'content', 'author', 'is_accepted',
            'upvotes', 'downvotes', 'user_vote', 'created_at'
        ]
        read_only_fields = ['question', 'is_accepted', 'upvotes', 'downvotes', 'created_at']

    def validate_content(self, value):
        if not value.strip():
            raise serializers.ValidationError("Answer cannot be empty.")
        return value.strip()


class CommentSerializer(VotableSerializer):

    class Meta:
        model = Comment
        fields = ['id', 'content', 'author', 'upvotes', 'downvotes', 'user_vote', 'created_at']
        read_only_fields = ['upvotes', 'downvotes', 'created_at']

    def validate_content(self, value):
        if not value.strip():
            raise serializers.ValidationError("Comment cannot be empty.")
        return value.strip()


class VoteActionSerializer(serializers.Serializer):
    """Validates a vote request; existence is checked by the ledger."""
    content_type = serializers.ChoiceField(choices=list(CONTENT_MODELS))
    content_id = serializers.IntegerField(min_value=1)
    direction = serializers.ChoiceField(choices=Vote.Direction.choices)


class VoteResultSerializer(serializers.Serializer):
    upvotes = serializers.IntegerField()
    downvotes = serializers.IntegerField()
    direction = serializers.CharField(allow_null=True)
    previous_direction = serializers.CharField(allow_null=True)
    points_delta = serializers.IntegerField()


class NotificationSerializer(serializers.ModelSerializer):

    class Meta:
        model = Notification
        fields = ['id', 'kind', 'message', 'link', 'is_read', 'created_at']
        read_only_fields = fields


class PreferencesSerializer(serializers.Serializer):
    """One optional boolean per notification event class."""
    comments = serializers.BooleanField(required=False)
    answers = serializers.BooleanField(required=False)
    votes = serializers.BooleanField(required=False)
    accepted_answers = serializers.BooleanField(required=False)


class LeaderboardEntrySerializer(serializers.Serializer):
    """Serializer for leaderboard entries."""
    rank = serializers.IntegerField()
    user_id = serializers.IntegerField()
    username = serializers.CharField()
    display_name = serializers.CharField()
    points = serializers.IntegerField()


class BadgeSerializer(serializers.Serializer):
    name = serializers.CharField()
    description = serializers.CharField()
    goal = serializers.IntegerField()
    progress = serializers.IntegerField()
    achieved = serializers.BooleanField()
