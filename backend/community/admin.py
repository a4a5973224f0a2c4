"""
Django Admin Configuration for Community Models
"""
from django.contrib import admin
from .models import Account, Answer, Comment, Note, Notification, Question, Vote


@admin.register(Note)
class NoteAdmin(admin.ModelAdmin):
    list_display = ['title', 'author', 'subject', 'upvotes', 'downvotes', 'is_public', 'created_at']
    list_filter = ['is_public', 'created_at']
    search_fields = ['title', 'content', 'author__username']
    readonly_fields = ['upvotes', 'downvotes', 'version', 'created_at', 'updated_at']


@admin.register(Question)
class QuestionAdmin(admin.ModelAdmin):
    list_display = ['title', 'author', 'upvotes', 'downvotes', 'replies', 'views', 'created_at']
    list_filter = ['created_at']
    search_fields = ['title', 'content', 'author__username']
    readonly_fields = ['upvotes', 'downvotes', 'replies', 'views', 'version', 'created_at', 'updated_at']


@admin.register(Answer)
class AnswerAdmin(admin.ModelAdmin):
    list_display = ['id', 'question', 'author', 'is_accepted', 'upvotes', 'downvotes', 'created_at']
    list_filter = ['is_accepted', 'created_at']
    search_fields = ['content', 'author__username']
    readonly_fields = ['upvotes', 'downvotes', 'version', 'created_at', 'updated_at']


@admin.register(Comment)
class CommentAdmin(admin.ModelAdmin):
    list_display = ['id', 'content_type', 'object_id', 'author', 'upvotes', 'downvotes', 'created_at']
    list_filter = ['content_type', 'created_at']
    search_fields = ['content', 'author__username']
    readonly_fields = ['upvotes', 'downvotes', 'version', 'created_at', 'updated_at']


@admin.register(Account)
class AccountAdmin(admin.ModelAdmin):
    list_display = ['user', 'points', 'created_at']
    search_fields = ['user__username']
    # Points only move through the vote ledger and authoring awards
    readonly_fields = ['points', 'version', 'created_at']


@admin.register(Vote)
class VoteAdmin(admin.ModelAdmin):
    list_display = ['voter', 'content_type', 'object_id', 'direction', 'updated_at']
    list_filter = ['content_type', 'direction']
    search_fields = ['voter__username']

    def has_add_permission(self, request):
        # Votes must go through the ledger so counters stay consistent
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Notification)
class NotificationAdmin(admin.ModelAdmin):
    list_display = ['recipient', 'kind', 'message', 'is_read', 'created_at']
    list_filter = ['kind', 'is_read', 'created_at']
    search_fields = ['recipient__username', 'message']
    readonly_fields = ['event_key', 'created_at']
