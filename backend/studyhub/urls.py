"""
StudyHub URL Configuration
"""
from django.contrib import admin
from django.urls import path, include
from django.http import JsonResponse


def api_root(request):
    """Root endpoint with API information."""
    return JsonResponse({
        'message': 'StudyHub API Server',
        'version': '1.0',
        'endpoints': {
            'votes': '/api/votes/',
            'notes': '/api/notes/',
            'questions': '/api/questions/',
            'question': '/api/questions/<id>/',
            'answers': '/api/questions/<id>/answers/',
            'notifications': '/api/notifications/',
            'leaderboard': '/api/leaderboard/',
            'badges': '/api/badges/',
        },
        'admin': '/admin/',
    })


urlpatterns = [
    path('', api_root, name='api-root'),
    path('admin/', admin.site.urls),
    path('api/', include('community.urls')),
]
