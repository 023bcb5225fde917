"""
Chat URL routing.
"""
from django.urls import path

from apps.chat.views import ChatView

urlpatterns = [
    path('chat', ChatView.as_view(), name='chat'),
]
