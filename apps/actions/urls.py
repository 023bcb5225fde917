"""
Side-effect action URL routing.
"""
from django.urls import path

from apps.actions.views import SendEmailView, SendSmsView

urlpatterns = [
    path('send-email', SendEmailView.as_view(), name='action-send-email'),
    path('send-sms', SendSmsView.as_view(), name='action-send-sms'),
]
