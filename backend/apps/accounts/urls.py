# FILE: /backend/apps/accounts/urls.py
from django.urls import path
from rest_framework_simplejwt.views import TokenRefreshView

from .views import (
    MeView,
    PasswordResetRequestView,
    StudentRegistrationView,
    UserLoginView,
)

urlpatterns = [
    path('register/', StudentRegistrationView.as_view(), name='register'),
    path('token/', UserLoginView.as_view(), name='token_obtain_pair'),
    path('token/refresh/', TokenRefreshView.as_view(), name='token_refresh'),
    path('password-reset/', PasswordResetRequestView.as_view(), name='password-reset'),
    path('me/', MeView.as_view(), name='me'),
]
