# FILE: /backend/apps/accounts/views.py
"""
Authentication views: student signup, JWT login and password reset requests.
"""
import logging

from rest_framework import generics, permissions, status
from rest_framework.response import Response
from rest_framework_simplejwt.views import TokenObtainPairView

from backend.core.results import to_response

from .models import User
from .serializers import (
    CustomTokenObtainPairSerializer,
    PasswordResetRequestSerializer,
    StudentRegistrationSerializer,
    UserSerializer,
)
from .services import register_student

logger = logging.getLogger(__name__)


class StudentRegistrationView(generics.GenericAPIView):
    """Student signup, optionally with a referral code."""
    permission_classes = [permissions.AllowAny]
    serializer_class = StudentRegistrationSerializer

    def post(self, request):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = register_student(**serializer.validated_data)
        if not result['success']:
            return to_response(result)

        student = result['student']
        return Response({
            'success': True,
            'user': UserSerializer(student).data,
            'referral_id': result['referral_id'],
            'message': 'Registration successful.',
        }, status=status.HTTP_201_CREATED)


class UserLoginView(TokenObtainPairView):
    serializer_class = CustomTokenObtainPairSerializer


class PasswordResetRequestView(generics.GenericAPIView):
    """Password reset request."""
    permission_classes = [permissions.AllowAny]
    serializer_class = PasswordResetRequestSerializer

    def post(self, request):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        email = serializer.validated_data['email']
        user = User.objects.filter(email__iexact=email, is_active=True).first()
        if user is not None:
            from .tasks import send_password_reset_email
            send_password_reset_email.delay(str(user.id), serializer.create_reset_token(user))
        else:
            logger.info("Password reset requested for unknown email")
        return Response({
            'success': True,
            'message': 'If an account exists with this email, you will receive a password reset link.'
        }, status=status.HTTP_200_OK)


class MeView(generics.RetrieveAPIView):
    serializer_class = UserSerializer

    def get_object(self):
        return self.request.user
