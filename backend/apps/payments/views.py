"""
Payments views: initiation, coupon checks, gateway verification, the staff
verification queue, proof uploads and gateway webhooks.
"""
import hashlib
import json
import logging
import uuid

from django.conf import settings
from django.db import IntegrityError, transaction
from drf_spectacular.utils import extend_schema
from rest_framework import generics, permissions, status
from rest_framework.exceptions import ValidationError
from rest_framework.parsers import FormParser, MultiPartParser
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView

from backend.apps.accounts.models import User
from backend.apps.accounts.permissions import IsOwnerOrStaff, IsStudent
from backend.core.results import to_response

from .coupons import validate_coupon
from .gateways import get_provider
from .models import GatewayEventLog, Payment
from .serializers import (
    InitiatePaymentSerializer,
    PaymentProofSerializer,
    PaymentSerializer,
    PromotionSummarySerializer,
    ValidateCouponSerializer,
    VerifyPaymentSerializer,
    VerifySignatureSerializer,
)
from .services import (
    complete_by_order_id,
    confirm_gateway_payment,
    initiate_payment,
    verify_payment,
    verify_payment_signature,
)
from .storage import upload_payment_proof

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = ('email', 'contact', 'phone', 'customer_details', 'card', 'vpa', 'bank_account')


def mask_sensitive_data(payload):
    """Redact personal fields anywhere in a webhook payload before it is stored."""
    if isinstance(payload, dict):
        return {
            key: '***' if key in SENSITIVE_KEYS else mask_sensitive_data(value)
            for key, value in payload.items()
        }
    if isinstance(payload, list):
        return [mask_sensitive_data(item) for item in payload]
    return payload


def _acting_student(request, student_id, required=True):
    """
    The student a request acts for.

    Students act for themselves. Owners and staff may act for a student of
    their own library, which is how front-desk payments get recorded.
    """
    user = request.user
    if user.role == User.Role.STUDENT:
        return user
    if not student_id:
        if required:
            raise ValidationError({'student_id': 'This field is required when acting for a student.'})
        return None
    qs = User.objects.filter(pk=student_id, role=User.Role.STUDENT)
    if user.role != User.Role.ADMIN:
        qs = qs.filter(library_id=user.library_id)
    student = qs.first()
    if student is None:
        raise ValidationError({'student_id': 'Student not found'})
    return student


class InitiatePaymentView(APIView):
    """Create a payment and, for gateway methods, the remote order."""

    @extend_schema(request=InitiatePaymentSerializer)
    def post(self, request):
        serializer = InitiatePaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        student = _acting_student(request, data.get('student_id'))
        collected_by = request.user if request.user != student else None

        result = initiate_payment(
            student=student,
            amount=data['amount'],
            type=data['type'],
            related_id=data.get('related_id'),
            description=data.get('description', ''),
            gateway_provider=data['gateway_provider'],
            branch_id=data['branch_id'],
            coupon_code=data.get('coupon_code') or None,
            manual_payment_data=data.get('manual_payment_data'),
            subscription_id=data.get('subscription_id'),
            collected_by=collected_by,
        )
        return to_response(result, success_status=status.HTTP_201_CREATED)


class ValidateCouponView(APIView):
    """Preview a coupon against an amount without reserving it."""

    @extend_schema(request=ValidateCouponSerializer)
    def post(self, request):
        serializer = ValidateCouponSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        student = _acting_student(request, data.get('student_id'), required=False)
        result = validate_coupon(
            data['code'],
            data['amount'],
            student=student,
            plan_id=data.get('plan_id'),
            branch_id=data.get('branch_id'),
            library=(student or request.user).library,
        )
        if not result['success']:
            return to_response(result)
        return Response({
            'success': True,
            'discount': result['discount'],
            'final_amount': result['final_amount'],
            'promotion': PromotionSummarySerializer(result['promo']).data,
        })


class VerifyPaymentSignatureView(APIView):
    """Client-side completion claim after the gateway checkout closes."""
    permission_classes = [IsStudent]

    @extend_schema(request=VerifySignatureSerializer)
    def post(self, request, payment_id):
        serializer = VerifySignatureSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        if not Payment.objects.filter(pk=payment_id, student=request.user).exists():
            return Response({'success': False, 'error': 'Payment not found', 'code': 'NOT_FOUND'},
                            status=status.HTTP_404_NOT_FOUND)
        result = verify_payment_signature(
            payment_id,
            serializer.validated_data['gateway_payment_id'],
            serializer.validated_data['signature'],
        )
        return to_response(result)


class ConfirmGatewayPaymentView(APIView):
    """Ask a status-fetch gateway whether the order was paid."""
    permission_classes = [IsStudent]

    @extend_schema(request=None)
    def post(self, request, payment_id):
        if not Payment.objects.filter(pk=payment_id, student=request.user).exists():
            return Response({'success': False, 'error': 'Payment not found', 'code': 'NOT_FOUND'},
                            status=status.HTTP_404_NOT_FOUND)
        return to_response(confirm_gateway_payment(payment_id))


class VerifyPaymentView(APIView):
    """Owner or staff approves or rejects a manual payment."""
    permission_classes = [IsOwnerOrStaff]

    @extend_schema(request=VerifyPaymentSerializer)
    def post(self, request, payment_id):
        serializer = VerifyPaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = verify_payment(payment_id, serializer.validated_data['action'], request.user)
        return to_response(result)


class PendingPaymentsView(generics.ListAPIView):
    """
    Manual payments waiting for verification.

    Owners see their whole library; staff only their own branch.
    """
    permission_classes = [IsOwnerOrStaff]
    serializer_class = PaymentSerializer
    filterset_fields = ['method', 'branch']
    ordering_fields = ['created_at', 'amount']
    ordering = ['created_at']

    def get_queryset(self):
        user = self.request.user
        qs = Payment.objects.select_related('student', 'branch').filter(
            status=Payment.Status.PENDING_VERIFICATION
        )
        if user.role == User.Role.ADMIN:
            return qs
        qs = qs.filter(library_id=user.library_id)
        if user.role == User.Role.STAFF and user.branch_id:
            qs = qs.filter(branch_id=user.branch_id)
        return qs


class PaymentProofUploadView(APIView):
    """Upload a UPI or QR screenshot; the returned URL goes into manual_payment_data."""
    parser_classes = [MultiPartParser, FormParser]

    @extend_schema(request={'multipart/form-data': PaymentProofSerializer})
    def post(self, request):
        serializer = PaymentProofSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = upload_payment_proof(serializer.validated_data['file'], request=request)
        return to_response(result, success_status=status.HTTP_201_CREATED)


# ----------------------------------------------------------------------
# Gateway webhooks
# ----------------------------------------------------------------------

class GatewayWebhookView(APIView):
    """
    Shared webhook flow: size check, signature over the raw body, JSON parse,
    replay detection by payload hash, then ``handle_event``. Every delivery
    is written to the gateway event log with the status it got.
    """
    gateway = None
    authentication_classes = []
    permission_classes = [permissions.AllowAny]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = 'gateway_webhook'

    def handle_event(self, event, payload):
        """Return ``(status_code, body, error)`` for a verified event."""
        raise NotImplementedError

    def event_reference(self, payload):
        return None

    @extend_schema(request=None, responses=None)
    def post(self, request):
        correlation_id = request.headers.get('X-Request-ID', str(uuid.uuid4()))
        logger.info(f"[{correlation_id}] {self.gateway} webhook received")

        raw_body = request.body
        if len(raw_body) > settings.GATEWAY_WEBHOOK_MAX_SIZE:
            logger.error(f"[{correlation_id}] {self.gateway} webhook payload too large: {len(raw_body)} bytes")
            return Response({'error': 'Payload too large'}, status=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE)

        provider = get_provider(self.gateway)
        if not provider.verify_webhook(raw_body, request.headers):
            logger.warning(f"[{correlation_id}] {self.gateway} webhook with invalid signature")
            self._log_event(None, None, {}, 401, 'Invalid signature', raw_body, correlation_id)
            return Response({'error': 'Invalid signature'}, status=status.HTTP_401_UNAUTHORIZED)

        try:
            payload = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            self._log_event(None, None, {}, 400, 'Invalid JSON', raw_body, correlation_id)
            return Response({'error': 'Invalid JSON'}, status=status.HTTP_400_BAD_REQUEST)
        if not isinstance(payload, dict):
            self._log_event(None, None, {}, 400, 'Invalid JSON', raw_body, correlation_id)
            return Response({'error': 'Invalid JSON'}, status=status.HTTP_400_BAD_REQUEST)

        event = payload.get('event') or payload.get('type')
        reference = self.event_reference(payload)

        payload_hash = hashlib.sha256(raw_body).hexdigest()
        if GatewayEventLog.objects.filter(payload_hash=payload_hash, status_code=200).exists():
            logger.info(f"[{correlation_id}] {self.gateway} webhook replay ignored: {event}")
            return Response({'status': 'already_processed'})

        status_code, body, error = self.handle_event(event, payload)
        if status_code >= 500:
            logger.error(f"[{correlation_id}] {self.gateway} webhook {event} failed: {error}")
        self._log_event(event, reference, mask_sensitive_data(payload), status_code, error, raw_body, correlation_id)
        return Response(body, status=status_code)

    def _log_event(self, event_type, reference, payload, status_code, error=None, raw_payload=None,
                   correlation_id=None):
        """Audit log of a webhook delivery, deduplicated on the raw payload hash."""
        payload_hash = hashlib.sha256(raw_payload).hexdigest() if raw_payload else None
        try:
            with transaction.atomic():
                GatewayEventLog.objects.create(
                    gateway=self.gateway,
                    event_type=event_type,
                    reference=reference,
                    payload=payload,
                    raw_payload=raw_payload.decode('utf-8', errors='replace') if raw_payload else '',
                    status_code=status_code,
                    error_message=str(error) if error else '',
                    correlation_id=correlation_id or '',
                    payload_hash=payload_hash,
                )
        except IntegrityError:
            logger.debug(f"Duplicate webhook event detected: {payload_hash}")

    @staticmethod
    def _outcome(result):
        """Map a completion result to a webhook response."""
        if result['success']:
            state = 'already_processed' if result.get('already_completed') else 'success'
            return 200, {'status': state}, None
        if result['code'] == 'NOT_FOUND':
            return 404, {'error': result['error']}, result['error']
        if result['code'] == 'INVALID_STATE':
            # Terminal elsewhere; acknowledge so the gateway stops retrying
            return 200, {'status': 'ignored'}, result['error']
        # Transient; let the gateway retry
        return 503, {'error': result['error']}, result['error']


class RazorpayWebhookView(GatewayWebhookView):
    gateway = 'razorpay'
    COMPLETION_EVENTS = ('payment.captured', 'order.paid')

    def _entity(self, payload, name):
        return ((payload.get('payload') or {}).get(name) or {}).get('entity') or {}

    def event_reference(self, payload):
        return self._entity(payload, 'payment').get('order_id') or self._entity(payload, 'order').get('id')

    def handle_event(self, event, payload):
        if event not in self.COMPLETION_EVENTS:
            return 200, {'status': 'ignored'}, None

        order_id = self.event_reference(payload)
        if not order_id:
            return 400, {'error': 'Missing order id'}, 'Missing order id'

        result = complete_by_order_id(
            order_id,
            gateway_payment_id=self._entity(payload, 'payment').get('id', ''),
            gateway_signature='verified_by_webhook',
        )
        return self._outcome(result)


class CashfreeWebhookView(GatewayWebhookView):
    gateway = 'cashfree'
    COMPLETION_EVENTS = ('PAYMENT_SUCCESS_WEBHOOK',)

    def event_reference(self, payload):
        return ((payload.get('data') or {}).get('order') or {}).get('order_id')

    def handle_event(self, event, payload):
        if event not in self.COMPLETION_EVENTS:
            return 200, {'status': 'ignored'}, None

        order_id = self.event_reference(payload)
        if not order_id:
            return 400, {'error': 'Missing order id'}, 'Missing order id'

        payment = Payment.objects.filter(gateway_order_id=order_id).only('id').first()
        if payment is None:
            return 404, {'error': 'Payment not found'}, 'Payment not found'
        # The webhook only prompts a status fetch; the fetch decides
        return self._outcome(confirm_gateway_payment(payment.id))
