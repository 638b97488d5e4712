"""
Payments serializers.
"""
from decimal import Decimal

from rest_framework import serializers

from .models import Payment, Promotion, StudentSubscription


class ManualPaymentDataSerializer(serializers.Serializer):
    transaction_id = serializers.CharField(max_length=255, required=False, allow_blank=True)
    proof_url = serializers.URLField(max_length=500, required=False, allow_blank=True)


class InitiatePaymentSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal("0.01"))
    type = serializers.ChoiceField(choices=Payment.Type.choices)
    related_id = serializers.UUIDField(required=False, allow_null=True)
    description = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    gateway_provider = serializers.ChoiceField(choices=Payment.Method.choices)
    branch_id = serializers.UUIDField()
    coupon_code = serializers.CharField(max_length=50, required=False, allow_blank=True)
    student_id = serializers.UUIDField(required=False, allow_null=True)
    manual_payment_data = ManualPaymentDataSerializer(required=False)
    subscription_id = serializers.UUIDField(required=False, allow_null=True)


class ValidateCouponSerializer(serializers.Serializer):
    code = serializers.CharField(max_length=50)
    amount = serializers.DecimalField(max_digits=10, decimal_places=2, min_value=Decimal("0.00"))
    plan_id = serializers.UUIDField(required=False, allow_null=True)
    branch_id = serializers.UUIDField(required=False, allow_null=True)
    student_id = serializers.UUIDField(required=False, allow_null=True)


class VerifySignatureSerializer(serializers.Serializer):
    gateway_payment_id = serializers.CharField(max_length=255)
    signature = serializers.CharField(max_length=255)


class VerifyPaymentSerializer(serializers.Serializer):
    action = serializers.ChoiceField(choices=["approve", "reject"])


class PaymentProofSerializer(serializers.Serializer):
    file = serializers.FileField()


class PromotionSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = Promotion
        fields = ['id', 'code', 'description', 'discount_type', 'value', 'max_discount', 'end_date']
        read_only_fields = fields


class StudentSubscriptionSerializer(serializers.ModelSerializer):
    plan_name = serializers.CharField(source='plan.name', read_only=True)

    class Meta:
        model = StudentSubscription
        fields = ['id', 'plan', 'plan_name', 'branch', 'seat', 'start_date', 'end_date', 'status', 'amount']
        read_only_fields = fields


class PaymentSerializer(serializers.ModelSerializer):
    student_name = serializers.CharField(source='student.get_full_name', read_only=True)
    student_email = serializers.EmailField(source='student.email', read_only=True)
    branch_name = serializers.CharField(source='branch.name', read_only=True, default=None)

    class Meta:
        model = Payment
        fields = [
            'id', 'student', 'student_name', 'student_email', 'branch', 'branch_name',
            'amount', 'discount_amount', 'currency', 'method', 'status', 'type', 'related_id',
            'description', 'subscription', 'promotion', 'transaction_id', 'proof_url',
            'gateway_order_id', 'invoice_no', 'verified_by', 'verifier_role', 'verified_at',
            'collected_by', 'created_at', 'completed_at',
        ]
        read_only_fields = fields
