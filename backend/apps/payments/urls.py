"""
Payments URLs.

Webhook paths are registered in the Razorpay and Cashfree dashboards; keep
them stable.
"""
from django.urls import path

from . import views

urlpatterns = [
    path('initiate/', views.InitiatePaymentView.as_view(), name='payment-initiate'),
    path('coupons/validate/', views.ValidateCouponView.as_view(), name='coupon-validate'),
    path('pending/', views.PendingPaymentsView.as_view(), name='payment-pending'),
    path('proofs/', views.PaymentProofUploadView.as_view(), name='payment-proof-upload'),
    path('<uuid:payment_id>/verify-signature/', views.VerifyPaymentSignatureView.as_view(),
         name='payment-verify-signature'),
    path('<uuid:payment_id>/confirm/', views.ConfirmGatewayPaymentView.as_view(), name='payment-confirm'),
    path('<uuid:payment_id>/verify/', views.VerifyPaymentView.as_view(), name='payment-verify'),
    path('webhooks/razorpay/', views.RazorpayWebhookView.as_view(), name='razorpay-webhook'),
    path('webhooks/cashfree/', views.CashfreeWebhookView.as_view(), name='cashfree-webhook'),
]
