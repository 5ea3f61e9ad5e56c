from django.urls import path

from .views import (
    PaymentWebhookView,
    PendingWithdrawalListView,
    WalletView,
    WithdrawalRequestView,
    WithdrawalResolveView,
)

urlpatterns = [
    path("webhook/", PaymentWebhookView.as_view(), name="payment-webhook"),
    path("wallet/", WalletView.as_view(), name="wallet"),
    path("withdrawals/", WithdrawalRequestView.as_view(), name="withdrawal-request"),
    path("withdrawals/pending/", PendingWithdrawalListView.as_view(), name="withdrawal-pending"),
    path("withdrawals/<uuid:pk>/resolve/", WithdrawalResolveView.as_view(), name="withdrawal-resolve"),
]
