import json
import logging

from django.conf import settings
from django.http import HttpRequest, JsonResponse
from django.utils.crypto import constant_time_compare
from django.utils.decorators import method_decorator
from django.views import View
from django.views.decorators.csrf import csrf_exempt
from rest_framework import permissions, status
from rest_framework.permissions import IsAdminUser
from rest_framework.response import Response
from rest_framework.views import APIView

from core.errors import DomainError
from order.services import OrderService
from payment.models import WebhookLog

from .serializers import (
    PaymentEventSerializer,
    TransactionSerializer,
    WalletSerializer,
    WithdrawalRequestSerializer,
    WithdrawalResolveSerializer,
)
from .services.earnings import wallet_summary
from .services.ledger import Ledger
from .services.withdrawals import WithdrawalWorkflow

logger = logging.getLogger(__name__)

WEBHOOK_PROVIDER = "GATEWAY"


class WalletView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        summary = WalletSerializer(wallet_summary(request.user)).data
        history = TransactionSerializer(Ledger.history(request.user), many=True).data
        return Response({**summary, "history": history})


class WithdrawalRequestView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        serializer = WithdrawalRequestSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        entry = WithdrawalWorkflow().request_withdrawal(
            user=request.user,
            amount=serializer.validated_data["amount"],
            bank_details=serializer.bank_details(),
        )
        return Response(TransactionSerializer(entry).data, status=status.HTTP_201_CREATED)


class PendingWithdrawalListView(APIView):
    permission_classes = [IsAdminUser]

    def get(self, request):
        queryset = WithdrawalWorkflow.pending_withdrawals()
        return Response(TransactionSerializer(queryset, many=True).data)


class WithdrawalResolveView(APIView):
    permission_classes = [IsAdminUser]

    def post(self, request, pk):
        serializer = WithdrawalResolveSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        entry = WithdrawalWorkflow().resolve(pk, serializer.validated_data["action"])
        return Response(TransactionSerializer(entry).data)


@method_decorator(csrf_exempt, name="dispatch")
class PaymentWebhookView(View):
    """Receives payment results from the gateway and applies them to orders."""

    def get(self, request: HttpRequest):
        return JsonResponse({"info": "Payment webhook endpoint, POST only"})

    def post(self, request: HttpRequest):
        secret = getattr(settings, "PAYMENT_WEBHOOK_SECRET", "")
        if not secret and not settings.DEBUG:
            logger.error("Payment webhook rejected: PAYMENT_WEBHOOK_SECRET is not configured")
            return JsonResponse({"error": "Webhook secret not configured"}, status=403)
        if secret and not constant_time_compare(request.headers.get("X-Webhook-Secret", ""), secret):
            logger.warning("Payment webhook rejected: bad secret")
            return JsonResponse({"error": "Invalid webhook secret"}, status=403)

        try:
            payload = json.loads(request.body)
        except json.JSONDecodeError:
            logger.warning("Payment webhook invalid JSON: %s", request.body[:200])
            WebhookLog.objects.create(
                provider=WEBHOOK_PROVIDER,
                event_type="INVALID_JSON",
                reference="INVALID_JSON",
                payload={"raw_body": request.body.decode("utf-8", errors="replace")},
                processed=False,
                processing_attempts=1,
            )
            return JsonResponse({"error": "Invalid JSON"}, status=400)

        serializer = PaymentEventSerializer(data=payload if isinstance(payload, dict) else {})
        if not serializer.is_valid():
            logger.warning("Payment webhook missing fields: %s", payload)
            WebhookLog.objects.create(
                provider=WEBHOOK_PROVIDER,
                event_type="INVALID_PAYLOAD",
                reference=str(payload.get("reference", "")) if isinstance(payload, dict) else "",
                payload=payload if isinstance(payload, dict) else {"raw": payload},
                processed=False,
                processing_attempts=1,
            )
            return JsonResponse({"error": serializer.errors}, status=400)

        reference = serializer.validated_data["reference"]
        result = serializer.validated_data["result"]
        logger.info("Payment webhook received: reference=%s result=%s", reference, result)

        webhook_log = WebhookLog.objects.create(
            provider=WEBHOOK_PROVIDER,
            event_type=f"PAYMENT_{result.upper()}",
            reference=reference,
            payload=payload,
            processed=False,
            processing_attempts=1,
        )

        try:
            order = OrderService().apply_payment_event(reference, result)
        except DomainError as exc:
            webhook_log.event_type = "PAYMENT_SYNC_FAILED"
            webhook_log.save(update_fields=["event_type"])
            logger.warning("Payment webhook failed reference=%s: %s", reference, exc.message)
            return JsonResponse({"kind": exc.kind, "detail": exc.message}, status=exc.status_code)

        webhook_log.processed = True
        webhook_log.save(update_fields=["processed"])
        return JsonResponse(
            {"status": "processed", "order_status": order.status, "payment_status": order.payment_status}
        )
