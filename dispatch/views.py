from rest_framework import permissions, status
from rest_framework.response import Response
from rest_framework.views import APIView

from core.errors import Unauthorized

from .models import Worker
from .serializers import (
    AvailabilitySerializer,
    DashboardSerializer,
    DeliveryCodeSerializer,
    DispatchOrderSerializer,
    ReleaseSerializer,
    RiderTaskSerializer,
    WorkerSerializer,
)
from .services import DispatchService


def _worker_for(user) -> Worker:
    worker = Worker.objects.filter(owner=user).order_by("created_at").first()
    if not worker:
        raise Unauthorized("No rider or logistics profile for this account")
    return worker


class DashboardView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        worker = _worker_for(request.user)
        return Response(DashboardSerializer(DispatchService.dashboard(worker.id)).data)


class AvailableOrdersView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        worker = _worker_for(request.user)
        orders = DispatchService().available_orders(worker.id)
        return Response(DispatchOrderSerializer(orders, many=True).data)


class ActiveOrderView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        worker = _worker_for(request.user)
        order = DispatchService.active_order(worker.id)
        if not order:
            return Response({"order": None})
        return Response({"order": DispatchOrderSerializer(order).data})


class DeliveryHistoryView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        worker = _worker_for(request.user)
        orders = DispatchService.delivery_history(worker.id)
        return Response(DispatchOrderSerializer(orders, many=True).data)


class AvailabilityView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request):
        serializer = AvailabilitySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        worker = DispatchService().set_availability(_worker_for(request.user).id, serializer.validated_data["online"])
        return Response(WorkerSerializer(worker).data)


class ClaimOrderView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, pk):
        order = DispatchService().claim(_worker_for(request.user).id, pk)
        return Response(DispatchOrderSerializer(order).data)


class ReleaseOrderView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, pk):
        serializer = ReleaseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = DispatchService().release(_worker_for(request.user).id, pk, serializer.validated_data["reason"])
        return Response(DispatchOrderSerializer(order).data)


class PickupOrderView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, pk):
        order = DispatchService().confirm_pickup(_worker_for(request.user).id, pk)
        return Response(DispatchOrderSerializer(order).data)


class DeliverOrderView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def post(self, request, pk):
        serializer = DeliveryCodeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = DispatchService().confirm_delivery(_worker_for(request.user).id, pk, serializer.validated_data["code"])
        return Response(DispatchOrderSerializer(order).data)


class RiderTaskView(APIView):
    permission_classes = [permissions.AllowAny]

    def get(self, request, tracking_id):
        order = DispatchService.rider_task(tracking_id)
        return Response(RiderTaskSerializer(order).data)


class CompleteTaskView(APIView):
    permission_classes = [permissions.AllowAny]

    def post(self, request, tracking_id):
        serializer = DeliveryCodeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = DispatchService().complete_by_tracking(tracking_id, serializer.validated_data["code"])
        return Response({"status": order.status, "reference": order.reference}, status=status.HTTP_200_OK)
