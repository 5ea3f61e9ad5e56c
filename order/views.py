from rest_framework import permissions
from rest_framework.response import Response
from rest_framework.views import APIView

from .serializers import OrderSerializer, OrderStatusUpdateSerializer, OrderTrackingSerializer
from .services import OrderService


class VendorOrderListView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        orders = OrderService.vendor_orders(request.user)
        return Response(OrderSerializer(orders, many=True).data)


class CustomerOrderListView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def get(self, request):
        orders = OrderService.customer_orders(request.user)
        return Response(OrderSerializer(orders, many=True).data)


class OrderStatusUpdateView(APIView):
    permission_classes = [permissions.IsAuthenticated]

    def patch(self, request, pk):
        serializer = OrderStatusUpdateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = OrderService().update_status(pk, serializer.validated_data["status"], actor=request.user)
        return Response(OrderSerializer(order).data)


class OrderTrackingView(APIView):
    permission_classes = [permissions.AllowAny]

    def get(self, request, tracking_id):
        order = OrderService.get_by_tracking_id(tracking_id)
        return Response(OrderTrackingSerializer(order).data)
