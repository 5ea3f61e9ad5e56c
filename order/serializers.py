from rest_framework import serializers

from .models import Order


class OrderSerializer(serializers.ModelSerializer):
    restaurant_name = serializers.CharField(source="restaurant.name", read_only=True)
    assigned_worker_name = serializers.CharField(source="assigned_worker.name", read_only=True, default=None)

    class Meta:
        model = Order
        fields = [
            "id",
            "reference",
            "tracking_id",
            "restaurant",
            "restaurant_name",
            "status",
            "payment_status",
            "total_amount",
            "delivery_fee",
            "delivery_address",
            "delivery_notes",
            "assigned_worker",
            "assigned_worker_name",
            "claimed_at",
            "archived_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class OrderTrackingSerializer(serializers.ModelSerializer):
    restaurant_name = serializers.CharField(source="restaurant.name", read_only=True)
    rider_name = serializers.CharField(source="assigned_worker.name", read_only=True, default=None)
    rider_phone = serializers.CharField(source="assigned_worker.phone", read_only=True, default=None)

    class Meta:
        model = Order
        fields = [
            "reference",
            "tracking_id",
            "status",
            "restaurant_name",
            "rider_name",
            "rider_phone",
            "updated_at",
        ]


class OrderStatusUpdateSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=Order.Status.choices)
