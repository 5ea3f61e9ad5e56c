from rest_framework import serializers

from order.models import Order

from .models import Worker


class WorkerSerializer(serializers.ModelSerializer):
    class Meta:
        model = Worker
        fields = ["id", "kind", "name", "phone", "is_available", "wallet_balance"]
        read_only_fields = fields


class DispatchOrderSerializer(serializers.ModelSerializer):
    restaurant_name = serializers.CharField(source="restaurant.name", read_only=True)
    restaurant_address = serializers.CharField(source="restaurant.address", read_only=True)

    class Meta:
        model = Order
        fields = [
            "id",
            "reference",
            "tracking_id",
            "status",
            "restaurant_name",
            "restaurant_address",
            "delivery_address",
            "delivery_notes",
            "delivery_fee",
            "claimed_at",
            "updated_at",
        ]


class RiderTaskSerializer(serializers.ModelSerializer):
    restaurant_name = serializers.CharField(source="restaurant.name", read_only=True)
    restaurant_address = serializers.CharField(source="restaurant.address", read_only=True)
    restaurant_phone = serializers.CharField(source="restaurant.phone", read_only=True)

    class Meta:
        model = Order
        fields = [
            "reference",
            "tracking_id",
            "status",
            "restaurant_name",
            "restaurant_address",
            "restaurant_phone",
            "delivery_address",
            "delivery_notes",
        ]


class AvailabilitySerializer(serializers.Serializer):
    online = serializers.BooleanField()


class ReleaseSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class DeliveryCodeSerializer(serializers.Serializer):
    code = serializers.CharField(max_length=4)


class DashboardSerializer(serializers.Serializer):
    worker = WorkerSerializer(read_only=True)
    available_balance = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)
    pending_balance = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)
    total_jobs = serializers.IntegerField(read_only=True)
    active_orders = DispatchOrderSerializer(many=True, read_only=True)
