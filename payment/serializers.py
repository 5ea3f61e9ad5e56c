from rest_framework import serializers

from .models import Transaction


class TransactionSerializer(serializers.ModelSerializer):
    order_reference = serializers.CharField(source="order.reference", read_only=True, default=None)

    class Meta:
        model = Transaction
        fields = [
            "id",
            "reference",
            "user",
            "amount",
            "type",
            "category",
            "status",
            "order",
            "order_reference",
            "description",
            "metadata",
            "created_at",
        ]
        read_only_fields = fields


class WithdrawalRequestSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)
    bank_name = serializers.CharField(max_length=120)
    account_number = serializers.CharField(max_length=30)
    account_name = serializers.CharField(max_length=120)

    def bank_details(self):
        data = self.validated_data
        return {
            "bank_name": data["bank_name"],
            "account_number": data["account_number"],
            "account_name": data["account_name"],
        }


class WithdrawalResolveSerializer(serializers.Serializer):
    action = serializers.CharField()


class WalletSerializer(serializers.Serializer):
    available_balance = serializers.DecimalField(max_digits=12, decimal_places=2)
    pending_balance = serializers.DecimalField(max_digits=12, decimal_places=2)
    total_earnings = serializers.DecimalField(max_digits=12, decimal_places=2)
    withdrawn = serializers.DecimalField(max_digits=12, decimal_places=2)
    currency = serializers.CharField()


class PaymentEventSerializer(serializers.Serializer):
    reference = serializers.CharField(max_length=150)
    result = serializers.CharField(max_length=20)
