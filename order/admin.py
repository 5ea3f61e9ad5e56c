from django.contrib import admin

from .models import Order


@admin.register(Order)
class OrderAdmin(admin.ModelAdmin):
    list_display = ("reference", "restaurant", "customer", "status", "payment_status", "total_amount", "assigned_worker", "created_at")
    list_filter = ("status", "payment_status")
    search_fields = ("reference", "tracking_id", "customer__email", "restaurant__name")
    readonly_fields = ("reference", "tracking_id", "delivery_code", "claimed_at", "archived_at", "created_at", "updated_at")
