from django.contrib import admin

from .models import Worker


@admin.register(Worker)
class WorkerAdmin(admin.ModelAdmin):
    list_display = ("name", "kind", "owner", "phone", "is_available", "wallet_balance", "created_at")
    list_filter = ("kind", "is_available")
    search_fields = ("name", "phone", "owner__email")
    readonly_fields = ("wallet_balance",)
