from django.contrib import admin, messages
from django.utils.translation import gettext_lazy as _

from core.errors import DomainError

from .models import Transaction, WebhookLog
from .services.withdrawals import WithdrawalWorkflow


@admin.register(Transaction)
class TransactionAdmin(admin.ModelAdmin):
	list_display = ("reference", "user", "type", "category", "amount", "status", "order", "created_at")
	list_filter = ("type", "category", "status")
	search_fields = ("reference", "user__email", "order__reference")
	readonly_fields = (
		"id", "reference", "user", "amount", "type", "category", "status",
		"order", "description", "metadata", "created_at",
	)
	actions = ("approve_withdrawals", "reject_withdrawals")

	def has_add_permission(self, request):
		return False

	def has_delete_permission(self, request, obj=None):
		return False

	def _resolve(self, request, queryset, action):
		workflow = WithdrawalWorkflow()
		succeeded = 0
		failed = 0
		for entry in queryset.filter(category=Transaction.Category.WITHDRAWAL):
			try:
				workflow.resolve(entry.id, action)
				succeeded += 1
			except DomainError as exc:
				failed += 1
				self.message_user(request, _("Could not resolve %(ref)s: %(err)s") % {"ref": entry.reference, "err": exc.message}, messages.ERROR)
		self.message_user(request, _("Withdrawals resolved: %(ok)d, failed: %(bad)d") % {"ok": succeeded, "bad": failed}, messages.INFO)

	def approve_withdrawals(self, request, queryset):
		self._resolve(request, queryset, WithdrawalWorkflow.APPROVE)

	approve_withdrawals.short_description = "Approve selected withdrawals"

	def reject_withdrawals(self, request, queryset):
		self._resolve(request, queryset, WithdrawalWorkflow.REJECT)

	reject_withdrawals.short_description = "Reject selected withdrawals"


@admin.register(WebhookLog)
class WebhookLogAdmin(admin.ModelAdmin):
	list_display = ("id", "provider", "event_type", "reference", "processed", "created_at")
	list_filter = ("provider", "processed")
	search_fields = ("reference",)
