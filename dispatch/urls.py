from django.urls import path

from .views import (
    ActiveOrderView,
    AvailabilityView,
    AvailableOrdersView,
    ClaimOrderView,
    CompleteTaskView,
    DashboardView,
    DeliverOrderView,
    DeliveryHistoryView,
    PickupOrderView,
    ReleaseOrderView,
    RiderTaskView,
)

urlpatterns = [
    path("dashboard/", DashboardView.as_view(), name="dispatch-dashboard"),
    path("orders/available/", AvailableOrdersView.as_view(), name="dispatch-available"),
    path("orders/active/", ActiveOrderView.as_view(), name="dispatch-active"),
    path("orders/history/", DeliveryHistoryView.as_view(), name="dispatch-history"),
    path("availability/", AvailabilityView.as_view(), name="dispatch-availability"),
    path("orders/<uuid:pk>/claim/", ClaimOrderView.as_view(), name="dispatch-claim"),
    path("orders/<uuid:pk>/release/", ReleaseOrderView.as_view(), name="dispatch-release"),
    path("orders/<uuid:pk>/pickup/", PickupOrderView.as_view(), name="dispatch-pickup"),
    path("orders/<uuid:pk>/deliver/", DeliverOrderView.as_view(), name="dispatch-deliver"),
    path("tasks/<str:tracking_id>/", RiderTaskView.as_view(), name="dispatch-task"),
    path("tasks/<str:tracking_id>/complete/", CompleteTaskView.as_view(), name="dispatch-task-complete"),
]
