from django.urls import path

from .views import CustomerOrderListView, OrderStatusUpdateView, OrderTrackingView, VendorOrderListView

urlpatterns = [
    path("vendor/", VendorOrderListView.as_view(), name="order-vendor-list"),
    path("mine/", CustomerOrderListView.as_view(), name="order-customer-list"),
    path("<uuid:pk>/status/", OrderStatusUpdateView.as_view(), name="order-status-update"),
    path("track/<str:tracking_id>/", OrderTrackingView.as_view(), name="order-track"),
]
