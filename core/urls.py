from django.contrib import admin
from django.urls import path, include



urlpatterns = [
    path("admin/", admin.site.urls),
    path('order/', include('order.urls')),
    path('dispatch/', include('dispatch.urls')),
    path('payment/', include('payment.urls')),
]
