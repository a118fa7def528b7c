from django.urls import path, re_path

from orders.views import BulkOperationsView, HealthView, OrderDetailView

urlpatterns = [
    path("health", HealthView.as_view(), name="health"),
    re_path(r"^order/(?P<order_uid>[^/]*)/?$", OrderDetailView.as_view(), name="order-detail"),
    path("orders/bulk", BulkOperationsView.as_view(), name="orders-bulk"),
]
