from django.urls import path

from .views import (
    CancelOrderView,
    CaptureOrderView,
    OrdersCollectionView,
    OrderStatisticsView,
    PayoutsCollectionView,
    PurchaseCheckView,
    ReconcileBatchView,
    RefundOrderView,
    ResolveCaptureView,
    RetrieveOrderView,
    SellerEarningsView,
    SellerPayoutsView,
)

app_name = "payments"

urlpatterns = [
    path("orders/", OrdersCollectionView.as_view(), name="orders-collection"),  # GET list / POST create
    path("orders/capture/", CaptureOrderView.as_view(), name="orders-capture"),
    path("orders/resolve/", ResolveCaptureView.as_view(), name="orders-resolve"),
    path("orders/<uuid:oid>/", RetrieveOrderView.as_view(), name="orders-detail"),
    path("orders/<uuid:oid>/cancel/", CancelOrderView.as_view(), name="orders-cancel"),
    path("orders/<uuid:oid>/refund/", RefundOrderView.as_view(), name="orders-refund"),
    path("purchases/", PurchaseCheckView.as_view(), name="purchases"),
    path("payouts/", PayoutsCollectionView.as_view(), name="payouts-collection"),
    path("payouts/<str:batch_id>/reconcile/", ReconcileBatchView.as_view(), name="payouts-reconcile"),
    path("sellers/<str:seller_id>/earnings/", SellerEarningsView.as_view(), name="seller-earnings"),
    path("sellers/<str:seller_id>/payouts/", SellerPayoutsView.as_view(), name="seller-payouts"),
    path("stats/", OrderStatisticsView.as_view(), name="stats"),
]
