from django.urls import path

from . import views

urlpatterns = [
    # Vouchers
    path("payments/completed/", views.purchase_completed, name="purchase_completed"),
    path("vouchers/issue/", views.voucher_issue, name="voucher_issue"),
    path("vouchers/<str:code>/", views.voucher_detail, name="voucher_detail"),
    path("vouchers/<str:code>/usage/", views.voucher_usage, name="voucher_usage"),
    path("vouchers/<str:code>/resend/", views.voucher_resend, name="voucher_resend"),
    path("vouchers/<str:code>/transfer/", views.voucher_transfer, name="voucher_transfer"),
    path("vouchers/<str:code>/sync/", views.voucher_sync, name="voucher_sync"),
    path("vouchers/<str:code>/renew/", views.voucher_renew, name="voucher_renew"),
    path("vouchers/id/<uuid:voucher_id>/disable/", views.voucher_disable, name="voucher_disable"),
    path("vouchers/id/<uuid:voucher_id>/refund/", views.voucher_refund, name="voucher_refund"),
    path("vouchers/id/<uuid:voucher_id>/retry/", views.voucher_retry, name="voucher_retry"),
    # Router devices
    path("routers/", views.device_list, name="device_list"),
    path("routers/test-connection/", views.device_test_connection, name="device_test_connection"),
    path("routers/<uuid:device_id>/", views.device_detail, name="device_detail"),
    path("routers/<uuid:device_id>/health/", views.device_health, name="device_health"),
]
