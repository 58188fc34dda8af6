"""
API views for vouchers and router devices

Thin wrappers around VoucherService and RouterDeviceService; domain errors
are turned into responses by the exception handler.
"""

from rest_framework import status
from rest_framework.decorators import api_view, permission_classes
from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.response import Response

from .devices import RouterDeviceService
from .models import RouterDevice, ProvisioningAttempt
from .serializers import (
    PurchaseCompletedSerializer,
    IssueVouchersSerializer,
    ReasonSerializer,
    RenewSerializer,
    TransferSerializer,
    VoucherSerializer,
    RouterDeviceSerializer,
    ProvisioningAttemptSerializer,
)
from .services import default_service


def _device_service():
    return RouterDeviceService(registry=default_service().registry)


# =============================================================================
# VOUCHERS
# =============================================================================


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def purchase_completed(request):
    """Payment completion callback; safe to deliver more than once."""
    serializer = PurchaseCompletedSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    voucher = default_service().purchase_completed(serializer.validated_data["payment_id"])
    return Response({"success": True, "voucher": VoucherSerializer(voucher).data})


@api_view(["GET"])
@permission_classes([IsAuthenticated])
def voucher_detail(request, code):
    voucher = default_service().vouchers.find_by_code(code)
    return Response({"success": True, "voucher": VoucherSerializer(voucher).data})


@api_view(["GET"])
@permission_classes([IsAuthenticated])
def voucher_usage(request, code):
    usage = default_service().get_usage(code)
    return Response({"success": True, "usage": usage.as_dict()})


@api_view(["POST"])
@permission_classes([IsAdminUser])
def voucher_disable(request, voucher_id):
    serializer = ReasonSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    voucher = default_service().admin_disable(voucher_id, serializer.validated_data["reason"])
    return Response({"success": True, "voucher": VoucherSerializer(voucher).data})


@api_view(["POST"])
@permission_classes([IsAdminUser])
def voucher_refund(request, voucher_id):
    serializer = ReasonSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    voucher = default_service().refund(voucher_id, serializer.validated_data["reason"])
    return Response({"success": True, "voucher": VoucherSerializer(voucher).data})


@api_view(["POST"])
@permission_classes([IsAdminUser])
def voucher_transfer(request, code):
    serializer = TransferSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    new_voucher = default_service().transfer(
        code,
        serializer.validated_data["new_customer_id"],
        serializer.validated_data["reason"],
    )
    return Response(
        {"success": True, "voucher": VoucherSerializer(new_voucher).data},
        status=status.HTTP_201_CREATED,
    )


@api_view(["POST"])
@permission_classes([IsAdminUser])
def voucher_renew(request, code):
    serializer = RenewSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    voucher = default_service().renew(
        code,
        serializer.validated_data["additional_hours"],
        serializer.validated_data["reason"],
    )
    return Response({"success": True, "voucher": VoucherSerializer(voucher).data})


@api_view(["POST"])
@permission_classes([IsAdminUser])
def voucher_issue(request):
    """Issue vouchers without a payment."""
    serializer = IssueVouchersSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data
    vouchers = default_service().issue_vouchers(
        data["customer_id"],
        data["package"],
        count=data["count"],
        device_id=data["device_id"],
        reason=data["reason"],
    )
    return Response(
        {"success": True, "vouchers": VoucherSerializer(vouchers, many=True).data},
        status=status.HTTP_201_CREATED,
    )


@api_view(["POST"])
@permission_classes([IsAdminUser])
def voucher_retry(request, voucher_id):
    voucher = default_service().retry_provisioning(voucher_id)
    return Response({"success": True, "voucher": VoucherSerializer(voucher).data})


@api_view(["POST"])
@permission_classes([IsAuthenticated])
def voucher_resend(request, code):
    sent = default_service().resend_notification(code)
    return Response(
        {
            "success": sent,
            "message": "Voucher details sent" if sent else "Could not send voucher details",
        }
    )


@api_view(["POST"])
@permission_classes([IsAdminUser])
def voucher_sync(request, code):
    result = default_service().sync_with_router(code)
    return Response({"success": not result.error, "sync": result.as_dict()})


# =============================================================================
# ROUTER DEVICES
# =============================================================================


@api_view(["GET", "POST"])
@permission_classes([IsAdminUser])
def device_list(request):
    if request.method == "GET":
        devices = RouterDevice.objects.all()
        return Response(
            {"success": True, "devices": RouterDeviceSerializer(devices, many=True).data}
        )
    device = _device_service().add_device(request.data)
    return Response(
        {"success": True, "device": RouterDeviceSerializer(device).data},
        status=status.HTTP_201_CREATED,
    )


@api_view(["GET", "PATCH", "DELETE"])
@permission_classes([IsAdminUser])
def device_detail(request, device_id):
    service = _device_service()
    if request.method == "GET":
        device = service.devices.get(device_id)
        attempts = ProvisioningAttempt.objects.filter(device=device)[:20]
        return Response(
            {
                "success": True,
                "device": RouterDeviceSerializer(device).data,
                "recent_attempts": ProvisioningAttemptSerializer(attempts, many=True).data,
            }
        )
    if request.method == "PATCH":
        device = service.update_device(device_id, request.data)
        return Response({"success": True, "device": RouterDeviceSerializer(device).data})

    service.delete_device(device_id)
    return Response({"success": True}, status=status.HTTP_200_OK)


@api_view(["POST"])
@permission_classes([IsAdminUser])
def device_test_connection(request):
    result = _device_service().test_connectivity(request.data)
    return Response({"success": result.success, "result": result.as_dict()})


@api_view(["POST"])
@permission_classes([IsAdminUser])
def device_health(request, device_id):
    health = _device_service().monitor_devices(device_id)
    return Response({"success": True, "health": [h.as_dict() for h in health]})
