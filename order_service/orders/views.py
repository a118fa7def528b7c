import logging
import time

from django.utils import timezone
from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from orders.exceptions import OrderNotFound, OrderServiceError
from orders.gateway import get_gateway
from orders.serializers import BulkOperationsSerializer, OrderSerializer

logger = logging.getLogger(__name__)


def format_duration(seconds):
    return f"{seconds * 1000:.3f}ms"


class HealthView(APIView):
    def get(self, request, *args, **kwargs):
        return Response(
            {
                "status": "healthy",
                "timestamp": timezone.now().isoformat(timespec="seconds"),
            }
        )


class OrderDetailView(APIView):
    def get(self, request, order_uid="", *args, **kwargs):
        start = time.perf_counter()
        if not order_uid:
            return Response(
                {"detail": "Order ID is required"}, status=status.HTTP_400_BAD_REQUEST
            )

        logger.info(f"Fetching order: {order_uid}")
        try:
            lookup = get_gateway().get_order(order_uid)
        except OrderNotFound:
            logger.info(f"Order {order_uid} not found in database")
            return Response(
                {"detail": "Order not found"}, status=status.HTTP_404_NOT_FOUND
            )
        except OrderServiceError as e:
            logger.error(f"Error retrieving order {order_uid} from database: {e}")
            return Response(
                {"detail": "Error retrieving order"},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        total = time.perf_counter() - start
        logger.info(
            f"Order {order_uid} fetched from {lookup.source} in "
            f"{format_duration(total)} (fetch: {format_duration(lookup.fetch_seconds)})"
        )
        return Response(
            {
                "order": OrderSerializer(lookup.order).data,
                "source": lookup.source,
                "timing": {
                    "total": format_duration(total),
                    "fetch": format_duration(lookup.fetch_seconds),
                    "source": lookup.source,
                },
            }
        )


class BulkOperationsView(APIView):
    def post(self, request, *args, **kwargs):
        serializer = BulkOperationsSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        try:
            result = get_gateway().bulk(
                serializer.validated_data["operations"],
                serializer.validated_data["order_ids"],
            )
        except OrderServiceError as e:
            logger.error(f"Bulk operations failed: {e}")
            return Response(
                {"status": "error", "message": f"Bulk operations failed: {e}"},
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )

        logger.info(
            f"Bulk operations committed: {len(result.fetched)} fetched, "
            f"{len(result.deleted)} deleted"
        )
        return Response(
            {"status": "success", "message": "Bulk operations completed successfully"}
        )
