import hmac
import logging

from django.conf import settings
from django.db.models import ProtectedError
from django.shortcuts import get_object_or_404
from rest_framework import permissions, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from core.errors import ConsistencyError, PersistenceError, ValidationError
from core.models import AutoTradeSettings, Instrument, TradingProfile
from execution.activity import recent_activity
from execution.autotrade import AutoTradeOrchestrator, Outcome
from execution.models import Transaction
from execution.tasks import process_ticks_for_user
from scheduling.models import DataSchedulingConfig, ProcessingStatus, SchedulingLogEntry
from scheduling.status import snapshot_of
from scheduling.tasks import run_scheduled_tasks
from .serializers import (
    AutoTradeSettingsSerializer,
    DataSchedulingConfigSerializer,
    InstrumentSerializer,
    ProcessingStatusSerializer,
    SchedulingLogEntrySerializer,
    TradingProfileSerializer,
    TransactionSerializer,
)

logger = logging.getLogger(__name__)


def _parse_bool(raw, default: bool = False) -> bool:
    if raw is None or raw == "":
        return default
    if isinstance(raw, bool):
        return raw
    txt = str(raw).strip().lower()
    if txt in {"1", "true", "yes", "on"}:
        return True
    if txt in {"0", "false", "no", "off"}:
        return False
    raise ValueError("expected a boolean")


def _limit(request, default: int = 50, maximum: int = 500) -> int:
    try:
        return max(1, min(maximum, int(request.query_params.get("limit", default))))
    except (TypeError, ValueError):
        return default


class SchedulerTriggerPermission(permissions.BasePermission):
    """Staff users, or a caller presenting the configured bearer token."""

    def has_permission(self, request, view):
        user = getattr(request, "user", None)
        if user is not None and user.is_authenticated and user.is_staff:
            return True
        expected = str(getattr(settings, "SCHEDULING_TRIGGER_TOKEN", "") or "")
        header = request.headers.get("Authorization", "")
        if not expected or not header.startswith("Bearer "):
            return False
        return hmac.compare_digest(header[len("Bearer "):].strip(), expected)


class TradingProfileViewSet(viewsets.ViewSet):
    permission_classes = [permissions.IsAuthenticated]

    @action(detail=False, methods=["get", "patch"], url_path="me")
    def me(self, request):
        profile, _ = TradingProfile.objects.get_or_create(user=request.user)
        if request.method == "GET":
            return Response(TradingProfileSerializer(profile).data)
        serializer = TradingProfileSerializer(profile, data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        serializer.save()
        return Response(serializer.data, status=status.HTTP_200_OK)


class InstrumentViewSet(viewsets.ModelViewSet):
    serializer_class = InstrumentSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        return Instrument.objects.filter(owner=self.request.user).order_by("symbol")

    def perform_create(self, serializer):
        serializer.save(owner=self.request.user)

    def destroy(self, request, *args, **kwargs):
        try:
            return super().destroy(request, *args, **kwargs)
        except ProtectedError:
            return Response(
                {"detail": "instrument has trade history and cannot be deleted"},
                status=status.HTTP_409_CONFLICT,
            )

    @action(detail=True, methods=["post"])
    def trade(self, request, pk=None):
        instrument = self.get_object()
        side = str(request.data.get("action", "")).strip().lower()
        quantity = request.data.get("quantity")
        price = request.data.get("price")
        try:
            result = AutoTradeOrchestrator().execute_manual(
                instrument,
                side,
                quantity=quantity if quantity not in (None, "") else None,
                current_price=price if price not in (None, "") else None,
            )
        except (ValidationError, ConsistencyError) as exc:
            return Response({"success": False, "detail": str(exc)}, status=status.HTTP_400_BAD_REQUEST)
        except PersistenceError as exc:
            return Response(
                {
                    "success": False,
                    "detail": str(exc),
                    "transaction_id": exc.details.get("transaction_id"),
                    "needs_reconciliation": True,
                },
                status=status.HTTP_500_INTERNAL_SERVER_ERROR,
            )
        tx = result.transaction
        return Response(
            {
                "success": result.outcome == Outcome.FILLED,
                "message": result.message,
                "transaction": TransactionSerializer(tx).data if tx else None,
            },
            status=status.HTTP_200_OK,
        )


class AutoTradeSettingsViewSet(viewsets.ModelViewSet):
    serializer_class = AutoTradeSettingsSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        return AutoTradeSettings.objects.filter(instrument__owner=self.request.user).select_related("instrument")


class TransactionViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = TransactionSerializer
    permission_classes = [permissions.IsAuthenticated]

    def get_queryset(self):
        qs = Transaction.objects.for_owner(self.request.user).select_related("instrument")
        symbol = self.request.query_params.get("symbol")
        if symbol:
            qs = qs.filter(symbol=symbol.strip().upper())
        try:
            failed = _parse_bool(self.request.query_params.get("failed"), default=None)
        except ValueError:
            failed = None
        if failed is True:
            qs = qs.failed()
        elif failed is False:
            qs = qs.exclude(action=Transaction.Action.ERROR)
        return qs


class AutoTradeViewSet(viewsets.ViewSet):
    permission_classes = [permissions.IsAuthenticated]

    @action(detail=False, methods=["post"])
    def ticks(self, request):
        prices = request.data.get("prices")
        if not isinstance(prices, dict) or not prices:
            return Response(
                {"detail": "prices must be an object of symbol -> price"},
                status=status.HTTP_400_BAD_REQUEST,
            )
        results = process_ticks_for_user(request.user, prices)
        return Response({"results": results}, status=status.HTTP_200_OK)

    @action(detail=False, methods=["get"])
    def activity(self, request):
        return Response({"entries": recent_activity(request.user.pk, _limit(request))})


class SchedulingViewSet(viewsets.ViewSet):
    permission_classes = [permissions.IsAuthenticated]

    @action(
        detail=False,
        methods=["post"],
        permission_classes=[SchedulerTriggerPermission],
    )
    def trigger(self, request):
        try:
            force = _parse_bool(request.data.get("force", request.query_params.get("force")))
        except ValueError:
            return Response({"detail": "force must be a boolean"}, status=status.HTTP_400_BAD_REQUEST)
        try:
            task = run_scheduled_tasks.delay(force=force)
        except Exception as exc:
            logger.error("Could not enqueue scheduler pass: %s", exc)
            return Response(
                {"success": False, "accepted": True, "force": force, "message": f"Scheduler pass not queued: {exc}"},
                status=status.HTTP_202_ACCEPTED,
            )
        return Response(
            {
                "success": True,
                "accepted": True,
                "force": force,
                "taskId": str(getattr(task, "id", "") or ""),
                "message": f"Scheduler pass queued (force={str(force).lower()}); follow progress in processing status",
            },
            status=status.HTTP_202_ACCEPTED,
        )

    @action(detail=False, methods=["get", "put", "patch"])
    def config(self, request):
        config, _ = DataSchedulingConfig.objects.get_or_create(owner=request.user)
        if request.method == "GET":
            return Response(DataSchedulingConfigSerializer(config).data)
        serializer = DataSchedulingConfigSerializer(config, data=request.data, partial=request.method == "PATCH")
        serializer.is_valid(raise_exception=True)
        serializer.save()
        return Response(serializer.data, status=status.HTTP_200_OK)

    @action(detail=False, methods=["get"], url_path=r"status/(?P<process_id>[\w.:-]+)")
    def process_status(self, request, process_id=None):
        row = get_object_or_404(ProcessingStatus, process_id=process_id)
        if row.owner_id != request.user.pk and not request.user.is_staff:
            return Response({"detail": "Not found."}, status=status.HTTP_404_NOT_FOUND)
        return Response(snapshot_of(row))

    @action(detail=False, methods=["get"])
    def processes(self, request):
        qs = ProcessingStatus.objects.filter(owner=request.user).order_by("-started_at")
        job_type = request.query_params.get("job_type")
        if job_type:
            qs = qs.filter(job_type=job_type)
        rows = qs[: _limit(request, default=20, maximum=200)]
        return Response(ProcessingStatusSerializer(rows, many=True).data)

    @action(detail=False, methods=["get"])
    def logs(self, request):
        qs = SchedulingLogEntry.objects.filter(owner=request.user)
        process_id = request.query_params.get("process_id")
        if process_id:
            qs = qs.filter(process_id=process_id)
        level = request.query_params.get("level")
        if level:
            qs = qs.filter(level=level.upper())
        rows = qs.order_by("-timestamp", "-id")[: _limit(request, default=100)]
        return Response(SchedulingLogEntrySerializer(rows, many=True).data)
