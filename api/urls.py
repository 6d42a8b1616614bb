from rest_framework import routers

from django.urls import include, path

from .views import (
    AutoTradeSettingsViewSet,
    AutoTradeViewSet,
    InstrumentViewSet,
    SchedulingViewSet,
    TradingProfileViewSet,
    TransactionViewSet,
)

router = routers.DefaultRouter()
router.register(r"profile", TradingProfileViewSet, basename="profile")
router.register(r"instruments", InstrumentViewSet, basename="instrument")
router.register(r"autotrade-settings", AutoTradeSettingsViewSet, basename="autotrade-settings")
router.register(r"transactions", TransactionViewSet, basename="transaction")
router.register(r"autotrade", AutoTradeViewSet, basename="autotrade")
router.register(r"scheduling", SchedulingViewSet, basename="scheduling")

urlpatterns = [
    path("", include(router.urls)),
]
