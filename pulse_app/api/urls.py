from django.urls import include, path
from rest_framework.routers import DefaultRouter
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

from .views import (
    CompanyInvitationViewSet,
    CompanyViewSet,
    InvitationViewSet,
    SurveyViewSet,
)

router = DefaultRouter()
router.register("surveys", SurveyViewSet, basename="survey")
router.register("invitations", InvitationViewSet, basename="invitation")
router.register("companies", CompanyViewSet, basename="company")
router.register(
    "company-invitations", CompanyInvitationViewSet, basename="company-invitation"
)

urlpatterns = [
    path("token", TokenObtainPairView.as_view(), name="token_obtain_pair"),
    path("token/refresh", TokenRefreshView.as_view(), name="token_refresh"),
    path("", include(router.urls)),
]
