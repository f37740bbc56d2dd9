from typing import Any

from django.apps import apps
from django.utils.decorators import method_decorator
from django_ratelimit.decorators import ratelimit
from rest_framework import mixins, permissions, serializers, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import NotAuthenticated
from rest_framework.response import Response

from pulse_app.core.models import Company
from pulse_app.surveys.exceptions import (
    NotFound,
    PermissionDenied,
    PulseError,
)
from pulse_app.surveys.identity import Participant
from pulse_app.surveys.models import Invitation, Survey
from pulse_app.surveys.permissions import (
    require_can_manage_company,
    require_can_manage_invitation,
    require_can_manage_survey,
)
from pulse_app.surveys.services.authoring import create_survey, update_assignment
from pulse_app.surveys.services.lifecycle import allowed_targets


def get_engine():
    return apps.get_app_config("api").engine


def _survey_or_404(engine, survey_id) -> Survey:
    survey = engine.store.find_survey_by_id(survey_id)
    if survey is None:
        raise NotFound("Survey not found.")
    return survey


def _company_or_404(engine, company_id) -> Company:
    company = engine.store.find_company_by_id(company_id)
    if company is None:
        raise NotFound("Company not found.")
    return company


def _invitation_or_404(engine, invitation_id) -> Invitation:
    invitation = engine.store.find_invitation_by_id(invitation_id)
    if invitation is None:
        raise NotFound("Invitation not found.")
    return invitation


# Serializers


class SurveySerializer(serializers.ModelSerializer):
    question_count = serializers.SerializerMethodField()
    allowed_transitions = serializers.SerializerMethodField()

    class Meta:
        model = Survey
        fields = [
            "id",
            "title",
            "description",
            "status",
            "is_anonymous",
            "start_at",
            "end_at",
            "assigned_companies",
            "special_company_names",
            "question_count",
            "allowed_transitions",
            "last_status_change_at",
            "updated_at",
        ]

    def get_question_count(self, obj: Survey) -> int:
        return obj.question_count()

    def get_allowed_transitions(self, obj: Survey) -> list[str]:
        actor = self.context.get("actor")
        return allowed_targets(actor.role, obj.status) if actor else []


class InvitationSerializer(serializers.ModelSerializer):
    company = serializers.CharField(source="company.canonical_id", read_only=True)
    company_name = serializers.CharField(source="company.name", read_only=True)
    status = serializers.CharField(read_only=True)

    class Meta:
        model = Invitation
        fields = [
            "id",
            "kind",
            "company",
            "company_name",
            "survey",
            "email",
            "name",
            "role",
            "code",
            "status",
            "issued_at",
            "expires_at",
            "redeemed_at",
        ]


class QuestionInputSerializer(serializers.Serializer):
    key = serializers.CharField(max_length=64)
    text = serializers.CharField()
    type = serializers.CharField(required=False)
    required = serializers.BooleanField(required=False, default=True)


class BlockInputSerializer(serializers.Serializer):
    title = serializers.CharField(max_length=255, required=False, allow_blank=True)
    description = serializers.CharField(required=False, allow_blank=True)
    questions = QuestionInputSerializer(many=True, required=False)


class SurveyCreateSerializer(serializers.Serializer):
    title = serializers.CharField(max_length=255)
    description = serializers.CharField(required=False, allow_blank=True, default="")
    is_anonymous = serializers.BooleanField(required=False, default=True)
    companies = serializers.ListField(
        child=serializers.CharField(allow_blank=True), required=False, default=list
    )
    blocks = BlockInputSerializer(many=True, required=False, default=list)
    start_at = serializers.DateTimeField(required=False, allow_null=True)
    end_at = serializers.DateTimeField(required=False, allow_null=True)


class ParticipantSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    email = serializers.CharField(max_length=254)


class SurveyInvitationsSerializer(serializers.Serializer):
    participants = ParticipantSerializer(many=True, allow_empty=False)
    company = serializers.CharField(required=False, allow_blank=True)
    message = serializers.CharField(required=False, allow_blank=True, default="")
    expiry_days = serializers.IntegerField(required=False, min_value=1, max_value=90)


class CompanyInvitationSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=255)
    email = serializers.CharField(max_length=254)
    role = serializers.ChoiceField(
        choices=Invitation.Role.choices, required=False, default=Invitation.Role.EMPLOYEE
    )


class AcceptCompanyInvitationSerializer(serializers.Serializer):
    code = serializers.CharField(max_length=64)
    email = serializers.CharField(max_length=254)


# Viewsets


class EngineMixin:
    """Gives a viewset the shared engine and the requesting actor."""

    @property
    def engine(self):
        return get_engine()

    def get_actor(self):
        return self.engine.identity.actor_for(self.request.user)

    def get_serializer_context(self):
        context = super().get_serializer_context()
        if self.request.user.is_authenticated:
            context["actor"] = self.get_actor()
        return context


class SurveyViewSet(
    EngineMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    serializer_class = SurveySerializer
    permission_classes = [permissions.IsAuthenticated]
    lookup_value_regex = r"\d+"

    def get_queryset(self):
        actor = self.get_actor()
        surveys = Survey.objects.order_by("-updated_at")
        if actor.is_operator_admin:
            return surveys
        if not actor.is_company_admin or actor.company is None:
            return surveys.none()
        # Assignment mixes ids and names, so membership is resolved in Python
        ids = [
            s.pk
            for s in surveys
            if self.engine.resolver.resolve_assignment(s, actor.company_ref)
        ]
        return surveys.filter(pk__in=ids)

    def get_object(self):
        """Fetch the survey unscoped so callers without access get 403, not 404."""
        return _survey_or_404(self.engine, self.kwargs[self.lookup_field])

    def retrieve(self, request, *args, **kwargs):
        survey = self.get_object()
        require_can_manage_survey(self.get_actor(), survey, self.engine.resolver)
        return Response(self.get_serializer(survey).data)

    def create(self, request, *args, **kwargs):
        """Create a draft survey (operator admins)."""
        ser = SurveyCreateSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data
        survey = create_survey(
            self.get_actor(),
            data["title"],
            description=data["description"],
            is_anonymous=data["is_anonymous"],
            company_refs=data["companies"],
            blocks=data["blocks"],
            start_at=data.get("start_at"),
            end_at=data.get("end_at"),
        )
        return Response(
            self.get_serializer(survey).data, status=status.HTTP_201_CREATED
        )

    @action(detail=True, methods=["put"])
    def assignment(self, request, pk=None):
        """Replace a survey's company assignment (operator admins)."""
        survey = self.get_object()
        companies = request.data.get("companies")
        if not isinstance(companies, list):
            raise serializers.ValidationError({"companies": "Expected a list."})
        survey = update_assignment(self.get_actor(), survey, companies)
        return Response(self.get_serializer(survey).data)

    @action(detail=True, methods=["post"], url_path="status")
    def change_status(self, request, pk=None):
        """Request a status transition."""
        survey = self.get_object()
        target = request.data.get("status")
        if not target:
            raise serializers.ValidationError({"status": "This field is required."})
        survey = self.engine.lifecycle.request_transition(
            survey, self.get_actor(), str(target)
        )
        return Response(self.get_serializer(survey).data)

    @action(detail=True, methods=["get", "post"])
    def invitations(self, request, pk=None):
        """List or issue survey invitations.

        Company admins see and issue invitations for their own company only;
        operator admins must name the company the invitations are for.
        """
        engine = self.engine
        actor = self.get_actor()
        survey = self.get_object()
        require_can_manage_survey(actor, survey, engine.resolver)

        if request.method.lower() == "get":
            invitations = survey.invitations.select_related("company").order_by(
                "-issued_at"
            )
            if not actor.is_operator_admin:
                invitations = invitations.filter(company=actor.company)
            data = InvitationSerializer(invitations[:500], many=True).data
            return Response({"items": data, "count": len(data)})

        ser = SurveyInvitationsSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data
        if actor.is_operator_admin:
            if not data.get("company"):
                raise serializers.ValidationError(
                    {"company": "Operator admins must choose a company."}
                )
            company = _company_or_404(engine, data["company"])
            if not engine.resolver.resolve_assignment(survey, company):
                raise PermissionDenied("This survey is not assigned to that company.")
        else:
            company = actor.company

        created: list[dict[str, Any]] = []
        errors: list[dict[str, Any]] = []
        for participant in data["participants"]:
            try:
                invitation = engine.ledger.issue(
                    company,
                    participant["email"],
                    participant["name"],
                    survey=survey,
                    expiry_days=data.get("expiry_days"),
                    issued_by=request.user,
                    message=data["message"],
                )
            except PulseError as e:
                errors.append(
                    {"email": participant["email"], "code": e.code, "error": e.message}
                )
                continue
            created.append(InvitationSerializer(invitation).data)

        return Response(
            {"created": created, "errors": errors},
            status=status.HTTP_201_CREATED if created else status.HTTP_400_BAD_REQUEST,
        )

    @action(
        detail=True,
        methods=["get"],
        permission_classes=[permissions.AllowAny],
        url_path="verify-code",
    )
    @method_decorator(ratelimit(key="ip", rate="10/m", block=True))
    def verify_code(self, request, pk=None):
        """Check a survey invitation code before showing the questionnaire."""
        survey = self.get_object()
        invitation = self.engine.ledger.validate(
            request.query_params.get("code", ""), survey=survey
        )
        return Response(
            {
                "valid": True,
                "invitation": {
                    "id": invitation.pk,
                    "name": invitation.name,
                    "expires_at": invitation.expires_at,
                },
                "survey": {
                    "id": survey.pk,
                    "title": survey.title,
                    "description": survey.description,
                    "is_anonymous": survey.is_anonymous,
                    "status": survey.status,
                },
            }
        )

    @action(detail=True, methods=["post"], permission_classes=[permissions.AllowAny])
    def responses(self, request, pk=None):
        """Submit a response, as the signed-in user or with an invitation ``code``."""
        engine = self.engine
        survey = self.get_object()
        code = request.data.get("code")
        if code:
            invitation = engine.ledger.validate(str(code), survey=survey)
            participant = Participant.for_invitation(invitation)
        elif request.user.is_authenticated:
            participant = engine.identity.participant_for(request.user)
        else:
            raise NotAuthenticated()

        response = engine.collector.submit(
            survey, participant, request.data.get("answers")
        )
        return Response(
            {
                "id": response.pk,
                "survey": survey.pk,
                "respondent": response.respondent,
                "completed_at": response.completed_at,
            },
            status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["get"], url_path="response-rate")
    def response_rate(self, request, pk=None):
        """Eligible vs. responded counts; company admins see their company only."""
        actor = self.get_actor()
        survey = self.get_object()
        require_can_manage_survey(actor, survey, self.engine.resolver)

        company = None
        if not actor.is_operator_admin:
            company = actor.company
        elif request.query_params.get("company"):
            company = _company_or_404(self.engine, request.query_params["company"])
        return Response(self.engine.rates.rate_for(survey, company=company).as_dict())


class InvitationViewSet(EngineMixin, viewsets.GenericViewSet):
    serializer_class = InvitationSerializer
    permission_classes = [permissions.IsAuthenticated]
    lookup_value_regex = r"\d+"

    def get_object(self):
        invitation = _invitation_or_404(self.engine, self.kwargs[self.lookup_field])
        require_can_manage_invitation(self.get_actor(), invitation)
        return invitation

    def retrieve(self, request, pk=None):
        return Response(self.get_serializer(self.get_object()).data)

    def destroy(self, request, pk=None):
        self.engine.ledger.delete(self.get_object().pk)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=["post"])
    def resend(self, request, pk=None):
        invitation = self.engine.ledger.resend(
            self.get_object().pk, message=request.data.get("message", "")
        )
        return Response(self.get_serializer(invitation).data)


class CompanyViewSet(EngineMixin, viewsets.GenericViewSet):
    """Company-scoped invitations and dashboards, addressed by canonical id."""

    permission_classes = [permissions.IsAuthenticated]

    def get_object(self):
        company = _company_or_404(self.engine, self.kwargs[self.lookup_field])
        require_can_manage_company(self.get_actor(), company)
        return company

    @action(detail=True, methods=["post"])
    def invitations(self, request, pk=None):
        """Invite someone to join a company. Only operator admins may invite admins."""
        actor = self.get_actor()
        company = self.get_object()

        ser = CompanyInvitationSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        data = ser.validated_data
        if data["role"] == Invitation.Role.COMPANY_ADMIN and not actor.is_operator_admin:
            raise PermissionDenied("Only operator admins can invite company admins.")

        invitation = self.engine.ledger.issue(
            company,
            data["email"],
            data["name"],
            role=data["role"],
            issued_by=request.user,
        )
        return Response(
            InvitationSerializer(invitation).data, status=status.HTTP_201_CREATED
        )

    @action(detail=True, methods=["get"], url_path="response-rates")
    def response_rates(self, request, pk=None):
        """Response rates of the latest surveys assigned to a company."""
        company = self.get_object()
        try:
            limit = max(1, min(int(request.query_params.get("limit", 5)), 50))
        except ValueError:
            limit = 5
        rates = self.engine.rates.rates_for_company(company, limit=limit)
        return Response({"items": [r.as_dict() for r in rates]})


class CompanyInvitationViewSet(EngineMixin, viewsets.ViewSet):
    permission_classes = [permissions.IsAuthenticated]

    @action(detail=False, methods=["post"])
    @method_decorator(ratelimit(key="ip", rate="10/m", block=True))
    def accept(self, request):
        """Join the signed-in user to a company using code + email."""
        ser = AcceptCompanyInvitationSerializer(data=request.data)
        ser.is_valid(raise_exception=True)
        invitation = self.engine.ledger.accept_company_invitation(
            ser.validated_data["code"], ser.validated_data["email"], request.user
        )
        request.user.profile.refresh_from_db()
        return Response(
            {
                "company": invitation.company.canonical_id,
                "company_name": invitation.company.name,
                "role": request.user.profile.role,
            }
        )
