import uuid

from django.contrib.auth import get_user_model
from django.db import models

User = get_user_model()


class Company(models.Model):
    """A client organisation that surveys are assigned to.

    ``public_id`` is the canonical identifier used in survey assignments. Not every
    company an operator references has a record here, which is why surveys may also
    carry literal company names (see ``Survey.special_company_names``).
    """

    public_id = models.UUIDField(default=uuid.uuid4, unique=True, editable=False)
    name = models.CharField(max_length=255, unique=True)
    email = models.EmailField(blank=True)
    city = models.CharField(max_length=255, blank=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        verbose_name_plural = "companies"

    def __str__(self) -> str:  # pragma: no cover
        return self.name

    @property
    def canonical_id(self) -> str:
        return str(self.public_id)


class UserProfile(models.Model):
    """Role and company attachment for a user.

    Created automatically for every user by a ``post_save`` signal. Operator admins
    belong to the operator organisation and carry no company.
    """

    class Role(models.TextChoices):
        OPERATOR_ADMIN = "operator_admin", "Operator admin"
        COMPANY_ADMIN = "company_admin", "Company admin"
        EMPLOYEE = "employee", "Employee"

    user = models.OneToOneField(User, on_delete=models.CASCADE, related_name="profile")
    role = models.CharField(max_length=20, choices=Role.choices, default=Role.EMPLOYEE)
    company = models.ForeignKey(
        Company,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="members",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.user.username} ({self.role})"

    @property
    def is_operator_admin(self) -> bool:
        return self.role == self.Role.OPERATOR_ADMIN

    @property
    def is_company_admin(self) -> bool:
        return self.role == self.Role.COMPANY_ADMIN
