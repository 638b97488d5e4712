"""
Tenant models: a library (the business), its branches, and their seats.
"""
import uuid
from django.db import models
from django.utils.translation import gettext_lazy as _


class Library(models.Model):
    """A study-space business. Every payment, plan and promotion belongs to one."""
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(_("name"), max_length=200)
    contact_email = models.EmailField(_("contact email"), blank=True)
    contact_phone = models.CharField(_("contact phone"), max_length=20, blank=True)

    # Either {"all": {...}} or the same keys at the top level (older libraries)
    referral_settings = models.JSONField(
        _("referral settings"),
        default=dict,
        blank=True,
        help_text=_("Referrer and referee reward configuration")
    )

    created_at = models.DateTimeField(_("created at"), auto_now_add=True)
    updated_at = models.DateTimeField(_("updated at"), auto_now=True)

    class Meta:
        verbose_name = _("library")
        verbose_name_plural = _("libraries")
        ordering = ["name"]

    def __str__(self):
        return self.name


class Branch(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    library = models.ForeignKey(Library, on_delete=models.CASCADE, related_name="branches")
    name = models.CharField(_("name"), max_length=200)
    address = models.CharField(_("address"), max_length=500, blank=True)
    city = models.CharField(_("city"), max_length=100, blank=True)
    is_active = models.BooleanField(_("active"), default=True)
    created_at = models.DateTimeField(_("created at"), auto_now_add=True)

    class Meta:
        verbose_name = _("branch")
        verbose_name_plural = _("branches")
        ordering = ["name"]

    def __str__(self):
        return f"{self.library.name} – {self.name}"

    @property
    def full_address(self):
        return ", ".join(part for part in (self.address, self.city) if part)


class Seat(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    branch = models.ForeignKey(Branch, on_delete=models.CASCADE, related_name="seats")
    number = models.CharField(_("seat number"), max_length=20)
    section = models.CharField(_("section"), max_length=50, blank=True)
    is_active = models.BooleanField(_("active"), default=True)

    class Meta:
        verbose_name = _("seat")
        verbose_name_plural = _("seats")
        ordering = ["branch", "number"]
        constraints = [
            models.UniqueConstraint(fields=["branch", "number"], name="unique_seat_number_per_branch"),
        ]

    def __str__(self):
        return f"{self.branch.name} #{self.number}"
