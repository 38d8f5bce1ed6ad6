# invoicing/signals.py
from django.contrib.auth import get_user_model
from django.db.models.signals import post_save
from django.dispatch import receiver

from .models import InvoiceCounter, Organization, UserProfile

User = get_user_model()


@receiver(post_save, sender=User)
def ensure_userprofile_exists(sender, instance, created, **kwargs):
    """
    Auto-create UserProfile:
    - Django superuser => ADMIN
    - Everyone else => MEMBER (until an admin promotes them)
    """
    profile, _ = UserProfile.objects.get_or_create(user=instance)

    if instance.is_superuser and profile.role != "ADMIN":
        profile.role = "ADMIN"
        profile.save(update_fields=["role", "updated_at"])


@receiver(post_save, sender=Organization)
def ensure_invoice_counter(sender, instance, created, **kwargs):
    if created:
        InvoiceCounter.objects.get_or_create(organization=instance)
