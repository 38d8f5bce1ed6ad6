from django.apps import AppConfig


class InvoicingConfig(AppConfig):
    default_auto_field = "django.db.models.BigAutoField"
    name = "invoicing"

    def ready(self):
        # Import signals only when apps are ready (prevents AppRegistryNotReady)
        import invoicing.signals  # noqa: F401
