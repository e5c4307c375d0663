from django.apps import AppConfig


class ProcurementConfig(AppConfig):
    default_auto_field = 'django.db.models.BigAutoField'
    name = 'procurement'
    verbose_name = 'Procurement'

    def ready(self):
        """Connect notification receivers when app is ready."""
        import procurement.notifications  # noqa: F401
